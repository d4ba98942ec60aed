import pytest
from sqlalchemy import create_engine, event

from estateflow.db.seed import seed_reference_data
from estateflow.db.tables import metadata
from estateflow.ingest import load_scopes


@pytest.fixture()
def engine(tmp_path):
    # Executor threads share one file; IMMEDIATE transactions serialize writers the way row locks do.
    engine = create_engine(
        f"sqlite:///{tmp_path / 'estateflow.db'}",
        future=True,
        connect_args={"check_same_thread": False, "timeout": 30},
    )

    @event.listens_for(engine, "connect")
    def _connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def seeded_engine(engine):
    seed_reference_data(engine, load_scopes())
    return engine
