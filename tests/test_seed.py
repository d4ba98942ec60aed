from sqlalchemy import func, select, update

from estateflow.db.seed import seed_reference_data
from estateflow.db.tables import categories, districts
from estateflow.ingest import load_scopes


def test_seed_is_repeatable(engine):
    scopes = load_scopes()
    counts = seed_reference_data(engine, scopes)
    assert counts == {"categories": 8, "provinces": 2, "cities": 2, "districts": 3}

    with engine.begin() as conn:
        conn.execute(update(categories).where(categories.c.slug == "apartment-sell").values(name="stale"))
    seed_reference_data(engine, scopes)

    with engine.connect() as conn:
        assert conn.execute(select(func.count()).select_from(categories)).scalar_one() == 8
        assert conn.execute(select(func.count()).select_from(districts)).scalar_one() == 3
        name = conn.execute(select(categories.c.name).where(categories.c.slug == "apartment-sell")).scalar_one()
    assert name == "فروش آپارتمان"
