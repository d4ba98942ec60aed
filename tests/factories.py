"""Row builders shared by the pipeline tests."""

import itertools
from datetime import datetime, timezone

from estateflow.db.queues import complete_fetch, insert_read_items, reserve_read_batch
from estateflow.db.tables import posts
from estateflow.ingest.models import CITY


_read_ids = itertools.count(10_000)


def enqueue(engine, token, **overrides):
    item = {
        "external_id": token,
        "category_id": 3,
        "category_slug": "apartment-sell",
        "location_scope": CITY,
        "province_id": 8,
        "city_id": 1,
        "payload": {"token": token},
    }
    item.update(overrides)
    with engine.begin() as conn:
        insert_read_items(conn, [item])


def enqueue_fetched(engine, token, payload, **overrides):
    """Queue ``token`` and record ``payload`` as its fetched detail, ready for analysis."""
    enqueue(engine, token, **overrides)
    (job,) = reserve_read_batch(engine, 1)
    complete_fetch(engine, job, payload)
    return job


def insert_post(engine, **values):
    now = datetime.now(timezone.utc)
    row = {
        "read_queue_id": next(_read_ids),
        "source": "DIVAR",
        "external_id": "post",
        "status": "COMPLETED",
        "category_slug": "apartment-sell",
        "cat3": "apartment-sell",
        "notifications_checked": False,
        "created_at": now,
        "updated_at": now,
    }
    row.update(values)
    with engine.begin() as conn:
        result = conn.execute(posts.insert().values(**row))
        return result.inserted_primary_key[0]
