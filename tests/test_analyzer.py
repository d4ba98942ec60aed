from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from estateflow.config import AnalyzeConfig
from estateflow.db.queues import complete_fetch, pending_analyze_jobs, reserve_read_batch
from estateflow.db.tables import (
    COMPLETED,
    FAILED,
    PENDING,
    analyze_queue,
    districts,
    post_attributes,
    post_media,
    posts,
    read_queue,
)
from estateflow.ingest.analyzer import Analyzer, resolve_published_at
from estateflow.ingest.models import ParsedPost
from estateflow.utils.dates import ensure_utc
from factories import enqueue, enqueue_fetched
from payloads import apartment_detail, rent_detail


async def _no_sleep(_seconds):
    return None


def _analyzer(engine, **config):
    return Analyzer(engine, AnalyzeConfig(**config), sleep=_no_sleep, clock=lambda: 0.0)


def _post(engine, token):
    with engine.connect() as conn:
        return conn.execute(select(posts).where(posts.c.external_id == token)).one()


def _analyze_row(engine, token):
    with engine.connect() as conn:
        return conn.execute(select(analyze_queue).where(analyze_queue.c.external_id == token)).one()


@pytest.mark.asyncio
async def test_analyze_persists_normalized_post(seeded_engine):
    enqueue_fetched(seeded_engine, "AaBbCcDd", apartment_detail())
    summary = await _analyzer(seeded_engine).process_pending_jobs()

    assert (summary.processed, summary.failed) == (1, 0)
    post = _post(seeded_engine, "AaBbCcDd")
    assert post.category_slug == "apartment-sell"
    assert (post.cat1, post.cat2, post.cat3) == ("real-estate", "residential-sell", "apartment-sell")
    assert post.price_total == Decimal("12500000000")
    assert post.rooms == 2
    assert post.has_elevator is True
    assert post.notifications_checked is False
    assert post.province_name == "استان تهران"
    assert post.city_name == "تهران"
    assert post.jalali_gregorian_date == date(2024, 4, 3)

    with seeded_engine.connect() as conn:
        saadat_abad = conn.execute(
            select(districts.c.id).where(districts.c.slug == "saadat-abad", districts.c.city_id == 1)
        ).scalar_one()
        media = conn.execute(
            select(post_media.c.url).where(post_media.c.post_id == post.id).order_by(post_media.c.position)
        ).scalars().all()
        keys = set(conn.execute(select(post_attributes.c.key).where(post_attributes.c.post_id == post.id)).scalars())
    assert post.district_id == saadat_abad
    assert media == ["https://s100.divarcdn.com/a.jpg", "https://s100.divarcdn.com/b.jpg"]
    assert {"building_direction", "unit_condition"} <= keys
    assert _analyze_row(seeded_engine, "AaBbCcDd").status == COMPLETED


@pytest.mark.asyncio
async def test_published_at_counts_back_from_fetch_time(seeded_engine):
    enqueue_fetched(seeded_engine, "AaBbCcDd", apartment_detail())
    await _analyzer(seeded_engine).process_pending_jobs()

    with seeded_engine.connect() as conn:
        fetched_at = conn.execute(select(read_queue.c.last_fetched_at)).scalar_one()
    post = _post(seeded_engine, "AaBbCcDd")
    assert ensure_utc(post.published_at) == ensure_utc(fetched_at) - timedelta(hours=3)


@pytest.mark.asyncio
async def test_reanalysis_replaces_children_without_new_post(seeded_engine):
    job = enqueue_fetched(seeded_engine, "AaBbCcDd", apartment_detail())
    analyzer = _analyzer(seeded_engine)
    await analyzer.process_pending_jobs()
    first_id = _post(seeded_engine, "AaBbCcDd").id

    refetched = apartment_detail()
    refetched["webengage"]["price"] = 13000000000
    complete_fetch(seeded_engine, job, refetched)
    await analyzer.process_pending_jobs()

    with seeded_engine.connect() as conn:
        assert conn.execute(select(func.count()).select_from(posts)).scalar_one() == 1
        assert conn.execute(select(func.count()).select_from(post_media)).scalar_one() == 2
    assert _post(seeded_engine, "AaBbCcDd").id == first_id


@pytest.mark.asyncio
async def test_payload_category_used_when_queue_row_has_none(seeded_engine):
    enqueue_fetched(seeded_engine, "rent-1", rent_detail(), category_id=None, category_slug=None, province_id=None, city_id=None)
    await _analyzer(seeded_engine).process_pending_jobs()

    post = _post(seeded_engine, "rent-1")
    assert post.category_slug == "apartment-rent"
    assert (post.province_id, post.city_id) == (11, 2)
    assert post.city_name == "کرج"
    assert post.deposit_amount == Decimal("300000000")
    assert post.published_at_jalali is None


@pytest.mark.asyncio
async def test_missing_category_is_charged_to_retry_budget(seeded_engine):
    enqueue_fetched(seeded_engine, "nameless", {"seo": {"title": "بدون دسته"}}, category_id=None, category_slug=None)
    summary = await _analyzer(seeded_engine).process_pending_jobs()

    assert (summary.processed, summary.failed) == (0, 1)
    row = _analyze_row(seeded_engine, "nameless")
    assert (row.status, row.retry_count) == (PENDING, 1)
    assert "Missing category slug" in row.error_message
    with seeded_engine.connect() as conn:
        assert conn.execute(select(posts)).first() is None


@pytest.mark.asyncio
async def test_malformed_payload_fails_after_retry_ceiling(seeded_engine, caplog):
    enqueue_fetched(seeded_engine, "junk", ["not", "an", "object"])
    analyzer = _analyzer(seeded_engine, max_attempts=2)

    await analyzer.process_pending_jobs()
    assert _analyze_row(seeded_engine, "junk").status == PENDING
    await analyzer.process_pending_jobs()
    row = _analyze_row(seeded_engine, "junk")
    assert (row.status, row.retry_count) == (FAILED, 2)
    assert any("failed permanently" in r.getMessage() for r in caplog.records)

    summary = await analyzer.process_pending_jobs()
    assert (summary.processed, summary.failed) == (0, 0)


@pytest.mark.asyncio
async def test_batches_are_drained_until_short(seeded_engine):
    for index in range(5):
        enqueue_fetched(seeded_engine, f"t{index}", apartment_detail())
    summary = await _analyzer(seeded_engine, chunk_size=2).process_pending_jobs(batch_size=2)

    assert summary.processed == 5
    assert pending_analyze_jobs(seeded_engine, 10) == []


def test_district_lookup_is_memoized(seeded_engine):
    analyzer = _analyzer(seeded_engine)
    with seeded_engine.connect() as conn:
        first = analyzer.resolve_district_id(conn, "gohardasht", 2)
        assert analyzer.resolve_district_id(conn, "gohardasht", 1) is None
    assert first is not None
    assert analyzer._district_cache == {"gohardasht:2": first, "gohardasht:1": None}
    with seeded_engine.connect() as conn:
        assert analyzer.resolve_district_id(conn, None, 2) is None


def test_published_at_falls_back_to_jalali_date():
    anchor = datetime(2024, 4, 10, 12, 0, tzinfo=timezone.utc)
    dated = ParsedPost(jalali_gregorian_date=date(2024, 4, 3))
    assert resolve_published_at(anchor, dated) == datetime(2024, 4, 3, tzinfo=timezone.utc)

    both = ParsedPost(jalali_gregorian_date=date(2024, 4, 3), relative_publish_ms=3 * 24 * 60 * 60 * 1000)
    assert resolve_published_at(anchor, both) == datetime(2024, 4, 7, 12, 0, tzinfo=timezone.utc)

    assert resolve_published_at(None, ParsedPost(relative_publish_ms=1000)) is None


def test_unfetched_rows_are_not_analyzed(seeded_engine):
    enqueue(seeded_engine, "waiting")
    reserve_read_batch(seeded_engine, 1)
    assert pending_analyze_jobs(seeded_engine, 10) == []


@pytest.mark.asyncio
async def test_each_chunk_is_padded_to_chunk_interval(seeded_engine):
    for index in range(4):
        enqueue_fetched(seeded_engine, f"c{index}", apartment_detail())
    sleeps = []

    async def sleep(seconds):
        sleeps.append(seconds)

    # first chunk takes 0.4s, second takes 1.5s
    ticks = iter([0.0, 0.4, 1.0, 2.5])
    analyzer = Analyzer(seeded_engine, AnalyzeConfig(chunk_size=2), sleep=sleep, clock=lambda: next(ticks))
    summary = await analyzer.process_pending_jobs()

    assert summary.processed == 4
    assert sleeps == [pytest.approx(0.6)]
