import json
import logging
from datetime import datetime, timedelta, timezone

import httpx
import pytest
import respx
from sqlalchemy import select, update

from estateflow.config import HarvestConfig
from estateflow.db.tables import COMPLETED, FAILED, PENDING, categories, provinces, read_queue
from estateflow.ingest.divar import DivarClient
from estateflow.ingest.harvester import Harvester, extract_token, select_leaf_scopes
from estateflow.ingest.models import CITY, PROVINCE, CategoryScope, LocationScope
from estateflow.utils.rate_limit import RateLimiter
from payloads import SEARCH_URL, search_page

APARTMENT_SELL = CategoryScope(id=3, slug="apartment-sell", path="real-estate/residential-sell/apartment-sell", depth=2)
TEHRAN = LocationScope(kind=CITY, id=1, slug="tehran", name="تهران", parent_id=8)


async def _no_sleep(_seconds):
    return None


def _harvester(engine, session, **config):
    client = DivarClient(session=session, rate_limiter=RateLimiter(max_calls=100))
    return Harvester(engine, client, HarvestConfig(page_delay=0, **config), sleep=_no_sleep)


def _queued(engine):
    with engine.connect() as conn:
        return conn.execute(select(read_queue).order_by(read_queue.c.id)).all()


@pytest.mark.asyncio
async def test_harvest_pair_follows_cursor_and_drops_duplicates(seeded_engine, caplog):
    caplog.set_level(logging.WARNING, logger="estateflow.ingest.harvester")
    async with respx.mock(assert_all_called=True) as router:
        route = router.post(SEARCH_URL).mock(
            side_effect=[
                httpx.Response(200, json=search_page(["t1", "t2", "t3", "t2"], cursor="1710000000000", cumulative=74)),
                httpx.Response(200, json=search_page(["t4"], cursor=None)),
            ]
        )
        async with httpx.AsyncClient(transport=httpx.MockTransport(router.handler)) as session:
            harvester = _harvester(seeded_engine, session)
            enqueued, reactivated = await harvester.harvest_pair(APARTMENT_SELL, TEHRAN)

    assert (enqueued, reactivated) == (4, 0)
    assert route.call_count == 2
    first = json.loads(route.calls[0].request.content)
    second = json.loads(route.calls[1].request.content)
    assert "last_post_date" not in first["pagination_data"]
    assert second["pagination_data"]["last_post_date"] == "1710000000000"
    assert second["pagination_data"]["cumulative_widgets_count"] == 74
    assert second["city_ids"] == ["1"]

    rows = _queued(seeded_engine)
    assert [row.external_id for row in rows] == ["t1", "t2", "t3", "t4"]
    assert {row.status for row in rows} == {PENDING}
    assert {(row.category_slug, row.city_id, row.province_id, row.location_scope) for row in rows} == {
        ("apartment-sell", 1, 8, CITY)
    }
    duplicates = [r for r in caplog.records if "Skipped duplicate token within page" in r.getMessage()]
    assert len(duplicates) == 1
    assert "token=t2" in duplicates[0].getMessage()


@pytest.mark.asyncio
async def test_second_pass_never_inserts_known_tokens(seeded_engine):
    async with respx.mock() as router:
        router.post(SEARCH_URL).mock(return_value=httpx.Response(200, json=search_page(["t1", "t2"])))
        async with httpx.AsyncClient(transport=httpx.MockTransport(router.handler)) as session:
            harvester = _harvester(seeded_engine, session)
            assert await harvester.harvest_pair(APARTMENT_SELL, TEHRAN) == (2, 0)
            assert await harvester.harvest_pair(APARTMENT_SELL, TEHRAN) == (0, 0)

    assert len(_queued(seeded_engine)) == 2


@pytest.mark.asyncio
async def test_stale_rows_are_reactivated_in_place(seeded_engine):
    old = datetime.now(timezone.utc) - timedelta(hours=5)
    recent = datetime.now(timezone.utc) - timedelta(minutes=10)
    async with respx.mock() as router:
        router.post(SEARCH_URL).mock(return_value=httpx.Response(200, json=search_page(["old", "fresh", "dead"])))
        async with httpx.AsyncClient(transport=httpx.MockTransport(router.handler)) as session:
            harvester = _harvester(seeded_engine, session)
            await harvester.harvest_pair(APARTMENT_SELL, TEHRAN)
            with seeded_engine.begin() as conn:
                for token, status, fetched, attempts in (
                    ("old", COMPLETED, old, 0),
                    ("fresh", COMPLETED, recent, 0),
                    ("dead", FAILED, old, 5),
                ):
                    conn.execute(
                        update(read_queue)
                        .where(read_queue.c.external_id == token)
                        .values(status=status, last_fetched_at=fetched, fetch_attempts=attempts)
                    )
            enqueued, reactivated = await harvester.harvest_pair(APARTMENT_SELL, TEHRAN)

    assert (enqueued, reactivated) == (0, 1)
    rows = {row.external_id: row for row in _queued(seeded_engine)}
    assert len(rows) == 3
    assert rows["old"].status == PENDING
    assert rows["old"].fetch_attempts == 0
    assert rows["fresh"].status == COMPLETED
    assert rows["dead"].status == FAILED


@pytest.mark.asyncio
async def test_page_cap_stops_pagination(seeded_engine):
    async with respx.mock() as router:
        route = router.post(SEARCH_URL).mock(
            side_effect=[httpx.Response(200, json=search_page([f"p{i}"], cursor=str(i))) for i in range(5)]
        )
        async with httpx.AsyncClient(transport=httpx.MockTransport(router.handler)) as session:
            harvester = _harvester(seeded_engine, session, max_pages=2)
            assert await harvester.harvest_pair(APARTMENT_SELL, TEHRAN) == (2, 0)
    assert route.call_count == 2


@pytest.mark.asyncio
async def test_empty_page_ends_pair(seeded_engine):
    async with respx.mock() as router:
        route = router.post(SEARCH_URL).mock(return_value=httpx.Response(200, json=search_page([], cursor="x")))
        async with httpx.AsyncClient(transport=httpx.MockTransport(router.handler)) as session:
            harvester = _harvester(seeded_engine, session)
            assert await harvester.harvest_pair(APARTMENT_SELL, TEHRAN) == (0, 0)
    assert route.call_count == 1


@pytest.mark.asyncio
async def test_failed_pair_does_not_stop_the_run(seeded_engine, caplog):
    def respond(request):
        body = json.loads(request.content)
        slug = body["search_data"]["form_data"]["data"]["category"]["str"]["value"]
        city = body["city_ids"][0]
        if slug == "apartment-sell":
            return httpx.Response(500)
        return httpx.Response(200, json=search_page([f"{slug}-{city}"]))

    async with respx.mock() as router:
        router.post(SEARCH_URL).mock(side_effect=respond)
        async with httpx.AsyncClient(transport=httpx.MockTransport(router.handler)) as session:
            harvester = _harvester(seeded_engine, session)
            summary = await harvester.harvest_allowed_scopes()

    assert summary.categories == 5
    assert summary.locations == 2
    assert summary.combinations == 10
    assert summary.enqueued == 8
    failures = [r for r in caplog.records if r.getMessage().startswith("Failed to harvest")]
    assert len(failures) == 2
    assert all(r.exc_info for r in failures)


def test_category_scopes_keep_only_leaves(seeded_engine):
    with seeded_engine.begin() as conn:
        conn.execute(update(categories).values(allow_posting=True))
    harvester = Harvester(seeded_engine, client=None)
    scopes = harvester.resolve_category_scopes()
    assert [scope.slug for scope in scopes] == [
        "temporary-rent",
        "apartment-rent",
        "house-villa-rent",
        "apartment-sell",
        "house-villa-sell",
    ]


def test_select_leaf_scopes_prefers_deepest_path():
    parent = CategoryScope(id=1, slug="residential-sell", path="re/residential-sell", depth=1)
    child = CategoryScope(id=2, slug="apartment-sell", path="re/residential-sell/apartment-sell", depth=2)
    lookalike = CategoryScope(id=3, slug="residential-sell-old", path="re/residential-sell-old", depth=1)
    assert select_leaf_scopes([parent, child, lookalike]) == [lookalike, child]


def test_location_scopes_prefer_eligible_provinces(seeded_engine):
    harvester = Harvester(seeded_engine, client=None)
    assert [(s.kind, s.slug) for s in harvester.resolve_location_scopes()] == [(CITY, "tehran"), (CITY, "karaj")]

    with seeded_engine.begin() as conn:
        conn.execute(update(provinces).where(provinces.c.id == 8).values(allow_posting=True))
    scopes = harvester.resolve_location_scopes()
    assert [(s.kind, s.slug) for s in scopes] == [(PROVINCE, "tehran-province"), (CITY, "karaj")]
    assert scopes[0].province_id == 8 and scopes[0].city_id is None


def test_page_limit_uses_night_window():
    harvester = Harvester(None, client=None, config=HarvestConfig(night_start_hour=1, night_end_hour=6))
    # 23:00 UTC is 02:30 in Tehran
    assert harvester.page_limit(datetime(2024, 6, 1, 23, 0, tzinfo=timezone.utc)) == 5
    assert harvester.page_limit(datetime(2024, 6, 1, 9, 0, tzinfo=timezone.utc)) == 20

    wrapped = Harvester(None, client=None, config=HarvestConfig(night_start_hour=22, night_end_hour=4, night_max_pages=None))
    assert wrapped.page_limit(datetime(2024, 6, 1, 19, 0, tzinfo=timezone.utc)) is None


@pytest.mark.parametrize(
    "row, token",
    [
        ({"data": {"token": " abc "}}, "abc"),
        ({"data": {"post_token": "def"}}, "def"),
        ({"data": {"token_card": {"token": "ghi"}}}, "ghi"),
        ({"data": {"token_card": "jkl"}}, "jkl"),
        ({"data": {"title": "no token"}}, None),
        ({"data": "broken"}, None),
    ],
)
def test_extract_token(row, token):
    assert extract_token(row) == token
