import asyncio
from datetime import datetime, timedelta, timezone

import httpx
import pytest
import respx
from sqlalchemy import event, insert, select, update

from estateflow.config import DivarConfig, FetchConfig
from estateflow.db.queues import release_stuck_reads, reserve_read_batch
from estateflow.db.tables import COMPLETED, FAILED, PENDING, PROCESSING, analyze_queue, read_queue, upstream_sessions
from estateflow.ingest.divar import DivarClient
from estateflow.ingest.fetcher import Fetcher
from estateflow.ingest.sessions import SessionPool
from estateflow.utils.rate_limit import RateLimiter
from factories import enqueue
from payloads import DETAIL_URL, apartment_detail


class Sleeps:
    def __init__(self):
        self.calls = []

    async def __call__(self, seconds):
        self.calls.append(seconds)


def _ticking(step):
    ticks = iter(range(1000))
    return lambda: next(ticks) * step


def _fetcher(engine, session, sleep, *, clock=lambda: 0.0, **kwargs):
    client = DivarClient(session=session, rate_limiter=RateLimiter(max_calls=100))
    return Fetcher(engine, client, FetchConfig(), sleep=sleep, clock=clock, **kwargs)


def _read_row(engine, token):
    with engine.connect() as conn:
        return conn.execute(select(read_queue).where(read_queue.c.external_id == token)).one()


@pytest.mark.asyncio
async def test_fetch_moves_payload_to_analyze_queue(seeded_engine):
    enqueue(seeded_engine, "AaBbCcDd")
    payload = apartment_detail()
    sleep = Sleeps()
    async with respx.mock(assert_all_called=True) as router:
        router.get(f"{DETAIL_URL}/AaBbCcDd").mock(return_value=httpx.Response(200, json=payload))
        async with httpx.AsyncClient(transport=httpx.MockTransport(router.handler)) as session:
            summary = await _fetcher(seeded_engine, session, sleep).fetch_next_posts()

    assert (summary.attempted, summary.succeeded, summary.failed) == (1, 1, 0)
    row = _read_row(seeded_engine, "AaBbCcDd")
    assert row.status == COMPLETED
    assert row.last_fetched_at is not None
    with seeded_engine.connect() as conn:
        analyze = conn.execute(select(analyze_queue)).one()
    assert analyze.status == PENDING
    assert analyze.retry_count == 0
    assert analyze.read_queue_id == row.id
    assert analyze.payload == payload


@pytest.mark.asyncio
async def test_throttled_batch_waits_for_retry_after(seeded_engine):
    enqueue(seeded_engine, "ok-token")
    enqueue(seeded_engine, "busy-token")
    sleep = Sleeps()
    async with respx.mock(assert_all_called=True) as router:
        router.get(f"{DETAIL_URL}/ok-token").mock(return_value=httpx.Response(200, json={"seo": {}}))
        router.get(f"{DETAIL_URL}/busy-token").mock(return_value=httpx.Response(429, headers={"Retry-After": "2"}))
        async with httpx.AsyncClient(transport=httpx.MockTransport(router.handler)) as session:
            fetcher = _fetcher(seeded_engine, session, sleep)
            batch = reserve_read_batch(seeded_engine, 2)
            summary = await fetcher.fetch_batch(batch)

    assert (summary.attempted, summary.succeeded, summary.throttled) == (2, 1, 1)
    assert sleep.calls == [2.0]
    assert _read_row(seeded_engine, "ok-token").status == COMPLETED
    busy = _read_row(seeded_engine, "busy-token")
    assert busy.status == PENDING
    assert busy.fetch_attempts == 1


@pytest.mark.asyncio
async def test_throttle_without_header_uses_default_wait(seeded_engine):
    enqueue(seeded_engine, "busy-token")
    sleep = Sleeps()
    async with respx.mock() as router:
        router.get(f"{DETAIL_URL}/busy-token").mock(return_value=httpx.Response(429))
        async with httpx.AsyncClient(transport=httpx.MockTransport(router.handler)) as session:
            fetcher = _fetcher(seeded_engine, session, sleep)
            await fetcher.fetch_batch(reserve_read_batch(seeded_engine, 2))
    assert sleep.calls == [5.0]


@pytest.mark.asyncio
async def test_fifth_failure_marks_item_failed(seeded_engine):
    enqueue(seeded_engine, "broken", fetch_attempts=4)
    async with respx.mock() as router:
        router.get(f"{DETAIL_URL}/broken").mock(return_value=httpx.Response(500))
        async with httpx.AsyncClient(transport=httpx.MockTransport(router.handler)) as session:
            summary = await _fetcher(seeded_engine, session, Sleeps()).fetch_next_posts()

    assert summary.failed == 1
    row = _read_row(seeded_engine, "broken")
    assert row.status == FAILED
    assert row.fetch_attempts == 5
    with seeded_engine.connect() as conn:
        assert conn.execute(select(analyze_queue)).first() is None


@pytest.mark.asyncio
async def test_transport_error_is_charged_and_requeued(seeded_engine):
    enqueue(seeded_engine, "flaky")
    async with respx.mock() as router:
        router.get(f"{DETAIL_URL}/flaky").mock(side_effect=httpx.ConnectTimeout("slow"))
        async with httpx.AsyncClient(transport=httpx.MockTransport(router.handler)) as session:
            summary = await _fetcher(seeded_engine, session, Sleeps()).fetch_next_posts()

    assert summary.failed == 1
    row = _read_row(seeded_engine, "flaky")
    assert (row.status, row.fetch_attempts) == (PENDING, 1)


@pytest.mark.asyncio
async def test_rejected_session_is_deactivated_and_item_released(seeded_engine):
    enqueue(seeded_engine, "secret")
    now = datetime.now(timezone.utc)
    with seeded_engine.begin() as conn:
        conn.execute(insert(upstream_sessions).values(label="admin", cookie="token=abc", active=True, updated_at=now))

    async with respx.mock() as router:
        route = router.get(f"{DETAIL_URL}/secret").mock(return_value=httpx.Response(401))
        async with httpx.AsyncClient(transport=httpx.MockTransport(router.handler)) as session:
            fetcher = _fetcher(seeded_engine, session, Sleeps(), sessions=SessionPool(seeded_engine))
            summary = await fetcher.fetch_batch(reserve_read_batch(seeded_engine, 2))

    assert route.calls[0].request.headers["Cookie"] == "token=abc"
    assert (summary.succeeded, summary.failed, summary.throttled) == (0, 0, 0)
    row = _read_row(seeded_engine, "secret")
    assert (row.status, row.fetch_attempts) == (PENDING, 0)
    with seeded_engine.connect() as conn:
        assert conn.execute(select(upstream_sessions.c.active)).scalar_one() is False


@pytest.mark.asyncio
async def test_rejection_without_session_is_a_normal_failure(seeded_engine):
    enqueue(seeded_engine, "secret")
    async with respx.mock() as router:
        router.get(f"{DETAIL_URL}/secret").mock(return_value=httpx.Response(403))
        async with httpx.AsyncClient(transport=httpx.MockTransport(router.handler)) as session:
            fetcher = _fetcher(seeded_engine, session, Sleeps(), sessions=SessionPool(seeded_engine))
            summary = await fetcher.fetch_batch(reserve_read_batch(seeded_engine, 2))

    assert summary.failed == 1
    assert _read_row(seeded_engine, "secret").fetch_attempts == 1


def test_configured_cookie_is_disabled_after_rejection(engine):
    pool = SessionPool(engine, fallback_cookie="token=env")
    session = pool.current()
    assert (session.id, session.cookie) == (None, "token=env")
    pool.deactivate(session)
    assert pool.current() is None


def test_stuck_processing_rows_are_released(seeded_engine):
    enqueue(seeded_engine, "stuck")
    enqueue(seeded_engine, "busy")
    long_ago = datetime.now(timezone.utc) - timedelta(minutes=5)
    with seeded_engine.begin() as conn:
        conn.execute(
            update(read_queue)
            .where(read_queue.c.external_id == "stuck")
            .values(status=PROCESSING, fetch_attempts=2, updated_at=long_ago)
        )
        conn.execute(update(read_queue).where(read_queue.c.external_id == "busy").values(status=PROCESSING))

    assert release_stuck_reads(seeded_engine, 60) == 1
    stuck = _read_row(seeded_engine, "stuck")
    assert (stuck.status, stuck.fetch_attempts) == (PENDING, 0)
    assert _read_row(seeded_engine, "busy").status == PROCESSING


def test_reservation_claims_oldest_pending_rows(seeded_engine):
    for token in ("a", "b", "c"):
        enqueue(seeded_engine, token)
    first = reserve_read_batch(seeded_engine, 2)
    second = reserve_read_batch(seeded_engine, 2)
    assert [job.external_id for job in first] == ["a", "b"]
    assert [job.external_id for job in second] == ["c"]
    assert _read_row(seeded_engine, "a").status == PROCESSING


def test_rows_claimed_concurrently_are_not_returned(seeded_engine):
    enqueue(seeded_engine, "taken")
    enqueue(seeded_engine, "free")
    claimed_elsewhere = []

    def competing_claim(conn, cursor, statement, parameters, context, executemany):
        if statement.startswith("UPDATE read_queue") and not claimed_elsewhere:
            claimed_elsewhere.append(True)
            cursor.execute("UPDATE read_queue SET status = 'PROCESSING' WHERE external_id = 'taken'")

    event.listen(seeded_engine, "before_cursor_execute", competing_claim)
    try:
        jobs = reserve_read_batch(seeded_engine, 2)
    finally:
        event.remove(seeded_engine, "before_cursor_execute", competing_claim)

    assert [job.external_id for job in jobs] == ["free"]
    assert _read_row(seeded_engine, "free").status == PROCESSING


@pytest.mark.asyncio
async def test_full_batches_are_spaced_by_min_interval(seeded_engine):
    for token in ("first", "second", "third"):
        enqueue(seeded_engine, token)
    sleep = Sleeps()
    async with respx.mock() as router:
        router.get(url__startswith=DETAIL_URL).mock(return_value=httpx.Response(200, json={"seo": {}}))
        async with httpx.AsyncClient(transport=httpx.MockTransport(router.handler)) as session:
            fetcher = _fetcher(seeded_engine, session, sleep, clock=_ticking(0.25))
            summary = await fetcher.fetch_next_posts()

    assert (summary.attempted, summary.succeeded) == (3, 3)
    # only the full first batch is followed by a pause
    assert sleep.calls == [pytest.approx(0.75)]


class TrickleServer:
    """Answers every request with a JSON body sent one byte at a time."""

    body = b'{"seo": {}} '

    def __init__(self, delay):
        self.delay = delay
        self.stopped = asyncio.Event()

    async def handle(self, reader, writer):
        await reader.readuntil(b"\r\n\r\n")
        writer.write(
            b"HTTP/1.1 200 OK\r\nContent-Type: application/json\r\nContent-Length: %d\r\n\r\n" % len(self.body)
        )
        try:
            for byte in self.body:
                if self.stopped.is_set():
                    break
                writer.write(bytes([byte]))
                await writer.drain()
                await asyncio.sleep(self.delay)
        except ConnectionError:
            pass
        finally:
            writer.close()


@pytest.mark.asyncio
async def test_slow_body_hits_the_request_deadline(seeded_engine):
    enqueue(seeded_engine, "SlowPost")
    trickle = TrickleServer(delay=0.4)
    server = await asyncio.start_server(trickle.handle, "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]
    config = DivarConfig(detail_url=f"http://127.0.0.1:{port}/v8/posts-v2/web")
    loop = asyncio.get_running_loop()
    try:
        async with httpx.AsyncClient(trust_env=False) as session:
            client = DivarClient(config, session=session, rate_limiter=RateLimiter(max_calls=100))
            fetcher = Fetcher(
                seeded_engine, client, FetchConfig(request_timeout=1.0), sleep=Sleeps(), clock=lambda: 0.0
            )
            started = loop.time()
            summary = await fetcher.fetch_next_posts()
            elapsed = loop.time() - started
    finally:
        trickle.stopped.set()
        server.close()
        await server.wait_closed()

    assert elapsed < 3.0
    assert (summary.attempted, summary.failed) == (1, 1)
    row = _read_row(seeded_engine, "SlowPost")
    assert (row.status, row.fetch_attempts) == (PENDING, 1)


@pytest.mark.asyncio
async def test_fetch_detail_raises_timeout_past_deadline():
    trickle = TrickleServer(delay=0.4)
    server = await asyncio.start_server(trickle.handle, "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]
    config = DivarConfig(detail_url=f"http://127.0.0.1:{port}/v8/posts-v2/web")
    try:
        async with httpx.AsyncClient(trust_env=False) as session:
            client = DivarClient(config, session=session, rate_limiter=RateLimiter(max_calls=100))
            with pytest.raises(httpx.TimeoutException, match="exceeded 1.0s"):
                await client.fetch_detail("tok", timeout=1.0)
    finally:
        trickle.stopped.set()
        server.close()
        await server.wait_closed()
