"""HTTP client for the Divar search and post detail endpoints."""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Any

import httpx

from estateflow.config import DivarConfig
from estateflow.ingest.models import CategoryScope, LocationScope, SearchPage
from estateflow.utils.rate_limit import RateLimiter
from estateflow.utils.retry import retry_async

logger = logging.getLogger(__name__)

PAGINATION_TYPE = "type.googleapis.com/post_list.PaginationData"
SERVER_PAYLOAD_TYPE = "type.googleapis.com/widgets.SearchData.ServerPayload"
POST_ROW = "POST_ROW"
INITIAL_CUMULATIVE = 50

USER_AGENTS = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/131.0.6778.86 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 14_5) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.5 Safari/605.1.15",
    "Mozilla/5.0 (X11; Linux x86_64; rv:131.0) Gecko/20100101 Firefox/131.0",
    "Mozilla/5.0 (Linux; Android 14; Pixel 8 Pro) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/131.0.6778.70 Mobile Safari/537.36",
)

BASE_HEADERS = {
    "Accept": "application/json, text/plain, */*",
    "Referer": "https://divar.ir/",
    "Origin": "https://divar.ir",
}


def build_search_body(
    category: CategoryScope,
    location: LocationScope,
    *,
    page: int,
    cumulative: int,
    cursor: str | None,
) -> dict[str, Any]:
    pagination: dict[str, Any] = {
        "@type": PAGINATION_TYPE,
        "page": page,
        "layer_page": page,
        "cumulative_widgets_count": cumulative,
    }
    if cursor:
        pagination["last_post_date"] = cursor
    return {
        "city_ids": location.city_ids,
        "pagination_data": pagination,
        "disable_recommendation": True,
        "map_state": {"camera_info": {"bbox": {}}},
        "search_data": {
            "form_data": {"data": {"category": {"str": {"value": category.slug}}}},
            "server_payload": {
                "@type": SERVER_PAYLOAD_TYPE,
                "additional_form_data": {"data": {"sort": {"str": {"value": "sort_date"}}}},
            },
        },
    }


def parse_search_page(payload: dict[str, Any], cumulative: int) -> SearchPage:
    widgets = payload.get("list_widgets")
    rows = [
        widget
        for widget in (widgets if isinstance(widgets, list) else [])
        if isinstance(widget, dict) and widget.get("widget_type") == POST_ROW
    ]
    pagination = payload.get("pagination") or {}
    data = pagination.get("data") if isinstance(pagination, dict) else None
    data = data if isinstance(data, dict) else {}
    next_cursor = data.get("last_post_date") or None
    next_cumulative = data.get("cumulative_widgets_count")
    if not isinstance(next_cumulative, int) or isinstance(next_cumulative, bool):
        next_cumulative = cumulative
    return SearchPage(rows=rows, next_cursor=next_cursor, cumulative=next_cumulative)


class DivarClient:
    def __init__(
        self,
        config: DivarConfig | None = None,
        *,
        session: httpx.AsyncClient | None = None,
        rate_limiter: RateLimiter | None = None,
        search_timeout: float = 15.0,
    ) -> None:
        self.config = config or DivarConfig()
        self._session = session or httpx.AsyncClient(timeout=search_timeout)
        self._rate_limiter = rate_limiter or RateLimiter(max_calls=self.config.max_requests_per_second, period=1.0)
        self._search_timeout = search_timeout

    async def close(self) -> None:
        await self._session.aclose()

    def _headers(self, cookie: str | None) -> dict[str, str]:
        headers = dict(BASE_HEADERS)
        headers["User-Agent"] = random.choice(USER_AGENTS)
        if cookie:
            headers["Cookie"] = cookie
        return headers

    async def search(
        self,
        category: CategoryScope,
        location: LocationScope,
        *,
        page: int = 0,
        cursor: str | None = None,
        cumulative: int = INITIAL_CUMULATIVE,
    ) -> SearchPage:
        body = build_search_body(category, location, page=page, cumulative=cumulative, cursor=cursor)
        response = await retry_async(self._post_search)(body)
        response.raise_for_status()
        return parse_search_page(response.json(), cumulative)

    async def _post_search(self, body: dict[str, Any]) -> httpx.Response:
        await self._rate_limiter.acquire()
        return await self._session.post(
            self.config.search_url,
            json=body,
            headers=self._headers(self.config.session_cookie),
            timeout=self._search_timeout,
        )

    async def fetch_detail(self, token: str, *, cookie: str | None = None, timeout: float = 15.0) -> Any:
        """GET one post detail payload.

        ``timeout`` bounds the whole request, body included; exceeding it raises
        ``httpx.TimeoutException``. Non-2xx responses raise ``httpx.HTTPStatusError``.
        """
        await self._rate_limiter.acquire()
        url = f"{self.config.detail_url.rstrip('/')}/{token}"
        try:
            return await asyncio.wait_for(self._get_detail(url, cookie, timeout), timeout)
        except asyncio.TimeoutError:
            raise httpx.TimeoutException(f"Detail request for {token} exceeded {timeout:.1f}s") from None

    async def _get_detail(self, url: str, cookie: str | None, timeout: float) -> Any:
        response = await self._session.get(url, headers=self._headers(cookie), timeout=timeout)
        response.raise_for_status()
        return response.json()
