"""Drain the analyze queue into normalized post rows."""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections.abc import Awaitable, Callable
from datetime import datetime, time as dt_time, timedelta, timezone
from typing import Any

from sqlalchemy import delete, insert, select, update
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from estateflow.config import AnalyzeConfig
from estateflow.db.queues import AnalyzeJob, complete_analyze, pending_analyze_jobs, record_analyze_failure
from estateflow.db.tables import COMPLETED, FAILED, districts, post_attributes, post_media, posts
from estateflow.ingest.models import AnalyzeSummary, ParsedPost
from estateflow.ingest.parser import parse_post
from estateflow.utils.dates import utcnow

logger = logging.getLogger(__name__)


class MissingCategoryError(ValueError):
    """Neither the read-queue row nor the payload names a category."""


def resolve_published_at(anchor: datetime | None, parsed: ParsedPost) -> datetime | None:
    """Anchor minus the relative duration when both exist, else the Jalali date, else ``None``.

    The relative duration wins even when it spans more than a day.
    """
    if anchor is not None and parsed.relative_publish_ms is not None:
        return anchor - timedelta(milliseconds=parsed.relative_publish_ms)
    if parsed.jalali_gregorian_date is not None:
        return datetime.combine(parsed.jalali_gregorian_date, dt_time.min, tzinfo=timezone.utc)
    return None


class Analyzer:
    def __init__(
        self,
        engine: Engine,
        config: AnalyzeConfig | None = None,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.engine = engine
        self.config = config or AnalyzeConfig()
        self._sleep = sleep
        self._clock = clock
        self._district_cache: dict[str, int | None] = {}
        self._cache_lock = threading.Lock()

    async def process_pending_jobs(self, batch_size: int | None = None) -> AnalyzeSummary:
        batch_size = batch_size or self.config.batch_size
        loop = asyncio.get_running_loop()
        summary = AnalyzeSummary()
        first = True
        while True:
            jobs = await loop.run_in_executor(None, pending_analyze_jobs, self.engine, batch_size)
            if not jobs:
                if first:
                    logger.info("No pending posts to normalize")
                break
            first = False
            await self._process_batch(jobs, summary)
            if len(jobs) < batch_size:
                break
        logger.info("Analyze summary: processed=%d failed=%d", summary.processed, summary.failed)
        return summary

    async def _process_batch(self, jobs: list[AnalyzeJob], summary: AnalyzeSummary) -> None:
        loop = asyncio.get_running_loop()
        size = self.config.chunk_size
        for start in range(0, len(jobs), size):
            chunk = jobs[start : start + size]
            started = self._clock()
            results = await asyncio.gather(*(loop.run_in_executor(None, self.process_job, job) for job in chunk))
            succeeded = sum(1 for ok in results if ok)
            summary.processed += succeeded
            summary.failed += len(results) - succeeded
            elapsed = self._clock() - started
            if elapsed < self.config.chunk_interval:
                await self._sleep(self.config.chunk_interval - elapsed)

    def process_job(self, job: AnalyzeJob) -> bool:
        """Parse and persist one job; failures are charged to the job's retry budget."""
        try:
            parsed = parse_post(job.payload)
            self.persist(job, parsed)
        except Exception as exc:
            self._handle_failure(job, exc)
            return False
        logger.info(
            "Post %s normalized (%s @ %s)",
            job.external_id,
            parsed.cat3 or job.category_slug or "unknown",
            parsed.city_slug or job.city_slug or "n/a",
        )
        return True

    def _handle_failure(self, job: AnalyzeJob, exc: Exception) -> None:
        message = str(exc) or exc.__class__.__name__
        try:
            status = record_analyze_failure(self.engine, job, message, self.config.max_attempts)
        except SQLAlchemyError:
            logger.exception("Could not record analyze failure for post %s", job.external_id)
            return
        if status == FAILED:
            logger.error(
                "Post %s normalization failed permanently (attempt %d/%d): %s",
                job.external_id,
                job.retry_count,
                self.config.max_attempts,
                message,
                exc_info=exc,
            )
        else:
            logger.warning(
                "Post %s normalization failed (attempt %d/%d): %s",
                job.external_id,
                job.retry_count,
                self.config.max_attempts,
                message,
            )

    def resolve_district_id(self, conn: Connection, slug: str | None, city_id: int | None) -> int | None:
        if not slug:
            return None
        key = f"{slug}:{city_id}" if city_id else slug
        with self._cache_lock:
            if key in self._district_cache:
                return self._district_cache[key]
        query = select(districts.c.id).where(districts.c.slug == slug)
        if city_id:
            query = query.where(districts.c.city_id == city_id)
        district_id = conn.execute(query.order_by(districts.c.id).limit(1)).scalar_one_or_none()
        with self._cache_lock:
            self._district_cache[key] = district_id
        return district_id

    def persist(self, job: AnalyzeJob, parsed: ParsedPost) -> int:
        """Upsert the post by read-queue id and replace its media and attributes in one transaction."""
        category_slug = job.category_slug or parsed.cat3
        if not category_slug:
            raise MissingCategoryError(f"Missing category slug for post {job.external_id}")
        province_id = job.province_id if job.province_id is not None else parsed.province_id
        city_id = job.city_id if job.city_id is not None else parsed.city_id
        now = utcnow()

        with self.engine.begin() as conn:
            values = self._post_values(job, parsed, category_slug, province_id, city_id)
            values["district_id"] = self.resolve_district_id(conn, parsed.district_slug, city_id)
            values["updated_at"] = now
            post_id = conn.execute(
                select(posts.c.id).where(posts.c.read_queue_id == job.read_queue_id)
            ).scalar_one_or_none()
            if post_id:
                conn.execute(update(posts).where(posts.c.id == post_id).values(**values))
            else:
                result = conn.execute(
                    insert(posts).values(
                        read_queue_id=job.read_queue_id,
                        notifications_checked=False,
                        created_at=now,
                        **values,
                    )
                )
                post_id = result.inserted_primary_key[0]

            conn.execute(delete(post_media).where(post_media.c.post_id == post_id))
            if parsed.medias:
                conn.execute(
                    insert(post_media),
                    [
                        {
                            "post_id": post_id,
                            "position": media.position,
                            "url": media.url,
                            "thumbnail_url": media.thumbnail_url,
                            "alt": media.alt,
                        }
                        for media in parsed.medias
                    ],
                )
            conn.execute(delete(post_attributes).where(post_attributes.c.post_id == post_id))
            if parsed.attributes:
                conn.execute(
                    insert(post_attributes),
                    [
                        {
                            "post_id": post_id,
                            "key": attribute.key,
                            "label": attribute.label,
                            "type": attribute.type,
                            "string_value": attribute.string_value,
                            "number_value": attribute.number_value,
                            "bool_value": attribute.bool_value,
                            "unit": attribute.unit,
                            "raw_value": attribute.raw_value,
                        }
                        for attribute in parsed.attributes
                    ],
                )
            complete_analyze(conn, job.id, now=now)
        return post_id

    def _post_values(
        self,
        job: AnalyzeJob,
        parsed: ParsedPost,
        category_slug: str,
        province_id: int | None,
        city_id: int | None,
    ) -> dict[str, Any]:
        return {
            "source": job.source,
            "external_id": job.external_id,
            "status": COMPLETED,
            "category_id": job.category_id,
            "category_slug": category_slug,
            "cat1": parsed.cat1,
            "cat2": parsed.cat2,
            "cat3": parsed.cat3 or category_slug,
            "title": parsed.title,
            "seo_title": parsed.seo_title,
            "seo_description": parsed.seo_description,
            "display_title": parsed.display_title,
            "display_subtitle": parsed.display_subtitle,
            "share_title": parsed.share_title,
            "share_url": parsed.share_url,
            "permalink": parsed.permalink,
            "description": parsed.description,
            "contact_uuid": parsed.contact_uuid,
            "business_type": parsed.business_type,
            "conversion_type": parsed.conversion_type,
            "expires_at": parsed.expires_at,
            "published_at": resolve_published_at(job.anchor, parsed),
            "published_at_jalali": parsed.published_at_jalali,
            "jalali_gregorian_date": parsed.jalali_gregorian_date,
            "relative_publish_ms": parsed.relative_publish_ms,
            "relative_publish_text": parsed.relative_publish_text,
            "price_total": parsed.price_total,
            "price_per_square": parsed.price_per_square,
            "deposit_amount": parsed.deposit_amount,
            "rent_amount": parsed.rent_amount,
            "daily_rate_normal": parsed.daily_rate_normal,
            "daily_rate_weekend": parsed.daily_rate_weekend,
            "daily_rate_holiday": parsed.daily_rate_holiday,
            "extra_person_fee": parsed.extra_person_fee,
            "area": parsed.area,
            "area_label": parsed.area_label,
            "land_area": parsed.land_area,
            "land_area_label": parsed.land_area_label,
            "rooms": parsed.rooms,
            "rooms_label": parsed.rooms_label,
            "floor": parsed.floor,
            "floor_label": parsed.floor_label,
            "floors_count": parsed.floors_count,
            "unit_per_floor": parsed.unit_per_floor,
            "year_built": parsed.year_built,
            "year_built_label": parsed.year_built_label,
            "capacity": parsed.capacity,
            "capacity_label": parsed.capacity_label,
            "has_parking": parsed.has_parking,
            "has_elevator": parsed.has_elevator,
            "has_warehouse": parsed.has_warehouse,
            "has_balcony": parsed.has_balcony,
            "is_rebuilt": parsed.is_rebuilt,
            "photos_verified": parsed.photos_verified,
            "image_count": parsed.image_count,
            "latitude": parsed.latitude,
            "longitude": parsed.longitude,
            "province_id": province_id,
            "province_name": job.province_name,
            "city_id": city_id,
            "city_slug": parsed.city_slug or job.city_slug,
            "city_name": job.city_name or parsed.city_name,
            "district_slug": parsed.district_slug,
            "district_name": parsed.district_name,
            "raw_payload": job.payload,
        }
