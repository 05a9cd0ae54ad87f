from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, Iterable, Optional
from urllib.parse import quote

import httpx
from pydantic import BaseModel
from sqlmodel import select

from .bible import find_references, normalize_reference
from .config import settings
from .db import get_session
from .errors import UpstreamUnavailable
from .models import ReferenceValidationRecord, as_utc, utc_now
from .schemas import (
    CacheStats,
    DailyContent,
    ReferenceReport,
    ReferenceStatus,
    ReferenceValidation,
    StudyPlan,
)

logger = logging.getLogger(__name__)


def _is_expired(expires_at: Optional[datetime], now: datetime) -> bool:
    return expires_at is not None and as_utc(expires_at) <= as_utc(now)


class LookupResult(BaseModel):
    reference: str
    ok: bool
    text: Optional[str] = None
    error: Optional[str] = None


class ReferenceLookup:
    async def lookup(self, reference: str) -> LookupResult:
        raise NotImplementedError


class BibleApiLookup(ReferenceLookup):
    """Looks references up against a bible-api.com compatible service.

    A 404 or an error body means the reference does not exist. Timeouts,
    connection errors and 5xx responses mean the service could not answer
    and are raised as UpstreamUnavailable.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = (base_url or settings.bible_api_base_url).rstrip("/")
        self.timeout = timeout or settings.bible_api_timeout_seconds
        self.transport = transport

    async def lookup(self, reference: str) -> LookupResult:
        url = f"{self.base_url}/{quote(reference)}"
        headers = {"User-Agent": settings.user_agent}
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            for attempt in range(settings.bible_api_max_retries + 1):
                try:
                    resp = await client.get(url, headers=headers, follow_redirects=True)
                except httpx.RequestError as exc:
                    if attempt < settings.bible_api_max_retries:
                        await asyncio.sleep(2**attempt)
                        continue
                    raise UpstreamUnavailable("bible-api", f"{type(exc).__name__}: {exc}") from exc

                if resp.status_code in {429, 500, 502, 503, 504}:
                    if attempt < settings.bible_api_max_retries:
                        await asyncio.sleep(2**attempt)
                        continue
                    raise UpstreamUnavailable("bible-api", f"HTTP {resp.status_code}")
                break

        if resp.status_code == 404:
            return LookupResult(reference=reference, ok=False, error="Reference not found")
        if resp.status_code >= 400:
            raise UpstreamUnavailable("bible-api", f"HTTP {resp.status_code}")
        try:
            body = resp.json()
        except ValueError as exc:
            raise UpstreamUnavailable("bible-api", "invalid JSON body") from exc
        if not isinstance(body, dict):
            raise UpstreamUnavailable("bible-api", f"unexpected {type(body).__name__} body")
        if body.get("error"):
            return LookupResult(reference=reference, ok=False, error=str(body["error"]))
        text = (body.get("text") or "").strip()
        if not text:
            return LookupResult(reference=reference, ok=False, error="Empty passage")
        return LookupResult(reference=body.get("reference") or reference, ok=True, text=text)


class ReferenceCache:
    def get(self, key: str) -> Optional[ReferenceValidation]:
        raise NotImplementedError

    def put(self, entry: ReferenceValidation) -> None:
        raise NotImplementedError

    def purge_expired(self, now: datetime) -> int:
        raise NotImplementedError

    def stats(self, now: datetime) -> CacheStats:
        raise NotImplementedError


class InMemoryReferenceCache(ReferenceCache):
    def __init__(self) -> None:
        self._entries: dict[str, ReferenceValidation] = {}

    def get(self, key: str) -> Optional[ReferenceValidation]:
        return self._entries.get(key)

    def put(self, entry: ReferenceValidation) -> None:
        self._entries[entry.reference] = entry

    def purge_expired(self, now: datetime) -> int:
        expired = [k for k, v in self._entries.items() if _is_expired(v.expires_at, now)]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def stats(self, now: datetime) -> CacheStats:
        expired = sum(1 for v in self._entries.values() if _is_expired(v.expires_at, now))
        return CacheStats(total=len(self._entries), valid=len(self._entries) - expired, expired=expired)


class SQLReferenceCache(ReferenceCache):
    def get(self, key: str) -> Optional[ReferenceValidation]:
        with get_session() as session:
            record = session.get(ReferenceValidationRecord, key)
            if record is None:
                return None
            return ReferenceValidation(
                reference=record.reference,
                is_valid=record.is_valid,
                status=ReferenceStatus(record.status),
                text=record.text,
                error=record.error,
                validated_at=as_utc(record.validated_at),
                expires_at=as_utc(record.expires_at),
            )

    def put(self, entry: ReferenceValidation) -> None:
        record = ReferenceValidationRecord(
            reference=entry.reference,
            is_valid=entry.is_valid,
            status=entry.status.value,
            text=entry.text,
            error=entry.error,
            validated_at=entry.validated_at,
            expires_at=entry.expires_at,
        )
        with get_session() as session:
            session.merge(record)
            session.commit()

    def purge_expired(self, now: datetime) -> int:
        with get_session() as session:
            records = session.exec(select(ReferenceValidationRecord)).all()
            expired = [r for r in records if _is_expired(r.expires_at, now)]
            for record in expired:
                session.delete(record)
            session.commit()
            return len(expired)

    def stats(self, now: datetime) -> CacheStats:
        with get_session() as session:
            records = session.exec(select(ReferenceValidationRecord)).all()
            expired = sum(1 for r in records if _is_expired(r.expires_at, now))
            return CacheStats(total=len(records), valid=len(records) - expired, expired=expired)


class CitationValidator:
    def __init__(
        self,
        lookup: ReferenceLookup,
        cache: ReferenceCache,
        ttl_seconds: Optional[int] = None,
        batch_size: Optional[int] = None,
        batch_pause: Optional[float] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.lookup = lookup
        self.cache = cache
        self.ttl = timedelta(seconds=ttl_seconds if ttl_seconds is not None else settings.reference_cache_ttl_seconds)
        self.batch_size = max(1, batch_size or settings.reference_batch_size)
        self.batch_pause = settings.reference_batch_pause_seconds if batch_pause is None else batch_pause
        self.clock = clock

    async def validate(self, reference: str) -> ReferenceValidation:
        key = normalize_reference(reference)
        now = self.clock()
        cached = self.cache.get(key)
        if cached is not None and cached.expires_at and not _is_expired(cached.expires_at, now):
            return cached

        try:
            found = await self.lookup.lookup(key)
        except UpstreamUnavailable as exc:
            if cached is not None:
                logger.warning("reference lookup failed for %s, serving expired cache entry: %s", key, exc)
                return cached
            logger.warning("reference lookup failed for %s: %s", key, exc)
            return ReferenceValidation(
                reference=key,
                is_valid=False,
                status=ReferenceStatus.upstream_unavailable,
                error=str(exc),
                validated_at=now,
            )

        entry = ReferenceValidation(
            reference=key,
            is_valid=found.ok,
            status=ReferenceStatus.valid if found.ok else ReferenceStatus.invalid,
            text=found.text,
            error=found.error,
            validated_at=now,
            expires_at=now + self.ttl,
        )
        self.cache.put(entry)
        return entry

    async def validate_batch(self, references: Iterable[str]) -> list[ReferenceValidation]:
        refs = list(references)
        results: list[ReferenceValidation] = []
        for start in range(0, len(refs), self.batch_size):
            if start and self.batch_pause > 0:
                await asyncio.sleep(self.batch_pause)
            group = refs[start : start + self.batch_size]
            outcomes = await asyncio.gather(*(self.validate(ref) for ref in group), return_exceptions=True)
            for ref, outcome in zip(group, outcomes):
                if isinstance(outcome, BaseException):
                    logger.error("reference validation crashed for %s", ref, exc_info=outcome)
                    outcome = ReferenceValidation(
                        reference=normalize_reference(ref),
                        is_valid=False,
                        status=ReferenceStatus.upstream_unavailable,
                        error=f"{type(outcome).__name__}: {outcome}",
                        validated_at=self.clock(),
                    )
                results.append(outcome)
        return results

    def purge_expired(self) -> int:
        removed = self.cache.purge_expired(self.clock())
        if removed:
            logger.info("purged %s expired reference cache entries", removed)
        return removed

    def cache_stats(self) -> CacheStats:
        return self.cache.stats(self.clock())


def extract_references(plan: StudyPlan, days: Iterable[DailyContent]) -> list[str]:
    refs: list[str] = []
    for outline in plan.days:
        refs.extend(find_references(outline.focus_passage))
    for day in days:
        if day.is_fallback:
            continue
        for passage in day.passages:
            refs.append(normalize_reference(passage.reference))
    seen: set[str] = set()
    unique: list[str] = []
    for ref in refs:
        if ref and ref not in seen:
            seen.add(ref)
            unique.append(ref)
    return unique


def build_report(results: list[ReferenceValidation]) -> ReferenceReport:
    total = len(results)
    valid = sum(1 for r in results if r.status == ReferenceStatus.valid)
    invalid = sum(1 for r in results if r.status == ReferenceStatus.invalid)
    unavailable = total - valid - invalid
    return ReferenceReport(
        total=total,
        valid=valid,
        invalid=invalid,
        unavailable=unavailable,
        valid_rate=(valid / total) if total else 1.0,
        results=results,
    )
