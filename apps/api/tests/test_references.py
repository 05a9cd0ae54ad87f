from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from fakes import Clock, FakeLookup
from studygen.errors import UpstreamUnavailable
from studygen.references import (
    BibleApiLookup,
    CitationValidator,
    InMemoryReferenceCache,
    SQLReferenceCache,
    build_report,
    extract_references,
)
from studygen.schemas import (
    DailyContent,
    DayOutline,
    Passage,
    ReferenceStatus,
    ReferenceValidation,
    StudyPlan,
    StudyStyle,
)

START = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


def _validator(lookup, cache=None, clock=None, **kwargs) -> CitationValidator:
    return CitationValidator(
        lookup,
        cache or InMemoryReferenceCache(),
        ttl_seconds=3600,
        batch_pause=0,
        clock=clock or Clock(START),
        **kwargs,
    )


def test_fresh_hit_skips_upstream() -> None:
    lookup = FakeLookup()
    validator = _validator(lookup)
    first = asyncio.run(validator.validate("John  3 : 16"))
    second = asyncio.run(validator.validate("John 3:16"))
    assert first.status == ReferenceStatus.valid
    assert second == first
    assert lookup.calls == ["John 3:16"]


def test_expired_entry_refreshes_once() -> None:
    lookup = FakeLookup()
    clock = Clock(START)
    validator = _validator(lookup, clock=clock)
    asyncio.run(validator.validate("Romans 8:28"))
    clock.now = START + timedelta(hours=2)
    refreshed = asyncio.run(validator.validate("Romans 8:28"))
    asyncio.run(validator.validate("Romans 8:28"))
    assert len(lookup.calls) == 2
    assert refreshed.validated_at == clock.now
    assert refreshed.expires_at == clock.now + timedelta(hours=1)


def test_failed_refresh_returns_stale_entry_unchanged() -> None:
    lookup = FakeLookup()
    clock = Clock(START)
    validator = _validator(lookup, clock=clock)
    original = asyncio.run(validator.validate("Psalms 23:1"))
    clock.now = START + timedelta(days=2)
    lookup.down = True
    stale = asyncio.run(validator.validate("Psalms 23:1"))
    assert stale == original
    assert len(lookup.calls) == 2


def test_failure_without_cache_is_explicit() -> None:
    validator = _validator(FakeLookup(down=True))
    result = asyncio.run(validator.validate("James 1:2"))
    assert result.status == ReferenceStatus.upstream_unavailable
    assert not result.is_valid
    assert "service down" in result.error
    assert validator.cache_stats().total == 0


def test_invalid_reference_is_cached() -> None:
    lookup = FakeLookup(invalid=("Jude 2:1",))
    validator = _validator(lookup)
    result = asyncio.run(validator.validate("Jude 2:1"))
    assert result.status == ReferenceStatus.invalid
    asyncio.run(validator.validate("Jude 2:1"))
    assert lookup.calls == ["Jude 2:1"]


def test_batch_keeps_order_and_isolates_failures() -> None:
    lookup = FakeLookup(invalid=("Mark 99:1",), unavailable=("Luke 2:1",))
    validator = _validator(lookup, batch_size=2)
    refs = ["John 1:1", "Mark 99:1", "Luke 2:1", "Acts 2:1", "Titus 2:11"]
    results = asyncio.run(validator.validate_batch(refs))
    assert [r.reference for r in results] == refs
    assert [r.status for r in results] == [
        ReferenceStatus.valid,
        ReferenceStatus.invalid,
        ReferenceStatus.upstream_unavailable,
        ReferenceStatus.valid,
        ReferenceStatus.valid,
    ]
    report = build_report(results)
    assert (report.valid, report.invalid, report.unavailable) == (3, 1, 1)
    assert report.valid_rate == pytest.approx(0.6)


def test_purge_and_stats() -> None:
    clock = Clock(START)
    validator = _validator(FakeLookup(), clock=clock)
    asyncio.run(validator.validate_batch(["John 1:1", "John 1:2"]))
    clock.now = START + timedelta(hours=2)
    asyncio.run(validator.validate("John 1:3"))
    stats = validator.cache_stats()
    assert (stats.total, stats.valid, stats.expired) == (3, 1, 2)
    assert validator.purge_expired() == 2
    assert validator.cache_stats().total == 1


def test_sql_cache_round_trip() -> None:
    cache = SQLReferenceCache()
    entry = ReferenceValidation(
        reference="Genesis 1:1",
        is_valid=True,
        status=ReferenceStatus.valid,
        text="In the beginning",
        validated_at=START,
        expires_at=START + timedelta(hours=1),
    )
    cache.put(entry)
    cache.put(entry.model_copy(update={"text": "In the beginning God"}))
    assert cache.get("Genesis 1:1").text == "In the beginning God"
    assert cache.get("Genesis 1:2") is None
    assert cache.stats(START).valid == 1
    assert cache.purge_expired(START + timedelta(hours=2)) == 1
    assert cache.get("Genesis 1:1") is None


def test_sql_cache_expiry_survives_round_trip() -> None:
    lookup = FakeLookup()
    clock = Clock(START)
    validator = _validator(lookup, cache=SQLReferenceCache(), clock=clock)
    first = asyncio.run(validator.validate("Genesis 1:3"))
    stored = SQLReferenceCache().get("Genesis 1:3")
    assert stored.expires_at == START + timedelta(hours=1)
    assert stored.expires_at.tzinfo is not None
    clock.now = START + timedelta(minutes=30)
    again = asyncio.run(validator.validate("Genesis 1:3"))
    assert lookup.calls == ["Genesis 1:3"]
    assert again.expires_at == first.expires_at
    clock.now = START + timedelta(hours=2)
    asyncio.run(validator.validate("Genesis 1:3"))
    assert len(lookup.calls) == 2


def test_batch_pauses_between_groups(monkeypatch) -> None:
    lookup = FakeLookup()
    pauses: list[float] = []

    async def record_sleep(seconds: float) -> None:
        pauses.append(seconds)
        lookup.calls.append("pause")

    monkeypatch.setattr("studygen.references.asyncio.sleep", record_sleep)
    validator = CitationValidator(
        lookup, InMemoryReferenceCache(), ttl_seconds=3600, batch_size=2, batch_pause=0.5, clock=Clock(START)
    )
    refs = ["John 1:1", "John 1:2", "John 1:3", "John 1:4", "John 1:5"]
    asyncio.run(validator.validate_batch(refs))
    assert lookup.calls == ["John 1:1", "John 1:2", "pause", "John 1:3", "John 1:4", "pause", "John 1:5"]
    assert pauses == [0.5, 0.5]


def test_extract_references_skips_fallback_days() -> None:
    plan = StudyPlan(
        title="T",
        duration_days=2,
        study_style=StudyStyle.topical,
        difficulty="beginner",
        audience="adults",
        days=[
            DayOutline(day=1, title="A", focus_passage="John 3:16 and Romans 5:8"),
            DayOutline(day=2, title="B", focus_passage="Ephesians 2:8"),
        ],
    )
    days = [
        DailyContent(day=1, title="A", passages=[Passage(reference="John 3:16"), Passage(reference="1 John 4:9")]),
        DailyContent(day=2, title="B", passages=[Passage(reference="Ephesians 2:8-9")], is_fallback=True),
    ]
    assert extract_references(plan, days) == ["John 3:16", "Romans 5:8", "Ephesians 2:8", "1 John 4:9"]


def _lookup_with(handler) -> BibleApiLookup:
    return BibleApiLookup(base_url="https://bible.test", transport=httpx.MockTransport(handler))


def test_bible_api_lookup_statuses() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if "John" in path:
            return httpx.Response(200, json={"reference": "John 3:16", "text": "For God so loved the world\n"})
        if "Hezekiah" in path:
            return httpx.Response(404, json={"error": "not found"})
        return httpx.Response(503)

    found = asyncio.run(_lookup_with(handler).lookup("John 3:16"))
    assert found.ok and found.text == "For God so loved the world"
    missing = asyncio.run(_lookup_with(handler).lookup("Hezekiah 1:1"))
    assert not missing.ok
    with pytest.raises(UpstreamUnavailable):
        asyncio.run(_lookup_with(handler).lookup("Mark 1:1"))


def test_bible_api_lookup_network_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(UpstreamUnavailable):
        asyncio.run(_lookup_with(handler).lookup("John 1:1"))


def test_bible_api_lookup_non_object_body() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=["John 1:1", "In the beginning was the Word"])

    with pytest.raises(UpstreamUnavailable):
        asyncio.run(_lookup_with(handler).lookup("John 1:1"))


def test_non_object_body_serves_stale_entry() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=["unexpected"])

    cache = InMemoryReferenceCache()
    original = ReferenceValidation(
        reference="John 1:1",
        is_valid=True,
        status=ReferenceStatus.valid,
        text="In the beginning was the Word",
        validated_at=START,
        expires_at=START + timedelta(hours=1),
    )
    cache.put(original)
    validator = _validator(_lookup_with(handler), cache=cache, clock=Clock(START + timedelta(days=1)))
    assert asyncio.run(validator.validate("John 1:1")) == original
