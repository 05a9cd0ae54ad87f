from __future__ import annotations

import asyncio
import re
from pathlib import Path

import pytest

from fakes import BrokenPublisher, FakeLookup, ScriptedLLMClient
from studygen import run_store
from studygen.config import settings
from studygen.errors import InvalidRequest, ResultNotReady, RunNotCancellable, RunNotFound
from studygen.models import RunStatus, StepStatus, WorkflowPhase
from studygen.publishing import load_manifest
from studygen.references import InMemoryReferenceCache
from studygen.schemas import GenerationRequest
from studygen.transcripts import list_transcripts
from studygen.workflow import StudyGenerationService, validate_request


def _service(llm=None, lookup=None, publisher=None) -> StudyGenerationService:
    return StudyGenerationService(
        llm=llm or ScriptedLLMClient(),
        lookup=lookup or FakeLookup(),
        cache=InMemoryReferenceCache(),
        publisher=publisher,
    )


def _run(service: StudyGenerationService, payload: dict) -> str:
    async def scenario() -> str:
        run_id = await service.start_run(payload)
        await service.join(run_id)
        return run_id

    return asyncio.run(scenario())


def test_seven_day_devotional_is_published() -> None:
    service = _service()
    run_id = _run(service, {"topic": "Hope", "duration_days": 7, "study_style": "devotional"})

    status = service.get_run_status(run_id)
    assert status.status == RunStatus.succeeded
    assert status.phase == WorkflowPhase.completed
    assert status.progress == 100

    result = service.get_result(run_id)
    assert [d.day for d in result.days] == list(range(1, 8))
    assert result.fallback_days == []
    assert result.references.valid == result.references.total > 0
    assert result.review.ready_for_publication
    assert result.published and result.publish_blockers == []

    folder = Path(result.publication_path)
    manifest = load_manifest(folder)
    assert manifest["duration"] == 7
    assert manifest["fallbackDays"] == []
    assert sorted(p.name for p in folder.glob("day-*.md")) == sorted(f"day-{n}.md" for n in range(1, 8))
    assert list_transcripts(run_id)


def test_one_day_book_study_stays_in_chapter_one() -> None:
    llm = ScriptedLLMClient()
    service = _service(llm)
    run_id = _run(service, {"topic": "Matthew", "duration_days": 1, "study_style": "book-study"})

    plan_prompt = llm.prompts_of('"daily_plan"')[0]
    assert "Focus ONLY on Chapter 1 of Matthew" in plan_prompt

    result = service.get_result(run_id)
    assert result.plan.days[0].focus_passage == "Matthew 1"
    assert result.days[0].passages[0].reference.startswith("Matthew 1")
    assert any("Chapter 1" in w for w in result.warnings)


def test_slow_days_fall_back_without_failing_the_run(monkeypatch) -> None:
    monkeypatch.setattr(settings, "content_timeout_seconds", 0.1)
    llm = ScriptedLLMClient(slow_days={3, 7}, slow_seconds=0.3)
    service = _service(llm)
    run_id = _run(service, {"topic": "Prayer", "duration_days": 10, "study_style": "topical"})

    assert service.get_run_status(run_id).status == RunStatus.succeeded
    result = service.get_result(run_id)
    assert result.fallback_days == [3, 7]
    assert result.fallback_ratio == pytest.approx(0.2)
    assert [d.day for d in result.days if d.is_fallback] == [3, 7]
    assert "timed out" in result.days[2].fallback_reason
    assert not result.published
    assert "Quality review did not approve every day" in result.publish_blockers
    assert "2 of 10 days use fallback content" in result.warnings

    stored = run_store.load_days(run_id)
    assert [d.day for d in stored if d.is_fallback] == [3, 7]


def test_progress_never_moves_backwards() -> None:
    service = _service()
    run_id = _run(service, {"topic": "Joy", "duration_days": 5, "study_style": "devotional"})
    history = service.get_run_status(run_id).history
    progress = [event.progress for event in history]
    assert progress == sorted(progress)
    completed = {e.phase: e.progress for e in history if e.step_status == StepStatus.completed}
    assert completed[WorkflowPhase.parse_request] == 10
    assert completed[WorkflowPhase.plan_study] == 25
    assert completed[WorkflowPhase.generate_content] == 60
    assert completed[WorkflowPhase.validate_references] == 75
    assert completed[WorkflowPhase.review_quality] == 90
    assert completed[WorkflowPhase.finalize] == 100


def test_planning_failure_fails_the_run() -> None:
    service = _service(ScriptedLLMClient(plan_response="I cannot produce a plan today."))
    run_id = _run(service, {"topic": "Grace", "duration_days": 3})

    status = service.get_run_status(run_id)
    assert status.status == RunStatus.failed
    assert status.phase == WorkflowPhase.failed
    assert status.error.startswith("plan_study")
    assert status.progress == 10
    assert status.history[-1].step_status == StepStatus.failed
    with pytest.raises(ResultNotReady):
        service.get_result(run_id)


def test_publish_error_fails_the_run() -> None:
    service = _service(publisher=BrokenPublisher())
    run_id = _run(service, {"topic": "Joy", "duration_days": 2})

    status = service.get_run_status(run_id)
    assert status.status == RunStatus.failed
    assert status.error.startswith("finalize")
    assert "No space left on device" in status.error
    with pytest.raises(ResultNotReady):
        service.get_result(run_id)


def test_retried_request_gets_its_own_run() -> None:
    service = _service()
    request = validate_request({"id": "req-fixed", "topic": "Peace", "duration_days": 1})

    async def scenario() -> list[str]:
        first = await service.start_run(request)
        second = await service.start_run(request)
        await service.join(first)
        await service.join(second)
        return [first, second]

    first, second = asyncio.run(scenario())
    assert first != second
    for run_id in (first, second):
        status = service.get_run_status(run_id)
        assert status.request_id == "req-fixed"
        assert status.status == RunStatus.succeeded
        assert run_store.get_request(run_id).id == "req-fixed"


def test_review_can_be_disabled(monkeypatch) -> None:
    monkeypatch.setattr(settings, "review_enabled", False)
    llm = ScriptedLLMClient()
    service = _service(llm)
    run_id = _run(service, {"topic": "Peace", "duration_days": 2})
    result = service.get_result(run_id)
    assert result.review is None
    assert result.published
    assert llm.prompts_of('"quality_tier"') == []


def test_invalid_references_block_publication() -> None:
    lookup = FakeLookup(invalid=("Romans 8:28", "Philippians 4:6-7", "Psalms 23:1-3"))
    service = _service(lookup=lookup)
    run_id = _run(service, {"topic": "Trust", "duration_days": 4})
    result = service.get_result(run_id)
    assert result.references.invalid == 3
    assert not result.published
    assert any("references failed validation" in w for w in result.warnings)


def test_cancel_before_first_phase() -> None:
    service = _service()

    async def scenario() -> str:
        run_id = await service.start_run({"topic": "Rest", "duration_days": 3})
        service.cancel_run(run_id)
        await service.join(run_id)
        return run_id

    run_id = asyncio.run(scenario())
    status = service.get_run_status(run_id)
    assert status.status == RunStatus.cancelled
    assert status.history[-1].step_status == StepStatus.skipped
    with pytest.raises(ResultNotReady):
        service.get_result(run_id)


def test_cancel_during_generation_stops_between_batches() -> None:
    holder: dict[str, str] = {}

    def cancel_on_first_day(day: int) -> None:
        if day == 1:
            run_store.update_run(holder["run_id"], cancel_requested=True)

    llm = ScriptedLLMClient(on_day=cancel_on_first_day)
    service = _service(llm)

    async def scenario() -> str:
        run_id = await service.start_run({"topic": "Courage", "duration_days": 9})
        holder["run_id"] = run_id
        await service.join(run_id)
        return run_id

    run_id = asyncio.run(scenario())
    status = service.get_run_status(run_id)
    assert status.status == RunStatus.cancelled
    day_prompts = [p for p in llm.prompts if re.search(r"^DAY \d+ REQUIREMENTS", p, re.MULTILINE)]
    assert len(day_prompts) == 3
    assert status.progress < 60


def test_cancel_without_live_task_is_immediate() -> None:
    service = _service()
    run = run_store.create_run(GenerationRequest(topic="Love", duration_days=2))
    status = service.cancel_run(run.id)
    assert status.status == RunStatus.cancelled
    assert status.cancel_requested


def test_terminal_runs_cannot_be_cancelled() -> None:
    service = _service()
    run_id = _run(service, {"topic": "Faith", "duration_days": 1})
    with pytest.raises(RunNotCancellable):
        service.cancel_run(run_id)


def test_unknown_runs() -> None:
    service = _service()
    with pytest.raises(RunNotFound):
        service.get_run_status("missing")
    with pytest.raises(RunNotFound):
        service.cancel_run("missing")
    with pytest.raises(RunNotFound):
        service.get_result("missing")


def test_invalid_requests_are_rejected() -> None:
    with pytest.raises(InvalidRequest) as info:
        validate_request({"topic": "Hope", "duration_days": 0})
    assert any("duration_days" in e for e in info.value.errors)
    with pytest.raises(InvalidRequest):
        validate_request({"topic": "Jude", "duration_days": 10, "study_style": "book-study"})

    service = _service()
    with pytest.raises(InvalidRequest):
        asyncio.run(service.start_run({"topic": "Hope", "study_style": "poetry"}))
