from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional, Union

from pydantic import ValidationError

from . import run_store
from .bible import check_study_duration, extract_book_name
from .config import settings
from .errors import (
    GenerationError,
    InvalidRequest,
    ResultNotReady,
    RunCancelled,
    RunFailed,
    RunNotCancellable,
    RunNotFound,
)
from .generation import ContentGenerator, DayFailure, resolve_days
from .llm import LLMClient, get_llm_client
from .models import (
    TERMINAL_STATUSES,
    PhaseEventRead,
    RunStatus,
    StepStatus,
    WorkflowPhase,
    WorkflowRun,
    WorkflowRunRead,
    utc_now,
)
from .publishing import FileStudyPublisher, StudyPublisher
from .references import (
    BibleApiLookup,
    CitationValidator,
    ReferenceCache,
    ReferenceLookup,
    SQLReferenceCache,
    build_report,
    extract_references,
)
from .review import Reviewer
from .schemas import (
    BatchReviewSummary,
    CacheStats,
    DailyContent,
    GenerationRequest,
    ReferenceReport,
    RunResult,
    StudyPlan,
    StudyStyle,
)

logger = logging.getLogger(__name__)

PHASE_PROGRESS = {
    WorkflowPhase.parse_request: 10,
    WorkflowPhase.plan_study: 25,
    WorkflowPhase.generate_content: 60,
    WorkflowPhase.validate_references: 75,
    WorkflowPhase.review_quality: 90,
    WorkflowPhase.finalize: 100,
}

REFERENCE_FAILURE_WARNING = 0.2
APPROVAL_WARNING = 0.8


def validate_request(payload: Union[GenerationRequest, dict[str, Any]]) -> GenerationRequest:
    if isinstance(payload, GenerationRequest):
        request = payload
    else:
        try:
            request = GenerationRequest.model_validate(payload)
        except ValidationError as exc:
            errors = [f"{'.'.join(str(p) for p in e['loc']) or 'request'}: {e['msg']}" for e in exc.errors()]
            raise InvalidRequest("Invalid study request", errors) from exc
    if request.duration_days > settings.max_duration_days:
        raise InvalidRequest(f"Duration must be at most {settings.max_duration_days} days")
    if request.study_style == StudyStyle.book_study:
        book = extract_book_name(request.topic) or extract_book_name(request.brief)
        ok, warning = check_study_duration(book, request.duration_days)
        if not ok:
            raise InvalidRequest(warning or "Duration does not fit the book")
        if warning:
            logger.warning(warning)
    return request


class WorkflowOrchestrator:
    def __init__(
        self,
        llm: LLMClient,
        validator: CitationValidator,
        publisher: StudyPublisher,
        concurrency: Optional[int] = None,
        batch_pause: Optional[float] = None,
        review_pause: Optional[float] = None,
    ) -> None:
        self.llm = llm
        self.validator = validator
        self.publisher = publisher
        self.concurrency = concurrency
        self.batch_pause = batch_pause
        self.review_pause = review_pause

    def _cancel_requested(self, run_id: str) -> bool:
        run = run_store.get_run(run_id)
        return bool(run and run.cancel_requested)

    def _enter(self, run_id: str, phase: WorkflowPhase) -> None:
        if self._cancel_requested(run_id):
            raise RunCancelled(f"Cancelled before {phase.value}")
        run_store.update_run(run_id, phase=phase)
        run_store.record_phase(run_id, phase, StepStatus.in_progress)
        logger.info("run %s entering %s", run_id, phase.value)

    def _leave(self, run_id: str, phase: WorkflowPhase, message: Optional[str] = None) -> None:
        run_store.update_run(run_id, progress=PHASE_PROGRESS[phase], message=message)
        run_store.record_phase(run_id, phase, StepStatus.completed, message)

    async def execute(self, run_id: str) -> Optional[RunResult]:
        run = run_store.get_run(run_id)
        if run is None:
            raise RunNotFound(f"Run {run_id} not found")
        run_store.update_run(run_id, status=RunStatus.running, started_at=utc_now())
        generator = ContentGenerator(self.llm, self.concurrency, self.batch_pause, run_id=run_id)
        reviewer = Reviewer(self.llm, self.review_pause, run_id=run_id)
        warnings: list[str] = []
        phase = WorkflowPhase.parse_request
        try:
            self._enter(run_id, phase)
            request = self._parse_request(run, warnings)
            self._leave(run_id, phase, f"{request.duration_days}-day {request.study_style.value} study")

            phase = WorkflowPhase.plan_study
            self._enter(run_id, phase)
            try:
                plan = await generator.plan(request)
            except RunFailed:
                raise
            except Exception as exc:
                raise RunFailed(phase.value, f"Planning failed: {type(exc).__name__}: {exc}") from exc
            run_store.update_run(run_id, plan_json=plan.model_dump_json())
            self._leave(run_id, phase, f"planned {len(plan.days)} days")

            phase = WorkflowPhase.generate_content
            self._enter(run_id, phase)
            days, fallback_days = await self._generate(run_id, generator, plan, warnings)
            self._leave(run_id, phase, f"{len(days)} days, {len(fallback_days)} fallback")

            phase = WorkflowPhase.validate_references
            self._enter(run_id, phase)
            references = await self._validate_references(run_id, plan, days, warnings)
            self._leave(run_id, phase, f"{references.valid}/{references.total} references valid")

            phase = WorkflowPhase.review_quality
            self._enter(run_id, phase)
            review = await self._review(run_id, reviewer, plan, days, warnings)

            phase = WorkflowPhase.finalize
            self._enter(run_id, phase)
            result = self._finalize(run_id, plan, days, fallback_days, references, review, warnings)
            run_store.update_run(run_id, result_json=result.model_dump_json())
            self._leave(run_id, phase, "published" if result.published else "completed without publishing")
        except RunCancelled as exc:
            logger.info("run %s cancelled during %s", run_id, phase.value)
            run_store.record_phase(run_id, phase, StepStatus.skipped, str(exc))
            run_store.update_run(
                run_id, status=RunStatus.cancelled, message=str(exc), ended_at=utc_now()
            )
            return None
        except Exception as exc:
            message = str(exc) if isinstance(exc, GenerationError) else f"{type(exc).__name__}: {exc}"
            logger.error("run %s failed during %s: %s", run_id, phase.value, message)
            run_store.record_phase(run_id, phase, StepStatus.failed, message)
            run_store.update_run(
                run_id,
                phase=WorkflowPhase.failed,
                status=RunStatus.failed,
                error=f"{phase.value}: {message}",
                message=f"Failed during {phase.value}",
                ended_at=utc_now(),
            )
            return None

        run_store.update_run(
            run_id,
            phase=WorkflowPhase.completed,
            status=RunStatus.succeeded,
            ended_at=utc_now(),
        )
        run_store.record_phase(run_id, WorkflowPhase.completed, StepStatus.completed)
        logger.info("run %s completed", run_id)
        return result

    def _parse_request(self, run: WorkflowRun, warnings: list[str]) -> GenerationRequest:
        request = run_store.get_request(run.id)
        if request is None:
            raise RunFailed(WorkflowPhase.parse_request.value, "Stored request is missing")
        if request.study_style == StudyStyle.book_study:
            book = extract_book_name(request.topic) or extract_book_name(request.brief)
            ok, warning = check_study_duration(book, request.duration_days)
            if not ok:
                raise InvalidRequest(warning or "Duration does not fit the book")
            if warning:
                warnings.append(warning)
        return request

    async def _generate(
        self, run_id: str, generator: ContentGenerator, plan: StudyPlan, warnings: list[str]
    ) -> tuple[list[DailyContent], list[int]]:
        start = PHASE_PROGRESS[WorkflowPhase.plan_study]
        span = PHASE_PROGRESS[WorkflowPhase.generate_content] - start

        def progress(done: int, total: int) -> None:
            run_store.update_run(run_id, progress=start + (span * done) // max(total, 1))

        results = await generator.generate_all(
            plan,
            progress_callback=progress,
            is_cancelled=lambda: self._cancel_requested(run_id),
        )
        days = resolve_days(results)
        fallback_days = [r.day_number for r in results if isinstance(r, DayFailure)]
        run_store.save_days(run_id, days)
        if fallback_days:
            warnings.append(f"{len(fallback_days)} of {len(days)} days use fallback content")
        return days, fallback_days

    async def _validate_references(
        self, run_id: str, plan: StudyPlan, days: list[DailyContent], warnings: list[str]
    ) -> ReferenceReport:
        refs = extract_references(plan, days)
        report = build_report(await self.validator.validate_batch(refs))
        run_store.update_run(run_id, references_json=report.model_dump_json())
        if report.total and (1 - report.valid_rate) > REFERENCE_FAILURE_WARNING:
            message = f"{report.total - report.valid} of {report.total} references failed validation"
            logger.warning("run %s: %s", run_id, message)
            warnings.append(message)
        return report

    async def _review(
        self,
        run_id: str,
        reviewer: Reviewer,
        plan: StudyPlan,
        days: list[DailyContent],
        warnings: list[str],
    ) -> Optional[BatchReviewSummary]:
        phase = WorkflowPhase.review_quality
        if not settings.review_enabled:
            run_store.update_run(run_id, progress=PHASE_PROGRESS[phase], message="review disabled")
            run_store.record_phase(run_id, phase, StepStatus.skipped, "review disabled")
            return None
        summary = await reviewer.review_batch(days, plan)
        run_store.update_run(run_id, review_json=summary.model_dump_json())
        if summary.approval_rate < APPROVAL_WARNING:
            message = f"only {summary.approved_days} of {summary.total_days} days approved in review"
            logger.warning("run %s: %s", run_id, message)
            warnings.append(message)
        self._leave(run_id, phase, f"{summary.approved_days}/{summary.total_days} days approved")
        return summary

    def _finalize(
        self,
        run_id: str,
        plan: StudyPlan,
        days: list[DailyContent],
        fallback_days: list[int],
        references: ReferenceReport,
        review: Optional[BatchReviewSummary],
        warnings: list[str],
    ) -> RunResult:
        if len(days) != plan.duration_days or [d.day for d in days] != list(range(1, plan.duration_days + 1)):
            raise RunFailed(WorkflowPhase.finalize.value, "Generated days do not match the plan")

        fallback_ratio = len(fallback_days) / len(days) if days else 0.0
        blockers: list[str] = []
        if review is not None and not review.ready_for_publication:
            blockers.append("Quality review did not approve every day")
        if fallback_ratio > settings.max_fallback_ratio:
            blockers.append(
                f"Fallback ratio {fallback_ratio:.0%} exceeds {settings.max_fallback_ratio:.0%}"
            )
        if references.total and references.valid_rate < settings.min_reference_valid_rate:
            blockers.append(
                f"Reference valid rate {references.valid_rate:.0%} is below "
                f"{settings.min_reference_valid_rate:.0%}"
            )

        publication_path = None
        if not blockers:
            publication_path = self.publisher.publish(run_id, plan, days)
        else:
            logger.info("run %s not published: %s", run_id, "; ".join(blockers))

        return RunResult(
            run_id=run_id,
            plan=plan,
            days=days,
            fallback_days=fallback_days,
            fallback_ratio=round(fallback_ratio, 4),
            references=references,
            review=review,
            published=publication_path is not None,
            publish_blockers=blockers,
            publication_path=publication_path,
            warnings=warnings,
        )


class StudyGenerationService:
    def __init__(
        self,
        llm: Optional[LLMClient] = None,
        lookup: Optional[ReferenceLookup] = None,
        cache: Optional[ReferenceCache] = None,
        publisher: Optional[StudyPublisher] = None,
        concurrency: Optional[int] = None,
        batch_pause: Optional[float] = None,
        review_pause: Optional[float] = None,
        reference_batch_pause: Optional[float] = None,
    ) -> None:
        self.llm = llm or get_llm_client()
        self.validator = CitationValidator(
            lookup or BibleApiLookup(),
            cache or SQLReferenceCache(),
            batch_pause=reference_batch_pause,
        )
        self.orchestrator = WorkflowOrchestrator(
            self.llm,
            self.validator,
            publisher or FileStudyPublisher(),
            concurrency=concurrency,
            batch_pause=batch_pause,
            review_pause=review_pause,
        )
        self._tasks: dict[str, asyncio.Task] = {}

    async def start_run(self, payload: Union[GenerationRequest, dict[str, Any]]) -> str:
        request = validate_request(payload)
        run = run_store.create_run(request)
        run_store.record_phase(run.id, WorkflowPhase.parse_request, StepStatus.pending, "queued")
        task = asyncio.create_task(self.orchestrator.execute(run.id))
        self._tasks[run.id] = task
        task.add_done_callback(lambda _: self._tasks.pop(run.id, None))
        logger.info("started run %s for request %s", run.id, request.id)
        return run.id

    async def join(self, run_id: str) -> None:
        task = self._tasks.get(run_id)
        if task is not None:
            await task

    def get_run_status(self, run_id: str) -> WorkflowRunRead:
        run = run_store.get_run(run_id)
        if run is None:
            raise RunNotFound(f"Run {run_id} not found")
        history = [PhaseEventRead.model_validate(e) for e in run_store.get_history(run_id)]
        return WorkflowRunRead.model_validate(run).model_copy(update={"history": history})

    def cancel_run(self, run_id: str) -> WorkflowRunRead:
        run = run_store.get_run(run_id)
        if run is None:
            raise RunNotFound(f"Run {run_id} not found")
        if run.status in TERMINAL_STATUSES:
            raise RunNotCancellable(f"Run {run_id} already {run.status.value}")
        if run_id in self._tasks:
            run_store.update_run(run_id, cancel_requested=True, message="cancellation requested")
        else:
            # No live task owns this run, so nothing will observe the flag.
            run_store.update_run(
                run_id,
                cancel_requested=True,
                status=RunStatus.cancelled,
                message="cancelled",
                ended_at=utc_now(),
            )
            run_store.record_phase(run_id, run.phase, StepStatus.skipped, "cancelled")
        return self.get_run_status(run_id)

    def get_result(self, run_id: str) -> RunResult:
        run = run_store.get_run(run_id)
        if run is None:
            raise RunNotFound(f"Run {run_id} not found")
        if run.status != RunStatus.succeeded or not run.result_json:
            raise ResultNotReady(f"Run {run_id} is {run.status.value}")
        return RunResult.model_validate_json(run.result_json)

    def purge_reference_cache(self) -> int:
        return self.validator.purge_expired()

    def reference_cache_stats(self) -> CacheStats:
        return self.validator.cache_stats()
