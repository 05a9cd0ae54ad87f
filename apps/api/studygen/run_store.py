from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlmodel import delete, select

from .db import get_session
from .errors import RunNotFound
from .models import (
    GeneratedDay,
    PhaseEvent,
    RunStatus,
    StepStatus,
    StudyRequest,
    WorkflowPhase,
    WorkflowRun,
    utc_now,
)
from .schemas import DailyContent, GenerationRequest


def create_run(request: GenerationRequest) -> WorkflowRun:
    run = WorkflowRun(request_id=request.id, owner_id=request.owner_id)
    record = StudyRequest(
        request_id=request.id,
        run_id=run.id,
        owner_id=request.owner_id,
        payload_json=request.model_dump_json(),
    )
    with get_session() as session:
        session.add(record)
        session.add(run)
        session.commit()
        session.refresh(run)
    return run


def update_run(
    run_id: str,
    *,
    phase: Optional[WorkflowPhase] = None,
    status: Optional[RunStatus] = None,
    progress: Optional[int] = None,
    message: Optional[str] = None,
    error: Optional[str] = None,
    cancel_requested: Optional[bool] = None,
    plan_json: Optional[str] = None,
    references_json: Optional[str] = None,
    review_json: Optional[str] = None,
    result_json: Optional[str] = None,
    started_at: Optional[datetime] = None,
    ended_at: Optional[datetime] = None,
) -> WorkflowRun:
    with get_session() as session:
        run = session.get(WorkflowRun, run_id)
        if not run:
            raise RunNotFound(f"Run {run_id} not found")
        if phase is not None:
            run.phase = phase
        if status is not None:
            run.status = status
        if progress is not None:
            # Progress never moves backwards.
            run.progress = max(run.progress, min(100, progress))
        if message is not None:
            run.message = message
        if error is not None:
            run.error = error
        if cancel_requested is not None:
            run.cancel_requested = cancel_requested
        if plan_json is not None:
            run.plan_json = plan_json
        if references_json is not None:
            run.references_json = references_json
        if review_json is not None:
            run.review_json = review_json
        if result_json is not None:
            run.result_json = result_json
        if started_at is not None:
            run.started_at = started_at
        if ended_at is not None:
            run.ended_at = ended_at
        run.updated_at = utc_now()
        session.add(run)
        session.commit()
        session.refresh(run)
        return run


def record_phase(
    run_id: str,
    phase: WorkflowPhase,
    step_status: StepStatus,
    message: Optional[str] = None,
) -> PhaseEvent:
    with get_session() as session:
        run = session.get(WorkflowRun, run_id)
        if not run:
            raise RunNotFound(f"Run {run_id} not found")
        event = PhaseEvent(
            run_id=run_id,
            phase=phase,
            step_status=step_status,
            progress=run.progress,
            message=message,
        )
        session.add(event)
        session.commit()
        session.refresh(event)
        return event


def get_run(run_id: str) -> Optional[WorkflowRun]:
    with get_session() as session:
        return session.get(WorkflowRun, run_id)


def get_history(run_id: str) -> list[PhaseEvent]:
    with get_session() as session:
        statement = select(PhaseEvent).where(PhaseEvent.run_id == run_id).order_by(PhaseEvent.id)
        return list(session.exec(statement).all())


def get_request(run_id: str) -> Optional[GenerationRequest]:
    with get_session() as session:
        statement = select(StudyRequest).where(StudyRequest.run_id == run_id)
        record = session.exec(statement).first()
        if not record:
            return None
        return GenerationRequest.model_validate_json(record.payload_json)


def save_days(run_id: str, days: list[DailyContent]) -> None:
    with get_session() as session:
        session.exec(delete(GeneratedDay).where(GeneratedDay.run_id == run_id))
        for day in days:
            session.add(
                GeneratedDay(
                    run_id=run_id,
                    day=day.day,
                    is_fallback=day.is_fallback,
                    fallback_reason=day.fallback_reason,
                    content_json=day.model_dump_json(),
                )
            )
        session.commit()


def load_days(run_id: str) -> list[DailyContent]:
    with get_session() as session:
        statement = select(GeneratedDay).where(GeneratedDay.run_id == run_id).order_by(GeneratedDay.day)
        return [DailyContent.model_validate_json(row.content_json) for row in session.exec(statement).all()]
