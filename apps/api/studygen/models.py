from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict
from sqlmodel import Field, SQLModel


class RunStatus(str, Enum):
    pending = "pending"
    running = "running"
    succeeded = "succeeded"
    failed = "failed"
    cancelled = "cancelled"


class WorkflowPhase(str, Enum):
    parse_request = "parse_request"
    plan_study = "plan_study"
    generate_content = "generate_content"
    validate_references = "validate_references"
    review_quality = "review_quality"
    finalize = "finalize"
    completed = "completed"
    failed = "failed"


class StepStatus(str, Enum):
    pending = "pending"
    in_progress = "in_progress"
    completed = "completed"
    failed = "failed"
    skipped = "skipped"


TERMINAL_STATUSES = {RunStatus.succeeded, RunStatus.failed, RunStatus.cancelled}


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    # SQLite hands back naive values on some driver versions; they are stored as UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class StudyRequest(SQLModel, table=True):
    """One submitted payload per run; retries of the same request id get their own row."""

    id: str = Field(default_factory=lambda: uuid4().hex, primary_key=True)
    request_id: str = Field(index=True)
    run_id: str = Field(index=True)
    owner_id: str = Field(index=True)
    payload_json: str
    created_at: datetime = Field(default_factory=utc_now)


class WorkflowRun(SQLModel, table=True):
    id: str = Field(default_factory=lambda: uuid4().hex, primary_key=True)
    request_id: str = Field(index=True)
    owner_id: str = Field(index=True)
    phase: WorkflowPhase = WorkflowPhase.parse_request
    status: RunStatus = RunStatus.pending
    progress: int = 0
    message: Optional[str] = None
    error: Optional[str] = None
    cancel_requested: bool = False
    plan_json: Optional[str] = None
    references_json: Optional[str] = None
    review_json: Optional[str] = None
    result_json: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    updated_at: datetime = Field(default_factory=utc_now)


class PhaseEvent(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    run_id: str = Field(index=True)
    phase: WorkflowPhase
    step_status: StepStatus
    progress: int = 0
    message: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)


class GeneratedDay(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    run_id: str = Field(index=True)
    day: int
    is_fallback: bool = False
    fallback_reason: Optional[str] = None
    content_json: str
    created_at: datetime = Field(default_factory=utc_now)


class ReferenceValidationRecord(SQLModel, table=True):
    reference: str = Field(primary_key=True)
    is_valid: bool = False
    status: str
    text: Optional[str] = None
    error: Optional[str] = None
    validated_at: datetime = Field(default_factory=utc_now)
    expires_at: datetime


class PhaseEventRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    phase: WorkflowPhase
    step_status: StepStatus
    progress: int
    message: Optional[str] = None
    created_at: datetime


class WorkflowRunRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    request_id: str
    owner_id: str
    phase: WorkflowPhase
    status: RunStatus
    progress: int
    message: Optional[str] = None
    error: Optional[str] = None
    cancel_requested: bool = False
    created_at: datetime
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    updated_at: datetime
    history: list[PhaseEventRead] = []
