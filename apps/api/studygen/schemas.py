from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .bible import parse_duration_to_days


class StudyStyle(str, Enum):
    devotional = "devotional"
    topical = "topical"
    book_study = "book-study"
    relationship = "relationship"


STYLE_ALIASES = {
    "marriage": StudyStyle.relationship,
    "couples": StudyStyle.relationship,
    "book_study": StudyStyle.book_study,
    "book study": StudyStyle.book_study,
    "inductive": StudyStyle.book_study,
}


class Difficulty(str, Enum):
    beginner = "beginner"
    intermediate = "intermediate"
    advanced = "advanced"


class GenerationRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: uuid4().hex)
    owner_id: str = "anonymous"
    brief: str = ""
    title: Optional[str] = None
    topic: str = Field(min_length=1)
    duration_days: int = Field(ge=1, le=365)
    study_style: StudyStyle = StudyStyle.devotional
    difficulty: Difficulty = Difficulty.intermediate
    audience: str = "adults"
    special_instructions: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def fill_derived_fields(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        style = data.get("study_style")
        if isinstance(style, str):
            key = style.strip().lower()
            data["study_style"] = STYLE_ALIASES.get(key, key)
        if not data.get("topic"):
            data["topic"] = (data.get("title") or data.get("brief") or "").strip()
        if data.get("duration_days") is None:
            data["duration_days"] = parse_duration_to_days(data.get("brief"))
        return data


class DayOutline(BaseModel):
    day: int = Field(ge=1)
    title: str
    theme: str = ""
    focus_passage: str = ""
    learning_objective: str = ""
    key_points: list[str] = []


class PlanPayload(BaseModel):
    title: str
    theme: str = ""
    description: str = ""
    estimated_time_per_session: str = "20-30 minutes"
    pastor_message: str = ""
    tags: list[str] = []
    daily_plan: list[DayOutline]


class StudyPlan(BaseModel):
    title: str
    theme: str = ""
    description: str = ""
    duration_days: int
    study_style: StudyStyle
    difficulty: Difficulty
    audience: str
    estimated_time_per_session: str = "20-30 minutes"
    pastor_message: str = ""
    tags: list[str] = []
    book: Optional[str] = None
    days: list[DayOutline]


class Verse(BaseModel):
    verse: int
    content: str


class Passage(BaseModel):
    reference: str = Field(min_length=1)
    verses: list[Verse] = []


class DayStats(BaseModel):
    word_count: int = 0
    reading_minutes: int = 0


OPTIONAL_DAY_FIELDS = (
    "estimated_time",
    "study_focus",
    "teaching_point",
    "discussion_questions",
    "reflection_question",
    "application_points",
    "prayer_focus",
)


class DailyContent(BaseModel):
    day: int = Field(ge=1)
    title: str = Field(min_length=1)
    passages: list[Passage] = Field(min_length=1)
    estimated_time: Optional[str] = None
    study_focus: Optional[str] = None
    teaching_point: Optional[str] = None
    discussion_questions: Optional[list[str]] = None
    reflection_question: Optional[str] = None
    application_points: Optional[list[str]] = None
    prayer_focus: Optional[str] = None
    is_fallback: bool = False
    fallback_reason: Optional[str] = None
    omitted_fields: list[str] = []
    stats: Optional[DayStats] = None


class DayFailure(BaseModel):
    day_number: int
    reason: str
    fallback_content: DailyContent


class QualityTier(str, Enum):
    excellent = "excellent"
    good = "good"
    acceptable = "acceptable"
    needs_revision = "needs_revision"
    rejected = "rejected"


QUALITY_SCORES = {
    QualityTier.excellent: 5,
    QualityTier.good: 4,
    QualityTier.acceptable: 3,
    QualityTier.needs_revision: 2,
    QualityTier.rejected: 1,
}


class ReviewPayload(BaseModel):
    approved: bool
    quality_tier: QualityTier
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    concerns: list[str] = []
    strengths: list[str] = []
    summary: str = ""


class ReviewResult(BaseModel):
    day: int
    approved: bool
    quality_tier: QualityTier
    confidence: float = 0.0
    concerns: list[str] = []
    strengths: list[str] = []
    summary: str = ""
    reviewed: bool = True


class BatchReviewSummary(BaseModel):
    total_days: int
    approved_days: int
    approval_rate: float
    quality_distribution: dict[str, int]
    average_quality_score: float
    common_concerns: list[str]
    recommended_actions: list[str]
    ready_for_publication: bool
    results: list[ReviewResult]


class ReferenceStatus(str, Enum):
    valid = "valid"
    invalid = "invalid"
    upstream_unavailable = "upstream_unavailable"


class ReferenceValidation(BaseModel):
    reference: str
    is_valid: bool
    status: ReferenceStatus
    text: Optional[str] = None
    error: Optional[str] = None
    validated_at: datetime
    expires_at: Optional[datetime] = None


class ReferenceReport(BaseModel):
    total: int
    valid: int
    invalid: int
    unavailable: int
    valid_rate: float
    results: list[ReferenceValidation]


class CacheStats(BaseModel):
    total: int
    valid: int
    expired: int


class RunResult(BaseModel):
    run_id: str
    plan: StudyPlan
    days: list[DailyContent]
    fallback_days: list[int]
    fallback_ratio: float
    references: Optional[ReferenceReport] = None
    review: Optional[BatchReviewSummary] = None
    published: bool = False
    publish_blockers: list[str] = []
    publication_path: Optional[str] = None
    warnings: list[str] = []


class StartRunResponse(BaseModel):
    run_id: str
    status: str
