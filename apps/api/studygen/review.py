from __future__ import annotations

import asyncio
import logging
from collections import Counter
from typing import Iterable, Optional

from .config import settings
from .generation import call_llm
from .llm import LLMClient
from .parsing import coerce_review, extract
from .prompts import review_prompt
from .schemas import (
    QUALITY_SCORES,
    BatchReviewSummary,
    DailyContent,
    QualityTier,
    ReviewPayload,
    ReviewResult,
    StudyPlan,
)

logger = logging.getLogger(__name__)

MAX_COMMON_CONCERNS = 10


class Reviewer:
    def __init__(self, llm: LLMClient, pause: Optional[float] = None, run_id: Optional[str] = None) -> None:
        self.llm = llm
        self.pause = settings.review_pause_seconds if pause is None else pause
        self.run_id = run_id

    async def review(self, day: DailyContent, plan: Optional[StudyPlan] = None) -> ReviewResult:
        if day.is_fallback:
            return ReviewResult(
                day=day.day,
                approved=False,
                quality_tier=QualityTier.needs_revision,
                concerns=["Fallback content needs to be regenerated before publication"],
                summary=day.fallback_reason or "",
                reviewed=False,
            )
        try:
            raw = await call_llm(
                self.llm,
                review_prompt(day, plan),
                kind=f"review-{day.day}",
                max_tokens=settings.review_max_tokens,
                temperature=settings.review_temperature,
                timeout=settings.review_timeout_seconds,
                run_id=self.run_id,
            )
            payload = extract(raw, ReviewPayload, coerce=coerce_review)
        except Exception as exc:
            logger.warning("review of day %s failed: %s", day.day, exc)
            return ReviewResult(
                day=day.day,
                approved=False,
                quality_tier=QualityTier.rejected,
                confidence=0.0,
                concerns=["Validation process failed", f"{type(exc).__name__}: {exc}"],
            )

        approved = payload.approved and payload.quality_tier not in {
            QualityTier.needs_revision,
            QualityTier.rejected,
        }
        return ReviewResult(
            day=day.day,
            approved=approved,
            quality_tier=payload.quality_tier,
            confidence=payload.confidence,
            concerns=payload.concerns,
            strengths=payload.strengths,
            summary=payload.summary,
        )

    async def review_batch(
        self, days: Iterable[DailyContent], plan: Optional[StudyPlan] = None
    ) -> BatchReviewSummary:
        results: list[ReviewResult] = []
        for idx, day in enumerate(days):
            if idx and self.pause > 0 and not day.is_fallback:
                await asyncio.sleep(self.pause)
            results.append(await self.review(day, plan))
        return summarize_reviews(results)


def summarize_reviews(results: list[ReviewResult]) -> BatchReviewSummary:
    total = len(results)
    approved = sum(1 for r in results if r.approved)
    distribution = {tier.value: 0 for tier in QualityTier}
    for result in results:
        distribution[result.quality_tier.value] += 1

    concerns = Counter(c for r in results for c in dict.fromkeys(r.concerns) if c)
    common = [concern for concern, _ in concerns.most_common(MAX_COMMON_CONCERNS)]

    actions: list[str] = []
    rejected = distribution[QualityTier.rejected.value]
    revision = distribution[QualityTier.needs_revision.value]
    if rejected:
        actions.append(f"Review and revise {rejected} days with rejected content")
    if revision:
        actions.append(f"Address concerns in {revision} days needing revision")
    ready = total > 0 and approved == total
    if ready:
        actions.append("Study is ready for publication")

    average = sum(QUALITY_SCORES[r.quality_tier] for r in results) / total if total else 0.0
    return BatchReviewSummary(
        total_days=total,
        approved_days=approved,
        approval_rate=(approved / total) if total else 0.0,
        quality_distribution=distribution,
        average_quality_score=round(average, 2),
        common_concerns=common,
        recommended_actions=actions,
        ready_for_publication=ready,
        results=results,
    )
