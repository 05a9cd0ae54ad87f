from __future__ import annotations

import asyncio
import functools
import logging
from concurrent.futures import Executor, ThreadPoolExecutor
from typing import Callable, Optional, Union

from .bible import chapter_count, extract_book_name, focus_passage_for_day
from .config import settings
from .errors import RunCancelled, RunFailed, UnparsableResponse, UpstreamUnavailable
from .llm import LLMClient
from .parsing import coerce_day, coerce_plan, extract
from .prompts import content_prompt, planning_prompt, target_audience
from .schemas import (
    OPTIONAL_DAY_FIELDS,
    DailyContent,
    DayFailure,
    DayOutline,
    DayStats,
    GenerationRequest,
    Passage,
    PlanPayload,
    StudyPlan,
    StudyStyle,
)
from .transcripts import save_transcript

logger = logging.getLogger(__name__)

DayResult = Union[DailyContent, DayFailure]
DEFAULT_PASSAGE = "Psalms 119:105"
WORDS_PER_MINUTE = 200


def _is_chapter_one(reference: str, book: str) -> bool:
    return reference == f"{book} 1" or reference.startswith(f"{book} 1:")


def repair_plan(request: GenerationRequest, payload: PlanPayload) -> StudyPlan:
    if not payload.daily_plan:
        raise RunFailed("plan_study", "Study plan contains no days")

    total = request.duration_days
    book = None
    audience = request.audience
    if request.study_style == StudyStyle.book_study:
        book = extract_book_name(request.topic) or extract_book_name(request.brief)
        audience = target_audience(request.special_instructions, request.audience)

    outlines = sorted(payload.daily_plan, key=lambda o: o.day)
    if len(outlines) > total:
        logger.warning("plan returned %s days for a %s-day study, truncating", len(outlines), total)
        outlines = outlines[:total]
    elif len(outlines) < total:
        logger.warning("plan returned %s days for a %s-day study, padding", len(outlines), total)

    days: list[DayOutline] = []
    for number in range(1, total + 1):
        pacing = focus_passage_for_day(book, number, total)
        if number <= len(outlines):
            outline = outlines[number - 1]
            updates: dict = {"day": number}
            if not outline.title.strip():
                updates["title"] = f"Day {number}"
            if not outline.focus_passage.strip() and pacing:
                updates["focus_passage"] = pacing
            outline = outline.model_copy(update=updates)
        else:
            outline = DayOutline(
                day=number,
                title=f"Day {number}: {request.topic}",
                theme=payload.theme or request.topic,
                focus_passage=pacing,
                learning_objective=f"Grow in understanding of {request.topic}.",
            )
        days.append(outline)

    if book and total == 1 and chapter_count(book) > 1:
        if not _is_chapter_one(days[0].focus_passage, book):
            logger.info("forcing 1-day %s study onto chapter 1 (was %r)", book, days[0].focus_passage)
            days[0] = days[0].model_copy(update={"focus_passage": f"{book} 1"})

    return StudyPlan(
        title=payload.title or request.title or request.topic,
        theme=payload.theme or request.topic,
        description=payload.description,
        duration_days=total,
        study_style=request.study_style,
        difficulty=request.difficulty,
        audience=audience,
        estimated_time_per_session=payload.estimated_time_per_session,
        pastor_message=payload.pastor_message,
        tags=payload.tags,
        book=book,
        days=days,
    )


def _day_stats(content: DailyContent) -> DayStats:
    parts: list[str] = [content.title]
    for passage in content.passages:
        parts.extend(v.content for v in passage.verses)
    for field in OPTIONAL_DAY_FIELDS:
        value = getattr(content, field)
        if isinstance(value, list):
            parts.extend(value)
        elif isinstance(value, str):
            parts.append(value)
    words = sum(len(part.split()) for part in parts)
    return DayStats(word_count=words, reading_minutes=max(1, round(words / WORDS_PER_MINUTE)))


def finish_day(content: DailyContent, plan: StudyPlan, outline: DayOutline) -> DailyContent:
    omitted = [f for f in OPTIONAL_DAY_FIELDS if getattr(content, f) in (None, "", [])]
    if omitted:
        logger.info("day %s omitted optional fields: %s", outline.day, ", ".join(omitted))
    if settings.max_omitted_fields is not None and len(omitted) > settings.max_omitted_fields:
        raise UnparsableResponse(
            f"Day {outline.day} omitted {len(omitted)} optional fields (limit {settings.max_omitted_fields})"
        )
    content = content.model_copy(
        update={
            "day": outline.day,
            "estimated_time": content.estimated_time or plan.estimated_time_per_session,
            "omitted_fields": omitted,
            "is_fallback": False,
            "fallback_reason": None,
        }
    )
    return content.model_copy(update={"stats": _day_stats(content)})


def build_fallback_content(plan: StudyPlan, outline: DayOutline, reason: str) -> DailyContent:
    theme = outline.theme or plan.theme
    reference = outline.focus_passage or DEFAULT_PASSAGE
    content = DailyContent(
        day=outline.day,
        title=outline.title or f"Day {outline.day}",
        passages=[Passage(reference=reference)],
        estimated_time=plan.estimated_time_per_session,
        study_focus=(
            f"Welcome to Day {outline.day} of {plan.title}. Today we explore {theme} "
            "through the lens of Scripture."
        ),
        teaching_point=(
            f"Today's focus is on {theme}. Read {reference} slowly and ask what it teaches "
            f"about {outline.learning_objective or theme}."
        ),
        discussion_questions=[
            f"What stands out to you most from {reference}?",
            f"How does this passage relate to {theme}?",
            "What does this passage reveal about God's character?",
            "What is one way you can live this out this week?",
        ],
        reflection_question=f"How does today's study on {theme} apply to your life?",
        application_points=outline.key_points
        or [
            "Reflect on the scripture passage",
            "Identify one practical application",
            "Pray for God's help in living it out",
        ],
        prayer_focus=(
            f"Lord, thank You for this time in Your Word studying {theme}. Help us to remember "
            "what we've learned and to live it out this week. In Jesus' name, Amen."
        ),
        is_fallback=True,
        fallback_reason=reason,
    )
    return content.model_copy(update={"stats": _day_stats(content)})


async def call_llm(
    llm: LLMClient,
    prompt: str,
    *,
    kind: str,
    max_tokens: int,
    temperature: float,
    timeout: float,
    model: Optional[str] = None,
    run_id: Optional[str] = None,
    executor: Optional[Executor] = None,
) -> str:
    # The client gets the same timeout as its whole budget, retries included.
    call = functools.partial(llm.complete, prompt, max_tokens, temperature, model=model, timeout=timeout)
    loop = asyncio.get_running_loop()
    try:
        raw = await asyncio.wait_for(loop.run_in_executor(executor, call), timeout=timeout)
    except asyncio.TimeoutError as exc:
        raise UpstreamUnavailable(llm.name, f"{kind} call timed out after {timeout}s") from exc
    if run_id and settings.save_transcripts:
        save_transcript(
            run_id,
            kind,
            prompt,
            raw,
            model or llm.model,
            {"max_tokens": max_tokens, "temperature": temperature},
        )
    return raw


class ContentGenerator:
    def __init__(
        self,
        llm: LLMClient,
        concurrency: Optional[int] = None,
        batch_pause: Optional[float] = None,
        run_id: Optional[str] = None,
    ) -> None:
        self.llm = llm
        self.concurrency = max(1, min(10, concurrency or settings.max_concurrent_generations))
        self.batch_pause = settings.generation_batch_pause_seconds if batch_pause is None else batch_pause
        self.run_id = run_id

    async def plan(self, request: GenerationRequest) -> StudyPlan:
        raw = await call_llm(
            self.llm,
            planning_prompt(request),
            kind="plan",
            max_tokens=settings.planning_max_tokens,
            temperature=settings.planning_temperature,
            timeout=settings.planning_timeout_seconds,
            run_id=self.run_id,
        )
        payload = extract(raw, PlanPayload, coerce=coerce_plan)
        return repair_plan(request, payload)

    async def generate_day(
        self, plan: StudyPlan, outline: DayOutline, executor: Optional[Executor] = None
    ) -> DailyContent:
        book_study = plan.study_style == StudyStyle.book_study
        raw = await call_llm(
            self.llm,
            content_prompt(plan, outline),
            kind=f"day-{outline.day}",
            max_tokens=settings.book_study_max_tokens if book_study else settings.content_max_tokens,
            temperature=settings.content_temperature,
            timeout=settings.content_timeout_seconds,
            model=settings.openai_book_study_model if book_study and self.llm.name == "openai" else None,
            executor=executor,
            run_id=self.run_id,
        )
        content = extract(raw, DailyContent, coerce=coerce_day)
        return finish_day(content, plan, outline)

    async def _generate_or_fallback(self, plan: StudyPlan, outline: DayOutline, executor: Executor) -> DayResult:
        try:
            return await self.generate_day(plan, outline, executor)
        except Exception as exc:
            reason = f"{type(exc).__name__}: {exc}"
            logger.warning("day %s failed, using fallback content: %s", outline.day, reason)
            return DayFailure(
                day_number=outline.day,
                reason=reason,
                fallback_content=build_fallback_content(plan, outline, reason),
            )

    async def generate_all(
        self,
        plan: StudyPlan,
        progress_callback: Optional[Callable[[int, int], None]] = None,
        is_cancelled: Optional[Callable[[], bool]] = None,
    ) -> list[DayResult]:
        outlines = plan.days
        total = len(outlines)
        results: list[DayResult] = []
        # Room for two batches, so calls still running after a timeout never starve the next batch.
        executor = ThreadPoolExecutor(max_workers=self.concurrency * 2, thread_name_prefix="studygen-day")
        try:
            for start in range(0, total, self.concurrency):
                if start:
                    if is_cancelled and is_cancelled():
                        raise RunCancelled("Cancelled during content generation")
                    if self.batch_pause > 0:
                        await asyncio.sleep(self.batch_pause)
                batch = outlines[start : start + self.concurrency]
                results.extend(
                    await asyncio.gather(
                        *(self._generate_or_fallback(plan, outline, executor) for outline in batch)
                    )
                )
                if progress_callback:
                    progress_callback(len(results), total)
        finally:
            executor.shutdown(wait=False)
        return sorted(results, key=day_number)


def day_number(result: DayResult) -> int:
    return result.day_number if isinstance(result, DayFailure) else result.day


def resolve_days(results: list[DayResult]) -> list[DailyContent]:
    return [r.fallback_content if isinstance(r, DayFailure) else r for r in results]
