from __future__ import annotations

import json
from typing import Any, Optional

from .bible import chapter_count, duration_instruction, extract_book_name, focus_passage_for_day
from .schemas import DailyContent, DayOutline, GenerationRequest, StudyPlan, StudyStyle


STYLE_PROMPTS: dict[StudyStyle, dict[str, Any]] = {
    StudyStyle.devotional: {
        "expert": "personal devotional studies",
        "planning_focus": [
            "Daily personal application themes",
            "Focus on spiritual growth and encouragement",
            "Brief, meaningful daily passages (1-3 verses)",
            "Reflection and prayer emphasis",
        ],
        "session_time": "15-20 minutes",
        "tags": ["devotional", "personal", "spiritual-growth"],
        "content_focus": (
            "Write a warm, personal devotional. Keep the passage short, speak to the heart, "
            "and close with a prayer the reader can pray on their own."
        ),
    },
    StudyStyle.topical: {
        "expert": "comprehensive topical studies",
        "planning_focus": [
            "Systematic exploration of the topic throughout Scripture",
            "Cross-references from multiple books of the Bible",
            "Connection between Old and New Testament teachings",
        ],
        "session_time": "25-30 minutes",
        "tags": ["topical", "theology", "doctrine"],
        "content_focus": (
            "Trace the topic across Scripture. Include at least one cross-reference passage "
            "and explain how it develops the day's aspect of the topic."
        ),
    },
    StudyStyle.book_study: {
        "expert": "verse-by-verse book exposition",
        "planning_focus": [
            "Sequential, chapter-by-chapter progression through the book",
            "Historical and literary context for each section",
            "Careful exegesis of the focus passage",
        ],
        "session_time": "30-45 minutes",
        "tags": ["book-study", "exposition", "inductive"],
        "content_focus": (
            "Work through the focus passage verse by verse. Quote the full passage, explain its "
            "context and move from observation to interpretation to application."
        ),
    },
    StudyStyle.relationship: {
        "expert": "studies for couples and relationships",
        "planning_focus": [
            "Biblical foundations for love, covenant and communication",
            "Shared reflection that partners complete together",
            "Practical exercises for the week",
        ],
        "session_time": "20-30 minutes",
        "tags": ["relationship", "marriage", "couples"],
        "content_focus": (
            "Write for two people studying together. Discussion questions should invite honest "
            "conversation and application points should be things a couple can do together."
        ),
    },
}

PLAN_FORMAT = {
    "title": "Study title",
    "theme": "Main theme",
    "description": "Study description (2-3 sentences)",
    "estimated_time_per_session": "20-30 minutes",
    "pastor_message": "Encouraging message to the reader",
    "tags": ["tag"],
    "daily_plan": [
        {
            "day": 1,
            "title": "Day 1 title",
            "theme": "Theme of the day",
            "focus_passage": "Book chapter:verses",
            "learning_objective": "What the reader should take away",
            "key_points": ["Point 1", "Point 2", "Point 3"],
        }
    ],
}

DAY_FORMAT = {
    "day": 1,
    "title": "Day title",
    "estimated_time": "20 minutes",
    "passages": [
        {"reference": "Book chapter:verses", "verses": [{"verse": 1, "content": "Verse text"}]}
    ],
    "study_focus": "Short framing of the day's study",
    "teaching_point": "Main teaching body",
    "discussion_questions": ["Question 1", "Question 2", "Question 3"],
    "reflection_question": "A personal reflection question",
    "application_points": ["Application 1", "Application 2"],
    "prayer_focus": "Closing prayer focus",
}

REVIEW_FORMAT = {
    "approved": True,
    "quality_tier": "excellent | good | acceptable | needs_revision | rejected",
    "confidence": 0.8,
    "concerns": ["Concern"],
    "strengths": ["Strength"],
    "summary": "One sentence summary",
}

# Book-study plans list one suggested passage per day up to this many days.
MAX_PACING_HINTS = 60


def style_prompts(style: StudyStyle) -> dict[str, Any]:
    return STYLE_PROMPTS.get(style, STYLE_PROMPTS[StudyStyle.devotional])


def target_audience(special_instructions: Optional[str], audience: str) -> str:
    if special_instructions and (
        "teenage" in special_instructions.lower() or "athlete" in special_instructions.lower()
    ):
        return special_instructions
    return audience or "general audience"


def _format(payload: dict) -> str:
    return json.dumps(payload, indent=2)


def planning_prompt(request: GenerationRequest) -> str:
    style = style_prompts(request.study_style)
    book = None
    audience = request.audience
    if request.study_style == StudyStyle.book_study:
        book = extract_book_name(request.topic) or extract_book_name(request.brief)
        audience = target_audience(request.special_instructions, request.audience)
    lines = [
        f"You are a Bible study curriculum planning expert specializing in {style['expert']}.",
        f"Create a {request.duration_days}-day {request.study_style.value} Bible study plan.",
        "",
        "STUDY REQUIREMENTS:",
        f"- Title: {request.title or request.topic}",
        f"- Topic: {request.topic}",
        f"- Duration: {request.duration_days} days",
        f"- Difficulty: {request.difficulty.value}",
        f"- Audience: {audience}",
        f"- Study Style: {request.study_style.value}",
        f"- Special Requirements: {request.special_instructions or 'None'}",
    ]
    if request.brief and request.brief != request.topic:
        lines.append(f"- Request: {request.brief}")

    if request.study_style == StudyStyle.book_study:
        if book:
            lines.append(f"- Book: {book} ({chapter_count(book) or 'unknown'} chapters)")
        lines.extend(["", "DURATION SCOPE:", duration_instruction(book, request.duration_days)])
        if book and chapter_count(book):
            lines.extend(["", "Suggested focus passages:"])
            for day in range(1, min(request.duration_days, MAX_PACING_HINTS) + 1):
                lines.append(f"- Day {day}: {focus_passage_for_day(book, day, request.duration_days)}")

    lines.extend(["", "The plan must include:"])
    lines.extend(f"{idx}. {item}" for idx, item in enumerate(style["planning_focus"], start=1))
    plan_format = dict(PLAN_FORMAT, estimated_time_per_session=style["session_time"], tags=style["tags"])
    lines.extend(
        [
            "",
            f"Return exactly {request.duration_days} entries in daily_plan, numbered 1 to {request.duration_days}.",
            "IMPORTANT: Respond with valid JSON only, in this exact format:",
            _format(plan_format),
        ]
    )
    return "\n".join(lines)


def content_prompt(plan: StudyPlan, outline: DayOutline) -> str:
    style = style_prompts(plan.study_style)
    key_points = ", ".join(outline.key_points) or "None"
    lines = [
        f"You are a Bible study writer specializing in {style['expert']}.",
        "",
        "STUDY CONTEXT:",
        f"- Overall Study: {plan.title}",
        f"- Theme: {plan.theme}",
        f"- Difficulty: {plan.difficulty.value}",
        f"- Audience: {plan.audience}",
        f"- Estimated Time: {plan.estimated_time_per_session}",
        "",
        f"DAY {outline.day} REQUIREMENTS:",
        f"- Title: {outline.title}",
        f"- Theme: {outline.theme}",
        f"- Focus Passage: {outline.focus_passage}",
        f"- Learning Objective: {outline.learning_objective}",
        f"- Key Points: {key_points}",
        "",
        style["content_focus"],
        "Quote every verse of each passage accurately, one entry per verse.",
        "",
        "IMPORTANT: Respond with valid JSON only, in this exact format:",
        _format(dict(DAY_FORMAT, day=outline.day)),
    ]
    return "\n".join(lines)


def review_prompt(day: DailyContent, plan: Optional[StudyPlan] = None) -> str:
    context = ""
    if plan is not None:
        context = f"This is day {day.day} of '{plan.title}' ({plan.study_style.value}, {plan.audience}).\n"
    content = day.model_dump(
        exclude={"is_fallback", "fallback_reason", "omitted_fields", "stats"}, exclude_none=True
    )
    return (
        "You are a theological reviewer checking Bible study material for doctrinal soundness, "
        "accurate use of Scripture and suitability for the audience.\n"
        f"{context}\n"
        "CONTENT:\n"
        f"{json.dumps(content, indent=2)}\n\n"
        "IMPORTANT: Respond with valid JSON only, in this exact format:\n"
        f"{_format(REVIEW_FORMAT)}"
    )
