from __future__ import annotations

import json

import pytest

from studygen.errors import UnparsableResponse
from studygen.parsing import coerce_day, coerce_plan, coerce_review, extract
from studygen.schemas import DailyContent, PlanPayload, QualityTier, ReviewPayload


DAY = {
    "day": 2,
    "title": "Peace that guards",
    "passages": [{"reference": "Philippians 4:6-7", "verses": [{"verse": 6, "content": "Do not be anxious"}]}],
    "teaching_point": "Prayer replaces worry.",
}


def test_extract_plain_json() -> None:
    day = extract(json.dumps(DAY), DailyContent)
    assert day.day == 2
    assert day.passages[0].reference == "Philippians 4:6-7"


def test_extract_fenced_block_with_prose() -> None:
    raw = "Here is the study you asked for:\n```json\n" + json.dumps(DAY) + "\n```\nBlessings!"
    assert extract(raw, DailyContent).title == "Peace that guards"


def test_extract_strips_comments_and_trailing_commas() -> None:
    raw = """{
      // the day number
      "day": 2,
      "title": "Peace that guards", /* keep it short */
      "passages": [{"reference": "Philippians 4:6-7", "verses": [],},],
      "teaching_point": "See https://example.com // not a comment",
    }"""
    day = extract(raw, DailyContent)
    assert day.teaching_point == "See https://example.com // not a comment"


def test_extract_collapses_elided_lists() -> None:
    raw = """{
      "title": "Thirty days of hope",
      "daily_plan": [
        {"day": 1, "title": "Hope begins"},
        {"day": 2, "title": "Hope endures"},
        ...and 28 more days
      ]
    }"""
    plan = extract(raw, PlanPayload)
    assert [d.day for d in plan.daily_plan] == [1, 2]


def test_extract_collapses_ellipsis_between_objects() -> None:
    raw = '{"title": "T", "daily_plan": [{"day": 1, "title": "A"}, …, {"day": 3, "title": "C"}]}'
    plan = extract(raw, PlanPayload)
    assert [d.title for d in plan.daily_plan] == ["A", "C"]


def test_extract_finds_embedded_object_after_noise() -> None:
    raw = 'Sure! {"note": "draft"} and then the real answer: ' + json.dumps(DAY) + " [end]"
    assert extract(raw, DailyContent).day == 2


def test_schema_failure_is_unparsable() -> None:
    raw = json.dumps({"day": 1, "title": "No passages", "passages": []})
    with pytest.raises(UnparsableResponse) as info:
        extract(raw, DailyContent)
    assert info.value.attempts >= 3


def test_garbage_is_unparsable() -> None:
    with pytest.raises(UnparsableResponse):
        extract("I'm sorry, I can't help with that.", DailyContent)
    with pytest.raises(UnparsableResponse):
        extract("", DailyContent)


def test_coerce_plan_accepts_camel_case_and_bare_lists() -> None:
    raw = json.dumps(
        {
            "title": "Faith",
            "estimatedTimePerSession": "15 minutes",
            "dailyPlan": [{"day": 1, "title": "Start", "focusPassage": "Hebrews 11:1", "keyPoints": "Trust"}],
        }
    )
    plan = extract(raw, PlanPayload, coerce=coerce_plan)
    assert plan.estimated_time_per_session == "15 minutes"
    assert plan.daily_plan[0].focus_passage == "Hebrews 11:1"
    assert plan.daily_plan[0].key_points == ["Trust"]

    bare = extract(json.dumps([{"title": "One"}, {"title": "Two"}]), PlanPayload, coerce=coerce_plan)
    assert [d.day for d in bare.daily_plan] == [1, 2]


def test_coerce_day_normalizes_passages() -> None:
    raw = json.dumps(
        {
            "dayNumber": 4,
            "title": "Rest",
            "passages": [{"reference": "Matthew 11:28-30", "verses": {"28": "Come to me", "29": "Take my yoke"}}],
            "discussionQuestions": "What burdens do you carry?",
        }
    )
    day = extract(raw, DailyContent, coerce=coerce_day)
    assert day.day == 4
    assert [v.verse for v in day.passages[0].verses] == [28, 29]
    assert day.discussion_questions == ["What burdens do you carry?"]


def test_coerce_review_maps_tier_names() -> None:
    raw = json.dumps({"isApproved": False, "qualityTier": "Needs Revision", "majorConcerns": ["Proof-texting"]})
    review = extract(raw, ReviewPayload, coerce=coerce_review)
    assert review.quality_tier == QualityTier.needs_revision
    assert review.concerns == ["Proof-texting"]
