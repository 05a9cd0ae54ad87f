from __future__ import annotations

import json
import logging
from pathlib import Path

from .schemas import DailyContent, StudyPlan
from .storage import atomic_write_json, atomic_write_text, iso_now, published_dir, read_json, slugify

logger = logging.getLogger(__name__)


def _yaml_str(value: str) -> str:
    return json.dumps(value, ensure_ascii=False)


def render_day_markdown(day: DailyContent) -> str:
    front = [
        "---",
        f"day: {day.day}",
        f"title: {_yaml_str(day.title)}",
        f"estimatedTime: {_yaml_str(day.estimated_time or '')}",
        "passages:",
    ]
    front.extend(f"  - reference: {_yaml_str(p.reference)}" for p in day.passages)
    if day.is_fallback:
        front.append("fallback: true")
    front.append("---")

    body = [f"# Day {day.day}: {day.title}", "", "## Biblical Text"]
    for passage in day.passages:
        body.extend(["", f"### {passage.reference}"])
        if passage.verses:
            body.extend(["", " ".join(f"**{v.verse}.** {v.content}" for v in passage.verses)])

    sections = [
        ("Study Focus", day.study_focus),
        ("Teaching Point", day.teaching_point),
        (
            "Discussion Questions",
            "\n".join(f"{i}. {q}" for i, q in enumerate(day.discussion_questions or [], start=1)),
        ),
        ("Reflection Question", day.reflection_question),
        ("Application Points", "\n".join(f"- {p}" for p in day.application_points or [])),
        ("Prayer Focus", day.prayer_focus),
    ]
    for heading, text in sections:
        if text:
            body.extend(["", f"## {heading}", text])

    return "\n".join(front) + "\n\n" + "\n".join(body) + "\n"


def build_manifest(run_id: str, plan: StudyPlan, days: list[DailyContent]) -> dict:
    today = iso_now()[:10]
    return {
        "id": run_id,
        "title": plan.title,
        "theme": plan.theme,
        "description": plan.description,
        "duration": plan.duration_days,
        "studyStyle": plan.study_style.value,
        "difficulty": plan.difficulty.value,
        "audience": plan.audience,
        "studyStructure": "daily",
        "estimatedTimePerSession": plan.estimated_time_per_session,
        "pastorMessage": plan.pastor_message,
        "generatedBy": "studygen",
        "tags": plan.tags,
        "status": "Generated",
        "fallbackDays": [d.day for d in days if d.is_fallback],
        "createdDate": today,
        "lastModified": today,
    }


class StudyPublisher:
    def publish(self, run_id: str, plan: StudyPlan, days: list[DailyContent]) -> str:
        raise NotImplementedError


class FileStudyPublisher(StudyPublisher):
    def publish(self, run_id: str, plan: StudyPlan, days: list[DailyContent]) -> str:
        folder = published_dir(f"{slugify(plan.title) or 'study'}-{run_id[:8]}")
        atomic_write_json(folder / "manifest.json", build_manifest(run_id, plan, days))
        for day in days:
            atomic_write_text(folder / f"day-{day.day}.md", render_day_markdown(day))
        logger.info("published %s days for run %s to %s", len(days), run_id, folder)
        return str(folder)


def load_manifest(folder: Path) -> dict:
    return read_json(folder / "manifest.json", default={}) or {}
