from __future__ import annotations

import json
import logging
import re
from typing import Any, Callable, Optional, Type, TypeVar

from pydantic import BaseModel, ValidationError

from .errors import UnparsableResponse

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

_ELLIPSIS = r"(?:\.\.\.|…)"
_MORE = r"(?:\s*(?:and|plus)?\s*\d+\s+more\b[^,\]}\n]*)?"


def _extract_json_block(text: str) -> str:
    fence = re.search(r"```(?:json)?\s*(.*?)```", text, re.DOTALL | re.IGNORECASE)
    if fence:
        return fence.group(1).strip()
    match = re.search(r"[\{\[].*[\}\]]", text, re.DOTALL)
    if match:
        return match.group(0)
    return text.strip()


def _strip_comments(text: str) -> str:
    out: list[str] = []
    i = 0
    in_string = False
    length = len(text)
    while i < length:
        ch = text[i]
        if in_string:
            out.append(ch)
            if ch == "\\" and i + 1 < length:
                out.append(text[i + 1])
                i += 2
                continue
            if ch == '"':
                in_string = False
            i += 1
            continue
        if ch == '"':
            in_string = True
            out.append(ch)
            i += 1
            continue
        if text.startswith("//", i):
            end = text.find("\n", i)
            i = length if end == -1 else end
            continue
        if text.startswith("/*", i):
            end = text.find("*/", i + 2)
            i = length if end == -1 else end + 2
            continue
        out.append(ch)
        i += 1
    return "".join(out)


def _clean_json(text: str) -> str:
    return re.sub(r",\s*([}\]])", r"\1", text).strip()


def _collapse_elisions(text: str) -> str:
    text = re.sub(rf"\}}\s*,\s*{_ELLIPSIS}{_MORE}\s*,?\s*\{{", "},{", text)
    text = re.sub(rf",\s*{_ELLIPSIS}{_MORE}\s*(?=[\]}}])", "", text)
    text = re.sub(rf"([\[{{])\s*{_ELLIPSIS}{_MORE}\s*(?=[\]}}])", r"\1", text)
    text = re.sub(rf",\s*{_ELLIPSIS}{_MORE}\s*,", ",", text)
    text = re.sub(rf"([\[{{])\s*{_ELLIPSIS}{_MORE}\s*,", r"\1", text)
    return _clean_json(text)


def _balanced_candidates(text: str) -> list[str]:
    candidates: list[str] = []
    pairs = {"{": "}", "[": "]"}
    for start, opener in enumerate(text):
        if opener not in pairs:
            continue
        stack = [pairs[opener]]
        in_string = False
        escaped = False
        for pos in range(start + 1, len(text)):
            ch = text[pos]
            if in_string:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
                elif ch == '"':
                    in_string = False
                continue
            if ch == '"':
                in_string = True
            elif ch in pairs:
                stack.append(pairs[ch])
            elif ch in "}]":
                if ch != stack[-1]:
                    break
                stack.pop()
                if not stack:
                    candidates.append(text[start : pos + 1])
                    break
    return sorted(candidates, key=len, reverse=True)


def _validate(
    text: str, schema: Type[ModelT], coerce: Optional[Callable[[Any], Any]]
) -> ModelT:
    data = json.loads(text)
    if coerce is not None:
        data = coerce(data)
    return schema.model_validate(data)


def extract(
    raw_text: str,
    schema: Type[ModelT],
    coerce: Optional[Callable[[Any], Any]] = None,
) -> ModelT:
    if not raw_text or not raw_text.strip():
        raise UnparsableResponse("Empty response", raw_text=raw_text or "", attempts=0)

    tier0 = _extract_json_block(raw_text)
    tier1 = _clean_json(_strip_comments(tier0))
    tier2 = _collapse_elisions(tier1)
    attempts = 0
    last_error: Exception | None = None
    for tier, text in enumerate((tier0, tier1, tier2)):
        attempts += 1
        try:
            result = _validate(text, schema, coerce)
        except (json.JSONDecodeError, ValidationError, ValueError, TypeError) as exc:
            last_error = exc
            logger.debug("tier %s failed for %s: %s", tier, schema.__name__, exc)
            continue
        if tier:
            logger.info("recovered %s response at repair tier %s", schema.__name__, tier)
        return result

    for candidate in _balanced_candidates(tier2):
        attempts += 1
        try:
            result = _validate(candidate, schema, coerce)
        except (json.JSONDecodeError, ValidationError, ValueError, TypeError) as exc:
            last_error = exc
            continue
        logger.info("recovered %s response from embedded JSON", schema.__name__)
        return result

    preview = raw_text[:200].replace("\n", " ")
    logger.debug("unparsable %s response: %s", schema.__name__, preview)
    raise UnparsableResponse(
        f"Could not parse {schema.__name__} response after {attempts} attempts: {last_error}",
        raw_text=raw_text,
        attempts=attempts,
    )


def _snake(key: str) -> str:
    return re.sub(r"(?<!^)(?=[A-Z])", "_", key).lower()


def snake_keys(data: Any) -> Any:
    if isinstance(data, dict):
        return {_snake(str(k)) if isinstance(k, str) else k: snake_keys(v) for k, v in data.items()}
    if isinstance(data, list):
        return [snake_keys(item) for item in data]
    return data


def coerce_plan(data: Any) -> Any:
    data = snake_keys(data)
    if isinstance(data, list):
        data = {"title": "", "daily_plan": data}
    if isinstance(data, dict):
        for key in ("days", "plan", "daily_plans"):
            if "daily_plan" not in data and isinstance(data.get(key), list):
                data["daily_plan"] = data.pop(key)
        for idx, outline in enumerate(data.get("daily_plan") or [], start=1):
            if isinstance(outline, dict):
                outline.setdefault("day", idx)
                outline.setdefault("title", f"Day {outline['day']}")
                if isinstance(outline.get("key_points"), str):
                    outline["key_points"] = [outline["key_points"]]
    return data


def _coerce_verses(verses: Any) -> Any:
    if isinstance(verses, dict):
        return [{"verse": k, "content": v} for k, v in verses.items()]
    if isinstance(verses, list):
        coerced = []
        for idx, verse in enumerate(verses, start=1):
            if isinstance(verse, str):
                coerced.append({"verse": idx, "content": verse})
            elif isinstance(verse, dict):
                if "content" not in verse and "text" in verse:
                    verse["content"] = verse.pop("text")
                coerced.append(verse)
        return coerced
    return verses


def coerce_day(data: Any) -> Any:
    data = snake_keys(data)
    if not isinstance(data, dict):
        return data
    if "day" not in data and "day_number" in data:
        data["day"] = data.pop("day_number")
    passages = data.get("passages")
    if passages is None and data.get("passage"):
        passages = [data.pop("passage")]
    if isinstance(passages, (str, dict)):
        passages = [passages]
    if isinstance(passages, list):
        data["passages"] = [
            {"reference": p} if isinstance(p, str) else dict(p, verses=_coerce_verses(p.get("verses", [])))
            for p in passages
            if isinstance(p, (str, dict))
        ]
    for key in ("discussion_questions", "application_points"):
        if isinstance(data.get(key), str):
            data[key] = [data[key]]
    return data


def coerce_review(data: Any) -> Any:
    data = snake_keys(data)
    if not isinstance(data, dict):
        return data
    if "approved" not in data and "is_approved" in data:
        data["approved"] = data.pop("is_approved")
    tier = data.get("quality_tier") or data.get("overall_quality")
    if isinstance(tier, str):
        data["quality_tier"] = tier.strip().lower().replace(" ", "_").replace("-", "_")
    if "concerns" not in data:
        concerns = list(data.get("major_concerns") or []) + list(data.get("minor_concerns") or [])
        data["concerns"] = concerns
    return data
