from __future__ import annotations

import json
import logging
import re
import time
from typing import Optional

from .config import is_production, settings
from .errors import UpstreamUnavailable

logger = logging.getLogger(__name__)


class LLMClient:
    name: str = "base"
    model: str = "none"

    def complete(
        self,
        prompt: str,
        max_tokens: int,
        temperature: float,
        *,
        model: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> str:
        raise NotImplementedError


MOCK_PASSAGES = [
    "Psalms 23:1-3",
    "John 3:16-17",
    "Romans 8:28",
    "Philippians 4:6-7",
    "Matthew 5:3-10",
    "Ephesians 2:8-10",
    "James 1:2-4",
]


def _search(pattern: str, text: str, default: str = "") -> str:
    match = re.search(pattern, text, re.MULTILINE)
    return match.group(1).strip() if match else default


class MockLLMClient(LLMClient):
    name = "mock"
    model = "mock"

    def complete(
        self,
        prompt: str,
        max_tokens: int,
        temperature: float,
        *,
        model: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> str:
        if '"quality_tier"' in prompt:
            payload = self._review(prompt)
        elif '"daily_plan"' in prompt:
            payload = self._plan(prompt)
        elif '"teaching_point"' in prompt:
            payload = self._day(prompt)
        else:
            payload = {}
        return json.dumps(payload)

    def _plan(self, prompt: str) -> dict:
        days = int(_search(r"^- Duration: (\d+) days", prompt, "7"))
        topic = _search(r"^- Topic: (.+)$", prompt, "Faith")
        hints = {int(day): ref for day, ref in re.findall(r"^- Day (\d+): (.+)$", prompt, re.MULTILINE)}
        daily_plan = []
        for day in range(1, days + 1):
            daily_plan.append(
                {
                    "day": day,
                    "title": f"Day {day}: {topic}",
                    "theme": f"{topic} in daily life",
                    "focus_passage": hints.get(day) or MOCK_PASSAGES[(day - 1) % len(MOCK_PASSAGES)],
                    "learning_objective": f"Understand how Scripture speaks to {topic.lower()}.",
                    "key_points": ["Read the passage slowly", "Notice God's character", "Respond in prayer"],
                }
            )
        return {
            "title": f"A Study in {topic}",
            "theme": topic,
            "description": f"A {days}-day journey through what the Bible teaches about {topic.lower()}.",
            "estimated_time_per_session": "20 minutes",
            "pastor_message": "Take your time with each passage and let it shape your week.",
            "tags": ["mock", "study"],
            "daily_plan": daily_plan,
        }

    def _day(self, prompt: str) -> dict:
        day = int(_search(r"^DAY (\d+) REQUIREMENTS", prompt, "1"))
        title = _search(r"^- Title: (.+)$", prompt.split("REQUIREMENTS:", 1)[-1], f"Day {day}")
        reference = _search(r"^- Focus Passage: (.+)$", prompt) or MOCK_PASSAGES[0]
        return {
            "day": day,
            "title": title,
            "estimated_time": "20 minutes",
            "passages": [
                {
                    "reference": reference,
                    "verses": [
                        {"verse": 1, "content": "The Lord is my shepherd; I shall not want."},
                        {"verse": 2, "content": "He makes me lie down in green pastures."},
                    ],
                }
            ],
            "study_focus": f"Today we read {reference} and ask what it reveals about God.",
            "teaching_point": (
                f"{reference} reminds us that God is faithful. Read it twice, once for the big "
                "picture and once for the details, and notice the promises it makes."
            ),
            "discussion_questions": [
                "What stands out to you in this passage?",
                "What does this passage teach about God's character?",
                "How might this change the way you live this week?",
            ],
            "reflection_question": "Where do you need to trust God more today?",
            "application_points": ["Memorize one verse", "Share one insight with a friend"],
            "prayer_focus": "Ask God for a heart that trusts Him in every circumstance.",
        }

    def _review(self, prompt: str) -> dict:
        return {
            "approved": True,
            "quality_tier": "good",
            "confidence": 0.85,
            "concerns": [],
            "strengths": ["Faithful to the text", "Clear application"],
            "summary": "Sound and suitable for the audience.",
        }


class OpenAIClient(LLMClient):
    name = "openai"

    def __init__(self) -> None:
        if not settings.openai_api_key:
            raise ValueError("OPENAI_API_KEY is required for OpenAIClient")
        from openai import OpenAI
        import httpx
        import certifi

        self.model = settings.openai_model
        timeout = httpx.Timeout(settings.content_timeout_seconds, connect=10.0)
        transport = httpx.HTTPTransport(retries=2)
        self.client = OpenAI(
            api_key=settings.openai_api_key,
            base_url="https://api.openai.com/v1",
            max_retries=0,
            http_client=httpx.Client(
                timeout=timeout,
                http2=False,
                trust_env=False,
                verify=certifi.where(),
                transport=transport,
                limits=httpx.Limits(max_keepalive_connections=5, max_connections=10),
            ),
        )

    def complete(
        self,
        prompt: str,
        max_tokens: int,
        temperature: float,
        *,
        model: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> str:
        budget = timeout or settings.content_timeout_seconds
        deadline = time.monotonic() + budget
        last_exc: Exception | None = None
        for attempt in range(settings.openai_max_retries + 1):
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            try:
                response = self.client.chat.completions.create(
                    model=model or self.model,
                    timeout=remaining,
                    max_tokens=max_tokens,
                    temperature=temperature,
                    response_format={"type": "json_object"},
                    messages=[
                        {
                            "role": "system",
                            "content": (
                                "You are a careful Bible study author and reviewer. "
                                "Respond with a single JSON object and nothing else."
                            ),
                        },
                        {"role": "user", "content": prompt},
                    ],
                )
                return response.choices[0].message.content or ""
            except Exception as exc:  # noqa: BLE001
                last_exc = exc
                backoff = settings.llm_retry_backoff_seconds * (attempt + 1)
                if attempt >= settings.openai_max_retries or deadline - time.monotonic() <= backoff:
                    break
                logger.warning("OpenAI request failed (attempt %s): %s", attempt + 1, exc)
                time.sleep(backoff)
        if last_exc is None:
            raise UpstreamUnavailable("openai", f"no time left within the {budget}s budget")
        cause = getattr(last_exc, "__cause__", None) or getattr(last_exc, "__context__", None)
        detail = f"{type(last_exc).__name__}: {last_exc}"
        if cause:
            detail += f" | cause: {type(cause).__name__}: {cause}"
        logger.error("OpenAI request failed: %s", detail)
        raise UpstreamUnavailable("openai", detail) from last_exc


def get_llm_client() -> LLMClient:
    provider = settings.llm_provider.lower().strip()
    if is_production():
        if not settings.openai_api_key:
            raise RuntimeError("OPENAI_API_KEY is required in production")
        return OpenAIClient()
    if provider == "openai" or (provider == "mock" and settings.openai_api_key):
        if not settings.openai_api_key and settings.allow_mock_fallback:
            logger.warning("OPENAI_API_KEY not set, falling back to the mock client")
            return MockLLMClient()
        return OpenAIClient()
    return MockLLMClient()
