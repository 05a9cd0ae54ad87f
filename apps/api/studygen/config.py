from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings


ROOT_DIR = Path(__file__).resolve().parents[3]


def _default_data_dir() -> Path:
    if os.getenv("AWS_LAMBDA_FUNCTION_NAME") or os.getenv("STUDYGEN_EPHEMERAL"):
        return Path("/tmp/studygen")
    return ROOT_DIR / "data"


class Settings(BaseSettings):
    app_name: str = "Study Generation API"
    environment: str = "development"
    data_dir: Path = _default_data_dir()
    db_path: Optional[Path] = None
    studies_dir: Optional[Path] = None
    log_level: str = "INFO"

    llm_provider: str = "mock"
    openai_api_key: Optional[str] = None
    openai_model: str = "gpt-4o-mini"
    openai_book_study_model: str = "gpt-4o"
    openai_max_retries: int = 2
    llm_retry_backoff_seconds: float = 1.0
    allow_mock_fallback: bool = True

    planning_max_tokens: int = 2000
    planning_temperature: float = 0.5
    planning_timeout_seconds: float = 60.0
    content_max_tokens: int = 3000
    book_study_max_tokens: int = 8000
    content_temperature: float = 0.7
    content_timeout_seconds: float = 120.0
    review_max_tokens: int = 1500
    review_temperature: float = 0.2
    review_timeout_seconds: float = 60.0

    max_concurrent_generations: int = Field(default=3, ge=1, le=10)
    generation_batch_pause_seconds: float = 1.0
    review_enabled: bool = True
    review_pause_seconds: float = 0.5
    max_omitted_fields: Optional[int] = None
    max_fallback_ratio: float = 0.25
    min_reference_valid_rate: float = 0.8
    max_duration_days: int = 365
    save_transcripts: bool = True

    bible_api_base_url: str = "https://bible-api.com"
    bible_api_timeout_seconds: float = 10.0
    reference_cache_ttl_seconds: int = 86400
    reference_batch_size: int = 5
    reference_batch_pause_seconds: float = 0.5
    bible_api_max_retries: int = 1
    user_agent: str = "StudyGenBot/0.1 (+local)"

    class Config:
        env_file = (
            ".env",
            str(ROOT_DIR / ".env"),
            str(ROOT_DIR / "apps" / "api" / ".env"),
        )
        env_prefix = ""


def _clean_openai_key(value: str) -> str:
    cleaned = value.strip().strip('"').strip("'")
    if cleaned.lower().startswith("bearer "):
        cleaned = cleaned.split(" ", 1)[1].strip()
    return cleaned


def is_production() -> bool:
    return settings.environment.lower().strip() in {"production", "prod"}


def configure_logging() -> None:
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


settings = Settings()
if settings.openai_api_key:
    settings.openai_api_key = _clean_openai_key(settings.openai_api_key)

if settings.db_path is None:
    settings.db_path = settings.data_dir / "studygen.db"
if settings.studies_dir is None:
    settings.studies_dir = settings.data_dir / "studies"

try:
    settings.studies_dir.mkdir(parents=True, exist_ok=True)
    settings.db_path.parent.mkdir(parents=True, exist_ok=True)
except OSError:
    settings.data_dir = Path("/tmp/studygen")
    settings.studies_dir = settings.data_dir / "studies"
    settings.db_path = settings.data_dir / "studygen.db"
    settings.studies_dir.mkdir(parents=True, exist_ok=True)

if is_production():
    settings.allow_mock_fallback = False
