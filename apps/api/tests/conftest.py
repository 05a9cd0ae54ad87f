from __future__ import annotations

import pytest

from studygen.config import settings
from studygen.db import configure_engine


@pytest.fixture(autouse=True)
def isolated_storage(tmp_path, monkeypatch):
    monkeypatch.setattr(settings, "studies_dir", tmp_path / "studies")
    monkeypatch.setattr(settings, "generation_batch_pause_seconds", 0.0)
    monkeypatch.setattr(settings, "review_pause_seconds", 0.0)
    monkeypatch.setattr(settings, "reference_batch_pause_seconds", 0.0)
    monkeypatch.setattr(settings, "bible_api_max_retries", 0)
    monkeypatch.setattr(settings, "max_omitted_fields", None)
    monkeypatch.setattr(settings, "review_enabled", True)
    configure_engine(f"sqlite:///{tmp_path / 'studygen.db'}")
    yield tmp_path
