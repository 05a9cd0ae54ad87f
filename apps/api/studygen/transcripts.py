from __future__ import annotations

from pathlib import Path
from typing import Any, Optional

from .storage import atomic_write_json, iso_now, study_dir


def save_transcript(
    run_id: str,
    kind: str,
    prompt: str,
    response: Any,
    model: str,
    meta: Optional[dict] = None,
) -> Path:
    folder = study_dir(run_id) / "transcripts"
    timestamp = iso_now().replace(":", "-")
    path = folder / f"{timestamp}-{kind}.json"
    payload = {
        "kind": kind,
        "timestamp": iso_now(),
        "model": model,
        "prompt": prompt,
        "response": response,
        "meta": meta or {},
    }
    atomic_write_json(path, payload)
    return path


def list_transcripts(run_id: str) -> list[Path]:
    folder = study_dir(run_id) / "transcripts"
    if not folder.exists():
        return []
    return sorted(folder.glob("*.json"))
