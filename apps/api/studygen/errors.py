from __future__ import annotations


class GenerationError(Exception):
    """Base class for every error raised by the study pipeline."""


class InvalidRequest(GenerationError):
    def __init__(self, message: str, errors: list[str] | None = None) -> None:
        super().__init__(message)
        self.errors = errors or [message]


class UnparsableResponse(GenerationError):
    def __init__(self, message: str, raw_text: str = "", attempts: int = 0) -> None:
        super().__init__(message)
        self.raw_text = raw_text
        self.attempts = attempts


class UpstreamUnavailable(GenerationError):
    def __init__(self, service: str, message: str) -> None:
        super().__init__(f"{service} unavailable: {message}")
        self.service = service


class RunFailed(GenerationError):
    def __init__(self, phase: str, message: str) -> None:
        super().__init__(message)
        self.phase = phase


class RunCancelled(GenerationError):
    pass


class RunNotFound(GenerationError):
    pass


class ResultNotReady(GenerationError):
    pass


class RunNotCancellable(GenerationError):
    pass
