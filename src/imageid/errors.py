"""Error taxonomy shared by the loader, the classifiers and the session layer."""

from __future__ import annotations

from enum import StrEnum


class ErrorKind(StrEnum):
    LOAD_FAILED = "load_failed"
    INFERENCE_FAILED = "inference_failed"
    INVALID_IMAGE = "invalid_image"


class ImageIdError(Exception):
    """Base class for failures that are reported back to the user."""

    kind: ErrorKind


class ModelLoadError(ImageIdError):
    kind = ErrorKind.LOAD_FAILED


class InferenceError(ImageIdError):
    kind = ErrorKind.INFERENCE_FAILED


class InvalidImageError(ImageIdError):
    kind = ErrorKind.INVALID_IMAGE


class ModelsNotReadyError(RuntimeError):
    """Raised when classification is requested before both models are ready."""

    def __init__(self, state: str) -> None:
        super().__init__(f"Models are not ready (state: {state})")
        self.state = state


class ClassificationInProgressError(RuntimeError):
    """Raised when Identify is triggered while a run is still in progress."""


class SessionNotFoundError(KeyError):
    """Raised for an unknown or evicted session id."""

    def __init__(self, session_id: str) -> None:
        super().__init__(session_id)
        self.session_id = session_id

    def __str__(self) -> str:
        return f"Unknown session: {self.session_id}"
