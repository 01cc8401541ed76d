"""Per-session interaction state and the reducers that change it.

``SessionState`` is an immutable snapshot. Every user or lifecycle event is
a pure function ``(state, ...) -> state``; nothing mutates a snapshot in
place.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from imageid.errors import ErrorKind
    from imageid.ml.image_classifier import ClassificationResult


@dataclass(frozen=True)
class SessionError:
    """Transient failure shown in place of results."""

    kind: ErrorKind
    detail: str


@dataclass(frozen=True)
class SessionState:
    image: str | None = None
    result: ClassificationResult | None = None
    history: tuple[str, ...] = ()
    running: bool = False
    error: SessionError | None = None


def image_resolved(state: SessionState, image: str | None) -> SessionState:
    """A new image replaced the current one (upload, URL edit or cleared selection).

    The previous result and error are dropped. Non-absent images are
    prepended to the history, duplicates included.
    """
    history = (image, *state.history) if image else state.history
    return replace(state, image=image or None, result=None, error=None, history=history)


def history_selected(state: SessionState, index: int) -> SessionState:
    """Promote a history entry to the current image without re-adding it.

    Raises:
        IndexError: If ``index`` does not name a history entry.
    """
    if not 0 <= index < len(state.history):
        raise IndexError(f"No history entry at index {index}")
    return replace(state, image=state.history[index], result=None, error=None)


def classification_started(state: SessionState) -> SessionState:
    return replace(state, running=True, error=None)


def classification_finished(state: SessionState, image: str, result: ClassificationResult) -> SessionState:
    # The image may have been replaced while the run was in flight.
    if state.image != image:
        return replace(state, running=False)
    return replace(state, running=False, result=result, error=None)


def classification_failed(state: SessionState, image: str, kind: ErrorKind, detail: str) -> SessionState:
    if state.image != image:
        return replace(state, running=False)
    return replace(state, running=False, result=None, error=SessionError(kind=kind, detail=detail))


def classification_stopped(state: SessionState) -> SessionState:
    """Release the running flag; a no-op once finished or failed did so."""
    if not state.running:
        return state
    return replace(state, running=False)
