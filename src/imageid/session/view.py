"""Derive what a client should display from session and model state."""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING

from imageid.ml.model_manager import LoadState
from imageid.session.sources import upload_id

if TYPE_CHECKING:
    from imageid.ml.image_classifier import ClassificationCandidate
    from imageid.session.state import SessionError, SessionState

# Display-only annotation, unrelated to the fallback threshold.
BEST_GUESS_THRESHOLD: float = 44.0

UPLOADS_PATH = "/api/v1/uploads"


class Screen(StrEnum):
    LOADING_MODELS = "loading_models"
    MODELS_FAILED = "models_failed"
    READY = "ready"


class ResultsPanel(StrEnum):
    EMPTY = "empty"
    LOADING = "loading"
    RESULTS = "results"
    ERROR = "error"


@dataclass(frozen=True)
class ImageLink:
    ref: str
    src: str


@dataclass(frozen=True)
class ResultRow:
    label: str
    confidence: float
    best_guess: bool


@dataclass(frozen=True)
class Presentation:
    screen: Screen
    results_panel: ResultsPanel
    image: ImageLink | None
    results: tuple[ResultRow, ...]
    results_model: str | None
    error: SessionError | None
    can_identify: bool
    history: tuple[ImageLink, ...]
    show_history: bool
    models_error: str | None = None


def confidence_percent(probability: float) -> float:
    return round(probability * 100, 2)


def is_best_guess(probability: float) -> bool:
    return confidence_percent(probability) > BEST_GUESS_THRESHOLD


def render_row(candidate: ClassificationCandidate) -> ResultRow:
    return ResultRow(
        label=candidate.label,
        confidence=confidence_percent(candidate.probability),
        best_guess=is_best_guess(candidate.probability),
    )


def image_link(ref: str) -> ImageLink:
    """Pair a reference with a source a browser can load."""
    uploaded = upload_id(ref)
    return ImageLink(ref=ref, src=f"{UPLOADS_PATH}/{uploaded}" if uploaded else ref)


def present(state: SessionState, load_state: LoadState, load_error: str | None = None) -> Presentation:
    """Build the presentation for one session.

    While models load nothing but the loading screen is shown.
    """
    if load_state == LoadState.LOADING:
        return Presentation(
            screen=Screen.LOADING_MODELS,
            results_panel=ResultsPanel.EMPTY,
            image=None,
            results=(),
            results_model=None,
            error=None,
            can_identify=False,
            history=(),
            show_history=False,
        )

    rows: tuple[ResultRow, ...] = ()
    results_model = None
    if state.running:
        panel = ResultsPanel.LOADING
    elif state.result is not None:
        panel = ResultsPanel.RESULTS
        rows = tuple(render_row(candidate) for candidate in state.result.candidates)
        results_model = state.result.model_name
    elif state.error is not None:
        panel = ResultsPanel.ERROR
    else:
        panel = ResultsPanel.EMPTY

    ready = load_state == LoadState.READY
    return Presentation(
        screen=Screen.READY if ready else Screen.MODELS_FAILED,
        results_panel=panel,
        image=image_link(state.image) if state.image else None,
        results=rows,
        results_model=results_model,
        error=state.error if panel == ResultsPanel.ERROR else None,
        can_identify=ready and state.image is not None and not state.running,
        history=tuple(image_link(ref) for ref in state.history),
        show_history=bool(state.history),
        models_error=None if ready else load_error,
    )
