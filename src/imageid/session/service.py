"""Session operations: image selection, history and Identify."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from imageid.errors import (
    ClassificationInProgressError,
    ErrorKind,
    ImageIdError,
    InvalidImageError,
    ModelsNotReadyError,
)
from imageid.ml.model_manager import LoadState
from imageid.session.state import (
    classification_failed,
    classification_finished,
    classification_started,
    classification_stopped,
    history_selected,
    image_resolved,
)
from imageid.session.store import SessionStore
from imageid.session.view import present

if TYPE_CHECKING:
    import numpy as np
    from numpy.typing import NDArray

    from imageid.ml.decision import ClassificationEngine
    from imageid.ml.model_manager import ModelManager
    from imageid.ml.preprocessing import ImagePreprocessor
    from imageid.session.sources import ImageFetcher, UploadStore
    from imageid.session.state import SessionState
    from imageid.session.view import Presentation

logger = logging.getLogger(__name__)

CAPACITY_EXHAUSTED = "Inference capacity exhausted, try again later"


class SessionService:
    """Applies user events to sessions and runs classifications for them."""

    def __init__(
        self,
        model_manager: ModelManager,
        engine: ClassificationEngine,
        preprocessor: ImagePreprocessor,
        uploads: UploadStore,
        fetcher: ImageFetcher,
        max_sessions: int,
    ) -> None:
        self._model_manager = model_manager
        self._engine = engine
        self._preprocessor = preprocessor
        self._uploads = uploads
        self._fetcher = fetcher
        self._sessions = SessionStore(max_sessions)

    @property
    def uploads(self) -> UploadStore:
        return self._uploads

    def create_session(self) -> str:
        session_id = self._sessions.create()
        logger.info("Created session %s", session_id)
        return session_id

    def state(self, session_id: str) -> SessionState:
        return self._sessions.get(session_id)

    def presentation(self, session_id: str) -> Presentation:
        return present(self._sessions.get(session_id), self._model_manager.state, self._model_manager.error)

    # -- Image source events ------------------------------------------------

    def upload_image(self, session_id: str, data: bytes, content_type: str) -> SessionState:
        """Replace the current image with an uploaded file."""
        self._sessions.get(session_id)
        ref = self._uploads.put(data, content_type)
        return self._sessions.update(session_id, image_resolved, ref)

    def clear_image(self, session_id: str) -> SessionState:
        """The file selection was cleared; no current image."""
        return self._sessions.update(session_id, image_resolved, None)

    def enter_url(self, session_id: str, url: str) -> SessionState:
        """The URL field changed; its raw value becomes the current image."""
        return self._sessions.update(session_id, image_resolved, url or None)

    def select_history(self, session_id: str, index: int) -> SessionState:
        return self._sessions.update(session_id, history_selected, index)

    # -- Identify -----------------------------------------------------------

    async def identify(self, session_id: str) -> SessionState:
        """Classify the session's current image.

        Raises:
            InvalidImageError: If there is no image or it cannot be loaded.
            ModelsNotReadyError: If either classifier is not ready.
            ClassificationInProgressError: If a run is already in progress.
            InferenceError: If a classifier fails.
            TimeoutError: If the inference pool has no free slot.
        """
        state = self._sessions.get(session_id)
        if state.image is None:
            raise InvalidImageError("No image selected")
        if state.running:
            raise ClassificationInProgressError(f"Session {session_id} is already classifying")
        models = self._model_manager.models
        if models is None or self._model_manager.state != LoadState.READY:
            raise ModelsNotReadyError(self._model_manager.state)

        image_ref = state.image
        self._sessions.update(session_id, classification_started)
        try:
            image = await self._load_image(image_ref)
            result = await self._engine.classify(image, models)
            logger.info("Session %s classified by %s", session_id, result.model_name)
            return self._sessions.update(session_id, classification_finished, image_ref, result)
        except ImageIdError as exc:
            logger.warning("Session %s classification failed: %s", session_id, exc)
            self._sessions.update(session_id, classification_failed, image_ref, exc.kind, str(exc))
            raise
        except TimeoutError:
            logger.warning("Session %s classification timed out waiting for the inference pool", session_id)
            self._sessions.update(
                session_id, classification_failed, image_ref, ErrorKind.INFERENCE_FAILED, CAPACITY_EXHAUSTED
            )
            raise
        finally:
            self._sessions.update(session_id, classification_stopped)

    async def _load_image(self, ref: str) -> NDArray[np.uint8]:
        data = await self._fetcher.fetch(ref)
        return await asyncio.to_thread(self._preprocessor.decode_image, data)
