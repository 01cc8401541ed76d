"""Confidence-gated two-model classification.

The primary model is asked first. If any of its candidates reaches
``CONFIDENCE_THRESHOLD`` its full list is the answer; otherwise that list is
discarded and the secondary model's output is used instead. The two result
sets are never blended or re-ranked.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from imageid.errors import InferenceError
from imageid.ml.image_classifier import ClassificationCandidate, ClassificationResult

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable

    import numpy as np
    from numpy.typing import NDArray

    from imageid.ml.inference import InferencePool
    from imageid.ml.model_manager import LoadedModels

logger = logging.getLogger(__name__)

CONFIDENCE_THRESHOLD: float = 0.9


def is_confident(candidates: Iterable[ClassificationCandidate]) -> bool:
    """True if any candidate reaches the confidence threshold."""
    return any(candidate.probability >= CONFIDENCE_THRESHOLD for candidate in candidates)


class ClassificationEngine:
    """Runs the primary/secondary fallback on the inference pool."""

    def __init__(self, pool: InferencePool) -> None:
        self._pool = pool

    async def classify(self, image: NDArray[np.uint8], models: LoadedModels) -> ClassificationResult:
        """Classify a decoded image.

        Callers check that both models are loaded first.

        Raises:
            InferenceError: If a classifier call fails or nothing is returned.
            TimeoutError: If the inference pool has no free slot.
        """
        primary_candidates = await self._invoke(models.primary.model_name, models.primary.predict, image)
        if is_confident(primary_candidates):
            logger.info("Primary model %s is confident", models.primary.model_name)
            return _to_result(primary_candidates, models.primary.model_name)

        logger.info(
            "Primary model %s below %.2f; falling back to %s",
            models.primary.model_name,
            CONFIDENCE_THRESHOLD,
            models.secondary.model_name,
        )
        secondary_candidates = await self._invoke(models.secondary.model_name, models.secondary.classify, image)
        return _to_result(secondary_candidates, models.secondary.model_name)

    async def _invoke(
        self,
        model_name: str,
        func: Callable[[NDArray[np.uint8]], list[ClassificationCandidate]],
        image: NDArray[np.uint8],
    ) -> list[ClassificationCandidate]:
        try:
            return await self._pool.run(func, image)
        except (TimeoutError, InferenceError):
            raise
        except Exception as exc:
            logger.exception("Classifier %s failed", model_name)
            raise InferenceError(f"Classifier '{model_name}' failed: {exc}") from exc


def _to_result(candidates: list[ClassificationCandidate], model_name: str) -> ClassificationResult:
    if not candidates:
        raise InferenceError(f"Classifier '{model_name}' returned no candidates")
    return ClassificationResult(
        candidates=tuple(ClassificationCandidate(label=c.label, probability=c.probability) for c in candidates),
        model_name=model_name,
    )
