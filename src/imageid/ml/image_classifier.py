"""Image classifiers backed by ONNX Runtime sessions.

Two external models sit behind this module: a domain-specific classifier
over a small fixed label set (``predict``) and a general-purpose classifier
over a broad label set (``classify``). Each has its own adapter turning the
raw score vector into canonical ``ClassificationCandidate`` values.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Literal, Protocol

import numpy as np
from pydantic import BaseModel, ConfigDict, Field

from imageid.errors import InferenceError
from imageid.ml.preprocessing import prepare_input

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray
    from onnxruntime import InferenceSession

_WORDNET_ID = re.compile(r"^n\d{8}[\s,:]+")


@dataclass(frozen=True)
class ClassificationCandidate:
    """A single label with its probability (0.0-1.0)."""

    label: str
    probability: float


@dataclass(frozen=True)
class ClassificationResult:
    """Final ranked candidates and the model that produced them."""

    candidates: tuple[ClassificationCandidate, ...]
    model_name: str

    def __post_init__(self) -> None:
        if not self.candidates:
            raise ValueError("A classification result needs at least one candidate")


class ModelMetadata(BaseModel):
    """Metadata descriptor published next to each model graph."""

    model_config = ConfigDict(populate_by_name=True)

    labels: list[str] = Field(min_length=1)
    image_size: int = Field(default=224, ge=1, alias="imageSize")
    name: str | None = Field(default=None, alias="modelName")
    layout: Literal["nhwc", "nchw"] = "nhwc"
    apply_softmax: bool = Field(default=False, alias="applySoftmax")


class PrimaryClassifier(Protocol):
    """Domain-specific classifier returning its full label set."""

    @property
    def model_name(self) -> str:
        """Return the model identifier string."""
        ...

    def predict(self, image: NDArray[np.uint8]) -> list[ClassificationCandidate]:
        """Score every label of the model, in label order."""
        ...


class SecondaryClassifier(Protocol):
    """General-purpose classifier returning its top-ranked labels."""

    @property
    def model_name(self) -> str:
        """Return the model identifier string."""
        ...

    def classify(self, image: NDArray[np.uint8]) -> list[ClassificationCandidate]:
        """Classify an image and return ranked tags.

        Args:
            image: HxWx3 RGB uint8 array.

        Returns:
            List of candidates sorted by probability (descending).
        """
        ...


def softmax(scores: NDArray[np.float32]) -> NDArray[np.float32]:
    shifted = np.exp(scores - scores.max())
    return shifted / shifted.sum()


def normalize_label(raw: str) -> str:
    """Strip a leading WordNet synset id (``n01440764 tench`` -> ``tench``)."""
    return _WORDNET_ID.sub("", raw).strip()


def candidates_in_label_order(labels: Sequence[str], scores: NDArray[np.float32]) -> list[ClassificationCandidate]:
    """Adapter for the primary model: one candidate per label, unsorted."""
    return [
        ClassificationCandidate(label=label, probability=_clamp(score))
        for label, score in zip(labels, scores, strict=True)
    ]


def top_candidates(labels: Sequence[str], scores: NDArray[np.float32], top_k: int) -> list[ClassificationCandidate]:
    """Adapter for the secondary model: best ``top_k`` labels, descending."""
    order = np.argsort(scores, kind="stable")[::-1][:top_k]
    return [ClassificationCandidate(label=normalize_label(labels[i]), probability=_clamp(scores[i])) for i in order]


def _clamp(score: float) -> float:
    return min(max(float(score), 0.0), 1.0)


class OnnxClassifier:
    """Shared scoring logic for single-output ONNX classification graphs."""

    def __init__(self, name: str, session: InferenceSession, metadata: ModelMetadata) -> None:
        self._name = name
        self._session = session
        self._metadata = metadata
        self._input_name = session.get_inputs()[0].name

    @property
    def model_name(self) -> str:
        return self._name

    @property
    def labels(self) -> list[str]:
        return self._metadata.labels

    def _scores(self, image: NDArray[np.uint8]) -> NDArray[np.float32]:
        tensor = prepare_input(image, self._metadata.image_size, self._metadata.layout)
        outputs = self._session.run(None, {self._input_name: tensor})
        scores = np.asarray(outputs[0], dtype=np.float32).reshape(-1)
        if scores.shape[0] != len(self._metadata.labels):
            raise InferenceError(
                f"Model '{self._name}' returned {scores.shape[0]} scores for {len(self._metadata.labels)} labels"
            )
        if self._metadata.apply_softmax:
            scores = softmax(scores)
        return scores


class CustomClassifier(OnnxClassifier):
    """Primary classifier trained on the application's own label set."""

    def predict(self, image: NDArray[np.uint8]) -> list[ClassificationCandidate]:
        return candidates_in_label_order(self._metadata.labels, self._scores(image))


class MobileNetClassifier(OnnxClassifier):
    """Secondary ImageNet classifier used when the primary is not confident."""

    def __init__(self, name: str, session: InferenceSession, metadata: ModelMetadata, top_k: int = 3) -> None:
        super().__init__(name, session, metadata)
        self._top_k = top_k

    def classify(self, image: NDArray[np.uint8]) -> list[ClassificationCandidate]:
        return top_candidates(self._metadata.labels, self._scores(image), self._top_k)
