"""Image classification: turn raw model scores into ranked labels."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

import numpy as np

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray

    from visiontag.ml.controller import PredictionController
    from visiontag.ml.types import Image, ScoreVector

logger = logging.getLogger(__name__)

PROBABILITY_TOLERANCE: float = 1e-3


@dataclass(frozen=True)
class ClassificationResult:
    """A single classification prediction."""

    label: str
    confidence: float


class ImageClassifier(Protocol):
    """Protocol for image classification models."""

    @property
    def model_name(self) -> str:
        """Return the model identifier string."""
        ...

    def classify(self, image: Image) -> list[ClassificationResult]:
        """Classify an image and return ranked tags.

        Returns:
            List of classification results sorted by confidence (descending).
        """
        ...


class OnnxImageClassifier:
    """Ranks a controller's scores against the model's label list."""

    def __init__(
        self,
        controller: PredictionController,
        labels: Sequence[str],
        *,
        model_name: str,
        top_k: int = 5,
    ) -> None:
        self._controller = controller
        self._labels = list(labels)
        self._model_name = model_name
        self._top_k = top_k
        self._warned_label_mismatch = False

    @property
    def model_name(self) -> str:
        return self._model_name

    def classify(self, image: Image) -> list[ClassificationResult]:
        scores = self._controller.predict(image)
        return self.rank(scores)

    def rank(self, scores: ScoreVector) -> list[ClassificationResult]:
        """Convert scores to the ``top_k`` most confident labels."""
        if len(scores) == 0:
            return []

        probabilities = to_probabilities(np.asarray(scores.scores, dtype=np.float64))
        labels = self._labels_for(len(scores))
        order = np.argsort(-probabilities, kind="stable")[: self._top_k]
        return [ClassificationResult(label=labels[i], confidence=float(probabilities[i])) for i in order]

    def _labels_for(self, count: int) -> list[str]:
        if len(self._labels) == count:
            return self._labels
        if not self._warned_label_mismatch:
            logger.warning("Model has %d classes but %d labels, using class indices", count, len(self._labels))
            self._warned_label_mismatch = True
        return [f"class_{i}" for i in range(count)]


def to_probabilities(scores: NDArray[np.float64]) -> NDArray[np.float64]:
    """Softmax the scores unless they already form a probability distribution."""
    if (scores >= 0).all() and abs(float(scores.sum()) - 1.0) <= PROBABILITY_TOLERANCE:
        return scores
    shifted = np.exp(scores - scores.max())
    return shifted / shifted.sum()
