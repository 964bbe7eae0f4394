"""Prediction controller: preprocess -> infer -> scores.

The controller is the single entry point a display layer calls. It holds
an immutable model reference and preprocessing config for its lifetime
and performs no locking; callers serialize access (see ``InferencePool``).
"""

from __future__ import annotations

import logging
from enum import StrEnum
from typing import TYPE_CHECKING

from visiontag.ml.engine import InferenceEngine
from visiontag.ml.errors import MissingOutputError
from visiontag.ml.preprocessing import ImagePreprocessor
from visiontag.ml.types import ScoreVector

if TYPE_CHECKING:
    from visiontag.ml.engine import ClassificationModel
    from visiontag.ml.types import Image, PreprocessingConfig

logger = logging.getLogger(__name__)


class MissingOutputPolicy(StrEnum):
    """What ``predict`` does when the model result lacks its output tensor."""

    RAISE = "raise"
    EMPTY = "empty"


class PredictionController:
    """Composes ``ImagePreprocessor`` and ``InferenceEngine`` for one model."""

    def __init__(
        self,
        model: ClassificationModel,
        config: PreprocessingConfig,
        *,
        missing_output_policy: MissingOutputPolicy | str = MissingOutputPolicy.RAISE,
        preprocessor: ImagePreprocessor | None = None,
    ) -> None:
        self._model = model
        self._config = config
        self._missing_output_policy = MissingOutputPolicy(missing_output_policy)
        self._preprocessor = preprocessor or ImagePreprocessor()
        self._engine = InferenceEngine(model)

    @property
    def config(self) -> PreprocessingConfig:
        return self._config

    @property
    def engine(self) -> InferenceEngine:
        return self._engine

    @property
    def missing_output_policy(self) -> MissingOutputPolicy:
        return self._missing_output_policy

    def predict(self, image: Image) -> ScoreVector:
        """Classify an image and return the raw per-class scores.

        Raises:
            InvalidImageError, UnsupportedModeError: From preprocessing.
            ShapeMismatchError, InferenceError: From inference.
            MissingOutputError: If the output is absent and the policy is ``raise``.
        """
        tensor = self._preprocessor.preprocess(image, self._config, name=self._engine.input_name)
        try:
            return self._engine.predict(tensor)
        except MissingOutputError:
            if self._missing_output_policy is MissingOutputPolicy.RAISE:
                raise
            logger.warning("Output '%s' missing from model result, returning empty scores", self._model.output_name)
            return ScoreVector.empty()
