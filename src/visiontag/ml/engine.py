"""Inference engine: validate a tensor, run the model, extract scores."""

from __future__ import annotations

import logging
import math
from typing import TYPE_CHECKING, Protocol

import numpy as np

from visiontag.ml.errors import InferenceError, MissingOutputError, ShapeMismatchError
from visiontag.ml.types import ScoreVector

if TYPE_CHECKING:
    from collections.abc import Mapping

    from numpy.typing import NDArray

    from visiontag.ml.types import Tensor

logger = logging.getLogger(__name__)


class ClassificationModel(Protocol):
    """A loaded classification model with exactly one input and one output."""

    @property
    def input_name(self) -> str:
        """Name of the model's input tensor."""
        ...

    @property
    def output_name(self) -> str:
        """Name of the output tensor holding class scores."""
        ...

    @property
    def input_shape(self) -> tuple[int, ...]:
        """Input shape without the batch dimension, e.g. ``(3, 224, 224)``."""
        ...

    def run(self, feeds: Mapping[str, NDArray[np.float32]]) -> Mapping[str, NDArray[np.float32]]:
        """Compute the model outputs for a batch of one.

        Args:
            feeds: Input name -> batched float32 array.

        Returns:
            Output name -> array, for every output the model produced.
        """
        ...


class InferenceEngine:
    """Runs a single tensor through a ``ClassificationModel``.

    The engine keeps no per-call state besides the output length seen on
    the first successful call, which every later call must reproduce.
    That check is unlocked and assumes calls are serialized by the caller
    (``InferencePool``); concurrent first calls only ever write the same value.
    """

    def __init__(self, model: ClassificationModel) -> None:
        self._model = model
        self._input_shape = tuple(model.input_shape)
        self._input_size = math.prod(self._input_shape)
        self._output_size: int | None = None

    @property
    def input_name(self) -> str:
        return self._model.input_name

    @property
    def input_size(self) -> int:
        return self._input_size

    def predict(self, tensor: Tensor) -> ScoreVector:
        """Run inference on a preprocessed tensor.

        Raises:
            ShapeMismatchError: If the tensor name or length does not match
                the model input. The model is not invoked.
            InferenceError: If the backend fails or the output length changes.
            MissingOutputError: If the result lacks the model's output name.
        """
        if tensor.name != self._model.input_name:
            raise ShapeMismatchError(f"Tensor '{tensor.name}' does not match model input '{self._model.input_name}'")
        if len(tensor) != self._input_size:
            raise ShapeMismatchError(
                f"Tensor has {len(tensor)} values, model input {self._input_shape} expects {self._input_size}"
            )

        batch = tensor.values.reshape((1, *self._input_shape))
        try:
            outputs = self._model.run({self._model.input_name: batch})
        except Exception as exc:
            raise InferenceError(f"Model inference failed: {exc}") from exc

        output_name = self._model.output_name
        if output_name not in outputs:
            raise MissingOutputError(f"Model result has no output named '{output_name}'")

        raw = np.asarray(outputs[output_name], dtype=np.float32)
        if not np.isfinite(raw).all():
            raise InferenceError(f"Model output '{output_name}' contains non-finite scores")

        scores = ScoreVector.from_array(raw)
        if self._output_size is None:
            self._output_size = len(scores)
            logger.debug("Model output '%s' has %d classes", output_name, self._output_size)
        elif len(scores) != self._output_size:
            raise InferenceError(f"Model output length changed from {self._output_size} to {len(scores)}")
        return scores
