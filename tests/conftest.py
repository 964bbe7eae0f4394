"""Shared fixtures: an in-process model standing in for ONNX sessions."""

from __future__ import annotations

import io
from typing import TYPE_CHECKING

import numpy as np
import pytest
from PIL import Image as PILImage

from visiontag.ml.types import ColorFormat, Image, Normalization, PreprocessingConfig, ResizingMode

if TYPE_CHECKING:
    from collections.abc import Mapping

    from numpy.typing import NDArray


class FakeModel:
    """Deterministic ``ClassificationModel``: each class score is a strided sum of the input."""

    def __init__(
        self,
        *,
        input_name: str = "input_1",
        output_name: str = "output_0",
        input_shape: tuple[int, ...] = (3, 8, 8),
        num_classes: int = 4,
        result_name: str | None = None,
        error: Exception | None = None,
    ) -> None:
        self._input_name = input_name
        self._output_name = output_name
        self._input_shape = input_shape
        self._num_classes = num_classes
        self._result_name = result_name or output_name
        self._error = error
        self.calls: list[NDArray[np.float32]] = []

    @property
    def input_name(self) -> str:
        return self._input_name

    @property
    def output_name(self) -> str:
        return self._output_name

    @property
    def input_shape(self) -> tuple[int, ...]:
        return self._input_shape

    def run(self, feeds: Mapping[str, NDArray[np.float32]]) -> dict[str, NDArray[np.float32]]:
        batch = feeds[self._input_name]
        self.calls.append(batch)
        if self._error is not None:
            raise self._error
        flat = batch.reshape(-1)
        scores = np.array([flat[i :: self._num_classes].sum() for i in range(self._num_classes)], dtype=np.float32)
        return {self._result_name: scores[None, :]}


def make_image(width: int, height: int, color_format: ColorFormat = ColorFormat.RGB, seed: int = 0) -> Image:
    channels = color_format.channels
    rng = np.random.default_rng(seed)
    shape = (height, width) if color_format is ColorFormat.GRAY else (height, width, channels)
    return Image(pixels=rng.integers(0, 256, size=shape, dtype=np.uint8), color_format=color_format)


def encode_png(width: int, height: int, color: tuple[int, int, int] = (200, 40, 90)) -> bytes:
    buffer = io.BytesIO()
    PILImage.new("RGB", (width, height), color).save(buffer, format="PNG")
    return buffer.getvalue()


@pytest.fixture()
def small_config() -> PreprocessingConfig:
    return PreprocessingConfig(
        target_size=(8, 8),
        resizing_mode=ResizingMode.ASPECT_FIT,
        normalization=Normalization.IMAGENET,
    )


@pytest.fixture()
def fake_model() -> FakeModel:
    return FakeModel()
