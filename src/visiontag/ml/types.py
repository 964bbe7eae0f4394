"""Value types shared by the preprocessing and inference stages."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING

import numpy as np

if TYPE_CHECKING:
    from collections.abc import Iterator

    from numpy.typing import ArrayLike, NDArray


class ColorFormat(StrEnum):
    RGB = "rgb"
    RGBA = "rgba"
    BGR = "bgr"
    GRAY = "gray"

    @property
    def channels(self) -> int:
        return _CHANNELS[self]


_CHANNELS: dict[ColorFormat, int] = {
    ColorFormat.RGB: 3,
    ColorFormat.RGBA: 4,
    ColorFormat.BGR: 3,
    ColorFormat.GRAY: 1,
}


class ResizingMode(StrEnum):
    """Policy for fitting a source image into the target size."""

    ASPECT_FIT = "aspect_fit"
    ASPECT_FILL = "aspect_fill"
    STRETCH = "stretch"


class Normalization(StrEnum):
    """Per-channel transform applied after resizing."""

    NONE = "none"
    UNIT = "unit"
    IMAGENET = "imagenet"


@dataclass(frozen=True, eq=False)
class Image:
    """Raw pixel buffer captured from a camera, file, or upload.

    ``pixels`` is an HxWxC (or HxW for gray) uint8 array. The buffer is
    copied and frozen on construction so callers cannot mutate it later.
    """

    pixels: NDArray[np.uint8]
    color_format: ColorFormat = ColorFormat.RGB

    def __post_init__(self) -> None:
        pixels = np.array(self.pixels, dtype=np.uint8, copy=True)
        pixels.setflags(write=False)
        object.__setattr__(self, "pixels", pixels)
        object.__setattr__(self, "color_format", ColorFormat(self.color_format))

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0]) if self.pixels.ndim >= 1 else 0

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1]) if self.pixels.ndim >= 2 else 0


@dataclass(frozen=True)
class PreprocessingConfig:
    """Immutable preprocessing policy, constructed once at startup.

    ``target_size`` is ``(width, height)``. ``resizing_mode`` is resolved
    lazily by the preprocessor so an unknown value is reported there.
    """

    target_size: tuple[int, int] = (224, 224)
    resizing_mode: ResizingMode | str = ResizingMode.ASPECT_FIT
    normalization: Normalization = Normalization.IMAGENET
    pad_value: int = 0

    def __post_init__(self) -> None:
        width, height = self.target_size
        if width <= 0 or height <= 0:
            raise ValueError(f"Target size must be positive, got {width}x{height}")
        if not 0 <= self.pad_value <= 255:
            raise ValueError(f"Pad value must be in 0..255, got {self.pad_value}")
        object.__setattr__(self, "target_size", (int(width), int(height)))
        object.__setattr__(self, "normalization", Normalization(self.normalization))

    @property
    def target_width(self) -> int:
        return self.target_size[0]

    @property
    def target_height(self) -> int:
        return self.target_size[1]


@dataclass(frozen=True, eq=False)
class Tensor:
    """A named, flat float32 buffer fed to the model.

    ``shape`` is the logical layout of ``values`` without a batch dimension.
    """

    name: str
    values: NDArray[np.float32]
    shape: tuple[int, ...] = field(default=())

    def __post_init__(self) -> None:
        values = np.array(self.values, dtype=np.float32, copy=True).ravel()
        values.setflags(write=False)
        shape = tuple(self.shape) or (values.size,)
        if math.prod(shape) != values.size:
            raise ValueError(f"Shape {shape} does not match {values.size} values")
        object.__setattr__(self, "values", values)
        object.__setattr__(self, "shape", shape)

    def __len__(self) -> int:
        return int(self.values.size)


@dataclass(frozen=True)
class ScoreVector:
    """Per-class scores produced by a single inference call."""

    scores: tuple[float, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "scores", tuple(float(s) for s in self.scores))

    @classmethod
    def empty(cls) -> ScoreVector:
        return cls(())

    @classmethod
    def from_array(cls, values: ArrayLike) -> ScoreVector:
        return cls(tuple(np.asarray(values, dtype=np.float32).ravel().tolist()))

    def __len__(self) -> int:
        return len(self.scores)

    def __iter__(self) -> Iterator[float]:
        return iter(self.scores)

    def __getitem__(self, index: int) -> float:
        return self.scores[index]

    def top_k(self, k: int) -> list[tuple[int, float]]:
        """Return up to ``k`` ``(class_index, score)`` pairs, highest first.

        Ties keep the lower class index first.
        """
        if k <= 0:
            return []
        ranked = sorted(enumerate(self.scores), key=lambda item: (-item[1], item[0]))
        return ranked[:k]
