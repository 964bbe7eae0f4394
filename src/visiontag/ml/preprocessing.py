"""Image preprocessing pipeline.

Decodes uploaded bytes into an ``Image`` and turns an ``Image`` into the
flat, normalized tensor the classification model expects:

    decode -> RGB -> resize (fit / fill / stretch) -> normalize -> CHW -> flatten

The channel layout is fixed to CHW for every model this service loads.
"""

from __future__ import annotations

import io
import logging
from typing import TYPE_CHECKING

import numpy as np
from PIL import Image as PILImage
from PIL import ImageOps, UnidentifiedImageError

from visiontag.ml.errors import InvalidImageError, UnsupportedModeError
from visiontag.ml.types import ColorFormat, Image, Normalization, PreprocessingConfig, ResizingMode, Tensor

if TYPE_CHECKING:
    from collections.abc import Callable

    from numpy.typing import NDArray

logger = logging.getLogger(__name__)

TENSOR_LAYOUT: str = "CHW"
CHANNELS: int = 3
DEFAULT_INPUT_NAME: str = "input"

IMAGENET_MEAN = np.array([0.485, 0.456, 0.406], dtype=np.float32)
IMAGENET_STD = np.array([0.229, 0.224, 0.225], dtype=np.float32)


class ImagePreprocessor:
    """Stateless image decoding and tensor preparation."""

    def decode_image(self, image_bytes: bytes, max_pixels: int | None = None) -> Image:
        """Decode raw image bytes into an RGB ``Image``.

        EXIF orientation is applied so the pixels match what a viewer shows.

        Args:
            image_bytes: Raw file bytes (any format Pillow can read).
            max_pixels: Reject images with more than this many pixels.

        Returns:
            RGB image.

        Raises:
            InvalidImageError: If the data is empty, cannot be decoded, or
                exceeds ``max_pixels``.
        """
        if not image_bytes:
            raise InvalidImageError("Empty image data")

        try:
            with PILImage.open(io.BytesIO(image_bytes)) as source:
                pixel_count = source.width * source.height
                if max_pixels is not None and pixel_count > max_pixels:
                    raise InvalidImageError(f"Image has {pixel_count} pixels, limit is {max_pixels}")
                oriented = ImageOps.exif_transpose(source)
                pixels = np.asarray(oriented.convert("RGB"))
        except (UnidentifiedImageError, PILImage.DecompressionBombError, OSError) as exc:
            raise InvalidImageError("Could not decode image") from exc

        logger.debug("Decoded %dx%d image", pixels.shape[1], pixels.shape[0])
        return Image(pixels=pixels, color_format=ColorFormat.RGB)

    def preprocess(self, image: Image, config: PreprocessingConfig, name: str = DEFAULT_INPUT_NAME) -> Tensor:
        """Resize and normalize an image into a flat CHW float32 tensor.

        Args:
            image: Source image. Width and height must be positive.
            config: Resizing and normalization policy.
            name: Name of the model input the tensor is destined for.

        Returns:
            Tensor of length ``target_width * target_height * 3``.

        Raises:
            UnsupportedModeError: If ``config.resizing_mode`` is unknown.
            InvalidImageError: If the image is empty or its buffer does not
                match its color format.
        """
        resize = _RESIZERS[_resolve_mode(config.resizing_mode)]
        rgb = _to_rgb(image)
        resized = resize(rgb, config)
        normalized = _normalize(resized, config.normalization)
        chw = np.transpose(normalized, (2, 0, 1))
        return Tensor(name=name, values=chw, shape=chw.shape)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _resolve_mode(mode: ResizingMode | str) -> ResizingMode:
    try:
        return ResizingMode(mode)
    except ValueError:
        raise UnsupportedModeError(f"Unsupported resizing mode: {mode!r}") from None


def _to_rgb(image: Image) -> NDArray[np.uint8]:
    if image.width == 0 or image.height == 0:
        raise InvalidImageError(f"Image has zero size ({image.width}x{image.height})")

    pixels = image.pixels
    color_format = image.color_format

    if color_format is ColorFormat.GRAY:
        if pixels.ndim == 3 and pixels.shape[2] == 1:
            pixels = pixels[:, :, 0]
        if pixels.ndim != 2:
            raise InvalidImageError(f"Expected a single channel gray image, got shape {pixels.shape}")
        return np.stack([pixels] * CHANNELS, axis=-1)

    if pixels.ndim != 3 or pixels.shape[2] != color_format.channels:
        raise InvalidImageError(
            f"Expected {color_format.channels} channels for {color_format} image, got shape {pixels.shape}"
        )
    if color_format is ColorFormat.RGBA:
        pixels = pixels[:, :, :CHANNELS]
    elif color_format is ColorFormat.BGR:
        pixels = pixels[:, :, ::-1]
    return np.ascontiguousarray(pixels)


def _resize(pixels: NDArray[np.uint8], width: int, height: int) -> NDArray[np.uint8]:
    if pixels.shape[1] == width and pixels.shape[0] == height:
        return pixels
    resized = PILImage.fromarray(pixels).resize((width, height), resample=PILImage.Resampling.BILINEAR)
    return np.asarray(resized)


def _aspect_fit(pixels: NDArray[np.uint8], config: PreprocessingConfig) -> NDArray[np.uint8]:
    height, width = pixels.shape[:2]
    target_w, target_h = config.target_size
    scale = min(target_w / width, target_h / height)
    new_w = min(target_w, max(1, round(width * scale)))
    new_h = min(target_h, max(1, round(height * scale)))

    canvas = np.full((target_h, target_w, CHANNELS), config.pad_value, dtype=np.uint8)
    top = (target_h - new_h) // 2
    left = (target_w - new_w) // 2
    canvas[top : top + new_h, left : left + new_w] = _resize(pixels, new_w, new_h)
    return canvas


def _aspect_fill(pixels: NDArray[np.uint8], config: PreprocessingConfig) -> NDArray[np.uint8]:
    height, width = pixels.shape[:2]
    target_w, target_h = config.target_size
    scale = max(target_w / width, target_h / height)
    # Crop box in source coordinates, so only the kept region is resampled.
    crop_w = min(width, target_w / scale)
    crop_h = min(height, target_h / scale)
    left = (width - crop_w) / 2
    top = (height - crop_h) / 2

    if (crop_w, crop_h) == (target_w, target_h) and left.is_integer() and top.is_integer():
        return pixels[int(top) : int(top) + target_h, int(left) : int(left) + target_w]

    box = (left, top, left + crop_w, top + crop_h)
    resized = PILImage.fromarray(pixels).resize((target_w, target_h), resample=PILImage.Resampling.BILINEAR, box=box)
    return np.asarray(resized)


def _stretch(pixels: NDArray[np.uint8], config: PreprocessingConfig) -> NDArray[np.uint8]:
    return _resize(pixels, config.target_width, config.target_height)


_RESIZERS: dict[ResizingMode, Callable[[NDArray[np.uint8], PreprocessingConfig], NDArray[np.uint8]]] = {
    ResizingMode.ASPECT_FIT: _aspect_fit,
    ResizingMode.ASPECT_FILL: _aspect_fill,
    ResizingMode.STRETCH: _stretch,
}


def _normalize(pixels: NDArray[np.uint8], normalization: Normalization) -> NDArray[np.float32]:
    values = pixels.astype(np.float32)
    if normalization is Normalization.NONE:
        return values
    values /= 255.0
    if normalization is Normalization.UNIT:
        return values
    return (values - IMAGENET_MEAN) / IMAGENET_STD
