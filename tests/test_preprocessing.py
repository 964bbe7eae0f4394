"""Tests for image decoding and tensor preprocessing."""

from __future__ import annotations

from unittest.mock import patch

import numpy as np
import pytest
from conftest import encode_png, make_image
from PIL import Image as PILImage

from visiontag.ml.errors import InvalidImageError, UnsupportedModeError
from visiontag.ml.preprocessing import IMAGENET_MEAN, IMAGENET_STD, ImagePreprocessor
from visiontag.ml.types import ColorFormat, Image, Normalization, PreprocessingConfig, ResizingMode

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _config(**overrides: object) -> PreprocessingConfig:
    defaults: dict[str, object] = {
        "target_size": (8, 8),
        "resizing_mode": ResizingMode.ASPECT_FIT,
        "normalization": Normalization.NONE,
        "pad_value": 0,
    }
    defaults.update(overrides)
    return PreprocessingConfig(**defaults)  # type: ignore[arg-type]


def _solid(width: int, height: int, color: tuple[int, int, int]) -> Image:
    pixels = np.empty((height, width, 3), dtype=np.uint8)
    pixels[:, :] = color
    return Image(pixels=pixels)


def _chw(values: np.ndarray, width: int = 8, height: int = 8) -> np.ndarray:
    return values.reshape(3, height, width)


@pytest.fixture()
def preprocessor() -> ImagePreprocessor:
    return ImagePreprocessor()


# ---------------------------------------------------------------------------
# Tensor shape and determinism
# ---------------------------------------------------------------------------


class TestTensorShape:
    @pytest.mark.parametrize("mode", list(ResizingMode))
    @pytest.mark.parametrize(("width", "height"), [(1, 1), (20, 10), (10, 20), (8, 8), (300, 7)])
    def test_length_matches_target(
        self, preprocessor: ImagePreprocessor, mode: ResizingMode, width: int, height: int
    ) -> None:
        config = _config(target_size=(6, 4), resizing_mode=mode)
        tensor = preprocessor.preprocess(make_image(width, height), config)
        assert len(tensor) == 6 * 4 * 3
        assert tensor.shape == (3, 4, 6)

    def test_tensor_uses_given_name(self, preprocessor: ImagePreprocessor) -> None:
        tensor = preprocessor.preprocess(make_image(4, 4), _config(), name="input_1")
        assert tensor.name == "input_1"

    def test_default_name(self, preprocessor: ImagePreprocessor) -> None:
        assert preprocessor.preprocess(make_image(4, 4), _config()).name == "input"

    def test_deterministic(self, preprocessor: ImagePreprocessor) -> None:
        image = make_image(37, 23, seed=7)
        config = _config(target_size=(16, 16), normalization=Normalization.IMAGENET)
        first = preprocessor.preprocess(image, config)
        second = preprocessor.preprocess(image, config)
        assert first.values.tobytes() == second.values.tobytes()

    def test_values_are_read_only(self, preprocessor: ImagePreprocessor) -> None:
        tensor = preprocessor.preprocess(make_image(4, 4), _config())
        assert tensor.values.dtype == np.float32
        with pytest.raises(ValueError):
            tensor.values[0] = 1.0


# ---------------------------------------------------------------------------
# Normalization and layout
# ---------------------------------------------------------------------------


class TestNormalization:
    def test_imagenet_values_within_bounds(self, preprocessor: ImagePreprocessor) -> None:
        image = make_image(224, 224, seed=3)
        config = _config(target_size=(224, 224), normalization=Normalization.IMAGENET)
        tensor = preprocessor.preprocess(image, config)

        planes = tensor.values.reshape(3, 224, 224)
        lower = -IMAGENET_MEAN / IMAGENET_STD
        upper = (1.0 - IMAGENET_MEAN) / IMAGENET_STD
        for channel in range(3):
            assert planes[channel].min() >= lower[channel] - 1e-5
            assert planes[channel].max() <= upper[channel] + 1e-5

    def test_imagenet_of_mean_color_is_near_zero(self, preprocessor: ImagePreprocessor) -> None:
        mean_color = tuple(int(round(m * 255)) for m in IMAGENET_MEAN)
        tensor = preprocessor.preprocess(
            _solid(8, 8, mean_color),  # type: ignore[arg-type]
            _config(normalization=Normalization.IMAGENET),
        )
        assert np.abs(tensor.values).max() < 0.02

    def test_unit_range(self, preprocessor: ImagePreprocessor) -> None:
        tensor = preprocessor.preprocess(make_image(12, 9), _config(normalization=Normalization.UNIT))
        assert tensor.values.min() >= 0.0
        assert tensor.values.max() <= 1.0

    def test_none_keeps_raw_values(self, preprocessor: ImagePreprocessor) -> None:
        tensor = preprocessor.preprocess(_solid(8, 8, (10, 20, 30)), _config())
        assert set(np.unique(tensor.values)) == {10.0, 20.0, 30.0}

    def test_channel_planes_in_chw_order(self, preprocessor: ImagePreprocessor) -> None:
        tensor = preprocessor.preprocess(_solid(8, 8, (10, 20, 30)), _config())
        assert (tensor.values[:64] == 10).all()
        assert (tensor.values[64:128] == 20).all()
        assert (tensor.values[128:] == 30).all()


class TestColorFormats:
    def test_bgr_is_swapped_to_rgb(self, preprocessor: ImagePreprocessor) -> None:
        pixels = np.empty((8, 8, 3), dtype=np.uint8)
        pixels[:, :] = (30, 20, 10)
        tensor = preprocessor.preprocess(Image(pixels=pixels, color_format=ColorFormat.BGR), _config())
        planes = _chw(tensor.values)
        assert (planes[0] == 10).all()
        assert (planes[2] == 30).all()

    def test_rgba_drops_alpha(self, preprocessor: ImagePreprocessor) -> None:
        pixels = np.empty((8, 8, 4), dtype=np.uint8)
        pixels[:, :] = (1, 2, 3, 255)
        tensor = preprocessor.preprocess(Image(pixels=pixels, color_format=ColorFormat.RGBA), _config())
        assert set(np.unique(tensor.values)) == {1.0, 2.0, 3.0}

    def test_gray_is_replicated(self, preprocessor: ImagePreprocessor) -> None:
        pixels = np.full((8, 8), 77, dtype=np.uint8)
        tensor = preprocessor.preprocess(Image(pixels=pixels, color_format=ColorFormat.GRAY), _config())
        assert (tensor.values == 77).all()

    def test_channel_count_mismatch_raises(self, preprocessor: ImagePreprocessor) -> None:
        image = Image(pixels=np.zeros((4, 4, 3), dtype=np.uint8), color_format=ColorFormat.RGBA)
        with pytest.raises(InvalidImageError, match="channels"):
            preprocessor.preprocess(image, _config())


# ---------------------------------------------------------------------------
# Resizing modes
# ---------------------------------------------------------------------------


class TestResizingModes:
    def test_aspect_fit_letterboxes_wide_image(self, preprocessor: ImagePreprocessor) -> None:
        tensor = preprocessor.preprocess(_solid(16, 8, (255, 255, 255)), _config())
        planes = _chw(tensor.values)
        assert (planes[:, :2, :] == 0).all()
        assert (planes[:, 2:6, :] == 255).all()
        assert (planes[:, 6:, :] == 0).all()

    def test_aspect_fit_pillarboxes_tall_image(self, preprocessor: ImagePreprocessor) -> None:
        tensor = preprocessor.preprocess(_solid(8, 16, (255, 255, 255)), _config(pad_value=114))
        planes = _chw(tensor.values)
        assert (planes[:, :, :2] == 114).all()
        assert (planes[:, :, 2:6] == 255).all()
        assert (planes[:, :, 6:] == 114).all()

    def test_aspect_fill_center_crops(self, preprocessor: ImagePreprocessor) -> None:
        pixels = np.zeros((8, 16, 3), dtype=np.uint8)
        pixels[:, :8] = (255, 0, 0)
        pixels[:, 8:] = (0, 0, 255)
        config = _config(resizing_mode=ResizingMode.ASPECT_FILL)

        planes = _chw(preprocessor.preprocess(Image(pixels=pixels), config).values)

        assert (planes[0, :, :4] == 255).all()
        assert (planes[2, :, :4] == 0).all()
        assert (planes[0, :, 4:] == 0).all()
        assert (planes[2, :, 4:] == 255).all()

    def test_stretch_covers_whole_canvas(self, preprocessor: ImagePreprocessor) -> None:
        config = _config(resizing_mode=ResizingMode.STRETCH)
        tensor = preprocessor.preprocess(_solid(16, 8, (255, 255, 255)), config)
        assert (tensor.values == 255).all()

    @pytest.mark.parametrize("mode", list(ResizingMode))
    @pytest.mark.parametrize(("width", "height"), [(1, 100_000), (100_000, 1), (1, 4000), (4000, 1)])
    def test_extreme_aspect_ratio_stays_bounded(
        self, preprocessor: ImagePreprocessor, mode: ResizingMode, width: int, height: int
    ) -> None:
        original_resize = PILImage.Image.resize
        requested: list[tuple[int, int]] = []

        def _recording_resize(
            self: PILImage.Image, size: tuple[int, int], *args: object, **kwargs: object
        ) -> PILImage.Image:
            requested.append(tuple(size))
            return original_resize(self, size, *args, **kwargs)

        image = Image(pixels=np.zeros((height, width, 3), dtype=np.uint8))
        config = _config(target_size=(224, 224), resizing_mode=mode)
        with patch.object(PILImage.Image, "resize", _recording_resize):
            tensor = preprocessor.preprocess(image, config)

        assert len(tensor) == 224 * 224 * 3
        assert all(w <= 224 and h <= 224 for w, h in requested)

    def test_aspect_fill_resamples_center_region(self, preprocessor: ImagePreprocessor) -> None:
        pixels = np.zeros((4, 12, 3), dtype=np.uint8)
        pixels[:, 3:9] = (255, 255, 255)
        config = _config(resizing_mode=ResizingMode.ASPECT_FILL)
        tensor = preprocessor.preprocess(Image(pixels=pixels), config)
        assert (tensor.values == 255).all()

    def test_mode_accepts_plain_string(self, preprocessor: ImagePreprocessor) -> None:
        tensor = preprocessor.preprocess(make_image(10, 10), _config(resizing_mode="stretch"))
        assert len(tensor) == 8 * 8 * 3


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------


class TestPreprocessFailures:
    def test_zero_width_raises(self, preprocessor: ImagePreprocessor) -> None:
        image = Image(pixels=np.zeros((10, 0, 3), dtype=np.uint8))
        with pytest.raises(InvalidImageError, match="zero size"):
            preprocessor.preprocess(image, _config())

    def test_zero_height_raises(self, preprocessor: ImagePreprocessor) -> None:
        image = Image(pixels=np.zeros((0, 10, 3), dtype=np.uint8))
        with pytest.raises(InvalidImageError):
            preprocessor.preprocess(image, _config())

    def test_unknown_mode_raises(self, preprocessor: ImagePreprocessor) -> None:
        with pytest.raises(UnsupportedModeError, match="zoom"):
            preprocessor.preprocess(make_image(4, 4), _config(resizing_mode="zoom"))

    def test_unknown_mode_checked_before_pixels(self, preprocessor: ImagePreprocessor) -> None:
        empty = Image(pixels=np.zeros((0, 0, 3), dtype=np.uint8))
        with (
            patch("visiontag.ml.preprocessing.PILImage.fromarray") as mock_fromarray,
            pytest.raises(UnsupportedModeError),
        ):
            preprocessor.preprocess(empty, _config(resizing_mode="zoom"))
        mock_fromarray.assert_not_called()


class TestPreprocessingConfig:
    @pytest.mark.parametrize("size", [(0, 224), (224, 0), (-1, 10)])
    def test_non_positive_target_rejected(self, size: tuple[int, int]) -> None:
        with pytest.raises(ValueError, match="positive"):
            PreprocessingConfig(target_size=size)

    def test_pad_value_range(self) -> None:
        with pytest.raises(ValueError, match="Pad value"):
            PreprocessingConfig(pad_value=256)

    def test_is_immutable(self) -> None:
        config = PreprocessingConfig()
        with pytest.raises(AttributeError):
            config.pad_value = 3  # type: ignore[misc]


class TestImage:
    def test_buffer_is_copied_and_frozen(self) -> None:
        source = np.zeros((2, 3, 3), dtype=np.uint8)
        image = Image(pixels=source)
        source[0, 0, 0] = 9

        assert image.pixels[0, 0, 0] == 0
        assert not image.pixels.flags.writeable
        assert (image.width, image.height) == (3, 2)


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------


class TestDecodeImage:
    def test_decodes_png(self, preprocessor: ImagePreprocessor) -> None:
        image = preprocessor.decode_image(encode_png(5, 3, (200, 40, 90)))
        assert (image.width, image.height) == (5, 3)
        assert image.color_format is ColorFormat.RGB
        assert tuple(image.pixels[1, 2]) == (200, 40, 90)

    def test_empty_bytes_raise(self, preprocessor: ImagePreprocessor) -> None:
        with pytest.raises(InvalidImageError, match="Empty"):
            preprocessor.decode_image(b"")

    def test_garbage_raises(self, preprocessor: ImagePreprocessor) -> None:
        with pytest.raises(InvalidImageError, match="decode"):
            preprocessor.decode_image(b"definitely not an image")

    def test_pixel_limit(self, preprocessor: ImagePreprocessor) -> None:
        with pytest.raises(InvalidImageError, match="limit"):
            preprocessor.decode_image(encode_png(10, 10), max_pixels=99)

    def test_pixel_limit_inclusive(self, preprocessor: ImagePreprocessor) -> None:
        image = preprocessor.decode_image(encode_png(10, 10), max_pixels=100)
        assert image.width == 10
