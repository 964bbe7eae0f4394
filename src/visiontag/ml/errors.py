"""Exceptions raised by the prediction pipeline."""

from __future__ import annotations


class PredictionError(Exception):
    """Base class for all prediction pipeline errors."""


class InvalidImageError(PredictionError, ValueError):
    """The image is empty, malformed, or cannot be decoded."""


class UnsupportedModeError(PredictionError, ValueError):
    """The preprocessing config names an unknown resizing mode."""


class ShapeMismatchError(PredictionError, ValueError):
    """The input tensor does not match the model's declared input."""


class InferenceError(PredictionError, RuntimeError):
    """The model backend failed while computing a prediction."""


class MissingOutputError(PredictionError, LookupError):
    """The model result does not contain the expected output tensor."""


class ModelLoadError(PredictionError, RuntimeError):
    """A model could not be loaded or does not satisfy the classifier contract."""
