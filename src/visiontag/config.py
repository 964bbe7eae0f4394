"""Environment-based configuration for VisionTag."""

from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from visiontag.ml.types import Normalization, PreprocessingConfig, ResizingMode


class Settings(BaseSettings):
    """Application settings loaded from VISIONTAG_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="VISIONTAG_",
        case_sensitive=False,
    )

    # Server
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 8083

    # ML device
    device: Literal["cpu", "cuda", "openvino"] = "cpu"

    # Model selection
    classification_model: str = "mobilenetv2"
    models_dir: str = "models"

    # ONNX Runtime threading
    intra_op_threads: int = Field(default=0, ge=0)
    inter_op_threads: int = Field(default=1, ge=1)
    gpu_mem_limit: int = Field(default=2_147_483_648, ge=0)

    # Concurrency
    max_concurrent: int = Field(default=1, ge=1)
    queue_timeout: float = Field(default=5.0, gt=0)

    # Input limits
    max_image_pixels: int = Field(default=16_777_216, ge=1)
    max_file_size: int = Field(default=52_428_800, ge=1)

    # Preprocessing
    resizing_mode: ResizingMode = ResizingMode.ASPECT_FIT
    target_width: int = Field(default=224, gt=0)
    target_height: int = Field(default=224, gt=0)
    normalization: Normalization = Normalization.IMAGENET
    pad_value: int = Field(default=0, ge=0, le=255)

    # Results
    missing_output_policy: Literal["raise", "empty"] = "raise"
    top_k: int = Field(default=5, ge=1)

    def preprocessing_config(self) -> PreprocessingConfig:
        """Build the immutable preprocessing config for the controller."""
        return PreprocessingConfig(
            target_size=(self.target_width, self.target_height),
            resizing_mode=self.resizing_mode,
            normalization=self.normalization,
            pad_value=self.pad_value,
        )


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()
