"""Model manager: download, load, and cache ONNX classification models.

Handles downloading model and label files from HuggingFace, creating and
caching ONNX InferenceSessions, and wrapping a session as a
``ClassificationModel`` the inference engine can drive.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from huggingface_hub import hf_hub_download
from onnxruntime import InferenceSession, SessionOptions
from onnxruntime.capi.onnxruntime_pybind11_state import ExecutionMode

from visiontag.ml.errors import ModelLoadError

if TYPE_CHECKING:
    from collections.abc import Mapping

    import numpy as np
    from numpy.typing import NDArray

    from visiontag.config import Settings

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Protocol (kept for test mocking)
# ---------------------------------------------------------------------------


class ModelManager(Protocol):
    """Protocol for model lifecycle management."""

    def ensure_downloaded(self, model_name: str) -> Path:
        """Ensure a model is downloaded and return its file path."""
        ...

    def load_model(self, model_name: str) -> OnnxClassificationModel:
        """Return a ready-to-run classification model."""
        ...

    def get_labels(self, model_name: str) -> list[str]:
        """Return the class labels for a model, indexed by class id."""
        ...

    def get_loaded_models(self) -> list[str]:
        """Return names of currently loaded models."""
        ...

    def shutdown(self) -> None:
        """Clear all cached sessions."""
        ...


# ---------------------------------------------------------------------------
# Model registry
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ModelSpec:
    """Static metadata for a single ONNX classification model."""

    name: str
    repo_id: str
    filename: str
    labels_filename: str
    subfolder: str | None
    input_name: str
    output_name: str
    input_shape: tuple[int, ...]
    license: str


MODEL_REGISTRY: dict[str, ModelSpec] = {
    "mobilenetv2": ModelSpec(
        name="mobilenetv2",
        repo_id="visiontag/visiontag-models",
        filename="mobilenetv2.onnx",
        labels_filename="imagenet_labels.txt",
        subfolder=None,
        input_name="input_1",
        output_name="output_0",
        input_shape=(3, 224, 224),
        license="Apache-2.0",
    ),
    "efficientnet_b0": ModelSpec(
        name="efficientnet_b0",
        repo_id="visiontag/visiontag-models",
        filename="efficientnet_b0.onnx",
        labels_filename="imagenet_labels.txt",
        subfolder=None,
        input_name="input",
        output_name="logits",
        input_shape=(3, 224, 224),
        license="Apache-2.0",
    ),
    "resnet50": ModelSpec(
        name="resnet50",
        repo_id="visiontag/visiontag-models",
        filename="resnet50.onnx",
        labels_filename="imagenet_labels.txt",
        subfolder=None,
        input_name="data",
        output_name="output",
        input_shape=(3, 224, 224),
        license="MIT",
    ),
}


# ---------------------------------------------------------------------------
# ONNX-backed classification model
# ---------------------------------------------------------------------------


class OnnxClassificationModel:
    """Adapts an ``InferenceSession`` to the ``ClassificationModel`` protocol."""

    def __init__(
        self,
        session: InferenceSession,
        *,
        input_name: str,
        output_name: str,
        input_shape: tuple[int, ...],
    ) -> None:
        inputs = session.get_inputs()
        outputs = session.get_outputs()
        if len(inputs) != 1 or len(outputs) != 1:
            raise ModelLoadError(
                f"Classification models need exactly one input and one output, "
                f"got {len(inputs)} inputs and {len(outputs)} outputs"
            )
        if inputs[0].name != input_name:
            raise ModelLoadError(f"Model input is named '{inputs[0].name}', expected '{input_name}'")
        if outputs[0].name != output_name:
            logger.warning("Model output is named '%s', expected '%s'", outputs[0].name, output_name)

        self._session = session
        self._input_name = input_name
        self._output_name = output_name
        self._input_shape = input_shape
        self._output_names = [output.name for output in outputs]

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
        results = self._session.run(None, dict(feeds))
        return dict(zip(self._output_names, results, strict=True))


# ---------------------------------------------------------------------------
# Concrete manager
# ---------------------------------------------------------------------------


class OnnxModelManager:
    """Downloads, loads, and caches ONNX inference sessions.

    Sessions live until ``shutdown``; a controller holds its model for the
    whole process lifetime.
    """

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._models_dir = Path(settings.models_dir)
        self._models_dir.mkdir(parents=True, exist_ok=True)

        self._lock = threading.Lock()
        self._sessions: dict[str, InferenceSession] = {}
        self._model_paths: dict[str, Path] = {}
        self._labels: dict[str, list[str]] = {}

        self._providers = self._build_providers()
        self._session_options = self._build_session_options()

    # -- Public API ---------------------------------------------------------

    def ensure_downloaded(self, model_name: str) -> Path:
        """Download a model from HuggingFace if not already present locally."""
        spec = self._get_spec(model_name)

        if model_name in self._model_paths:
            path = self._model_paths[model_name]
            if path.exists():
                return path

        downloaded = self._download(spec, spec.filename)
        self._model_paths[model_name] = downloaded
        logger.info("Downloaded %s to %s", model_name, downloaded)
        return downloaded

    def get_session(self, model_name: str) -> InferenceSession:
        """Return a cached InferenceSession, creating one if needed."""
        with self._lock:
            cached = self._sessions.get(model_name)
            if cached is not None:
                return cached

        model_path = self.ensure_downloaded(model_name)
        session = InferenceSession(
            str(model_path),
            sess_options=self._session_options,
            providers=self._providers,
        )

        with self._lock:
            # Another thread may have created it while we loaded.
            existing = self._sessions.get(model_name)
            if existing is not None:
                return existing
            self._sessions[model_name] = session
            logger.info("Loaded session for %s", model_name)
            return session

    def load_model(self, model_name: str) -> OnnxClassificationModel:
        """Load a registered model and wrap it for the inference engine.

        Raises:
            KeyError: If the model is not registered.
            ModelLoadError: If downloading or session creation fails, or the
                model does not have the registered input/output layout.
        """
        spec = self._get_spec(model_name)
        try:
            session = self.get_session(model_name)
        except Exception as exc:
            raise ModelLoadError(f"Could not load model '{model_name}': {exc}") from exc

        return OnnxClassificationModel(
            session,
            input_name=spec.input_name,
            output_name=spec.output_name,
            input_shape=spec.input_shape,
        )

    def get_labels(self, model_name: str) -> list[str]:
        """Return class labels for a model, one per line of its labels file.

        Raises:
            KeyError: If the model is not registered.
            ModelLoadError: If the labels file cannot be downloaded or read.
        """
        spec = self._get_spec(model_name)
        cached = self._labels.get(model_name)
        if cached is not None:
            return cached

        try:
            path = self._download(spec, spec.labels_filename)
            text = path.read_text(encoding="utf-8")
        except Exception as exc:
            raise ModelLoadError(f"Could not load labels for '{model_name}': {exc}") from exc

        labels = [line.strip() for line in text.splitlines() if line.strip()]
        self._labels[model_name] = labels
        logger.info("Loaded %d labels for %s", len(labels), model_name)
        return labels

    def get_loaded_models(self) -> list[str]:
        """Return names of models with active sessions."""
        with self._lock:
            return list(self._sessions.keys())

    def shutdown(self) -> None:
        """Clear all cached sessions."""
        with self._lock:
            self._sessions.clear()
            logger.info("All model sessions cleared")

    # -- Internal -----------------------------------------------------------

    @staticmethod
    def _get_spec(model_name: str) -> ModelSpec:
        try:
            return MODEL_REGISTRY[model_name]
        except KeyError:
            raise KeyError(f"Unknown model: {model_name}") from None

    def _download(self, spec: ModelSpec, filename: str) -> Path:
        return Path(
            hf_hub_download(
                repo_id=spec.repo_id,
                filename=filename,
                subfolder=spec.subfolder,
                local_dir=str(self._models_dir),
            )
        )

    def _build_providers(self) -> list[str | tuple[str, dict[str, object]]]:
        device = self._settings.device
        if device == "cuda":
            return [
                (
                    "CUDAExecutionProvider",
                    {
                        "device_id": 0,
                        "gpu_mem_limit": self._settings.gpu_mem_limit,
                        "arena_extend_strategy": "kSameAsRequested",
                    },
                ),
                "CPUExecutionProvider",
            ]
        if device == "openvino":
            return [
                ("OpenVINOExecutionProvider", {"device_type": "CPU"}),
                "CPUExecutionProvider",
            ]
        return ["CPUExecutionProvider"]

    def _build_session_options(self) -> SessionOptions:
        opts = SessionOptions()
        opts.intra_op_num_threads = self._settings.intra_op_threads
        opts.inter_op_num_threads = self._settings.inter_op_threads
        opts.execution_mode = ExecutionMode.ORT_SEQUENTIAL
        opts.enable_mem_pattern = True
        opts.enable_mem_reuse = True

        if self._settings.device == "openvino":
            # OpenVINO does its own graph optimization
            from onnxruntime import GraphOptimizationLevel

            opts.graph_optimization_level = GraphOptimizationLevel.ORT_DISABLE_ALL
        return opts
