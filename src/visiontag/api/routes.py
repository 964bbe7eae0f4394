"""API route definitions."""

from __future__ import annotations

from http import HTTPStatus
from typing import TYPE_CHECKING, TypeVar

from fastapi import APIRouter, HTTPException, Request, UploadFile, status

from visiontag.api.schemas import (
    ClassifyImageResponse,
    ErrorResponse,
    HealthResponse,
    ImageTag,
    ModelInfo,
    ModelsResponse,
    PredictResponse,
)
from visiontag.ml.model_manager import MODEL_REGISTRY

if TYPE_CHECKING:
    from collections.abc import Callable

    from visiontag.config import Settings
    from visiontag.ml.controller import PredictionController
    from visiontag.ml.image_classifier import OnnxImageClassifier
    from visiontag.ml.inference import InferencePool
    from visiontag.ml.model_manager import ModelManager
    from visiontag.ml.preprocessing import ImagePreprocessor

router = APIRouter(prefix="/api/v1")

T = TypeVar("T")

_IMAGE_RESPONSES: dict[int | str, dict[str, object]] = {
    HTTPStatus.REQUEST_ENTITY_TOO_LARGE: {"model": ErrorResponse},
    HTTPStatus.UNPROCESSABLE_ENTITY: {"model": ErrorResponse},
    status.HTTP_500_INTERNAL_SERVER_ERROR: {"model": ErrorResponse},
    status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
}


def _get_settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def _get_inference_pool(request: Request) -> InferencePool:
    pool: InferencePool = request.app.state.inference_pool
    return pool


def _get_controller(request: Request) -> PredictionController:
    controller: PredictionController = request.app.state.controller
    return controller


def _get_classifier(request: Request) -> OnnxImageClassifier:
    classifier: OnnxImageClassifier = request.app.state.classifier
    return classifier


def _get_model_manager(request: Request) -> ModelManager:
    manager: ModelManager = request.app.state.model_manager
    return manager


async def _read_upload(request: Request, file: UploadFile) -> bytes:
    settings = _get_settings(request)
    data = await file.read(settings.max_file_size + 1)
    if len(data) > settings.max_file_size:
        raise HTTPException(
            status_code=HTTPStatus.REQUEST_ENTITY_TOO_LARGE,
            detail=f"File exceeds {settings.max_file_size} bytes",
        )
    return data


async def _run_on_upload(request: Request, file: UploadFile, func: Callable[..., T]) -> T:
    """Decode the upload and run ``func(image)`` on the inference pool."""
    settings = _get_settings(request)
    preprocessor: ImagePreprocessor = request.app.state.preprocessor
    data = await _read_upload(request, file)

    def _decode_and_run() -> T:
        image = preprocessor.decode_image(data, max_pixels=settings.max_image_pixels)
        return func(image)

    try:
        return await _get_inference_pool(request).run(_decode_and_run)
    except TimeoutError:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Inference queue is full, try again later",
        ) from None


@router.post(
    "/predict",
    response_model=PredictResponse,
    responses=_IMAGE_RESPONSES,
    summary="Raw class scores for an image",
)
async def predict(request: Request, file: UploadFile) -> PredictResponse:
    """Run the prediction pipeline on an uploaded image and return raw scores."""
    settings = _get_settings(request)
    scores = await _run_on_upload(request, file, _get_controller(request).predict)
    return PredictResponse(model=settings.classification_model, scores=list(scores))


@router.post(
    "/classify-image",
    response_model=ClassifyImageResponse,
    responses=_IMAGE_RESPONSES,
    summary="Classify an image with tags",
)
async def classify_image(request: Request, file: UploadFile) -> ClassifyImageResponse:
    """Classify an uploaded image and return ranked tags."""
    classifier = _get_classifier(request)
    results = await _run_on_upload(request, file, classifier.classify)
    return ClassifyImageResponse(
        model=classifier.model_name,
        tags=[ImageTag(label=r.label, confidence=r.confidence) for r in results],
    )


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health(request: Request) -> HealthResponse:
    """Return service health status."""
    settings = _get_settings(request)
    pool = _get_inference_pool(request)
    return HealthResponse(
        status="ok",
        gpu=settings.device == "cuda",
        models_loaded=_get_model_manager(request).get_loaded_models(),
        concurrent_requests=pool.active_count,
        queue_depth=pool.queue_depth,
    )


@router.get(
    "/models",
    response_model=ModelsResponse,
    summary="List available models",
)
async def list_models(request: Request) -> ModelsResponse:
    """Return registered models and whether each is the active one."""
    settings = _get_settings(request)
    models = [
        ModelInfo(
            name=spec.name,
            status="active" if spec.name == settings.classification_model else "available",
            input_shape=list(spec.input_shape),
            license=spec.license,
        )
        for spec in MODEL_REGISTRY.values()
    ]
    return ModelsResponse(models=models)
