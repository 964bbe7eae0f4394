"""FastAPI application entry point."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from http import HTTPStatus
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Sequence

    from visiontag.config import Settings
    from visiontag.ml.engine import ClassificationModel
    from visiontag.ml.model_manager import ModelManager

import uvicorn
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from visiontag.api.routes import router
from visiontag.config import get_settings
from visiontag.ml.controller import PredictionController
from visiontag.ml.errors import InvalidImageError, PredictionError, UnsupportedModeError
from visiontag.ml.image_classifier import OnnxImageClassifier
from visiontag.ml.inference import InferencePool
from visiontag.ml.model_manager import OnnxModelManager
from visiontag.ml.preprocessing import ImagePreprocessor

logger = logging.getLogger(__name__)


def configure_pipeline(
    app: FastAPI,
    settings: Settings,
    model_manager: ModelManager,
    model: ClassificationModel,
    labels: Sequence[str],
) -> None:
    """Build the prediction pipeline once and attach it to the app state."""
    preprocessor = ImagePreprocessor()
    controller = PredictionController(
        model,
        settings.preprocessing_config(),
        missing_output_policy=settings.missing_output_policy,
        preprocessor=preprocessor,
    )
    app.state.settings = settings
    app.state.model_manager = model_manager
    app.state.preprocessor = preprocessor
    app.state.controller = controller
    app.state.classifier = OnnxImageClassifier(
        controller,
        labels,
        model_name=settings.classification_model,
        top_k=settings.top_k,
    )
    app.state.inference_pool = InferencePool(settings)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: load the model on startup, release it on shutdown."""
    settings = get_settings()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    logger.info(
        "Starting VisionTag (device=%s, max_concurrent=%s, model=%s, resizing=%s, normalization=%s)",
        settings.device,
        settings.max_concurrent,
        settings.classification_model,
        settings.resizing_mode,
        settings.normalization,
    )

    model_manager = OnnxModelManager(settings)
    model = model_manager.load_model(settings.classification_model)
    labels = model_manager.get_labels(settings.classification_model)
    configure_pipeline(app, settings, model_manager, model, labels)

    logger.info("VisionTag ready")
    yield

    logger.info("Shutting down VisionTag")
    app.state.inference_pool.shutdown()
    model_manager.shutdown()
    logger.info("VisionTag shutdown complete")


async def prediction_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Map pipeline errors to HTTP responses."""
    status_code: int
    if isinstance(exc, InvalidImageError | UnsupportedModeError):
        status_code = HTTPStatus.UNPROCESSABLE_ENTITY
    else:
        status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
        logger.error("Prediction failed on %s: %s", request.url.path, exc)
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="VisionTag",
        description="Image classification API backed by ONNX models",
        version="0.1.0",
        lifespan=lifespan,
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    application.add_exception_handler(PredictionError, prediction_error_handler)
    application.include_router(router)
    return application


app = create_app()


def run() -> None:
    """Serve the application with uvicorn using the configured host and port."""
    settings = get_settings()
    uvicorn.run("visiontag.main:app", host=settings.host, port=settings.port)
