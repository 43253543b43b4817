"""FastAPI application entry point."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from digitread.api.routes import pipeline_error_handler, router, upload_router
from digitread.config import get_settings
from digitread.ml.errors import DigitReadError
from digitread.ml.image_classifier import DigitClassifier
from digitread.ml.inference import InferencePool
from digitread.ml.model_manager import OnnxModelManager

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: load the model on startup, clean up on shutdown.

    A ``ModelLoadError`` propagates and aborts startup.
    """
    settings = get_settings()
    app.state.settings = settings

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    logger.info(
        "Starting digitread (model=%s, input=%dx%d, max_concurrent=%s)",
        settings.model_name,
        settings.input_width,
        settings.input_height,
        settings.max_concurrent,
    )

    model_manager = OnnxModelManager(settings)
    model = model_manager.load()
    app.state.model_manager = model_manager
    app.state.classifier = DigitClassifier(
        model,
        model_manager.spec.descriptor,
        num_categories=settings.num_categories,
    )

    inference_pool = InferencePool(settings)
    app.state.inference_pool = inference_pool

    logger.info("digitread ready")
    yield

    logger.info("Shutting down digitread")
    inference_pool.shutdown()
    model_manager.shutdown()
    logger.info("digitread shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="digitread",
        description="Handwritten digit classification with an ONNX model",
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

    application.add_exception_handler(DigitReadError, pipeline_error_handler)
    application.include_router(upload_router)
    application.include_router(router)
    return application


app = create_app()


def run() -> None:
    """Serve the application with uvicorn using the configured host and port."""
    import uvicorn

    settings = get_settings()
    uvicorn.run("digitread.main:app", host=settings.host, port=settings.port)
