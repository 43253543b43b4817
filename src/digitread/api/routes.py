"""API route definitions."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from fastapi import APIRouter, Depends, HTTPException, Request, UploadFile, status
from fastapi.responses import JSONResponse

from digitread.api.middleware import verify_api_key
from digitread.api.schemas import (
    ClassifyResponse,
    ErrorResponse,
    HealthResponse,
    ModelInfo,
    StrokesRequest,
    UploadPredictionResponse,
)
from digitread.ml.buffer import DecodedImage, RawBuffer, decode_image_bytes
from digitread.ml.canvas import render_strokes
from digitread.ml.errors import (
    AllocationError,
    BoundsError,
    InferenceError,
    ShapeMismatchError,
    UnsupportedFormatError,
)

if TYPE_CHECKING:
    from digitread.config import Settings
    from digitread.ml.buffer import VisionInput
    from digitread.ml.image_classifier import DigitClassifier
    from digitread.ml.inference import InferencePool
    from digitread.ml.model_manager import OnnxModelManager
    from digitread.ml.postprocessing import ClassificationResult

logger = logging.getLogger(__name__)

HTTP_CONTENT_TOO_LARGE = 413
HTTP_UNPROCESSABLE_CONTENT = 422

router = APIRouter(prefix="/api/v1", dependencies=[Depends(verify_api_key)])

# Multipart upload endpoint at the root path remote clients post to.
upload_router = APIRouter(dependencies=[Depends(verify_api_key)])

_ERROR_RESPONSES: dict[int | str, dict[str, object]] = {
    HTTP_CONTENT_TOO_LARGE: {"model": ErrorResponse},
    status.HTTP_415_UNSUPPORTED_MEDIA_TYPE: {"model": ErrorResponse},
    HTTP_UNPROCESSABLE_CONTENT: {"model": ErrorResponse},
    status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
}


def _get_settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def _get_inference_pool(request: Request) -> InferencePool:
    pool: InferencePool = request.app.state.inference_pool
    return pool


def _get_classifier(request: Request) -> DigitClassifier:
    classifier: DigitClassifier = request.app.state.classifier
    return classifier


async def pipeline_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Map pipeline errors to HTTP responses; registered on the app."""
    if isinstance(exc, InferenceError):
        logger.warning("Prediction failed on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content={"detail": "Prediction failed"})

    if isinstance(exc, UnsupportedFormatError):
        status_code = status.HTTP_415_UNSUPPORTED_MEDIA_TYPE
    elif isinstance(exc, (BoundsError, ShapeMismatchError)):
        status_code = HTTP_UNPROCESSABLE_CONTENT
    elif isinstance(exc, AllocationError):
        status_code = HTTP_CONTENT_TOO_LARGE
    else:
        status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    logger.info("Rejected input on %s (%s): %s", request.url.path, type(exc).__name__, exc)
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


async def _read_image(request: Request, file: UploadFile) -> DecodedImage:
    settings = _get_settings(request)
    raw = await file.read(settings.max_file_size + 1)
    if len(raw) > settings.max_file_size:
        raise HTTPException(status_code=HTTP_CONTENT_TOO_LARGE, detail="File exceeds size limit")

    return DecodedImage(image=decode_image_bytes(raw, max_pixels=settings.max_image_pixels))


async def _classify(request: Request, vision_input: VisionInput) -> ClassificationResult:
    classifier = _get_classifier(request)
    pool = _get_inference_pool(request)
    try:
        return await pool.run(classifier.classify, vision_input)
    except TimeoutError:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Inference queue is full",
        ) from None


@upload_router.post(
    "/mnist",
    response_model=UploadPredictionResponse,
    responses=_ERROR_RESPONSES,
    summary="Predict the digit in an uploaded drawing",
)
async def upload_mnist(request: Request, mnist_image: UploadFile) -> UploadPredictionResponse:
    """Classify a multipart-uploaded image and echo its filename."""
    vision_input = await _read_image(request, mnist_image)
    result = await _classify(request, vision_input)
    return UploadPredictionResponse(filename=mnist_image.filename or "", pred_number=result.label)


@router.post(
    "/classify",
    response_model=ClassifyResponse,
    responses=_ERROR_RESPONSES,
    summary="Classify an uploaded image",
)
async def classify_image(request: Request, file: UploadFile) -> ClassifyResponse:
    """Classify an uploaded image and return the digit with its raw scores."""
    vision_input = await _read_image(request, file)
    result = await _classify(request, vision_input)
    return ClassifyResponse(digit=result.label, scores=list(result.scores))


@router.post(
    "/classify-strokes",
    response_model=ClassifyResponse,
    responses=_ERROR_RESPONSES,
    summary="Classify a drawing given as pen strokes",
)
async def classify_strokes(request: Request, body: StrokesRequest) -> ClassifyResponse:
    """Rasterize the strokes and classify the drawing."""
    buffer = render_strokes(body.strokes, body.width, body.height, line_width=body.line_width)
    result = await _classify(request, RawBuffer(buffer=buffer))
    return ClassifyResponse(digit=result.label, scores=list(result.scores))


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health(request: Request) -> HealthResponse:
    """Return service health status."""
    manager: OnnxModelManager = request.app.state.model_manager
    stats = _get_inference_pool(request).stats()
    return HealthResponse(
        status="ok",
        models_loaded=manager.get_loaded_models(),
        concurrent_requests=stats.active,
        queue_depth=stats.queued,
    )


@router.get(
    "/model",
    response_model=ModelInfo,
    summary="Describe the active model",
)
async def model_info(request: Request) -> ModelInfo:
    """Return the input contract of the active model."""
    settings = _get_settings(request)
    classifier = _get_classifier(request)
    descriptor = classifier.descriptor
    return ModelInfo(
        name=settings.model_name,
        input_shape=list(descriptor.shape),
        num_categories=classifier.num_categories,
        normalized=descriptor.normalized,
        quantized=descriptor.quantized,
    )

