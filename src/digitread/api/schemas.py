"""Pydantic request/response schemas for the digitread API."""

from __future__ import annotations

from pydantic import BaseModel, Field


class UploadPredictionResponse(BaseModel):
    """Response of the multipart upload endpoint."""

    filename: str
    pred_number: int = Field(description="Predicted digit")


class StrokesRequest(BaseModel):
    """A drawing given as pen strokes on a canvas."""

    width: int = Field(default=280, ge=1, le=4096)
    height: int = Field(default=280, ge=1, le=4096)
    line_width: float = Field(default=20.0, gt=0)
    strokes: list[list[tuple[float, float]]] = Field(description="Strokes as lists of [x, y] points")


class ClassifyResponse(BaseModel):
    """Predicted digit and the raw scores it was decoded from."""

    digit: int
    scores: list[float] = Field(description="Raw model output per class (no softmax)")


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    models_loaded: list[str]
    concurrent_requests: int
    queue_depth: int


class ModelInfo(BaseModel):
    """Input contract of the active model."""

    name: str
    input_shape: list[int] = Field(description="NHWC input shape")
    num_categories: int
    normalized: bool
    quantized: bool


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str
