"""Client for a remote digit predictor.

The drawing is uploaded once as a multipart JPEG and the predictor answers
with ``{"filename": ..., "pred_number": ...}``. There is no retry and no
queueing: any failure is reported as ``InferenceError``.
"""

from __future__ import annotations

import io
import logging
from typing import TYPE_CHECKING

import httpx
from pydantic import BaseModel, ValidationError

from digitread.ml.buffer import ImageBuffer, buffer_to_image
from digitread.ml.errors import InferenceError

if TYPE_CHECKING:
    from PIL import Image

    from digitread.config import Settings

logger = logging.getLogger(__name__)

UPLOAD_FIELD = "mnist_image"
UPLOAD_FILENAME = "mnist_file.jpg"
JPEG_QUALITY = 100


class UploadPrediction(BaseModel):
    """Remote predictor response."""

    filename: str
    pred_number: int


def encode_jpeg(image: Image.Image | ImageBuffer) -> bytes:
    """Encode a drawing as JPEG at full quality."""
    if isinstance(image, ImageBuffer):
        image = buffer_to_image(image)
    if image.mode not in ("L", "RGB"):
        image = image.convert("RGB")
    out = io.BytesIO()
    image.save(out, format="JPEG", quality=JPEG_QUALITY)
    return out.getvalue()


class UploadClient:
    """One-shot uploader for a remote predictor endpoint."""

    def __init__(
        self,
        url: str,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._url = url
        self._timeout = timeout
        self._transport = transport

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> UploadClient:
        return cls(settings.upload_url, timeout=settings.upload_timeout, transport=transport)

    async def predict(self, image: Image.Image | ImageBuffer) -> UploadPrediction:
        """Upload ``image`` and return the remote prediction.

        Raises:
            InferenceError: On any transport error, non-2xx status or
                malformed response body.
        """
        files = {UPLOAD_FIELD: (UPLOAD_FILENAME, encode_jpeg(image), "image/jpeg")}
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.post(self._url, files=files)
                response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning("Upload to %s failed: %s", self._url, exc)
            raise InferenceError(f"Remote prediction failed: {exc}") from exc

        try:
            prediction = UploadPrediction.model_validate_json(response.content)
        except ValidationError as exc:
            raise InferenceError("Cannot parse the remote prediction") from exc

        logger.info("Remote predictor returned %d for %s", prediction.pred_number, prediction.filename)
        return prediction
