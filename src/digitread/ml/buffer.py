"""Image buffer model and input normalization.

An ``ImageBuffer`` is an HxWxC ``uint8`` array tagged with its pixel layout.
Callers hand the pipeline either a ``RawBuffer`` (pixels they already hold)
or a ``DecodedImage`` (a Pillow image); ``to_buffer`` reduces both to an
``ImageBuffer`` before any cropping happens.
"""

from __future__ import annotations

import io
import logging
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING

import numpy as np
from PIL import Image, UnidentifiedImageError

from digitread.ml.errors import AllocationError, UnsupportedFormatError

if TYPE_CHECKING:
    from numpy.typing import NDArray

logger = logging.getLogger(__name__)


class PixelFormat(StrEnum):
    GRAY8 = "gray8"
    RGB888 = "rgb888"
    BGRA8888 = "bgra8888"
    ARGB8888 = "argb8888"

    @property
    def channels(self) -> int:
        return _CHANNELS[self]


_CHANNELS: dict[PixelFormat, int] = {
    PixelFormat.GRAY8: 1,
    PixelFormat.RGB888: 3,
    PixelFormat.BGRA8888: 4,
    PixelFormat.ARGB8888: 4,
}

# Pillow modes that are converted to RGB before entering the pipeline.
_CONVERTIBLE_MODES = frozenset({"1", "P", "LA", "CMYK", "YCbCr"})


@dataclass(frozen=True)
class ImageBuffer:
    """Read-only pixel grid of shape (height, width, channels)."""

    pixels: NDArray[np.uint8]
    pixel_format: PixelFormat

    @classmethod
    def from_array(cls, array: NDArray[np.uint8], pixel_format: PixelFormat | str) -> ImageBuffer:
        """Wrap an array, validating it against the named pixel format.

        A 2-D array is accepted for single-channel formats.

        Raises:
            UnsupportedFormatError: If the format name is unknown, the array is
                not ``uint8``, or its channel count disagrees with the format.
        """
        try:
            fmt = PixelFormat(pixel_format)
        except ValueError:
            raise UnsupportedFormatError(f"Unsupported pixel format: {pixel_format!r}") from None

        pixels = np.asarray(array)
        if pixels.dtype != np.uint8:
            raise UnsupportedFormatError(f"Pixel data must be uint8, got {pixels.dtype}")
        if pixels.ndim == 2 and fmt.channels == 1:
            pixels = pixels[:, :, np.newaxis]
        buffer = cls(pixels=pixels, pixel_format=fmt)
        buffer.check_layout()
        return buffer

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])

    @property
    def channels(self) -> int:
        return self.pixel_format.channels

    def check_layout(self) -> None:
        """Raise ``UnsupportedFormatError`` unless the array matches the format."""
        if self.pixels.ndim != 3 or int(self.pixels.shape[2]) != self.pixel_format.channels:
            raise UnsupportedFormatError(
                f"Array of shape {self.pixels.shape} does not hold {self.pixel_format} pixels"
            )


@dataclass(frozen=True)
class CropRegion:
    """Axis-aligned rectangle in source pixel coordinates."""

    x: int
    y: int
    width: int
    height: int

    @classmethod
    def square_aspect_fill(cls, width: int, height: int) -> CropRegion:
        """Largest centered square of a ``width`` x ``height`` image."""
        side = min(width, height)
        return cls(x=(width - side) // 2, y=(height - side) // 2, width=side, height=side)

    @classmethod
    def full(cls, buffer: ImageBuffer) -> CropRegion:
        return cls(x=0, y=0, width=buffer.width, height=buffer.height)

    @property
    def is_empty(self) -> bool:
        return self.width <= 0 or self.height <= 0

    def is_within(self, width: int, height: int) -> bool:
        return (
            not self.is_empty
            and self.x >= 0
            and self.y >= 0
            and self.x + self.width <= width
            and self.y + self.height <= height
        )


@dataclass(frozen=True)
class RawBuffer:
    """Pipeline input holding pixels the caller already owns.

    ``crop=None`` selects the centered square aspect-fill region.
    """

    buffer: ImageBuffer
    crop: CropRegion | None = None


@dataclass(frozen=True)
class DecodedImage:
    """Pipeline input holding a decoded Pillow image."""

    image: Image.Image
    crop: CropRegion | None = None


VisionInput = RawBuffer | DecodedImage


def to_buffer(vision_input: VisionInput) -> ImageBuffer:
    """Normalize either input variant to a single ``ImageBuffer``."""
    if isinstance(vision_input, RawBuffer):
        vision_input.buffer.check_layout()
        return vision_input.buffer
    return image_to_buffer(vision_input.image)


def image_to_buffer(image: Image.Image) -> ImageBuffer:
    """Convert a Pillow image to an ``ImageBuffer``.

    ``L`` maps to gray, ``RGB`` stays RGB and ``RGBA`` is reordered to BGRA.
    A handful of other modes are converted to RGB first.

    Raises:
        UnsupportedFormatError: If the image mode cannot be represented.
        AllocationError: If the pixel array cannot be allocated.
    """
    mode = image.mode
    if mode in _CONVERTIBLE_MODES:
        logger.debug("Converting image mode %s to RGB", mode)
        image = image.convert("RGB")
        mode = "RGB"

    try:
        if mode == "L":
            return ImageBuffer.from_array(np.asarray(image, dtype=np.uint8), PixelFormat.GRAY8)
        if mode == "RGB":
            return ImageBuffer.from_array(np.asarray(image, dtype=np.uint8), PixelFormat.RGB888)
        if mode == "RGBA":
            rgba = np.asarray(image, dtype=np.uint8)
            bgra = np.ascontiguousarray(rgba[:, :, [2, 1, 0, 3]])
            return ImageBuffer.from_array(bgra, PixelFormat.BGRA8888)
    except MemoryError as exc:
        raise AllocationError("Out of memory while reading image pixels") from exc

    raise UnsupportedFormatError(f"Unsupported image mode: {mode}")


def buffer_to_image(buffer: ImageBuffer) -> Image.Image:
    """Inverse of ``image_to_buffer``: build a Pillow image from a buffer."""
    pixels = buffer.pixels
    if buffer.pixel_format is PixelFormat.GRAY8:
        return Image.fromarray(pixels[:, :, 0])
    if buffer.pixel_format is PixelFormat.RGB888:
        return Image.fromarray(pixels)
    if buffer.pixel_format is PixelFormat.BGRA8888:
        return Image.fromarray(np.ascontiguousarray(pixels[:, :, [2, 1, 0, 3]]))
    return Image.fromarray(np.ascontiguousarray(pixels[:, :, [1, 2, 3, 0]]))


def decode_image_bytes(data: bytes, max_pixels: int | None = None) -> Image.Image:
    """Decode raw file bytes (PNG, JPEG, ...) into a loaded Pillow image.

    The header is read first; an image with more than ``max_pixels`` pixels is
    rejected before its raster is decoded.

    Raises:
        UnsupportedFormatError: If Pillow cannot identify or decode the data.
        AllocationError: If the image exceeds ``max_pixels`` or is too large to decode.
    """
    try:
        image = Image.open(io.BytesIO(data))
        if max_pixels is not None and image.width * image.height > max_pixels:
            raise AllocationError(
                f"Image exceeds pixel limit: {image.width}x{image.height} > {max_pixels} pixels"
            )
        image.load()
    except Image.DecompressionBombError as exc:
        raise AllocationError(str(exc)) from exc
    except (UnidentifiedImageError, OSError) as exc:
        raise UnsupportedFormatError("Failed to decode image") from exc
    return image
