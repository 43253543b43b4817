"""Image preprocessing: crop, resize, channel reduction and tensor encoding.

``crop_and_resize`` cuts the region of interest out of a source buffer and
scales it to the model geometry without changing its pixel format.
``encode`` then reduces channels, applies the normalization policy and emits
the flat, row-major, channel-interleaved sample sequence the model expects.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np
from PIL import Image

from digitread.ml.buffer import CropRegion, ImageBuffer, PixelFormat, VisionInput, to_buffer
from digitread.ml.errors import AllocationError, BoundsError, ShapeMismatchError

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from digitread.config import Settings

logger = logging.getLogger(__name__)

LUMA_WEIGHTS: tuple[float, float, float] = (0.30, 0.59, 0.11)

# Index of the R, G and B planes within each multi-channel layout.
_RGB_INDICES: dict[PixelFormat, tuple[int, int, int]] = {
    PixelFormat.RGB888: (0, 1, 2),
    PixelFormat.BGRA8888: (2, 1, 0),
    PixelFormat.ARGB8888: (1, 2, 3),
}


@dataclass(frozen=True)
class ModelInputDescriptor:
    """Fixed shape and numeric contract of a model's input tensor."""

    width: int = 28
    height: int = 28
    channels: int = 1
    normalized: bool = True
    quantized: bool = False

    def __post_init__(self) -> None:
        if self.width <= 0 or self.height <= 0:
            raise ValueError("Model input width and height must be positive")
        if self.channels not in (1, 3):
            raise ValueError(f"Model input must have 1 or 3 channels, got {self.channels}")

    @classmethod
    def from_settings(cls, settings: Settings) -> ModelInputDescriptor:
        return cls(
            width=settings.input_width,
            height=settings.input_height,
            channels=1 if settings.grayscale else 3,
            normalized=settings.normalized,
            quantized=settings.quantized,
        )

    @property
    def shape(self) -> tuple[int, int, int, int]:
        """NHWC shape with a batch of one."""
        return (1, self.height, self.width, self.channels)

    @property
    def sample_count(self) -> int:
        return self.width * self.height * self.channels

    @property
    def dtype(self) -> type[np.generic]:
        return np.uint8 if self.quantized else np.float32

    @property
    def onnx_type(self) -> str:
        return "tensor(uint8)" if self.quantized else "tensor(float)"


# ---------------------------------------------------------------------------
# PixelBuffer adapter
# ---------------------------------------------------------------------------


def crop_and_resize(buffer: ImageBuffer, crop_region: CropRegion, target_size: tuple[int, int]) -> ImageBuffer:
    """Crop ``crop_region`` out of ``buffer`` and scale it to ``target_size``.

    Args:
        buffer: Source buffer in any supported pixel format. Not modified.
        crop_region: Rectangle in source coordinates; must lie inside the buffer.
        target_size: ``(width, height)`` of the result.

    Returns:
        A new buffer of the target size in the source pixel format. The crop's
        aspect ratio is not checked, so a non-matching crop is stretched.

    Raises:
        UnsupportedFormatError: If the array does not match its pixel format.
        BoundsError: If the crop is empty or out of bounds, or the target size
            is not positive.
        AllocationError: If the output cannot be allocated.
    """
    buffer.check_layout()
    if not crop_region.is_within(buffer.width, buffer.height):
        raise BoundsError(f"Crop region {crop_region} is outside a {buffer.width}x{buffer.height} buffer")
    target_width, target_height = target_size
    if target_width <= 0 or target_height <= 0:
        raise BoundsError(f"Target size must be positive, got {target_width}x{target_height}")

    region = buffer.pixels[
        crop_region.y : crop_region.y + crop_region.height,
        crop_region.x : crop_region.x + crop_region.width,
    ]
    try:
        # Each plane is scaled on its own so alpha is never premultiplied.
        planes = [
            np.asarray(
                Image.fromarray(np.ascontiguousarray(region[:, :, c])).resize(
                    (target_width, target_height), resample=Image.Resampling.BILINEAR
                ),
                dtype=np.uint8,
            )
            for c in range(buffer.channels)
        ]
        resized = np.stack(planes, axis=-1)
    except MemoryError as exc:
        raise AllocationError(f"Out of memory resizing to {target_width}x{target_height}") from exc

    logger.debug(
        "Cropped %s from %dx%d and resized to %dx%d",
        crop_region,
        buffer.width,
        buffer.height,
        target_width,
        target_height,
    )
    return ImageBuffer(pixels=resized, pixel_format=buffer.pixel_format)


# ---------------------------------------------------------------------------
# Tensor encoder
# ---------------------------------------------------------------------------


def reduce_channels(buffer: ImageBuffer, channels: int) -> NDArray[np.uint8]:
    """Return the buffer's pixels as an HxWx``channels`` array.

    Multi-channel sources are reduced to gray with luminance weighting, or to
    RGB by stripping alpha. A gray source asked for three channels is
    replicated. A matching channel count is copied unchanged.
    """
    pixels = buffer.pixels
    if buffer.channels == channels:
        return pixels.copy()

    if channels == 1:
        r, g, b = (pixels[:, :, i].astype(np.float32) for i in _RGB_INDICES[buffer.pixel_format])
        luma = r * LUMA_WEIGHTS[0] + g * LUMA_WEIGHTS[1] + b * LUMA_WEIGHTS[2]
        return np.clip(np.rint(luma), 0, 255).astype(np.uint8)[:, :, np.newaxis]

    if channels == 3:
        if buffer.pixel_format is PixelFormat.GRAY8:
            return np.repeat(pixels, 3, axis=2)
        return np.ascontiguousarray(pixels[:, :, list(_RGB_INDICES[buffer.pixel_format])])

    raise ValueError(f"Cannot reduce {buffer.pixel_format} to {channels} channels")


def encode(buffer: ImageBuffer, descriptor: ModelInputDescriptor) -> NDArray[np.generic]:
    """Encode a model-sized buffer as a flat input tensor.

    Quantized models receive ``uint8`` samples unchanged. Otherwise samples are
    ``float32``, divided by 255 when the descriptor is normalized.

    Raises:
        ShapeMismatchError: If the buffer is not ``descriptor.width`` x ``descriptor.height``.
        AllocationError: If the tensor cannot be allocated.
    """
    if buffer.width != descriptor.width or buffer.height != descriptor.height:
        raise ShapeMismatchError(
            f"Buffer is {buffer.width}x{buffer.height}, model expects {descriptor.width}x{descriptor.height}"
        )

    try:
        samples = reduce_channels(buffer, descriptor.channels).reshape(-1)
        if descriptor.quantized:
            return samples
        tensor = samples.astype(np.float32)
        if descriptor.normalized:
            tensor /= np.float32(255.0)
    except MemoryError as exc:
        raise AllocationError(f"Out of memory encoding {descriptor.sample_count} samples") from exc
    return tensor


def preprocess(vision_input: VisionInput, descriptor: ModelInputDescriptor) -> NDArray[np.generic]:
    """Run the full input pipeline and return a tensor of ``descriptor.shape``."""
    buffer = to_buffer(vision_input)
    crop = vision_input.crop or CropRegion.square_aspect_fill(buffer.width, buffer.height)
    thumbnail = crop_and_resize(buffer, crop, (descriptor.width, descriptor.height))
    return encode(thumbnail, descriptor).reshape(descriptor.shape)
