"""Tests for crop/resize and tensor encoding."""

from __future__ import annotations

import numpy as np
import pytest
from PIL import Image

from digitread.ml.buffer import CropRegion, DecodedImage, ImageBuffer, PixelFormat, RawBuffer
from digitread.ml.errors import BoundsError, ShapeMismatchError, UnsupportedFormatError
from digitread.ml.preprocessing import (
    ModelInputDescriptor,
    crop_and_resize,
    encode,
    preprocess,
    reduce_channels,
)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _random_buffer(width: int, height: int, pixel_format: PixelFormat, seed: int = 0) -> ImageBuffer:
    rng = np.random.default_rng(seed)
    pixels = rng.integers(0, 256, size=(height, width, pixel_format.channels), dtype=np.uint8)
    return ImageBuffer.from_array(pixels, pixel_format)


def _solid_buffer(width: int, height: int, pixel: tuple[int, ...], pixel_format: PixelFormat) -> ImageBuffer:
    pixels = np.empty((height, width, len(pixel)), dtype=np.uint8)
    pixels[:, :] = pixel
    return ImageBuffer.from_array(pixels, pixel_format)


MNIST = ModelInputDescriptor()

# ---------------------------------------------------------------------------
# Model input descriptor
# ---------------------------------------------------------------------------


class TestModelInputDescriptor:
    def test_defaults_match_mnist(self) -> None:
        assert MNIST.shape == (1, 28, 28, 1)
        assert MNIST.sample_count == 784
        assert MNIST.dtype is np.float32
        assert MNIST.onnx_type == "tensor(float)"

    def test_quantized_uses_uint8(self) -> None:
        descriptor = ModelInputDescriptor(quantized=True)
        assert descriptor.dtype is np.uint8
        assert descriptor.onnx_type == "tensor(uint8)"

    def test_rejects_unsupported_channel_count(self) -> None:
        with pytest.raises(ValueError, match="1 or 3 channels"):
            ModelInputDescriptor(channels=4)


# ---------------------------------------------------------------------------
# crop_and_resize
# ---------------------------------------------------------------------------


class TestCropAndResize:
    @pytest.mark.parametrize("pixel_format", list(PixelFormat))
    def test_every_format_yields_one_sample_per_pixel(self, pixel_format: PixelFormat) -> None:
        buffer = _random_buffer(40, 30, pixel_format)
        crop = CropRegion.square_aspect_fill(buffer.width, buffer.height)

        thumbnail = crop_and_resize(buffer, crop, (28, 28))
        tensor = encode(thumbnail, MNIST)

        assert thumbnail.pixel_format is pixel_format
        assert (thumbnail.width, thumbnail.height) == (28, 28)
        assert tensor.shape == (28 * 28,)

    @pytest.mark.parametrize("pixel_format", list(PixelFormat))
    def test_full_crop_at_source_size_is_identity(self, pixel_format: PixelFormat) -> None:
        buffer = _random_buffer(28, 28, pixel_format, seed=3)

        result = crop_and_resize(buffer, CropRegion.full(buffer), (28, 28))

        assert np.array_equal(result.pixels, buffer.pixels)
        assert result.pixels is not buffer.pixels

    def test_selects_the_crop_region(self) -> None:
        pixels = np.zeros((10, 10, 1), dtype=np.uint8)
        pixels[2:6, 4:8] = 200
        buffer = ImageBuffer.from_array(pixels, PixelFormat.GRAY8)

        result = crop_and_resize(buffer, CropRegion(x=4, y=2, width=4, height=4), (4, 4))

        assert np.all(result.pixels == 200)

    def test_downscale_keeps_uniform_value(self) -> None:
        buffer = _solid_buffer(280, 280, (77, 10, 200, 255), PixelFormat.BGRA8888)

        result = crop_and_resize(buffer, CropRegion.full(buffer), (28, 28))

        expected = np.array([77, 10, 200, 255])
        assert np.all(np.abs(result.pixels.astype(int) - expected) <= 1)

    def test_source_buffer_is_not_modified(self) -> None:
        buffer = _random_buffer(50, 50, PixelFormat.RGB888)
        before = buffer.pixels.copy()

        crop_and_resize(buffer, CropRegion(x=5, y=5, width=40, height=40), (28, 28))

        assert np.array_equal(buffer.pixels, before)

    def test_crop_beyond_bounds_raises(self) -> None:
        buffer = _random_buffer(40, 30, PixelFormat.GRAY8)
        with pytest.raises(BoundsError):
            crop_and_resize(buffer, CropRegion(x=10, y=0, width=35, height=30), (28, 28))

    def test_crop_fully_outside_raises(self) -> None:
        buffer = _random_buffer(40, 30, PixelFormat.GRAY8)
        with pytest.raises(BoundsError):
            crop_and_resize(buffer, CropRegion(x=100, y=100, width=5, height=5), (28, 28))

    def test_negative_origin_raises(self) -> None:
        buffer = _random_buffer(40, 30, PixelFormat.GRAY8)
        with pytest.raises(BoundsError):
            crop_and_resize(buffer, CropRegion(x=-1, y=0, width=10, height=10), (28, 28))

    def test_empty_crop_raises(self) -> None:
        buffer = _random_buffer(40, 30, PixelFormat.GRAY8)
        with pytest.raises(BoundsError):
            crop_and_resize(buffer, CropRegion(x=0, y=0, width=0, height=10), (28, 28))

    def test_non_positive_target_raises(self) -> None:
        buffer = _random_buffer(40, 30, PixelFormat.GRAY8)
        with pytest.raises(BoundsError, match="Target size"):
            crop_and_resize(buffer, CropRegion.full(buffer), (0, 28))

    def test_layout_disagreeing_with_format_raises(self) -> None:
        pixels = np.zeros((10, 10, 3), dtype=np.uint8)
        buffer = ImageBuffer(pixels=pixels, pixel_format=PixelFormat.BGRA8888)
        with pytest.raises(UnsupportedFormatError):
            crop_and_resize(buffer, CropRegion.full(buffer), (5, 5))


# ---------------------------------------------------------------------------
# Channel reduction
# ---------------------------------------------------------------------------


class TestReduceChannels:
    @pytest.mark.parametrize(
        ("rgb", "expected"),
        [
            ((0, 255, 0), 150),
            ((0, 0, 255), 28),
            ((10, 20, 30), 18),
            ((200, 100, 0), 119),
        ],
    )
    def test_luminance_weights(self, rgb: tuple[int, int, int], expected: int) -> None:
        r, g, b = rgb
        layouts = {
            PixelFormat.RGB888: (r, g, b),
            PixelFormat.BGRA8888: (b, g, r, 255),
            PixelFormat.ARGB8888: (255, r, g, b),
        }
        for pixel_format, pixel in layouts.items():
            buffer = _solid_buffer(2, 2, pixel, pixel_format)
            gray = reduce_channels(buffer, 1)
            assert gray.shape == (2, 2, 1)
            assert np.all(gray == expected), pixel_format

    def test_alpha_is_stripped_to_rgb(self) -> None:
        bgra = _solid_buffer(3, 2, (30, 20, 10, 99), PixelFormat.BGRA8888)
        argb = _solid_buffer(3, 2, (99, 10, 20, 30), PixelFormat.ARGB8888)

        for buffer in (bgra, argb):
            rgb = reduce_channels(buffer, 3)
            assert rgb.shape == (2, 3, 3)
            assert np.all(rgb == np.array([10, 20, 30]))

    def test_gray_is_replicated_to_rgb(self) -> None:
        gray = _solid_buffer(2, 2, (42,), PixelFormat.GRAY8)
        assert np.all(reduce_channels(gray, 3) == 42)

    def test_matching_channels_are_copied(self) -> None:
        buffer = _random_buffer(5, 5, PixelFormat.RGB888)
        out = reduce_channels(buffer, 3)
        assert np.array_equal(out, buffer.pixels)
        assert out is not buffer.pixels


# ---------------------------------------------------------------------------
# encode
# ---------------------------------------------------------------------------


class TestEncode:
    def test_quantized_gray_is_byte_for_byte_copy(self) -> None:
        buffer = _random_buffer(28, 28, PixelFormat.GRAY8)
        tensor = encode(buffer, ModelInputDescriptor(quantized=True))

        assert tensor.dtype == np.uint8
        assert tensor.tobytes() == buffer.pixels.tobytes()

    def test_normalized_divides_by_255_once(self) -> None:
        buffer = _random_buffer(28, 28, PixelFormat.GRAY8)
        tensor = encode(buffer, MNIST)

        expected = buffer.pixels.reshape(-1).astype(np.float32) / np.float32(255.0)
        assert tensor.dtype == np.float32
        assert np.array_equal(tensor, expected)
        assert float(tensor.max()) <= 1.0

    def test_unnormalized_keeps_magnitude(self) -> None:
        buffer = _solid_buffer(28, 28, (255,), PixelFormat.GRAY8)
        tensor = encode(buffer, ModelInputDescriptor(normalized=False))

        assert tensor.dtype == np.float32
        assert np.all(tensor == 255.0)

    def test_rgb_layout_is_channel_interleaved(self) -> None:
        pixels = np.zeros((2, 2, 3), dtype=np.uint8)
        pixels[0, 0] = (1, 2, 3)
        pixels[0, 1] = (4, 5, 6)
        buffer = ImageBuffer.from_array(pixels, PixelFormat.RGB888)
        descriptor = ModelInputDescriptor(width=2, height=2, channels=3, quantized=True)

        tensor = encode(buffer, descriptor)

        assert tensor.shape == (12,)
        assert list(tensor[:6]) == [1, 2, 3, 4, 5, 6]

    def test_size_mismatch_raises(self) -> None:
        buffer = _random_buffer(27, 28, PixelFormat.GRAY8)
        with pytest.raises(ShapeMismatchError):
            encode(buffer, MNIST)

    def test_input_buffer_is_not_modified(self) -> None:
        buffer = _random_buffer(28, 28, PixelFormat.BGRA8888)
        before = buffer.pixels.copy()
        encode(buffer, MNIST)
        assert np.array_equal(buffer.pixels, before)


# ---------------------------------------------------------------------------
# preprocess
# ---------------------------------------------------------------------------


class TestPreprocess:
    def test_raw_buffer_uses_square_aspect_fill(self) -> None:
        # White square in the centre of a wide canvas; the black side bands
        # fall outside the aspect-fill crop.
        pixels = np.zeros((56, 112, 1), dtype=np.uint8)
        pixels[:, 28:84] = 255
        buffer = ImageBuffer.from_array(pixels, PixelFormat.GRAY8)

        tensor = preprocess(RawBuffer(buffer=buffer), MNIST)

        assert tensor.shape == MNIST.shape
        assert np.allclose(tensor, 1.0)

    def test_custom_crop_is_honoured(self) -> None:
        pixels = np.zeros((56, 112, 1), dtype=np.uint8)
        pixels[:, 28:84] = 255
        buffer = ImageBuffer.from_array(pixels, PixelFormat.GRAY8)

        crop = CropRegion(x=0, y=0, width=28, height=28)
        tensor = preprocess(RawBuffer(buffer=buffer, crop=crop), MNIST)

        assert np.all(tensor == 0.0)

    def test_decoded_image_is_normalized_to_buffer(self) -> None:
        image = Image.new("RGBA", (64, 64), color=(0, 255, 0, 255))

        tensor = preprocess(DecodedImage(image=image), ModelInputDescriptor(quantized=True))

        assert tensor.shape == (1, 28, 28, 1)
        assert tensor.dtype == np.uint8
        assert np.all(tensor == 150)
