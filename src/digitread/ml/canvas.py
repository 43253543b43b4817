"""Rasterize pen strokes into a grayscale drawing."""

from __future__ import annotations

from collections.abc import Sequence

import numpy as np
from PIL import Image, ImageDraw

from digitread.ml.buffer import ImageBuffer, PixelFormat
from digitread.ml.errors import BoundsError

Point = tuple[float, float]
Stroke = Sequence[Point]

BACKGROUND: int = 0
INK: int = 255


def render_strokes(strokes: Sequence[Stroke], width: int, height: int, *, line_width: float = 12.0) -> ImageBuffer:
    """Draw white strokes on a black ``width`` x ``height`` canvas.

    Points outside the canvas are clipped. A stroke with a single point is
    drawn as a dot of diameter ``line_width``.
    """
    if width <= 0 or height <= 0:
        raise BoundsError(f"Canvas size must be positive, got {width}x{height}")
    if line_width <= 0:
        raise ValueError("line_width must be positive")

    canvas = Image.new("L", (width, height), color=BACKGROUND)
    draw = ImageDraw.Draw(canvas)
    pen = max(1, round(line_width))
    radius = line_width / 2

    for stroke in strokes:
        points = [(float(x), float(y)) for x, y in stroke]
        if not points:
            continue
        if len(points) > 1:
            draw.line(points, fill=INK, width=pen, joint="curve")
        # Round caps at both ends (and dots for single taps).
        for x, y in (points[0], points[-1]):
            draw.ellipse((x - radius, y - radius, x + radius, y + radius), fill=INK)

    return ImageBuffer.from_array(np.asarray(canvas, dtype=np.uint8), PixelFormat.GRAY8)
