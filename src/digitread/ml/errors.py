"""Exception taxonomy for the preprocessing, inference and decoding pipeline.

Format, bounds and shape errors abort a single classification and are
reported to the caller. ``ModelLoadError`` is a startup failure.
``InferenceError`` is never retried.
"""

from __future__ import annotations


class DigitReadError(Exception):
    """Base class for all pipeline errors."""


class AllocationError(DigitReadError):
    """An output buffer or tensor could not be allocated."""


class UnsupportedFormatError(DigitReadError):
    """The source pixel layout is not one of the supported formats."""


class BoundsError(DigitReadError):
    """A crop rectangle or target size is invalid for the source buffer."""


class ShapeMismatchError(DigitReadError):
    """Buffer or tensor dimensions disagree with what the consumer expects."""


class ModelLoadError(DigitReadError):
    """The model file is missing, unreadable, or declares the wrong shape."""


class InferenceError(DigitReadError):
    """A forward pass (local or remote) failed."""
