"""Arg-max decoding of classifier output."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING

from digitread.ml.errors import ShapeMismatchError

if TYPE_CHECKING:
    import numpy as np
    from numpy.typing import NDArray


@dataclass(frozen=True)
class ClassificationResult:
    """Predicted class plus the raw outputs it was decoded from."""

    label: int
    scores: tuple[float, ...]
    outputs: tuple[NDArray[np.float32], ...]


def decode(output_tensor: Sequence[float] | NDArray[np.float32], num_categories: int) -> int:
    """Return the index of the highest of the first ``num_categories`` scores.

    Raw scores are compared directly (no softmax). The running maximum starts
    at the first score, so all-negative outputs still decode to their true
    maximum, and ties keep the earliest index.

    Raises:
        ValueError: If ``num_categories`` is less than one.
        ShapeMismatchError: If the tensor has fewer than ``num_categories`` entries.
    """
    if num_categories < 1:
        raise ValueError("num_categories must be at least 1")
    if len(output_tensor) < num_categories:
        raise ShapeMismatchError(f"Output has {len(output_tensor)} scores, expected at least {num_categories}")

    best_idx = 0
    best = float(output_tensor[0])
    for i in range(1, num_categories):
        score = float(output_tensor[i])
        if score > best:
            best = score
            best_idx = i
    return best_idx


def to_result(outputs: Sequence[NDArray[np.float32]], num_categories: int) -> ClassificationResult:
    """Decode the first output tensor into a ``ClassificationResult``."""
    first = outputs[0]
    label = decode(first, num_categories)
    scores = tuple(float(first[i]) for i in range(num_categories))
    return ClassificationResult(label=label, scores=scores, outputs=tuple(outputs))
