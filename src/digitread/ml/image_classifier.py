"""Digit classification pipeline.

One ``DigitClassifier`` serves every input variant and every backend: it
preprocesses a ``VisionInput``, hands the tensor to an ``InferenceBackend``
and decodes the first output. The outputs of the latest successful inference
are retained so they can be decoded again without rerunning the model.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from digitread.ml.errors import InferenceError
from digitread.ml.postprocessing import ClassificationResult, to_result
from digitread.ml.preprocessing import ModelInputDescriptor, preprocess

if TYPE_CHECKING:
    import numpy as np
    from numpy.typing import NDArray

    from digitread.ml.buffer import VisionInput
    from digitread.ml.model_manager import InferenceBackend

logger = logging.getLogger(__name__)


class DigitClassifier:
    """Preprocess -> infer -> decode, parameterized by backend."""

    def __init__(
        self,
        backend: InferenceBackend,
        descriptor: ModelInputDescriptor | None = None,
        num_categories: int = 10,
    ) -> None:
        if num_categories < 1:
            raise ValueError("num_categories must be at least 1")
        self._backend = backend
        self._descriptor = descriptor or ModelInputDescriptor()
        self._num_categories = num_categories
        self._last_outputs: tuple[NDArray[np.float32], ...] | None = None

    @property
    def descriptor(self) -> ModelInputDescriptor:
        return self._descriptor

    @property
    def num_categories(self) -> int:
        return self._num_categories

    @property
    def last_outputs(self) -> tuple[NDArray[np.float32], ...] | None:
        return self._last_outputs

    def classify(self, vision_input: VisionInput) -> ClassificationResult:
        """Classify one drawing.

        Raises:
            UnsupportedFormatError, BoundsError, ShapeMismatchError, AllocationError:
                If preprocessing fails.
            InferenceError: If the backend fails or returns no outputs.
        """
        self._last_outputs = None

        tensor = preprocess(vision_input, self._descriptor)
        outputs = tuple(self._backend.run(tensor))
        if not outputs:
            raise InferenceError("Backend returned no output tensors")

        result = to_result(outputs, self._num_categories)
        self._last_outputs = outputs
        logger.info("Predicted digit %d", result.label)
        return result

    def redecode(self, num_categories: int | None = None) -> ClassificationResult | None:
        """Decode the retained outputs again, or return None if there are none."""
        outputs = self._last_outputs
        if outputs is None:
            return None
        return to_result(outputs, self._num_categories if num_categories is None else num_categories)
