"""Model manager: resolve, download, load and validate the ONNX classifier.

The preprocessing pipeline is built around a fixed input shape, so the shape
check happens once, when the model is loaded. A model that does not match is
a fatal ``ModelLoadError``; failures during a forward pass are
``InferenceError`` and are left to the caller.
"""

from __future__ import annotations

import logging
import math
import threading
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

import numpy as np
from huggingface_hub import hf_hub_download
from huggingface_hub.errors import HfHubHTTPError, LocalEntryNotFoundError
from onnxruntime import InferenceSession, SessionOptions
from onnxruntime.capi.onnxruntime_pybind11_state import (
    ExecutionMode,
    Fail,
    InvalidArgument,
    InvalidGraph,
    InvalidProtobuf,
    NoSuchFile,
    RuntimeException,
)

from digitread.ml.errors import InferenceError, ModelLoadError
from digitread.ml.preprocessing import ModelInputDescriptor

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from digitread.config import Settings

logger = logging.getLogger(__name__)

_SESSION_LOAD_ERRORS: tuple[type[BaseException], ...] = (
    Fail,
    InvalidArgument,
    InvalidGraph,
    InvalidProtobuf,
    NoSuchFile,
    RuntimeException,
    RuntimeError,
    OSError,
)

_RUN_ERRORS: tuple[type[BaseException], ...] = (
    Fail,
    InvalidArgument,
    RuntimeException,
    RuntimeError,
    ValueError,
)


# ---------------------------------------------------------------------------
# Backend protocol
# ---------------------------------------------------------------------------


class InferenceBackend(Protocol):
    """Anything that turns one input tensor into one or more output tensors."""

    def run(self, input_tensor: NDArray[np.generic]) -> Sequence[NDArray[np.float32]]:
        """Run a single forward pass."""
        ...


# ---------------------------------------------------------------------------
# Loaded model
# ---------------------------------------------------------------------------


class OnnxModel:
    """A validated ONNX session with a fixed input shape."""

    def __init__(self, session: InferenceSession, input_name: str, input_shape: tuple[int, ...]) -> None:
        self._session = session
        self._input_name = input_name
        self._input_shape = input_shape

    @property
    def input_shape(self) -> tuple[int, ...]:
        return self._input_shape

    def run(self, input_tensor: NDArray[np.generic]) -> list[NDArray[np.float32]]:
        """Run one forward pass and return every output flattened to float32.

        Raises:
            InferenceError: If the tensor size does not match the model input
                or onnxruntime fails.
        """
        expected = math.prod(self._input_shape)
        if input_tensor.size != expected:
            raise InferenceError(f"Input tensor has {input_tensor.size} samples, model expects {expected}")

        feed = {self._input_name: input_tensor.reshape(self._input_shape)}
        try:
            outputs = self._session.run(None, feed)
        except _RUN_ERRORS as exc:
            logger.warning("Inference failed: %s", exc)
            raise InferenceError(f"Inference failed: {exc}") from exc
        return [np.asarray(out, dtype=np.float32).reshape(-1) for out in outputs]


def load_model(
    path: Path,
    expected_input_shape: Sequence[int],
    *,
    expected_input_type: str | None = None,
    session_options: SessionOptions | None = None,
    providers: list[str] | None = None,
) -> OnnxModel:
    """Open an ONNX model and check its declared input against the pipeline.

    A symbolic batch dimension is accepted as 1; every other dimension must
    match ``expected_input_shape`` exactly.

    Raises:
        ModelLoadError: If the file cannot be loaded, or its input shape or
            element type is not the expected one, or it has no outputs.
    """
    try:
        session = InferenceSession(
            str(path),
            sess_options=session_options,
            providers=providers or ["CPUExecutionProvider"],
        )
    except _SESSION_LOAD_ERRORS as exc:
        raise ModelLoadError(f"Failed to load model {path}: {exc}") from exc

    inputs = session.get_inputs()
    if not inputs:
        raise ModelLoadError(f"Model {path} declares no inputs")
    model_input = inputs[0]

    expected = tuple(int(d) for d in expected_input_shape)
    declared = list(model_input.shape)
    if declared and not isinstance(declared[0], int):
        declared[0] = 1
    if tuple(declared) != expected:
        raise ModelLoadError(f"Unexpected model input shape {list(model_input.shape)} != {list(expected)}")

    if expected_input_type is not None and model_input.type != expected_input_type:
        raise ModelLoadError(f"Unexpected model input type {model_input.type} != {expected_input_type}")

    if not session.get_outputs():
        raise ModelLoadError(f"Model {path} declares no outputs")

    logger.info("Loaded model %s (input %s %s)", path, model_input.name, list(expected))
    return OnnxModel(session, model_input.name, expected)


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ModelSpec:
    """Where a model comes from and what input it must accept."""

    name: str
    path: str | None
    repo_id: str | None
    filename: str
    descriptor: ModelInputDescriptor

    @classmethod
    def from_settings(cls, settings: Settings) -> ModelSpec:
        return cls(
            name=settings.model_name,
            path=settings.model_path,
            repo_id=settings.model_repo_id,
            filename=settings.model_filename,
            descriptor=ModelInputDescriptor.from_settings(settings),
        )


class OnnxModelManager:
    """Resolves, downloads and caches the configured ONNX model."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._spec = ModelSpec.from_settings(settings)
        self._models_dir = Path(settings.models_dir)

        self._lock = threading.Lock()
        self._model: OnnxModel | None = None
        self._model_path: Path | None = None

        self._session_options = self._build_session_options()

    # -- Public API ---------------------------------------------------------

    @property
    def spec(self) -> ModelSpec:
        return self._spec

    def ensure_downloaded(self) -> Path:
        """Return the local model path, downloading it from Hugging Face if needed.

        Raises:
            ModelLoadError: If a configured local file is missing, no source is
                configured, or the download fails.
        """
        spec = self._spec
        if spec.path is not None:
            local = Path(spec.path)
            if not local.is_file():
                raise ModelLoadError(f"Model file not found: {local}")
            return local

        if self._model_path is not None and self._model_path.exists():
            return self._model_path

        if spec.repo_id is None:
            raise ModelLoadError("No model configured: set DIGITREAD_MODEL_PATH or DIGITREAD_MODEL_REPO_ID")

        self._models_dir.mkdir(parents=True, exist_ok=True)
        try:
            downloaded = Path(
                hf_hub_download(
                    repo_id=spec.repo_id,
                    filename=spec.filename,
                    local_dir=str(self._models_dir),
                )
            )
        except (HfHubHTTPError, LocalEntryNotFoundError, OSError, ValueError) as exc:
            raise ModelLoadError(f"Failed to download {spec.repo_id}/{spec.filename}: {exc}") from exc

        self._model_path = downloaded
        logger.info("Downloaded %s to %s", spec.name, downloaded)
        return downloaded

    def load(self) -> OnnxModel:
        """Return the cached model, loading and validating it on first use."""
        with self._lock:
            if self._model is not None:
                return self._model

        descriptor = self._spec.descriptor
        model = load_model(
            self.ensure_downloaded(),
            descriptor.shape,
            expected_input_type=descriptor.onnx_type,
            session_options=self._session_options,
            providers=["CPUExecutionProvider"],
        )

        with self._lock:
            # Another thread may have finished loading first.
            if self._model is None:
                self._model = model
                logger.info("Loaded session for %s", self._spec.name)
            return self._model

    def get_loaded_models(self) -> list[str]:
        """Return names of models with active sessions."""
        with self._lock:
            return [self._spec.name] if self._model is not None else []

    def shutdown(self) -> None:
        """Drop the cached session."""
        with self._lock:
            self._model = None
            logger.info("Model session cleared")

    # -- Internal -----------------------------------------------------------

    def _build_session_options(self) -> SessionOptions:
        opts = SessionOptions()
        opts.intra_op_num_threads = self._settings.intra_op_threads
        opts.inter_op_num_threads = self._settings.inter_op_threads
        opts.execution_mode = ExecutionMode.ORT_SEQUENTIAL
        opts.enable_mem_pattern = True
        opts.enable_mem_reuse = True
        return opts
