"""Model manager: platform setup, load, warm up, cache, and run the ONNX classifier.

Handles execution-provider setup, resolving the model descriptor and weights
(optionally fetching them from HuggingFace), creating the ONNX
InferenceSession, a warm-up pass, and single-pass prediction. The loaded model
is cached for the lifetime of the manager and concurrent first loads share a
single in-flight load.
"""

from __future__ import annotations

import json
import logging
import threading
from concurrent.futures import Future
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Literal, Protocol

import numpy as np
from huggingface_hub import hf_hub_download
from onnxruntime import InferenceSession, SessionOptions, get_available_providers
from onnxruntime.capi.onnxruntime_pybind11_state import ExecutionMode
from pydantic import BaseModel, Field, ValidationError, field_validator

from snapclassify.errors import AllocationError, InferenceError, ModelLoadError, SnapClassifyError
from snapclassify.ml.image_classifier import PredictionResult, softmax

if TYPE_CHECKING:
    from collections.abc import Callable

    from snapclassify.config import Settings
    from snapclassify.ml.tensors import Tensor, TensorRegistry

logger = logging.getLogger(__name__)

# Progress checkpoints reported by load_model
PROGRESS_START = 10
PROGRESS_ASSETS_LOCATED = 30
PROGRESS_GRAPH_CONSTRUCTED = 80
PROGRESS_READY = 100


# ---------------------------------------------------------------------------
# Protocol (kept for test mocking)
# ---------------------------------------------------------------------------


class ModelManager(Protocol):
    """Protocol for model lifecycle management."""

    @property
    def state(self) -> ModelState:
        """Return the current lifecycle state."""
        ...

    def ensure_platform_ready(self) -> bool:
        """Perform one-time backend setup; return False on failure."""
        ...

    def load_model(self, on_progress: Callable[[int], None] | None = None) -> LoadedModel:
        """Return the cached model, loading and warming it up if needed."""
        ...

    def predict(self, model: LoadedModel, tensor: Tensor) -> PredictionResult:
        """Run one forward pass and release the input tensor."""
        ...

    def shutdown(self) -> None:
        """Drop the cached model."""
        ...


# ---------------------------------------------------------------------------
# Model descriptor
# ---------------------------------------------------------------------------


class ModelState(StrEnum):
    UNINITIALIZED = "uninitialized"
    PLATFORM_READY = "platform_ready"
    MODEL_LOADING = "model_loading"
    WARMING = "warming"
    READY = "ready"
    FAILED = "failed"


class ModelDescriptor(BaseModel):
    """Topology/metadata descriptor shipped next to the weights file."""

    name: str
    weights: str = "weights.onnx"
    input_shape: list[int] = Field(default_factory=lambda: [1, 224, 224, 3])
    labels: list[str] = Field(min_length=1)
    input_name: str | None = None
    output_name: str | None = None
    output_activation: Literal["none", "softmax"] = "none"

    @field_validator("input_shape")
    @classmethod
    def _check_input_shape(cls, value: list[int]) -> list[int]:
        if len(value) != 4 or value[0] != 1 or value[3] != 3 or any(dim < 1 for dim in value):
            raise ValueError(f"input_shape must be [1, height, width, 3], got {value}")
        return value


@dataclass(frozen=True)
class LoadedModel:
    """A constructed, warmed-up inference session plus its descriptor."""

    descriptor: ModelDescriptor
    session: InferenceSession
    input_name: str
    output_name: str

    @property
    def name(self) -> str:
        return self.descriptor.name

    @property
    def input_shape(self) -> tuple[int, ...]:
        return tuple(self.descriptor.input_shape)

    @property
    def labels(self) -> list[str]:
        return self.descriptor.labels


# ---------------------------------------------------------------------------
# Concrete implementation
# ---------------------------------------------------------------------------


class OnnxModelManager:
    """Sets up ONNX Runtime, loads and caches the classifier, and runs predictions."""

    def __init__(self, settings: Settings, registry: TensorRegistry) -> None:
        self._settings = settings
        self._registry = registry
        self._assets_dir = Path(settings.assets_dir)

        self._lock = threading.Lock()
        self._platform_ready = False
        self._providers: list[str | tuple[str, dict[str, object]]] = []
        self._session_options: SessionOptions | None = None

        self._model: LoadedModel | None = None
        self._pending: Future[LoadedModel] | None = None
        self._state = ModelState.UNINITIALIZED
        self._last_error: str | None = None

    # -- Public API ---------------------------------------------------------

    @property
    def state(self) -> ModelState:
        with self._lock:
            return self._state

    @property
    def last_error(self) -> str | None:
        with self._lock:
            return self._last_error

    @property
    def model(self) -> LoadedModel | None:
        with self._lock:
            return self._model

    def ensure_platform_ready(self) -> bool:
        """Configure execution providers and session options once.

        Never raises: failures are logged and reported as False.
        """
        with self._lock:
            if self._platform_ready:
                return True

        try:
            providers = self._build_providers()
            primary = providers[0] if isinstance(providers[0], str) else providers[0][0]
            available = get_available_providers()
            if primary not in available:
                raise RuntimeError(f"{primary} is not available (available: {', '.join(available)})")
            session_options = self._build_session_options()
        except Exception as exc:  # noqa: BLE001
            logger.error("Platform initialization failed: %s", exc)
            self._mark_failed(f"Platform initialization failed: {exc}")
            return False

        with self._lock:
            self._providers = providers
            self._session_options = session_options
            self._platform_ready = True
            if self._state in (ModelState.UNINITIALIZED, ModelState.FAILED) and self._model is None:
                self._state = ModelState.PLATFORM_READY
                self._last_error = None
        logger.info("Platform ready (device=%s, provider=%s)", self._settings.device, primary)
        return True

    def load_model(self, on_progress: Callable[[int], None] | None = None) -> LoadedModel:
        """Return the cached model, constructing and warming it up on first use.

        Concurrent callers during a first load wait on the same in-flight load
        and receive the same handle or the same error. Progress is only
        reported by a call that actually performs the load.

        Raises:
            ModelLoadError: If the platform is not ready, assets are missing or
                corrupt, or session construction or warm-up fails.
        """
        with self._lock:
            if self._model is not None:
                return self._model
            if not self._platform_ready:
                raise ModelLoadError("Platform is not ready; call ensure_platform_ready() first")
            if self._pending is not None:
                in_flight: Future[LoadedModel] = self._pending
                owner = False
            else:
                in_flight = self._pending = Future()
                owner = True

        if not owner:
            return in_flight.result()

        try:
            model = self._load(on_progress)
        except SnapClassifyError as exc:
            self._abandon_load(in_flight, exc)
            raise
        except Exception as exc:
            error = ModelLoadError(f"Unexpected error while loading model: {exc}")
            self._abandon_load(in_flight, error)
            raise error from exc

        with self._lock:
            self._model = model
            self._pending = None
            self._state = ModelState.READY
            self._last_error = None
        in_flight.set_result(model)
        logger.info("Model %s loaded and warmed up", model.name)
        return model

    def predict(self, model: LoadedModel, tensor: Tensor) -> PredictionResult:
        """Run one forward pass and pair the outputs with the model's labels.

        The input tensor and the raw output are released before returning, on
        success and failure alike. A failure leaves the cached model usable.

        Raises:
            InferenceError: On an invalid handle, a shape mismatch, or a backend failure.
        """
        try:
            with self._lock:
                current = self._model
            if current is None or model is not current:
                raise InferenceError("Invalid model handle: model is not loaded by this manager")

            with self._registry.scope() as scope:
                data = tensor.data
                if tuple(data.shape) != model.input_shape:
                    raise InferenceError(
                        f"Input shape {list(data.shape)} does not match model input {list(model.input_shape)}"
                    )
                if data.dtype != np.float32:
                    raise InferenceError(f"Input dtype {data.dtype} is not float32")

                output = scope.track(self._run(model, data))
                scores = output.data.reshape(-1)
                if model.descriptor.output_activation == "softmax":
                    scores = softmax(scores)
                return PredictionResult.from_scores(scores, model.labels)
        finally:
            tensor.release()

    def get_loaded_models(self) -> list[str]:
        """Return names of loaded models."""
        with self._lock:
            return [self._model.name] if self._model is not None else []

    def shutdown(self) -> None:
        """Drop the cached model; later predict calls with the old handle fail."""
        with self._lock:
            self._model = None
            if self._state is ModelState.READY:
                self._state = ModelState.PLATFORM_READY
            logger.info("Model cache cleared")

    # -- Internal -----------------------------------------------------------

    def _load(self, on_progress: Callable[[int], None] | None) -> LoadedModel:
        self._set_state(ModelState.MODEL_LOADING)
        self._report(on_progress, PROGRESS_START)

        descriptor = self._read_descriptor(self._resolve_asset(self._settings.descriptor_file))
        weights_path = self._resolve_asset(descriptor.weights)
        logger.info("Model assets located: %s, %s", descriptor.name, weights_path)
        self._report(on_progress, PROGRESS_ASSETS_LOCATED)

        try:
            session = InferenceSession(
                str(weights_path),
                sess_options=self._session_options,
                providers=self._providers,
            )
        except Exception as exc:
            raise ModelLoadError(f"Cannot construct session from {weights_path.name}: {exc}") from exc
        model = self._bind(descriptor, session)
        self._report(on_progress, PROGRESS_GRAPH_CONSTRUCTED)

        self._set_state(ModelState.WARMING)
        self._warm_up(model)
        self._report(on_progress, PROGRESS_READY)
        return model

    def _resolve_asset(self, filename: str) -> Path:
        path = self._assets_dir / filename
        if path.is_file():
            return path

        repo_id = self._settings.model_repo_id
        if repo_id is None:
            raise ModelLoadError(f"Model asset not found: {path}")

        try:
            downloaded = Path(hf_hub_download(repo_id=repo_id, filename=filename, local_dir=str(self._assets_dir)))
        except Exception as exc:
            raise ModelLoadError(f"Cannot download {filename} from {repo_id}: {exc}") from exc
        logger.info("Downloaded %s to %s", filename, downloaded)
        return downloaded

    @staticmethod
    def _read_descriptor(path: Path) -> ModelDescriptor:
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
            return ModelDescriptor.model_validate(raw)
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise ModelLoadError(f"Cannot read model descriptor {path.name}: {exc}") from exc
        except ValidationError as exc:
            raise ModelLoadError(f"Invalid model descriptor {path.name}: {exc}") from exc

    @staticmethod
    def _bind(descriptor: ModelDescriptor, session: InferenceSession) -> LoadedModel:
        inputs = {node.name: node for node in session.get_inputs()}
        outputs = {node.name: node for node in session.get_outputs()}
        if not inputs or not outputs:
            raise ModelLoadError("Model graph has no inputs or outputs")

        input_name = descriptor.input_name or next(iter(inputs))
        output_name = descriptor.output_name or next(iter(outputs))
        if input_name not in inputs:
            raise ModelLoadError(f"Model has no input named {input_name!r}")
        if output_name not in outputs:
            raise ModelLoadError(f"Model has no output named {output_name!r}")

        # Symbolic dimensions (str/None) are accepted as-is.
        graph_shape = list(inputs[input_name].shape)
        if len(graph_shape) != len(descriptor.input_shape) or any(
            isinstance(dim, int) and dim != expected
            for dim, expected in zip(graph_shape, descriptor.input_shape, strict=False)
        ):
            raise ModelLoadError(f"Graph input shape {graph_shape} does not match descriptor {descriptor.input_shape}")

        output_shape = list(outputs[output_name].shape)
        width = output_shape[-1] if output_shape else None
        if isinstance(width, int) and width != len(descriptor.labels):
            raise ModelLoadError(f"Graph outputs {width} classes but descriptor lists {len(descriptor.labels)} labels")

        return LoadedModel(
            descriptor=descriptor,
            session=session,
            input_name=input_name,
            output_name=output_name,
        )

    def _warm_up(self, model: LoadedModel) -> None:
        with self._registry.scope() as scope:
            dummy = scope.allocate(model.input_shape, dtype=np.float32)
            try:
                scope.track(self._run(model, dummy.data))
            except InferenceError as exc:
                raise ModelLoadError(f"Warm-up inference failed: {exc}") from exc

    @staticmethod
    def _run(model: LoadedModel, data: np.ndarray) -> np.ndarray:
        try:
            outputs = model.session.run([model.output_name], {model.input_name: data})
        except MemoryError as exc:
            raise AllocationError(f"Cannot allocate inference output: {exc}") from exc
        except SnapClassifyError:
            raise
        except Exception as exc:
            raise InferenceError(f"Forward pass failed: {exc}") from exc
        return np.asarray(outputs[0])

    def _report(self, on_progress: Callable[[int], None] | None, percent: int) -> None:
        if on_progress is not None:
            on_progress(percent)

    def _set_state(self, state: ModelState) -> None:
        with self._lock:
            self._state = state

    def _mark_failed(self, message: str) -> None:
        with self._lock:
            self._state = ModelState.FAILED
            self._last_error = message

    def _abandon_load(self, in_flight: Future[LoadedModel], error: SnapClassifyError) -> None:
        self._mark_failed(str(error))
        with self._lock:
            self._pending = None
        in_flight.set_exception(error)
        logger.error("Model loading failed: %s", error)

    def _build_providers(self) -> list[str | tuple[str, dict[str, object]]]:
        device = self._settings.device
        if device == "cuda":
            return [
                (
                    "CUDAExecutionProvider",
                    {
                        "device_id": 0,
                        "arena_extend_strategy": "kSameAsRequested",
                    },
                ),
                "CPUExecutionProvider",
            ]
        if device == "openvino":
            return [
                ("OpenVINOExecutionProvider", {"device_type": "CPU"}),
                "CPUExecutionProvider",
            ]
        return ["CPUExecutionProvider"]

    def _build_session_options(self) -> SessionOptions:
        opts = SessionOptions()
        opts.intra_op_num_threads = self._settings.intra_op_threads
        opts.inter_op_num_threads = self._settings.inter_op_threads
        opts.execution_mode = ExecutionMode.ORT_SEQUENTIAL
        opts.enable_mem_pattern = True
        opts.enable_mem_reuse = True

        if self._settings.device == "openvino":
            # OpenVINO does its own graph optimization
            from onnxruntime import GraphOptimizationLevel

            opts.graph_optimization_level = GraphOptimizationLevel.ORT_DISABLE_ALL
        return opts
