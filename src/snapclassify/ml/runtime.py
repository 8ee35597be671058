"""Classifier runtime: initialization sequence and per-capture classification.

Owns the ordering contract: platform setup, then model load and warm-up, and
only then classification. Tracks a user-facing stage and an overall progress
percentage while initializing, and records the failure message so the caller
can offer a retry.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING

from snapclassify.errors import ModelNotReadyError, PlatformInitError, SnapClassifyError
from snapclassify.ml.model_manager import (
    PROGRESS_ASSETS_LOCATED,
    PROGRESS_GRAPH_CONSTRUCTED,
    PROGRESS_READY,
)
from snapclassify.ml.preprocessing import ImagePreprocessor

if TYPE_CHECKING:
    from snapclassify.config import Settings
    from snapclassify.ml.image_classifier import PredictionResult
    from snapclassify.ml.model_manager import LoadedModel, ModelState, OnnxModelManager
    from snapclassify.ml.tensors import TensorRegistry

logger = logging.getLogger(__name__)

_PLATFORM_START = 5.0
_PLATFORM_DONE = 20.0
_MODEL_SHARE = 0.8

_MODEL_STAGES: dict[int, str] = {
    PROGRESS_ASSETS_LOCATED: "Processing model assets...",
    PROGRESS_GRAPH_CONSTRUCTED: "Warming up model...",
    PROGRESS_READY: "Ready!",
}


def _consume_task_exception(task: asyncio.Task[None]) -> None:
    # Logged in the worker thread; marks the exception as retrieved.
    if not task.cancelled():
        task.exception()


@dataclass(frozen=True)
class RuntimeStatus:
    state: ModelState
    stage: str
    progress: float
    error: str | None
    initializing: bool


class ClassifierRuntime:
    """Drives initialization and serves classifications once ready."""

    def __init__(self, settings: Settings, registry: TensorRegistry, manager: OnnxModelManager) -> None:
        self._settings = settings
        self._registry = registry
        self._manager = manager

        self._lock = threading.Lock()
        self._stage = "Initializing..."
        self._progress = 0.0
        self._error: str | None = None
        self._initializing = False
        self._model: LoadedModel | None = None
        self._preprocessor: ImagePreprocessor | None = None

    @property
    def is_ready(self) -> bool:
        with self._lock:
            return self._model is not None

    @property
    def model(self) -> LoadedModel | None:
        with self._lock:
            return self._model

    def status(self) -> RuntimeStatus:
        with self._lock:
            return RuntimeStatus(
                state=self._manager.state,
                stage=self._stage,
                progress=self._progress,
                error=self._error,
                initializing=self._initializing,
            )

    def initialize(self) -> LoadedModel:
        """Run platform setup then model loading; safe to call again after a failure.

        Raises:
            PlatformInitError: If the backend cannot be set up.
            ModelLoadError: If the model cannot be loaded or warmed up.
        """
        with self._lock:
            self._initializing = True
            self._error = None
            self._stage = "Initializing platform..."
            self._progress = _PLATFORM_START

        try:
            if not self._manager.ensure_platform_ready():
                raise PlatformInitError(self._manager.last_error or "Failed to initialize platform")

            with self._lock:
                self._stage = "Loading model..."
                self._progress = _PLATFORM_DONE
            model = self._manager.load_model(self._on_model_progress)

            height, width = model.input_shape[1:3]
            preprocessor = ImagePreprocessor(
                self._registry,
                target_size=(height, width),
                max_image_pixels=self._settings.max_image_pixels,
            )
            with self._lock:
                self._model = model
                self._preprocessor = preprocessor
                self._stage = "Ready!"
                self._progress = 100.0
        except Exception as exc:
            logger.error("Initialization error: %s", exc)
            with self._lock:
                self._error = str(exc) or type(exc).__name__
            raise
        finally:
            with self._lock:
                self._initializing = False

        logger.info("Classifier ready (model=%s, labels=%s)", model.name, ", ".join(model.labels))
        return model

    def start_initialization(self) -> asyncio.Task[None] | None:
        """Schedule `initialize` on a worker thread from the running event loop.

        Returns None when the runtime is already ready or an initialization is
        in flight.
        """
        with self._lock:
            if self._initializing or self._model is not None:
                return None
            self._initializing = True
        task = asyncio.create_task(asyncio.to_thread(self._initialize_in_background))
        task.add_done_callback(_consume_task_exception)
        return task

    def _initialize_in_background(self) -> None:
        try:
            self.initialize()
        except SnapClassifyError:
            # Already logged and exposed through status(); retry is client-driven.
            return
        except Exception:
            logger.exception("Unexpected error during background initialization")
            raise

    def classify(self, image_b64: str, mime_type: str | None = None) -> PredictionResult:
        """Decode, normalize, and classify one capture.

        Failures are scoped to this capture and leave the runtime ready.

        Raises:
            ModelNotReadyError: If initialization has not completed.
            DecodeError: If the image cannot be decoded.
            AllocationError: If a buffer cannot be allocated.
            InferenceError: If the forward pass fails.
        """
        with self._lock:
            model = self._model
            preprocessor = self._preprocessor
        if model is None or preprocessor is None:
            raise ModelNotReadyError("Model not loaded")

        tensor = preprocessor.decode_and_normalize(image_b64, mime_type)
        return self._manager.predict(model, tensor)

    def shutdown(self) -> None:
        with self._lock:
            self._model = None
            self._preprocessor = None
        self._manager.shutdown()

    def _on_model_progress(self, percent: int) -> None:
        with self._lock:
            self._progress = max(self._progress, _PLATFORM_DONE + percent * _MODEL_SHARE)
            stage = _MODEL_STAGES.get(percent)
            if stage is not None:
                self._stage = stage
