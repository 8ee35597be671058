"""FastAPI application entry point."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager, suppress
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from snapclassify.api.middleware import register_error_handlers
from snapclassify.api.routes import router
from snapclassify.config import Settings, get_settings
from snapclassify.ml.analysis import AnalysisQueue
from snapclassify.ml.model_manager import OnnxModelManager
from snapclassify.ml.runtime import ClassifierRuntime
from snapclassify.ml.tensors import TensorRegistry

logger = logging.getLogger(__name__)


def init_app_state(app: FastAPI, settings: Settings) -> ClassifierRuntime:
    """Build the shared components once and attach them to the app."""
    registry = TensorRegistry()
    manager = OnnxModelManager(settings, registry)
    runtime = ClassifierRuntime(settings, registry, manager)

    app.state.settings = settings
    app.state.tensor_registry = registry
    app.state.model_manager = manager
    app.state.runtime = runtime
    app.state.analysis_queue = AnalysisQueue(settings)
    app.state.init_task = None
    return runtime


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: initialize on startup, clean up on shutdown."""
    settings = get_settings()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    logger.info(
        "Starting SnapClassify (device=%s, assets=%s, max_concurrent=%s)",
        settings.device,
        settings.assets_dir,
        settings.max_concurrent,
    )

    runtime = init_app_state(app, settings)
    # Requests are answered with 503 until the model is ready.
    app.state.init_task = runtime.start_initialization()

    yield

    logger.info("Shutting down SnapClassify")
    init_task: asyncio.Task[None] | None = app.state.init_task
    if init_task is not None and not init_task.done():
        init_task.cancel()
        with suppress(asyncio.CancelledError):
            await init_task
    app.state.analysis_queue.shutdown()
    runtime.shutdown()
    logger.info("SnapClassify shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="SnapClassify",
        description="Photo classification with a bundled ONNX model",
        version="0.1.0",
        lifespan=lifespan,
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_error_handlers(application)
    application.include_router(router)
    return application


app = create_app()
