"""API route definitions."""

from __future__ import annotations

import base64
from typing import TYPE_CHECKING

from fastapi import APIRouter, Depends, HTTPException, Request, UploadFile, status

from snapclassify.api.middleware import verify_api_key
from snapclassify.api.schemas import (
    ClassifyBase64Request,
    ClassifyImageResponse,
    ErrorResponse,
    HealthResponse,
    InitializeResponse,
    LabelConfidence,
    ModelInfo,
    ModelsResponse,
)
from snapclassify.errors import ModelNotReadyError

if TYPE_CHECKING:
    from snapclassify.config import Settings
    from snapclassify.ml.image_classifier import Prediction, PredictionResult
    from snapclassify.ml.analysis import AnalysisQueue
    from snapclassify.ml.runtime import ClassifierRuntime
    from snapclassify.ml.tensors import TensorRegistry

router = APIRouter(prefix="/api/v1", dependencies=[Depends(verify_api_key)])

_CLASSIFY_RESPONSES: dict[int | str, dict[str, object]] = {
    status.HTTP_413_CONTENT_TOO_LARGE: {"model": ErrorResponse},
    status.HTTP_422_UNPROCESSABLE_CONTENT: {"model": ErrorResponse},
    status.HTTP_500_INTERNAL_SERVER_ERROR: {"model": ErrorResponse},
    status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
}


def _get_settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def _get_analysis_queue(request: Request) -> AnalysisQueue:
    queue: AnalysisQueue = request.app.state.analysis_queue
    return queue


def _get_runtime(request: Request) -> ClassifierRuntime:
    runtime: ClassifierRuntime = request.app.state.runtime
    return runtime


def _get_registry(request: Request) -> TensorRegistry:
    registry: TensorRegistry = request.app.state.tensor_registry
    return registry


def _to_schema(prediction: Prediction) -> LabelConfidence:
    return LabelConfidence(
        label=prediction.label,
        probability=prediction.probability,
        confidence=prediction.confidence,
    )


async def _classify(request: Request, image_b64: str, mime_type: str | None) -> ClassifyImageResponse:
    runtime = _get_runtime(request)
    if not runtime.is_ready:
        raise ModelNotReadyError("Model not loaded")

    queue = _get_analysis_queue(request)
    try:
        result: PredictionResult = await queue.run(runtime.classify, image_b64, mime_type)
    except TimeoutError:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Another image is being analyzed; try again shortly",
        ) from None

    return ClassifyImageResponse(
        predictions=[_to_schema(p) for p in result],
        top=_to_schema(result.top()),
    )


@router.post(
    "/classify-image",
    response_model=ClassifyImageResponse,
    responses=_CLASSIFY_RESPONSES,
    summary="Classify an uploaded image",
)
async def classify_image(request: Request, file: UploadFile) -> ClassifyImageResponse:
    """Classify an uploaded photo and return per-class confidences."""
    settings = _get_settings(request)
    data = await file.read(settings.max_file_size + 1)
    if len(data) > settings.max_file_size:
        raise HTTPException(
            status_code=status.HTTP_413_CONTENT_TOO_LARGE,
            detail=f"File exceeds {settings.max_file_size} bytes",
        )

    image_b64 = base64.b64encode(data).decode("ascii")
    return await _classify(request, image_b64, file.content_type)


@router.post(
    "/classify-base64",
    response_model=ClassifyImageResponse,
    responses=_CLASSIFY_RESPONSES,
    summary="Classify a base64-encoded capture",
)
async def classify_base64(request: Request, body: ClassifyBase64Request) -> ClassifyImageResponse:
    """Classify base64 image bytes as produced by a camera or gallery picker."""
    settings = _get_settings(request)
    # base64 inflates by 4/3
    if len(body.image) > settings.max_file_size * 4 // 3 + 64:
        raise HTTPException(
            status_code=status.HTTP_413_CONTENT_TOO_LARGE,
            detail=f"Image exceeds {settings.max_file_size} bytes",
        )
    return await _classify(request, body.image, body.mime_type)


@router.post(
    "/initialize",
    response_model=InitializeResponse,
    status_code=status.HTTP_202_ACCEPTED,
    responses={status.HTTP_409_CONFLICT: {"model": ErrorResponse}},
    summary="Retry the initialization sequence",
)
async def initialize(request: Request) -> InitializeResponse:
    """Re-run platform setup and model loading after a failure."""
    runtime = _get_runtime(request)
    task = runtime.start_initialization()
    if task is None:
        detail = "Model is already loaded" if runtime.is_ready else "Initialization already in progress"
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=detail)

    request.app.state.init_task = task
    return InitializeResponse(status="initializing", stage=runtime.status().stage)


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health(request: Request) -> HealthResponse:
    """Return service health, initialization progress, and buffer accounting."""
    settings = _get_settings(request)
    queue = _get_analysis_queue(request)
    runtime = _get_runtime(request)
    snapshot = runtime.status()
    model = runtime.model
    return HealthResponse(
        status="ok" if snapshot.error is None else "error",
        state=snapshot.state.value,
        stage=snapshot.stage,
        progress=round(snapshot.progress, 1),
        error=snapshot.error,
        gpu=settings.device == "cuda",
        models_loaded=[model.name] if model is not None else [],
        tensors_tracked=_get_registry(request).num_tensors,
        analyzing=queue.analyzing,
        waiting=queue.waiting,
    )


@router.get(
    "/models",
    response_model=ModelsResponse,
    summary="Describe the loaded model",
)
async def list_models(request: Request) -> ModelsResponse:
    """Return the loaded model with its positional label list."""
    runtime = _get_runtime(request)
    model = runtime.model
    if model is None:
        return ModelsResponse(models=[])

    return ModelsResponse(
        models=[
            ModelInfo(
                name=model.name,
                status=runtime.status().state.value,
                labels=list(model.labels),
                input_shape=list(model.input_shape),
            )
        ]
    )
