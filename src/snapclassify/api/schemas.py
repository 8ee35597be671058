"""Pydantic request/response schemas for the SnapClassify API."""

from __future__ import annotations

from pydantic import BaseModel, Field


class ClassifyBase64Request(BaseModel):
    """A base64-encoded capture, optionally prefixed with a data URL header."""

    image: str = Field(min_length=1, description="Base64 image bytes or a data: URL")
    mime_type: str | None = Field(default=None, description="Image MIME type; image/jpeg when omitted")


class LabelConfidence(BaseModel):
    """A single class with its probability and formatted confidence."""

    label: str
    probability: float = Field(ge=0.0, le=1.0)
    confidence: str = Field(description="Probability as a percentage string, e.g. '87.50%'")


class ClassifyImageResponse(BaseModel):
    """Per-class predictions in the model's label order plus the top class."""

    predictions: list[LabelConfidence]
    top: LabelConfidence


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    state: str
    stage: str
    progress: float = Field(ge=0.0, le=100.0)
    error: str | None = None
    gpu: bool
    models_loaded: list[str]
    tensors_tracked: int
    analyzing: int
    waiting: int


class ModelInfo(BaseModel):
    """Information about the configured model."""

    name: str
    status: str = Field(description="Lifecycle state, e.g. 'ready' or 'failed'")
    labels: list[str]
    input_shape: list[int]


class ModelsResponse(BaseModel):
    """Response for the models listing endpoint."""

    models: list[ModelInfo]


class InitializeResponse(BaseModel):
    """Response for a re-initialization request."""

    status: str
    stage: str


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str
