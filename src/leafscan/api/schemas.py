"""Pydantic request/response schemas for the LeafScan API."""

from __future__ import annotations

from pydantic import BaseModel, Field


class Prediction(BaseModel):
    """A single ranked label with confidence score."""

    label: str
    confidence: float = Field(ge=0.0, le=1.0)


class ClassifyImageResponse(BaseModel):
    """Response for the image classification endpoint."""

    label: str
    display_name: str = Field(description="Label formatted for display")
    confidence: float = Field(ge=0.0, le=1.0)
    confidence_percent: int = Field(ge=0, le=100)
    confidence_level: str = Field(description="'high' (> 0.8), 'medium' (> 0.5) or 'low'")
    model: str
    predictions: list[Prediction] = Field(description="Top predictions, highest confidence first")
    class_count: int = Field(description="Number of classes the model ranked")


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    gpu: bool
    models_loaded: list[str]
    state: str = Field(description="Invoker state: 'idle' or 'running'")
    concurrent_requests: int


class ModelInfo(BaseModel):
    """Information about a bundled model."""

    name: str
    description: str
    status: str = Field(description="Model status: 'active', 'available', or 'missing'")
    loaded: bool


class ModelsResponse(BaseModel):
    """Response for the models listing endpoint."""

    models: list[ModelInfo]


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str
    reason: str | None = None
