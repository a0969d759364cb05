"""API route definitions."""

from __future__ import annotations

from typing import TYPE_CHECKING, Annotated

from fastapi import APIRouter, Query, Request, UploadFile, status
from fastapi.responses import JSONResponse

from leafscan.api.schemas import (
    ClassifyImageResponse,
    ErrorResponse,
    HealthResponse,
    ModelInfo,
    ModelsResponse,
    Prediction,
)
from leafscan.display import confidence_level, confidence_percent, format_disease_name
from leafscan.ml.errors import DecodeError, EmptyResultError, InferenceError, ModelLoadError
from leafscan.ml.inference import Failure
from leafscan.ml.model_manager import MODEL_REGISTRY

if TYPE_CHECKING:
    from leafscan.config import Settings
    from leafscan.ml.inference import InferenceInvoker
    from leafscan.ml.model_manager import OnnxModelManager

router = APIRouter(prefix="/api/v1")

_FAILURE_STATUS: dict[str, int] = {
    DecodeError.reason: status.HTTP_422_UNPROCESSABLE_ENTITY,
    EmptyResultError.reason: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ModelLoadError.reason: status.HTTP_503_SERVICE_UNAVAILABLE,
    InferenceError.reason: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


def _get_settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def _get_invoker(request: Request) -> InferenceInvoker:
    invoker: InferenceInvoker = request.app.state.invoker
    return invoker


def _get_model_manager(request: Request) -> OnnxModelManager:
    manager: OnnxModelManager = request.app.state.model_manager
    return manager


def _failure_response(outcome: Failure) -> JSONResponse:
    return JSONResponse(
        status_code=_FAILURE_STATUS.get(outcome.reason, status.HTTP_500_INTERNAL_SERVER_ERROR),
        content=ErrorResponse(detail=outcome.message, reason=outcome.reason).model_dump(),
    )


@router.post(
    "/classify-image",
    response_model=ClassifyImageResponse,
    responses={
        status.HTTP_413_REQUEST_ENTITY_TOO_LARGE: {"model": ErrorResponse},
        status.HTTP_422_UNPROCESSABLE_ENTITY: {"model": ErrorResponse},
        status.HTTP_500_INTERNAL_SERVER_ERROR: {"model": ErrorResponse},
        status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
    },
    summary="Classify a leaf image",
)
async def classify_image(
    request: Request,
    file: UploadFile,
    top_k: Annotated[int, Query(ge=1, le=100)] = 5,
) -> ClassifyImageResponse | JSONResponse:
    """Classify an uploaded leaf image and return the top label with ranked predictions."""
    settings = _get_settings(request)
    invoker = _get_invoker(request)

    data = await file.read(settings.max_file_size + 1)
    if len(data) > settings.max_file_size:
        return JSONResponse(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            content=ErrorResponse(detail=f"File exceeds {settings.max_file_size} bytes").model_dump(),
        )

    outcome = await invoker.classify(data)
    if isinstance(outcome, Failure):
        return _failure_response(outcome)

    return ClassifyImageResponse(
        label=outcome.top_label,
        display_name=format_disease_name(outcome.top_label),
        confidence=outcome.top_confidence,
        confidence_percent=confidence_percent(outcome.top_confidence),
        confidence_level=confidence_level(outcome.top_confidence).value,
        model=invoker.classifier.model_name,
        predictions=[Prediction(label=r.label, confidence=r.confidence) for r in outcome.ranked[:top_k]],
        class_count=len(outcome.ranked),
    )


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health(request: Request) -> HealthResponse:
    """Return service health status."""
    settings = _get_settings(request)
    invoker = _get_invoker(request)
    manager = _get_model_manager(request)
    return HealthResponse(
        status="ok",
        gpu=settings.device == "cuda",
        models_loaded=manager.get_loaded_models(),
        state=invoker.state.value,
        concurrent_requests=invoker.active_count,
    )


@router.get(
    "/models",
    response_model=ModelsResponse,
    summary="List bundled models",
)
async def list_models(request: Request) -> ModelsResponse:
    """Return bundled models and whether their artifacts are present."""
    settings = _get_settings(request)
    manager = _get_model_manager(request)
    loaded = set(manager.get_loaded_models())

    models: list[ModelInfo] = []
    for name, spec in MODEL_REGISTRY.items():
        if not manager.is_available(name):
            model_status = "missing"
        elif name == settings.classifier_model:
            model_status = "active"
        else:
            model_status = "available"

        models.append(
            ModelInfo(
                name=name,
                description=spec.description,
                status=model_status,
                loaded=name in loaded,
            )
        )

    return ModelsResponse(models=models)
