"""API route definitions."""

from __future__ import annotations

import asyncio
import dataclasses
from contextlib import contextmanager
from http import HTTPStatus
from typing import TYPE_CHECKING

from fastapi import APIRouter, Depends, HTTPException, Request, Response, UploadFile, status

from imageid.api.middleware import verify_api_key
from imageid.api.schemas import (
    ClassifyImageResponse,
    ErrorResponse,
    HealthResponse,
    ImageTag,
    ImageUrlPayload,
    ModelInfo,
    ModelsResponse,
    SessionView,
)
from imageid.errors import (
    ClassificationInProgressError,
    InferenceError,
    InvalidImageError,
    ModelsNotReadyError,
    SessionNotFoundError,
)
from imageid.ml.model_manager import LoadState, ModelRole
from imageid.session.service import CAPACITY_EXHAUSTED, SessionService

if TYPE_CHECKING:
    from collections.abc import Iterator

    from imageid.config import Settings
    from imageid.ml.decision import ClassificationEngine
    from imageid.ml.inference import InferencePool
    from imageid.ml.model_manager import ModelManager
    from imageid.ml.preprocessing import ImagePreprocessor

router = APIRouter(prefix="/api/v1", dependencies=[Depends(verify_api_key)])

_SESSION_ERRORS = {
    status.HTTP_404_NOT_FOUND: {"model": ErrorResponse},
    status.HTTP_409_CONFLICT: {"model": ErrorResponse},
    HTTPStatus.UNPROCESSABLE_ENTITY: {"model": ErrorResponse},
    status.HTTP_500_INTERNAL_SERVER_ERROR: {"model": ErrorResponse},
    status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
}


def _get_settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def _get_inference_pool(request: Request) -> InferencePool:
    pool: InferencePool = request.app.state.inference_pool
    return pool


def _get_model_manager(request: Request) -> ModelManager:
    manager: ModelManager = request.app.state.model_manager
    return manager


def _get_session_service(request: Request) -> SessionService:
    service: SessionService = request.app.state.session_service
    return service


@contextmanager
def _service_errors() -> Iterator[None]:
    """Translate domain exceptions into HTTP errors."""
    try:
        yield
    except SessionNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except IndexError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except ClassificationInProgressError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except ModelsNotReadyError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except TimeoutError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=CAPACITY_EXHAUSTED,
        ) from exc
    except InvalidImageError as exc:
        raise HTTPException(status_code=HTTPStatus.UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    except InferenceError as exc:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)) from exc


async def _read_image_upload(file: UploadFile, settings: Settings) -> bytes:
    content_type = file.content_type or ""
    if not content_type.startswith("image/"):
        raise HTTPException(
            status_code=status.HTTP_415_UNSUPPORTED_MEDIA_TYPE,
            detail=f"Expected an image upload, got '{content_type or 'unknown'}'",
        )
    data = await file.read()
    if len(data) > settings.max_file_size:
        raise HTTPException(
            status_code=HTTPStatus.REQUEST_ENTITY_TOO_LARGE,
            detail=f"Upload exceeds {settings.max_file_size} bytes",
        )
    return data


def _view(service: SessionService, session_id: str) -> SessionView:
    presentation = service.presentation(session_id)
    return SessionView.model_validate({"session_id": session_id, **dataclasses.asdict(presentation)})


# -- Stateless classification -------------------------------------------------


@router.post(
    "/classify-image",
    response_model=ClassifyImageResponse,
    responses={
        HTTPStatus.REQUEST_ENTITY_TOO_LARGE: {"model": ErrorResponse},
        status.HTTP_415_UNSUPPORTED_MEDIA_TYPE: {"model": ErrorResponse},
        HTTPStatus.UNPROCESSABLE_ENTITY: {"model": ErrorResponse},
        status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
    },
    summary="Classify an image with tags",
)
async def classify_image(request: Request, file: UploadFile) -> ClassifyImageResponse:
    """Classify an uploaded image without touching any session."""
    data = await _read_image_upload(file, _get_settings(request))
    preprocessor: ImagePreprocessor = request.app.state.preprocessor
    engine: ClassificationEngine = request.app.state.engine
    manager = _get_model_manager(request)
    with _service_errors():
        models = manager.models
        if models is None or manager.state != LoadState.READY:
            raise ModelsNotReadyError(manager.state)
        image = await asyncio.to_thread(preprocessor.decode_image, data)
        result = await engine.classify(image, models)
    return ClassifyImageResponse(
        tags=[ImageTag(label=c.label, confidence=c.probability) for c in result.candidates],
        model=result.model_name,
    )


# -- Sessions -----------------------------------------------------------------


@router.post(
    "/sessions",
    response_model=SessionView,
    status_code=status.HTTP_201_CREATED,
    summary="Start a new session",
)
async def create_session(request: Request) -> SessionView:
    service = _get_session_service(request)
    return _view(service, service.create_session())


@router.get(
    "/sessions/{session_id}",
    response_model=SessionView,
    responses=_SESSION_ERRORS,
    summary="Current presentation state of a session",
)
async def get_session(request: Request, session_id: str) -> SessionView:
    service = _get_session_service(request)
    with _service_errors():
        return _view(service, session_id)


@router.post(
    "/sessions/{session_id}/image",
    response_model=SessionView,
    responses={
        **_SESSION_ERRORS,
        HTTPStatus.REQUEST_ENTITY_TOO_LARGE: {"model": ErrorResponse},
        status.HTTP_415_UNSUPPORTED_MEDIA_TYPE: {"model": ErrorResponse},
    },
    summary="Select an image file",
)
async def upload_image(request: Request, session_id: str, file: UploadFile) -> SessionView:
    """Replace the session's current image with an uploaded file."""
    service = _get_session_service(request)
    data = await _read_image_upload(file, _get_settings(request))
    with _service_errors():
        service.upload_image(session_id, data, file.content_type or "application/octet-stream")
        return _view(service, session_id)


@router.delete(
    "/sessions/{session_id}/image",
    response_model=SessionView,
    responses=_SESSION_ERRORS,
    summary="Clear the file selection",
)
async def clear_image(request: Request, session_id: str) -> SessionView:
    service = _get_session_service(request)
    with _service_errors():
        service.clear_image(session_id)
        return _view(service, session_id)


@router.put(
    "/sessions/{session_id}/image-url",
    response_model=SessionView,
    responses=_SESSION_ERRORS,
    summary="Set the image URL",
)
async def enter_image_url(request: Request, session_id: str, payload: ImageUrlPayload) -> SessionView:
    """Use the URL field's raw value as the current image (empty clears it)."""
    service = _get_session_service(request)
    with _service_errors():
        service.enter_url(session_id, payload.url)
        return _view(service, session_id)


@router.post(
    "/sessions/{session_id}/history/{index}",
    response_model=SessionView,
    responses=_SESSION_ERRORS,
    summary="Re-select an image from history",
)
async def select_history(request: Request, session_id: str, index: int) -> SessionView:
    service = _get_session_service(request)
    with _service_errors():
        service.select_history(session_id, index)
        return _view(service, session_id)


@router.post(
    "/sessions/{session_id}/identify",
    response_model=SessionView,
    responses=_SESSION_ERRORS,
    summary="Identify the current image",
)
async def identify(request: Request, session_id: str) -> SessionView:
    """Run the primary classifier, falling back to the secondary one."""
    service = _get_session_service(request)
    with _service_errors():
        await service.identify(session_id)
        return _view(service, session_id)


@router.get(
    "/uploads/{upload_id}",
    response_class=Response,
    responses={status.HTTP_404_NOT_FOUND: {"model": ErrorResponse}},
    summary="Fetch an uploaded image",
)
async def get_upload(request: Request, upload_id: str) -> Response:
    service = _get_session_service(request)
    try:
        upload = service.uploads.get(upload_id)
    except KeyError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Unknown upload") from exc
    return Response(content=upload.data, media_type=upload.content_type)


# -- Service status -----------------------------------------------------------


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health(request: Request) -> HealthResponse:
    """Return service health status."""
    settings = _get_settings(request)
    pool = _get_inference_pool(request)
    manager = _get_model_manager(request)
    return HealthResponse(
        status="ok",
        gpu=settings.device == "cuda",
        models_state=manager.state,
        models_loaded=manager.get_loaded_models(),
        concurrent_requests=pool.active_count,
        queue_depth=pool.queue_depth,
    )


@router.get(
    "/models",
    response_model=ModelsResponse,
    summary="List the classifiers",
)
async def list_models(request: Request) -> ModelsResponse:
    """Return both classifiers and their loading status."""
    settings = _get_settings(request)
    manager = _get_model_manager(request)
    loaded = manager.get_loaded_models()
    sources = {
        ModelRole.PRIMARY: settings.primary_model_url,
        ModelRole.SECONDARY: f"{settings.secondary_model_repo}/{settings.secondary_model_file}",
    }

    models: list[ModelInfo] = []
    for position, role in enumerate(ModelRole):
        if position < len(loaded):
            name, model_status = loaded[position], "active"
        else:
            name = role.value
            model_status = "failed" if manager.state == LoadState.FAILED else "loading"
        models.append(ModelInfo(name=name, role=role, source=sources[role], status=model_status))

    return ModelsResponse(models=models)
