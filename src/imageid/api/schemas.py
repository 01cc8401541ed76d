"""Pydantic request/response schemas for the ImageID API."""

from __future__ import annotations

from pydantic import BaseModel, Field


class ImageTag(BaseModel):
    """A single classification tag with confidence score."""

    label: str
    confidence: float = Field(ge=0.0, le=1.0)


class ClassifyImageResponse(BaseModel):
    """Response for the stateless image classification endpoint."""

    tags: list[ImageTag]
    model: str = Field(description="Model that produced the tags")


class ImageUrlPayload(BaseModel):
    """Current value of the image URL field."""

    url: str = ""


class ImageLinkSchema(BaseModel):
    ref: str = Field(description="Image reference as stored in the session")
    src: str = Field(description="Location a browser can load the image from")


class ResultRowSchema(BaseModel):
    label: str
    confidence: float = Field(description="Confidence in percent, two decimals")
    best_guess: bool


class SessionErrorSchema(BaseModel):
    kind: str = Field(description="'load_failed', 'inference_failed', or 'invalid_image'")
    detail: str


class SessionView(BaseModel):
    """Everything a client needs to render one session."""

    session_id: str
    screen: str = Field(description="'loading_models', 'models_failed', or 'ready'")
    results_panel: str = Field(description="'empty', 'loading', 'results', or 'error'")
    image: ImageLinkSchema | None
    results: list[ResultRowSchema]
    results_model: str | None
    error: SessionErrorSchema | None
    can_identify: bool
    history: list[ImageLinkSchema]
    show_history: bool
    models_error: str | None = None


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    gpu: bool
    models_state: str = Field(description="'loading', 'ready', or 'failed'")
    models_loaded: list[str]
    concurrent_requests: int
    queue_depth: int


class ModelInfo(BaseModel):
    """Information about one of the two classifiers."""

    name: str
    role: str = Field(description="'primary' or 'secondary'")
    source: str
    status: str = Field(description="Model status: 'loading', 'active', or 'failed'")


class ModelsResponse(BaseModel):
    """Response for the models listing endpoint."""

    models: list[ModelInfo]


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str
