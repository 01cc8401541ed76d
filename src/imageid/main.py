"""FastAPI application entry point."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from imageid.config import Settings
    from imageid.ml.model_manager import ModelManager

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from imageid.api.routes import router
from imageid.config import get_settings
from imageid.errors import ModelLoadError
from imageid.ml.decision import ClassificationEngine
from imageid.ml.inference import InferencePool
from imageid.ml.model_manager import OnnxModelManager
from imageid.ml.preprocessing import ImagePreprocessor
from imageid.session.service import SessionService
from imageid.session.sources import ImageFetcher, UploadStore

logger = logging.getLogger(__name__)


def init_state(app: FastAPI, settings: Settings, model_manager: ModelManager) -> None:
    """Wire the services onto ``app.state``."""
    app.state.settings = settings
    app.state.model_manager = model_manager

    pool = InferencePool(settings.max_concurrent)
    uploads = UploadStore(settings.max_uploads)
    app.state.inference_pool = pool
    app.state.engine = ClassificationEngine(pool)
    app.state.preprocessor = ImagePreprocessor(settings.max_image_pixels, settings.max_file_size)
    app.state.fetcher = ImageFetcher(uploads, settings.max_file_size, settings.fetch_timeout)
    app.state.session_service = SessionService(
        model_manager=model_manager,
        engine=app.state.engine,
        preprocessor=app.state.preprocessor,
        uploads=uploads,
        fetcher=app.state.fetcher,
        max_sessions=settings.max_sessions,
    )


async def load_models_at_startup(model_manager: ModelManager) -> None:
    """Load both classifiers; a failure leaves the service without them."""
    try:
        await model_manager.load_models()
    except ModelLoadError as exc:
        logger.error("Classification unavailable: %s", exc)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: initialize on startup, clean up on shutdown."""
    settings = get_settings()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    logger.info(
        "Starting ImageID (device=%s, max_concurrent=%s, primary=%s, secondary=%s/%s)",
        settings.device,
        settings.max_concurrent,
        settings.primary_model_url,
        settings.secondary_model_repo,
        settings.secondary_model_file,
    )

    model_manager = OnnxModelManager(settings)
    init_state(app, settings, model_manager)
    loading = asyncio.create_task(load_models_at_startup(model_manager), name="imageid-model-loading")

    logger.info("ImageID accepting requests; models loading in background")
    yield

    logger.info("Shutting down ImageID")
    loading.cancel()
    await asyncio.gather(loading, return_exceptions=True)
    await app.state.fetcher.aclose()
    app.state.inference_pool.shutdown()
    model_manager.shutdown()
    logger.info("ImageID shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="ImageID",
        description="Image identification with a confidence-gated fallback between two classifiers",
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

    application.include_router(router)
    return application


app = create_app()


def run() -> None:
    """Serve the application with uvicorn."""
    settings = get_settings()
    uvicorn.run("imageid.main:app", host=settings.host, port=settings.port)
