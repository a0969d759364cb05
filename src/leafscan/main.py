"""FastAPI application entry point."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from leafscan.config import Settings

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from leafscan.api.routes import router
from leafscan.config import get_settings
from leafscan.ml.errors import ModelLoadError
from leafscan.ml.image_classifier import OnnxImageClassifier
from leafscan.ml.inference import InferenceInvoker
from leafscan.ml.model_manager import OnnxModelManager

logger = logging.getLogger(__name__)


def init_state(app: FastAPI, settings: Settings) -> None:
    """Create the model manager, classifier, and invoker on ``app.state``."""
    manager = OnnxModelManager(settings)
    classifier = OnnxImageClassifier(manager, settings.classifier_model)
    app.state.settings = settings
    app.state.model_manager = manager
    app.state.invoker = InferenceInvoker(classifier, settings)


async def _evict_idle_models(manager: OnnxModelManager, interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        manager.unload_idle_models()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: initialize on startup, clean up on shutdown."""
    settings = get_settings()

    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    logger.info(
        "Starting LeafScan (device=%s, max_concurrent=%s, model=%s, models_dir=%s)",
        settings.device,
        settings.max_concurrent,
        settings.classifier_model,
        settings.models_dir,
    )

    init_state(app, settings)
    manager: OnnxModelManager = app.state.model_manager
    invoker: InferenceInvoker = app.state.invoker

    if settings.preload_model:
        try:
            await asyncio.to_thread(manager.get_model, settings.classifier_model)
        except ModelLoadError as exc:
            # Not fatal: each classification reports the load failure itself.
            logger.warning("Preloading %s failed: %s", settings.classifier_model, exc.message)

    eviction = None
    if settings.model_ttl:
        eviction = asyncio.create_task(_evict_idle_models(manager, settings.eviction_interval))

    logger.info("LeafScan ready")
    yield

    logger.info("Shutting down LeafScan")
    if eviction is not None:
        eviction.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await eviction
    invoker.shutdown()
    manager.shutdown()
    logger.info("LeafScan shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="LeafScan",
        description="Plant disease classification for leaf photographs",
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
    """Serve the application with uvicorn using LEAFSCAN_HOST / LEAFSCAN_PORT."""
    import uvicorn

    settings = get_settings()
    uvicorn.run("leafscan.main:app", host=settings.host, port=settings.port, log_level=settings.log_level.lower())
