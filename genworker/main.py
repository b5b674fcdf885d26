import logging
import os
import time
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI

from . import metrics
from .auth_middleware import WorkerAuthMiddleware
from .config import WorkerSettings, load_settings
from .pipeline.context import PipelineContext
from .pipeline.routes import credits_router, cron_router, project_router
from .provider_factory import ProviderFactory

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def create_app(settings: Optional[WorkerSettings] = None, context: Optional[PipelineContext] = None) -> FastAPI:
    """
    Build the orchestrator app.

    Args:
        settings: Worker settings; loaded from the environment when omitted.
        context:  Prebuilt pipeline context (tests pass one with fakes).
    """
    settings = settings or load_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"Orchestrator starting up (env={settings.environment}, store={settings.store_backend})")
        metrics.set_gauge("start_time", time.time())
        app.state.context = context or ProviderFactory.build_context(settings)
        yield
        logger.info("Orchestrator shutting down...")

    app = FastAPI(title="Generation Pipeline Orchestrator", lifespan=lifespan)
    app.add_middleware(
        WorkerAuthMiddleware,
        secret=settings.worker_shared_secret,
        environment=settings.environment,
    )
    app.include_router(cron_router)
    app.include_router(project_router)
    app.include_router(credits_router)

    @app.get("/health")
    def health_check():
        """Verify the worker is running and its keys are configured."""
        return {
            "status": "ok",
            "store_backend": settings.store_backend,
            "supabase_url_set": bool(settings.supabase_url),
            "kie_api_key_set": bool(settings.kie_api_key),
            "fal_api_key_set": bool(settings.fal_api_key),
            "gemini_api_key_set": bool(settings.gemini_api_key),
        }

    @app.get("/metrics")
    def metrics_endpoint():
        """Return a snapshot of all orchestrator metrics."""
        return metrics.get_snapshot()

    return app


if __name__ == "__main__":
    port = int(os.environ.get("PORT", 8080))
    uvicorn.run("genworker.main:create_app", factory=True, host="0.0.0.0", port=port)
