import os
import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from dotenv import load_dotenv

from . import metrics
from .auth_middleware import PipelineAuthMiddleware
from .config import PipelineSettings
from .pipeline import PipelineOrchestrator
from .pipeline.routes import pipeline_router, generations_router

load_dotenv()
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

settings = PipelineSettings.from_env()


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Worker starting up...")
    app.state.orchestrator = PipelineOrchestrator.from_settings(settings)
    yield
    logger.info("Worker shutting down...")


app = FastAPI(lifespan=lifespan)
app.add_middleware(PipelineAuthMiddleware, secret=settings.worker_shared_secret)
app.include_router(pipeline_router)
app.include_router(generations_router)


@app.get("/health")
def health_check():
    """Verify worker is running and its collaborators are configured."""
    return {
        "status": "ok",
        "kie_api_key_set": bool(settings.kie.api_key),
        "r2_configured": bool(settings.r2.account_id and settings.r2.public_url),
        "supabase_url_set": bool(settings.supabase.url),
    }


@app.get("/metrics")
def metrics_endpoint():
    """Return a snapshot of all worker metrics."""
    return metrics.get_snapshot()


if __name__ == "__main__":
    port = int(os.environ.get("PORT", 8080))
    uvicorn.run("storyreel.main:app", host="0.0.0.0", port=port, reload=True)
