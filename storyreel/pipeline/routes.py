"""
FastAPI routes for the story pipeline.

Pipeline Endpoints:
  POST /pipeline/run                          - Full run (images → videos → playlist)
  POST /pipeline/images                       - Images-only run
  POST /pipeline/videos                       - Videos-only run (every scene needs an image)
  POST /pipeline/scenes/{scene_id}/regenerate - Recompose one scene
  GET  /pipeline/status/{run_id}              - Run progress / outcome
  POST /pipeline/cancel/{run_id}              - Stop a running run
  GET  /pipeline/balance?user_id=…             - Current credit balance

Generation Endpoints:
  GET   /generations?user_id=…       - List a user's generations (newest first)
  GET   /generations/{id}?user_id=…  - Get one generation
  PATCH /generations/{id}?user_id=…  - Rename a generation

Runs start in the background; clients poll the status endpoint.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from ..errors import RunConflict
from .models import (
    BalanceResponse,
    GenerationRecord,
    RegenerateSceneRequest,
    RenameGenerationRequest,
    RunMode,
    RunRequest,
    RunStartedResponse,
    RunStatusResponse,
)
from .orchestrator import PipelineOrchestrator

logger = logging.getLogger(__name__)


def get_orchestrator(request: Request) -> PipelineOrchestrator:
    return request.app.state.orchestrator


def _start(orchestrator: PipelineOrchestrator, mode: RunMode, request, scene_id=None) -> RunStartedResponse:
    try:
        run_id = orchestrator.start_background(mode, request.project, scene_id=scene_id, run_id=request.run_id)
    except RunConflict as e:
        raise HTTPException(status_code=409, detail=str(e))
    logger.info(f"[{run_id}] {mode.value} run accepted for user {request.project.user_id}")
    return RunStartedResponse(run_id=run_id, mode=mode)


# ═════════════════════════════════════════════════════════════════════════════
# Pipeline Router
# ═════════════════════════════════════════════════════════════════════════════

pipeline_router = APIRouter(prefix="/pipeline", tags=["pipeline"])


@pipeline_router.post("/run", response_model=RunStartedResponse, status_code=202)
async def run_pipeline(request: RunRequest, orchestrator: PipelineOrchestrator = Depends(get_orchestrator)):
    """Start the full pipeline (async)."""
    return _start(orchestrator, RunMode.FULL, request)


@pipeline_router.post("/images", response_model=RunStartedResponse, status_code=202)
async def run_images(request: RunRequest, orchestrator: PipelineOrchestrator = Depends(get_orchestrator)):
    return _start(orchestrator, RunMode.IMAGES_ONLY, request)


@pipeline_router.post("/videos", response_model=RunStartedResponse, status_code=202)
async def run_videos(request: RunRequest, orchestrator: PipelineOrchestrator = Depends(get_orchestrator)):
    return _start(orchestrator, RunMode.VIDEOS_ONLY, request)


@pipeline_router.post("/scenes/{scene_id}/regenerate", response_model=RunStartedResponse, status_code=202)
async def regenerate_scene(
    scene_id: str,
    request: RegenerateSceneRequest,
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
):
    """Recompose a single scene. Its video is cleared; other scenes are untouched."""
    return _start(orchestrator, RunMode.REGENERATE_SCENE, request, scene_id=scene_id)


@pipeline_router.get("/status/{run_id}", response_model=RunStatusResponse)
async def get_run_status(run_id: str, orchestrator: PipelineOrchestrator = Depends(get_orchestrator)):
    status = orchestrator.get_status(run_id)
    if status is None:
        raise HTTPException(status_code=404, detail="Run not found")
    return status


@pipeline_router.post("/cancel/{run_id}")
async def cancel_run(run_id: str, orchestrator: PipelineOrchestrator = Depends(get_orchestrator)):
    if orchestrator.get_status(run_id) is None:
        raise HTTPException(status_code=404, detail="Run not found")
    return {"run_id": run_id, "cancelled": orchestrator.cancel(run_id)}


@pipeline_router.get("/balance", response_model=BalanceResponse)
async def get_balance(
    user_id: str = Query(...),
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
):
    try:
        balance = await orchestrator.get_balance(user_id)
    except Exception as e:
        logger.error(f"Balance lookup failed for user {user_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))
    return BalanceResponse(user_id=user_id, balance=balance)


# ═════════════════════════════════════════════════════════════════════════════
# Generations Router - saved results
# ═════════════════════════════════════════════════════════════════════════════

generations_router = APIRouter(prefix="/generations", tags=["generations"])


@generations_router.get("", response_model=list[GenerationRecord])
async def list_generations(
    user_id: str = Query(...),
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
):
    try:
        return await orchestrator.generation_store.list_for_user(user_id)
    except Exception as e:
        logger.error(f"List generations failed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))


@generations_router.get("/{generation_id}", response_model=GenerationRecord)
async def get_generation(
    generation_id: str,
    user_id: str = Query(...),
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
):
    record = await orchestrator.generation_store.get(generation_id, user_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Generation not found")
    return record


@generations_router.patch("/{generation_id}", response_model=GenerationRecord)
async def rename_generation(
    generation_id: str,
    request: RenameGenerationRequest,
    user_id: str = Query(...),
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
):
    """Only the display name of a saved generation is mutable."""
    try:
        return await orchestrator.generation_store.rename(generation_id, user_id, request.name)
    except ValueError as e:
        raise HTTPException(status_code=404, detail=str(e))
