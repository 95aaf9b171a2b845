"""
Story Generation Pipeline

Character photos + scene prompts → styled characters → composed scene images
→ animated scene videos → playlist + saved generation.

  Full run         - every stage, scene by scene
  Images-only run  - stop after scene images
  Videos-only run  - animate existing scene images
  Regenerate scene - recompose one scene
"""

from .orchestrator import PipelineOrchestrator
from .routes import pipeline_router, generations_router
from .models import PipelineStage, RunMode, RunStatus

__all__ = [
    "PipelineOrchestrator",
    "pipeline_router",
    "generations_router",
    "PipelineStage",
    "RunMode",
    "RunStatus",
]
