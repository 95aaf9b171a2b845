"""
Pydantic models and enums for the story generation pipeline.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, field_validator, model_validator


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ── Pipeline Stage ───────────────────────────────────────────────────────────

class PipelineStage(str, Enum):
    UPLOADING = "uploading"
    STYLING_CHARACTERS = "styling_characters"
    COMPOSING_SCENE_IMAGES = "composing_scene_images"
    ANIMATING_SCENES = "animating_scenes"
    ASSEMBLING = "assembling"
    COMPLETE = "complete"
    FAILED = "failed"


class RunMode(str, Enum):
    FULL = "full"
    IMAGES_ONLY = "images_only"
    VIDEOS_ONLY = "videos_only"
    REGENERATE_SCENE = "regenerate_scene"


class RunStatus(str, Enum):
    RUNNING = "running"
    COMPLETE = "complete"
    FAILED = "failed"


# ── Character ────────────────────────────────────────────────────────────────

class StyleStatus(str, Enum):
    IDLE = "idle"
    UPLOADING = "uploading"
    STYLING = "styling"
    DONE = "done"
    ERROR = "error"


class Character(BaseModel):
    id: str
    name: str
    description: str = ""
    source_image_ref: Optional[str] = None  # http(s) URL or local file path
    source_content_type: str = "image/png"
    uploaded_url: Optional[str] = None
    styled_url: Optional[str] = None
    style_status: StyleStatus = StyleStatus.IDLE

    @model_validator(mode="after")
    def _styled_requires_upload(self):
        if self.styled_url and not self.uploaded_url:
            raise ValueError(f"Character {self.id} is styled but was never uploaded")
        return self

    @property
    def is_active(self) -> bool:
        return bool(self.source_image_ref or self.uploaded_url)

    def mark_uploaded(self, url: str):
        self.uploaded_url = url

    def mark_styled(self, url: str):
        if not self.uploaded_url:
            raise ValueError(f"Character {self.id} cannot be styled before it is uploaded")
        self.styled_url = url
        self.style_status = StyleStatus.DONE

    def mark_style_error(self):
        self.style_status = StyleStatus.ERROR


# ── Scene ────────────────────────────────────────────────────────────────────

class SceneStatus(str, Enum):
    PENDING = "pending"
    IMAGE_READY = "image-ready"
    VIDEO_READY = "video-ready"
    FAILED = "failed"


class Scene(BaseModel):
    id: str
    prompt: str
    duration_seconds: int = 5
    referenced_character_ids: list[str] = Field(default_factory=list)
    generated_image_url: Optional[str] = None
    video_url: Optional[str] = None
    status: SceneStatus = SceneStatus.PENDING
    error: Optional[str] = None

    @field_validator("referenced_character_ids")
    @classmethod
    def _dedupe_references(cls, ids: list[str]) -> list[str]:
        return list(dict.fromkeys(ids))

    @model_validator(mode="after")
    def _video_requires_image(self):
        if self.video_url and not self.generated_image_url:
            raise ValueError(f"Scene {self.id} has a video but no source image")
        return self

    def set_image(self, url: str):
        """A new image invalidates the video rendered from the previous one."""
        self.generated_image_url = url
        self.video_url = None
        self.status = SceneStatus.IMAGE_READY
        self.error = None

    def set_video(self, url: str):
        if not self.generated_image_url:
            raise ValueError(f"Scene {self.id} cannot have a video before its image")
        self.video_url = url
        self.status = SceneStatus.VIDEO_READY
        self.error = None

    def mark_failed(self, error: str):
        self.status = SceneStatus.FAILED
        self.error = error


class StoryProject(BaseModel):
    """The caller's durable state handed to a pipeline entry point."""
    user_id: str
    characters: list[Character] = Field(default_factory=list)
    scenes: list[Scene] = Field(default_factory=list)
    style: Optional[str] = None
    aspect_ratio: str = "9:16"

    @property
    def total_duration(self) -> int:
        return sum(s.duration_seconds for s in self.scenes)

    def active_characters(self) -> list[Character]:
        return [c for c in self.characters if c.is_active]

    def find_scene(self, scene_id: str) -> Optional[Scene]:
        return next((s for s in self.scenes if s.id == scene_id), None)

    def referenced_characters(self, scene: Scene) -> list[Character]:
        """Characters a scene references, in project character order."""
        wanted = set(scene.referenced_character_ids)
        return [c for c in self.characters if c.id in wanted]


# ── Remote Job ───────────────────────────────────────────────────────────────

class JobKind(str, Enum):
    STYLE = "style"
    COMPOSE = "compose"
    ANIMATE = "animate"


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class RemoteJob(BaseModel):
    job_id: str
    kind: JobKind
    status: JobStatus = JobStatus.PENDING
    result_url: Optional[str] = None
    error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (JobStatus.COMPLETED, JobStatus.FAILED)


# ── Ledger ───────────────────────────────────────────────────────────────────

class OperationKind(str, Enum):
    IMAGE_GENERATION = "image-generation"
    VIDEO_GENERATION = "video-generation"


class DebitResult(BaseModel):
    ok: bool
    new_balance: int


class LedgerEntry(BaseModel):
    amount: int
    operation_kind: OperationKind
    run_id: str
    accepted: bool
    balance_after: Optional[int] = None
    created_at: str = Field(default_factory=_now_iso)


# ── Playlist & Generation Record ─────────────────────────────────────────────

class PlaylistVideo(BaseModel):
    url: str
    duration: int


class PlaylistManifest(BaseModel):
    videos: list[PlaylistVideo] = Field(default_factory=list)
    total_duration: int = 0
    manifest_url: Optional[str] = None


class CharacterSummary(BaseModel):
    name: str
    description: str = ""


class SceneSummary(BaseModel):
    prompt: str
    duration: int
    image_url: Optional[str] = None


class GenerationRecord(BaseModel):
    id: Optional[str] = None
    user_id: str
    style: str = "unknown"
    aspect_ratio: str = "9:16"
    characters: list[CharacterSummary] = Field(default_factory=list)
    scenes: list[SceneSummary] = Field(default_factory=list)
    video_urls: list[str] = Field(default_factory=list)
    name: Optional[str] = None
    thumbnail_url: Optional[str] = None
    status: str = "completed"
    created_at: str = Field(default_factory=_now_iso)


# ── Progress & Outcome ───────────────────────────────────────────────────────

class GenerationProgress(BaseModel):
    run_id: str
    stage: PipelineStage
    current_scene_index: int = 0
    total_scenes: int = 0
    percentage: float = 0.0
    message: str = ""


class RunOutcome(BaseModel):
    run_id: str
    mode: RunMode
    status: RunStatus
    stage: Optional[PipelineStage] = None  # stage at which a failure occurred
    error: Optional[str] = None
    error_kind: Optional[str] = None
    reason: Optional[str] = None
    video_urls: list[str] = Field(default_factory=list)
    playlist: Optional[PlaylistManifest] = None
    generation_record: Optional[GenerationRecord] = None
    characters: list[Character] = Field(default_factory=list)
    scenes: list[Scene] = Field(default_factory=list)
    ledger: list[LedgerEntry] = Field(default_factory=list)


class RunStatusResponse(BaseModel):
    run_id: str
    mode: RunMode
    status: RunStatus = RunStatus.RUNNING
    progress: Optional[GenerationProgress] = None
    outcome: Optional[RunOutcome] = None
    error: Optional[str] = None


# ── API Request Models ───────────────────────────────────────────────────────

class RunRequest(BaseModel):
    """Start a full, images-only or videos-only run."""
    project: StoryProject
    run_id: Optional[str] = None


class RegenerateSceneRequest(BaseModel):
    project: StoryProject
    run_id: Optional[str] = None


class BalanceResponse(BaseModel):
    user_id: str
    balance: int


class RunStartedResponse(BaseModel):
    run_id: str
    mode: RunMode
    status: RunStatus = RunStatus.RUNNING


class RenameGenerationRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
