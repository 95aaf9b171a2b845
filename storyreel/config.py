"""
Worker configuration.

Every external-collaborator client receives its settings through its
constructor. The environment is read in exactly one place:
`PipelineSettings.from_env()`, called by the FastAPI app at startup.
"""

import os
from typing import Optional

from pydantic import BaseModel, Field


# ── Groups ───────────────────────────────────────────────────────────────────

class CostRates(BaseModel):
    """1 credit = 1 internal cent."""
    image: int = 10             # credits per composed scene image
    video_per_second: int = 75  # credits per second of animated video


class RunLimits(BaseModel):
    """Caps tied to the current video provider (Kling 2.5: 3 scenes × 5s)."""
    max_scenes: int = 3
    max_total_duration_seconds: int = 15
    allowed_scene_durations: list[int] = Field(default_factory=lambda: [5])


class PollPolicy(BaseModel):
    interval_seconds: float = 5.0
    max_attempts: int = 180  # 15 minutes at 5s


class KieSettings(BaseModel):
    api_key: str = ""
    base_url: str = "https://api.kie.ai/api/v1"
    request_timeout: float = 30.0


class R2Settings(BaseModel):
    account_id: str = ""
    access_key_id: str = ""
    secret_access_key: str = ""
    bucket_name: str = "assets"
    public_url: str = ""


class SupabaseSettings(BaseModel):
    url: str = ""
    service_role_key: str = ""


class PipelineSettings(BaseModel):
    costs: CostRates = Field(default_factory=CostRates)
    limits: RunLimits = Field(default_factory=RunLimits)
    poll: PollPolicy = Field(default_factory=PollPolicy)
    kie: KieSettings = Field(default_factory=KieSettings)
    r2: R2Settings = Field(default_factory=R2Settings)
    supabase: SupabaseSettings = Field(default_factory=SupabaseSettings)
    default_aspect_ratio: str = "9:16"
    persist_videos: bool = True
    worker_shared_secret: Optional[str] = None

    @classmethod
    def from_env(cls) -> "PipelineSettings":
        """Build settings from process environment variables."""
        durations = os.getenv("ALLOWED_SCENE_DURATIONS", "5")
        return cls(
            costs=CostRates(
                image=int(os.getenv("COST_IMAGE_GENERATION", "10")),
                video_per_second=int(os.getenv("COST_VIDEO_PER_SECOND", "75")),
            ),
            limits=RunLimits(
                max_scenes=int(os.getenv("MAX_SCENES", "3")),
                max_total_duration_seconds=int(os.getenv("MAX_TOTAL_DURATION", "15")),
                allowed_scene_durations=[int(d) for d in durations.split(",") if d.strip()],
            ),
            poll=PollPolicy(
                interval_seconds=float(os.getenv("VIDEO_POLL_INTERVAL", "5")),
                max_attempts=int(os.getenv("VIDEO_MAX_POLL_ATTEMPTS", "180")),
            ),
            kie=KieSettings(
                api_key=os.getenv("KIE_API_KEY", ""),
                base_url=os.getenv("KIE_API_BASE", "https://api.kie.ai/api/v1"),
            ),
            r2=R2Settings(
                account_id=os.getenv("R2_ACCOUNT_ID", ""),
                access_key_id=os.getenv("R2_ACCESS_KEY_ID", ""),
                secret_access_key=os.getenv("R2_SECRET_ACCESS_KEY", ""),
                bucket_name=os.getenv("R2_BUCKET_NAME", "assets"),
                public_url=os.getenv("R2_PUBLIC_URL", ""),
            ),
            supabase=SupabaseSettings(
                url=os.getenv("SUPABASE_URL", ""),
                service_role_key=os.getenv("SUPABASE_SERVICE_ROLE_KEY", ""),
            ),
            default_aspect_ratio=os.getenv("DEFAULT_ASPECT_RATIO", "9:16"),
            persist_videos=os.getenv("PERSIST_VIDEOS", "true").lower() == "true",
            worker_shared_secret=os.getenv("WORKER_SHARED_SECRET") or None,
        )
