"""
Scene animation - Kling 2.5 Turbo Pro via Kie.ai.

Submits the composed scene image with a motion prompt that locks character
identity frame to frame and restricts motion to the subject plus ambient
background, then polls to a terminal state:

  completed          → result URL
  failed             → ProviderFailure (provider's message)
  ceiling exceeded   → TimeoutFailure (outcome unknown)

A client-side abort only stops local polling; the provider job is not cancelled.
"""

import asyncio
import logging
from typing import Optional

import httpx

from .. import metrics
from ..config import PollPolicy
from ..errors import ProviderFailure, TimeoutFailure
from .cancellation import CancellationToken
from .models import Character, JobKind, JobStatus, RemoteJob
from .providers import VideoProvider
from .storage import ObjectStorage

logger = logging.getLogger(__name__)


def build_motion_prompt(motion_prompt: str, characters: list[Character]) -> str:
    if not characters:
        return (
            "[VIDEO ANIMATION]\n"
            f"[ACTION]: {motion_prompt}\n\n"
            "[RULES]:\n"
            "- Natural ambient movement throughout scene\n"
            "- Cinematic quality, smooth fluid animation\n"
            "- Maintain visual consistency with source image"
        )

    cast = " | ".join(
        f'PROTAGONIST_{i + 1}: "{c.name}" ({c.description})' for i, c in enumerate(characters)
    )
    return (
        "[VIDEO ANIMATION - CHARACTER FIDELITY MODE]\n\n"
        f"[PROTAGONISTS]: {len(characters)} character(s): {cast}\n\n"
        f"[ACTION]: {motion_prompt}\n\n"
        "[TRAIT PRESERVATION - CRITICAL]:\n"
        "- Character faces must remain IDENTICAL in every frame\n"
        "- No morphing, warping or feature drift\n"
        "- Maintain exact proportions, colors and distinctive marks\n\n"
        "[ANIMATION RULES]:\n"
        "- Motion limited to the protagonists plus ambient background movement\n"
        "- Subtle natural movements: breathing, blinking, gentle expressions\n"
        "- No new characters"
    )


class VideoAnimator:
    def __init__(
        self,
        video_provider: VideoProvider,
        poll: PollPolicy,
        storage: Optional[ObjectStorage] = None,
        persist_videos: bool = True,
    ):
        self.video_provider = video_provider
        self.poll = poll
        self.storage = storage
        self.persist_videos = persist_videos and storage is not None

    async def animate(
        self,
        source_image_url: str,
        characters: list[Character],
        motion_prompt: str,
        duration_seconds: int,
    ) -> RemoteJob:
        """Submit the animation job. Returns the pending RemoteJob."""
        prompt = build_motion_prompt(motion_prompt, characters)
        metrics.inc_counter("provider.animate.calls")
        job_id = await self.video_provider.submit(source_image_url, prompt, duration_seconds)
        logger.info(f"Animation submitted: job_id={job_id} duration={duration_seconds}s")
        return RemoteJob(job_id=job_id, kind=JobKind.ANIMATE)

    async def poll_until_done(self, job_id: str, token: Optional[CancellationToken] = None) -> str:
        """Poll every `poll.interval_seconds`, at most `poll.max_attempts` times."""
        for attempt in range(self.poll.max_attempts):
            await asyncio.sleep(self.poll.interval_seconds)
            if token:
                token.raise_if_cancelled()

            try:
                job = await self.video_provider.poll(job_id)
            except httpx.HTTPError as e:
                logger.warning(f"Animation poll #{attempt + 1} for {job_id} errored: {e}")
                continue

            logger.info(f"Animation poll #{attempt + 1}: job_id={job_id} status={job.status.value}")

            if job.status == JobStatus.COMPLETED:
                if not job.result_url:
                    raise ProviderFailure(
                        "Video generation completed but no URL returned", provider="video", job_id=job_id
                    )
                return job.result_url

            if job.status == JobStatus.FAILED:
                raise ProviderFailure(
                    f"Video generation failed: {job.error or 'Unknown error'}",
                    provider="video",
                    job_id=job_id,
                )

        metrics.inc_counter("provider.animate.timeouts")
        timeout_s = self.poll.max_attempts * self.poll.interval_seconds
        raise TimeoutFailure(
            f"Video generation timed out after {self.poll.max_attempts} polls ({timeout_s:.0f}s)",
            job_id=job_id,
            attempts=self.poll.max_attempts,
        )

    async def render(
        self,
        source_image_url: str,
        characters: list[Character],
        motion_prompt: str,
        duration_seconds: int,
        token: Optional[CancellationToken] = None,
    ) -> str:
        """Submit, poll to completion and (optionally) copy the video to durable storage."""
        if token:
            token.raise_if_cancelled()
        job = await self.animate(source_image_url, characters, motion_prompt, duration_seconds)
        video_url = await self.poll_until_done(job.job_id, token)

        if self.persist_videos:
            video_url = await self.storage.persist_remote(video_url, "videos")
        return video_url
