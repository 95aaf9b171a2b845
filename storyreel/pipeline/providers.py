"""
Remote generation providers, one per capability:

  StyleProvider    - image style transfer (Nano Banana Edit), single round trip
  ComposeProvider  - reference-conditioned scene image (Flux 2 Pro), single round trip
  VideoProvider    - image-to-video (Kling 2.5 Turbo Pro), submit + poll

Style and compose wait on the Kie.ai task internally and hand back the
provider's (expiring) result URL; the video provider exposes submit/poll so the
animator owns the long polling loop.
"""

import logging
from typing import Protocol

from ..errors import ProviderFailure
from ..kie import KieClient
from .models import JobKind, JobStatus, RemoteJob

logger = logging.getLogger(__name__)

NANO_BANANA_EDIT = "google/nano-banana-edit"
FLUX2_PRO_TEXT_TO_IMAGE = "flux-2/pro-text-to-image"
FLUX2_PRO_IMAGE_TO_IMAGE = "flux-2/pro-image-to-image"
KLING_V2_5_TURBO_PRO = "kling/v2-5-turbo-image-to-video-pro"

MAX_REFERENCE_IMAGES = 8  # Flux 2 Pro image-to-image accepts 1–8 input_urls

DEFAULT_NEGATIVE_PROMPT = "blur, distort, low quality, morphing faces, deformed, glitch"


class StyleProvider(Protocol):
    async def stylize(self, image_url: str, style_prompt: str) -> str: ...


class ComposeProvider(Protocol):
    max_reference_images: int

    async def compose(self, prompt: str, reference_urls: list[str], aspect_ratio: str) -> str: ...


class VideoProvider(Protocol):
    async def submit(self, image_url: str, prompt: str, duration_seconds: int) -> str: ...

    async def poll(self, job_id: str) -> RemoteJob: ...


def _first_result(result: dict, what: str) -> str:
    urls = result.get("result_urls") or []
    if not urls:
        raise ProviderFailure(f"{what} returned no result URL", provider="kie", job_id=result.get("task_id"))
    return urls[0]


class KieStyleProvider:
    def __init__(self, kie: KieClient, poll_interval: float = 3.0, max_wait: float = 300.0):
        self.kie = kie
        self.poll_interval = poll_interval
        self.max_wait = max_wait

    async def stylize(self, image_url: str, style_prompt: str) -> str:
        task_id = await self.kie.create_task(NANO_BANANA_EDIT, {
            "prompt": style_prompt,
            "image_urls": [image_url],
            "image_size": "1:1",
            "output_format": "png",
        })
        logger.info(f"Style task submitted: task_id={task_id}")
        result = await self.kie.wait_for_task(task_id, self.poll_interval, self.max_wait)
        return _first_result(result, "Style generation")


class KieComposeProvider:
    max_reference_images = MAX_REFERENCE_IMAGES

    def __init__(self, kie: KieClient, poll_interval: float = 3.0, max_wait: float = 300.0):
        self.kie = kie
        self.poll_interval = poll_interval
        self.max_wait = max_wait

    async def compose(self, prompt: str, reference_urls: list[str], aspect_ratio: str = "9:16") -> str:
        input: dict = {
            "prompt": prompt,
            "aspect_ratio": aspect_ratio,
            "resolution": "1K",
        }
        if reference_urls:
            model = FLUX2_PRO_IMAGE_TO_IMAGE
            input["input_urls"] = list(reference_urls)
        else:
            model = FLUX2_PRO_TEXT_TO_IMAGE

        task_id = await self.kie.create_task(model, input)
        logger.info(f"Compose task submitted: task_id={task_id} model={model} refs={len(reference_urls)}")
        result = await self.kie.wait_for_task(task_id, self.poll_interval, self.max_wait)
        return _first_result(result, "Scene generation")


class KieVideoProvider:
    def __init__(self, kie: KieClient, cfg_scale: float = 0.5):
        self.kie = kie
        self.cfg_scale = cfg_scale

    async def submit(self, image_url: str, prompt: str, duration_seconds: int) -> str:
        return await self.kie.create_task(KLING_V2_5_TURBO_PRO, {
            "prompt": prompt,
            "image_url": image_url,
            "duration": str(duration_seconds),
            "negative_prompt": DEFAULT_NEGATIVE_PROMPT,
            "cfg_scale": self.cfg_scale,
        })

    async def poll(self, job_id: str) -> RemoteJob:
        result = await self.kie.get_task_status(job_id)
        urls = result["result_urls"]
        return RemoteJob(
            job_id=job_id,
            kind=JobKind.ANIMATE,
            status=JobStatus(result["status"]),
            result_url=urls[0] if urls else None,
            error=result["error"],
        )
