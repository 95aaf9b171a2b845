"""
Scene image composition - Flux 2 Pro via Kie.ai.

CRITICAL: the referenced characters' styled images go in as reference images, in
project character order, with an explicit fidelity directive so the provider
reproduces them instead of reinventing them. With no references the request is
text-only.
"""

import logging
from typing import Optional

from .. import metrics
from ..errors import PreconditionFailure
from .cache import ArtifactCache
from .cancellation import CancellationToken
from .models import Character, Scene
from .providers import ComposeProvider, MAX_REFERENCE_IMAGES
from .storage import ObjectStorage

logger = logging.getLogger(__name__)


FIDELITY_DIRECTIVE = """[CHARACTER FIDELITY - CRITICAL]:
- Copy character appearance EXACTLY as shown in the reference images
- Same face structure, proportions, colors and distinctive marks
- The visual style applies to ENVIRONMENT and LIGHTING only, NOT to character traits
[FIXED CAST]:
- Reference images show the ONLY protagonists allowed
- Do not invent new main characters; background extras stay blurred silhouettes"""


def build_cast_manifest(characters: list[Character]) -> str:
    return " | ".join(
        f'PROTAGONIST_{i + 1}: "{c.name}" ({c.description})' for i, c in enumerate(characters)
    )


def build_scene_prompt(scene_prompt: str, style_prompt: str, characters: list[Character]) -> str:
    if not characters:
        return (
            f"[SCENE DESCRIPTION]: {scene_prompt}\n\n"
            f"[VISUAL STYLE]: {style_prompt}\n\n"
            "[COMPOSITION]: Cinematic framing, professional lighting, high quality illustration."
        )

    return (
        f"[CAST LOCK: EXACTLY {len(characters)} protagonist(s)] "
        f"PROTAGONISTS: {build_cast_manifest(characters)}\n\n"
        f"{FIDELITY_DIRECTIVE}\n\n"
        f"[SCENE DESCRIPTION]: {scene_prompt}\n\n"
        f"[ENVIRONMENT STYLE ONLY]: {style_prompt}\n\n"
        "[COMPOSITION]: Cinematic framing, professional lighting, protagonists as clear focal point."
    )


class SceneImageComposer:
    def __init__(self, storage: ObjectStorage, compose_provider: ComposeProvider):
        self.storage = storage
        self.compose_provider = compose_provider

    @property
    def max_references(self) -> int:
        return getattr(self.compose_provider, "max_reference_images", MAX_REFERENCE_IMAGES)

    def reference_urls(self, scene: Scene, characters: list[Character], cache: ArtifactCache) -> list[str]:
        """
        Styled URLs for the scene's references, validated before any remote call.
        Raises PreconditionFailure for too many references or a missing styled image.
        """
        if len(characters) > self.max_references:
            raise PreconditionFailure(
                "too-many-references",
                f"Scene {scene.id} references {len(characters)} characters; "
                f"the provider accepts at most {self.max_references}",
            )

        urls = []
        missing = []
        for c in characters:
            url = cache.styled_url(c.id) or c.styled_url
            if url:
                urls.append(url)
            else:
                missing.append(c.name)
        if missing:
            raise PreconditionFailure(
                "missing-styled-image",
                f"Scene {scene.id}: character(s) without a styled image: {', '.join(missing)}",
            )
        return urls

    async def compose(
        self,
        scene: Scene,
        characters: list[Character],
        style: dict,
        cache: ArtifactCache,
        aspect_ratio: str = "9:16",
        token: Optional[CancellationToken] = None,
    ) -> str:
        """Generate the scene image and return its durable URL."""
        refs = self.reference_urls(scene, characters, cache)
        prompt = build_scene_prompt(scene.prompt, style["scene_prompt"], characters)

        if token:
            token.raise_if_cancelled()

        logger.info(f"Composing scene {scene.id} with {len(refs)} reference image(s)")
        metrics.inc_counter("provider.compose.calls")
        temp_url = await self.compose_provider.compose(prompt, refs, aspect_ratio)

        url = await self.storage.persist_remote(temp_url, "scenes")
        cache.put_scene_image(scene.id, url)
        logger.info(f"Scene {scene.id} composed: {url}")
        return url
