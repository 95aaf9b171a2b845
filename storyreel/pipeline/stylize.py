"""
Character stylization: upload the source photo (once), then request the styled
rendition (once) and copy it to durable storage.

Both steps consult the run's ArtifactCache before the character record, and both
are idempotent: a second call on an unchanged character does no remote work.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Optional

from .. import metrics
from ..errors import PreconditionFailure
from .cache import ArtifactCache
from .cancellation import CancellationToken
from .models import Character, StyleStatus
from .providers import StyleProvider
from .storage import ObjectStorage, filename_from_url, generate_unique_key

logger = logging.getLogger(__name__)

CharacterListener = Callable[[Character], None]


@dataclass
class CharacterOutcome:
    character_id: str
    uploaded_url: Optional[str] = None
    styled_url: Optional[str] = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class CharacterStylizer:
    def __init__(self, storage: ObjectStorage, style_provider: StyleProvider):
        self.storage = storage
        self.style_provider = style_provider

    async def ensure_uploaded(
        self,
        character: Character,
        cache: ArtifactCache,
        token: Optional[CancellationToken] = None,
        on_update: Optional[CharacterListener] = None,
    ) -> str:
        async with cache.lock(ArtifactCache.UPLOADED, character.id):
            url = cache.uploaded_url(character.id) or character.uploaded_url
            if url:
                cache.put_uploaded(character.id, url)
                if character.uploaded_url != url:
                    character.mark_uploaded(url)
                return url

            if not character.source_image_ref:
                raise PreconditionFailure(
                    "missing-source-image", f"Character '{character.name}' has no photo to upload"
                )
            if token:
                token.raise_if_cancelled()

            character.style_status = StyleStatus.UPLOADING
            try:
                data = await self.storage.read_source(character.source_image_ref)
                key = generate_unique_key(filename_from_url(character.source_image_ref), "uploads")
                url = await self.storage.put(key, data, character.source_content_type)
            except Exception:
                character.mark_style_error()
                if on_update:
                    on_update(character)
                raise
            metrics.inc_counter("storage.uploads")

            url = cache.put_uploaded(character.id, url)
            character.mark_uploaded(url)
            character.style_status = StyleStatus.IDLE
            logger.info(f"Uploaded character {character.id} ({character.name}): {url}")
            if on_update:
                on_update(character)
            return url

    async def ensure_styled(
        self,
        character: Character,
        style: dict,
        cache: ArtifactCache,
        token: Optional[CancellationToken] = None,
        on_update: Optional[CharacterListener] = None,
    ) -> str:
        async with cache.lock(ArtifactCache.STYLED, character.id):
            url = cache.styled_url(character.id) or character.styled_url
            if url:
                cache.put_styled(character.id, url)
                if character.styled_url != url:
                    character.mark_styled(url)
                return url

            uploaded = cache.uploaded_url(character.id) or character.uploaded_url
            if not uploaded:
                raise PreconditionFailure(
                    "missing-upload", f"Character '{character.name}' must be uploaded before styling"
                )
            if character.uploaded_url != uploaded:
                character.mark_uploaded(uploaded)
            if token:
                token.raise_if_cancelled()

            character.style_status = StyleStatus.STYLING
            metrics.inc_counter("provider.style.calls")
            try:
                temp_url = await self.style_provider.stylize(uploaded, style["character_prompt"])
                url = await self.storage.persist_remote(temp_url, "styled")
            except Exception as e:
                logger.error(f"Styling failed for character {character.id} ({character.name}): {e}")
                character.mark_style_error()
                if on_update:
                    on_update(character)
                raise

            url = cache.put_styled(character.id, url)
            character.mark_styled(url)
            logger.info(f"Styled character {character.id} ({character.name}) as {style['id']}: {url}")
            if on_update:
                on_update(character)
            return url

    async def style_all(
        self,
        characters: list[Character],
        style: dict,
        cache: ArtifactCache,
        token: Optional[CancellationToken] = None,
        on_update: Optional[CharacterListener] = None,
        on_done: Optional[Callable[[CharacterOutcome], None]] = None,
    ) -> list[CharacterOutcome]:
        """
        Upload + style every character concurrently. One character's failure
        does not cancel the others; each outcome carries its own error.
        """

        async def _one(character: Character) -> CharacterOutcome:
            outcome = CharacterOutcome(character_id=character.id)
            try:
                outcome.uploaded_url = await self.ensure_uploaded(character, cache, token, on_update)
                outcome.styled_url = await self.ensure_styled(character, style, cache, token, on_update)
            except Exception as e:
                outcome.error = e
            if on_done:
                on_done(outcome)
            return outcome

        return list(await asyncio.gather(*(_one(c) for c in characters)))
