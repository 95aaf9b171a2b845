"""
Playlist assembly and the final generation record.

Videos are not concatenated server-side: the client plays the manifest's
videos in order. The manifest is stored as JSON next to the other artifacts.
"""

import json
import logging
from datetime import datetime
from typing import Optional

from ..styles import display_name
from .models import (
    CharacterSummary,
    GenerationRecord,
    PlaylistManifest,
    PlaylistVideo,
    SceneSummary,
    StoryProject,
)
from .records import GenerationStore
from .storage import ObjectStorage, generate_unique_key

logger = logging.getLogger(__name__)


def default_generation_name(style: Optional[str], when: Optional[datetime] = None) -> str:
    when = when or datetime.now()
    return f"{display_name(style or '')} - {when.strftime('%d/%m/%Y')}"


class PlaylistAssembler:
    def __init__(self, storage: ObjectStorage, generation_store: GenerationStore):
        self.storage = storage
        self.generation_store = generation_store

    async def assemble(self, scene_videos: list[tuple[str, int]]) -> PlaylistManifest:
        """Build and persist the sequential-playback manifest. `scene_videos` = [(url, duration)]."""
        videos = [PlaylistVideo(url=url, duration=duration) for url, duration in scene_videos]
        manifest = PlaylistManifest(
            videos=videos,
            total_duration=sum(v.duration for v in videos),
        )

        body = json.dumps(manifest.model_dump(mode="json", exclude={"manifest_url"})).encode("utf-8")
        key = generate_unique_key("playlist.json", "playlists")
        manifest.manifest_url = await self.storage.put(key, body, "application/json")

        logger.info(f"Playlist assembled: {len(videos)} video(s), {manifest.total_duration}s")
        return manifest

    @staticmethod
    def build_record(project: StoryProject, video_urls: list[str]) -> GenerationRecord:
        scenes = [
            SceneSummary(prompt=s.prompt, duration=s.duration_seconds, image_url=s.generated_image_url)
            for s in project.scenes
        ]
        return GenerationRecord(
            user_id=project.user_id,
            style=project.style or "unknown",
            aspect_ratio=project.aspect_ratio,
            characters=[
                CharacterSummary(name=c.name, description=c.description)
                for c in project.active_characters()
            ],
            scenes=scenes,
            video_urls=list(video_urls),
            name=default_generation_name(project.style),
            thumbnail_url=scenes[0].image_url if scenes else None,
        )

    async def persist_generation_record(self, record: GenerationRecord) -> Optional[GenerationRecord]:
        """
        Write the record once. A failure here is logged and swallowed: the user
        already has playable videos.
        """
        try:
            record.id = await self.generation_store.save(record)
        except Exception as e:
            logger.error(f"Failed to save generation for user {record.user_id}: {e}", exc_info=True)
            return None

        logger.info(f"Generation saved: {record.id}")
        return record
