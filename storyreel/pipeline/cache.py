"""
Run-scoped artifact cache.

Holds every URL produced during one run, keyed by character / scene id, so later
steps of the same run see them even before the caller's own state catches up.
Write-once per key: a second write for the same key is a no-op and the first URL
wins. Per-key asyncio locks serialize re-entrant producers of the same artifact.
"""

import asyncio
from typing import Optional


class ArtifactCache:
    UPLOADED = "uploaded"
    STYLED = "styled"
    SCENE_IMAGE = "scene_image"

    def __init__(self):
        self._entries: dict[tuple[str, str], str] = {}
        self._locks: dict[tuple[str, str], asyncio.Lock] = {}

    def get(self, kind: str, key: str) -> Optional[str]:
        return self._entries.get((kind, key))

    def put(self, kind: str, key: str, url: str) -> str:
        """Store `url` unless the key is already set. Returns the stored URL."""
        return self._entries.setdefault((kind, key), url)

    def lock(self, kind: str, key: str) -> asyncio.Lock:
        lock = self._locks.get((kind, key))
        if lock is None:
            lock = self._locks[(kind, key)] = asyncio.Lock()
        return lock

    # ── Typed accessors ──────────────────────────────────────────────────

    def uploaded_url(self, character_id: str) -> Optional[str]:
        return self.get(self.UPLOADED, character_id)

    def styled_url(self, character_id: str) -> Optional[str]:
        return self.get(self.STYLED, character_id)

    def scene_image_url(self, scene_id: str) -> Optional[str]:
        return self.get(self.SCENE_IMAGE, scene_id)

    def put_uploaded(self, character_id: str, url: str) -> str:
        return self.put(self.UPLOADED, character_id, url)

    def put_styled(self, character_id: str, url: str) -> str:
        return self.put(self.STYLED, character_id, url)

    def put_scene_image(self, scene_id: str, url: str) -> str:
        return self.put(self.SCENE_IMAGE, scene_id, url)

    def __len__(self) -> int:
        return len(self._entries)
