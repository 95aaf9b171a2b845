"""
Generation record persistence (Supabase `generations` table).

A record is written once, at the end of a successful run. Afterwards only its
display name may change.

All mutations go through the Supabase service role (RLS only allows users to
INSERT their own rows).
"""

import asyncio
import logging
from typing import Optional, Protocol

from supabase import create_client, Client

from ..config import SupabaseSettings
from .models import GenerationRecord

logger = logging.getLogger(__name__)


class GenerationStore(Protocol):
    async def save(self, record: GenerationRecord) -> str: ...

    async def get(self, generation_id: str, user_id: str) -> Optional[GenerationRecord]: ...

    async def list_for_user(self, user_id: str) -> list[GenerationRecord]: ...

    async def rename(self, generation_id: str, user_id: str, name: str) -> GenerationRecord: ...


def _row_to_record(row: dict) -> GenerationRecord:
    return GenerationRecord(
        id=row["id"],
        user_id=row["user_id"],
        style=row.get("style") or "unknown",
        aspect_ratio=row.get("aspect_ratio") or "9:16",
        characters=row.get("characters") or [],
        scenes=row.get("scenes") or [],
        video_urls=row.get("video_urls") or [],
        name=row.get("name"),
        thumbnail_url=row.get("thumbnail_url"),
        status=row.get("status") or "completed",
        created_at=row.get("created_at") or "",
    )


class SupabaseGenerationStore:
    def __init__(self, settings: SupabaseSettings, client: Optional[Client] = None):
        self.settings = settings
        self._client = client

    def _sb(self) -> Client:
        """Lazy-init Supabase client using service role key."""
        if self._client is None:
            if not self.settings.url or not self.settings.service_role_key:
                raise RuntimeError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set")
            self._client = create_client(self.settings.url, self.settings.service_role_key)
        return self._client

    def _save_sync(self, record: GenerationRecord) -> str:
        row = record.model_dump(mode="json", exclude={"id", "created_at"})
        result = self._sb().table("generations").insert(row).execute()
        return result.data[0]["id"]

    def _get_sync(self, generation_id: str, user_id: str) -> Optional[GenerationRecord]:
        result = (
            self._sb().table("generations")
            .select("*")
            .eq("id", generation_id)
            .eq("user_id", user_id)
            .execute()
        )
        return _row_to_record(result.data[0]) if result.data else None

    def _list_sync(self, user_id: str) -> list[GenerationRecord]:
        result = (
            self._sb().table("generations")
            .select("*")
            .eq("user_id", user_id)
            .order("created_at", desc=True)
            .execute()
        )
        return [_row_to_record(row) for row in result.data]

    def _rename_sync(self, generation_id: str, user_id: str, name: str) -> GenerationRecord:
        result = (
            self._sb().table("generations")
            .update({"name": name})
            .eq("id", generation_id)
            .eq("user_id", user_id)
            .execute()
        )
        if not result.data:
            raise ValueError("Generation not found.")
        logger.info(f"Generation {generation_id} renamed")
        return _row_to_record(result.data[0])

    async def save(self, record: GenerationRecord) -> str:
        return await asyncio.to_thread(self._save_sync, record)

    async def get(self, generation_id: str, user_id: str) -> Optional[GenerationRecord]:
        return await asyncio.to_thread(self._get_sync, generation_id, user_id)

    async def list_for_user(self, user_id: str) -> list[GenerationRecord]:
        return await asyncio.to_thread(self._list_sync, user_id)

    async def rename(self, generation_id: str, user_id: str, name: str) -> GenerationRecord:
        return await asyncio.to_thread(self._rename_sync, generation_id, user_id, name)
