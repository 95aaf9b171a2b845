"""
Durable object storage for pipeline artifacts (Cloudflare R2, S3 API via boto3).

Provider result URLs expire, so every artifact the pipeline depends on is copied
here under a fresh unique key:
  uploads/{ts}-{rand}-{name}    - character source photos
  styled/{ts}-{rand}-{name}     - stylized characters
  scenes/{ts}-{rand}-{name}     - composed scene images
  videos/{ts}-{rand}-{name}     - rendered scene videos
  playlists/{ts}-{rand}-…json   - playback manifests
"""

import re
import time
import asyncio
import logging
import secrets
from pathlib import Path
from typing import Optional, Protocol
from urllib.parse import urlparse

import httpx

from ..config import R2Settings
from ..errors import PersistenceFailure

logger = logging.getLogger(__name__)


def generate_unique_key(filename: str, folder: Optional[str] = None) -> str:
    """`{folder}/{timestamp}-{random}-{sanitized filename}`."""
    sanitized = re.sub(r"[^a-zA-Z0-9.-]", "_", filename) or "file"
    key = f"{int(time.time() * 1000)}-{secrets.token_hex(3)}-{sanitized}"
    return f"{folder}/{key}" if folder else key


def filename_from_url(url: str, default: str = "image.png") -> str:
    name = Path(urlparse(url).path).name
    return name or default


async def download_bytes(url: str, timeout: float = 60) -> tuple[bytes, str]:
    """Download a public URL. Returns (body, content type)."""
    async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as client:
        resp = await client.get(url)
        resp.raise_for_status()
        return resp.content, resp.headers.get("content-type", "application/octet-stream")


class ObjectStorage(Protocol):
    async def put(self, key: str, data: bytes, content_type: str) -> str: ...

    async def get(self, key: str) -> bytes: ...

    async def read_source(self, ref: str) -> bytes: ...

    async def persist_remote(self, url: str, folder: str) -> str: ...


class R2Storage:
    """R2 bucket behind the S3 API. Blocking boto3 calls run in a worker thread."""

    def __init__(self, settings: R2Settings, client=None):
        self.settings = settings
        self._s3 = client

    def _client(self):
        if self._s3 is None:
            import boto3
            from botocore.config import Config as BotoConfig

            self._s3 = boto3.client(
                "s3",
                endpoint_url=f"https://{self.settings.account_id}.r2.cloudflarestorage.com",
                aws_access_key_id=self.settings.access_key_id,
                aws_secret_access_key=self.settings.secret_access_key,
                config=BotoConfig(signature_version="s3v4"),
                region_name="auto",
            )
        return self._s3

    def public_url(self, key: str) -> str:
        return f"{self.settings.public_url.rstrip('/')}/{key}"

    async def put(self, key: str, data: bytes, content_type: str = "image/png") -> str:
        """Upload bytes and return the public URL."""
        try:
            await asyncio.to_thread(
                self._client().put_object,
                Bucket=self.settings.bucket_name,
                Key=key,
                Body=data,
                ContentType=content_type,
            )
        except Exception as e:
            logger.error(f"R2 upload failed for key={key}: {e}")
            raise PersistenceFailure(f"R2 upload failed for key={key}: {e}", key=key) from e

        url = self.public_url(key)
        logger.info(f"Uploaded to R2: {url}")
        return url

    async def get(self, key: str) -> bytes:
        try:
            obj = await asyncio.to_thread(
                self._client().get_object, Bucket=self.settings.bucket_name, Key=key
            )
            return await asyncio.to_thread(obj["Body"].read)
        except Exception as e:
            logger.error(f"R2 download failed for key={key}: {e}")
            raise PersistenceFailure(f"R2 download failed for key={key}: {e}", key=key) from e

    async def read_source(self, ref: str) -> bytes:
        """Read a character source image from an http(s) URL or a local path."""
        if ref.startswith(("http://", "https://")):
            data, _ = await download_bytes(ref)
            return data
        return await asyncio.to_thread(Path(ref).read_bytes)

    async def persist_remote(self, url: str, folder: str) -> str:
        """Copy a (possibly expiring) provider URL into R2 under a unique key."""
        try:
            data, content_type = await download_bytes(url)
        except httpx.HTTPError as e:
            raise PersistenceFailure(f"Failed to download {url}: {e}") from e
        key = generate_unique_key(filename_from_url(url), folder)
        permanent = await self.put(key, data, content_type)
        logger.info(f"Persisted {url[:60]}... -> {permanent}")
        return permanent
