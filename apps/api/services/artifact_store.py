"""
Durable storage for generated images.

Provider URLs expire; every step output is copied into our own bucket under
``<execution_id>/<pose_id>/<step>_<suffix>.png`` and served from there.
"""

from __future__ import annotations

import asyncio
import logging
import re
import uuid
from pathlib import Path
from typing import Optional, Union

from config import settings
from services.providers.http import download_bytes
from services.providers.types import ProviderError

logger = logging.getLogger(__name__)

_UNSAFE_SEGMENT = re.compile(r"[^A-Za-z0-9_.-]+")


class ArtifactStoreError(RuntimeError):
    """Raised when an artifact could not be downloaded or uploaded."""


def _segment(value: str) -> str:
    cleaned = _UNSAFE_SEGMENT.sub("_", str(value or "")).strip("._")
    return cleaned or "unknown"


def build_artifact_path(execution_id: str, pose_id: str, step: str) -> str:
    return f"{_segment(execution_id)}/{_segment(pose_id)}/{_segment(step)}_{uuid.uuid4().hex[:8]}.png"


class LocalArtifactBackend:
    """Filesystem bucket for development; files are served by the API's static mount."""

    name = "local"

    def __init__(self, root_dir: str, public_base_url: str) -> None:
        self.root = Path(root_dir)
        self.public_base_url = public_base_url.rstrip("/")

    def upload(self, data: bytes, path: str, content_type: str) -> str:
        target = (self.root / path).resolve()
        if self.root.resolve() not in target.parents:
            raise ArtifactStoreError(f"Refusing to write outside artifact root: {path}")
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)
        except OSError as exc:
            raise ArtifactStoreError(f"Local write failed for {path}: {exc}") from exc
        return f"{self.public_base_url}/{path}"


class SupabaseArtifactBackend:
    name = "supabase"

    def __init__(self, url: str, service_key: str, bucket: str) -> None:
        if not url or not service_key:
            raise ArtifactStoreError("SUPABASE_URL and SUPABASE_SERVICE_KEY are required for supabase storage")
        self.url = url
        self.service_key = service_key
        self.bucket = bucket
        self._client = None

    def _storage(self):
        if self._client is None:
            from supabase import create_client

            self._client = create_client(self.url, self.service_key)
        return self._client.storage.from_(self.bucket)

    def upload(self, data: bytes, path: str, content_type: str) -> str:
        try:
            storage = self._storage()
            storage.upload(path=path, file=data, file_options={"content-type": content_type, "upsert": "true"})
            return storage.get_public_url(path)
        except Exception as exc:
            raise ArtifactStoreError(f"Supabase upload failed for {self.bucket}/{path}: {exc}") from exc


class ArtifactStore:
    def __init__(self, backend, *, download_timeout: float = 120.0) -> None:
        self.backend = backend
        self.download_timeout = download_timeout

    async def persist(
        self,
        source: Union[str, bytes],
        logical_path: str,
        content_type: str = "image/png",
    ) -> str:
        """Copy a provider URL (or raw bytes) into durable storage and return its public URL."""
        if isinstance(source, (bytes, bytearray)):
            data = bytes(source)
        else:
            try:
                data = await download_bytes(source, timeout=self.download_timeout)
            except ProviderError as exc:
                raise ArtifactStoreError(str(exc)) from exc
        if not data:
            raise ArtifactStoreError(f"Empty artifact for {logical_path}")

        try:
            url = await asyncio.to_thread(self.backend.upload, data, logical_path, content_type)
        except ArtifactStoreError:
            raise
        except Exception as exc:
            raise ArtifactStoreError(f"{self.backend.name} upload failed for {logical_path}: {exc}") from exc
        logger.debug("Persisted artifact %s via %s", logical_path, self.backend.name)
        return url


def get_artifact_store(backend_name: Optional[str] = None) -> ArtifactStore:
    name = (backend_name or settings.ARTIFACT_STORAGE_BACKEND or "local").strip().lower()
    if name == "supabase":
        backend = SupabaseArtifactBackend(settings.SUPABASE_URL, settings.SUPABASE_SERVICE_KEY, settings.ARTIFACT_BUCKET)
    elif name == "local":
        backend = LocalArtifactBackend(settings.ARTIFACT_LOCAL_DIR, settings.ARTIFACT_PUBLIC_BASE_URL)
    else:
        raise ArtifactStoreError(f"Unknown artifact storage backend: {name}")
    return ArtifactStore(backend, download_timeout=settings.PROVIDER_HTTP_TIMEOUT_SECONDS)
