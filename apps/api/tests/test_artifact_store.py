import re
from unittest.mock import AsyncMock, patch

import pytest

from services.artifact_store import (
    ArtifactStore,
    ArtifactStoreError,
    LocalArtifactBackend,
    SupabaseArtifactBackend,
    build_artifact_path,
    get_artifact_store,
)
from services.providers import ProviderError


def test_artifact_path_is_namespaced_by_execution_pose_and_step():
    path = build_artifact_path("exec-1", "pose front/left", "enhanced-upscale")
    assert re.fullmatch(r"exec-1/pose_front_left/enhanced-upscale_[0-9a-f]{8}\.png", path)
    assert build_artifact_path("exec-1", "pose-a", "tryon") != build_artifact_path("exec-1", "pose-a", "tryon")
    assert ".." not in build_artifact_path("../../etc", "..", "tryon")


@pytest.mark.asyncio
async def test_persist_bytes_writes_to_local_bucket(tmp_path):
    store = ArtifactStore(LocalArtifactBackend(str(tmp_path), "http://localhost:8000/artifacts/"))

    url = await store.persist(b"png-bytes", "exec-1/pose-a/watermark_abc.png")

    assert url == "http://localhost:8000/artifacts/exec-1/pose-a/watermark_abc.png"
    assert (tmp_path / "exec-1" / "pose-a" / "watermark_abc.png").read_bytes() == b"png-bytes"


@pytest.mark.asyncio
async def test_persist_url_downloads_provider_output(tmp_path):
    store = ArtifactStore(LocalArtifactBackend(str(tmp_path), "http://cdn.test"))
    with patch("services.artifact_store.download_bytes", AsyncMock(return_value=b"remote")) as download:
        url = await store.persist("https://fal.media/out.png", "exec-2/pose-b/tryon_abc.png")

    download.assert_awaited_once()
    assert url == "http://cdn.test/exec-2/pose-b/tryon_abc.png"
    assert (tmp_path / "exec-2" / "pose-b" / "tryon_abc.png").read_bytes() == b"remote"


@pytest.mark.asyncio
async def test_persist_download_failure_raises_store_error(tmp_path):
    store = ArtifactStore(LocalArtifactBackend(str(tmp_path), "http://cdn.test"))
    failing = AsyncMock(side_effect=ProviderError("expired", provider="download"))
    with patch("services.artifact_store.download_bytes", failing):
        with pytest.raises(ArtifactStoreError):
            await store.persist("https://fal.media/expired.png", "exec-3/pose/tryon_abc.png")


def test_local_backend_refuses_paths_outside_root(tmp_path):
    backend = LocalArtifactBackend(str(tmp_path / "bucket"), "http://cdn.test")
    with pytest.raises(ArtifactStoreError):
        backend.upload(b"x", "../escape.png", "image/png")


def test_supabase_backend_requires_credentials():
    with (
        patch("services.artifact_store.settings.SUPABASE_URL", ""),
        patch("services.artifact_store.settings.SUPABASE_SERVICE_KEY", ""),
    ):
        with pytest.raises(ArtifactStoreError):
            get_artifact_store("supabase")
    with pytest.raises(ArtifactStoreError):
        get_artifact_store("ftp")


@pytest.mark.asyncio
async def test_unwritable_local_root_raises_store_error(tmp_path):
    blocker = tmp_path / "not-a-dir"
    blocker.write_bytes(b"")
    store = ArtifactStore(LocalArtifactBackend(str(blocker), "http://cdn.test"))

    with pytest.raises(ArtifactStoreError, match="Local write failed"):
        await store.persist(b"png-bytes", "exec-4/pose-a/tryon_abc.png")


@pytest.mark.asyncio
async def test_supabase_client_construction_failure_raises_store_error():
    store = ArtifactStore(SupabaseArtifactBackend("https://project.supabase.co", "service-key", "generations"))

    with patch("supabase.create_client", side_effect=ValueError("Invalid API key")):
        with pytest.raises(ArtifactStoreError, match="Invalid API key"):
            await store.persist(b"png-bytes", "exec-5/pose-a/tryon_abc.png")


@pytest.mark.asyncio
async def test_unexpected_backend_exception_is_wrapped():
    class FlakyBackend:
        name = "flaky"

        def upload(self, data, path, content_type):
            raise ConnectionResetError("socket closed")

    store = ArtifactStore(FlakyBackend())

    with pytest.raises(ArtifactStoreError, match="flaky upload failed"):
        await store.persist(b"png-bytes", "exec-6/pose-a/tryon_abc.png")
