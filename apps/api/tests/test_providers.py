import io
import json
from unittest.mock import AsyncMock, patch

import httpx
import pytest
from PIL import Image, ImageChops

from services.providers import (
    BaseBackend,
    FalClient,
    ProviderError,
    ProviderOutput,
    ProviderTimeoutError,
    ReplicateClient,
    StepAdapter,
    StepInput,
    apply_watermark,
    build_step_adapters,
    call_with_retry,
    extract_output_url,
)
from services.providers.compose import FalTryOnBackend, ReplicateTryOnBackend, tryon_prompt
from services.providers.upscale import ReplicateUpscaleBackend
from services.providers.watermark import LocalWatermarkBackend


def _step_input(**overrides) -> StepInput:
    values = {
        "model_image_url": "https://cdn.test/model.png",
        "clothing_image_url": "https://cdn.test/dress.png",
        "quality": "standard",
        "user_id": "merchant-1",
    }
    values.update(overrides)
    return StepInput(**values)


def _png_bytes(size=(400, 300), color=(0, 0, 0)) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", size, color).save(buffer, format="PNG")
    return buffer.getvalue()


class _Backend(BaseBackend):
    def __init__(self, name, *, configured=True, error=None, url=None):
        self.name = name
        self._configured = configured
        self.error = error
        self.url = url
        self.calls = 0

    @property
    def configured(self) -> bool:
        return self._configured

    async def run(self, step_input):
        self.calls += 1
        if self.error:
            raise self.error
        return ProviderOutput(provider=self.name, artifact_url=self.url)


def test_extract_output_url_handles_common_payload_shapes():
    assert extract_output_url("https://x.test/a.png") == "https://x.test/a.png"
    assert extract_output_url(["https://x.test/b.png", "https://x.test/c.png"]) == "https://x.test/b.png"
    assert extract_output_url({"images": [{"url": "https://x.test/d.png"}]}) == "https://x.test/d.png"
    assert extract_output_url({"image": {"url": "https://x.test/e.png"}}) == "https://x.test/e.png"
    assert extract_output_url({"output": None}) is None
    assert extract_output_url("not a url") is None


@pytest.mark.asyncio
async def test_call_with_retry_retries_transient_errors_until_success():
    attempts = []

    async def flaky():
        attempts.append(1)
        if len(attempts) < 3:
            raise ProviderError("busy", provider="fake", transient=True)
        return "ok"

    assert await call_with_retry(flaky, attempts=4, delay_seconds=0, label="fake") == "ok"
    assert len(attempts) == 3


@pytest.mark.asyncio
async def test_call_with_retry_does_not_retry_permanent_errors():
    attempts = []

    async def broken():
        attempts.append(1)
        raise ProviderError("bad input", provider="fake", transient=False)

    with pytest.raises(ProviderError):
        await call_with_retry(broken, attempts=4, delay_seconds=0, label="fake")
    assert len(attempts) == 1


@pytest.mark.asyncio
async def test_call_with_retry_gives_up_after_bounded_attempts():
    attempts = []

    async def always_busy():
        attempts.append(1)
        raise ProviderError("busy", provider="fake", transient=True)

    with pytest.raises(ProviderError):
        await call_with_retry(always_busy, attempts=2, delay_seconds=0, label="fake")
    assert len(attempts) == 2


@pytest.mark.asyncio
async def test_step_adapter_falls_back_to_secondary_backend():
    primary = _Backend("primary", error=ProviderError("422", provider="primary"))
    secondary = _Backend("secondary", url="https://x.test/out.png")
    adapter = StepAdapter("tryon", [primary, secondary], max_attempts=3, retry_delay_seconds=0)

    output = await adapter.execute(_step_input())

    assert output.provider == "secondary"
    assert output.artifact_url == "https://x.test/out.png"
    assert primary.calls == 1


@pytest.mark.asyncio
async def test_step_adapter_skips_unconfigured_backends():
    missing = _Backend("missing", configured=False, url="https://x.test/never.png")
    present = _Backend("present", url="https://x.test/out.png")

    output = await StepAdapter("tryon", [missing, present]).execute(_step_input())

    assert output.provider == "present"
    assert missing.calls == 0


@pytest.mark.asyncio
async def test_step_adapter_reports_single_terminal_error():
    first = _Backend("first", error=ProviderError("down", provider="first", transient=True))
    second = _Backend("second", error=ProviderError("rejected", provider="second"))
    adapter = StepAdapter("face-refine", [first, second], max_attempts=2, retry_delay_seconds=0)

    with pytest.raises(ProviderError) as exc_info:
        await adapter.execute(_step_input(image_url="https://x.test/in.png"))

    assert "first" in str(exc_info.value) and "second" in str(exc_info.value)
    assert exc_info.value.transient is False
    assert first.calls == 2
    assert second.calls == 1

    with pytest.raises(ProviderError, match="No backend configured"):
        await StepAdapter("tryon", [_Backend("off", configured=False)]).execute(_step_input())


@pytest.mark.asyncio
async def test_replicate_client_polls_until_prediction_succeeds():
    calls = []
    polls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append((request.method, request.url.path))
        assert request.headers["Authorization"] == "Bearer r8-token"
        if request.method == "POST" and request.url.path == "/v1/models/philz1337x/crystal-upscaler/predictions":
            assert json.loads(request.content)["input"]["image"] == "https://x.test/in.png"
            return httpx.Response(201, json={"id": "p1", "status": "starting"})
        if request.method == "GET" and request.url.path == "/v1/predictions/p1":
            polls["count"] += 1
            if polls["count"] < 2:
                return httpx.Response(200, json={"id": "p1", "status": "processing"})
            return httpx.Response(
                200,
                json={"id": "p1", "status": "succeeded", "output": ["https://replicate.delivery/out.png"]},
            )
        return httpx.Response(404)

    client = ReplicateClient("r8-token", poll_interval=0, timeout_seconds=30, transport=httpx.MockTransport(handler))
    url = await client.run("philz1337x/crystal-upscaler", {"image": "https://x.test/in.png", "scale_factor": 4})

    assert url == "https://replicate.delivery/out.png"
    assert polls["count"] == 2


@pytest.mark.asyncio
async def test_replicate_client_cancels_upstream_on_timeout():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append((request.method, request.url.path))
        if request.url.path.endswith("/cancel"):
            return httpx.Response(200, json={"id": "p2", "status": "canceled"})
        if request.method == "POST":
            return httpx.Response(201, json={"id": "p2", "status": "starting"})
        return httpx.Response(200, json={"id": "p2", "status": "processing"})

    client = ReplicateClient("r8-token", poll_interval=0, timeout_seconds=0, transport=httpx.MockTransport(handler))

    with pytest.raises(ProviderTimeoutError) as exc_info:
        await client.run("codeplugtech/face-swap", {"input_image": "https://x.test/in.png"})

    assert exc_info.value.transient is False
    assert ("POST", "/v1/predictions/p2/cancel") in calls


@pytest.mark.asyncio
async def test_replicate_failed_prediction_is_permanent():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "POST":
            return httpx.Response(201, json={"id": "p3", "status": "failed", "error": "NSFW content detected"})
        return httpx.Response(404)

    client = ReplicateClient("r8-token", poll_interval=0, transport=httpx.MockTransport(handler))

    with pytest.raises(ProviderError, match="NSFW") as exc_info:
        await client.run("google/nano-banana-pro", {"prompt": "x"})
    assert exc_info.value.transient is False


@pytest.mark.asyncio
async def test_transient_poll_failure_keeps_polling_the_same_prediction():
    calls = []
    polls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append((request.method, request.url.path))
        if request.method == "POST" and request.url.path.endswith("/predictions"):
            return httpx.Response(201, json={"id": "p5", "status": "starting"})
        if request.method == "GET":
            polls["count"] += 1
            if polls["count"] == 1:
                return httpx.Response(503, text="upstream hiccup")
            return httpx.Response(200, json={"id": "p5", "status": "succeeded", "output": "https://replicate.delivery/up.png"})
        return httpx.Response(200, json={"id": "p5", "status": "canceled"})

    client = ReplicateClient("r8-token", poll_interval=0, timeout_seconds=30, transport=httpx.MockTransport(handler))
    adapter = StepAdapter("enhanced-upscale", [ReplicateUpscaleBackend(client)], max_attempts=3)

    output = await adapter.execute(_step_input(image_url="https://x.test/in.png"))

    creates = [call for call in calls if call[0] == "POST" and call[1].endswith("/predictions")]
    cancels = [call for call in calls if call[1].endswith("/cancel")]
    assert output.artifact_url == "https://replicate.delivery/up.png"
    assert len(creates) == 1
    assert cancels == []
    assert polls["count"] == 2


@pytest.mark.asyncio
async def test_permanent_poll_failure_cancels_prediction_and_is_not_retried():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append((request.method, request.url.path))
        if request.url.path.endswith("/cancel"):
            return httpx.Response(200, json={"id": "p6", "status": "canceled"})
        if request.method == "POST":
            return httpx.Response(201, json={"id": "p6", "status": "starting"})
        return httpx.Response(401, json={"detail": "token revoked"})

    client = ReplicateClient("r8-token", poll_interval=0, timeout_seconds=30, transport=httpx.MockTransport(handler))
    adapter = StepAdapter("enhanced-upscale", [ReplicateUpscaleBackend(client)], max_attempts=3)

    with pytest.raises(ProviderError) as exc_info:
        await adapter.execute(_step_input(image_url="https://x.test/in.png"))

    assert exc_info.value.transient is False
    assert calls.count(("POST", "/v1/models/philz1337x/crystal-upscaler/predictions")) == 1
    assert ("POST", "/v1/predictions/p6/cancel") in calls


@pytest.mark.asyncio
@pytest.mark.parametrize("status_code,transient", [(429, True), (503, True), (408, True), (422, False), (401, False)])
async def test_fal_client_classifies_http_errors(status_code, transient):
    transport = httpx.MockTransport(lambda request: httpx.Response(status_code, json={"detail": "nope"}))
    client = FalClient("fal-key", transport=transport)

    with pytest.raises(ProviderError) as exc_info:
        await client.run("fal-ai/fashn/tryon/v1.6", {})
    assert exc_info.value.transient is transient
    assert exc_info.value.provider == "fal"


@pytest.mark.asyncio
async def test_network_errors_are_transient():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    client = FalClient("fal-key", transport=httpx.MockTransport(handler))
    with pytest.raises(ProviderError) as exc_info:
        await client.run("fal-ai/face-swap", {})
    assert exc_info.value.transient is True


@pytest.mark.asyncio
async def test_fal_tryon_backend_maps_quality_to_mode():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["auth"] = request.headers["Authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"images": [{"url": "https://fal.media/tryon.png"}]})

    backend = FalTryOnBackend(FalClient("fal-key", transport=httpx.MockTransport(handler)), model="fal-ai/fashn/tryon/v1.6")
    output = await backend.run(_step_input(quality="premium"))

    assert output.artifact_url == "https://fal.media/tryon.png"
    assert seen["path"] == "/fal-ai/fashn/tryon/v1.6"
    assert seen["auth"] == "Key fal-key"
    assert seen["body"]["mode"] == "quality"
    assert seen["body"]["model_image"] == "https://cdn.test/model.png"
    assert seen["body"]["garment_image"] == "https://cdn.test/dress.png"


@pytest.mark.asyncio
async def test_replicate_tryon_backend_sends_gendered_prompt_with_both_references():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["input"] = json.loads(request.content)["input"]
        return httpx.Response(201, json={"id": "p4", "status": "succeeded", "output": "https://replicate.delivery/t.png"})

    backend = ReplicateTryOnBackend(ReplicateClient("r8-token", transport=httpx.MockTransport(handler)))
    output = await backend.run(_step_input(gender="male"))

    assert output.artifact_url == "https://replicate.delivery/t.png"
    assert seen["input"]["image_input"] == ["https://cdn.test/model.png", "https://cdn.test/dress.png"]
    assert seen["input"]["prompt"] == tryon_prompt("male")
    assert "his clothing" in tryon_prompt("male")
    assert "her clothing" in tryon_prompt("female")


def test_apply_watermark_marks_bottom_right_corner():
    source = _png_bytes()
    marked = apply_watermark(source, "Trayve App")

    before = Image.open(io.BytesIO(source)).convert("RGBA")
    after = Image.open(io.BytesIO(marked))
    assert after.format == "PNG"
    assert after.size == (400, 300)

    bbox = ImageChops.difference(before, after.convert("RGBA")).getbbox()
    assert bbox is not None
    left, top, right, bottom = bbox
    assert left > 200 and top > 150
    assert right <= 400 - 15 and bottom <= 300 - 15


def test_apply_watermark_rejects_non_images():
    with pytest.raises(ProviderError):
        apply_watermark(b"definitely not a png", "Trayve App")


@pytest.mark.asyncio
async def test_local_watermark_backend_returns_png_bytes():
    with patch("services.providers.watermark.download_bytes", AsyncMock(return_value=_png_bytes())) as download:
        output = await LocalWatermarkBackend(text="Trayve App").run(_step_input(image_url="https://x.test/in.png"))

    download.assert_awaited_once()
    assert output.artifact_url is None
    assert output.content.startswith(b"\x89PNG")
    assert output.content_type == "image/png"


def test_build_step_adapters_orders_backends_per_step():
    adapters = build_step_adapters()

    assert set(adapters) == {"tryon", "watermark", "enhanced-upscale", "face-refine"}
    assert [backend.name for backend in adapters["tryon"].backends] == ["fal-tryon", "replicate-tryon"]
    assert [backend.name for backend in adapters["enhanced-upscale"].backends] == ["replicate-upscale"]
    assert [backend.name for backend in adapters["face-refine"].backends] == ["replicate-face-swap", "fal-face-swap"]
    assert adapters["watermark"].max_attempts == 1
