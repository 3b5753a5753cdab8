"""Local watermark compositing for free-tier output."""

from __future__ import annotations

import asyncio
import io
from typing import Optional

from PIL import Image, ImageDraw, ImageFont, UnidentifiedImageError

from config import settings
from services.providers.base import BaseBackend
from services.providers.http import download_bytes
from services.providers.types import ProviderError, ProviderOutput, StepInput

MARGIN_PX = 20
FONT_WIDTH_RATIO = 0.05
MARK_FILL = (255, 255, 255, 102)


def apply_watermark(image_bytes: bytes, text: str) -> bytes:
    """Draw ``text`` semi-transparently in the bottom-right corner; returns PNG bytes."""
    try:
        base = Image.open(io.BytesIO(image_bytes))
        base.load()
    except (UnidentifiedImageError, OSError) as exc:
        raise ProviderError(f"Cannot decode image for watermarking: {exc}", provider="watermark") from exc

    base = base.convert("RGBA")
    overlay = Image.new("RGBA", base.size, (0, 0, 0, 0))
    font_size = max(int(base.width * FONT_WIDTH_RATIO), 10)
    font = ImageFont.load_default(size=font_size)
    draw = ImageDraw.Draw(overlay)
    draw.text(
        (base.width - MARGIN_PX, base.height - MARGIN_PX),
        text,
        font=font,
        fill=MARK_FILL,
        anchor="rd",
    )

    output = io.BytesIO()
    Image.alpha_composite(base, overlay).save(output, format="PNG")
    return output.getvalue()


class LocalWatermarkBackend(BaseBackend):
    name = "local-watermark"

    def __init__(self, text: Optional[str] = None, download_timeout: Optional[float] = None) -> None:
        self.text = text or settings.WATERMARK_TEXT
        self.download_timeout = float(download_timeout or settings.PROVIDER_HTTP_TIMEOUT_SECONDS)

    async def run(self, step_input: StepInput) -> ProviderOutput:
        if not step_input.image_url:
            raise ProviderError("Watermark needs a source image", provider=self.name)
        source = await download_bytes(step_input.image_url, timeout=self.download_timeout)
        content = await asyncio.to_thread(apply_watermark, source, self.text)
        return ProviderOutput(provider=self.name, content=content, content_type="image/png")
