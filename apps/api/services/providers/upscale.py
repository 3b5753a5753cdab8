"""Resolution upscaling."""

from __future__ import annotations

from typing import Optional

from config import settings
from services.providers.base import BaseBackend
from services.providers.http import ReplicateClient
from services.providers.types import ProviderError, ProviderOutput, StepInput


class ReplicateUpscaleBackend(BaseBackend):
    name = "replicate-upscale"

    def __init__(self, client: ReplicateClient, model: Optional[str] = None, scale_factor: Optional[int] = None) -> None:
        self.client = client
        self.model = model or settings.REPLICATE_UPSCALE_MODEL
        self.scale_factor = int(scale_factor or settings.UPSCALE_SCALE_FACTOR)

    @property
    def configured(self) -> bool:
        return self.client.configured

    async def run(self, step_input: StepInput) -> ProviderOutput:
        if not step_input.image_url:
            raise ProviderError("Upscale needs a source image", provider=self.name)
        url = await self.client.run(
            self.model,
            {"image": step_input.image_url, "scale_factor": self.scale_factor},
        )
        return ProviderOutput(provider=self.name, artifact_url=url)
