"""Face refinement: keep the generated face consistent with the pose's model."""

from __future__ import annotations

from typing import Optional

from config import settings
from services.providers.base import BaseBackend
from services.providers.http import FalClient, ReplicateClient
from services.providers.types import ProviderError, ProviderOutput, StepInput


def _require_source(step_input: StepInput, backend: str) -> str:
    if not step_input.image_url:
        raise ProviderError("Face refinement needs a source image", provider=backend)
    return step_input.image_url


class ReplicateFaceSwapBackend(BaseBackend):
    name = "replicate-face-swap"

    def __init__(self, client: ReplicateClient, model: Optional[str] = None) -> None:
        self.client = client
        self.model = model or settings.REPLICATE_FACE_SWAP_MODEL

    @property
    def configured(self) -> bool:
        return self.client.configured

    async def run(self, step_input: StepInput) -> ProviderOutput:
        url = await self.client.run(
            self.model,
            {
                "input_image": _require_source(step_input, self.name),
                "swap_image": step_input.model_image_url,
            },
        )
        return ProviderOutput(provider=self.name, artifact_url=url)


class FalFaceSwapBackend(BaseBackend):
    name = "fal-face-swap"

    def __init__(self, client: FalClient, model: Optional[str] = None) -> None:
        self.client = client
        self.model = model or settings.FAL_FACE_SWAP_MODEL

    @property
    def configured(self) -> bool:
        return self.client.configured

    async def run(self, step_input: StepInput) -> ProviderOutput:
        url = await self.client.run(
            self.model,
            {
                "base_image_url": _require_source(step_input, self.name),
                "swap_image_url": step_input.model_image_url,
            },
        )
        return ProviderOutput(provider=self.name, artifact_url=url)
