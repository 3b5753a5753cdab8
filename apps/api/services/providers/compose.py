"""Virtual try-on: model image + garment image -> composited image."""

from __future__ import annotations

from typing import Optional

from config import settings
from services.providers.base import BaseBackend
from services.providers.http import FalClient, ReplicateClient
from services.providers.types import ProviderOutput, StepInput

FAL_MODE_BY_QUALITY = {
    "standard": "performance",
    "high": "balanced",
    "premium": "quality",
}


def tryon_prompt(gender: str) -> str:
    subject, pronoun, possessive = ("male", "him", "his") if gender == "male" else ("female", "her", "her")
    return (
        f"Use the {subject} from the reference image. Preserve {possessive} exact pose, facial expression, "
        "body proportions and camera angle; if only the upper body is visible keep only the upper body visible. "
        f"Apply the outfit from the clothing reference image onto {pronoun}, making it look natural, "
        "well-fitted and realistic. Match lighting, shadows, folds and texture. "
        f"Do not alter {possessive} pose or appearance, only replace {possessive} clothing with the provided outfit."
    )


class FalTryOnBackend(BaseBackend):
    name = "fal-tryon"

    def __init__(self, client: FalClient, model: Optional[str] = None) -> None:
        self.client = client
        self.model = model or settings.FAL_TRYON_MODEL

    @property
    def configured(self) -> bool:
        return self.client.configured

    async def run(self, step_input: StepInput) -> ProviderOutput:
        url = await self.client.run(
            self.model,
            {
                "model_image": step_input.model_image_url,
                "garment_image": step_input.clothing_image_url,
                "mode": FAL_MODE_BY_QUALITY.get(step_input.quality, "balanced"),
                "output_format": "png",
            },
        )
        return ProviderOutput(provider=self.name, artifact_url=url)


class ReplicateTryOnBackend(BaseBackend):
    """Prompt-driven try-on on a general image model."""

    name = "replicate-tryon"

    def __init__(self, client: ReplicateClient, model: Optional[str] = None) -> None:
        self.client = client
        self.model = model or settings.REPLICATE_TRYON_MODEL

    @property
    def configured(self) -> bool:
        return self.client.configured

    async def run(self, step_input: StepInput) -> ProviderOutput:
        url = await self.client.run(
            self.model,
            {
                "prompt": tryon_prompt(step_input.gender),
                "image_input": [step_input.model_image_url, step_input.clothing_image_url],
                "aspect_ratio": "3:4",
                "output_format": "png",
            },
        )
        return ProviderOutput(provider=self.name, artifact_url=url)
