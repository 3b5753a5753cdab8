"""Provider adapter contracts."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


class ProviderError(RuntimeError):
    """Terminal or retryable failure reported by a generation backend."""

    def __init__(self, message: str, *, provider: str = "unknown", transient: bool = False):
        self.provider = provider
        self.transient = bool(transient)
        super().__init__(message)


class ProviderTimeoutError(ProviderError):
    """A long-running prediction exceeded its hard timeout."""

    def __init__(self, message: str, *, provider: str = "unknown"):
        super().__init__(message, provider=provider, transient=False)


@dataclass(frozen=True)
class StepInput:
    model_image_url: str
    clothing_image_url: str
    quality: str
    user_id: str
    gender: str = "female"
    image_url: Optional[str] = None


@dataclass(frozen=True)
class ProviderOutput:
    provider: str
    artifact_url: Optional[str] = None
    content: Optional[bytes] = None
    content_type: str = "image/png"
