"""
Generation provider adapters.

Each pipeline step maps to one StepAdapter wrapping an ordered list of
backends; the orchestrator only ever calls ``adapter.execute(step_input)``.
"""

from typing import Dict

from config import settings
from services.providers.base import BaseBackend, StepAdapter, call_with_retry
from services.providers.compose import FalTryOnBackend, ReplicateTryOnBackend
from services.providers.enhance import FalFaceSwapBackend, ReplicateFaceSwapBackend
from services.providers.http import FalClient, ReplicateClient, download_bytes, extract_output_url
from services.providers.types import ProviderError, ProviderOutput, ProviderTimeoutError, StepInput
from services.providers.upscale import ReplicateUpscaleBackend
from services.providers.watermark import LocalWatermarkBackend, apply_watermark
from services.step_chain import STEP_ENHANCED_UPSCALE, STEP_FACE_REFINE, STEP_TRYON, STEP_WATERMARK


def build_step_adapters() -> Dict[str, StepAdapter]:
    """Adapter registry keyed by step type, built from current settings."""
    fal = FalClient(settings.FAL_KEY, request_timeout=settings.PROVIDER_TIMEOUT_SECONDS)
    replicate = ReplicateClient(
        settings.REPLICATE_API_TOKEN,
        poll_interval=settings.PROVIDER_POLL_INTERVAL_SECONDS,
        timeout_seconds=settings.PROVIDER_TIMEOUT_SECONDS,
        request_timeout=settings.PROVIDER_HTTP_TIMEOUT_SECONDS,
    )
    retry = {
        "max_attempts": settings.PROVIDER_MAX_ATTEMPTS,
        "retry_delay_seconds": settings.PROVIDER_RETRY_DELAY_SECONDS,
    }
    return {
        STEP_TRYON: StepAdapter(STEP_TRYON, [FalTryOnBackend(fal), ReplicateTryOnBackend(replicate)], **retry),
        STEP_ENHANCED_UPSCALE: StepAdapter(STEP_ENHANCED_UPSCALE, [ReplicateUpscaleBackend(replicate)], **retry),
        STEP_FACE_REFINE: StepAdapter(
            STEP_FACE_REFINE,
            [ReplicateFaceSwapBackend(replicate), FalFaceSwapBackend(fal)],
            **retry,
        ),
        STEP_WATERMARK: StepAdapter(STEP_WATERMARK, [LocalWatermarkBackend()], max_attempts=1),
    }


__all__ = [
    "BaseBackend",
    "FalClient",
    "ProviderError",
    "ProviderOutput",
    "ProviderTimeoutError",
    "ReplicateClient",
    "StepAdapter",
    "StepInput",
    "apply_watermark",
    "build_step_adapters",
    "call_with_retry",
    "download_bytes",
    "extract_output_url",
]
