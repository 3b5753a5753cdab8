"""Subscription tier to pipeline step chain policy."""

from __future__ import annotations

from typing import Dict, List, Literal, Tuple


StepType = Literal["tryon", "watermark", "enhanced-upscale", "face-refine"]
QualityLevel = Literal["standard", "high", "premium"]

STEP_TRYON: StepType = "tryon"
STEP_WATERMARK: StepType = "watermark"
STEP_ENHANCED_UPSCALE: StepType = "enhanced-upscale"
STEP_FACE_REFINE: StepType = "face-refine"

DEFAULT_TIER = "free"
TIER_ALIASES = {"starter": "creator"}

TIER_STEPS: Dict[str, Tuple[StepType, ...]] = {
    "free": (STEP_TRYON, STEP_WATERMARK),
    "creator": (STEP_TRYON,),
    "professional": (STEP_TRYON, STEP_ENHANCED_UPSCALE, STEP_FACE_REFINE),
    "enterprise": (STEP_TRYON, STEP_ENHANCED_UPSCALE, STEP_FACE_REFINE),
}

TIER_QUALITY: Dict[str, QualityLevel] = {
    "free": "standard",
    "creator": "high",
    "professional": "premium",
    "enterprise": "premium",
}


def normalize_tier(tier: str | None) -> str:
    key = str(tier or "").strip().lower()
    key = TIER_ALIASES.get(key, key)
    return key if key in TIER_STEPS else DEFAULT_TIER


def steps_for_tier(tier: str | None) -> List[StepType]:
    """Ordered steps for a tier. Try-on always comes first."""
    return list(TIER_STEPS[normalize_tier(tier)])


def quality_for_tier(tier: str | None) -> QualityLevel:
    return TIER_QUALITY[normalize_tier(tier)]
