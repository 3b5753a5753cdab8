import pytest

from services.step_chain import normalize_tier, quality_for_tier, steps_for_tier


@pytest.mark.parametrize(
    "tier,steps,quality",
    [
        ("free", ["tryon", "watermark"], "standard"),
        ("creator", ["tryon"], "high"),
        ("starter", ["tryon"], "high"),
        ("professional", ["tryon", "enhanced-upscale", "face-refine"], "premium"),
        ("enterprise", ["tryon", "enhanced-upscale", "face-refine"], "premium"),
    ],
)
def test_tier_policy_table(tier, steps, quality):
    assert steps_for_tier(tier) == steps
    assert quality_for_tier(tier) == quality


def test_unknown_or_missing_tier_falls_back_to_free():
    assert normalize_tier("platinum") == "free"
    assert normalize_tier(None) == "free"
    assert normalize_tier("  Professional ") == "professional"
    assert steps_for_tier("platinum") == ["tryon", "watermark"]


def test_every_tier_starts_with_tryon_and_only_free_is_watermarked():
    for tier in ("free", "creator", "professional", "enterprise"):
        steps = steps_for_tier(tier)
        assert steps[0] == "tryon"
        assert ("watermark" in steps) == (tier == "free")


def test_steps_for_tier_returns_a_fresh_list():
    steps = steps_for_tier("creator")
    steps.append("watermark")
    assert steps_for_tier("creator") == ["tryon"]
