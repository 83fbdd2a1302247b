import pytest
import torch

from tilesr.config import DriftGuardConfig
from tilesr.guard.drift_guard import DriftGuard, luma, sample_step


def _guard(**kwargs) -> DriftGuard:
    return DriftGuard(DriftGuardConfig(enabled=True, **kwargs))


def test_decide_matches_reference_scenario() -> None:
    decision = _guard().decide(color_drift=8.0, hf_ratio=1.35)
    assert decision.weight == pytest.approx(0.79)
    assert decision.note is not None
    assert decision.note.startswith("DriftGuard: blended to 0.79")
    assert "ΔL=8.0" in decision.note
    assert "HFx=1.35" in decision.note


def test_decide_without_drift_keeps_full_weight_and_no_note() -> None:
    decision = _guard().decide(color_drift=2.0, hf_ratio=1.1)
    assert decision.weight == 1.0
    assert decision.note is None


def test_decide_clamps_to_floor() -> None:
    assert _guard().decide(color_drift=100.0, hf_ratio=50.0).weight == pytest.approx(0.55)
    assert _guard(weight_floor=0.7).decide(color_drift=100.0, hf_ratio=50.0).weight == pytest.approx(0.7)


def test_decide_caps_high_frequency_penalty() -> None:
    assert _guard().decide(color_drift=0.0, hf_ratio=10.0).weight == pytest.approx(0.65)


def test_decide_uses_configured_thresholds() -> None:
    guard = _guard(color_drift_threshold=10.0, hf_ratio_threshold=2.0)
    assert guard.decide(color_drift=8.0, hf_ratio=1.35).weight == 1.0


@pytest.mark.parametrize("seed", range(6))
def test_evaluate_weight_always_within_floor_and_one(seed: int) -> None:
    g = torch.Generator().manual_seed(seed)
    neural = torch.rand(3, 48, 64, generator=g) * 255.0
    baseline = torch.rand(3, 48, 64, generator=g) * 64.0
    weight = _guard().evaluate(neural, baseline).weight
    assert 0.55 <= weight <= 1.0


def test_evaluate_identical_tiles_pass_through() -> None:
    torch.manual_seed(3)
    pixels = torch.rand(3, 32, 32) * 255.0
    decision = _guard().evaluate(pixels, pixels.clone())
    assert decision.weight == 1.0
    assert decision.color_drift == 0.0


def test_evaluate_brightness_shift_costs_drift_penalty() -> None:
    baseline = torch.full((3, 32, 32), 100.0)
    decision = _guard().evaluate(baseline + 20.0, baseline)
    assert decision.color_drift == pytest.approx(20.0, abs=1e-3)
    assert decision.weight == pytest.approx(0.85)


def test_evaluate_runaway_detail_costs_hf_penalty() -> None:
    baseline = torch.full((3, 32, 64), 128.0)
    neural = baseline.clone()
    neural[:, :, ::2] += 40.0
    neural[:, :, 1::2] -= 40.0
    decision = _guard().evaluate(neural, baseline)
    assert decision.hf_ratio > 1.2
    assert decision.weight < 0.98


def test_evaluate_is_pass_through_when_disabled_or_without_baseline() -> None:
    pixels = torch.rand(3, 16, 16) * 255.0
    assert DriftGuard(DriftGuardConfig(enabled=False)).evaluate(pixels, pixels + 50).weight == 1.0
    assert _guard().evaluate(pixels, None).weight == 1.0


def test_evaluate_tiny_tile_has_no_samples() -> None:
    assert _guard().evaluate(torch.zeros(3, 2, 2), torch.full((3, 2, 2), 255.0)).weight == 1.0


def test_evaluate_rejects_mismatched_baseline() -> None:
    with pytest.raises(ValueError):
        _guard().evaluate(torch.zeros(3, 8, 8), torch.zeros(3, 4, 4))


@pytest.mark.parametrize(("width", "step"), [(32, 2), (128, 2), (256, 4), (512, 8), (4096, 8)])
def test_sample_step(width: int, step: int) -> None:
    assert sample_step(width) == step


def test_luma_weights() -> None:
    pixels = torch.tensor([[[255.0]], [[0.0]], [[0.0]]])
    assert float(luma(pixels)) == pytest.approx(0.299 * 255)
