from __future__ import annotations

import logging
from dataclasses import dataclass

import torch

from tilesr.config import DriftGuardConfig

log = logging.getLogger(__name__)

_LUMA_WEIGHTS = (0.299, 0.587, 0.114)


@dataclass(frozen=True)
class BlendDecision:
    weight: float
    note: str | None = None
    color_drift: float = 0.0
    hf_ratio: float = 1.0


PASS_THROUGH = BlendDecision(weight=1.0)


def luma(pixels: torch.Tensor) -> torch.Tensor:
    """(3, H, W) pixel values to (H, W) Rec.601 luma on the same scale."""
    r, g, b = pixels[0], pixels[1], pixels[2]
    return r * _LUMA_WEIGHTS[0] + g * _LUMA_WEIGHTS[1] + b * _LUMA_WEIGHTS[2]


def sample_step(target_width: int) -> int:
    return max(2, min(8, int(target_width) // 64))


def _luma_stats(lum: torch.Tensor, ys: torch.Tensor, xs: torch.Tensor) -> tuple[float, float]:
    center = lum.index_select(0, ys).index_select(1, xs)
    right = lum.index_select(0, ys).index_select(1, xs + 1)
    down = lum.index_select(0, ys + 1).index_select(1, xs)
    hf = (right - center).abs() + (down - center).abs()
    return float(center.mean().item()), float(hf.sum().item())


class DriftGuard:
    """Caps trust in a neural tile when it drifts from a deterministic baseline.

    Brightness shifts and excess high-frequency energy relative to the
    baseline reduce the neural share of the tile; the result is clamped to
    ``[weight_floor, 1.0]``.
    """

    def __init__(self, config: DriftGuardConfig | None = None) -> None:
        self.config = config or DriftGuardConfig()

    @property
    def enabled(self) -> bool:
        return bool(self.config.enabled)

    def decide(self, color_drift: float, hf_ratio: float) -> BlendDecision:
        cfg = self.config
        weight = 1.0
        if color_drift > cfg.color_drift_threshold:
            weight -= cfg.color_drift_penalty
        if hf_ratio > cfg.hf_ratio_threshold:
            weight -= min(cfg.hf_penalty_cap, (hf_ratio - cfg.hf_ratio_threshold) * cfg.hf_penalty_slope)
        weight = max(cfg.weight_floor, min(1.0, weight))

        note = None
        if weight < cfg.note_below:
            note = (
                f"DriftGuard: blended to {weight:.2f} to limit drift "
                f"(ΔL={color_drift:.1f}, HFx={hf_ratio:.2f})"
            )
        return BlendDecision(weight=weight, note=note, color_drift=color_drift, hf_ratio=hf_ratio)

    def evaluate(self, neural: torch.Tensor, baseline: torch.Tensor | None) -> BlendDecision:
        """Compare a decoded tile against its baseline.

        Args:
            neural: (3, H, W) neural pixel values in [0, 255], already sampled
                at the destination resolution.
            baseline: (3, H, W) baseline pixel values in [0, 255], or None.

        Returns:
            The blend decision; pass-through when disabled, without a
            baseline, or when the tile is too small to sample.
        """
        if not self.enabled or baseline is None:
            return PASS_THROUGH
        if baseline.shape != neural.shape:
            raise ValueError(f"baseline shape {tuple(baseline.shape)} does not match {tuple(neural.shape)}")

        _, h, w = neural.shape
        step = sample_step(w)
        ys = torch.arange(1, h - 1, step, device=neural.device)
        xs = torch.arange(1, w - 1, step, device=neural.device)
        if ys.numel() == 0 or xs.numel() == 0:
            return PASS_THROUGH

        sr_mean, sr_hf = _luma_stats(luma(neural.float()), ys, xs)
        base_mean, base_hf = _luma_stats(luma(baseline.to(neural.device).float()), ys, xs)
        color_drift = abs(sr_mean - base_mean)
        hf_ratio = sr_hf / max(base_hf, 1.0)
        decision = self.decide(color_drift, hf_ratio)
        if decision.note:
            log.debug("%s", decision.note)
        return decision
