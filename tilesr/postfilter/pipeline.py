from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass

import torch

from tilesr.config import DenoiseStrength, PostFilterConfig, SharpenMode
from tilesr.postfilter import filters
from tilesr.postfilter.denoise import apply_denoise

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class StageContext:
    original: torch.Tensor
    alpha: torch.Tensor | None = None


StageFn = Callable[[torch.Tensor, StageContext], torch.Tensor]

STAGE_ORDER: tuple[str, ...] = (
    "unpremultiply",
    "linearize",
    "tone_map",
    "median",
    "denoise",
    "deband",
    "deband_dither",
    "sharpen",
    "sharpen_extra",
    "dehalo",
    "moire",
    "encode",
    "gamma_blend",
    "premultiply",
)

TILE_STAGES: tuple[str, ...] = ("linearize", "tone_map", "median", "denoise", "encode")

_DEBAND_THRESHOLD = 0.02


def _sharpen_stage(cfg: PostFilterConfig) -> StageFn:
    if cfg.sharpen is SharpenMode.UNSHARP:
        return lambda x, ctx: filters.unsharp_mask(
            x, radius=cfg.usm_radius, amount=cfg.usm_amount, threshold=cfg.usm_threshold
        )
    return lambda x, ctx: filters.contrast_adaptive_sharpen(x, cfg.sharpen_strength)


def enabled_stages(cfg: PostFilterConfig) -> dict[str, StageFn]:
    """Default filter for every stage the config turns on, keyed by stage name."""
    stages: dict[str, StageFn] = {}
    if cfg.alpha_safe:
        stages["unpremultiply"] = lambda x, ctx: filters.unpremultiply_alpha(x, ctx.alpha)
        stages["premultiply"] = lambda x, ctx: filters.premultiply_alpha(x, ctx.alpha)
    if cfg.linearize:
        stages["linearize"] = lambda x, ctx: filters.srgb_to_linear(x, cfg.exposure)
    if cfg.tone_map:
        stages["tone_map"] = lambda x, ctx: filters.tone_map_reinhard(x, cfg.tone_map_exposure)
    if cfg.median_prefilter:
        stages["median"] = lambda x, ctx: filters.median3x3(x)
    if cfg.denoise is not DenoiseStrength.NONE:
        stages["denoise"] = lambda x, ctx: apply_denoise(x, cfg.denoise)
    if cfg.deband and cfg.deband_amount > 0:
        stages["deband"] = lambda x, ctx: filters.deband(x, threshold=_DEBAND_THRESHOLD, amount=cfg.deband_amount)
        if cfg.deband_dither:
            stages["deband_dither"] = lambda x, ctx: filters.dithered_deband(
                x, threshold=_DEBAND_THRESHOLD * 0.6, amount=cfg.deband_amount * 0.5
            )
    if cfg.sharpen is not SharpenMode.NONE:
        stages["sharpen"] = _sharpen_stage(cfg)
        if cfg.laplacian:
            stages["sharpen_extra"] = lambda x, ctx: filters.laplacian_sharpen(x, cfg.laplacian_strength)
    if cfg.dehalo:
        stages["dehalo"] = lambda x, ctx: filters.dehalo(x, cfg.dehalo_strength)
    if cfg.moire:
        stages["moire"] = lambda x, ctx: filters.moire_suppress(x, cfg.moire_strength)
    if cfg.encode_srgb:
        stages["encode"] = lambda x, ctx: filters.linear_to_srgb(x, cfg.encode_exposure)
    if cfg.gamma_blend_weight > 0:
        stages["gamma_blend"] = lambda x, ctx: filters.gamma_blend(x, ctx.original, cfg.gamma_blend_weight)
    return stages


class PostFilterPipeline:
    """Frame-level corrections applied to each normalised frame, in a fixed order.

    ``overrides`` replaces the default implementation of enabled stages;
    stages the config leaves off never run.
    """

    def __init__(
        self,
        config: PostFilterConfig,
        *,
        overrides: Mapping[str, StageFn] | None = None,
        only: tuple[str, ...] = STAGE_ORDER,
    ) -> None:
        unknown = set(overrides or {}) - set(STAGE_ORDER)
        if unknown:
            raise ValueError(f"unknown post-filter stage(s): {', '.join(sorted(unknown))}")
        self.config = config
        defaults = enabled_stages(config)
        self.stages: list[tuple[str, StageFn]] = [
            (name, (overrides or {}).get(name, defaults[name]))
            for name in STAGE_ORDER
            if name in defaults and name in only
        ]

    @property
    def stage_names(self) -> list[str]:
        return [name for name, _ in self.stages]

    @property
    def is_identity(self) -> bool:
        return not self.stages

    def run(
        self, image: torch.Tensor, *, original: torch.Tensor | None = None, alpha: torch.Tensor | None = None
    ) -> torch.Tensor:
        """
        Args:
            image: (C, H, W) float in [0, 1], the normalised frame.
            original: the pre-filter frame for gamma blending; defaults to ``image``.
            alpha: optional (1, H, W) alpha for the alpha-safe stages.
        """
        if self.is_identity:
            return image
        if original is None:
            original = image.clone() if "gamma_blend" in self.stage_names else image
        ctx = StageContext(original=original, alpha=alpha)
        for name, fn in self.stages:
            image = fn(image, ctx)
        return image.clamp(0.0, 1.0)


class TilePreprocessor:
    """Colour shaping and light denoise applied to each tile before inference."""

    def __init__(self, config: PostFilterConfig) -> None:
        self.pipeline = PostFilterPipeline(config, only=TILE_STAGES) if config.preprocess_tiles else None

    @property
    def enabled(self) -> bool:
        return self.pipeline is not None and not self.pipeline.is_identity

    def process(self, region: torch.Tensor) -> torch.Tensor:
        """(h, w, 3) uint8 region in, same shape and dtype out."""
        if not self.enabled:
            return region
        x = region.permute(2, 0, 1).float().div(255.0)
        y = self.pipeline.run(x, original=x)
        return y.mul(255.0).round().clamp(0, 255).to(dtype=torch.uint8).permute(1, 2, 0).contiguous()


class TemporalSmoother:
    """Blends each emitted frame toward the previous one."""

    def __init__(self, *, enabled: bool, strength: float = 0.15) -> None:
        self.enabled = bool(enabled)
        self.strength = float(strength)
        self._previous: torch.Tensor | None = None

    def reset(self) -> None:
        self._previous = None

    def apply(self, image: torch.Tensor) -> torch.Tensor:
        if not self.enabled:
            return image
        previous = self._previous
        if previous is not None and previous.shape == image.shape:
            image = filters.temporal_smooth(image, previous, self.strength)
        elif previous is not None:
            log.debug("temporal smoothing skipped: frame size changed")
        self._previous = image
        return image
