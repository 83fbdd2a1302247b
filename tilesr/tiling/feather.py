from __future__ import annotations

import math

import torch

from tilesr.config import FeatherMode
from tilesr.tiling.scheduler import Tile


def feather_curve(t: torch.Tensor, mode: FeatherMode) -> torch.Tensor:
    t = t.clamp(0.0, 1.0)
    if mode is FeatherMode.LINEAR:
        return t
    return 0.5 * (1.0 - torch.cos(math.pi * t))


def feather_ramp(
    *,
    length: int,
    margin: int,
    fade_start: bool,
    fade_end: bool,
    mode: FeatherMode,
    device: torch.device | None = None,
) -> torch.Tensor:
    """1-D blend weights for one axis of a tile.

    A fading side ramps from 0 at the tile border to 1 at ``margin`` pixels
    inward; a non-fading side (a frame edge) stays at 1.
    """
    length = int(length)
    margin = int(margin)
    weights = torch.ones(length, dtype=torch.float32, device=device)
    if length == 0 or margin <= 0:
        return weights

    d = torch.arange(length, dtype=torch.float32, device=device)
    if fade_start:
        start = d < margin
        weights = torch.where(start, torch.minimum(weights, feather_curve(d / margin, mode)), weights)
    if fade_end:
        end = d >= length - margin
        weights = torch.where(end, torch.minimum(weights, feather_curve((length - d) / margin, mode)), weights)
    return weights


def create_feather_mask(
    tile: Tile,
    *,
    margin: int,
    mode: FeatherMode,
    device: torch.device | None = None,
) -> torch.Tensor:
    """Separable (1, dest_height, dest_width) weight mask, ``wx * wy``."""
    wx = feather_ramp(
        length=tile.dest_width,
        margin=margin,
        fade_start=not tile.is_left_edge,
        fade_end=not tile.is_right_edge,
        mode=mode,
        device=device,
    )
    wy = feather_ramp(
        length=tile.dest_height,
        margin=margin,
        fade_start=not tile.is_top_edge,
        fade_end=not tile.is_bottom_edge,
        mode=mode,
        device=device,
    )
    return torch.outer(wy, wx).unsqueeze(0)


def resolve_feather_margin(*, configured: int, overlap: int, user_scale_factor: float) -> int:
    """Feather width in output pixels.

    ``configured == 0`` means derive it from the overlap. The result never
    exceeds the scaled overlap, so every output pixel keeps a positive
    weight from at least one tile.
    """
    limit = int(math.floor(int(overlap) * float(user_scale_factor)))
    if int(configured) > 0:
        return min(int(configured), limit)
    return limit
