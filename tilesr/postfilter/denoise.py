from __future__ import annotations

import math
from functools import lru_cache

import torch
import torch.nn.functional as F

from tilesr.config import DenoiseStrength

# kernel size, spatial sigma, range sigma (range sigma in [0, 1] intensity units)
_BILATERAL_PARAMS: dict[DenoiseStrength, tuple[int, float, float]] = {
    DenoiseStrength.LOW: (5, 2.0, 0.04),
    DenoiseStrength.MEDIUM: (5, 2.0, 0.06),
    DenoiseStrength.HIGH: (7, 2.0, 0.10),
}


@lru_cache(maxsize=8)
def _spatial_taps(radius: int, sigma: float) -> tuple[tuple[int, int, float], ...]:
    """(dy, dx, distance weight) for every offset of the square window."""
    inv = -0.5 / (sigma * sigma)
    return tuple(
        (dy, dx, math.exp((dy * dy + dx * dx) * inv))
        for dy in range(-radius, radius + 1)
        for dx in range(-radius, radius + 1)
    )


def bilateral_filter(
    image: torch.Tensor, *, kernel_size: int, sigma_spatial: float, sigma_range: float
) -> torch.Tensor:
    """Denoise stage of the post-filter chain.

    Takes the normalised frame as (C, H, W) in [0, 1]; extra leading
    dimensions are treated as a batch. Each pixel becomes the average of
    its window, weighted by distance and by how close each neighbour's
    colour is, so flat areas smooth out while edges keep their contrast.
    Frame borders are edge-replicated.
    """
    radius = int(kernel_size) // 2
    if radius < 1 or sigma_range <= 0:
        return image

    shape = image.shape
    h, w = int(shape[-2]), int(shape[-1])
    x = image.reshape(-1, *shape[-3:])
    padded = F.pad(x, (radius, radius, radius, radius), mode="replicate")
    range_scale = -0.5 / (sigma_range * sigma_range)

    acc = torch.zeros_like(x)
    norm = torch.zeros_like(x[:, :1])
    for dy, dx, spatial in _spatial_taps(radius, float(sigma_spatial)):
        shifted = padded[:, :, radius + dy : radius + dy + h, radius + dx : radius + dx + w]
        weight = (x - shifted).square_().mean(dim=1, keepdim=True).mul_(range_scale).exp_().mul_(spatial)
        acc.addcmul_(shifted, weight)
        norm.add_(weight)
    return (acc / norm).reshape(shape)


def apply_denoise(image: torch.Tensor, strength: DenoiseStrength) -> torch.Tensor:
    if strength is DenoiseStrength.NONE:
        return image
    kernel_size, sigma_spatial, sigma_range = _BILATERAL_PARAMS[strength]
    return bilateral_filter(image, kernel_size=kernel_size, sigma_spatial=sigma_spatial, sigma_range=sigma_range)
