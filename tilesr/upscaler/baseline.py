from __future__ import annotations

import torch
import torch.nn.functional as F


class BicubicResampler:
    """Deterministic bicubic resize used as the drift-guard reference."""

    def __init__(self, *, antialias: bool = True) -> None:
        self.antialias = bool(antialias)

    def resize(self, region: torch.Tensor, width: int, height: int) -> torch.Tensor:
        if region.dim() != 3 or region.shape[2] < 3:
            raise ValueError(f"expected (h, w, 3) region, got {tuple(region.shape)}")
        width = int(width)
        height = int(height)
        if width <= 0 or height <= 0:
            return region.new_zeros((max(0, height), max(0, width), 3))
        x = region[..., :3].permute(2, 0, 1).unsqueeze(0).float()
        y = F.interpolate(x, size=(height, width), mode="bicubic", align_corners=False, antialias=self.antialias)
        return y.squeeze(0).round().clamp(0, 255).to(dtype=torch.uint8).permute(1, 2, 0).contiguous()
