from __future__ import annotations

import threading
from dataclasses import dataclass, field

import torch

from tilesr.config import FeatherMode
from tilesr.errors import BufferAllocationFailed
from tilesr.tiling.feather import create_feather_mask
from tilesr.tiling.scheduler import Tile


@dataclass
class AccumulationBuffer:
    """Per-frame weighted colour sum and weight sum, owned by one frame."""

    color_sum: torch.Tensor
    weight_sum: torch.Tensor
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @classmethod
    def allocate(cls, width: int, height: int, device: torch.device | str = "cpu") -> AccumulationBuffer:
        try:
            color_sum = torch.zeros(3, int(height), int(width), dtype=torch.float32, device=device)
            weight_sum = torch.zeros(1, int(height), int(width), dtype=torch.float32, device=device)
        except RuntimeError as e:
            raise BufferAllocationFailed(f"could not allocate {width}x{height} accumulation buffer: {e}") from e
        return cls(color_sum=color_sum, weight_sum=weight_sum)

    @property
    def width(self) -> int:
        return int(self.color_sum.shape[2])

    @property
    def height(self) -> int:
        return int(self.color_sum.shape[1])

    @property
    def device(self) -> torch.device:
        return self.color_sum.device


class TileCompositor:
    def __init__(self, *, feather_mode: FeatherMode = FeatherMode.COSINE, feather_margin: int = 0) -> None:
        self.feather_mode = feather_mode
        self.feather_margin = int(feather_margin)
        self._mask_cache: dict[tuple, torch.Tensor] = {}

    def feather_mask(self, tile: Tile, device: torch.device) -> torch.Tensor:
        key = (
            tile.dest_width,
            tile.dest_height,
            tile.is_left_edge,
            tile.is_right_edge,
            tile.is_top_edge,
            tile.is_bottom_edge,
            str(device),
        )
        mask = self._mask_cache.get(key)
        if mask is None:
            mask = create_feather_mask(tile, margin=self.feather_margin, mode=self.feather_mode, device=device)
            self._mask_cache[key] = mask
        return mask

    def composite(
        self,
        tile: Tile,
        pixels: torch.Tensor,
        buffer: AccumulationBuffer,
        *,
        blend_weight: float = 1.0,
        baseline: torch.Tensor | None = None,
    ) -> None:
        """Add one decoded tile into ``buffer``.

        Args:
            tile: Placement of the tile in the output frame.
            pixels: (3, dest_height, dest_width) neural pixel values in [0, 255].
            buffer: The frame's accumulation buffer.
            blend_weight: Neural share in [0, 1]; below 1 the tile is mixed
                with ``baseline``.
            baseline: (3, dest_height, dest_width) deterministic upscale of
                the same region, or None.
        """
        expected = (3, tile.dest_height, tile.dest_width)
        if tuple(pixels.shape) != expected:
            raise ValueError(f"tile pixels have shape {tuple(pixels.shape)}, expected {expected}")
        if tile.dest_width == 0 or tile.dest_height == 0:
            return

        device = buffer.device
        mixed = pixels.to(device=device, dtype=torch.float32)
        w = float(blend_weight)
        if baseline is not None and w < 1.0:
            if tuple(baseline.shape) != expected:
                raise ValueError(f"baseline has shape {tuple(baseline.shape)}, expected {expected}")
            mixed = mixed * w + baseline.to(device=device, dtype=torch.float32) * (1.0 - w)

        mask = self.feather_mask(tile, device)
        ys = slice(tile.dest_y, tile.dest_y + tile.dest_height)
        xs = slice(tile.dest_x, tile.dest_x + tile.dest_width)
        with buffer.lock:
            buffer.color_sum[:, ys, xs].addcmul_(mixed, mask.expand_as(mixed))
            buffer.weight_sum[:, ys, xs].add_(mask)


def normalize_accumulation(buffer: AccumulationBuffer) -> torch.Tensor:
    """(3, H, W) float pixel values: colour sum over weight sum, 0 where nothing landed."""
    weight = buffer.weight_sum
    covered = weight > 0
    safe = torch.where(covered, weight, torch.ones_like(weight))
    out = buffer.color_sum / safe
    return torch.where(covered.expand_as(out), out, torch.zeros_like(out))


def uncovered_pixel_count(buffer: AccumulationBuffer) -> int:
    return int((buffer.weight_sum <= 0).sum().item())
