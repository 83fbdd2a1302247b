from __future__ import annotations

from dataclasses import dataclass

import torch

from tilesr.config import CombinePolicy
from tilesr.tiling.scheduler import Tile

MASK_CHANNELS = ("edge", "noise", "block", "band", "text")


@dataclass(frozen=True)
class RegionMaskSample:
    edge: float = 0.0
    noise: float = 0.0
    block: float = 0.0
    band: float = 0.0
    text: float = 0.0


class RegionMaskGrid:
    """Read-only grid of region statistics, stored as a (5, rows, cols) tensor.

    Channel order follows ``MASK_CHANNELS``. Values are in [0, 1].
    """

    def __init__(self, values: torch.Tensor) -> None:
        if values.dim() != 3 or values.shape[0] != len(MASK_CHANNELS):
            raise ValueError(f"expected ({len(MASK_CHANNELS)}, rows, cols) grid, got {tuple(values.shape)}")
        self._values = values.detach().to(device="cpu", dtype=torch.float32).clamp(0.0, 1.0)

    @classmethod
    def empty(cls) -> RegionMaskGrid:
        return cls(torch.zeros(len(MASK_CHANNELS), 0, 0))

    @property
    def rows(self) -> int:
        return int(self._values.shape[1])

    @property
    def cols(self) -> int:
        return int(self._values.shape[2])

    @property
    def values(self) -> torch.Tensor:
        return self._values.clone()

    def channel_mean(self, name: str) -> float:
        if self.rows == 0 or self.cols == 0:
            return 0.0
        return float(self._values[MASK_CHANNELS.index(name)].mean().item())

    def sample(self, norm_x: float, norm_y: float) -> RegionMaskSample:
        if self.rows == 0 or self.cols == 0:
            return RegionMaskSample()
        x = int(min(max(float(norm_x), 0.0), 1.0) * (self.cols - 1))
        y = int(min(max(float(norm_y), 0.0), 1.0) * (self.rows - 1))
        cell = self._values[:, y, x].tolist()
        return RegionMaskSample(**dict(zip(MASK_CHANNELS, cell)))


def region_weight(sample: RegionMaskSample, *, floor: float = 0.55) -> float:
    raw = (
        1.0
        - 0.22 * sample.noise
        - 0.20 * sample.block
        - 0.15 * sample.band
        - 0.12 * sample.text
        + 0.12 * sample.edge
    )
    return max(float(floor), min(1.0, raw))


def combine_weights(drift_weight: float, region: float, policy: CombinePolicy = CombinePolicy.MIN) -> float:
    if policy is CombinePolicy.MULTIPLY:
        return min(1.0, float(drift_weight) * float(region))
    return min(1.0, float(drift_weight), float(region))


class RegionWeighter:
    def __init__(self, grid, *, floor: float = 0.55, enabled: bool = True) -> None:
        self.grid = grid
        self.floor = float(floor)
        self.enabled = bool(enabled) and grid is not None

    def sample_for(self, tile: Tile, frame_width: int, frame_height: int) -> RegionMaskSample:
        norm_x = (tile.source_x + tile.source_width / 2.0) / max(1, int(frame_width))
        norm_y = (tile.source_y + tile.source_height / 2.0) / max(1, int(frame_height))
        return self.grid.sample(norm_x, norm_y)

    def weight_for(self, tile: Tile, frame_width: int, frame_height: int) -> float:
        if not self.enabled:
            return 1.0
        return region_weight(self.sample_for(tile, frame_width, frame_height), floor=self.floor)
