from __future__ import annotations

from collections.abc import Iterator
from typing import Protocol

import torch

from tilesr.guard.region_weighting import RegionMaskSample
from tilesr.media import Frame


class InferenceBackend(Protocol):
    tile_width: int
    tile_height: int
    channels: int
    native_scale: float

    def infer(self, tensor: torch.Tensor) -> torch.Tensor:
        """
        Args:
            tensor: (C, tile_height, tile_width) float32 in [0, 1]
        Returns:
            (C, tile_height * native_scale, tile_width * native_scale) float tensor in [0, 1].
            Raises InferenceFailed when the call cannot produce an output.
        """


class BaselineResampler(Protocol):
    def resize(self, region: torch.Tensor, width: int, height: int) -> torch.Tensor:
        """Deterministic resize of an (h, w, 3) uint8 region to (height, width, 3) uint8."""


class RegionMaskProvider(Protocol):
    def sample(self, norm_x: float, norm_y: float) -> RegionMaskSample: ...


class FrameSource(Protocol):
    def __iter__(self) -> Iterator[Frame]: ...


class FrameSink(Protocol):
    def wait_ready(self, timeout: float | None = None) -> bool:
        """Block until the sink can accept a frame. Returns False on timeout."""

    def write(self, frame: Frame) -> None: ...

    def close(self) -> None: ...
