from unittest.mock import patch

import pytest
import torch

from tilesr.config import FeatherMode
from tilesr.errors import BufferAllocationFailed
from tilesr.tiling.compositor import (
    AccumulationBuffer,
    TileCompositor,
    normalize_accumulation,
    uncovered_pixel_count,
)
from tilesr.tiling.feather import resolve_feather_margin
from tilesr.tiling.scheduler import TileScheduler


def _composite_image(
    image: torch.Tensor,
    *,
    frame_w: int,
    frame_h: int,
    tile: int,
    overlap: int,
    scale: float,
    mode: FeatherMode,
) -> AccumulationBuffer:
    """Composite tiles that are exact crops of ``image`` (already at output size)."""
    scheduler = TileScheduler(tile_width=tile, tile_height=tile, overlap=overlap, user_scale_factor=scale)
    margin = resolve_feather_margin(configured=0, overlap=overlap, user_scale_factor=scale)
    compositor = TileCompositor(feather_mode=mode, feather_margin=margin)
    out_w, out_h = scheduler.output_size(frame_w, frame_h)
    buffer = AccumulationBuffer.allocate(out_w, out_h)
    for t in scheduler.schedule(frame_w, frame_h):
        crop = image[:, t.dest_y : t.dest_y + t.dest_height, t.dest_x : t.dest_x + t.dest_width]
        compositor.composite(t, crop, buffer)
    return buffer


@pytest.mark.parametrize("mode", [FeatherMode.LINEAR, FeatherMode.COSINE])
@pytest.mark.parametrize(
    ("frame_w", "frame_h", "tile", "overlap", "scale"),
    [(100, 70, 32, 8, 2.0), (61, 45, 24, 6, 1.5), (40, 40, 16, 4, 3.0)],
)
def test_weight_sum_positive_everywhere(
    mode: FeatherMode, frame_w: int, frame_h: int, tile: int, overlap: int, scale: float
) -> None:
    out_w, out_h = int(frame_w * scale), int(frame_h * scale)
    image = torch.full((3, out_h, out_w), 100.0)
    buffer = _composite_image(
        image, frame_w=frame_w, frame_h=frame_h, tile=tile, overlap=overlap, scale=scale, mode=mode
    )
    assert bool((buffer.weight_sum > 0).all())
    assert uncovered_pixel_count(buffer) == 0


def test_agreeing_tiles_reproduce_the_image_without_seams() -> None:
    torch.manual_seed(0)
    image = torch.rand(3, 140, 200) * 255.0
    buffer = _composite_image(image, frame_w=100, frame_h=70, tile=32, overlap=8, scale=2.0, mode=FeatherMode.COSINE)
    assert torch.allclose(normalize_accumulation(buffer), image, atol=1e-3)


def test_normalization_is_deterministic() -> None:
    torch.manual_seed(1)
    image = torch.rand(3, 60, 80) * 255.0
    buffer = _composite_image(image, frame_w=40, frame_h=30, tile=16, overlap=4, scale=2.0, mode=FeatherMode.LINEAR)
    first = normalize_accumulation(buffer)
    second = normalize_accumulation(buffer)
    assert torch.equal(first, second)


def test_pixels_without_weight_normalize_to_black() -> None:
    buffer = AccumulationBuffer.allocate(4, 4)
    buffer.color_sum[:, :2, :] = 50.0
    buffer.weight_sum[:, :2, :] = 0.5
    out = normalize_accumulation(buffer)
    assert torch.all(out[:, :2, :] == 100.0)
    assert torch.all(out[:, 2:, :] == 0.0)
    assert uncovered_pixel_count(buffer) == 8


def test_blend_weight_mixes_neural_with_baseline() -> None:
    tile = TileScheduler(tile_width=8, tile_height=8, overlap=2, user_scale_factor=1.0).schedule(8, 8)[0]
    buffer = AccumulationBuffer.allocate(8, 8)
    compositor = TileCompositor(feather_margin=2)
    compositor.composite(
        tile,
        torch.full((3, 8, 8), 200.0),
        buffer,
        blend_weight=0.25,
        baseline=torch.full((3, 8, 8), 100.0),
    )
    assert torch.allclose(normalize_accumulation(buffer), torch.full((3, 8, 8), 125.0))


def test_full_blend_weight_ignores_baseline() -> None:
    tile = TileScheduler(tile_width=8, tile_height=8, overlap=2, user_scale_factor=1.0).schedule(8, 8)[0]
    buffer = AccumulationBuffer.allocate(8, 8)
    TileCompositor().composite(
        tile,
        torch.full((3, 8, 8), 200.0),
        buffer,
        blend_weight=1.0,
        baseline=torch.zeros(3, 8, 8),
    )
    assert torch.equal(normalize_accumulation(buffer), torch.full((3, 8, 8), 200.0))


def test_composite_rejects_mismatched_pixels() -> None:
    tile = TileScheduler(tile_width=8, tile_height=8, overlap=2, user_scale_factor=1.0).schedule(8, 8)[0]
    with pytest.raises(ValueError):
        TileCompositor().composite(tile, torch.zeros(3, 4, 4), AccumulationBuffer.allocate(8, 8))


def test_allocation_failure_is_typed() -> None:
    with patch("tilesr.tiling.compositor.torch.zeros", side_effect=RuntimeError("out of memory")):
        with pytest.raises(BufferAllocationFailed):
            AccumulationBuffer.allocate(7680, 4320)


def test_feather_mask_is_cached_per_geometry() -> None:
    tiles = TileScheduler(tile_width=16, tile_height=16, overlap=4, user_scale_factor=1.0).schedule(40, 40)
    compositor = TileCompositor(feather_margin=4)
    a = compositor.feather_mask(tiles[4], torch.device("cpu"))
    b = compositor.feather_mask(tiles[4], torch.device("cpu"))
    assert a is b
