import pytest
import torch

from tilesr.config import CombinePolicy
from tilesr.guard.region_weighting import (
    RegionMaskGrid,
    RegionMaskSample,
    RegionWeighter,
    combine_weights,
    region_weight,
)
from tilesr.tiling.scheduler import TileScheduler


@pytest.mark.parametrize(
    ("sample", "expected"),
    [
        (RegionMaskSample(), 1.0),
        (RegionMaskSample(noise=0.5), 0.89),
        (RegionMaskSample(block=1.0), 0.80),
        (RegionMaskSample(edge=1.0), 1.0),
        (RegionMaskSample(noise=1.0, block=1.0, band=1.0, text=1.0, edge=1.0), 0.55),
        (RegionMaskSample(band=0.4, text=0.5, edge=0.5), 0.94),
    ],
)
def test_region_weight_formula(sample: RegionMaskSample, expected: float) -> None:
    assert region_weight(sample) == pytest.approx(expected)


@pytest.mark.parametrize("policy", list(CombinePolicy))
@pytest.mark.parametrize(("drift", "region"), [(1.0, 1.0), (0.79, 0.9), (0.55, 0.55), (1.0, 0.6), (0.8, 1.0)])
def test_combined_weight_never_exceeds_either_input(policy: CombinePolicy, drift: float, region: float) -> None:
    combined = combine_weights(drift, region, policy)
    assert combined <= min(drift, region) + 1e-12
    assert combined <= 1.0


def test_combine_min_policy_is_most_conservative() -> None:
    assert combine_weights(0.79, 0.9) == pytest.approx(0.79)
    assert combine_weights(1.0, 1.0) == 1.0


def test_combine_multiply_policy_compounds() -> None:
    assert combine_weights(0.8, 0.5, CombinePolicy.MULTIPLY) == pytest.approx(0.4)


def test_grid_sample_maps_normalized_coordinates_to_cells() -> None:
    values = torch.zeros(5, 2, 3)
    values[1] = torch.tensor([[0.1, 0.2, 0.3], [0.4, 0.5, 0.6]])
    grid = RegionMaskGrid(values)
    assert grid.sample(0.0, 0.0).noise == pytest.approx(0.1)
    assert grid.sample(1.0, 1.0).noise == pytest.approx(0.6)
    assert grid.sample(0.5, 1.0).noise == pytest.approx(0.5)
    assert grid.sample(-3.0, 7.0).noise == pytest.approx(0.4)


def test_empty_grid_samples_zeros() -> None:
    assert RegionMaskGrid.empty().sample(0.5, 0.5) == RegionMaskSample()


def test_grid_rejects_wrong_channel_count() -> None:
    with pytest.raises(ValueError):
        RegionMaskGrid(torch.zeros(3, 4, 4))


def test_weighter_samples_tile_center() -> None:
    values = torch.zeros(5, 1, 3)
    values[1, 0, 1:] = 1.0
    weighter = RegionWeighter(RegionMaskGrid(values))
    tiles = TileScheduler(tile_width=64, tile_height=64, overlap=0, user_scale_factor=1.0).schedule(128, 64)
    assert weighter.weight_for(tiles[0], 128, 64) == 1.0
    assert weighter.weight_for(tiles[1], 128, 64) == pytest.approx(0.78)


def test_disabled_weighter_is_neutral() -> None:
    values = torch.ones(5, 2, 2)
    tile = TileScheduler(tile_width=64, tile_height=64, overlap=0, user_scale_factor=1.0).schedule(64, 64)[0]
    assert RegionWeighter(RegionMaskGrid(values), enabled=False).weight_for(tile, 64, 64) == 1.0
    assert RegionWeighter(None).weight_for(tile, 64, 64) == 1.0

