from tilesr.guard.drift_guard import BlendDecision, DriftGuard
from tilesr.guard.region_weighting import RegionMaskGrid, RegionMaskSample, RegionWeighter, combine_weights

__all__ = [
    "BlendDecision",
    "DriftGuard",
    "RegionMaskGrid",
    "RegionMaskSample",
    "RegionWeighter",
    "combine_weights",
]
