from tilesr.tiling.compositor import AccumulationBuffer, TileCompositor, normalize_accumulation
from tilesr.tiling.scheduler import Tile, TileScheduler

__all__ = [
    "AccumulationBuffer",
    "Tile",
    "TileCompositor",
    "TileScheduler",
    "normalize_accumulation",
]
