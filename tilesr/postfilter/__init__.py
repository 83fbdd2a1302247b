from tilesr.postfilter.pipeline import STAGE_ORDER, PostFilterPipeline, TemporalSmoother, TilePreprocessor

__all__ = [
    "STAGE_ORDER",
    "PostFilterPipeline",
    "TemporalSmoother",
    "TilePreprocessor",
]
