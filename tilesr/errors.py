from __future__ import annotations


class TilesrError(Exception):
    """Base class for all errors raised by tilesr."""


class InvalidConfiguration(TilesrError, ValueError):
    pass


class TileFailure(TilesrError):
    """A single tile could not be produced. The frame continues without it."""

    def __init__(self, message: str, *, tile_index: int | None = None) -> None:
        super().__init__(message)
        self.tile_index = tile_index


class TileExtractionFailed(TileFailure):
    pass


class InferenceFailed(TileFailure):
    pass


class FrameFailure(TilesrError):
    """The current frame cannot be completed. Aborts the run."""

    def __init__(self, message: str, *, frame_index: int | None = None) -> None:
        super().__init__(message)
        self.frame_index = frame_index


class BufferAllocationFailed(FrameFailure):
    pass


class OutputSinkFailed(FrameFailure):
    pass


class ModelLoadFailed(TilesrError):
    def __init__(self, strategy: str, cause: BaseException) -> None:
        super().__init__(f"{strategy}: {type(cause).__name__}: {cause}")
        self.strategy = strategy
        self.cause = cause


class ModelLoadExhausted(TilesrError):
    """Every loading strategy failed; `failures` keeps them in attempt order."""

    def __init__(self, model_path: str, failures: list[ModelLoadFailed]) -> None:
        details = "; ".join(str(f) for f in failures) or "no strategies configured"
        super().__init__(f"could not load model {model_path!r} ({details})")
        self.model_path = model_path
        self.failures = list(failures)
