from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterator
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum

import torch

from tilesr.cancellation import CancellationToken
from tilesr.config import UpscaleConfig
from tilesr.errors import FrameFailure, InferenceFailed, OutputSinkFailed, TileFailure
from tilesr.guard.drift_guard import DriftGuard
from tilesr.guard.region_weighting import RegionWeighter, combine_weights
from tilesr.interfaces import BaselineResampler, FrameSink, FrameSource, InferenceBackend, RegionMaskProvider
from tilesr.media import Frame
from tilesr.postfilter.pipeline import PostFilterPipeline, TemporalSmoother, TilePreprocessor
from tilesr.progressbar import Progressbar
from tilesr.tensor_codec import TensorCodec
from tilesr.tiling.compositor import AccumulationBuffer, TileCompositor, normalize_accumulation, uncovered_pixel_count
from tilesr.tiling.feather import resolve_feather_margin
from tilesr.tiling.scheduler import Tile, TileScheduler
from tilesr.upscaler.baseline import BicubicResampler

log = logging.getLogger(__name__)

LogCallback = Callable[[int, str], None]

GUARDED_BELOW = 0.98
MAX_NOTES_PER_FRAME = 2


class OrchestratorState(Enum):
    IDLE = "idle"
    DECODING = "decoding"
    TILING = "tiling"
    NORMALIZING = "normalizing"
    POST_FILTERING = "post_filtering"
    EMITTING = "emitting"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass(frozen=True)
class TileResult:
    tile: Tile
    pixels: torch.Tensor
    baseline: torch.Tensor | None
    weight: float
    note: str | None
    inference_seconds: float
    conversion_seconds: float


@dataclass(frozen=True)
class FrameReport:
    index: int
    tiles_total: int
    tiles_failed: int
    tiles_guarded: int
    notes: tuple[str, ...] = ()
    inference_seconds: float = 0.0
    conversion_seconds: float = 0.0


@dataclass
class RunReport:
    state: OrchestratorState = OrchestratorState.IDLE
    frames_emitted: int = 0
    tiles_failed: int = 0
    tiles_guarded: int = 0
    inference_seconds: float = 0.0
    conversion_seconds: float = 0.0
    frames: list[FrameReport] = field(default_factory=list)

    def add(self, report: FrameReport) -> None:
        self.frames.append(report)
        self.tiles_failed += report.tiles_failed
        self.tiles_guarded += report.tiles_guarded
        self.inference_seconds += report.inference_seconds
        self.conversion_seconds += report.conversion_seconds


class FrameOrchestrator:
    """Upscales a stream of frames tile by tile and hands them to a sink in order.

    Per frame: tile, infer, guard, composite into a fresh accumulation
    buffer, normalise, post-filter, then emit. A failing tile is skipped and
    counted; buffer or sink failures abort the stream with a typed error;
    cancellation ends the run without emitting the in-flight frame.
    """

    def __init__(
        self,
        *,
        backend: InferenceBackend,
        config: UpscaleConfig,
        baseline: BaselineResampler | None = None,
        region_masks: RegionMaskProvider | None = None,
        cancel_token: CancellationToken | None = None,
        on_log: LogCallback | None = None,
        device: torch.device | str = "cpu",
        sink_poll_seconds: float = 0.1,
    ) -> None:
        config.validate()
        self.config = config
        self.backend = backend
        self.device = torch.device(device)
        self.cancel_token = cancel_token or CancellationToken()
        self.on_log = on_log
        self.sink_poll_seconds = float(sink_poll_seconds)
        self.state = OrchestratorState.IDLE

        self.scheduler = TileScheduler(
            tile_width=backend.tile_width,
            tile_height=backend.tile_height,
            overlap=config.overlap_margin_px,
            user_scale_factor=config.user_scale_factor,
        )
        self.codec = TensorCodec(
            channels=backend.channels,
            tile_width=backend.tile_width,
            tile_height=backend.tile_height,
            user_scale_factor=config.user_scale_factor,
            native_scale=backend.native_scale,
            resample=config.decode_resample,
        )
        self.compositor = TileCompositor(
            feather_mode=config.feather_mode,
            feather_margin=resolve_feather_margin(
                configured=config.feather_margin_px,
                overlap=config.overlap_margin_px,
                user_scale_factor=config.user_scale_factor,
            ),
        )
        self.drift_guard = DriftGuard(config.drift_guard)
        self.region_weighter = RegionWeighter(
            region_masks,
            floor=config.region_weight_floor,
            enabled=config.region_weighting_enabled,
        )
        if config.region_weighting_enabled and region_masks is None:
            log.warning("region weighting enabled without a region mask grid; tiles are not region weighted")

        self.guarding = self.drift_guard.enabled or self.region_weighter.enabled
        self.baseline = baseline if baseline is not None else (BicubicResampler() if self.guarding else None)

        self.preprocessor = TilePreprocessor(config.postfilter)
        self.postfilter = PostFilterPipeline(config.postfilter)
        self.smoother = TemporalSmoother(
            enabled=config.postfilter.temporal_smoothing,
            strength=config.postfilter.temporal_strength,
        )

    def _log(self, level: int, msg: str, *args) -> None:
        log.log(level, msg, *args)
        if self.on_log is not None:
            self.on_log(level, msg % args if args else msg)

    def _set_state(self, state: OrchestratorState) -> None:
        if state is not self.state:
            log.debug("state %s -> %s", self.state.value, state.value)
            self.state = state

    def output_size(self, frame_width: int, frame_height: int) -> tuple[int, int]:
        return self.scheduler.output_size(frame_width, frame_height)

    def prepare_tile(self, frame: Frame, tile: Tile) -> TileResult:
        """Extract, infer and guard one tile. Raises a TileFailure subclass."""
        t0 = time.perf_counter()
        region = self.codec.extract(frame.data, tile)
        region = self.preprocessor.process(region)
        tensor = self.codec.encode(region)
        t1 = time.perf_counter()
        try:
            output = self.backend.infer(tensor)
        except (TileFailure, InterruptedError):
            raise
        except Exception as e:
            raise InferenceFailed(f"tile ({tile.column}, {tile.row}): {e}") from e
        t2 = time.perf_counter()
        pixels = self.codec.decode(output, tile)

        baseline = None
        if self.guarding and self.baseline is not None:
            resized = self.baseline.resize(region, tile.dest_width, tile.dest_height)
            baseline = TensorCodec.to_planar(resized).to(pixels.device)

        decision = self.drift_guard.evaluate(pixels, baseline)
        region_w = self.region_weighter.weight_for(tile, frame.width, frame.height)
        weight = combine_weights(decision.weight, region_w, self.config.combine_policy)
        t3 = time.perf_counter()
        return TileResult(
            tile=tile,
            pixels=pixels,
            baseline=baseline,
            weight=weight,
            note=decision.note,
            inference_seconds=t2 - t1,
            conversion_seconds=(t1 - t0) + (t3 - t2),
        )

    def _tile_results(self, frame: Frame, tiles: list[Tile]) -> Iterator[TileResult | TileFailure]:
        """Tile outcomes in scan order; failures are yielded rather than raised."""
        workers = int(self.config.tile_workers)
        if workers <= 1 or len(tiles) <= 1:
            for tile in tiles:
                self.cancel_token.raise_if_cancelled()
                try:
                    yield self.prepare_tile(frame, tile)
                except TileFailure as e:
                    yield e
            return

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="tilesr-tile") as pool:
            futures: list[Future] = [pool.submit(self.prepare_tile, frame, tile) for tile in tiles]
            try:
                for future in futures:
                    self.cancel_token.raise_if_cancelled()
                    try:
                        yield future.result()
                    except TileFailure as e:
                        yield e
            finally:
                for future in futures:
                    future.cancel()

    def process_frame(self, frame: Frame) -> tuple[Frame, FrameReport]:
        """Run one frame through tiling, normalisation and post-filtering.

        Raises InterruptedError when cancelled and FrameFailure subclasses
        when the frame cannot be completed.
        """
        self._set_state(OrchestratorState.TILING)
        out_w, out_h = self.output_size(frame.width, frame.height)
        buffer = AccumulationBuffer.allocate(out_w, out_h, device=self.device)
        tiles = self.scheduler.schedule(frame.width, frame.height)

        failed = 0
        guarded = 0
        notes: list[str] = []
        inference_s = 0.0
        conversion_s = 0.0
        for index, outcome in enumerate(self._tile_results(frame, tiles)):
            if isinstance(outcome, TileFailure):
                failed += 1
                outcome.tile_index = index
                log.debug("frame %d: tile %d skipped: %s", frame.index, index, outcome)
                continue
            self.compositor.composite(
                outcome.tile,
                outcome.pixels,
                buffer,
                blend_weight=outcome.weight,
                baseline=outcome.baseline,
            )
            inference_s += outcome.inference_seconds
            conversion_s += outcome.conversion_seconds
            if outcome.weight < GUARDED_BELOW:
                guarded += 1
                if outcome.note and len(notes) < MAX_NOTES_PER_FRAME:
                    notes.append(outcome.note)

        self._set_state(OrchestratorState.NORMALIZING)
        t0 = time.perf_counter()
        pixels = normalize_accumulation(buffer)
        if failed == 0:
            uncovered = uncovered_pixel_count(buffer)
            if uncovered:
                log.warning("frame %d: %d output pixel(s) received no tile contribution", frame.index, uncovered)
        del buffer

        self._set_state(OrchestratorState.POST_FILTERING)
        if self.postfilter.is_identity and not self.smoother.enabled:
            data = TensorCodec.pack(pixels)
        else:
            image = pixels.div(255.0)
            image = self.postfilter.run(image, original=image)
            image = self.smoother.apply(image)
            data = TensorCodec.pack(image.mul(255.0))
        conversion_s += time.perf_counter() - t0

        if failed:
            self._log(logging.WARNING, "frame %d: %d of %d tile(s) failed", frame.index, failed, len(tiles))
        if guarded:
            self._log(logging.INFO, "frame %d: guarded %d tile(s)", frame.index, guarded)
            for note in notes:
                self._log(logging.INFO, "%s", note)

        report = FrameReport(
            index=frame.index,
            tiles_total=len(tiles),
            tiles_failed=failed,
            tiles_guarded=guarded,
            notes=tuple(notes),
            inference_seconds=inference_s,
            conversion_seconds=conversion_s,
        )
        return Frame(data=data, pts=frame.pts, index=frame.index), report

    def _emit(self, frame: Frame, sink: FrameSink) -> None:
        self._set_state(OrchestratorState.EMITTING)
        try:
            while not sink.wait_ready(self.sink_poll_seconds):
                self.cancel_token.raise_if_cancelled()
            self.cancel_token.raise_if_cancelled()
            sink.write(frame)
        except (InterruptedError, OutputSinkFailed):
            raise
        except (OSError, RuntimeError, ValueError) as e:
            raise OutputSinkFailed(f"sink rejected frame {frame.index}: {e}", frame_index=frame.index) from e

    def run(
        self,
        frames: FrameSource,
        sink: FrameSink,
        *,
        progress: Progressbar | None = None,
    ) -> RunReport:
        """Process every frame from ``frames`` and write the results to ``sink``.

        Returns a report whose state is IDLE on completion or CANCELLED when
        the token was raised. Frame-level failures set the state to FAILED
        and propagate.
        """
        report = RunReport()
        self.smoother.reset()
        if progress is not None:
            progress.init()
        source = iter(frames)
        try:
            with torch.inference_mode():
                while True:
                    self.cancel_token.raise_if_cancelled()
                    self._set_state(OrchestratorState.DECODING)
                    frame = next(source, None)
                    if frame is None:
                        break
                    out_frame, frame_report = self.process_frame(frame)
                    self._emit(out_frame, sink)
                    report.add(frame_report)
                    report.frames_emitted += 1
                    self._set_state(OrchestratorState.IDLE)
                    if progress is not None:
                        progress.update(1)
            self._set_state(OrchestratorState.IDLE)
        except InterruptedError:
            self._set_state(OrchestratorState.CANCELLED)
            if progress is not None:
                progress.error = True
            self._log(logging.INFO, "cancelled after %d frame(s)", report.frames_emitted)
        except FrameFailure as e:
            self._set_state(OrchestratorState.FAILED)
            if progress is not None:
                progress.error = True
            self._log(logging.ERROR, "stream failed: %s", e)
            raise
        except Exception:
            self._set_state(OrchestratorState.FAILED)
            if progress is not None:
                progress.error = True
            raise
        finally:
            if progress is not None:
                progress.close(ensure_completed_bar=True)
            report.state = self.state

        if report.frames_emitted:
            log.info(
                "%d frame(s): inference %.2fs, conversion %.2fs, %d failed tile(s), %d guarded tile(s)",
                report.frames_emitted,
                report.inference_seconds,
                report.conversion_seconds,
                report.tiles_failed,
                report.tiles_guarded,
            )
        return report
