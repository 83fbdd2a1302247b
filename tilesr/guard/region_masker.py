from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field, replace

import torch
import torch.nn.functional as F

from tilesr.config import DenoiseStrength, PostFilterConfig, SharpenMode
from tilesr.guard.drift_guard import luma
from tilesr.guard.region_weighting import MASK_CHANNELS, RegionMaskGrid, RegionMaskSample

log = logging.getLogger(__name__)

_NOTE_RULES: tuple[tuple[str, float, str], ...] = (
    ("edge", 0.25, "Rich edges detected: preserve detail, moderate sharpen."),
    ("noise", 0.12, "Noise pockets detected: local denoise boost."),
    ("block", 0.12, "Blocking detected: local deblock boost."),
    ("band", 0.10, "Banding risk: local deband boost."),
    ("text", 0.08, "Text detected: reduce sharpen over text."),
)


@dataclass(frozen=True)
class RegionMaskReport:
    grid: RegionMaskGrid
    summary: RegionMaskSample
    frames_sampled: int
    notes: list[str] = field(default_factory=list)


def analysis_size(width: int, height: int) -> tuple[int, int]:
    return max(160, min(360, int(width) // 2)), max(160, min(360, int(height) // 2))


def grid_size(target_width: int, target_height: int) -> tuple[int, int]:
    return max(8, min(32, int(target_width) // 16)), max(8, min(32, int(target_height) // 16))


def compute_region_masks(frame: torch.Tensor) -> torch.Tensor:
    """Region statistics for one (H, W, 3) uint8 frame.

    Returns a (5, rows, cols) tensor in ``MASK_CHANNELS`` order. The frame
    is resampled to a small analysis size and every second pixel is
    measured against its right and lower neighbour.
    """
    if frame.dim() != 3 or frame.shape[2] < 3:
        raise ValueError(f"expected (H, W, 3) frame, got {tuple(frame.shape)}")
    src_h, src_w = int(frame.shape[0]), int(frame.shape[1])
    target_w, target_h = analysis_size(src_w, src_h)
    grid_w, grid_h = grid_size(target_w, target_h)

    planar = frame[..., :3].permute(2, 0, 1).unsqueeze(0).float().cpu()
    small = F.interpolate(planar, size=(target_h, target_w), mode="bilinear", align_corners=False, antialias=True)
    lum = luma(small[0].clamp(0, 255))

    ys = torch.arange(1, target_h - 1, 2)
    xs = torch.arange(1, target_w - 1, 2)
    center = lum[ys][:, xs]
    right = lum[ys][:, xs + 1]
    down = lum[ys + 1][:, xs]

    grad = (center - right).abs() + (center - down).abs()
    hp = (center - (center + right + down) / 3.0).abs()
    # the right/down difference straddles an 8px block boundary
    on_block = ((ys + 1) % 8 == 0).unsqueeze(1) | ((xs + 1) % 8 == 0).unsqueeze(0)
    textish = (grad > 24) & (center > 32) & (center < 224)

    cell_y = torch.clamp(ys * grid_h // target_h, max=grid_h - 1)
    cell_x = torch.clamp(xs * grid_w // target_w, max=grid_w - 1)
    cells = (cell_y.unsqueeze(1) * grid_w + cell_x.unsqueeze(0)).flatten()
    total = grid_w * grid_h

    def per_cell(values: torch.Tensor) -> torch.Tensor:
        return torch.bincount(cells, weights=values.flatten().double(), minlength=total)

    counts = torch.bincount(cells, minlength=total).double().clamp(min=1)
    stats = [
        per_cell(torch.clamp(grad / 64.0, max=1.0)),
        per_cell(torch.clamp(hp / 24.0, max=1.0)),
        per_cell(torch.where(on_block, torch.clamp(grad / 48.0, max=1.0), torch.zeros_like(grad))),
        per_cell((grad < 1.5).double()),
        per_cell(textish.double() * 0.5),
    ]
    out = torch.stack([(s / counts).clamp(max=1.0) for s in stats]).float()
    return out.view(len(MASK_CHANNELS), grid_h, grid_w)


def summarize(grid: RegionMaskGrid) -> RegionMaskSample:
    return RegionMaskSample(**{name: grid.channel_mean(name) for name in MASK_CHANNELS})


def summary_notes(summary: RegionMaskSample) -> list[str]:
    return [note for name, threshold, note in _NOTE_RULES if getattr(summary, name) > threshold]


class RegionMasker:
    def __init__(self, *, max_samples: int = 8) -> None:
        if int(max_samples) <= 0:
            raise ValueError("max_samples must be > 0")
        self.max_samples = int(max_samples)

    @staticmethod
    def frame_stride(fps: float) -> int:
        return max(1, max(1, round(float(fps))) // 3)

    def analyze(self, frames: Iterable[torch.Tensor], *, fps: float) -> RegionMaskReport:
        """Average region statistics over frames sampled about three times per second."""
        stride = self.frame_stride(fps)
        accum: torch.Tensor | None = None
        sampled = 0
        for index, frame in enumerate(frames):
            if index % stride != 0:
                continue
            masks = compute_region_masks(frame)
            if accum is None:
                accum = torch.zeros_like(masks, dtype=torch.float64)
            accum += masks.double()
            sampled += 1
            if sampled >= self.max_samples:
                break

        if accum is None:
            log.info("Region masks skipped (no frames read)")
            return RegionMaskReport(
                grid=RegionMaskGrid.empty(),
                summary=RegionMaskSample(),
                frames_sampled=0,
                notes=["Region masks skipped (no frames read)."],
            )

        grid = RegionMaskGrid((accum / sampled).float())
        summary = summarize(grid)
        notes = summary_notes(summary)
        log.debug("region masks: %dx%d grid from %d frame(s), %s", grid.cols, grid.rows, sampled, summary)
        return RegionMaskReport(grid=grid, summary=summary, frames_sampled=sampled, notes=notes)


def region_adjusted(config: PostFilterConfig, summary: RegionMaskSample) -> PostFilterConfig:
    """Nudge post filters toward what the region summary found."""
    changes: dict[str, object] = {}
    if summary.block > 0.12:
        changes["dehalo"] = True
    if summary.band > 0.10:
        changes["deband"] = True
        changes["deband_dither"] = True
    if summary.noise > 0.12 and config.denoise is DenoiseStrength.NONE:
        changes["denoise"] = DenoiseStrength.MEDIUM
    if summary.text > 0.08 and config.sharpen is not SharpenMode.NONE:
        changes["sharpen_strength"] = max(0.10, config.sharpen_strength * 0.8)
    return replace(config, **changes) if changes else config
