from __future__ import annotations

import time
from collections import deque
from typing import Callable

from tqdm import tqdm

ProgressCallback = Callable[[float, float, float, int, int], None]


def format_duration(seconds: float | None) -> str:
    """'m:ss' or 'h:mm:ss'."""
    if not seconds or seconds < 0:
        return "0:00"
    total = int(seconds)
    hours, rest = divmod(total, 3600)
    minutes, secs = divmod(rest, 60)
    if hours == 0:
        return f"{minutes}:{secs:02d}"
    return f"{hours}:{minutes:02d}:{secs:02d}"


class Progressbar:
    """Frame progress with a rolling speed estimate and ETA.

    Speed is averaged over the most recent ``window_seconds`` of video and
    only shown once ``warmup_seconds`` worth of frames are measured.
    """

    def __init__(
        self,
        total_frames: int,
        video_fps: float,
        *,
        disable: bool = False,
        callback: ProgressCallback | None = None,
        warmup_seconds: float = 2.0,
        window_seconds: float = 30.0,
    ) -> None:
        self.total_frames = max(0, int(total_frames))
        self.callback = callback
        self.frames_done = 0
        self.error = False
        fps = max(1.0, float(video_fps))
        self._warmup = max(1, int(fps * warmup_seconds))
        self._durations: deque[float] = deque(maxlen=max(self._warmup + 1, int(fps * window_seconds)))
        self._last_tick: float | None = None
        self.tqdm = tqdm(
            dynamic_ncols=True,
            total=self.total_frames or None,
            bar_format="Upscaling: {percentage:3.0f}%|{bar}|{elapsed} ({n_fmt}f){desc}",
            desc=" | Remaining: ? | Speed: ?",
            disable=disable,
        )

    def init(self) -> None:
        self._last_tick = time.monotonic()

    def _rate(self) -> tuple[float, float]:
        """(fps, eta_seconds); zeros until enough frames were measured."""
        if len(self._durations) < self._warmup:
            return 0.0, 0.0
        mean = sum(self._durations) / len(self._durations)
        if mean <= 0:
            return 0.0, 0.0
        remaining = max(0, self.total_frames - self.frames_done)
        return 1.0 / mean, remaining * mean

    def update(self, n: int = 1) -> None:
        if self._last_tick is None:
            self.init()
        now = time.monotonic()
        elapsed = now - self._last_tick
        self._last_tick = now
        if n > 0:
            self._durations.extend([elapsed / n] * n)
        self.frames_done += n

        fps, eta = self._rate()
        if fps > 0:
            remaining = max(0, self.total_frames - self.frames_done)
            self.tqdm.desc = f" | Remaining: {format_duration(eta)} ({remaining}f) | Speed: {fps:.1f}fps"
        self.tqdm.update(n)

        if self.callback:
            pct = (self.frames_done / self.total_frames) * 100 if self.total_frames > 0 else 0.0
            self.callback(pct, fps, eta, self.frames_done, self.total_frames)

    def close(self, ensure_completed_bar: bool = False) -> None:
        """Close the bar; with ``ensure_completed_bar`` a short count still ends at 100%."""
        if ensure_completed_bar and not self.error and self.tqdm.total != self.tqdm.n:
            self.tqdm.total = self.tqdm.n
            self.tqdm.desc = " | Remaining: 0:00"
            self.tqdm.refresh()
        self.tqdm.close()
