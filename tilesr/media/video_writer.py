from __future__ import annotations

import logging
import queue
import threading
from fractions import Fraction
from pathlib import Path

import av
import numpy as np
from av.error import FFmpegError

from tilesr.errors import OutputSinkFailed
from tilesr.media import Frame

log = logging.getLogger(__name__)

_STOP = object()


class VideoWriter:
    """Encodes RGB frames with PyAV on a background thread.

    Frames are queued up to ``queue_size``; ``wait_ready`` blocks while the
    queue is full. Encoder errors surface as OutputSinkFailed on the next
    call into the writer.
    """

    def __init__(
        self,
        path: str | Path,
        *,
        width: int,
        height: int,
        fps: Fraction | float,
        codec: str = "libx264",
        pixel_format: str = "yuv420p",
        crf: int = 18,
        queue_size: int = 4,
    ) -> None:
        self.path = Path(path)
        self.width = int(width)
        self.height = int(height)
        self.fps = Fraction(fps).limit_denominator(1001 * 1000)
        self.codec = str(codec)
        self.pixel_format = str(pixel_format)
        self.crf = int(crf)
        self._queue: queue.Queue = queue.Queue(maxsize=max(1, int(queue_size)))
        self._error: BaseException | None = None
        self._thread: threading.Thread | None = None
        self.frames_written = 0

    def __enter__(self) -> VideoWriter:
        self.open()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        if exc_type is None:
            self.close()
        else:
            self._shutdown()

    def open(self) -> None:
        if self.pixel_format == "yuv420p" and (self.width % 2 or self.height % 2):
            log.warning("odd output size %dx%d, encoding as yuv444p", self.width, self.height)
            self.pixel_format = "yuv444p"
        try:
            self.container = av.open(str(self.path), "w")
            self.stream = self.container.add_stream(self.codec, rate=self.fps)
            self.stream.width = self.width
            self.stream.height = self.height
            self.stream.pix_fmt = self.pixel_format
            self.stream.options = {"crf": str(self.crf)}
        except (FFmpegError, OSError, ValueError) as e:
            raise OutputSinkFailed(f"could not open {self.path} for writing: {e}") from e
        self._thread = threading.Thread(target=self._run, name="tilesr-writer", daemon=True)
        self._thread.start()

    def _run(self) -> None:
        stopped = False
        try:
            while True:
                item = self._queue.get()
                if item is _STOP:
                    stopped = True
                    break
                self._encode(item)
            for packet in self.stream.encode():
                self.container.mux(packet)
        except Exception as e:
            log.error("encoder thread failed: %s", e)
            self._error = e
            # keep draining so producers never block on a dead writer
            while not stopped:
                stopped = self._queue.get() is _STOP
        finally:
            self.container.close()

    def _encode(self, rgb: np.ndarray) -> None:
        video_frame = av.VideoFrame.from_ndarray(rgb, format="rgb24")
        video_frame.pts = self.frames_written
        video_frame.time_base = Fraction(1, 1) / self.fps
        for packet in self.stream.encode(video_frame):
            self.container.mux(packet)
        self.frames_written += 1

    def _raise_if_failed(self) -> None:
        if self._error is not None:
            raise OutputSinkFailed(f"encoding {self.path} failed: {self._error}") from self._error

    def wait_ready(self, timeout: float | None = None) -> bool:
        self._raise_if_failed()
        with self._queue.not_full:
            # qsize() would take the mutex this condition already holds
            if len(self._queue.queue) >= self._queue.maxsize:
                self._queue.not_full.wait(timeout)
            ready = len(self._queue.queue) < self._queue.maxsize
        self._raise_if_failed()
        return ready

    def write(self, frame: Frame) -> None:
        self._raise_if_failed()
        if self._thread is None:
            raise OutputSinkFailed("VideoWriter is not open")
        if frame.width != self.width or frame.height != self.height:
            raise OutputSinkFailed(
                f"frame {frame.index} is {frame.width}x{frame.height}, writer expects {self.width}x{self.height}"
            )
        self._queue.put(frame.data.detach().cpu().contiguous().numpy())

    def _shutdown(self) -> None:
        if self._thread is None:
            return
        self._queue.put(_STOP)
        self._thread.join()
        self._thread = None

    def close(self) -> None:
        self._shutdown()
        self._raise_if_failed()
        log.debug("wrote %d frame(s) to %s", self.frames_written, self.path)
