from __future__ import annotations

import logging
from collections.abc import Iterator
from pathlib import Path

import av
import torch

from tilesr.media import Frame

log = logging.getLogger(__name__)
av.logging.set_level(av.logging.ERROR)


class VideoReader:
    """Decodes the first video stream of a file into RGB frames with PyAV."""

    def __init__(self, path: str | Path, *, device: torch.device | str = "cpu", max_frames: int | None = None) -> None:
        self.path = Path(path)
        self.device = torch.device(device)
        self.max_frames = max_frames
        self.container = None
        self.stream = None

    def __enter__(self) -> VideoReader:
        self.container = av.open(str(self.path))
        self.stream = self.container.streams.video[0]
        self.stream.thread_type = "AUTO"
        log.debug(
            "opened %s: %dx%d %s",
            self.path,
            self.stream.codec_context.width,
            self.stream.codec_context.height,
            self.stream.codec_context.name,
        )
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def close(self) -> None:
        if self.container is not None:
            self.container.close()
            self.container = None
            self.stream = None

    def frames(self) -> Iterator[Frame]:
        if self.container is None:
            raise RuntimeError("VideoReader is not open")
        index = 0
        for av_frame in self.container.decode(self.stream):
            if self.max_frames is not None and index >= self.max_frames:
                break
            rgb = av_frame.to_ndarray(format="rgb24")
            data = torch.from_numpy(rgb)
            if self.device.type != "cpu":
                data = data.to(self.device, non_blocking=True)
            pts = int(av_frame.pts) if av_frame.pts is not None else index
            yield Frame(data=data, pts=pts, index=index)
            index += 1

    def __iter__(self) -> Iterator[torch.Tensor]:
        for frame in self.frames():
            yield frame.data
