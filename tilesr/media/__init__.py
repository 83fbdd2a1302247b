import json
import os
import subprocess
from dataclasses import dataclass
from fractions import Fraction

import torch


@dataclass
class Frame:
    """One decoded picture: (H, W, 3) uint8 RGB plus its timing."""

    data: torch.Tensor
    pts: int
    index: int = 0

    @property
    def width(self) -> int:
        return int(self.data.shape[1])

    @property
    def height(self) -> int:
        return int(self.data.shape[0])


def get_subprocess_startup_info():
    if os.name != "nt":
        return None
    startup_info = subprocess.STARTUPINFO()
    startup_info.dwFlags |= subprocess.STARTF_USESHOWWINDOW
    return startup_info


@dataclass
class VideoMetadata:
    video_file: str
    video_height: int
    video_width: int
    video_fps: float
    video_fps_exact: Fraction
    codec_name: str
    duration: float
    time_base: Fraction
    num_frames: int


def _get_frame_count_by_counting(path: str) -> int:
    import cv2
    cap = cv2.VideoCapture(path)
    frame_count = cap.get(cv2.CAP_PROP_FRAME_COUNT)
    cap.release()
    return int(frame_count)


def _parse_rate(value: str) -> Fraction:
    num, _, den = str(value).partition("/")
    if not den or int(den) == 0:
        return Fraction(int(num), 1)
    return Fraction(int(num), int(den))


def get_video_meta_data(path: str) -> VideoMetadata:
    cmd = ['ffprobe', '-v', 'quiet', '-print_format', 'json', '-select_streams', 'v', '-show_streams', '-show_format', path]
    p = subprocess.Popen(cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE, startupinfo=get_subprocess_startup_info())
    out, err = p.communicate()
    if p.returncode != 0:
        raise RuntimeError(f"error running ffprobe: {err.strip()}. Code: {p.returncode}, cmd: {cmd}")
    json_output = json.loads(out)
    if not json_output.get("streams"):
        raise RuntimeError(f"no video stream found in {path}")
    json_video_stream = json_output["streams"][0]
    json_video_format = json_output.get("format", {})

    # r_frame_rate can be 0/0 for some containers; avg_frame_rate is the fallback
    fps_exact = _parse_rate(json_video_stream.get('r_frame_rate', '0/0'))
    if fps_exact <= 0:
        fps_exact = _parse_rate(json_video_stream.get('avg_frame_rate', '0/0'))

    num_frames = int(json_video_stream.get('nb_frames', 0))
    if num_frames == 0:
        num_frames = _get_frame_count_by_counting(path)

    return VideoMetadata(
        video_file=path,
        video_height=int(json_video_stream['height']),
        video_width=int(json_video_stream['width']),
        video_fps=float(fps_exact),
        video_fps_exact=fps_exact,
        codec_name=json_video_stream['codec_name'],
        duration=float(json_video_stream.get('duration', json_video_format.get('duration', 0.0))),
        time_base=_parse_rate(json_video_stream.get('time_base', '1/1')),
        num_frames=num_frames,
    )
