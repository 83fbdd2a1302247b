from __future__ import annotations

import torch
import torch.nn.functional as F

from tilesr.config import DecodeResample
from tilesr.errors import InferenceFailed, TileExtractionFailed
from tilesr.tiling.scheduler import Tile


class TensorCodec:
    """Conversion between interleaved uint8 frame regions and planar model tensors.

    Frames are ``(H, W, 3)`` uint8. Model inputs are ``(C, tile_h, tile_w)``
    float32 in [0, 1], zero padded on the right and bottom. Decoded tiles are
    ``(3, dest_h, dest_w)`` float32 pixel values in [0, 255].
    """

    def __init__(
        self,
        *,
        channels: int,
        tile_width: int,
        tile_height: int,
        user_scale_factor: float,
        native_scale: float,
        resample: DecodeResample = DecodeResample.NEAREST,
    ) -> None:
        self.channels = int(channels)
        self.tile_width = int(tile_width)
        self.tile_height = int(tile_height)
        self.user_scale_factor = float(user_scale_factor)
        self.native_scale = float(native_scale)
        self.resample = resample
        if self.channels < 1:
            raise ValueError("channels must be >= 1")
        if self.native_scale <= 0:
            raise ValueError("native_scale must be > 0")

    @property
    def scale_ratio(self) -> float:
        return self.user_scale_factor / self.native_scale

    def extract(self, frame: torch.Tensor, tile: Tile) -> torch.Tensor:
        if frame.dtype != torch.uint8 or frame.dim() != 3 or frame.shape[2] < 3:
            raise TileExtractionFailed(f"expected (H, W, 3) uint8 frame, got {tuple(frame.shape)} {frame.dtype}")
        h, w = int(frame.shape[0]), int(frame.shape[1])
        if tile.source_x + tile.source_width > w or tile.source_y + tile.source_height > h:
            raise TileExtractionFailed(
                f"tile ({tile.column}, {tile.row}) at {tile.source_x},{tile.source_y} "
                f"{tile.source_width}x{tile.source_height} is outside the {w}x{h} frame"
            )
        return frame[
            tile.source_y : tile.source_y + tile.source_height,
            tile.source_x : tile.source_x + tile.source_width,
            :3,
        ]

    def encode(self, region: torch.Tensor) -> torch.Tensor:
        if region.dtype != torch.uint8 or region.dim() != 3 or region.shape[2] != 3:
            raise TileExtractionFailed(f"expected (h, w, 3) uint8 region, got {tuple(region.shape)} {region.dtype}")
        h, w = int(region.shape[0]), int(region.shape[1])
        if h == 0 or w == 0 or h > self.tile_height or w > self.tile_width:
            raise TileExtractionFailed(f"region {w}x{h} does not fit the {self.tile_width}x{self.tile_height} model tile")

        planar = region.permute(2, 0, 1).float().div_(255.0)
        if self.channels != 3:
            index = torch.tensor([c % 3 for c in range(self.channels)], device=planar.device)
            planar = planar.index_select(0, index)
        return F.pad(planar, (0, self.tile_width - w, 0, self.tile_height - h), value=0.0)

    def decode(self, tensor: torch.Tensor, tile: Tile) -> torch.Tensor:
        if tensor.dim() == 4 and tensor.shape[0] == 1:
            tensor = tensor[0]
        if tensor.dim() != 3 or tensor.shape[0] < 3 or tensor.shape[1] == 0 or tensor.shape[2] == 0:
            raise InferenceFailed(f"unexpected model output shape {tuple(tensor.shape)}")

        rgb = torch.nan_to_num(tensor[:3].float(), nan=0.0, posinf=1.0, neginf=0.0)
        if self.resample is DecodeResample.BICUBIC:
            out = self._decode_bicubic(rgb, tile)
        else:
            out = self._decode_nearest(rgb, tile)
        return out.mul_(255.0).clamp_(0.0, 255.0)

    def _decode_nearest(self, rgb: torch.Tensor, tile: Tile) -> torch.Tensor:
        _, th, tw = rgb.shape
        ratio = self.scale_ratio
        ys = torch.arange(tile.dest_height, dtype=torch.float64, device=rgb.device).div(ratio).floor()
        xs = torch.arange(tile.dest_width, dtype=torch.float64, device=rgb.device).div(ratio).floor()
        ys = ys.long().clamp_(0, th - 1)
        xs = xs.long().clamp_(0, tw - 1)
        return rgb.index_select(1, ys).index_select(2, xs)

    def _decode_bicubic(self, rgb: torch.Tensor, tile: Tile) -> torch.Tensor:
        _, th, tw = rgb.shape
        valid_h = max(1, min(th, round(tile.source_height * self.native_scale)))
        valid_w = max(1, min(tw, round(tile.source_width * self.native_scale)))
        if tile.dest_height == 0 or tile.dest_width == 0:
            return rgb.new_zeros(3, tile.dest_height, tile.dest_width)
        cropped = rgb[:, :valid_h, :valid_w].unsqueeze(0)
        return F.interpolate(
            cropped, size=(tile.dest_height, tile.dest_width), mode="bicubic", align_corners=False
        ).squeeze(0)

    @staticmethod
    def to_planar(region: torch.Tensor) -> torch.Tensor:
        """(h, w, 3) uint8 to (3, h, w) float32 in [0, 255]."""
        return region[..., :3].permute(2, 0, 1).float()

    @staticmethod
    def pack(pixels: torch.Tensor) -> torch.Tensor:
        """(3, H, W) float pixel values to an (H, W, 3) uint8 frame."""
        return pixels.round().clamp(0, 255).to(dtype=torch.uint8).permute(1, 2, 0).contiguous()
