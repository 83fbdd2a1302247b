from __future__ import annotations

import math
from dataclasses import dataclass

from tilesr.errors import InvalidConfiguration


@dataclass(frozen=True)
class Tile:
    column: int
    row: int
    source_x: int
    source_y: int
    source_width: int
    source_height: int
    dest_x: int
    dest_y: int
    dest_width: int
    dest_height: int
    is_left_edge: bool
    is_right_edge: bool
    is_top_edge: bool
    is_bottom_edge: bool


def compute_tile_origins(*, size: int, tile: int, overlap: int) -> list[tuple[int, int]]:
    """Return (origin, length) pairs along one axis.

    Consecutive tiles advance by ``tile - overlap``; the last tile is pulled
    back so it ends exactly on the frame border.
    """
    size = int(size)
    tile = int(tile)
    overlap = int(overlap)
    effective = tile - overlap
    if effective <= 0:
        raise InvalidConfiguration(f"overlap ({overlap}) must be smaller than the tile size ({tile})")
    if size <= 0:
        raise InvalidConfiguration(f"frame dimension must be > 0, got {size}")

    count = max(1, math.ceil((size - overlap) / effective))
    spans: list[tuple[int, int]] = []
    for i in range(count):
        origin = max(0, min(i * effective, size - tile))
        spans.append((origin, min(tile, size - origin)))
    return spans


def scaled_extent(size: int, scale: float) -> int:
    return int(math.floor(int(size) * float(scale)))


class TileScheduler:
    def __init__(self, *, tile_width: int, tile_height: int, overlap: int, user_scale_factor: float) -> None:
        self.tile_width = int(tile_width)
        self.tile_height = int(tile_height)
        self.overlap = int(overlap)
        self.user_scale_factor = float(user_scale_factor)

        if self.tile_width <= 0 or self.tile_height <= 0:
            raise InvalidConfiguration("tile size must be > 0")
        if self.overlap < 0:
            raise InvalidConfiguration("overlap must be >= 0")
        if self.overlap >= min(self.tile_width, self.tile_height):
            raise InvalidConfiguration(
                f"overlap ({self.overlap}) must be smaller than the tile size "
                f"({self.tile_width}x{self.tile_height})"
            )
        if not self.user_scale_factor > 0:
            raise InvalidConfiguration("user_scale_factor must be > 0")

    def output_size(self, frame_width: int, frame_height: int) -> tuple[int, int]:
        return (
            scaled_extent(frame_width, self.user_scale_factor),
            scaled_extent(frame_height, self.user_scale_factor),
        )

    def schedule(self, frame_width: int, frame_height: int) -> list[Tile]:
        """Tiles for one frame in row-major scan order.

        Destination rects are derived from the scaled source edges, so
        neighbouring tiles share their boundary exactly and the union is
        the whole output frame.
        """
        xs = compute_tile_origins(size=frame_width, tile=self.tile_width, overlap=self.overlap)
        ys = compute_tile_origins(size=frame_height, tile=self.tile_height, overlap=self.overlap)
        s = self.user_scale_factor

        tiles: list[Tile] = []
        for row, (y, h) in enumerate(ys):
            dest_y = scaled_extent(y, s)
            dest_h = scaled_extent(y + h, s) - dest_y
            for column, (x, w) in enumerate(xs):
                dest_x = scaled_extent(x, s)
                dest_w = scaled_extent(x + w, s) - dest_x
                tiles.append(
                    Tile(
                        column=column,
                        row=row,
                        source_x=x,
                        source_y=y,
                        source_width=w,
                        source_height=h,
                        dest_x=dest_x,
                        dest_y=dest_y,
                        dest_width=dest_w,
                        dest_height=dest_h,
                        is_left_edge=column == 0,
                        is_right_edge=column == len(xs) - 1,
                        is_top_edge=row == 0,
                        is_bottom_edge=row == len(ys) - 1,
                    )
                )
        return tiles
