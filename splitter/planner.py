"""Grid planning: turn image dimensions into row-major tile rectangles."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterator

from splitter.errors import InvalidDimensions, InvalidTileParameter, MissingTileParameter, TileTooSmall


@dataclass(frozen=True, slots=True)
class TileSpec:
    """Pixel rectangle for one grid cell."""

    row: int
    col: int
    left: int
    top: int
    width: int
    height: int

    @property
    def right(self) -> int:
        return self.left + self.width

    @property
    def bottom(self) -> int:
        return self.top + self.height


@dataclass(frozen=True, slots=True)
class TilePlan:
    """Ordered (row-major) tile rectangles covering an image exactly."""

    image_width: int
    image_height: int
    rows: int
    cols: int
    tiles: tuple[TileSpec, ...]

    def __iter__(self) -> Iterator[TileSpec]:
        return iter(self.tiles)

    def __len__(self) -> int:
        return len(self.tiles)

    @property
    def base_tile_size(self) -> tuple[int, int]:
        return self.image_width // self.cols, self.image_height // self.rows


@dataclass(frozen=True, slots=True)
class TilingParameter:
    """Exactly one of ``max_tile_edge`` or ``rows`` + ``cols``."""

    max_tile_edge: int | None = None
    rows: int | None = None
    cols: int | None = None

    @property
    def is_grid(self) -> bool:
        return self.rows is not None


def resolve_tiling(
    *,
    max_tile_edge: int | None = None,
    rows: int | None = None,
    cols: int | None = None,
) -> TilingParameter:
    """Validate the caller-supplied tiling shape."""

    if rows is not None or cols is not None:
        if max_tile_edge is not None:
            raise InvalidTileParameter("Provide either max_tile_edge or rows and cols, not both")
        if rows is None or cols is None:
            raise InvalidTileParameter("rows and cols must be supplied together")
        if rows <= 0 or cols <= 0:
            raise InvalidTileParameter(f"rows and cols must be positive, received {rows}x{cols}")
        return TilingParameter(rows=rows, cols=cols)
    if max_tile_edge is None:
        raise MissingTileParameter("Provide max_tile_edge or rows and cols")
    if max_tile_edge <= 0:
        raise InvalidTileParameter(f"max_tile_edge must be positive, received {max_tile_edge}")
    return TilingParameter(max_tile_edge=max_tile_edge)


def plan_tiles(width: int, height: int, max_edge: int) -> TilePlan:
    """Derive the grid from a maximum tile edge and lay out its rectangles.

    ``cols = ceil(width / max_edge)`` and ``rows = ceil(height / max_edge)``;
    the last column and the last row absorb the division remainder.
    """

    _check_dimensions(width, height)
    if max_edge <= 0:
        raise InvalidTileParameter(f"max_tile_edge must be positive, received {max_edge}")
    cols = max(1, math.ceil(width / max_edge))
    rows = max(1, math.ceil(height / max_edge))
    return _layout(width, height, rows=rows, cols=cols)


def plan_grid(width: int, height: int, rows: int, cols: int) -> TilePlan:
    """Lay out an explicit ``rows`` x ``cols`` grid."""

    _check_dimensions(width, height)
    if rows <= 0 or cols <= 0:
        raise InvalidTileParameter(f"rows and cols must be positive, received {rows}x{cols}")
    return _layout(width, height, rows=rows, cols=cols)


def plan_for(width: int, height: int, tiling: TilingParameter) -> TilePlan:
    if tiling.rows is not None and tiling.cols is not None:
        return plan_grid(width, height, tiling.rows, tiling.cols)
    if tiling.max_tile_edge is not None:
        return plan_tiles(width, height, tiling.max_tile_edge)
    raise MissingTileParameter("Provide max_tile_edge or rows and cols")


def _check_dimensions(width: int, height: int) -> None:
    if width <= 0 or height <= 0:
        raise InvalidDimensions(f"Image dimensions must be positive, received {width}x{height}")


def _layout(width: int, height: int, *, rows: int, cols: int) -> TilePlan:
    tile_w = width // cols
    tile_h = height // rows
    if tile_w <= 0 or tile_h <= 0:
        raise TileTooSmall(
            f"A {rows}x{cols} grid over {width}x{height} leaves tiles of {tile_w}x{tile_h} px"
        )

    specs: list[TileSpec] = []
    for row in range(rows):
        top = row * tile_h
        h = height - top if row == rows - 1 else tile_h
        h = max(1, min(h, height - top))
        for col in range(cols):
            left = col * tile_w
            w = width - left if col == cols - 1 else tile_w
            w = max(1, min(w, width - left))
            specs.append(TileSpec(row=row, col=col, left=left, top=top, width=w, height=h))
    return TilePlan(image_width=width, image_height=height, rows=rows, cols=cols, tiles=tuple(specs))
