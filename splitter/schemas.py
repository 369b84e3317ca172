"""Pydantic DTOs shared across endpoints."""

from __future__ import annotations

import base64

from pydantic import BaseModel, Field

from splitter.pipeline import SplitResult

TILE_MEDIA_TYPE = "image/png"
ARCHIVE_MEDIA_TYPE = "application/zip"


def data_url(data: bytes, media_type: str) -> str:
    encoded = base64.b64encode(data).decode("ascii")
    return f"data:{media_type};base64,{encoded}"


class TilePayload(BaseModel):
    """One tile, inline-encoded for JSON transport."""

    filename: str = Field(description="Member name inside the archive")
    row: int = Field(ge=0)
    col: int = Field(ge=0)
    left: int = Field(ge=0, description="X offset of the tile inside the source")
    top: int = Field(ge=0, description="Y offset of the tile inside the source")
    width: int = Field(ge=1)
    height: int = Field(ge=1)
    size: int = Field(ge=0, description="Encoded byte length")
    sha256: str
    data_url: str = Field(description="base64 PNG data URL")


class ArchivePayload(BaseModel):
    """The ZIP holding every tile."""

    filename: str
    size: int = Field(ge=0)
    members: list[str] = Field(description="Member names in row-major order")
    data_url: str = Field(description="base64 ZIP data URL")


class SplitResponse(BaseModel):
    """Response envelope for a completed split."""

    run_id: str
    base_name: str
    width: int = Field(ge=1, description="Source width in pixels")
    height: int = Field(ge=1, description="Source height in pixels")
    rows: int = Field(ge=1)
    cols: int = Field(ge=1)
    tiles: list[TilePayload]
    parts: list[str] = Field(description="Tile data URLs in row-major order")
    archive: ArchivePayload


class ErrorDetail(BaseModel):
    kind: str = Field(description="Failure taxonomy kind (e.g. MissingTileParameter)")
    message: str
    run_id: str | None = None


class ErrorResponse(BaseModel):
    error: ErrorDetail


def build_split_response(result: SplitResult) -> SplitResponse:
    """Inline every tile and the archive as base64 data URLs."""

    tiles = [
        TilePayload(
            filename=tile.filename,
            row=tile.spec.row,
            col=tile.spec.col,
            left=tile.spec.left,
            top=tile.spec.top,
            width=tile.spec.width,
            height=tile.spec.height,
            size=len(tile.data),
            sha256=tile.sha256,
            data_url=data_url(tile.data, TILE_MEDIA_TYPE),
        )
        for tile in result.tiles
    ]
    archive = ArchivePayload(
        filename=result.archive.filename,
        size=len(result.archive.data),
        members=list(result.archive.members),
        data_url=data_url(result.archive.data, ARCHIVE_MEDIA_TYPE),
    )
    return SplitResponse(
        run_id=result.run_id,
        base_name=result.base_name,
        width=result.width,
        height=result.height,
        rows=result.rows,
        cols=result.cols,
        tiles=tiles,
        parts=[tile.data_url for tile in tiles],
        archive=archive,
    )
