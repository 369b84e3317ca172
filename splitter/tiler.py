"""Tile slicing utilities backed by pyvips."""

from __future__ import annotations

import hashlib
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from pathlib import Path

import pyvips

from splitter.errors import ExtractionFailed, RunCancelled
from splitter.lifecycle import ArtifactHandle, ArtifactKind, RunContext
from splitter.planner import TilePlan, TileSpec

LOGGER = logging.getLogger(__name__)

TILE_EXTENSION = "png"


@dataclass(frozen=True, slots=True)
class SourceImage:
    """Decoded source pixels held in memory for random-access crops."""

    image: pyvips.Image

    @property
    def width(self) -> int:
        return int(self.image.width)

    @property
    def height(self) -> int:
        return int(self.image.height)

    @property
    def bands(self) -> int:
        return int(self.image.bands)

    @classmethod
    def open(cls, path: Path) -> SourceImage:
        try:
            image = pyvips.Image.new_from_file(str(path), access="random")
            return cls(image=image.copy_memory())
        except pyvips.Error as exc:
            raise ExtractionFailed(f"Unable to decode {path.name}: {_vips_message(exc)}") from exc

    @classmethod
    def from_bytes(cls, data: bytes) -> SourceImage:
        try:
            image = pyvips.Image.new_from_buffer(data, "", access="random")
            return cls(image=image.copy_memory())
        except pyvips.Error as exc:
            raise ExtractionFailed(f"Unable to decode image bytes: {_vips_message(exc)}") from exc


@dataclass(frozen=True, slots=True)
class TileArtifact:
    """One encoded tile written to the run's scratch directory."""

    spec: TileSpec
    filename: str
    path: Path
    handle: ArtifactHandle
    size: int
    sha256: str

    def read_bytes(self) -> bytes:
        return self.path.read_bytes()


def tile_filename(base_name: str, spec: TileSpec, ext: str = TILE_EXTENSION) -> str:
    return f"{base_name}_{spec.row}_{spec.col}.{ext}"


def extract_tile(source: SourceImage, spec: TileSpec, *, compression: int = 6) -> bytes:
    """Copy ``spec``'s pixel region out of ``source`` and encode it as PNG."""

    if (
        spec.left < 0
        or spec.top < 0
        or spec.width < 1
        or spec.height < 1
        or spec.right > source.width
        or spec.bottom > source.height
    ):
        raise ExtractionFailed(
            f"Tile {spec.row},{spec.col} rectangle ({spec.left},{spec.top} {spec.width}x{spec.height}) "
            f"lies outside the {source.width}x{source.height} source"
        )
    try:
        region = source.image.crop(spec.left, spec.top, spec.width, spec.height)
        return region.write_to_buffer(f".{TILE_EXTENSION}", compression=compression)
    except pyvips.Error as exc:
        raise ExtractionFailed(f"Tile {spec.row},{spec.col} failed to encode: {_vips_message(exc)}") from exc


def extract_tiles(
    source: SourceImage,
    plan: TilePlan,
    *,
    run: RunContext,
    base_name: str,
    max_workers: int = 1,
    compression: int = 6,
    cancel: threading.Event | None = None,
) -> list[TileArtifact]:
    """Materialize every tile of ``plan`` under ``run`` and return them row-major.

    Tiles are encoded on a pool of at most ``max_workers`` threads. The first
    failure cancels queued tiles; tiles already in flight finish so their files
    are registered before the error propagates.
    """

    abort = threading.Event()

    def _job(spec: TileSpec) -> TileArtifact:
        if abort.is_set() or (cancel is not None and cancel.is_set()):
            raise RunCancelled("Run cancelled before tile extraction finished", run_id=run.run_id)
        filename = tile_filename(base_name, spec)
        path = run.directory / filename
        handle = run.register(path, ArtifactKind.TILE)
        data = extract_tile(source, spec, compression=compression)
        path.write_bytes(data)
        return TileArtifact(
            spec=spec,
            filename=filename,
            path=path,
            handle=handle,
            size=len(data),
            sha256=hashlib.sha256(data).hexdigest(),
        )

    results: list[TileArtifact | None] = [None] * len(plan)
    workers = max(1, min(max_workers, len(plan)))
    LOGGER.debug("Run %s extracting %d tiles on %d workers", run.run_id, len(plan), workers)
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="tile") as pool:
        futures: dict[Future[TileArtifact], int] = {
            pool.submit(_job, spec): index for index, spec in enumerate(plan)
        }
        try:
            for future in as_completed(futures):
                results[futures[future]] = future.result()
        except BaseException:
            abort.set()
            for future in futures:
                future.cancel()
            raise

    artifacts = [artifact for artifact in results if artifact is not None]
    if len(artifacts) != len(plan):  # pragma: no cover - as_completed yields every future
        raise ExtractionFailed(f"Expected {len(plan)} tiles, extracted {len(artifacts)}", run_id=run.run_id)
    return artifacts


def read_tiles(tiles: list[TileArtifact]) -> list[bytes]:
    """Read tile files back, checking each against its recorded checksum."""

    payloads: list[bytes] = []
    for tile in tiles:
        data = tile.read_bytes()
        if len(data) != tile.size or hashlib.sha256(data).hexdigest() != tile.sha256:
            raise ExtractionFailed(f"Tile {tile.filename} checksum mismatch")
        payloads.append(data)
    return payloads


def _vips_message(exc: pyvips.Error) -> str:
    lines = str(exc).strip().splitlines()
    return lines[0] if lines else exc.__class__.__name__
