"""Split orchestration: source copy, plan, extract, archive, cleanup."""

from __future__ import annotations

import logging
import re
import threading
import time
from dataclasses import dataclass
from pathlib import Path, PurePosixPath

from splitter import metrics
from splitter.archive import archive_filename, build_archive
from splitter.errors import InternalError, MissingUpload, RunCancelled, SplitError
from splitter.lifecycle import ArtifactKind, RunContext
from splitter.planner import TilePlan, TileSpec, TilingParameter, plan_for
from splitter.run_log import append_failure_log
from splitter.settings import Settings, get_settings
from splitter.tiler import SourceImage, extract_tiles, read_tiles

LOGGER = logging.getLogger(__name__)

_UNSAFE_NAME_CHARS = re.compile(r"[^\w.-]+")
_SOURCE_SUFFIX = re.compile(r"^\.[A-Za-z0-9]{1,8}$")


@dataclass(frozen=True, slots=True)
class SplitRequest:
    """Raw upload plus the validated tiling parameter for one run."""

    data: bytes
    tiling: TilingParameter
    filename: str | None = None


@dataclass(frozen=True, slots=True)
class TileOutput:
    spec: TileSpec
    filename: str
    data: bytes
    sha256: str


@dataclass(frozen=True, slots=True)
class ArchiveOutput:
    filename: str
    data: bytes
    members: tuple[str, ...]


@dataclass(frozen=True, slots=True)
class SplitResult:
    """Everything a caller receives from a successful run."""

    run_id: str
    base_name: str
    width: int
    height: int
    rows: int
    cols: int
    tiles: tuple[TileOutput, ...]
    archive: ArchiveOutput


@dataclass
class _Progress:
    grid: tuple[int, int] | None = None
    tiles_written: int = 0


def derive_base_name(filename: str | None, fallback: str = "image") -> str:
    """Strip directories and the last extension from an upload's filename."""

    if not filename:
        return fallback
    name = PurePosixPath(filename.replace("\\", "/")).name
    stem = name.rsplit(".", 1)[0] if "." in name else name
    cleaned = _UNSAFE_NAME_CHARS.sub("_", stem).strip("._")
    return cleaned or fallback


def run_split(
    request: SplitRequest,
    *,
    settings: Settings | None = None,
    cancel: threading.Event | None = None,
) -> SplitResult:
    """Run one split end to end.

    Every artifact the run creates is removed before this function returns or
    raises. Failures surface as ``SplitError`` subclasses; unexpected faults are
    wrapped in ``InternalError``.
    """

    cfg = settings or get_settings()
    base_name = derive_base_name(request.filename, cfg.tiling.fallback_name)
    run = RunContext(scratch_root=cfg.storage.scratch_root, base_name=base_name)
    progress = _Progress()
    started = time.perf_counter()
    try:
        with run:
            result = _execute(run, request, cfg, cancel, progress)
            run.result = result
    except SplitError as exc:
        exc.run_id = exc.run_id or run.run_id
        _record_failure(run, exc, progress, started, cfg)
        raise
    except Exception as exc:
        LOGGER.exception("Run %s failed unexpectedly", run.run_id)
        error = InternalError(f"Unexpected failure: {exc}", run_id=run.run_id)
        _record_failure(run, error, progress, started, cfg)
        raise error from exc

    metrics.observe_run("success", time.perf_counter() - started)
    metrics.increment_tiles(len(result.tiles))
    LOGGER.info(
        "Run %s split %s (%dx%d) into %dx%d tiles",
        run.run_id,
        base_name,
        result.width,
        result.height,
        result.rows,
        result.cols,
    )
    return result


def _execute(
    run: RunContext,
    request: SplitRequest,
    cfg: Settings,
    cancel: threading.Event | None,
    progress: _Progress,
) -> SplitResult:
    if not request.data:
        raise MissingUpload("Uploaded image is empty", run_id=run.run_id)
    _check_cancel(cancel, run)

    source = _load_source(run, request)
    plan: TilePlan = plan_for(source.width, source.height, request.tiling)
    progress.grid = (plan.rows, plan.cols)
    LOGGER.debug("Run %s planned %dx%d grid over %dx%d", run.run_id, plan.rows, plan.cols, source.width, source.height)
    _check_cancel(cancel, run)

    tiles = extract_tiles(
        source,
        plan,
        run=run,
        base_name=run.base_name,
        max_workers=cfg.tiling.worker_count(),
        compression=cfg.tiling.png_compression,
        cancel=cancel,
    )
    progress.tiles_written = len(tiles)
    _check_cancel(cancel, run)

    archive = build_archive(
        tiles,
        run=run,
        filename=archive_filename(run.base_name),
        compresslevel=cfg.archive.zip_compression,
    )
    payloads = read_tiles(tiles)
    run.release_kind(ArtifactKind.TILE)
    archive_bytes = archive.read_bytes()
    run.release(archive.handle)

    return SplitResult(
        run_id=run.run_id,
        base_name=run.base_name,
        width=source.width,
        height=source.height,
        rows=plan.rows,
        cols=plan.cols,
        tiles=tuple(
            TileOutput(spec=tile.spec, filename=tile.filename, data=data, sha256=tile.sha256)
            for tile, data in zip(tiles, payloads)
        ),
        archive=ArchiveOutput(filename=archive.filename, data=archive_bytes, members=archive.members),
    )


def _load_source(run: RunContext, request: SplitRequest) -> SourceImage:
    """Copy the upload into scratch, decode it, and drop the copy."""

    suffix = Path(request.filename or "").suffix.lower()
    if not _SOURCE_SUFFIX.match(suffix):
        suffix = ".bin"
    path = run.directory / f"source{suffix}"
    handle = run.register(path, ArtifactKind.SOURCE)
    path.write_bytes(request.data)
    source = SourceImage.open(path)
    run.release(handle)
    return source


def _check_cancel(cancel: threading.Event | None, run: RunContext) -> None:
    if cancel is not None and cancel.is_set():
        raise RunCancelled("Run cancelled by caller", run_id=run.run_id)


def _record_failure(
    run: RunContext,
    error: SplitError,
    progress: _Progress,
    started: float,
    cfg: Settings,
) -> None:
    outcome = "cancelled" if isinstance(error, RunCancelled) else "failed"
    metrics.observe_run(outcome, time.perf_counter() - started)
    LOGGER.info("Run %s %s: %s %s", run.run_id, outcome, error.kind, error.message)
    try:
        append_failure_log(
            run_id=run.run_id,
            base_name=run.base_name,
            error=error,
            grid=progress.grid,
            tiles_written=progress.tiles_written,
            settings=cfg,
        )
    except OSError as exc:
        LOGGER.warning("Run %s failure log write failed: %s", run.run_id, exc)
