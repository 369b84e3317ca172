"""Stream tile files into a single ZIP archive."""

from __future__ import annotations

import logging
import os
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import Sequence

from splitter.errors import ArchiveWriteFailed
from splitter.lifecycle import ArtifactHandle, ArtifactKind, RunContext
from splitter.tiler import TileArtifact

LOGGER = logging.getLogger(__name__)

ARCHIVE_SUFFIX = "tiles"


@dataclass(frozen=True, slots=True)
class ArchiveArtifact:
    filename: str
    path: Path
    handle: ArtifactHandle
    members: tuple[str, ...]
    size: int

    def read_bytes(self) -> bytes:
        return self.path.read_bytes()


def archive_filename(base_name: str, suffix: str = ARCHIVE_SUFFIX) -> str:
    return f"{base_name}_{suffix}.zip"


def build_archive(
    tiles: Sequence[TileArtifact],
    *,
    run: RunContext,
    filename: str,
    compresslevel: int = 9,
) -> ArchiveArtifact:
    """Write ``tiles`` into ``filename`` under the run directory, in order.

    The archive is returned only after the container is closed and the file is
    synced to disk. On any write error the partial file is released before
    ``ArchiveWriteFailed`` propagates.
    """

    path = run.directory / filename
    handle = run.register(path, ArtifactKind.ARCHIVE)
    members: list[str] = []
    try:
        with path.open("wb") as raw:
            with zipfile.ZipFile(raw, mode="w", compression=zipfile.ZIP_DEFLATED, compresslevel=compresslevel) as archive:
                for tile in tiles:
                    member = Path(tile.filename).name
                    archive.write(tile.path, arcname=member)
                    members.append(member)
            raw.flush()
            os.fsync(raw.fileno())
        size = path.stat().st_size
    except (OSError, zipfile.BadZipFile, ValueError) as exc:
        run.release(handle)
        raise ArchiveWriteFailed(f"Failed to write archive {filename}: {exc}", run_id=run.run_id) from exc

    LOGGER.debug("Run %s archived %d tiles into %s (%d bytes)", run.run_id, len(members), filename, size)
    return ArchiveArtifact(filename=filename, path=path, handle=handle, members=tuple(members), size=size)
