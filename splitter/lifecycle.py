"""Run-scoped ownership of scratch artifacts.

A ``RunContext`` hands out one ``ArtifactHandle`` per file a run creates (the
source copy, each tile, the archive). Handles are released exactly once, and
``close()`` releases whatever is still live on every exit path. Removal
failures are logged and counted but never raised, so they cannot replace the
run's own outcome.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from types import TracebackType
from typing import Any
from uuid import uuid4

from splitter import metrics

LOGGER = logging.getLogger(__name__)


class ArtifactKind(str, Enum):
    SOURCE = "source"
    TILE = "tile"
    ARCHIVE = "archive"


@dataclass(slots=True)
class ArtifactHandle:
    """A registered scratch file and whether it has been released."""

    path: Path
    kind: ArtifactKind
    released: bool = False


@dataclass
class RunContext:
    """Scratch directory, artifact handles and outcome for one run."""

    scratch_root: Path
    base_name: str
    run_id: str = field(default_factory=lambda: uuid4().hex)
    result: Any = None
    error: BaseException | None = None
    _handles: list[ArtifactHandle] = field(default_factory=list, init=False, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)
    _closed: bool = field(default=False, init=False, repr=False)

    @property
    def directory(self) -> Path:
        return self.scratch_root / f"run-{self.run_id}"

    def __enter__(self) -> RunContext:
        self.directory.mkdir(parents=True, exist_ok=False)
        LOGGER.debug("Run %s scratch directory %s", self.run_id, self.directory)
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        if exc is not None and self.error is None:
            self.error = exc
        self.close()

    def register(self, path: Path, kind: ArtifactKind) -> ArtifactHandle:
        """Take ownership of ``path``; call before the file is written."""

        handle = ArtifactHandle(path=Path(path), kind=kind)
        with self._lock:
            if self._closed:
                raise RuntimeError(f"Run {self.run_id} is closed; cannot register {path}")
            self._handles.append(handle)
        return handle

    def release(self, handle: ArtifactHandle) -> bool:
        """Delete the handle's file once. Returns ``False`` when already released."""

        with self._lock:
            if handle.released:
                return False
            handle.released = True
        try:
            handle.path.unlink(missing_ok=True)
        except OSError as exc:
            metrics.increment_cleanup_failure(handle.kind.value)
            LOGGER.warning("Run %s failed to remove %s artifact %s: %s", self.run_id, handle.kind.value, handle.path, exc)
        return True

    def release_kind(self, kind: ArtifactKind) -> int:
        released = 0
        for handle in self._snapshot():
            if handle.kind is kind and self.release(handle):
                released += 1
        return released

    def live_paths(self) -> list[Path]:
        return [handle.path for handle in self._snapshot() if not handle.released]

    def close(self) -> None:
        """Release every live artifact and remove the run directory."""

        with self._lock:
            if self._closed:
                return
            self._closed = True
        for handle in self._snapshot():
            self.release(handle)
        try:
            self.directory.rmdir()
        except FileNotFoundError:
            pass
        except OSError as exc:
            metrics.increment_cleanup_failure("directory")
            LOGGER.warning("Run %s failed to remove scratch directory %s: %s", self.run_id, self.directory, exc)

    def _snapshot(self) -> list[ArtifactHandle]:
        with self._lock:
            return list(self._handles)
