"""Failure taxonomy for split runs.

Every failure is terminal for its run. The HTTP layer turns a ``SplitError``
into a single structured body using ``kind`` and ``status_code``.
"""

from __future__ import annotations

from typing import Any, ClassVar


class SplitError(Exception):
    """Base class for every failure a run can surface."""

    kind: ClassVar[str] = "Internal"
    status_code: ClassVar[int] = 500

    def __init__(self, message: str, *, run_id: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.run_id = run_id

    def to_payload(self) -> dict[str, Any]:
        return {"kind": self.kind, "message": self.message, "run_id": self.run_id}


class InvalidDimensions(SplitError):
    kind = "InvalidDimensions"
    status_code = 400


class MissingTileParameter(SplitError):
    kind = "MissingTileParameter"
    status_code = 400


class InvalidTileParameter(SplitError):
    """Both tiling shapes were supplied, or one of them is malformed."""

    kind = "InvalidTileParameter"
    status_code = 400


class MissingUpload(SplitError):
    kind = "MissingUpload"
    status_code = 400


class UploadTooLarge(SplitError):
    kind = "UploadTooLarge"
    status_code = 413


class TileTooSmall(SplitError):
    kind = "TileTooSmall"
    status_code = 400


class ExtractionFailed(SplitError):
    """Source could not be decoded, or a tile rectangle fell outside it."""

    kind = "ExtractionFailed"
    status_code = 422


class ArchiveWriteFailed(SplitError):
    kind = "ArchiveWriteFailed"
    status_code = 500


class RunCancelled(SplitError):
    """The caller went away; the run stopped and cleaned up."""

    kind = "Cancelled"
    status_code = 499


class InternalError(SplitError):
    kind = "Internal"
    status_code = 500
