"""Append failed-run records to an ops JSONL log."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any

from splitter.errors import SplitError
from splitter.settings import Settings, get_settings


def _normalize_error(error: BaseException) -> dict[str, Any]:
    if isinstance(error, SplitError):
        return {"kind": error.kind, "message": error.message}
    return {"kind": "Internal", "message": str(error) or error.__class__.__name__}


def append_failure_log(
    *,
    run_id: str,
    base_name: str,
    error: BaseException,
    grid: tuple[int, int] | None = None,
    tiles_written: int = 0,
    settings: Settings | None = None,
) -> None:
    """Append one JSON line describing a failed run.

    No-op when ``SPLITTER_FAILURE_LOG_PATH`` is empty. Cancelled runs are not
    recorded since they reflect the caller going away, not a fault.
    """

    cfg = settings or get_settings()
    log_path = cfg.logging.failure_log_path
    if log_path is None:
        return
    normalized = _normalize_error(error)
    if normalized["kind"] == "Cancelled":
        return

    record: dict[str, Any] = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "run_id": run_id,
        "base_name": base_name,
        "error": normalized,
    }
    if grid is not None:
        record["grid"] = {"rows": grid[0], "cols": grid[1]}
    if tiles_written:
        record["tiles_written"] = tiles_written

    log_path.parent.mkdir(parents=True, exist_ok=True)
    with log_path.open("a", encoding="utf-8") as handle:
        handle.write(json.dumps(record))
        handle.write("\n")
