"""Configuration helpers bound to python-decouple."""

from __future__ import annotations

import logging
import os
import tempfile
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

from decouple import AutoConfig, Config as DecoupleConfig, RepositoryEnv

DEFAULT_ENV_PATH = ".env"


@dataclass(frozen=True, slots=True)
class TilingSettings:
    """Knobs for grid planning and tile encoding."""

    default_max_edge: int
    max_workers: int
    png_compression: int
    fallback_name: str

    def worker_count(self) -> int:
        if self.max_workers > 0:
            return self.max_workers
        return os.cpu_count() or 1


@dataclass(frozen=True, slots=True)
class ArchiveSettings:
    zip_compression: int


@dataclass(frozen=True, slots=True)
class StorageSettings:
    """Scratch area used by runs for the source copy, tiles and archive."""

    scratch_root: Path
    max_upload_bytes: int


@dataclass(frozen=True, slots=True)
class LoggingSettings:
    level: str
    failure_log_path: Path | None


@dataclass(frozen=True, slots=True)
class TelemetrySettings:
    prometheus_port: int


@dataclass(frozen=True, slots=True)
class Settings:
    """Top-level settings object shared by the API, pipeline and CLI."""

    env_path: str
    tiling: TilingSettings
    archive: ArchiveSettings
    storage: StorageSettings
    logging: LoggingSettings
    telemetry: TelemetrySettings


def load_config(env_path: str = DEFAULT_ENV_PATH) -> DecoupleConfig:
    """Return a decouple config anchored to ``env_path`` (env vars only when missing)."""

    if Path(env_path).exists():
        return DecoupleConfig(RepositoryEnv(env_path))
    return AutoConfig(search_path=str(Path(env_path).resolve().parent))


def _bounded(value: int, *, low: int, high: int, name: str) -> int:
    if not low <= value <= high:
        msg = f"{name} must be between {low} and {high}, received {value}"
        raise ValueError(msg)
    return value


def build_settings(env_path: str = DEFAULT_ENV_PATH) -> Settings:
    """Read every section from ``env_path`` / the process environment."""

    config = load_config(env_path)

    default_scratch = Path(tempfile.gettempdir()) / "splitter"
    failure_log = config("SPLITTER_FAILURE_LOG_PATH", default="ops/failures.jsonl")

    tiling = TilingSettings(
        default_max_edge=config("SPLITTER_DEFAULT_MAX_EDGE", default=0, cast=int),
        max_workers=config("SPLITTER_MAX_WORKERS", default=0, cast=int),
        png_compression=_bounded(
            config("SPLITTER_PNG_COMPRESSION", default=6, cast=int),
            low=0,
            high=9,
            name="SPLITTER_PNG_COMPRESSION",
        ),
        fallback_name=config("SPLITTER_FALLBACK_NAME", default="image"),
    )
    archive = ArchiveSettings(
        zip_compression=_bounded(
            config("SPLITTER_ZIP_COMPRESSION", default=9, cast=int),
            low=0,
            high=9,
            name="SPLITTER_ZIP_COMPRESSION",
        ),
    )
    storage = StorageSettings(
        scratch_root=Path(config("SPLITTER_SCRATCH_DIR", default=str(default_scratch))),
        max_upload_bytes=config("SPLITTER_MAX_UPLOAD_BYTES", default=50 * 1024 * 1024, cast=int),
    )
    logging_settings = LoggingSettings(
        level=config("LOG_LEVEL", default="INFO").upper(),
        failure_log_path=Path(failure_log) if failure_log else None,
    )
    telemetry = TelemetrySettings(prometheus_port=config("PROMETHEUS_PORT", default=0, cast=int))
    return Settings(
        env_path=env_path,
        tiling=tiling,
        archive=archive,
        storage=storage,
        logging=logging_settings,
        telemetry=telemetry,
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return the cached process-wide settings."""

    return build_settings()


def configure_logging(active: Settings | None = None) -> None:
    """Apply the configured root log level (idempotent)."""

    cfg = active or get_settings()
    logging.basicConfig(
        level=getattr(logging, cfg.logging.level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


settings = get_settings()
