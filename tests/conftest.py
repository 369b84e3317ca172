from __future__ import annotations

from pathlib import Path
from typing import Callable

import pytest
import pyvips

from splitter.settings import (
    ArchiveSettings,
    LoggingSettings,
    Settings,
    StorageSettings,
    TelemetrySettings,
    TilingSettings,
)


def pixel_bytes(width: int, height: int) -> bytes:
    """Deterministic RGB buffer where every pixel depends on its coordinates."""

    return bytes(
        (x * 7 + y * 13 + band * 61) % 256
        for y in range(height)
        for x in range(width)
        for band in range(3)
    )


def rgb_image(width: int, height: int) -> pyvips.Image:
    image = pyvips.Image.new_from_memory(pixel_bytes(width, height), width, height, 3, "uchar")
    return image.copy(interpretation="srgb")


def make_settings(
    tmp_path: Path,
    *,
    max_workers: int = 2,
    failure_log: bool = True,
    max_upload_bytes: int = 5_000_000,
) -> Settings:
    return Settings(
        env_path=".env",
        tiling=TilingSettings(default_max_edge=0, max_workers=max_workers, png_compression=6, fallback_name="image"),
        archive=ArchiveSettings(zip_compression=9),
        storage=StorageSettings(scratch_root=tmp_path / "scratch", max_upload_bytes=max_upload_bytes),
        logging=LoggingSettings(
            level="DEBUG",
            failure_log_path=tmp_path / "ops" / "failures.jsonl" if failure_log else None,
        ),
        telemetry=TelemetrySettings(prometheus_port=0),
    )


@pytest.fixture
def png_factory() -> Callable[[int, int], bytes]:
    def _factory(width: int, height: int) -> bytes:
        return rgb_image(width, height).write_to_buffer(".png")

    return _factory


@pytest.fixture
def test_settings(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Settings:
    settings = make_settings(tmp_path)
    monkeypatch.setattr("splitter.pipeline.get_settings", lambda: settings)
    return settings


def scratch_entries(settings: Settings) -> list[Path]:
    root = settings.storage.scratch_root
    if not root.exists():
        return []
    return sorted(root.rglob("*"))
