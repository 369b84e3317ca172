from __future__ import annotations

import io
import json
import threading
import zipfile
from typing import Callable

import pytest
import pyvips

from splitter import pipeline, tiler
from splitter.errors import (
    ArchiveWriteFailed,
    ExtractionFailed,
    InternalError,
    MissingUpload,
    RunCancelled,
    TileTooSmall,
)
from splitter.pipeline import SplitRequest, derive_base_name, run_split
from splitter.planner import TileSpec, resolve_tiling
from splitter.settings import Settings

from tests.conftest import make_settings, pixel_bytes, scratch_entries

PngFactory = Callable[[int, int], bytes]


@pytest.mark.parametrize(
    "filename,expected",
    [
        ("photo.jpg", "photo"),
        ("archive.tar.gz", "archive.tar"),
        ("C:\\Users\\me\\scan 01.PNG", "scan_01"),
        ("../../etc/passwd", "passwd"),
        ("風景.png", "風景"),
        (".png", "image"),
        ("", "image"),
        (None, "image"),
    ],
)
def test_derive_base_name(filename: str | None, expected: str) -> None:
    assert derive_base_name(filename) == expected


def test_split_returns_tiles_and_archive(test_settings: Settings, png_factory: PngFactory) -> None:
    request = SplitRequest(data=png_factory(100, 70), tiling=resolve_tiling(max_tile_edge=40), filename="map.png")

    result = run_split(request, settings=test_settings)

    assert (result.width, result.height, result.rows, result.cols) == (100, 70, 2, 3)
    names = [tile.filename for tile in result.tiles]
    assert names == [f"map_{r}_{c}.png" for r in range(2) for c in range(3)]
    assert result.archive.filename == "map_tiles.zip"
    with zipfile.ZipFile(io.BytesIO(result.archive.data)) as bundle:
        assert bundle.namelist() == names
        assert [bundle.read(name) for name in names] == [tile.data for tile in result.tiles]
    assert scratch_entries(test_settings) == []


def test_split_is_lossless(test_settings: Settings, png_factory: PngFactory) -> None:
    result = run_split(
        SplitRequest(data=png_factory(45, 31), tiling=resolve_tiling(rows=3, cols=4), filename="x.png"),
        settings=test_settings,
    )

    canvas = pyvips.Image.black(45, 31, bands=3)
    for tile in result.tiles:
        canvas = canvas.insert(pyvips.Image.new_from_buffer(tile.data, ""), tile.spec.left, tile.spec.top)
    assert canvas.write_to_memory() == pixel_bytes(45, 31)


def test_repeated_runs_are_deterministic(test_settings: Settings, png_factory: PngFactory) -> None:
    request = SplitRequest(data=png_factory(64, 48), tiling=resolve_tiling(max_tile_edge=16), filename="grid.png")

    first = run_split(request, settings=test_settings)
    second = run_split(request, settings=test_settings)

    assert first.run_id != second.run_id
    assert [t.filename for t in first.tiles] == [t.filename for t in second.tiles]
    assert [t.sha256 for t in first.tiles] == [t.sha256 for t in second.tiles]
    assert first.archive.members == second.archive.members


def test_empty_upload_is_rejected(test_settings: Settings) -> None:
    with pytest.raises(MissingUpload):
        run_split(SplitRequest(data=b"", tiling=resolve_tiling(max_tile_edge=10)), settings=test_settings)
    assert scratch_entries(test_settings) == []


def test_undecodable_upload_fails_and_cleans_up(test_settings: Settings) -> None:
    request = SplitRequest(data=b"GIF89a-but-not-really", tiling=resolve_tiling(max_tile_edge=10), filename="x.gif")

    with pytest.raises(ExtractionFailed) as excinfo:
        run_split(request, settings=test_settings)

    assert excinfo.value.run_id
    assert scratch_entries(test_settings) == []


def test_planner_rejection_cleans_up(test_settings: Settings, png_factory: PngFactory) -> None:
    request = SplitRequest(data=png_factory(6, 6), tiling=resolve_tiling(rows=10, cols=2), filename="tiny.png")

    with pytest.raises(TileTooSmall):
        run_split(request, settings=test_settings)
    assert scratch_entries(test_settings) == []


def test_extraction_failure_cleans_up(
    test_settings: Settings, png_factory: PngFactory, monkeypatch: pytest.MonkeyPatch
) -> None:
    real_extract = tiler.extract_tile

    def _fail_last(src: tiler.SourceImage, spec: TileSpec, *, compression: int = 6) -> bytes:
        if (spec.row, spec.col) == (2, 2):
            raise ExtractionFailed("encoder crashed")
        return real_extract(src, spec, compression=compression)

    monkeypatch.setattr(tiler, "extract_tile", _fail_last)
    request = SplitRequest(data=png_factory(30, 30), tiling=resolve_tiling(rows=3, cols=3), filename="x.png")

    with pytest.raises(ExtractionFailed):
        run_split(request, settings=test_settings)
    assert scratch_entries(test_settings) == []


def test_archive_failure_cleans_up(
    test_settings: Settings, png_factory: PngFactory, monkeypatch: pytest.MonkeyPatch
) -> None:
    def _broken_write(self, filename, arcname=None, *args, **kwargs):  # noqa: ANN001
        raise OSError(28, "No space left on device")

    monkeypatch.setattr(zipfile.ZipFile, "write", _broken_write)
    request = SplitRequest(data=png_factory(30, 30), tiling=resolve_tiling(max_tile_edge=10), filename="x.png")

    with pytest.raises(ArchiveWriteFailed):
        run_split(request, settings=test_settings)
    assert scratch_entries(test_settings) == []


def test_unexpected_io_fault_becomes_internal_error(
    test_settings: Settings, png_factory: PngFactory, monkeypatch: pytest.MonkeyPatch
) -> None:
    def _unreadable(tiles):  # noqa: ANN001
        raise OSError(5, "Input/output error")

    monkeypatch.setattr(pipeline, "read_tiles", _unreadable)
    request = SplitRequest(data=png_factory(20, 20), tiling=resolve_tiling(max_tile_edge=10), filename="x.png")

    with pytest.raises(InternalError) as excinfo:
        run_split(request, settings=test_settings)

    assert isinstance(excinfo.value.__cause__, OSError)
    assert scratch_entries(test_settings) == []


def test_cancelled_run_returns_nothing_and_cleans_up(test_settings: Settings, png_factory: PngFactory) -> None:
    cancel = threading.Event()
    cancel.set()
    request = SplitRequest(data=png_factory(20, 20), tiling=resolve_tiling(max_tile_edge=10), filename="x.png")

    with pytest.raises(RunCancelled):
        run_split(request, settings=test_settings, cancel=cancel)
    assert scratch_entries(test_settings) == []
    assert not test_settings.logging.failure_log_path.exists()


def test_failures_are_appended_to_failure_log(test_settings: Settings, png_factory: PngFactory) -> None:
    request = SplitRequest(data=png_factory(6, 6), tiling=resolve_tiling(rows=10, cols=2), filename="tiny.png")

    with pytest.raises(TileTooSmall):
        run_split(request, settings=test_settings)

    lines = test_settings.logging.failure_log_path.read_text(encoding="utf-8").splitlines()
    record = json.loads(lines[-1])
    assert record["base_name"] == "tiny"
    assert record["error"]["kind"] == "TileTooSmall"


def test_disabled_failure_log_in_passed_settings_is_honoured(
    tmp_path, monkeypatch: pytest.MonkeyPatch, png_factory: PngFactory  # noqa: ANN001
) -> None:
    monkeypatch.chdir(tmp_path)
    quiet = make_settings(tmp_path, failure_log=False)
    request = SplitRequest(data=png_factory(6, 6), tiling=resolve_tiling(rows=10, cols=2), filename="tiny.png")

    with pytest.raises(TileTooSmall):
        run_split(request, settings=quiet)

    assert not (tmp_path / "ops").exists()
    assert scratch_entries(quiet) == []
