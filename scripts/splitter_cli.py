#!/usr/bin/env python3
"""Command line helpers for planning, running, and uploading image splits."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional
from urllib.parse import unquote

import httpx
import typer
from decouple import Config as DecoupleConfig, RepositoryEnv
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from splitter.errors import SplitError
from splitter.pipeline import SplitRequest, SplitResult, run_split
from splitter.planner import TilePlan, TilingParameter, plan_for, resolve_tiling
from splitter.settings import get_settings

console = Console()
cli = typer.Typer(help="Split images into tile grids and ZIP archives")


@dataclass
class APISettings:
    base_url: str


def _load_env_settings() -> APISettings:
    env_path = Path(".env")
    if env_path.exists():
        config = DecoupleConfig(RepositoryEnv(str(env_path)))
        base_url = config("API_BASE_URL", default="http://localhost:8000")
        return APISettings(base_url=base_url)
    return APISettings(base_url="http://localhost:8000")


def _resolve_settings(override_base: Optional[str]) -> APISettings:
    settings = _load_env_settings()
    if override_base:
        settings.base_url = override_base
    return settings


def _client(settings: APISettings, http2: bool = True) -> httpx.Client:
    timeout = httpx.Timeout(connect=10.0, read=120.0, write=60.0, pool=10.0)
    return httpx.Client(
        base_url=settings.base_url,
        timeout=timeout,
        http2=http2,
    )


def _tiling_from_options(max_edge: Optional[int], rows: Optional[int], cols: Optional[int]) -> TilingParameter:
    if max_edge is None and rows is None and cols is None:
        default_edge = get_settings().tiling.default_max_edge
        if default_edge > 0:
            max_edge = default_edge
    try:
        return resolve_tiling(max_tile_edge=max_edge, rows=rows, cols=cols)
    except SplitError as exc:
        raise typer.BadParameter(exc.message, param_hint="--max-edge / --rows --cols") from exc


def _print_plan(plan: TilePlan) -> None:
    table = Table("Row", "Col", "Left", "Top", "Width", "Height", title=f"{plan.rows}x{plan.cols} grid")
    for spec in plan:
        table.add_row(*(str(value) for value in (spec.row, spec.col, spec.left, spec.top, spec.width, spec.height)))
    console.print(table)


def _plan_payload(plan: TilePlan) -> dict[str, Any]:
    return {
        "width": plan.image_width,
        "height": plan.image_height,
        "rows": plan.rows,
        "cols": plan.cols,
        "tiles": [
            {
                "row": spec.row,
                "col": spec.col,
                "left": spec.left,
                "top": spec.top,
                "width": spec.width,
                "height": spec.height,
            }
            for spec in plan
        ],
    }


def _print_result(result: SplitResult, written: list[Path]) -> None:
    table = Table("Field", "Value", title=f"Run {result.run_id}")
    table.add_row("source", f"{result.width}x{result.height}")
    table.add_row("grid", f"{result.rows}x{result.cols}")
    table.add_row("archive", f"{result.archive.filename} ({len(result.archive.data)} bytes)")
    table.add_row("written", "\n".join(str(path) for path in written))
    console.print(table)


def _write_binary_output(content: bytes, path: Path, *, description: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(content)
    console.print(f"[green]Saved {description} to {path}[/]")
    return path


def _extract_detail(response: httpx.Response) -> str | None:
    try:
        payload = response.json()
    except ValueError:
        return response.text or None
    error = payload.get("error") if isinstance(payload, dict) else None
    if isinstance(error, dict):
        return f"{error.get('kind')}: {error.get('message')}"
    return json.dumps(payload)


@cli.command()
def plan(
    width: int = typer.Argument(..., help="Image width in pixels"),
    height: int = typer.Argument(..., help="Image height in pixels"),
    max_edge: Optional[int] = typer.Option(None, "--max-edge", help="Largest tile edge in pixels"),
    rows: Optional[int] = typer.Option(None, "--rows", help="Explicit grid rows"),
    cols: Optional[int] = typer.Option(None, "--cols", help="Explicit grid columns"),
    json_output: bool = typer.Option(False, "--json", help="Emit the plan as JSON."),
) -> None:
    """Preview the tile grid for an image size without touching any pixels."""

    tiling = _tiling_from_options(max_edge, rows, cols)
    try:
        grid = plan_for(width, height, tiling)
    except SplitError as exc:
        console.print(f"[red]{exc.kind}: {escape(exc.message)}[/]")
        raise typer.Exit(1) from exc
    if json_output:
        console.print_json(data=_plan_payload(grid))
        return
    _print_plan(grid)


@cli.command()
def split(
    image: Path = typer.Argument(..., exists=True, dir_okay=False, readable=True, help="Image to split"),
    max_edge: Optional[int] = typer.Option(None, "--max-edge", help="Largest tile edge in pixels"),
    rows: Optional[int] = typer.Option(None, "--rows", help="Explicit grid rows"),
    cols: Optional[int] = typer.Option(None, "--cols", help="Explicit grid columns"),
    output: Path = typer.Option(Path("."), "--output", "-o", help="Directory for the archive and tiles"),
    tiles: bool = typer.Option(True, "--tiles/--no-tiles", help="Also write individual tile files."),
    json_output: bool = typer.Option(False, "--json", help="Emit a JSON summary."),
) -> None:
    """Split a local image and write the ZIP (and tiles) to OUTPUT."""

    tiling = _tiling_from_options(max_edge, rows, cols)
    request = SplitRequest(data=image.read_bytes(), tiling=tiling, filename=image.name)
    try:
        result = run_split(request)
    except SplitError as exc:
        if json_output:
            console.print_json(data={"status": "error", "error": exc.to_payload()})
        else:
            console.print(f"[red]{exc.kind}: {escape(exc.message)}[/]")
        raise typer.Exit(1) from exc

    output.mkdir(parents=True, exist_ok=True)
    written = [(output / result.archive.filename)]
    written[0].write_bytes(result.archive.data)
    if tiles:
        for tile in result.tiles:
            target = output / tile.filename
            target.write_bytes(tile.data)
            written.append(target)

    if json_output:
        console.print_json(
            data={
                "status": "ok",
                "run_id": result.run_id,
                "rows": result.rows,
                "cols": result.cols,
                "archive": str(written[0]),
                "members": list(result.archive.members),
            }
        )
        return
    _print_result(result, written)


@cli.command()
def upload(
    image: Path = typer.Argument(..., exists=True, dir_okay=False, readable=True, help="Image to upload"),
    max_edge: Optional[int] = typer.Option(None, "--max-edge", help="Largest tile edge in pixels"),
    rows: Optional[int] = typer.Option(None, "--rows", help="Explicit grid rows"),
    cols: Optional[int] = typer.Option(None, "--cols", help="Explicit grid columns"),
    output: Path = typer.Option(Path("."), "--output", "-o", help="Directory for the downloaded archive"),
    api_base: Optional[str] = typer.Option(None, help="Override API base URL"),
    http2: bool = typer.Option(True, "--http2/--no-http2"),
) -> None:
    """Send an image to a running service and save the returned archive."""

    tiling = _tiling_from_options(max_edge, rows, cols)
    form: dict[str, str] = {}
    if tiling.is_grid:
        form["rows"] = str(tiling.rows)
        form["cols"] = str(tiling.cols)
    else:
        form["max_tile_edge"] = str(tiling.max_tile_edge)

    settings = _resolve_settings(api_base)
    client = _client(settings, http2=http2)
    try:
        with image.open("rb") as handle:
            response = client.post(
                "/api/split/archive",
                data=form,
                files={"image": (image.name, handle, "application/octet-stream")},
            )
    finally:
        client.close()
    if response.status_code >= 400:
        detail = _extract_detail(response) or f"HTTP {response.status_code}"
        console.print(f"[red]{escape(detail)}[/]")
        raise typer.Exit(1)

    filename = _filename_from_disposition(response.headers.get("content-disposition")) or f"{image.stem}_tiles.zip"
    _write_binary_output(response.content, output / filename, description="archive")


def _filename_from_disposition(value: str | None) -> str | None:
    if not value:
        return None
    encoded = re.search(r"filename\*=UTF-8''([^;]+)", value, flags=re.IGNORECASE)
    if encoded:
        name = unquote(encoded.group(1).strip())
    else:
        plain = re.search(r'filename="?([^";]+)"?', value)
        if not plain:
            return None
        name = plain.group(1).strip()
    return Path(name).name or None


if __name__ == "__main__":
    cli()
