"""Entry point for the FastAPI application."""

from __future__ import annotations

import asyncio
import logging
import re
import threading
from contextlib import asynccontextmanager
from urllib.parse import quote

from fastapi import FastAPI, File, Form, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from prometheus_client import start_http_server
from prometheus_fastapi_instrumentator import Instrumentator

from splitter.errors import InvalidTileParameter, MissingUpload, SplitError, UploadTooLarge
from splitter.pipeline import SplitRequest, SplitResult, run_split
from splitter.planner import resolve_tiling
from splitter.schemas import ARCHIVE_MEDIA_TYPE, ErrorDetail, ErrorResponse, SplitResponse, build_split_response
from splitter.settings import configure_logging, settings

LOGGER = logging.getLogger(__name__)
DISCONNECT_POLL_SECONDS = 0.25
_NON_ASCII = re.compile(r"[^\x20-\x7e]")
_PROMETHEUS_EXPORTER_STARTED = False


async def _start_prometheus_exporter() -> None:
    """Expose Prometheus metrics on the configured auxiliary port."""

    global _PROMETHEUS_EXPORTER_STARTED
    if _PROMETHEUS_EXPORTER_STARTED:
        return
    port = settings.telemetry.prometheus_port
    if port <= 0:
        return
    try:
        start_http_server(port)
    except OSError as exc:  # pragma: no cover - system dependent
        LOGGER.warning("Prometheus exporter failed to bind on port %s: %s", port, exc)
        return
    _PROMETHEUS_EXPORTER_STARTED = True
    LOGGER.info("Prometheus exporter listening on port %s", port)


@asynccontextmanager
async def _lifespan(_: FastAPI):
    configure_logging(settings)
    await _start_prometheus_exporter()
    yield


app = FastAPI(title="Tile Splitter", lifespan=_lifespan)
instrumentator = Instrumentator(should_instrument_requests_inprogress=True)
instrumentator.instrument(app)
try:
    instrumentator.expose(app, include_in_schema=False, should_gzip=True)
except ValueError:  # pragma: no cover - already registered
    LOGGER.debug("Prometheus /metrics endpoint already exposed")


@app.exception_handler(SplitError)
async def split_error_handler(_: Request, exc: SplitError) -> JSONResponse:
    body = ErrorResponse(error=ErrorDetail(**exc.to_payload()))
    return JSONResponse(status_code=exc.status_code, content=body.model_dump())


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Report malformed form fields with the same error body as pipeline failures."""

    problems = "; ".join(_describe_validation_error(error) for error in exc.errors())
    return await split_error_handler(request, InvalidTileParameter(problems or "Invalid request"))


def _describe_validation_error(error: dict) -> str:
    field = ".".join(str(part) for part in error.get("loc", ()) if part not in {"body", "query", "form"})
    message = error.get("msg", "invalid value")
    return f"{field}: {message}" if field else message


@app.get("/health", tags=["health"])
async def healthcheck() -> dict[str, str]:
    """Return a simple status useful for smoke tests."""

    return {"status": "ok"}


@app.post(
    "/api/split",
    response_model=SplitResponse,
    responses={400: {"model": ErrorResponse}, 413: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
)
async def split_image(
    request: Request,
    image: UploadFile | None = File(default=None, description="Image to split"),
    max_tile_edge: int | None = Form(default=None, description="Largest tile edge in pixels"),
    rows: int | None = Form(default=None, description="Explicit grid rows (with cols)"),
    cols: int | None = Form(default=None, description="Explicit grid columns (with rows)"),
) -> SplitResponse:
    """Split an uploaded image and return every tile plus the ZIP inline."""

    split_request = await _build_split_request(image, max_tile_edge=max_tile_edge, rows=rows, cols=cols)
    result = await _run_split_watching(request, split_request)
    return build_split_response(result)


@app.post("/api/split/archive", response_class=Response)
async def split_image_archive(
    request: Request,
    image: UploadFile | None = File(default=None, description="Image to split"),
    max_tile_edge: int | None = Form(default=None),
    rows: int | None = Form(default=None),
    cols: int | None = Form(default=None),
) -> Response:
    """Split an uploaded image and return only the ZIP as a download."""

    split_request = await _build_split_request(image, max_tile_edge=max_tile_edge, rows=rows, cols=cols)
    result = await _run_split_watching(request, split_request)
    headers = {
        "Content-Disposition": _content_disposition(result.archive.filename),
        "X-Split-Grid": f"{result.rows}x{result.cols}",
    }
    return Response(content=result.archive.data, media_type=ARCHIVE_MEDIA_TYPE, headers=headers)


async def _build_split_request(
    image: UploadFile | None,
    *,
    max_tile_edge: int | None,
    rows: int | None,
    cols: int | None,
) -> SplitRequest:
    if image is None:
        raise MissingUpload("Upload an image in the 'image' form field")
    tiling = resolve_tiling(max_tile_edge=max_tile_edge, rows=rows, cols=cols)
    limit = settings.storage.max_upload_bytes
    try:
        data = await image.read(limit + 1)
    finally:
        await image.close()
    if not data:
        raise MissingUpload("Uploaded image is empty")
    if len(data) > limit:
        raise UploadTooLarge(f"Upload exceeds {limit} bytes")
    return SplitRequest(data=data, tiling=tiling, filename=image.filename)


async def _run_split_watching(request: Request, split_request: SplitRequest) -> SplitResult:
    """Run the pipeline in a worker thread, cancelling it if the client leaves."""

    cancel = threading.Event()
    worker = asyncio.create_task(asyncio.to_thread(run_split, split_request, settings=settings, cancel=cancel))
    try:
        while True:
            done, _ = await asyncio.wait({worker}, timeout=DISCONNECT_POLL_SECONDS)
            if done:
                return worker.result()
            if await request.is_disconnected():
                LOGGER.info("Client disconnected; cancelling split of %s", split_request.filename)
                cancel.set()
                return await worker
    finally:
        if not worker.done():
            cancel.set()


def _content_disposition(filename: str) -> str:
    """Attachment header with an ASCII fallback plus the RFC 5987 UTF-8 name."""

    fallback = _NON_ASCII.sub("_", filename).replace('"', "_").replace("\\", "_")
    if fallback == filename:
        return f'attachment; filename="{filename}"'
    return f"attachment; filename=\"{fallback}\"; filename*=UTF-8''{quote(filename, safe='')}"
