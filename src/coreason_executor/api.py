# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_executor

"""HTTP surface of the executor: FastAPI app factory, routes and error rendering."""

import asyncio
import html
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any
from urllib.parse import quote
from uuid import uuid4

from fastapi import FastAPI, File, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse, Response, StreamingResponse
from loguru import logger
from starlette.background import BackgroundTask
from starlette.exceptions import HTTPException as StarletteHTTPException

from coreason_executor import __version__
from coreason_executor.config import ExecutorConfig
from coreason_executor.coordinator import LifecycleCoordinator
from coreason_executor.exceptions import ExecutorError, ServiceUnavailableError
from coreason_executor.models import ErrorResponse, ExecuteRequest, ExecutionResult, HealthReport, HostedFile, isoformat
from coreason_executor.sweeper import ExpirySweeper

DOWNLOAD_CHUNK_SIZE = 64 * 1024

ENDPOINTS = {
    "GET /": "API information",
    "GET /health": "Server and Python health check",
    "POST /execute": "Execute Python code",
    "POST /host": "Host an uploaded file for download",
    "GET /download/:token": "Download generated or hosted file",
    "GET /api": "API information and uptime",
}

ERROR_PAGE = """<!DOCTYPE html>
<html lang="en">
<head><meta charset="utf-8"><title>{status} {title}</title></head>
<body>
<h1>{status} {title}</h1>
<p>{details}</p>
</body>
</html>
"""


@dataclass
class ServiceState:
    """Process-wide runtime state shared by the middleware and the lifespan hook."""

    config: ExecutorConfig
    coordinator: LifecycleCoordinator
    sweeper: ExpirySweeper
    draining: bool = False
    inflight: int = 0
    # Download bodies still being sent after their handler returned
    streams: int = 0

    @property
    def active(self) -> int:
        return self.inflight + self.streams

    def begin_shutdown(self, reason: str) -> None:
        if not self.draining:
            self.draining = True
            logger.info(f"Received {reason}. Initiating graceful shutdown...")

    async def drain(self, timeout: float) -> bool:
        """Wait up to ``timeout`` seconds for in-flight requests and downloads. Returns True if none remain."""
        deadline = time.monotonic() + timeout
        while self.active > 0:
            if time.monotonic() >= deadline:
                logger.warning(f"Force exiting with {self.active} request(s) still active.")
                return False
            logger.info(f"Waiting for {self.active} active request(s)...")
            await asyncio.sleep(0.1)
        return True


def wants_html(request: Request) -> bool:
    accept = request.headers.get("accept", "")
    return "text/html" in accept and not accept.lstrip().startswith("application/json")


def render_error(request: Request, status_code: int, payload: ErrorResponse) -> Response:
    """Build the error response once, as JSON or an HTML page depending on ``Accept``."""
    if wants_html(request):
        page = ERROR_PAGE.format(
            status=status_code,
            title=html.escape(payload.error),
            details=html.escape(payload.details or ""),
        )
        return HTMLResponse(page, status_code=status_code)
    return JSONResponse(payload.model_dump(by_alias=True, exclude_none=True), status_code=status_code)


def _error_payload(request: Request, error: str, details: str | None = None, code: str | None = None) -> ErrorResponse:
    return ErrorResponse(
        error=error,
        details=details,
        timestamp=isoformat(time.time()),
        request_id=getattr(request.state, "request_id", None),
        code=code,
    )


def _content_disposition(filename: str) -> str:
    quoted = quote(filename)
    if quoted != filename:
        return f"attachment; filename*=utf-8''{quoted}"
    return f'attachment; filename="{filename}"'


class DownloadStream:
    """Response body over an open file handle.

    Counts as an active request on ``state`` until closed. Closing is idempotent, so it
    runs both when iteration ends and as the response's background task, which covers
    bodies that are never iterated.
    """

    def __init__(self, handle: Any, state: ServiceState):
        self.handle = handle
        self.state = state
        self.closed = False
        state.streams += 1

    def __aiter__(self) -> AsyncIterator[bytes]:
        return self._chunks()

    async def _chunks(self) -> AsyncIterator[bytes]:
        try:
            while True:
                chunk = await self.handle.read(DOWNLOAD_CHUNK_SIZE)
                if not chunk:
                    break
                yield chunk
        finally:
            await self.aclose()

    async def aclose(self) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            await self.handle.close()
        finally:
            self.state.streams -= 1


def create_app(
    config: ExecutorConfig | None = None,
    coordinator: LifecycleCoordinator | None = None,
    sweeper: ExpirySweeper | None = None,
) -> FastAPI:
    """Build the FastAPI application.

    Args:
        config: Service configuration; read from the environment if omitted.
        coordinator: Lifecycle coordinator; built from ``config`` if omitted.
        sweeper: Expiry sweeper; built over the coordinator's registry if omitted.

    Returns:
        FastAPI: The application, with its ``ServiceState`` on ``app.state.service``.
    """
    config = config or ExecutorConfig()
    coordinator = coordinator or LifecycleCoordinator(config)
    sweeper = sweeper or ExpirySweeper(coordinator.registry, coordinator.workspaces)
    state = ServiceState(config=config, coordinator=coordinator, sweeper=sweeper)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        await coordinator.prepare()
        logger.info(f"Initialized temp directory {coordinator.workspaces.root}")
        try:
            report = await coordinator.health()
            logger.info(f"Python available: {report.python_version}")
        except ExecutorError as e:
            logger.error(f"Initial Python check failed: {e}")
        await sweeper.start()
        try:
            yield
        finally:
            state.begin_shutdown("lifespan shutdown")
            await state.drain(config.shutdown_grace_period)
            await sweeper.stop()
            logger.info("Shutdown complete.")

    app = FastAPI(title="Python Code Executor API", version=__version__, lifespan=lifespan)
    app.state.service = state

    @app.middleware("http")
    async def request_context(request: Request, call_next: Any) -> Response:
        request_id = str(uuid4())
        request.state.request_id = request_id
        with logger.contextualize(request_id=request_id):
            logger.info(f"Request received: {request.method} {request.url.path}")
            if state.draining:
                logger.warning(f"Request rejected during shutdown: {request.method} {request.url.path}")
                error = ServiceUnavailableError()
                response = render_error(
                    request, error.status_code, _error_payload(request, error.error, code="SHUTTING_DOWN")
                )
            else:
                state.inflight += 1
                try:
                    response = await call_next(request)
                finally:
                    state.inflight -= 1

        response.headers["X-Request-ID"] = request_id
        response.headers["X-Content-Type-Options"] = "nosniff"
        connect_src = " ".join(["'self'", *config.allowed_hosts])
        response.headers["Content-Security-Policy"] = f"default-src 'self'; connect-src {connect_src}"
        return response

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.allowed_hosts,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type"],
    )

    @app.exception_handler(ExecutorError)
    async def executor_error_handler(request: Request, exc: ExecutorError) -> Response:
        message = str(exc)
        details = exc.details or (message if message != exc.error else None)
        if exc.status_code >= 500 and not config.is_development:
            details = None
        logger.error(f"{exc.error} [{exc.status_code}]: {message}")
        return render_error(request, exc.status_code, _error_payload(request, exc.error, details))

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> Response:
        details = "; ".join(
            f"{'.'.join(str(part) for part in err.get('loc', ()))}: {err.get('msg', '')}" for err in exc.errors()
        )
        logger.error(f"Invalid request: {details}")
        error = "No file uploaded" if request.url.path == "/host" else "Invalid request"
        return render_error(request, 400, _error_payload(request, error, details))

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException) -> Response:
        if exc.status_code == 404:
            error, details = "Not found", f"Route {request.method} {request.url.path} not found"
            logger.error(f"Route not found: {request.method} {request.url.path}")
        else:
            error, details = str(exc.detail), None
        return render_error(request, exc.status_code, _error_payload(request, error, details))

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception) -> Response:
        logger.exception(f"Server error: {exc}")
        details = str(exc) if config.is_development else "Something went wrong"
        return render_error(request, 500, _error_payload(request, "Internal server error", details))

    @app.get("/")
    async def root() -> dict[str, Any]:
        return {
            "message": "Python Code Executor Server is running!",
            "status": "healthy",
            "endpoints": ENDPOINTS,
        }

    @app.get("/api")
    async def api_info() -> dict[str, Any]:
        now = time.time()
        return {
            "name": "Python Code Executor API",
            "version": __version__,
            "status": "running",
            "endpoints": ENDPOINTS,
            "uptime": int(now - coordinator.started_at),
            "timestamp": isoformat(now),
        }

    @app.get("/health", response_model=HealthReport)
    async def health() -> Any:
        try:
            report = await coordinator.health()
        except ExecutorError as e:
            logger.error(f"Health check failed: {e}")
            return JSONResponse(
                {
                    "status": "unhealthy",
                    "error": "Python not available",
                    "details": e.details or str(e),
                    "timestamp": isoformat(time.time()),
                },
                status_code=500,
            )
        logger.info("Health check successful")
        return report

    @app.post("/execute", response_model=ExecutionResult)
    async def execute(body: ExecuteRequest) -> ExecutionResult:
        return await coordinator.execute(body.code, timeout=body.timeout, allow_network=body.allow_network)

    @app.post("/host", response_model=HostedFile)
    async def host(file: UploadFile = File(...)) -> HostedFile:
        try:
            return await coordinator.host(file.filename, file)
        finally:
            await file.close()

    @app.get("/download/{token}")
    async def download(token: str) -> StreamingResponse:
        opened = await coordinator.open_download(token)
        body = DownloadStream(opened.handle, state)
        return StreamingResponse(
            body,
            media_type=opened.mime_type,
            headers={
                "Content-Disposition": _content_disposition(opened.filename),
                "Content-Length": str(opened.size),
            },
            background=BackgroundTask(body.aclose),
        )

    return app
