"""FastAPI server for the hilprobe test-execution API."""

from __future__ import annotations

import argparse
import asyncio
import codecs
import html
import logging
import signal
import sys
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncGenerator, AsyncIterator

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import HTMLResponse, StreamingResponse

from hilprobe_core.errors import AuthError, ConfigError, NotFoundError
from hilprobe_core.types.auth import Principal
from hilprobe_core.types.job import BinaryMetadata
from hilprobe_core.types.target import Target

from hilprobe_server.metadata import extract
from hilprobe_server.models import (
    ErrorResponse,
    HealthResponse,
    OutputEvent,
    ResultEvent,
    TargetStatus,
)
from hilprobe_server.orchestrator import JobHandle
from hilprobe_server.reporter import FinalRecord
from hilprobe_server.service import HilprobeService

logger = logging.getLogger(__name__)

NDJSON = "application/x-ndjson"

# Global service instance (set during lifespan)
_service: HilprobeService | None = None


def _get_service() -> HilprobeService:
    """Get the global service instance."""
    if _service is None:
        raise RuntimeError("Service not initialized")
    return _service


def _reload_config() -> None:
    """Reload the configuration file, keeping the current one on failure."""
    service = _get_service()
    try:
        service.reload()
    except (ConfigError, FileNotFoundError) as exc:
        logger.error("Configuration reload failed, keeping current configuration: %s", exc)


def create_app(config_path: str | Path | None = None) -> FastAPI:
    """Create a FastAPI application.

    Args:
        config_path: Path to server configuration YAML.
            If None, the service must be installed before serving requests.

    Returns:
        Configured FastAPI application.
    """
    # Store config path in app state for lifespan access
    app_state: dict[str, Any] = {"config_path": config_path}

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan handler."""
        global _service  # pylint: disable=global-statement

        cfg_path = app_state.get("config_path")
        sighup = False
        if cfg_path:
            logger.info("Loading configuration from %s", cfg_path)
            _service = HilprobeService.from_file(cfg_path)
            await _service.start()
            logger.info(
                "Serving %d targets with %d auth rules",
                len(_service.snapshot.registry),
                len(_service.snapshot.auth.rules),
            )
            try:
                asyncio.get_running_loop().add_signal_handler(signal.SIGHUP, _reload_config)
                sighup = True
            except (AttributeError, NotImplementedError, RuntimeError, ValueError):
                logger.debug("SIGHUP reload unavailable on this platform/thread")

        yield

        if sighup:
            asyncio.get_running_loop().remove_signal_handler(signal.SIGHUP)
        if _service is not None:
            logger.info("Shutting down; cancelling outstanding jobs")
            await _service.stop()
            _service = None

    app = FastAPI(
        title="hilprobe API",
        description="Hardware-in-the-loop test execution on remote debug probes",
        version="0.1.0",
        lifespan=lifespan,
    )

    unauthorized: dict[int | str, dict[str, Any]] = {401: {"model": ErrorResponse}}

    # Register routes
    app.add_api_route("/", _dashboard, methods=["GET"], response_class=HTMLResponse)
    app.add_api_route("/health", _health, methods=["GET"], response_model=HealthResponse)
    app.add_api_route(
        "/targets",
        _list_targets,
        methods=["GET"],
        response_model=list[TargetStatus],
        responses=unauthorized,
    )
    app.add_api_route(
        "/targets/{name}/run",
        _run_on_target,
        methods=["POST"],
        response_class=StreamingResponse,
        responses={**unauthorized, 404: {"model": ErrorResponse}, 400: {"model": ErrorResponse}},
    )
    app.add_api_route(
        "/run",
        _run_from_metadata,
        methods=["POST"],
        response_class=StreamingResponse,
        responses={**unauthorized, 404: {"model": ErrorResponse}, 400: {"model": ErrorResponse}},
    )

    return app


# -----------------------------------------------------------------------------
# Authentication
# -----------------------------------------------------------------------------


async def _require_auth(authorization: str | None = Header(default=None)) -> Principal:
    """Authorize the caller from the ``Authorization: Bearer`` header."""
    scheme, _, credential = (authorization or "").partition(" ")
    credential = credential.strip()
    if scheme.lower() != "bearer" or not credential:
        raise HTTPException(
            status_code=401, detail="Unauthorized", headers={"WWW-Authenticate": "Bearer"}
        )
    try:
        return await _get_service().authorize(credential)
    except AuthError as exc:
        raise HTTPException(
            status_code=401, detail="Unauthorized", headers={"WWW-Authenticate": "Bearer"}
        ) from exc


# -----------------------------------------------------------------------------
# Routes
# -----------------------------------------------------------------------------


async def _dashboard() -> HTMLResponse:
    """HTML dashboard showing all targets."""
    service = _get_service()
    statuses = service.target_statuses()

    rows = []
    for status in statuses:
        if status.up is False:
            state, state_color = "DOWN", "#dc3545"
        elif status.busy:
            state, state_color = "BUSY", "#ffc107"
        else:
            state, state_color = "IDLE", "#28a745"
        rows.append(f"""
        <tr>
            <td><strong>{html.escape(status.name)}</strong></td>
            <td><code>{html.escape(status.chip)}</code></td>
            <td><span style="color: {state_color}; font-weight: bold;">{state}</span></td>
            <td>{status.queued}</td>
        </tr>
        """)

    empty_row = "<tr><td colspan='4'>No targets configured</td></tr>"
    page = f"""
    <!DOCTYPE html>
    <html>
    <head>
        <title>hilprobe</title>
        <style>
            body {{
                font-family: -apple-system, BlinkMacSystemFont, "Segoe UI", Roboto, sans-serif;
                margin: 0;
                padding: 20px;
                background: #f5f5f5;
            }}
            .container {{
                max-width: 1200px;
                margin: 0 auto;
                background: white;
                border-radius: 8px;
                box-shadow: 0 2px 4px rgba(0,0,0,0.1);
                padding: 20px;
            }}
            h1 {{
                margin-top: 0;
                color: #333;
            }}
            table {{
                width: 100%;
                border-collapse: collapse;
            }}
            th, td {{
                text-align: left;
                padding: 12px;
                border-bottom: 1px solid #dee2e6;
            }}
            th {{
                background: #f8f9fa;
                font-weight: 600;
            }}
            code {{
                background: #f1f1f1;
                padding: 2px 6px;
                border-radius: 3px;
                font-size: 0.9em;
            }}
            .api-links {{
                margin-top: 20px;
                padding-top: 20px;
                border-top: 1px solid #dee2e6;
            }}
            .api-links a {{
                margin-right: 15px;
                color: #007bff;
            }}
        </style>
    </head>
    <body>
        <div class="container">
            <h1>hilprobe Dashboard</h1>

            <h2>Targets ({len(statuses)})</h2>
            <table>
                <thead>
                    <tr>
                        <th>Name</th>
                        <th>Chip</th>
                        <th>State</th>
                        <th>Queued</th>
                    </tr>
                </thead>
                <tbody>
                    {"".join(rows) if rows else empty_row}
                </tbody>
            </table>

            <div class="api-links">
                <strong>API Endpoints:</strong>
                <a href="/health">/health</a>
                <a href="/targets">/targets</a>
                <a href="/docs">/docs (OpenAPI)</a>
            </div>
        </div>
    </body>
    </html>
    """
    return HTMLResponse(content=page)


async def _health() -> HealthResponse:
    """Health check endpoint."""
    service = _get_service()
    return HealthResponse(status="ok", targets=len(service.snapshot.registry))


async def _list_targets(
    principal: Principal = Depends(_require_auth),
) -> list[TargetStatus]:
    """List all targets."""
    logger.debug("Target list requested by rule #%d", principal.rule_index)
    return _get_service().target_statuses()


async def _run_on_target(
    name: str,
    request: Request,
    timeout: float | None = Query(default=None, gt=0),
    principal: Principal = Depends(_require_auth),
) -> StreamingResponse:
    """Run an image on a named target."""
    snapshot = _get_service().snapshot
    try:
        target = snapshot.registry.resolve(name)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    image = await _read_image(request)
    return _start_run(image, target, extract(image), timeout, principal)


async def _run_from_metadata(
    request: Request,
    timeout: float | None = Query(default=None, gt=0),
    principal: Principal = Depends(_require_auth),
) -> StreamingResponse:
    """Run an image on the target named by its embedded metadata."""
    image = await _read_image(request)
    metadata = extract(image)
    if metadata.target_name is None:
        raise HTTPException(
            status_code=400, detail="No target given and none embedded in the binary"
        )
    snapshot = _get_service().snapshot
    try:
        target = snapshot.registry.resolve(metadata.target_name)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return _start_run(image, target, metadata, timeout, principal)


async def _read_image(request: Request) -> bytes:
    image = await request.body()
    if not image:
        raise HTTPException(status_code=400, detail="Request body must contain the binary image")
    return image


def _start_run(
    image: bytes,
    target: Target,
    metadata: BinaryMetadata,
    timeout: float | None,
    principal: Principal,
) -> StreamingResponse:
    orchestrator = _get_service().snapshot.orchestrator
    handle = orchestrator.submit(image, target, metadata=metadata, timeout=timeout)
    logger.info(
        "Job %s submitted by %s rule #%d%s",
        handle.job.id,
        principal.kind,
        principal.rule_index,
        f" (sub={principal.subject})" if principal.subject else "",
    )
    return StreamingResponse(_stream_events(handle), media_type=NDJSON)


async def _stream_events(handle: JobHandle) -> AsyncIterator[str]:
    """Serialize a job's events as NDJSON lines.

    Output is decoded incrementally so a character split across chunks is
    delivered intact.
    """
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    try:
        async for event in handle.reporter.events():
            if isinstance(event, FinalRecord):
                tail = decoder.decode(b"", final=True)
                if tail:
                    yield OutputEvent(data=tail).model_dump_json() + "\n"
                result = event.result
                record = ResultEvent(
                    job_id=event.job_id,
                    status=result.status,
                    passed=result.passed,
                    duration=result.duration,
                    run_mode=event.run_mode,
                    message=result.message,
                )
                yield record.model_dump_json() + "\n"
            else:
                text = decoder.decode(event.data)
                if text:
                    yield OutputEvent(data=text).model_dump_json() + "\n"
    finally:
        if not handle.reporter.finished:
            logger.info("Caller for job %s went away", handle.job.id)
            handle.cancel()


def main() -> None:
    """Command-line entry point."""
    parser = argparse.ArgumentParser(description="Start the hilprobe server")
    parser.add_argument(
        "config",
        type=Path,
        help="Path to server configuration YAML file",
    )
    parser.add_argument(
        "--host",
        default="0.0.0.0",
        help="Host to bind to (default: 0.0.0.0)",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=8000,
        help="Port to listen on (default: 8000)",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )

    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if not args.config.exists():
        logger.error("Config file not found: %s", args.config)
        sys.exit(1)

    import uvicorn  # pylint: disable=import-outside-toplevel

    app = create_app(args.config)
    uvicorn.run(app, host=args.host, port=args.port)


if __name__ == "__main__":
    main()
