"""
FastAPI backend for the pipeline lab.

Hosts lab sessions (edit, compile, execute, normalise and share a pipeline
configuration against sample input), the share service (``/share``,
``/l/{id}``), the normalise service (``/normalise``) and WebSocket streaming
of session output.
"""

import argparse
import asyncio
import os
from contextlib import asynccontextmanager, suppress
from typing import Optional

import uvicorn
from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse, ORJSONResponse, PlainTextResponse
from fastapi.staticfiles import StaticFiles

from lab import __version__
from lab.app_config import LabConfig
from lab.clients import RemoteNormaliser, ShareClient
from lab.engine import load_engine
from lab.normalise import router as normalise_router
from lab.session import SessionManager, state_payload
from lab.sessions import router as sessions_router
from lab.settings import SettingStore
from lab.settings import router as settings_router
from lab.share import ShareStore
from lab.share import router as share_router
from lab.shared.logger import get_logger, setup_logging
from lab.system import log_error
from lab.system import router as system_router
from websocket import MessageType, WebSocketMessage, session_channel, ws_manager

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the per-process services and close every session on shutdown."""
    config: LabConfig = app.state.lab_config
    logger.info("Pipeline lab %s starting...", __version__)

    app.state.setting_store = SettingStore(config.settings_path)
    app.state.share_store = ShareStore(ttl=config.share_ttl)
    app.state.session_manager = SessionManager(
        engine_factory=load_engine,
        share_client=ShareClient(config.share_url) if config.share_url else None,
        normaliser=RemoteNormaliser(config.normalise_url) if config.normalise_url else None,
        execute_timeout=config.execute_timeout,
        setting_store=app.state.setting_store,
    )
    if config.share_url:
        logger.info("Sharing through %s", config.share_url)
    if config.normalise_url:
        logger.info("Normalising through %s", config.normalise_url)
    cleanup_task = asyncio.create_task(
        app.state.session_manager.run_cleanup(config.session_idle_hours, config.cleanup_interval)
    )
    logger.info("Startup complete, backend ready")

    yield

    cleanup_task.cancel()
    with suppress(asyncio.CancelledError):
        await cleanup_task
    await app.state.session_manager.shutdown()
    logger.info("Pipeline lab stopped")


def create_app(config: Optional[LabConfig] = None) -> FastAPI:
    """Create the lab application for ``config`` (environment by default)."""
    config = config or LabConfig.from_env()
    setup_logging(config.log_level)

    app = FastAPI(
        title="Pipeline Lab API",
        description="Edit, compile, execute and share stream-processing pipeline configurations",
        version=__version__,
        default_response_class=ORJSONResponse,
        lifespan=lifespan,
    )
    app.state.lab_config = config

    # ============= Exception Handlers for Error Logging =============

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        """Log HTTP exceptions and return JSON response."""
        # Only 5xx are server errors
        if exc.status_code >= 500:
            log_error(
                endpoint=str(request.url.path),
                message=str(exc.detail),
                level="error",
                details=f"Status code: {exc.status_code}",
            )
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.detail},
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        """Log unexpected exceptions and return JSON response."""
        log_error(
            endpoint=str(request.url.path),
            message=str(exc),
            level="critical",
            details=f"Unhandled exception: {type(exc).__name__}",
            exc=exc,
        )
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error"},
        )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,  # Must be False when using allow_origins=["*"]
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(sessions_router, prefix="/api", tags=["sessions"])
    app.include_router(settings_router, prefix="/api", tags=["settings"])
    app.include_router(system_router, prefix="/api", tags=["system"])
    app.include_router(share_router)
    app.include_router(normalise_router)

    @app.get("/ping", response_class=PlainTextResponse)
    async def ping():
        return "pong"

    @app.get("/api/ws/stats")
    async def get_websocket_stats():
        """Connection count and subscribers per session channel."""
        return ws_manager.stats()

    # ============= WebSocket Endpoints =============

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket, client_id: Optional[str] = None):
        """
        Main WebSocket endpoint.

        Clients subscribe to ``session:{id}`` channels to follow sessions.

        Message format (JSON):
        {
            "type": "subscribe" | "unsubscribe" | "ping",
            "channel": "channel_name",
            "data": {"channel": "session:lab_1234abcd"}
        }
        """
        await ws_manager.connect(websocket, client_id)
        await _serve(websocket)

    @app.websocket("/ws/session/{session_id}")
    async def session_websocket_endpoint(websocket: WebSocket, session_id: str):
        """
        WebSocket endpoint for one session.

        Subscribes to the session channel on connection and sends the current
        session state, then streams output entries and state changes.
        """
        session = app.state.session_manager.get_session(session_id)
        if session is None:
            await websocket.close(code=4404)
            return

        await ws_manager.connect(websocket, f"session-{session_id}")
        await ws_manager.subscribe(websocket, session_channel(session_id))
        await ws_manager.send_to_connection(
            websocket,
            WebSocketMessage(
                type=MessageType.SESSION_STATE,
                channel=session_channel(session_id),
                data={"session_id": session_id, **state_payload(session)},
            ),
        )
        await _serve(websocket)

    # ============= Static client =============

    www_dir = config.www_dir
    if www_dir is not None and (www_dir / "index.html").exists():

        @app.get("/")
        async def serve_index():
            return FileResponse(str(www_dir / "index.html"))

        app.mount("/", StaticFiles(directory=str(www_dir)), name="www")
    else:

        @app.get("/")
        async def serve_index():
            return {"message": "pipeline lab API", "version": __version__}

    return app


async def _serve(websocket: WebSocket) -> None:
    """Answer client messages until the connection drops."""
    try:
        while True:
            message_text = await websocket.receive_text()
            response = await ws_manager.handle_message(websocket, message_text)
            if response:
                await ws_manager.send_to_connection(websocket, response)

    except WebSocketDisconnect:
        await ws_manager.disconnect(websocket)
    except Exception as e:
        logger.error("WebSocket error: %s", e)
        await ws_manager.disconnect(websocket)


app = create_app()


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Pipeline lab server")
    parser.add_argument(
        "--port",
        type=int,
        default=int(os.environ.get("LAB_PORT", 4195)),
        help="Port to run the server on (default: 4195 or LAB_PORT env var)",
    )
    parser.add_argument(
        "--host",
        type=str,
        default=os.environ.get("LAB_HOST", "127.0.0.1"),
        help="Host to bind to (default: 127.0.0.1)",
    )
    parser.add_argument("--www", type=str, default=None, help="Directory of client files to serve")
    parser.add_argument("--config-dir", type=str, default=None, help="Data directory for settings")
    parser.add_argument("--share-ttl", type=float, default=None, help="Lifetime of shared states in seconds")
    parser.add_argument("--share-url", type=str, default=None, help="Origin of an external share service")
    parser.add_argument("--normalise-url", type=str, default=None, help="Origin of an external normalise service")
    parser.add_argument(
        "--session-idle-hours", type=float, default=None, help="Close sessions idle for longer than this"
    )
    parser.add_argument("--log-level", type=str, default=None, help="Logging level (default: INFO)")
    parser.add_argument(
        "--reload",
        action=argparse.BooleanOptionalAction,
        default=False,
        help="Enable auto-reload",
    )
    return parser.parse_args()


def main() -> None:
    """Run the lab server."""
    args = _parse_args()

    # The server imports ``main:app`` itself, so flags travel as environment
    overrides = {
        "LAB_WWW": args.www,
        "LAB_CONFIG": args.config_dir,
        "LAB_SHARE_TTL": str(args.share_ttl) if args.share_ttl is not None else None,
        "LAB_SHARE_URL": args.share_url,
        "LAB_NORMALISE_URL": args.normalise_url,
        "LAB_SESSION_IDLE_HOURS": str(args.session_idle_hours) if args.session_idle_hours is not None else None,
        "LAB_LOG_LEVEL": args.log_level,
    }
    for name, value in overrides.items():
        if value is not None:
            os.environ[name] = value

    uvicorn.run(
        "main:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level=(args.log_level or os.environ.get("LAB_LOG_LEVEL", "info")).lower(),
    )


if __name__ == "__main__":
    main()
