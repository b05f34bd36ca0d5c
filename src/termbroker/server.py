"""FastAPI server exposing the terminal broker over a WebSocket.

Each WebSocket connection is one broker connection. Messages in both
directions are JSON envelopes ``{"event": <name>, "data": {...}}``.
"""

from __future__ import annotations

import logging
import socket
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator

from fastapi import FastAPI, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel, ValidationError

from termbroker.broker.events import EventEnvelope
from termbroker.broker.supervisor import ConnectionSupervisor
from termbroker.config.settings import Settings, load_settings

logger = logging.getLogger(__name__)


class HealthStatus(BaseModel):
    status: str = "ok"
    connections: int = 0
    sessions: int = 0


class StartupError(RuntimeError):
    """Raised when the server cannot start with the given configuration."""


def create_app(
    settings: Settings | None = None,
    supervisor: ConnectionSupervisor | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Raises:
        StartupError: A static client bundle is configured but missing.
    """
    settings = settings or Settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        logger.info("Broker started")
        yield
        await app.state.supervisor.shutdown()
        logger.info("Broker stopped")

    app = FastAPI(
        title="termbroker",
        description="Session-multiplexing terminal broker",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.supervisor = supervisor or ConnectionSupervisor(settings.terminal)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.server.cors_origins,
        allow_methods=["GET", "POST"],
    )

    @app.get("/health")
    async def health_check() -> HealthStatus:
        sup: ConnectionSupervisor = app.state.supervisor
        return HealthStatus(connections=len(sup), sessions=sup.session_count())

    @app.websocket("/ws")
    async def terminal_socket(websocket: WebSocket) -> None:
        sup: ConnectionSupervisor = app.state.supervisor
        await websocket.accept()

        async def send(event: str, payload: dict[str, Any]) -> None:
            await websocket.send_json({"event": event, "data": payload})

        handler = sup.connect(send)
        try:
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break
                raw = message.get("text")
                if raw is None and message.get("bytes") is not None:
                    raw = message["bytes"].decode("utf-8", errors="replace")
                if raw is None:
                    continue
                try:
                    envelope = EventEnvelope.model_validate_json(raw)
                except ValidationError:
                    logger.debug(
                        "Ignoring malformed message on connection %s: %.80s",
                        handler.connection_id, raw,
                    )
                    continue
                await handler.handle_event(envelope.event, envelope.data)
        finally:
            await sup.disconnect(handler.connection_id)

    static_dir = settings.server.static_dir
    if static_dir:
        if not Path(static_dir).is_dir():
            raise StartupError(f"Client bundle not found at {static_dir}")
        app.mount("/", StaticFiles(directory=static_dir, html=True), name="client")

    return app


def port_available(host: str, port: int) -> bool:
    """True if ``host:port`` can be bound right now."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((host, port))
        except OSError:
            return False
    return True


def main(settings: Settings | None = None) -> int:
    """Run the server. Returns the process exit code."""
    import uvicorn

    settings = settings or load_settings()
    srv = settings.server

    try:
        app = create_app(settings)
    except StartupError as e:
        logger.error("%s", e)
        return 1

    if not port_available(srv.host, srv.port):
        logger.error("Port %d is already in use", srv.port)
        return 1

    logger.info("Listening on http://%s:%d", srv.host, srv.port)
    uvicorn.run(
        app,
        host=srv.host,
        port=srv.port,
        log_level=settings.logging.level.lower(),
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
