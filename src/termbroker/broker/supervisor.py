"""Connection supervisor -- process-wide registry of live connections."""

from __future__ import annotations

import logging
import uuid

from termbroker.broker.protocol import BrokerProtocolHandler, SendEvent
from termbroker.config.settings import TerminalConfig

logger = logging.getLogger(__name__)


class ConnectionSupervisor:
    """Tracks every open connection and tears it down when it goes away.

    A failure while tearing down one connection is logged and never
    affects the others.
    """

    def __init__(self, config: TerminalConfig | None = None) -> None:
        self._config = config or TerminalConfig()
        self._connections: dict[str, BrokerProtocolHandler] = {}

    def connect(
        self, send: SendEvent, connection_id: str | None = None
    ) -> BrokerProtocolHandler:
        """Register a new connection and return its protocol handler."""
        connection_id = connection_id or uuid.uuid4().hex
        if connection_id in self._connections:
            raise ValueError(f"Connection {connection_id} is already registered")

        handler = BrokerProtocolHandler(connection_id, send, config=self._config)
        self._connections[connection_id] = handler
        handler.open()
        return handler

    async def disconnect(self, connection_id: str) -> None:
        """Drop a connection and every session it owns. Unknown ids are ignored."""
        handler = self._connections.pop(connection_id, None)
        if handler is None:
            return
        try:
            await handler.disconnect()
        except Exception:
            logger.exception("Error tearing down connection %s", connection_id)

    async def shutdown(self) -> None:
        """Disconnect every connection. Called on server shutdown."""
        for connection_id in list(self._connections):
            await self.disconnect(connection_id)
        logger.info("All connections closed")

    def get(self, connection_id: str) -> BrokerProtocolHandler | None:
        return self._connections.get(connection_id)

    def session_count(self) -> int:
        return sum(len(h.registry) for h in self._connections.values())

    def __contains__(self, connection_id: object) -> bool:
        return connection_id in self._connections

    def __len__(self) -> int:
        return len(self._connections)
