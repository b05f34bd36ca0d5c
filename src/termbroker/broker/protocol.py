"""Broker protocol handler -- one per client connection.

Translates inbound transport events into session registry calls, and
session output back into outbound events tagged with the terminal id the
client uses to demultiplex them.
"""

from __future__ import annotations

import asyncio
import codecs
import logging
from typing import Any, Awaitable, Callable

from pydantic import ValidationError

from termbroker.broker import events
from termbroker.broker.errors import BrokerError
from termbroker.broker.registry import SessionRegistry
from termbroker.broker.session import ExitStatus, OutputItem, PtySession
from termbroker.config.settings import TerminalConfig

logger = logging.getLogger(__name__)

SendEvent = Callable[[str, dict[str, Any]], Awaitable[None]]


class BrokerProtocolHandler:
    """Per-connection controller between the transport and the registry.

    ``send`` emits one outbound event (name, payload). It is never called
    concurrently and never after disconnect().
    """

    def __init__(
        self,
        connection_id: str,
        send: SendEvent,
        registry: SessionRegistry | None = None,
        config: TerminalConfig | None = None,
    ) -> None:
        self._connection_id = connection_id
        self._send = send
        self._registry = registry or SessionRegistry(connection_id, config)
        self._send_lock = asyncio.Lock()
        self._forwarders: set[asyncio.Task[None]] = set()
        self._opened = False
        self._closed = False

    @property
    def connection_id(self) -> str:
        return self._connection_id

    @property
    def registry(self) -> SessionRegistry:
        return self._registry

    @property
    def closed(self) -> bool:
        return self._closed

    def open(self) -> None:
        """Connection established."""
        if not self._opened:
            self._opened = True
            logger.info("Client connected: %s", self._connection_id)

    async def handle_event(self, event: str, payload: Any) -> None:
        """Dispatch one inbound event. Never raises for client mistakes."""
        if self._closed:
            logger.debug("Discarding %s for closed connection %s", event, self._connection_id)
            return

        model = events.INBOUND_PAYLOADS.get(event)
        if model is None:
            logger.debug("Unknown event %r from connection %s", event, self._connection_id)
            return

        try:
            message = model.model_validate(payload)
        except ValidationError as e:
            logger.warning(
                "Malformed %s from connection %s: %s",
                event, self._connection_id, e.errors(include_url=False),
            )
            terminal_id = payload.get("terminalId") if isinstance(payload, dict) else None
            if event == events.CREATE_TERMINAL and isinstance(terminal_id, str) and terminal_id:
                await self._emit(
                    events.TERMINAL_ERROR,
                    {"terminalId": terminal_id, "message": "Invalid create-terminal request"},
                )
            return

        if isinstance(message, events.CreateTerminal):
            await self._create(message)
        elif isinstance(message, events.TerminalInput):
            self._registry.input(message.terminal_id, message.data)
        elif isinstance(message, events.TerminalResize):
            self._registry.resize(message.terminal_id, message.cols, message.rows)
        elif isinstance(message, events.CloseTerminal):
            logger.info(
                "Closing terminal %s for connection %s", message.terminal_id, self._connection_id
            )
            self._registry.close(message.terminal_id)

    async def disconnect(self) -> None:
        """Tear down every session of this connection. Runs once."""
        if self._closed:
            return
        self._closed = True
        logger.info("Client disconnected: %s", self._connection_id)

        await self._registry.teardown_all()

        forwarders = list(self._forwarders)
        for task in forwarders:
            task.cancel()
        await asyncio.gather(*forwarders, return_exceptions=True)

    async def _create(self, message: events.CreateTerminal) -> None:
        terminal_id = message.terminal_id
        logger.info(
            "Creating terminal %s for connection %s", terminal_id, self._connection_id
        )
        try:
            session = await self._registry.create_session(
                terminal_id, message.cols, message.rows
            )
        except BrokerError as e:
            logger.warning(
                "Could not create terminal %s for connection %s: %s",
                terminal_id, self._connection_id, e.message,
            )
            await self._emit(
                events.TERMINAL_ERROR, {"terminalId": terminal_id, "message": e.message}
            )
            return

        if not await self._emit(events.TERMINAL_READY, {"terminalId": terminal_id}):
            self._abandon(session)
            return

        task = asyncio.create_task(self._forward(session))
        self._forwarders.add(task)
        task.add_done_callback(self._forwarders.discard)

    def _abandon(self, session: PtySession) -> None:
        """Close a session whose events can no longer reach the client."""
        if self._registry.get(session.id) is not session:
            return
        logger.info(
            "Transport lost for terminal %s of connection %s, closing it",
            session.id, self._connection_id,
        )
        self._registry.close(session.id)

    async def _forward(self, session: PtySession) -> None:
        """Drain one session's output queue onto the transport."""
        terminal_id = session.id
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        pending: OutputItem = None
        has_pending = False

        while True:
            if has_pending:
                item, has_pending = pending, False
            else:
                item = await session.output.get()

            if isinstance(item, bytes):
                # Coalesce whatever else is already queued
                chunks = [item]
                while not session.output.empty():
                    follow = session.output.get_nowait()
                    if not isinstance(follow, bytes):
                        pending, has_pending = follow, True
                        break
                    chunks.append(follow)
                text = decoder.decode(b"".join(chunks))
                if text and not await self._emit(
                    events.TERMINAL_OUTPUT, {"terminalId": terminal_id, "data": text}
                ):
                    self._abandon(session)
                    return
                continue

            if isinstance(item, ExitStatus):
                tail = decoder.decode(b"", final=True)
                if tail:
                    await self._emit(
                        events.TERMINAL_OUTPUT, {"terminalId": terminal_id, "data": tail}
                    )
                await self._emit(
                    events.TERMINAL_EXIT,
                    {
                        "terminalId": terminal_id,
                        "exitCode": item.exit_code,
                        "signal": item.signal,
                    },
                )
            return

    async def _emit(self, event: str, payload: dict[str, Any]) -> bool:
        if self._closed:
            return False
        async with self._send_lock:
            try:
                await self._send(event, payload)
            except Exception as e:
                logger.debug(
                    "Dropping %s for connection %s: %s", event, self._connection_id, e
                )
                return False
        return True
