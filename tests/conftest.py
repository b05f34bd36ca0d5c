"""Shared test fixtures for the termbroker test suite.

Broker tests run real shells on real ptys, so they use /bin/sh with a
short kill grace period and helpers that wait for output with a timeout.
"""

from __future__ import annotations

import asyncio
import os
from typing import Any, Awaitable, Callable

import pytest

from termbroker.broker.session import OutputItem
from termbroker.config.settings import TerminalConfig

# ---------------------------------------------------------------------------
# Configuration Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def terminal_config(tmp_path) -> TerminalConfig:
    """Sessions run /bin/sh in a temporary home directory."""
    return TerminalConfig(
        default_shell="/bin/sh",
        home_dir=str(tmp_path),
        kill_grace_period=0.5,
    )


# ---------------------------------------------------------------------------
# Output Helpers
# ---------------------------------------------------------------------------


@pytest.fixture
def read_until() -> Callable[..., Awaitable[str]]:
    """Read a session's output queue until ``needle`` shows up.

    Returns everything read so far. Fails the test on timeout or if the
    session ends first.
    """

    async def _read_until(
        queue: asyncio.Queue[OutputItem], needle: str, timeout: float = 5.0
    ) -> str:
        text = ""

        async def _collect() -> None:
            nonlocal text
            while needle not in text:
                item = await queue.get()
                if not isinstance(item, bytes):
                    pytest.fail(f"session ended ({item!r}) before {needle!r}: {text!r}")
                text += item.decode("utf-8", errors="replace")

        try:
            await asyncio.wait_for(_collect(), timeout)
        except asyncio.TimeoutError:
            pytest.fail(f"timed out waiting for {needle!r}; got {text!r}")
        return text

    return _read_until


@pytest.fixture
def drain_until_end() -> Callable[..., Awaitable[OutputItem]]:
    """Discard output until the queue's terminator arrives, and return it."""

    async def _drain(queue: asyncio.Queue[OutputItem], timeout: float = 5.0) -> OutputItem:
        async def _next_terminator() -> OutputItem:
            while True:
                item = await queue.get()
                if not isinstance(item, bytes):
                    return item

        return await asyncio.wait_for(_next_terminator(), timeout)

    return _drain


class EventRecorder:
    """Stands in for a transport: records every outbound event."""

    def __init__(self) -> None:
        self.events: list[tuple[str, dict[str, Any]]] = []
        self.fail = False

    async def __call__(self, event: str, payload: dict[str, Any]) -> None:
        if self.fail:
            raise ConnectionError("transport gone")
        self.events.append((event, payload))

    def named(self, event: str, terminal_id: str | None = None) -> list[dict[str, Any]]:
        return [
            payload
            for name, payload in self.events
            if name == event and (terminal_id is None or payload["terminalId"] == terminal_id)
        ]

    def output(self, terminal_id: str) -> str:
        return "".join(p["data"] for p in self.named("terminal-output", terminal_id))

    async def wait_for(self, predicate: Callable[[], bool], timeout: float = 5.0) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                pytest.fail(f"condition not met; events so far: {self.events!r}")
            await asyncio.sleep(0.02)


@pytest.fixture
def recorder() -> EventRecorder:
    return EventRecorder()


def process_gone(pid: int) -> bool:
    """True once ``pid`` has exited and been reaped."""
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return True
    return False


@pytest.fixture
def is_process_gone() -> Callable[[int], bool]:
    return process_gone
