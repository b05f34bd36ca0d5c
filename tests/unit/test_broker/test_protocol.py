"""Tests for the broker protocol handler.

The transport is replaced by an EventRecorder; sessions are real
/bin/sh processes.
"""

from __future__ import annotations

import asyncio
import os
import sys

import pytest

from termbroker.broker.protocol import BrokerProtocolHandler
from termbroker.broker.registry import SessionRegistry

pytestmark = pytest.mark.skipif(
    sys.platform == "win32" or not os.path.exists("/bin/sh"),
    reason="needs a POSIX host with /bin/sh",
)


def _handler(recorder, terminal_config) -> BrokerProtocolHandler:
    handler = BrokerProtocolHandler("conn-1", recorder, config=terminal_config)
    handler.open()
    return handler


class TestCreateTerminal:
    @pytest.mark.asyncio
    async def test_ready_then_output(self, recorder, terminal_config) -> None:
        handler = _handler(recorder, terminal_config)
        try:
            await handler.handle_event(
                "create-terminal", {"terminalId": "t1", "cols": 80, "rows": 24}
            )
            assert recorder.events[0] == ("terminal-ready", {"terminalId": "t1"})

            await handler.handle_event(
                "terminal-input", {"terminalId": "t1", "data": "echo h''i\n"}
            )
            await recorder.wait_for(lambda: "hi" in recorder.output("t1").replace("h''i", ""))
        finally:
            await handler.disconnect()

    @pytest.mark.asyncio
    async def test_ready_precedes_output(self, recorder, terminal_config) -> None:
        handler = _handler(recorder, terminal_config)
        try:
            await handler.handle_event("create-terminal", {"terminalId": "t1"})
            await handler.handle_event(
                "terminal-input", {"terminalId": "t1", "data": "echo $((3+4))\n"}
            )
            await recorder.wait_for(lambda: "7" in recorder.output("t1"))
            names = [name for name, _ in recorder.events]
            assert names.index("terminal-ready") < names.index("terminal-output")
        finally:
            await handler.disconnect()

    @pytest.mark.asyncio
    async def test_spawn_failure_reports_one_error(self, recorder, terminal_config, monkeypatch) -> None:
        monkeypatch.setattr(
            "termbroker.broker.registry.resolve_shell", lambda **kw: "/nonexistent/sh"
        )
        handler = _handler(recorder, terminal_config)
        try:
            await handler.handle_event("create-terminal", {"terminalId": "t2"})
            errors = recorder.named("terminal-error")
            assert len(errors) == 1
            assert errors[0]["terminalId"] == "t2"
            assert errors[0]["message"]
            assert recorder.named("terminal-ready") == []
            assert "t2" not in handler.registry
        finally:
            await handler.disconnect()

    @pytest.mark.asyncio
    async def test_failed_create_does_not_affect_others(self, recorder, terminal_config, monkeypatch) -> None:
        handler = _handler(recorder, terminal_config)
        try:
            await handler.handle_event("create-terminal", {"terminalId": "good"})
            with monkeypatch.context() as m:
                m.setattr("termbroker.broker.registry.resolve_shell", lambda **kw: "/nonexistent/sh")
                await handler.handle_event("create-terminal", {"terminalId": "bad"})

            await handler.handle_event(
                "terminal-input", {"terminalId": "good", "data": "echo $((40+2))\n"}
            )
            await recorder.wait_for(lambda: "42" in recorder.output("good"))
            assert len(recorder.named("terminal-error", "bad")) == 1
        finally:
            await handler.disconnect()

    @pytest.mark.asyncio
    async def test_duplicate_id_reports_error(self, recorder, terminal_config) -> None:
        handler = _handler(recorder, terminal_config)
        try:
            await handler.handle_event("create-terminal", {"terminalId": "t1"})
            await handler.handle_event("create-terminal", {"terminalId": "t1"})
            assert len(recorder.named("terminal-ready", "t1")) == 1
            assert len(recorder.named("terminal-error", "t1")) == 1
            assert len(handler.registry) == 1
        finally:
            await handler.disconnect()

    @pytest.mark.asyncio
    async def test_invalid_create_with_id_reports_error(self, recorder, terminal_config) -> None:
        handler = _handler(recorder, terminal_config)
        await handler.handle_event("create-terminal", {"terminalId": "t1", "cols": -5})
        assert recorder.named("terminal-error", "t1")
        assert len(handler.registry) == 0
        await handler.disconnect()


class TestMultiplexing:
    @pytest.mark.asyncio
    async def test_close_one_keeps_other(self, recorder, terminal_config) -> None:
        handler = _handler(recorder, terminal_config)
        try:
            await handler.handle_event("create-terminal", {"terminalId": "a"})
            await handler.handle_event("create-terminal", {"terminalId": "b"})
            await handler.handle_event("close-terminal", {"terminalId": "a"})
            assert "a" not in handler.registry

            await handler.handle_event(
                "terminal-input", {"terminalId": "a", "data": "echo $((1000+1))\n"}
            )
            await handler.handle_event(
                "terminal-input", {"terminalId": "b", "data": "echo $((2000+2))\n"}
            )
            await recorder.wait_for(lambda: "2002" in recorder.output("b"))

            assert "1001" not in recorder.output("a")
            assert recorder.named("terminal-exit", "a") == []
        finally:
            await handler.disconnect()

    @pytest.mark.asyncio
    async def test_output_tagged_with_terminal_id(self, recorder, terminal_config) -> None:
        handler = _handler(recorder, terminal_config)
        try:
            await handler.handle_event("create-terminal", {"terminalId": "a"})
            await handler.handle_event("create-terminal", {"terminalId": "b"})
            await handler.handle_event(
                "terminal-input", {"terminalId": "a", "data": "echo $((111*3))\n"}
            )
            await handler.handle_event(
                "terminal-input", {"terminalId": "b", "data": "echo $((222*3))\n"}
            )
            await recorder.wait_for(
                lambda: "333" in recorder.output("a") and "666" in recorder.output("b")
            )
            assert "666" not in recorder.output("a")
            assert "333" not in recorder.output("b")
        finally:
            await handler.disconnect()

    @pytest.mark.asyncio
    async def test_resize_routed(self, recorder, terminal_config) -> None:
        handler = _handler(recorder, terminal_config)
        try:
            await handler.handle_event("create-terminal", {"terminalId": "t1"})
            await handler.handle_event(
                "terminal-resize", {"terminalId": "t1", "cols": 120, "rows": 40}
            )
            session = handler.registry.get("t1")
            assert session is not None
            assert (session.cols, session.rows) == (120, 40)
        finally:
            await handler.disconnect()


class TestExit:
    @pytest.mark.asyncio
    async def test_exit_event(self, recorder, terminal_config) -> None:
        handler = _handler(recorder, terminal_config)
        try:
            await handler.handle_event("create-terminal", {"terminalId": "t1"})
            await handler.handle_event("terminal-input", {"terminalId": "t1", "data": "exit 5\n"})
            await recorder.wait_for(lambda: recorder.named("terminal-exit", "t1"))

            exits = recorder.named("terminal-exit", "t1")
            assert exits == [{"terminalId": "t1", "exitCode": 5, "signal": None}]
            assert recorder.events[-1][0] == "terminal-exit"
            assert "t1" not in handler.registry
        finally:
            await handler.disconnect()


class TestInvalidEvents:
    @pytest.mark.asyncio
    async def test_unknown_event_ignored(self, recorder, terminal_config) -> None:
        handler = _handler(recorder, terminal_config)
        await handler.handle_event("reboot-server", {"terminalId": "t1"})
        assert recorder.events == []
        await handler.disconnect()

    @pytest.mark.asyncio
    async def test_malformed_payloads_ignored(self, recorder, terminal_config) -> None:
        handler = _handler(recorder, terminal_config)
        await handler.handle_event("create-terminal", {"cols": 80})
        await handler.handle_event("terminal-input", {"terminalId": "t1"})
        await handler.handle_event("terminal-resize", {"terminalId": "t1", "cols": "wide"})
        await handler.handle_event("close-terminal", "t1")
        assert recorder.events == []
        await handler.disconnect()

    @pytest.mark.asyncio
    async def test_stale_operations_silent(self, recorder, terminal_config) -> None:
        handler = _handler(recorder, terminal_config)
        await handler.handle_event("terminal-input", {"terminalId": "ghost", "data": "ls\n"})
        await handler.handle_event("terminal-resize", {"terminalId": "ghost", "cols": 1, "rows": 1})
        await handler.handle_event("close-terminal", {"terminalId": "ghost"})
        assert recorder.events == []
        await handler.disconnect()


class TestDisconnect:
    @pytest.mark.asyncio
    async def test_disconnect_terminates_all_processes(self, recorder, terminal_config, is_process_gone) -> None:
        handler = _handler(recorder, terminal_config)
        await handler.handle_event("create-terminal", {"terminalId": "a"})
        await handler.handle_event("create-terminal", {"terminalId": "b"})
        pids = [handler.registry.get(t).pid for t in ("a", "b")]

        await asyncio.wait_for(handler.disconnect(), terminal_config.kill_grace_period + 5)

        assert handler.closed
        assert len(handler.registry) == 0
        assert all(is_process_gone(pid) for pid in pids)

    @pytest.mark.asyncio
    async def test_events_after_disconnect_discarded(self, recorder, terminal_config) -> None:
        handler = _handler(recorder, terminal_config)
        await handler.disconnect()
        await handler.disconnect()
        await handler.handle_event("create-terminal", {"terminalId": "late"})
        assert recorder.events == []
        assert len(handler.registry) == 0

    @pytest.mark.asyncio
    async def test_teardown_called_once(self, recorder, terminal_config) -> None:
        registry = SessionRegistry("conn-1", terminal_config)
        calls = 0
        original = registry.teardown_all

        async def counting_teardown() -> None:
            nonlocal calls
            calls += 1
            await original()

        registry.teardown_all = counting_teardown  # type: ignore[method-assign]
        handler = BrokerProtocolHandler("conn-1", recorder, registry=registry)
        await handler.disconnect()
        await handler.disconnect()
        assert calls == 1

    @pytest.mark.asyncio
    async def test_failed_ready_closes_session(self, recorder, terminal_config) -> None:
        handler = _handler(recorder, terminal_config)
        recorder.fail = True
        try:
            await handler.handle_event("create-terminal", {"terminalId": "t1"})
            assert "t1" not in handler.registry
            assert recorder.events == []
        finally:
            await handler.disconnect()

    @pytest.mark.asyncio
    async def test_failed_output_closes_session(self, recorder, terminal_config, is_process_gone) -> None:
        handler = _handler(recorder, terminal_config)
        try:
            await handler.handle_event("create-terminal", {"terminalId": "t1"})
            session = handler.registry.get("t1")
            assert session is not None

            recorder.fail = True
            await handler.handle_event(
                "terminal-input", {"terminalId": "t1", "data": "echo $((1+1))\n"}
            )
            await recorder.wait_for(lambda: "t1" not in handler.registry)
            await asyncio.wait_for(session.wait_closed(), terminal_config.kill_grace_period + 5)
            assert is_process_gone(session.pid)
        finally:
            await handler.disconnect()
