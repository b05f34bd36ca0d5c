"""Session registry -- the sessions owned by one connection."""

from __future__ import annotations

import asyncio
import logging

from termbroker.broker.errors import RegistryClosedError, SessionExistsError
from termbroker.broker.session import ExitStatus, PtySession
from termbroker.broker.shell import resolve_shell
from termbroker.config.settings import TerminalConfig

logger = logging.getLogger(__name__)

# Extra seconds teardown waits beyond the kill grace period for processes
# to be reaped after SIGKILL.
_REAP_MARGIN = 3.0


class SessionRegistry:
    """Maps client-supplied session ids to live sessions for one connection.

    The registry ensures:
    - Only live sessions are tracked; an entry disappears as soon as its
      session exits or is closed
    - A live session is never replaced by a new one with the same id
    - Operations on unknown ids are ignored (late events racing a close)
    - Every session is closed on teardown (no orphan processes)
    """

    def __init__(self, connection_id: str, config: TerminalConfig | None = None) -> None:
        self._connection_id = connection_id
        self._config = config or TerminalConfig()
        self._sessions: dict[str, PtySession] = {}
        self._torn_down = False

    @property
    def connection_id(self) -> str:
        return self._connection_id

    async def create_session(
        self, session_id: str, cols: int | None = None, rows: int | None = None
    ) -> PtySession:
        """Spawn a shell for ``session_id`` and start tracking it.

        Raises:
            SessionExistsError: ``session_id`` belongs to a live session.
            SpawnError: The shell could not be started.
            RegistryClosedError: The registry was already torn down.
        """
        if self._torn_down:
            raise RegistryClosedError(session_id, "Connection is closing")
        if session_id in self._sessions:
            raise SessionExistsError(
                session_id, f"Terminal {session_id!r} already exists; close it first"
            )

        shell = resolve_shell(default_shell=self._config.default_shell)
        session = await PtySession.spawn(
            session_id,
            shell,
            cols or self._config.default_cols,
            rows or self._config.default_rows,
            cwd=self._config.home_dir,
            term_name=self._config.term_name,
            kill_grace_period=self._config.kill_grace_period,
            read_chunk_size=self._config.read_chunk_size,
        )

        # The id may have been taken or the registry torn down while spawning
        if self._torn_down or session_id in self._sessions:
            session.close()
            if self._torn_down:
                raise RegistryClosedError(session_id, "Connection is closing")
            raise SessionExistsError(
                session_id, f"Terminal {session_id!r} already exists; close it first"
            )

        session.set_on_exit(self._on_session_exit)
        self._sessions[session_id] = session
        logger.debug(
            "Connection %s now has %d session(s)", self._connection_id, len(self._sessions)
        )
        return session

    def get(self, session_id: str) -> PtySession | None:
        return self._sessions.get(session_id)

    def input(self, session_id: str, data: bytes | str) -> None:
        session = self._sessions.get(session_id)
        if session is None:
            logger.debug("Input for unknown terminal %s ignored", session_id)
            return
        session.write(data)

    def resize(self, session_id: str, cols: int, rows: int) -> None:
        session = self._sessions.get(session_id)
        if session is None:
            logger.debug("Resize for unknown terminal %s ignored", session_id)
            return
        session.resize(cols, rows)

    def close(self, session_id: str) -> None:
        session = self._sessions.pop(session_id, None)
        if session is None:
            logger.debug("Close for unknown terminal %s ignored", session_id)
            return
        session.close()

    async def teardown_all(self) -> None:
        """Close every session and wait for the processes to be reaped."""
        if self._torn_down:
            return
        self._torn_down = True

        sessions = list(self._sessions.values())
        self._sessions.clear()
        for session in sessions:
            session.close()

        if sessions:
            timeout = self._config.kill_grace_period + _REAP_MARGIN
            _, pending = await asyncio.wait(
                [asyncio.ensure_future(s.wait_closed()) for s in sessions],
                timeout=timeout,
            )
            for waiter in pending:
                waiter.cancel()
            if pending:
                logger.warning(
                    "%d session(s) of connection %s not reaped after %.1fs",
                    len(pending), self._connection_id, timeout,
                )
        logger.info(
            "Connection %s torn down (%d session(s) closed)",
            self._connection_id, len(sessions),
        )

    def session_ids(self) -> list[str]:
        return list(self._sessions)

    def _on_session_exit(self, session: PtySession, status: ExitStatus) -> None:
        # Only drop the entry if it still refers to this session object
        if self._sessions.get(session.id) is session:
            del self._sessions[session.id]

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)
