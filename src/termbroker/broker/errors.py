"""Exceptions raised by the terminal broker."""

from __future__ import annotations


class BrokerError(Exception):
    """Base class for broker failures that are reported to the client."""

    def __init__(self, session_id: str, message: str) -> None:
        super().__init__(message)
        self.session_id = session_id
        self.message = message


class SpawnError(BrokerError):
    """Raised when a shell process cannot be started on a new pty."""


class SessionExistsError(BrokerError):
    """Raised when a create request reuses the id of a live session."""


class RegistryClosedError(BrokerError):
    """Raised when a session is requested after its connection was torn down."""
