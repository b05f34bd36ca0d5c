"""Terminal broker -- pty-backed shell sessions multiplexed per connection.

Sessions are spawned on their own pseudo-terminal and process group,
grouped in a registry per client connection, and torn down with the
connection so no process outlives its client.
"""

from termbroker.broker.errors import (
    BrokerError,
    RegistryClosedError,
    SessionExistsError,
    SpawnError,
)
from termbroker.broker.protocol import BrokerProtocolHandler
from termbroker.broker.registry import SessionRegistry
from termbroker.broker.session import ExitStatus, PtySession, SessionState
from termbroker.broker.shell import resolve_shell, shell_candidates
from termbroker.broker.supervisor import ConnectionSupervisor

__all__ = [
    "BrokerError",
    "BrokerProtocolHandler",
    "ConnectionSupervisor",
    "ExitStatus",
    "PtySession",
    "RegistryClosedError",
    "SessionExistsError",
    "SessionRegistry",
    "SessionState",
    "SpawnError",
    "resolve_shell",
    "shell_candidates",
]
