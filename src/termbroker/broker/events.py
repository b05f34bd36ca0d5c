"""Wire event names and payload models.

Inbound payloads are validated with Pydantic. Field names follow the
client's camelCase convention on the wire.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

# Inbound
CREATE_TERMINAL = "create-terminal"
TERMINAL_INPUT = "terminal-input"
TERMINAL_RESIZE = "terminal-resize"
CLOSE_TERMINAL = "close-terminal"

# Outbound
TERMINAL_READY = "terminal-ready"
TERMINAL_OUTPUT = "terminal-output"
TERMINAL_EXIT = "terminal-exit"
TERMINAL_ERROR = "terminal-error"


class _Payload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    terminal_id: str = Field(alias="terminalId", min_length=1)


class CreateTerminal(_Payload):
    cols: int | None = Field(default=None, gt=0)
    rows: int | None = Field(default=None, gt=0)


class TerminalInput(_Payload):
    data: str


class TerminalResize(_Payload):
    cols: int = Field(gt=0)
    rows: int = Field(gt=0)


class CloseTerminal(_Payload):
    pass


INBOUND_PAYLOADS: dict[str, type[_Payload]] = {
    CREATE_TERMINAL: CreateTerminal,
    TERMINAL_INPUT: TerminalInput,
    TERMINAL_RESIZE: TerminalResize,
    CLOSE_TERMINAL: CloseTerminal,
}


class EventEnvelope(BaseModel):
    """One message on the WebSocket: ``{"event": ..., "data": {...}}``."""

    event: str
    data: dict = Field(default_factory=dict)
