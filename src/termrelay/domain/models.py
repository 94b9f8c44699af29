"""Core domain models for the termrelay system.

These models represent the data flowing through the relay: messages
sent by clients over their channel, events sent back to them, process
exit reports, and the read-only session snapshots served over HTTP.
"""

from __future__ import annotations

import enum
from datetime import datetime
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class SessionMode(str, enum.Enum):
    """How input is framed for the wrapped tool or the simulated responder."""

    CHAT = "chat"
    CODE = "code"
    EDIT = "edit"
    TOOL = "tool"


class SessionState(str, enum.Enum):
    """Lifecycle state of a session."""

    INITIALIZING = "initializing"
    ACTIVE = "active"  # Backed by a real child process
    ACTIVE_FALLBACK = "active_fallback"  # Backed by the simulated responder
    TERMINATED = "terminated"


class OutputKind(str, enum.Enum):
    """Origin of an output event."""

    OUTPUT = "output"  # Raw text from the child process
    RESPONSE = "response"  # Simulated reply to an input
    ACKNOWLEDGMENT = "acknowledgment"  # Simulated reply to a confirmation


# ---------------------------------------------------------------------------
# Client -> server messages (discriminated union)
# ---------------------------------------------------------------------------


class InputMessage(BaseModel):
    """A line of text for the session's process."""

    model_config = ConfigDict(frozen=True)

    type: Literal["input"] = "input"
    text: str = Field(description="Text to send; a newline is appended when forwarded")
    mode: SessionMode = Field(default=SessionMode.CHAT)


class ConfirmationMessage(BaseModel):
    """An answer to a yes/no prompt from the wrapped tool."""

    model_config = ConfigDict(frozen=True)

    type: Literal["confirmation"] = "confirmation"
    choice: str = Field(description="'yes', 'no', or any other token sent verbatim")


class ModeChangeMessage(BaseModel):
    """A mode switch announced by the client; acknowledged only."""

    model_config = ConfigDict(frozen=True)

    type: Literal["mode-change"] = "mode-change"
    mode: SessionMode


ClientMessage = Annotated[
    Union[InputMessage, ConfirmationMessage, ModeChangeMessage],
    Field(discriminator="type"),
]

client_message_adapter: TypeAdapter[ClientMessage] = TypeAdapter(ClientMessage)


# ---------------------------------------------------------------------------
# Server -> client events
# ---------------------------------------------------------------------------


class OutputEvent(BaseModel):
    """A chunk of output for the client bound to a session."""

    model_config = ConfigDict(frozen=True)

    type: Literal["output"] = "output"
    kind: OutputKind = Field(default=OutputKind.OUTPUT)
    text: str
    mode: SessionMode
    timestamp: datetime = Field(default_factory=datetime.now)


class ModeChangedEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["mode-changed"] = "mode-changed"
    mode: SessionMode


class SessionEndedEvent(BaseModel):
    """Sent right before the server closes a channel whose session ended."""

    model_config = ConfigDict(frozen=True)

    type: Literal["session-ended"] = "session-ended"
    reason: str


ServerEvent = Union[OutputEvent, ModeChangedEvent, SessionEndedEvent]


# ---------------------------------------------------------------------------
# Process / session models
# ---------------------------------------------------------------------------


class ProcessExit(BaseModel):
    """Terminal status of a child process.

    Exactly one of ``exit_code`` and ``signal`` is set.
    """

    model_config = ConfigDict(frozen=True)

    exit_code: int | None = Field(default=None, description="Exit status if the process exited")
    signal: int | None = Field(default=None, description="Signal number if the process was killed")

    @classmethod
    def from_returncode(cls, returncode: int) -> ProcessExit:
        if returncode < 0:
            return cls(signal=-returncode)
        return cls(exit_code=returncode)

    @property
    def is_clean(self) -> bool:
        return self.exit_code == 0


class SessionInfo(BaseModel):
    """Read-only snapshot of a session for the listing endpoint."""

    model_config = ConfigDict(frozen=True)

    id: str
    is_active: bool
    state: SessionState
    mode: SessionMode
    last_activity_at: datetime


class HealthStatus(BaseModel):
    status: str = "healthy"
    timestamp: datetime = Field(default_factory=datetime.now)
    active_sessions: int = Field(ge=0)
    uptime: float = Field(ge=0, description="Seconds since the application was created")


class SessionListing(BaseModel):
    total: int = Field(ge=0)
    sessions: list[SessionInfo] = Field(default_factory=list)
