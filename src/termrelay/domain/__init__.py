"""Domain models for termrelay.

This package contains the wire messages, enumerations, and value
objects used throughout the system. All models use Pydantic v2 for
validation and serialization.
"""

from termrelay.domain.models import (
    ClientMessage,
    ConfirmationMessage,
    InputMessage,
    ModeChangedEvent,
    ModeChangeMessage,
    OutputEvent,
    OutputKind,
    ProcessExit,
    SessionEndedEvent,
    SessionInfo,
    SessionMode,
    SessionState,
)

__all__ = [
    "ClientMessage",
    "ConfirmationMessage",
    "InputMessage",
    "ModeChangedEvent",
    "ModeChangeMessage",
    "OutputEvent",
    "OutputKind",
    "ProcessExit",
    "SessionEndedEvent",
    "SessionInfo",
    "SessionMode",
    "SessionState",
]
