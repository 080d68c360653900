"""
Engine Hooks - Observer interface for host-visible events.

The engine never hands out its mutable session state. Everything the host
learns arrives as an immutable event through these hooks.

Design Principles:
- Hooks are optional (NullHooks by default)
- Hook exceptions are caught and logged by the engine, never propagate
- Hooks are called synchronously, after the state change they describe
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol, TYPE_CHECKING

if TYPE_CHECKING:
    from .session import ModelInfo

logger = logging.getLogger(__name__)


# =============================================================================
# Event Dataclasses
# =============================================================================

@dataclass(frozen=True)
class StatusEvent:
    """Human-readable connection/stream status for display."""
    peer_id: str
    text: str
    is_error: bool = False


@dataclass(frozen=True)
class ModelInfoEvent:
    peer_id: str
    model: "ModelInfo"


@dataclass(frozen=True)
class StreamStartedEvent:
    peer_id: str
    request_id: str
    superseded_id: str | None = None


@dataclass(frozen=True)
class ChunkAppendedEvent:
    """A chunk accepted into the visible or reasoning buffer."""
    peer_id: str
    request_id: str
    chunk: str
    buffer: str


@dataclass(frozen=True)
class StreamEndedEvent:
    peer_id: str
    request_id: str
    text: str
    reasoning: str


@dataclass(frozen=True)
class StreamErroredEvent:
    peer_id: str
    request_id: str | None
    message: str
    text: str = ""
    reasoning: str = ""


@dataclass(frozen=True)
class UnknownMessageEvent:
    peer_id: str
    tag: str
    fields: dict[str, Any] = field(default_factory=dict)


class DiagnosticKind(Enum):
    DECODE_FAILURE = "decode-failure"
    CORRELATION = "correlation"
    UNKNOWN_PEER = "unknown-peer"
    SEND_FAILED = "send-failed"
    UNEXPECTED_MESSAGE = "unexpected-message"


@dataclass(frozen=True)
class DiagnosticEvent:
    """Non-fatal anomaly: dropped payloads, stale ids, failed sends."""
    peer_id: str
    kind: DiagnosticKind
    detail: str


# =============================================================================
# Hooks Protocol
# =============================================================================

class EngineHooks(Protocol):
    """
    Protocol for engine event hooks.

    Implementations should be cheap; they run inline with message handling.
    """

    def on_status(self, event: StatusEvent) -> None:
        ...

    def on_model_info(self, event: ModelInfoEvent) -> None:
        ...

    def on_stream_started(self, event: StreamStartedEvent) -> None:
        ...

    def on_visible_token(self, event: ChunkAppendedEvent) -> None:
        ...

    def on_reasoning_token(self, event: ChunkAppendedEvent) -> None:
        ...

    def on_stream_ended(self, event: StreamEndedEvent) -> None:
        ...

    def on_stream_errored(self, event: StreamErroredEvent) -> None:
        ...

    def on_unknown_message(self, event: UnknownMessageEvent) -> None:
        ...

    def on_diagnostic(self, event: DiagnosticEvent) -> None:
        ...


# =============================================================================
# Null Implementation
# =============================================================================

class NullHooks:
    """No-op hooks; subclass and override what you need."""

    def on_status(self, event: StatusEvent) -> None:
        pass

    def on_model_info(self, event: ModelInfoEvent) -> None:
        pass

    def on_stream_started(self, event: StreamStartedEvent) -> None:
        pass

    def on_visible_token(self, event: ChunkAppendedEvent) -> None:
        pass

    def on_reasoning_token(self, event: ChunkAppendedEvent) -> None:
        pass

    def on_stream_ended(self, event: StreamEndedEvent) -> None:
        pass

    def on_stream_errored(self, event: StreamErroredEvent) -> None:
        pass

    def on_unknown_message(self, event: UnknownMessageEvent) -> None:
        pass

    def on_diagnostic(self, event: DiagnosticEvent) -> None:
        pass


# =============================================================================
# Logging Hooks (for debugging)
# =============================================================================

class LoggingHooks(NullHooks):
    """Hooks that log every event."""

    def __init__(self, log_level: int = logging.INFO):
        self._level = log_level

    def on_status(self, event: StatusEvent) -> None:
        level = logging.WARNING if event.is_error else self._level
        logger.log(level, f"[HOOK] status peer={event.peer_id}: {event.text}")

    def on_model_info(self, event: ModelInfoEvent) -> None:
        logger.log(
            self._level,
            f"[HOOK] model info peer={event.peer_id}: {event.model.display_name} "
            f"(id={event.model.id}, installed={event.model.installed})",
        )

    def on_stream_started(self, event: StreamStartedEvent) -> None:
        logger.log(self._level, f"[HOOK] stream started peer={event.peer_id} id={event.request_id}")

    def on_stream_ended(self, event: StreamEndedEvent) -> None:
        logger.log(
            self._level,
            f"[HOOK] stream ended peer={event.peer_id} id={event.request_id} "
            f"chars={len(event.text)} reasoning_chars={len(event.reasoning)}",
        )

    def on_stream_errored(self, event: StreamErroredEvent) -> None:
        logger.log(
            self._level,
            f"[HOOK] stream errored peer={event.peer_id} id={event.request_id}: {event.message}",
        )

    def on_unknown_message(self, event: UnknownMessageEvent) -> None:
        logger.log(self._level, f'[HOOK] unknown message type "{event.tag}" from {event.peer_id}')

    def on_diagnostic(self, event: DiagnosticEvent) -> None:
        logger.debug(f"[HOOK] {event.kind.value} peer={event.peer_id}: {event.detail}")
