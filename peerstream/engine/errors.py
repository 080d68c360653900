"""
Error taxonomy for the link engine.

- DecodeFailure: a peer payload that could not be turned into a message.
  A value, not an exception; the dispatcher logs and drops it.
- ProtocolError: the host asked for something the negotiation state forbids.
- ValidationError: the host supplied an unusable generation request.
- SendResult: outcome of handing a payload to the transport.

Nothing driven by peer input raises; only host-caller mistakes do.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class DecodeFailureKind(Enum):
    """Why a payload was rejected at the decode boundary."""
    UNSUPPORTED_PAYLOAD = "unsupported-payload"
    MALFORMED = "malformed"
    MISSING_DISCRIMINATOR = "missing-discriminator"
    INVALID_FIELD = "invalid-field"


@dataclass(frozen=True)
class DecodeFailure:
    kind: DecodeFailureKind
    detail: str = ""
    preview: str = ""

    def describe(self) -> str:
        if self.detail:
            return f"{self.kind.value}: {self.detail}"
        return self.kind.value


class LinkError(Exception):
    """Base class for errors raised to the host."""

    def __init__(self, reason: str, message: Optional[str] = None):
        self.reason = reason
        super().__init__(message or reason)


class ProtocolError(LinkError):
    """Action attempted outside the negotiation state that permits it."""

    NOT_NEGOTIATED = "not-negotiated"
    INCOMPATIBLE = "incompatible"
    UNKNOWN_PEER = "unknown-peer"


class ValidationError(LinkError):
    """Generation request inputs rejected before anything is sent."""

    EMPTY_USER_MESSAGE = "empty-user-message"
    EMPTY_REQUEST_ID = "empty-request-id"
    MISSING_USER_MESSAGE = "missing-user-message"
    BLANK_CONTENT = "blank-content"
    INVALID_MAX_TOKENS = "invalid-max-tokens"


class FieldError(ValueError):
    """A known message type is missing a field or carries the wrong type."""

    def __init__(self, message_type: str, field_name: str, expected: str):
        self.message_type = message_type
        self.field_name = field_name
        self.expected = expected
        super().__init__(f"{message_type}.{field_name}: expected {expected}")


@dataclass(frozen=True)
class SendResult:
    """Outcome of a transport send."""
    ok: bool
    reason: Optional[str] = None

    @classmethod
    def success(cls) -> SendResult:
        return cls(ok=True)

    @classmethod
    def failed(cls, reason: str) -> SendResult:
        return cls(ok=False, reason=reason)

    def __bool__(self) -> bool:
        return self.ok
