"""
Per-peer session state and the model info cache.

A PeerSession is created when the transport reports a connected peer and
discarded when it disconnects. Nothing is shared between peers and nothing
survives a reconnect.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from .negotiation import NegotiationState, VersionNegotiator
from .protocol import ModelInfoMessage
from .stream import StreamState, StreamTracker


@dataclass(frozen=True)
class ModelInfo:
    """Capability descriptor of the peer's current model."""
    id: str
    display_name: str
    installed: bool

    @classmethod
    def from_message(cls, msg: ModelInfoMessage) -> ModelInfo:
        return cls(id=msg.id, display_name=msg.display_name, installed=msg.installed)

    def describe(self) -> str:
        return f"{self.display_name} ({'installed' if self.installed else 'not installed'})"


class ModelInfoCache:
    """Holds the single most recent ModelInfo; each update replaces it wholesale."""

    __slots__ = ("_info", "updates")

    def __init__(self) -> None:
        self._info: ModelInfo | None = None
        self.updates = 0

    def update(self, msg: ModelInfoMessage) -> ModelInfo:
        self._info = ModelInfo.from_message(msg)
        self.updates += 1
        return self._info

    def get(self) -> ModelInfo | None:
        return self._info

    def clear(self) -> None:
        self._info = None


@dataclass
class PeerSession:
    """
    Engine-owned state for one connected peer.

    Tracks negotiation, the cached model descriptor, the active stream and
    a few counters for diagnostics.
    """
    peer_id: str
    negotiator: VersionNegotiator
    stream: StreamTracker = field(default_factory=StreamTracker)
    model_cache: ModelInfoCache = field(default_factory=ModelInfoCache)

    connected_at: float = 0.0
    last_message_at: float = 0.0
    last_request_id: str | None = None

    # Statistics
    messages_sent: int = 0
    messages_received: int = 0
    send_failures: int = 0
    decode_failures: int = 0

    @property
    def state(self) -> NegotiationState:
        return self.negotiator.state

    def snapshot(self) -> PeerSnapshot:
        hello = self.negotiator.peer_hello
        return PeerSnapshot(
            peer_id=self.peer_id,
            negotiation=self.negotiator.state,
            reason=self.negotiator.reason,
            peer_protocol_version=self.negotiator.peer_protocol_version,
            peer_impl=hello.impl if hello else None,
            peer_version=hello.version if hello else None,
            model=self.model_cache.get(),
            stream=self.stream.snapshot(),
            last_request_id=self.last_request_id,
        )

    def stats(self) -> dict[str, Any]:
        return {
            "peer_id": self.peer_id,
            "state": self.negotiator.state.name,
            "connected_at": self.connected_at,
            "messages_sent": self.messages_sent,
            "messages_received": self.messages_received,
            "send_failures": self.send_failures,
            "decode_failures": self.decode_failures,
            "last_message_at": self.last_message_at,
            "model_updates": self.model_cache.updates,
        }


@dataclass(frozen=True)
class PeerSnapshot:
    """Read-only copy of a session handed to the host."""
    peer_id: str
    negotiation: NegotiationState
    reason: str | None
    peer_protocol_version: str | None
    peer_impl: str | None
    peer_version: str | None
    model: ModelInfo | None
    stream: StreamState
    last_request_id: str | None

    @property
    def is_compatible(self) -> bool:
        return self.negotiation == NegotiationState.COMPATIBLE
