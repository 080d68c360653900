"""
Version negotiation state machine (one per peer session).

    INIT --begin()--> NEGOTIATING --version_ack--> COMPATIBLE | INCOMPATIBLE

There is no renegotiation message. A repeated version_ack overwrites the
recorded decision. Only COMPATIBLE permits prompt/get_model sends.
"""

from __future__ import annotations

import logging
from enum import Enum, auto

from .errors import ProtocolError
from .protocol import Hello, VersionAck, VersionNegotiate

logger = logging.getLogger(__name__)


class NegotiationState(Enum):
    INIT = auto()
    NEGOTIATING = auto()
    COMPATIBLE = auto()
    INCOMPATIBLE = auto()


def parse_version(value: str) -> tuple[int, ...]:
    """Parse a dotted numeric version ("1.0.0") into a comparable tuple.

    Raises:
        ValueError: empty, non-numeric or negative components
    """
    parts = value.strip().split(".")
    if not value.strip() or any(not p.isdigit() for p in parts):
        raise ValueError(f"Invalid protocol version: {value!r}")
    return tuple(int(p) for p in parts)


class VersionNegotiator:
    """
    Handshake state for one peer.

    Holds only negotiation facts; sending is done by the engine, which asks
    begin() for the opening messages and on_ack() whether to follow up with
    a model request.
    """

    def __init__(
        self,
        *,
        client_id: str,
        impl: str,
        impl_version: str,
        protocol_version: str,
        min_compatible_version: str,
    ):
        self.client_id = client_id
        self.impl = impl
        self.impl_version = impl_version
        self.protocol_version = protocol_version
        self.min_compatible_version = min_compatible_version

        self.state = NegotiationState.INIT
        self.reason: str | None = None
        self.peer_protocol_version: str | None = None
        self.peer_hello: Hello | None = None
        self.started_at: float = 0.0
        self._model_requested = False

    def begin(self, *, now: float) -> list[Hello | VersionNegotiate]:
        """Move to NEGOTIATING and return the opening messages, in send order."""
        self.state = NegotiationState.NEGOTIATING
        self.reason = None
        self.peer_protocol_version = None
        self.started_at = now
        self._model_requested = False
        return [
            Hello(client_id=self.client_id, impl=self.impl, version=self.impl_version),
            VersionNegotiate(
                protocol_version=self.protocol_version,
                min_compatible_version=self.min_compatible_version,
            ),
        ]

    def on_hello(self, hello: Hello) -> None:
        self.peer_hello = hello

    def on_ack(self, ack: VersionAck) -> bool:
        """
        Record the peer's decision.

        Returns:
            True when this ack is the first entry into COMPATIBLE for the
            current negotiation, i.e. the model should be requested now.
        """
        self.peer_protocol_version = ack.protocol_version
        self.reason = ack.reason

        if not ack.compatible:
            self.state = NegotiationState.INCOMPATIBLE
            return False

        self.state = NegotiationState.COMPATIBLE
        self._warn_if_below_minimum(ack.protocol_version)

        if self._model_requested:
            return False
        self._model_requested = True
        return True

    def expire(self, reason: str) -> None:
        self.state = NegotiationState.INCOMPATIBLE
        self.reason = reason

    def require_compatible(self) -> None:
        """Raise ProtocolError unless prompt/get_model sends are allowed."""
        if self.state == NegotiationState.COMPATIBLE:
            return
        if self.state == NegotiationState.INCOMPATIBLE:
            raise ProtocolError(
                ProtocolError.INCOMPATIBLE,
                f"peer protocol incompatible: {self.reason or 'version mismatch'}",
            )
        raise ProtocolError(ProtocolError.NOT_NEGOTIATED, "protocol version not negotiated yet")

    @property
    def is_compatible(self) -> bool:
        return self.state == NegotiationState.COMPATIBLE

    def _warn_if_below_minimum(self, peer_version: str | None) -> None:
        if not peer_version:
            return
        try:
            below = parse_version(peer_version) < parse_version(self.min_compatible_version)
        except ValueError:
            logger.warning(f"Peer reported unparseable protocol version {peer_version!r}")
            return
        if below:
            logger.warning(
                f"Peer accepted compatibility at protocol {peer_version}, "
                f"below local minimum {self.min_compatible_version}"
            )
