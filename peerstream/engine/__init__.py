"""
Link engine: codec, version negotiation, per-peer sessions, stream
reassembly and request dispatch over a peer transport.
"""

from .config import LinkConfig, get_config, reset_config, set_config
from .dispatcher import LinkEngine, PeerTransport
from .errors import (
    DecodeFailure,
    DecodeFailureKind,
    LinkError,
    ProtocolError,
    SendResult,
    ValidationError,
)
from .hooks import EngineHooks, LoggingHooks, NullHooks
from .negotiation import NegotiationState, VersionNegotiator
from .protocol import ChatMessage, MessageType, Role, decode, encode
from .request_builder import GenerationRequest, build_request, new_request_id
from .session import ModelInfo, ModelInfoCache, PeerSession, PeerSnapshot
from .stream import StreamState, StreamStatus, StreamTracker
from .transport import WebSocketPeerTransport

__all__ = [
    "ChatMessage",
    "DecodeFailure",
    "DecodeFailureKind",
    "EngineHooks",
    "GenerationRequest",
    "LinkConfig",
    "LinkEngine",
    "LinkError",
    "LoggingHooks",
    "MessageType",
    "ModelInfo",
    "ModelInfoCache",
    "NegotiationState",
    "NullHooks",
    "PeerSession",
    "PeerSnapshot",
    "PeerTransport",
    "ProtocolError",
    "Role",
    "SendResult",
    "StreamState",
    "StreamStatus",
    "StreamTracker",
    "ValidationError",
    "VersionNegotiator",
    "build_request",
    "decode",
    "encode",
    "get_config",
    "new_request_id",
    "reset_config",
    "set_config",
]
