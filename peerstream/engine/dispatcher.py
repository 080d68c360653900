"""
Link Engine - routes transport events through the codec to per-peer state.

Provides:
1. Peer session lifecycle (connect creates, disconnect discards)
2. Handshake sends and version_ack handling
3. Model info caching (auto-requested once compatible)
4. Stream reassembly for the visible and reasoning channels
5. Host-facing prompt / model requests gated on negotiation state

Concurrency:
- Single-threaded and event-driven. The transport must deliver events
  serially; each is processed to completion. Nothing here blocks or awaits.

Error handling:
- Peer input never raises: bad payloads, foreign ids and unknown peers are
  logged and reported as diagnostic events.
- Host mistakes raise ProtocolError / ValidationError after emitting an
  error status.
- Transport send failures become SendResult.failed(...).
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Any, Protocol

from .config import LinkConfig
from .errors import DecodeFailure, ProtocolError, SendResult, ValidationError
from .hooks import (
    ChunkAppendedEvent,
    DiagnosticEvent,
    DiagnosticKind,
    EngineHooks,
    ModelInfoEvent,
    NullHooks,
    StatusEvent,
    StreamEndedEvent,
    StreamErroredEvent,
    StreamStartedEvent,
    UnknownMessageEvent,
)
from .negotiation import NegotiationState, VersionNegotiator
from .protocol import (
    End,
    Error,
    GetModel,
    Hello,
    Message,
    MessageType,
    ModelInfoMessage,
    ProtocolMessage,
    ReasoningToken,
    Start,
    Token,
    UnknownMessage,
    VersionAck,
    decode,
    encode,
)
from .request_builder import GenerationRequest, build_request, new_request_id
from .session import PeerSession, PeerSnapshot
from .stream import STREAM_TIMEOUT, StreamOutcome

logger = logging.getLogger(__name__)

NEGOTIATION_TIMEOUT = "negotiation-timeout"


class PeerTransport(Protocol):
    """The one outgoing operation the engine needs from a transport."""

    def send(self, peer_id: str, payload: str) -> None:
        """Deliver payload to peer_id or raise."""
        ...


class LinkEngine:
    """
    Client-side protocol engine for any number of independent peers.

    The transport reports on_peer_connected / on_peer_disconnected /
    on_message_received; the host calls send_prompt / request_model_info and
    observes everything else through hooks.
    """

    def __init__(
        self,
        transport: PeerTransport,
        config: LinkConfig | None = None,
        hooks: EngineHooks | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._transport = transport
        self._config = config or LinkConfig()
        self._hooks: EngineHooks = hooks or NullHooks()
        self._clock = clock

        # Sessions by peer id
        self._peers: dict[str, PeerSession] = {}

        self._handlers: dict[MessageType, Callable[[PeerSession, Any], None]] = {
            MessageType.HELLO: self._handle_hello,
            MessageType.VERSION_ACK: self._handle_version_ack,
            MessageType.MODEL_INFO: self._handle_model_info,
            MessageType.START: self._handle_start,
            MessageType.TOKEN: self._handle_token,
            MessageType.REASONING_TOKEN: self._handle_reasoning_token,
            MessageType.END: self._handle_end,
            MessageType.ERROR: self._handle_error,
            # Requests a host would receive; never valid toward a client.
            MessageType.VERSION_NEGOTIATE: self._handle_unexpected,
            MessageType.GET_MODEL: self._handle_unexpected,
            MessageType.PROMPT: self._handle_unexpected,
        }
        missing = set(MessageType) - set(self._handlers)
        assert not missing, f"unrouted message types: {sorted(m.value for m in missing)}"

    @property
    def config(self) -> LinkConfig:
        return self._config

    # -------------------------------------------------------------------------
    # Transport events
    # -------------------------------------------------------------------------

    def on_peer_connected(self, peer_id: str) -> None:
        """Create a fresh session and send hello + version_negotiate."""
        if peer_id in self._peers:
            logger.info(f"Peer {peer_id} reconnected; discarding previous session")

        now = self._clock()
        session = PeerSession(
            peer_id=peer_id,
            negotiator=self._new_negotiator(),
            connected_at=now,
        )
        self._peers[peer_id] = session
        logger.info(f"Peer connected: {peer_id}")
        self._status(peer_id, "Connected to peer. Negotiating protocol version...")

        opening = session.negotiator.begin(now=now)
        results = [self._send(session, msg) for msg in opening]
        if all(results):
            logger.info(
                f"Sent hello and version_negotiate to {peer_id}: "
                f"protocol={session.negotiator.protocol_version}, "
                f"minCompat={session.negotiator.min_compatible_version}"
            )
        else:
            self._status(peer_id, "Failed to negotiate protocol version", is_error=True)

    def on_peer_disconnected(self, peer_id: str) -> None:
        session = self._peers.pop(peer_id, None)
        if session is None:
            logger.debug(f"Disconnect for unknown peer {peer_id}; ignoring")
            self._diagnostic(peer_id, DiagnosticKind.UNKNOWN_PEER, "disconnect for unknown peer")
            return

        active = session.stream.active_id
        session.stream.reset()
        session.model_cache.clear()
        if active is not None:
            logger.info(f"Peer disconnected: {peer_id} (discarded active stream id={active})")
        else:
            logger.info(f"Peer disconnected: {peer_id}")
        self._status(peer_id, "Peer disconnected. You may reconnect or wait for peer.")

    def on_message_received(self, peer_id: str, raw: Any) -> None:
        """Decode one payload and route it. Never raises."""
        session = self._peers.get(peer_id)
        if session is None:
            logger.debug(f"Dropping message from unknown or disconnected peer {peer_id}")
            self._diagnostic(peer_id, DiagnosticKind.UNKNOWN_PEER, "message from unknown peer")
            return

        session.messages_received += 1
        session.last_message_at = self._clock()

        decoded = decode(raw)
        if isinstance(decoded, DecodeFailure):
            session.decode_failures += 1
            logger.warning(
                f"Dropping payload from {peer_id}: {decoded.describe()}",
                extra={"context": {"peer_id": peer_id, "preview": decoded.preview}},
            )
            self._diagnostic(peer_id, DiagnosticKind.DECODE_FAILURE, decoded.describe())
            return

        self._dispatch(session, decoded)

    def _dispatch(self, session: PeerSession, message: ProtocolMessage) -> None:
        if isinstance(message, UnknownMessage):
            logger.info(f'Ignoring unknown message type "{message.tag}" from {session.peer_id}')
            self._emit("on_unknown_message", UnknownMessageEvent(session.peer_id, message.tag, dict(message.fields)))
            return

        handler = self._handlers[message.type]
        try:
            handler(session, message)
        except Exception as e:
            logger.error(f"Error handling {message.type.value} from {session.peer_id}: {e}", exc_info=True)

    # -------------------------------------------------------------------------
    # Handlers
    # -------------------------------------------------------------------------

    def _handle_hello(self, session: PeerSession, msg: Hello) -> None:
        session.negotiator.on_hello(msg)
        logger.info(f"Received hello from {session.peer_id}: impl={msg.impl or ''} version={msg.version or ''}")

    def _handle_version_ack(self, session: PeerSession, msg: VersionAck) -> None:
        request_model = session.negotiator.on_ack(msg)

        if not msg.compatible:
            logger.warning(
                f"Version negotiation failed with {session.peer_id}: {msg.reason or 'incompatible versions'}"
            )
            self._status(
                session.peer_id,
                f"Protocol version incompatible: {msg.reason or 'server version mismatch'}",
                is_error=True,
            )
            return

        logger.info(f"Version negotiation successful with {session.peer_id}: peer protocol={msg.protocol_version}")
        self._status(session.peer_id, "Connected and ready. Protocol version compatible.")

        if request_model and self._config.protocol.auto_request_model:
            self._send_model_request(session)

    def _handle_model_info(self, session: PeerSession, msg: ModelInfoMessage) -> None:
        info = session.model_cache.update(msg)
        logger.info(
            f"Received model info from {session.peer_id}: {info.display_name} "
            f"(id={info.id}, installed={info.installed})"
        )
        self._emit("on_model_info", ModelInfoEvent(session.peer_id, info))

    def _handle_start(self, session: PeerSession, msg: Start) -> None:
        outcome = session.stream.start(msg.id, now=self._clock())
        if outcome.superseded_id is not None:
            logger.info(f"Stream id={msg.id} supersedes unfinished id={outcome.superseded_id}")
        else:
            logger.info(f"Received start for id={msg.id}")
        self._emit("on_stream_started", StreamStartedEvent(session.peer_id, msg.id, outcome.superseded_id))

    def _handle_token(self, session: PeerSession, msg: Token) -> None:
        outcome = session.stream.token(msg.id, msg.tok, now=self._clock())
        if not outcome.accepted:
            self._correlation(session, "token", outcome)
            return
        event = ChunkAppendedEvent(session.peer_id, msg.id, msg.tok, session.stream.state.visible_buffer)
        self._emit("on_visible_token", event)

    def _handle_reasoning_token(self, session: PeerSession, msg: ReasoningToken) -> None:
        outcome = session.stream.reasoning_token(msg.id, msg.tok, now=self._clock())
        if not outcome.accepted:
            self._correlation(session, "reasoning_token", outcome)
            return
        event = ChunkAppendedEvent(session.peer_id, msg.id, msg.tok, session.stream.state.reasoning_buffer)
        self._emit("on_reasoning_token", event)

    def _handle_end(self, session: PeerSession, msg: End) -> None:
        outcome = session.stream.end(msg.id)
        if not outcome.accepted:
            self._correlation(session, "end", outcome)
            return
        state = session.stream.state
        logger.info(f"Received end for id={msg.id} ({len(state.visible_buffer)} chars)")
        self._emit(
            "on_stream_ended",
            StreamEndedEvent(session.peer_id, msg.id, state.visible_buffer, state.reasoning_buffer),
        )
        self._status(session.peer_id, "Completion finished successfully.")

    def _handle_error(self, session: PeerSession, msg: Error) -> None:
        outcome = session.stream.error(msg.id, msg.message)
        if not outcome.accepted:
            self._correlation(session, "error", outcome)
            return
        state = session.stream.state
        logger.info(f"Received error for id={msg.id}: {state.error_message}")
        self._emit(
            "on_stream_errored",
            StreamErroredEvent(
                session.peer_id,
                state.last_id,
                state.error_message or "",
                state.visible_buffer,
                state.reasoning_buffer,
            ),
        )
        self._status(session.peer_id, f"Error from server: {state.error_message}", is_error=True)

    def _handle_unexpected(self, session: PeerSession, msg: Message) -> None:
        logger.warning(f"Unexpected {msg.type.value} from {session.peer_id}; this engine only acts as a client")
        self._diagnostic(session.peer_id, DiagnosticKind.UNEXPECTED_MESSAGE, msg.type.value)
        fields = {k: v for k, v in msg.to_dict().items() if k != "t"}
        self._emit("on_unknown_message", UnknownMessageEvent(session.peer_id, msg.type.value, fields))

    def _correlation(self, session: PeerSession, kind: str, outcome: StreamOutcome) -> None:
        logger.info(f"Received {kind} from {session.peer_id} for {outcome.note}")
        self._diagnostic(session.peer_id, DiagnosticKind.CORRELATION, f"{kind}: {outcome.note}")

    # -------------------------------------------------------------------------
    # Host operations
    # -------------------------------------------------------------------------

    def send_prompt(
        self,
        peer_id: str,
        user_content: str,
        system_prompt: str | None = None,
        max_tokens: Any = None,
        request_id: str | None = None,
    ) -> tuple[GenerationRequest, SendResult]:
        """
        Build and send a prompt.

        Raises:
            ProtocolError: unknown peer, or negotiation not COMPATIBLE
            ValidationError: blank user message or request id
        """
        session = self._require_ready(peer_id, "prompt")
        try:
            request = build_request(
                request_id if request_id is not None else new_request_id(),
                user_content,
                system_prompt=system_prompt,
                max_tokens=max_tokens,
            )
        except ValidationError as e:
            self._status(peer_id, f"Cannot send prompt: {e}", is_error=True)
            raise
        return request, self._send_request(session, request)

    def send_request(self, peer_id: str, request: GenerationRequest) -> SendResult:
        """Send a pre-built request. Raises ProtocolError like send_prompt()."""
        session = self._require_ready(peer_id, "prompt")
        return self._send_request(session, request)

    def request_model_info(self, peer_id: str) -> SendResult:
        """Ask the peer for its model descriptor. Raises ProtocolError."""
        session = self._require_ready(peer_id, "get_model")
        return self._send_model_request(session)

    def _require_ready(self, peer_id: str, action: str) -> PeerSession:
        session = self._peers.get(peer_id)
        try:
            if session is None:
                raise ProtocolError(ProtocolError.UNKNOWN_PEER, f"not connected to peer {peer_id}")
            session.negotiator.require_compatible()
        except ProtocolError as e:
            logger.info(f"Cannot send {action} to {peer_id}: {e.reason}")
            self._status(peer_id, f"Cannot send {action}: {e}", is_error=True)
            raise
        return session

    def _send_request(self, session: PeerSession, request: GenerationRequest) -> SendResult:
        result = self._send(session, request.to_message())
        if not result:
            self._status(session.peer_id, "Failed to send prompt.", is_error=True)
            return result
        session.last_request_id = request.id
        logger.info(
            f"Sent prompt id={request.id}, messages={len(request.messages)}, "
            f"max_tokens={request.max_tokens if request.max_tokens is not None else 'default'}"
        )
        self._status(session.peer_id, "Prompt sent. Waiting for streamed tokens...")
        return result

    def _send_model_request(self, session: PeerSession) -> SendResult:
        result = self._send(session, GetModel())
        if result:
            logger.info(f"Requested model info from {session.peer_id}")
        else:
            self._status(session.peer_id, "Failed to send model info request", is_error=True)
        return result

    def _send(self, session: PeerSession, message: Message) -> SendResult:
        payload = encode(message)
        try:
            self._transport.send(session.peer_id, payload)
        except Exception as e:
            session.send_failures += 1
            reason = str(e) or type(e).__name__
            logger.error(f"Failed to send {message.type.value} to {session.peer_id}: {reason}")
            self._diagnostic(session.peer_id, DiagnosticKind.SEND_FAILED, f"{message.type.value}: {reason}")
            return SendResult.failed(reason)
        session.messages_sent += 1
        logger.debug(f"Sent {message.type.value} to {session.peer_id} ({len(payload)} chars)")
        return SendResult.success()

    # -------------------------------------------------------------------------
    # Timeouts
    # -------------------------------------------------------------------------

    def expire(self, now: float | None = None) -> list[str]:
        """
        Apply the optional negotiation/stream deadlines.

        Inert unless config.timeouts sets a deadline. Returns the ids of
        peers whose state changed.
        """
        timeouts = self._config.timeouts
        if not timeouts.enabled:
            return []
        now = self._clock() if now is None else now

        changed: list[str] = []
        for peer_id, session in list(self._peers.items()):
            negotiator = session.negotiator
            if (
                timeouts.negotiation_s is not None
                and negotiator.state == NegotiationState.NEGOTIATING
                and (now - negotiator.started_at) > timeouts.negotiation_s
            ):
                negotiator.expire(NEGOTIATION_TIMEOUT)
                logger.warning(f"Negotiation timeout for peer {peer_id}")
                self._status(peer_id, "Protocol negotiation timed out.", is_error=True)
                changed.append(peer_id)

            if timeouts.stream_idle_s is not None:
                expired_id = session.stream.expire(now=now, idle_s=timeouts.stream_idle_s)
                if expired_id is not None:
                    logger.warning(f"Stream id={expired_id} from {peer_id} idle too long")
                    state = session.stream.state
                    self._emit(
                        "on_stream_errored",
                        StreamErroredEvent(
                            peer_id, expired_id, STREAM_TIMEOUT, state.visible_buffer, state.reasoning_buffer
                        ),
                    )
                    self._status(peer_id, "Stream timed out waiting for tokens.", is_error=True)
                    if peer_id not in changed:
                        changed.append(peer_id)
        return changed

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def peers(self) -> list[str]:
        return list(self._peers)

    def snapshot(self, peer_id: str) -> PeerSnapshot | None:
        session = self._peers.get(peer_id)
        return session.snapshot() if session else None

    def get_stats(self) -> dict[str, Any]:
        return {
            "total_peers": len(self._peers),
            "compatible_peers": sum(1 for s in self._peers.values() if s.negotiator.is_compatible),
            "peers": [s.stats() for s in self._peers.values()],
        }

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _new_negotiator(self) -> VersionNegotiator:
        identity = self._config.identity
        protocol = self._config.protocol
        return VersionNegotiator(
            client_id=identity.client_id,
            impl=identity.impl,
            impl_version=identity.version,
            protocol_version=protocol.protocol_version,
            min_compatible_version=protocol.min_compatible_version,
        )

    def _emit(self, hook_name: str, event: Any) -> None:
        try:
            getattr(self._hooks, hook_name)(event)
        except Exception as e:
            logger.warning(f"Hook exception in {hook_name} (ignored): {e}")

    def _status(self, peer_id: str, text: str, *, is_error: bool = False) -> None:
        self._emit("on_status", StatusEvent(peer_id, text, is_error))

    def _diagnostic(self, peer_id: str, kind: DiagnosticKind, detail: str) -> None:
        self._emit("on_diagnostic", DiagnosticEvent(peer_id, kind, detail))
