from __future__ import annotations

import json
from typing import Any, Dict, List, Optional, Tuple

import pytest

from peerstream.engine.config import LinkConfig, TimeoutConfig
from peerstream.engine.dispatcher import LinkEngine
from peerstream.engine.hooks import NullHooks


class FakeTransport:
    """Records payloads; optionally raises on send."""

    def __init__(self) -> None:
        self.sent: List[Tuple[str, str]] = []
        self.fail_with: Optional[Exception] = None

    def send(self, peer_id: str, payload: str) -> None:
        if self.fail_with is not None:
            raise self.fail_with
        self.sent.append((peer_id, payload))

    def frames(self, peer_id: Optional[str] = None) -> List[Dict[str, Any]]:
        return [json.loads(p) for pid, p in self.sent if peer_id is None or pid == peer_id]

    def tags(self, peer_id: Optional[str] = None) -> List[str]:
        return [f["t"] for f in self.frames(peer_id)]


class RecordingHooks(NullHooks):
    """Collects every event as (hook name, event)."""

    def __init__(self) -> None:
        self.events: List[Tuple[str, Any]] = []

    def _record(self, name: str, event: Any) -> None:
        self.events.append((name, event))

    def on_status(self, event):
        self._record("status", event)

    def on_model_info(self, event):
        self._record("model_info", event)

    def on_stream_started(self, event):
        self._record("stream_started", event)

    def on_visible_token(self, event):
        self._record("visible_token", event)

    def on_reasoning_token(self, event):
        self._record("reasoning_token", event)

    def on_stream_ended(self, event):
        self._record("stream_ended", event)

    def on_stream_errored(self, event):
        self._record("stream_errored", event)

    def on_unknown_message(self, event):
        self._record("unknown_message", event)

    def on_diagnostic(self, event):
        self._record("diagnostic", event)

    def of(self, name: str) -> List[Any]:
        return [e for n, e in self.events if n == name]


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def hooks() -> RecordingHooks:
    return RecordingHooks()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def engine(transport: FakeTransport, hooks: RecordingHooks, clock: FakeClock) -> LinkEngine:
    return LinkEngine(transport, LinkConfig(), hooks, clock=clock)


@pytest.fixture
def timed_engine(transport: FakeTransport, hooks: RecordingHooks, clock: FakeClock) -> LinkEngine:
    config = LinkConfig(timeouts=TimeoutConfig(negotiation_s=5.0, stream_idle_s=10.0))
    return LinkEngine(transport, config, hooks, clock=clock)


def wire(**fields: Any) -> str:
    return json.dumps(fields)


@pytest.fixture
def ready(engine: LinkEngine, transport: FakeTransport) -> LinkEngine:
    """Engine with peer "p1" negotiated COMPATIBLE and sends cleared."""
    engine.on_peer_connected("p1")
    engine.on_message_received("p1", wire(t="version_ack", compatible=True, protocolVersion="1.0.0"))
    transport.sent.clear()
    return engine
