"""
Stream session tracker - reassembles one streamed generation per peer.

Single-active-id discipline:
- start(id) always wins; a second start silently supersedes the first and
  discards its buffers (no queueing of concurrent streams)
- chunks are appended in arrival order only for the active id
- end/error for a foreign id never disturb the active stream

Invariants:
- status == STREAMING  <=>  active_id is not None
- buffers are non-empty only while streaming or after a terminal state,
  and then belong to last_id
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from enum import Enum, auto

UNKNOWN_ERROR = "Unknown error"
STREAM_TIMEOUT = "stream-timeout"


class StreamStatus(Enum):
    IDLE = auto()
    STREAMING = auto()
    COMPLETED = auto()
    ERRORED = auto()

    @property
    def is_terminal(self) -> bool:
        return self in (StreamStatus.COMPLETED, StreamStatus.ERRORED)


@dataclass
class StreamState:
    active_id: str | None = None
    status: StreamStatus = StreamStatus.IDLE
    visible_buffer: str = ""
    reasoning_buffer: str = ""
    error_message: str | None = None
    last_id: str | None = None  # id the terminal result belongs to


@dataclass(frozen=True)
class StreamOutcome:
    """What a tracker operation did; drives dispatcher events and logs."""
    accepted: bool
    note: str = ""
    superseded_id: str | None = None

    @classmethod
    def ok(cls, note: str = "", superseded_id: str | None = None) -> StreamOutcome:
        return cls(accepted=True, note=note, superseded_id=superseded_id)

    @classmethod
    def ignored(cls, note: str) -> StreamOutcome:
        return cls(accepted=False, note=note)


class StreamTracker:
    """Per-peer stream state machine."""

    __slots__ = ("state", "last_activity_at")

    def __init__(self) -> None:
        self.state = StreamState()
        self.last_activity_at = 0.0

    def _check_invariants(self) -> None:
        s = self.state
        assert (s.status == StreamStatus.STREAMING) == (s.active_id is not None), \
            f"invariant violated: status={s.status.name}, active_id={s.active_id!r}"
        if s.status == StreamStatus.IDLE:
            assert not s.visible_buffer and not s.reasoning_buffer, \
                "invariant violated: IDLE stream holds buffered text"

    def _is_active(self, stream_id: str | None) -> bool:
        return (
            self.state.status == StreamStatus.STREAMING
            and stream_id is not None
            and stream_id == self.state.active_id
        )

    def _mismatch(self, stream_id: str | None) -> StreamOutcome:
        return StreamOutcome.ignored(
            f"foreign or stale id={stream_id!r} (current={self.state.active_id!r})"
        )

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    def start(self, stream_id: str, *, now: float = 0.0) -> StreamOutcome:
        previous = self.state.active_id
        self.state = StreamState(active_id=stream_id, status=StreamStatus.STREAMING)
        self.last_activity_at = now
        self._check_invariants()
        if previous is not None and previous != stream_id:
            return StreamOutcome.ok(note=f"superseded id={previous!r}", superseded_id=previous)
        return StreamOutcome.ok()

    def token(self, stream_id: str, text: str, *, now: float = 0.0) -> StreamOutcome:
        if not self._is_active(stream_id):
            return self._mismatch(stream_id)
        self.state.visible_buffer += text
        self.last_activity_at = now
        return StreamOutcome.ok()

    def reasoning_token(self, stream_id: str, text: str, *, now: float = 0.0) -> StreamOutcome:
        if not self._is_active(stream_id):
            return self._mismatch(stream_id)
        self.state.reasoning_buffer += text
        self.last_activity_at = now
        return StreamOutcome.ok()

    def end(self, stream_id: str) -> StreamOutcome:
        if not self._is_active(stream_id):
            return self._mismatch(stream_id)
        self.state.status = StreamStatus.COMPLETED
        self.state.last_id = stream_id
        self.state.active_id = None
        self._check_invariants()
        return StreamOutcome.ok()

    def error(self, stream_id: str | None, message: str | None) -> StreamOutcome:
        active = self.state.active_id
        if active is not None and stream_id != active:
            return self._mismatch(stream_id)
        if active is None and stream_id != self.state.last_id:
            # The buffers belong to an earlier result, not to this error.
            self.state.visible_buffer = ""
            self.state.reasoning_buffer = ""
        self.state.status = StreamStatus.ERRORED
        self.state.error_message = message or UNKNOWN_ERROR
        self.state.last_id = stream_id if stream_id is not None else active
        self.state.active_id = None
        self._check_invariants()
        if active is None:
            return StreamOutcome.ok(note="no active stream")
        return StreamOutcome.ok()

    def reset(self) -> None:
        self.state = StreamState()
        self.last_activity_at = 0.0

    def expire(self, *, now: float, idle_s: float) -> str | None:
        """
        Error out a stream that has been silent longer than idle_s.

        Returns:
            The expired stream id, or None if nothing expired.
        """
        if self.state.status != StreamStatus.STREAMING:
            return None
        if (now - self.last_activity_at) <= idle_s:
            return None
        expired = self.state.active_id
        self.error(expired, STREAM_TIMEOUT)
        return expired

    def snapshot(self) -> StreamState:
        return dataclasses.replace(self.state)

    @property
    def active_id(self) -> str | None:
        return self.state.active_id

    @property
    def status(self) -> StreamStatus:
        return self.state.status
