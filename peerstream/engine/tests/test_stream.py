from __future__ import annotations

from peerstream.engine.stream import STREAM_TIMEOUT, UNKNOWN_ERROR, StreamStatus, StreamTracker


def test_tokens_reassemble_in_arrival_order() -> None:
    tracker = StreamTracker()
    tracker.start("x1")
    tracker.token("x1", "Hel")
    tracker.token("x1", "lo")
    outcome = tracker.end("x1")

    assert outcome.accepted
    state = tracker.state
    assert state.visible_buffer == "Hello"
    assert state.status == StreamStatus.COMPLETED
    assert state.active_id is None
    assert state.last_id == "x1"


def test_reasoning_channel_is_kept_separate() -> None:
    tracker = StreamTracker()
    tracker.start("x1")
    tracker.reasoning_token("x1", "thinking ")
    tracker.token("x1", "answer")
    tracker.reasoning_token("x1", "more")

    assert tracker.state.visible_buffer == "answer"
    assert tracker.state.reasoning_buffer == "thinking more"


def test_error_for_active_stream() -> None:
    tracker = StreamTracker()
    tracker.start("x1")
    tracker.token("x1", "partial")

    outcome = tracker.error("x1", "oom")

    assert outcome.accepted
    assert tracker.status == StreamStatus.ERRORED
    assert tracker.state.error_message == "oom"
    assert tracker.active_id is None
    assert tracker.state.visible_buffer == "partial"


def test_error_without_message_uses_fallback() -> None:
    tracker = StreamTracker()
    tracker.start("x1")
    tracker.error("x1", None)
    assert tracker.state.error_message == UNKNOWN_ERROR


def test_error_without_id_leaves_active_stream_alone() -> None:
    tracker = StreamTracker()
    tracker.start("x1")
    outcome = tracker.error(None, "model unloaded")
    assert not outcome.accepted
    assert tracker.status == StreamStatus.STREAMING


def test_error_with_no_active_stream_is_recorded() -> None:
    tracker = StreamTracker()
    outcome = tracker.error(None, "model not loaded")

    assert outcome.accepted
    assert outcome.note == "no active stream"
    assert tracker.status == StreamStatus.ERRORED
    assert tracker.state.error_message == "model not loaded"
    assert tracker.state.last_id is None


def test_late_error_for_another_id_does_not_inherit_finished_text() -> None:
    tracker = StreamTracker()
    tracker.start("x1")
    tracker.token("x1", "Hello")
    tracker.reasoning_token("x1", "hmm")
    tracker.end("x1")

    outcome = tracker.error("zzz", "late")

    assert outcome.accepted
    assert tracker.status == StreamStatus.ERRORED
    assert tracker.state.last_id == "zzz"
    assert tracker.state.visible_buffer == ""
    assert tracker.state.reasoning_buffer == ""


def test_late_error_for_the_finished_id_keeps_its_text() -> None:
    tracker = StreamTracker()
    tracker.start("x1")
    tracker.token("x1", "Hello")
    tracker.end("x1")

    tracker.error("x1", "late")

    assert tracker.state.last_id == "x1"
    assert tracker.state.visible_buffer == "Hello"


def test_new_start_supersedes_unfinished_stream() -> None:
    tracker = StreamTracker()
    tracker.start("A")
    tracker.token("A", "old")

    outcome = tracker.start("B")
    assert outcome.superseded_id == "A"
    assert tracker.state.visible_buffer == ""

    assert not tracker.token("A", "late").accepted
    tracker.token("B", "new")
    assert tracker.state.visible_buffer == "new"


def test_restart_with_same_id_resets_buffers_without_supersession() -> None:
    tracker = StreamTracker()
    tracker.start("A")
    tracker.token("A", "x")
    outcome = tracker.start("A")
    assert outcome.superseded_id is None
    assert tracker.state.visible_buffer == ""


def test_foreign_ids_never_touch_state() -> None:
    tracker = StreamTracker()
    tracker.start("x1")
    tracker.token("x1", "keep")

    for outcome in (
        tracker.token("zz", "bad"),
        tracker.reasoning_token("zz", "bad"),
        tracker.end("zz"),
        tracker.error("zz", "bad"),
    ):
        assert not outcome.accepted
        assert "zz" in outcome.note

    assert tracker.status == StreamStatus.STREAMING
    assert tracker.state.visible_buffer == "keep"
    assert tracker.state.reasoning_buffer == ""


def test_tokens_after_completion_are_ignored() -> None:
    tracker = StreamTracker()
    tracker.start("x1")
    tracker.token("x1", "done")
    tracker.end("x1")

    assert not tracker.token("x1", "late").accepted
    assert not tracker.end("x1").accepted
    assert tracker.state.visible_buffer == "done"
    assert tracker.status == StreamStatus.COMPLETED


def test_tokens_while_idle_are_ignored() -> None:
    tracker = StreamTracker()
    assert not tracker.token("x1", "a").accepted
    assert tracker.status == StreamStatus.IDLE
    assert tracker.state.visible_buffer == ""


def test_reset_returns_to_idle() -> None:
    tracker = StreamTracker()
    tracker.start("x1")
    tracker.token("x1", "abc")
    tracker.reset()
    assert tracker.status == StreamStatus.IDLE
    assert tracker.state.visible_buffer == ""
    assert tracker.active_id is None


def test_snapshot_is_a_copy() -> None:
    tracker = StreamTracker()
    tracker.start("x1")
    snap = tracker.snapshot()
    tracker.token("x1", "more")
    assert snap.visible_buffer == ""
    assert tracker.state.visible_buffer == "more"


def test_expire_only_after_idle_window() -> None:
    tracker = StreamTracker()
    tracker.start("x1", now=100.0)
    tracker.token("x1", "a", now=105.0)

    assert tracker.expire(now=114.0, idle_s=10.0) is None
    assert tracker.expire(now=116.0, idle_s=10.0) == "x1"
    assert tracker.status == StreamStatus.ERRORED
    assert tracker.state.error_message == STREAM_TIMEOUT
    assert tracker.state.visible_buffer == "a"

    # Nothing left to expire.
    assert tracker.expire(now=500.0, idle_s=10.0) is None
