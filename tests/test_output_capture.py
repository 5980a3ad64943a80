from __future__ import annotations

import pytest

from exec_runtime.core.output_capture import OutputCapture, SessionStream


def test_output_capture_keeps_head_and_latches_truncated() -> None:
    cap = OutputCapture()
    cap.push("abc", 5)
    cap.push("defg", 5)
    cap.push("h", 5)

    assert cap.text() == "abcde"
    assert cap.chars == 5
    assert cap.truncated is True


def test_output_capture_exact_budget_is_not_truncated() -> None:
    cap = OutputCapture()
    cap.push("ab", 4)
    cap.push("cd", 4)

    assert cap.text() == "abcd"
    assert cap.chars == 4
    assert cap.truncated is False


def test_output_capture_push_at_full_budget_latches_truncated() -> None:
    cap = OutputCapture()
    cap.push("abcd", 4)
    cap.push("", 4)

    assert cap.text() == "abcd"
    assert cap.truncated is True


def test_session_stream_drops_oldest_chunks_and_shifts_offset() -> None:
    stream = SessionStream(max_chars=6, max_chunks=10)
    stream.push("aa")
    stream.push("bb")
    assert stream.drain() == "aabb"

    stream.push("cc")
    stream.push("dd")

    # "aa" 被丢弃；上次 drain 之后新增的 cc/dd 仍然可读
    assert stream.text() == "bbccdd"
    assert stream.truncated is True
    assert stream.drain() == "ccdd"
    assert stream.drain() == ""


def test_session_stream_enforces_chunk_count() -> None:
    stream = SessionStream(max_chars=1000, max_chunks=2)
    for part in ("1", "2", "3"):
        stream.push(part)

    assert stream.chunks == ["2", "3"]
    assert stream.chars == 2
    assert stream.truncated is True


def test_session_stream_keeps_tail_of_oversize_chunk() -> None:
    stream = SessionStream(max_chars=4, max_chunks=10)
    stream.push("0123456789")

    assert stream.text() == "6789"
    assert stream.chars == 4
    assert stream.truncated is True


def test_session_stream_offset_never_skips_unread_chunks() -> None:
    stream = SessionStream(max_chars=4, max_chunks=10)
    stream.push("ab")
    stream.push("cd")
    stream.push("ef")

    assert stream.drain() == "cdef"


def test_session_stream_rejects_invalid_limits() -> None:
    with pytest.raises(ValueError):
        SessionStream(max_chars=0, max_chunks=1)
