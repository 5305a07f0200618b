from __future__ import annotations

import pytest

from aiovoicerelay.sink import Backoff, DropOldestQueue

KIB = 1024


def test_queue_keeps_newest_chunks_within_limit() -> None:
    queue = DropOldestQueue(256 * KIB)
    chunks = [bytes([index]) * (64 * KIB) for index in range(10)]

    dropped = sum(queue.append(chunk) for chunk in chunks)

    assert dropped == 384 * KIB
    assert len(queue) == 4
    assert queue.byte_total == 256 * KIB
    assert [queue.popleft() for _ in range(4)] == chunks[6:]
    assert not queue


def test_queue_appendleft_goes_first_and_still_bounded() -> None:
    queue = DropOldestQueue(10)
    queue.append(b"1234")
    queue.append(b"5678")
    assert queue.appendleft(b"abcd") == 4

    assert queue.byte_total == 8
    assert queue.popleft() == b"1234"


def test_queue_ignores_empty_chunks_and_clears() -> None:
    queue = DropOldestQueue(4)
    assert queue.append(b"") == 0
    assert len(queue) == 0
    queue.append(b"ab")
    queue.clear()
    assert queue.byte_total == 0
    with pytest.raises(ValueError):
        DropOldestQueue(0)


def test_backoff_sequence_and_reset() -> None:
    backoff = Backoff(1000, 30000)
    delays = [backoff.next_delay() for _ in range(7)]
    assert delays == [1000, 2000, 4000, 8000, 16000, 30000, 30000]

    backoff.reset()
    assert backoff.next_delay() == 1000
    with pytest.raises(ValueError):
        Backoff(0, 1000)
