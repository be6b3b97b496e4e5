"""Tests for the recognized-text mailbox."""

import threading

from speechcmd.mailbox import Mailbox
from speechcmd.output_parser import TranscriptionEvent


def test_empty_mailbox():
    mailbox = Mailbox()
    assert mailbox.take() is None
    assert mailbox.drain() == []
    assert mailbox.last_heard is None
    assert len(mailbox) == 0


def test_take_in_arrival_order():
    mailbox = Mailbox()
    first = TranscriptionEvent("one", 1.0)
    second = TranscriptionEvent("two", 2.0)
    mailbox.put(first)
    mailbox.put(second)

    assert mailbox.take() == first
    assert mailbox.take() == second
    assert mailbox.take() is None


def test_drain_and_last_heard():
    """Test drain empties the queue but last_heard is kept."""
    mailbox = Mailbox()
    events = [TranscriptionEvent(text, float(i)) for i, text in enumerate(["a", "b", "c"])]
    for event in events:
        mailbox.put(event)

    assert mailbox.drain() == events
    assert len(mailbox) == 0
    assert mailbox.last_heard == events[-1]


def test_clear():
    mailbox = Mailbox()
    mailbox.put(TranscriptionEvent("one", 0.0))
    mailbox.clear()
    assert mailbox.take() is None


def test_concurrent_puts_are_not_lost():
    """Test puts from several threads all arrive exactly once."""
    mailbox = Mailbox()

    def producer(prefix):
        for i in range(200):
            mailbox.put(TranscriptionEvent(f"{prefix}-{i}", 0.0))

    threads = [threading.Thread(target=producer, args=(n,)) for n in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    texts = [event.text for event in mailbox.drain()]
    assert len(texts) == 800
    assert len(set(texts)) == 800
    # Per-producer order is preserved
    for n in range(4):
        own = [t for t in texts if t.startswith(f"{n}-")]
        assert own == [f"{n}-{i}" for i in range(200)]
