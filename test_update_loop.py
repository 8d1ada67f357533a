"""
Tests for the update loop state machine.

No test here sleeps: waits are recorded by a fake wait function, or
cut short by an already-set shutdown event.

Run with:  python -m pytest test_update_loop.py -v
"""

import logging
import random
import threading
import time

import httpx
import pytest

from goblin_commands import build_dispatcher
from goblin_commands.evaluator import ScriptedRandomSource
from goblin_commands.events import InboundEvent, OutboundMessage
from telegram_transport import (
    MessageRejected,
    RateLimited,
    TransportTimeout,
    TransportUnavailable,
)
from update_loop import Backoff, LoopState, UpdateLoop, group_by_chat


def event(text, chat_id=42, update_id=1):
    return InboundEvent(
        update_id=update_id,
        chat_id=chat_id,
        sender_id=chat_id,
        message_id=update_id,
        text=text,
        is_private=True,
    )


class FakeTransport:
    """Plays back scripted batches; an Exception in the script is raised."""

    def __init__(self, batches=(), send_failures=(), on_empty=None, pending=()):
        self.batches = list(batches)
        self.pending = list(pending)
        self.drain_calls = 0
        self.send_failures = list(send_failures)
        self.on_empty = on_empty
        self.sent = []
        self.send_attempts = 0
        self.closed = False

    def fetch_updates(self):
        if not self.batches:
            if self.on_empty is not None:
                self.on_empty()
            return []
        item = self.batches.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    def drain(self):
        self.drain_calls += 1
        pending, self.pending = self.pending, []
        return pending

    def send_message(self, message):
        self.send_attempts += 1
        if self.send_failures:
            failure = self.send_failures.pop(0)
            if failure is not None:
                raise failure
        self.sent.append(message)

    def close(self):
        self.closed = True


class EchoDispatcher:
    """Replies with the message text; blows up on 'boom'."""

    def dispatch(self, event):
        if event.text == "boom":
            raise RuntimeError("kaboom")
        return OutboundMessage(chat_id=event.chat_id, text=event.text)


def make_loop(transport, dispatcher=None, **kwargs):
    delays = []
    kwargs.setdefault("workers", 1)
    kwargs.setdefault("backoff", Backoff(initial=1.0, maximum=60.0, multiplier=2.0, jitter=0))
    kwargs.setdefault("send_backoff", Backoff(initial=0.5, maximum=10.0, multiplier=2.0, jitter=0))
    loop = UpdateLoop(
        transport,
        dispatcher or EchoDispatcher(),
        wait=delays.append,
        **kwargs,
    )
    return loop, delays


# ============================================================
# State transitions
# ============================================================

class TestStateMachine:

    def test_full_cycle(self):
        transport = FakeTransport([[event("/roll 2d6")]])
        loop, _ = make_loop(transport, build_dispatcher(rng=ScriptedRandomSource([3, 5])))

        assert loop.state is LoopState.IDLE
        assert loop.step() is LoopState.FETCHING
        assert loop.step() is LoopState.PROCESSING
        assert loop.step() is LoopState.SENDING
        assert loop.step() is LoopState.IDLE
        assert transport.sent == [OutboundMessage(chat_id=42, text="🎲 2d6 → [3, 5] = 8")]

    def test_empty_fetch_returns_to_idle(self):
        loop, _ = make_loop(FakeTransport([]))
        loop.step()
        assert loop.step() is LoopState.IDLE

    def test_no_replies_skips_sending(self):
        transport = FakeTransport([[event("just chatting")]])
        loop, _ = make_loop(transport, build_dispatcher())
        loop.step()
        loop.step()
        assert loop.step() is LoopState.IDLE
        assert transport.sent == []

    def test_shutdown_from_idle(self):
        loop, _ = make_loop(FakeTransport([]))
        loop.stop()
        assert loop.step() is LoopState.STOPPED
        assert loop.step() is LoopState.STOPPED

    def test_batch_in_flight_is_drained(self):
        transport = FakeTransport([[event("a"), event("b")]])
        loop, _ = make_loop(transport)
        loop.step()
        loop.step()
        loop.stop()
        assert loop.step() is LoopState.SENDING
        assert loop.step() is LoopState.IDLE
        assert loop.step() is LoopState.STOPPED
        assert [m.text for m in transport.sent] == ["a", "b"]

    def test_queued_updates_answered_before_stopping(self):
        transport = FakeTransport(pending=[event("late", update_id=9)])
        loop, _ = make_loop(transport)
        loop.stop()
        assert loop.step() is LoopState.PROCESSING
        assert loop.step() is LoopState.SENDING
        assert loop.step() is LoopState.IDLE
        assert loop.step() is LoopState.STOPPED
        assert [m.text for m in transport.sent] == ["late"]
        assert transport.drain_calls == 1

    def test_failed_drain_still_stops(self):
        class BrokenDrain(FakeTransport):
            def drain(self):
                raise RuntimeError("gone")

        loop, _ = make_loop(BrokenDrain())
        loop.stop()
        assert loop.step() is LoopState.STOPPED

    def test_run_until_stopped(self):
        shutdown = threading.Event()
        transport = FakeTransport([[event("hello")]], on_empty=shutdown.set)
        loop, _ = make_loop(transport, shutdown_event=shutdown, workers=2)
        loop.run()
        assert loop.state is LoopState.STOPPED
        assert [m.text for m in transport.sent] == ["hello"]
        assert loop.stats['replies_sent'] == 1


# ============================================================
# Fetch failures and backoff
# ============================================================

class TestFetchFailures:

    def test_failure_backs_off(self):
        transport = FakeTransport([TransportUnavailable("down")])
        loop, delays = make_loop(transport)
        loop.step()
        assert loop.step() is LoopState.IDLE
        assert delays == [1.0]
        assert loop.stats['fetch_failures'] == 1

    def test_backoff_grows_and_resets(self):
        transport = FakeTransport([
            TransportTimeout("slow"),
            TransportUnavailable("down"),
            [],
            TransportUnavailable("down again"),
        ])
        loop, delays = make_loop(transport)
        for _ in range(8):
            loop.step()
        assert delays == [1.0, 2.0, 1.0]

    def test_retry_after_is_honoured(self):
        transport = FakeTransport([RateLimited("too many requests", retry_after=5)])
        loop, delays = make_loop(transport)
        loop.step()
        loop.step()
        assert delays == [5]

    def test_unexpected_error_does_not_escape(self):
        transport = FakeTransport([RuntimeError("bug")])
        loop, delays = make_loop(transport)
        loop.step()
        assert loop.step() is LoopState.IDLE
        assert delays == [1.0]

    def test_shutdown_cuts_backoff_short(self):
        shutdown = threading.Event()
        shutdown.set()
        transport = FakeTransport([TransportUnavailable("down")])
        loop = UpdateLoop(
            transport,
            EchoDispatcher(),
            workers=1,
            backoff=Backoff(initial=60.0, jitter=0),
            shutdown_event=shutdown,
        )
        loop.state = LoopState.FETCHING
        started = time.monotonic()
        assert loop.step() is LoopState.IDLE
        assert time.monotonic() - started < 5
        assert loop.step() is LoopState.STOPPED


class TestBackoff:

    def test_exponential_and_capped(self):
        backoff = Backoff(initial=1.0, maximum=8.0, multiplier=2.0, jitter=0)
        assert [backoff.next_delay() for _ in range(5)] == [1.0, 2.0, 4.0, 8.0, 8.0]

    def test_reset(self):
        backoff = Backoff(initial=1.0, maximum=8.0, multiplier=2.0, jitter=0)
        backoff.next_delay()
        backoff.next_delay()
        backoff.reset()
        assert backoff.next_delay() == 1.0

    def test_jitter_stays_in_bounds(self):
        backoff = Backoff(initial=10.0, maximum=100.0, multiplier=1.0, jitter=0.5, rng=random.Random(3))
        for _ in range(50):
            assert 5.0 <= backoff.next_delay() <= 15.0

    def test_minimum(self):
        backoff = Backoff(initial=1.0, jitter=0)
        assert backoff.next_delay(minimum=30) == 30


# ============================================================
# Sending
# ============================================================

class TestSending:

    def _send_one(self, transport, **kwargs):
        loop, delays = make_loop(transport, **kwargs)
        for _ in range(4):
            loop.step()
        return loop, delays

    def test_transient_failures_are_retried(self):
        transport = FakeTransport(
            [[event("hi")]],
            send_failures=[TransportUnavailable("502"), TransportTimeout("slow"), None],
        )
        loop, delays = self._send_one(transport, send_retries=3)
        assert [m.text for m in transport.sent] == ["hi"]
        assert delays == [0.5, 1.0]

    def test_dropped_after_retries(self, caplog):
        transport = FakeTransport([[event("hi")]], send_failures=[TransportUnavailable("down")] * 5)
        with caplog.at_level(logging.ERROR, logger="update_loop"):
            loop, _ = self._send_one(transport, send_retries=3)
        assert transport.sent == []
        assert transport.send_attempts == 4
        assert loop.stats['replies_dropped'] == 1
        assert "dropped" in caplog.text

    def test_rejected_message_is_not_retried(self):
        transport = FakeTransport([[event("hi")]], send_failures=[MessageRejected("chat not found")])
        loop, delays = self._send_one(transport)
        assert transport.send_attempts == 1
        assert delays == []
        assert loop.stats['replies_dropped'] == 1

    def test_unexpected_send_error_loses_only_that_reply(self, caplog):
        transport = FakeTransport(
            [[event("a", chat_id=1, update_id=1), event("b", chat_id=2, update_id=2)]],
            send_failures=[httpx.DecodingError("bad gzip")],
        )
        with caplog.at_level(logging.ERROR, logger="update_loop"):
            loop, delays = self._send_one(transport)
        assert loop.state is LoopState.IDLE
        assert [m.text for m in transport.sent] == ["b"]
        assert transport.send_attempts == 2
        assert delays == []
        assert loop.stats['replies_dropped'] == 1
        assert loop.stats['replies_sent'] == 1
        assert "dropping reply" in caplog.text

    def test_send_interval(self):
        transport = FakeTransport([[event("a", update_id=1), event("b", update_id=2)]])
        _, delays = self._send_one(transport, send_interval=0.25)
        assert delays == [0.25]
        assert [m.text for m in transport.sent] == ["a", "b"]


# ============================================================
# Processing
# ============================================================

class TestProcessing:

    def test_group_by_chat(self):
        events = [event("a", chat_id=1), event("b", chat_id=2), event("c", chat_id=1)]
        groups = group_by_chat(events)
        assert [[e.text for e in g] for g in groups] == [["a", "c"], ["b"]]

    @pytest.mark.parametrize("workers", [1, 4])
    def test_order_kept_within_each_chat(self, workers):
        events = [event(f"/roll {i}", chat_id=i % 3, update_id=i) for i in range(30)]
        transport = FakeTransport([events])
        loop, _ = make_loop(transport, build_dispatcher(), workers=workers)
        for _ in range(4):
            loop.step()
        loop.close()

        assert len(transport.sent) == 30
        for chat_id in range(3):
            totals = [int(m.text.rsplit("= ", 1)[1]) for m in transport.sent if m.chat_id == chat_id]
            assert totals == list(range(chat_id, 30, 3))

    def test_one_bad_event_loses_only_its_reply(self):
        transport = FakeTransport([[event("a"), event("boom"), event("c")]])
        loop, _ = make_loop(transport)
        for _ in range(4):
            loop.step()
        assert [m.text for m in transport.sent] == ["a", "c"]
        assert loop.stats['dispatch_failures'] == 1
