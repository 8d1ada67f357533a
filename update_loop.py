#!/usr/bin/env python3
"""
Update loop for Dice Goblin

Pulls batches of chat messages from a transport, answers them through
the command dispatcher and sends the replies back.

State Machine
-------------
    IDLE ──► FETCHING ──► PROCESSING ──► SENDING ──► IDLE
     │          │              │
     │          │              └── (no replies) ──► IDLE
     │          └── (no updates, or fetch failed: back off) ──► IDLE
     │
     └── shutdown requested ──► drain transport ──► PROCESSING (updates left)
                                                └─► STOPPED    (nothing left)

step() does one state's worth of work and returns the next state, so
tests can walk the loop one transition at a time. run() keeps stepping
until STOPPED.

Shutdown is only honoured in IDLE. Once a batch has been fetched it is
processed and every reply is sent (or dropped after its retries)
before the loop stops. On the way out the transport is drained once:
updates it already accepted (queued console lines, webhook pushes
Telegram got a 200 for) are answered as a last batch.

All waiting goes through the shutdown event, so a stop request cuts a
backoff sleep short instead of waiting it out.

Concurrency
-----------
Each batch is split into per-chat groups. Groups run on a thread pool;
messages inside a group are answered one after another, so replies in
any one chat keep the order the messages arrived in. Dispatching is
CPU-only and the random source is thread-local, so the workers share
nothing but the outbox, which is only assembled after they finish.
"""

import logging
import random
import threading
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor
from enum import Enum
from typing import Callable, Dict, List, Optional

from goblin_commands.dispatcher import CommandDispatcher
from goblin_commands.events import InboundEvent, OutboundMessage
from telegram_transport import MessageRejected, PlatformTransport, TransportError


logger = logging.getLogger(__name__)


class LoopState(Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    PROCESSING = "processing"
    SENDING = "sending"
    STOPPED = "stopped"


class Backoff:
    """
    Exponential backoff with jitter

    Each next_delay() returns the current delay (with up to +/- jitter
    fraction of random spread) and grows the next one by multiplier,
    never past maximum. reset() starts over after a success.
    """

    def __init__(self, initial: float = 1.0, maximum: float = 60.0,
                 multiplier: float = 2.0, jitter: float = 0.1,
                 rng: Optional[random.Random] = None):
        self.initial = initial
        self.maximum = maximum
        self.multiplier = multiplier
        self.jitter = jitter
        self.rng = rng or random.Random()
        self._current = initial

    def next_delay(self, minimum: Optional[float] = None) -> float:
        delay = self._current
        self._current = min(self.maximum, self._current * self.multiplier)

        if self.jitter:
            delay *= 1 + self.rng.uniform(-self.jitter, self.jitter)
        delay = min(delay, self.maximum)

        # Server-supplied retry_after wins over our own guess
        if minimum is not None:
            delay = max(delay, minimum)
        return delay

    def reset(self):
        self._current = self.initial


def group_by_chat(events: List[InboundEvent]) -> List[List[InboundEvent]]:
    """Split a batch into per-chat lists, keeping arrival order in each."""
    groups: Dict[int, List[InboundEvent]] = OrderedDict()
    for event in events:
        groups.setdefault(event.chat_id, []).append(event)
    return list(groups.values())


class UpdateLoop:
    """
    Fetch, dispatch and send, one batch at a time

    Args:
        transport: Where updates come from and replies go
        dispatcher: Turns events into replies
        workers: Thread pool size for dispatching; 1 or less runs inline
        send_retries: Extra attempts per reply before it is dropped
        send_interval: Seconds to wait between consecutive sends
        backoff: Delay policy after failed fetches
        send_backoff: Delay policy between attempts to send one reply
        shutdown_event: Set to stop the loop; created when not given
        wait: Sleep function, defaults to waiting on the shutdown event
    """

    def __init__(self, transport: PlatformTransport, dispatcher: CommandDispatcher,
                 workers: int = 4, send_retries: int = 3, send_interval: float = 0.0,
                 backoff: Optional[Backoff] = None, send_backoff: Optional[Backoff] = None,
                 shutdown_event: Optional[threading.Event] = None,
                 wait: Optional[Callable[[float], object]] = None):
        self.transport = transport
        self.dispatcher = dispatcher
        self.send_retries = send_retries
        self.send_interval = send_interval
        self.backoff = backoff or Backoff()
        self.send_backoff = send_backoff or Backoff(initial=0.5, maximum=10.0)
        self.shutdown_event = shutdown_event or threading.Event()
        self._wait = wait or self.shutdown_event.wait

        self.state = LoopState.IDLE
        self._drained = False
        self._batch: List[InboundEvent] = []
        self._outbox: List[OutboundMessage] = []

        self._executor = None
        if workers > 1:
            self._executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="goblin-worker")

        self._stats_lock = threading.Lock()
        self.stats = {
            'updates_received': 0,
            'replies_sent': 0,
            'replies_dropped': 0,
            'fetch_failures': 0,
            'dispatch_failures': 0,
        }

        self._handlers = {
            LoopState.IDLE: self._idle,
            LoopState.FETCHING: self._fetch,
            LoopState.PROCESSING: self._process,
            LoopState.SENDING: self._send,
        }

    def stop(self):
        """Ask the loop to stop after the current batch."""
        self.shutdown_event.set()

    def step(self) -> LoopState:
        """Do the work of the current state and move to the next one."""
        if self.state is LoopState.STOPPED:
            return self.state
        self.state = self._handlers[self.state]()
        return self.state

    def run(self):
        """Step until stopped, then release the worker pool."""
        logger.info("🎲 Update loop running")
        try:
            while self.state is not LoopState.STOPPED:
                self.step()
        finally:
            self.close()
        logger.info(f"Update loop stopped: {self.stats}")

    def close(self):
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None

    # ─── States ─────────────────────────────────────────────────────

    def _idle(self) -> LoopState:
        if not self.shutdown_event.is_set():
            return LoopState.FETCHING
        if self._drained:
            return LoopState.STOPPED

        # Answer whatever the transport already accepted before stopping
        self._drained = True
        try:
            events = self.transport.drain()
        except Exception:
            logger.exception("Error draining transport on shutdown")
            return LoopState.STOPPED
        if not events:
            return LoopState.STOPPED

        self.stats['updates_received'] += len(events)
        logger.info(f"Answering {len(events)} queued updates before stopping")
        self._batch = events
        return LoopState.PROCESSING

    def _fetch(self) -> LoopState:
        try:
            events = self.transport.fetch_updates()
        except TransportError as e:
            self._fetch_failed(e, getattr(e, 'retry_after', None))
            return LoopState.IDLE
        except Exception as e:
            logger.exception("Unexpected error while fetching updates")
            self._fetch_failed(e, None)
            return LoopState.IDLE

        self.backoff.reset()
        if not events:
            return LoopState.IDLE

        self.stats['updates_received'] += len(events)
        logger.debug(f"Fetched {len(events)} updates")
        self._batch = events
        return LoopState.PROCESSING

    def _fetch_failed(self, error: Exception, retry_after: Optional[float]):
        self.stats['fetch_failures'] += 1
        delay = self.backoff.next_delay(minimum=retry_after)
        logger.warning(f"Fetching updates failed: {error}; retrying in {delay:.1f}s")
        self._wait(delay)

    def _process(self) -> LoopState:
        groups = group_by_chat(self._batch)
        self._batch = []

        if self._executor is not None and len(groups) > 1:
            futures = [self._executor.submit(self._dispatch_group, group) for group in groups]
            results = [future.result() for future in futures]
        else:
            results = [self._dispatch_group(group) for group in groups]

        self._outbox = [reply for replies in results for reply in replies]
        if not self._outbox:
            return LoopState.IDLE
        return LoopState.SENDING

    def _dispatch_group(self, events: List[InboundEvent]) -> List[OutboundMessage]:
        replies = []
        for event in events:
            try:
                reply = self.dispatcher.dispatch(event)
            except Exception:
                # Only this message goes unanswered
                with self._stats_lock:
                    self.stats['dispatch_failures'] += 1
                logger.exception(f"Error handling update {event.update_id}")
                continue
            if reply is not None:
                replies.append(reply)
        return replies

    def _send(self) -> LoopState:
        outbox, self._outbox = self._outbox, []
        for index, message in enumerate(outbox):
            if index and self.send_interval:
                self._wait(self.send_interval)
            self._deliver(message)
        return LoopState.IDLE

    def _deliver(self, message: OutboundMessage):
        self.send_backoff.reset()
        attempt = 0
        while True:
            try:
                self.transport.send_message(message)
            except MessageRejected as e:
                self.stats['replies_dropped'] += 1
                logger.error(f"Reply to chat {message.chat_id} rejected, dropping: {e}")
                return
            except TransportError as e:
                if attempt >= self.send_retries:
                    self.stats['replies_dropped'] += 1
                    logger.error(f"Reply to chat {message.chat_id} dropped after {attempt + 1} attempts: {e}")
                    return
                attempt += 1
                delay = self.send_backoff.next_delay(minimum=getattr(e, 'retry_after', None))
                logger.warning(f"Sending to chat {message.chat_id} failed: {e}; retry {attempt} in {delay:.1f}s")
                self._wait(delay)
            except Exception:
                # Only this reply is lost; the rest of the outbox still goes out
                self.stats['replies_dropped'] += 1
                logger.exception(f"Unexpected error sending to chat {message.chat_id}, dropping reply")
                return
            else:
                self.stats['replies_sent'] += 1
                return
