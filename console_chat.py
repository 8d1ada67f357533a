#!/usr/bin/env python3
"""
Console transport for Dice Goblin

Runs the bot against the terminal instead of Telegram: every line typed
on stdin becomes a private-chat message and replies are printed to
stdout. Handy for trying notation out without a bot token.

    $ dice-goblin --console
    🎲> /roll 4d6kh3
    🎲 4d6kh3 → [~2~, 5, 3, 6] = 14
    🎲> quit
"""

import itertools
import logging
import queue
import sys
import threading
from typing import Callable, List, Optional, TextIO

from goblin_commands.events import InboundEvent, OutboundMessage


PROMPT = "🎲> "


class ConsoleTransport:
    """
    Terminal stand-in for a chat platform

    Args:
        input_stream: Where lines are read from (default stdin)
        output_stream: Where replies are written (default stdout)
        chat_id: Chat id given to every console message
        poll_timeout: Longest fetch_updates() waits for a line
        on_eof: Called once input ends or the user types quit
        show_prompt: Print a prompt after each reply (default: when
            output is a terminal)
    """

    def __init__(self, input_stream: Optional[TextIO] = None, output_stream: Optional[TextIO] = None,
                 chat_id: int = 1, poll_timeout: float = 0.5,
                 on_eof: Optional[Callable[[], object]] = None,
                 show_prompt: Optional[bool] = None):
        self.input_stream = input_stream or sys.stdin
        self.output_stream = output_stream or sys.stdout
        self.chat_id = chat_id
        self.poll_timeout = poll_timeout
        self.on_eof = on_eof
        if show_prompt is None:
            show_prompt = hasattr(self.output_stream, "isatty") and self.output_stream.isatty()
        self.show_prompt = show_prompt

        self.updates: "queue.Queue[InboundEvent]" = queue.Queue()
        self.finished = threading.Event()
        self.running = False
        self.input_thread = None
        self._ids = itertools.count(1)
        self._output_lock = threading.Lock()
        self.logger = logging.getLogger(__name__)

    def start(self):
        """Start reading input in a separate thread"""
        self.running = True
        self.input_thread = threading.Thread(target=self._input_loop, name="console-input", daemon=True)
        self.input_thread.start()
        self._show_prompt()

    def _show_prompt(self):
        if self.show_prompt:
            with self._output_lock:
                print(PROMPT, end='', file=self.output_stream, flush=True)

    def _input_loop(self):
        """Turn each input line into an InboundEvent"""
        try:
            for line in self.input_stream:
                if not self.running:
                    break
                text = line.strip()
                if text.lower() in ('quit', 'exit'):
                    break
                if not text:
                    self._show_prompt()
                    continue
                message_id = next(self._ids)
                self.updates.put(InboundEvent(
                    update_id=message_id,
                    chat_id=self.chat_id,
                    sender_id=self.chat_id,
                    message_id=message_id,
                    text=text,
                    is_private=True,
                ))
        finally:
            self.running = False
            self.finished.set()
            self.logger.debug("Console input finished")
            if self.on_eof is not None:
                self.on_eof()

    def fetch_updates(self) -> List[InboundEvent]:
        try:
            first = self.updates.get(timeout=self.poll_timeout)
        except queue.Empty:
            return []
        return [first] + self.drain()

    def drain(self) -> List[InboundEvent]:
        """Everything typed so far, without waiting"""
        events = []
        while True:
            try:
                events.append(self.updates.get_nowait())
            except queue.Empty:
                return events

    def send_message(self, message: OutboundMessage) -> None:
        with self._output_lock:
            print(message.text, file=self.output_stream, flush=True)
        self._show_prompt()

    def close(self) -> None:
        """Stop the console interface"""
        self.running = False
        if self.input_thread is not None and self.input_thread is not threading.current_thread():
            self.input_thread.join(timeout=1.0)
