"""
Command Dispatcher
==================

The central routing table for Dice Goblin commands.

Role in the System
------------------
Every chat message the update loop pulls off Telegram passes through
here. The dispatcher looks at the start of the text and decides
whether it is something the goblin should answer. If it is not, the
dispatcher returns None and the message is ignored.

    User types: "/roll 2d6+3"
                  ↓
    Dispatcher sees "/" prefix → splits "roll" + "2d6+3"
                  ↓
    Looks up "roll" in command registry → found!
                  ↓
    Calls DiceCommand.execute("2d6+3") → CommandResult
                  ↓
    Wraps the result in an OutboundMessage for the update loop

    User types: "/2d6+3"
                  ↓
    "2d6+3" is not a command name, but it looks like dice notation
                  ↓
    Routed to the notation command (/roll) with "2d6+3" as args

    User types: "Hello everyone"
                  ↓
    Dispatcher sees no "/" prefix → returns None (no reply)

Design Decisions
----------------
- Commands are case-insensitive (/Roll, /ROLL, /roll all work).
- In group chats Telegram appends the bot name to commands picked
  from the menu: "/roll@DiceGoblinBot 2d6". The suffix is stripped.
  A suffix naming some other bot means the command is not for us.
- Unrecognized commands (e.g., "/foo") return None, not an error.
  Groups often have several bots; answering every unknown command
  would be noisy.
- Each command owns its own argument parsing and validation.
  The dispatcher only handles routing.
- Optional bare-notation mode: plain text that parses as dice
  notation ("2d6+1") is rolled without any command. Text that does
  not parse is ignored, never answered with an error.
- Dispatching is synchronous and CPU-only. It never touches the
  network; the update loop sends whatever comes back.

Thread Safety
-------------
dispatch() only reads the registry, so it is safe to call from the
update loop's worker threads once registration is done. Commands are
expected to be stateless (DiceCommand takes a thread-confined random
source).
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional

from goblin_commands.events import InboundEvent, OutboundMessage

logger = logging.getLogger(__name__)

# Telegram rejects longer messages
MAX_REPLY_LENGTH = 4096


@dataclass
class CommandResult:
    """Structured output from a command execution.

    Attributes
    ----------
    command : str
        The command name that produced this result (e.g., "roll").

    summary : str
        Human-readable reply text.
        Examples:
            "🎲 2d6+3 → [4, 5] + 3 = 12"
            "🎲 4d6kh3 → [~1~, 4, 4, 6] = 14"

    details : dict
        Structured data describing the result. For dice:
        {"expression": "2d6+3", "total": 12, "terms": [...]}

    error : str or None
        If set, the command recognized the input but couldn't
        execute it. Contains a user-friendly error message.
        The summary field is ignored when error is set.
    """
    command: str
    summary: str
    details: dict = field(default_factory=dict)
    error: Optional[str] = None

    @property
    def is_error(self) -> bool:
        """Check if this result represents an error."""
        return self.error is not None

    @property
    def reply_text(self) -> str:
        """The text to send back to the chat."""
        return self.error if self.is_error else self.summary


class Command(ABC):
    """Base class for all Dice Goblin commands.

    Required Properties
    -------------------
    name : str
        Primary command keyword (lowercase, no prefix).

    help_text : str
        One-line description shown in /help listings.
        Convention: "/name <args> — Description"

    Required Methods
    ----------------
    execute(args: str) -> CommandResult
        Parse the argument string and execute the command.

    Optional Properties
    -------------------
    aliases : list[str]
        Alternative names that also trigger this command.
        Example: ["r"] so /r works as shorthand for /roll.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Primary command name (lowercase, no prefix)."""
        ...

    @property
    def aliases(self) -> list[str]:
        """Alternative names that also trigger this command."""
        return []

    @property
    @abstractmethod
    def help_text(self) -> str:
        """One-line usage description for /help listings."""
        ...

    @abstractmethod
    def execute(self, args: str) -> CommandResult:
        """Parse arguments and execute the command.

        Parameters
        ----------
        args : str
            Everything after the command name, stripped of leading
            whitespace. For "/roll 2d6+3", args is "2d6+3".
            For "/roll" with no args, args is "".

        Returns
        -------
        CommandResult
            Always returns a result, either successful or an error.
            Never returns None; never raises exceptions to the caller.
        """
        ...


def looks_like_notation(word: str) -> bool:
    """Does a command word start the way dice notation does?

    "2d6", "d20", "(d6", "-1" do; "dance", "help" and "" do not.
    """
    if not word:
        return False
    first = word[0]
    if first.isdigit() or first in "(-":
        return True
    return first in "dD" and len(word) > 1 and word[1].isdigit()


class CommandDispatcher:
    """Routes chat messages to registered command handlers.

    Usage
    -----
        dispatcher = CommandDispatcher(prefix="/", bot_username="DiceGoblinBot")
        dispatcher.register(DiceCommand(rng), notation=True)
        dispatcher.register(HelpCommand(dispatcher))

        reply = dispatcher.dispatch(event)
        if reply is not None:
            outbox.append(reply)
    """

    def __init__(
        self,
        prefix: str = "/",
        bot_username: Optional[str] = None,
        bare_notation: bool = False,
    ):
        if not prefix:
            raise ValueError("Command prefix must not be empty")
        self.prefix = prefix
        self.bot_username = bot_username
        self.bare_notation = bare_notation
        self._commands: dict[str, Command] = {}
        self._notation_command: Optional[Command] = None

    def register(self, command: Command, notation: bool = False) -> None:
        """Register a command handler.

        Parameters
        ----------
        command : Command
            The command handler instance to register.
        notation : bool
            Also route "/<notation>" and bare notation to this command.

        Raises
        ------
        ValueError
            If the command name or any alias collides with an
            already-registered name.
        """
        for key in [command.name] + command.aliases:
            key = key.lower()
            if key in self._commands:
                raise ValueError(
                    f"Command name collision: '{key}' is already registered "
                    f"to '{self._commands[key].name}'"
                )
            self._commands[key] = command
        if notation:
            self._notation_command = command

    def dispatch(self, event: InboundEvent) -> Optional[OutboundMessage]:
        """Turn an inbound chat event into a reply, or None.

        Replies in group chats are threaded under the request so
        everyone can see whose roll it was.
        """
        result = self.dispatch_line(event.text)
        if result is None:
            return None

        text = result.reply_text
        if len(text) > MAX_REPLY_LENGTH:
            text = text[:MAX_REPLY_LENGTH - 1] + "…"
        reply_to = None if event.is_private else event.message_id
        return OutboundMessage(chat_id=event.chat_id, text=text, reply_to_message_id=reply_to)

    def dispatch_line(self, line: str) -> Optional[CommandResult]:
        """Attempt to dispatch a chat line as a command.

        Returns
        -------
        CommandResult or None
            CommandResult if the line matched a registered command,
            notation shorthand or (in bare mode) plain notation.
            None if the line is normal chat text.
        """
        stripped = line.strip()

        if not stripped.startswith(self.prefix):
            return self._dispatch_bare(stripped)

        # Split into command name and arguments
        without_prefix = stripped[len(self.prefix):]
        parts = without_prefix.split(None, 1)
        if not parts:
            return None

        word, _, mention = parts[0].partition("@")
        if mention and not self._addressed_to_us(mention):
            return None
        args = parts[1] if len(parts) > 1 else ""

        command = self._commands.get(word.lower())
        if command is not None:
            return command.execute(args)

        if self._notation_command is not None and looks_like_notation(word):
            # "/2d6 + 3": the command word is the first chunk of notation
            notation = word if not args else f"{word} {args}"
            return self._notation_command.execute(notation)

        return None  # Unrecognized → treat as normal chat

    def _dispatch_bare(self, text: str) -> Optional[CommandResult]:
        if not self.bare_notation or self._notation_command is None:
            return None
        if not looks_like_notation(text):
            return None
        result = self._notation_command.execute(text)
        if result.is_error:
            # Plain chatter that merely starts with a digit
            logger.debug(f"Ignoring bare text that is not notation: {text!r}")
            return None
        return result

    def _addressed_to_us(self, mention: str) -> bool:
        if not self.bot_username:
            return True
        return mention.lower() == self.bot_username.lstrip("@").lower()

    def list_commands(self) -> list[tuple[str, str]]:
        """Return (name, help_text) for all registered commands.

        Deduplicates aliases so each command appears once.
        Sorted alphabetically by name.
        """
        seen = set()
        result = []
        for cmd in self._commands.values():
            if cmd.name not in seen:
                seen.add(cmd.name)
                result.append((cmd.name, cmd.help_text))
        return sorted(result, key=lambda x: x[0])
