"""
Dice Goblin Command System
==========================

The chat-facing half of Dice Goblin: dice notation, rolling, and the
slash-command dispatcher that decides which messages get an answer.

Architecture Overview
---------------------
The command system sits between the update loop and the transport.
It never touches the network itself; it turns an InboundEvent into
an OutboundMessage (or None) and hands it back.

    ┌──────────────────┐     ┌──────────────┐     ┌──────────────────┐
    │  Update Loop      │────►│  Command     │────►│  OutboundMessage │
    │  (InboundEvent)   │     │  Dispatcher  │     │  → transport     │
    └──────────────────┘     └──────┬───────┘     └──────────────────┘
                                    │
                      ┌─────────────┼──────────────┐
                      ▼             ▼              ▼
                 DiceCommand   StartCommand   HelpCommand
                      │
              notation.parse() → evaluator.evaluate()

Everything under the dispatcher is synchronous and CPU-only, so the
update loop can fan it out across worker threads.

Integration
-----------
    from goblin_commands import build_dispatcher

    dispatcher = build_dispatcher(prefix="/", bot_username="DiceGoblinBot")

    reply = dispatcher.dispatch(event)
    if reply is not None:
        transport.send_message(reply)

A module-level ``dispatcher`` with the defaults is also provided for
quick use from a console or test.

Extending the Command System
----------------------------
To add a new command:

1. Create a new file in goblin_commands/ (e.g., coin.py)
2. Subclass Command from dispatcher.py
3. Implement: name, help_text, execute(args) -> CommandResult
4. Register it in build_dispatcher() below

/help picks up new commands automatically.

Module Structure
----------------
    goblin_commands/
    ├── __init__.py     ← This file. Builds the dispatcher.
    ├── errors.py       ← DiceError hierarchy (parse and evaluation errors).
    ├── notation.py     ← Parser: text → expression tree, and back.
    ├── evaluator.py    ← Rolls an expression tree with an injected RNG.
    ├── events.py       ← InboundEvent / OutboundMessage.
    ├── dispatcher.py   ← CommandDispatcher, Command ABC, CommandResult.
    ├── dice.py         ← /roll (and /r, and /<notation>).
    └── info.py         ← /start and /help.

Dependencies
------------
Standard library only.
"""

from typing import Optional

from goblin_commands.dice import DiceCommand
from goblin_commands.dispatcher import CommandDispatcher, CommandResult
from goblin_commands.evaluator import EXPLOSION_LIMIT, RandomSource
from goblin_commands.events import InboundEvent, OutboundMessage
from goblin_commands.info import HelpCommand, StartCommand


def build_dispatcher(
    prefix: str = "/",
    bot_username: Optional[str] = None,
    bare_notation: bool = False,
    rng: Optional[RandomSource] = None,
    explosion_limit: int = EXPLOSION_LIMIT,
) -> CommandDispatcher:
    """Create a dispatcher with every Dice Goblin command registered."""
    commands = CommandDispatcher(prefix=prefix, bot_username=bot_username, bare_notation=bare_notation)
    commands.register(DiceCommand(rng=rng, explosion_limit=explosion_limit, prefix=prefix), notation=True)
    commands.register(StartCommand(prefix=prefix))
    commands.register(HelpCommand(commands))
    return commands


# ─── Build the default dispatcher with all registered commands ──────

dispatcher = build_dispatcher()

__all__ = [
    'dispatcher',
    'build_dispatcher',
    'CommandDispatcher',
    'CommandResult',
    'InboundEvent',
    'OutboundMessage',
]
