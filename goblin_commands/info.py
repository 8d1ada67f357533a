"""/start and /help: what the goblin is and how to talk to it."""

from __future__ import annotations

from goblin_commands.dispatcher import Command, CommandDispatcher, CommandResult


START_TEXT = (
    "Let Dice Goblin roll for you!\n"
    "\n"
    "Dice Goblin will roll any-sided dice and do simple arithmetic to reach "
    "a total, as many tabletop and RPG games need. See {prefix}help for the "
    "commands and syntax available."
)

SYNTAX_TEXT = """\
ROLL EXPRESSION SYNTAX

Dice are written NdS: N dice with S sides each, summed together.
  3d10    roll a ten-sided die three times
  d6      a single six-sided die (N defaults to 1)
  D2      flip a coin (the d is case-insensitive)

Modifiers go right after the dice, no spaces:
  4d6kh3  keep the highest 3 (k3 works too)
  2d20kl1 keep the lowest 1
  d6r1    reroll ones, once
  3d6!    exploding sixes (x5 or !5 explodes on 5 or more)

Arithmetic: + - * / and parentheses.
  3d10 + 2      roll three d10 and add two
  (d6 - 1) * 2  roll a d6, subtract one, double it
  3 / 2         equals 1 (division rounds towards zero)"""


class StartCommand(Command):
    """The /start greeting every Telegram bot gets on first contact."""

    def __init__(self, prefix: str = "/"):
        self.prefix = prefix

    @property
    def name(self) -> str:
        return "start"

    @property
    def help_text(self) -> str:
        return f"{self.prefix}start — See introductory information about this bot"

    def execute(self, args: str) -> CommandResult:
        return CommandResult(command=self.name, summary=START_TEXT.format(prefix=self.prefix))


class HelpCommand(Command):
    """Lists the registered commands, then the notation reference.

    Holds the dispatcher so commands registered later still show up.
    """

    def __init__(self, dispatcher: CommandDispatcher):
        self.dispatcher = dispatcher

    @property
    def name(self) -> str:
        return "help"

    @property
    def help_text(self) -> str:
        return f"{self.dispatcher.prefix}help — See this help output"

    def execute(self, args: str) -> CommandResult:
        prefix = self.dispatcher.prefix
        lines = ["COMMANDS", ""]
        commands = self.dispatcher.list_commands()
        for _, help_text in commands:
            lines.append(help_text)
        lines.append(f"{prefix}<expression> — Same as {prefix}roll")
        lines.append("")
        lines.append(SYNTAX_TEXT)
        return CommandResult(
            command=self.name,
            summary="\n".join(lines),
            details={"commands": [name for name, _ in commands]},
        )
