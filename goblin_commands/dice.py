"""
Dice Command (/roll)
====================

Parses dice notation, rolls it and formats the reply. This is the
command the goblin exists for.

Notation
--------
Anything notation.parse() accepts: sums, differences, products and
quotients of dice and numbers, with parentheses and per-term
modifiers (see notation.py for the grammar).

    /roll d20            →  🎲 d20 → [14] = 14
    /roll 2d8+5          →  🎲 2d8+5 → [7, 3] + 5 = 15
    /roll 4d6kh3         →  🎲 4d6kh3 → [~1~, 4, 4, 6] = 14
    /roll d6r1           →  🎲 d6r1 → [1→5] = 5
    /roll 3d6!           →  🎲 3d6! → [6!, 1, 2, 3] = 12
    /roll (d6-1)*2       →  🎲 (d6-1)*2 → ([4] - 1) * 2 = 6

    /r d20               →  Same as /roll d20 (alias)
    /2d6                 →  Same as /roll 2d6 (routed by the dispatcher)

Breakdown Format
----------------
The breakdown mirrors the expression, with each dice term replaced by
its pool in brackets:

    v        a die that counts
    ~v~      a die dropped by kh/kl
    a→b      a die rerolled from a to b
    v!       a die that exploded (its bonus die follows it)

Telegram caps messages at 4096 characters. A reply that would not fit
(a hundred exploding d1000s, say) collapses to the notation and total.

Errors
------
Every DiceError becomes a CommandResult with error set. Parse errors
include a caret line under the offending character:

    Unknown dice modifier 'q' at position 4
    2d6q
       ^
"""

from __future__ import annotations

import logging
from typing import Optional

from goblin_commands.dispatcher import MAX_REPLY_LENGTH, Command, CommandResult
from goblin_commands.errors import DiceError, DivideByZero, ParseError
from goblin_commands.evaluator import (
    EXPLOSION_LIMIT,
    DieRoll,
    EvaluationResult,
    RandomSource,
    ThreadLocalRandomSource,
    evaluate,
)
from goblin_commands.notation import (
    BinaryOp,
    DiceTerm,
    Expression,
    Negate,
    NumberLiteral,
    parse,
    precedence,
    wrap,
)

logger = logging.getLogger(__name__)

DICE_EMOJI = "\U0001f3b2"


# ─── Formatting ─────────────────────────────────────────────────────

def format_die(die: DieRoll) -> str:
    text = str(die.value)
    if die.rerolled_from is not None:
        text = f"{die.rerolled_from}→{text}"
    if die.exploded:
        text += "!"
    if die.dropped:
        text = f"~{text}~"
    return text


def format_breakdown(expr: Expression, result: EvaluationResult) -> str:
    """Render ``expr`` with every dice term replaced by its rolled pool.

    Outcomes are consumed in the same left-to-right order the
    evaluator produced them.
    """
    outcomes = iter(result.outcomes)

    def render(node: Expression) -> str:
        if isinstance(node, NumberLiteral):
            return str(node.value)
        if isinstance(node, DiceTerm):
            outcome = next(outcomes)
            return "[" + ", ".join(format_die(d) for d in outcome.dice) + "]"
        if isinstance(node, Negate):
            if isinstance(node.operand, (BinaryOp, Negate)):
                return f"-({render(node.operand)})"
            return "-" + render(node.operand)
        if isinstance(node, BinaryOp):
            level = precedence(node)
            left = wrap(node.left, level, render)
            right = wrap(node.right, level + 1, render)
            return f"{left} {node.op} {right}"
        raise TypeError(f"Not an expression node: {node!r}")

    return render(expr)


def format_summary(expr: Expression, result: EvaluationResult) -> str:
    """One-line reply: 🎲 <notation> → <breakdown> = <total>.

    Falls back to 🎲 <notation> = <total> when the full line would be
    longer than a Telegram message allows.
    """
    notation = str(expr)
    summary = f"{DICE_EMOJI} {notation} → {format_breakdown(expr, result)} = {result.total}"
    if len(summary) > MAX_REPLY_LENGTH:
        summary = f"{DICE_EMOJI} {notation} = {result.total}"
    return summary


def format_parse_error(error: ParseError) -> str:
    return f"{error.describe()}\n{error.caret()}"


# ─── Command Handler ────────────────────────────────────────────────

class DiceCommand(Command):
    """The /roll command.

    Registered as both /roll and /r, and as the dispatcher's notation
    command so "/2d6" and (optionally) bare "2d6" land here too.

    Parameters
    ----------
    rng : RandomSource, optional
        Where the dice come from. Defaults to a thread-local source,
        which is safe to share across the update loop's workers.
    explosion_limit : int
        Cap on extra draws from exploding dice, per term.
    prefix : str
        Command prefix, only used in the usage message.
    """

    def __init__(
        self,
        rng: Optional[RandomSource] = None,
        explosion_limit: int = EXPLOSION_LIMIT,
        prefix: str = "/",
    ):
        self.rng = rng if rng is not None else ThreadLocalRandomSource()
        self.explosion_limit = explosion_limit
        self.prefix = prefix

    @property
    def name(self) -> str:
        return "roll"

    @property
    def aliases(self) -> list[str]:
        return ["r"]  # /r d20 for the impatient

    @property
    def help_text(self) -> str:
        return f"{self.prefix}roll <expression> — Roll dice (e.g., {self.prefix}roll 2d6+3)"

    def execute(self, args: str) -> CommandResult:
        """Parse dice notation and roll.

        Returns CommandResult with summary and structured details.
        On invalid input, returns CommandResult with error set.
        """
        notation = args.strip()
        if not notation:
            return CommandResult(
                command=self.name,
                summary="",
                error=f"No dice notation provided. Usage: {self.prefix}roll <expression>\n"
                      f"Examples: {self.prefix}roll d20, {self.prefix}roll 4d6kh3, "
                      f"{self.prefix}roll (d6-1)*2"
            )

        try:
            expr = parse(notation)
        except ParseError as e:
            logger.debug(f"Rejected notation {notation!r}: {e}")
            return CommandResult(command=self.name, summary="", error=format_parse_error(e))
        except DivideByZero as e:
            return CommandResult(
                command=self.name,
                summary="",
                error=f"{e} (position {e.position + 1})\n{e.caret()}",
            )

        try:
            result = evaluate(expr, self.rng, self.explosion_limit)
        except DiceError as e:
            logger.debug(f"Could not evaluate {expr}: {e}")
            return CommandResult(command=self.name, summary="", error=str(e))

        logger.info(f"roll: {expr} = {result.total}")

        return CommandResult(
            command=self.name,
            summary=format_summary(expr, result),
            details={
                "expression": str(expr),
                "total": result.total,
                "terms": [outcome.to_dict() for outcome in result.outcomes],
            },
        )
