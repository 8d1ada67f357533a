"""
Dice Notation
=============

Parses roll expressions into an immutable expression tree.

Grammar
-------
Precedence from lowest to highest:

    expr     := term (('+' | '-') term)*
    term     := factor (('*' | '/') factor)*
    factor   := ['-'] atom
    atom     := dice | number | '(' expr ')'
    dice     := [count] 'd' sides modifier*
    modifier := 'kh' [n] | 'k' [n] | 'kl' [n] | 'r' [n] | 'x' [n] | '!' [n]

Whitespace between tokens is ignored. A dice term is a single token,
so "4d6kh3" is fine while "4d6 kh3" is not. The 'd' and the modifier
letters are case-insensitive.

    kh<n>, k<n>   keep the highest n dice (default 1)
    kl<n>         keep the lowest n dice (default 1)
    r<n>          reroll each die showing n or less, once (default 1)
    !             explode on the highest face
    !<n>, x<n>    explode on n or more
    x             explode on the highest face

Examples
--------
    d20            one twenty-sided die
    2d6+3          two six-sided dice plus three
    4d6kh3         ability score: roll four, keep the best three
    2d20kl1        disadvantage
    (d6-1)*2       arithmetic with grouping
    3d6!           exploding sixes

Expression Tree
---------------
    NumberLiteral(7)
    DiceTerm(count=4, sides=6, modifiers=(KeepHighest(3),))
    BinaryOp('+', left, right)
    Negate(operand)

Nodes are frozen dataclasses. The parser either returns a valid tree
or raises a ParseError; it never builds a half-valid one.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Union

from goblin_commands.errors import (
    DivideByZero,
    InvalidCount,
    InvalidSides,
    UnexpectedEnd,
    UnexpectedToken,
    UnknownModifier,
)


# Guardrails
MAX_DICE = 100
MIN_SIDES = 2
MAX_SIDES = 1000
MAX_DEPTH = 32
MAX_INPUT_LENGTH = 512

_DIGITS = "0123456789"
_OPERAND = "a number, a die or '('"


# ─── Modifiers ──────────────────────────────────────────────────────

@dataclass(frozen=True)
class KeepHighest:
    count: int

    def __str__(self) -> str:
        return f"kh{self.count}"


@dataclass(frozen=True)
class KeepLowest:
    count: int

    def __str__(self) -> str:
        return f"kl{self.count}"


@dataclass(frozen=True)
class Reroll:
    threshold: int

    def __str__(self) -> str:
        return f"r{self.threshold}"


@dataclass(frozen=True)
class Explode:
    """Explode on ``threshold`` or more; None means the die's top face."""
    threshold: Optional[int] = None

    def __str__(self) -> str:
        return "!" if self.threshold is None else f"x{self.threshold}"


Modifier = Union[KeepHighest, KeepLowest, Reroll, Explode]


def _modifier_kind(modifier: Modifier) -> str:
    if isinstance(modifier, (KeepHighest, KeepLowest)):
        return "keep"
    if isinstance(modifier, Reroll):
        return "reroll"
    return "explode"


# ─── Expression tree ────────────────────────────────────────────────

@dataclass(frozen=True)
class NumberLiteral:
    value: int

    def __str__(self) -> str:
        return to_notation(self)


@dataclass(frozen=True)
class DiceTerm:
    count: int
    sides: int
    modifiers: tuple = ()

    def __str__(self) -> str:
        return to_notation(self)

    def modifier(self, kind: type) -> Optional[Modifier]:
        """First modifier that is an instance of ``kind``, if any."""
        for modifier in self.modifiers:
            if isinstance(modifier, kind):
                return modifier
        return None


@dataclass(frozen=True)
class BinaryOp:
    op: str
    left: "Expression"
    right: "Expression"

    def __str__(self) -> str:
        return to_notation(self)


@dataclass(frozen=True)
class Negate:
    operand: "Expression"

    def __str__(self) -> str:
        return to_notation(self)


Expression = Union[NumberLiteral, DiceTerm, BinaryOp, Negate]


# ─── Parser ─────────────────────────────────────────────────────────

class _Parser:
    """Recursive-descent parser over the raw text.

    Keeps a character position into the input; every error is raised
    at the position where the offending character starts.
    """

    def __init__(self, text: str):
        self.text = text
        self.pos = 0

    # Scanning helpers

    def _skip_whitespace(self) -> None:
        while self.pos < len(self.text) and self.text[self.pos].isspace():
            self.pos += 1

    def _peek(self) -> Optional[str]:
        if self.pos < len(self.text):
            return self.text[self.pos]
        return None

    def _at_digit(self) -> bool:
        char = self._peek()
        return char is not None and char in _DIGITS

    def _read_number(self) -> int:
        start = self.pos
        while self._at_digit():
            self.pos += 1
        return int(self.text[start:self.pos])

    def _fail(self, expected: str):
        """Raise the right error for an unexpected character (or the end)."""
        if self._peek() is None:
            raise UnexpectedEnd(self.text, self.pos, expected)
        raise UnexpectedToken(self.text, self.pos, expected)

    # Grammar

    def parse(self) -> Expression:
        if len(self.text) > MAX_INPUT_LENGTH:
            raise UnexpectedToken(
                self.text, MAX_INPUT_LENGTH, "end of input",
                detail=f"Expression is longer than {MAX_INPUT_LENGTH} characters",
            )
        node = self._expr(0)
        self._skip_whitespace()
        if self._peek() is not None:
            self._fail("an operator or the end of the expression")
        return node

    def _expr(self, depth: int) -> Expression:
        node = self._term(depth)
        while True:
            self._skip_whitespace()
            op = self._peek()
            if op not in ("+", "-"):
                return node
            self.pos += 1
            node = BinaryOp(op, node, self._term(depth))

    def _term(self, depth: int) -> Expression:
        node = self._factor(depth)
        while True:
            self._skip_whitespace()
            op = self._peek()
            if op not in ("*", "/"):
                return node
            op_position = self.pos
            self.pos += 1
            right = self._factor(depth)
            if (
                op == "/"
                and isinstance(node, NumberLiteral)
                and isinstance(right, NumberLiteral)
                and right.value == 0
            ):
                raise DivideByZero(op_position, self.text)
            node = BinaryOp(op, node, right)

    def _factor(self, depth: int) -> Expression:
        self._skip_whitespace()
        if self._peek() == "-":
            self.pos += 1
            return Negate(self._atom(depth))
        return self._atom(depth)

    def _atom(self, depth: int) -> Expression:
        self._skip_whitespace()
        char = self._peek()

        if char == "(":
            if depth >= MAX_DEPTH:
                raise UnexpectedToken(
                    self.text, self.pos, _OPERAND,
                    detail=f"Parentheses nested deeper than {MAX_DEPTH} levels",
                )
            self.pos += 1
            node = self._expr(depth + 1)
            self._skip_whitespace()
            if self._peek() != ")":
                self._fail("')'")
            self.pos += 1
            return node

        if char is not None and char in _DIGITS:
            count_position = self.pos
            value = self._read_number()
            if self._peek() in ("d", "D"):
                return self._dice(count_position, value)
            return NumberLiteral(value)

        if char in ("d", "D"):
            return self._dice(self.pos, None)

        self._fail(_OPERAND)

    def _dice(self, count_position: int, count: Optional[int]) -> DiceTerm:
        if count is None:
            count = 1
        elif not 1 <= count <= MAX_DICE:
            raise InvalidCount(
                self.text, count_position, f"between 1 and {MAX_DICE} dice",
                detail=f"Dice count must be between 1 and {MAX_DICE}, got {count}",
            )

        self.pos += 1  # the 'd'
        if not self._at_digit():
            self._fail("number of sides")
        sides_position = self.pos
        sides = self._read_number()
        if not MIN_SIDES <= sides <= MAX_SIDES:
            raise InvalidSides(
                self.text, sides_position, f"between {MIN_SIDES} and {MAX_SIDES} sides",
                detail=f"Die sides must be between {MIN_SIDES} and {MAX_SIDES}, got {sides}",
            )

        modifiers = self._modifiers(count)
        return DiceTerm(count=count, sides=sides, modifiers=modifiers)

    def _modifiers(self, count: int) -> tuple:
        modifiers = []
        seen = set()
        while True:
            start = self.pos
            modifier = self._modifier(count)
            if modifier is None:
                return tuple(modifiers)
            kind = _modifier_kind(modifier)
            if kind in seen:
                raise UnexpectedToken(
                    self.text, start, f"at most one {kind} modifier",
                    detail=f"Only one {kind} modifier is allowed per dice term",
                )
            seen.add(kind)
            modifiers.append(modifier)

    def _modifier(self, count: int) -> Optional[Modifier]:
        char = self._peek()
        if char is None:
            return None

        if char == "!":
            self.pos += 1
            return Explode(self._optional_number())

        if not char.isalpha():
            return None

        start = self.pos
        suffix = self.text[self.pos:self.pos + 2].lower()
        if suffix in ("kh", "kl"):
            self.pos += 2
            return self._keep(suffix, start, count)
        letter = char.lower()
        if letter == "k":
            self.pos += 1
            return self._keep("kh", start, count)
        if letter == "r":
            self.pos += 1
            threshold = self._optional_number()
            return Reroll(1 if threshold is None else threshold)
        if letter == "x":
            self.pos += 1
            return Explode(self._optional_number())

        raise UnknownModifier(
            self.text, start, "a modifier (kh, kl, r, x or !)",
            detail=f"Unknown dice modifier '{char}'",
        )

    def _keep(self, suffix: str, start: int, count: int) -> Modifier:
        number_position = self.pos
        keep = self._optional_number()
        if keep is None:
            keep = 1
            number_position = start
        if not 1 <= keep <= count:
            raise InvalidCount(
                self.text, number_position, f"between 1 and {count} dice to keep",
                detail=f"Can't keep {keep} of {count} dice",
            )
        if suffix == "kl":
            return KeepLowest(keep)
        return KeepHighest(keep)

    def _optional_number(self) -> Optional[int]:
        if self._at_digit():
            return self._read_number()
        return None


def parse(text: str) -> Expression:
    """Parse dice notation into an expression tree.

    Parameters
    ----------
    text : str
        The notation, e.g. "2d6+3" or "4d6kh3 + (d4 - 1) * 2".

    Returns
    -------
    Expression
        The root node of the parsed tree.

    Raises
    ------
    ParseError
        One of InvalidCount, InvalidSides, UnknownModifier,
        UnexpectedToken or UnexpectedEnd, carrying the offset of the
        offending input.
    DivideByZero
        When a plain number is divided by a literal zero ("3/0").
    """
    return _Parser(text).parse()


# ─── Rendering ──────────────────────────────────────────────────────

_PRECEDENCE = {"+": 1, "-": 1, "*": 2, "/": 2}
_ATOM_PRECEDENCE = 3


def precedence(expr: Expression) -> int:
    """Binding strength of a node, used to decide where parentheses go."""
    if isinstance(expr, BinaryOp):
        return _PRECEDENCE[expr.op]
    return _ATOM_PRECEDENCE


def to_notation(expr: Expression) -> str:
    """Render a tree back to canonical notation.

    Only the parentheses needed to rebuild the same tree are emitted,
    so ``parse(to_notation(expr)) == expr`` for every parsed tree.
    Single dice omit the count: "d20" rather than "1d20".
    """
    if isinstance(expr, NumberLiteral):
        if expr.value < 0:
            return f"({expr.value})"
        return str(expr.value)
    if isinstance(expr, DiceTerm):
        base = f"{expr.count}d{expr.sides}" if expr.count > 1 else f"d{expr.sides}"
        return base + "".join(str(m) for m in expr.modifiers)
    if isinstance(expr, Negate):
        if isinstance(expr.operand, (BinaryOp, Negate)):
            return f"-({to_notation(expr.operand)})"
        return "-" + to_notation(expr.operand)
    if isinstance(expr, BinaryOp):
        level = _PRECEDENCE[expr.op]
        left = wrap(expr.left, level, to_notation)
        right = wrap(expr.right, level + 1, to_notation)
        return f"{left}{expr.op}{right}"
    raise TypeError(f"Not an expression node: {expr!r}")


def wrap(expr: Expression, minimum: int, render) -> str:
    """Render ``expr``, parenthesised when it binds looser than ``minimum``."""
    text = render(expr)
    if precedence(expr) < minimum:
        return f"({text})"
    return text
