"""
Dice Errors
===========

Every failure the dice core can produce, in one place.

    DiceError (ValueError)
    ├── ParseError            the text is not valid notation
    │   ├── InvalidCount      0d6, 500d6, 4d6kh5
    │   ├── InvalidSides      d1, d0, d5000
    │   ├── UnknownModifier   2d6q, 3d8zz
    │   ├── UnexpectedToken   2d6 + * 3, (1+2
    │   └── UnexpectedEnd     2d6 +, d
    └── EvalError             the notation is fine but the roll is not
        ├── DivideByZero      3/0, d6/(1-1)
        ├── Overflow          99999999999999999999 + 1
        └── ExplosionLimitExceeded   d6x1

Parse errors remember where in the input things went wrong so the
reply can point at the offending character. Both families are caught
by DiceCommand and turned into a chat reply; nothing here is ever
allowed to take the bot down.
"""

from __future__ import annotations

from typing import Optional


class DiceError(ValueError):
    """Base class for user-facing dice errors."""


# ─── Parse errors ───────────────────────────────────────────────────

class ParseError(DiceError):
    """The input could not be parsed as dice notation.

    Attributes
    ----------
    text : str
        The full input that was being parsed.
    position : int
        Character index of the problem (used for the caret line).
    offset : int
        Byte offset of the problem in the UTF-8 encoded input.
    expected : str
        What the parser was looking for, e.g. "number of sides".
    """

    def __init__(self, text: str, position: int, expected: str, detail: Optional[str] = None):
        self.text = text
        self.position = position
        self.offset = len(text[:position].encode("utf-8"))
        self.expected = expected
        self.detail = detail
        super().__init__(self.describe())

    def describe(self) -> str:
        if self.detail:
            return f"{self.detail} at position {self.position + 1}"
        return f"Expected {self.expected} at position {self.position + 1}"

    def caret(self) -> str:
        """Two-line pointer at the offending character."""
        return f"{self.text}\n{' ' * self.position}^"


class InvalidCount(ParseError):
    """Dice count (or keep count) out of range."""


class InvalidSides(ParseError):
    """A die needs at least two sides."""


class UnknownModifier(ParseError):
    """Suffix after a dice term that is not a known modifier."""


class UnexpectedToken(ParseError):
    """A character that does not fit the grammar at this point."""


class UnexpectedEnd(ParseError):
    """Input ended while more was required."""

    def describe(self) -> str:
        if self.detail:
            return self.detail
        return f"Unexpected end of expression, expected {self.expected}"


# ─── Evaluation errors ──────────────────────────────────────────────

class EvalError(DiceError):
    """The expression parsed but could not be evaluated."""


class DivideByZero(EvalError):
    """Division by zero.

    Raised by the evaluator when a divisor rolls to zero, and by the
    parser when both sides of the division are plain numbers. In the
    parser case ``position`` points at the '/' and ``offset`` is its
    UTF-8 byte offset, as for ParseError.
    """

    def __init__(self, position: Optional[int] = None, text: Optional[str] = None):
        self.position = position
        self.text = text
        self.offset = None
        if position is not None and text is not None:
            self.offset = len(text[:position].encode("utf-8"))
        super().__init__("Division by zero. Even goblins can't split a pie zero ways.")

    def caret(self) -> Optional[str]:
        if self.position is None or self.text is None:
            return None
        return f"{self.text}\n{' ' * self.position}^"


class Overflow(EvalError):
    """Result does not fit a signed 64-bit integer."""

    def __init__(self, value: int):
        self.value = value
        super().__init__("That number is too big to count, even on all the goblin's fingers.")


class ExplosionLimitExceeded(EvalError):
    """Exploding dice kept exploding past the safety cap."""

    def __init__(self, limit: int):
        self.limit = limit
        super().__init__(
            f"Exploding dice went off more than {limit} times. "
            f"The goblin ran out of dice."
        )
