"""
Roll Evaluator
==============

Walks a parsed expression tree, rolls the dice and adds it all up.

Random Number Generation
------------------------
The evaluator never reaches for the global ``random`` module. Every
call takes a RandomSource, anything with ``randint(low, high)``:

    ThreadLocalRandomSource   production; one Mersenne Twister per
                              thread, so worker threads never share
                              generator state
    ScriptedRandomSource      plays back a fixed list of values, so
                              a test can say "the dice show 3 and 5"
    random.Random(seed)       also fine, for reproducible demos

Given the same expression and the same draws, evaluate() returns the
same result every time.

Modifier Order
--------------
Modifiers always run in the same order, whatever order they were
written in:

    1. Reroll    dice at or under the threshold are rolled again, once
    2. Explode   dice at or over the threshold add another die, which
                 can explode again (capped by explosion_limit)
    3. Keep      only the highest/lowest n dice count toward the total

Each die drawn along the way, including rerolls and explosions, is
recorded in RollOutcome.draws in the order it came off the source.

Arithmetic
----------
Signed 64-bit semantics. Division truncates toward zero and dividing
by zero is an error rather than a silent zero. Results that do not
fit 64 bits raise Overflow.
"""

from __future__ import annotations

import random
import threading
from dataclasses import dataclass, replace
from typing import Iterable, Optional, Protocol

from goblin_commands.errors import DivideByZero, ExplosionLimitExceeded, Overflow
from goblin_commands.notation import (
    BinaryOp,
    DiceTerm,
    Explode,
    Expression,
    KeepHighest,
    KeepLowest,
    Negate,
    NumberLiteral,
    Reroll,
)


EXPLOSION_LIMIT = 100

INT_MIN = -(2 ** 63)
INT_MAX = 2 ** 63 - 1


# ─── Random sources ─────────────────────────────────────────────────

class RandomSource(Protocol):
    def randint(self, low: int, high: int) -> int:
        """Uniform integer in [low, high], both ends inclusive."""
        ...


class ThreadLocalRandomSource:
    """One independently seeded generator per thread.

    Safe to hand to every dispatcher worker: each thread lazily gets
    its own random.Random, so nothing is shared and nothing is locked.
    """

    def __init__(self):
        self._local = threading.local()

    def randint(self, low: int, high: int) -> int:
        generator = getattr(self._local, "generator", None)
        if generator is None:
            generator = random.Random()
            self._local.generator = generator
        return generator.randint(low, high)


class ScriptedRandomSource:
    """Returns a fixed sequence of values, in order.

    Raises ValueError when the script runs out or when a scripted
    value does not fit the requested range; both mean the test (or
    demo) scripted the wrong dice.
    """

    def __init__(self, values: Iterable[int]):
        self._values = list(values)
        self._index = 0

    @property
    def remaining(self) -> int:
        return len(self._values) - self._index

    def randint(self, low: int, high: int) -> int:
        if self._index >= len(self._values):
            raise ValueError(f"Scripted random source exhausted after {len(self._values)} draws")
        value = self._values[self._index]
        if not low <= value <= high:
            raise ValueError(f"Scripted value {value} is outside [{low}, {high}]")
        self._index += 1
        return value


# ─── Results ────────────────────────────────────────────────────────

@dataclass(frozen=True)
class DieRoll:
    """One die in a term's final pool.

    Attributes
    ----------
    value : int
        The face that counts.
    dropped : bool
        Removed by a keep modifier.
    rerolled_from : int or None
        The face it showed before a reroll replaced it.
    exploded : bool
        This die hit the explode threshold and spawned another die.
    bonus : bool
        This die was spawned by an explosion.
    """
    value: int
    dropped: bool = False
    rerolled_from: Optional[int] = None
    exploded: bool = False
    bonus: bool = False


@dataclass(frozen=True)
class RollOutcome:
    """Everything that happened while rolling one DiceTerm."""
    term: DiceTerm
    draws: tuple
    dice: tuple
    total: int

    @property
    def kept(self) -> tuple:
        return tuple(d.value for d in self.dice if not d.dropped)

    @property
    def dropped(self) -> tuple:
        return tuple(d.value for d in self.dice if d.dropped)

    def to_dict(self) -> dict:
        return {
            "notation": str(self.term),
            "count": self.term.count,
            "sides": self.term.sides,
            "draws": list(self.draws),
            "kept": list(self.kept),
            "dropped": list(self.dropped),
            "total": self.total,
        }


@dataclass(frozen=True)
class EvaluationResult:
    """Final total plus one RollOutcome per dice term, left to right."""
    total: int
    outcomes: tuple = ()


# ─── Evaluator ──────────────────────────────────────────────────────

def _checked(value: int) -> int:
    if not INT_MIN <= value <= INT_MAX:
        raise Overflow(value)
    return value


def _divide(left: int, right: int) -> int:
    if right == 0:
        raise DivideByZero()
    quotient = abs(left) // abs(right)
    if (left < 0) != (right < 0):
        quotient = -quotient
    return quotient


class _Evaluation:
    """State for a single evaluate() call."""

    def __init__(self, rng: RandomSource, explosion_limit: int):
        self.rng = rng
        self.explosion_limit = explosion_limit
        self.outcomes = []

    def run(self, expr: Expression) -> int:
        if isinstance(expr, NumberLiteral):
            return _checked(expr.value)
        if isinstance(expr, DiceTerm):
            outcome = self.roll_term(expr)
            self.outcomes.append(outcome)
            return outcome.total
        if isinstance(expr, Negate):
            return _checked(-self.run(expr.operand))
        if isinstance(expr, BinaryOp):
            left = self.run(expr.left)
            right = self.run(expr.right)
            if expr.op == "+":
                return _checked(left + right)
            if expr.op == "-":
                return _checked(left - right)
            if expr.op == "*":
                return _checked(left * right)
            if expr.op == "/":
                return _checked(_divide(left, right))
            raise ValueError(f"Unknown operator: {expr.op!r}")
        raise TypeError(f"Not an expression node: {expr!r}")

    def roll_term(self, term: DiceTerm) -> RollOutcome:
        draws = []

        def draw() -> int:
            value = self.rng.randint(1, term.sides)
            draws.append(value)
            return value

        dice = [DieRoll(draw()) for _ in range(term.count)]

        reroll = term.modifier(Reroll)
        if reroll is not None:
            dice = [
                DieRoll(draw(), rerolled_from=die.value) if die.value <= reroll.threshold else die
                for die in dice
            ]

        explode = term.modifier(Explode)
        if explode is not None:
            dice = self._explode(dice, explode, term.sides, draw)

        keep = term.modifier(KeepHighest) or term.modifier(KeepLowest)
        if keep is not None:
            dice = _keep(dice, keep)

        total = _checked(sum(d.value for d in dice if not d.dropped))
        return RollOutcome(term=term, draws=tuple(draws), dice=tuple(dice), total=total)

    def _explode(self, dice: list, explode: Explode, sides: int, draw) -> list:
        threshold = sides if explode.threshold is None else explode.threshold
        pool = []
        extra_draws = 0
        for die in dice:
            while die.value >= threshold:
                extra_draws += 1
                if extra_draws > self.explosion_limit:
                    raise ExplosionLimitExceeded(self.explosion_limit)
                pool.append(replace(die, exploded=True))
                die = DieRoll(draw(), bonus=True)
            pool.append(die)
        return pool


def _keep(dice: list, keep) -> list:
    # Stable on position, so equal faces keep the earlier die.
    highest_first = isinstance(keep, KeepHighest)
    order = sorted(
        range(len(dice)),
        key=lambda i: (-dice[i].value if highest_first else dice[i].value, i),
    )
    retained = set(order[:keep.count])
    return [die if i in retained else replace(die, dropped=True) for i, die in enumerate(dice)]


def evaluate(
    expr: Expression,
    rng: RandomSource,
    explosion_limit: int = EXPLOSION_LIMIT,
) -> EvaluationResult:
    """Roll every die in ``expr`` and compute the total.

    Parameters
    ----------
    expr : Expression
        A tree produced by notation.parse().
    rng : RandomSource
        Where the dice come from.
    explosion_limit : int
        Maximum extra draws exploding dice may make per term.

    Returns
    -------
    EvaluationResult
        The total and one RollOutcome per dice term, in left-to-right
        order.

    Raises
    ------
    DivideByZero, Overflow, ExplosionLimitExceeded
        The evaluation is abandoned; no partial result is returned.
    """
    evaluation = _Evaluation(rng, explosion_limit)
    total = evaluation.run(expr)
    return EvaluationResult(total=total, outcomes=tuple(evaluation.outcomes))
