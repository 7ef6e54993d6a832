from __future__ import annotations

import random
from collections.abc import MutableSequence
from enum import StrEnum
from typing import TypeVar

T = TypeVar("T")


class Operator(StrEnum):
    ADD = "add"
    SUB = "sub"

    @property
    def symbol(self) -> str:
        return "+" if self is Operator.ADD else "-"


class UnknownPosition(StrEnum):
    """Which operand a question hides.

    ``EITHER`` is only valid on a stage rule; every generated question resolves
    it to ``FIRST`` or ``SECOND``.
    """

    NONE = "none"
    FIRST = "first"
    SECOND = "second"
    EITHER = "either"


class CombatMode(StrEnum):
    MONSTER = "monster"
    BOSS = "boss"


class CombatPhase(StrEnum):
    MONSTER = "monster"
    BOSS_INTRO = "boss_intro"
    BOSS_FIGHT = "boss_fight"
    BOSS_DEFEAT_SEQUENCE = "boss_defeat_sequence"
    GAME_OVER = "game_over"


class AnswerOutcome(StrEnum):
    CORRECT = "correct"
    WRONG = "wrong"
    IGNORED = "ignored"


class MathmageError(Exception):
    """Base class for game-engine errors."""


class GenerationExhausted(MathmageError):
    """The bounded candidate search ran out of attempts.

    Carries the last candidate so the caller can accept it instead of looping.
    """

    def __init__(self, attempts: int, candidate: object) -> None:
        super().__init__(f"no fresh question after {attempts} attempts")
        self.attempts = attempts
        self.candidate = candidate


class InvalidStage(MathmageError):
    def __init__(self, stage: int, stage_count: int) -> None:
        super().__init__(f"stage {stage} is beyond the {stage_count}-stage rule table")
        self.stage = stage
        self.stage_count = stage_count


class InputAfterTerminal(MathmageError):
    """An answer arrived while the game was over or a hit was resolving."""


class SeededRng:
    """Simple seeded RNG wrapper to keep deterministic streams explicit."""

    def __init__(self, seed: int) -> None:
        self._rng = random.Random(int(seed))

    def randint(self, a: int, b: int) -> int:
        """Uniform integer in the inclusive range [a, b]."""

        if b < a:
            raise ValueError(f"empty range [{a}, {b}]")
        return self._rng.randint(a, b)

    def random(self) -> float:
        return self._rng.random()

    def uniform(self, a: float, b: float) -> float:
        return self._rng.uniform(a, b)

    def shuffle(self, items: MutableSequence[T]) -> None:
        self._rng.shuffle(items)


def clamp01(x: float) -> float:
    return 0.0 if x <= 0.0 else 1.0 if x >= 1.0 else float(x)


def units_digit(value: int) -> int:
    return abs(int(value)) % 10
