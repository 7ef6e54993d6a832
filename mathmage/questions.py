"""Arithmetic question generation for the combat engine.

A question is drawn from the current stage rule, checked against the recent
history window and re-drawn when it repeats something the player has just
seen. The search is bounded: after ``MAX_ATTEMPTS`` candidates the last one is
accepted anyway and flagged with ``retry_exhausted``.

Each question comes with four distractors sampled near the correct answer and
a shuffled list of the five options shown on the answer buttons.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass

from .game_core import GenerationExhausted, Operator, SeededRng, UnknownPosition, units_digit
from .history import HistoryWindow
from .stage_rules import StageRule

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 50
OPTION_COUNT = 5
DISTRACTOR_SPREAD = 5
MAX_DISTRACTOR_DRAWS = 200

BASE_POINTS = 10
SPEED_BONUS_WINDOW_S = 10.0


@dataclass(frozen=True, slots=True)
class Question:
    stage_number: int
    operator: Operator
    operands: tuple[int, ...]
    unknown_position: UnknownPosition
    correct_answer: int
    distractors: frozenset[int]
    options: tuple[int, ...]
    display_text: str
    signature: str
    answer_range_max: int
    retry_exhausted: bool = False

    @property
    def result(self) -> int:
        total = self.operands[0]
        for v in self.operands[1:]:
            total = total + v if self.operator is Operator.ADD else total - v
        return total

    def is_correct(self, value: int) -> bool:
        return int(value) == self.correct_answer


@dataclass(frozen=True, slots=True)
class Candidate:
    operator: Operator
    operands: tuple[int, ...]
    unknown_position: UnknownPosition
    correct_answer: int

    @property
    def signature(self) -> str:
        parts = [self.operator.value, self.unknown_position.value, *(str(v) for v in self.operands)]
        return "|".join(parts)

    @property
    def doubles(self) -> str | None:
        if self.unknown_position is not UnknownPosition.NONE:
            return None
        if len(set(self.operands)) == 1:
            return f"double-{self.operator.value}"
        return None


def score_for_response(response_time_s: float) -> int:
    """Points for a correct answer: 10 plus one per second under ten."""

    bonus = math.floor(SPEED_BONUS_WINDOW_S - max(0.0, float(response_time_s)))
    return BASE_POINTS + max(0, bonus)


def format_question(operator: Operator, operands: tuple[int, ...], unknown: UnknownPosition) -> str:
    shown = [str(v) for v in operands]
    if unknown is UnknownPosition.FIRST:
        shown[0] = "?"
    elif unknown is UnknownPosition.SECOND:
        shown[1] = "?"
    lhs = f" {operator.symbol} ".join(shown)
    if unknown is UnknownPosition.NONE:
        return f"{lhs} = ?"
    result = operands[0] + operands[1] if operator is Operator.ADD else operands[0] - operands[1]
    return f"{lhs} = {result}"


class QuestionGenerator:
    """Produces stage questions that avoid recently seen problems.

    Deterministic: the stream depends only on the ``SeededRng`` passed in and
    the order of calls.
    """

    def __init__(self, rng: SeededRng, *, max_attempts: int = MAX_ATTEMPTS) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self._rng = rng
        self._max_attempts = int(max_attempts)

    def generate(self, rule: StageRule, history: HistoryWindow) -> Question:
        """Draw a fresh question for ``rule`` and record it in ``history``."""

        exhausted = False
        try:
            candidate = self.try_generate(rule, history, self._max_attempts)
        except GenerationExhausted as exc:
            logger.debug("stage %d: %s; accepting last candidate", rule.stage_number, exc)
            candidate = exc.candidate
            assert isinstance(candidate, Candidate)
            exhausted = True

        history.record(
            signature=candidate.signature,
            operands=candidate.operands,
            answer=candidate.correct_answer,
            doubles=candidate.doubles,
        )
        distractors = self.distractors_for(candidate.correct_answer, rule.answer_range_max)
        options = [candidate.correct_answer, *sorted(distractors)]
        self._rng.shuffle(options)

        return Question(
            stage_number=rule.stage_number,
            operator=candidate.operator,
            operands=candidate.operands,
            unknown_position=candidate.unknown_position,
            correct_answer=candidate.correct_answer,
            distractors=frozenset(distractors),
            options=tuple(options),
            display_text=format_question(candidate.operator, candidate.operands, candidate.unknown_position),
            signature=candidate.signature,
            answer_range_max=rule.answer_range_max,
            retry_exhausted=exhausted,
        )

    def try_generate(self, rule: StageRule, history: HistoryWindow, max_attempts: int) -> Candidate:
        """Bounded search for a candidate that repeats nothing recent.

        Raises ``GenerationExhausted`` carrying the last candidate when every
        attempt was rejected. Does not touch ``history``.
        """

        candidate: Candidate | None = None
        for attempt in range(max(1, int(max_attempts))):
            candidate = self._draw(rule)
            if not self._repeats(candidate, history):
                if attempt:
                    logger.debug("stage %d: %d candidates rejected", rule.stage_number, attempt)
                return candidate
        assert candidate is not None
        raise GenerationExhausted(max_attempts, candidate)

    def distractors_for(self, correct: int, range_max: int) -> set[int]:
        """Four distinct wrong answers in [0, range_max], near ``correct``."""

        answers = {correct}
        for _ in range(MAX_DISTRACTOR_DRAWS):
            if len(answers) >= OPTION_COUNT:
                break
            value = correct + self._rng.randint(-DISTRACTOR_SPREAD, DISTRACTOR_SPREAD)
            if 0 <= value <= range_max:
                answers.add(value)

        # Fill whatever is left with the nearest unused integers.
        step = 1
        while len(answers) < OPTION_COUNT and step <= range_max + 1:
            for value in (correct - step, correct + step):
                if len(answers) < OPTION_COUNT and 0 <= value <= range_max:
                    answers.add(value)
            step += 1

        answers.discard(correct)
        return answers

    def _repeats(self, candidate: Candidate, history: HistoryWindow) -> bool:
        if history.has_signature(candidate.signature):
            return True
        if history.overlaps_operands(candidate.operands):
            return True
        if history.last_answer is not None and candidate.correct_answer == history.last_answer:
            return True
        doubles = candidate.doubles
        return doubles is not None and doubles == history.last_doubles

    def _draw(self, rule: StageRule) -> Candidate:
        if rule.operand_count == 3:
            return self._draw_triple(rule)
        unknown = rule.unknown_position
        if unknown is UnknownPosition.EITHER:
            unknown = UnknownPosition.FIRST if self._rng.randint(0, 1) == 0 else UnknownPosition.SECOND
        if unknown is UnknownPosition.NONE:
            if rule.operator is Operator.ADD:
                return self._draw_addition(rule)
            return self._draw_subtraction(rule)
        return self._draw_missing(rule, unknown)

    def _draw_addition(self, rule: StageRule) -> Candidate:
        a = self._rng.randint(0, rule.max_total)
        b = self._rng.randint(0, rule.max_total - a)
        return Candidate(Operator.ADD, (a, b), UnknownPosition.NONE, a + b)

    def _draw_subtraction(self, rule: StageRule) -> Candidate:
        a = self._rng.randint(0, rule.max_total)
        b_max = units_digit(a) if rule.no_carry else a
        b = self._rng.randint(0, b_max)
        return Candidate(Operator.SUB, (a, b), UnknownPosition.NONE, a - b)

    def _draw_missing(self, rule: StageRule, unknown: UnknownPosition) -> Candidate:
        # Result first, then operands consistent with it.
        result = self._rng.randint(0, rule.max_total)
        if rule.operator is Operator.ADD:
            a = self._rng.randint(0, result)
            b = result - a
        else:
            a = self._rng.randint(result, rule.max_total)
            b = a - result
        missing = a if unknown is UnknownPosition.FIRST else b
        return Candidate(rule.operator, (a, b), unknown, missing)

    def _draw_triple(self, rule: StageRule) -> Candidate:
        total = self._rng.randint(0, rule.max_total)
        a = self._rng.randint(0, total)
        b = self._rng.randint(0, total - a)
        c = total - a - b
        return Candidate(Operator.ADD, (a, b, c), UnknownPosition.NONE, total)
