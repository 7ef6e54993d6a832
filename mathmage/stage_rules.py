from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass

from .game_core import InvalidStage, Operator, UnknownPosition

logger = logging.getLogger(__name__)

MIN_GRADE = 0
MAX_GRADE = 13


@dataclass(frozen=True, slots=True)
class StageRule:
    """Question shape for one stage.

    ``max_total`` bounds the result for additions and the minuend for
    subtractions. ``no_carry`` limits the subtrahend to the minuend's units
    digit so the subtraction never borrows.
    """

    stage_number: int
    name: str
    operator: Operator
    operand_count: int = 2
    unknown_position: UnknownPosition = UnknownPosition.NONE
    max_total: int = 10
    no_carry: bool = False

    def __post_init__(self) -> None:
        if self.stage_number < 1:
            raise ValueError("stage_number must be >= 1")
        if self.operand_count not in (2, 3):
            raise ValueError("operand_count must be 2 or 3")
        if self.operand_count == 3:
            if self.operator is not Operator.ADD:
                raise ValueError("three-operand stages support addition only")
            if self.unknown_position is not UnknownPosition.NONE:
                raise ValueError("three-operand stages cannot hide an operand")
        # Four distinct distractors must fit inside [0, max_total].
        if self.max_total < 4:
            raise ValueError("max_total must be >= 4")
        if self.no_carry and self.operator is not Operator.SUB:
            raise ValueError("no_carry applies to subtraction only")
        if self.no_carry and self.unknown_position is not UnknownPosition.NONE:
            raise ValueError("no_carry stages cannot hide an operand")

    @property
    def answer_range_max(self) -> int:
        return self.max_total


DEFAULT_STAGE_RULES: tuple[StageRule, ...] = (
    StageRule(1, "Enchanted Forest", Operator.ADD, max_total=10),
    StageRule(2, "Stone Mountains", Operator.SUB, max_total=10),
    StageRule(3, "Volcanic Crater", Operator.ADD, max_total=20),
    StageRule(4, "Frozen Wastes", Operator.SUB, max_total=20, no_carry=True),
    StageRule(5, "Shadow Realm", Operator.ADD, unknown_position=UnknownPosition.EITHER, max_total=10),
    StageRule(6, "Crystal Caves", Operator.SUB, unknown_position=UnknownPosition.EITHER, max_total=10),
    StageRule(7, "Stormy Peaks", Operator.ADD, operand_count=3, max_total=10),
    StageRule(8, "Molten Core", Operator.ADD, operand_count=3, max_total=20),
)


class StageRuleTable:
    """Ordered, immutable stage -> rule mapping.

    Stage numbers past the end of the table keep using the last rule.
    """

    def __init__(self, rules: Iterable[StageRule], *, table_id: str = "custom") -> None:
        ordered = tuple(sorted(rules, key=lambda r: r.stage_number))
        if not ordered:
            raise ValueError("a stage table needs at least one rule")
        expected = list(range(1, len(ordered) + 1))
        if [r.stage_number for r in ordered] != expected:
            raise ValueError("stage numbers must run 1..N without gaps")
        self._rules = ordered
        self._table_id = table_id

    @property
    def table_id(self) -> str:
        return self._table_id

    @property
    def stage_count(self) -> int:
        return len(self._rules)

    def rules(self) -> tuple[StageRule, ...]:
        return self._rules

    def strict_rule_for(self, stage: int) -> StageRule:
        if stage < 1:
            raise ValueError("stage must be >= 1")
        if stage > len(self._rules):
            raise InvalidStage(stage, len(self._rules))
        return self._rules[stage - 1]

    def rule_for(self, stage: int) -> StageRule:
        try:
            return self.strict_rule_for(stage)
        except InvalidStage as exc:
            logger.debug("%s; using stage %d rule", exc, exc.stage_count)
            return self._rules[-1]

    def stage_name(self, stage: int) -> str:
        return self.rule_for(stage).name


def default_stage_table() -> StageRuleTable:
    return StageRuleTable(DEFAULT_STAGE_RULES, table_id="default")


class GradeCatalog:
    """Maps school grades to stage tables.

    Every grade starts on the default table; a custom table can be installed
    for selected grades. Unknown grades fall back to the default.
    """

    def __init__(self, default: StageRuleTable | None = None) -> None:
        self._default = default or default_stage_table()
        self._tables: dict[int, StageRuleTable] = {
            grade: self._default for grade in range(MIN_GRADE, MAX_GRADE + 1)
        }

    @property
    def default(self) -> StageRuleTable:
        return self._default

    def table_for(self, grade: int | None) -> StageRuleTable:
        if grade is None:
            return self._default
        return self._tables.get(int(grade), self._default)

    def install(self, grades: int | Sequence[int], table: StageRuleTable) -> None:
        targets = [grades] if isinstance(grades, int) else list(grades)
        for grade in targets:
            self._tables[int(grade)] = table
