from __future__ import annotations

from collections import deque
from collections.abc import Iterable

SIGNATURE_CAPACITY = 3
OPERAND_GROUPS_KEPT = 3


class HistoryWindow:
    """Sliding memory of the last few accepted questions.

    Signatures are kept FIFO with capacity 3. Operands are kept as whole
    groups, one per question; the operand capacity is three questions' worth
    of the incoming group size (6 for two-operand questions, 9 for three), and
    eviction always drops the oldest whole group.
    """

    def __init__(self) -> None:
        self._signatures: deque[str] = deque(maxlen=SIGNATURE_CAPACITY)
        self._operand_groups: deque[tuple[int, ...]] = deque()
        self.last_answer: int | None = None
        self.last_doubles: str | None = None

    @property
    def recent_signatures(self) -> tuple[str, ...]:
        return tuple(self._signatures)

    @property
    def recent_operand_groups(self) -> tuple[tuple[int, ...], ...]:
        return tuple(self._operand_groups)

    @property
    def recent_operands(self) -> tuple[int, ...]:
        return tuple(v for group in self._operand_groups for v in group)

    def has_signature(self, signature: str) -> bool:
        return signature in self._signatures

    def overlaps_operands(self, operands: Iterable[int]) -> bool:
        recent = set(self.recent_operands)
        return any(v in recent for v in operands)

    def record(
        self,
        *,
        signature: str,
        operands: Iterable[int],
        answer: int,
        doubles: str | None = None,
    ) -> None:
        group = tuple(int(v) for v in operands)
        self._signatures.append(signature)
        self._operand_groups.append(group)
        capacity = OPERAND_GROUPS_KEPT * len(group)
        while sum(len(g) for g in self._operand_groups) > capacity:
            self._operand_groups.popleft()
        self.last_answer = int(answer)
        self.last_doubles = doubles

    def clear(self) -> None:
        self._signatures.clear()
        self._operand_groups.clear()
        self.last_answer = None
        self.last_doubles = None
