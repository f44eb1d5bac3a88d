"""Loss classes: how much fidelity a conversion step gave up (L0 best, L3 worst)."""

from __future__ import annotations

from enum import StrEnum

from capsulekit.core.logging import get_logger

_logger = get_logger(__name__)


class LossClass(StrEnum):
    L0 = "L0"
    L1 = "L1"
    L2 = "L2"
    L3 = "L3"

    @property
    def rank(self) -> int:
        return int(self.value[1])

    @classmethod
    def parse(cls, value: str | LossClass | None) -> LossClass:
        """Empty or missing means L0. Unrecognized classes count as the worst."""
        if isinstance(value, LossClass):
            return value
        norm = (value or "").strip().upper()
        if not norm:
            return cls.L0
        try:
            return cls(norm)
        except ValueError:
            _logger.warning(f"unknown loss class {value!r}; treating as L3")
            return cls.L3


def combine_loss(*classes: str | LossClass | None) -> LossClass:
    """Worst of the given classes; never lower than any input."""
    result = LossClass.L0
    for value in classes:
        parsed = LossClass.parse(value)
        if parsed.rank > result.rank:
            result = parsed
    return result
