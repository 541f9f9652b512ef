"""Per-task cost ledger and per-owner budget checks."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Protocol

from pilot.common.errors import BudgetExceeded

logger = logging.getLogger(__name__)


class CostLedger:
    """Accumulates spend for a single task against one ceiling.

    The execution engine and the strike loop share the same ledger, so the
    ceiling covers execution, re-generation and verification together.
    """

    def __init__(self, ceiling: float, spent: float = 0.0):
        self.ceiling = ceiling
        self.spent = spent
        self.entries: list[tuple[str, float]] = []

    def add(self, amount: float, label: str = "") -> None:
        if amount <= 0:
            return
        self.spent += amount
        self.entries.append((label, amount))

    @property
    def exceeded(self) -> bool:
        return self.spent > self.ceiling

    @property
    def remaining(self) -> float:
        return max(0.0, self.ceiling - self.spent)

    def check(self, task_id: str | None = None) -> None:
        """Raise BudgetExceeded once the ceiling has been passed."""
        if self.exceeded:
            raise BudgetExceeded(
                f"Task cost ${self.spent:.4f} exceeded ceiling ${self.ceiling:.2f}",
                spent=self.spent, ceiling=self.ceiling, task_id=task_id,
            )


# ─── Owner budgets ────────────────────────────────────────────────────────────

@dataclass
class BudgetStatus:
    remaining: float
    over_budget: bool


class BudgetChecker(Protocol):
    async def check_budget(self, owner_id: str) -> BudgetStatus: ...


@dataclass
class StaticBudgetChecker:
    """Budget checker backed by an in-memory allowance and spend map."""

    allowance: float = 10.0
    spent: dict[str, float] = field(default_factory=dict)

    async def check_budget(self, owner_id: str) -> BudgetStatus:
        remaining = self.allowance - self.spent.get(owner_id, 0.0)
        return BudgetStatus(remaining=max(0.0, remaining), over_budget=remaining <= 0)

    def charge(self, owner_id: str, amount: float) -> None:
        self.spent[owner_id] = self.spent.get(owner_id, 0.0) + amount
