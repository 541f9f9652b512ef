"""Strike verification loop.

Attempt 1 is verified as-is. If it misses the tier's target:
  - attempt 2 regenerates with attempt 1's hints and retries only what failed
  - attempt 3+ switches to the strongest model with the full hint history
    and re-runs everything
The loop never exceeds the tier's attempt limit and stops early when the
task's cost ceiling is hit. The best score seen is what gets reported.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

from pilot.common.cost import CostLedger
from pilot.common.errors import VerificationShortfall
from pilot.common.protocol import ActionResult, GenerationStrategy
from pilot.verifier.checks import VerificationResult
from pilot.verifier.quality import QualityTier
from stores.learnings import LearningStore

logger = logging.getLogger(__name__)


@dataclass
class AttemptState:
    """What one attempt produced: its action results and reply text."""

    results: list[ActionResult] = field(default_factory=list)
    text: str = ""


@dataclass
class Reattempt:
    attempt: int
    strategy: GenerationStrategy
    hints: list[str]
    history: list[str]
    failed_only: bool


@dataclass
class StrikeRecord:
    attempt: int
    score: int
    method: str
    hints: list[str] = field(default_factory=list)
    cost: float = 0.0


@dataclass
class StrikeContext:
    target: int
    max_attempts: int
    best_score: int = 0
    best_attempt: int = 0
    attempts: int = 0
    cumulative_cost: float = 0.0
    records: list[StrikeRecord] = field(default_factory=list)

    def record(self, record: StrikeRecord) -> bool:
        """Add an attempt; returns True if it is the new best."""
        self.records.append(record)
        self.attempts = record.attempt
        self.cumulative_cost += record.cost
        if record.score > self.best_score or self.best_attempt == 0:
            self.best_score = max(self.best_score, record.score)
            self.best_attempt = record.attempt
            return True
        return False

    @property
    def all_hints(self) -> list[str]:
        seen: list[str] = []
        for r in self.records:
            for h in r.hints:
                if h not in seen:
                    seen.append(h)
        return seen


@dataclass
class StrikeOutcome:
    passed: bool
    best_score: int
    strikes_used: int
    needs_review: bool
    best: AttemptState
    context: StrikeContext
    aborted_for_cost: bool = False

    def shortfall(self, task_id: Optional[str] = None) -> Optional[VerificationShortfall]:
        if self.passed:
            return None
        return VerificationShortfall(
            f"Best score {self.best_score} after {self.strikes_used} attempts, target {self.context.target}",
            best_score=self.best_score, task_id=task_id,
        )


Verify = Callable[[AttemptState, int], Awaitable[VerificationResult]]
Rerun = Callable[[Reattempt], Awaitable[AttemptState]]


class StrikeLoop:
    def __init__(self, learnings: Optional[LearningStore] = None):
        self.learnings = learnings

    async def run(
        self,
        first: AttemptState,
        *,
        tier: QualityTier,
        ledger: CostLedger,
        verify: Verify,
        rerun: Rerun,
        domain: str = "",
        task_type: str = "",
    ) -> StrikeOutcome:
        ctx = StrikeContext(target=tier.target, max_attempts=tier.max_attempts)
        state, best = first, first
        passed = False
        aborted = False
        attempt = 1

        while True:
            spent_before = ledger.spent
            verification = await verify(state, attempt)
            ledger.add(verification.cost, f"verify:{attempt}")
            record = StrikeRecord(attempt, verification.score, verification.method,
                                  list(verification.hints), ledger.spent - spent_before)
            if ctx.record(record):
                best = state
            logger.info(
                f"Strike {attempt}/{tier.max_attempts} ({tier.name}): score={verification.score} "
                f"best={ctx.best_score} target={tier.target} via {verification.method}"
            )

            if verification.score >= tier.target:
                passed = True
                break
            if attempt >= tier.max_attempts:
                break
            if ledger.exceeded:
                logger.warning(f"Strike loop stopping at attempt {attempt}: cost ceiling reached")
                aborted = True
                break

            attempt += 1
            if attempt == 2:
                plan = Reattempt(attempt, GenerationStrategy.STANDARD, list(verification.hints), [], True)
            else:
                history = [
                    f"attempt {r.attempt}: score {r.score} via {r.method}; " + "; ".join(r.hints)
                    for r in ctx.records
                ]
                plan = Reattempt(attempt, GenerationStrategy.STRONGEST, ctx.all_hints, history, False)
            state = await rerun(plan)

        if passed and ctx.attempts > 1:
            self._persist_hints(ctx, domain, task_type)

        return StrikeOutcome(
            passed=passed,
            best_score=ctx.best_score,
            strikes_used=ctx.attempts,
            needs_review=not passed,
            best=best,
            context=ctx,
            aborted_for_cost=aborted,
        )

    def _persist_hints(self, ctx: StrikeContext, domain: str, task_type: str) -> None:
        """Hints given before the passing attempt helped; remember them."""
        if self.learnings is None or not task_type:
            return
        hints = [h for r in ctx.records[:-1] for h in r.hints]
        try:
            self.learnings.record_hints(domain or "*", task_type, list(dict.fromkeys(hints)), helped=True)
        except Exception as e:
            logger.warning(f"Could not persist correction hints (non-fatal): {e}")
