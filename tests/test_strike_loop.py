"""Tests for quality tiers and the strike verification loop."""

import asyncio

import pytest

from pilot.common.cost import CostLedger
from pilot.common.protocol import GenerationStrategy
from pilot.verifier.checks import VerificationResult
from pilot.verifier.quality import QualityTier, tier_for
from pilot.verifier.strike_loop import AttemptState, StrikeContext, StrikeLoop, StrikeRecord
from stores.learnings import LearningStore


class Scripted:
    """Verifier and re-runner driven by a list of scores."""

    def __init__(self, scores, hints=None, cost=0.0):
        self.scores = list(scores)
        self.hints = hints or {}
        self.cost = cost
        self.verified = []
        self.plans = []

    async def verify(self, state, attempt):
        self.verified.append((state.text, attempt))
        score = self.scores[attempt - 1]
        return VerificationResult(score, "llm_review", hints=self.hints.get(attempt, []), cost=self.cost)

    async def rerun(self, plan):
        self.plans.append(plan)
        return AttemptState(text=f"attempt {plan.attempt}")


def _run(script, tier, ledger=None, loop=None, **kwargs):
    loop = loop or StrikeLoop()
    return asyncio.run(loop.run(
        AttemptState(text="attempt 1"),
        tier=tier,
        ledger=ledger or CostLedger(2.0),
        verify=script.verify,
        rerun=script.rerun,
        **kwargs,
    ))


class TestQualityTiers:
    def test_task_types_map_to_tiers(self):
        assert tier_for("payment").always_review
        assert tier_for("booking").target == 95
        assert tier_for("email").max_attempts == 2
        assert tier_for("research").target == 80
        assert tier_for("writing").name == "simple"


class TestStrikeContext:
    def test_best_never_decreases(self):
        ctx = StrikeContext(target=90, max_attempts=3)
        assert ctx.record(StrikeRecord(1, 60, "self_check"))
        assert ctx.record(StrikeRecord(2, 82, "llm_review"))
        assert not ctx.record(StrikeRecord(3, 40, "llm_review"))
        assert ctx.best_score == 82
        assert ctx.best_attempt == 2
        assert ctx.attempts == 3


class TestStrikeLoop:
    def test_exhausted_attempts_need_review(self):
        script = Scripted([60, 75, 82])
        outcome = _run(script, QualityTier("t", 90, 3))
        assert not outcome.passed
        assert outcome.needs_review
        assert outcome.best_score == 82
        assert outcome.strikes_used == 3
        assert outcome.best.text == "attempt 3"
        shortfall = outcome.shortfall("t1")
        assert shortfall.category == "verification_shortfall"
        assert shortfall.best_score == 82

    def test_best_attempt_is_kept(self):
        script = Scripted([70, 85, 50])
        outcome = _run(script, QualityTier("t", 90, 3))
        assert outcome.best_score == 85
        assert outcome.best.text == "attempt 2"

    def test_passing_first_attempt_stops(self):
        script = Scripted([96])
        outcome = _run(script, QualityTier("t", 95, 3))
        assert outcome.passed and not outcome.needs_review
        assert outcome.strikes_used == 1
        assert script.plans == []

    def test_attempt_limit_respected(self):
        script = Scripted([10, 10, 10, 10])
        outcome = _run(script, QualityTier("t", 70, 1))
        assert outcome.strikes_used == 1
        assert script.plans == []

    def test_escalation_between_attempts(self):
        script = Scripted([60, 70, 99], hints={1: ["check the cart"], 2: ["wait for badge"]})
        outcome = _run(script, QualityTier("t", 95, 3))
        assert outcome.passed

        second, third = script.plans
        assert second.attempt == 2
        assert second.strategy is GenerationStrategy.STANDARD
        assert second.failed_only is True
        assert second.hints == ["check the cart"]
        assert second.history == []

        assert third.strategy is GenerationStrategy.STRONGEST
        assert third.failed_only is False
        assert third.hints == ["check the cart", "wait for badge"]
        assert len(third.history) == 2
        assert "score 60" in third.history[0]

    def test_cost_ceiling_aborts(self):
        script = Scripted([10, 10, 10], cost=0.6)
        outcome = _run(script, QualityTier("t", 95, 3), ledger=CostLedger(1.0))
        assert outcome.aborted_for_cost
        assert outcome.strikes_used == 2
        assert outcome.needs_review
        assert outcome.context.cumulative_cost == pytest.approx(1.2)

    def test_hints_persisted_after_late_pass(self, db_path):
        store = LearningStore(db_path)
        loop = StrikeLoop(store)
        for _ in range(2):
            script = Scripted([50, 99], hints={1: ["scroll to the form first"]})
            _run(script, QualityTier("t", 95, 3), loop=loop, domain="shop.com", task_type="shopping")
        assert store.proven_hints("shop.com", "shopping") == ["scroll to the form first"]
