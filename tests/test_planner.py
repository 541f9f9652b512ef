"""Tests for planning and response generation."""

import asyncio
import sqlite3
from datetime import datetime, timedelta, timezone

from conftest import FakeLLM
from pilot.common.config import PipelineConfig
from pilot.common.cost import CostLedger
from pilot.common.protocol import (
    Action,
    ActionKind,
    Classification,
    ExecutionMethod,
    GenerationStrategy,
    PlanSource,
    StructuredIntent,
    Task,
)
from pilot.executor.skills import Skill, SkillRegistry
from pilot.planner.generator import ResponseGenerator
from pilot.planner.planner import Planner
from pilot.ranking.model_router import ModelRouter
from stores.learnings import LearningStore
from stores.rankings import ModelPerformanceStore

SEQUENCE = [Action(ActionKind.NAVIGATE, {"url": "https://shop.com"}), Action(ActionKind.EXTRACT)]


async def _noop(params):
    return {"ok": True}


def _calendar_skill(**kw):
    return Skill(id="gcal.create", provider="google", task_types=frozenset({"calendar"}),
                 handler=_noop, **kw)


def _age_learnings(db_path, days):
    old = (datetime.now(timezone.utc) - timedelta(days=days)).isoformat()
    conn = sqlite3.connect(db_path)
    conn.execute("UPDATE learnings SET verified_at = ?", (old,))
    conn.commit()
    conn.close()


class TestPlanner:
    def test_skill_with_credentials(self, db_path, monkeypatch):
        monkeypatch.setenv("TEST_GCAL_TOKEN", "secret")
        skills = SkillRegistry()
        skills.register(_calendar_skill(credential_env="TEST_GCAL_TOKEN"))
        plan = Planner(PipelineConfig(db_path=db_path), skills=skills).plan(
            "t1", Classification("calendar", "add dentist friday"),
        )
        assert plan.source is PlanSource.SKILL
        assert plan.method is ExecutionMethod.API
        assert plan.steps[0].action.params["skill_id"] == "gcal.create"
        assert plan.missing_auth == []

    def test_missing_credentials_reported_not_blocking(self, db_path, monkeypatch):
        monkeypatch.delenv("TEST_GCAL_TOKEN", raising=False)
        skills = SkillRegistry()
        skills.register(_calendar_skill(credential_env="TEST_GCAL_TOKEN"))
        plan = Planner(PipelineConfig(db_path=db_path), skills=skills).plan(
            "t1", Classification("calendar", "add dentist friday", needs_browser=True),
        )
        assert plan.source is PlanSource.GENERATED
        assert [g.provider for g in plan.missing_auth] == ["google"]

    def test_fresh_learning_is_reused(self, db_path):
        store = LearningStore(db_path)
        store.record_sequence("shop.com", "shopping", SEQUENCE, True)
        plan = Planner(PipelineConfig(db_path=db_path), learnings=store).plan(
            "t1", Classification("shopping", "buy socks", True, ["shop.com"]),
        )
        assert plan.source is PlanSource.CACHED
        assert [s.action.kind for s in plan.steps] == [ActionKind.NAVIGATE, ActionKind.EXTRACT]

    def test_stale_learning_is_ignored(self, db_path):
        store = LearningStore(db_path)
        store.record_sequence("shop.com", "shopping", SEQUENCE, True)
        _age_learnings(db_path, 20)
        plan = Planner(PipelineConfig(db_path=db_path), learnings=store).plan(
            "t1", Classification("shopping", "buy socks", True, ["shop.com"]),
        )
        assert plan.source is PlanSource.GENERATED

    def test_unreliable_learning_is_ignored(self, db_path):
        store = LearningStore(db_path)
        store.record_sequence("shop.com", "shopping", SEQUENCE, True)
        store.record_sequence("shop.com", "shopping", SEQUENCE, False)
        plan = Planner(PipelineConfig(db_path=db_path), learnings=store).plan(
            "t1", Classification("shopping", "buy socks", True, ["shop.com"]),
        )
        assert plan.source is PlanSource.GENERATED

    def test_no_browser_means_direct(self, db_path):
        plan = Planner(PipelineConfig(db_path=db_path)).plan("t1", Classification("writing", "a poem"))
        assert plan.source is PlanSource.DIRECT
        assert plan.method is ExecutionMethod.API

    def test_planning_failure_falls_back_to_direct(self, db_path):
        class BrokenLearnings:
            def get(self, service, task_type):
                raise sqlite3.OperationalError("database is locked")

        plan = Planner(PipelineConfig(db_path=db_path), learnings=BrokenLearnings()).plan(
            "t1", Classification("shopping", "buy socks", True, ["shop.com"]),
        )
        assert plan.source is PlanSource.DIRECT
        assert plan.method is ExecutionMethod.BROWSER


class FlakyLLM(FakeLLM):
    """Fails for one named model."""

    def __init__(self, broken_model, **kw):
        super().__init__(**kw)
        self.broken_model = broken_model

    async def generate_json(self, *, prompt, system="", temperature=0.3, model=None, max_tokens=4096):
        if model == self.broken_model:
            self.calls.append({"kind": "json", "prompt": prompt, "model": model})
            return {"error": True, "message": "rate limited", "content": "", "cost": 0.0, "latency_ms": 1}
        return await super().generate_json(prompt=prompt, system=system, model=model)


def _task():
    return Task(owner_id="u1", origin="me@example.com", body="buy socks on shop.com", task_type="shopping",
                intent=StructuredIntent("shopping", "Buy socks"))


class TestResponseGenerator:
    def test_actions_parsed_and_rejections_kept(self):
        llm = FakeLLM(generations=[{
            "response": "Socks are in your cart.",
            "actions": [{"kind": "navigate", "params": {"url": "https://shop.com"}}, {"kind": "teleport"}],
        }])
        router = ModelRouter(llm, {"standard": ["m-std"], "strongest": ["m-big"]})
        generated = asyncio.run(ResponseGenerator(router).generate(
            _task(), allowed=frozenset({ActionKind.NAVIGATE}), domains=["shop.com"],
            strategy=GenerationStrategy.STRONGEST, hints=["wait for the cart badge"],
            facts=["shoe size 42"], history=["attempt 1: score 60"],
        ))
        assert generated.text == "Socks are in your cart."
        assert [a.kind for a in generated.actions] == [ActionKind.NAVIGATE]
        assert len(generated.rejected) == 1
        assert generated.model == "m-big"

        prompt = llm.calls[0]["prompt"]
        assert "wait for the cart badge" in prompt
        assert "shoe size 42" in prompt
        assert "attempt 1: score 60" in prompt
        assert "You may ONLY use these action kinds: navigate" in prompt

    def test_generation_error(self):
        router = ModelRouter(FlakyLLM("m1"), {"standard": ["m1"]})
        generated = asyncio.run(ResponseGenerator(router).generate(
            _task(), allowed=frozenset(ActionKind), domains=[],
        ))
        assert generated.error
        assert generated.actions == []


class TestModelRouter:
    def test_falls_through_chain_and_records(self, db_path):
        llm = FlakyLLM("m1", generations=[{"response": "ok", "actions": []}])
        performance = ModelPerformanceStore(db_path)
        router = ModelRouter(llm, {"standard": ["m1", "m2"]}, performance)
        ledger = CostLedger(2.0)

        result = asyncio.run(router.generate_json(
            prompt="You are carrying out a task", system="", strategy=GenerationStrategy.STANDARD,
            owner_id="u1", task_type="shopping", ledger=ledger,
        ))
        assert result["model"] == "m2"
        assert [c["model"] for c in llm.calls] == ["m1", "m2"]
        assert ledger.spent > 0

        stats = performance.stats("u1", "shopping")
        assert stats["m1"].failures == 1
        assert stats["m2"].successes == 1

    def test_economy_chain_falls_back_to_standard(self):
        router = ModelRouter(FakeLLM(), {"standard": ["m1"]})
        assert router.chain_for(GenerationStrategy.ECONOMY) == ["m1"]
