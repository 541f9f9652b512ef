"""End-to-end tests for the task processor with fake LLM, browser and transport."""

import asyncio

import httpx
import pytest

from conftest import FakeLLM, FakeOutbox, FakeSession, FakeTransport, no_sleep, session_factory
from pilot.common.config import PipelineConfig
from pilot.common.cost import StaticBudgetChecker
from pilot.common.errors import USER_FACING_ERROR, InvalidTransition
from pilot.common.protocol import ActionKind, ConfirmationMode, InputChannel, TaskRequest, TaskStatus
from pilot.orchestrator.processor import BUDGET_NOTE, CODE_REQUEST, REVIEW_NOTE, TaskProcessor, merge_results
from pilot.verifier.checks import VerificationResult

SHOPPING_INTENT = {
    "task_type": "shopping",
    "goal": "Buy wool socks on shop.com",
    "entities": {"item": "wool socks"},
    "assumptions": [],
    "unclear_parts": [],
    "confidence": 92,
}

SHOPPING_STEPS = {
    "response": "Wool socks are in your cart.",
    "actions": [
        {"kind": "navigate", "params": {"url": "https://shop.com/socks"}},
        {"kind": "click", "params": {"selector": "#add-to-cart"}},
        {"kind": "screenshot", "params": {}},
        {"kind": "send_email", "params": {"to": "friend@example.com", "subject": "socks", "body": "bought"}},
    ],
}


class ScriptedVerifier:
    """Returns scores in order; the last one repeats."""

    def __init__(self, *scores, hints=()):
        self.scores = list(scores)
        self.hints = list(hints)
        self.calls = 0

    async def verify(self, task_type, goal, evidence, tier):
        self.calls += 1
        score = self.scores.pop(0) if len(self.scores) > 1 else self.scores[0]
        return VerificationResult(score, "llm_review", hints=list(self.hints))


def _offline(request):
    return httpx.Response(503)


class Harness:
    def __init__(self, db_path, llm, *scores, factory=None, budget=None, outbox=None, **config):
        self.llm = llm
        self.transport = FakeTransport()
        self.factory = factory or session_factory(page_text="Added to cart")
        self.outbox = outbox or FakeOutbox()
        self.verifier = ScriptedVerifier(*(scores or (96,)))
        self.http = httpx.AsyncClient(transport=httpx.MockTransport(_offline))
        self.processor = TaskProcessor(
            PipelineConfig(db_path=db_path, **config), llm,
            transport=self.transport, outbox=self.outbox, session_factory=self.factory,
            budget=budget, http=self.http, verifier=self.verifier, sleep=no_sleep,
        )

    def run(self, coro_fn):
        async def go():
            try:
                return await coro_fn(self.processor)
            finally:
                await self.http.aclose()
        return asyncio.run(go())

    def stored(self, task_id):
        return self.processor.tasks.get(task_id)

    @property
    def messages(self):
        return [text for _, _, text in self.transport.sent]


def _request(body="Buy wool socks on shop.com", channel=InputChannel.EMAIL):
    return TaskRequest(owner_id="u1", origin="me@example.com", body=body, channel=channel)


def test_merge_results_prefers_newer():
    from pilot.common.protocol import Action, ActionResult

    a = Action(ActionKind.CLICK, {"selector": "#a"})
    old = [ActionResult(a, 0, True), ActionResult(a, 1, False)]
    new = [ActionResult(a, 1, True), ActionResult(a, 2, True)]
    merged = merge_results(old, new)
    assert [(r.step_index, r.success) for r in merged] == [(0, True), (1, True), (2, True)]


class TestShoppingTask:
    def test_completes_and_rejects_out_of_scope_email(self, db_path):
        h = Harness(db_path, FakeLLM(clarify=SHOPPING_INTENT, generations=[SHOPPING_STEPS]))
        result = h.run(lambda p: p.process_incoming(_request(), ConfirmationMode.NEVER))

        assert result.success
        assert result.status is TaskStatus.COMPLETED
        kinds = [(r.action.kind, r.success) for r in result.actions]
        assert kinds == [
            (ActionKind.NAVIGATE, True),
            (ActionKind.CLICK, True),
            (ActionKind.SCREENSHOT, True),
            (ActionKind.SEND_EMAIL, False),
        ]
        assert result.actions[3].error_category == "security_rejection"
        assert h.outbox.emails == []

        stored = h.stored(result.task_id)
        assert stored.status is TaskStatus.COMPLETED
        assert stored.verification.passed
        assert stored.verification.tier == "browser_action"
        assert stored.cascade_tier is None
        assert stored.checkpoint == 2

        session = h.factory.made[0]
        assert session.state_key == "shop.com"
        assert session.closed
        assert session.saved == 1
        assert h.messages[-1].startswith("Wool socks are in your cart.")

    def test_learning_events_after_completion(self, db_path):
        h = Harness(db_path, FakeLLM(clarify=SHOPPING_INTENT, generations=[SHOPPING_STEPS]))
        h.run(lambda p: p.process_incoming(_request(), ConfirmationMode.NEVER))

        learning = h.processor.learnings.get("shop.com", "shopping")
        assert [a.kind for a in learning.actions] == [ActionKind.NAVIGATE, ActionKind.CLICK, ActionKind.SCREENSHOT]
        assert h.processor.difficulty.predict("shop.com", "shopping").samples == 1

    def test_generation_prompt_excludes_forbidden_kinds(self, db_path):
        llm = FakeLLM(clarify=SHOPPING_INTENT, generations=[SHOPPING_STEPS])
        h = Harness(db_path, llm)
        h.run(lambda p: p.process_incoming(_request(), ConfirmationMode.NEVER))
        prompt = llm.prompts("You are carrying out a task")[0]
        allowed_line = [line for line in prompt.splitlines() if line.startswith("You may ONLY use")][0]
        assert "send_email" not in allowed_line
        assert "payment" not in allowed_line


class TestVerificationAndCascade:
    def test_strikes_escalate_and_end_in_review(self, db_path):
        llm = FakeLLM(clarify=SHOPPING_INTENT, generations=[SHOPPING_STEPS])
        h = Harness(db_path, llm, 60, 70, 80)
        result = h.run(lambda p: p.process_incoming(_request(), ConfirmationMode.NEVER))

        assert result.status is TaskStatus.NEEDS_REVIEW
        assert not result.success
        assert REVIEW_NOTE in result.response
        stored = h.stored(result.task_id)
        assert stored.verification.best_score == 80
        assert stored.verification.strikes_used == 3
        assert stored.verification.needs_review
        assert stored.error.startswith("verification_shortfall: Best score 80")

        generation_models = [c["model"] for c in llm.calls
                             if c["prompt"] and "You are carrying out a task" in c["prompt"]]
        assert len(generation_models) == 3
        assert generation_models[-1] == PipelineConfig().model_chains["strongest"][0]

    def test_low_success_triggers_cascade(self, db_path):
        factory = session_factory(broken={("click", "#add-to-cart"): -1})
        llm = FakeLLM(clarify=SHOPPING_INTENT, generations=[{
            "response": "Trying to add socks.",
            "actions": SHOPPING_STEPS["actions"][:2],
        }])
        h = Harness(db_path, llm, 96, factory=factory)
        result = h.run(lambda p: p.process_incoming(_request(), ConfirmationMode.NEVER))

        stored = h.stored(result.task_id)
        assert stored.cascade_tier == "manual_instructions"
        assert [s.state_key for s in factory.made] == ["shop.com", "shop.com", None]
        assert all(s.closed for s in factory.made)
        assert "Do the thing by hand" in result.response
        assert "Retrying with a fresh browser session did not help." in result.response
        assert [(r.step_index, r.tier) for r in stored.results] == [
            (0, None), (1, None), (1, "cached_session"), (1, "fresh_session"),
        ]

    def test_result_log_keeps_every_attempt(self, db_path):
        navigate, email = SHOPPING_STEPS["actions"][0], SHOPPING_STEPS["actions"][3]
        llm = FakeLLM(clarify=SHOPPING_INTENT, generations=[
            {"response": "Emailing your friend.", "actions": [navigate, email]},
            {"response": "Found the socks.", "actions": [navigate]},
        ])
        h = Harness(db_path, llm, 10, 20, 30)
        result = h.run(lambda p: p.process_incoming(_request(), ConfirmationMode.NEVER))

        stored = h.stored(result.task_id)
        assert [(r.attempt, r.action.kind, r.success) for r in stored.results] == [
            (1, ActionKind.NAVIGATE, True),
            (1, ActionKind.SEND_EMAIL, False),
            (3, ActionKind.NAVIGATE, True),
        ]
        assert stored.results[1].error_category == "security_rejection"
        # the reply reports the best attempt only
        assert [r.action.kind for r in result.actions] == [ActionKind.NAVIGATE]

    def test_hard_site_gets_more_strikes_and_skips_session_retries(self, db_path):
        factory = session_factory(broken={("click", "#add-to-cart"): -1})
        llm = FakeLLM(clarify=SHOPPING_INTENT, generations=[{
            "response": "Trying to add socks.",
            "actions": SHOPPING_STEPS["actions"][:2],
        }])
        h = Harness(db_path, llm, 10, factory=factory)
        for _ in range(3):
            h.processor.difficulty.record("shop.com", "shopping", False, 5000, 0.1, 3)
        result = h.run(lambda p: p.process_incoming(_request(), ConfirmationMode.NEVER))

        stored = h.stored(result.task_id)
        assert stored.verification.strikes_used == 5
        assert [s.state_key for s in factory.made] == ["shop.com"]
        assert stored.cascade_tier == "manual_instructions"
        assert all(r.tier is None for r in stored.results)

    def test_cost_ceiling_stops_and_flags(self, db_path):
        llm = FakeLLM(clarify=SHOPPING_INTENT, generations=[SHOPPING_STEPS])
        h = Harness(db_path, llm, 50, cost_ceiling_usd=0.0005)
        result = h.run(lambda p: p.process_incoming(_request(), ConfirmationMode.NEVER))

        assert result.status is TaskStatus.NEEDS_REVIEW
        assert BUDGET_NOTE in result.response
        assert result.actions == []
        assert h.factory.made[0].log == []
        stored = h.stored(result.task_id)
        assert stored.error == "budget_exceeded"
        assert h.verifier.calls == 1
        notes = [entry["note"] for entry in h.processor.tasks.audit_trail(result.task_id)]
        assert any("Cost ceiling reached" in n for n in notes)

    def test_over_budget_owner_uses_economy_models(self, db_path):
        llm = FakeLLM(clarify=SHOPPING_INTENT, generations=[SHOPPING_STEPS])
        chains = {"economy": ["small"], "standard": ["medium"], "strongest": ["large"]}
        budget = StaticBudgetChecker(allowance=1.0)
        budget.charge("u1", 1.5)
        h = Harness(db_path, llm, budget=budget, model_chains=chains)
        h.run(lambda p: p.process_incoming(_request(), ConfirmationMode.NEVER))
        models = [c["model"] for c in llm.calls if c["prompt"] and "You are carrying out a task" in c["prompt"]]
        assert models[0] == "small"


class TestConfirmation:
    UNSURE = {**SHOPPING_INTENT, "confidence": 55, "assumptions": ["assumed one pair"]}

    def test_asks_then_cancels(self, db_path):
        h = Harness(db_path, FakeLLM(clarify=self.UNSURE, generations=[SHOPPING_STEPS]))

        async def flow(p):
            first = await p.process_incoming(_request())
            second = await p.handle_confirmation_reply(first.task_id, "no")
            return first, second

        first, second = h.run(flow)
        assert first.status is TaskStatus.AWAITING_CONFIRMATION
        assert "assumed one pair" in h.messages[0]
        assert second.status is TaskStatus.CANCELLED
        assert h.messages[-1] == "Okay, I've cancelled that task."
        assert h.factory.made == []

    def test_changes_then_yes(self, db_path):
        h = Harness(db_path, FakeLLM(clarify=self.UNSURE, generations=[SHOPPING_STEPS]))

        async def flow(p):
            first = await p.process_incoming(_request())
            changed = await p.handle_confirmation_reply(first.task_id, "make it three pairs")
            done = await p.handle_confirmation_reply(first.task_id, "yes")
            return first, changed, done

        first, changed, done = h.run(flow)
        assert changed.status is TaskStatus.AWAITING_CONFIRMATION
        assert len(h.messages) >= 3
        assert "User clarification: make it three pairs" in h.stored(first.task_id).body
        assert done.status is TaskStatus.COMPLETED

    def test_facts_survive_a_restart(self, db_path):
        first = Harness(db_path, FakeLLM(clarify=self.UNSURE, generations=[SHOPPING_STEPS]))
        asked = first.run(lambda p: p.process_incoming(_request(), facts=["wears size 10"]))

        llm = FakeLLM(clarify=self.UNSURE, generations=[SHOPPING_STEPS])
        restarted = Harness(db_path, llm)
        restarted.run(lambda p: p.handle_confirmation_reply(asked.task_id, "make it three pairs"))

        assert restarted.stored(asked.task_id).facts == ["wears size 10"]
        assert "wears size 10" in llm.prompts("Parse this into a structured task")[0]

    @pytest.mark.parametrize("clarify", [None, {**SHOPPING_INTENT, "task_type": "general", "confidence": 97}])
    def test_risky_mode_checks_the_final_task_type(self, db_path, clarify):
        h = Harness(db_path, FakeLLM(clarify=clarify, generations=[SHOPPING_STEPS]))
        result = h.run(lambda p: p.process_incoming(_request(), ConfirmationMode.RISKY))

        assert result.status is TaskStatus.AWAITING_CONFIRMATION
        stored = h.stored(result.task_id)
        assert stored.task_type == "shopping"
        assert stored.results == []
        assert h.factory.made == []

    def test_reply_for_wrong_state_is_rejected(self, db_path):
        h = Harness(db_path, FakeLLM(clarify=SHOPPING_INTENT, generations=[SHOPPING_STEPS]))

        async def flow(p):
            done = await p.process_incoming(_request(), ConfirmationMode.NEVER)
            with pytest.raises(InvalidTransition):
                await p.handle_confirmation_reply(done.task_id, "yes")

        h.run(flow)


class TestVerificationCode:
    STEPS = {
        "response": "Logged in and checked your order.",
        "actions": [
            {"kind": "navigate", "params": {"url": "https://shop.com/login"}},
            {"kind": "fill", "params": {"selector": "#otp", "value": "{{verification_code}}"}},
            {"kind": "click", "params": {"selector": "#verify"}},
        ],
    }

    def test_pause_and_resume_from_checkpoint(self, db_path):
        h = Harness(db_path, FakeLLM(clarify=SHOPPING_INTENT, generations=[self.STEPS]))

        async def flow(p):
            paused = await p.process_incoming(_request(), ConfirmationMode.NEVER)
            stored = p.tasks.get(paused.task_id)
            resumed = await p.handle_verification_code(paused.task_id, " 123456 ")
            return paused, stored, resumed

        paused, stored, resumed = h.run(flow)
        assert paused.status is TaskStatus.AWAITING_INPUT
        assert paused.response == CODE_REQUEST
        assert h.messages[0] == CODE_REQUEST
        assert stored.checkpoint == 0
        assert len(stored.pending_actions) == 3

        assert resumed.status is TaskStatus.COMPLETED
        first_session, second_session = h.factory.made
        assert first_session.values == []
        assert second_session.values == ["123456"]
        assert [e[0] for e in second_session.log] == ["fill", "click"]
        assert [r.step_index for r in resumed.actions] == [0, 1, 2]


class TestFailures:
    def test_crash_fails_task_with_generic_message(self, db_path):
        class BrokenSession(FakeSession):
            async def start(self):
                raise RuntimeError("browser binary missing")

        h = Harness(db_path, FakeLLM(clarify=SHOPPING_INTENT, generations=[SHOPPING_STEPS]),
                    factory=lambda key: BrokenSession(key))
        result = h.run(lambda p: p.process_incoming(_request(), ConfirmationMode.NEVER))

        assert not result.success
        assert result.status is TaskStatus.FAILED
        assert result.response == USER_FACING_ERROR
        assert result.error == USER_FACING_ERROR
        stored = h.stored(result.task_id)
        assert stored.status is TaskStatus.FAILED
        assert "RuntimeError" in stored.error
        assert "browser binary missing" not in result.response
        assert h.messages[-1] == USER_FACING_ERROR


class TestConcurrency:
    def test_run_many_processes_independent_tasks(self, db_path):
        llm = FakeLLM(clarify={**SHOPPING_INTENT, "task_type": "reminder", "goal": "Remind me"})
        h = Harness(db_path, llm, max_concurrent_tasks=2)
        requests = [_request(f"remind me to stretch at {n}pm", InputChannel.SMS) for n in (3, 4, 5)]
        results = h.run(lambda p: p.run_many(requests))

        assert len({r.task_id for r in results}) == 3
        assert all(r.status is TaskStatus.COMPLETED for r in results)
        assert h.factory.made == []
        assert all(channel is InputChannel.SMS for channel, _, _ in h.transport.sent)
