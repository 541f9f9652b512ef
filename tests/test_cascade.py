"""Tests for the fallback cascade."""

import asyncio

import httpx

from conftest import FakeLLM, FakeOutbox
from pilot.cascade.coordinator import TIER_ORDER, CascadeCoordinator
from pilot.cascade.fallbacks import (
    basic_instructions,
    draft_request,
    extract_query,
    generate_manual_instructions,
    support_contact,
    try_api_approach,
)
from pilot.common.cost import CostLedger
from pilot.common.protocol import Action, ActionKind, ActionResult, StructuredIntent, Task


def _task(goal="cancel my subscription", task_type="form"):
    return Task(owner_id="u1", origin="me@example.com", body=goal, task_type=task_type,
                intent=StructuredIntent(task_type, goal))


def _results(ok, total):
    action = Action(ActionKind.CLICK, {"selector": "#x"})
    return [ActionResult(action, i, i < ok) for i in range(total)]


def _http(handler):
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def _offline(request):
    return httpx.Response(503)


class RetryRecorder:
    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.keys = []

    async def __call__(self, state_key):
        self.keys.append(state_key)
        return self.outcomes.pop(0)


class TestHelpers:
    def test_extract_query(self):
        assert extract_query("Search for cheap flights to Lisbon") == "cheap flights to Lisbon"
        assert extract_query("python http clients") == "python http clients"

    def test_support_contact(self):
        assert support_contact("www.amazon.com") == "cs-reply@amazon.com"
        assert support_contact("tinyshop.io") is None

    def test_draft_request_mentions_goal_and_sender(self):
        subject, body = draft_request("close my account", "amazon.com", "Sam")
        assert subject == "Request: close my account"
        assert "close my account" in body
        assert body.endswith("Sam")

    def test_manual_instructions_without_llm(self):
        outcome, cost = asyncio.run(generate_manual_instructions(None, "close my account", "amazon.com"))
        assert outcome.success
        assert outcome.note == basic_instructions("close my account", "amazon.com")
        assert cost == 0.0

    def test_manual_instructions_short_reply_uses_template(self):
        outcome, _ = asyncio.run(generate_manual_instructions(FakeLLM(manual="ok"), "x", "site.com"))
        assert outcome.success
        assert "Go to site.com" in outcome.note


class TestApiTier:
    def test_research_falls_back_to_search_api(self):
        seen = []

        def handler(request):
            seen.append(request.url.host)
            return httpx.Response(200, json={"AbstractText": "Lisbon is the capital of Portugal."})

        async def go():
            async with _http(handler) as http:
                return await try_api_approach(http, "research", "find facts about Lisbon", [])

        outcome = asyncio.run(go())
        assert outcome.success
        assert "capital of Portugal" in outcome.note
        assert seen == ["api.duckduckgo.com"]

    def test_github_domain(self):
        def handler(request):
            return httpx.Response(200, json={"total_count": 1, "items": [
                {"full_name": "encode/httpx", "stargazers_count": 10, "description": "HTTP client",
                 "html_url": "https://github.com/encode/httpx"},
            ]})

        async def go():
            async with _http(handler) as http:
                return await try_api_approach(http, "general", "search httpx", ["github.com"])

        outcome = asyncio.run(go())
        assert outcome.success
        assert "encode/httpx" in outcome.note

    def test_errors_and_empty_answers_fail_the_tier(self):
        async def go(handler):
            async with _http(handler) as http:
                return await try_api_approach(http, "research", "find x", ["github.com"])

        assert not asyncio.run(go(_offline)).success
        assert not asyncio.run(go(lambda r: httpx.Response(200, json={}))).success

    def test_no_candidates(self):
        async def go():
            async with _http(_offline) as http:
                return await try_api_approach(http, "form", "cancel", ["tinyshop.io"])

        outcome = asyncio.run(go())
        assert not outcome.success


class TestCascadeCoordinator:
    def test_not_triggered_at_threshold(self):
        cascade = asyncio.run(CascadeCoordinator().run(_task(), 70.0, domains=["shop.com"]))
        assert not cascade.triggered
        assert cascade.outcomes == []

    def test_tiers_in_order_until_manual(self):
        retry = RetryRecorder(_results(0, 2), _results(1, 2))
        llm = FakeLLM()
        ledger = CostLedger(2.0)

        async def go():
            async with _http(_offline) as http:
                coordinator = CascadeCoordinator(http=http, llm=llm, outbox=FakeOutbox())
                return await coordinator.run(_task(), 40.0, domains=["tinyshop.io"], retry=retry, ledger=ledger)

        cascade = asyncio.run(go())
        assert cascade.triggered
        assert cascade.tiers_tried == list(TIER_ORDER)
        assert cascade.tier_reached == "manual_instructions"
        assert cascade.succeeded
        assert retry.keys == ["tinyshop.io", None]
        assert len(cascade.results) == 4
        assert [r.tier for r in cascade.results] == ["cached_session"] * 2 + ["fresh_session"] * 2
        assert "Do the thing by hand" in cascade.appendix()
        assert ledger.spent > 0

    def test_cached_session_success_stops_cascade(self):
        retry = RetryRecorder(_results(3, 3))
        cascade = asyncio.run(CascadeCoordinator(llm=FakeLLM()).run(
            _task(), 20.0, domains=["shop.com"], retry=retry,
        ))
        assert cascade.tiers_tried == ["alternate_api", "cached_session"]
        assert cascade.succeeded
        assert "saved browser session worked" in cascade.appendix()

    def test_delegated_email(self):
        outbox = FakeOutbox()
        cascade = asyncio.run(CascadeCoordinator(outbox=outbox).run(
            _task(), 0.0, domains=["amazon.com"], sender="Sam",
        ))
        assert cascade.tier_reached == "delegated_email"
        assert outbox.emails[0][1] == "cs-reply@amazon.com"
        assert "emailed amazon.com support" in cascade.appendix()

    def test_crashing_tier_counts_as_failed(self):
        cascade = asyncio.run(CascadeCoordinator(outbox=FakeOutbox(fail=True)).run(
            _task(), 0.0, domains=["amazon.com"],
        ))
        assert cascade.tiers_tried[-2:] == ["delegated_email", "manual_instructions"]
        assert cascade.outcomes[-2].success is False
        assert cascade.succeeded
