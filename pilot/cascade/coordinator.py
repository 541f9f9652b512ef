"""Cascade coordinator.

Runs only when the task's action success rate is under the threshold. Tiers
are tried strictly in order and the first success ends the cascade:

  1. alternate_api        a public API for the target site
  2. cached_session       re-run failed actions with the saved session state
  3. fresh_session        re-run failed actions in a clean session
  4. delegated_email      ask the service's support on the user's behalf
  5. manual_instructions  step-by-step instructions for the user

Every tier's outcome is appended to the response; nothing already reported
is replaced.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

import httpx

from pilot.cascade.fallbacks import (
    TierOutcome,
    draft_request,
    generate_manual_instructions,
    support_contact,
    try_api_approach,
)
from pilot.common.cost import CostLedger
from pilot.common.llm_client import LLMClient
from pilot.common.protocol import ActionResult, Task, action_success_rate
from pilot.executor.dispatch import Outbox

logger = logging.getLogger(__name__)

TIER_ORDER = (
    "alternate_api",
    "cached_session",
    "fresh_session",
    "delegated_email",
    "manual_instructions",
)

# Re-runs the task's failed actions in a session opened with the given state
# key (None for a fresh session) and returns the new results.
SessionRetry = Callable[[Optional[str]], Awaitable[list[ActionResult]]]


@dataclass
class CascadeOutcome:
    triggered: bool
    tier_reached: Optional[str] = None
    succeeded: bool = False
    outcomes: list[TierOutcome] = field(default_factory=list)
    results: list[ActionResult] = field(default_factory=list)

    @property
    def tiers_tried(self) -> list[str]:
        return [o.tier for o in self.outcomes]

    def appendix(self) -> str:
        return "\n\n".join(o.note for o in self.outcomes if o.note)


class CascadeCoordinator:
    def __init__(
        self,
        threshold_pct: float = 70.0,
        http: Optional[httpx.AsyncClient] = None,
        llm: Optional[LLMClient] = None,
        outbox: Optional[Outbox] = None,
        manual_model: Optional[str] = None,
    ):
        self.threshold_pct = threshold_pct
        self.http = http
        self.llm = llm
        self.outbox = outbox
        self.manual_model = manual_model

    def should_run(self, success_rate: float) -> bool:
        return success_rate < self.threshold_pct

    async def run(
        self,
        task: Task,
        success_rate: float,
        *,
        domains: list[str],
        retry: Optional[SessionRetry] = None,
        ledger: Optional[CostLedger] = None,
        gathered: str = "",
        sender: str = "",
    ) -> CascadeOutcome:
        if not self.should_run(success_rate):
            return CascadeOutcome(triggered=False)

        logger.info(f"Cascade for {task.id}: action success {success_rate:.0f}% < {self.threshold_pct:.0f}%")
        cascade = CascadeOutcome(triggered=True)
        service = domains[0] if domains else "the website"
        goal = task.intent.goal or task.body

        for tier in TIER_ORDER:
            try:
                outcome = await self._try_tier(tier, task, goal, service, domains, retry, ledger, gathered,
                                               sender or task.owner_id, cascade)
            except Exception as e:
                logger.error(f"Cascade tier {tier} crashed for {task.id}: {e}", exc_info=True)
                outcome = TierOutcome(tier, False, "")
            cascade.outcomes.append(outcome)
            cascade.tier_reached = tier
            logger.info(f"Cascade {task.id}: {tier} {'succeeded' if outcome.success else 'failed'}")
            if outcome.success:
                cascade.succeeded = True
                break

        return cascade

    async def _try_tier(self, tier: str, task: Task, goal: str, service: str, domains: list[str],
                        retry: Optional[SessionRetry], ledger: Optional[CostLedger], gathered: str,
                        sender: str, cascade: CascadeOutcome) -> TierOutcome:
        if tier == "alternate_api":
            if self.http is None:
                return TierOutcome(tier, False, "")
            return await try_api_approach(self.http, task.task_type, goal, domains)

        if tier in ("cached_session", "fresh_session"):
            if retry is None:
                return TierOutcome(tier, False, "")
            if tier == "cached_session" and not domains:
                return TierOutcome(tier, False, "")
            results = await retry(domains[0] if tier == "cached_session" else None)
            for r in results:
                r.tier = tier
            cascade.results.extend(results)
            rate = action_success_rate(results) if results else 0.0
            label = "saved" if tier == "cached_session" else "fresh"
            if results and rate >= self.threshold_pct:
                return TierOutcome(tier, True, f"Retrying with a {label} browser session worked "
                                               f"({sum(r.success for r in results)}/{len(results)} steps).")
            return TierOutcome(tier, False, f"Retrying with a {label} browser session did not help.")

        if tier == "delegated_email":
            contact = support_contact(service)
            if contact is None or self.outbox is None:
                return TierOutcome(tier, False, "")
            subject, body = draft_request(goal, service, sender)
            await self.outbox.send_email(task.owner_id, contact, subject, body)
            return TierOutcome(tier, True, f"I've emailed {service} support ({contact}) on your behalf "
                                           f"asking them to help with: {goal}")

        outcome, cost = await generate_manual_instructions(self.llm, goal, service, gathered, self.manual_model)
        if ledger is not None:
            ledger.add(cost, "cascade:manual")
        return outcome
