"""Outcome checks: cheap text and evidence checks, plus an LLM review when
the run left something worth inspecting.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Optional

from pilot.common.llm_client import LLMClient
from pilot.common.protocol import BROWSER_KINDS, ActionResult, action_success_rate
from pilot.verifier.quality import QualityTier

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Criteria:
    success: tuple[str, ...]
    errors: tuple[str, ...]
    evidence: tuple[re.Pattern, ...] = ()
    inspect: bool = False  # worth an LLM review when evidence exists


def _p(*patterns: str) -> tuple[re.Pattern, ...]:
    return tuple(re.compile(p, re.IGNORECASE) for p in patterns)


CRITERIA: dict[str, Criteria] = {
    "booking": Criteria(
        ("confirmation", "confirmed", "reserved", "booked", "reservation number",
         "booking reference", "thank you for your reservation"),
        ("not available", "sold out", "no availability", "try another", "error", "failed"),
        _p(r"confirmation\s*(?:#|number|code|id)?\s*[:.]?\s*([A-Z0-9-]{4,})",
           r"reference\s*(?:#|number|code|id)?\s*[:.]?\s*([A-Z0-9-]{4,})",
           r"booking\s*(?:#|number|code|id)?\s*[:.]?\s*([A-Z0-9-]{4,})",
           r"reservation\s*(?:#|number|code|id)?\s*[:.]?\s*([A-Z0-9-]{4,})"),
        inspect=True,
    ),
    "email": Criteria(
        ("sent", "delivered", "message sent", "email sent"),
        ("failed to send", "not delivered", "bounced", "error sending"),
        _p(r"sent\s+to\s+([^\s]+@[^\s]+)"),
    ),
    "form": Criteria(
        ("success", "submitted", "thank you", "received", "form submitted", "application received"),
        ("required", "invalid", "error", "please fill", "missing", "incorrect"),
        _p(r"submitted\s+successfully", r"thank\s+you\s+for\s+(your\s+)?submission"),
        inspect=True,
    ),
    "login": Criteria(
        ("dashboard", "welcome", "account", "profile", "home", "inbox", "logged in"),
        ("invalid password", "incorrect", "wrong password", "login failed", "try again"),
        _p(r"welcome,?\s+(\w+)", r"logged\s+in\s+as\s+(\w+)"),
        inspect=True,
    ),
    "purchase": Criteria(
        ("order confirmed", "purchase complete", "order number", "order placed", "receipt", "payment successful"),
        ("payment failed", "declined", "insufficient", "error processing", "card declined"),
        _p(r"order\s*(?:#|number|id)?\s*[:.]?\s*([A-Z0-9-]{4,})", r"total\s*[:.]?\s*\$?([\d,.]+)"),
        inspect=True,
    ),
    "calendar": Criteria(
        ("event created", "added to calendar", "scheduled", "event saved"),
        ("conflict", "overlap", "could not create", "error"),
        _p(r"event\s+(?:created|added|saved)", r"scheduled\s+for\s+(.+)"),
    ),
    "research": Criteria(
        ("results", "found", "here are", "summary"),
        ("no results", "not found", "error"),
    ),
    "shopping": Criteria(
        ("added to cart", "add to bag", "in your cart", "cart updated", "added to basket", "checkout", "view cart"),
        ("out of stock", "unavailable", "sold out", "error", "could not add"),
        _p(r"added?\s+to\s+(your\s+)?cart", r"cart\s*\(\d+\)", r"bag\s*\(\d+\)"),
        inspect=True,
    ),
}
CRITERIA["reminder"] = CRITERIA["calendar"]
CRITERIA["general"] = CRITERIA["research"]

SUCCESS_URL_PATTERNS = (
    "success", "thank-you", "thankyou", "confirmation", "complete", "done", "receipt", "order-confirmed",
)


@dataclass
class Evidence:
    response_text: str = ""
    page_text: str = ""
    url: str = ""
    screenshots: list[str] = field(default_factory=list)
    action_rate: Optional[float] = None
    used_browser: bool = False

    @property
    def inspectable(self) -> bool:
        return bool(self.page_text or self.screenshots)

    @classmethod
    def from_results(cls, results: list[ActionResult], response_text: str = "") -> "Evidence":
        texts, shots, url = [], [], ""
        used_browser = False
        for r in results:
            out = r.output or {}
            if out.get("text"):
                texts.append(str(out["text"]))
            if out.get("result") is not None:
                texts.append(str(out["result"]))
            if out.get("screenshot"):
                shots.append(str(out["screenshot"]))
            if out.get("url"):
                url = str(out["url"])
                used_browser = True
            if r.action.kind in BROWSER_KINDS:
                used_browser = True
        return cls(
            response_text=response_text,
            page_text="\n".join(texts)[:20000],
            url=url,
            screenshots=shots,
            action_rate=action_success_rate(results) if results else None,
            used_browser=used_browser,
        )


@dataclass
class CheckResult:
    score: int
    note: str


@dataclass
class VerificationResult:
    score: int
    method: str
    note: str = ""
    hints: list[str] = field(default_factory=list)
    cost: float = 0.0


# ─── Checks ───────────────────────────────────────────────────────────────────

def criteria_for(task_type: str) -> Criteria:
    return CRITERIA.get(task_type, CRITERIA["form"])


def self_check(criteria: Criteria, evidence: Evidence) -> CheckResult:
    text = f"{evidence.response_text} {evidence.page_text}".lower()
    successes = sum(1 for s in criteria.success if s in text)
    errors = sum(1 for e in criteria.errors if e in text)

    if errors and not successes:
        return CheckResult(20, "Error indicators found on page")
    if successes and not errors:
        return CheckResult(min(50 + successes * 15, 95), f"Found {successes} success indicator(s)")
    if successes and errors:
        return CheckResult(40, f"Mixed signals: {successes} success, {errors} error indicators")
    return CheckResult(30, "No clear success or error indicators found")


def evidence_check(criteria: Criteria, evidence: Evidence) -> CheckResult:
    text = f"{evidence.response_text}\n{evidence.page_text}"
    for pattern in criteria.evidence:
        match = pattern.search(text)
        if match:
            return CheckResult(95, f'Found evidence: "{match.group(0)}"')
    url = evidence.url.lower()
    for pattern in SUCCESS_URL_PATTERNS:
        if pattern in url:
            return CheckResult(90, f'URL contains success pattern: "{pattern}"')
    return CheckResult(20, "No concrete evidence found")


def composite_score(self_score: int, evidence_score: int, action_rate: Optional[float], used_browser: bool) -> int:
    if used_browser and action_rate is not None:
        return round(self_score * 0.3 + evidence_score * 0.3 + action_rate * 0.4)
    return round(self_score * 0.55 + evidence_score * 0.45)


def correction_hints(criteria: Criteria, evidence: Evidence, self_result: CheckResult,
                     evidence_result: CheckResult) -> list[str]:
    hints: list[str] = []
    page = evidence.page_text.lower()
    found = [e for e in criteria.errors if e in page]
    if found:
        hints.append(f"Error indicators found on page: {', '.join(found)}")
    if evidence_result.score < 50:
        hints.append("No confirmation/evidence found, task may not have completed")
    rate = evidence.action_rate if evidence.action_rate is not None else 100.0
    if rate < 80:
        hints.append(f"Action success rate low ({rate:.0f}%), {100 - rate:.0f}% of actions failed")
    if self_result.note:
        hints.append(self_result.note)
    return hints


# ─── Verifier ─────────────────────────────────────────────────────────────────

REVIEW_PROMPT = """\
Determine whether this task was completed successfully.

Task type: {task_type}
Goal: {goal}
Final URL: {url}
Screenshots captured: {shots}

Page content observed (truncated):
{page_text}

Reply sent to the user:
{response}

Respond with JSON ONLY:
{{"success": true, "confidence": 0, "reason": "brief explanation", "fixes": ["what to do differently"]}}
"""


class OutcomeVerifier:
    def __init__(self, llm: Optional[LLMClient] = None, review_model: Optional[str] = None):
        self.llm = llm
        self.review_model = review_model

    async def verify(self, task_type: str, goal: str, evidence: Evidence, tier: QualityTier) -> VerificationResult:
        criteria = criteria_for(task_type)
        step1 = self_check(criteria, evidence)
        step2 = evidence_check(criteria, evidence)
        score = composite_score(step1.score, step2.score, evidence.action_rate, evidence.used_browser)
        method = "evidence" if step2.score >= step1.score else "self_check"

        wants_review = tier.always_review or (score < 90 and criteria.inspect)
        if wants_review and evidence.inspectable and self.llm is not None:
            review = await self._smart_review(task_type, goal, evidence)
            review.hints = correction_hints(criteria, evidence, step1, step2) + review.hints
            return review

        hints = correction_hints(criteria, evidence, step1, step2) if score < 90 else []
        return VerificationResult(score=score, method=method, note=step2.note if method == "evidence" else step1.note,
                                  hints=hints)

    async def _smart_review(self, task_type: str, goal: str, evidence: Evidence) -> VerificationResult:
        prompt = REVIEW_PROMPT.format(
            task_type=task_type,
            goal=goal,
            url=evidence.url or "n/a",
            shots=len(evidence.screenshots),
            page_text=evidence.page_text[:6000] or "(none)",
            response=evidence.response_text[:2000] or "(none)",
        )
        result = await self.llm.generate_json(
            prompt=prompt,
            system="You are a task verification system. Judge only from the evidence given.",
            model=self.review_model,
            temperature=0.0,
            max_tokens=512,
        )
        cost = float(result.get("cost", 0.0) or 0.0)
        if result.get("error") or not isinstance(result.get("content"), dict):
            logger.warning(f"Smart review failed: {result.get('message', 'unparseable')}")
            return VerificationResult(30, "smart_review", "Smart review failed", cost=cost)

        data = result["content"]
        try:
            confidence = max(0, min(100, int(data.get("confidence", 70))))
        except (TypeError, ValueError):
            confidence = 60
        if data.get("success") is False:
            confidence = min(confidence, 50)
        fixes = [str(f) for f in data.get("fixes") or [] if f]
        return VerificationResult(confidence, "smart_review", str(data.get("reason", "")), hints=fixes, cost=cost)
