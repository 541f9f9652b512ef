"""Fallback tiers that do not drive a browser.

Each returns a TierOutcome; success=False means "try the next tier", never
a fake success.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

import httpx

from pilot.common.llm_client import LLMClient

logger = logging.getLogger(__name__)

API_TIMEOUT_S = 10.0

SUPPORT_EMAILS = {
    "google.com": "support@google.com",
    "amazon.com": "cs-reply@amazon.com",
    "apple.com": "support@apple.com",
    "microsoft.com": "support@microsoft.com",
}

_QUERY_PREFIX = re.compile(r"^(search|find|look up|lookup|get|fetch|check)\s+(for\s+)?", re.IGNORECASE)


@dataclass
class TierOutcome:
    tier: str
    success: bool
    note: str


def extract_query(goal: str) -> str:
    return _QUERY_PREFIX.sub("", goal).strip()


def _base_domain(domain: str) -> str:
    return domain.lower().removeprefix("www.")


# ─── Tier 1: alternate API ────────────────────────────────────────────────────

async def _duckduckgo(http: httpx.AsyncClient, goal: str) -> Optional[str]:
    query = extract_query(goal)
    resp = await http.get(
        "https://api.duckduckgo.com/",
        params={"q": query, "format": "json", "no_html": 1},
        timeout=API_TIMEOUT_S,
    )
    if resp.status_code != 200:
        return None
    data = resp.json()
    if data.get("AbstractText"):
        return f'Search result for "{query}":\n\n{data["AbstractText"]}'
    if data.get("Answer"):
        return f'Answer for "{query}": {data["Answer"]}'
    topics = [t["Text"] for t in (data.get("RelatedTopics") or [])[:5] if isinstance(t, dict) and t.get("Text")]
    if topics:
        return f'Related results for "{query}":\n\n' + "\n".join(f"- {t}" for t in topics)
    return None


async def _github(http: httpx.AsyncClient, goal: str) -> Optional[str]:
    query = extract_query(goal)
    resp = await http.get(
        "https://api.github.com/search/repositories",
        params={"q": query, "per_page": 5},
        headers={"Accept": "application/vnd.github.v3+json", "User-Agent": "taskpilot"},
        timeout=API_TIMEOUT_S,
    )
    if resp.status_code != 200:
        return None
    data = resp.json()
    items = data.get("items") or []
    if not items:
        return None
    lines = [
        f"- {r['full_name']} ({r.get('stargazers_count', 0)} stars): "
        f"{r.get('description') or 'No description'}\n  {r.get('html_url', '')}"
        for r in items
    ]
    return f'GitHub results for "{query}" ({data.get("total_count", len(items))} total):\n\n' + "\n".join(lines)


async def _yelp(http: httpx.AsyncClient, goal: str) -> Optional[str]:
    api_key = os.environ.get("YELP_API_KEY")
    if not api_key:
        return None
    query = extract_query(goal)
    resp = await http.get(
        "https://api.yelp.com/v3/businesses/search",
        params={"term": query, "location": "default", "limit": 5},
        headers={"Authorization": f"Bearer {api_key}"},
        timeout=API_TIMEOUT_S,
    )
    if resp.status_code != 200:
        return None
    businesses = resp.json().get("businesses") or []
    if not businesses:
        return None
    lines = [
        f"- {b['name']} ({b.get('rating')} stars, {b.get('review_count', 0)} reviews): "
        f"{', '.join(b.get('location', {}).get('display_address', []))}\n  {b.get('url', '')}"
        for b in businesses
    ]
    return f'Yelp results for "{query}":\n\n' + "\n".join(lines)


ApiHandler = Callable[[httpx.AsyncClient, str], Awaitable[Optional[str]]]

API_HANDLERS: dict[str, tuple[str, ApiHandler]] = {
    "google.com": ("Google", _duckduckgo),
    "github.com": ("GitHub", _github),
    "yelp.com": ("Yelp", _yelp),
}


async def try_api_approach(http: httpx.AsyncClient, task_type: str, goal: str, domains: list[str]) -> TierOutcome:
    """Try a public API for one of the task's sites, or a search API for research."""
    candidates: list[tuple[str, ApiHandler]] = []
    for domain in domains:
        handler = API_HANDLERS.get(_base_domain(domain))
        if handler and handler not in candidates:
            candidates.append(handler)
    if task_type in ("research", "search") and API_HANDLERS["google.com"] not in candidates:
        candidates.append(API_HANDLERS["google.com"])

    for name, handler in candidates:
        logger.info(f"Cascade: trying {name} API for: {goal[:80]}")
        try:
            text = await handler(http, goal)
        except (httpx.HTTPError, ValueError, KeyError) as e:
            logger.warning(f"Cascade: {name} API call failed: {e}")
            continue
        if text:
            return TierOutcome("alternate_api", True,
                               f"Browser automation fell short, but I got results via the {name} API:\n\n{text}")
        logger.info(f"Cascade: {name} API returned nothing useful")

    return TierOutcome("alternate_api", False, "No API fallback was available for this task.")


# ─── Tier 4: delegated request ────────────────────────────────────────────────

def support_contact(service: str) -> Optional[str]:
    return SUPPORT_EMAILS.get(_base_domain(service))


def draft_request(goal: str, service: str, sender: str) -> tuple[str, str]:
    subject = f"Request: {goal[:120]}"
    body = (
        f"Hi {service} support,\n\n"
        f"I need help with the following: {goal}\n\n"
        f"Please let me know the next steps.\n\n"
        f"Thanks,\n{sender}"
    )
    return subject, body


# ─── Tier 5: manual instructions ──────────────────────────────────────────────

MANUAL_PROMPT = """\
Generate clear, step-by-step instructions for a user to manually complete this task:

Task: {goal}
Service: {service}
{gathered}
Write 5-10 numbered steps. Be specific about which pages to visit and what to click. Keep it concise.
"""


def basic_instructions(goal: str, service: str) -> str:
    return (
        f'I wasn\'t able to complete "{goal}" automatically on {service}. Here\'s what you can do:\n\n'
        f"1. Go to {service} in your browser\n"
        f"2. Log in to your account\n"
        f"3. Navigate to the relevant section for: {goal}\n"
        f"4. Complete the task manually\n"
        f"5. Let me know if you need any further assistance"
    )


async def generate_manual_instructions(llm: Optional[LLMClient], goal: str, service: str,
                                       gathered: str = "", model: Optional[str] = None) -> tuple[TierOutcome, float]:
    """Always succeeds. Returns the outcome and the LLM spend."""
    if llm is not None:
        result = await llm.generate(
            prompt=MANUAL_PROMPT.format(
                goal=goal, service=service,
                gathered=f"\nContext gathered so far:\n{gathered[:3000]}\n" if gathered else "",
            ),
            system="You generate clear manual instructions. Respond with numbered steps only.",
            model=model,
            temperature=0.3,
            max_tokens=1024,
        )
        cost = float(result.get("cost", 0.0) or 0.0)
        text = str(result.get("content") or "").strip()
        if not result.get("error") and len(text) > 20:
            return TierOutcome("manual_instructions", True,
                               f"I wasn't able to complete this automatically, but here are manual instructions:\n\n{text}"), cost
        logger.warning(f"Manual instruction generation failed, using template: {result.get('message', 'short reply')}")
        return TierOutcome("manual_instructions", True, basic_instructions(goal, service)), cost
    return TierOutcome("manual_instructions", True, basic_instructions(goal, service)), 0.0
