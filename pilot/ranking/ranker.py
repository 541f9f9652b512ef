"""Adaptive ranking — one ordering algorithm shared by method variants and models.

Ranking is a pure read: the same stats always produce the same order.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Mapping

logger = logging.getLogger(__name__)


# ─── Default orders ───────────────────────────────────────────────────────────

# Per action kind, in the order tried when nothing has been learned yet.
# The last entry is the robust fallback that ranking always keeps.
DEFAULT_METHOD_ORDER: dict[str, list[str]] = {
    "click": [
        "css", "text", "role", "label", "xpath", "placeholder",
        "force_js", "coordinates", "double_click", "hover_click", "scroll_click", "vision",
    ],
    "fill": [
        "standard", "label", "placeholder", "name", "id", "xpath",
        "js_value", "react_hack", "focus_type", "clipboard", "vision",
    ],
    "navigate": ["url", "search", "menu", "sitemap", "cached", "search_engine", "back_forward", "vision"],
    "login": [
        "standard", "oauth_google", "oauth_microsoft", "magic_link",
        "cookie_inject", "session_restore", "sso", "api_login",
    ],
    "select": ["standard", "label", "js_value", "vision"],
    "submit": ["standard", "enter_key", "js_submit", "vision"],
}


def default_methods(action_kind: str) -> list[str]:
    return list(DEFAULT_METHOD_ORDER.get(action_kind, ["standard"]))


# ─── Stats ────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class CandidateStats:
    name: str
    successes: int = 0
    failures: int = 0
    cost: float = 0.0  # avg USD for models, avg duration ms for methods

    @property
    def attempts(self) -> int:
        return self.successes + self.failures

    @property
    def success_rate(self) -> float:
        if self.attempts == 0:
            return 0.0
        return 100.0 * self.successes / self.attempts


@dataclass(frozen=True)
class RankingPolicy:
    min_samples: int = 3
    reorder_gap_pct: float = 5.0
    demote_below_pct: float = 20.0
    demote_min_attempts: int = 5


METHOD_POLICY = RankingPolicy(min_samples=3)
MODEL_POLICY = RankingPolicy(min_samples=5)


def is_demoted(stats: CandidateStats | None, policy: RankingPolicy) -> bool:
    """True once a candidate has enough attempts and a success rate at or under the floor."""
    if stats is None:
        return False
    return stats.attempts >= policy.demote_min_attempts and stats.success_rate <= policy.demote_below_pct


def rank(
    candidates: Iterable[str],
    stats: Mapping[str, CandidateStats],
    *,
    fallback: str,
    policy: RankingPolicy = METHOD_POLICY,
) -> list[str]:
    """Order *candidates* by learned performance.

    - Candidates under ``min_samples`` keep their default position after the
      learned ones.
    - Learned candidates are ordered by success rate, then cost. Neighbours
      within ``reorder_gap_pct`` of each other are then ordered by cost
      instead; a candidate never ends up above one that beats it by more
      than the gap.
    - Demoted candidates are left out; their stats are not touched.
    - *fallback* is always the last element.
    """
    default_order: list[str] = []
    for name in candidates:
        if name not in default_order and name != fallback:
            default_order.append(name)
    position = {name: i for i, name in enumerate(default_order)}

    learned: list[str] = []
    unlearned: list[str] = []
    for name in default_order:
        s = stats.get(name)
        if is_demoted(s, policy):
            logger.debug(f"Demoted {name} ({s.success_rate:.0f}% over {s.attempts} attempts)")
            continue
        if s is not None and s.attempts >= policy.min_samples:
            learned.append(name)
        else:
            unlearned.append(name)

    def cheaper(name: str) -> tuple[float, int]:
        return stats[name].cost, position[name]

    learned.sort(key=lambda n: (-stats[n].success_rate, *cheaper(n)))

    # Each swap only reorders the two neighbours it touches, so pairs further
    # apart than the gap keep their success-rate order.
    swapped = True
    while swapped:
        swapped = False
        for i in range(len(learned) - 1):
            a, b = learned[i], learned[i + 1]
            close = abs(stats[a].success_rate - stats[b].success_rate) <= policy.reorder_gap_pct
            if close and cheaper(b) < cheaper(a):
                learned[i], learned[i + 1] = b, a
                swapped = True

    return learned + unlearned + [fallback]


def rank_methods(action_kind: str, stats: Mapping[str, CandidateStats],
                 policy: RankingPolicy = METHOD_POLICY) -> list[str]:
    order = default_methods(action_kind)
    return rank(order[:-1], stats, fallback=order[-1], policy=policy)


def rank_models(chain: list[str], stats: Mapping[str, CandidateStats],
                policy: RankingPolicy = MODEL_POLICY) -> list[str]:
    if not chain:
        return []
    return rank(chain[:-1], stats, fallback=chain[-1], policy=policy)
