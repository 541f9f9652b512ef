"""Quality tiers — how sure we need to be before calling a task done."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class QualityTier:
    name: str
    target: int
    max_attempts: int
    always_review: bool = False


QUALITY_TIERS: dict[str, QualityTier] = {
    "financial": QualityTier("financial", 99, 3, always_review=True),
    "browser_action": QualityTier("browser_action", 95, 3),
    "communication": QualityTier("communication", 90, 2),
    "research": QualityTier("research", 80, 2),
    "simple": QualityTier("simple", 70, 1),
}

_TIER_BY_TASK_TYPE = {
    "purchase": "financial",
    "payment": "financial",
    "booking": "browser_action",
    "form": "browser_action",
    "login": "browser_action",
    "shopping": "browser_action",
    "account_creation": "browser_action",
    "2fa_completion": "browser_action",
    "email": "communication",
    "calendar": "communication",
    "research": "research",
    "download": "research",
}


def tier_for(task_type: str) -> QualityTier:
    return QUALITY_TIERS[_TIER_BY_TASK_TYPE.get(task_type, "simple")]
