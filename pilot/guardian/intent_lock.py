"""Locked intents — the capability set fixed before a task runs.

Once created, a LockedIntent cannot be widened: content seen during
execution has no way to add actions or domains.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional
from urllib.parse import urlparse

from pilot.common.protocol import ActionKind

K = ActionKind

# ─── Permission tables ────────────────────────────────────────────────────────

TASK_PERMISSIONS: dict[str, tuple[frozenset[ActionKind], frozenset[ActionKind]]] = {
    "research": (
        frozenset({K.NAVIGATE, K.BROWSE, K.SCROLL, K.SCREENSHOT, K.EXTRACT, K.SEARCH, K.CLICK, K.WAIT,
                   K.API_CALL, K.SKILL, K.REMEMBER}),
        frozenset({K.FILL, K.SUBMIT, K.LOGIN, K.PAYMENT, K.CHECKOUT}),
    ),
    "booking": (
        frozenset({K.NAVIGATE, K.BROWSE, K.CLICK, K.FILL, K.FILL_FORM, K.SELECT, K.SUBMIT, K.SCREENSHOT,
                   K.EXTRACT, K.LOGIN, K.SCROLL, K.WAIT, K.API_CALL, K.SKILL}),
        frozenset({K.PAYMENT, K.CHECKOUT}),
    ),
    "form": (
        frozenset({K.NAVIGATE, K.BROWSE, K.CLICK, K.FILL, K.FILL_FORM, K.SELECT, K.SUBMIT, K.UPLOAD,
                   K.SCREENSHOT, K.SCROLL, K.WAIT}),
        frozenset({K.PAYMENT, K.CHECKOUT}),
    ),
    "shopping": (
        frozenset({K.NAVIGATE, K.BROWSE, K.CLICK, K.FILL, K.FILL_FORM, K.SELECT, K.SCREENSHOT, K.EXTRACT,
                   K.SEARCH, K.SCROLL, K.WAIT, K.API_CALL}),
        frozenset({K.PAYMENT, K.CHECKOUT}),
    ),
    "email": (
        frozenset({K.SEND_EMAIL, K.REMEMBER}),
        frozenset({K.NAVIGATE, K.CLICK, K.FILL, K.PAYMENT}),
    ),
    "writing": (
        frozenset({K.SEND_EMAIL, K.REMEMBER}),
        frozenset({K.NAVIGATE, K.CLICK, K.FILL, K.PAYMENT}),
    ),
    "reminder": (
        frozenset({K.SCHEDULE, K.SEND_EMAIL, K.REMEMBER}),
        frozenset({K.NAVIGATE, K.CLICK, K.FILL, K.PAYMENT}),
    ),
    "general": (
        frozenset({K.NAVIGATE, K.BROWSE, K.CLICK, K.SCROLL, K.SCREENSHOT, K.EXTRACT, K.SEARCH, K.REMEMBER,
                   K.WAIT, K.API_CALL, K.SKILL}),
        frozenset({K.FILL, K.SUBMIT, K.PAYMENT, K.LOGIN, K.CHECKOUT}),
    ),
}

# (max actions, max seconds)
TASK_LIMITS: dict[str, tuple[int, int]] = {
    "research": (50, 120),
    "booking": (200, 600),
    "form": (100, 300),
    "shopping": (200, 600),
    "email": (20, 60),
    "writing": (30, 120),
    "reminder": (20, 60),
    "general": (100, 300),
}

CLASSIFICATION_ALIASES = {
    "document": "writing",
    "monitor": "research",
    "voice": "general",
    "other": "general",
}

# Auth providers and CDNs a site may legitimately bounce through.
KNOWN_REDIRECT_DOMAINS = (
    "accounts.google.com", "login.microsoftonline.com", "github.com",
    "appleid.apple.com", "facebook.com", "cloudflare.com",
    "stripe.com", "paypal.com", "recaptcha.net", "gstatic.com",
)


def lock_type_for(task_type: str) -> str:
    task_type = CLASSIFICATION_ALIASES.get(task_type, task_type)
    return task_type if task_type in TASK_PERMISSIONS else "general"


# ─── Locked intent ────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class LockedIntent:
    owner_id: str
    task_type: str
    goal: str
    allowed_actions: frozenset[ActionKind]
    forbidden_actions: frozenset[ActionKind]
    allowed_domains: tuple[str, ...] = ()
    success_condition: str = "Task completed"
    max_actions: int = 100
    max_seconds: int = 300
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:16])
    locked_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def permits(self, kind: ActionKind) -> bool:
        return kind in self.allowed_actions and kind not in self.forbidden_actions


def create_locked_intent(
    owner_id: str,
    task_type: str,
    goal: str,
    *,
    allowed_domains: list[str] | None = None,
    forbidden_actions: list[ActionKind] | None = None,
    success_condition: str = "Task completed",
    max_actions: int | None = None,
    max_seconds: int | None = None,
) -> LockedIntent:
    """Build the frozen capability set for a task.

    Unknown task types get the ``general`` permissions. Extra forbidden
    actions narrow the set; nothing here can widen it.
    """
    lock_type = lock_type_for(task_type)
    allowed, forbidden = TASK_PERMISSIONS[lock_type]
    default_actions, default_seconds = TASK_LIMITS[lock_type]
    if forbidden_actions:
        forbidden = forbidden | frozenset(forbidden_actions)

    return LockedIntent(
        owner_id=owner_id,
        task_type=lock_type,
        goal=goal,
        allowed_actions=allowed,
        forbidden_actions=forbidden,
        allowed_domains=tuple(normalize_domain(d) for d in (allowed_domains or []) if d),
        success_condition=success_condition,
        max_actions=max_actions or default_actions,
        max_seconds=max_seconds or default_seconds,
    )


# ─── Checks ───────────────────────────────────────────────────────────────────

def normalize_domain(value: str) -> str:
    value = value.strip().lower()
    if not value:
        return ""
    host = urlparse(value if "://" in value else f"https://{value}").hostname or value
    return host.removeprefix("www.")


def domain_allowed(intent: LockedIntent, domain: str) -> bool:
    if not intent.allowed_domains or not domain:
        return True
    host = normalize_domain(domain)
    for allowed in intent.allowed_domains:
        if host == allowed or host.endswith("." + allowed):
            return True
    return any(host == d or host.endswith("." + d) for d in KNOWN_REDIRECT_DOMAINS)


def validate_action(intent: LockedIntent, kind: ActionKind, domain: str = "") -> Optional[str]:
    """Return a rejection reason, or None if the action fits the intent."""
    if kind in intent.forbidden_actions:
        return f"Action '{kind.value}' is forbidden for task type '{intent.task_type}'"
    if kind not in intent.allowed_actions:
        return f"Action '{kind.value}' not in allowed list for '{intent.task_type}'"
    if not domain_allowed(intent, domain):
        return f"Domain '{normalize_domain(domain)}' not in allowed list"
    return None
