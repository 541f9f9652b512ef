"""Action validator — every proposed action passes through here before it runs."""

from __future__ import annotations

import logging
import re
import time
from typing import Callable

from pilot.common.errors import SecurityRejection
from pilot.common.protocol import Action, ActionKind
from pilot.guardian.intent_lock import LockedIntent, normalize_domain, validate_action

logger = logging.getLogger(__name__)

DOMAIN_RATE_LIMIT = 20
DOMAIN_RATE_WINDOW_S = 60.0

# (pattern, relaxed for plain fill actions)
INJECTION_PATTERNS: list[tuple[re.Pattern, bool]] = [
    (re.compile(r"ignore.*previous.*instructions", re.IGNORECASE), False),
    (re.compile(r"forget.*everything", re.IGNORECASE), False),
    (re.compile(r"system.*prompt", re.IGNORECASE), False),
    (re.compile(r"you.*are.*now", re.IGNORECASE), False),
    (re.compile(r"bypass.*security", re.IGNORECASE), False),
    (re.compile(r"send.*to.*external", re.IGNORECASE), True),
    (re.compile(r"transfer.*money", re.IGNORECASE), True),
    (re.compile(r"password.*is", re.IGNORECASE), True),
    (re.compile(r"admin.*access", re.IGNORECASE), True),
    (re.compile(r"root.*access", re.IGNORECASE), True),
    (re.compile(r"\bsudo\b", re.IGNORECASE), True),
    (re.compile(r"rm\s+-rf", re.IGNORECASE), True),
    (re.compile(r"^delete\s+all\b", re.IGNORECASE), True),
]


def action_domain(action: Action, current_domain: str = "") -> str:
    """Domain an action targets: explicit param, URL host, or the page we're on."""
    explicit = action.params.get("domain")
    if explicit:
        return normalize_domain(str(explicit))
    url = action.params.get("url")
    if url:
        return normalize_domain(str(url))
    return current_domain


class ActionValidator:
    """Stateful checker for one task run: intent, budgets, rate limit, injection."""

    def __init__(self, intent: LockedIntent, clock: Callable[[], float] = time.monotonic):
        self.intent = intent
        self._clock = clock
        self._started = clock()
        self.actions_checked = 0
        self._domain_windows: dict[str, tuple[int, float]] = {}

    @property
    def elapsed(self) -> float:
        return self._clock() - self._started

    def validate(self, action: Action, current_domain: str = "") -> None:
        """Raise SecurityRejection if *action* may not run."""
        reason = self._check(action, current_domain)
        if reason:
            logger.warning(
                f"SECURITY: rejected {action.kind.value} for intent {self.intent.id} "
                f"({self.intent.task_type}): {reason}"
            )
            raise SecurityRejection(reason, action_kind=action.kind.value)

    def _check(self, action: Action, current_domain: str) -> str | None:
        if self.elapsed > self.intent.max_seconds:
            return f"Task exceeded {self.intent.max_seconds}s time limit"

        self.actions_checked += 1
        if self.actions_checked > self.intent.max_actions:
            return f"Too many actions (max {self.intent.max_actions})"

        domain = action_domain(action, current_domain)
        reason = validate_action(self.intent, action.kind, domain)
        if reason:
            return reason

        if domain and not self._within_rate(domain):
            return f"Rate limit exceeded for domain {domain}"

        return self._check_injection(action)

    def _within_rate(self, domain: str) -> bool:
        now = self._clock()
        count, reset_at = self._domain_windows.get(domain, (0, 0.0))
        if now >= reset_at:
            self._domain_windows[domain] = (1, now + DOMAIN_RATE_WINDOW_S)
            return True
        count += 1
        self._domain_windows[domain] = (count, reset_at)
        return count <= DOMAIN_RATE_LIMIT

    @staticmethod
    def _check_injection(action: Action) -> str | None:
        value = action.value
        if not value:
            return None
        is_fill = action.kind in (ActionKind.FILL, ActionKind.FILL_FORM)
        for pattern, relaxed_for_fill in INJECTION_PATTERNS:
            if is_fill and relaxed_for_fill:
                continue
            if pattern.search(value):
                logger.warning(f"Suspicious pattern detected: {pattern.pattern}")
                return "Suspicious pattern detected in input"
        return None

    def stats(self) -> dict:
        return {
            "actions_checked": self.actions_checked,
            "elapsed_seconds": round(self.elapsed, 2),
            "remaining_actions": self.intent.max_actions - self.actions_checked,
            "remaining_seconds": round(self.intent.max_seconds - self.elapsed, 2),
        }
