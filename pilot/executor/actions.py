"""Action parsing. Every action kind is known up front; anything else is rejected."""

from __future__ import annotations

import logging
from typing import Any

from pilot.common.errors import UnknownActionError
from pilot.common.protocol import Action, ActionKind

logger = logging.getLogger(__name__)

K = ActionKind

REQUIRED_PARAMS: dict[ActionKind, tuple[str, ...]] = {
    K.NAVIGATE: ("url",),
    K.CLICK: ("selector",),
    K.FILL: ("selector", "value"),
    K.SELECT: ("selector", "value"),
    K.SUBMIT: (),
    K.EXTRACT: (),
    K.SCREENSHOT: (),
    K.SCROLL: (),
    K.WAIT: (),
    K.BROWSE: ("url",),
    K.SEARCH: ("query",),
    K.FILL_FORM: ("url", "fields"),
    K.SEND_EMAIL: ("to", "subject", "body"),
    K.SCHEDULE: ("when", "text"),
    K.REMEMBER: ("fact",),
    K.API_CALL: ("url",),
    K.SKILL: ("skill_id",),
    K.LOGIN: ("url",),
    K.UPLOAD: ("selector", "path"),
    K.PAYMENT: ("amount",),
    K.CHECKOUT: (),
}

assert set(REQUIRED_PARAMS) == set(ActionKind), "every ActionKind needs a parameter spec"


def parse_action(raw: dict[str, Any]) -> Action:
    """Build an Action from a generated dict.

    Accepts ``{"kind": ..., "params": {...}}`` or a flat dict with the
    parameters alongside ``kind``/``type``. Raises UnknownActionError for
    kinds outside ActionKind and for missing required parameters.
    """
    if not isinstance(raw, dict):
        raise UnknownActionError(f"Action must be an object, got {type(raw).__name__}")
    name = str(raw.get("kind") or raw.get("type") or "").strip().lower()
    try:
        kind = ActionKind(name)
    except ValueError:
        raise UnknownActionError(f"Unknown action kind '{name}'") from None

    params = raw.get("params")
    if not isinstance(params, dict):
        params = {k: v for k, v in raw.items() if k not in ("kind", "type")}

    missing = [p for p in REQUIRED_PARAMS[kind] if params.get(p) in (None, "")]
    if missing:
        raise UnknownActionError(f"Action '{kind.value}' missing parameters: {', '.join(missing)}")
    if kind is K.FILL_FORM and not isinstance(params.get("fields"), dict):
        raise UnknownActionError("Action 'fill_form' needs a fields mapping")
    return Action(kind=kind, params=params)


def parse_actions(raw_actions: list[Any]) -> tuple[list[Action], list[str]]:
    """Parse a generated list. Returns (actions, rejection reasons); nothing is dropped silently."""
    actions: list[Action] = []
    rejected: list[str] = []
    for raw in raw_actions or []:
        try:
            actions.append(parse_action(raw))
        except UnknownActionError as e:
            logger.warning(f"Rejected generated action: {e.message}")
            rejected.append(e.message)
    return actions, rejected
