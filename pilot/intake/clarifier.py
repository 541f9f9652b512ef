"""Clarifier — turns a free-form request into a structured intent and decides
whether the user should confirm it before anything runs.
"""

from __future__ import annotations

import logging
from typing import Sequence

from pilot.common.llm_client import LLMClient
from pilot.common.protocol import ClarifiedTask, ConfirmationMode, StructuredIntent

logger = logging.getLogger(__name__)

RISKY_TASK_TYPES = frozenset({"payment", "login", "email", "delete", "shopping"})
CONFIDENCE_THRESHOLD = 80
FALLBACK_CONFIDENCE = 50

YES_REPLIES = frozenset({"yes", "y", "yep", "yeah", "confirm", "confirmed", "ok", "okay", "go", "go ahead", "sure"})
NO_REPLIES = frozenset({"no", "n", "nope", "cancel", "stop", "don't", "dont"})

CLARIFY_PROMPT = """\
User said: "{message}"

User's known preferences and history:
{facts}

Parse this into a structured task. Fill in missing details from their preferences if known.

Respond in valid JSON only:
{{
  "task_type": "research|booking|form|email|shopping|reminder|writing|general",
  "goal": "Clear description of what they want",
  "entities": {{"date": "...", "time": "...", "location": "...", "recipient": "..."}},
  "assumptions": ["assumed X based on history"],
  "unclear_parts": ["not sure if they meant X or Y"],
  "confidence": 85
}}

Only include entities that are relevant. Remove empty or null values.
"""


def needs_confirmation(
    confidence: int,
    assumptions: Sequence[str],
    unclear_parts: Sequence[str],
    mode: ConfirmationMode,
    task_type: str = "general",
) -> bool:
    if mode is ConfirmationMode.ALWAYS:
        return True
    if mode is ConfirmationMode.NEVER:
        return False
    if mode is ConfirmationMode.RISKY:
        return task_type in RISKY_TASK_TYPES
    return confidence < CONFIDENCE_THRESHOLD or bool(assumptions) or bool(unclear_parts)


def confirmation_required(clarified: ClarifiedTask, mode: ConfirmationMode, task_type: str) -> bool:
    """Decide confirmation for the final task type, which may differ from the clarifier's guess.

    Without a parsed intent every mode but ``never`` asks first.
    """
    if clarified.fallback:
        return mode is not ConfirmationMode.NEVER
    intent = clarified.intent
    return needs_confirmation(clarified.confidence, intent.assumptions, intent.unclear_parts, mode, task_type)


class Clarifier:
    def __init__(self, llm: LLMClient, model: str | None = None):
        self.llm = llm
        self.model = model

    async def clarify(self, message: str, facts: list[str], mode: ConfirmationMode) -> ClarifiedTask:
        prompt = CLARIFY_PROMPT.format(
            message=message,
            facts="\n".join(f"- {f}" for f in facts) or "No known preferences yet",
        )
        result = await self.llm.generate_json(
            prompt=prompt,
            system="You are a task parser. Respond only in valid JSON.",
            model=self.model,
            temperature=0.3,
            max_tokens=1024,
        )

        parsed = result.get("content") if not result.get("error") else None
        if not isinstance(parsed, dict):
            logger.warning(f"Clarification unavailable, using fallback intent: {result.get('message', 'bad payload')}")
            intent = StructuredIntent(task_type="general", goal=message)
            return ClarifiedTask(
                original_input=message,
                intent=intent,
                confidence=FALLBACK_CONFIDENCE,
                needs_confirmation=mode is not ConfirmationMode.NEVER,
                fallback=True,
            )

        intent = StructuredIntent(
            task_type=str(parsed.get("task_type") or parsed.get("taskType") or "general"),
            goal=str(parsed.get("goal") or message),
            entities={str(k): str(v) for k, v in (parsed.get("entities") or {}).items() if v not in (None, "")},
            assumptions=[str(a) for a in parsed.get("assumptions") or []],
            unclear_parts=[str(u) for u in parsed.get("unclear_parts") or []],
        )
        try:
            confidence = max(0, min(100, int(parsed.get("confidence") or FALLBACK_CONFIDENCE)))
        except (TypeError, ValueError):
            confidence = FALLBACK_CONFIDENCE

        confirm = needs_confirmation(confidence, intent.assumptions, intent.unclear_parts, mode, intent.task_type)
        logger.info(f"Clarified as {intent.task_type} (confidence={confidence}, confirm={confirm})")
        return ClarifiedTask(message, intent, confidence, confirm)


# ─── Confirmation round-trip ──────────────────────────────────────────────────

def _format_key(key: str) -> str:
    return key.replace("_", " ").capitalize()


def format_confirmation_message(clarified: ClarifiedTask) -> str:
    intent = clarified.intent
    lines = ["Here's what I understood:", "", intent.goal, ""]

    entities = [f"  - {_format_key(k)}: {v}" for k, v in intent.entities.items() if v]
    if entities:
        lines += ["Details:", *entities, ""]
    if intent.assumptions:
        lines += ["I assumed:", *(f"  - {a}" for a in intent.assumptions), ""]
    if intent.unclear_parts:
        lines += ["I'm not sure about:", *(f"  - {u}" for u in intent.unclear_parts), ""]

    lines.append("Reply YES to confirm, NO to cancel, or tell me what to change.")
    return "\n".join(lines)


def parse_confirmation_reply(reply: str) -> tuple[str, str]:
    """Classify a reply as ("yes" | "no" | "changes", text)."""
    text = reply.strip()
    first_line = text.splitlines()[0].strip().lower() if text else ""
    normalized = first_line.strip(".!? ")
    if normalized in YES_REPLIES:
        return "yes", text
    if normalized in NO_REPLIES:
        return "no", text
    return "changes", text
