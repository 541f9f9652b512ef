"""Response generation — the reply text plus the actions that carry it out."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Optional

from pilot.common.cost import CostLedger
from pilot.common.protocol import Action, ActionKind, GenerationStrategy, Task
from pilot.executor.actions import parse_actions
from pilot.ranking.model_router import ModelRouter

logger = logging.getLogger(__name__)

GENERATE_PROMPT = """\
You are carrying out a task for a user.

Task type: {task_type}
Goal: {goal}
Details: {entities}
Target sites: {domains}

What you know about the user:
{facts}

You may ONLY use these action kinds: {allowed}
{hints_block}{history_block}
Respond with ONLY valid JSON in this exact format:
{{
  "response": "What you will tell the user once the actions are done",
  "actions": [
    {{"kind": "<one of the allowed kinds>", "params": {{...}}}}
  ]
}}

Parameter names per kind:
- navigate/browse: url     - search: query        - click: selector
- fill/select: selector, value                    - submit: selector (optional)
- extract: selector (optional)                    - screenshot, scroll, wait: none
- fill_form: url, fields (selector → value)       - send_email: to, subject, body
- schedule: when, text     - remember: fact       - api_call: url, method
Use "{{{{verification_code}}}}" as the value where a one-time code will be needed.
Return an empty actions list if no actions are needed.
"""

SYSTEM_PROMPT = "You plan browser and messaging actions. Respond with ONLY valid JSON. No markdown."


@dataclass
class GeneratedResponse:
    text: str
    actions: list[Action] = field(default_factory=list)
    rejected: list[str] = field(default_factory=list)
    model: str = ""
    error: Optional[str] = None


class ResponseGenerator:
    def __init__(self, router: ModelRouter):
        self.router = router

    async def generate(
        self,
        task: Task,
        *,
        allowed: frozenset[ActionKind],
        domains: list[str],
        strategy: GenerationStrategy = GenerationStrategy.STANDARD,
        hints: list[str] | None = None,
        facts: list[str] | None = None,
        history: list[str] | None = None,
        ledger: CostLedger | None = None,
    ) -> GeneratedResponse:
        hints_block = ""
        if hints:
            hints_block = "\nCorrections from earlier attempts (apply them):\n" + "\n".join(f"- {h}" for h in hints) + "\n"
        history_block = ""
        if history:
            history_block = "\nFull history of previous attempts:\n" + "\n".join(f"- {h}" for h in history) + "\n"

        prompt = GENERATE_PROMPT.format(
            task_type=task.task_type,
            goal=task.intent.goal or task.body,
            entities=json.dumps(task.intent.entities) if task.intent.entities else "none",
            domains=", ".join(domains) or "any",
            facts="\n".join(f"- {f}" for f in facts or []) or "Nothing yet",
            allowed=", ".join(sorted(k.value for k in allowed)),
            hints_block=hints_block,
            history_block=history_block,
        )

        domain = domains[0] if domains else ""
        result = await self.router.generate_json(
            prompt=prompt,
            system=SYSTEM_PROMPT,
            strategy=strategy,
            owner_id=task.owner_id,
            task_type=task.task_type,
            domain=domain,
            ledger=ledger,
        )
        if result.get("error"):
            logger.error(f"Response generation failed for {task.id}: {result.get('message')}")
            return GeneratedResponse(text="", error=result.get("message", "generation failed"))

        content = result.get("content")
        if not isinstance(content, dict):
            logger.warning(f"Generator returned non-dict for {task.id}: {type(content).__name__}")
            return GeneratedResponse(text="", error="unparseable generation", model=result.get("model", ""))

        actions, rejected = parse_actions(content.get("actions") or [])
        logger.info(
            f"Generated {len(actions)} actions for {task.id} with {result.get('model')} "
            f"({strategy.value}, {len(hints or [])} hints)"
        )
        return GeneratedResponse(
            text=str(content.get("response") or ""),
            actions=actions,
            rejected=rejected,
            model=result.get("model", ""),
        )
