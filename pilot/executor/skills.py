"""Skill sandbox — registered API integrations the planner can prefer over a browser."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Protocol

logger = logging.getLogger(__name__)

SkillHandler = Callable[[dict[str, Any]], Awaitable[Any]]


@dataclass
class SkillResult:
    success: bool
    result: Any = None
    error: Optional[str] = None


@dataclass
class Skill:
    id: str
    provider: str
    task_types: frozenset[str]
    handler: SkillHandler
    keywords: tuple[str, ...] = ()
    credential_env: Optional[str] = None
    cost: float = 0.001
    description: str = ""

    def has_credentials(self) -> bool:
        return not self.credential_env or bool(os.environ.get(self.credential_env))

    def matches(self, task_type: str, text: str) -> bool:
        if task_type not in self.task_types:
            return False
        if not self.keywords:
            return True
        lowered = text.lower()
        return any(k in lowered for k in self.keywords)


class SkillSandbox(Protocol):
    async def execute_skill(self, skill_id: str, params: dict[str, Any]) -> SkillResult: ...


class SkillRegistry:
    """In-process sandbox: looks up a registered skill and runs its handler."""

    def __init__(self) -> None:
        self._skills: dict[str, Skill] = {}

    def register(self, skill: Skill) -> None:
        self._skills[skill.id] = skill

    def get(self, skill_id: str) -> Optional[Skill]:
        return self._skills.get(skill_id)

    def find(self, task_type: str, text: str) -> list[Skill]:
        return [s for s in self._skills.values() if s.matches(task_type, text)]

    async def execute_skill(self, skill_id: str, params: dict[str, Any]) -> SkillResult:
        skill = self._skills.get(skill_id)
        if skill is None:
            return SkillResult(False, error=f"Skill '{skill_id}' is not installed")
        if not skill.has_credentials():
            return SkillResult(False, error=f"Missing credentials for {skill.provider}")
        try:
            result = await skill.handler(params)
        except Exception as e:
            logger.warning(f"Skill {skill_id} raised: {e}")
            return SkillResult(False, error=str(e))
        return SkillResult(True, result=result)
