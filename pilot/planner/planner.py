"""Planner — decides how a task will run before any action executes.

Preference order: an installed API skill with credentials, then a recently
verified browser sequence, then freshly generated steps. Missing credentials
never block a plan; they are reported as follow-ups.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Optional

from pilot.common.config import PipelineConfig
from pilot.common.errors import PlanningFailure
from pilot.common.protocol import (
    Action,
    ActionKind,
    AuthGap,
    Classification,
    ExecutionMethod,
    ExecutionPlan,
    PlanSource,
    PlanStep,
)
from pilot.executor.skills import SkillRegistry
from stores.learnings import LearningStore

logger = logging.getLogger(__name__)

BROWSER_STEP_COST = 0.02


class Planner:
    def __init__(
        self,
        config: PipelineConfig,
        skills: Optional[SkillRegistry] = None,
        learnings: Optional[LearningStore] = None,
    ):
        self.config = config
        self.skills = skills
        self.learnings = learnings

    def plan(self, task_id: str, classification: Classification) -> ExecutionPlan:
        """Always returns a plan; planning errors fall back to a direct plan."""
        try:
            return self._plan(task_id, classification)
        except PlanningFailure as e:
            logger.warning(f"Planning failed for {task_id}, falling back to direct execution: {e.message}")
        except Exception as e:
            logger.error(f"Unexpected planning error for {task_id}: {e}", exc_info=True)
        return ExecutionPlan(
            task_id=task_id,
            method=ExecutionMethod.BROWSER if classification.needs_browser else ExecutionMethod.API,
            source=PlanSource.DIRECT,
        )

    def _plan(self, task_id: str, classification: Classification) -> ExecutionPlan:
        gaps: list[AuthGap] = []

        skill_plan = self._plan_from_skill(task_id, classification, gaps)
        if skill_plan is not None:
            return skill_plan

        cached = self._plan_from_learning(task_id, classification)
        if cached is not None:
            cached.required_auth = gaps
            return cached

        if classification.needs_browser:
            logger.info(f"Plan {task_id}: generated browser steps for {classification.task_type}")
            return ExecutionPlan(
                task_id=task_id,
                method=ExecutionMethod.BROWSER,
                source=PlanSource.GENERATED,
                estimated_cost=BROWSER_STEP_COST * 5,
                required_auth=gaps,
            )
        return ExecutionPlan(
            task_id=task_id,
            method=ExecutionMethod.API,
            source=PlanSource.DIRECT,
            required_auth=gaps,
        )

    def _plan_from_skill(self, task_id: str, classification: Classification,
                         gaps: list[AuthGap]) -> Optional[ExecutionPlan]:
        if self.skills is None:
            return None
        for skill in self.skills.find(classification.task_type, classification.goal):
            if not skill.has_credentials():
                gaps.append(AuthGap(provider=skill.provider, status="missing"))
                logger.info(f"Plan {task_id}: skill {skill.id} skipped, {skill.provider} not connected")
                continue
            logger.info(f"Plan {task_id}: using API skill {skill.id}")
            step = PlanStep(
                description=skill.description or f"Run {skill.id}",
                action=Action(ActionKind.SKILL, {"skill_id": skill.id, "input": {"goal": classification.goal}}),
                skill_id=skill.id,
            )
            return ExecutionPlan(
                task_id=task_id,
                method=ExecutionMethod.API,
                source=PlanSource.SKILL,
                steps=[step],
                estimated_cost=skill.cost,
                required_auth=gaps + [AuthGap(provider=skill.provider, status="ready")],
            )
        return None

    def _plan_from_learning(self, task_id: str, classification: Classification) -> Optional[ExecutionPlan]:
        if self.learnings is None or not classification.domains:
            return None
        service = classification.domains[0]
        try:
            learning = self.learnings.get(service, classification.task_type)
        except Exception as e:
            raise PlanningFailure(f"Learning lookup failed: {e}", task_id=task_id) from e
        if learning is None or not learning.actions:
            return None

        max_age = timedelta(days=self.config.learning_max_age_days)
        if learning.age() > max_age or learning.success_rate <= self.config.learning_min_success_pct:
            logger.info(
                f"Plan {task_id}: learning for {service} not reusable "
                f"(age={learning.age().days}d, success={learning.success_rate:.0f}%)"
            )
            return None

        logger.info(f"Plan {task_id}: reusing verified sequence for {service} ({len(learning.actions)} steps)")
        return ExecutionPlan(
            task_id=task_id,
            method=ExecutionMethod.BROWSER,
            source=PlanSource.CACHED,
            steps=[PlanStep(description=f"{a.kind.value} {a.target}".strip(), action=a) for a in learning.actions],
            estimated_cost=BROWSER_STEP_COST * len(learning.actions) / 2,
        )
