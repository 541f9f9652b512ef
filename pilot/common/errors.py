"""Error taxonomy for the task pipeline.

Every pipeline stage raises one of these (or returns an error dict, for the
LLM client). Only ``USER_FACING_ERROR`` ever reaches the end user.
"""

from __future__ import annotations

USER_FACING_ERROR = (
    "Sorry, I ran into a problem while working on your request. "
    "I've kept whatever progress I made and will look into it."
)


class PipelineError(Exception):
    """Base class for all task pipeline errors."""

    category: str = "pipeline_error"

    def __init__(self, message: str = "", *, task_id: str | None = None):
        super().__init__(message)
        self.message = message
        self.task_id = task_id


class SecurityRejection(PipelineError):
    """Action violated the locked intent. Never retried."""

    category = "security_rejection"

    def __init__(self, message: str = "", *, action_kind: str = "", **kwargs):
        super().__init__(message, **kwargs)
        self.action_kind = action_kind


class TransientExecutionFailure(PipelineError):
    category = "transient_failure"


class VerificationShortfall(PipelineError):
    """Strike loop ended below target."""

    category = "verification_shortfall"

    def __init__(self, message: str = "", *, best_score: float = 0.0, **kwargs):
        super().__init__(message, **kwargs)
        self.best_score = best_score


class BudgetExceeded(PipelineError):
    category = "budget_exceeded"

    def __init__(self, message: str = "", *, spent: float = 0.0, ceiling: float = 0.0, **kwargs):
        super().__init__(message, **kwargs)
        self.spent = spent
        self.ceiling = ceiling


class PlanningFailure(PipelineError):
    category = "planning_failure"


class InvalidTransition(PipelineError):
    category = "invalid_transition"


class UnknownActionError(PipelineError):
    category = "unknown_action"


class ConfigError(PipelineError):
    category = "config_error"


class LLMError(PipelineError):
    category = "llm_error"
