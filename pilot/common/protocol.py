"""Task protocol — statuses, channels, actions, and the records passed between stages."""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pilot.common.errors import InvalidTransition


def utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_id() -> str:
    return uuid.uuid4().hex[:16]


# ─── Enums ────────────────────────────────────────────────────────────────────

class TaskStatus(Enum):
    RECEIVED = "received"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    PENDING = "pending"
    PROCESSING = "processing"
    AWAITING_INPUT = "awaiting_input"
    NEEDS_REVIEW = "needs_review"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({
    TaskStatus.COMPLETED,
    TaskStatus.FAILED,
    TaskStatus.CANCELLED,
    TaskStatus.NEEDS_REVIEW,
})

# Allowed status changes. Terminal states have no outgoing edges.
TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.RECEIVED: frozenset({
        TaskStatus.AWAITING_CONFIRMATION, TaskStatus.PENDING, TaskStatus.FAILED,
    }),
    TaskStatus.AWAITING_CONFIRMATION: frozenset({
        TaskStatus.AWAITING_CONFIRMATION, TaskStatus.PENDING, TaskStatus.CANCELLED,
    }),
    TaskStatus.PENDING: frozenset({TaskStatus.PROCESSING, TaskStatus.FAILED}),
    TaskStatus.PROCESSING: frozenset({
        TaskStatus.AWAITING_INPUT, TaskStatus.NEEDS_REVIEW,
        TaskStatus.COMPLETED, TaskStatus.FAILED,
    }),
    TaskStatus.AWAITING_INPUT: frozenset({TaskStatus.PROCESSING, TaskStatus.FAILED}),
    TaskStatus.NEEDS_REVIEW: frozenset(),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.FAILED: frozenset(),
    TaskStatus.CANCELLED: frozenset(),
}


def check_transition(current: TaskStatus, target: TaskStatus) -> None:
    """Raise InvalidTransition unless *current* → *target* is allowed."""
    if target not in TRANSITIONS[current]:
        raise InvalidTransition(f"Cannot move task from {current.value} to {target.value}")


class InputChannel(Enum):
    EMAIL = "email"
    SMS = "sms"
    VOICE = "voice"
    WEB = "web"


class ConfirmationMode(Enum):
    ALWAYS = "always"
    NEVER = "never"
    RISKY = "risky"
    UNCLEAR = "unclear"


class GenerationStrategy(Enum):
    ECONOMY = "economy"
    STANDARD = "standard"
    STRONGEST = "strongest"


class ExecutionMethod(Enum):
    API = "api"
    BROWSER = "browser"


class PlanSource(Enum):
    SKILL = "skill"
    CACHED = "cached"
    GENERATED = "generated"
    DIRECT = "direct"


class ActionKind(Enum):
    NAVIGATE = "navigate"
    CLICK = "click"
    FILL = "fill"
    SELECT = "select"
    SUBMIT = "submit"
    EXTRACT = "extract"
    SCREENSHOT = "screenshot"
    SCROLL = "scroll"
    WAIT = "wait"
    BROWSE = "browse"
    SEARCH = "search"
    FILL_FORM = "fill_form"
    SEND_EMAIL = "send_email"
    SCHEDULE = "schedule"
    REMEMBER = "remember"
    API_CALL = "api_call"
    SKILL = "skill"
    LOGIN = "login"
    UPLOAD = "upload"
    PAYMENT = "payment"
    CHECKOUT = "checkout"


# Kinds that drive an automation session and have ranked method variants.
BROWSER_KINDS = frozenset({
    ActionKind.NAVIGATE, ActionKind.CLICK, ActionKind.FILL, ActionKind.SELECT,
    ActionKind.SUBMIT, ActionKind.EXTRACT, ActionKind.SCREENSHOT, ActionKind.SCROLL,
    ActionKind.WAIT, ActionKind.BROWSE, ActionKind.FILL_FORM, ActionKind.LOGIN,
    ActionKind.UPLOAD, ActionKind.PAYMENT, ActionKind.CHECKOUT,
})


# ─── Intake ───────────────────────────────────────────────────────────────────

@dataclass
class TaskRequest:
    owner_id: str
    origin: str
    body: str
    subject: str = ""
    channel: InputChannel = InputChannel.EMAIL


@dataclass
class StructuredIntent:
    task_type: str = "general"
    goal: str = ""
    entities: dict[str, str] = field(default_factory=dict)
    assumptions: list[str] = field(default_factory=list)
    unclear_parts: list[str] = field(default_factory=list)


@dataclass
class Classification:
    task_type: str = "general"
    goal: str = ""
    needs_browser: bool = False
    domains: list[str] = field(default_factory=list)


@dataclass
class ClarifiedTask:
    original_input: str
    intent: StructuredIntent
    confidence: int
    needs_confirmation: bool
    fallback: bool = False


# ─── Actions ──────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Action:
    kind: ActionKind
    params: dict[str, Any] = field(default_factory=dict)

    @property
    def target(self) -> str:
        return str(self.params.get("selector") or self.params.get("url") or self.params.get("query") or "")

    @property
    def value(self) -> str:
        return str(self.params.get("value") or self.params.get("text") or "")

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind.value, "params": dict(self.params)}


@dataclass
class ActionResult:
    action: Action
    step_index: int
    success: bool
    output: dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    error_category: Optional[str] = None
    method: str = "standard"
    duration_ms: int = 0
    cost: float = 0.0
    attempt: int = 1  # strike attempt that produced it
    tier: Optional[str] = None  # cascade tier, if any

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["action"] = self.action.to_dict()
        return d

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "ActionResult":
        action = d.get("action") or {}
        return cls(
            action=Action(kind=ActionKind(action["kind"]), params=action.get("params", {})),
            step_index=d.get("step_index", 0),
            success=bool(d.get("success")),
            output=d.get("output") or {},
            error=d.get("error"),
            error_category=d.get("error_category"),
            method=d.get("method", "standard"),
            duration_ms=d.get("duration_ms", 0),
            cost=d.get("cost", 0.0),
            attempt=d.get("attempt", 1),
            tier=d.get("tier"),
        )


def action_success_rate(results: list[ActionResult]) -> float:
    """Percentage of successful actions; 100 when nothing ran."""
    if not results:
        return 100.0
    return 100.0 * sum(1 for r in results if r.success) / len(results)


# ─── Planning ─────────────────────────────────────────────────────────────────

@dataclass
class AuthGap:
    provider: str
    status: str = "missing"  # "ready" | "missing"


@dataclass
class PlanStep:
    description: str
    action: Optional[Action] = None
    skill_id: Optional[str] = None


@dataclass
class ExecutionPlan:
    task_id: str
    method: ExecutionMethod = ExecutionMethod.BROWSER
    source: PlanSource = PlanSource.DIRECT
    steps: list[PlanStep] = field(default_factory=list)
    estimated_cost: float = 0.0
    required_auth: list[AuthGap] = field(default_factory=list)

    @property
    def missing_auth(self) -> list[AuthGap]:
        return [g for g in self.required_auth if g.status == "missing"]

    def to_json(self) -> str:
        return json.dumps({
            "task_id": self.task_id,
            "method": self.method.value,
            "source": self.source.value,
            "steps": [
                {
                    "description": s.description,
                    "action": s.action.to_dict() if s.action else None,
                    "skill_id": s.skill_id,
                }
                for s in self.steps
            ],
            "estimated_cost": self.estimated_cost,
            "required_auth": [asdict(g) for g in self.required_auth],
        })


# ─── Task ─────────────────────────────────────────────────────────────────────

@dataclass
class VerificationOutcome:
    passed: bool = False
    best_score: float = 0.0
    strikes_used: int = 0
    needs_review: bool = False
    tier: str = "simple"


@dataclass
class Task:
    owner_id: str
    origin: str
    body: str
    id: str = field(default_factory=new_id)
    subject: str = ""
    channel: InputChannel = InputChannel.EMAIL
    task_type: str = "general"
    intent: StructuredIntent = field(default_factory=StructuredIntent)
    confidence: int = 0
    status: TaskStatus = TaskStatus.RECEIVED
    cost: float = 0.0
    verification: Optional[VerificationOutcome] = None
    cascade_tier: Optional[str] = None
    checkpoint: int = -1
    response: str = ""
    error: Optional[str] = None
    results: list[ActionResult] = field(default_factory=list)
    pending_actions: list[Action] = field(default_factory=list)
    facts: list[str] = field(default_factory=list)
    created_at: str = field(default_factory=utcnow)
    updated_at: str = field(default_factory=utcnow)

    @classmethod
    def from_request(cls, request: TaskRequest) -> "Task":
        return cls(
            owner_id=request.owner_id,
            origin=request.origin,
            subject=request.subject,
            body=request.body,
            channel=request.channel,
        )


@dataclass
class TaskResult:
    task_id: str
    success: bool
    response: str
    status: TaskStatus
    actions: list[ActionResult] = field(default_factory=list)
    error: Optional[str] = None
