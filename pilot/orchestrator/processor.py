"""Task processor — the pipeline from an incoming request to a delivered reply.

    classify → clarify (maybe confirm) → lock intent → plan → generate
    → execute → strike verification → cascade (low success only)
    → persist → dispatch to the originating channel → learning events

Every stage failure ends in a persisted terminal state that keeps the
results produced so far; the user only ever sees a generic error.
"""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import AsyncExitStack
from dataclasses import replace
from typing import Optional

import httpx

from pilot.cascade.coordinator import CascadeCoordinator, CascadeOutcome
from pilot.common.channels import ChannelDispatcher, ChannelTransport
from pilot.common.config import PipelineConfig
from pilot.common.cost import BudgetChecker, CostLedger, StaticBudgetChecker
from pilot.common.errors import USER_FACING_ERROR, InvalidTransition
from pilot.common.events import EventSink, TaskEvent
from pilot.common.llm_client import LLMClient
from pilot.common.protocol import (
    BROWSER_KINDS,
    Action,
    ActionResult,
    Classification,
    ConfirmationMode,
    ExecutionPlan,
    GenerationStrategy,
    InputChannel,
    Task,
    TaskRequest,
    TaskResult,
    TRANSITIONS,
    TaskStatus,
    VerificationOutcome,
    action_success_rate,
)
from pilot.executor.browser import SessionFactory, open_session, playwright_factory
from pilot.executor.dispatch import ExecutionContext, Outbox
from pilot.executor.engine import ExecutionEngine, ExecutionReport, ResultHook
from pilot.executor.skills import SkillRegistry
from pilot.guardian.intent_lock import LockedIntent, create_locked_intent
from pilot.guardian.validator import ActionValidator
from pilot.intake.clarifier import (
    Clarifier,
    confirmation_required,
    format_confirmation_message,
    parse_confirmation_reply,
)
from pilot.intake.classifier import BROWSER_TASK_TYPES, TaskClassifier, extract_domains
from pilot.planner.generator import ResponseGenerator
from pilot.planner.planner import Planner
from pilot.ranking.model_router import ModelRouter
from pilot.ranking.ranker import RankingPolicy
from pilot.verifier.checks import Evidence, OutcomeVerifier
from pilot.verifier.quality import QualityTier, tier_for
from pilot.verifier.strike_loop import AttemptState, Reattempt, StrikeLoop, StrikeOutcome
from stores import (
    DifficultyStore,
    FailureMemory,
    LearningStore,
    MethodPerformanceStore,
    ModelPerformanceStore,
    TaskStore,
    init_db,
)
from stores.difficulty import DifficultyPrediction

logger = logging.getLogger(__name__)

CODE_REQUEST = "I need the verification code that was just sent to you to continue. Reply with the code."
BUDGET_NOTE = "I stopped early because this task reached its cost limit. Here's what I got done so far."
REVIEW_NOTE = "I couldn't fully verify the result, so I've flagged it for a quick review."


def merge_results(previous: list[ActionResult], newer: list[ActionResult]) -> list[ActionResult]:
    """Newer results replace older ones for the same step; order by step."""
    by_step = {r.step_index: r for r in previous}
    for r in newer:
        by_step[r.step_index] = r
    return [by_step[i] for i in sorted(by_step)]


class TaskProcessor:
    def __init__(
        self,
        config: PipelineConfig,
        llm: LLMClient,
        *,
        transport: Optional[ChannelTransport] = None,
        outbox: Optional[Outbox] = None,
        session_factory: Optional[SessionFactory] = None,
        skills: Optional[SkillRegistry] = None,
        budget: Optional[BudgetChecker] = None,
        http: Optional[httpx.AsyncClient] = None,
        destinations: Optional[dict[str, str]] = None,
        verifier: Optional[OutcomeVerifier] = None,
        sleep=asyncio.sleep,
    ):
        self.config = config
        self.llm = llm
        init_db(config.db_path).close()

        self.tasks = TaskStore(config.db_path)
        self.methods = MethodPerformanceStore(config.db_path)
        self.models = ModelPerformanceStore(config.db_path)
        self.failures = FailureMemory(config.db_path)
        self.learnings = LearningStore(config.db_path)
        self.difficulty = DifficultyStore(config.db_path)

        self.skills = skills or SkillRegistry()
        self.budget = budget or StaticBudgetChecker()
        self.outbox = outbox
        self.session_factory = session_factory or playwright_factory()
        self._owns_http = http is None
        self.http = http or httpx.AsyncClient(timeout=config.step_timeout_s)

        model_policy = RankingPolicy(
            min_samples=config.model_min_samples,
            reorder_gap_pct=config.reorder_gap_pct,
            demote_below_pct=config.demote_below_pct,
            demote_min_attempts=config.demote_min_attempts,
        )
        self.router = ModelRouter(llm, config.model_chains, self.models, policy=model_policy)
        self.classifier = TaskClassifier(llm)
        self.clarifier = Clarifier(llm)
        self.planner = Planner(config, self.skills, self.learnings)
        self.generator = ResponseGenerator(self.router)
        self.engine = ExecutionEngine(config, self.methods, self.failures, sleep=sleep)
        self.verifier = verifier or OutcomeVerifier(llm)
        self.strikes = StrikeLoop(self.learnings)
        self.cascade = CascadeCoordinator(config.cascade_threshold_pct, self.http, llm, outbox)
        self.channels = (
            ChannelDispatcher(transport, InputChannel(config.default_channel), destinations)
            if transport is not None else None
        )

        self.events = EventSink()
        self.events.subscribe("task_finished", self._learn_sequence)
        self.events.subscribe("task_finished", self._record_difficulty)

        self._semaphore = asyncio.Semaphore(config.max_concurrent_tasks)

    async def close(self) -> None:
        if self._owns_http:
            await self.http.aclose()

    # ─── Intake ───────────────────────────────────────────────────────

    async def process_incoming(
        self,
        request: TaskRequest,
        mode: ConfirmationMode = ConfirmationMode.UNCLEAR,
        facts: Optional[list[str]] = None,
    ) -> TaskResult:
        """Entry point for a new request from any channel."""
        task = Task.from_request(request)
        task.facts = list(facts or [])
        self.tasks.create(task)
        try:
            text = f"{request.subject}\n{request.body}".strip()
            classification = await self.classifier.classify(text)
            clarified = await self.clarifier.clarify(text, task.facts, mode)

            intent = clarified.intent
            if classification.task_type != "general":
                intent.task_type = classification.task_type
            fields = dict(task_type=intent.task_type, intent=intent, confidence=clarified.confidence)

            if confirmation_required(clarified, mode, intent.task_type):
                message = format_confirmation_message(clarified)
                self.tasks.transition(task, TaskStatus.AWAITING_CONFIRMATION, response=message, **fields)
                await self._send(task, message)
                return self._result(task, success=False)

            self.tasks.transition(task, TaskStatus.PENDING, **fields)
            return await self.process_task(task)
        except Exception as e:
            return await self._fail(task, e)

    async def handle_confirmation_reply(self, task_id: str, reply: str) -> TaskResult:
        task = self._require(task_id, TaskStatus.AWAITING_CONFIRMATION)
        verdict, text = parse_confirmation_reply(reply)
        logger.info(f"Confirmation reply for {task_id}: {verdict}")

        if verdict == "yes":
            self.tasks.transition(task, TaskStatus.PENDING)
            return await self.process_task(task)

        if verdict == "no":
            self.tasks.transition(task, TaskStatus.CANCELLED, response="Okay, I've cancelled that task.")
            await self._send(task, task.response)
            return self._result(task, success=False)

        body = f"{task.body}\n\nUser clarification: {text}"
        clarified = await self.clarifier.clarify(body, task.facts, ConfirmationMode.ALWAYS)
        message = format_confirmation_message(clarified)
        self.tasks.transition(
            task, TaskStatus.AWAITING_CONFIRMATION,
            body=body, intent=clarified.intent, confidence=clarified.confidence,
            task_type=clarified.intent.task_type if task.task_type == "general" else task.task_type,
            response=message,
        )
        await self._send(task, message)
        return self._result(task, success=False)

    async def handle_verification_code(self, task_id: str, code: str) -> TaskResult:
        """Resume a paused task from its checkpoint with the user's code."""
        task = self._require(task_id, TaskStatus.AWAITING_INPUT)
        self.tasks.transition(task, TaskStatus.PROCESSING)
        try:
            return await self._run(task, verification_code=code.strip())
        except Exception as e:
            return await self._fail(task, e)

    async def process_task(self, task: Task) -> TaskResult:
        """Run a pending task to a terminal (or paused) state."""
        try:
            self.tasks.transition(task, TaskStatus.PROCESSING)
            return await self._run(task)
        except Exception as e:
            return await self._fail(task, e)

    async def run_many(self, requests: list[TaskRequest],
                       mode: ConfirmationMode = ConfirmationMode.NEVER) -> list[TaskResult]:
        """Process independent requests concurrently, bounded by max_concurrent_tasks."""
        async def one(request: TaskRequest) -> TaskResult:
            async with self._semaphore:
                return await self.process_incoming(request, mode)

        return list(await asyncio.gather(*(one(r) for r in requests)))

    # ─── Pipeline ─────────────────────────────────────────────────────

    async def _run(self, task: Task, verification_code: Optional[str] = None) -> TaskResult:
        started = time.monotonic()
        ledger = CostLedger(self.config.cost_ceiling_usd, spent=task.cost)
        classification = self._classification(task)
        domains = classification.domains
        domain = domains[0] if domains else ""

        prediction = self._predict(domain, task.task_type)
        strategy = await self._strategy(task, prediction)
        intent = create_locked_intent(task.owner_id, task.task_type, task.intent.goal or task.body,
                                      allowed_domains=domains)
        validator = ActionValidator(intent)
        tier = tier_for(task.task_type)
        if prediction is not None and prediction.strike_hint > tier.max_attempts:
            logger.info(f"{domain} predicted {prediction.difficulty}, allowing {prediction.strike_hint} strikes")
            tier = replace(tier, max_attempts=prediction.strike_hint)

        resuming = verification_code is not None
        plan: Optional[ExecutionPlan] = None
        text = task.response if resuming else ""
        if resuming:
            actions = list(task.pending_actions)
            start_index = max([task.checkpoint] + [r.step_index for r in task.results]) + 1
        else:
            plan = self.planner.plan(task.id, classification)
            self.tasks.save_plan(plan)
            actions, text = await self._initial_actions(task, plan, intent, domains, strategy, ledger)
            start_index = 0
            task.pending_actions = actions
            task.results = []

        async with AsyncExitStack() as stack:
            session = None
            if any(a.kind in BROWSER_KINDS for a in actions):
                session = await stack.enter_async_context(open_session(self.session_factory, domain or None))
            ctx = ExecutionContext(task.id, task.owner_id, session, self.skills, self.outbox, self.http)

            async def checkpoint(index: int, result: ActionResult) -> None:
                task.checkpoint = index
                task.cost = ledger.spent
                self.tasks.save_progress(task)

            report = await self.engine.execute(
                actions, ctx, validator, ledger,
                start_index=start_index, verification_code=verification_code,
                on_result=self._log_to(task, 1), on_checkpoint=checkpoint,
            )
            task.cost = ledger.spent

            if report.stopped_reason == "awaiting_input":
                return await self._pause_for_code(task, text, report)

            outcome = await self._verify(task, intent, domains, tier, ctx, validator, ledger,
                                         AttemptState(merge_results([], task.results), text), strategy)
            view = outcome.best.results
            text = outcome.best.text

            retry = self._session_retry(task, view, outcome.strikes_used, validator, ledger)
            if prediction is not None and prediction.recommended_method == "email_fallback":
                logger.info(f"{domain} rarely succeeds in a browser, skipping session retries for {task.id}")
                retry = None
            cascade = await self.cascade.run(
                task, action_success_rate(view),
                domains=domains,
                retry=retry,
                ledger=ledger,
                gathered="\n".join(ctx.extracted),
            )
            if cascade.results:
                view = merge_results(view, cascade.results)

        budget_hit = report.stopped_reason == "budget_exceeded" or outcome.aborted_for_cost or ledger.exceeded
        final = TaskStatus.COMPLETED if outcome.passed else TaskStatus.NEEDS_REVIEW
        response = self._compose(text, plan, outcome, cascade, budget_hit)
        shortfall = outcome.shortfall(task.id)
        if budget_hit:
            error = "budget_exceeded"
        elif shortfall is not None:
            error = f"{shortfall.category}: {shortfall.message}"
            logger.warning(f"Task {task.id} needs review: {shortfall.message}")
        else:
            error = None
        self.tasks.transition(
            task, final,
            response=response,
            cost=ledger.spent,
            verification=VerificationOutcome(outcome.passed, outcome.best_score, outcome.strikes_used,
                                              outcome.needs_review, tier.name),
            cascade_tier=cascade.tier_reached,
            error=error,
        )
        if budget_hit:
            self.tasks.append_audit(task.id, f"Cost ceiling reached at ${ledger.spent:.4f}")
        logger.info(
            f"Task {task.id} {final.value}: score={outcome.best_score} strikes={outcome.strikes_used} "
            f"cascade={cascade.tier_reached or '-'} cost=${ledger.spent:.4f}"
        )

        await self._send(task, response)
        self.events.record(TaskEvent("task_finished", task.id, task.owner_id, {
            "domain": domain,
            "task_type": task.task_type,
            "actions": [r.action for r in view if r.success],
            "success": outcome.passed,
            "duration_ms": int((time.monotonic() - started) * 1000),
            "cost": ledger.spent,
            "strikes": outcome.strikes_used,
        }))
        await self.events.emit_all()
        return self._result(task, success=outcome.passed, actions=view)

    async def _initial_actions(self, task: Task, plan: ExecutionPlan, intent: LockedIntent, domains: list[str],
                               strategy: GenerationStrategy, ledger: CostLedger) -> tuple[list[Action], str]:
        planned = [s.action for s in plan.steps if s.action is not None]
        if planned:
            return planned, ""
        hints = self._proven_hints(domains, task.task_type)
        generated = await self.generator.generate(
            task,
            allowed=intent.allowed_actions - intent.forbidden_actions,
            domains=domains,
            strategy=strategy,
            hints=hints,
            facts=task.facts,
            ledger=ledger,
        )
        if generated.rejected:
            self.tasks.append_audit(task.id, f"Dropped {len(generated.rejected)} malformed actions")
        return generated.actions, generated.text

    async def _verify(self, task: Task, intent: LockedIntent, domains: list[str], tier: QualityTier,
                      ctx: ExecutionContext, validator: ActionValidator, ledger: CostLedger,
                      first: AttemptState, strategy: GenerationStrategy) -> StrikeOutcome:
        goal = task.intent.goal or task.body
        current = {"state": first, "actions": list(task.pending_actions)}

        async def verify(state: AttemptState, attempt: int):
            return await self.verifier.verify(task.task_type, goal, Evidence.from_results(state.results, state.text), tier)

        async def rerun(plan: Reattempt) -> AttemptState:
            previous: AttemptState = current["state"]
            # an over-budget owner stays on economy until the strongest tier
            gen_strategy = plan.strategy
            if strategy is GenerationStrategy.ECONOMY and plan.strategy is GenerationStrategy.STANDARD:
                gen_strategy = GenerationStrategy.ECONOMY
            generated = await self.generator.generate(
                task,
                allowed=intent.allowed_actions - intent.forbidden_actions,
                domains=domains,
                strategy=gen_strategy,
                hints=plan.hints,
                facts=task.facts,
                history=plan.history,
                ledger=ledger,
            )
            if generated.error or not generated.actions:
                state = AttemptState(previous.results, generated.text or previous.text)
                current["state"] = state
                return state

            only: Optional[set[int]] = None
            if plan.failed_only:
                failed = {r.step_index for r in previous.results
                          if not r.success and r.error_category != "security_rejection"}
                only = failed | set(range(len(current["actions"]), len(generated.actions)))
            report: ExecutionReport = await self.engine.execute(
                generated.actions, ctx, validator, ledger,
                only_indices=only, on_result=self._log_to(task, plan.attempt),
            )
            results = merge_results(previous.results, report.results) if plan.failed_only else report.results
            state = AttemptState(results, generated.text or previous.text)
            current["state"], current["actions"] = state, generated.actions
            task.pending_actions = generated.actions
            task.cost = ledger.spent
            self.tasks.save_progress(task)
            return state

        return await self.strikes.run(
            first, tier=tier, ledger=ledger, verify=verify, rerun=rerun,
            domain=domains[0] if domains else "", task_type=task.task_type,
        )

    def _session_retry(self, task: Task, best: list[ActionResult], attempt: int,
                       validator: ActionValidator, ledger: CostLedger):
        async def retry(state_key: Optional[str]) -> list[ActionResult]:
            failed = {r.step_index for r in best
                      if not r.success and r.error_category != "security_rejection"}
            if not failed or not task.pending_actions:
                return []
            async with open_session(self.session_factory, state_key) as session:
                ctx = ExecutionContext(task.id, task.owner_id, session, self.skills, self.outbox, self.http)
                report = await self.engine.execute(task.pending_actions, ctx, validator, ledger,
                                                   only_indices=failed, on_result=self._log_to(task, attempt))
            return report.results
        return retry

    @staticmethod
    def _log_to(task: Task, attempt: int) -> ResultHook:
        """Append every executed result to the task's log, tagged with its strike attempt."""
        def log(result: ActionResult) -> None:
            result.attempt = attempt
            task.results.append(result)
        return log

    async def _pause_for_code(self, task: Task, text: str, report: ExecutionReport) -> TaskResult:
        self.tasks.transition(task, TaskStatus.AWAITING_INPUT, response=text, checkpoint=max(report.checkpoint, task.checkpoint))
        self.tasks.append_audit(task.id, f"Paused before step {report.pending_index} for a verification code")
        await self._send(task, CODE_REQUEST)
        return TaskResult(task.id, False, CODE_REQUEST, task.status, merge_results([], task.results))

    # ─── Helpers ──────────────────────────────────────────────────────

    def _classification(self, task: Task) -> Classification:
        domains = extract_domains(f"{task.subject}\n{task.body}")
        return Classification(
            task_type=task.task_type,
            goal=task.intent.goal or task.body,
            needs_browser=task.task_type in BROWSER_TASK_TYPES or bool(domains),
            domains=domains,
        )

    def _predict(self, domain: str, task_type: str) -> Optional[DifficultyPrediction]:
        if not domain:
            return None
        try:
            prediction = self.difficulty.predict(domain, task_type)
        except Exception as e:
            logger.debug(f"Difficulty prediction failed (non-fatal): {e}")
            return None
        return None if prediction.difficulty == "unknown" else prediction

    async def _strategy(self, task: Task, prediction: Optional[DifficultyPrediction]) -> GenerationStrategy:
        status = await self.budget.check_budget(task.owner_id)
        if status.over_budget:
            logger.info(f"Owner {task.owner_id} over budget, using economy generation for {task.id}")
            return GenerationStrategy.ECONOMY
        if prediction is not None and prediction.difficulty == "nightmare":
            logger.info(f"Predicted nightmare ({prediction.predicted_success:.0f}%), using strongest generation")
            return GenerationStrategy.STRONGEST
        return GenerationStrategy.STANDARD

    def _proven_hints(self, domains: list[str], task_type: str) -> list[str]:
        try:
            return self.learnings.proven_hints(domains[0] if domains else "*", task_type)
        except Exception as e:
            logger.debug(f"Hint lookup failed (non-fatal): {e}")
            return []

    @staticmethod
    def _compose(text: str, plan: Optional[ExecutionPlan], outcome: StrikeOutcome,
                 cascade: CascadeOutcome, budget_hit: bool) -> str:
        parts = [text.strip() or "Here's what I was able to do."]
        if budget_hit:
            parts.append(BUDGET_NOTE)
        if cascade.triggered and cascade.appendix():
            parts.append(cascade.appendix())
        if plan is not None and plan.missing_auth:
            providers = ", ".join(sorted({g.provider for g in plan.missing_auth}))
            parts.append(f"Tip: connect {providers} so I can do this directly next time.")
        if outcome.needs_review:
            parts.append(REVIEW_NOTE)
        return "\n\n".join(parts)

    def _require(self, task_id: str, status: TaskStatus) -> Task:
        task = self.tasks.get(task_id)
        if task is None:
            raise InvalidTransition(f"Unknown task {task_id}")
        if task.status is not status:
            raise InvalidTransition(f"Task {task_id} is {task.status.value}, not {status.value}")
        return task

    async def _send(self, task: Task, text: str) -> None:
        if self.channels is None:
            return
        await self.channels.send_via_channel(task.channel, task.owner_id, task.origin, text)

    async def _fail(self, task: Task, error: Exception) -> TaskResult:
        logger.error(f"Task {task.id} failed: {error}", exc_info=True)
        current = self.tasks.get(task.id)
        if current is not None:
            task.status = current.status
        if not task.status.is_terminal and TaskStatus.FAILED in TRANSITIONS[task.status]:
            try:
                self.tasks.transition(task, TaskStatus.FAILED, response=USER_FACING_ERROR,
                                      error=f"{type(error).__name__}: {error}"[:500])
            except InvalidTransition as e:
                logger.warning(f"Could not mark {task.id} failed: {e}")
        else:
            self.tasks.append_audit(task.id, f"Error while {task.status.value}: {type(error).__name__}")
        await self._send(task, USER_FACING_ERROR)
        return TaskResult(task.id, False, USER_FACING_ERROR, task.status,
                          merge_results([], task.results), error=USER_FACING_ERROR)

    @staticmethod
    def _result(task: Task, success: bool, actions: Optional[list[ActionResult]] = None) -> TaskResult:
        if actions is None:
            actions = merge_results([], task.results)
        return TaskResult(task.id, success, task.response, task.status, list(actions))

    # ─── Learning events ──────────────────────────────────────────────

    async def _learn_sequence(self, event: TaskEvent) -> None:
        domain = event.payload.get("domain")
        actions = event.payload.get("actions") or []
        if not domain or not actions:
            return
        self.learnings.record_sequence(domain, event.payload["task_type"], actions, event.payload["success"])

    async def _record_difficulty(self, event: TaskEvent) -> None:
        if not event.payload.get("domain"):
            return
        p = event.payload
        self.difficulty.record(p["domain"], p["task_type"], p["success"], p["duration_ms"], p["cost"], p["strikes"])
