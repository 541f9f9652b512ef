"""Execution engine — runs a task's actions one at a time, left to right.

Per action:
  1. validate against the locked intent (rejections are recorded, never retried)
  2. pre-apply a remembered fix from failure memory
  3. try method variants in ranked order
  4. on failure, back off once and retry with the same parameters
  5. record method performance and failure memory
  6. checkpoint after every success
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field, replace
from typing import Awaitable, Callable, Optional

from pilot.common.config import PipelineConfig
from pilot.common.cost import CostLedger
from pilot.common.errors import BudgetExceeded, SecurityRejection, TransientExecutionFailure
from pilot.common.protocol import Action, ActionResult, action_success_rate
from pilot.executor.browser import MethodUnavailable, domain_of
from pilot.executor.dispatch import ExecutionContext, dispatch
from pilot.guardian.validator import ActionValidator, action_domain
from pilot.ranking.ranker import DEFAULT_METHOD_ORDER, RankingPolicy, rank_methods
from stores.failure_memory import FailureEntry, FailureMemory
from stores.rankings import MethodPerformanceStore

logger = logging.getLogger(__name__)

VERIFICATION_CODE_TOKEN = "{{verification_code}}"
MAX_METHODS_PER_ATTEMPT = 3

CheckpointHook = Callable[[int, ActionResult], Awaitable[None]]
ResultHook = Callable[[ActionResult], None]


@dataclass
class ExecutionReport:
    results: list[ActionResult] = field(default_factory=list)
    checkpoint: int = -1
    stopped_reason: Optional[str] = None  # "budget_exceeded" | "awaiting_input"
    pending_index: Optional[int] = None

    @property
    def success_rate(self) -> float:
        return action_success_rate(self.results)

    @property
    def failed_indices(self) -> set[int]:
        return {r.step_index for r in self.results if not r.success and r.error_category != "security_rejection"}


class ExecutionEngine:
    def __init__(
        self,
        config: PipelineConfig,
        methods: Optional[MethodPerformanceStore] = None,
        failures: Optional[FailureMemory] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.config = config
        self.methods = methods
        self.failures = failures
        self._sleep = sleep
        self.policy = RankingPolicy(
            min_samples=config.method_min_samples,
            reorder_gap_pct=config.reorder_gap_pct,
            demote_below_pct=config.demote_below_pct,
            demote_min_attempts=config.demote_min_attempts,
        )

    async def execute(
        self,
        actions: list[Action],
        ctx: ExecutionContext,
        validator: ActionValidator,
        ledger: CostLedger,
        *,
        start_index: int = 0,
        only_indices: Optional[set[int]] = None,
        verification_code: Optional[str] = None,
        on_result: Optional[ResultHook] = None,
        on_checkpoint: Optional[CheckpointHook] = None,
    ) -> ExecutionReport:
        report = ExecutionReport(checkpoint=start_index - 1)

        for index in range(start_index, len(actions)):
            if only_indices is not None and index not in only_indices:
                continue
            try:
                ledger.check(ctx.task_id)
            except BudgetExceeded as e:
                logger.warning(f"Task {ctx.task_id}: {e.message}, stopping before step {index}")
                report.stopped_reason = e.category
                break

            action = actions[index]
            if VERIFICATION_CODE_TOKEN in action.value or any(
                VERIFICATION_CODE_TOKEN in str(v) for v in action.params.values()
            ):
                if not verification_code:
                    logger.info(f"Task {ctx.task_id}: step {index} needs a verification code, pausing")
                    report.stopped_reason = "awaiting_input"
                    report.pending_index = index
                    break
                action = _with_code(action, verification_code)

            result = await self._run_step(index, action, ctx, validator)
            ledger.add(result.cost, f"action:{action.kind.value}")
            report.results.append(result)
            if on_result is not None:
                on_result(result)

            if result.success:
                report.checkpoint = index
                if on_checkpoint is not None:
                    await on_checkpoint(index, result)

        logger.info(
            f"Task {ctx.task_id}: executed {len(report.results)} actions, "
            f"{report.success_rate:.0f}% succeeded"
        )
        return report

    # ─── Single step ──────────────────────────────────────────────────

    async def _run_step(self, index: int, action: Action, ctx: ExecutionContext,
                        validator: ActionValidator) -> ActionResult:
        current_domain = await self._current_domain(ctx)
        try:
            validator.validate(action, current_domain)
        except SecurityRejection as e:
            return ActionResult(action, index, False, error=e.message, error_category=e.category, method="none")

        domain = action_domain(action, current_domain)
        fix = self._lookup_fix(domain, action)
        attempt_action = action
        methods = self._method_order(domain, action)
        if fix is not None:
            if fix.solution_selector:
                attempt_action = replace(action, params={**action.params, "selector": fix.solution_selector})
            if fix.solution_method:
                methods = [fix.solution_method] + [m for m in methods if m != fix.solution_method]
            logger.info(f"Pre-applying known fix for {action.kind.value} on {domain}: {fix.solution_method}")

        started = time.monotonic()
        result = await self._attempt(index, attempt_action, methods, ctx, domain)
        if not result.success and result.error_category != "security_rejection":
            await self._sleep(self.config.retry_backoff_s)
            result = await self._attempt(index, attempt_action, methods, ctx, domain)
        result.duration_ms = int((time.monotonic() - started) * 1000)

        self._remember_outcome(domain, action, methods, result, fix)
        return result

    async def _attempt(self, index: int, action: Action, methods: list[str],
                       ctx: ExecutionContext, domain: str) -> ActionResult:
        last_error = "No method available"
        category = "transient_failure"
        tried = 0
        for method in methods:
            if tried >= MAX_METHODS_PER_ATTEMPT:
                break
            started = time.monotonic()
            try:
                output = await asyncio.wait_for(dispatch(ctx, action, method), timeout=self.config.step_timeout_s)
            except MethodUnavailable:
                continue
            except SecurityRejection as e:
                logger.warning(f"SECURITY: {action.kind.value} refused at dispatch: {e.message}")
                return ActionResult(action, index, False, error=e.message,
                                    error_category=e.category, method=method)
            except asyncio.TimeoutError:
                tried += 1
                last_error, category = f"Timed out after {self.config.step_timeout_s}s", "timeout"
                self._record_method(domain, action, method, False, started)
                continue
            except Exception as e:
                tried += 1
                last_error = e.message if isinstance(e, TransientExecutionFailure) else str(e)
                category = "transient_failure"
                self._record_method(domain, action, method, False, started)
                logger.debug(f"{action.kind.value} via {method} failed: {last_error}")
                continue

            self._record_method(domain, action, method, True, started)
            cost = float(output.pop("cost", 0.0) or 0.0) if isinstance(output, dict) else 0.0
            return ActionResult(action, index, True, output=output or {}, method=method, cost=cost)

        return ActionResult(action, index, False, error=last_error[:500], error_category=category,
                            method=methods[0] if methods else "standard")

    # ─── Ranking & failure memory ─────────────────────────────────────

    def _method_order(self, domain: str, action: Action) -> list[str]:
        kind = action.kind.value
        if kind not in DEFAULT_METHOD_ORDER:
            return ["standard"]
        if self.methods is None or not domain:
            return list(DEFAULT_METHOD_ORDER[kind])
        try:
            return rank_methods(kind, self.methods.stats(domain, kind), self.policy)
        except Exception as e:
            logger.warning(f"Method ranking unavailable, using defaults: {e}")
            return list(DEFAULT_METHOD_ORDER[kind])

    def _record_method(self, domain: str, action: Action, method: str, success: bool, started: float) -> None:
        if self.methods is None or not domain or action.kind.value not in DEFAULT_METHOD_ORDER:
            return
        try:
            self.methods.record(domain, action.kind.value, method, success, int((time.monotonic() - started) * 1000))
        except Exception as e:
            logger.debug(f"Method performance record failed (non-fatal): {e}")

    def _lookup_fix(self, domain: str, action: Action) -> Optional[FailureEntry]:
        if self.failures is None or not domain or not action.target:
            return None
        try:
            return self.failures.lookup(domain, action.kind.value, action.target)
        except Exception as e:
            logger.debug(f"Failure memory lookup failed (non-fatal): {e}")
            return None

    def _remember_outcome(self, domain: str, action: Action, methods: list[str],
                          result: ActionResult, fix: Optional[FailureEntry]) -> None:
        if self.failures is None or not domain or not action.target:
            return
        if result.error_category == "security_rejection":
            return
        try:
            if fix is not None:
                self.failures.record_outcome(fix, result.success)
                if not result.success:
                    self.failures.record_failure(domain, action.kind.value, action.target,
                                                 result.error or "", result.method)
            elif result.success and methods and result.method != methods[0]:
                self.failures.record_solution(domain, action.kind.value, action.target, result.method)
            elif not result.success:
                self.failures.record_failure(domain, action.kind.value, action.target,
                                             result.error or "", result.method)
        except Exception as e:
            logger.debug(f"Failure memory update failed (non-fatal): {e}")

    @staticmethod
    async def _current_domain(ctx: ExecutionContext) -> str:
        if ctx.session is None:
            return ""
        try:
            return domain_of(await ctx.session.current_url())
        except Exception:
            return ""


def _with_code(action: Action, code: str) -> Action:
    params = {
        k: v.replace(VERIFICATION_CODE_TOKEN, code) if isinstance(v, str) else v
        for k, v in action.params.items()
    }
    return replace(action, params=params)
