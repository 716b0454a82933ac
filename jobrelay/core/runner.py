# jobrelay/core/runner.py
"""
Step loop shared by the worker and the inline (sync) dispatch path.

The runner calls a job type's step function until it returns a final
outcome, a budget is exceeded, or a step fails for good. It never touches
the store itself: the worker passes an ``emit`` callback that persists each
non-final step, and writes the terminal state from the returned RunReport.
"""

from __future__ import annotations

import asyncio
import inspect
import random
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from jobrelay.core.codec.serde import SerializationError, to_jsonable
from jobrelay.core.exception_mapper import resolve_exception_error_code
from jobrelay.core.exceptions import (
    JobErrorCode,
    JobRelayRuntimeError,
    TerminalWorkflowFailure,
    TransientStepFailure,
)
from jobrelay.core.logging import get_logger
from jobrelay.core.models.app import AppConfig
from jobrelay.core.models.jobs import StepContext, StepOutcome, StepRetryPolicy
from jobrelay.core.registry.job_types import JobTypeDefinition

logger = get_logger('runner')

GENERIC_FAILURE_MESSAGE = 'Job failed while processing a step'
STEP_BUDGET_MESSAGE = 'Job exceeded its step budget'
TIME_BUDGET_MESSAGE = 'Job exceeded its time budget'
NOT_SERIALIZABLE_MESSAGE = 'Job produced output that could not be stored'
INVALID_OUTCOME_MESSAGE = 'Job step returned an invalid outcome'

# Used for TransientStepFailure when the job type declares no retry policy
DEFAULT_RETRY_POLICY = StepRetryPolicy()

EmitFn = Callable[[StepOutcome], Awaitable[bool]]


@dataclass
class RunReport:
    """
    What a run ended with.

    - ok: the job produced a final outcome and `result` holds its JSON form
    - final_outcome: the final StepOutcome (detail already reduced to JSON)
    - error / error_code: public message and machine code on failure
    - steps: number of steps that returned an outcome
    - aborted: `emit` asked the runner to stop; nothing terminal should be written
    """

    ok: bool
    result: Any = None
    final_outcome: Optional[StepOutcome] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    steps: int = 0
    aborted: bool = False

    @classmethod
    def failed(cls, message: str, code: JobErrorCode | str, *, steps: int) -> 'RunReport':
        code_value = code.value if isinstance(code, JobErrorCode) else code
        return cls(ok=False, error=message, error_code=code_value, steps=steps)


def calculate_retry_delay_ms(attempt: int, policy: StepRetryPolicy) -> float:
    """Delay in milliseconds before retry number ``attempt`` (1-based)."""
    intervals = policy.intervals_ms

    if policy.backoff_strategy == 'fixed':
        # Clamped to the last interval when attempts outnumber intervals
        base_delay = float(intervals[min(attempt - 1, len(intervals) - 1)])
    else:
        base_delay = float(intervals[0] * (2 ** (attempt - 1)))

    # +-25%
    if policy.jitter:
        jitter_range = base_delay * 0.25
        base_delay += random.uniform(-jitter_range, jitter_range)

    return max(0.0, base_delay)


class _StepTimedOut(Exception):
    pass


class StepRunner:
    """Runs one job type's step loop under its budgets and retry policy."""

    def __init__(self, definition: JobTypeDefinition, app_config: Optional[AppConfig] = None) -> None:
        self.definition = definition
        self.options = definition.options
        self._global_mapper = app_config.exception_mapper if app_config else None
        self._global_default = (
            app_config.default_unhandled_error_code
            if app_config
            else JobErrorCode.UNHANDLED_EXCEPTION.value
        )

    async def run(
        self,
        payload: dict[str, Any],
        *,
        emit: Optional[EmitFn] = None,
        job_id: Optional[str] = None,
    ) -> RunReport:
        """Execute steps until a final outcome or a terminal failure.

        Exceptions raised by step functions never escape; they end up in the
        report. Cancellation propagates.
        """
        started = time.monotonic()
        deadline = started + self.options.time_budget_ms / 1000.0
        ctx = StepContext(job_type=self.definition.name, payload=payload, job_id=job_id)
        steps = 0

        while True:
            if steps >= self.options.max_steps:
                logger.warning(
                    f'Job {job_id or "<inline>"} ({self.definition.name}) hit max_steps={self.options.max_steps}'
                )
                return RunReport.failed(STEP_BUDGET_MESSAGE, JobErrorCode.BUDGET_EXCEEDED, steps=steps)
            if time.monotonic() >= deadline:
                return self._time_budget_failure(job_id, steps)

            ctx.step_index = steps
            ctx.elapsed_ms = int((time.monotonic() - started) * 1000)

            step_result = await self._run_step(ctx, deadline, steps)
            if isinstance(step_result, RunReport):
                return step_result

            try:
                outcome = _to_stored_outcome(step_result)
            except SerializationError as exc:
                logger.error(f'Job {job_id or "<inline>"} step {steps} output not serializable: {exc}')
                return RunReport.failed(
                    NOT_SERIALIZABLE_MESSAGE, JobErrorCode.RESULT_NOT_SERIALIZABLE, steps=steps
                )
            steps += 1

            if outcome.done:
                # A completed job must carry a result
                if outcome.result is None:
                    logger.error(
                        f'Job {job_id or "<inline>"} ({self.definition.name}) returned a final outcome without a result'
                    )
                    return RunReport.failed(
                        INVALID_OUTCOME_MESSAGE, JobErrorCode.INVALID_STEP_OUTCOME, steps=steps
                    )
                return RunReport(ok=True, result=outcome.result, final_outcome=outcome, steps=steps)

            if emit is not None and not await emit(outcome):
                logger.info(f'Job {job_id} step loop stopped by emitter after {steps} step(s)')
                return RunReport(ok=False, steps=steps, aborted=True)

            ctx.outputs.append(outcome.output)

    async def _run_step(
        self, ctx: StepContext, deadline: float, steps: int
    ) -> StepOutcome | RunReport:
        """One step including its retries. Returns a RunReport on terminal failure."""
        policy = self.options.retry_policy or DEFAULT_RETRY_POLICY
        attempt = 1
        job_label = ctx.job_id or '<inline>'

        while True:
            ctx.attempt = attempt
            try:
                outcome = await self._call_with_deadline(ctx, deadline)
            except asyncio.CancelledError:
                raise
            except _StepTimedOut:
                return self._time_budget_failure(ctx.job_id, steps)
            except TerminalWorkflowFailure as exc:
                logger.warning(f'Job {job_label} step {ctx.step_index} failed: [{exc.code}] {exc.public_message}')
                return RunReport.failed(exc.public_message, exc.code, steps=steps)
            except Exception as exc:
                code = resolve_exception_error_code(
                    exc,
                    self.definition.exception_mapper,
                    self._global_mapper,
                    self.definition.default_unhandled_error_code,
                    self._global_default,
                )
                transient = isinstance(exc, TransientStepFailure) or policy.retries_code(code)
                if not transient:
                    logger.exception(
                        f'Job {job_label} step {ctx.step_index} raised {type(exc).__name__} (code={code})'
                    )
                    message = (
                        exc.public_message
                        if isinstance(exc, JobRelayRuntimeError)
                        else GENERIC_FAILURE_MESSAGE
                    )
                    return RunReport.failed(message, code, steps=steps)

                if attempt > policy.max_retries:
                    logger.error(
                        f'Job {job_label} step {ctx.step_index} gave up after {attempt} attempts '
                        f'(last: {type(exc).__name__}: {exc})'
                    )
                    return RunReport.failed(
                        f'Job step kept failing after {attempt} attempts',
                        JobErrorCode.RETRIES_EXHAUSTED,
                        steps=steps,
                    )

                delay_s = calculate_retry_delay_ms(attempt, policy) / 1000.0
                remaining = deadline - time.monotonic()
                if delay_s >= remaining:
                    return self._time_budget_failure(ctx.job_id, steps)
                logger.warning(
                    f'Job {job_label} step {ctx.step_index} transient failure '
                    f'({type(exc).__name__}: {exc}); retry {attempt}/{policy.max_retries} in {delay_s:.2f}s'
                )
                await asyncio.sleep(delay_s)
                attempt += 1
                continue

            if not isinstance(outcome, StepOutcome):
                logger.error(
                    f'Job {job_label} step {ctx.step_index} returned {type(outcome).__name__}, '
                    'expected StepOutcome'
                )
                return RunReport.failed(
                    INVALID_OUTCOME_MESSAGE, JobErrorCode.INVALID_STEP_OUTCOME, steps=steps
                )
            return outcome

    async def _call_with_deadline(self, ctx: StepContext, deadline: float) -> Any:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise _StepTimedOut()
        task = asyncio.ensure_future(self._call_step(ctx))
        try:
            done, _ = await asyncio.wait({task}, timeout=remaining)
        except asyncio.CancelledError:
            task.cancel()
            raise
        if not done:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception:
                logger.debug('Step raised while being cancelled for its time budget', exc_info=True)
            raise _StepTimedOut()
        return task.result()

    async def _call_step(self, ctx: StepContext) -> Any:
        step = self.definition.step
        if inspect.iscoroutinefunction(step):
            return await step(ctx)
        value = await asyncio.to_thread(step, ctx)
        if inspect.isawaitable(value):
            value = await value
        return value

    def _time_budget_failure(self, job_id: Optional[str], steps: int) -> RunReport:
        logger.warning(
            f'Job {job_id or "<inline>"} ({self.definition.name}) exceeded '
            f'time_budget_ms={self.options.time_budget_ms}'
        )
        return RunReport.failed(TIME_BUDGET_MESSAGE, JobErrorCode.BUDGET_EXCEEDED, steps=steps)


def _to_stored_outcome(outcome: StepOutcome) -> StepOutcome:
    """Reduce detail and result to JSON so they can be written as-is."""
    return StepOutcome(
        step_label=outcome.step_label,
        percent=outcome.percent,
        detail=to_jsonable(outcome.detail),
        output=outcome.output,
        result=to_jsonable(outcome.result),
        done=outcome.done,
    )
