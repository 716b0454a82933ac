# jobrelay/core/worker/worker.py
from __future__ import annotations
import asyncio
import contextlib
import json
import random
import time
import uuid
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from psycopg import Notify

from jobrelay.core.app import JobRelay
from jobrelay.core.brokers.listener import DISPATCH_CHANNEL, PostgresListener
from jobrelay.core.brokers.postgres import PostgresJobStore
from jobrelay.core.brokers.result_types import BrokerResult
from jobrelay.core.exceptions import JobErrorCode, OrchestratorFault
from jobrelay.core.logging import get_logger
from jobrelay.core.models.jobs import JobDispatch, JobInfo, StepOutcome
from jobrelay.core.models.resilience import WorkerResilienceConfig
from jobrelay.core.registry.job_types import NotRegistered
from jobrelay.core.runner import GENERIC_FAILURE_MESSAGE, StepRunner
from jobrelay.core.types.status import JobStatus
from jobrelay.core.utils.db import is_retryable_connection_error
from result import Err, Ok, is_err

from jobrelay.core.worker.config import WorkerConfig

logger = get_logger('worker')

OWNERSHIP_MISMATCH_MESSAGE = 'Job could not be authorized for execution'
UNKNOWN_JOB_TYPE_MESSAGE = 'Job type is not available on this worker'
PROGRESS_WRITE_FAILED_MESSAGE = 'Job failed while recording its progress'
WORKER_SHUTDOWN_MESSAGE = 'Job was interrupted by a worker shutdown'

# Store writes made on behalf of a running job (progress, terminal state)
_JOB_WRITE_MAX_ATTEMPTS = 4
_JOB_WRITE_BASE_DELAY_S = 0.5
_JOB_WRITE_MAX_DELAY_S = 10.0

_RETENTION_CLEANUP_INTERVAL_S = 3600.0
_REAPER_MAX_PERMANENT_FAILURES = 3


@dataclass
class _RetryBackoff:
    initial_ms: int
    max_ms: int
    max_attempts: int
    attempts: int = 0

    def reset(self) -> None:
        self.attempts = 0

    def can_retry(self) -> bool:
        match self.max_attempts:
            case 0:
                return True
            case _:
                return self.attempts < self.max_attempts

    def next_delay_seconds(self) -> float:
        self.attempts += 1
        exponent = max(0, self.attempts - 1)
        base_ms = min(self.max_ms, int(self.initial_ms * (2**exponent)))
        jitter_range = base_ms * 0.25
        delay_ms = base_ms + random.uniform(-jitter_range, jitter_range)
        return max(0.1, delay_ms / 1000.0)


def _job_write_delay(attempt: int) -> float:
    return min(_JOB_WRITE_MAX_DELAY_S, _JOB_WRITE_BASE_DELAY_S * (2 ** (attempt - 1)))


def parse_dispatch(note: Notify) -> Optional[JobDispatch]:
    """``{"job_id", "owner_id"}`` from the dispatch channel, or None if malformed."""
    try:
        data = json.loads(note.payload)
    except ValueError:
        logger.warning(f'Ignoring malformed dispatch notice: {note.payload!r}')
        return None
    if (
        not isinstance(data, dict)
        or not isinstance(data.get('job_id'), str)
        or not isinstance(data.get('owner_id'), str)
    ):
        logger.warning(f'Ignoring dispatch notice without job_id/owner_id: {note.payload!r}')
        return None
    return JobDispatch(job_id=data['job_id'], owner_id=data['owner_id'])


@dataclass
class _EmitState:
    lost: bool = False
    store_failed: bool = False


class Worker:
    """
    Async background worker that:
      - Subscribes to the dispatch channel and claims each announced job (CAS)
      - Sweeps orphaned PENDING jobs so a lost NOTIFY never strands one
      - Runs step loops concurrently, bounded by max_concurrent_jobs
      - Writes exactly one terminal state per job, with its final event
      - Heartbeats held jobs and fails stale RUNNING ones (reaper)
    """

    def __init__(
        self,
        app: JobRelay,
        store: PostgresJobStore,
        listener: Optional[PostgresListener] = None,
        cfg: Optional[WorkerConfig] = None,
    ):
        self.app = app
        self.store = store
        self.listener = listener if listener is not None else store.listener
        self.cfg = cfg or WorkerConfig.from_app_config(app.config)
        self.worker_id = str(uuid.uuid4())
        self._resilience = self.cfg.resilience_config or WorkerResilienceConfig()
        self._stop = asyncio.Event()
        self._slots = asyncio.Semaphore(self.cfg.max_concurrent_jobs)
        self._service_tasks: set[asyncio.Task[Any]] = set()
        self._job_tasks: set[asyncio.Task[Any]] = set()
        self._held: set[str] = set()
        self._dispatch_queue: Optional[asyncio.Queue[Notify]] = None

    @property
    def held_job_ids(self) -> frozenset[str]:
        """Jobs this worker has claimed and not yet finalized."""
        return frozenset(self._held)

    def request_stop(self) -> None:
        """Request worker to stop gracefully."""
        self._stop.set()

    def _spawn_background(
        self,
        coro: Any,
        *,
        name: str,
        job: bool = False,
    ) -> asyncio.Task[Any]:
        """Create a tracked background task with automatic cleanup."""
        task_group = self._job_tasks if job else self._service_tasks
        task = asyncio.create_task(coro, name=name)
        task_group.add(task)

        def _on_done(t: asyncio.Task[Any]) -> None:
            task_group.discard(t)
            if t.cancelled():
                return
            exc = t.exception()
            if exc is not None:
                logger.error(f'Background task {t.get_name()!r} failed: {exc}')

        task.add_done_callback(_on_done)
        return task

    def _make_retry_backoff(self) -> _RetryBackoff:
        return _RetryBackoff(
            initial_ms=self._resilience.db_retry_initial_ms,
            max_ms=self._resilience.db_retry_max_ms,
            max_attempts=self._resilience.db_retry_max_attempts,
        )

    async def _sleep_with_stop(self, delay_seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=delay_seconds)
        except asyncio.TimeoutError:
            return

    async def _handle_retryable_start_error(
        self,
        exc: BaseException,
        backoff: _RetryBackoff,
    ) -> None:
        if not backoff.can_retry():
            logger.error(
                f'Worker start failed after {backoff.attempts} attempts: {exc}'
            )
            raise exc

        await self._release_dispatch_queue()
        delay = backoff.next_delay_seconds()
        logger.error(
            f'Worker start failed: {exc}. Retrying in {delay:.1f}s '
            f'(attempt {backoff.attempts}/{backoff.max_attempts or "inf"})'
        )
        await self._sleep_with_stop(delay)

    async def _start_with_resilience_config(self) -> None:
        backoff = self._make_retry_backoff()
        while not self._stop.is_set():
            try:
                await asyncio.wait_for(self.start(), timeout=30.0)
                return
            except asyncio.TimeoutError as exc:
                await self._handle_retryable_start_error(exc, backoff)
                continue
            except Exception as exc:
                if is_retryable_connection_error(exc):
                    await self._handle_retryable_start_error(exc, backoff)
                    continue
                raise

    # ----- lifecycle -----

    async def start(self) -> None:
        logger.debug(f'Starting worker {self.worker_id}')
        schema_r = await self.store.ensure_schema_initialized()
        if is_err(schema_r):
            err = schema_r.err_value
            raise err.exception or RuntimeError(err.message)

        start_r = await self.listener.start()
        if is_err(start_r):
            err = start_r.err_value
            raise err.exception or RuntimeError(err.message)

        listen_r = await self.listener.listen(DISPATCH_CHANNEL)
        if is_err(listen_r):
            err = listen_r.err_value
            raise err.exception or RuntimeError(err.message)
        self._dispatch_queue = listen_r.ok_value

        logger.info(
            'Worker %s: max_concurrent_jobs=%s, job_types=%s',
            self.worker_id,
            self.cfg.max_concurrent_jobs,
            self.app.list_job_types(),
        )

        self._spawn_background(self._heartbeat_loop(), name='job-heartbeat')
        if self.cfg.recovery_config:
            self._spawn_background(self._reaper_loop(), name='reaper')
            logger.info('Reaper loop started for stale-running recovery')

    async def _release_dispatch_queue(self) -> None:
        if self._dispatch_queue is None:
            return
        queue = self._dispatch_queue
        self._dispatch_queue = None
        try:
            await self.listener.unsubscribe(DISPATCH_CHANNEL, queue)
        except Exception as e:
            logger.error(f'Error unsubscribing from dispatch channel: {e}')

    async def stop(self, *, force: bool = False) -> None:
        self._stop.set()
        if self._service_tasks:
            service_tasks = tuple(self._service_tasks)
            for task in service_tasks:
                task.cancel()
            await asyncio.gather(*service_tasks, return_exceptions=True)
            self._service_tasks.clear()

        # Running jobs get a chance to finish and write their terminal state.
        if self._job_tasks:
            job_tasks = tuple(self._job_tasks)
            if force:
                for task in job_tasks:
                    task.cancel()
                await asyncio.gather(*job_tasks, return_exceptions=True)
            else:
                done, pending = await asyncio.wait(
                    job_tasks, timeout=max(0.0, self.cfg.drain_timeout_s)
                )
                if pending:
                    logger.warning(
                        'Worker stop timed out with %s job(s) still running; cancelling them',
                        len(pending),
                    )
                    for task in pending:
                        task.cancel()
                    await asyncio.gather(*pending, return_exceptions=True)
                if done:
                    await asyncio.gather(*done, return_exceptions=True)
            self._job_tasks.clear()

        await self._release_dispatch_queue()
        logger.info(f'Worker {self.worker_id} stopped')

    # ----- main loop -----

    async def run_forever(self) -> None:
        """Main loop: sweep, wait for dispatch notices, execute."""
        await self._start_with_resilience_config()
        if self._stop.is_set():
            return
        logger.info('Worker started')
        try:
            backoff = self._make_retry_backoff()
            while not self._stop.is_set():
                try:
                    await self._sweep_pending()
                    dispatches = await self._wait_for_dispatches(
                        poll_interval_ms=self._resilience.notify_poll_interval_ms
                    )
                    for dispatch in dispatches:
                        if self._stop.is_set():
                            break
                        await self._launch(dispatch)
                    backoff.reset()
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    if is_retryable_connection_error(exc):
                        if not backoff.can_retry():
                            logger.error(
                                f'Worker loop failed after {backoff.attempts} attempts: {exc}'
                            )
                            raise
                        delay = backoff.next_delay_seconds()
                        logger.error(
                            f'Worker loop error: {exc}. Retrying in {delay:.1f}s '
                            f'(attempt {backoff.attempts}/{backoff.max_attempts or "inf"})'
                        )
                        await self._sleep_with_stop(delay)
                        continue
                    raise
        finally:
            await self.stop()

    async def _wait_for_dispatches(self, poll_interval_ms: int) -> list[JobDispatch]:
        """Wait for dispatch notices (or the poll interval); drain a burst."""
        queue = self._dispatch_queue
        if queue is None:
            await self._sleep_with_stop(poll_interval_ms / 1000.0)
            return []

        get_task = asyncio.create_task(queue.get())
        stop_task = asyncio.create_task(self._stop.wait())
        done, pending = await asyncio.wait(
            [get_task, stop_task],
            return_when=asyncio.FIRST_COMPLETED,
            timeout=max(0.0, poll_interval_ms / 1000.0),
        )
        for p in pending:
            p.cancel()
        for p in pending:
            with contextlib.suppress(asyncio.CancelledError):
                await p

        notes: list[Notify] = []
        # The getter may have completed even if it was cancelled late.
        if get_task.done() and not get_task.cancelled():
            notes.append(get_task.result())
        while len(notes) < self.cfg.coalesce_notifies:
            try:
                notes.append(queue.get_nowait())
            except asyncio.QueueEmpty:
                break

        dispatches: list[JobDispatch] = []
        seen: set[str] = set()
        for note in notes:
            dispatch = parse_dispatch(note)
            if dispatch is not None and dispatch.job_id not in seen:
                seen.add(dispatch.job_id)
                dispatches.append(dispatch)
        return dispatches

    # ----- claim & dispatch -----

    async def _launch(self, dispatch: JobDispatch) -> None:
        """Run ``dispatch`` in the background once a concurrency slot is free."""
        await self._slots.acquire()
        self._spawn_background(
            self._release_after(self.execute(dispatch)),
            name=f'job-{dispatch.job_id}',
            job=True,
        )

    async def _release_after(self, coro: Awaitable[Any]) -> Any:
        try:
            return await coro
        finally:
            self._slots.release()

    async def _sweep_pending(self) -> int:
        """Claim PENDING jobs nobody picked up while slots are free."""
        claimed = 0
        while not self._stop.is_set() and not self._slots.locked():
            await self._slots.acquire()
            match await self.store.claim_next_pending(
                worker_id=self.worker_id, grace_ms=self.cfg.pending_grace_ms
            ):
                case Ok(None):
                    self._slots.release()
                    break
                case Ok(job):
                    claimed += 1
                    logger.info(f'Sweep claimed orphaned job {job.job_id} ({job.job_type})')
                    # No dispatch context on this path: the stored owner is the context.
                    self._spawn_background(
                        self._release_after(self._execute_claimed(job, job.owner_id)),
                        name=f'job-{job.job_id}',
                        job=True,
                    )
                case Err(err):
                    self._slots.release()
                    logger.warning(f'Pending sweep failed (will retry next cycle): {err.message}')
                    break
        return claimed

    async def execute(self, dispatch: JobDispatch) -> Optional[JobStatus]:
        """
        Claim and run one job. Returns the terminal status this worker wrote,
        or None when it wrote nothing (lost the claim, or the job was taken
        over by the reaper).
        """
        match await self.store.claim_job(dispatch.job_id, worker_id=self.worker_id):
            case Err(err):
                # Still PENDING; the sweep picks it up later.
                logger.error(f'Claim of job {dispatch.job_id} failed: {err.message}')
                return None
            case Ok(None):
                logger.debug(f'Job {dispatch.job_id} already claimed or finished; skipping')
                return None
            case Ok(job):
                return await self._execute_claimed(job, dispatch.owner_id)

    async def _execute_claimed(self, job: JobInfo, expected_owner: str) -> Optional[JobStatus]:
        self._held.add(job.job_id)
        try:
            if job.owner_id != expected_owner:
                logger.error(
                    f'Job {job.job_id} owner does not match its dispatch context; refusing to run'
                )
                return await self._fail(
                    job.job_id, OWNERSHIP_MISMATCH_MESSAGE, JobErrorCode.OWNERSHIP_MISMATCH
                )

            try:
                definition = self.app.job_types[job.job_type]
            except NotRegistered:
                logger.error(f'Job {job.job_id} has unregistered job type {job.job_type!r}')
                return await self._fail(
                    job.job_id, UNKNOWN_JOB_TYPE_MESSAGE, JobErrorCode.UNKNOWN_JOB_TYPE
                )

            logger.info(f'Running job {job.job_id} ({job.job_type})')
            state = _EmitState()
            runner = StepRunner(definition, self.app.config)
            try:
                report = await runner.run(
                    job.payload, emit=self._make_emitter(job.job_id, state), job_id=job.job_id
                )
            except asyncio.CancelledError:
                fault = OrchestratorFault(WORKER_SHUTDOWN_MESSAGE)
                await asyncio.shield(self._fail(job.job_id, fault.public_message, fault.code))
                raise
            except Exception:
                logger.exception(f'Step loop of job {job.job_id} crashed')
                return await self._fail(
                    job.job_id, GENERIC_FAILURE_MESSAGE, JobErrorCode.UNHANDLED_EXCEPTION
                )

            if report.aborted:
                if state.store_failed:
                    return await self._fail(
                        job.job_id, PROGRESS_WRITE_FAILED_MESSAGE, JobErrorCode.STORE_UNAVAILABLE
                    )
                return None

            if report.ok and report.final_outcome is not None:
                final = report.final_outcome
                written = await self._write_terminal(
                    job.job_id,
                    'completion',
                    lambda: self.store.finalize_completed(
                        job.job_id,
                        result=report.result,
                        step_label=final.step_label,
                        percent=final.percent,
                        detail=final.detail,
                    ),
                )
                if written:
                    logger.info(f'Job {job.job_id} completed in {report.steps} step(s)')
                    return JobStatus.COMPLETED
                return None

            return await self._fail(
                job.job_id,
                report.error or GENERIC_FAILURE_MESSAGE,
                report.error_code or JobErrorCode.UNHANDLED_EXCEPTION.value,
            )
        finally:
            self._held.discard(job.job_id)

    def _make_emitter(
        self, job_id: str, state: _EmitState
    ) -> Callable[[StepOutcome], Awaitable[bool]]:
        async def emit(outcome: StepOutcome) -> bool:
            attempt = 1
            while True:
                match await self.store.append_progress(
                    job_id,
                    worker_id=self.worker_id,
                    step_label=outcome.step_label,
                    percent=outcome.percent,
                    detail=outcome.detail,
                ):
                    case Ok(None):
                        logger.warning(
                            f'Job {job_id} is no longer running under this worker; stopping its step loop'
                        )
                        state.lost = True
                        return False
                    case Ok(_):
                        return True
                    case Err(err) if err.retryable and attempt < _JOB_WRITE_MAX_ATTEMPTS:
                        delay = _job_write_delay(attempt)
                        logger.warning(
                            f'Progress write for job {job_id} failed, retrying in {delay:.1f}s: {err.message}'
                        )
                        await asyncio.sleep(delay)
                        attempt += 1
                    case Err(err):
                        logger.error(f'Progress write for job {job_id} failed for good: {err.message}')
                        state.store_failed = True
                        return False

        return emit

    async def _fail(
        self, job_id: str, message: str, code: JobErrorCode | str
    ) -> Optional[JobStatus]:
        code_value = code.value if isinstance(code, JobErrorCode) else code
        written = await self._write_terminal(
            job_id,
            'failure',
            lambda: self.store.finalize_failed(job_id, error=message, error_code=code_value),
        )
        if written:
            logger.info(f'Job {job_id} failed: [{code_value}] {message}')
            return JobStatus.FAILED
        return None

    async def _write_terminal(
        self,
        job_id: str,
        what: str,
        write: Callable[[], Awaitable[BrokerResult[bool]]],
    ) -> bool:
        """
        Run a guarded terminal write, retrying transient store errors.

        False when the job was no longer RUNNING or the write kept failing;
        in the latter case the job stays RUNNING for the reaper.
        """
        attempt = 1
        while True:
            match await write():
                case Ok(True):
                    return True
                case Ok(False):
                    logger.warning(
                        f'Terminal {what} of job {job_id} skipped: job is no longer running'
                    )
                    return False
                case Err(err) if err.retryable and attempt < _JOB_WRITE_MAX_ATTEMPTS:
                    delay = _job_write_delay(attempt)
                    logger.warning(
                        f'Terminal {what} of job {job_id} failed, retrying in {delay:.1f}s: {err.message}'
                    )
                    await asyncio.sleep(delay)
                    attempt += 1
                case Err(err):
                    logger.error(
                        f'Terminal {what} of job {job_id} failed after {attempt} attempt(s); '
                        f'leaving it to the stale-running reaper: {err.message}'
                    )
                    return False

    # ----- heartbeat & recovery -----

    async def _heartbeat_loop(self) -> None:
        """Refresh heartbeat_at of every job this worker holds."""
        interval_ms = 30_000
        if self.cfg.recovery_config:
            interval_ms = self.cfg.recovery_config.runner_heartbeat_interval_ms

        try:
            while not self._stop.is_set():
                if self._held:
                    match await self.store.touch_heartbeats(
                        sorted(self._held), worker_id=self.worker_id
                    ):
                        case Ok(_):
                            pass
                        case Err(err):
                            logger.warning(f'Job heartbeat failed: {err.message}')
                await self._sleep_with_stop(interval_ms / 1000.0)
        except asyncio.CancelledError:
            return

    async def _reaper_loop(self) -> None:
        """Stale-running recovery and retention cleanup.

        RUNNING jobs whose heartbeat stopped advancing are marked FAILED
        (WORKER_CRASHED); they are never re-run, since steps may not be
        idempotent. Each operation is disabled for the process lifetime after
        _REAPER_MAX_PERMANENT_FAILURES consecutive non-retryable failures.
        """
        if not self.cfg.recovery_config:
            return

        recovery_cfg = self.cfg.recovery_config
        check_interval_ms = recovery_cfg.check_interval_ms
        next_retention_cleanup_at = time.monotonic()

        mark_failed_permanent_failures = 0
        mark_failed_disabled = False
        cleanup_permanent_failures = 0
        cleanup_disabled = False

        logger.info(
            f'Reaper configuration: auto_fail_running={recovery_cfg.auto_fail_stale_running}, '
            f'stale_threshold={recovery_cfg.running_stale_threshold_ms}ms, '
            f'check_interval={check_interval_ms}ms ({check_interval_ms/1000:.1f}s)',
        )

        try:
            while not self._stop.is_set():
                try:
                    if recovery_cfg.auto_fail_stale_running and not mark_failed_disabled:
                        match await self.store.mark_stale_running_as_failed(
                            recovery_cfg.running_stale_threshold_ms,
                        ):
                            case Ok(failed):
                                mark_failed_permanent_failures = 0
                                if failed:
                                    logger.warning(
                                        f'Reaper marked {len(failed)} stale RUNNING job(s) as FAILED',
                                    )
                            case Err(err) if err.retryable:
                                mark_failed_permanent_failures = 0
                                logger.warning(
                                    f'Reaper mark_stale_running_as_failed transient failure '
                                    f'(will retry next cycle): {err.message}',
                                )
                            case Err(err):
                                mark_failed_permanent_failures += 1
                                if mark_failed_permanent_failures >= _REAPER_MAX_PERMANENT_FAILURES:
                                    mark_failed_disabled = True
                                    logger.critical(
                                        f'Reaper mark_stale_running_as_failed disabled after '
                                        f'{mark_failed_permanent_failures} consecutive permanent '
                                        f'failures. Last error: {err.message}. '
                                        f'Requires deploy or manual intervention.',
                                    )
                                else:
                                    logger.error(
                                        f'Reaper mark_stale_running_as_failed permanent failure '
                                        f'({mark_failed_permanent_failures}/{_REAPER_MAX_PERMANENT_FAILURES} '
                                        f'before disable): {err.message}',
                                    )

                    now_monotonic = time.monotonic()
                    if (
                        recovery_cfg.terminal_job_retention_hours is not None
                        and not cleanup_disabled
                        and now_monotonic >= next_retention_cleanup_at
                    ):
                        next_retention_cleanup_at = now_monotonic + _RETENTION_CLEANUP_INTERVAL_S
                        match await self.store.delete_terminal_jobs_older_than(
                            recovery_cfg.terminal_job_retention_hours,
                        ):
                            case Ok(deleted):
                                cleanup_permanent_failures = 0
                                if deleted > 0:
                                    logger.info(f'Reaper retention cleanup: jobs={deleted}')
                            case Err(err) if err.retryable:
                                cleanup_permanent_failures = 0
                                logger.warning(f'Retention cleanup transient failure: {err.message}')
                            case Err(err):
                                cleanup_permanent_failures += 1
                                if cleanup_permanent_failures >= _REAPER_MAX_PERMANENT_FAILURES:
                                    cleanup_disabled = True
                                    logger.critical(
                                        f'Reaper retention cleanup disabled after '
                                        f'{cleanup_permanent_failures} consecutive permanent '
                                        f'failures. Last error: {err.message}.',
                                    )
                                else:
                                    logger.error(f'Retention cleanup error: {err.message}')

                except Exception as e:
                    logger.error(f'Reaper loop error: {e}')

                try:
                    await asyncio.wait_for(
                        self._stop.wait(), timeout=check_interval_ms / 1000.0
                    )
                    break  # Stop signal received
                except asyncio.TimeoutError:
                    continue

        except asyncio.CancelledError:
            logger.info('Reaper loop cancelled')
            return
