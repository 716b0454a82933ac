"""Unit tests for the background Worker (jobrelay/core/worker/worker.py).

Strategy: run the real Worker against FakeJobStore/FakeListener. Covers the
claim CAS, the ownership gate, exactly-one terminal write with its final
event, lost jobs, store failures, the pending sweep and the reaper.
"""

from __future__ import annotations

import asyncio
import datetime as dt
from typing import Any

import pytest
from psycopg import Notify

from jobrelay.core.brokers.listener import DISPATCH_CHANNEL
from jobrelay.core.exceptions import JobErrorCode, OrchestratorFault
from jobrelay.core.models.jobs import JobDispatch, StepContext, StepOutcome
from jobrelay.core.models.recovery import RecoveryConfig
from jobrelay.core.runner import GENERIC_FAILURE_MESSAGE, INVALID_OUTCOME_MESSAGE
from jobrelay.core.submit import SubmissionService
from jobrelay.core.types.status import JobStatus
from jobrelay.core.worker import worker as worker_module
from jobrelay.core.worker.config import WorkerConfig
from jobrelay.core.worker.worker import (
    OWNERSHIP_MISMATCH_MESSAGE,
    WORKER_SHUTDOWN_MESSAGE,
    Worker,
    _RetryBackoff,
    parse_dispatch,
)
from jobrelay.jobs.builtin import register_builtin_job_types
from tests.unit.fakes import FakeJobStore, make_app, make_error


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class _Harness:
    """App with a few job types, a fake store and a worker factory."""

    def __init__(self, **app_overrides: Any) -> None:
        self.app = make_app(**app_overrides)
        register_builtin_job_types(self.app)
        self.store = FakeJobStore()
        self.step_calls = 0

        @self.app.job_type('always_fails')
        def always_fails(ctx: StepContext) -> StepOutcome:
            raise ValueError('row 17 violates constraint users_pkey')

        @self.app.job_type('three_steps', step_count=3)
        def three_steps(ctx: StepContext) -> StepOutcome:
            self.step_calls += 1
            if ctx.step_index < 2:
                return StepOutcome(step_label=f'step-{ctx.step_index + 1}', percent=(ctx.step_index + 1) * 30)
            return StepOutcome.final({'steps': ctx.step_index + 1}, step_label='done')

        @self.app.job_type('no_result')
        def no_result(ctx: StepContext) -> StepOutcome:
            return StepOutcome.final(None, step_label='done')

    def worker(self, **cfg: Any) -> Worker:
        config = WorkerConfig.from_app_config(self.app.config, **cfg)
        return Worker(self.app, self.store, listener=self.store.listener, cfg=config)  # type: ignore[arg-type]

    async def submit(self, job_type: str, payload: dict[str, Any], owner: str = 'alice') -> str:
        service = SubmissionService(self.app, self.store)  # type: ignore[arg-type]
        return await service.submit(job_type, payload, owner)


def _final_events(store: FakeJobStore, job_id: str) -> list[Any]:
    return [e for e in store.events_of(job_id) if e.is_final]


async def _wait_for_status(store: FakeJobStore, job_id: str, timeout: float = 5.0) -> JobStatus:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        status = store.jobs[job_id].status
        if status.is_terminal:
            return status
        await asyncio.sleep(0.01)
    raise AssertionError(f'job {job_id} did not finish within {timeout}s')


@pytest.fixture
def no_write_delay(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(worker_module, '_job_write_delay', lambda attempt: 0.0)


# ---------------------------------------------------------------------------
# Execution scenarios
# ---------------------------------------------------------------------------


@pytest.mark.unit
class TestExecute:
    """execute(): claim, run, exactly one terminal write."""

    @pytest.mark.asyncio
    async def test_echo_completes_with_one_processing_event(self) -> None:
        h = _Harness()
        job_id = await h.submit('echo', {'text': 'hi'})

        status = await h.worker().execute(JobDispatch(job_id=job_id, owner_id='alice'))

        job = h.store.jobs[job_id]
        events = h.store.events_of(job_id)
        assert status == JobStatus.COMPLETED
        assert job.status == JobStatus.COMPLETED
        assert job.result == {'text': 'hi'}
        assert job.error is None
        assert len(events) == 1
        assert events[0].step_label == 'processing'
        assert events[0].is_final is True

    @pytest.mark.asyncio
    async def test_failing_step_fails_job_with_one_final_event(self) -> None:
        h = _Harness()
        job_id = await h.submit('always_fails', {})

        status = await h.worker().execute(JobDispatch(job_id=job_id, owner_id='alice'))

        job = h.store.jobs[job_id]
        finals = _final_events(h.store, job_id)
        assert status == JobStatus.FAILED
        assert job.status == JobStatus.FAILED
        assert job.error == GENERIC_FAILURE_MESSAGE
        assert 'users_pkey' not in (job.error or '')
        assert job.result is None
        assert len(finals) == 1
        assert finals[0].step_label == 'failed'
        assert finals[0].detail == {
            'error': GENERIC_FAILURE_MESSAGE,
            'error_code': JobErrorCode.UNHANDLED_EXCEPTION.value,
        }

    @pytest.mark.asyncio
    async def test_multi_step_events_are_ordered_and_only_last_is_final(self) -> None:
        h = _Harness()
        job_id = await h.submit('three_steps', {})

        await h.worker().execute(JobDispatch(job_id=job_id, owner_id='alice'))

        events = h.store.events_of(job_id)
        assert [e.step_label for e in events] == ['step-1', 'step-2', 'done']
        assert [e.is_final for e in events] == [False, False, True]
        assert [e.event_id for e in events] == sorted(e.event_id for e in events)
        assert h.store.jobs[job_id].result == {'steps': 3}

    @pytest.mark.asyncio
    async def test_final_outcome_without_result_fails_job(self) -> None:
        h = _Harness()
        job_id = await h.submit('no_result', {})

        status = await h.worker().execute(JobDispatch(job_id=job_id, owner_id='alice'))

        job = h.store.jobs[job_id]
        finals = _final_events(h.store, job_id)
        assert status == JobStatus.FAILED
        assert job.result is None
        assert job.error == INVALID_OUTCOME_MESSAGE
        assert job.error_code == JobErrorCode.INVALID_STEP_OUTCOME.value
        assert h.store.calls.count('finalize_completed') == 0
        assert [e.step_label for e in finals] == ['failed']

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ('job_type', 'payload'),
        [
            ('echo', {'text': 'hi'}),
            ('three_steps', {}),
            ('always_fails', {}),
            ('no_result', {}),
        ],
    )
    async def test_terminal_job_has_exactly_one_of_result_and_error(
        self, job_type: str, payload: dict[str, Any]
    ) -> None:
        h = _Harness()
        job_id = await h.submit(job_type, payload)

        await h.worker().execute(JobDispatch(job_id=job_id, owner_id='alice'))

        job = h.store.jobs[job_id]
        assert job.status.is_terminal
        assert (job.result is None) != (job.error is None)
        assert (job.error_code is None) == (job.error is None)
        assert len(_final_events(h.store, job_id)) == 1

    @pytest.mark.asyncio
    async def test_ownership_mismatch_refuses_to_run(self) -> None:
        h = _Harness()
        job_id = await h.submit('three_steps', {}, owner='alice')

        status = await h.worker().execute(JobDispatch(job_id=job_id, owner_id='mallory'))

        job = h.store.jobs[job_id]
        assert status == JobStatus.FAILED
        assert job.error == OWNERSHIP_MISMATCH_MESSAGE
        assert job.error_code == JobErrorCode.OWNERSHIP_MISMATCH.value
        assert h.step_calls == 0
        assert len(_final_events(h.store, job_id)) == 1

    @pytest.mark.asyncio
    async def test_concurrent_claims_run_the_job_once(self) -> None:
        h = _Harness()
        job_id = await h.submit('three_steps', {})
        dispatch = JobDispatch(job_id=job_id, owner_id='alice')

        results = await asyncio.gather(h.worker().execute(dispatch), h.worker().execute(dispatch))

        assert sorted(results, key=lambda r: r is None) == [JobStatus.COMPLETED, None]
        assert h.step_calls == 3
        assert len(_final_events(h.store, job_id)) == 1

    @pytest.mark.asyncio
    async def test_terminal_job_is_not_run_again(self) -> None:
        h = _Harness()
        job_id = await h.submit('echo', {'text': 'hi'})
        dispatch = JobDispatch(job_id=job_id, owner_id='alice')
        await h.worker().execute(dispatch)
        writes_before = len(h.store.events)

        assert await h.worker().execute(dispatch) is None
        assert len(h.store.events) == writes_before

    @pytest.mark.asyncio
    async def test_claim_error_leaves_job_pending(self) -> None:
        h = _Harness()
        job_id = await h.submit('echo', {'text': 'hi'})
        h.store.fail_next['claim_job'] = make_error()

        assert await h.worker().execute(JobDispatch(job_id=job_id, owner_id='alice')) is None
        assert h.store.jobs[job_id].status == JobStatus.PENDING

    @pytest.mark.asyncio
    async def test_unregistered_job_type_fails(self) -> None:
        h = _Harness()
        job_id = h.store.seed_job('alice', 'retired_job_type')

        status = await h.worker().execute(JobDispatch(job_id=job_id, owner_id='alice'))

        assert status == JobStatus.FAILED
        assert h.store.jobs[job_id].error_code == JobErrorCode.UNKNOWN_JOB_TYPE.value

    @pytest.mark.asyncio
    async def test_job_finalized_elsewhere_stops_step_loop(self) -> None:
        h = _Harness()
        calls: list[int] = []

        @h.app.job_type('taken_over', step_count=2)
        async def taken_over(ctx: StepContext) -> StepOutcome:
            calls.append(ctx.step_index)
            # The watchdog finalizes the job while the step runs.
            await h.store.finalize_failed(
                ctx.job_id or '', error='stale', error_code=JobErrorCode.WORKER_CRASHED.value
            )
            return StepOutcome(step_label='first')

        job_id = await h.submit('taken_over', {})
        status = await h.worker().execute(JobDispatch(job_id=job_id, owner_id='alice'))

        assert status is None
        assert calls == [0]
        assert h.store.jobs[job_id].error_code == JobErrorCode.WORKER_CRASHED.value
        assert len(_final_events(h.store, job_id)) == 1

    @pytest.mark.asyncio
    async def test_permanent_progress_write_failure_fails_job(self) -> None:
        h = _Harness()
        job_id = await h.submit('three_steps', {})
        h.store.fail_always['append_progress'] = make_error(retryable=False)

        status = await h.worker().execute(JobDispatch(job_id=job_id, owner_id='alice'))

        assert status == JobStatus.FAILED
        assert h.store.jobs[job_id].error_code == JobErrorCode.STORE_UNAVAILABLE.value
        assert h.step_calls == 1

    @pytest.mark.asyncio
    async def test_transient_terminal_write_is_retried(self, no_write_delay: None) -> None:
        h = _Harness()
        job_id = await h.submit('echo', {'text': 'hi'})
        h.store.fail_next['finalize_completed'] = make_error()

        status = await h.worker().execute(JobDispatch(job_id=job_id, owner_id='alice'))

        assert status == JobStatus.COMPLETED
        assert h.store.calls.count('finalize_completed') == 2
        assert len(_final_events(h.store, job_id)) == 1

    @pytest.mark.asyncio
    async def test_persistent_terminal_write_failure_leaves_job_for_reaper(
        self, no_write_delay: None
    ) -> None:
        h = _Harness()
        job_id = await h.submit('echo', {'text': 'hi'})
        h.store.fail_always['finalize_completed'] = make_error()

        status = await h.worker().execute(JobDispatch(job_id=job_id, owner_id='alice'))

        assert status is None
        assert h.store.jobs[job_id].status == JobStatus.RUNNING
        assert h.store.calls.count('finalize_completed') == worker_module._JOB_WRITE_MAX_ATTEMPTS

    @pytest.mark.asyncio
    async def test_cancelled_job_is_failed_before_cancellation_propagates(self) -> None:
        h = _Harness()
        started = asyncio.Event()

        @h.app.job_type('hangs')
        async def hangs(ctx: StepContext) -> StepOutcome:
            started.set()
            await asyncio.Event().wait()
            return StepOutcome.final(None)

        job_id = await h.submit('hangs', {})
        worker = h.worker()
        task = asyncio.create_task(worker.execute(JobDispatch(job_id=job_id, owner_id='alice')))
        await started.wait()
        assert worker.held_job_ids == frozenset({job_id})

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        job = h.store.jobs[job_id]
        assert job.status == JobStatus.FAILED
        assert job.error == WORKER_SHUTDOWN_MESSAGE
        assert job.error_code == OrchestratorFault.default_code.value
        assert worker.held_job_ids == frozenset()


# ---------------------------------------------------------------------------
# Main loop, sweep and reaper
# ---------------------------------------------------------------------------


@pytest.mark.unit
class TestWorkerLoop:
    """run_forever() picks jobs from the dispatch channel and the sweep."""

    @pytest.mark.asyncio
    async def test_run_forever_executes_dispatched_job(self) -> None:
        h = _Harness()
        worker = h.worker()
        task = asyncio.create_task(worker.run_forever())
        try:
            for _ in range(200):
                if h.store.listener.subscriber_count(DISPATCH_CHANNEL):
                    break
                await asyncio.sleep(0.01)
            job_id = await h.submit('three_steps', {})

            assert await _wait_for_status(h.store, job_id) == JobStatus.COMPLETED
        finally:
            worker.request_stop()
            await asyncio.wait_for(task, timeout=5)

        assert h.store.listener.subscriber_count(DISPATCH_CHANNEL) == 0

    @pytest.mark.asyncio
    async def test_sweep_claims_orphaned_pending_jobs(self) -> None:
        h = _Harness()
        old = dt.datetime.now(dt.timezone.utc) - dt.timedelta(minutes=5)
        orphan = h.store.seed_job('alice', 'echo', {'text': 'late'}, created_at=old)
        fresh = h.store.seed_job('bob', 'echo', {'text': 'new'})
        worker = h.worker(pending_grace_ms=60_000)

        claimed = await worker._sweep_pending()
        await asyncio.gather(*tuple(worker._job_tasks))

        assert claimed == 1
        assert h.store.jobs[orphan].status == JobStatus.COMPLETED
        assert h.store.jobs[fresh].status == JobStatus.PENDING

    @pytest.mark.asyncio
    async def test_sweep_respects_concurrency_slots(self) -> None:
        h = _Harness()
        old = dt.datetime.now(dt.timezone.utc) - dt.timedelta(minutes=5)
        for _ in range(3):
            h.store.seed_job('alice', 'echo', {'text': 'x'}, created_at=old)
        worker = h.worker(max_concurrent_jobs=2)

        claimed = await worker._sweep_pending()
        await asyncio.gather(*tuple(worker._job_tasks))

        assert claimed == 2

    @pytest.mark.asyncio
    async def test_reaper_fails_stale_running_jobs(self) -> None:
        h = _Harness(
            recovery=RecoveryConfig(
                running_stale_threshold_ms=2_000,
                runner_heartbeat_interval_ms=1_000,
                check_interval_ms=1_000,
            )
        )
        job_id = h.store.seed_job('alice', 'echo', status=JobStatus.RUNNING, worker_id='dead')
        h.store.jobs[job_id].heartbeat_at = dt.datetime.now(dt.timezone.utc) - dt.timedelta(minutes=1)
        worker = h.worker()

        task = asyncio.create_task(worker._reaper_loop())
        await _wait_for_status(h.store, job_id)
        worker.request_stop()
        await asyncio.wait_for(task, timeout=5)

        job = h.store.jobs[job_id]
        assert job.status == JobStatus.FAILED
        assert job.error_code == JobErrorCode.WORKER_CRASHED.value
        assert len(_final_events(h.store, job_id)) == 1

    @pytest.mark.asyncio
    async def test_heartbeat_touches_held_jobs(self) -> None:
        h = _Harness()
        worker = h.worker()
        job_id = h.store.seed_job('alice', 'echo', status=JobStatus.RUNNING, worker_id=worker.worker_id)
        worker._held.add(job_id)

        task = asyncio.create_task(worker._heartbeat_loop())
        for _ in range(100):
            if h.store.jobs[job_id].heartbeat_at is not None:
                break
            await asyncio.sleep(0.01)
        worker.request_stop()
        await asyncio.wait_for(task, timeout=5)

        assert h.store.jobs[job_id].heartbeat_at is not None


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


@pytest.mark.unit
class TestParseDispatch:
    """Dispatch notices are {"job_id", "owner_id"}; anything else is dropped."""

    def test_valid_notice(self) -> None:
        note = Notify(DISPATCH_CHANNEL, '{"job_id": "j1", "owner_id": "alice"}', 1)
        assert parse_dispatch(note) == JobDispatch(job_id='j1', owner_id='alice')

    @pytest.mark.parametrize(
        'payload',
        ['not json', '[]', '{"job_id": "j1"}', '{"job_id": 1, "owner_id": "alice"}'],
    )
    def test_malformed_notice(self, payload: str) -> None:
        assert parse_dispatch(Notify(DISPATCH_CHANNEL, payload, 1)) is None


@pytest.mark.unit
class TestRetryBackoff:
    """_RetryBackoff drives reconnects of the worker loop."""

    def test_finite_attempts_exhaust(self) -> None:
        backoff = _RetryBackoff(initial_ms=500, max_ms=30_000, max_attempts=2)
        backoff.next_delay_seconds()
        assert backoff.can_retry() is True
        backoff.next_delay_seconds()
        assert backoff.can_retry() is False

    def test_zero_means_unlimited(self) -> None:
        backoff = _RetryBackoff(initial_ms=500, max_ms=30_000, max_attempts=0)
        for _ in range(50):
            backoff.next_delay_seconds()
        assert backoff.can_retry() is True

    def test_delay_is_capped_with_jitter(self) -> None:
        backoff = _RetryBackoff(initial_ms=1_000, max_ms=2_000, max_attempts=0)
        delays = [backoff.next_delay_seconds() for _ in range(10)]
        # Base capped at 2s, +-25% jitter
        assert max(delays) <= 2.5
        assert min(delays) >= 0.1

    def test_reset_restarts_from_initial_delay(self) -> None:
        backoff = _RetryBackoff(initial_ms=1_000, max_ms=100_000, max_attempts=5)
        for _ in range(4):
            backoff.next_delay_seconds()
        backoff.reset()
        assert backoff.attempts == 0
        assert 0.75 <= backoff.next_delay_seconds() <= 1.25
