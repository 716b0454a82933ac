# jobrelay/core/consumer.py
"""
Client-side progress consumer.

Subscribes first, then reads the stored events, so nothing committed after
the subscription can be missed; the store is re-read on every notice and on
every poll tick, and event ids already rendered are skipped. A terminal job
status is authoritative: once seen, one last catch-up read is made and the
outcome resolves.
"""

from __future__ import annotations

import asyncio
from typing import Any, AsyncIterator, Callable, Optional

from result import is_err

from jobrelay.core.access import authorize_job, require_principal
from jobrelay.core.channel import JobSubscription, ProgressChannel
from jobrelay.core.exceptions import ChannelUnavailable, JobNotFound, JobStoreUnavailable
from jobrelay.core.logging import get_logger
from jobrelay.core.models.jobs import JobInfo, JobOutcome, ProgressEventInfo

logger = get_logger('consumer')

OnEvent = Callable[[list[ProgressEventInfo]], Any]


class JobObservation:
    """
    One client's view of one job.

    Iterate it (``async for event in observation``) to receive each event
    exactly once and in order; ``outcome`` is set when iteration ends.
    ``wait()`` consumes the rest and returns the outcome.
    """

    def __init__(
        self,
        consumer: 'ProgressConsumer',
        job_id: str,
        on_event: Optional[OnEvent] = None,
    ) -> None:
        self.job_id = job_id
        self.history: list[ProgressEventInfo] = []
        self.outcome: Optional[JobOutcome] = None
        self.job: Optional[JobInfo] = None
        self.polling = False
        self._consumer = consumer
        self._on_event = on_event
        self._last_seen_id = 0
        self._started = False

    def __aiter__(self) -> AsyncIterator[ProgressEventInfo]:
        if self._started:
            raise RuntimeError(f'observation of job {self.job_id} is already being consumed')
        self._started = True
        return self._events()

    async def wait(self) -> JobOutcome:
        """Drain the remaining events and return the terminal outcome."""
        if not self._started:
            async for _ in self:
                pass
        if self.outcome is None:
            raise RuntimeError(f'observation of job {self.job_id} ended without an outcome')
        return self.outcome

    async def _events(self) -> AsyncIterator[ProgressEventInfo]:
        consumer = self._consumer
        self.job = await authorize_job(consumer.store, self.job_id, consumer.principal_id)
        subscription = await self._subscribe()
        try:
            while True:
                for event in await self._catch_up() or []:
                    yield event

                job = await self._read_job()
                if job is not None and job.status.is_terminal:
                    # Final event and terminal status commit together, so a
                    # successful read now sees every event of the job.
                    tail = await self._catch_up()
                    for event in tail or []:
                        yield event
                    if tail is None:
                        await asyncio.sleep(consumer.poll_interval_s)
                        continue
                    self.job = job
                    self.outcome = JobOutcome.from_job(job)
                    logger.debug(
                        f'Job {self.job_id} resolved {job.status.value} after {len(self.history)} event(s)'
                    )
                    return

                if subscription is not None:
                    await subscription.wait(consumer.poll_interval_s)
                else:
                    await asyncio.sleep(consumer.poll_interval_s)
        finally:
            if subscription is not None:
                await subscription.close()

    async def _subscribe(self) -> Optional[JobSubscription]:
        channel = self._consumer.channel
        if channel is None:
            self.polling = True
            return None
        try:
            return await channel.subscribe(self.job_id, self._consumer.principal_id)
        except ChannelUnavailable as exc:
            logger.warning(
                f'Push channel unavailable for job {self.job_id}, polling instead: {exc.cause.message}'
            )
            self.polling = True
            return None

    async def _catch_up(self) -> Optional[list[ProgressEventInfo]]:
        """New events since the last read, or None when a retryable read failed."""
        events_r = await self._consumer.store.list_events(self.job_id, after_id=self._last_seen_id)
        if is_err(events_r):
            err = events_r.err_value
            if not err.retryable:
                raise JobStoreUnavailable(err)
            logger.warning(f'Event read for job {self.job_id} failed, retrying: {err.message}')
            return None

        fresh: list[ProgressEventInfo] = []
        for event in events_r.ok_value:
            if event.event_id <= self._last_seen_id:
                continue
            self._last_seen_id = event.event_id
            self.history.append(event)
            fresh.append(event)
        if fresh and self._on_event is not None:
            self._on_event(list(self.history))
        return fresh

    async def _read_job(self) -> Optional[JobInfo]:
        job_r = await self._consumer.store.get_job(self.job_id)
        if is_err(job_r):
            err = job_r.err_value
            if not err.retryable:
                raise JobStoreUnavailable(err)
            logger.warning(f'Job read for {self.job_id} failed, retrying: {err.message}')
            return None
        job = job_r.ok_value
        if job is None:
            # Deleted while being observed (owner deletion or retention).
            raise JobNotFound(self.job_id)
        return job


class ProgressConsumer:
    """Observes jobs on behalf of one principal."""

    def __init__(
        self,
        store: Any,
        channel: Optional[ProgressChannel],
        principal_id: Optional[str],
        poll_interval_ms: int = 2_000,
    ) -> None:
        self.store = store
        self.channel = channel
        self.principal_id = require_principal(principal_id)
        self.poll_interval_s = max(0.01, poll_interval_ms / 1000.0)

    def observe(self, job_id: str, *, on_event: Optional[OnEvent] = None) -> JobObservation:
        return JobObservation(self, job_id, on_event=on_event)

    async def wait_for_outcome(self, job_id: str) -> JobOutcome:
        return await self.observe(job_id).wait()
