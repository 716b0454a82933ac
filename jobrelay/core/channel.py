# jobrelay/core/channel.py
"""
Owner-scoped push channel for job progress.

Notifications are thin: ``{"job_id", "event_id"}`` for a new progress event
and ``{"job_id", "status"}`` for a status change. Subscribers use them only
as a cue to re-read the store, which stays the source of truth. Delivery is
at-least-once and ordered per job; a lost notification is covered by the
consumer's polling fallback.
"""

from __future__ import annotations

import asyncio
import json
from collections import deque
from dataclasses import dataclass
from typing import Any, Deque, Literal, Optional

from psycopg import Notify
from result import is_err

from jobrelay.core.access import authorize_job
from jobrelay.core.brokers.listener import PROGRESS_CHANNEL, STATUS_CHANNEL, PostgresListener
from jobrelay.core.exceptions import ChannelUnavailable
from jobrelay.core.logging import get_logger
from jobrelay.core.types.status import JobStatus

logger = get_logger('channel')

NoticeKind = Literal['progress', 'status']


@dataclass(frozen=True)
class ChannelNotice:
    """A "something changed for this job" hint."""

    kind: NoticeKind
    job_id: str
    event_id: Optional[int] = None
    status: Optional[JobStatus] = None

    @classmethod
    def from_notify(cls, note: Notify) -> Optional['ChannelNotice']:
        """Parse a trigger payload. Malformed payloads yield None."""
        try:
            data = json.loads(note.payload)
        except ValueError:
            logger.warning(f'Ignoring malformed notification on {note.channel}: {note.payload!r}')
            return None
        if not isinstance(data, dict) or not isinstance(data.get('job_id'), str):
            return None
        if note.channel == PROGRESS_CHANNEL:
            event_id = data.get('event_id')
            return cls(
                kind='progress',
                job_id=data['job_id'],
                event_id=event_id if isinstance(event_id, int) else None,
            )
        if note.channel == STATUS_CHANNEL:
            # Status travels as the stored enum name
            raw_status = data.get('status')
            status = JobStatus.__members__.get(raw_status) if isinstance(raw_status, str) else None
            return cls(kind='status', job_id=data['job_id'], status=status)
        return None


class JobSubscription:
    """Notices for one job, merged from the progress and status channels."""

    def __init__(
        self,
        job_id: str,
        listener: PostgresListener,
        queues: dict[str, asyncio.Queue[Notify]],
    ) -> None:
        self.job_id = job_id
        self._listener = listener
        self._queues = queues
        self._ready: Deque[ChannelNotice] = deque()
        self._closed = False

    def _accept(self, note: Notify) -> None:
        notice = ChannelNotice.from_notify(note)
        if notice is not None and notice.job_id == self.job_id:
            self._ready.append(notice)

    def _drain_nowait(self) -> None:
        for q in self._queues.values():
            while True:
                try:
                    self._accept(q.get_nowait())
                except asyncio.QueueEmpty:
                    break

    async def wait(self, timeout: float) -> Optional[ChannelNotice]:
        """Next notice for this job, or None after ``timeout`` seconds."""
        if self._closed:
            return None
        loop = asyncio.get_running_loop()
        deadline = loop.time() + max(0.0, timeout)
        while True:
            self._drain_nowait()
            if self._ready:
                return self._ready.popleft()
            remaining = deadline - loop.time()
            if remaining <= 0:
                return None

            getters = [asyncio.create_task(q.get()) for q in self._queues.values()]
            done, pending = await asyncio.wait(
                getters, timeout=remaining, return_when=asyncio.FIRST_COMPLETED
            )
            for t in pending:
                t.cancel()
            for t in pending:
                try:
                    # A getter may have completed between wait() and cancel().
                    self._accept(await t)
                except asyncio.CancelledError:
                    pass
            for t in done:
                self._accept(t.result())

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for channel_name, q in self._queues.items():
            await self._listener.unsubscribe(channel_name, q)
        self._ready.clear()

    async def __aenter__(self) -> 'JobSubscription':
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()


class ProgressChannel:
    """Subscription entry point: ownership check first, then LISTEN."""

    def __init__(self, store: Any, listener: PostgresListener) -> None:
        self.store = store
        self.listener = listener

    async def subscribe(self, job_id: str, principal_id: Optional[str]) -> JobSubscription:
        """Subscribe ``principal_id`` to notices of ``job_id``.

        Raises:
            Unauthorized / JobNotFound: before any LISTEN is issued.
            ChannelUnavailable: the listener could not start or LISTEN.
        """
        await authorize_job(self.store, job_id, principal_id)

        start_r = await self.listener.start()
        if is_err(start_r):
            logger.warning(f'Listener start failed: {start_r.err_value.message}')
            raise ChannelUnavailable(start_r.err_value)

        channels = [PROGRESS_CHANNEL, STATUS_CHANNEL]
        listen_r = await self.listener.listen_many(channels)
        if is_err(listen_r):
            logger.warning(f'Subscribe failed for job {job_id}: {listen_r.err_value.message}')
            raise ChannelUnavailable(listen_r.err_value)

        logger.debug(f'Principal {principal_id} subscribed to job {job_id}')
        return JobSubscription(job_id, self.listener, dict(zip(channels, listen_r.ok_value)))
