# jobrelay/core/brokers/listener.py
"""
PostgreSQL LISTEN/NOTIFY fan-out for job dispatch and progress.

Flow:
  1. submit(): INSERT job row + pg_notify('jobrelay_job_dispatch', {job_id, owner_id})
  2. Worker: listens on jobrelay_job_dispatch, claims the job, runs steps
  3. Each progress event INSERT -> trigger -> NOTIFY jobrelay_job_progress {job_id, event_id}
  4. Each job status change -> trigger -> NOTIFY jobrelay_job_status {job_id, status}
  5. Consumers listen on progress + status, filter by job_id, read the rows
     from the store (notifications are only "something changed" hints)

Channels:
  - jobrelay_job_dispatch: hand-off from the submission service to workers
  - jobrelay_job_progress: one notice per inserted progress event
  - jobrelay_job_status: one notice per job status transition
"""

from __future__ import annotations
import asyncio
import contextlib
from collections import defaultdict
from typing import DefaultDict, Optional, Sequence, Set
from asyncio import Task, Queue

import psycopg
from psycopg import AsyncConnection, InterfaceError, OperationalError, Notify
from psycopg import sql
from result import Ok, Err, is_err

from jobrelay.core.brokers.result_types import BrokerErrorCode, BrokerOperationError, BrokerResult
from jobrelay.core.logging import get_logger
from jobrelay.core.utils.db import is_retryable_connection_error

logger = get_logger('listener')

DISPATCH_CHANNEL = 'jobrelay_job_dispatch'
PROGRESS_CHANNEL = 'jobrelay_job_progress'
STATUS_CHANNEL = 'jobrelay_job_status'

_SUBSCRIBER_QUEUE_MAXSIZE: int = 4096
_HEALTH_IDLE_TIMEOUT_S: float = 60.0
_DISPATCHER_BACKOFF_MIN_S: float = 0.2
_DISPATCHER_BACKOFF_MAX_S: float = 5.0

_CONNECTION_ERRORS = (OperationalError, InterfaceError, OSError)


class PostgresListener:
    """
    LISTEN/NOTIFY wrapper that fans notifications out to asyncio queues.

    Two autocommit connections are kept:
      - dispatcher connection: the only reader of conn.notifies(); LISTEN is
        issued here so notifications arrive on the connection being read
      - command connection: UNLISTEN and health checks, so they never race
        the notifies() iterator

    Every subscriber gets its own bounded queue. A full queue drops the
    notification for that subscriber only; consumers re-read the store, so a
    dropped notice delays a render but never loses data.

    Usage:
        listener = PostgresListener(psycopg_url)
        start_r = await listener.start()
        listen_r = await listener.listen(PROGRESS_CHANNEL)
        queue = listen_r.ok_value
        note = await queue.get()
        await listener.unsubscribe(PROGRESS_CHANNEL, queue)
        await listener.close()
    """

    def __init__(self, database_url: str) -> None:
        self.database_url = database_url

        self._dispatcher_conn: Optional[AsyncConnection] = None
        self._command_conn: Optional[AsyncConnection] = None

        # Channels LISTENed on the server
        self._listen_channels: Set[str] = set()
        # Local subscriber queues per channel
        self._subs: DefaultDict[str, Set[Queue[Notify]]] = defaultdict(set)
        self._dropped: int = 0

        self._dispatcher_task: Optional[Task[None]] = None
        self._health_check_task: Optional[Task[None]] = None

        self._fd_activity = asyncio.Event()
        self._fd_registered = False

        # Serializes LISTEN/UNLISTEN and subscription bookkeeping
        self._lock = asyncio.Lock()
        # Listener state is loop-affine
        self._owner_loop: Optional[asyncio.AbstractEventLoop] = None

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def listening_channels(self) -> frozenset[str]:
        return frozenset(self._listen_channels)

    @property
    def dropped_notifications(self) -> int:
        """Notifications discarded because a subscriber queue was full."""
        return self._dropped

    def subscriber_count(self, channel_name: str) -> int:
        return len(self._subs.get(channel_name, ()))

    # ------------------------------------------------------------------
    # Loop ownership and bookkeeping
    # ------------------------------------------------------------------

    def _bind_or_validate_loop(self) -> None:
        current_loop = asyncio.get_running_loop()
        if self._owner_loop is None:
            self._owner_loop = current_loop
        elif self._owner_loop is not current_loop:
            raise RuntimeError(
                'PostgresListener is bound to a different event loop. '
                'Do not share a store/listener across an async loop and the sync LoopRunner.'
            )

    def _add_local_subscription(self, channel_name: str) -> Queue[Notify]:
        q: Queue[Notify] = asyncio.Queue(maxsize=_SUBSCRIBER_QUEUE_MAXSIZE)
        self._subs[channel_name].add(q)
        return q

    def _remove_local_subscription(
        self, channel_name: str, q: Optional[Queue[Notify]]
    ) -> bool:
        """Drop one local queue. Returns True when the channel has no subscribers left."""
        subs = self._subs.get(channel_name)
        if subs is None:
            return True
        if q is not None:
            subs.discard(q)
        if subs:
            return False
        self._subs.pop(channel_name, None)
        return True

    def _fan_out(self, notification: Notify) -> None:
        for q in list(self._subs.get(notification.channel, ())):
            try:
                q.put_nowait(notification)
            except asyncio.QueueFull:
                self._dropped += 1
                logger.warning(
                    f'Subscriber queue full on {notification.channel}; notification dropped'
                )

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    async def _connect(self) -> AsyncConnection:
        conn = await psycopg.AsyncConnection.connect(self.database_url, autocommit=True)
        for channel in self._listen_channels:
            await conn.execute(sql.SQL('LISTEN {}').format(sql.Identifier(channel)))
        return conn

    async def _ensure_connections(self) -> BrokerResult[None]:
        """Open whichever connection is missing; re-LISTEN tracked channels on reconnect."""
        opened: list[str] = []
        try:
            if self._dispatcher_conn is None or self._dispatcher_conn.closed:
                self._dispatcher_conn = await self._connect()
                opened.append('dispatcher')
                self._register_fd_monitoring()
            if self._command_conn is None or self._command_conn.closed:
                self._command_conn = await self._connect()
                opened.append('command')
            return Ok(None)
        except _CONNECTION_ERRORS as exc:
            # Undo what this call opened so no half-initialized state leaks.
            if 'command' in opened:
                await self._close_quietly(self._command_conn)
                self._command_conn = None
            if 'dispatcher' in opened:
                self._unregister_fd_monitoring()
                await self._close_quietly(self._dispatcher_conn)
                self._dispatcher_conn = None
            return Err(BrokerOperationError(
                code=BrokerErrorCode.LISTENER_START_FAILED,
                message=f'Failed to establish listener connections: {exc}',
                retryable=is_retryable_connection_error(exc),
                exception=exc,
            ))

    async def _require_dispatcher_conn(self) -> AsyncConnection:
        """Dispatcher connection or the original connection exception."""
        conn_r = await self._ensure_connections()
        if is_err(conn_r):
            err = conn_r.err_value
            raise err.exception or OperationalError(err.message)
        assert self._dispatcher_conn is not None
        return self._dispatcher_conn

    @staticmethod
    async def _close_quietly(conn: Optional[AsyncConnection]) -> None:
        if conn is None or conn.closed:
            return
        try:
            await conn.close()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.debug(f'Ignoring error while closing listener connection: {exc}')

    async def _close_connections(self) -> None:
        await self._close_quietly(self._dispatcher_conn)
        await self._close_quietly(self._command_conn)
        self._dispatcher_conn = None
        self._command_conn = None

    async def _reset_connections(self) -> None:
        self._unregister_fd_monitoring()
        await self._close_connections()

    def _register_fd_monitoring(self) -> None:
        conn = self._dispatcher_conn
        if conn is None or conn.closed or self._fd_registered:
            return
        try:
            asyncio.get_running_loop().add_reader(conn.fileno(), self._fd_activity.set)
            self._fd_registered = True
        except (OSError, AttributeError):
            pass

    def _unregister_fd_monitoring(self) -> None:
        if not self._fd_registered:
            return
        try:
            if self._dispatcher_conn is not None:
                asyncio.get_running_loop().remove_reader(self._dispatcher_conn.fileno())
        except (OSError, AttributeError, ValueError, OperationalError):
            # fileno() raises OperationalError on a dead connection
            pass
        finally:
            self._fd_registered = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> BrokerResult[None]:
        """Open both connections and start the health monitor. Idempotent.

        Raises RuntimeError when called from a loop other than the owner loop.
        """
        self._bind_or_validate_loop()
        conn_r = await self._ensure_connections()
        if is_err(conn_r):
            return conn_r
        if self._health_check_task is None:
            self._health_check_task = asyncio.create_task(
                self._health_monitor(), name='jobrelay-listener-health'
            )
        return Ok(None)

    async def _check_command_conn(self) -> bool:
        """SELECT 1 on the command connection. False means it was reset."""
        conn = self._command_conn
        if conn is None or conn.closed:
            return True
        try:
            await conn.execute('SELECT 1')
            return True
        except OperationalError:
            await self._reset_connections()
            return False

    async def _health_monitor(self) -> None:
        """Check the connection after socket activity, and after 60s of silence."""
        while True:
            try:
                with contextlib.suppress(asyncio.TimeoutError):
                    await asyncio.wait_for(
                        self._fd_activity.wait(), timeout=_HEALTH_IDLE_TIMEOUT_S
                    )
                self._fd_activity.clear()
                if not await self._check_command_conn():
                    logger.warning('Listener connection lost; reconnecting')
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception('Listener health monitor error')
                await asyncio.sleep(1.0)

    async def _dispatcher(self) -> None:
        """Single reader of conn.notifies(); reconnects with backoff and re-LISTENs."""
        backoff = _DISPATCHER_BACKOFF_MIN_S
        while True:
            try:
                conn = await self._require_dispatcher_conn()
                async for notification in conn.notifies():
                    backoff = _DISPATCHER_BACKOFF_MIN_S
                    self._fd_activity.set()
                    self._fan_out(notification)
            except asyncio.CancelledError:
                self._unregister_fd_monitoring()
                raise
            except _CONNECTION_ERRORS:
                await self._reset_connections()
                await asyncio.sleep(backoff)
                backoff = min(backoff * 2, _DISPATCHER_BACKOFF_MAX_S)
            except Exception:
                logger.exception('Listener dispatcher error')
                await self._reset_connections()
                await asyncio.sleep(0.5)

    async def _pause_dispatcher(self) -> bool:
        if self._dispatcher_task is None:
            return False
        self._dispatcher_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._dispatcher_task
        self._dispatcher_task = None
        return True

    def _start_dispatcher_if_needed(self) -> None:
        if self._dispatcher_task is None:
            self._dispatcher_task = asyncio.create_task(
                self._dispatcher(), name='jobrelay-listener-dispatcher'
            )

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    async def listen(self, channel_name: str) -> BrokerResult[Queue[Notify]]:
        """Subscribe to one channel. See listen_many()."""
        queues_r = await self.listen_many([channel_name])
        if is_err(queues_r):
            return queues_r
        return Ok(queues_r.ok_value[0])

    async def listen_many(
        self, channel_names: Sequence[str],
    ) -> BrokerResult[list[Queue[Notify]]]:
        """Subscribe to several channels at once.

        Server-side LISTEN is issued once per channel no matter how many local
        subscribers exist; the dispatcher is paused at most once. Returns the
        queues in the order of ``channel_names``.
        """
        self._bind_or_validate_loop()
        conn_r = await self._ensure_connections()
        if is_err(conn_r):
            cause = conn_r.err_value
            return Err(BrokerOperationError(
                code=BrokerErrorCode.LISTENER_SUBSCRIBE_FAILED,
                message=f'Failed to subscribe to {list(channel_names)!r}: {cause.message}',
                retryable=cause.retryable,
                exception=cause.exception,
            ))

        try:
            async with self._lock:
                new_channels = [
                    ch for ch in dict.fromkeys(channel_names)
                    if ch not in self._listen_channels
                ]
                if new_channels:
                    was_running = await self._pause_dispatcher()
                    try:
                        conn = await self._require_dispatcher_conn()
                        for ch in new_channels:
                            await conn.execute(
                                sql.SQL('LISTEN {}').format(sql.Identifier(ch))
                            )
                            self._listen_channels.add(ch)
                    finally:
                        if was_running:
                            self._start_dispatcher_if_needed()
                    self._start_dispatcher_if_needed()

                return Ok([self._add_local_subscription(ch) for ch in channel_names])
        except _CONNECTION_ERRORS as exc:
            return Err(BrokerOperationError(
                code=BrokerErrorCode.LISTENER_SUBSCRIBE_FAILED,
                message=f'Failed to subscribe to {list(channel_names)!r}: {exc}',
                retryable=is_retryable_connection_error(exc),
                exception=exc,
            ))

    async def unsubscribe(
        self, channel_name: str, q: Optional[Queue[Notify]] = None
    ) -> None:
        """Remove a local queue; UNLISTEN once the channel has no local subscribers."""
        self._bind_or_validate_loop()
        async with self._lock:
            if not self._remove_local_subscription(channel_name, q):
                return
            if channel_name not in self._listen_channels:
                return
            self._listen_channels.discard(channel_name)
            conn = self._command_conn
            if conn is None or conn.closed:
                return
            try:
                await conn.execute(
                    sql.SQL('UNLISTEN {}').format(sql.Identifier(channel_name))
                )
            except _CONNECTION_ERRORS as exc:
                # LISTEN lives on the dispatcher connection; a reconnect drops it anyway.
                logger.debug(f'UNLISTEN {channel_name} failed: {exc}')

    async def close(self) -> None:
        """Stop background tasks and close both connections. Safe to call twice.

        A call from a foreign loop is handed off to the owner loop.
        """
        current_loop = asyncio.get_running_loop()
        if self._owner_loop is None and self._is_detached():
            return
        owner_loop = self._owner_loop
        if owner_loop is not None and owner_loop is not current_loop:
            if owner_loop.is_closed():
                logger.warning('Skipping listener close: owner loop already closed')
                return
            try:
                fut = asyncio.run_coroutine_threadsafe(self._close_impl(), owner_loop)
            except RuntimeError:
                logger.warning('Skipping listener close: owner loop not running')
                return
            await asyncio.wrap_future(fut)
            return

        self._bind_or_validate_loop()
        await self._close_impl()

    def _is_detached(self) -> bool:
        return (
            self._dispatcher_conn is None
            and self._command_conn is None
            and self._health_check_task is None
            and self._dispatcher_task is None
            and not self._fd_registered
            and not self._subs
            and not self._listen_channels
        )

    async def _close_impl(self) -> None:
        for task in (self._health_check_task, self._dispatcher_task):
            if task is None:
                continue
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._health_check_task = None
        self._dispatcher_task = None

        await self._reset_connections()
        self._subs.clear()
        self._listen_channels.clear()
        self._owner_loop = None
