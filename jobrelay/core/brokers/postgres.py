# jobrelay/core/brokers/postgres.py
from __future__ import annotations
import asyncio
import hashlib
import uuid
from typing import Any, Awaitable, Callable, Optional, Sequence

from result import Ok, Err, is_err
from sqlalchemy import Row
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker

from jobrelay.core.brokers import sql as q
from jobrelay.core.brokers.listener import DISPATCH_CHANNEL, PostgresListener
from jobrelay.core.brokers.result_types import (
    BrokerErrorCode,
    BrokerOperationError,
    BrokerResult,
)
from jobrelay.core.codec.serde import SerializationError, dumps_json
from jobrelay.core.exceptions import OrchestratorFault
from jobrelay.core.logging import get_logger
from jobrelay.core.models.broker import PostgresConfig
from jobrelay.core.models.job_pg import Base
from jobrelay.core.models.jobs import JobInfo, JobSnapshot, ProgressEventInfo
from jobrelay.core.types.status import JobStatus, TriggeredBy
from jobrelay.core.utils.db import is_retryable_connection_error
from jobrelay.core.utils.loop_runner import LoopRunner
from jobrelay.core.utils.url import mask_database_url, to_psycopg_url

FAILED_STEP_LABEL = 'failed'
WORKER_CRASHED_MESSAGE = 'Job stopped unexpectedly and was marked as failed'


def failure_detail(error: str, error_code: str) -> dict[str, str]:
    """Detail of the final event written for a failed job."""
    return {'error': error, 'error_code': error_code}


def _job_from_row(row: Row[Any]) -> JobInfo:
    return JobInfo(
        job_id=row.id,
        owner_id=row.owner_id,
        job_type=row.job_type,
        status=JobStatus[row.status],
        triggered_by=TriggeredBy[row.triggered_by],
        payload=row.payload,
        result=row.result,
        error=row.error,
        error_code=row.error_code,
        worker_id=row.worker_id,
        created_at=row.created_at,
        started_at=row.started_at,
        completed_at=row.completed_at,
        heartbeat_at=row.heartbeat_at,
    )


def _event_from_row(row: Row[Any]) -> ProgressEventInfo:
    return ProgressEventInfo(
        event_id=row.id,
        job_id=row.job_id,
        step_label=row.step_label,
        percent=row.percent,
        detail=row.detail,
        is_final=row.is_final,
        created_at=row.created_at,
    )


class PostgresJobStore:
    """
    PostgreSQL-backed job store: the single source of truth for jobs and
    their progress events.

    Every operation returns ``BrokerResult`` and never raises for database
    failures. Writes that must be atomic (terminal status + final event,
    job insert + dispatch notice) share one transaction.

    Async methods are the primary API; ``call_sync`` runs any of them on a
    background loop for callers without an event loop.
    """

    def __init__(self, config: PostgresConfig):
        self.config = config
        self.logger = get_logger('store')

        engine_cfg = self.config.model_dump(exclude={'database_url'}, exclude_none=True)
        self.async_engine = create_async_engine(self.config.database_url, **engine_cfg)
        self.session_factory = async_sessionmaker(
            self.async_engine, expire_on_commit=False
        )

        self.listener = PostgresListener(to_psycopg_url(self.config.database_url))

        self._initialized = False
        self._init_lock = asyncio.Lock()
        self._loop_runner = LoopRunner('jobrelay-store-loop')

        self.logger.info(
            f'PostgresJobStore initialized ({mask_database_url(self.config.database_url)})'
        )

    # ----------------- Helpers -----------------

    def _db_error(
        self, code: BrokerErrorCode, operation: str, exc: BaseException
    ) -> Err[BrokerOperationError]:
        retryable = is_retryable_connection_error(exc)
        self.logger.error(
            f'{operation} failed ({"retryable" if retryable else "permanent"}): '
            f'{type(exc).__name__}: {exc}'
        )
        return Err(BrokerOperationError(
            code=code,
            message=f'{operation} failed: {type(exc).__name__}: {exc}',
            retryable=retryable,
            exception=exc,
        ))

    @staticmethod
    def _encode_error(
        code: BrokerErrorCode, what: str, exc: BaseException
    ) -> Err[BrokerOperationError]:
        return Err(BrokerOperationError(
            code=code,
            message=f'{what} is not JSON serializable: {exc}',
            retryable=False,
            exception=exc,
        ))

    def _schema_advisory_key(self) -> int:
        """
        Stable 64-bit advisory lock key for schema creation, derived from the
        database URL so separate clusters never contend on it.
        """
        basis = self.config.database_url.encode('utf-8', errors='ignore')
        h = hashlib.sha256(b'jobrelay-schema:' + basis).digest()
        return int.from_bytes(h[:8], byteorder='big', signed=True)

    # ----------------- Schema -----------------

    async def ensure_schema_initialized(self) -> BrokerResult[None]:
        """
        Create tables, indexes and NOTIFY triggers if missing.

        Safe to call repeatedly and from several processes: DDL runs under a
        transaction-scoped advisory lock.
        """
        if self._initialized:
            return Ok(None)
        async with self._init_lock:
            if self._initialized:
                return Ok(None)
            try:
                async with self.async_engine.begin() as conn:
                    await conn.execute(
                        q.SCHEMA_ADVISORY_LOCK_SQL, {'key': self._schema_advisory_key()}
                    )
                    await conn.run_sync(Base.metadata.create_all)
                    await conn.execute(q.CREATE_EVENT_NOTIFY_FUNCTION_SQL)
                    await conn.execute(q.CREATE_EVENT_NOTIFY_TRIGGER_SQL)
                    await conn.execute(q.CREATE_STATUS_NOTIFY_FUNCTION_SQL)
                    await conn.execute(q.CREATE_STATUS_NOTIFY_TRIGGER_SQL)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                return self._db_error(
                    BrokerErrorCode.SCHEMA_INIT_FAILED, 'Schema initialization', exc
                )
            self._initialized = True
            self.logger.debug('Schema ready')
            return Ok(None)

    async def ping(self) -> BrokerResult[None]:
        try:
            async with self.session_factory() as session:
                await session.execute(q.PING_SQL)
            return Ok(None)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            return self._db_error(BrokerErrorCode.JOB_QUERY_FAILED, 'Ping', exc)

    # ----------------- Submission -----------------

    async def create_job(
        self,
        *,
        owner_id: str,
        job_type: str,
        payload: dict[str, Any],
        triggered_by: TriggeredBy = TriggeredBy.USER,
    ) -> BrokerResult[str]:
        """
        Insert a PENDING job and queue the dispatch notice in the same
        transaction. Returns the new job id once committed.
        """
        init_r = await self.ensure_schema_initialized()
        if is_err(init_r):
            return init_r

        job_id = str(uuid.uuid4())
        try:
            payload_json = dumps_json(payload)
        except (SerializationError, ValueError) as exc:
            return self._encode_error(BrokerErrorCode.JOB_CREATE_FAILED, 'payload', exc)

        try:
            async with self.session_factory() as session:
                await session.execute(
                    q.INSERT_JOB_SQL,
                    {
                        'id': job_id,
                        'owner_id': owner_id,
                        'job_type': job_type,
                        'triggered_by': triggered_by.name,
                        'payload': payload_json,
                    },
                )
                await session.execute(
                    q.NOTIFY_SQL,
                    {
                        'channel': DISPATCH_CHANNEL,
                        'payload': dumps_json({'job_id': job_id, 'owner_id': owner_id}),
                    },
                )
                await session.commit()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            return self._db_error(BrokerErrorCode.JOB_CREATE_FAILED, 'Job insert', exc)

        self.logger.debug(f'Job {job_id} ({job_type}) created for owner {owner_id}')
        return Ok(job_id)

    # ----------------- Claim -----------------

    async def claim_job(self, job_id: str, *, worker_id: str) -> BrokerResult[JobInfo | None]:
        """
        Compare-and-set PENDING -> RUNNING. Ok(None) means another worker
        claimed it first, or the job is already terminal or unknown.
        """
        try:
            async with self.session_factory() as session:
                res = await session.execute(
                    q.CLAIM_JOB_SQL, {'job_id': job_id, 'worker_id': worker_id}
                )
                row = res.fetchone()
                await session.commit()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            return self._db_error(BrokerErrorCode.JOB_CLAIM_FAILED, f'Claim of {job_id}', exc)
        return Ok(_job_from_row(row) if row is not None else None)

    async def claim_next_pending(
        self, *, worker_id: str, grace_ms: int = 0
    ) -> BrokerResult[JobInfo | None]:
        """Claim the oldest PENDING job older than ``grace_ms`` (orphan sweep)."""
        try:
            async with self.session_factory() as session:
                res = await session.execute(
                    q.CLAIM_NEXT_PENDING_SQL,
                    {'worker_id': worker_id, 'grace_seconds': grace_ms / 1000.0},
                )
                row = res.fetchone()
                await session.commit()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            return self._db_error(BrokerErrorCode.JOB_CLAIM_FAILED, 'Pending sweep', exc)
        return Ok(_job_from_row(row) if row is not None else None)

    # ----------------- Progress -----------------

    async def append_progress(
        self,
        job_id: str,
        *,
        worker_id: str,
        step_label: str,
        percent: Optional[int] = None,
        detail: Any = None,
    ) -> BrokerResult[ProgressEventInfo | None]:
        """
        Append one non-final event. Ok(None) when the job is no longer RUNNING
        under this worker (the watchdog finalized it); the caller must stop.
        """
        try:
            detail_json = dumps_json(detail) if detail is not None else None
        except (SerializationError, ValueError) as exc:
            return self._encode_error(BrokerErrorCode.PROGRESS_WRITE_FAILED, 'detail', exc)

        try:
            async with self.session_factory() as session:
                res = await session.execute(
                    q.APPEND_PROGRESS_SQL,
                    {
                        'job_id': job_id,
                        'worker_id': worker_id,
                        'step_label': step_label,
                        'percent': percent,
                        'detail': detail_json,
                    },
                )
                row = res.fetchone()
                await session.commit()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            return self._db_error(
                BrokerErrorCode.PROGRESS_WRITE_FAILED, f'Progress write for {job_id}', exc
            )
        if row is None:
            return Ok(None)
        return Ok(ProgressEventInfo(
            event_id=row.id,
            job_id=job_id,
            step_label=step_label,
            percent=percent,
            detail=detail,
            is_final=False,
            created_at=row.created_at,
        ))

    # ----------------- Terminal transitions -----------------

    async def _insert_final_event(
        self,
        session: AsyncSession,
        job_id: str,
        step_label: str,
        percent: Optional[int],
        detail_json: Optional[str],
    ) -> None:
        await session.execute(
            q.INSERT_FINAL_EVENT_SQL,
            {
                'job_id': job_id,
                'step_label': step_label,
                'percent': percent,
                'detail': detail_json,
            },
        )

    async def finalize_completed(
        self,
        job_id: str,
        *,
        result: Any,
        step_label: str,
        percent: Optional[int] = 100,
        detail: Any = None,
    ) -> BrokerResult[bool]:
        """
        RUNNING -> COMPLETED with ``result``, plus the final event, in one
        transaction. Ok(False) when the job was not RUNNING any more.
        """
        try:
            # None stays SQL NULL so ck_jobrelay_jobs_completed_result rejects it
            result_json = dumps_json(result) if result is not None else None
            detail_json = dumps_json(detail) if detail is not None else None
        except (SerializationError, ValueError) as exc:
            return self._encode_error(BrokerErrorCode.FINALIZE_FAILED, 'result', exc)

        try:
            async with self.session_factory() as session:
                res = await session.execute(
                    q.FINALIZE_COMPLETED_SQL, {'job_id': job_id, 'result': result_json}
                )
                if res.fetchone() is None:
                    await session.rollback()
                    return Ok(False)
                await self._insert_final_event(
                    session, job_id, step_label, percent, detail_json
                )
                await session.commit()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            return self._db_error(
                BrokerErrorCode.FINALIZE_FAILED, f'Completion of {job_id}', exc
            )
        return Ok(True)

    async def finalize_failed(
        self,
        job_id: str,
        *,
        error: str,
        error_code: str,
    ) -> BrokerResult[bool]:
        """
        RUNNING -> FAILED with the public ``error``, plus a final 'failed'
        event carrying the error summary, in one transaction. Ok(False) when
        the job was not RUNNING any more.
        """
        detail_json = dumps_json(failure_detail(error, error_code))
        try:
            async with self.session_factory() as session:
                res = await session.execute(
                    q.FINALIZE_FAILED_SQL,
                    {'job_id': job_id, 'error': error, 'error_code': error_code},
                )
                if res.fetchone() is None:
                    await session.rollback()
                    return Ok(False)
                await self._insert_final_event(
                    session, job_id, FAILED_STEP_LABEL, 100, detail_json
                )
                await session.commit()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            return self._db_error(
                BrokerErrorCode.FINALIZE_FAILED, f'Failure write of {job_id}', exc
            )
        return Ok(True)

    # ----------------- Reads -----------------

    async def get_job(self, job_id: str) -> BrokerResult[JobInfo | None]:
        init_r = await self.ensure_schema_initialized()
        if is_err(init_r):
            return init_r
        try:
            async with self.session_factory() as session:
                res = await session.execute(q.GET_JOB_SQL, {'job_id': job_id})
                row = res.fetchone()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            return self._db_error(BrokerErrorCode.JOB_QUERY_FAILED, f'Read of {job_id}', exc)
        return Ok(_job_from_row(row) if row is not None else None)

    async def list_events(
        self, job_id: str, *, after_id: int = 0
    ) -> BrokerResult[list[ProgressEventInfo]]:
        """Events of a job with id > ``after_id``, in insertion order."""
        try:
            async with self.session_factory() as session:
                res = await session.execute(
                    q.LIST_EVENTS_SQL, {'job_id': job_id, 'after_id': after_id}
                )
                rows = res.fetchall()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            return self._db_error(
                BrokerErrorCode.JOB_QUERY_FAILED, f'Event read of {job_id}', exc
            )
        return Ok([_event_from_row(row) for row in rows])

    async def get_snapshot(self, job_id: str) -> BrokerResult[JobSnapshot | None]:
        """Job row and all of its events, read in one session."""
        init_r = await self.ensure_schema_initialized()
        if is_err(init_r):
            return init_r
        try:
            async with self.session_factory() as session:
                job_row = (await session.execute(q.GET_JOB_SQL, {'job_id': job_id})).fetchone()
                if job_row is None:
                    return Ok(None)
                event_rows = (
                    await session.execute(q.LIST_EVENTS_SQL, {'job_id': job_id, 'after_id': 0})
                ).fetchall()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            return self._db_error(
                BrokerErrorCode.JOB_QUERY_FAILED, f'Snapshot of {job_id}', exc
            )
        return Ok(JobSnapshot(
            job=_job_from_row(job_row),
            events=[_event_from_row(row) for row in event_rows],
        ))

    # ----------------- Heartbeat / recovery -----------------

    async def touch_heartbeats(
        self, job_ids: Sequence[str], *, worker_id: str
    ) -> BrokerResult[int]:
        if not job_ids:
            return Ok(0)
        try:
            async with self.session_factory() as session:
                res = await session.execute(
                    q.TOUCH_HEARTBEATS_SQL,
                    {'job_ids': list(job_ids), 'worker_id': worker_id},
                )
                await session.commit()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            return self._db_error(BrokerErrorCode.HEARTBEAT_FAILED, 'Heartbeat', exc)
        return Ok(getattr(res, 'rowcount', 0) or 0)

    async def mark_stale_running_as_failed(
        self, stale_threshold_ms: int
    ) -> BrokerResult[list[str]]:
        """
        Finalize RUNNING jobs whose heartbeat is older than the threshold as
        FAILED (WORKER_CRASHED), each with its final event. Returns their ids.
        """
        fault = OrchestratorFault(WORKER_CRASHED_MESSAGE)
        error_code = fault.code
        detail_json = dumps_json(failure_detail(fault.public_message, error_code))
        failed: list[str] = []
        try:
            async with self.session_factory() as session:
                res = await session.execute(
                    q.SELECT_STALE_RUNNING_SQL,
                    {'stale_seconds': stale_threshold_ms / 1000.0},
                )
                stale_rows = res.fetchall()
                for row in stale_rows:
                    upd = await session.execute(
                        q.FINALIZE_FAILED_SQL,
                        {
                            'job_id': row.id,
                            'error': fault.public_message,
                            'error_code': error_code,
                        },
                    )
                    if upd.fetchone() is None:
                        continue
                    await self._insert_final_event(
                        session, row.id, FAILED_STEP_LABEL, 100, detail_json
                    )
                    failed.append(row.id)
                    self.logger.warning(
                        f'Job {row.id} marked failed: worker {row.worker_id} '
                        f'silent since {row.heartbeat_at or row.started_at}'
                    )
                await session.commit()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            return self._db_error(BrokerErrorCode.RECOVERY_FAILED, 'Stale-running recovery', exc)
        return Ok(failed)

    async def delete_terminal_jobs_older_than(self, retention_hours: int) -> BrokerResult[int]:
        """Retention cleanup; events go with their job through the cascade."""
        try:
            async with self.session_factory() as session:
                res = await session.execute(
                    q.DELETE_TERMINAL_JOBS_SQL, {'retention_hours': retention_hours}
                )
                await session.commit()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            return self._db_error(BrokerErrorCode.CLEANUP_FAILED, 'Retention cleanup', exc)
        return Ok(getattr(res, 'rowcount', 0) or 0)

    async def delete_jobs_for_owner(self, owner_id: str) -> BrokerResult[int]:
        """Owner deletion: removes every job of the principal and, by cascade, its events."""
        try:
            async with self.session_factory() as session:
                res = await session.execute(q.DELETE_OWNER_JOBS_SQL, {'owner_id': owner_id})
                await session.commit()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            return self._db_error(BrokerErrorCode.CLEANUP_FAILED, 'Owner deletion', exc)
        return Ok(getattr(res, 'rowcount', 0) or 0)

    # ----------------- Shutdown -----------------

    async def close_async(self) -> BrokerResult[None]:
        try:
            await self.listener.close()
            await self.async_engine.dispose()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            return self._db_error(BrokerErrorCode.CLOSE_FAILED, 'Store close', exc)
        return Ok(None)

    # ----------------- Sync API Facades -----------------

    def call_sync(self, coro_fn: Callable[..., Awaitable[Any]], *args: Any, **kwargs: Any) -> Any:
        """Run any coroutine that uses this store on the store's background loop."""
        return self._loop_runner.call(coro_fn, *args, **kwargs)

    def close(self) -> None:
        """Synchronous cleanup (runs close_async on the background loop)."""
        try:
            self._loop_runner.call(self.close_async)
        finally:
            self._loop_runner.stop()
