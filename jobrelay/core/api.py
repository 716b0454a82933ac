# jobrelay/core/api.py
"""
HTTP surface: submit, poll and push.

Authentication happens upstream; a principal resolver turns the request
into a principal id (by default the configured header). Error bodies carry
only public messages: ``{"error": {"code", "message"}}``.
"""

from __future__ import annotations

import asyncio
import contextlib
from typing import Any, AsyncIterator, Callable, Optional

from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from result import Err, Ok, is_err
from starlette.requests import HTTPConnection

from jobrelay.core.access import check_owner, require_principal
from jobrelay.core.app import JobRelay
from jobrelay.core.channel import ProgressChannel
from jobrelay.core.consumer import ProgressConsumer
from jobrelay.core.exceptions import (
    ChannelUnavailable,
    InvalidPayload,
    JobErrorCode,
    JobNotFound,
    JobRelayRuntimeError,
    JobStoreUnavailable,
    SubmissionFailed,
    TerminalWorkflowFailure,
    Unauthorized,
)
from jobrelay.core.logging import get_logger
from jobrelay.core.submit import SubmissionService
from jobrelay.core.types.status import ExecutionMode

logger = get_logger('api')

PrincipalResolver = Callable[[HTTPConnection], Optional[str]]

# Application-defined WebSocket close codes (4000-4999), mirroring HTTP statuses
WS_CLOSE_UNAUTHENTICATED = 4401
WS_CLOSE_FORBIDDEN = 4403
WS_CLOSE_NOT_FOUND = 4404
WS_CLOSE_UNAVAILABLE = 4503

# Unprocessable Content
HTTP_422_UNPROCESSABLE = 422


class SubmitJobRequest(BaseModel):
    job_type: str = Field(min_length=1, max_length=255)
    # Checked against the job type by the submission service
    payload: Any = Field(default_factory=dict)


def header_principal_resolver(header_name: str) -> PrincipalResolver:
    """Principal id from a request header set by the auth proxy."""

    def resolve(conn: HTTPConnection) -> Optional[str]:
        value = (conn.headers.get(header_name) or '').strip()
        return value or None

    return resolve


def status_for_error(exc: JobRelayRuntimeError) -> int:
    match exc:
        case Unauthorized() if exc.code == JobErrorCode.MISSING_PRINCIPAL.value:
            return status.HTTP_401_UNAUTHORIZED
        case Unauthorized():
            return status.HTTP_403_FORBIDDEN
        case JobNotFound():
            return status.HTTP_404_NOT_FOUND
        case InvalidPayload() | TerminalWorkflowFailure():
            return HTTP_422_UNPROCESSABLE
        case SubmissionFailed() | JobStoreUnavailable() | ChannelUnavailable():
            return status.HTTP_503_SERVICE_UNAVAILABLE
        case _:
            return status.HTTP_500_INTERNAL_SERVER_ERROR


def ws_close_code_for_error(exc: JobRelayRuntimeError) -> int:
    match status_for_error(exc):
        case status.HTTP_401_UNAUTHORIZED:
            return WS_CLOSE_UNAUTHENTICATED
        case status.HTTP_403_FORBIDDEN:
            return WS_CLOSE_FORBIDDEN
        case status.HTTP_404_NOT_FOUND:
            return WS_CLOSE_NOT_FOUND
        case _:
            return WS_CLOSE_UNAVAILABLE


async def _runtime_error_handler(request: Request, exc: JobRelayRuntimeError) -> JSONResponse:
    status_code = status_for_error(exc)
    if status_code >= 500:
        logger.error(f'{request.method} {request.url.path} -> {status_code} [{exc.code}]')
    else:
        logger.debug(f'{request.method} {request.url.path} -> {status_code} [{exc.code}]')
    return JSONResponse(status_code=status_code, content={'error': exc.to_public()})


async def _request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    fields = sorted({'.'.join(str(p) for p in err.get('loc', ())) for err in exc.errors()})
    return JSONResponse(
        status_code=HTTP_422_UNPROCESSABLE,
        content={
            'error': {
                'code': JobErrorCode.PAYLOAD_VALIDATION_FAILED.value,
                'message': f'Invalid request body: {", ".join(fields)}',
            }
        },
    )


def create_api(
    app: JobRelay,
    *,
    store: Any = None,
    channel: Optional[ProgressChannel] = None,
    principal_resolver: Optional[PrincipalResolver] = None,
    embedded_worker: bool = False,
) -> FastAPI:
    """
    Build the FastAPI application for ``app``.

    By default the app's own store and push channel are used and the
    schema is ensured at startup. ``store``/``channel`` replace them (the
    caller then owns their lifecycle). ``embedded_worker`` runs a Worker
    inside this process, started and stopped with the application and
    independent of any request.
    """
    owns_store = store is None
    if owns_store:
        store = app.get_store()
        channel = app.get_channel()
    resolver = principal_resolver or header_principal_resolver(app.config.api.principal_header)
    service = SubmissionService(app, store)
    poll_interval_ms = app.config.api.consumer_poll_interval_ms

    def principal_of(conn: HTTPConnection) -> str:
        return require_principal(resolver(conn))

    @contextlib.asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        worker_task: Optional[asyncio.Task[None]] = None
        worker = None
        if owns_store:
            schema_r = await store.ensure_schema_initialized()
            if is_err(schema_r):
                err = schema_r.err_value
                raise err.exception or RuntimeError(err.message)
        if embedded_worker:
            from jobrelay.core.worker.worker import Worker

            worker = Worker(app, store)
            worker_task = asyncio.create_task(worker.run_forever(), name='embedded-worker')
            logger.info('Embedded worker started')
        try:
            yield
        finally:
            if worker is not None and worker_task is not None:
                worker.request_stop()
                with contextlib.suppress(asyncio.CancelledError):
                    await worker_task
            if owns_store:
                close_r = await store.close_async()
                if is_err(close_r):
                    logger.error(f'Error closing job store: {close_r.err_value.message}')

    api = FastAPI(title='jobrelay', lifespan=lifespan)
    api.add_exception_handler(JobRelayRuntimeError, _runtime_error_handler)  # type: ignore[arg-type]
    api.add_exception_handler(RequestValidationError, _request_validation_handler)  # type: ignore[arg-type]

    @api.get('/healthz')
    async def healthz() -> dict[str, str]:
        return {'status': 'ok'}

    @api.post('/jobs', status_code=status.HTTP_202_ACCEPTED)
    async def submit_job(body: SubmitJobRequest, request: Request) -> dict[str, str]:
        job_id = await service.submit(body.job_type, body.payload, principal_of(request))
        return {'job_id': job_id}

    @api.post('/jobs/run')
    async def run_job(body: SubmitJobRequest, request: Request) -> JSONResponse:
        outcome = await service.run_or_submit(body.job_type, body.payload, principal_of(request))
        status_code = (
            status.HTTP_200_OK
            if outcome.mode == ExecutionMode.SYNC
            else status.HTTP_202_ACCEPTED
        )
        return JSONResponse(status_code=status_code, content=outcome.to_public())

    @api.get('/jobs/{job_id}')
    async def get_job(job_id: str, request: Request) -> dict[str, Any]:
        principal = principal_of(request)
        match await store.get_snapshot(job_id):
            case Err(err):
                raise JobStoreUnavailable(err)
            case Ok(None):
                raise JobNotFound(job_id)
            case Ok(snapshot):
                check_owner(snapshot.job, principal)
                return snapshot.to_public()

    @api.delete('/jobs')
    async def delete_my_jobs(request: Request) -> dict[str, int]:
        """Owner deletion: every job of the caller, events included."""
        principal = principal_of(request)
        match await store.delete_jobs_for_owner(principal):
            case Err(err):
                raise JobStoreUnavailable(err)
            case Ok(deleted):
                logger.info(f'Deleted {deleted} job(s) of {principal}')
                return {'deleted': deleted}

    @api.websocket('/jobs/{job_id}/events')
    async def job_events(websocket: WebSocket, job_id: str) -> None:
        await websocket.accept()
        try:
            consumer = ProgressConsumer(store, channel, resolver(websocket), poll_interval_ms)
            observation = consumer.observe(job_id)
            async for event in observation:
                await websocket.send_json({'type': 'event', **event.to_public()})
            outcome = await observation.wait()
            await websocket.send_json({'type': 'outcome', **outcome.to_public()})
            await websocket.close()
        except WebSocketDisconnect:
            logger.debug(f'Client left the event stream of job {job_id}')
        except JobRelayRuntimeError as exc:
            with contextlib.suppress(RuntimeError, WebSocketDisconnect):
                await websocket.send_json({'type': 'error', **exc.to_public()})
                await websocket.close(code=ws_close_code_for_error(exc))

    return api
