"""Unit tests for the FastAPI surface (jobrelay/core/api.py).

The API runs against FakeJobStore; TestClient is used as a context manager
so lifespan (and the embedded worker, when enabled) shares the request loop.
"""

from __future__ import annotations

import asyncio
from typing import Any, Iterator

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from jobrelay.core.api import (
    WS_CLOSE_FORBIDDEN,
    WS_CLOSE_NOT_FOUND,
    WS_CLOSE_UNAUTHENTICATED,
    create_api,
    header_principal_resolver,
)
from jobrelay.core.app import JobRelay
from jobrelay.core.channel import ProgressChannel
from jobrelay.core.exceptions import JobErrorCode
from jobrelay.core.models.api import ApiConfig
from jobrelay.core.models.jobs import StepContext, StepOutcome
from jobrelay.core.runner import GENERIC_FAILURE_MESSAGE
from jobrelay.core.types.status import JobStatus
from jobrelay.jobs.builtin import register_builtin_job_types
from tests.unit.fakes import FakeJobStore, make_app, make_error

ALICE = {'X-Principal-Id': 'alice'}
MALLORY = {'X-Principal-Id': 'mallory'}


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


def _make_app() -> JobRelay:
    app = make_app()
    register_builtin_job_types(app)

    @app.job_type('crawl', step_count=3, external_lookups=True)
    def crawl(ctx: StepContext) -> StepOutcome:
        return StepOutcome.final({'pages': 0})

    @app.job_type('explode')
    def explode(ctx: StepContext) -> StepOutcome:
        raise RuntimeError('secret-db-host:5432 unreachable')

    return app


@pytest.fixture
def store() -> FakeJobStore:
    return FakeJobStore()


@pytest.fixture
def client(store: FakeJobStore) -> Iterator[TestClient]:
    api = create_api(_make_app(), store=store, channel=ProgressChannel(store, store.listener))  # type: ignore[arg-type]
    with TestClient(api) as test_client:
        yield test_client


def _finished_job(store: FakeJobStore, owner_id: str = 'alice', *, fail: bool = False) -> str:
    """A RUNNING job with one progress event, then finalized."""
    job_id = store.seed_job(
        owner_id, 'crawl', {'url': 'https://example.org'}, status=JobStatus.RUNNING, worker_id='w1'
    )

    async def drive() -> None:
        await store.append_progress(job_id, worker_id='w1', step_label='fetch', percent=50)
        if fail:
            await store.finalize_failed(job_id, error='Job failed', error_code='STEP_FAILED')
        else:
            await store.finalize_completed(job_id, result={'pages': 1}, step_label='done')

    asyncio.run(drive())
    return job_id


def _error_code(body: dict[str, Any]) -> str:
    return body['error']['code']


# ---------------------------------------------------------------------------
# Submission
# ---------------------------------------------------------------------------


@pytest.mark.unit
class TestSubmitEndpoint:
    """POST /jobs creates a PENDING job owned by the caller."""

    def test_accepted(self, client: TestClient, store: FakeJobStore) -> None:
        resp = client.post('/jobs', json={'job_type': 'echo', 'payload': {'text': 'hi'}}, headers=ALICE)

        assert resp.status_code == 202
        job = store.jobs[resp.json()['job_id']]
        assert job.owner_id == 'alice'
        assert job.status == JobStatus.PENDING
        assert job.payload == {'text': 'hi'}

    def test_missing_principal(self, client: TestClient, store: FakeJobStore) -> None:
        resp = client.post('/jobs', json={'job_type': 'echo', 'payload': {'text': 'hi'}})

        assert resp.status_code == 401
        assert _error_code(resp.json()) == JobErrorCode.MISSING_PRINCIPAL.value
        assert store.jobs == {}

    def test_invalid_payload(self, client: TestClient, store: FakeJobStore) -> None:
        resp = client.post('/jobs', json={'job_type': 'echo', 'payload': {'text': 3}}, headers=ALICE)

        assert resp.status_code == 422
        assert _error_code(resp.json()) == JobErrorCode.PAYLOAD_VALIDATION_FAILED.value
        assert store.jobs == {}

    def test_unknown_job_type(self, client: TestClient) -> None:
        resp = client.post('/jobs', json={'job_type': 'nope', 'payload': {}}, headers=ALICE)

        assert resp.status_code == 422

    def test_malformed_body(self, client: TestClient) -> None:
        resp = client.post('/jobs', json={'payload': {}}, headers=ALICE)

        assert resp.status_code == 422
        body = resp.json()
        assert _error_code(body) == JobErrorCode.PAYLOAD_VALIDATION_FAILED.value
        assert 'job_type' in body['error']['message']

    def test_store_failure_is_503_without_details(
        self, client: TestClient, store: FakeJobStore
    ) -> None:
        store.fail_next['create_job'] = make_error(message='could not connect to db-01:5432')

        resp = client.post('/jobs', json={'job_type': 'echo', 'payload': {'text': 'hi'}}, headers=ALICE)

        assert resp.status_code == 503
        assert _error_code(resp.json()) == JobErrorCode.SUBMISSION_FAILED.value
        assert 'db-01' not in resp.text


@pytest.mark.unit
class TestRunEndpoint:
    """POST /jobs/run applies the dispatch rule."""

    def test_short_job_runs_inline(self, client: TestClient, store: FakeJobStore) -> None:
        resp = client.post('/jobs/run', json={'job_type': 'echo', 'payload': {'text': 'hi'}}, headers=ALICE)

        assert resp.status_code == 200
        assert resp.json() == {'mode': 'sync', 'result': {'text': 'hi'}}
        assert store.jobs == {}

    def test_long_job_is_submitted(self, client: TestClient, store: FakeJobStore) -> None:
        resp = client.post('/jobs/run', json={'job_type': 'crawl', 'payload': {}}, headers=ALICE)

        assert resp.status_code == 202
        body = resp.json()
        assert body['mode'] == 'async'
        assert body['job_id'] in store.jobs

    def test_inline_failure_shows_public_message(self, client: TestClient) -> None:
        resp = client.post('/jobs/run', json={'job_type': 'explode', 'payload': {}}, headers=ALICE)

        assert resp.status_code == 422
        assert resp.json()['error']['message'] == GENERIC_FAILURE_MESSAGE
        assert 'secret-db-host' not in resp.text


# ---------------------------------------------------------------------------
# Polling and deletion
# ---------------------------------------------------------------------------


@pytest.mark.unit
class TestPollEndpoint:
    """GET /jobs/{id} returns the job with its events, to the owner only."""

    def test_owner_sees_snapshot(self, client: TestClient, store: FakeJobStore) -> None:
        job_id = _finished_job(store)

        resp = client.get(f'/jobs/{job_id}', headers=ALICE)

        assert resp.status_code == 200
        body = resp.json()
        assert body['job']['status'] == 'completed'
        assert body['job']['result'] == {'pages': 1}
        assert 'worker_id' not in body['job']
        assert [e['step_label'] for e in body['events']] == ['fetch', 'done']
        assert [e['is_final'] for e in body['events']] == [False, True]

    def test_other_principal_is_forbidden(self, client: TestClient, store: FakeJobStore) -> None:
        job_id = _finished_job(store, owner_id='alice')

        resp = client.get(f'/jobs/{job_id}', headers=MALLORY)

        assert resp.status_code == 403
        assert _error_code(resp.json()) == JobErrorCode.NOT_OWNER.value
        assert 'example.org' not in resp.text
        assert 'pages' not in resp.text

    def test_unknown_job(self, client: TestClient) -> None:
        resp = client.get('/jobs/does-not-exist', headers=ALICE)

        assert resp.status_code == 404
        assert _error_code(resp.json()) == JobErrorCode.JOB_NOT_FOUND.value

    def test_store_failure(self, client: TestClient, store: FakeJobStore) -> None:
        store.fail_next['get_snapshot'] = make_error()

        resp = client.get('/jobs/anything', headers=ALICE)

        assert resp.status_code == 503

    def test_delete_removes_only_callers_jobs(self, client: TestClient, store: FakeJobStore) -> None:
        mine = _finished_job(store, owner_id='alice')
        theirs = _finished_job(store, owner_id='bob')

        resp = client.delete('/jobs', headers=ALICE)

        assert resp.status_code == 200
        assert resp.json() == {'deleted': 1}
        assert mine not in store.jobs
        assert store.events_of(mine) == []
        assert theirs in store.jobs

    def test_healthz(self, client: TestClient) -> None:
        assert client.get('/healthz').json() == {'status': 'ok'}


# ---------------------------------------------------------------------------
# WebSocket stream
# ---------------------------------------------------------------------------


@pytest.mark.unit
class TestEventStream:
    """/jobs/{id}/events streams every event, then the outcome."""

    def test_streams_history_then_outcome(self, client: TestClient, store: FakeJobStore) -> None:
        job_id = _finished_job(store, fail=True)

        with client.websocket_connect(f'/jobs/{job_id}/events', headers=ALICE) as ws:
            messages = [ws.receive_json() for _ in range(3)]

        assert [m['type'] for m in messages] == ['event', 'event', 'outcome']
        assert [m.get('step_label') for m in messages[:2]] == ['fetch', 'failed']
        assert messages[2]['status'] == 'failed'
        assert messages[2]['error'] == 'Job failed'

    def test_other_principal_is_closed_with_4403(self, client: TestClient, store: FakeJobStore) -> None:
        job_id = _finished_job(store, owner_id='alice')

        with client.websocket_connect(f'/jobs/{job_id}/events', headers=MALLORY) as ws:
            error = ws.receive_json()
            with pytest.raises(WebSocketDisconnect) as exc_info:
                ws.receive_json()

        assert error['type'] == 'error'
        assert error['code'] == JobErrorCode.NOT_OWNER.value
        assert exc_info.value.code == WS_CLOSE_FORBIDDEN

    def test_unknown_job_is_closed_with_4404(self, client: TestClient) -> None:
        with client.websocket_connect('/jobs/missing/events', headers=ALICE) as ws:
            assert ws.receive_json()['type'] == 'error'
            with pytest.raises(WebSocketDisconnect) as exc_info:
                ws.receive_json()

        assert exc_info.value.code == WS_CLOSE_NOT_FOUND

    def test_anonymous_is_closed_with_4401(self, client: TestClient, store: FakeJobStore) -> None:
        job_id = _finished_job(store)

        with client.websocket_connect(f'/jobs/{job_id}/events') as ws:
            assert ws.receive_json()['code'] == JobErrorCode.MISSING_PRINCIPAL.value
            with pytest.raises(WebSocketDisconnect) as exc_info:
                ws.receive_json()

        assert exc_info.value.code == WS_CLOSE_UNAUTHENTICATED


@pytest.mark.unit
class TestEmbeddedWorker:
    """With embedded_worker the API process also executes jobs."""

    def test_submitted_job_runs_and_streams(self, store: FakeJobStore) -> None:
        api = create_api(
            _make_app(),
            store=store,
            channel=ProgressChannel(store, store.listener),  # type: ignore[arg-type]
            embedded_worker=True,
        )
        with TestClient(api) as client:
            job_id = client.post(
                '/jobs', json={'job_type': 'echo', 'payload': {'text': 'hi'}}, headers=ALICE
            ).json()['job_id']
            with client.websocket_connect(f'/jobs/{job_id}/events', headers=ALICE) as ws:
                event = ws.receive_json()
                outcome = ws.receive_json()

        assert event['step_label'] == 'processing'
        assert event['is_final'] is True
        assert outcome == {
            'type': 'outcome',
            'job_id': job_id,
            'status': 'completed',
            'result': {'text': 'hi'},
            'error': None,
            'error_code': None,
        }
        assert store.jobs[job_id].status == JobStatus.COMPLETED


@pytest.mark.unit
class TestPrincipalResolver:
    def test_custom_header(self) -> None:
        app = make_app(api=ApiConfig(principal_header='X-User'))
        register_builtin_job_types(app)
        store = FakeJobStore()
        api = create_api(app, store=store, channel=None)

        with TestClient(api) as client:
            assert client.get('/jobs/x', headers={'X-User': 'alice'}).status_code == 404
            assert client.get('/jobs/x', headers=ALICE).status_code == 401

    def test_custom_resolver(self, store: FakeJobStore) -> None:
        job_id = _finished_job(store, owner_id='svc-reports')
        api = create_api(
            _make_app(), store=store, channel=None, principal_resolver=lambda conn: 'svc-reports'
        )

        with TestClient(api) as client:
            assert client.get(f'/jobs/{job_id}').status_code == 200

    def test_header_resolver_strips_blank(self) -> None:
        class _Conn:
            headers = {'X-Principal-Id': '   '}

        assert header_principal_resolver('X-Principal-Id')(_Conn()) is None  # type: ignore[arg-type]
