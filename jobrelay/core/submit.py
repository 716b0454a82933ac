# jobrelay/core/submit.py
"""Job submission: validate, persist as pending, hand off to the worker."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Optional

from pydantic import BaseModel, ValidationError
from result import Err, Ok

from jobrelay.core.access import require_principal
from jobrelay.core.codec.serde import SerializationError, to_jsonable
from jobrelay.core.dispatch import classify
from jobrelay.core.exceptions import (
    InvalidPayload,
    JobErrorCode,
    SubmissionFailed,
    TerminalWorkflowFailure,
)
from jobrelay.core.logging import get_logger
from jobrelay.core.models.jobs import WorkflowDescriptor
from jobrelay.core.registry.job_types import JobTypeDefinition, NotRegistered
from jobrelay.core.runner import StepRunner
from jobrelay.core.types.status import ExecutionMode, TriggeredBy

if TYPE_CHECKING:
    from jobrelay.core.app import JobRelay
    from jobrelay.core.brokers.postgres import PostgresJobStore

logger = get_logger('submit')


@dataclass(frozen=True)
class DispatchOutcome:
    """What run_or_submit did: an inline result, or a job id to observe."""

    mode: ExecutionMode
    result: Any = None
    job_id: Optional[str] = None

    def to_public(self) -> dict[str, Any]:
        if self.mode == ExecutionMode.SYNC:
            return {'mode': self.mode.value, 'result': self.result}
        return {'mode': self.mode.value, 'job_id': self.job_id}


def _format_validation_error(exc: ValidationError) -> str:
    parts: list[str] = []
    for err in exc.errors():
        loc = '.'.join(str(p) for p in err.get('loc', ())) or '<payload>'
        parts.append(f'{loc}: {err.get("msg", "invalid")}')
    return '; '.join(parts)


class SubmissionService:
    """
    Creates jobs. Never waits for a worker.

    The payload is validated against the job type's payload model but stored
    exactly as submitted, so the step function sees what the client sent.
    """

    def __init__(self, app: 'JobRelay', store: 'PostgresJobStore') -> None:
        self.app = app
        self.store = store

    def _resolve(self, job_type: str) -> JobTypeDefinition:
        try:
            return self.app.job_types[job_type]
        except NotRegistered:
            raise InvalidPayload(
                f"Unknown job type '{job_type}'",
                code=JobErrorCode.UNKNOWN_JOB_TYPE,
                data={'job_type': job_type},
            )

    def validate_payload(self, definition: JobTypeDefinition, payload: Any) -> dict[str, Any]:
        """Raises InvalidPayload when ``payload`` does not fit the job type."""
        if not isinstance(payload, dict):
            raise InvalidPayload('Payload must be a JSON object')
        try:
            to_jsonable(payload)
        except SerializationError:
            raise InvalidPayload('Payload must be JSON serializable')

        model: Optional[type[BaseModel]] = definition.payload_model
        if model is not None:
            try:
                model.model_validate(payload)
            except ValidationError as exc:
                raise InvalidPayload(
                    f'Invalid payload: {_format_validation_error(exc)}',
                    data={'job_type': definition.name},
                )
        return payload

    async def submit(
        self,
        job_type: str,
        payload: Any,
        owner_id: Optional[str],
        *,
        triggered_by: TriggeredBy = TriggeredBy.USER,
    ) -> str:
        """Create a pending job and return its id.

        Raises:
            Unauthorized: owner_id missing.
            InvalidPayload: unknown job type or payload rejected; nothing written.
            SubmissionFailed: the store write failed.
        """
        owner = require_principal(owner_id)
        definition = self._resolve(job_type)
        payload = self.validate_payload(definition, payload)

        match await self.store.create_job(
            owner_id=owner,
            job_type=definition.name,
            payload=payload,
            triggered_by=triggered_by,
        ):
            case Ok(job_id):
                logger.info(f'Submitted job {job_id} ({job_type}) for {owner} [{triggered_by.value}]')
                return job_id
            case Err(err):
                logger.error(f'Failed to submit {job_type} for {owner}: {err.code}: {err.message}')
                raise SubmissionFailed(err)

    def descriptor(
        self, job_type: str, *, triggered_by: TriggeredBy = TriggeredBy.USER
    ) -> WorkflowDescriptor:
        definition = self._resolve(job_type)
        return WorkflowDescriptor.from_options(definition.options, triggered_by=triggered_by)

    async def run_or_submit(
        self,
        job_type: str,
        payload: Any,
        owner_id: Optional[str],
        *,
        triggered_by: TriggeredBy = TriggeredBy.USER,
    ) -> DispatchOutcome:
        """Apply the dispatch rule: run inline when short, else create a job.

        Inline runs write no job row and no events.

        Raises:
            TerminalWorkflowFailure: the inline run failed; carries the public message.
        """
        owner = require_principal(owner_id)
        definition = self._resolve(job_type)
        mode = classify(
            WorkflowDescriptor.from_options(definition.options, triggered_by=triggered_by),
            request_timeout_ms=self.app.config.api.request_timeout_ms,
        )
        if mode == ExecutionMode.ASYNC:
            job_id = await self.submit(job_type, payload, owner, triggered_by=triggered_by)
            return DispatchOutcome(mode=mode, job_id=job_id)

        payload = self.validate_payload(definition, payload)
        report = await StepRunner(definition, self.app.config).run(payload)
        if not report.ok:
            raise TerminalWorkflowFailure(
                report.error or 'Job failed',
                code=report.error_code,
                data={'job_type': job_type},
            )
        logger.debug(f'Ran {job_type} inline for {owner} in {report.steps} step(s)')
        return DispatchOutcome(mode=mode, result=report.result)
