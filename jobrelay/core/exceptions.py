"""Runtime error taxonomy for job submission, execution and observation.

Every error here carries a machine ``code`` and a ``public_message`` that is
safe to show to the job's owner. Raw exception text from step functions or
the database never goes into ``public_message``; it stays in the logs.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, TYPE_CHECKING

if TYPE_CHECKING:
    from jobrelay.core.brokers.result_types import BrokerOperationError


class JobErrorCode(str, Enum):
    """
    Library-defined error codes.

    Categories:
    - Submission: UNKNOWN_JOB_TYPE, PAYLOAD_VALIDATION_FAILED, SUBMISSION_FAILED
    - Access: MISSING_PRINCIPAL, NOT_OWNER, JOB_NOT_FOUND
    - Execution: TRANSIENT_STEP_FAILURE, STEP_FAILED, BUDGET_EXCEEDED,
      RETRIES_EXHAUSTED, UNHANDLED_EXCEPTION, OWNERSHIP_MISMATCH,
      RESULT_NOT_SERIALIZABLE, INVALID_STEP_OUTCOME
    - Recovery: WORKER_CRASHED
    - Infrastructure: CHANNEL_UNAVAILABLE, STORE_UNAVAILABLE
    """

    UNKNOWN_JOB_TYPE = 'UNKNOWN_JOB_TYPE'
    PAYLOAD_VALIDATION_FAILED = 'PAYLOAD_VALIDATION_FAILED'
    SUBMISSION_FAILED = 'SUBMISSION_FAILED'

    MISSING_PRINCIPAL = 'MISSING_PRINCIPAL'
    NOT_OWNER = 'NOT_OWNER'
    JOB_NOT_FOUND = 'JOB_NOT_FOUND'

    TRANSIENT_STEP_FAILURE = 'TRANSIENT_STEP_FAILURE'
    STEP_FAILED = 'STEP_FAILED'
    BUDGET_EXCEEDED = 'BUDGET_EXCEEDED'
    RETRIES_EXHAUSTED = 'RETRIES_EXHAUSTED'
    UNHANDLED_EXCEPTION = 'UNHANDLED_EXCEPTION'
    OWNERSHIP_MISMATCH = 'OWNERSHIP_MISMATCH'
    RESULT_NOT_SERIALIZABLE = 'RESULT_NOT_SERIALIZABLE'
    INVALID_STEP_OUTCOME = 'INVALID_STEP_OUTCOME'

    WORKER_CRASHED = 'WORKER_CRASHED'

    CHANNEL_UNAVAILABLE = 'CHANNEL_UNAVAILABLE'
    STORE_UNAVAILABLE = 'STORE_UNAVAILABLE'


class JobRelayRuntimeError(Exception):
    """Base class for runtime job errors."""

    default_code: JobErrorCode = JobErrorCode.STEP_FAILED

    def __init__(
        self,
        public_message: str,
        *,
        code: JobErrorCode | str | None = None,
        data: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(public_message)
        self.public_message = public_message
        self.code: str = _code_value(code or self.default_code)
        self.data: dict[str, Any] = data or {}

    def to_public(self) -> dict[str, Any]:
        """JSON body for HTTP responses."""
        return {'code': self.code, 'message': self.public_message}


def _code_value(code: JobErrorCode | str) -> str:
    return code.value if isinstance(code, JobErrorCode) else code


class InvalidPayload(JobRelayRuntimeError):
    """Submission rejected before any job row is created."""

    default_code = JobErrorCode.PAYLOAD_VALIDATION_FAILED


class Unauthorized(JobRelayRuntimeError):
    """Principal is missing or does not own the job."""

    default_code = JobErrorCode.NOT_OWNER


class JobNotFound(JobRelayRuntimeError):
    default_code = JobErrorCode.JOB_NOT_FOUND

    def __init__(self, job_id: str) -> None:
        super().__init__('Job not found', data={'job_id': job_id})
        self.job_id = job_id


class TransientStepFailure(JobRelayRuntimeError):
    """Raised by a step when an external dependency failed recoverably.

    The step runner retries the step up to the job type's retry bound; the
    client only sees it once that bound is exceeded.
    """

    default_code = JobErrorCode.TRANSIENT_STEP_FAILURE


class TerminalWorkflowFailure(JobRelayRuntimeError):
    """Raised by a step (or the runner) when the job cannot succeed.

    ``public_message`` becomes ``Job.error``.
    """

    default_code = JobErrorCode.STEP_FAILED


class OrchestratorFault(JobRelayRuntimeError):
    """A worker stopped before writing the terminal state of a job."""

    default_code = JobErrorCode.WORKER_CRASHED


class SubmissionFailed(JobRelayRuntimeError):
    """The job row could not be written."""

    default_code = JobErrorCode.SUBMISSION_FAILED

    def __init__(self, cause: BrokerOperationError) -> None:
        super().__init__('Job could not be submitted, try again later')
        self.cause = cause
        self.retryable = cause.retryable


class ChannelUnavailable(JobRelayRuntimeError):
    """The push channel could not subscribe; callers fall back to polling."""

    default_code = JobErrorCode.CHANNEL_UNAVAILABLE

    def __init__(self, cause: BrokerOperationError) -> None:
        super().__init__('Progress channel unavailable')
        self.cause = cause
        self.retryable = cause.retryable


class JobStoreUnavailable(JobRelayRuntimeError):
    """A read needed to answer the caller failed in the job store."""

    default_code = JobErrorCode.STORE_UNAVAILABLE

    def __init__(self, cause: BrokerOperationError) -> None:
        super().__init__('Job store unavailable, try again later')
        self.cause = cause
        self.retryable = cause.retryable
