# jobrelay/core/models/jobs.py
from __future__ import annotations
import datetime
from dataclasses import dataclass, field
from typing import Any, Literal, Optional, Self, Annotated

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.types import PositiveInt

from jobrelay.core.exception_mapper import validate_error_code_string
from jobrelay.core.exceptions import JobErrorCode
from jobrelay.core.types.status import JobStatus, TriggeredBy


def _iso(value: datetime.datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


# ---------------------------------------------------------------------------
# Read models
# ---------------------------------------------------------------------------


@dataclass
class JobInfo:
    """Metadata of a stored job."""

    job_id: str
    owner_id: str
    job_type: str
    status: JobStatus
    triggered_by: TriggeredBy
    payload: dict[str, Any]
    result: Any | None
    error: str | None
    error_code: str | None
    worker_id: str | None
    created_at: datetime.datetime | None
    started_at: datetime.datetime | None
    completed_at: datetime.datetime | None
    heartbeat_at: datetime.datetime | None = None

    def to_public(self) -> dict[str, Any]:
        """Owner-facing view. Worker bookkeeping stays internal."""
        return {
            'job_id': self.job_id,
            'job_type': self.job_type,
            'status': self.status.value,
            'triggered_by': self.triggered_by.value,
            'payload': self.payload,
            'result': self.result,
            'error': self.error,
            'error_code': self.error_code,
            'created_at': _iso(self.created_at),
            'started_at': _iso(self.started_at),
            'completed_at': _iso(self.completed_at),
        }


@dataclass(frozen=True)
class ProgressEventInfo:
    """One stored progress event."""

    event_id: int
    job_id: str
    step_label: str
    percent: int | None
    detail: Any | None
    is_final: bool
    created_at: datetime.datetime | None = None

    def to_public(self) -> dict[str, Any]:
        return {
            'id': self.event_id,
            'job_id': self.job_id,
            'step_label': self.step_label,
            'percent': self.percent,
            'detail': self.detail,
            'is_final': self.is_final,
            'created_at': _iso(self.created_at),
        }


@dataclass
class JobSnapshot:
    """A job together with its events in insertion order (poll response)."""

    job: JobInfo
    events: list[ProgressEventInfo] = field(default_factory=list)

    def to_public(self) -> dict[str, Any]:
        return {
            'job': self.job.to_public(),
            'events': [event.to_public() for event in self.events],
        }


@dataclass(frozen=True)
class JobOutcome:
    """Terminal outcome of a job: a result when completed, an error when failed."""

    job_id: str
    status: JobStatus
    result: Any | None = None
    error: str | None = None
    error_code: str | None = None

    @property
    def ok(self) -> bool:
        return self.status == JobStatus.COMPLETED

    @classmethod
    def from_job(cls, job: JobInfo) -> 'JobOutcome':
        if not job.status.is_terminal:
            raise ValueError(f'job {job.job_id} is not terminal (status={job.status.value})')
        if job.status == JobStatus.COMPLETED:
            return cls(job_id=job.job_id, status=job.status, result=job.result)
        return cls(
            job_id=job.job_id,
            status=job.status,
            error=job.error,
            error_code=job.error_code,
        )

    def to_public(self) -> dict[str, Any]:
        return {
            'job_id': self.job_id,
            'status': self.status.value,
            'result': self.result,
            'error': self.error,
            'error_code': self.error_code,
        }


@dataclass(frozen=True)
class JobDispatch:
    """
    Hand-off from the submission service to the worker.

    owner_id is the principal captured at submission time; the worker
    refuses to run a job whose stored owner differs from it.
    """

    job_id: str
    owner_id: str


# ---------------------------------------------------------------------------
# Step seam
# ---------------------------------------------------------------------------


@dataclass
class StepContext:
    """
    What a step function sees on each call.

    - payload: the job payload as submitted
    - outputs: `output` values of the steps completed so far, in order
    - step_index: zero-based index of the step being executed
    - attempt: 1 on the first try of this step, incremented on each retry
    - elapsed_ms: time spent on the job so far
    """

    job_type: str
    payload: dict[str, Any]
    outputs: list[Any] = field(default_factory=list)
    step_index: int = 0
    attempt: int = 1
    elapsed_ms: int = 0
    job_id: str | None = None

    @property
    def previous(self) -> Any | None:
        """Output of the previous step, if any."""
        return self.outputs[-1] if self.outputs else None


@dataclass(frozen=True)
class StepOutcome:
    """
    Value returned by a step function.

    A non-final outcome becomes one progress event and the step function is
    called again. A final outcome (`done=True`) carries the job result; its
    event is written as the job's final event together with the terminal
    status.
    """

    step_label: str
    percent: int | None = None
    detail: Any | None = None
    output: Any | None = None
    result: Any | None = None
    done: bool = False

    def __post_init__(self) -> None:
        if not self.step_label:
            raise ValueError('step_label must be a non-empty string')
        if self.percent is not None and not 0 <= self.percent <= 100:
            raise ValueError(f'percent must be within 0..100, got {self.percent}')

    @classmethod
    def final(
        cls,
        result: Any,
        *,
        step_label: str = 'completed',
        percent: int | None = 100,
        detail: Any | None = None,
    ) -> 'StepOutcome':
        """Last step of a job."""
        return cls(
            step_label=step_label,
            percent=percent,
            detail=detail,
            result=result,
            done=True,
        )


# ---------------------------------------------------------------------------
# Job type configuration
# ---------------------------------------------------------------------------


class StepRetryPolicy(BaseModel):
    """
    Retry policy for a failing step.

    A step is retried when it raises TransientStepFailure or when the error
    code its exception maps to is listed in `auto_retry_for`. Retries repeat
    the same step; completed steps are never re-run.

    Fields:
        max_retries: retry attempts per step (the first try is not counted)
        intervals_ms: delays between attempts in milliseconds
        backoff_strategy: 'fixed' uses intervals_ms as-is, 'exponential' uses intervals_ms[0] as base
        jitter: add +-25% randomization to delays
        auto_retry_for: extra error codes that are treated as transient
    """

    model_config = ConfigDict(extra='forbid')

    max_retries: Annotated[
        int, Field(ge=1, le=20, description='Number of retry attempts (1-20)')
    ] = 3
    intervals_ms: Annotated[
        list[
            Annotated[
                PositiveInt,
                Field(le=600_000, description='Retry interval in ms (1ms-10min)'),
            ]
        ],
        Field(min_length=1, max_length=20),
    ] = [500, 2_000, 5_000]
    backoff_strategy: Literal['fixed', 'exponential'] = 'fixed'
    jitter: bool = True
    auto_retry_for: list[str | JobErrorCode] = Field(default_factory=list)

    @model_validator(mode='after')
    def validate_strategy_consistency(self) -> Self:
        if self.backoff_strategy == 'fixed':
            if len(self.intervals_ms) != self.max_retries:
                raise ValueError(
                    f'Fixed backoff strategy requires intervals_ms length ({len(self.intervals_ms)}) '
                    f'to match max_retries ({self.max_retries}). '
                    f'Either adjust intervals_ms or use exponential strategy.'
                )
        elif len(self.intervals_ms) != 1:
            raise ValueError(
                f'Exponential backoff strategy requires exactly one base interval, '
                f'got {len(self.intervals_ms)} intervals. Use intervals_ms=[base_ms].'
            )
        return self

    @model_validator(mode='after')
    def validate_error_code_fields(self) -> Self:
        for entry in self.auto_retry_for:
            code = entry.value if isinstance(entry, JobErrorCode) else entry
            err = validate_error_code_string(code, field_name='auto_retry_for')
            if err is not None:
                raise ValueError(err)
        return self

    def retries_code(self, code: str) -> bool:
        return any(
            (entry.value if isinstance(entry, JobErrorCode) else entry) == code
            for entry in self.auto_retry_for
        )

    @classmethod
    def fixed(
        cls,
        intervals_ms: list[int],
        *,
        auto_retry_for: list[str | JobErrorCode] | None = None,
        jitter: bool = True,
    ) -> 'StepRetryPolicy':
        """Fixed backoff where the intervals length defines max_retries."""
        return cls(
            max_retries=len(intervals_ms),
            intervals_ms=intervals_ms,
            backoff_strategy='fixed',
            jitter=jitter,
            auto_retry_for=auto_retry_for or [],
        )

    @classmethod
    def exponential(
        cls,
        base_ms: int,
        *,
        max_retries: int,
        auto_retry_for: list[str | JobErrorCode] | None = None,
        jitter: bool = True,
    ) -> 'StepRetryPolicy':
        """Exponential backoff: base_ms * 2**(attempt-1)."""
        return cls(
            max_retries=max_retries,
            intervals_ms=[base_ms],
            backoff_strategy='exponential',
            jitter=jitter,
            auto_retry_for=auto_retry_for or [],
        )


class JobTypeOptions(BaseModel):
    """
    Options for a job type.

    Fields:
        job_type: unique registry key (decoupled from function names)
        max_steps: iteration budget; exceeding it fails the job with BUDGET_EXCEEDED
        time_budget_ms: wall-clock budget of one execution
        expected_duration_ms: static estimate used by the dispatch rule
        step_count: static number of dependent steps, used by the dispatch rule
        external_lookups: whether steps call external services
        retry_policy: transient-failure retry configuration
    """

    model_config = ConfigDict(extra='forbid')

    job_type: Annotated[str, Field(min_length=1, max_length=255)]
    max_steps: Annotated[int, Field(ge=1, le=10_000)] = 50
    time_budget_ms: Annotated[int, Field(ge=100, le=86_400_000)] = 15 * 60 * 1000
    expected_duration_ms: Annotated[int, Field(ge=0)] = 0
    step_count: Annotated[int, Field(ge=1)] = 1
    external_lookups: bool = False
    retry_policy: Optional[StepRetryPolicy] = None
    description: Optional[str] = None

    @model_validator(mode='after')
    def validate_step_budget(self) -> Self:
        if self.step_count > self.max_steps:
            raise ValueError(
                f'step_count ({self.step_count}) exceeds max_steps ({self.max_steps})'
            )
        return self


class WorkflowDescriptor(BaseModel):
    """Static characteristics of a workflow, input to the dispatch rule."""

    model_config = ConfigDict(frozen=True)

    job_type: str
    expected_duration_ms: Annotated[int, Field(ge=0)] = 0
    step_count: Annotated[int, Field(ge=1)] = 1
    external_lookups: bool = False
    triggered_by: TriggeredBy = TriggeredBy.USER

    @classmethod
    def from_options(
        cls,
        options: JobTypeOptions,
        *,
        triggered_by: TriggeredBy = TriggeredBy.USER,
    ) -> 'WorkflowDescriptor':
        return cls(
            job_type=options.job_type,
            expected_duration_ms=options.expected_duration_ms,
            step_count=options.step_count,
            external_lookups=options.external_lookups,
            triggered_by=triggered_by,
        )
