"""jobrelay - background jobs with persisted, live progress"""

# Install Rust-style error handler on import
from .core.errors import install_error_handler as _install_error_handler

_install_error_handler()

from .core.app import JobRelay
from .core.models.app import AppConfig
from .core.models.api import ApiConfig
from .core.models.broker import PostgresConfig
from .core.models.recovery import RecoveryConfig
from .core.models.resilience import WorkerResilienceConfig
from .core.models.jobs import (
    JobInfo,
    JobOutcome,
    JobSnapshot,
    ProgressEventInfo,
    StepContext,
    StepOutcome,
    StepRetryPolicy,
    JobTypeOptions,
    WorkflowDescriptor,
)
from .core.types.status import JobStatus, TriggeredBy, ExecutionMode, JOB_TERMINAL_STATES
from .core.dispatch import classify
from .core.submit import DispatchOutcome, SubmissionService
from .core.consumer import JobObservation, ProgressConsumer
from .core.exceptions import (
    JobErrorCode,
    JobRelayRuntimeError,
    InvalidPayload,
    Unauthorized,
    JobNotFound,
    TransientStepFailure,
    TerminalWorkflowFailure,
    OrchestratorFault,
    SubmissionFailed,
    ChannelUnavailable,
    JobStoreUnavailable,
)
from .core.errors import ErrorCode, ValidationReport, MultipleValidationErrors
from .core.exception_mapper import ExceptionMapper
from .core.brokers.result_types import (
    BrokerErrorCode,
    BrokerOperationError,
    BrokerResult,
)
from .jobs.builtin import ECHO_JOB_TYPE, register_builtin_job_types
from result import Result, Ok, Err, is_ok, is_err

__all__ = [
    # Core
    'JobRelay',
    'AppConfig',
    'ApiConfig',
    'PostgresConfig',
    'RecoveryConfig',
    'WorkerResilienceConfig',
    'JobStatus',
    'TriggeredBy',
    'ExecutionMode',
    'JOB_TERMINAL_STATES',
    'ErrorCode',
    'ValidationReport',
    'MultipleValidationErrors',
    'ExceptionMapper',
    # Jobs
    'JobInfo',
    'JobOutcome',
    'JobSnapshot',
    'ProgressEventInfo',
    'StepContext',
    'StepOutcome',
    'StepRetryPolicy',
    'JobTypeOptions',
    'WorkflowDescriptor',
    'classify',
    'DispatchOutcome',
    'SubmissionService',
    'JobObservation',
    'ProgressConsumer',
    'ECHO_JOB_TYPE',
    'register_builtin_job_types',
    # Runtime errors
    'JobErrorCode',
    'JobRelayRuntimeError',
    'InvalidPayload',
    'Unauthorized',
    'JobNotFound',
    'TransientStepFailure',
    'TerminalWorkflowFailure',
    'OrchestratorFault',
    'SubmissionFailed',
    'ChannelUnavailable',
    'JobStoreUnavailable',
    # Store results
    'BrokerErrorCode',
    'BrokerOperationError',
    'BrokerResult',
    'Result',
    'Ok',
    'Err',
    'is_ok',
    'is_err',
]
