# jobrelay/core/models/app.py
import logging
from typing import Annotated, Optional
from pydantic import BaseModel, model_validator, Field, ConfigDict
from jobrelay.core.models.api import ApiConfig
from jobrelay.core.models.broker import PostgresConfig
from jobrelay.core.models.recovery import RecoveryConfig
from jobrelay.core.models.resilience import WorkerResilienceConfig
from jobrelay.core.exception_mapper import (
    ExceptionMapper,
    validate_exception_mapper,
    validate_error_code_string,
)
from jobrelay.core.errors import (
    ConfigurationError,
    ErrorCode,
    ValidationReport,
    raise_collected,
)
from jobrelay.core.utils.url import mask_database_url


class AppConfig(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True, frozen=True)

    broker: PostgresConfig
    # Upper bound on jobs one worker process executes concurrently.
    max_concurrent_jobs: Annotated[int, Field(ge=1, le=1_000)] = 8
    recovery: RecoveryConfig = Field(default_factory=RecoveryConfig)
    resilience: WorkerResilienceConfig = Field(default_factory=WorkerResilienceConfig)
    api: ApiConfig = Field(default_factory=ApiConfig)
    exception_mapper: ExceptionMapper = Field(default_factory=lambda: ExceptionMapper())
    default_unhandled_error_code: str = 'UNHANDLED_EXCEPTION'

    @model_validator(mode='after')
    def validate_error_mapping(self):
        """Validate the app-wide exception mapper and its default code.

        Collects all errors and raises them together.
        """
        report = ValidationReport('config')

        for msg in validate_exception_mapper(self.exception_mapper):
            report.add(
                ConfigurationError(
                    message=msg,
                    code=ErrorCode.CONFIG_INVALID_EXCEPTION_MAPPER,
                    notes=['check exception_mapper keys and values'],
                    help_text='keys must be BaseException subclasses, values must be UPPER_SNAKE_CASE error codes',
                )
            )

        default_code_error = validate_error_code_string(
            self.default_unhandled_error_code,
            field_name='default_unhandled_error_code',
        )
        if default_code_error is not None:
            report.add(
                ConfigurationError(
                    message=default_code_error,
                    code=ErrorCode.CONFIG_INVALID_EXCEPTION_MAPPER,
                    notes=['invalid default_unhandled_error_code in AppConfig'],
                    help_text='use UPPER_SNAKE_CASE error codes',
                )
            )

        raise_collected(report)
        return self

    def log_config(self, logger: Optional[logging.Logger] = None) -> None:
        """Log the config in a human-readable form with the DB password masked."""
        if logger is None:
            logger = logging.getLogger()
        logger.info('AppConfig:\n%s', self._format_for_logging())

    def _format_for_logging(self) -> str:
        lines: list[str] = []

        lines.append('  broker:')
        lines.append(f'    database_url: {mask_database_url(self.broker.database_url)}')
        lines.append(f'    pool_size: {self.broker.pool_size}')
        lines.append(f'    max_overflow: {self.broker.max_overflow}')

        lines.append(f'  max_concurrent_jobs: {self.max_concurrent_jobs}')

        lines.append('  recovery:')
        lines.append(f'    auto_fail_stale_running: {self.recovery.auto_fail_stale_running}')
        lines.append(f'    running_stale_threshold: {self.recovery.running_stale_threshold_ms}ms')
        lines.append(f'    check_interval: {self.recovery.check_interval_ms}ms')
        lines.append(f'    heartbeat_interval: {self.recovery.runner_heartbeat_interval_ms}ms')
        if self.recovery.terminal_job_retention_hours is not None:
            lines.append(f'    terminal_job_retention: {self.recovery.terminal_job_retention_hours}h')

        lines.append('  resilience:')
        lines.append(f'    db_retry_initial_ms: {self.resilience.db_retry_initial_ms}ms')
        lines.append(f'    db_retry_max_ms: {self.resilience.db_retry_max_ms}ms')
        lines.append(f'    db_retry_max_attempts: {self.resilience.db_retry_max_attempts}')
        lines.append(f'    notify_poll_interval_ms: {self.resilience.notify_poll_interval_ms}ms')

        lines.append('  api:')
        lines.append(f'    request_timeout_ms: {self.api.request_timeout_ms}ms')
        lines.append(f'    principal_header: {self.api.principal_header}')
        lines.append(f'    consumer_poll_interval_ms: {self.api.consumer_poll_interval_ms}ms')

        if self.exception_mapper:
            lines.append(f'  exception_mapper: {len(self.exception_mapper)} mapping(s)')
        if self.default_unhandled_error_code != 'UNHANDLED_EXCEPTION':
            lines.append(f'  default_unhandled_error_code: {self.default_unhandled_error_code}')

        return '\n'.join(lines)
