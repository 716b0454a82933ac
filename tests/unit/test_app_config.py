"""Unit tests for configuration models (jobrelay/core/models/*) and WorkerConfig."""

from __future__ import annotations

import logging

import pytest
from pydantic import ValidationError

from jobrelay.core.errors import ConfigurationError, ErrorCode, MultipleValidationErrors
from jobrelay.core.models.api import ApiConfig
from jobrelay.core.models.app import AppConfig
from jobrelay.core.models.broker import PostgresConfig
from jobrelay.core.models.recovery import RecoveryConfig
from jobrelay.core.models.resilience import WorkerResilienceConfig
from jobrelay.core.worker.config import WorkerConfig
from tests.unit.fakes import TEST_DATABASE_URL


class QuotaError(Exception):
    pass


def _broker() -> PostgresConfig:
    return PostgresConfig(database_url=TEST_DATABASE_URL)


@pytest.mark.unit
class TestPostgresConfig:
    def test_psycopg_url_accepted(self) -> None:
        assert _broker().database_url == TEST_DATABASE_URL

    @pytest.mark.parametrize(
        'url',
        ['postgresql://u:p@h/db', 'postgresql+asyncpg://u:p@h/db', 'sqlite:///jobs.db'],
    )
    def test_other_schemes_rejected(self, url: str) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            PostgresConfig(database_url=url)
        assert exc_info.value.code == ErrorCode.STORE_INVALID_URL
        assert ':p@' not in str(exc_info.value)


@pytest.mark.unit
class TestAppConfig:
    """AppConfig defaults and cross-field validation."""

    def test_defaults(self) -> None:
        config = AppConfig(broker=_broker())
        assert config.max_concurrent_jobs == 8
        assert config.recovery.auto_fail_stale_running is True
        assert config.api.principal_header == 'X-Principal-Id'
        assert config.default_unhandled_error_code == 'UNHANDLED_EXCEPTION'

    def test_frozen(self) -> None:
        config = AppConfig(broker=_broker())
        with pytest.raises(ValidationError):
            config.max_concurrent_jobs = 2  # type: ignore[misc]

    @pytest.mark.parametrize('value', [0, 1_001])
    def test_max_concurrent_jobs_bounds(self, value: int) -> None:
        with pytest.raises(ValidationError):
            AppConfig(broker=_broker(), max_concurrent_jobs=value)

    def test_valid_exception_mapper(self) -> None:
        config = AppConfig(broker=_broker(), exception_mapper={QuotaError: 'QUOTA_EXCEEDED'})
        assert config.exception_mapper == {QuotaError: 'QUOTA_EXCEEDED'}

    def test_invalid_mapper_value(self) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            AppConfig(broker=_broker(), exception_mapper={QuotaError: 'quota'})
        assert exc_info.value.code == ErrorCode.CONFIG_INVALID_EXCEPTION_MAPPER

    def test_mapper_and_default_errors_collected(self) -> None:
        with pytest.raises(MultipleValidationErrors) as exc_info:
            AppConfig(
                broker=_broker(),
                exception_mapper={QuotaError: 'quota'},
                default_unhandled_error_code='QuotaError',
            )
        assert len(exc_info.value.report.errors) == 2

    def test_log_config_masks_password(self, caplog: pytest.LogCaptureFixture) -> None:
        logger = logging.getLogger('tests.config')
        with caplog.at_level(logging.INFO, logger='tests.config'):
            AppConfig(broker=_broker()).log_config(logger)

        assert 'secret' not in caplog.text
        assert '***' in caplog.text
        assert 'principal_header: X-Principal-Id' in caplog.text


@pytest.mark.unit
class TestRecoveryConfig:
    def test_threshold_must_cover_two_heartbeats(self) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            RecoveryConfig(running_stale_threshold_ms=5_000, runner_heartbeat_interval_ms=3_000)
        assert exc_info.value.code == ErrorCode.CONFIG_INVALID_RECOVERY
        assert 'running_stale_threshold_ms >= 6000ms' in str(exc_info.value)

    def test_exactly_two_heartbeats_is_enough(self) -> None:
        config = RecoveryConfig(running_stale_threshold_ms=6_000, runner_heartbeat_interval_ms=3_000)
        assert config.running_stale_threshold_ms == 6_000

    def test_retention_bounds(self) -> None:
        assert RecoveryConfig(terminal_job_retention_hours=24).terminal_job_retention_hours == 24
        with pytest.raises(ValidationError):
            RecoveryConfig(terminal_job_retention_hours=0)


@pytest.mark.unit
class TestWorkerResilienceConfig:
    def test_defaults(self) -> None:
        config = WorkerResilienceConfig()
        assert config.db_retry_initial_ms == 500
        assert config.db_retry_max_attempts == 0

    def test_max_below_initial_rejected(self) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            WorkerResilienceConfig(db_retry_initial_ms=5_000, db_retry_max_ms=1_000)
        assert exc_info.value.code == ErrorCode.CONFIG_INVALID_RESILIENCE

    def test_poll_interval_lower_bound(self) -> None:
        with pytest.raises(ValidationError):
            WorkerResilienceConfig(notify_poll_interval_ms=50)


@pytest.mark.unit
class TestApiConfig:
    @pytest.mark.parametrize('header', ['X-User', 'Authorization-Subject', 'X-Principal-Id'])
    def test_valid_headers(self, header: str) -> None:
        assert ApiConfig(principal_header=header).principal_header == header

    @pytest.mark.parametrize('header', ['', 'X User', 'X_User:'])
    def test_invalid_headers(self, header: str) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            ApiConfig(principal_header=header)
        assert exc_info.value.code == ErrorCode.CONFIG_INVALID_API

    def test_request_timeout_bounds(self) -> None:
        with pytest.raises(ValidationError):
            ApiConfig(request_timeout_ms=500)


@pytest.mark.unit
class TestWorkerConfig:
    def test_from_app_config(self) -> None:
        app_config = AppConfig(broker=_broker(), max_concurrent_jobs=3)
        cfg = WorkerConfig.from_app_config(app_config)
        assert cfg.max_concurrent_jobs == 3
        assert cfg.recovery_config is app_config.recovery
        assert cfg.resilience_config is app_config.resilience

    def test_overrides_skip_none(self) -> None:
        app_config = AppConfig(broker=_broker(), max_concurrent_jobs=3)
        cfg = WorkerConfig.from_app_config(
            app_config, max_concurrent_jobs=None, app_locator='app.jobs:app', imports=['app.jobs']
        )
        assert cfg.max_concurrent_jobs == 3
        assert cfg.app_locator == 'app.jobs:app'
        assert cfg.imports == ['app.jobs']
