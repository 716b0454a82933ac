# jobrelay/core/models/recovery.py
from __future__ import annotations
from typing import Annotated, Optional, Self
from pydantic import BaseModel, Field, model_validator
from jobrelay.core.errors import (
    ConfigurationError,
    ErrorCode,
    ValidationReport,
    raise_collected,
)


class RecoveryConfig(BaseModel):
    """
    Stale-running watchdog and retention settings.

    A worker that dies mid-job leaves the job RUNNING with a heartbeat that
    stops advancing. The reaper finalizes such jobs as FAILED
    (WORKER_CRASHED) once the heartbeat is older than the threshold. Jobs are
    never re-run automatically: steps may not be idempotent.

    Fields:
    - auto_fail_stale_running: enable the watchdog
    - running_stale_threshold_ms: heartbeat age after which a RUNNING job is stale
    - check_interval_ms: how often the reaper scans
    - runner_heartbeat_interval_ms: how often workers refresh heartbeat_at
    - terminal_job_retention_hours: delete terminal jobs (and their events) older
      than this; None keeps them until the owner deletes them
    """

    auto_fail_stale_running: bool = Field(
        default=True,
        description='Mark stale RUNNING jobs as FAILED with WORKER_CRASHED',
    )
    running_stale_threshold_ms: Annotated[int, Field(ge=1_000, le=7_200_000)] = Field(
        default=300_000,  # 5 minutes
        description='Milliseconds without heartbeat before a RUNNING job is stale (1s-2hr)',
    )
    check_interval_ms: Annotated[int, Field(ge=1_000, le=600_000)] = Field(
        default=30_000,
        description='How often the reaper scans for stale jobs (1s-10min)',
    )
    runner_heartbeat_interval_ms: Annotated[int, Field(ge=500, le=120_000)] = Field(
        default=30_000,
        description='How often a worker refreshes heartbeat_at for jobs it runs (500ms-2min)',
    )
    terminal_job_retention_hours: Optional[Annotated[int, Field(ge=1, le=24 * 365)]] = Field(
        default=None,
        description='Delete terminal jobs older than this many hours; None keeps them',
    )

    @model_validator(mode='after')
    def validate_heartbeat_threshold(self) -> Self:
        """Stale threshold must be at least 2x the heartbeat interval."""
        report = ValidationReport('recovery')
        min_threshold = self.runner_heartbeat_interval_ms * 2

        if self.running_stale_threshold_ms < min_threshold:
            report.add(
                ConfigurationError(
                    message='running_stale_threshold_ms too low',
                    code=ErrorCode.CONFIG_INVALID_RECOVERY,
                    notes=[
                        f'running_stale_threshold_ms={self.running_stale_threshold_ms}ms ({self.running_stale_threshold_ms/1000:.1f}s)',
                        f'runner_heartbeat_interval_ms={self.runner_heartbeat_interval_ms}ms ({self.runner_heartbeat_interval_ms/1000:.1f}s)',
                        'threshold must be at least 2x heartbeat interval',
                    ],
                    help_text=f'set running_stale_threshold_ms >= {min_threshold}ms ({min_threshold/1000:.1f}s)',
                )
            )

        raise_collected(report)
        return self
