"""Worker configuration dataclass."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Optional

if TYPE_CHECKING:
    from jobrelay.core.models.app import AppConfig
    from jobrelay.core.models.recovery import RecoveryConfig
    from jobrelay.core.models.resilience import WorkerResilienceConfig


def _default_str_list() -> list[str]:
    return []


@dataclass
class WorkerConfig:
    app_locator: str = ''  # module:app or path/to/file.py:app, for logs and preload
    imports: list[str] = field(
        default_factory=_default_str_list
    )  # modules that contain @app.job_type defs
    # Jobs executed concurrently by this worker (asyncio semaphore)
    max_concurrent_jobs: int = 8
    coalesce_notifies: int = 100  # drain up to N dispatch notices after wake
    # The orphan sweep only claims PENDING jobs older than this, so the
    # NOTIFY path normally wins the claim for fresh submissions.
    pending_grace_ms: int = 2_000
    # How long stop() waits for running jobs before cancelling them
    drain_timeout_s: float = 30.0
    recovery_config: Optional['RecoveryConfig'] = (
        None  # RecoveryConfig, avoid circular import
    )
    resilience_config: Optional['WorkerResilienceConfig'] = (
        None  # WorkerResilienceConfig, allow override
    )
    loglevel: int = 20  # logging.INFO

    @classmethod
    def from_app_config(cls, config: 'AppConfig', **overrides: Any) -> 'WorkerConfig':
        values: dict[str, Any] = {
            'max_concurrent_jobs': config.max_concurrent_jobs,
            'recovery_config': config.recovery,
            'resilience_config': config.resilience,
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)
