# core/types/status.py
"""
Core job enums used throughout the application.
This module should not import from other application modules.
"""

from enum import Enum


class JobStatus(Enum):
    """Job execution status"""

    PENDING = 'pending'  # Row written by the submission service, not yet claimed.

    RUNNING = 'running'  # Claimed by exactly one worker; steps are executing.

    COMPLETED = 'completed'  # Terminal: result written.
    FAILED = 'failed'  # Terminal: error written.

    @property
    def is_terminal(self) -> bool:
        """Whether this status represents a final state (no further transitions)."""
        return self in JOB_TERMINAL_STATES


JOB_TERMINAL_STATES: frozenset[JobStatus] = frozenset({
    JobStatus.COMPLETED,
    JobStatus.FAILED,
})


class TriggeredBy(Enum):
    """Provenance of a job. Does not change execution semantics."""

    USER = 'user'
    SCHEDULER = 'scheduler'


class ExecutionMode(str, Enum):
    """Outcome of the dispatch rule."""

    SYNC = 'sync'
    ASYNC = 'async'
