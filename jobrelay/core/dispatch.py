# jobrelay/core/dispatch.py
"""Decide whether a workflow runs inside the request or as a background job."""

from __future__ import annotations

from jobrelay.core.models.jobs import WorkflowDescriptor
from jobrelay.core.types.status import ExecutionMode, TriggeredBy


def classify(descriptor: WorkflowDescriptor, *, request_timeout_ms: int) -> ExecutionMode:
    """
    Pure dispatch rule, evaluated in order:

    1. scheduler-triggered -> ASYNC (no live caller to answer)
    2. more than one dependent step -> ASYNC
    3. any external lookup -> ASYNC
    4. expected duration above half the request timeout -> ASYNC
    5. otherwise SYNC
    """
    if request_timeout_ms <= 0:
        raise ValueError(f'request_timeout_ms must be positive, got {request_timeout_ms}')
    if descriptor.triggered_by == TriggeredBy.SCHEDULER:
        return ExecutionMode.ASYNC
    if descriptor.step_count > 1:
        return ExecutionMode.ASYNC
    if descriptor.external_lookups:
        return ExecutionMode.ASYNC
    if descriptor.expected_duration_ms > request_timeout_ms / 2:
        return ExecutionMode.ASYNC
    return ExecutionMode.SYNC
