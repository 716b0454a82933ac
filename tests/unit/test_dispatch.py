"""Unit tests for the dispatch rule (jobrelay.core.dispatch.classify)."""

from __future__ import annotations

import pytest

from jobrelay.core.dispatch import classify
from jobrelay.core.models.jobs import JobTypeOptions, WorkflowDescriptor
from jobrelay.core.types.status import ExecutionMode, TriggeredBy

TIMEOUT_MS = 60_000


def _descriptor(**kwargs: object) -> WorkflowDescriptor:
    return WorkflowDescriptor(job_type='demo', **kwargs)  # type: ignore[arg-type]


@pytest.mark.unit
class TestClassify:
    """Rules are evaluated in order; any async trigger wins."""

    def test_short_single_step_runs_sync(self) -> None:
        assert classify(_descriptor(), request_timeout_ms=TIMEOUT_MS) == ExecutionMode.SYNC

    def test_scheduler_triggered_is_always_async(self) -> None:
        descriptor = _descriptor(triggered_by=TriggeredBy.SCHEDULER)
        assert classify(descriptor, request_timeout_ms=TIMEOUT_MS) == ExecutionMode.ASYNC

    def test_multiple_dependent_steps_is_async(self) -> None:
        descriptor = _descriptor(step_count=2)
        assert classify(descriptor, request_timeout_ms=TIMEOUT_MS) == ExecutionMode.ASYNC

    def test_external_lookup_is_async(self) -> None:
        descriptor = _descriptor(external_lookups=True)
        assert classify(descriptor, request_timeout_ms=TIMEOUT_MS) == ExecutionMode.ASYNC

    def test_duration_at_half_the_timeout_stays_sync(self) -> None:
        """Boundary: only durations strictly above timeout/2 go async."""
        descriptor = _descriptor(expected_duration_ms=TIMEOUT_MS // 2)
        assert classify(descriptor, request_timeout_ms=TIMEOUT_MS) == ExecutionMode.SYNC

    def test_duration_above_half_the_timeout_is_async(self) -> None:
        descriptor = _descriptor(expected_duration_ms=TIMEOUT_MS // 2 + 1)
        assert classify(descriptor, request_timeout_ms=TIMEOUT_MS) == ExecutionMode.ASYNC

    @pytest.mark.parametrize('timeout_ms', [0, -1])
    def test_non_positive_timeout_rejected(self, timeout_ms: int) -> None:
        with pytest.raises(ValueError, match='request_timeout_ms'):
            classify(_descriptor(), request_timeout_ms=timeout_ms)

    def test_classify_is_pure(self) -> None:
        descriptor = _descriptor(step_count=3, external_lookups=True)
        results = {classify(descriptor, request_timeout_ms=TIMEOUT_MS) for _ in range(5)}
        assert results == {ExecutionMode.ASYNC}
        assert descriptor.step_count == 3


@pytest.mark.unit
class TestDescriptorFromOptions:
    """WorkflowDescriptor.from_options carries the static dispatch inputs."""

    def test_copies_static_characteristics(self) -> None:
        options = JobTypeOptions(
            job_type='report',
            step_count=4,
            external_lookups=True,
            expected_duration_ms=90_000,
        )
        descriptor = WorkflowDescriptor.from_options(options, triggered_by=TriggeredBy.SCHEDULER)

        assert descriptor.job_type == 'report'
        assert descriptor.step_count == 4
        assert descriptor.external_lookups is True
        assert descriptor.expected_duration_ms == 90_000
        assert descriptor.triggered_by == TriggeredBy.SCHEDULER

    def test_step_count_above_max_steps_rejected(self) -> None:
        with pytest.raises(ValueError, match='exceeds max_steps'):
            JobTypeOptions(job_type='report', step_count=5, max_steps=3)
