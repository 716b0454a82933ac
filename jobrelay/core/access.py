# jobrelay/core/access.py
"""Ownership checks shared by polling, push subscriptions and the consumer.

A job is visible only to the principal that submitted it. Checks happen on
the server side against the stored owner_id; nothing is mutated.
"""

from __future__ import annotations

from typing import Any, Optional, Protocol

from result import is_err

from jobrelay.core.brokers.result_types import BrokerResult
from jobrelay.core.exceptions import (
    JobErrorCode,
    JobNotFound,
    JobStoreUnavailable,
    Unauthorized,
)
from jobrelay.core.models.jobs import JobInfo


class _JobReader(Protocol):
    async def get_job(self, job_id: str) -> BrokerResult[JobInfo | None]: ...


def require_principal(principal_id: Optional[str]) -> str:
    """Reject a missing or blank principal."""
    if principal_id is None or not principal_id.strip():
        raise Unauthorized('Authentication required', code=JobErrorCode.MISSING_PRINCIPAL)
    return principal_id


def check_owner(job: JobInfo, principal_id: str) -> None:
    if job.owner_id != principal_id:
        raise Unauthorized('Not allowed to access this job', data={'job_id': job.job_id})


async def authorize_job(store: Any, job_id: str, principal_id: Optional[str]) -> JobInfo:
    """Load ``job_id`` and verify ``principal_id`` owns it.

    Raises:
        Unauthorized: missing principal, or the principal is not the owner.
        JobNotFound: no such job.
        JobStoreUnavailable: the store read failed.
    """
    principal = require_principal(principal_id)
    reader: _JobReader = store
    job_r = await reader.get_job(job_id)
    if is_err(job_r):
        raise JobStoreUnavailable(job_r.err_value)
    job = job_r.ok_value
    if job is None:
        raise JobNotFound(job_id)
    check_owner(job, principal)
    return job
