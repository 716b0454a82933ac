# jobrelay/jobs/builtin.py
"""Job types every deployment gets, used for smoke tests and health checks."""

from __future__ import annotations

from typing import TYPE_CHECKING

from pydantic import BaseModel

from jobrelay.core.models.jobs import StepContext, StepOutcome

if TYPE_CHECKING:
    from jobrelay.core.app import JobRelay

ECHO_JOB_TYPE = 'echo'


class EchoPayload(BaseModel):
    text: str


def echo_step(ctx: StepContext) -> StepOutcome:
    """Single step: hands the payload back as the result."""
    return StepOutcome.final(dict(ctx.payload), step_label='processing')


def register_builtin_job_types(app: 'JobRelay') -> None:
    app.job_type(
        ECHO_JOB_TYPE,
        payload_model=EchoPayload,
        description='Returns its payload unchanged',
    )(echo_step)
