# jobrelay/core/models/api.py
from __future__ import annotations

import re
from typing import Annotated, Self
from pydantic import BaseModel, Field, model_validator
from jobrelay.core.errors import ConfigurationError, ErrorCode, ValidationReport, raise_collected

_HEADER_NAME_RE = re.compile(r'^[A-Za-z0-9-]+$')


class ApiConfig(BaseModel):
    """HTTP surface and dispatch-rule settings."""

    request_timeout_ms: Annotated[int, Field(ge=1_000, le=900_000)] = Field(
        default=60_000,
        description=(
            'Hard request timeout of the hosting platform; workflows expected to '
            'run longer than half of it are dispatched asynchronously'
        ),
    )
    principal_header: str = Field(
        default='X-Principal-Id',
        description='Header carrying the authenticated principal id (set by the auth proxy)',
    )
    consumer_poll_interval_ms: Annotated[int, Field(ge=100, le=60_000)] = Field(
        default=2_000,
        description='Polling fallback interval for progress consumers (100ms-1min)',
    )

    @model_validator(mode='after')
    def validate_header(self) -> Self:
        report = ValidationReport('api')
        if not _HEADER_NAME_RE.fullmatch(self.principal_header):
            report.add(
                ConfigurationError(
                    message='principal_header is not a valid HTTP header name',
                    code=ErrorCode.CONFIG_INVALID_API,
                    notes=[f'got principal_header={self.principal_header!r}'],
                    help_text="use letters, digits and '-' only, e.g. 'X-Principal-Id'",
                )
            )
        raise_collected(report)
        return self
