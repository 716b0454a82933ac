"""Exact-class exception-to-error-code mapper for step failures.

An exception escaping a step is resolved to an error code by exact class
match (``type(exc) in mapper``), first in the job type's mapper, then in the
app-wide mapper. The code drives retry decisions (``auto_retry_for``) and is
stored as ``Job.error_code``.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from typing import cast

from jobrelay.core.exceptions import JobRelayRuntimeError

ExceptionMapper = dict[type[BaseException], str]
ERROR_CODE_RE = re.compile(r'^[A-Z][A-Z0-9_]*$')
EXCEPTION_NAME_RE = re.compile(r'^[A-Z][A-Za-z0-9_]*(Error|Exception)$')


def resolve_exception_error_code(
    exc: BaseException,
    job_type_mapper: Mapping[type[BaseException], str] | None,
    global_mapper: Mapping[type[BaseException], str] | None,
    job_type_default: str | None,
    global_default: str,
) -> str:
    """Resolve an exception to an error code.

    Resolution order:
        1. code carried by a JobRelayRuntimeError
        2. job_type_mapper (exact class lookup)
        3. global_mapper (exact class lookup)
        4. job_type_default
        5. global_default
    """
    if isinstance(exc, JobRelayRuntimeError):
        return exc.code

    for mapper in (job_type_mapper, global_mapper):
        code = _exact_lookup(exc, mapper)
        if code is not None:
            return code

    if job_type_default is not None:
        return job_type_default
    return global_default


def _exact_lookup(
    exc: BaseException,
    mapper: Mapping[type[BaseException], str] | None,
) -> str | None:
    if not isinstance(mapper, Mapping):
        return None
    code = mapper.get(type(exc))
    return code if isinstance(code, str) else None


def validate_error_code_string(
    value: object,
    *,
    field_name: str,
) -> str | None:
    """Return an error message if ``value`` is not an UPPER_SNAKE_CASE code."""
    if not isinstance(value, str) or not value:
        return f'{field_name} must be a non-empty string, got {value!r}'
    if EXCEPTION_NAME_RE.fullmatch(value) is not None:
        return (
            f"{field_name} '{value}' looks like an exception class name; "
            'retry matching is error-code-only, use UPPER_SNAKE_CASE code names'
        )
    if ERROR_CODE_RE.fullmatch(value) is None:
        return (
            f"{field_name} '{value}' is invalid; expected UPPER_SNAKE_CASE "
            '(e.g. RATE_LIMITED)'
        )
    return None


def validate_exception_mapper(mapper: object) -> list[str]:
    """Validate mapper entries. Returns error messages (empty = valid)."""
    if not isinstance(mapper, Mapping):
        return ['exception_mapper must be a mapping of {ExceptionClass: "ERROR_CODE"} entries']

    errors: list[str] = []
    for key, value in cast(Mapping[object, object], mapper).items():
        key_label = key.__name__ if isinstance(key, type) else repr(key)
        if not isinstance(key, type) or not issubclass(key, BaseException):
            errors.append(f'Mapper key {key!r} is not a BaseException subclass')
        value_error = validate_error_code_string(
            value,
            field_name=f'Mapper value for {key_label}',
        )
        if value_error is not None:
            errors.append(value_error)
    return errors
