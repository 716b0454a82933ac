# jobrelay/core/registry/job_types.py
from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterator, MutableMapping, Optional, Union

from pydantic import BaseModel

from jobrelay.core.errors import RegistryError, ErrorCode
from jobrelay.core.exception_mapper import ExceptionMapper
from jobrelay.core.models.jobs import JobTypeOptions, StepContext, StepOutcome

StepFunction = Callable[[StepContext], Union[StepOutcome, Awaitable[StepOutcome]]]


@dataclass
class JobTypeDefinition:
    """A registered workflow: its step function plus static options."""

    name: str
    step: StepFunction
    options: JobTypeOptions
    payload_model: Optional[type[BaseModel]] = None
    exception_mapper: ExceptionMapper = field(default_factory=lambda: ExceptionMapper())
    default_unhandled_error_code: Optional[str] = None
    source: Optional[str] = None

    def __repr__(self) -> str:
        return f'JobTypeDefinition(name={self.name!r}, source={self.source!r})'

    def __call__(self, ctx: StepContext) -> Any:
        """Call the step function directly (tests, ad-hoc use)."""
        return self.step(ctx)


class NotRegistered(RegistryError, KeyError):
    """Raised when a job type is not present in the registry.

    Inherits from KeyError so MutableMapping.__contains__ keeps working.
    """

    def __init__(self, job_type: str) -> None:
        RegistryError.__init__(
            self,
            message=f"job type '{job_type}' not registered",
            code=ErrorCode.JOB_TYPE_NOT_REGISTERED,
            notes=[f"requested job type: '{job_type}'"],
            help_text='define it with @app.job_type() and make sure its module is discovered',
        )
        self.job_type = job_type


class DuplicateJobTypeError(RegistryError):
    """Raised when one name is registered from two different places."""

    def __init__(self, job_type: str, context: str = '') -> None:
        super().__init__(
            message=f"duplicate job type '{job_type}'",
            code=ErrorCode.JOB_TYPE_DUPLICATE_NAME,
            notes=[context] if context else [],
            help_text='job type names must be unique within an app',
        )
        self.job_type = job_type


class JobTypeRegistry(MutableMapping[str, JobTypeDefinition]):
    """Registry mapping job type name -> definition.

    - same name, same source: re-import, the existing definition is kept
    - same name, different source: DuplicateJobTypeError
    """

    def __init__(self) -> None:
        self._data: Dict[str, JobTypeDefinition] = {}
        self._sources: Dict[str, str] = {}

    def __getitem__(self, key: str) -> JobTypeDefinition:
        try:
            return self._data[key]
        except KeyError:
            raise NotRegistered(key)

    def __setitem__(self, key: str, value: JobTypeDefinition) -> None:
        if key in self._data:
            raise DuplicateJobTypeError(key, 'detected via direct assignment')
        self._data[key] = value

    def __delitem__(self, key: str) -> None:
        del self._data[key]
        self._sources.pop(key, None)

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def register(
        self, definition: JobTypeDefinition, *, name: str, source: str | None = None
    ) -> JobTypeDefinition:
        """Insert ``definition`` under ``name``.

        Returns the existing definition on a same-source re-import.

        Raises:
            DuplicateJobTypeError: name already registered from another source.
        """
        if name in self._data:
            existing_source = self._sources.get(name)
            if existing_source and source and existing_source == source:
                return self._data[name]
            raise DuplicateJobTypeError(
                name,
                f'already defined at {existing_source}' if existing_source else '',
            )
        self._data[name] = definition
        if source:
            self._sources[name] = source
        return definition

    def unregister(self, name: str) -> None:
        self._data.pop(name, None)
        self._sources.pop(name, None)

    def keys_list(self) -> list[str]:
        return list(self._data.keys())
