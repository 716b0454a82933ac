# jobrelay/core/app.py
from typing import (
    Any,
    Callable,
    Optional,
    TypeVar,
    Union,
    overload,
)
from pydantic import BaseModel
from jobrelay.core.models.app import AppConfig
from jobrelay.core.models.jobs import JobTypeOptions, WorkflowDescriptor
from jobrelay.core.brokers.postgres import PostgresJobStore
from jobrelay.core.channel import ProgressChannel
from jobrelay.core.consumer import ProgressConsumer
from jobrelay.core.logging import get_logger
from jobrelay.core.registry.job_types import (
    JobTypeDefinition,
    JobTypeRegistry,
    StepFunction,
)
from jobrelay.core.exception_mapper import (
    ExceptionMapper,
    validate_exception_mapper,
    validate_error_code_string,
)
from jobrelay.core.errors import (
    ConfigurationError,
    JobRelayError,
    MultipleValidationErrors,
    JobTypeDefinitionError,
    ErrorCode,
    SourceLocation,
    job_type_definition_error,
)
from jobrelay.core.submit import SubmissionService
from jobrelay.core.types.status import TriggeredBy
import importlib
import glob
import os
from fnmatch import fnmatch
from jobrelay.core.utils.imports import import_by_path, is_file_path

_E = TypeVar('_E', bound=JobRelayError)


def _no_location(error: _E) -> _E:
    """Strip the auto-detected source location from a programmatic error.

    Used for errors created inside jobrelay internals where the auto-detected
    frame (e.g., CLI entry point) is misleading. The error message itself
    contains the relevant context (e.g., module path).
    """
    error.location = None
    return error


class JobRelay:
    """
    Job type registry plus lazily created store, channel and services.
    Requires an AppConfig instance for proper validation and type safety.
    """

    def __init__(self, config: AppConfig):
        self.config = config
        self._store: Optional[PostgresJobStore] = None
        self._channel: Optional[ProgressChannel] = None
        self.job_types = JobTypeRegistry()
        self.logger = get_logger('app')
        self._discovered_job_type_modules: list[str] = []
        # Role indicates context: 'producer', 'worker' or 'api'
        self._role: str = 'producer'
        self.logger.info(f'jobrelay initialized as {self._role}')

    def set_role(self, role: str) -> None:
        """Set the role and log it. Called by CLI after discovery."""
        self._role = role
        self.logger.info(f'jobrelay running as {role}')

    @property
    def role(self) -> str:
        return self._role

    # -------- job type registration --------

    @overload
    def job_type(self, name: str, func: StepFunction) -> JobTypeDefinition: ...

    @overload
    def job_type(
        self,
        name: str,
        *,
        payload_model: Optional[type[BaseModel]] = None,
        exception_mapper: Optional[ExceptionMapper] = None,
        default_unhandled_error_code: Optional[str] = None,
        **options: Any,
    ) -> Callable[[StepFunction], JobTypeDefinition]: ...

    def job_type(
        self,
        name: str,
        func: Optional[StepFunction] = None,
        **job_type_kwargs: Any,
    ) -> Union[JobTypeDefinition, Callable[[StepFunction], JobTypeDefinition]]:
        """
        Decorator to register a step function as a job type.
        Options are validated against the JobTypeOptions model.
        """

        def decorator(fn: StepFunction) -> JobTypeDefinition:
            fn_location = SourceLocation.from_function(fn)
            fn_name = getattr(fn, '__name__', repr(fn))
            options_kwargs = dict(job_type_kwargs)

            if not callable(fn):
                raise job_type_definition_error(
                    'job type step must be callable',
                    code=ErrorCode.JOB_TYPE_INVALID_STEP,
                    notes=[f"job type '{name}'", f'got {type(fn).__name__}'],
                    help_text='decorate a function taking a StepContext and returning a StepOutcome',
                )

            # Not part of JobTypeOptions
            payload_model: type[BaseModel] | None = options_kwargs.pop('payload_model', None)
            exception_mapper: ExceptionMapper | None = options_kwargs.pop(
                'exception_mapper', None,
            )
            default_unhandled_error_code: str | None = options_kwargs.pop(
                'default_unhandled_error_code', None,
            )

            if payload_model is not None and not (
                isinstance(payload_model, type) and issubclass(payload_model, BaseModel)
            ):
                raise JobTypeDefinitionError(
                    message='invalid payload_model',
                    code=ErrorCode.JOB_TYPE_INVALID_PAYLOAD_MODEL,
                    location=fn_location,
                    notes=[f"job type '{name}'", f'got {payload_model!r}'],
                    help_text='payload_model must be a pydantic BaseModel subclass',
                )

            if exception_mapper is not None:
                mapper_errors = validate_exception_mapper(exception_mapper)
                if mapper_errors:
                    raise JobTypeDefinitionError(
                        message='invalid exception_mapper',
                        code=ErrorCode.CONFIG_INVALID_EXCEPTION_MAPPER,
                        location=fn_location,
                        notes=[f"job type '{name}'", *mapper_errors],
                        help_text='keys must be BaseException subclasses, values must be UPPER_SNAKE_CASE error codes',
                    )

            if default_unhandled_error_code is not None:
                code_error = validate_error_code_string(
                    default_unhandled_error_code,
                    field_name='default_unhandled_error_code',
                )
                if code_error is not None:
                    raise JobTypeDefinitionError(
                        message='invalid default_unhandled_error_code',
                        code=ErrorCode.CONFIG_INVALID_EXCEPTION_MAPPER,
                        location=fn_location,
                        notes=[f"job type '{name}'", code_error],
                        help_text='use UPPER_SNAKE_CASE error codes',
                    )

            # Validate and create JobTypeOptions - this enforces pydantic validation
            try:
                options = JobTypeOptions(job_type=name, **options_kwargs)
            except Exception as e:
                raise JobTypeDefinitionError(
                    message='invalid job type options',
                    code=ErrorCode.JOB_TYPE_INVALID_OPTIONS,
                    location=fn_location,
                    notes=[f"job type '{name}' ({fn_name})", str(e)],
                    help_text='check job_type decorator arguments',
                )

            # Normalize path with realpath to handle symlinks and relative paths
            source_str = (
                f'{os.path.realpath(fn_location.file)}:{fn_location.line}'
                if fn_location
                else None
            )
            definition = JobTypeDefinition(
                name=name,
                step=fn,
                options=options,
                payload_model=payload_model,
                exception_mapper=exception_mapper or {},
                default_unhandled_error_code=default_unhandled_error_code,
                source=source_str,
            )
            return self.job_types.register(definition, name=name, source=source_str)

        if func is None:
            # Called with arguments: @app.job_type('name', step_count=3)
            return decorator
        else:
            # Called directly: app.job_type('name', fn)
            return decorator(func)

    def list_job_types(self) -> list[str]:
        """List job types registered with this app"""
        return list(self.job_types.keys_list())

    def descriptor(
        self, job_type: str, *, triggered_by: TriggeredBy = TriggeredBy.USER
    ) -> WorkflowDescriptor:
        """Static dispatch characteristics of a registered job type."""
        return WorkflowDescriptor.from_options(
            self.job_types[job_type].options, triggered_by=triggered_by
        )

    # -------- services --------

    def get_store(self) -> PostgresJobStore:
        """Get the configured PostgreSQL job store for this app"""
        try:
            if self._store is None:
                self._store = PostgresJobStore(self.config.broker)
            return self._store
        except JobRelayError:
            raise
        except Exception as e:
            raise ValueError(f'Failed to get job store: {e}')

    def get_channel(self) -> ProgressChannel:
        if self._channel is None:
            store = self.get_store()
            self._channel = ProgressChannel(store, store.listener)
        return self._channel

    def submission_service(self) -> SubmissionService:
        return SubmissionService(self, self.get_store())

    def consumer(
        self,
        principal_id: Optional[str],
        *,
        poll_interval_ms: Optional[int] = None,
        push: bool = True,
    ) -> ProgressConsumer:
        """Progress consumer for ``principal_id``; ``push=False`` polls only."""
        return ProgressConsumer(
            self.get_store(),
            self.get_channel() if push else None,
            principal_id,
            poll_interval_ms=poll_interval_ms or self.config.api.consumer_poll_interval_ms,
        )

    def submit(
        self,
        job_type: str,
        payload: Any,
        owner_id: Optional[str],
        *,
        triggered_by: TriggeredBy = TriggeredBy.USER,
    ) -> str:
        """Synchronous submit for callers without an event loop.

        Runs on the store's background loop; see SubmissionService.submit
        for the exceptions raised.
        """
        service = self.submission_service()
        return self.get_store().call_sync(
            service.submit, job_type, payload, owner_id, triggered_by=triggered_by
        )

    # -------- validation --------

    def check(self, *, live: bool = False) -> list[JobRelayError]:
        """Orchestrate phased validation and return all errors found.

        Phase 1: Config, already validated at construction.
        Phase 2: Job type module imports, collecting errors.
        Phase 3: Runtime policy checks on the global exception mapper.
        Phase 4 (if live): Store connectivity, async SELECT 1.

        Returns:
            List of all JobRelayError instances found across phases.
            Empty list means all validations passed.
        """
        all_errors: list[JobRelayError] = []

        all_errors.extend(self._check_job_type_imports())
        if all_errors:
            return all_errors

        all_errors.extend(self._check_runtime_policy_safety())
        if all_errors:
            return all_errors

        if live:
            all_errors.extend(self._check_store_connectivity())

        return all_errors

    def _check_job_type_imports(self) -> list[JobRelayError]:
        """Import job type modules and collect any errors."""
        errors: list[JobRelayError] = []
        for module_path in self._discovered_job_type_modules:
            try:
                if is_file_path(module_path):
                    abs_path = os.path.realpath(module_path)
                    if not os.path.exists(abs_path):
                        errors.append(
                            _no_location(
                                ConfigurationError(
                                    message=f'job type module not found: {module_path}',
                                    code=ErrorCode.CLI_INVALID_ARGS,
                                    notes=[f'resolved path: {abs_path}'],
                                    help_text=(
                                        'remove it from app.discover_job_types([...]) or fix the path; \n'
                                        'if using globs, run app.expand_module_globs([...]) first'
                                    ),
                                )
                            )
                        )
                        continue
                    import_by_path(abs_path)
                else:
                    importlib.import_module(module_path)
            except MultipleValidationErrors as exc:
                errors.extend(exc.report.errors)
            except JobRelayError as exc:
                errors.append(exc)
            except (ModuleNotFoundError, ImportError) as exc:
                errors.append(
                    _no_location(
                        ConfigurationError(
                            message=f'failed to import module: {module_path}',
                            code=ErrorCode.CLI_INVALID_ARGS,
                            notes=[str(exc)],
                            help_text=(
                                'ensure the module is importable; '
                                'for file paths include .py and a valid path, '
                                'for dotted paths verify PYTHONPATH or run from the project root'
                            ),
                        )
                    )
                )
            except Exception as exc:
                errors.append(
                    _no_location(
                        ConfigurationError(
                            message=f'error while importing module: {module_path}',
                            code=ErrorCode.MODULE_EXEC_ERROR,
                            notes=[f'{type(exc).__name__}: {exc}'],
                            help_text=(
                                'the module was found but raised an error during import;\n'
                                'check the module-level code for bugs'
                            ),
                        )
                    )
                )
        return errors

    def _check_runtime_policy_safety(self) -> list[JobRelayError]:
        """Re-validate global settings so post-construction mutations fail startup."""
        errors: list[JobRelayError] = []
        for msg in validate_exception_mapper(self.config.exception_mapper):
            errors.append(
                _no_location(
                    ConfigurationError(
                        message=msg,
                        code=ErrorCode.CONFIG_INVALID_EXCEPTION_MAPPER,
                        notes=['app config'],
                        help_text='exception_mapper must be a mapping with exception-class keys and UPPER_SNAKE_CASE code values',
                    )
                )
            )
        if not self.job_types:
            self.logger.warning('No job types registered; workers will fail every job they claim')
        return errors

    def _check_store_connectivity(self) -> list[JobRelayError]:
        """Check store connectivity via SELECT 1 using an isolated engine.

        Uses a short-lived async engine to avoid binding the app's long-lived
        store to an ephemeral asyncio.run loop.
        """
        import asyncio

        from sqlalchemy import text
        from sqlalchemy.ext.asyncio import create_async_engine

        HEALTH_CHECK_SQL = text("""SELECT 1""")

        errors: list[JobRelayError] = []
        try:
            engine_cfg = self.config.broker.model_dump(
                exclude={'database_url'}, exclude_none=True
            )
            health_engine = create_async_engine(
                self.config.broker.database_url, **engine_cfg
            )

            async def _test_connection() -> None:
                try:
                    async with health_engine.connect() as conn:
                        await conn.execute(HEALTH_CHECK_SQL)
                finally:
                    await health_engine.dispose()

            asyncio.run(_test_connection())
        except JobRelayError as exc:
            errors.append(exc)
        except Exception as exc:
            errors.append(
                _no_location(
                    ConfigurationError(
                        message='store connectivity check failed',
                        code=ErrorCode.STORE_UNREACHABLE,
                        notes=[str(exc)],
                        help_text='check database_url in PostgresConfig',
                    )
                )
            )
        return errors

    # -------- discovery --------

    def discover_job_types(
        self,
        modules: list[str],
    ) -> None:
        """
        Register job type modules for later import.

        Only records module paths; imports happen in import_job_type_modules()
        (called by the worker and API commands) or check().

        Examples:
            app.discover_job_types(['myapp.jobs'])  # dotted module path
            app.discover_job_types(['jobs.py'])     # file path
        """
        if self._discovered_job_type_modules:
            self.logger.warning(
                f'discover_job_types() called again, replacing {len(self._discovered_job_type_modules)} '
                f'previously registered module(s) with {len(modules)} new module(s)'
            )
        self._discovered_job_type_modules = list(modules)
        if modules:
            self.logger.info(f'Registered {len(modules)} job type module(s) for discovery')

    def expand_module_globs(
        self,
        patterns: list[str],
        exclude: list[str] | None = None,
    ) -> list[str]:
        """
        Expand glob patterns to file paths. Dotted module paths pass through.

        Examples:
            paths = app.expand_module_globs(['src/**/*_jobs.py'])
            app.discover_job_types(paths)
        """
        exclude_patterns = exclude or ['*_test.py', 'test_*.py', 'conftest.py']
        results: list[str] = []

        def _is_excluded(path: str) -> bool:
            basename = os.path.basename(path)
            return any(
                fnmatch(path, pattern) or fnmatch(basename, pattern)
                for pattern in exclude_patterns
            )

        for pattern in patterns:
            if any(ch in pattern for ch in ['*', '?', '[', ']']):
                for match in sorted(glob.glob(pattern, recursive=True)):
                    abs_path = os.path.realpath(match)
                    if (
                        os.path.isfile(abs_path)
                        and abs_path.endswith('.py')
                        and not _is_excluded(abs_path)
                        and abs_path not in results
                    ):
                        results.append(abs_path)
            elif is_file_path(pattern):
                abs_path = os.path.realpath(pattern)
                if os.path.exists(abs_path) and abs_path.endswith('.py'):
                    if not _is_excluded(abs_path) and abs_path not in results:
                        results.append(abs_path)
            elif pattern not in results:
                results.append(pattern)

        return results

    def get_discovered_job_type_modules(self) -> list[str]:
        return self._discovered_job_type_modules.copy()

    def import_job_type_modules(
        self,
        modules: Optional[list[str]] = None,
    ) -> list[str]:
        """Import job type modules to eagerly register job types.

        If modules is None, imports the modules recorded by discover_job_types().
        Returns the list of module identifiers that were imported.
        """
        modules_to_import = (
            self._discovered_job_type_modules if modules is None else modules
        )
        imported: list[str] = []
        for module in modules_to_import:
            if is_file_path(module):
                abs_path = os.path.realpath(module)
                if not os.path.exists(abs_path):
                    self.logger.warning(f'Job type module not found: {module}')
                    continue
                import_by_path(abs_path)
                imported.append(abs_path)
            else:
                importlib.import_module(module)
                imported.append(module)
        return imported
