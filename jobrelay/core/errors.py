"""Rust-style error display for jobrelay startup and validation errors.

Runtime job errors (InvalidPayload, Unauthorized, ...) live in
``jobrelay.core.exceptions``; this module covers problems a developer has
to fix before the service can run: bad configuration, bad job type
definitions, registry conflicts.
"""

from __future__ import annotations

import inspect
import linecache
import os
import sys
import traceback
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

# Absolute path of the jobrelay package; frames under it are library frames.
_JOBRELAY_PKG_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))


class ErrorCode(str, Enum):
    """Error codes for startup/validation errors.

    Organized by category:
    - E100-E199: Job type definition errors
    - E200-E299: Config/store errors
    - E300-E399: Registry errors
    """

    # Job type definition (E100-E199)
    JOB_TYPE_INVALID_OPTIONS = 'E100'
    JOB_TYPE_INVALID_STEP = 'E101'
    JOB_TYPE_INVALID_PAYLOAD_MODEL = 'E102'

    # Config/store (E200-E299)
    STORE_INVALID_URL = 'E200'
    CONFIG_INVALID_RECOVERY = 'E201'
    CONFIG_INVALID_RESILIENCE = 'E202'
    CONFIG_INVALID_EXCEPTION_MAPPER = 'E203'
    CONFIG_INVALID_API = 'E204'
    CLI_INVALID_ARGS = 'E205'
    CLI_INVALID_LOCATOR = 'E206'
    STORE_UNREACHABLE = 'E207'
    MODULE_EXEC_ERROR = 'E208'

    # Registry (E300-E399)
    JOB_TYPE_NOT_REGISTERED = 'E300'
    JOB_TYPE_DUPLICATE_NAME = 'E301'


class _Colors:
    """ANSI escape codes for terminal colors."""

    RESET = '\033[0m'
    BOLD = '\033[1m'
    RED = '\033[91m'
    BLUE = '\033[94m'
    CYAN = '\033[96m'
    GREEN = '\033[92m'
    YELLOW = '\033[93m'
    DIM = '\033[2m'


class _NoColors:
    """No-op color codes for non-TTY output."""

    RESET = ''
    BOLD = ''
    RED = ''
    BLUE = ''
    CYAN = ''
    GREEN = ''
    YELLOW = ''
    DIM = ''


def _env_flag(name: str) -> bool:
    return os.environ.get(name, '').lower() in ('1', 'true', 'yes')


def _should_use_colors() -> bool:
    """Determine if colors should be used in output."""
    if _env_flag('JOBRELAY_FORCE_COLOR'):
        return True

    # https://no-color.org/
    if os.environ.get('NO_COLOR') is not None:
        return False

    return hasattr(sys.stderr, 'isatty') and sys.stderr.isatty()


def _should_show_verbose() -> bool:
    """Full traceback after the formatted error."""
    return _env_flag('JOBRELAY_VERBOSE')


def _should_use_plain_errors() -> bool:
    """Plain Python tracebacks instead of Rust-style output."""
    return _env_flag('JOBRELAY_PLAIN_ERRORS')


@dataclass
class SourceLocation:
    """Source code location information."""

    file: str
    line: int
    column: int | None = None
    end_column: int | None = None

    @classmethod
    def from_frame(cls, frame: Any) -> SourceLocation:
        return cls(
            file=frame.f_code.co_filename,
            line=frame.f_lineno,
        )

    @classmethod
    def from_function(cls, fn: Callable[..., Any]) -> SourceLocation | None:
        """Location of a function definition.

        Returns None for callables without a code object (builtins, mocks,
        callable instances).
        """
        code = getattr(fn, '__code__', None)
        if code is None:
            return None
        return cls(
            file=code.co_filename,
            line=code.co_firstlineno,
        )

    def get_source_line(self) -> str | None:
        try:
            line = linecache.getline(self.file, self.line)
            return line.rstrip('\n') if line else None
        except Exception:
            return None

    def format_short(self) -> str:
        """Format as 'file:line' or 'file:line:col'."""
        if self.column is not None:
            return f'{self.file}:{self.line}:{self.column}'
        return f'{self.file}:{self.line}'


@dataclass
class JobRelayError(Exception):
    """Base exception for jobrelay startup/validation errors.

    Rendered as:
    - error code and message
    - source location with the offending line
    - notes and help text
    """

    message: str
    code: ErrorCode | None = None
    location: SourceLocation | None = None
    notes: list[str] = field(default_factory=lambda: [])
    help_text: str | None = None

    def __post_init__(self) -> None:
        super().__init__(self.message)

        if self.location is None:
            user_frame = _find_user_frame()
            if user_frame is not None:
                self.location = SourceLocation.from_frame(user_frame)

    def with_note(self, note: str) -> JobRelayError:
        self.notes.append(note)
        return self

    def with_help(self, help_text: str) -> JobRelayError:
        self.help_text = help_text
        return self

    def with_location(self, location: SourceLocation) -> JobRelayError:
        self.location = location
        return self

    def format_rust_style(self, use_colors: bool | None = None) -> str:
        if use_colors is None:
            use_colors = _should_use_colors()

        c = _Colors if use_colors else _NoColors
        lines: list[str] = ['']

        # error[E100]: message
        code_part = f'[{self.code.value}]' if self.code else ''
        lines.append(f'{c.BOLD}{c.RED}error{code_part}:{c.RESET} {self.message}')

        if self.location:
            source_line = self.location.get_source_line()
            lines.append(
                f'  {c.BLUE}-->{c.RESET} {c.CYAN}{self.location.format_short()}{c.RESET}'
            )

            if source_line:
                line_num = str(self.location.line)
                padding = ' ' * len(line_num)
                lines.append(f'   {c.BLUE}{padding}|{c.RESET}')
                lines.append(f'   {c.BLUE}{line_num}|{c.RESET} {source_line}')

                if self.location.column is not None:
                    start_col = self.location.column
                    end_col = self.location.end_column or (start_col + 1)
                    underline = ' ' * start_col + '^' * max(1, end_col - start_col)
                else:
                    stripped = source_line.lstrip()
                    indent = len(source_line) - len(stripped)
                    underline = ' ' * indent + '^' * len(stripped)
                lines.append(
                    f'   {c.BLUE}{padding}|{c.RESET} {c.RED}{underline}{c.RESET}'
                )

        for note in self.notes:
            note_lines = note.split('\n')
            lines.append(
                f'   {c.BLUE}={c.RESET} {c.BOLD}{c.BLUE}note{c.RESET}: {note_lines[0]}'
            )
            for note_line in note_lines[1:]:
                lines.append(f'          {note_line}')

        if self.help_text:
            lines.append('')
            lines.append(f'   {c.BLUE}={c.RESET} {c.BOLD}{c.GREEN}help{c.RESET}:')
            for help_line in self.help_text.split('\n'):
                lines.append(f'        {help_line}')

        return '\n'.join(lines)

    def __str__(self) -> str:
        """Plain text, no ANSI codes; safe for logs and JSON."""
        return self.format_rust_style(use_colors=False)


_original_excepthook = sys.excepthook


def _jobrelay_excepthook(
    exc_type: type[BaseException],
    exc_value: BaseException,
    exc_tb: Any,
) -> None:
    """Custom exception hook for JobRelayError exceptions."""
    if _should_use_plain_errors():
        _original_excepthook(exc_type, exc_value, exc_tb)
        return

    if isinstance(exc_value, JobRelayError):
        print(exc_value.format_rust_style(), file=sys.stderr)

        if _should_show_verbose():
            print(file=sys.stderr)
            c = _Colors if _should_use_colors() else _NoColors
            print(
                f'{c.DIM}Full traceback (JOBRELAY_VERBOSE=1):{c.RESET}',
                file=sys.stderr,
            )
            traceback.print_exception(exc_type, exc_value, exc_tb, file=sys.stderr)
    else:
        _original_excepthook(exc_type, exc_value, exc_tb)


def install_error_handler() -> None:
    """Install the custom exception hook for Rust-style error display."""
    sys.excepthook = _jobrelay_excepthook


def uninstall_error_handler() -> None:
    """Restore the original exception hook."""
    sys.excepthook = _original_excepthook


# =============================================================================
# Specific Error Classes
# =============================================================================


@dataclass
class JobTypeDefinitionError(JobRelayError):
    """Raised when a @app.job_type definition is invalid."""

    pass


@dataclass
class ConfigurationError(JobRelayError):
    """Raised when app/store configuration is invalid."""

    pass


@dataclass
class RegistryError(JobRelayError):
    """Raised when a job type registry operation fails."""

    pass


# =============================================================================
# Phase-Gated Error Collection
# =============================================================================


class ValidationReport:
    """Collects multiple JobRelayError instances within a validation phase."""

    def __init__(self, phase_name: str) -> None:
        self.phase_name: str = phase_name
        self.errors: list[JobRelayError] = []

    def add(self, error: JobRelayError) -> None:
        self.errors.append(error)

    def has_errors(self) -> bool:
        return len(self.errors) > 0

    def format_rust_style(self, use_colors: bool | None = None) -> str:
        """Format every collected error, then an aborting summary line."""
        if use_colors is None:
            use_colors = _should_use_colors()

        c = _Colors if use_colors else _NoColors
        parts = [error.format_rust_style(use_colors=use_colors) for error in self.errors]
        parts.append(
            f'\n{c.BOLD}{c.RED}error{c.RESET}: aborting due to {len(self.errors)} previous errors'
        )
        return '\n'.join(parts)

    def __str__(self) -> str:
        return self.format_rust_style(use_colors=False)


@dataclass
class MultipleValidationErrors(JobRelayError):
    """Wraps a ValidationReport containing 2+ errors."""

    report: ValidationReport = field(default_factory=lambda: ValidationReport(''))

    def __post_init__(self) -> None:
        if not self.message:
            self.message = f'aborting due to {len(self.report.errors)} previous errors'
        # Locations are per-error inside the report
        super(JobRelayError, self).__init__(self.message)

    def format_rust_style(self, use_colors: bool | None = None) -> str:
        return self.report.format_rust_style(use_colors=use_colors)

    def __str__(self) -> str:
        return self.format_rust_style(use_colors=False)


def raise_collected(report: ValidationReport) -> None:
    """Raise collected errors.

    - 0 errors: returns normally
    - 1 error: raises that error unchanged
    - 2+ errors: raises MultipleValidationErrors wrapping the report
    """
    count = len(report.errors)
    if count == 0:
        return
    if count == 1:
        raise report.errors[0]
    raise MultipleValidationErrors(
        message=f'aborting due to {count} previous errors',
        report=report,
    )


def _find_user_frame() -> Any | None:
    """Find the first frame outside of jobrelay internals and site-packages."""
    frame = inspect.currentframe()
    while frame is not None:
        filename = frame.f_code.co_filename
        if filename.startswith('<'):
            frame = frame.f_back
            continue
        if not filename.startswith(_JOBRELAY_PKG_DIR) and '/site-packages/' not in filename:
            return frame
        frame = frame.f_back
    return None


def job_type_definition_error(
    message: str,
    *,
    code: ErrorCode | None = None,
    fn: Callable[..., Any] | None = None,
    notes: list[str] | None = None,
    help_text: str | None = None,
) -> JobTypeDefinitionError:
    """Create a JobTypeDefinitionError located at the step function."""
    location = SourceLocation.from_function(fn) if fn is not None else None
    return JobTypeDefinitionError(
        message=message,
        code=code,
        location=location,
        notes=notes or [],
        help_text=help_text,
    )
