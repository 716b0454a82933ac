"""Unit tests for CLI app discovery and argument parsing (jobrelay/core/cli.py)."""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

import pytest

from jobrelay.core import cli
from jobrelay.core.app import JobRelay
from jobrelay.core.errors import ConfigurationError, ErrorCode
from tests.unit.fakes import TEST_DATABASE_URL

_APP_SOURCE = f"""
from jobrelay.core.app import JobRelay
from jobrelay.core.models.app import AppConfig
from jobrelay.core.models.broker import PostgresConfig


def _make():
    return JobRelay(AppConfig(broker=PostgresConfig(database_url={TEST_DATABASE_URL!r})))
"""


@pytest.fixture
def isolated_cwd(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Run from an empty directory and restore sys.path afterwards."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(sys, 'path', list(sys.path))
    return tmp_path


def _write_app(directory: Path, name: str, body: str) -> Path:
    path = directory / f'{name}.py'
    path.write_text(_APP_SOURCE + body)
    return path


# ---------------------------------------------------------------------------
# Locators
# ---------------------------------------------------------------------------


@pytest.mark.unit
class TestParseLocator:
    @pytest.mark.parametrize(
        ('locator', 'expected'),
        [
            ('app.configs.jobs:app', ('app.configs.jobs', 'app')),
            ('app/configs/jobs.py:relay', ('app/configs/jobs.py', 'relay')),
            ('app/configs/jobs.py', ('app/configs/jobs.py', None)),
            ('C:/code/jobs.py:app', ('C:/code/jobs.py', 'app')),
        ],
    )
    def test_split(self, locator: str, expected: tuple[str, str | None]) -> None:
        assert cli._parse_locator(locator) == expected

    def test_module_argument_required(self) -> None:
        args = argparse.Namespace(module=None, module_pos=None)
        with pytest.raises(ConfigurationError) as exc_info:
            cli._resolve_module_argument(args)
        assert exc_info.value.code == ErrorCode.CLI_INVALID_ARGS

    def test_flag_wins_over_positional(self) -> None:
        args = argparse.Namespace(module='a.b:app', module_pos='c.d:app')
        assert cli._resolve_module_argument(args) == 'a.b:app'


# ---------------------------------------------------------------------------
# Discovery
# ---------------------------------------------------------------------------


@pytest.mark.unit
class TestDiscoverApp:
    def test_file_path_with_attribute(self, isolated_cwd: Path) -> None:
        path = _write_app(isolated_cwd, 'relay_named', 'relay = _make()\n')

        app, var_name, _ = cli.discover_app(f'{path}:relay')

        assert isinstance(app, JobRelay)
        assert var_name == 'relay'

    def test_single_instance_found_without_attribute(self, isolated_cwd: Path) -> None:
        path = _write_app(isolated_cwd, 'relay_single', 'app = _make()\n')

        app, var_name, _ = cli.discover_app(str(path))

        assert isinstance(app, JobRelay)
        assert var_name == 'app'

    def test_multiple_instances_need_attribute(self, isolated_cwd: Path) -> None:
        path = _write_app(isolated_cwd, 'relay_multi', 'first = _make()\nsecond = _make()\n')

        with pytest.raises(AttributeError, match='Multiple JobRelay instances'):
            cli.discover_app(str(path))

    def test_no_instance(self, isolated_cwd: Path) -> None:
        path = _write_app(isolated_cwd, 'relay_none', '')

        with pytest.raises(AttributeError, match='No JobRelay instance'):
            cli.discover_app(str(path))

    def test_attribute_of_wrong_type(self, isolated_cwd: Path) -> None:
        path = _write_app(isolated_cwd, 'relay_wrong', 'app = object()\n')

        with pytest.raises(TypeError, match='not a JobRelay instance'):
            cli.discover_app(f'{path}:app')

    def test_missing_attribute(self, isolated_cwd: Path) -> None:
        path = _write_app(isolated_cwd, 'relay_attr', 'app = _make()\n')

        with pytest.raises(AttributeError, match="no attribute 'relay'"):
            cli.discover_app(f'{path}:relay')

    def test_missing_file(self, isolated_cwd: Path) -> None:
        with pytest.raises(FileNotFoundError):
            cli.discover_app(str(isolated_cwd / 'nope.py'))

    def test_dotted_path_with_py_suffix_is_ambiguous(self, isolated_cwd: Path) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            cli.discover_app('app.jobs.py:app')

        assert exc_info.value.code == ErrorCode.CLI_INVALID_LOCATOR
        assert 'app.jobs:app' in str(exc_info.value)

    def test_unknown_dotted_module(self, isolated_cwd: Path) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            cli.discover_app('no_such_package_xyz.jobs:app')

        assert exc_info.value.code == ErrorCode.CLI_INVALID_LOCATOR


# ---------------------------------------------------------------------------
# Parser and commands
# ---------------------------------------------------------------------------


@pytest.mark.unit
class TestParser:
    def test_worker_arguments(self) -> None:
        args = cli.build_parser().parse_args(
            ['worker', 'app.jobs:app', '--loglevel', 'debug', '--max-concurrent-jobs', '4']
        )
        assert args.command == 'worker'
        assert args.module_pos == 'app.jobs:app'
        assert args.loglevel == 'DEBUG'
        assert args.max_concurrent_jobs == 4

    def test_api_defaults(self) -> None:
        args = cli.build_parser().parse_args(['api', '-m', 'app.jobs:app'])
        assert args.module == 'app.jobs:app'
        assert args.host == '127.0.0.1'
        assert args.port == 8000
        assert args.embedded_worker is False

    def test_check_defaults_to_warning(self) -> None:
        args = cli.build_parser().parse_args(['check', 'app.jobs:app', '--live'])
        assert args.loglevel == 'WARNING'
        assert args.live is True

    def test_invalid_loglevel_rejected(self) -> None:
        with pytest.raises(SystemExit):
            cli.build_parser().parse_args(['worker', 'app.jobs:app', '--loglevel', 'loud'])

    def test_no_command_prints_help(
        self, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
    ) -> None:
        monkeypatch.setattr(sys, 'argv', ['jobrelay'])
        with pytest.raises(SystemExit) as exc_info:
            cli.main()
        assert exc_info.value.code == 1
        assert 'usage: jobrelay' in capsys.readouterr().out


@pytest.mark.unit
class TestCheckCommand:
    def test_valid_app_passes(
        self, isolated_cwd: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        path = _write_app(isolated_cwd, 'relay_check', 'app = _make()\n')
        args = cli.build_parser().parse_args(['check', f'{path}:app'])

        with pytest.raises(SystemExit) as exc_info:
            cli.check_command(args)

        assert exc_info.value.code == 0
        assert 'ok: all validations passed' in capsys.readouterr().out

    def test_undiscoverable_app_exits_nonzero(self, isolated_cwd: Path) -> None:
        args = cli.build_parser().parse_args(['check', str(isolated_cwd / 'missing.py')])

        with pytest.raises(SystemExit) as exc_info:
            cli.check_command(args)

        assert exc_info.value.code == 1
