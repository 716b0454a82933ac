# jobrelay/core/cli.py
"""
CLI for the jobrelay worker, API server and check commands.

Module path resolution:
1. User provides a locator: `jobrelay worker app.configs.jobs:app`
2. User is responsible for PYTHONPATH / running from the correct directory
3. Convenience: if cwd has pyproject.toml, cwd is added to sys.path
"""

import argparse
import asyncio
import importlib
import logging
import os
import signal
import sys

from result import is_err

from jobrelay.core.app import JobRelay
from jobrelay.core.errors import ConfigurationError, ErrorCode, JobRelayError, ValidationReport
from jobrelay.core.logging import get_logger
from jobrelay.core.worker.config import WorkerConfig
from jobrelay.core.worker.worker import Worker
from jobrelay.core.utils.imports import (
    import_file_path,
    is_file_path,
    setup_sys_path_from_cwd,
)

_LOGLEVELS = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']


def _resolve_module_argument(args: argparse.Namespace) -> str:
    """Return module path from --module or positional, error if missing."""
    module_path = getattr(args, 'module', None) or getattr(args, 'module_pos', None)
    if not module_path:
        raise ConfigurationError(
            message='module path is required',
            code=ErrorCode.CLI_INVALID_ARGS,
            notes=['no --module flag or positional module argument provided'],
            help_text=(
                'provide module path in one of these formats:\n'
                '  jobrelay worker app.configs.jobs:app  (recommended)\n'
                '  jobrelay worker app/configs/jobs.py:app  (file path)\n'
                '  jobrelay worker app.configs.jobs  (auto-discover app variable)'
            ),
        )
    return module_path


def _parse_locator(locator: str) -> tuple[str, str | None]:
    """
    Parse a module locator into (module_path, attribute_name).

    - "app.configs.jobs:app" -> ("app.configs.jobs", "app")
    - "app/configs/jobs.py" -> ("app/configs/jobs.py", None)
    """
    if ':' in locator:
        module_part, attr = locator.rsplit(':', 1)
        return (module_part, attr)
    return (locator, None)


def discover_app(module_locator: str) -> tuple[JobRelay, str, str]:
    """
    Import a module and find its JobRelay instance.

    Returns:
        (app_instance, variable_name, module_name)
    """
    logger = get_logger('cli')

    project_root = setup_sys_path_from_cwd()
    if project_root:
        logger.info(f'Added project root to sys.path: {project_root}')

    module_path, attr_name = _parse_locator(module_locator)

    if is_file_path(module_path):
        if not module_path.endswith('.py'):
            module_path += '.py'
        file_path = os.path.realpath(module_path)
        if not os.path.exists(file_path):
            stem = module_path.removesuffix('.py')
            if '.' in stem and '/' not in stem and os.path.sep not in stem:
                attr_hint = attr_name if attr_name else '<app_name>'
                raise ConfigurationError(
                    message=f"ambiguous module locator: '{module_locator}'",
                    code=ErrorCode.CLI_INVALID_LOCATOR,
                    notes=[
                        f"'{module_path}' mixes dotted module notation with a .py file extension",
                    ],
                    help_text=(
                        f'use dotted module path: {stem}:{attr_hint}\n'
                        f'or use file path:       {stem.replace(".", "/")}.py:{attr_hint}'
                    ),
                )
            raise FileNotFoundError(f'Module file not found: {file_path}')
        module = import_file_path(file_path)
        module_name = module.__name__
    else:
        try:
            module = importlib.import_module(module_path)
        except ModuleNotFoundError as e:
            raise ConfigurationError(
                message=f'module not found: {module_path}',
                code=ErrorCode.CLI_INVALID_LOCATOR,
                notes=[str(e), f'sys.path: {sys.path[:5]}...'],
                help_text=(
                    'ensure you are running from the correct directory\n'
                    'or set PYTHONPATH to include your project root'
                ),
            )
        module_name = module_path

    if attr_name:
        if not hasattr(module, attr_name):
            raise AttributeError(f"Module '{module_name}' has no attribute '{attr_name}'")
        obj = getattr(module, attr_name)
        if not isinstance(obj, JobRelay):
            raise TypeError(
                f"'{attr_name}' in module '{module_name}' is not a JobRelay instance "
                f'(got {type(obj).__name__})'
            )
        app, var_name = obj, attr_name
    else:
        instances = [
            (obj, name)
            for name in dir(module)
            if not name.startswith('_') and isinstance(obj := getattr(module, name), JobRelay)
        ]
        if not instances:
            raise AttributeError(
                f'No JobRelay instance found in {module_name}. '
                'Specify the variable name: module.path:variable'
            )
        if len(instances) > 1:
            raise AttributeError(
                f'Multiple JobRelay instances found in {module_name}: '
                f'{[name for _, name in instances]}. Specify which one: module.path:variable'
            )
        app, var_name = instances[0]

    logger.info(f"Discovered jobrelay app '{var_name}' from {module_name}")
    return app, var_name, module_name


def setup_logging(loglevel: str) -> None:
    """Configure logging level globally."""
    from jobrelay.core.logging import set_default_level

    level = getattr(logging, loglevel.upper(), logging.INFO)
    set_default_level(level)

    for name in ['jobrelay', *logging.Logger.manager.loggerDict]:
        if isinstance(name, str) and (name == 'jobrelay' or name.startswith('jobrelay.')):
            lgr = logging.getLogger(name)
            lgr.setLevel(level)
            for handler in lgr.handlers:
                handler.setLevel(level)


def _load_app(args: argparse.Namespace, role: str) -> tuple[JobRelay, str]:
    logger = get_logger('cli')
    try:
        module_locator = _resolve_module_argument(args)
        app, var_name, module_name = discover_app(module_locator)
        app.set_role(role)
    except JobRelayError as e:
        logger.error(str(e))
        sys.exit(1)
    except Exception as e:
        logger.error(f'Failed to discover app: {e}')
        sys.exit(1)
    return app, f'{module_name}:{var_name}'


def worker_command(args: argparse.Namespace) -> None:
    """Handle worker command."""
    logger = get_logger('cli')

    loglevel: str = args.loglevel
    setup_logging(loglevel)
    logger.info(f'Starting jobrelay worker with loglevel={loglevel}')

    app, app_locator = _load_app(args, 'worker')

    try:
        imported = app.import_job_type_modules()
    except Exception as e:
        logger.error(f'Failed to import job type modules: {e}')
        sys.exit(1)
    if not app.list_job_types():
        logger.warning('No job types registered; every claimed job will fail')
    logger.info(f'Job types: {app.list_job_types()} (modules: {imported})')

    worker_config = WorkerConfig.from_app_config(
        app.config,
        app_locator=app_locator,
        imports=imported,
        max_concurrent_jobs=args.max_concurrent_jobs,
        loglevel=getattr(logging, loglevel.upper(), logging.INFO),
    )
    app.config.log_config(logger)

    async def run_worker() -> None:
        store = app.get_store()
        worker = Worker(app, store, cfg=worker_config)
        loop = asyncio.get_running_loop()

        def signal_handler() -> None:
            logger.info('Received interrupt signal, stopping worker...')
            worker.request_stop()

        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, signal_handler)
            except NotImplementedError:
                pass

        try:
            await worker.run_forever()
        finally:
            close_r = await store.close_async()
            if is_err(close_r):
                logger.error(f'Error closing job store: {close_r.err_value.message}')

    try:
        asyncio.run(run_worker())
    except KeyboardInterrupt:
        logger.info('Worker interrupted by user')
    except asyncio.TimeoutError:
        logger.error('Worker startup timed out')
        sys.exit(1)
    except Exception as e:
        logger.error(f'Worker failed: {e}')
        sys.exit(1)


def api_command(args: argparse.Namespace) -> None:
    """Handle api command."""
    import uvicorn

    from jobrelay.core.api import create_api

    logger = get_logger('cli')

    loglevel: str = args.loglevel
    setup_logging(loglevel)

    app, _ = _load_app(args, 'api')
    try:
        app.import_job_type_modules()
    except Exception as e:
        logger.error(f'Failed to import job type modules: {e}')
        sys.exit(1)

    api = create_api(app, embedded_worker=args.embedded_worker)
    logger.info(
        f'Serving jobrelay API on {args.host}:{args.port}'
        + (' with embedded worker' if args.embedded_worker else '')
    )
    # uvicorn installs its own SIGINT/SIGTERM handling; lifespan shutdown
    # stops the embedded worker and closes the store.
    uvicorn.run(api, host=args.host, port=args.port, log_level=loglevel.lower())


def check_command(args: argparse.Namespace) -> None:
    """Handle check command: validate app configuration without starting services."""
    loglevel: str = args.loglevel
    setup_logging(loglevel)

    app, _ = _load_app(args, 'check')

    errors = app.check(live=args.live)
    if errors:
        report = ValidationReport('check')
        for error in errors:
            report.add(error)
        print(report.format_rust_style(), file=sys.stderr)
        sys.exit(1)

    job_type_count = len(app.list_job_types())
    print(f'ok: all validations passed\n  {job_type_count} job type(s) registered')
    sys.exit(0)


def _add_module_arguments(parser: argparse.ArgumentParser, default_loglevel: str) -> None:
    parser.add_argument(
        '-m',
        '--module',
        dest='module',
        help='Module path (e.g., app.configs.jobs:app)',
    )
    parser.add_argument(
        'module_pos',
        nargs='?',
        help='Module path (e.g., app.configs.jobs:app)',
    )
    parser.add_argument(
        '--loglevel',
        choices=_LOGLEVELS,
        default=default_loglevel,
        type=str.upper,
        help=f'Logging level (default: {default_loglevel})',
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='jobrelay',
        description='jobrelay - background jobs with live progress',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  jobrelay worker app.configs.jobs:app
  jobrelay api app.configs.jobs:app --port 8000
  jobrelay api app/configs/jobs.py:app --embedded-worker
  jobrelay check app.configs.jobs:app --live
""",
    )
    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    worker_parser = subparsers.add_parser('worker', help='Start a jobrelay worker')
    _add_module_arguments(worker_parser, 'INFO')
    worker_parser.add_argument(
        '--max-concurrent-jobs',
        type=int,
        default=None,
        help='Jobs executed concurrently (default: from AppConfig)',
    )

    api_parser = subparsers.add_parser('api', help='Serve the HTTP and WebSocket API')
    _add_module_arguments(api_parser, 'INFO')
    api_parser.add_argument('--host', default='127.0.0.1', help='Bind address (default: 127.0.0.1)')
    api_parser.add_argument('--port', type=int, default=8000, help='Bind port (default: 8000)')
    api_parser.add_argument(
        '--embedded-worker',
        action='store_true',
        default=False,
        help='Also run a worker inside the API process',
    )

    check_parser = subparsers.add_parser(
        'check',
        help='Validate app configuration without starting services',
    )
    _add_module_arguments(check_parser, 'WARNING')
    check_parser.add_argument(
        '--live',
        action='store_true',
        default=False,
        help='Also check store connectivity (SELECT 1)',
    )
    return parser


def main() -> None:
    """Main CLI entry point."""
    parser = build_parser()
    try:
        args = parser.parse_args()
        match args.command:
            case 'worker':
                worker_command(args)
            case 'api':
                api_command(args)
            case 'check':
                check_command(args)
            case _:
                parser.print_help()
                sys.exit(1)
    except KeyboardInterrupt:
        print('\nInterrupted by user')
        sys.exit(0)


if __name__ == '__main__':
    main()
