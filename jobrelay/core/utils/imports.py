"""
Module import helpers for app and job type discovery.

- import_module_path(): dotted module path, resolved against sys.path
- import_file_path(): a standalone .py file, loaded under a stable synthetic name
- setup_sys_path_from_cwd(): put cwd on sys.path when it is a project root

The caller controls sys.path and module naming; nothing walks up the tree.
"""

from __future__ import annotations

import hashlib
import importlib
import importlib.util
import os
import sys
from typing import Any

from jobrelay.core.logging import get_logger

logger = get_logger('imports')

_PROJECT_MARKERS = ('pyproject.toml', 'setup.cfg', 'setup.py')


def is_file_path(locator: str) -> bool:
    return locator.endswith('.py') or os.path.sep in locator


def find_project_root(start_dir: str) -> str | None:
    """Return ``start_dir`` if it holds a project marker file, else None.

    Only the given directory is checked, never its parents, so a monorepo
    root cannot shadow a service's modules.
    """
    start_dir = os.path.abspath(start_dir)
    for marker in _PROJECT_MARKERS:
        if os.path.exists(os.path.join(start_dir, marker)):
            return start_dir
    return None


def setup_sys_path_from_cwd() -> str | None:
    """Add cwd to sys.path when cwd is a project root. Returns cwd if added."""
    cwd = os.getcwd()
    if find_project_root(cwd) and cwd not in sys.path:
        sys.path.insert(0, cwd)
        logger.debug(f'Added cwd to sys.path: {cwd}')
        return cwd
    return None


def import_module_path(module_path: str) -> Any:
    """Import a dotted module path (``myproject.jobs``).

    Raises:
        ModuleNotFoundError: the module is not importable from sys.path.
    """
    return importlib.import_module(module_path)


def _synthetic_module_name(path: str) -> str:
    """Same realpath, same name, in every process."""
    digest = hashlib.sha256(os.path.realpath(path).encode()).hexdigest()[:12]
    return f'jobrelay._dynamic.{digest}'


def import_file_path(
    file_path: str,
    module_name: str | None = None,
    add_parent_to_path: bool = True,
) -> Any:
    """Import a module from a file path.

    A file that is already loaded (by realpath) is returned as-is, so job
    types are not registered twice.

    Raises:
        FileNotFoundError: the file does not exist.
        ImportError: no loader could be created for it.
    """
    file_path = os.path.realpath(file_path)
    if not os.path.exists(file_path):
        raise FileNotFoundError(f'Module file not found: {file_path}')

    for mod in list(sys.modules.values()):
        mod_file = getattr(mod, '__file__', None)
        if mod_file and os.path.realpath(mod_file) == file_path:
            return mod

    if add_parent_to_path:
        parent_dir = os.path.dirname(file_path)
        if parent_dir not in sys.path:
            sys.path.insert(0, parent_dir)

    module_name = module_name or _synthetic_module_name(file_path)
    spec = importlib.util.spec_from_file_location(module_name, file_path)
    if spec is None or spec.loader is None:
        raise ImportError(f'Could not load module from path: {file_path}')

    mod = importlib.util.module_from_spec(spec)
    sys.modules[module_name] = mod
    spec.loader.exec_module(mod)
    return mod


def import_by_path(path: str, module_name: str | None = None) -> Any:
    """File paths go through import_file_path(), dotted paths through import_module_path()."""
    if is_file_path(path):
        return import_file_path(path, module_name)
    return import_module_path(path)
