# jobrelay/core/utils/url.py
"""Database URL helpers: masking for logs and driver normalization."""

from __future__ import annotations

from sqlalchemy.engine import make_url
from sqlalchemy.exc import ArgumentError


def mask_database_url(url: str) -> str:
    """Return ``url`` with its password replaced by ``***``.

    Unparseable input is masked by splitting on the last ``@`` so a password
    never reaches the logs.
    """
    try:
        return make_url(url).render_as_string(hide_password=True)
    except ArgumentError:
        if '@' not in url:
            return url
        credentials, host = url.rsplit('@', 1)
        scheme_user = credentials.rsplit(':', 1)[0]
        return f'{scheme_user}:***@{host}'


def to_psycopg_url(url: str) -> str:
    """Convert a SQLAlchemy URL into a plain libpq URL for psycopg.

    - ``postgresql+psycopg://...`` -> ``postgresql://...``
    - already plain URLs are returned unchanged
    """
    try:
        parsed = make_url(url)
    except ArgumentError:
        return url.replace('+psycopg', '')
    if parsed.get_backend_name() != 'postgresql' or '+' not in parsed.drivername:
        return url
    return parsed.set(drivername='postgresql').render_as_string(hide_password=False)
