"""
api/limiter.py -- Shared slowapi rate limiter instance.

Imported by api/main.py (to mount as middleware) and api/routes/v1/auth.py
(to apply the login limit with @limiter.limit()).

A single shared instance means all routes share one in-memory counter store.
Per-module instances would each count separately and never trigger.

The lockout policy caps guesses per account; this caps guesses per client
address across accounts.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")


def login_rate_limit() -> str:
    """Resolved at request time so LOGIN_RATE_LIMIT is read through get_settings()."""
    return get_settings().login_rate_limit
