"""
api/limiter.py -- Shared slowapi rate limiter instance.

Import this in both api/main.py (to mount as middleware) and
api/routes/v1/auth.py (to apply per-route limits with @limiter.limit()).

A single shared instance means all routes share the same in-memory counter
store. Separate instances per module would each count in isolation and the
limits would never trigger.

The per-IP limit sits in front of the per-account lockout in AuthEngine: it
slows credential stuffing across many emails, which a per-account counter
cannot see.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")


def login_rate_limit() -> str:
    """Rate string for credential endpoints, read from Settings.login_rate_limit."""
    return get_settings().login_rate_limit
