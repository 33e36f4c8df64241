"""
api/limiter.py -- Shared slowapi rate limiter instance.

Import this in api/main.py (to mount as middleware) and in
api/routes/v1/auth.py (to apply per-route limits with @limiter.limit()).

A single shared instance means every route counts against the same in-memory
store. Per-module instances would each keep isolated counters and the limits
would never trigger.

The login/register/reset limit string comes from Settings.login_rate_limit.
It is read through a callable so tests can clear the settings cache and
change it without re-importing the routes.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")


def credential_rate_limit() -> str:
    return get_settings().login_rate_limit
