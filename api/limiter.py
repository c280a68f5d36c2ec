"""
api/limiter.py -- Shared slowapi rate limiter instance.

Import this in both api/main.py (to mount as middleware) and
api/routes/v1/auth.py (to apply per-route limits with @limiter.limit()).

Using a single shared instance ensures all routes share the same counter
store. If this were instantiated in each module separately, each module
would get its own isolated counter and rate limits would never trigger.

Scope: slowapi throttles account creation per IP only. Login and password
reset are throttled by auth/ratelimit.py, whose windows are persisted so
every server instance sees the same counts and lockout bookkeeping can be
recorded alongside them.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

limiter = Limiter(key_func=get_remote_address, storage_uri=get_settings().rate_limit_storage_uri)


def register_limit() -> str:
    """Read the limit per request so tests can raise it via settings."""
    return get_settings().register_rate_limit
