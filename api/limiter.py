"""
api/limiter.py -- Shared slowapi rate limiter instance.

Import this in both api/main.py (to mount as middleware) and
api/routes/v1/auth.py (to apply per-route limits with @limiter.limit()).

Using a single shared instance ensures all routes share the same in-memory
counter store. If this were instantiated in each module separately, each
module would get its own isolated counter and rate limits would never trigger.

Limits are keyed by client IP. Per-account protection against password
guessing is auth/lockout.py; this limiter caps request volume per source.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

_settings = get_settings()

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")

LOGIN_LIMIT = _settings.login_rate_limit
PASSWORD_RESET_LIMIT = _settings.password_reset_rate_limit
