"""
api/limiter.py -- Shared slowapi rate limiter instance.

Import this in both api/main.py (to mount as middleware) and
api/routes/v1/auth.py (to apply per-route limits with @limiter.limit()).

This is a coarse per-IP request cap at the HTTP edge. The brute-force
lockout itself (failed attempts per email and per IP inside a sliding
window) is auth.attempts.RateLimiter, which reads the persistent
login-attempt log and works across workers.

Using a single shared instance ensures all routes share the same counter
store. Separate instances per module would each keep an isolated counter.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")

LOGIN_RATE_LIMIT = get_settings().login_rate_limit
