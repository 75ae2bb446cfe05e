"""
api/limiter.py -- The per-process slowapi limiter guarding POST /api/v1/auth/login.

This is the cheap first line in front of IPtrk (ratelimit/iptrk.py): slowapi
counts requests per client address in memory, IPtrk counts failed logins in
the shared database. api/main.py mounts the middleware and
api/routes/v1/auth.py decorates the login route; both must import this one
instance or the counters would never meet.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")


def login_limit() -> str:
    """Limit string for POST /auth/login, read when the route is hit (WARDEN_LOGIN_RATE_LIMIT)."""
    return get_settings().login_rate_limit
