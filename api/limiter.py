"""
api/limiter.py -- The one slowapi Limiter shared by the app and the route modules.

api/main.py mounts it (app.state.limiter + SlowAPIMiddleware); route modules
decorate with @limiter.limit(LOGIN_RATE_LIMIT). A second Limiter instance
would keep its own counters and the limits on login and code verification
would never trip.

Keyed on the socket peer address. RATE_LIMIT_ENABLED=false turns every limit
off (test suites that log in many times from one client).
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

_settings = get_settings()

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://", enabled=_settings.rate_limit_enabled)

LOGIN_RATE_LIMIT = _settings.login_rate_limit
