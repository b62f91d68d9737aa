"""Rate limiting configuration using slowapi.

Provides a module-level Limiter instance wired into the FastAPI app in
main.py through ``SlowAPIMiddleware``, so every route shares the default
limit unless it overrides it with ``@limiter.limit("N/period")``.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from timeoff.config import settings

limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[settings.RATE_LIMIT_DEFAULT],
)
