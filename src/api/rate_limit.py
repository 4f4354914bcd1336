"""
API rate limiting using slowapi.

Provides a shared Limiter instance keyed by caller identity: admin key,
voter DID or API key when present, otherwise the client IP address.
Enable via RATE_LIMIT_ENABLED=true. Admin endpoints carry the stricter
``RATE_LIMIT_ADMIN`` limit on top of the default.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address
from starlette.requests import Request

from src.config.settings import get_settings

_IDENTITY_HEADERS = ("X-ADMIN-KEY", "X-Voter-DID", "X-API-KEY")


def _get_rate_limit_key(request: Request) -> str:
    """Extract rate limit key: first identity header present, or remote IP."""
    for header in _IDENTITY_HEADERS:
        value = request.headers.get(header)
        if value:
            return value
    return get_remote_address(request)


def admin_rate_limit() -> str:
    return get_settings().rate_limit_admin


def create_limiter() -> Limiter:
    """Create a configured Limiter instance."""
    settings = get_settings()
    return Limiter(
        key_func=_get_rate_limit_key,
        default_limits=[settings.rate_limit_default],
        storage_uri=str(settings.redis_url),
        enabled=settings.rate_limit_enabled,
    )


limiter = create_limiter()
