"""
API authentication and caller identity.

- ``X-API-KEY``: read access to transparency endpoints (open in dev mode)
- ``X-ADMIN-KEY``: governance administration; admin is disabled entirely
  when ``ADMIN_API_KEYS`` is unset
- ``X-Voter-DID`` / ``X-Admin-DID``: caller DIDs asserted by the upstream
  gateway that terminates user sessions
"""

from fastapi import Header, HTTPException, Security, status
from fastapi.security import APIKeyHeader

from src.config.settings import get_settings

# API key header schemes
api_key_header = APIKeyHeader(name="X-API-KEY", auto_error=False)
admin_key_header = APIKeyHeader(name="X-ADMIN-KEY", auto_error=False)


def _split_keys(raw: str | None) -> list[str]:
    return [k.strip() for k in (raw or "").split(",") if k.strip()]


async def verify_api_key(api_key: str | None = Security(api_key_header)) -> str:
    """
    Verify API key from X-API-KEY header.

    Args:
        api_key: API key from header

    Returns:
        The validated API key

    Raises:
        HTTPException: If API key is missing or invalid
    """
    settings = get_settings()

    # If no API keys configured, allow all requests (dev mode)
    if not settings.api_keys:
        return "dev-mode"

    if api_key is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing API key. Provide X-API-KEY header.",
        )

    valid_keys = _split_keys(settings.api_keys)
    if not valid_keys or api_key not in valid_keys:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key",
        )

    return api_key


async def verify_admin_key(admin_key: str | None = Security(admin_key_header)) -> str:
    """
    Verify the admin key from the X-ADMIN-KEY header.

    Unlike ``verify_api_key`` there is no dev mode: with no admin keys
    configured every admin request is refused.

    Raises:
        HTTPException: 403 if admin is disabled, 401 if the key is missing
            or invalid
    """
    valid_keys = _split_keys(get_settings().admin_api_keys)
    if not valid_keys:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin API is disabled",
        )

    if admin_key is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing admin key. Provide X-ADMIN-KEY header.",
        )

    if admin_key not in valid_keys:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid admin key",
        )

    return admin_key


def is_admin_key(admin_key: str | None) -> bool:
    """Non-raising admin check, for endpoints that only show more to admins."""
    return admin_key is not None and admin_key in _split_keys(get_settings().admin_api_keys)


async def get_voter_did(
    voter_did: str | None = Header(default=None, alias="X-Voter-DID"),
) -> str:
    """The authenticated voter's DID.

    Raises:
        HTTPException: 401 if the header is missing or not a DID
    """
    if not voter_did or not voter_did.startswith("did:"):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing voter identity. Provide X-Voter-DID header.",
        )
    return voter_did


async def get_admin_did(
    admin_did: str | None = Header(default=None, alias="X-Admin-DID"),
) -> str | None:
    """The acting admin's DID for the audit log, if the gateway supplied one."""
    if admin_did and admin_did.startswith("did:"):
        return admin_did
    return None
