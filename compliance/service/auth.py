"""
API Key Authentication Module

All requests to protected endpoints must include a valid API key in the
X-API-Key header. The acting principal comes from the role-claim headers
set by the upstream gateway:

- X-Actor-Id: actor identifier
- X-Actor-Role: one of compliance.capabilities.Role
- X-Actor-Jurisdictions: comma-separated jurisdictions ("*" for all)
"""

import os
from typing import Optional

from fastapi import Depends, Header, HTTPException, Security
from fastapi.security.api_key import APIKeyHeader

from compliance.capabilities import Principal, Role

API_KEY_NAME = "X-API-Key"
_api_key_header = APIKeyHeader(name=API_KEY_NAME, auto_error=False)

_KNOWN_ROLES = {role.value for role in Role}


def get_expected_api_key() -> str:
    """
    Retrieve the expected API key from environment variables.

    Returns:
        The API key from AGRITRACE_API_KEY environment variable
    """
    return os.getenv("AGRITRACE_API_KEY", "")


async def verify_api_key(
    api_key: str = Security(_api_key_header),
):
    """
    Verify that the provided API key matches the expected key.

    Raises:
        HTTPException: If API key is missing, invalid, or not configured
    """
    expected = get_expected_api_key()
    if not expected:
        # API key not configured, reject requests
        raise HTTPException(status_code=500, detail="API key not configured")
    if api_key != expected:
        raise HTTPException(status_code=401, detail="Invalid API key")
    return True


async def get_principal(
    _: bool = Depends(verify_api_key),
    x_actor_id: Optional[str] = Header(None),
    x_actor_role: Optional[str] = Header(None),
    x_actor_jurisdictions: Optional[str] = Header(None),
) -> Principal:
    """Build the calling principal from the role-claim headers."""
    if not x_actor_id or not x_actor_role:
        raise HTTPException(status_code=401, detail="X-Actor-Id and X-Actor-Role headers are required")
    if x_actor_role not in _KNOWN_ROLES:
        raise HTTPException(status_code=403, detail=f"Unknown role '{x_actor_role}'")

    jurisdictions = frozenset(
        part.strip() for part in (x_actor_jurisdictions or "").split(",") if part.strip()
    )
    return Principal(actor_id=x_actor_id, role=x_actor_role, jurisdictions=jurisdictions)
