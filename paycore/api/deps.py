"""
Request dependencies: admin key check, caller identity, shared clients.

Buyer and instructor identity arrive as headers set by the authenticating
gateway in front of this service.
"""

from typing import Optional

from fastapi import Header, HTTPException, status

from paycore.config import settings
from paycore.gateways import GatewayRegistry, get_gateway_registry


async def verify_admin_key(
    x_admin_key: Optional[str] = Header(None, alias="X-Admin-Key"),
    x_admin_id: Optional[str] = Header(None, alias="X-Admin-Id"),
) -> str:
    """
    Validate the admin key from the header.
    Returns the acting admin's id for audit fields.
    """
    if not x_admin_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing admin key",
        )
    if not settings.admin_api_key or x_admin_key != settings.admin_api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid admin key",
        )
    return x_admin_id or "admin"


async def get_buyer_id(x_user_id: Optional[str] = Header(None, alias="X-User-Id")) -> str:
    if not x_user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing X-User-Id")
    return x_user_id


async def get_instructor_id(x_instructor_id: Optional[str] = Header(None, alias="X-Instructor-Id")) -> str:
    if not x_instructor_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing X-Instructor-Id")
    return x_instructor_id


def get_registry() -> GatewayRegistry:
    return get_gateway_registry()
