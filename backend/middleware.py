from fastapi import Request, HTTPException, status
from typing import Optional
import logging
from auth import decode_access_token
from models import UserRole

logger = logging.getLogger(__name__)

ROLE_HIERARCHY = {
    UserRole.ROLE_ADMIN.value: 2,
    UserRole.ROLE_OPERATOR.value: 1,
}


async def get_current_user(request: Request) -> Optional[dict]:
    """Extract and validate current user from JWT token."""
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        return None

    token = auth_header.split(" ")[1]
    return decode_access_token(token)


async def require_auth(request: Request) -> dict:
    """Require valid authentication."""
    user = await get_current_user(request)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated"
        )
    return user


async def require_role(request: Request, required_role: UserRole) -> dict:
    """Require specific role."""
    user = await require_auth(request)
    user_role = user.get("role")

    if ROLE_HIERARCHY.get(user_role, 0) < ROLE_HIERARCHY.get(required_role.value, 0):
        logger.warning("Route guard denied %s for role=%s", request.url.path, user_role)
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Insufficient permissions"
        )

    return user


async def require_admin(request: Request) -> dict:
    """Require admin role."""
    return await require_role(request, UserRole.ROLE_ADMIN)


async def operator_route_guard(request: Request) -> dict:
    """Guard for read-only operator routes (job inspection)."""
    return await require_role(request, UserRole.ROLE_OPERATOR)


async def admin_route_guard(request: Request) -> dict:
    """Guard for admin routes."""
    return await require_admin(request)


def operator_name(user: dict) -> str:
    """Identity recorded in audit entries for operator commands."""
    return user.get("email") or user.get("sub") or user.get("user_id") or "unknown"
