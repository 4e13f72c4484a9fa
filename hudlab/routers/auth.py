"""
FastAPI router and dependencies for authentication and role checks.
Verifies Supabase Auth tokens and gates endpoints on the caller's profile role.
"""

from dataclasses import dataclass
from typing import Callable, Optional

import httpx
import structlog
from fastapi import APIRouter, Cookie, Depends, Header, HTTPException, status

from hudlab.config import settings
from hudlab.models.database import UserProfile, UserRole
from hudlab.services.supabase_service import SupabaseService, get_supabase_service

logger = structlog.get_logger()

router = APIRouter(prefix="/api/auth", tags=["auth"])

ALL_ROLES = tuple(role.value for role in UserRole)
ADMIN_ROLES = (UserRole.OWNER.value, UserRole.ADMIN.value)


@dataclass
class AuthContext:
    """Authenticated, approved caller."""

    user_id: str
    email: Optional[str]
    profile: UserProfile

    @property
    def role(self) -> str:
        return self.profile.role

    @property
    def is_admin(self) -> bool:
        return self.profile.role in ADMIN_ROLES


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def verify_token(
    authorization: Optional[str] = Header(None),
    sb_access_token: Optional[str] = Cookie(None, alias="sb-access-token"),
) -> dict:
    """
    Verify a Supabase JWT from the Authorization header or the sb-access-token cookie.

    Returns:
        {"user_id", "email", "user"} from Supabase Auth

    Raises:
        HTTPException: 401 when the token is missing or rejected
    """
    token = None
    if authorization:
        parts = authorization.split()
        if len(parts) != 2 or parts[0].lower() != "bearer":
            raise _unauthorized("Invalid authorization header format")
        token = parts[1]
    elif sb_access_token:
        token = sb_access_token

    if not token:
        raise _unauthorized("Unauthorized")

    try:
        async with httpx.AsyncClient() as client:
            response = await client.get(
                f"{settings.supabase_url}/auth/v1/user",
                headers={
                    "Authorization": f"Bearer {token}",
                    "apikey": settings.supabase_service_key,
                },
                timeout=10.0,
            )
    except httpx.HTTPError as e:
        logger.error("HTTP error during token verification", error=str(e))
        raise _unauthorized("Token verification failed") from e

    if response.status_code != 200:
        raise _unauthorized("Invalid or expired token")

    user_data = response.json()
    if not user_data or not user_data.get("id"):
        raise _unauthorized("Invalid token payload")

    return {
        "user_id": user_data["id"],
        "email": user_data.get("email"),
        "user": user_data,
    }


def require_roles(*roles: str) -> Callable[..., AuthContext]:
    """
    Dependency factory: approved caller whose role is in `roles` (any role when empty).

    403 "User not approved" when the profile is missing or unapproved,
    403 "Insufficient permissions" when the role is not allowed.
    """
    allowed = set(roles) if roles else set(ALL_ROLES)

    def dependency(
        user: dict = Depends(verify_token),
        supabase_service: SupabaseService = Depends(get_supabase_service),
    ) -> AuthContext:
        profile = supabase_service.get_user_profile(user["user_id"])
        if profile is None or not profile.approved:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="User not approved")

        if profile.role not in allowed:
            logger.info(
                "Role not allowed",
                user_id=user["user_id"],
                role=profile.role,
                allowed=sorted(allowed),
            )
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Insufficient permissions")

        return AuthContext(user_id=user["user_id"], email=user.get("email"), profile=profile)

    return dependency


require_approved = require_roles()
require_admin = require_roles(*ADMIN_ROLES)


@router.get("/me")
async def get_current_user(auth: AuthContext = Depends(require_approved)):
    """Return the caller's profile."""
    return {
        "user_id": auth.user_id,
        "email": auth.email,
        "profile": auth.profile.model_dump(mode="json"),
    }


def require_cron_secret(authorization: Optional[str] = Header(None)) -> None:
    """Scheduler-only endpoints: Authorization must be 'Bearer <CRON_SECRET>'. An empty secret rejects every call."""
    if not settings.cron_secret or authorization != f"Bearer {settings.cron_secret}":
        logger.warning("Unauthorized cron request")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
