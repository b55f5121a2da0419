"""
Staff authentication - HS256 bearer tokens issued by the dashboard.
Claims: sub (user id, recorded on audit fields), role ("admin" or "staff").
"""
import logging
from dataclasses import dataclass
from fastapi import Depends, HTTPException
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

logger = logging.getLogger(__name__)
bearer_scheme = HTTPBearer()

STAFF_ROLES = ("admin", "staff")


@dataclass(frozen=True)
class StaffUser:
    id: str
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(bearer_scheme),
) -> StaffUser:
    """Dependency to extract and verify the staff user from a JWT Bearer token."""
    import jwt as pyjwt
    from gearhook.config import get_settings
    settings = get_settings()

    if not settings.admin_jwt_secret:
        logger.error("ADMIN_JWT_SECRET not configured - rejecting staff request")
        raise HTTPException(status_code=401, detail="Authentication not configured")

    try:
        payload = pyjwt.decode(
            credentials.credentials,
            settings.admin_jwt_secret,
            algorithms=[settings.admin_jwt_algorithm],
        )
    except pyjwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except pyjwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")

    user_id = payload.get("sub")
    role = payload.get("role")
    if not user_id or role not in STAFF_ROLES:
        raise HTTPException(status_code=401, detail="Invalid token payload")
    return StaffUser(id=str(user_id), role=role)


async def get_current_admin(
    user: StaffUser = Depends(get_current_user),
) -> StaffUser:
    """Dependency that requires the authenticated user to be an admin."""
    if not user.is_admin:
        raise HTTPException(status_code=403, detail="Admin access required")
    return user
