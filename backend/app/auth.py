"""Authentication utilities for the Renobid backend.

Users are issued JWTs elsewhere; this service only verifies them. The
token's ``sub`` is the user id and ``role`` one of ROLES.
"""

from datetime import datetime, timedelta, timezone
from typing import Annotated

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from .config import Settings, get_settings

ROLE_HOMEOWNER = "homeowner"
ROLE_CONTRACTOR = "contractor"
ROLE_ADMIN = "admin"
ROLES = (ROLE_HOMEOWNER, ROLE_CONTRACTOR, ROLE_ADMIN)

# Bearer token scheme
security = HTTPBearer(auto_error=False)


def create_access_token(
    user_id: str,
    role: str,
    settings: Settings,
    expires_delta: timedelta | None = None,
) -> str:
    """Create a JWT access token for a user."""
    if role not in ROLES:
        raise ValueError(f"Unknown role: {role}")
    if expires_delta:
        expire = datetime.now(timezone.utc) + expires_delta
    else:
        expire = datetime.now(timezone.utc) + timedelta(minutes=settings.jwt_expire_minutes)

    to_encode = {
        "sub": user_id,
        "role": role,
        "exp": expire,
        "iat": datetime.now(timezone.utc),
        "type": "access",
    }
    return jwt.encode(to_encode, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_token(token: str, settings: Settings) -> dict:
    """Decode and validate a JWT token."""
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret_key,
            algorithms=[settings.jwt_algorithm],
        )
        return payload
    except JWTError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )


class AuthContext:
    """Caller identity from the JWT."""

    def __init__(self, user_id: str, role: str):
        self.user_id = user_id
        self.role = role

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN


async def get_current_user(
    request: Request,
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> AuthContext:
    """Get the authenticated caller from the bearer token."""
    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated - provide Authorization header",
            headers={"WWW-Authenticate": "Bearer"},
        )

    payload = decode_token(credentials.credentials, settings)
    user_id = payload.get("sub")
    role = payload.get("role")
    if not user_id or role not in ROLES:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token payload",
            headers={"WWW-Authenticate": "Bearer"},
        )
    auth = AuthContext(user_id=user_id, role=role)
    # Read by the per-caller rate limit key
    request.state.auth = auth
    return auth


CurrentUser = Annotated[AuthContext, Depends(get_current_user)]


def require_role(role: str):
    """Build a dependency admitting only callers with ``role``."""

    async def dependency(auth: CurrentUser) -> AuthContext:
        if auth.role != role:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"{role.capitalize()} access required",
            )
        return auth

    return dependency


# Type aliases for dependency injection
HomeownerUser = Annotated[AuthContext, Depends(require_role(ROLE_HOMEOWNER))]
ContractorUser = Annotated[AuthContext, Depends(require_role(ROLE_CONTRACTOR))]
AdminUser = Annotated[AuthContext, Depends(require_role(ROLE_ADMIN))]
