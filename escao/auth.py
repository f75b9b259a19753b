"""Authentication utilities for the Escao backend."""

from datetime import datetime, timedelta, timezone
from typing import Annotated

import bcrypt
from fastapi import Depends, HTTPException, Request, Response, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from .config import Settings, get_settings

# Cookie names for httpOnly auth
AUTH_COOKIE_NAME = "escao_auth"
REFRESH_COOKIE_NAME = "escao_refresh"

ACCESS_TOKEN_TYPE = "access"
REFRESH_TOKEN_TYPE = "refresh"

# Make bearer optional to allow cookie fallback
security = HTTPBearer(auto_error=False)


def hash_password(password: str) -> str:
    """Hash a password using bcrypt."""
    return bcrypt.hashpw(password.encode(), bcrypt.gensalt()).decode()


def verify_password(plain: str, hashed: str) -> bool:
    """Verify a password against its hash."""
    try:
        return bcrypt.checkpw(plain.encode(), hashed.encode())
    except ValueError:
        # Malformed hash
        return False


def _encode_token(
    user_id: str,
    email: str,
    role: str,
    token_type: str,
    expires_delta: timedelta,
    settings: Settings,
) -> str:
    now = datetime.now(timezone.utc)
    to_encode = {
        "sub": user_id,
        "email": email,
        "role": role,
        "type": token_type,
        "iat": now,
        "exp": now + expires_delta,
    }
    return jwt.encode(to_encode, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def create_access_token(
    user_id: str,
    email: str,
    role: str,
    settings: Settings,
    expires_delta: timedelta | None = None,
) -> str:
    """Create a short-lived JWT access token."""
    if expires_delta is None:
        expires_delta = timedelta(minutes=settings.access_token_expire_minutes)
    return _encode_token(user_id, email, role, ACCESS_TOKEN_TYPE, expires_delta, settings)


def create_refresh_token(user_id: str, email: str, role: str, settings: Settings) -> str:
    """Create a long-lived JWT used only to mint new access tokens."""
    expires_delta = timedelta(days=settings.refresh_token_expire_days)
    return _encode_token(user_id, email, role, REFRESH_TOKEN_TYPE, expires_delta, settings)


def decode_token(token: str, settings: Settings, expected_type: str = ACCESS_TOKEN_TYPE) -> dict:
    """Decode and validate a JWT token of the expected type."""
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret_key,
            algorithms=[settings.jwt_algorithm],
        )
    except JWTError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if payload.get("type") != expected_type or not payload.get("sub"):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token payload",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return payload


class AuthContext:
    """Identity of the caller for one request, built from its token."""

    def __init__(self, user_id: str, email: str | None = None, role: str = "buyer"):
        self.user_id = user_id
        self.email = email
        self.role = role

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    def is_party(self, escrow: dict) -> bool:
        """Whether the caller is the buyer or seller of ``escrow``."""
        return self.user_id in (escrow.get("buyer_id"), escrow.get("seller_id"))


async def get_current_user(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)],
    settings: Annotated[Settings, Depends(get_settings)],
    request: Request,
) -> AuthContext:
    """Get the authenticated caller from the bearer token or the auth cookie."""
    # Try Authorization header first, then fall back to cookie
    if credentials:
        token = credentials.credentials
    else:
        token = request.cookies.get(AUTH_COOKIE_NAME)

    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authorization header missing",
            headers={"WWW-Authenticate": "Bearer"},
        )

    payload = decode_token(token, settings)
    return AuthContext(
        user_id=payload["sub"],
        email=payload.get("email"),
        role=payload.get("role", "buyer"),
    )


async def require_admin(
    auth: Annotated[AuthContext, Depends(get_current_user)],
) -> AuthContext:
    """Reject non-admin callers."""
    if not auth.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required",
        )
    return auth


# Type aliases for dependency injection
CurrentUser = Annotated[AuthContext, Depends(get_current_user)]
AdminUser = Annotated[AuthContext, Depends(require_admin)]


# =============================================================================
# Cookie Helpers
# =============================================================================


def set_auth_cookies(response: Response, access_token: str, refresh_token: str, settings: Settings):
    """Set httpOnly access and refresh cookies."""
    response.set_cookie(
        key=AUTH_COOKIE_NAME,
        value=access_token,
        max_age=settings.access_token_expire_minutes * 60,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="strict",
        path="/",
    )
    response.set_cookie(
        key=REFRESH_COOKIE_NAME,
        value=refresh_token,
        max_age=settings.refresh_token_expire_days * 24 * 60 * 60,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="strict",
        path="/api/auth",
    )


def clear_auth_cookies(response: Response, settings: Settings):
    """Clear both auth cookies (logout)."""
    response.delete_cookie(
        key=AUTH_COOKIE_NAME,
        path="/",
        httponly=True,
        secure=settings.cookie_secure,
        samesite="strict",
    )
    response.delete_cookie(
        key=REFRESH_COOKIE_NAME,
        path="/api/auth",
        httponly=True,
        secure=settings.cookie_secure,
        samesite="strict",
    )
