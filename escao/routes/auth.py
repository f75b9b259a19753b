"""Authentication routes."""

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from postgrest.exceptions import APIError

from ..auth import (
    REFRESH_COOKIE_NAME,
    REFRESH_TOKEN_TYPE,
    CurrentUser,
    clear_auth_cookies,
    create_access_token,
    create_refresh_token,
    decode_token,
    hash_password,
    set_auth_cookies,
    verify_password,
)
from ..config import Settings, get_settings
from ..database import (
    USERS_TABLE,
    Database,
    create_user,
    get_user,
    get_user_by_email,
    is_unique_violation,
    write_audit_log,
)
from ..lifecycle import Role
from ..logging_config import get_logger, log_auth_event
from ..models import (
    AuthResponse,
    RefreshRequest,
    UserLogin,
    UserRegister,
    to_user_out,
)
from ..rate_limit import limiter

logger = get_logger("escao.auth")
router = APIRouter(prefix="/api/auth", tags=["auth"])


def _issue_tokens(
    response: Response,
    user: dict,
    settings: Settings,
    message: str,
) -> AuthResponse:
    """Mint an access/refresh pair, set the cookies and build the response."""
    access_token = create_access_token(user["id"], user["email"], user["role"], settings)
    refresh_token = create_refresh_token(user["id"], user["email"], user["role"], settings)
    set_auth_cookies(response, access_token, refresh_token, settings)

    return AuthResponse(
        message=message,
        user=to_user_out(user),
        token=access_token,
        refresh_token=refresh_token,
        expires_in=settings.access_token_expire_minutes * 60,
    )


@router.post("/register", response_model=AuthResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit("5/minute")
async def register_user(
    request: Request,
    response: Response,
    register_request: UserRegister,
    db: Database,
    settings: Annotated[Settings, Depends(get_settings)],
):
    """
    Register a new buyer, seller or admin.

    Admin self-registration is only possible when ALLOW_ADMIN_REGISTRATION
    is set. Returns an access token and sets httpOnly auth cookies.
    """
    logger.info(f"Registration attempt | email={register_request.email} | role={register_request.role}")

    if register_request.role == Role.ADMIN.value and not settings.allow_admin_registration:
        log_auth_event("register", register_request.email, False, "admin registration disabled")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin registration is disabled",
        )

    if await get_user_by_email(db, register_request.email):
        log_auth_event("register", register_request.email, False, "duplicate email")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="User already exists",
        )

    try:
        user = await create_user(
            db,
            email=register_request.email,
            password_hash=hash_password(register_request.password),
            role=register_request.role,
        )
    except APIError as e:
        # Lost a race against a concurrent registration of the same email
        if is_unique_violation(e):
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="User already exists",
            )
        raise

    if not user:
        log_auth_event("register", register_request.email, False, "database error")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to create user",
        )

    await write_audit_log(db, user["id"], "register", USERS_TABLE, user["id"], {"role": user["role"]})
    log_auth_event("register", user["id"], True)

    return _issue_tokens(response, user, settings, "User registered successfully")


@router.post("/login", response_model=AuthResponse)
@limiter.limit("10/minute")
async def login(
    request: Request,
    response: Response,
    login_request: UserLogin,
    db: Database,
    settings: Annotated[Settings, Depends(get_settings)],
):
    """Exchange email and password for tokens."""
    if not login_request.email or not login_request.password:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Email and password required",
        )

    user = await get_user_by_email(db, login_request.email)
    if not user or not verify_password(login_request.password, user["password_hash"]):
        log_auth_event("login", login_request.email, False, "bad credentials")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid email or password",
        )

    log_auth_event("login", user["id"], True)
    return _issue_tokens(response, user, settings, "Login successful")


@router.post("/refresh", response_model=AuthResponse)
@limiter.limit("30/minute")
async def refresh_token(
    request: Request,
    response: Response,
    db: Database,
    settings: Annotated[Settings, Depends(get_settings)],
    refresh_request: RefreshRequest | None = None,
):
    """
    Mint a new token pair from a refresh token.

    The refresh token is read from the body or, failing that, from the
    refresh cookie. The user is re-read so role changes take effect.
    """
    token = refresh_request.refresh_token if refresh_request else None
    token = token or request.cookies.get(REFRESH_COOKIE_NAME)
    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Refresh token missing",
        )

    payload = decode_token(token, settings, expected_type=REFRESH_TOKEN_TYPE)
    user = await get_user(db, payload["sub"])
    if not user:
        log_auth_event("refresh", payload["sub"], False, "unknown user")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
        )

    log_auth_event("refresh", user["id"], True)
    return _issue_tokens(response, user, settings, "Token refreshed")


@router.post("/logout")
async def logout(
    response: Response,
    settings: Annotated[Settings, Depends(get_settings)],
):
    """Clear auth cookies."""
    clear_auth_cookies(response, settings)
    return {"message": "Logged out"}


@router.get("/me")
async def get_me(auth: CurrentUser, db: Database):
    """Profile of the authenticated user."""
    user = await get_user(db, auth.user_id)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="User not found",
        )
    return {"user": to_user_out(user)}
