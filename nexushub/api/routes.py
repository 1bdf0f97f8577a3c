from __future__ import annotations

from typing import Callable, Optional

from fastapi import APIRouter, Depends, Header, Query, status

from nexushub.api.schemas import (
    AuthResponse,
    Envelope,
    LoginRequest,
    MessageResponse,
    PasswordChangeRequest,
    PermissionsResponse,
    ProfileUpdateRequest,
    RegisterRequest,
    TokenRefreshRequest,
    TokenResponse,
    UserResponse,
)
from nexushub.logging import get_correlation_id
from nexushub.service.permissions import Module, Permission, permissions_for, require_permission
from nexushub.service.runtime import get_runtime
from nexushub.storage.models import AuthContext, TokenPair, User

router = APIRouter(prefix="/api/v1")


def _envelope(data) -> Envelope:
    cid = get_correlation_id()
    if cid:
        return Envelope(status="ok", data=data, request_id=cid)
    return Envelope(status="ok", data=data)


def _user_response(user: User) -> UserResponse:
    return UserResponse(**user.profile())


def _token_response(tokens: TokenPair) -> TokenResponse:
    return TokenResponse(
        access_token=tokens.access_token,
        refresh_token=tokens.refresh_token,
        expires_in=tokens.expires_in,
        token_type=tokens.token_type,
    )


async def get_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    """Resolve the caller from the bearer access token or fail with 401."""
    return get_runtime().auth.authenticate(authorization)


def require_permission_dependency(
    module: Module, action: Permission
) -> Callable[..., AuthContext]:
    """Dependency factory: authenticate, then check ``module``/``action`` for the role."""

    async def _dependency(principal: AuthContext = Depends(get_user)) -> AuthContext:
        require_permission(principal, module.value, action.value)
        return principal

    return _dependency


@router.post(
    "/auth/register",
    response_model=Envelope,
    status_code=status.HTTP_201_CREATED,
    tags=["auth"],
)
async def register(body: RegisterRequest):
    """Create a USER account and start its first session.

    Raises:
        409: If the email or username is already taken
    """
    runtime = get_runtime()
    user, tokens = await runtime.auth.register(
        email=body.email,
        username=body.username,
        password=body.password,
        first_name=body.first_name,
        last_name=body.last_name,
    )
    return _envelope(
        AuthResponse(user=_user_response(user), tokens=_token_response(tokens))
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest):
    """Authenticate with email and password.

    Raises:
        401: If credentials are invalid or the account is inactive
    """
    runtime = get_runtime()
    user, tokens = await runtime.auth.login(email=body.email, password=body.password)
    return _envelope(
        AuthResponse(user=_user_response(user), tokens=_token_response(tokens))
    )


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: TokenRefreshRequest):
    """Rotate a refresh token. The presented token is unusable afterwards."""
    runtime = get_runtime()
    tokens = await runtime.auth.refresh(body.refresh_token)
    return _envelope(_token_response(tokens))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    await runtime.auth.logout(principal.user_id)
    return _envelope(MessageResponse(message="Logged out successfully"))


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def get_me(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    user = runtime.auth.get_profile(principal.user_id)
    return _envelope(_user_response(user))


@router.patch("/auth/me", response_model=Envelope, tags=["auth"])
async def update_me(body: ProfileUpdateRequest, principal: AuthContext = Depends(get_user)):
    """Update first/last name and avatar. Omitted fields are left unchanged."""
    runtime = get_runtime()
    updates = body.model_dump(exclude_unset=True)
    user = runtime.auth.update_profile(principal.user_id, **updates)
    return _envelope(_user_response(user))


@router.post("/auth/change-password", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest, principal: AuthContext = Depends(get_user)
):
    """Change the password and end the current session on every device."""
    runtime = get_runtime()
    await runtime.auth.change_password(
        principal.user_id, body.current_password, body.new_password
    )
    return _envelope(MessageResponse(message="Password changed successfully"))


@router.get("/auth/permissions", response_model=Envelope, tags=["auth"])
async def get_permissions(principal: AuthContext = Depends(get_user)):
    return _envelope(
        PermissionsResponse(role=principal.role, permissions=permissions_for(principal.role))
    )


@router.get("/users", response_model=Envelope, tags=["users"])
async def list_users(
    limit: int = Query(50, ge=1, le=200),
    principal: AuthContext = Depends(
        require_permission_dependency(Module.USERS, Permission.READ)
    ),
):
    runtime = get_runtime()
    users = runtime.store.list_users(limit=limit)
    return _envelope([_user_response(user) for user in users])
