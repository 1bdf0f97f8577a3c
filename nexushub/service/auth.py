from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from typing import List, Optional, Protocol, Tuple

from nexushub.config import Settings
from nexushub.logging import get_logger
from nexushub.service.errors import (
    ConflictError,
    TokenExpiredError,
    TokenInvalidError,
    UnauthorizedError,
)
from nexushub.service.passwords import PasswordHasher
from nexushub.service.tokens import ACCESS, REFRESH, TokenCodec
from nexushub.storage.errors import ConstraintViolation
from nexushub.storage.models import (
    PROFILE_FIELDS,
    ROLE_ADMIN,
    ROLE_USER,
    AuthContext,
    RefreshTokenRecord,
    TokenPair,
    User,
    hash_token,
)

logger = get_logger(__name__)

INVALID_CREDENTIALS = "Invalid credentials"
INVALID_REFRESH_TOKEN = "Invalid refresh token"
REFRESH_TOKEN_EXPIRED = "Refresh token expired"


class AuthStore(Protocol):
    def create_user(
        self,
        email: str,
        username: str,
        password_hash: str,
        *,
        role: str = ROLE_USER,
        is_active: bool = True,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        avatar: Optional[str] = None,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def find_user_by_email_or_username(
        self, email: str, username: str
    ) -> Optional[User]: ...

    def update_password(self, user_id: str, password_hash: str) -> Optional[User]: ...

    def update_profile(self, user_id: str, **fields: Optional[str]) -> Optional[User]: ...

    def update_user_role(self, user_id: str, role: str) -> Optional[User]: ...

    def add_refresh_token(
        self, jti: str, user_id: str, token_hash: str, expires_at: datetime
    ) -> RefreshTokenRecord: ...

    def list_refresh_tokens(
        self, user_id: str, *, include_revoked: bool = True
    ) -> List[RefreshTokenRecord]: ...

    def revoke_refresh_token(self, jti: str) -> bool: ...

    def revoke_user_refresh_tokens(self, user_id: str) -> int: ...

    def delete_expired_refresh_tokens(self, now: Optional[datetime] = None) -> int: ...


class SessionCache(Protocol):
    async def set_refresh_token(self, user_id: str, token: str, ttl_seconds: int) -> None: ...

    async def get_refresh_token(self, user_id: str) -> Optional[str]: ...

    async def delete_refresh_token(self, user_id: str) -> None: ...

    async def consume_refresh_token(self, user_id: str, token: str) -> bool: ...


def normalize_email(email: str) -> str:
    return email.strip().lower()


class AuthService:
    """Credential checks, token issuance and refresh token rotation.

    The session cache holds the one live refresh token per user and is the
    only thing consulted for liveness. The store's ``refresh_token`` ledger is
    an audit trail: rows are written on issue, marked revoked on rotation,
    logout and password change, and purged once expired.
    """

    def __init__(
        self,
        store: AuthStore,
        cache: SessionCache,
        settings: Settings,
        *,
        hasher: Optional[PasswordHasher] = None,
        codec: Optional[TokenCodec] = None,
    ) -> None:
        self.store: AuthStore = store
        self.cache = cache
        self.settings = settings
        self.hasher = hasher or PasswordHasher.from_settings(settings)
        self.codec = codec or TokenCodec(settings)
        self.logger = logger

    # registration / login
    async def register(
        self,
        email: str,
        username: str,
        password: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
    ) -> Tuple[User, TokenPair]:
        email = normalize_email(email)
        username = username.strip()
        existing = self.store.find_user_by_email_or_username(email, username)
        if existing:
            if existing.email.lower() == email:
                raise ConflictError("Email already registered", detail={"field": "email"})
            raise ConflictError("Username already taken", detail={"field": "username"})
        password_hash = self.hasher.hash(password)
        try:
            user = self.store.create_user(
                email,
                username,
                password_hash,
                role=ROLE_USER,
                first_name=first_name,
                last_name=last_name,
            )
        except ConstraintViolation as exc:
            # Lost a race with a concurrent registration
            if exc.field == "username":
                raise ConflictError(
                    "Username already taken", detail={"field": "username"}
                ) from exc
            raise ConflictError(
                "Email already registered", detail={"field": "email"}
            ) from exc
        self.logger.info("user_registered", user_id=user.id)
        tokens = await self.issue_session(user)
        return user, tokens

    async def login(self, email: str, password: str) -> Tuple[User, TokenPair]:
        user = self.store.get_user_by_email(normalize_email(email))
        if not user or not user.is_active:
            self.logger.warning("login_rejected", reason="unknown_or_inactive")
            raise UnauthorizedError(INVALID_CREDENTIALS)
        if not self.hasher.verify(password, user.password_hash):
            self.logger.warning("login_rejected", reason="bad_password", user_id=user.id)
            raise UnauthorizedError(INVALID_CREDENTIALS)
        if self.hasher.needs_rehash(user.password_hash):
            self.store.update_password(user.id, self.hasher.hash(password))
            self.logger.info("password_rehashed", user_id=user.id)
        tokens = await self.issue_session(user)
        self.logger.info("user_logged_in", user_id=user.id)
        return user, tokens

    # sessions
    async def issue_session(self, user: User) -> TokenPair:
        """Sign a fresh token pair and make its refresh token the only live one."""
        jti = str(uuid.uuid4())
        claims = {"sub": user.id, "email": user.email, "role": user.role}
        access_token = self.codec.sign_access(claims)
        refresh_token = self.codec.sign_refresh(claims, jti)
        refresh_ttl = self.codec.refresh_ttl_seconds
        # Ledger row first: if it fails the previous pointer is still live
        self.store.add_refresh_token(
            jti,
            user.id,
            hash_token(refresh_token),
            datetime.utcnow() + timedelta(seconds=refresh_ttl),
        )
        # Overwrites any previous pointer for this user
        await self.cache.set_refresh_token(user.id, refresh_token, refresh_ttl)
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=self.codec.access_ttl_seconds,
        )

    async def refresh(self, refresh_token: str) -> TokenPair:
        try:
            claims = self.codec.verify(refresh_token, REFRESH)
        except TokenExpiredError as exc:
            raise UnauthorizedError(REFRESH_TOKEN_EXPIRED) from exc
        except TokenInvalidError as exc:
            raise UnauthorizedError(INVALID_REFRESH_TOKEN) from exc

        user_id = claims["sub"]
        # Compare-and-delete: a rotated, revoked or concurrently used token loses here
        if not await self.cache.consume_refresh_token(user_id, refresh_token):
            self.logger.warning(
                "refresh_token_replayed",
                user_id=user_id,
                jti=claims.get("jti"),
                refresh_token=refresh_token,
            )
            raise UnauthorizedError(INVALID_REFRESH_TOKEN)

        user = self.store.get_user(user_id)
        if not user or not user.is_active:
            raise UnauthorizedError("User not found or inactive")

        self.store.revoke_refresh_token(claims["jti"])
        tokens = await self.issue_session(user)
        self.logger.info("refresh_token_rotated", user_id=user.id, previous_jti=claims["jti"])
        return tokens

    async def logout(self, user_id: str) -> None:
        """Terminate the user's session. Safe to call when none exists."""
        await self.cache.delete_refresh_token(user_id)
        revoked = self.store.revoke_user_refresh_tokens(user_id)
        self.logger.info("user_logged_out", user_id=user_id, revoked=revoked)

    async def change_password(
        self, user_id: str, current_password: str, new_password: str
    ) -> None:
        user = self.store.get_user(user_id)
        if not user:
            raise UnauthorizedError("User not found")
        if not self.hasher.verify(current_password, user.password_hash):
            self.logger.warning("password_change_rejected", user_id=user_id)
            raise UnauthorizedError("Current password is incorrect")
        self.store.update_password(user_id, self.hasher.hash(new_password))
        await self.logout(user_id)
        self.logger.info("password_changed", user_id=user_id)

    # profile
    def get_profile(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if not user:
            raise UnauthorizedError("User not found")
        return user

    def update_profile(self, user_id: str, **fields: Optional[str]) -> User:
        """Update first/last name and avatar; other keys are ignored."""
        updates = {name: value for name, value in fields.items() if name in PROFILE_FIELDS}
        user = self.store.update_profile(user_id, **updates)
        if not user:
            raise UnauthorizedError("User not found")
        return user

    # request authentication
    def _extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        if not header.lower().startswith("bearer "):
            return None
        token = header.split(" ", 1)[1].strip()
        return token or None

    def authenticate(self, authorization: Optional[str]) -> AuthContext:
        """Resolve the caller from an ``Authorization: Bearer`` header."""
        token = self._extract_bearer(authorization)
        if not token:
            raise UnauthorizedError("Missing or invalid authorization header")
        try:
            claims = self.codec.verify(token, ACCESS)
        except TokenExpiredError as exc:
            raise TokenExpiredError("Access token has expired") from exc
        except TokenInvalidError as exc:
            raise TokenInvalidError("Invalid access token") from exc
        return AuthContext(user_id=claims["sub"], email=claims["email"], role=claims["role"])

    def authenticate_optional(self, authorization: Optional[str]) -> Optional[AuthContext]:
        """Like authenticate, but anonymous or bad credentials yield None."""
        try:
            return self.authenticate(authorization)
        except UnauthorizedError:
            return None

    # maintenance
    def purge_expired_refresh_tokens(self) -> int:
        return self.store.delete_expired_refresh_tokens()

    def ensure_admin(
        self, email: str, password: str, username: str = "admin"
    ) -> Tuple[User, bool]:
        """Create an ADMIN account, or promote the existing one.

        Returns the user and whether it was newly created.
        """
        email = normalize_email(email)
        existing = self.store.get_user_by_email(email)
        if existing:
            if existing.role != ROLE_ADMIN:
                existing = self.store.update_user_role(existing.id, ROLE_ADMIN) or existing
                self.logger.info("admin_promoted", user_id=existing.id)
            return existing, False
        try:
            user = self.store.create_user(
                email, username, self.hasher.hash(password), role=ROLE_ADMIN
            )
        except ConstraintViolation as exc:
            raise ConflictError(
                f"{exc.field or 'email'} already in use", detail=exc.detail
            ) from exc
        self.logger.info("admin_created", user_id=user.id)
        return user, True
