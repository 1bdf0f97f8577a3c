from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

ROLE_ADMIN = "ADMIN"
ROLE_USER = "USER"
ROLE_READONLY = "READONLY"

PROFILE_FIELDS = ("first_name", "last_name", "avatar")


def hash_token(token: str) -> str:
    """Digest stored in the ledger instead of the raw refresh token."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


@dataclass
class User:
    id: str
    email: str
    username: str
    password_hash: str
    role: str = ROLE_USER
    is_active: bool = True
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    avatar: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)

    def profile(self) -> dict:
        """Public projection; never includes the password hash."""
        return {
            "id": self.id,
            "email": self.email,
            "username": self.username,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "avatar": self.avatar,
            "role": self.role,
            "is_active": self.is_active,
            "created_at": self.created_at,
        }


@dataclass
class RefreshTokenRecord:
    jti: str
    user_id: str
    token_hash: str
    expires_at: datetime
    created_at: datetime = field(default_factory=datetime.utcnow)
    revoked_at: Optional[datetime] = None

    @property
    def is_revoked(self) -> bool:
        return self.revoked_at is not None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or datetime.utcnow()) >= self.expires_at


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "bearer"


@dataclass
class AuthContext:
    """Identity resolved from a verified access token, passed to authorized calls."""

    user_id: str
    email: str
    role: str
