from __future__ import annotations

import json
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from nexushub.logging import get_logger
from nexushub.storage.errors import ConstraintViolation
from nexushub.storage.models import (
    PROFILE_FIELDS,
    ROLE_USER,
    RefreshTokenRecord,
    User,
)


class MemoryStore:
    """In-memory credential store and refresh token ledger.

    Used by tests and local development. When ``fs_root`` is given the state
    is written to ``<fs_root>/state/memory_store.json`` after every mutation
    and reloaded on start-up, so a dev server survives restarts.
    """

    def __init__(self, fs_root: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.refresh_tokens: Dict[str, RefreshTokenRecord] = {}
        # RLock so helpers can be called while the lock is already held
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    # users
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
    ) -> User:
        with self._data_lock:
            for existing in self.users.values():
                if existing.email.lower() == email.lower():
                    raise ConstraintViolation("email already exists", {"field": "email"})
                if existing.username == username:
                    raise ConstraintViolation(
                        "username already exists", {"field": "username"}
                    )
            now = datetime.utcnow()
            user = User(
                id=str(uuid.uuid4()),
                email=email,
                username=username,
                password_hash=password_hash,
                role=role,
                is_active=is_active,
                first_name=first_name,
                last_name=last_name,
                avatar=avatar,
                created_at=now,
                updated_at=now,
            )
            self.users[user.id] = user
            self._persist_state()
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            return next(
                (u for u in self.users.values() if u.email.lower() == email.lower()),
                None,
            )

    def find_user_by_email_or_username(
        self, email: str, username: str
    ) -> Optional[User]:
        """Return the first user whose email or username matches, email first."""
        with self._data_lock:
            by_email = self.get_user_by_email(email)
            if by_email:
                return by_email
            return next(
                (u for u in self.users.values() if u.username == username), None
            )

    def list_users(self, limit: int = 100) -> List[User]:
        with self._data_lock:
            results = sorted(
                self.users.values(), key=lambda u: u.created_at, reverse=True
            )
            return results[:limit]

    def update_password(self, user_id: str, password_hash: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.password_hash = password_hash
            user.updated_at = datetime.utcnow()
            self._persist_state()
            return user

    def update_profile(self, user_id: str, **fields: Optional[str]) -> Optional[User]:
        unknown = set(fields) - set(PROFILE_FIELDS)
        if unknown:
            raise ValueError(f"not a profile field: {', '.join(sorted(unknown))}")
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            for name, value in fields.items():
                setattr(user, name, value)
            user.updated_at = datetime.utcnow()
            self._persist_state()
            return user

    def update_user_role(self, user_id: str, role: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.role = role
            user.updated_at = datetime.utcnow()
            self._persist_state()
            return user

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.is_active = is_active
            user.updated_at = datetime.utcnow()
            self._persist_state()
            return user

    # refresh token ledger
    def add_refresh_token(
        self, jti: str, user_id: str, token_hash: str, expires_at: datetime
    ) -> RefreshTokenRecord:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            if jti in self.refresh_tokens:
                raise ConstraintViolation("refresh token id exists", {"field": "jti"})
            record = RefreshTokenRecord(
                jti=jti,
                user_id=user_id,
                token_hash=token_hash,
                expires_at=expires_at,
            )
            self.refresh_tokens[jti] = record
            self._persist_state()
            return record

    def get_refresh_token_record(self, jti: str) -> Optional[RefreshTokenRecord]:
        with self._data_lock:
            return self.refresh_tokens.get(jti)

    def list_refresh_tokens(
        self, user_id: str, *, include_revoked: bool = True
    ) -> List[RefreshTokenRecord]:
        with self._data_lock:
            records = [
                r
                for r in self.refresh_tokens.values()
                if r.user_id == user_id and (include_revoked or not r.is_revoked)
            ]
            return sorted(records, key=lambda r: r.created_at)

    def revoke_refresh_token(self, jti: str) -> bool:
        with self._data_lock:
            record = self.refresh_tokens.get(jti)
            if not record or record.is_revoked:
                return False
            record.revoked_at = datetime.utcnow()
            self._persist_state()
            return True

    def revoke_user_refresh_tokens(self, user_id: str) -> int:
        with self._data_lock:
            now = datetime.utcnow()
            count = 0
            for record in self.refresh_tokens.values():
                if record.user_id == user_id and not record.is_revoked:
                    record.revoked_at = now
                    count += 1
            if count:
                self._persist_state()
            return count

    def delete_expired_refresh_tokens(self, now: Optional[datetime] = None) -> int:
        with self._data_lock:
            cutoff = now or datetime.utcnow()
            expired = [
                jti for jti, r in self.refresh_tokens.items() if r.is_expired(cutoff)
            ]
            for jti in expired:
                self.refresh_tokens.pop(jti, None)
            if expired:
                self._persist_state()
            return len(expired)

    # persistence
    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "refresh_tokens": [
                self._serialize_refresh_token(r) for r in self.refresh_tokens.values()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.refresh_tokens = {
            r["jti"]: self._deserialize_refresh_token(r)
            for r in data.get("refresh_tokens", [])
        }
        self.logger.info(
            "memory_store_loaded",
            users=len(self.users),
            refresh_tokens=len(self.refresh_tokens),
        )
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "username": user.username,
            "password_hash": user.password_hash,
            "role": user.role,
            "is_active": user.is_active,
            "first_name": user.first_name,
            "last_name": user.last_name,
            "avatar": user.avatar,
            "created_at": self._serialize_datetime(user.created_at),
            "updated_at": self._serialize_datetime(user.updated_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            email=data["email"],
            username=data["username"],
            password_hash=data["password_hash"],
            role=data.get("role", ROLE_USER),
            is_active=data.get("is_active", True),
            first_name=data.get("first_name"),
            last_name=data.get("last_name"),
            avatar=data.get("avatar"),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data.get("updated_at"))
            or self._deserialize_datetime(data["created_at"]),
        )

    def _serialize_refresh_token(self, record: RefreshTokenRecord) -> dict:
        return {
            "jti": record.jti,
            "user_id": record.user_id,
            "token_hash": record.token_hash,
            "expires_at": self._serialize_datetime(record.expires_at),
            "created_at": self._serialize_datetime(record.created_at),
            "revoked_at": self._serialize_datetime(record.revoked_at),
        }

    def _deserialize_refresh_token(self, data: dict) -> RefreshTokenRecord:
        return RefreshTokenRecord(
            jti=data["jti"],
            user_id=data["user_id"],
            token_hash=data["token_hash"],
            expires_at=self._deserialize_datetime(data["expires_at"]),
            created_at=self._deserialize_datetime(data["created_at"]),
            revoked_at=self._deserialize_datetime(data.get("revoked_at")),
        )
