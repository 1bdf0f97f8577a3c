"""Unit tests for the auth service.

Tests for:
- Registration and uniqueness
- Login and credential equalization
- Refresh token rotation, replay and expiry
- Logout and password change revocation
- Profile reads and updates
- Bearer header authentication
"""

import asyncio
import time
import uuid

import pytest

from nexushub.config import Settings
from nexushub.service.auth import AuthService
from nexushub.service.errors import (
    ConflictError,
    TokenExpiredError,
    TokenInvalidError,
    UnauthorizedError,
)
from nexushub.service.passwords import PasswordHasher
from nexushub.storage.errors import ConstraintViolation
from nexushub.storage.memory import MemoryStore
from nexushub.storage.memory_cache import MemoryCache
from nexushub.storage.models import ROLE_USER, hash_token

PASSWORD = "TestPassword123!"


@pytest.fixture
def settings():
    """Create test settings."""
    return Settings(
        jwt_access_secret="Access-Secret-Key_for-Automation-Only-123456789!",
        jwt_refresh_secret="Refresh-Secret-Key_for-Automation-Only-987654321!",
        access_token_ttl_minutes=15,
        refresh_token_ttl_minutes=60 * 24 * 7,
        password_hash_time_cost=1,
        password_hash_memory_cost_kib=8,
        password_hash_parallelism=1,
        test_mode=True,
    )


@pytest.fixture
def memory_store(tmp_path):
    """Create memory store for testing."""
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def cache():
    return MemoryCache()


@pytest.fixture
def auth_service(memory_store, cache, settings):
    """Create auth service for testing."""
    return AuthService(store=memory_store, cache=cache, settings=settings)


class YieldingCache(MemoryCache):
    """MemoryCache that hands control back to the loop before consuming."""

    def __init__(self):
        super().__init__()
        self.events = []

    async def consume_refresh_token(self, user_id, token):
        self.events.append("waiting")
        await asyncio.sleep(0)
        consumed = await super().consume_refresh_token(user_id, token)
        self.events.append("consumed" if consumed else "rejected")
        return consumed


def _register(auth_service, email="a@x.com", username="alice", password=PASSWORD):
    return asyncio.run(auth_service.register(email, username, password))


class TestRegistration:
    """Tests for account registration."""

    async def test_register_creates_user_role_and_tokens(self, auth_service, cache):
        user, tokens = await auth_service.register(
            "Alice@Example.com", "alice", PASSWORD, first_name="Alice"
        )

        assert user.role == ROLE_USER
        assert user.email == "alice@example.com"
        assert user.first_name == "Alice"
        assert user.password_hash != PASSWORD
        assert tokens.expires_in == 15 * 60
        assert await cache.get_refresh_token(user.id) == tokens.refresh_token

    async def test_register_writes_ledger_row(self, auth_service, memory_store):
        user, tokens = await auth_service.register("a@x.com", "alice", PASSWORD)

        records = memory_store.list_refresh_tokens(user.id)
        assert len(records) == 1
        assert records[0].token_hash == hash_token(tokens.refresh_token)
        assert records[0].revoked_at is None

    async def test_duplicate_email_conflicts(self, auth_service):
        await auth_service.register("a@x.com", "alice", PASSWORD)

        with pytest.raises(ConflictError) as excinfo:
            await auth_service.register("A@X.com", "someone-else", PASSWORD)
        assert excinfo.value.message == "Email already registered"
        assert excinfo.value.detail == {"field": "email"}

    async def test_duplicate_username_conflicts(self, auth_service):
        await auth_service.register("a@x.com", "alice", PASSWORD)

        with pytest.raises(ConflictError) as excinfo:
            await auth_service.register("b@x.com", "alice", PASSWORD)
        assert excinfo.value.message == "Username already taken"
        assert excinfo.value.status_code == 409

    async def test_store_race_maps_to_conflict(self, auth_service, memory_store, monkeypatch):
        """A uniqueness violation that slips past the lookup is still a conflict."""
        monkeypatch.setattr(memory_store, "find_user_by_email_or_username", lambda e, u: None)

        def _collide(*args, **kwargs):
            raise ConstraintViolation("username already exists", {"field": "username"})

        monkeypatch.setattr(memory_store, "create_user", _collide)

        with pytest.raises(ConflictError) as excinfo:
            await auth_service.register("b@x.com", "alice", PASSWORD)
        assert excinfo.value.message == "Username already taken"


class TestLogin:
    """Tests for credential verification."""

    async def test_login_success_issues_new_session(self, auth_service, cache):
        user, first = await auth_service.register("a@x.com", "alice", PASSWORD)

        logged_in, tokens = await auth_service.login("A@x.com", PASSWORD)

        assert logged_in.id == user.id
        assert tokens.refresh_token != first.refresh_token
        assert await cache.get_refresh_token(user.id) == tokens.refresh_token

    async def test_failures_share_one_message(self, auth_service, memory_store):
        user, _ = await auth_service.register("a@x.com", "alice", PASSWORD)

        messages = []
        for email, password in (("a@x.com", "wrong-password"), ("nobody@x.com", PASSWORD)):
            with pytest.raises(UnauthorizedError) as excinfo:
                await auth_service.login(email, password)
            messages.append(excinfo.value.message)

        memory_store.set_user_active(user.id, False)
        with pytest.raises(UnauthorizedError) as excinfo:
            await auth_service.login("a@x.com", PASSWORD)
        messages.append(excinfo.value.message)

        assert messages == ["Invalid credentials"] * 3

    async def test_login_rehashes_weaker_hash(self, memory_store, cache, settings):
        weak = PasswordHasher(time_cost=1, memory_cost_kib=8, parallelism=1)
        user = memory_store.create_user("a@x.com", "alice", weak.hash(PASSWORD))
        original_hash = user.password_hash
        stronger = settings.model_copy(update={"password_hash_time_cost": 2})
        service = AuthService(memory_store, cache, stronger)

        await service.login("a@x.com", PASSWORD)

        updated = memory_store.get_user(user.id)
        assert updated.password_hash != original_hash
        assert not service.hasher.needs_rehash(updated.password_hash)
        assert service.hasher.verify(PASSWORD, updated.password_hash)


class TestLedgerFailure:
    """A failed ledger write must not disturb the live session."""

    async def test_failed_login_keeps_previous_refresh_token(
        self, auth_service, memory_store, cache, monkeypatch
    ):
        user, t1 = await auth_service.register("a@x.com", "alice", PASSWORD)

        def _ledger_down(*args, **kwargs):
            raise RuntimeError("ledger unavailable")

        monkeypatch.setattr(memory_store, "add_refresh_token", _ledger_down)
        with pytest.raises(RuntimeError):
            await auth_service.login("a@x.com", PASSWORD)
        monkeypatch.undo()

        assert await cache.get_refresh_token(user.id) == t1.refresh_token
        t2 = await auth_service.refresh(t1.refresh_token)
        assert t2.refresh_token != t1.refresh_token


class TestRefreshRotation:
    """Tests for refresh token rotation."""

    async def test_refresh_rotates_both_tokens(self, auth_service, cache):
        user, t1 = await auth_service.register("a@x.com", "alice", PASSWORD)

        t2 = await auth_service.refresh(t1.refresh_token)

        assert t2.refresh_token != t1.refresh_token
        assert t2.access_token != t1.access_token
        assert await cache.get_refresh_token(user.id) == t2.refresh_token

    async def test_old_token_unusable_after_rotation(self, auth_service):
        _, t1 = await auth_service.register("a@x.com", "alice", PASSWORD)
        await auth_service.refresh(t1.refresh_token)

        with pytest.raises(UnauthorizedError) as excinfo:
            await auth_service.refresh(t1.refresh_token)
        assert excinfo.value.message == "Invalid refresh token"

    async def test_rotation_marks_old_ledger_row_revoked(self, auth_service, memory_store):
        user, t1 = await auth_service.register("a@x.com", "alice", PASSWORD)
        await auth_service.refresh(t1.refresh_token)

        records = memory_store.list_refresh_tokens(user.id)
        assert len(records) == 2
        assert records[0].revoked_at is not None
        assert records[1].revoked_at is None

    async def test_only_latest_login_token_is_live(self, auth_service):
        await auth_service.register("a@x.com", "alice", PASSWORD)
        _, first = await auth_service.login("a@x.com", PASSWORD)
        _, second = await auth_service.login("a@x.com", PASSWORD)

        with pytest.raises(UnauthorizedError):
            await auth_service.refresh(first.refresh_token)
        rotated = await auth_service.refresh(second.refresh_token)
        assert rotated.refresh_token

    async def test_backdated_token_reports_expiry(self, auth_service, cache):
        """An expired token is rejected even while the cache still holds it."""
        user, _ = await auth_service.register("a@x.com", "alice", PASSWORD)
        codec = auth_service.codec
        expired = codec.sign_refresh(
            {"sub": user.id, "email": user.email, "role": user.role},
            str(uuid.uuid4()),
            issued_at=time.time() - codec.refresh_ttl_seconds - 60,
        )
        await cache.set_refresh_token(user.id, expired, 3600)

        with pytest.raises(UnauthorizedError) as excinfo:
            await auth_service.refresh(expired)
        assert excinfo.value.message == "Refresh token expired"
        assert await cache.get_refresh_token(user.id) == expired

    async def test_access_token_cannot_refresh(self, auth_service):
        _, tokens = await auth_service.register("a@x.com", "alice", PASSWORD)

        with pytest.raises(UnauthorizedError) as excinfo:
            await auth_service.refresh(tokens.access_token)
        assert excinfo.value.message == "Invalid refresh token"

    async def test_inactive_user_cannot_refresh(self, auth_service, memory_store):
        user, tokens = await auth_service.register("a@x.com", "alice", PASSWORD)
        memory_store.set_user_active(user.id, False)

        with pytest.raises(UnauthorizedError) as excinfo:
            await auth_service.refresh(tokens.refresh_token)
        assert excinfo.value.message == "User not found or inactive"

    async def test_concurrent_refresh_has_one_winner(self, memory_store, settings):
        """Both refreshes pass verification before either consumes the pointer."""
        cache = YieldingCache()
        service = AuthService(memory_store, cache, settings)
        user, tokens = await service.register("a@x.com", "alice", PASSWORD)

        results = await asyncio.gather(
            service.refresh(tokens.refresh_token),
            service.refresh(tokens.refresh_token),
            return_exceptions=True,
        )

        assert cache.events[:2] == ["waiting", "waiting"]
        winners = [r for r in results if not isinstance(r, BaseException)]
        losers = [r for r in results if isinstance(r, UnauthorizedError)]
        assert len(winners) == 1
        assert len(losers) == 1
        assert await cache.get_refresh_token(user.id) == winners[0].refresh_token

    async def test_register_refresh_replay_logout_scenario(self, auth_service):
        user, t1 = await auth_service.register("a@x.com", "alice", PASSWORD)

        t2 = await auth_service.refresh(t1.refresh_token)
        assert t2.refresh_token != t1.refresh_token

        with pytest.raises(UnauthorizedError):
            await auth_service.refresh(t1.refresh_token)

        t3 = await auth_service.refresh(t2.refresh_token)

        await auth_service.logout(user.id)
        with pytest.raises(UnauthorizedError):
            await auth_service.refresh(t3.refresh_token)


class TestLogout:
    """Tests for session termination."""

    async def test_logout_is_idempotent(self, auth_service, cache, memory_store):
        user, tokens = await auth_service.register("a@x.com", "alice", PASSWORD)

        await auth_service.logout(user.id)
        await auth_service.logout(user.id)

        assert await cache.get_refresh_token(user.id) is None
        assert memory_store.list_refresh_tokens(user.id, include_revoked=False) == []
        with pytest.raises(UnauthorizedError):
            await auth_service.refresh(tokens.refresh_token)

    async def test_logout_without_session(self, auth_service):
        await auth_service.logout(str(uuid.uuid4()))


class TestChangePassword:
    """Tests for password change."""

    async def test_change_password_revokes_session(self, auth_service, cache):
        user, tokens = await auth_service.register("a@x.com", "alice", PASSWORD)

        await auth_service.change_password(user.id, PASSWORD, "NewPassword456!")

        assert await cache.get_refresh_token(user.id) is None
        with pytest.raises(UnauthorizedError):
            await auth_service.refresh(tokens.refresh_token)
        _, fresh = await auth_service.login("a@x.com", "NewPassword456!")
        assert fresh.refresh_token
        with pytest.raises(UnauthorizedError):
            await auth_service.login("a@x.com", PASSWORD)

    async def test_wrong_current_password(self, auth_service, cache):
        user, tokens = await auth_service.register("a@x.com", "alice", PASSWORD)

        with pytest.raises(UnauthorizedError) as excinfo:
            await auth_service.change_password(user.id, "not-it-at-all", "NewPassword456!")
        assert excinfo.value.message == "Current password is incorrect"
        assert await cache.get_refresh_token(user.id) == tokens.refresh_token

    async def test_unknown_user(self, auth_service):
        with pytest.raises(UnauthorizedError) as excinfo:
            await auth_service.change_password(str(uuid.uuid4()), PASSWORD, "NewPassword456!")
        assert excinfo.value.message == "User not found"


class TestProfile:
    """Tests for profile reads and updates."""

    def test_get_profile(self, auth_service):
        user, _ = _register(auth_service)
        assert auth_service.get_profile(user.id).username == "alice"

    def test_get_profile_missing_user(self, auth_service):
        with pytest.raises(UnauthorizedError):
            auth_service.get_profile(str(uuid.uuid4()))

    def test_update_profile_ignores_security_fields(self, auth_service):
        user, _ = _register(auth_service)
        original_hash = user.password_hash

        updated = auth_service.update_profile(
            user.id,
            first_name="Alice",
            avatar="https://example.com/a.png",
            role="ADMIN",
            password_hash="x",
        )

        assert updated.first_name == "Alice"
        assert updated.avatar == "https://example.com/a.png"
        assert updated.role == ROLE_USER
        assert updated.password_hash == original_hash

    def test_profile_projection_has_no_hash(self, auth_service):
        user, _ = _register(auth_service)
        assert "password_hash" not in user.profile()


class TestAuthenticate:
    """Tests for bearer header resolution."""

    def test_valid_bearer(self, auth_service):
        user, tokens = _register(auth_service)

        ctx = auth_service.authenticate(f"Bearer {tokens.access_token}")

        assert ctx.user_id == user.id
        assert ctx.email == "a@x.com"
        assert ctx.role == ROLE_USER

    @pytest.mark.parametrize("header", [None, "", "Basic abc", "Bearer "])
    def test_missing_or_malformed_header(self, auth_service, header):
        with pytest.raises(UnauthorizedError) as excinfo:
            auth_service.authenticate(header)
        assert excinfo.value.error_code == "UNAUTHORIZED"

    def test_expired_access_token(self, auth_service):
        user, _ = _register(auth_service)
        token = auth_service.codec.sign_access(
            {"sub": user.id, "email": user.email, "role": user.role},
            issued_at=time.time() - 3600,
        )

        with pytest.raises(TokenExpiredError) as excinfo:
            auth_service.authenticate(f"Bearer {token}")
        assert excinfo.value.error_code == "TOKEN_EXPIRED"

    def test_refresh_token_is_not_an_access_token(self, auth_service):
        _, tokens = _register(auth_service)

        with pytest.raises(TokenInvalidError) as excinfo:
            auth_service.authenticate(f"Bearer {tokens.refresh_token}")
        assert excinfo.value.error_code == "INVALID_TOKEN"

    def test_optional_returns_none(self, auth_service):
        assert auth_service.authenticate_optional(None) is None
        assert auth_service.authenticate_optional("Bearer garbage") is None


class TestMaintenance:
    """Tests for ledger purge and admin bootstrap."""

    def test_purge_expired_rows(self, auth_service, memory_store):
        from datetime import datetime, timedelta

        user, _ = _register(auth_service)
        memory_store.add_refresh_token(
            str(uuid.uuid4()), user.id, "digest", datetime.utcnow() - timedelta(seconds=1)
        )

        assert auth_service.purge_expired_refresh_tokens() == 1
        assert len(memory_store.list_refresh_tokens(user.id)) == 1

    def test_ensure_admin_creates_then_is_stable(self, auth_service):
        admin, created = auth_service.ensure_admin("Root@X.com", PASSWORD, "root")
        again, created_again = auth_service.ensure_admin("root@x.com", PASSWORD, "root")

        assert created is True
        assert created_again is False
        assert admin.role == "ADMIN"
        assert again.id == admin.id

    def test_ensure_admin_promotes_existing(self, auth_service):
        user, _ = _register(auth_service)

        promoted, created = auth_service.ensure_admin("a@x.com", "ignored-password", "ignored")

        assert created is False
        assert promoted.id == user.id
        assert promoted.role == "ADMIN"
