"""Tests for auth/providers.py -- the local provider and its revocation decorator.

Covers:
- authenticate(): success, unknown user and wrong password are the same error,
  unsupported credential kinds
- login path: refresh_token("", user=...) then validate_token()
- validate_token(): subject must exist (NotFound propagates), sub required
- LocalProvider has no revocation: revoke_token() is a no-op returning False
- RevocationAwareProvider: logout, refresh revokes the predecessor, an
  expired token can still be refreshed or revoked, a revoked one cannot be
  refreshed, non-expiry decode failures propagate
- register(): password policy, bcrypt byte limit, bcrypt hash, duplicate
  usernames; providers without registration raise ProviderNotEnabled
- concurrent refreshes of one token: exactly one succeeds
"""

from __future__ import annotations

import threading

import pytest

from auth.errors import (
    AlreadyExists,
    ExpiredToken,
    InvalidCredentials,
    InvalidToken,
    NotFound,
    ProviderNotEnabled,
    WeakPassword,
)
from auth.memory import MemoryRevocationStore, MemoryUserStore
from auth.models import Credentials, UserProjection
from auth.providers import LocalProvider, Provider, ProviderConfig, RevocationAwareProvider, min_length_policy
from auth.tokens import verify_password
from tests.conftest import TEST_LIFETIME, FakeClock

PASSWORD = "correct-horse-battery"


def _login(provider, username: str = "alice", password: str = PASSWORD) -> str:
    user = provider.authenticate(Credentials(username=username, password=password))
    return provider.refresh_token("", user=user)


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------


class TestAuthenticate:
    def test_valid_credentials(self, local_provider: LocalProvider, alice: UserProjection) -> None:
        user = local_provider.authenticate(Credentials(username="alice", password=PASSWORD))
        assert user == alice
        assert user.roles == ("user",)

    def test_wrong_password_and_unknown_user_are_indistinguishable(
        self, local_provider: LocalProvider, alice: UserProjection
    ) -> None:
        with pytest.raises(InvalidCredentials) as wrong_pw:
            local_provider.authenticate(Credentials(username="alice", password="not-the-password"))
        with pytest.raises(InvalidCredentials) as unknown:
            local_provider.authenticate(Credentials(username="mallory", password=PASSWORD))
        assert wrong_pw.value.message == unknown.value.message
        assert wrong_pw.value.code == unknown.value.code

    def test_unsupported_kind(self, local_provider: LocalProvider, alice: UserProjection) -> None:
        with pytest.raises(InvalidCredentials):
            local_provider.authenticate(Credentials(username="alice", password=PASSWORD, kind="oauth"))

    def test_decorator_delegates(self, revoking_provider: RevocationAwareProvider, alice: UserProjection) -> None:
        assert revoking_provider.authenticate(Credentials(username="alice", password=PASSWORD)) == alice


# ---------------------------------------------------------------------------
# Local provider tokens
# ---------------------------------------------------------------------------


class TestLocalTokens:
    def test_login_then_validate(self, local_provider: LocalProvider, alice: UserProjection) -> None:
        token = _login(local_provider)
        assert local_provider.validate_token(token) == alice

    def test_token_claims(self, local_provider: LocalProvider, alice: UserProjection) -> None:
        claims = local_provider.codec.decode(_login(local_provider))
        assert claims["sub"] == alice.id
        assert claims["roles"] == ["user"]
        assert claims["email"] == "alice@example.com"
        assert claims["name"] == "alice"
        assert claims["provider"] == "local"

    def test_login_path_requires_user(self, local_provider: LocalProvider) -> None:
        with pytest.raises(InvalidToken):
            local_provider.refresh_token("")

    def test_refresh_issues_new_token_for_same_identity(
        self, local_provider: LocalProvider, alice: UserProjection
    ) -> None:
        old = _login(local_provider)
        new = local_provider.refresh_token(old)
        assert new != old
        assert local_provider.validate_token(new) == alice
        assert local_provider.codec.decode(new)["jti"] != local_provider.codec.decode(old)["jti"]

    def test_refresh_picks_up_role_changes(self, local_provider: LocalProvider, alice: UserProjection) -> None:
        old = _login(local_provider)
        account = local_provider.user_store.get_by_id(alice.id)
        account.roles = ["admin", "user"]
        local_provider.user_store.update(account)
        assert local_provider.codec.decode(local_provider.refresh_token(old))["roles"] == ["admin", "user"]

    def test_expired_token_cannot_be_refreshed(
        self, local_provider: LocalProvider, alice: UserProjection, clock: FakeClock
    ) -> None:
        old = _login(local_provider)
        clock.advance(TEST_LIFETIME)
        with pytest.raises(ExpiredToken):
            local_provider.refresh_token(old)

    def test_revoke_is_noop(self, local_provider: LocalProvider, alice: UserProjection) -> None:
        token = _login(local_provider)
        assert local_provider.supports_revocation is False
        assert local_provider.revoke_token(token) is False
        assert local_provider.validate_token(token) == alice

    def test_deleted_subject_is_not_found(self, local_provider: LocalProvider, alice: UserProjection) -> None:
        token = _login(local_provider)
        local_provider.user_store.delete(alice.id)
        with pytest.raises(NotFound):
            local_provider.validate_token(token)

    def test_token_without_subject(self, local_provider: LocalProvider) -> None:
        token = local_provider.codec.issue({"roles": ["admin"]})
        with pytest.raises(InvalidToken):
            local_provider.validate_token(token)


# ---------------------------------------------------------------------------
# Revocation-aware decorator
# ---------------------------------------------------------------------------


class TestRevocationAware:
    def test_name_and_capability(self, revoking_provider: RevocationAwareProvider) -> None:
        assert revoking_provider.name == "local"
        assert revoking_provider.supports_revocation is True

    def test_logout_invalidates_token(
        self, revoking_provider: RevocationAwareProvider, alice: UserProjection
    ) -> None:
        token = _login(revoking_provider)
        assert revoking_provider.validate_token(token) == alice
        assert revoking_provider.revoke_token(token) is True
        with pytest.raises(InvalidToken):
            revoking_provider.validate_token(token)

    def test_logout_is_idempotent(self, revoking_provider: RevocationAwareProvider, alice: UserProjection) -> None:
        token = _login(revoking_provider)
        assert revoking_provider.revoke_token(token) is True
        assert revoking_provider.revoke_token(token) is True

    def test_logout_leaves_other_sessions(
        self, revoking_provider: RevocationAwareProvider, alice: UserProjection
    ) -> None:
        first = _login(revoking_provider)
        second = _login(revoking_provider)
        revoking_provider.revoke_token(first)
        assert revoking_provider.validate_token(second) == alice

    def test_refresh_revokes_predecessor(
        self, revoking_provider: RevocationAwareProvider, alice: UserProjection
    ) -> None:
        old = _login(revoking_provider)
        new = revoking_provider.refresh_token(old)
        assert revoking_provider.validate_token(new) == alice
        with pytest.raises(InvalidToken):
            revoking_provider.validate_token(old)

    def test_revoked_token_cannot_be_refreshed(
        self, revoking_provider: RevocationAwareProvider, alice: UserProjection
    ) -> None:
        token = _login(revoking_provider)
        revoking_provider.revoke_token(token)
        with pytest.raises(InvalidToken):
            revoking_provider.refresh_token(token)

    def test_refresh_is_single_use(self, revoking_provider: RevocationAwareProvider, alice: UserProjection) -> None:
        old = _login(revoking_provider)
        revoking_provider.refresh_token(old)
        with pytest.raises(InvalidToken):
            revoking_provider.refresh_token(old)

    def test_expired_token_can_be_refreshed(
        self, revoking_provider: RevocationAwareProvider, alice: UserProjection, clock: FakeClock
    ) -> None:
        old = _login(revoking_provider)
        clock.advance(TEST_LIFETIME + 5)
        new = revoking_provider.refresh_token(old)
        assert revoking_provider.validate_token(new) == alice
        with pytest.raises(ExpiredToken):
            revoking_provider.validate_token(old)

    def test_expired_token_can_be_revoked(
        self, revoking_provider: RevocationAwareProvider, alice: UserProjection, clock: FakeClock
    ) -> None:
        token = _login(revoking_provider)
        clock.advance(TEST_LIFETIME)
        assert revoking_provider.revoke_token(token) is True

    def test_revocation_record_lives_until_token_exp(
        self, revoking_provider: RevocationAwareProvider, alice: UserProjection, clock: FakeClock
    ) -> None:
        token = _login(revoking_provider)
        jti = revoking_provider.base.codec.decode(token)["jti"]
        revoking_provider.revoke_token(token)
        clock.advance(TEST_LIFETIME - 1)
        assert revoking_provider.revocation_store.is_revoked(jti) is True
        clock.advance(1)
        assert revoking_provider.revocation_store.is_revoked(jti) is False

    def test_invalid_token_is_not_tolerated(self, revoking_provider: RevocationAwareProvider) -> None:
        with pytest.raises(InvalidToken):
            revoking_provider.refresh_token("garbage")
        with pytest.raises(InvalidToken):
            revoking_provider.revoke_token("garbage")

    def test_login_path_delegates(self, revoking_provider: RevocationAwareProvider, alice: UserProjection) -> None:
        token = revoking_provider.refresh_token("", user=alice)
        assert revoking_provider.validate_token(token) == alice

    def test_concurrent_refreshes_of_one_token_have_one_winner(
        self, provider_config: ProviderConfig, clock: FakeClock
    ) -> None:
        base = LocalProvider(provider_config, MemoryUserStore(clock=clock), clock=clock)
        provider = RevocationAwareProvider(base, MemoryRevocationStore(clock=clock))
        user = base.register("alice", "alice@example.com", PASSWORD)
        token = provider.refresh_token("", user=user)

        attempts = 8
        barrier = threading.Barrier(attempts)
        issued: list[str] = []
        rejected: list[InvalidToken] = []

        def refresh() -> None:
            barrier.wait(5)
            try:
                issued.append(provider.refresh_token(token))
            except InvalidToken as exc:
                rejected.append(exc)

        threads = [threading.Thread(target=refresh) for _ in range(attempts)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(issued) == 1
        assert len(rejected) == attempts - 1
        assert provider.validate_token(issued[0]) == user


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


class TestRegister:
    def test_creates_hashed_account(self, local_provider: LocalProvider) -> None:
        user = local_provider.register("bob", "bob@example.com", "hunter2hunter2", roles=["user", "user"])
        assert user.roles == ("user",)
        stored = local_provider.user_store.get_by_id(user.id)
        assert stored.password_hash != "hunter2hunter2"
        assert verify_password("hunter2hunter2", stored.password_hash)

    def test_weak_password_creates_nothing(self, local_provider: LocalProvider) -> None:
        with pytest.raises(WeakPassword):
            local_provider.register("bob", "bob@example.com", "short")
        with pytest.raises(NotFound):
            local_provider.user_store.get_by_username("bob")

    def test_duplicate_username(self, local_provider: LocalProvider, alice: UserProjection) -> None:
        with pytest.raises(AlreadyExists):
            local_provider.register("alice", "alice2@example.com", PASSWORD)

    def test_no_policy_accepts_any_password(self, user_store, clock: FakeClock) -> None:
        provider = LocalProvider(ProviderConfig(secret="x" * 32, bcrypt_rounds=4), user_store, clock=clock)
        user = provider.register("carol", "carol@example.com", "a")
        assert provider.authenticate(Credentials(username="carol", password="a")) == user

    def test_password_over_bcrypt_limit_in_bytes(self, local_provider: LocalProvider) -> None:
        # 72 characters, 144 bytes once encoded.
        with pytest.raises(WeakPassword):
            local_provider.register("bob", "bob@example.com", "é" * 72)
        with pytest.raises(NotFound):
            local_provider.user_store.get_by_username("bob")

    def test_password_at_bcrypt_limit(self, local_provider: LocalProvider) -> None:
        password = "é" * 36
        user = local_provider.register("bob", "bob@example.com", password)
        assert local_provider.authenticate(Credentials(username="bob", password=password)) == user


class TestProviderDefaults:
    def test_register_unsupported_by_default(self) -> None:
        class DirectoryProvider(Provider):
            name = "directory"

            def authenticate(self, credentials, *, ctx=None):
                raise InvalidCredentials()

            def validate_token(self, token, *, ctx=None):
                raise InvalidToken()

            def refresh_token(self, token, *, user=None, ctx=None):
                raise InvalidToken()

            def revoke_token(self, token, *, ctx=None):
                return False

        with pytest.raises(ProviderNotEnabled):
            DirectoryProvider().register("bob", "bob@example.com", PASSWORD)


class TestMinLengthPolicy:
    def test_boundary(self) -> None:
        policy = min_length_policy(8)
        policy("12345678")
        with pytest.raises(WeakPassword):
            policy("1234567")
