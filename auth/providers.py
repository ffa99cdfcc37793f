"""
auth/providers.py -- Authentication provider contract and the local provider.

  Provider                 the contract the registry and the HTTP layer see:
                           name, authenticate, validate_token, refresh_token,
                           revoke_token.
  LocalProvider            username/password against a UserStore, tokens from
                           a TokenCodec. Holds no per-session state and has NO
                           revocation capability: revoke_token() is a no-op
                           that returns False.
  RevocationAwareProvider  decorator over a LocalProvider that consults a
                           RevocationStore on validation and revokes the
                           predecessor on refresh / logout.

The login path passes the freshly authenticated identity explicitly:

    user = provider.authenticate(Credentials(username, password))
    token = provider.refresh_token("", user=user)

Error policy: store and codec errors propagate unchanged. authenticate() is
the only place NotFound becomes InvalidCredentials; in validate_token() a
missing account propagates as NotFound because the token itself was valid.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import abc
import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from auth.errors import ExpiredToken, InvalidCredentials, InvalidToken, NotFound, ProviderNotEnabled, WeakPassword
from auth.models import Account, Credentials, MetadataValue, UserProjection
from auth.revocation import RevocationStore
from auth.store import UserStore
from auth.tokens import BCRYPT_MAX_BYTES, TokenCodec, burn_verify, hash_password, verify_password
from core.context import Context

if TYPE_CHECKING:
    from core.config import Settings

logger = logging.getLogger("tokengate.auth")

PASSWORD_KIND = "password"

PasswordPolicy = Callable[[str], None]


def min_length_policy(min_length: int) -> PasswordPolicy:
    """Return a policy that rejects passwords shorter than ``min_length``."""

    def _policy(password: str) -> None:
        if len(password) < min_length:
            raise WeakPassword(f"password must be at least {min_length} characters")

    return _policy


@dataclass
class ProviderConfig:
    secret: str
    token_lifetime: int = 86400
    password_policy: PasswordPolicy | None = None
    bcrypt_rounds: int | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> ProviderConfig:
        return cls(
            secret=settings.secret_key,
            token_lifetime=settings.token_expire_seconds,
            password_policy=min_length_policy(settings.password_min_length),
            bcrypt_rounds=settings.bcrypt_rounds,
        )


# ---------------------------------------------------------------------------
# Contract
# ---------------------------------------------------------------------------


class Provider(abc.ABC):
    """What the registry stores and the HTTP layer calls."""

    supports_revocation: bool = False

    @property
    @abc.abstractmethod
    def name(self) -> str: ...

    @abc.abstractmethod
    def authenticate(self, credentials: Credentials, *, ctx: Context | None = None) -> UserProjection: ...

    @abc.abstractmethod
    def validate_token(self, token: str, *, ctx: Context | None = None) -> UserProjection: ...

    @abc.abstractmethod
    def refresh_token(
        self, token: str, *, user: UserProjection | None = None, ctx: Context | None = None
    ) -> str: ...

    @abc.abstractmethod
    def revoke_token(self, token: str, *, ctx: Context | None = None) -> bool:
        """Invalidate ``token``. Returns True only if a revocation was recorded."""

    def register(
        self,
        username: str,
        email: str,
        password: str,
        *,
        roles: Iterable[str] = (),
        metadata: dict[str, MetadataValue] | None = None,
        ctx: Context | None = None,
    ) -> UserProjection:
        """Create an account. Providers backed by an external directory do not."""
        raise ProviderNotEnabled(f"provider {self.name!r} does not support registration")


# ---------------------------------------------------------------------------
# Local provider
# ---------------------------------------------------------------------------


class LocalProvider(Provider):
    def __init__(
        self,
        config: ProviderConfig,
        user_store: UserStore,
        *,
        name: str = "local",
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config
        self.user_store = user_store
        self.codec = TokenCodec(config.secret, config.token_lifetime, clock=clock)
        self._name = name

    @property
    def name(self) -> str:
        return self._name

    def authenticate(self, credentials: Credentials, *, ctx: Context | None = None) -> UserProjection:
        """Verify a username/password pair.

        Always runs bcrypt whether or not the user exists, so response time
        does not reveal which half of the pair was wrong.
        """
        if credentials.kind != PASSWORD_KIND:
            raise InvalidCredentials("invalid credentials")
        try:
            account = self.user_store.get_by_username(credentials.username, ctx=ctx)
        except NotFound:
            burn_verify(credentials.password)
            raise InvalidCredentials("invalid credentials") from None
        if not verify_password(credentials.password, account.password_hash):
            raise InvalidCredentials("invalid credentials")
        return account.projection()

    def validate_token(self, token: str, *, ctx: Context | None = None) -> UserProjection:
        claims = self.codec.decode(token)
        return self.load_subject(claims, ctx=ctx)

    def refresh_token(
        self, token: str, *, user: UserProjection | None = None, ctx: Context | None = None
    ) -> str:
        """Issue a token.

        Empty ``token``: login path, issue for the explicit ``user``.
        Otherwise: validate ``token`` and reissue for the same identity.
        """
        if not token:
            if user is None:
                raise InvalidToken("no token and no authenticated user to issue for")
            return self.issue_token(user)
        return self.issue_token(self.validate_token(token, ctx=ctx))

    def revoke_token(self, token: str, *, ctx: Context | None = None) -> bool:
        logger.debug("Provider %s has no revocation store; revoke_token is a no-op", self._name)
        return False

    # ------------------------------------------------------------------
    # Helpers shared with the revocation-aware decorator
    # ------------------------------------------------------------------

    def issue_token(self, user: UserProjection) -> str:
        return self.codec.issue(
            {
                "sub": user.id,
                "roles": list(user.roles),
                "email": user.email,
                "name": user.username,
                "provider": self._name,
            }
        )

    def load_subject(self, claims: dict[str, Any], *, ctx: Context | None = None) -> UserProjection:
        """Load the account named by the ``sub`` claim. NotFound propagates."""
        subject = claims.get("sub")
        if not isinstance(subject, str) or not subject:
            raise InvalidToken("token has no subject")
        return self.user_store.get_by_id(subject, ctx=ctx).projection()

    # ------------------------------------------------------------------
    # Account registration
    # ------------------------------------------------------------------

    def register(
        self,
        username: str,
        email: str,
        password: str,
        *,
        roles: Iterable[str] = (),
        metadata: dict[str, MetadataValue] | None = None,
        ctx: Context | None = None,
    ) -> UserProjection:
        """Create a local account after applying the password policy.

        bcrypt only accepts BCRYPT_MAX_BYTES of input, which a password within
        the character limits can exceed once UTF-8 encoded.
        """
        if self.config.password_policy is not None:
            self.config.password_policy(password)
        if len(password.encode("utf-8")) > BCRYPT_MAX_BYTES:
            raise WeakPassword(f"password must be at most {BCRYPT_MAX_BYTES} bytes when UTF-8 encoded")
        account = Account(
            username=username,
            email=email,
            password_hash=hash_password(password, self.config.bcrypt_rounds),
            roles=list(roles),
            metadata=dict(metadata or {}),
        )
        return self.user_store.create(account, ctx=ctx).projection()


# ---------------------------------------------------------------------------
# Revocation-aware decorator
# ---------------------------------------------------------------------------


class RevocationAwareProvider(Provider):
    """Adds a revocation list to a LocalProvider.

    Revocation always keys on the *decoded token's own* jti -- never on the
    replacement's -- and only an ExpiredToken is tolerated while decoding
    for refresh / revoke. Any other decode failure propagates.
    """

    supports_revocation = True

    def __init__(self, base: LocalProvider, revocation_store: RevocationStore) -> None:
        self.base = base
        self.revocation_store = revocation_store

    @property
    def name(self) -> str:
        return self.base.name

    @property
    def user_store(self) -> UserStore:
        return self.base.user_store

    def authenticate(self, credentials: Credentials, *, ctx: Context | None = None) -> UserProjection:
        return self.base.authenticate(credentials, ctx=ctx)

    def register(self, username: str, email: str, password: str, **kwargs: Any) -> UserProjection:
        return self.base.register(username, email, password, **kwargs)

    def validate_token(self, token: str, *, ctx: Context | None = None) -> UserProjection:
        claims = self.base.codec.decode(token)
        if self.revocation_store.is_revoked(self._token_id(claims, token), ctx=ctx):
            raise InvalidToken("token has been revoked")
        return self.base.load_subject(claims, ctx=ctx)

    def refresh_token(
        self, token: str, *, user: UserProjection | None = None, ctx: Context | None = None
    ) -> str:
        if not token:
            return self.base.refresh_token("", user=user, ctx=ctx)

        claims = self._decode_allowing_expired(token)
        token_id = self._token_id(claims, token)
        # Revoking the predecessor is the claim: only the caller whose revoke
        # created the record may exchange it, so a logged-out token or a
        # concurrent second refresh of the same token gets InvalidToken.
        if not self.revocation_store.revoke(token_id, self._revocation_expiry(claims), ctx=ctx):
            raise InvalidToken("token has been revoked")
        subject = self.base.load_subject(claims, ctx=ctx)
        return self.base.issue_token(subject)

    def revoke_token(self, token: str, *, ctx: Context | None = None) -> bool:
        claims = self._decode_allowing_expired(token)
        token_id = self._token_id(claims, token)
        self.revocation_store.revoke(token_id, self._revocation_expiry(claims), ctx=ctx)
        logger.info("Revoked token for subject %s", claims.get("sub"))
        return True

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _decode_allowing_expired(self, token: str) -> dict[str, Any]:
        try:
            return self.base.codec.decode(token)
        except ExpiredToken as exc:
            return exc.claims

    @staticmethod
    def _token_id(claims: dict[str, Any], token: str) -> str:
        """The jti claim, or the raw token string for tokens issued without one."""
        jti = claims.get("jti")
        return jti if isinstance(jti, str) and jti else token

    def _revocation_expiry(self, claims: dict[str, Any]) -> float:
        exp = claims.get("exp")
        if isinstance(exp, (int, float)) and not isinstance(exp, bool):
            return float(exp)
        return self.base.codec.now() + self.base.codec.lifetime_seconds
