"""
auth/tokens.py -- Password hashing and the signed session-token codec.

Security design decisions:
  JWT: python-jose, HMAC family only (HS256 by default). Every token carries a
       fresh random jti (the revocation key), iat == nbf == issue time, and
       exp = iat + lifetime. The header's alg is checked against the HMAC
       family *before* signature verification so a token claiming "none" or
       an asymmetric algorithm is rejected outright (algorithm confusion).

  Time checks: jose's own nbf/exp checks use the wall clock and treat
       exp == now as still valid. The codec disables them and applies its own
       against an injectable clock, with exp <= now meaning expired. Expired
       is reported separately from every other failure (ExpiredToken carries
       the verified claims) so refresh and logout can still act on it.

  Passwords: bcrypt directly (no passlib wrapper). _DUMMY_HASH enables timing
       equalization in the provider's authenticate() so response time does
       not reveal whether a username exists.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
import secrets
import time
from collections.abc import Callable
from typing import Any

import bcrypt
from jose import JWTError, jwt

from auth.errors import ExpiredToken, InvalidToken

logger = logging.getLogger("tokengate.auth")

HMAC_ALGORITHMS = ("HS256", "HS384", "HS512")

# bcrypt rejects (4.x silently truncated) input longer than this.
BCRYPT_MAX_BYTES = 72

# Registered claims the codec owns; caller-supplied values are overwritten.
_CODEC_CLAIMS = ("jti", "iat", "nbf", "exp")

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str, rounds: int | None = None) -> str:
    """Return a bcrypt hash of the given plaintext password.

    rounds defaults to bcrypt's own cost factor. Tests pass a low value to
    keep the suite fast.
    """
    salt = bcrypt.gensalt(rounds) if rounds is not None else bcrypt.gensalt()
    return bcrypt.hashpw(plain.encode("utf-8"), salt).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash.

    A malformed or empty hash verifies as False rather than raising.
    """
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        return False


# Computed once at module load so the first failed login is not measurably
# slower than later ones.
_DUMMY_HASH: str = hash_password("tokengate_timing_dummy")


def burn_verify(plain: str) -> None:
    """Spend one bcrypt comparison on a hash that can never match."""
    verify_password(plain, _DUMMY_HASH)


# ---------------------------------------------------------------------------
# Token codec
# ---------------------------------------------------------------------------


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


class TokenCodec:
    """Issue and decode signed session tokens.

    Usage:
        codec = TokenCodec(settings.secret_key, settings.token_expire_seconds)
        token = codec.issue({"sub": user.id, "roles": ["user"]})
        claims = codec.decode(token)      # InvalidToken / ExpiredToken
    """

    def __init__(
        self,
        secret: str,
        lifetime_seconds: int,
        *,
        algorithm: str = "HS256",
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not secret:
            raise ValueError("token signing secret must not be empty")
        if lifetime_seconds <= 0:
            raise ValueError("token lifetime must be positive")
        if algorithm not in HMAC_ALGORITHMS:
            raise ValueError(f"unsupported signing algorithm {algorithm!r}")
        self._secret = secret
        self.lifetime_seconds = int(lifetime_seconds)
        self.algorithm = algorithm
        self._clock = clock

    def now(self) -> float:
        return self._clock()

    def issue(self, claims: dict[str, Any]) -> str:
        """Sign ``claims`` plus a fresh jti, iat, nbf and exp."""
        issued_at = int(self._clock())
        payload = {k: v for k, v in claims.items() if k not in _CODEC_CLAIMS}
        payload.update(
            jti=secrets.token_hex(16),
            iat=issued_at,
            nbf=issued_at,
            exp=issued_at + self.lifetime_seconds,
        )
        return jwt.encode(payload, self._secret, algorithm=self.algorithm)

    def decode(self, token: str) -> dict[str, Any]:
        """Verify ``token`` and return its claim set.

        Raises ExpiredToken when the token is otherwise valid but exp <= now,
        InvalidToken for everything else.
        """
        if not token:
            raise InvalidToken("empty token")
        try:
            header = jwt.get_unverified_header(token)
        except JWTError as exc:
            raise InvalidToken("malformed token") from exc
        if header.get("alg") not in HMAC_ALGORITHMS:
            raise InvalidToken("unexpected signing algorithm")

        try:
            claims = jwt.decode(
                token,
                self._secret,
                algorithms=list(HMAC_ALGORITHMS),
                options={"verify_exp": False, "verify_nbf": False, "verify_iat": False, "verify_aud": False},
            )
        except JWTError as exc:
            raise InvalidToken("token signature or structure invalid") from exc

        now = self._clock()
        nbf = claims.get("nbf")
        if nbf is not None and (not _is_number(nbf) or nbf > now):
            raise InvalidToken("token not yet valid")
        exp = claims.get("exp")
        if not _is_number(exp):
            raise InvalidToken("token has no usable exp claim")
        if exp <= now:
            raise ExpiredToken(claims=claims)
        return claims
