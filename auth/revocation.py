"""
auth/revocation.py -- Revocation store contract and its SQLAlchemy Core backend.

A revocation record maps a token identifier (the jti claim) to the instant the
token would have expired anyway. Past that instant the record is meaningless:
the codec already rejects the token as expired. So expiry is authoritative
over physical presence -- a stale record that has not been swept yet must read
as "not revoked", and sweep_expired() is only housekeeping.

  is_revoked(jti)            True only while expires_at > now
  revoke(jti, expires_at)    idempotent; a repeat keeps the later expiry.
                             Returns True if this call created the
                             revocation, False if a live one already existed
  sweep_expired()            delete every record with expires_at <= now,
                             return the count

revoke()'s return value is the atomic test-and-set the refresh path relies
on: of several concurrent revokes of one live token exactly one returns True.

Concurrency: sweep_expired may race is_revoked / revoke. Neither call errors
when a row disappears underneath it; at worst is_revoked reports a revocation
that is about to be swept, which fails closed.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import abc
import logging
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager

from sqlalchemy import delete, insert, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from auth.errors import StoreError
from auth.schema import deadline_scope, revoked_tokens
from core.context import Context, ensure

logger = logging.getLogger("tokengate.store")

_INSERT_IGNORE_DIALECTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


class RevocationStore(abc.ABC):
    """Contract for the token revocation list."""

    @abc.abstractmethod
    def is_revoked(self, token_id: str, *, ctx: Context | None = None) -> bool:
        """Return True if ``token_id`` is revoked and the record has not expired."""

    @abc.abstractmethod
    def revoke(self, token_id: str, expires_at: float, *, ctx: Context | None = None) -> bool:
        """Record ``token_id`` as revoked until ``expires_at`` (epoch seconds).

        Returns True if no live revocation existed before this call.
        """

    @abc.abstractmethod
    def sweep_expired(self, *, ctx: Context | None = None) -> int:
        """Delete records whose expiry is at or before now. Returns the count removed."""

    def close(self) -> None:  # noqa: B027 -- optional hook, memory backend has nothing to release
        pass


@contextmanager
def _translate_errors(action: str, ctx: Context) -> Iterator[None]:
    """SQLAlchemy failures become StoreError, or the caller's own deadline
    error when the failure is the timeout deadline_scope() imposed."""
    try:
        yield
    except SQLAlchemyError as exc:
        ctx.check()
        logger.error("%s failed: %s", action, exc.__class__.__name__)
        raise StoreError(f"{action} failed") from exc


class SQLRevocationStore(RevocationStore):
    """RevocationStore over the revoked_tokens table.

    No lazy cleanup on reads: the is_revoked query excludes expired rows, and
    the sweep runs out-of-band (API background task or ``python main.py sweep``).
    revoke() does clear a stale row for the token it is writing, so that a
    token whose old record expired counts as newly revoked.
    """

    def __init__(self, engine: Engine, clock: Callable[[], float] = time.time) -> None:
        self.engine = engine
        self._clock = clock

    def is_revoked(self, token_id: str, *, ctx: Context | None = None) -> bool:
        ctx = ensure(ctx)
        ctx.check()
        now = self._clock()
        stmt = select(revoked_tokens.c.token_id).where(
            (revoked_tokens.c.token_id == token_id) & (revoked_tokens.c.expires_at > now)
        )
        with _translate_errors("revocation lookup", ctx), self.engine.connect() as conn, deadline_scope(conn, ctx):
            row = conn.execute(stmt).first()
        return row is not None

    def revoke(self, token_id: str, expires_at: float, *, ctx: Context | None = None) -> bool:
        ctx = ensure(ctx)
        ctx.check()
        now = self._clock()
        expires_at = float(expires_at)
        with _translate_errors("revocation write", ctx), self.engine.begin() as conn, deadline_scope(conn, ctx):
            conn.execute(
                delete(revoked_tokens).where(
                    (revoked_tokens.c.token_id == token_id) & (revoked_tokens.c.expires_at <= now)
                )
            )
            created = self._insert_if_absent(conn, {"token_id": token_id, "revoked_at": now, "expires_at": expires_at})
            if not created:
                # A live record exists; keep whichever expiry is later.
                conn.execute(
                    update(revoked_tokens)
                    .where((revoked_tokens.c.token_id == token_id) & (revoked_tokens.c.expires_at < expires_at))
                    .values(expires_at=expires_at)
                )
        logger.debug("Revoked token %s until %s (new=%s)", token_id, expires_at, created)
        return created

    def _insert_if_absent(self, conn: Connection, values: dict) -> bool:
        dialect_insert = _INSERT_IGNORE_DIALECTS.get(self.engine.dialect.name)
        if dialect_insert is not None:
            stmt = dialect_insert(revoked_tokens).values(**values).on_conflict_do_nothing(
                index_elements=[revoked_tokens.c.token_id]
            )
            return conn.execute(stmt).rowcount == 1
        # Dialects without ON CONFLICT: a savepoint keeps the outer
        # transaction usable after the duplicate-key error.
        try:
            with conn.begin_nested():
                conn.execute(insert(revoked_tokens).values(**values))
        except IntegrityError:
            return False
        return True

    def sweep_expired(self, *, ctx: Context | None = None) -> int:
        ctx = ensure(ctx)
        ctx.check()
        now = self._clock()
        with _translate_errors("revocation sweep", ctx), self.engine.begin() as conn, deadline_scope(conn, ctx):
            removed = conn.execute(delete(revoked_tokens).where(revoked_tokens.c.expires_at <= now)).rowcount
        if removed:
            logger.info("Swept %d expired revocation record(s)", removed)
        return removed

    def close(self) -> None:
        self.engine.dispose()
