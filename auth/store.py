"""
auth/store.py -- User store contract and its SQLAlchemy Core backend.

Pattern: Repository + Data Mapper. UserStore is the repository contract;
SQLUserStore implements it over the users / user_roles / user_metadata tables
and _assemble() is the mapper that joins the three row sets back into an
Account. The in-process backend lives in auth/memory.py and must behave
identically: same error classes, same uniqueness scope (exact,
case-sensitive username and email), same timestamp rules.

Write rules shared by both backends:
  create()  assigns a uuid4 id when none is given, stamps created_at and
            updated_at, and writes the assigned values back onto the caller's
            Account.
  update()  keeps created_at, refreshes updated_at, and replaces roles and
            metadata wholesale. A collision with a *different* record raises
            AlreadyExists and leaves the stored record untouched.
  delete()  removes the account and its child rows.

Security:
  All queries use bound parameters. No f-strings in SQL.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import abc
import json
import logging
import time
import uuid
from collections.abc import Callable, Iterator
from contextlib import contextmanager

from sqlalchemy import delete, insert, select, update
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from auth.errors import AlreadyExists, NotFound, StoreError
from auth.models import Account, normalize_metadata, normalize_roles
from auth.schema import deadline_scope, user_metadata, user_roles, users
from core.context import Context, ensure

logger = logging.getLogger("tokengate.store")


# ---------------------------------------------------------------------------
# Contract
# ---------------------------------------------------------------------------


class UserStore(abc.ABC):
    """Persistence contract for Account records.

    Every method takes a keyword-only ``ctx``; implementations must call
    ctx.check() before blocking work and raise Cancelled / DeadlineExceeded
    instead of completing a stale operation.
    """

    @abc.abstractmethod
    def get_by_id(self, user_id: str, *, ctx: Context | None = None) -> Account:
        """Return the account with this id. Raises NotFound."""

    @abc.abstractmethod
    def get_by_username(self, username: str, *, ctx: Context | None = None) -> Account:
        """Return the account with this exact username. Raises NotFound."""

    @abc.abstractmethod
    def get_by_email(self, email: str, *, ctx: Context | None = None) -> Account:
        """Return the account with this exact email. Raises NotFound."""

    @abc.abstractmethod
    def create(self, account: Account, *, ctx: Context | None = None) -> Account:
        """Insert ``account``. Raises AlreadyExists on username/email/id collision."""

    @abc.abstractmethod
    def update(self, account: Account, *, ctx: Context | None = None) -> Account:
        """Replace the stored record with ``account``. Raises NotFound or AlreadyExists."""

    @abc.abstractmethod
    def delete(self, user_id: str, *, ctx: Context | None = None) -> None:
        """Remove the account and its roles/metadata. Raises NotFound."""

    def close(self) -> None:  # noqa: B027 -- optional hook, memory backend has nothing to release
        pass


def new_user_id() -> str:
    return str(uuid.uuid4())


# ---------------------------------------------------------------------------
# SQL backend
# ---------------------------------------------------------------------------


@contextmanager
def _translate_errors(action: str, ctx: Context) -> Iterator[None]:
    """Map SQLAlchemy failures onto the auth error taxonomy.

    IntegrityError on these tables can only mean a UNIQUE or PRIMARY KEY
    collision (username, email, id), which is AlreadyExists. A failure after
    the caller's deadline is the lock / statement timeout deadline_scope()
    imposed, or a pool checkout that outlasted it: it surfaces as
    DeadlineExceeded (or Cancelled). Anything else is a backend failure and is
    wrapped, never swallowed.
    """
    try:
        yield
    except IntegrityError as exc:
        raise AlreadyExists(f"{action}: username or email already in use") from exc
    except SQLAlchemyError as exc:
        ctx.check()
        logger.error("%s failed: %s", action, exc.__class__.__name__)
        raise StoreError(f"{action} failed") from exc


class SQLUserStore(UserStore):
    """UserStore over a relational database.

    Usage:
        engine = make_engine("sqlite:///auth.db")
        create_schema(engine)
        store = SQLUserStore(engine)
        store.create(Account(username="alice", email="alice@example.com", password_hash=h))
        account = store.get_by_username("alice")
    """

    def __init__(self, engine: Engine, clock: Callable[[], float] = time.time) -> None:
        self.engine = engine
        self._clock = clock

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_by_id(self, user_id: str, *, ctx: Context | None = None) -> Account:
        return self._get_one(users.c.id == user_id, ensure(ctx))

    def get_by_username(self, username: str, *, ctx: Context | None = None) -> Account:
        return self._get_one(users.c.username == username, ensure(ctx))

    def get_by_email(self, email: str, *, ctx: Context | None = None) -> Account:
        return self._get_one(users.c.email == email, ensure(ctx))

    def _get_one(self, where, ctx: Context) -> Account:
        ctx.check()
        with _translate_errors("user lookup", ctx), self.engine.connect() as conn, deadline_scope(conn, ctx):
            row = conn.execute(select(users).where(where)).fetchone()
            if row is None:
                raise NotFound("user not found")
            ctx.check()
            return _assemble(conn, row)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create(self, account: Account, *, ctx: Context | None = None) -> Account:
        ctx = ensure(ctx)
        roles = normalize_roles(account.roles)
        meta = normalize_metadata(account.metadata)
        user_id = account.id or new_user_id()
        now = int(self._clock())

        ctx.check()
        with _translate_errors("user create", ctx), self.engine.begin() as conn, deadline_scope(conn, ctx):
            conn.execute(
                insert(users).values(
                    id=user_id,
                    username=account.username,
                    email=account.email,
                    password_hash=account.password_hash,
                    created_at=now,
                    updated_at=now,
                )
            )
            _write_children(conn, user_id, roles, meta, ctx)

        account.id = user_id
        account.roles = roles
        account.metadata = meta
        account.created_at = now
        account.updated_at = now
        logger.info("Created user %s", user_id)
        return account

    def update(self, account: Account, *, ctx: Context | None = None) -> Account:
        ctx = ensure(ctx)
        roles = normalize_roles(account.roles)
        meta = normalize_metadata(account.metadata)
        now = int(self._clock())

        ctx.check()
        with _translate_errors("user update", ctx), self.engine.begin() as conn, deadline_scope(conn, ctx):
            created_at = conn.execute(select(users.c.created_at).where(users.c.id == account.id)).scalar()
            if created_at is None:
                raise NotFound("user not found")
            ctx.check()
            conn.execute(
                update(users)
                .where(users.c.id == account.id)
                .values(
                    username=account.username,
                    email=account.email,
                    password_hash=account.password_hash,
                    updated_at=now,
                )
            )
            conn.execute(delete(user_roles).where(user_roles.c.user_id == account.id))
            conn.execute(delete(user_metadata).where(user_metadata.c.user_id == account.id))
            _write_children(conn, account.id, roles, meta, ctx)

        account.roles = roles
        account.metadata = meta
        account.created_at = created_at
        account.updated_at = now
        return account

    def delete(self, user_id: str, *, ctx: Context | None = None) -> None:
        ctx = ensure(ctx)
        ctx.check()
        with _translate_errors("user delete", ctx), self.engine.begin() as conn, deadline_scope(conn, ctx):
            # Child rows are removed explicitly as well as by ON DELETE CASCADE,
            # so a connection without FK enforcement still leaves no orphans.
            conn.execute(delete(user_roles).where(user_roles.c.user_id == user_id))
            conn.execute(delete(user_metadata).where(user_metadata.c.user_id == user_id))
            ctx.check()
            result = conn.execute(delete(users).where(users.c.id == user_id))
            if result.rowcount == 0:
                raise NotFound("user not found")
        logger.info("Deleted user %s", user_id)

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row helpers (Data Mapper)
# ---------------------------------------------------------------------------


def _write_children(conn: Connection, user_id: str, roles: list[str], meta: dict, ctx: Context) -> None:
    ctx.check()
    if roles:
        conn.execute(insert(user_roles), [{"user_id": user_id, "role": r} for r in roles])
    if meta:
        conn.execute(
            insert(user_metadata),
            [{"user_id": user_id, "key": k, "value": json.dumps(v)} for k, v in meta.items()],
        )


def _assemble(conn: Connection, row) -> Account:
    roles = conn.execute(
        select(user_roles.c.role).where(user_roles.c.user_id == row.id).order_by(user_roles.c.role)
    ).scalars()
    meta_rows = conn.execute(
        select(user_metadata.c.key, user_metadata.c.value).where(user_metadata.c.user_id == row.id)
    ).fetchall()
    return Account(
        id=row.id,
        username=row.username,
        email=row.email,
        password_hash=row.password_hash,
        roles=list(roles),
        metadata={m.key: json.loads(m.value) for m in meta_rows},
        created_at=row.created_at,
        updated_at=row.updated_at,
    )
