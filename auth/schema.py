"""
auth/schema.py -- Relational layout for the SQL backends (SQLAlchemy Core).

The tables mirror the deployed migration:

  users           one row per account; UNIQUE(username), UNIQUE(email)
  user_roles      (user_id, role) child rows, ON DELETE CASCADE
  user_metadata   (user_id, key, value) child rows, value is JSON text,
                  ON DELETE CASCADE
  revoked_tokens  token_id -> expires_at, indexed on expires_at for the sweep

Timestamps are epoch seconds so both backends compare them the same way and
SQLite does not fall back to string comparison of ISO datetimes.

make_engine() applies the per-connection SQLite PRAGMAs (WAL, foreign_keys)
that are not inherited from the pool. deadline_scope() carries a caller's
remaining Context budget down to the driver as a lock / statement timeout.
create_schema() is the development / test stand-in for the migration step;
production databases are migrated out-of-band.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import math
from collections.abc import Iterator
from contextlib import contextmanager

from sqlalchemy import (
    Column,
    Float,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.pool import StaticPool

from core.context import Context

metadata = MetaData()

users = Table(
    "users",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("username", String(255), nullable=False, unique=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("password_hash", String(255), nullable=False),
    Column("created_at", Integer, nullable=False),
    Column("updated_at", Integer, nullable=False),
)

user_roles = Table(
    "user_roles",
    metadata,
    Column("user_id", String(36), ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
    Column("role", String(50), primary_key=True),
)

user_metadata = Table(
    "user_metadata",
    metadata,
    Column("user_id", String(36), ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
    Column("key", String(255), primary_key=True),
    Column("value", Text, nullable=False),  # JSON-encoded MetadataValue
)

revoked_tokens = Table(
    "revoked_tokens",
    metadata,
    Column("token_id", String(255), primary_key=True),
    Column("revoked_at", Float, nullable=False),
    Column("expires_at", Float, nullable=False),
    Index("ix_revoked_tokens_expires_at", "expires_at"),
)

# ---------------------------------------------------------------------------
# SQLite PRAGMAs
# ---------------------------------------------------------------------------

# pysqlite's own default lock wait; restored after a deadline-bounded scope
# so a pooled connection does not keep the last caller's budget.
SQLITE_BUSY_TIMEOUT_SECONDS = 5.0


def _sqlite_pragmas(dbapi_conn, connection_record) -> None:
    """Enable WAL and foreign-key enforcement on every new SQLite connection.

    SQLite ships with foreign_keys=OFF, which would silently disable the
    ON DELETE CASCADE clauses above.
    """
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def _is_sqlite_memory(db_url: str) -> bool:
    return db_url in ("sqlite://", "sqlite:///:memory:") or "mode=memory" in db_url


# ---------------------------------------------------------------------------
# Engine / schema
# ---------------------------------------------------------------------------


def make_engine(db_url: str, pool_timeout: float | None = None) -> Engine:
    """Create an Engine for ``db_url`` with the SQLite adjustments applied.

    A plain in-memory SQLite URL gets a StaticPool so every thread (FastAPI's
    thread pool included) shares the one connection that holds the schema.

    pool_timeout bounds how long a checkout waits for a free connection. The
    factory passes the request deadline, so a caller never queues for a
    connection longer than it is prepared to wait overall.
    """
    kwargs: dict = {}
    if db_url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False, "timeout": SQLITE_BUSY_TIMEOUT_SECONDS}
        if _is_sqlite_memory(db_url):
            kwargs["poolclass"] = StaticPool
    if pool_timeout is not None and "poolclass" not in kwargs:
        kwargs["pool_timeout"] = pool_timeout
    engine = create_engine(db_url, **kwargs)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _sqlite_pragmas)
    return engine


def create_schema(engine: Engine) -> None:
    """Create any missing tables. Idempotent."""
    metadata.create_all(engine)


# ---------------------------------------------------------------------------
# Per-call deadlines
# ---------------------------------------------------------------------------


@contextmanager
def deadline_scope(conn: Connection, ctx: Context) -> Iterator[None]:
    """Bound every statement run on ``conn`` by the time ``ctx`` has left.

    sqlite:      PRAGMA busy_timeout, reset on exit (the setting outlives
                 the transaction).
    postgresql:  SET LOCAL statement_timeout, which ends with the transaction.

    The driver then fails the blocked statement at about the deadline; the
    caller's error translation turns that into DeadlineExceeded via
    ctx.check(). Other dialects rely on ctx.check() between statements only.
    Must be entered before the first write of the transaction.
    """
    remaining = ctx.remaining()
    if remaining is None:
        yield
        return
    # Rounded up so the driver gives up no earlier than the deadline itself.
    budget_ms = max(1, math.ceil(remaining * 1000))
    dialect = conn.dialect.name
    if dialect == "sqlite":
        conn.exec_driver_sql(f"PRAGMA busy_timeout = {budget_ms}")
        try:
            yield
        finally:
            conn.exec_driver_sql(f"PRAGMA busy_timeout = {int(SQLITE_BUSY_TIMEOUT_SECONDS * 1000)}")
    elif dialect == "postgresql":
        conn.exec_driver_sql(f"SET LOCAL statement_timeout = {budget_ms}")
        yield
    else:
        yield
