"""
auth/memory.py -- In-process backends for the user and revocation stores.

Suitable for development, tests, and single-process deployments that accept
losing every account and revocation on restart. Behaviour matches the SQL
backends in auth/store.py and auth/revocation.py exactly; the shared pytest
suite runs against both.

Thread safety: each store guards its state with one RLock, so concurrent
readers are serialized with each other as well as with writers. Critical
sections are a few dict operations plus a deepcopy. Deployments that need
parallel reads use the SQL backends.

Callers never see store-internal objects -- Accounts are deep-copied on the
way in and on the way out, so mutating a returned Account cannot corrupt the
store or its username/email indexes.

Cancellation: the lock is acquired in short slices with ctx.check() between
attempts, so a caller whose deadline passes while another thread holds the
lock gets DeadlineExceeded instead of waiting indefinitely.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import copy
import logging
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager

from auth.errors import AlreadyExists, NotFound
from auth.models import Account, normalize_metadata, normalize_roles
from auth.revocation import RevocationStore
from auth.store import UserStore, new_user_id
from core.context import Context, ensure

logger = logging.getLogger("tokengate.store")

_LOCK_SLICE = 0.05  # seconds between cancellation checks while waiting on the lock


@contextmanager
def _locked(lock: threading.RLock, ctx: Context | None) -> Iterator[None]:
    ctx = ensure(ctx)
    while True:
        ctx.check()
        remaining = ctx.remaining()
        wait = _LOCK_SLICE if remaining is None else min(_LOCK_SLICE, remaining)
        if lock.acquire(timeout=wait):
            break
    try:
        ctx.check()
        yield
    finally:
        lock.release()


class MemoryUserStore(UserStore):
    """UserStore backed by three dicts kept in lock-step.

    _users      id -> Account
    _usernames  username -> id
    _emails     email -> id
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._users: dict[str, Account] = {}
        self._usernames: dict[str, str] = {}
        self._emails: dict[str, str] = {}
        self._lock = threading.RLock()
        self._clock = clock

    def get_by_id(self, user_id: str, *, ctx: Context | None = None) -> Account:
        with _locked(self._lock, ctx):
            return self._copy_of(user_id)

    def get_by_username(self, username: str, *, ctx: Context | None = None) -> Account:
        with _locked(self._lock, ctx):
            return self._copy_of(self._usernames.get(username))

    def get_by_email(self, email: str, *, ctx: Context | None = None) -> Account:
        with _locked(self._lock, ctx):
            return self._copy_of(self._emails.get(email))

    def create(self, account: Account, *, ctx: Context | None = None) -> Account:
        roles = normalize_roles(account.roles)
        meta = normalize_metadata(account.metadata)
        with _locked(self._lock, ctx):
            if account.username in self._usernames or account.email in self._emails:
                raise AlreadyExists("user create: username or email already in use")
            if account.id and account.id in self._users:
                raise AlreadyExists("user create: id already in use")

            now = int(self._clock())
            stored = copy.deepcopy(account)
            stored.id = account.id or new_user_id()
            stored.roles = roles
            stored.metadata = copy.deepcopy(meta)
            stored.created_at = now
            stored.updated_at = now

            self._users[stored.id] = stored
            self._usernames[stored.username] = stored.id
            self._emails[stored.email] = stored.id

        account.id = stored.id
        account.roles = list(roles)
        account.metadata = copy.deepcopy(meta)
        account.created_at = now
        account.updated_at = now
        logger.info("Created user %s", stored.id)
        return account

    def update(self, account: Account, *, ctx: Context | None = None) -> Account:
        roles = normalize_roles(account.roles)
        meta = normalize_metadata(account.metadata)
        with _locked(self._lock, ctx):
            existing = self._users.get(account.id)
            if existing is None:
                raise NotFound("user not found")
            # Uniqueness is checked against *other* records; keeping one's own
            # username or email is not a collision.
            if self._usernames.get(account.username, account.id) != account.id:
                raise AlreadyExists("user update: username or email already in use")
            if self._emails.get(account.email, account.id) != account.id:
                raise AlreadyExists("user update: username or email already in use")

            now = int(self._clock())
            stored = copy.deepcopy(account)
            stored.roles = roles
            stored.metadata = copy.deepcopy(meta)
            stored.created_at = existing.created_at
            stored.updated_at = now

            del self._usernames[existing.username]
            del self._emails[existing.email]
            self._usernames[stored.username] = stored.id
            self._emails[stored.email] = stored.id
            self._users[stored.id] = stored

        account.roles = list(roles)
        account.metadata = copy.deepcopy(meta)
        account.created_at = stored.created_at
        account.updated_at = now
        return account

    def delete(self, user_id: str, *, ctx: Context | None = None) -> None:
        with _locked(self._lock, ctx):
            existing = self._users.pop(user_id, None)
            if existing is None:
                raise NotFound("user not found")
            del self._usernames[existing.username]
            del self._emails[existing.email]
        logger.info("Deleted user %s", user_id)

    def _copy_of(self, user_id: str | None) -> Account:
        account = self._users.get(user_id) if user_id is not None else None
        if account is None:
            raise NotFound("user not found")
        return copy.deepcopy(account)


class MemoryRevocationStore(RevocationStore):
    """RevocationStore backed by a dict of token id -> expiry (epoch seconds).

    is_revoked() deletes a stale record the moment it observes one, so the
    dict does not grow without bound even if sweep_expired() is never called
    for tokens that are looked up again.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._revoked: dict[str, float] = {}
        self._lock = threading.RLock()
        self._clock = clock

    def is_revoked(self, token_id: str, *, ctx: Context | None = None) -> bool:
        with _locked(self._lock, ctx):
            expires_at = self._revoked.get(token_id)
            if expires_at is None:
                return False
            if expires_at <= self._clock():
                del self._revoked[token_id]
                return False
            return True

    def revoke(self, token_id: str, expires_at: float, *, ctx: Context | None = None) -> bool:
        with _locked(self._lock, ctx):
            current = self._revoked.get(token_id)
            created = current is None or current <= self._clock()
            if created or current < expires_at:
                self._revoked[token_id] = float(expires_at)
        logger.debug("Revoked token %s until %s (new=%s)", token_id, expires_at, created)
        return created

    def sweep_expired(self, *, ctx: Context | None = None) -> int:
        with _locked(self._lock, ctx):
            now = self._clock()
            stale = [tid for tid, exp in self._revoked.items() if exp <= now]
            for tid in stale:
                del self._revoked[tid]
        if stale:
            logger.info("Swept %d expired revocation record(s)", len(stale))
        return len(stale)

    def __len__(self) -> int:
        with self._lock:
            return len(self._revoked)
