"""
core/context.py -- Cancellable, deadline-bearing execution context.

Every store and provider call takes an optional ``ctx`` so that an upstream
timeout (the HTTP request deadline, the CLI's overall budget) aborts work that
is still waiting on a lock or between database statements instead of letting
it complete against a caller that already gave up.

A Context is cheap: a monotonic deadline, a threading.Event, and an optional
parent. Children inherit the parent's cancellation and never outlive its
deadline.

Usage:
    ctx = Context(timeout=5.0)
    store.get_by_id(user_id, ctx=ctx)    # raises DeadlineExceeded after 5s
    ctx.cancel()                         # later calls raise Cancelled

Layer rule: core/ is the kernel. No imports from api/ or auth/.
"""

from __future__ import annotations

import threading
import time


class Cancelled(Exception):
    """Raised when an operation observes that its context was cancelled."""

    code = "cancelled"


class DeadlineExceeded(Cancelled):
    """Raised when an operation observes that its context deadline passed."""

    code = "deadline_exceeded"


class Context:
    def __init__(self, timeout: float | None = None, parent: Context | None = None) -> None:
        self._parent = parent
        self._event = threading.Event()
        deadline = None if timeout is None else time.monotonic() + timeout
        if parent is not None and parent._deadline is not None:
            deadline = parent._deadline if deadline is None else min(deadline, parent._deadline)
        self._deadline = deadline

    @classmethod
    def background(cls) -> Context:
        """Return a context that is never cancelled and has no deadline."""
        return cls()

    def with_timeout(self, seconds: float) -> Context:
        return Context(timeout=seconds, parent=self)

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        if self._parent is not None and self._parent.cancelled:
            return True
        return self._deadline is not None and time.monotonic() >= self._deadline

    def remaining(self) -> float | None:
        """Seconds until the deadline (never negative), or None when unbounded."""
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - time.monotonic())

    def check(self) -> None:
        """Raise Cancelled / DeadlineExceeded if the caller has given up."""
        ctx: Context | None = self
        while ctx is not None:
            if ctx._event.is_set():
                raise Cancelled("operation cancelled")
            ctx = ctx._parent
        if self._deadline is not None and time.monotonic() >= self._deadline:
            raise DeadlineExceeded("operation deadline exceeded")


def ensure(ctx: Context | None) -> Context:
    """Return ``ctx`` or a background context when the caller passed None."""
    return ctx if ctx is not None else Context.background()
