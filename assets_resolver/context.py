"""Cancellation and deadline propagation for resolver calls."""

from __future__ import annotations

import threading
from datetime import timedelta
from time import monotonic

from .errors import CANCELLED, TIMEOUT, AssetsResolverError


class RequestContext:
    """Carries a caller's cancellation signal and an optional deadline.

    Child contexts created with :meth:`with_timeout` observe their parent's
    cancellation and never outlive the parent's deadline.
    """

    __slots__ = ("_event", "_deadline", "_parent")

    def __init__(
        self,
        *,
        deadline: float | None = None,
        parent: "RequestContext | None" = None,
    ) -> None:
        self._event = threading.Event()
        self._parent = parent
        if parent is not None and parent.deadline is not None:
            deadline = parent.deadline if deadline is None else min(deadline, parent.deadline)
        self._deadline = deadline

    @classmethod
    def background(cls) -> "RequestContext":
        """Return a context that is never cancelled and has no deadline."""

        return cls()

    def with_timeout(self, timeout: timedelta | float) -> "RequestContext":
        seconds = timeout.total_seconds() if isinstance(timeout, timedelta) else float(timeout)
        return RequestContext(deadline=monotonic() + max(seconds, 0.0), parent=self)

    @property
    def deadline(self) -> float | None:
        return self._deadline

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        return self._parent is not None and self._parent.cancelled

    @property
    def expired(self) -> bool:
        return self._deadline is not None and monotonic() >= self._deadline

    def remaining(self) -> float | None:
        """Seconds left before the deadline, or ``None`` without one."""

        if self._deadline is None:
            return None
        return max(self._deadline - monotonic(), 0.0)

    def check(self) -> None:
        """Raise when the context was cancelled or its deadline passed."""

        if self.cancelled:
            raise AssetsResolverError(CANCELLED, "Operation cancelled by caller")
        if self.expired:
            raise AssetsResolverError(TIMEOUT, "Operation deadline exceeded")


def ensure_context(ctx: RequestContext | None) -> RequestContext:
    return ctx if ctx is not None else RequestContext.background()
