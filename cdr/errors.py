from __future__ import annotations

import time
from threading import Event
from typing import Callable, TypeVar

T = TypeVar("T")


class ReconcileError(Exception):
    """Base class for errors raised by registry, cluster and advisor collaborators."""


class TransientError(ReconcileError):
    """Network failure or timeout. Safe to retry."""


class NotFoundError(ReconcileError):
    """Unit or live resource disappeared between listing and fetch."""


class ConflictError(ReconcileError):
    """Concurrent modification: the revision we patched against is stale."""


class FatalError(ReconcileError):
    """Initialization failure (auth revoked, registry unreachable). The loop halts."""


class AdvisorError(ReconcileError):
    pass


def backoff_delay(attempt: int, base_s: float = 1.0, cap_s: float = 30.0) -> float:
    """Exponential backoff: base, 2*base, 4*base, ... capped."""
    return min(cap_s, base_s * (2 ** max(0, attempt)))


def retry_call(
    fn: Callable[[], T],
    attempts: int = 3,
    base_delay_s: float = 0.5,
    stop: Event | None = None,
) -> T:
    """Call `fn`, retrying TransientError with exponential backoff.

    Other errors propagate immediately. If `stop` is set while waiting, the last
    TransientError is raised instead of sleeping out the backoff.
    """
    attempts = max(1, int(attempts))
    for i in range(attempts - 1):
        try:
            return fn()
        except TransientError:
            delay = backoff_delay(i, base_delay_s)
            if stop is not None:
                if stop.wait(delay):
                    raise
            else:
                time.sleep(delay)
    return fn()
