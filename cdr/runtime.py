from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from threading import Condition, Lock
from typing import Any

from .models import utc_now


class QueueFull(Exception):
    pass


class WorkQueue:
    """Bounded queue of resource identities with at most one in-flight pass per identity.

    - an identity already waiting is not queued twice;
    - an identity being reconciled gets a single pending follow-up, re-queued
      when the in-flight pass finishes.
    """

    def __init__(self, maxsize: int = 1024):
        self.maxsize = max(1, int(maxsize))
        self._cv = Condition(Lock())
        self._pending: deque[str] = deque()
        self._queued: set[str] = set()
        self._in_flight: set[str] = set()
        self._follow_up: set[str] = set()
        self._closed = False

    def put(self, key: str) -> bool:
        """Queue `key`. Returns False when it was merged into existing work."""
        with self._cv:
            if self._closed:
                return False
            if key in self._in_flight:
                self._follow_up.add(key)
                return False
            if key in self._queued:
                return False
            if len(self._pending) >= self.maxsize:
                raise QueueFull(f"work queue is full ({self.maxsize})")
            self._pending.append(key)
            self._queued.add(key)
            self._cv.notify()
            return True

    def get_batch(self, max_items: int = 32, timeout: float | None = None) -> list[str]:
        """Take up to `max_items` identities and mark them in flight. Empty list on timeout/close."""
        with self._cv:
            if not self._pending and not self._closed:
                self._cv.wait(timeout)
            out: list[str] = []
            while self._pending and len(out) < max_items:
                key = self._pending.popleft()
                self._queued.discard(key)
                self._in_flight.add(key)
                out.append(key)
            return out

    def done(self, keys: list[str]) -> None:
        with self._cv:
            for key in keys:
                self._in_flight.discard(key)
                if key in self._follow_up:
                    self._follow_up.discard(key)
                    if not self._closed and key not in self._queued:
                        self._pending.append(key)
                        self._queued.add(key)
                        self._cv.notify()

    def close(self) -> None:
        with self._cv:
            self._closed = True
            self._cv.notify_all()

    @property
    def closed(self) -> bool:
        with self._cv:
            return self._closed

    def in_flight(self) -> set[str]:
        with self._cv:
            return set(self._in_flight)

    def __len__(self) -> int:
        with self._cv:
            return len(self._pending)


@dataclass
class LoopStatus:
    state: str = "idle"  # idle|running|stopping|stopped|halted
    started_at: str | None = None
    last_cycle_at: str | None = None
    last_event_at: str | None = None
    cycles: int = 0
    events: int = 0
    fatal: str | None = None
    last_report: dict[str, Any] | None = field(default=None, repr=False)


class RuntimeState:
    """In-memory state shared by the loop threads and the API."""

    def __init__(self) -> None:
        self.lock = Lock()
        self.status = LoopStatus()

    def set_state(self, state: str) -> None:
        with self.lock:
            self.status.state = state
            if state == "running":
                self.status.started_at = utc_now()

    def mark_event(self) -> None:
        with self.lock:
            self.status.events += 1
            self.status.last_event_at = utc_now()

    def record_cycle(self, report: dict[str, Any]) -> None:
        with self.lock:
            self.status.cycles += 1
            self.status.last_cycle_at = report.get("timestamp", utc_now())
            self.status.last_report = report

    def halt(self, message: str) -> None:
        with self.lock:
            self.status.state = "halted"
            self.status.fatal = message

    def snapshot(self) -> dict[str, Any]:
        with self.lock:
            s = self.status
            return {
                "state": s.state,
                "started_at": s.started_at,
                "last_cycle_at": s.last_cycle_at,
                "last_event_at": s.last_event_at,
                "cycles": s.cycles,
                "events": s.events,
                "fatal": s.fatal,
            }

    def last_report(self) -> dict[str, Any] | None:
        with self.lock:
            return self.status.last_report
