from __future__ import annotations

import queue
import time
from threading import Event, Lock, Thread
from typing import Callable, Iterator

from . import db
from .cluster import Cluster, WatchExpired
from .errors import FatalError, ReconcileError, backoff_delay
from .models import ChangeKind, ObservedResource

Change = tuple[ChangeKind, ObservedResource]


class ActualStateObserver:
    """Watch live resources and emit coalesced change events.

    One daemon thread per kind lists the current resources (replayed as ADDED)
    and then watches from the listed revision. Bursts for one identity inside
    the debounce window collapse into a single event carrying the latest
    snapshot. Transient failures re-subscribe with exponential backoff; a
    FatalError stops observation and is handed to `on_fatal`.
    """

    def __init__(
        self,
        cluster: Cluster,
        debounce_s: float = 2.0,
        stop: Event | None = None,
        on_fatal: Callable[[FatalError], None] | None = None,
        backoff_base_s: float = 1.0,
        backoff_cap_s: float = 30.0,
    ):
        self.cluster = cluster
        self.debounce_s = max(0.0, float(debounce_s))
        self.stop = stop or Event()
        self.on_fatal = on_fatal
        self.backoff_base_s = backoff_base_s
        self.backoff_cap_s = backoff_cap_s
        self.fatal: FatalError | None = None
        self.synced: dict[str, Event] = {}

        self._lock = Lock()
        self._pending: dict[str, tuple[ChangeKind, ObservedResource, float]] = {}
        self._out: queue.Queue[Change] = queue.Queue()
        self._threads: list[Thread] = []

    def watch(self, kinds: list[str] | tuple[str, ...]) -> Iterator[Change]:
        self.start(kinds)
        return self.events()

    def start(self, kinds: list[str] | tuple[str, ...]) -> None:
        if self._threads:
            return
        for kind in kinds:
            self.synced[kind] = Event()
            t = Thread(target=self._watch_kind, args=(kind,), name=f"watch-{kind}", daemon=True)
            self._threads.append(t)
        self._threads.append(Thread(target=self._flush_loop, name="watch-flush", daemon=True))
        for t in self._threads:
            t.start()

    def events(self, poll_s: float = 0.2) -> Iterator[Change]:
        while True:
            try:
                yield self._out.get(timeout=poll_s)
            except queue.Empty:
                if self.stop.is_set():
                    return

    def join(self, timeout: float | None = None) -> None:
        for t in self._threads:
            t.join(timeout)

    # --- producers ---

    def _watch_kind(self, kind: str) -> None:
        attempt = 0
        while not self.stop.is_set():
            try:
                items, revision = self.cluster.list(kind)
                for item in items:
                    self._offer(ChangeKind.ADDED, item)
                self.synced[kind].set()
                attempt = 0
                while not self.stop.is_set():
                    started = time.monotonic()
                    for change, resource in self.cluster.watch(kind, revision, self.stop):
                        self._offer(change, resource)
                        if resource.revision:
                            revision = resource.revision
                    if time.monotonic() - started < 1.0:
                        # Server closed the watch right away; do not spin.
                        self.stop.wait(self.backoff_base_s)
            except WatchExpired:
                continue
            except FatalError as e:
                self._halt(e)
                return
            except ReconcileError as e:
                delay = backoff_delay(attempt, self.backoff_base_s, self.backoff_cap_s)
                db.log_event("WARN", f"Watch on {kind} failed ({e}); retrying in {delay:.0f}s")
                attempt += 1
                self.stop.wait(delay)

    def _halt(self, err: FatalError) -> None:
        self.fatal = err
        db.log_event("ERROR", f"Watch subscription failed permanently: {err}")
        if self.on_fatal is not None:
            self.on_fatal(err)
        self.stop.set()

    def _offer(self, change: ChangeKind, resource: ObservedResource) -> None:
        if self.debounce_s <= 0:
            self._out.put((change, resource))
            return
        with self._lock:
            prev = self._pending.get(resource.key)
            deadline = prev[2] if prev else time.monotonic() + self.debounce_s
            if prev and prev[0] is ChangeKind.ADDED and change is ChangeKind.UPDATED:
                change = ChangeKind.ADDED
            self._pending[resource.key] = (change, resource, deadline)

    def _flush_loop(self) -> None:
        tick = min(0.2, self.debounce_s) if self.debounce_s > 0 else 0.2
        while not self.stop.is_set():
            self.flush()
            self.stop.wait(tick)
        self.flush(force=True)

    def flush(self, force: bool = False) -> int:
        now = time.monotonic()
        with self._lock:
            due = [k for k, (_, _, deadline) in self._pending.items() if force or deadline <= now]
            ready = [self._pending.pop(k) for k in due]
        for change, resource, _ in ready:
            self._out.put((change, resource))
        return len(ready)
