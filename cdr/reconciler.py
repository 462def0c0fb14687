from __future__ import annotations

import time
from dataclasses import dataclass, field, replace
from threading import Event, Lock, Thread

from . import db
from .advisor import ClaudeAdvisor
from .alerts import drift_alert, send_email
from .analyzer import DriftAnalyzer
from .cluster import Cluster, KubeCluster
from .comparator import compare
from .docker_ops import DockerCluster
from .errors import FatalError, NotFoundError, ReconcileError, retry_call
from .models import CycleReport, DesiredUnit, DriftRecord, MonitoredScope
from .observer import ActualStateObserver
from .propagation import PropagationEngine, PropagationState
from .registry import HttpRegistry, LocalRegistry, Registry
from .runtime import QueueFull, RuntimeState, WorkQueue
from .settings import Settings, parse_label_selector


@dataclass
class ReconcileContext:
    """Everything one reconciliation pass needs, passed explicitly."""

    scope: MonitoredScope
    registry: Registry
    cluster: Cluster
    stop: Event = field(default_factory=Event)
    namespace: str = "default"
    auto_correct: bool = False
    retry_attempts: int = 3


class ReconciliationLoop:
    """Event-driven drift reconciliation with a fallback timer.

    Watch events become keyed work items; a fixed pool of workers drains them.
    At most one reconciliation per resource identity is in flight at a time.
    """

    def __init__(
        self,
        ctx: ReconcileContext,
        analyzer: DriftAnalyzer | None = None,
        runtime: RuntimeState | None = None,
        kinds: tuple[str, ...] = ("Deployment", "Service", "ConfigMap"),
        workers: int = 4,
        queue_size: int = 1024,
        fallback_interval_s: float = 300,
        debounce_s: float = 2.0,
    ):
        self.ctx = ctx
        self.analyzer = analyzer or DriftAnalyzer()
        self.runtime = runtime or RuntimeState()
        self.kinds = kinds
        self.workers = max(1, int(workers))
        self.fallback_interval_s = fallback_interval_s
        self.queue = WorkQueue(queue_size)
        self.observer = ActualStateObserver(ctx.cluster, debounce_s=debounce_s, stop=ctx.stop, on_fatal=self._on_fatal)
        self._threads: list[Thread] = []
        self._activity_lock = Lock()
        self._last_activity = time.monotonic()

    # --- lifecycle ---

    def start(self) -> None:
        """Verify collaborators, then start watch, dispatcher, workers and timer threads.

        Raises FatalError (after recording it) when the registry or cluster is unreachable.
        """
        try:
            self.ctx.registry.ping()
            self.ctx.cluster.ping()
            self.ctx.registry.resolve_scope(self.ctx.scope.scope)
            if self.ctx.scope.set_id:
                set_id = self.ctx.registry.resolve_set(self.ctx.scope.scope, self.ctx.scope.set_id)
                self.ctx.scope = replace(self.ctx.scope, set_id=set_id)
        except NotFoundError as e:
            self._on_fatal(FatalError(str(e)))
            raise FatalError(str(e)) from e
        except FatalError as e:
            self._on_fatal(e)
            raise

        self.runtime.set_state("running")
        db.log_event("INFO", f"Reconciler started (scope={self.ctx.scope.scope}, auto_correct={self.ctx.auto_correct})")
        self.observer.start(self.kinds)
        self._spawn(self._dispatch, "dispatch")
        for i in range(self.workers):
            self._spawn(self._work, f"worker-{i}")
        self._spawn(self._timer, "fallback-timer")

    def _spawn(self, target, name: str) -> None:
        t = Thread(target=target, name=name, daemon=True)
        self._threads.append(t)
        t.start()

    def stop(self, timeout: float = 30.0) -> None:
        """Stop accepting events, let in-flight passes finish, then return."""
        if self.runtime.snapshot()["state"] == "running":
            self.runtime.set_state("stopping")
        self.ctx.stop.set()
        self.queue.close()
        deadline = time.monotonic() + timeout
        for t in self._threads:
            t.join(max(0.0, deadline - time.monotonic()))
        self.observer.join(max(0.0, deadline - time.monotonic()))
        self.ctx.cluster.close()
        if self.runtime.snapshot()["state"] != "halted":
            self.runtime.set_state("stopped")
        db.log_event("INFO", "Reconciler stopped")

    def _on_fatal(self, err: FatalError) -> None:
        self.runtime.halt(str(err))
        db.log_event("ERROR", f"Reconciler halted: {err}")
        send_email("HALTED: drift reconciler", str(err))
        self.ctx.stop.set()
        self.queue.close()

    # --- threads ---

    def _touch(self) -> None:
        with self._activity_lock:
            self._last_activity = time.monotonic()

    def _dispatch(self) -> None:
        for change, resource in self.observer.events():
            self.runtime.mark_event()
            self._touch()
            try:
                self.queue.put(resource.key)
            except QueueFull:
                db.log_event("WARN", f"Work queue full; dropped {change.value} event for {resource.key}")

    def _timer(self) -> None:
        while not self.ctx.stop.wait(min(1.0, self.fallback_interval_s)):
            with self._activity_lock:
                idle = time.monotonic() - self._last_activity
            if idle < self.fallback_interval_s:
                continue
            self._touch()
            try:
                self.enqueue_all()
            except ReconcileError as e:
                db.log_event("WARN", f"Fallback sweep could not list units: {e}")

    def _work(self) -> None:
        while True:
            batch = self.queue.get_batch(timeout=0.5)
            if not batch:
                if self.queue.closed:
                    return
                continue
            try:
                self.run_cycle(batch, trigger="event")
            except Exception as e:  # keep the worker alive; the cycle is reported as failed
                db.log_event("ERROR", f"Reconciliation cycle crashed: {type(e).__name__}: {e}")
            finally:
                self.queue.done(batch)

    def enqueue_all(self) -> int:
        n = 0
        for unit in self.monitored_units():
            doc = unit.document(self.ctx.namespace)
            try:
                if self.queue.put(doc.key):
                    n += 1
            except QueueFull:
                db.log_event("WARN", f"Work queue full during fallback sweep at {doc.key}")
                break
        return n

    # --- one pass ---

    def monitored_units(self) -> list[DesiredUnit]:
        ctx = self.ctx
        return retry_call(
            lambda: ctx.registry.list_units(ctx.scope.scope, ctx.scope),
            attempts=ctx.retry_attempts,
            stop=ctx.stop,
        )

    def run_cycle(
        self, identities: list[str] | None = None, trigger: str = "manual", auto_correct: bool | None = None
    ) -> CycleReport:
        """Compare, analyze, report and (optionally) correct. Always returns a report."""
        ctx = self.ctx
        report = CycleReport(trigger=trigger)

        try:
            units = self.monitored_units()
        except ReconcileError as e:
            report.fail(ctx.scope.scope, f"cannot list units: {type(e).__name__}: {e}")
            report.summary = "Cycle skipped: registry unavailable"
            return self._finish(report)

        wanted = set(identities) if identities is not None else None
        records: list[DriftRecord] = []
        compared = 0
        for unit in units:
            doc = unit.document(ctx.namespace)
            if wanted is not None and doc.key not in wanted:
                continue
            reason = doc.unmonitored_reason()
            if reason:
                report.unmonitored.append({"unit": unit.slug, "resource": doc.key, "reason": reason})
                continue
            try:
                observed = retry_call(
                    lambda: ctx.cluster.get(doc.kind, doc.namespace, doc.name),
                    attempts=ctx.retry_attempts,
                    stop=ctx.stop,
                )
            except NotFoundError:
                report.fail(doc.key, "not found")
                continue
            except ReconcileError as e:
                report.fail(doc.key, f"{type(e).__name__}: {e}")
                continue
            compared += 1
            records.extend(compare(unit, observed, ctx.namespace, ctx.cluster.observable_paths(doc.kind)))

        report.items = records
        if records:
            analysis = self.analyzer.analyze(records, unit_count=compared)
            report.summary = analysis.summary
            report.plans = analysis.plans
            if analysis.note:
                report.warnings.append(analysis.note)
            for r in records:
                db.log_event(
                    "WARN",
                    f"Drift on {r.resource} {r.path}: expected={r.expected} actual={r.actual} ({r.severity.value})",
                    scope=ctx.scope.scope,
                    unit=r.unit_slug,
                )
        else:
            report.summary = f"No drift detected across {compared} units"

        correct = ctx.auto_correct if auto_correct is None else auto_correct
        if correct:
            self._correct(report)
        return self._finish(report)

    def _correct(self, report: CycleReport) -> None:
        for plan in report.plans:
            if self.ctx.stop.is_set():
                report.warnings.append("shutdown requested; remaining corrections not applied")
                break
            engine = PropagationEngine(self.ctx.registry, stop=self.ctx.stop)
            result = engine.run(plan)
            report.propagation.append(result.to_dict())
            report.warnings.extend(result.notes)
            if result.state is PropagationState.DONE:
                report.corrections_applied += 1
                db.log_event("INFO", f"Correction applied: {plan.explanation}", scope=self.ctx.scope.scope, unit=plan.unit_slug)
            else:
                report.fail(plan.unit_slug, f"correction failed: {result.error}")
                db.log_event("ERROR", f"Correction failed: {result.error}", scope=self.ctx.scope.scope, unit=plan.unit_slug)

    def _finish(self, report: CycleReport) -> CycleReport:
        data = report.to_dict()
        db.save_report(data)
        db.log_event(
            "INFO" if not report.failures else "WARN",
            f"Cycle ({report.trigger}): {report.summary}; corrections applied: {report.corrections_applied}",
            scope=self.ctx.scope.scope,
        )
        self.runtime.record_cycle(data)
        drift_alert(data)
        return report


def from_settings(s: Settings, runtime: RuntimeState | None = None) -> ReconciliationLoop:
    """Wire collaborators from configuration."""
    cluster: Cluster
    if s.cluster == "docker":
        cluster = DockerCluster(namespace=s.namespace)
    else:
        cluster = KubeCluster(
            s.kube_api,
            token=s.kube_token,
            namespace=s.namespace,
            label_selector=s.label_selector,
            verify=s.kube_verify,
            timeout_s=s.cluster_timeout_s,
        )

    registry: Registry
    if s.registry == "http":
        registry = HttpRegistry(s.registry_url, token=s.registry_token, timeout_s=s.registry_timeout_s)
    else:
        registry = LocalRegistry(cluster=cluster, namespace=s.namespace)

    advisor = None
    if s.claude_api_key:
        advisor = ClaudeAdvisor(s.claude_api_key, s.advisor_model, url=s.advisor_url, timeout_s=s.advisor_timeout_s)

    scope = MonitoredScope(scope=s.scope, set_id=s.unit_set, labels=parse_label_selector(s.unit_labels))
    ctx = ReconcileContext(
        scope=scope,
        registry=registry,
        cluster=cluster,
        namespace=s.namespace,
        auto_correct=s.auto_correct,
        retry_attempts=s.retry_attempts,
    )
    return ReconciliationLoop(
        ctx,
        analyzer=DriftAnalyzer(advisor),
        runtime=runtime,
        kinds=s.kinds,
        workers=s.workers,
        queue_size=s.queue_size,
        fallback_interval_s=s.fallback_interval_s,
        debounce_s=s.debounce_s,
    )
