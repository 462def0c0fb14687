import threading
import time

import httpx
import pytest
from conftest import FakeCluster, config_map, deployment

from cdr import db
from cdr.advisor import ClaudeAdvisor
from cdr.analyzer import DriftAnalyzer
from cdr.errors import FatalError
from cdr.models import ChangeKind, MonitoredScope
from cdr.reconciler import ReconcileContext, ReconciliationLoop
from cdr.registry import LocalRegistry


@pytest.fixture
def setup():
    cluster = FakeCluster()
    reg = LocalRegistry(cluster=cluster)
    reg.create_scope("base")
    web = reg.create_unit("base", "web", deployment("web", replicas=3), labels={"monitor": "true"})
    reg.create_unit("base", "cfg", config_map("cfg", {"log_level": "info"}), labels={"monitor": "true"})
    reg.create_unit("base", "empty", config_map("empty"), labels={"monitor": "true"})
    reg.create_unit("base", "ignored", deployment("ignored"), labels={"monitor": "false"})

    cluster.apply(deployment("web", replicas=3))
    cluster.apply(config_map("cfg", {"log_level": "info"}))
    cluster.applied.clear()

    ctx = ReconcileContext(
        scope=MonitoredScope("base", labels={"monitor": "true"}),
        registry=reg,
        cluster=cluster,
    )
    loop = ReconciliationLoop(ctx, workers=2, fallback_interval_s=3600, debounce_s=0)
    return loop, reg, cluster, web


def test_clean_cluster_reports_no_drift(setup):
    loop, *_ = setup
    report = loop.run_cycle()

    assert report.drift_count == 0
    assert report.summary == "No drift detected across 2 units"
    assert report.unmonitored == [{"unit": "empty", "resource": "ConfigMap/default/empty", "reason": "no desired data"}]
    assert db.latest_reports(1)[0]["summary"] == report.summary


def test_drift_is_reported_but_not_corrected_by_default(setup):
    loop, _, cluster, _ = setup
    cluster.set("Deployment", "web", {"spec.replicas": 5, "spec.template.spec.containers[0].image": "nginx:1.25"})

    report = loop.run_cycle()

    assert report.drift_count == 1
    item = report.to_dict()["items"][0]
    assert (item["field"], item["expected"], item["actual"]) == ("spec.replicas", "3", "5")
    assert report.corrections_applied == 0
    assert cluster.applied == []
    assert report.plans[0].patch == {"spec": {"replicas": 3}}
    assert any("Drift on Deployment/default/web" in e["message"] for e in db.latest_events(level="WARN"))


def test_auto_correct_restores_live_state(setup):
    loop, reg, cluster, web = setup
    cluster.set("Deployment", "web", {"spec.replicas": 5, "spec.template.spec.containers[0].image": "nginx:1.25"})

    report = loop.run_cycle(auto_correct=True)

    assert report.corrections_applied == 1
    assert cluster.live["Deployment/default/web"].fields["spec.replicas"] == 3
    assert reg.get_unit(web.id).data["spec"]["replicas"] == 3
    assert report.propagation[0]["state"] == "done"
    assert loop.run_cycle().drift_count == 0


def test_missing_live_resource_is_a_failure_not_drift(setup):
    loop, _, cluster, _ = setup
    del cluster.live["ConfigMap/default/cfg"]

    report = loop.run_cycle()

    assert report.drift_count == 0
    assert report.failures == [{"resource": "ConfigMap/default/cfg", "reason": "not found"}]


def test_identities_limit_the_pass(setup):
    loop, _, cluster, _ = setup
    cluster.set("Deployment", "web", {"spec.replicas": 1})
    report = loop.run_cycle(["ConfigMap/default/cfg"])
    assert report.drift_count == 0


def test_events_drive_reconciliation(setup):
    loop, _, cluster, _ = setup
    loop.ctx.auto_correct = True
    loop.kinds = ("Deployment",)
    loop.start()
    try:
        cluster.events = [(ChangeKind.UPDATED, cluster.set("Deployment", "web", {"spec.replicas": 7}))]
        deadline = time.monotonic() + 10
        while time.monotonic() < deadline:
            if cluster.live["Deployment/default/web"].fields.get("spec.replicas") == 3:
                break
            time.sleep(0.05)
    finally:
        loop.stop(timeout=5)

    assert cluster.live["Deployment/default/web"].fields["spec.replicas"] == 3
    assert loop.runtime.snapshot()["state"] == "stopped"
    assert loop.runtime.snapshot()["cycles"] >= 1


def test_unreachable_cluster_halts_on_start(setup):
    loop, _, cluster, _ = setup

    def refuse():
        raise FatalError("credentials revoked")

    cluster.ping = refuse

    with pytest.raises(FatalError):
        loop.start()

    assert loop.runtime.snapshot()["state"] == "halted"
    assert loop.ctx.stop.is_set()
    assert any("halted" in e["message"] for e in db.latest_events(level="ERROR"))


def test_broken_advisor_still_saves_a_report(setup):
    _, reg, cluster, _ = setup
    client = httpx.Client(transport=httpx.MockTransport(lambda r: httpx.Response(200, json=[])))
    advisor = ClaudeAdvisor("k", "model", url="https://advisor.test/v1/messages", client=client)
    ctx = ReconcileContext(scope=MonitoredScope("base", labels={"monitor": "true"}), registry=reg, cluster=cluster)
    loop = ReconciliationLoop(ctx, analyzer=DriftAnalyzer(advisor), fallback_interval_s=3600, debounce_s=0)
    cluster.set("Deployment", "web", {"spec.replicas": 5, "spec.template.spec.containers[0].image": "nginx:1.25"})

    report = loop.run_cycle()

    assert report.drift_count == 1
    assert report.summary == "1 drift items detected across 2 units"
    assert any("advisor unavailable" in w for w in report.warnings)
    assert db.latest_reports(1)[0]["drift_count"] == 1


def _wait_for(condition, timeout=10.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if condition():
            return True
        time.sleep(0.02)
    return False


def test_duplicate_events_during_a_pass_coalesce_into_one_follow_up(setup):
    loop, _, cluster, _ = setup
    loop.ctx.auto_correct = True
    loop.kinds = ("Deployment",)
    cluster.set("Deployment", "web", {"spec.replicas": 5, "spec.template.spec.containers[0].image": "nginx:1.25"})

    entered, release = threading.Event(), threading.Event()
    get = cluster.get

    def slow_get(kind, namespace, name):
        if not entered.is_set():
            entered.set()
            release.wait(10)
        return get(kind, namespace, name)

    cluster.get = slow_get
    loop.start()
    try:
        assert entered.wait(10)
        live = cluster.live["Deployment/default/web"]
        cluster.events = [(ChangeKind.UPDATED, live)] * 3
        assert _wait_for(lambda: loop.runtime.snapshot()["events"] >= 4)
        assert loop.queue.in_flight() == {"Deployment/default/web"}

        release.set()
        assert _wait_for(
            lambda: loop.runtime.snapshot()["cycles"] >= 2 and not loop.queue.in_flight() and len(loop.queue) == 0
        )
        time.sleep(0.3)
    finally:
        release.set()
        loop.stop(timeout=5)

    assert loop.runtime.snapshot()["cycles"] == 2
    assert len(cluster.applied) == 1
    assert cluster.live["Deployment/default/web"].fields["spec.replicas"] == 3
