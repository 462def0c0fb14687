import dataclasses

import pytest
import yaml
from conftest import deployment
from fastapi.testclient import TestClient

import main
from cdr.models import MonitoredScope
from cdr.reconciler import ReconcileContext, ReconciliationLoop
from cdr.registry import LocalRegistry
from cdr.runtime import RuntimeState

MANIFEST = yaml.safe_dump(deployment("web", replicas=3))


@pytest.fixture
def app_client(monkeypatch, isolated_db, cluster):
    def build(start_loop=False):
        monkeypatch.setattr(main, "settings", dataclasses.replace(isolated_db, start_loop=start_loop))
        monkeypatch.setattr(main, "runtime", RuntimeState())

        def from_settings(s, runtime):
            ctx = ReconcileContext(
                scope=MonitoredScope("base"), registry=LocalRegistry(cluster=cluster), cluster=cluster
            )
            return ReconciliationLoop(ctx, runtime=runtime, kinds=("Deployment",), debounce_s=0, fallback_interval_s=3600)

        monkeypatch.setattr(main, "from_settings", from_settings)
        return TestClient(main.app)

    return build


def _seed(client):
    assert client.post("/scopes", json={"slug": "base"}).status_code == 200
    r = client.post("/units/import", json={"scope": "base", "manifests": MANIFEST})
    assert r.status_code == 200
    assert r.json() == {"created": ["deployment-web"]}


def test_health_and_status(app_client):
    with app_client() as client:
        assert client.get("/health").json()["status"] == "healthy"
        status = client.get("/status").json()
        assert status["state"] == "idle"
        assert status["scope"] == "base"
        assert status["queued"] == 0


def test_registry_management_endpoints(app_client):
    with app_client() as client:
        _seed(client)
        r = client.post("/scopes", json={"slug": "dev", "upstream": "base", "clone": True})
        assert r.status_code == 200

        scopes = client.get("/scopes").json()
        assert [s["slug"] for s in scopes] == ["base", "dev"]

        units = client.get("/units", params={"scope": "dev"}).json()
        assert units[0]["resource"] == "Deployment/default/web"
        assert units[0]["upstream_unit_id"]

        assert client.post("/scopes", json={"slug": "base"}).status_code == 409
        assert client.post("/scopes", json={"slug": "x", "upstream": "nope"}).status_code == 404
        assert client.get("/units", params={"scope": "nope"}).status_code == 404


def test_dry_run_reports_drift_without_changing_anything(app_client, cluster):
    with app_client() as client:
        _seed(client)
        assert client.get("/reports/latest").status_code == 404
        cluster.set("Deployment", "web", {"spec.replicas": 5, "spec.template.spec.containers[0].image": "nginx:1.25"})

        r = client.post("/reconcile", json={"dry_run": True})

        assert r.status_code == 200
        body = r.json()
        assert body["drift_count"] == 1
        assert body["items"][0]["expected"] == "3"
        assert yaml.safe_load(body["patches"]["deployment-web"]) == {"spec": {"replicas": 3}}
        assert cluster.applied == []
        assert client.get("/reports/latest").json()["drift_count"] == 1
        assert client.get("/reports", params={"limit": 5}).json()[0]["trigger"] == "dry-run"
        assert client.get("/events", params={"level": "WARN"}).json()


def test_reconcile_requires_running_loop(app_client):
    with app_client() as client:
        r = client.post("/reconcile", json={})
        assert r.status_code == 409


def test_reconcile_queues_work_when_running(app_client, cluster):
    LocalRegistry().create_scope("base")
    with app_client(start_loop=True) as client:
        r = client.post("/reconcile", json={"identities": ["Deployment/default/web"]})
        assert r.status_code == 200
        assert "queued" in r.json()
        assert client.get("/status").json()["state"] == "running"
