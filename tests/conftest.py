import dataclasses
import os as _os
import sys
from threading import Event

import pytest

# Ensure project root is importable (so `import main` works without installing)
_project_root = _os.path.dirname(_os.path.dirname(__file__))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from cdr import alerts, db  # noqa: E402
from cdr.cluster import Cluster  # noqa: E402
from cdr.errors import NotFoundError  # noqa: E402
from cdr.models import ChangeKind, ObservedResource, parse_document  # noqa: E402
from cdr.settings import settings  # noqa: E402


@pytest.fixture(autouse=True)
def isolated_db(tmp_path, monkeypatch):
    """Every test gets its own sqlite file and no email."""
    test_settings = dataclasses.replace(settings, db_path=str(tmp_path / "cdr.db"), enable_email=False)
    monkeypatch.setattr(db, "settings", test_settings)
    monkeypatch.setattr(alerts, "settings", test_settings)
    db.init_db()
    return test_settings


class FakeCluster(Cluster):
    """In-memory live state keyed by Kind/namespace/name."""

    def __init__(self, namespace: str = "default"):
        self.namespace = namespace
        self.live: dict[str, ObservedResource] = {}
        self.applied: list[dict] = []
        self.events: list[tuple[ChangeKind, ObservedResource]] = []
        self.list_calls = 0

    def set(self, kind, name, fields, conditions=None, namespace="default"):
        r = ObservedResource(kind=kind, namespace=namespace, name=name, fields=fields, conditions=conditions or {})
        self.live[r.key] = r
        return r

    def ping(self):
        pass

    def list(self, kind):
        self.list_calls += 1
        return [r for r in self.live.values() if r.kind == kind], "1"

    def watch(self, kind, revision, stop: Event):
        for change, resource in self.events:
            if resource.kind == kind:
                yield change, resource
        self.events = [e for e in self.events if e[1].kind != kind]
        stop.wait(0.05)

    def get(self, kind, namespace, name):
        key = f"{kind}/{namespace}/{name}"
        if key not in self.live:
            raise NotFoundError(f"{key} not found")
        return self.live[key]

    def apply(self, document):
        self.applied.append(document)
        doc = parse_document(document, self.namespace)
        self.live[doc.key] = ObservedResource(
            kind=doc.kind,
            namespace=doc.namespace,
            name=doc.name,
            fields={f.path: f.value for f in doc.comparable_fields()},
        )


def deployment(name, replicas=3, image="nginx:1.25", namespace=None):
    meta = {"name": name}
    if namespace:
        meta["namespace"] = namespace
    return {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": meta,
        "spec": {
            "replicas": replicas,
            "template": {"spec": {"containers": [{"name": name, "image": image}]}},
        },
    }


def config_map(name, data=None):
    doc = {"apiVersion": "v1", "kind": "ConfigMap", "metadata": {"name": name}}
    if data is not None:
        doc["data"] = data
    return doc


@pytest.fixture
def cluster():
    return FakeCluster()
