import json

import httpx
import pytest
import yaml
from conftest import FakeCluster, deployment

from cdr.errors import ConflictError, FatalError, NotFoundError, TransientError
from cdr.models import MonitoredScope
from cdr.registry import HttpRegistry, LocalRegistry, where_clause

MANIFESTS = """
apiVersion: apps/v1
kind: Deployment
metadata:
  name: web
spec:
  replicas: 3
---
apiVersion: v1
kind: ConfigMap
metadata:
  name: web-config
data:
  log_level: info
"""


def test_local_registry_import_and_filter():
    reg = LocalRegistry(cluster=FakeCluster())
    reg.create_scope("base")
    created = reg.import_manifests("base", MANIFESTS, labels={"monitor": "true"})
    assert [u.slug for u in created] == ["deployment-web", "configmap-web-config"]

    other = reg.create_unit("base", "api", deployment("api"))
    set_id = reg.create_set("base", "critical")
    reg.add_to_set(set_id, created[0].id)

    assert {u.slug for u in reg.list_units("base", MonitoredScope("base", labels={"monitor": "true"}))} == {
        "deployment-web",
        "configmap-web-config",
    }
    assert [u.slug for u in reg.list_units("base", MonitoredScope("base", set_id=set_id))] == ["deployment-web"]
    assert reg.resolve_set("base", "critical") == set_id
    assert other.revision == 1


def test_local_registry_errors():
    reg = LocalRegistry()
    reg.create_scope("base")
    with pytest.raises(ConflictError):
        reg.create_scope("base")
    with pytest.raises(NotFoundError):
        reg.list_units("nope")
    with pytest.raises(NotFoundError):
        reg.resolve_set("base", "missing")
    with pytest.raises(NotFoundError):
        reg.get_unit("missing")


def test_clone_links_every_unit():
    reg = LocalRegistry()
    reg.create_scope("base")
    web = reg.create_unit("base", "web", deployment("web"))
    reg.clone_scope("dev", "base")

    [copy] = reg.list_units("dev")
    assert copy.upstream_unit_id == web.id
    assert copy.data == web.data


def test_upstream_unit_must_live_in_upstream_scope():
    reg = LocalRegistry()
    reg.create_scope("base")
    reg.create_scope("other")
    reg.create_scope("dev", "base")
    stray = reg.create_unit("other", "web", deployment("web"))
    with pytest.raises(ValueError):
        reg.create_unit("dev", "web", deployment("web"), upstream_unit_id=stray.id)


def test_where_clause():
    scope = MonitoredScope("base", set_id="set1", labels={"monitor": "true"})
    assert where_clause(scope) == "SetIDs contains 'set1' AND Labels['monitor'] = 'true'"
    assert where_clause(None, "u1") == "UnitID = 'u1'"


def test_where_clause_escapes_quotes():
    scope = MonitoredScope("base", set_id="o'brien", labels={"team's": "it's"})
    assert where_clause(scope, "u'1") == (
        "UnitID = 'u''1' AND SetIDs contains 'o''brien' AND Labels['team''s'] = 'it''s'"
    )


class FakeHub:
    """Minimal ConfigHub-style API behind httpx.MockTransport."""

    def __init__(self):
        self.units = {
            "u1": {
                "UnitID": "u1",
                "Slug": "web",
                "SpaceID": "sp-base",
                "Data": yaml.safe_dump(deployment("web", replicas=3)),
                "Labels": {"monitor": "true"},
                "Version": 4,
            }
        }
        self.requests = []
        self.status = None

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.status:
            return httpx.Response(self.status)
        path = request.url.path
        if path == "/space":
            return httpx.Response(
                200,
                json=[
                    {"SpaceID": "sp-base", "Slug": "base", "Seq": 1},
                    {"SpaceID": "sp-dev", "Slug": "dev", "UpstreamSpaceID": "sp-base", "Seq": 2},
                ],
            )
        if path == "/space/sp-base/unit" and request.method == "GET":
            return httpx.Response(200, json=list(self.units.values()))
        if path == "/space/sp-dev/unit" and request.method == "GET":
            return httpx.Response(200, json=[])
        if path == "/space/sp-base/unit/u1" and request.method == "GET":
            return httpx.Response(200, json=self.units["u1"])
        if path == "/space/sp-base/unit/u1" and request.method == "PATCH":
            if request.headers["If-Match"] != str(self.units["u1"]["Version"]):
                return httpx.Response(412)
            doc = yaml.safe_load(self.units["u1"]["Data"])
            for op in json.loads(request.content):
                assert op["op"] == "replace" and op["path"] == "/spec/replicas"
                doc["spec"]["replicas"] = op["value"]
            self.units["u1"] = {**self.units["u1"], "Data": yaml.safe_dump(doc), "Version": self.units["u1"]["Version"] + 1}
            return httpx.Response(200, json=self.units["u1"])
        if path == "/space/sp-base/unit/u1/apply":
            return httpx.Response(200, json={})
        return httpx.Response(404)


@pytest.fixture
def hub():
    return FakeHub()


@pytest.fixture
def http_registry(hub):
    client = httpx.Client(base_url="https://hub.test", transport=httpx.MockTransport(hub.handler))
    return HttpRegistry("https://hub.test", client=client)


def test_http_registry_lists_units_with_where_clause(hub, http_registry):
    units = http_registry.list_units("base", MonitoredScope("base", labels={"monitor": "true"}))

    assert [u.slug for u in units] == ["web"]
    assert units[0].data["spec"]["replicas"] == 3
    assert units[0].revision == 4
    assert hub.requests[-1].url.params["where"] == "Labels['monitor'] = 'true'"
    assert http_registry.resolve_scope("dev").upstream_id == "sp-base"


def test_http_registry_update_sends_json_patch(hub, http_registry):
    unit = http_registry.update_unit("u1", {"spec": {"replicas": 5}}, revision=4)

    assert unit.data["spec"]["replicas"] == 5
    assert unit.revision == 5
    patch = hub.requests[-1]
    assert patch.headers["Content-Type"] == "application/json-patch+json"

    with pytest.raises(ConflictError):
        http_registry.update_unit("u1", {"spec": {"replicas": 6}}, revision=4)


def test_http_registry_apply(hub, http_registry):
    http_registry.apply_unit("u1")
    assert hub.requests[-1].url.path == "/space/sp-base/unit/u1/apply"
    assert hub.requests[-1].method == "POST"


@pytest.mark.parametrize(
    "status,error",
    [(401, FatalError), (503, TransientError), (429, TransientError), (404, NotFoundError)],
)
def test_http_registry_status_mapping(hub, http_registry, status, error):
    hub.status = status
    with pytest.raises(error):
        http_registry.list_scopes()


def test_http_registry_ping_is_fatal_when_unreachable(hub, http_registry):
    hub.status = 503
    with pytest.raises(FatalError):
        http_registry.ping()
