"""Live-state collaborators.

`KubeCluster` speaks the Kubernetes REST API directly over httpx: list, watch
(chunked JSON lines), get and server-side apply. The Docker-backed cluster
lives in `docker_ops.py`.
"""
from __future__ import annotations

import json
from abc import ABC, abstractmethod
from threading import Event
from typing import Any, Iterator

import httpx

from .errors import FatalError, NotFoundError, ReconcileError, TransientError
from .models import GENERATION_OBSERVED, ChangeKind, ObservedResource, parse_document

FIELD_MANAGER = "cdr"

# kind -> (api prefix, plural)
_RESOURCES: dict[str, tuple[str, str]] = {
    "Deployment": ("/apis/apps/v1", "deployments"),
    "StatefulSet": ("/apis/apps/v1", "statefulsets"),
    "DaemonSet": ("/apis/apps/v1", "daemonsets"),
    "ReplicaSet": ("/apis/apps/v1", "replicasets"),
    "Service": ("/api/v1", "services"),
    "ConfigMap": ("/api/v1", "configmaps"),
    "Secret": ("/api/v1", "secrets"),
    "Kustomization": ("/apis/kustomize.toolkit.fluxcd.io/v1", "kustomizations"),
    "HelmRelease": ("/apis/helm.toolkit.fluxcd.io/v2", "helmreleases"),
    "GitRepository": ("/apis/source.toolkit.fluxcd.io/v1", "gitrepositories"),
}

_WATCH_TYPES = {"ADDED": ChangeKind.ADDED, "MODIFIED": ChangeKind.UPDATED, "DELETED": ChangeKind.DELETED}


class WatchExpired(ReconcileError):
    """The resource version we watched from is too old (HTTP 410). Re-list."""


def resource_path(kind: str, namespace: str, name: str | None = None) -> str:
    prefix, plural = _RESOURCES.get(kind, ("/api/v1", kind.lower() + "s"))
    path = f"{prefix}/namespaces/{namespace}/{plural}"
    return f"{path}/{name}" if name else path


def generation_condition(obj: dict[str, Any]) -> dict[str, tuple[str, str, str]]:
    """A source whose controller has not caught up with its latest spec generation."""
    status = obj.get("status")
    generation = (obj.get("metadata") or {}).get("generation")
    if not isinstance(status, dict) or generation is None:
        return {}
    observed = status.get("observedGeneration", 0)
    if observed == generation:
        return {}
    return {GENERATION_OBSERVED: ("False", "GenerationMismatch", f"generation mismatch ({observed} != {generation})")}


def normalize(obj: dict[str, Any], default_namespace: str = "default") -> ObservedResource:
    """Flatten a live object into the comparable field map."""
    doc = parse_document(obj, default_namespace)
    fields = {f.path: f.value for f in doc.comparable_fields()}
    conditions: dict[str, tuple[str, str, str]] = {}
    for c in (obj.get("status") or {}).get("conditions") or []:
        if isinstance(c, dict) and c.get("type"):
            conditions[str(c["type"])] = (str(c.get("status", "")), str(c.get("reason", "")), str(c.get("message", "")))
    if doc.kind == "GitRepository":
        conditions.update(generation_condition(obj))
    return ObservedResource(
        kind=doc.kind,
        namespace=doc.namespace,
        name=doc.name,
        fields=fields,
        revision=str((obj.get("metadata") or {}).get("resourceVersion", "")),
        conditions=conditions,
    )


class Cluster(ABC):
    namespace: str = "default"

    @abstractmethod
    def ping(self) -> None:
        """Raise FatalError if the cluster cannot be reached."""

    @abstractmethod
    def list(self, kind: str) -> tuple[list[ObservedResource], str]:
        """Current resources of `kind` and the revision to watch from."""

    @abstractmethod
    def watch(self, kind: str, revision: str, stop: Event) -> Iterator[tuple[ChangeKind, ObservedResource]]: ...

    @abstractmethod
    def get(self, kind: str, namespace: str, name: str) -> ObservedResource: ...

    @abstractmethod
    def apply(self, document: dict[str, Any]) -> None:
        """Push a desired document to the live resource."""

    def observable_paths(self, kind: str) -> set[str] | None:
        """Field paths this backend can observe for `kind`; None means all of them."""
        return None

    def close(self) -> None:
        pass


class KubeCluster(Cluster):
    def __init__(
        self,
        api_url: str,
        token: str | None = None,
        namespace: str = "default",
        label_selector: str = "",
        verify: bool = True,
        timeout_s: float = 30.0,
        watch_timeout_s: int = 300,
        client: httpx.Client | None = None,
    ):
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self.namespace = namespace
        self.label_selector = label_selector
        self.watch_timeout_s = watch_timeout_s
        self.client = client or httpx.Client(base_url=api_url.rstrip("/"), headers=headers, verify=verify, timeout=timeout_s)

    def close(self) -> None:
        self.client.close()

    def _check(self, resp: httpx.Response, what: str) -> None:
        if resp.status_code in (401, 403):
            raise FatalError(f"cluster refused {what}: HTTP {resp.status_code}")
        if resp.status_code == 404:
            raise NotFoundError(f"{what} not found")
        if resp.status_code == 410:
            raise WatchExpired(f"{what}: resource version expired")
        if resp.status_code >= 500 or resp.status_code == 429:
            raise TransientError(f"cluster error HTTP {resp.status_code} on {what}")
        if resp.status_code >= 400:
            raise ReconcileError(f"cluster rejected {what}: HTTP {resp.status_code} {resp.text[:200]}")

    def _get(self, path: str, what: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        try:
            resp = self.client.get(path, params=params)
        except httpx.TimeoutException as e:
            raise TransientError(f"cluster timeout on {what}") from e
        except httpx.TransportError as e:
            raise TransientError(f"cluster unreachable: {type(e).__name__}: {e}") from e
        self._check(resp, what)
        return resp.json()

    def ping(self) -> None:
        try:
            self._get("/version", "version")
        except (TransientError, NotFoundError, ReconcileError) as e:
            raise FatalError(f"cannot reach cluster: {e}") from e

    def _params(self) -> dict[str, Any]:
        return {"labelSelector": self.label_selector} if self.label_selector else {}

    def list(self, kind: str) -> tuple[list[ObservedResource], str]:
        body = self._get(resource_path(kind, self.namespace), f"list {kind}", self._params())
        items = []
        for obj in body.get("items") or []:
            # List responses omit kind on items.
            obj = {**obj, "kind": kind}
            items.append(normalize(obj, self.namespace))
        return items, str((body.get("metadata") or {}).get("resourceVersion", ""))

    def get(self, kind: str, namespace: str, name: str) -> ObservedResource:
        obj = self._get(resource_path(kind, namespace, name), f"{kind}/{namespace}/{name}")
        return normalize({**obj, "kind": kind}, namespace)

    def watch(self, kind: str, revision: str, stop: Event) -> Iterator[tuple[ChangeKind, ObservedResource]]:
        params = {
            **self._params(),
            "watch": "true",
            "allowWatchBookmarks": "true",
            "timeoutSeconds": self.watch_timeout_s,
        }
        if revision:
            params["resourceVersion"] = revision
        what = f"watch {kind}"
        try:
            with self.client.stream(
                "GET",
                resource_path(kind, self.namespace),
                params=params,
                timeout=httpx.Timeout(self.client.timeout.connect, read=self.watch_timeout_s + 30),
            ) as resp:
                if resp.status_code >= 400:
                    resp.read()
                    self._check(resp, what)
                for line in resp.iter_lines():
                    if stop.is_set():
                        return
                    if not line.strip():
                        continue
                    event = json.loads(line)
                    etype = event.get("type")
                    obj = event.get("object") or {}
                    if etype == "ERROR":
                        if obj.get("code") == 410:
                            raise WatchExpired(f"{what}: {obj.get('message', 'expired')}")
                        raise TransientError(f"{what}: {obj.get('message', 'watch error')}")
                    if etype not in _WATCH_TYPES:
                        continue  # BOOKMARK
                    yield _WATCH_TYPES[etype], normalize({**obj, "kind": kind}, self.namespace)
        except httpx.TimeoutException as e:
            raise TransientError(f"{what} timed out") from e
        except httpx.TransportError as e:
            raise TransientError(f"{what} interrupted: {type(e).__name__}: {e}") from e

    def apply(self, document: dict[str, Any]) -> None:
        doc = parse_document(document, self.namespace)
        body = {**document, "metadata": {**(document.get("metadata") or {}), "namespace": doc.namespace}}
        what = f"apply {doc.key}"
        try:
            resp = self.client.patch(
                resource_path(doc.kind, doc.namespace, doc.name),
                params={"fieldManager": FIELD_MANAGER, "force": "true"},
                # JSON is valid YAML, so the apply-patch content type accepts it.
                content=json.dumps(body),
                headers={"Content-Type": "application/apply-patch+yaml"},
            )
        except httpx.TimeoutException as e:
            raise TransientError(f"{what} timed out") from e
        except httpx.TransportError as e:
            raise TransientError(f"{what} failed: {type(e).__name__}: {e}") from e
        self._check(resp, what)
