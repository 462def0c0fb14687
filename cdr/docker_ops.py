"""Docker as a live-state backend.

Containers labelled ``cdr.kind``/``cdr.namespace``/``cdr.name`` are grouped into
one workload: ``spec.replicas`` is the number of running containers and the
container image is the image of the first one. Applying a workload document
starts or removes containers until the live state matches it.
"""
from __future__ import annotations

import re
import secrets
from threading import Event
from typing import Any, Iterator

import docker
from docker.errors import APIError, DockerException, NotFound

from .cluster import Cluster
from .errors import FatalError, NotFoundError, ReconcileError, TransientError
from .models import IMAGE, REPLICAS, WORKLOAD_KINDS, ChangeKind, ObservedResource, parse_document

LABEL_KIND = "cdr.kind"
LABEL_NAMESPACE = "cdr.namespace"
LABEL_NAME = "cdr.name"

NAME_RE = re.compile(r"^[a-z0-9][a-z0-9\-\.]{0,62}$")


def validate_name(name: str) -> None:
    if not NAME_RE.match(name):
        raise ValueError("Invalid resource name. Use lowercase letters/numbers, '-' and '.' (max 63 chars).")


class DockerCluster(Cluster):
    def __init__(self, namespace: str = "default", network: str | None = None, client: Any = None):
        self.namespace = namespace
        self.network = network
        self._client = client

    def _c(self) -> Any:
        if self._client is None:
            try:
                self._client = docker.from_env()
            except DockerException as e:
                raise FatalError(f"Docker is not available: {e}") from e
        return self._client

    def ping(self) -> None:
        try:
            self._c().ping()
        except DockerException as e:
            raise FatalError(f"Docker is not available: {e}") from e

    def _containers(self, kind: str, namespace: str | None = None, name: str | None = None) -> list[Any]:
        labels = [f"{LABEL_KIND}={kind}", f"{LABEL_NAMESPACE}={namespace or self.namespace}"]
        if name:
            labels.append(f"{LABEL_NAME}={name}")
        try:
            return list(self._c().containers.list(all=True, filters={"label": labels}))
        except APIError as e:
            raise TransientError(f"docker list failed: {e}") from e

    def _observe(self, kind: str, namespace: str, name: str, containers: list[Any]) -> ObservedResource:
        running = [c for c in containers if c.status == "running"]
        fields: dict[str, Any] = {REPLICAS: len(running)}
        source = running or containers
        if source:
            tags = source[0].image.tags if source[0].image is not None else []
            fields[IMAGE] = tags[0] if tags else source[0].attrs.get("Config", {}).get("Image", "")
        conditions = {}
        if containers and not running:
            conditions["Available"] = ("False", "NoRunningContainers", f"{len(containers)} container(s) stopped")
        return ObservedResource(kind=kind, namespace=namespace, name=name, fields=fields, conditions=conditions)

    def observable_paths(self, kind: str) -> set[str] | None:
        # Resource requests are not read back from containers.
        return {REPLICAS, IMAGE}

    def _group(self, kind: str) -> dict[str, list[Any]]:
        by_name: dict[str, list[Any]] = {}
        for c in self._containers(kind):
            by_name.setdefault(c.labels.get(LABEL_NAME, ""), []).append(c)
        return by_name

    def list(self, kind: str) -> tuple[list[ObservedResource], str]:
        if kind not in WORKLOAD_KINDS:
            return [], ""
        items = [self._observe(kind, self.namespace, n, cs) for n, cs in sorted(self._group(kind).items()) if n]
        return items, ""

    def get(self, kind: str, namespace: str, name: str) -> ObservedResource:
        containers = self._containers(kind, namespace, name)
        if not containers:
            raise NotFoundError(f"{kind}/{namespace}/{name} has no containers")
        return self._observe(kind, namespace, name, containers)

    def watch(self, kind: str, revision: str, stop: Event) -> Iterator[tuple[ChangeKind, ObservedResource]]:
        if kind not in WORKLOAD_KINDS:
            stop.wait()
            return
        filters = {"type": "container", "label": [f"{LABEL_KIND}={kind}", f"{LABEL_NAMESPACE}={self.namespace}"]}
        try:
            stream = self._c().events(decode=True, filters=filters)
        except DockerException as e:
            raise TransientError(f"docker events unavailable: {e}") from e
        try:
            for ev in stream:
                if stop.is_set():
                    return
                attrs = (ev.get("Actor") or {}).get("Attributes") or {}
                name = attrs.get(LABEL_NAME)
                if not name:
                    continue
                containers = self._containers(kind, self.namespace, name)
                if not containers:
                    yield ChangeKind.DELETED, ObservedResource(kind=kind, namespace=self.namespace, name=name, fields={})
                    continue
                yield ChangeKind.UPDATED, self._observe(kind, self.namespace, name, containers)
        except DockerException as e:
            raise TransientError(f"docker events interrupted: {e}") from e
        finally:
            close = getattr(stream, "close", None)
            if close:
                close()

    def apply(self, document: dict[str, Any]) -> None:
        """Start/remove containers so the workload matches `document`."""
        doc = parse_document(document, self.namespace)
        if doc.kind not in WORKLOAD_KINDS:
            raise ReconcileError(f"docker backend cannot apply {doc.kind}")
        validate_name(doc.name)
        fields = {f.path: f.value for f in doc.comparable_fields()}
        image = fields.get(IMAGE)
        replicas = int(fields.get(REPLICAS, 1))

        containers = self._containers(doc.kind, doc.namespace, doc.name)
        running = [c for c in containers if c.status == "running"]

        # Replace containers running the wrong image.
        if image:
            for c in list(running):
                tags = c.image.tags if c.image is not None else []
                if image not in tags:
                    self._remove(c)
                    running.remove(c)

        for c in containers:
            if c not in running and c.status != "running":
                self._remove(c)

        # Scale down: remove the newest extras.
        extra = len(running) - replicas
        for c in list(reversed(running))[: max(0, extra)]:
            self._remove(c)

        missing = replicas - len(running)
        if missing > 0 and not image:
            raise ReconcileError(f"{doc.key} has no image to start containers from")
        for _ in range(max(0, missing)):
            self._run(doc.kind, doc.namespace, doc.name, image)

    def _remove(self, container: Any) -> None:
        try:
            container.remove(force=True)
        except NotFound:
            return
        except APIError as e:
            raise TransientError(f"docker remove failed: {e}") from e

    def _run(self, kind: str, namespace: str, name: str, image: str) -> None:
        labels = {LABEL_KIND: kind, LABEL_NAMESPACE: namespace, LABEL_NAME: name}
        cname = f"cdr-{namespace}-{name}-{secrets.token_hex(3)}"
        kwargs: dict[str, Any] = {
            "detach": True,
            "name": cname,
            "labels": labels,
            # Drift correction restarts containers; keep Docker's own restart policy off.
            "restart_policy": {"Name": "no"},
        }
        if self.network:
            kwargs["network"] = self.network
        try:
            self._c().containers.run(image, **kwargs)
        except APIError as e:
            raise TransientError(f"docker run failed for {cname}: {e}") from e
