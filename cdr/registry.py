"""Desired-state registry collaborators.

`LocalRegistry` keeps scopes and units in the local sqlite database and pushes
documents to the live cluster on `apply_unit`. `HttpRegistry` talks to a
ConfigHub-style REST API where unit data is stored as YAML.
"""
from __future__ import annotations

import sqlite3
from abc import ABC, abstractmethod
from typing import Any, Callable, Union

import httpx
import yaml

from . import db
from .cluster import Cluster
from .errors import ConflictError, FatalError, NotFoundError, ReconcileError, TransientError
from .models import DesiredUnit, MonitoredScope, Scope
from .paths import apply_patch, materialize, to_json_patch

Predicate = Union[MonitoredScope, Callable[[DesiredUnit], bool], None]


def _matches(predicate: Predicate, unit: DesiredUnit) -> bool:
    if predicate is None:
        return True
    if isinstance(predicate, MonitoredScope):
        return predicate.matches(unit)
    return bool(predicate(unit))


def _quote(value: str) -> str:
    return "'" + str(value).replace("'", "''") + "'"


def where_clause(predicate: MonitoredScope | None, unit_id: str | None = None) -> str:
    """Registry filter expression, e.g. "SetIDs contains 'x' AND Labels['monitor'] = 'true'"."""
    parts: list[str] = []
    if unit_id:
        parts.append(f"UnitID = {_quote(unit_id)}")
    if predicate is not None:
        if predicate.set_id:
            parts.append(f"SetIDs contains {_quote(predicate.set_id)}")
        for k, v in sorted(predicate.labels.items()):
            parts.append(f"Labels[{_quote(k)}] = {_quote(v)}")
    return " AND ".join(parts)


class Registry(ABC):
    @abstractmethod
    def ping(self) -> None:
        """Raise FatalError if the registry cannot be reached."""

    @abstractmethod
    def list_scopes(self) -> list[Scope]: ...

    @abstractmethod
    def list_units(self, scope: str, predicate: Predicate = None) -> list[DesiredUnit]: ...

    @abstractmethod
    def get_unit(self, unit_id: str) -> DesiredUnit: ...

    @abstractmethod
    def update_unit(self, unit_id: str, patch: dict[str, Any], revision: int | None = None) -> DesiredUnit: ...

    @abstractmethod
    def apply_unit(self, unit_id: str) -> None: ...

    @abstractmethod
    def bulk_patch(
        self, scope: str, predicate: Predicate, patch: dict[str, Any], propagate_downstream: bool = False
    ) -> list[str]:
        """Patch every matching unit in `scope`. Returns the ids of patched units."""

    def resolve_scope(self, id_or_slug: str) -> Scope:
        for s in self.list_scopes():
            if id_or_slug in (s.id, s.slug):
                return s
        raise NotFoundError(f"scope '{id_or_slug}' not found")

    def resolve_set(self, scope: str, id_or_slug: str) -> str:
        return id_or_slug


class LocalRegistry(Registry):
    def __init__(self, cluster: Cluster | None = None, namespace: str = "default"):
        self.cluster = cluster
        self.namespace = namespace

    def ping(self) -> None:
        try:
            db.init_db()
            db.list_scopes()
        except sqlite3.Error as e:
            raise FatalError(f"registry database unavailable: {e}") from e

    def list_scopes(self) -> list[Scope]:
        return db.list_scopes()

    def resolve_scope(self, id_or_slug: str) -> Scope:
        s = db.get_scope(id_or_slug)
        if s is None:
            raise NotFoundError(f"scope '{id_or_slug}' not found")
        return s

    def list_units(self, scope: str, predicate: Predicate = None) -> list[DesiredUnit]:
        sc = self.resolve_scope(scope)
        return [u for u in db.list_units(sc.id) if _matches(predicate, u)]

    def get_unit(self, unit_id: str) -> DesiredUnit:
        u = db.get_unit(unit_id)
        if u is None:
            raise NotFoundError(f"unit '{unit_id}' not found")
        return u

    def update_unit(self, unit_id: str, patch: dict[str, Any], revision: int | None = None) -> DesiredUnit:
        current = self.get_unit(unit_id)
        if revision is not None and revision != current.revision:
            raise ConflictError(f"unit '{current.slug}' is at revision {current.revision}, not {revision}")
        data = apply_patch(current.data, patch)
        if data == current.data:
            return current
        if db.update_unit_data(unit_id, data, expected_revision=current.revision) is None:
            raise ConflictError(f"unit '{current.slug}' changed while being patched")
        return self.get_unit(unit_id)

    def apply_unit(self, unit_id: str) -> None:
        unit = self.get_unit(unit_id)
        if self.cluster is None:
            raise ReconcileError("no cluster configured to apply units to")
        self.cluster.apply(unit.data)
        db.log_event("INFO", f"Applied unit to {unit.document(self.namespace).key}", scope=unit.scope_id, unit=unit.slug)

    def bulk_patch(
        self, scope: str, predicate: Predicate, patch: dict[str, Any], propagate_downstream: bool = False
    ) -> list[str]:
        from .propagation import push_downstream

        patched: list[str] = []
        for unit in self.list_units(scope, predicate):
            before = unit
            after = self.update_unit(unit.id, patch)
            if after.revision != before.revision:
                patched.append(unit.id)
            if propagate_downstream:
                result = push_downstream(self, before, patch)
                patched.extend(result.patched_unit_ids)
        return patched

    # --- registry management (not used by the reconciliation loop) ---

    def create_scope(self, slug: str, upstream: str | None = None) -> Scope:
        upstream_id = self.resolve_scope(upstream).id if upstream else None
        if db.get_scope(slug) is not None:
            raise ConflictError(f"scope '{slug}' already exists")
        return db.insert_scope(slug, upstream_id)

    def create_unit(
        self,
        scope: str,
        slug: str,
        data: dict[str, Any],
        labels: dict[str, str] | None = None,
        upstream_unit_id: str | None = None,
    ) -> DesiredUnit:
        sc = self.resolve_scope(scope)
        if upstream_unit_id:
            up = self.get_unit(upstream_unit_id)
            if up.scope_id != sc.upstream_id:
                raise ValueError(
                    f"upstream unit '{up.slug}' must belong to the upstream scope of '{sc.slug}'"
                )
        try:
            return db.insert_unit(sc.id, slug, data, labels, upstream_unit_id)
        except sqlite3.IntegrityError as e:
            raise ConflictError(f"unit '{slug}' already exists in scope '{sc.slug}'") from e

    def clone_scope(self, slug: str, upstream: str) -> Scope:
        """Create a downstream scope holding a linked copy of every upstream unit."""
        new_scope = self.create_scope(slug, upstream)
        for u in self.list_units(upstream):
            db.insert_unit(new_scope.id, u.slug, u.data, u.labels, upstream_unit_id=u.id)
        db.log_event("INFO", f"Cloned scope '{upstream}' into '{slug}'", scope=new_scope.id)
        return new_scope

    def create_set(self, scope: str, slug: str) -> str:
        sc = self.resolve_scope(scope)
        return db.find_set(sc.id, slug) or db.insert_set(sc.id, slug)

    def find_set(self, scope: str, id_or_slug: str) -> str | None:
        return db.find_set(self.resolve_scope(scope).id, id_or_slug)

    def resolve_set(self, scope: str, id_or_slug: str) -> str:
        set_id = self.find_set(scope, id_or_slug)
        if set_id is None:
            raise NotFoundError(f"set '{id_or_slug}' not found in scope '{scope}'")
        return set_id

    def add_to_set(self, set_id: str, unit_id: str) -> None:
        db.add_set_member(set_id, unit_id)

    def import_manifests(self, scope: str, text: str, labels: dict[str, str] | None = None) -> list[DesiredUnit]:
        """Create one unit per document of a multi-document YAML manifest."""
        try:
            docs = list(yaml.safe_load_all(text))
        except yaml.YAMLError as e:
            raise ValueError(f"invalid manifest YAML: {e}") from e
        out: list[DesiredUnit] = []
        for doc in docs:
            if not isinstance(doc, dict) or not doc.get("kind"):
                continue
            name = (doc.get("metadata") or {}).get("name", "unnamed")
            out.append(self.create_unit(scope, f"{str(doc['kind']).lower()}-{name}", doc, labels))
        return out


class HttpRegistry(Registry):
    """ConfigHub-style REST registry."""

    def __init__(self, base_url: str, token: str | None = None, timeout_s: float = 30.0, client: httpx.Client | None = None):
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self.client = client or httpx.Client(base_url=base_url.rstrip("/"), headers=headers, timeout=timeout_s)
        self._unit_space: dict[str, str] = {}

    def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            resp = self.client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise TransientError(f"registry timeout: {method} {url}") from e
        except httpx.TransportError as e:
            raise TransientError(f"registry unreachable: {type(e).__name__}: {e}") from e
        if resp.status_code in (401, 403):
            raise FatalError(f"registry refused {method} {url}: HTTP {resp.status_code}")
        if resp.status_code == 404:
            raise NotFoundError(f"registry: {url} not found")
        if resp.status_code in (409, 412):
            raise ConflictError(f"registry conflict on {url}: {resp.text[:200]}")
        if resp.status_code >= 500 or resp.status_code == 429:
            raise TransientError(f"registry error HTTP {resp.status_code} on {url}")
        if resp.status_code >= 400:
            raise ReconcileError(f"registry rejected {method} {url}: HTTP {resp.status_code} {resp.text[:200]}")
        return resp

    def _unit(self, raw: dict[str, Any]) -> DesiredUnit:
        data = raw.get("Data") or ""
        doc = yaml.safe_load(data) if isinstance(data, str) else data
        unit = DesiredUnit(
            id=raw["UnitID"],
            slug=raw.get("Slug", ""),
            scope_id=raw["SpaceID"],
            data=doc or {},
            labels=dict(raw.get("Labels") or {}),
            upstream_unit_id=raw.get("UpstreamUnitID") or None,
            set_ids=tuple(raw.get("SetIDs") or ()),
            revision=int(raw.get("Version") or 0),
        )
        self._unit_space[unit.id] = unit.scope_id
        return unit

    def ping(self) -> None:
        try:
            self.list_scopes()
        except (TransientError, ReconcileError) as e:
            raise FatalError(f"cannot reach registry: {e}") from e

    def list_scopes(self) -> list[Scope]:
        rows = self._request("GET", "/space").json()
        out = []
        for i, r in enumerate(rows):
            upstream = r.get("UpstreamSpaceID") or (r.get("Labels") or {}).get("upstream-space") or None
            out.append(Scope(id=r["SpaceID"], slug=r.get("Slug", ""), upstream_id=upstream, created_seq=int(r.get("Seq", i))))
        return out

    def list_units(self, scope: str, predicate: Predicate = None) -> list[DesiredUnit]:
        sc = self.resolve_scope(scope)
        params = {}
        if isinstance(predicate, MonitoredScope):
            where = where_clause(predicate)
            if where:
                params["where"] = where
        rows = self._request("GET", f"/space/{sc.id}/unit", params=params).json()
        units = [self._unit(r) for r in rows]
        # Callables cannot be expressed as a where clause; filter client side.
        return [u for u in units if _matches(predicate, u)]

    def _space_of(self, unit_id: str) -> str:
        if unit_id not in self._unit_space:
            for s in self.list_scopes():
                self.list_units(s.id)
        if unit_id not in self._unit_space:
            raise NotFoundError(f"unit '{unit_id}' not found")
        return self._unit_space[unit_id]

    def get_unit(self, unit_id: str) -> DesiredUnit:
        space = self._space_of(unit_id)
        return self._unit(self._request("GET", f"/space/{space}/unit/{unit_id}").json())

    def update_unit(self, unit_id: str, patch: dict[str, Any], revision: int | None = None) -> DesiredUnit:
        current = self.get_unit(unit_id)
        if apply_patch(current.data, patch) == current.data:
            return current
        ops = to_json_patch(current.data, patch)
        headers = {"Content-Type": "application/json-patch+json"}
        headers["If-Match"] = str(revision if revision is not None else current.revision)
        resp = self._request("PATCH", f"/space/{current.scope_id}/unit/{unit_id}", json=ops, headers=headers)
        return self._unit(resp.json())

    def apply_unit(self, unit_id: str) -> None:
        space = self._space_of(unit_id)
        self._request("POST", f"/space/{space}/unit/{unit_id}/apply")

    def bulk_patch(
        self, scope: str, predicate: Predicate, patch: dict[str, Any], propagate_downstream: bool = False
    ) -> list[str]:
        sc = self.resolve_scope(scope)
        params: dict[str, Any] = {"upgrade": "true" if propagate_downstream else "false"}
        if isinstance(predicate, MonitoredScope):
            params["where"] = where_clause(predicate)
        elif predicate is not None:
            params["where"] = " OR ".join(
                f"UnitID = {_quote(u.id)}" for u in self.list_units(scope, predicate)
            ) or "false"
        resp = self._request("PATCH", f"/space/{sc.id}/unit", params=params, json=materialize(patch))
        return [r["UnitID"] for r in resp.json()]
