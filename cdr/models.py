from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from .paths import MISSING, format_path, get_path, jsonable, parse_path


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class ChangeKind(str, Enum):
    ADDED = "added"
    UPDATED = "updated"
    DELETED = "deleted"


class Severity(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    # Live resource reports a failed reconciliation/availability condition.
    # Lower confidence than a field mismatch and never auto-corrected.
    POSSIBLE = "possible"


WORKLOAD_KINDS = {"Deployment", "StatefulSet", "DaemonSet", "ReplicaSet"}
# GitOps controller objects: watched for their status conditions only.
CONDITION_KINDS = {"Kustomization", "HelmRelease", "GitRepository"}
# Synthetic condition set when a source lags behind its spec generation.
GENERATION_OBSERVED = "GenerationObserved"

REPLICAS = "spec.replicas"
IMAGE = "spec.template.spec.containers[0].image"
CPU_REQUEST = "spec.template.spec.containers[0].resources.requests.cpu"
MEMORY_REQUEST = "spec.template.spec.containers[0].resources.requests.memory"
PORTS = "spec.ports"

MISSING_DISPLAY = "<missing>"


def resource_key(kind: str, namespace: str, name: str) -> str:
    return f"{kind}/{namespace}/{name}"


def canonical_int(value: Any) -> Any:
    """Integers compare numerically: "3", 3 and 3.0 are the same value."""
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return value
    return value


def canonical_str(value: Any) -> Any:
    if value is None:
        return None
    return value if isinstance(value, str) else str(value)


def canonical_ports(value: Any) -> Any:
    if not isinstance(value, list):
        return value
    out = []
    for p in value:
        if not isinstance(p, dict):
            out.append(p)
            continue
        port: dict[str, Any] = {
            "port": canonical_int(p.get("port")),
            "protocol": p.get("protocol") or "TCP",
        }
        if p.get("name"):
            port["name"] = p["name"]
        # Kubernetes defaults targetPort to port.
        port["targetPort"] = canonical_int(p.get("targetPort", p.get("port")))
        if p.get("nodePort") is not None:
            port["nodePort"] = canonical_int(p["nodePort"])
        out.append(port)
    return sorted(out, key=lambda x: (str(x.get("name", "")), str(x.get("port")), str(x.get("protocol"))))


def display(value: Any) -> str:
    if value is None or value is MISSING:
        return MISSING_DISPLAY
    if isinstance(value, str):
        return value
    if isinstance(value, (list, dict)):
        return json.dumps(value, sort_keys=True)
    return str(value)


@dataclass(frozen=True)
class ComparableField:
    path: str
    value: Any
    severity: Severity


@dataclass(frozen=True)
class ResourceDoc:
    """Parsed configuration document. Subclasses know their comparable fields."""

    kind: str
    namespace: str
    name: str
    raw: dict[str, Any]

    @property
    def key(self) -> str:
        return resource_key(self.kind, self.namespace, self.name)

    def comparable_fields(self) -> list[ComparableField]:
        return []

    def unmonitored_reason(self) -> str | None:
        return None


@dataclass(frozen=True)
class WorkloadDoc(ResourceDoc):
    _FIELDS = (
        (REPLICAS, canonical_int, Severity.HIGH),
        (IMAGE, canonical_str, Severity.HIGH),
        (CPU_REQUEST, canonical_str, Severity.MEDIUM),
        (MEMORY_REQUEST, canonical_str, Severity.MEDIUM),
    )

    def comparable_fields(self) -> list[ComparableField]:
        out = []
        for path, coerce, sev in self._FIELDS:
            v = get_path(self.raw, parse_path(path))
            if v is MISSING or v is None:
                continue
            out.append(ComparableField(path, coerce(v), sev))
        return out


@dataclass(frozen=True)
class EndpointDoc(ResourceDoc):
    def comparable_fields(self) -> list[ComparableField]:
        ports = get_path(self.raw, parse_path(PORTS))
        if ports is MISSING or ports is None:
            return []
        return [ComparableField(PORTS, canonical_ports(ports), Severity.MEDIUM)]


@dataclass(frozen=True)
class KeyValueDoc(ResourceDoc):
    def comparable_fields(self) -> list[ComparableField]:
        data = self.raw.get("data")
        if not isinstance(data, dict):
            return []
        return [
            ComparableField(format_path(["data", k]), canonical_str(v), Severity.LOW)
            for k, v in sorted(data.items())
        ]

    def unmonitored_reason(self) -> str | None:
        if not isinstance(self.raw.get("data"), dict):
            return "no desired data"
        return None


@dataclass(frozen=True)
class ConditionDoc(ResourceDoc):
    """A controller object whose drift shows up in its status, not in its spec."""


@dataclass(frozen=True)
class OpaqueDoc(ResourceDoc):
    def unmonitored_reason(self) -> str | None:
        return "unsupported kind"


def parse_document(data: dict[str, Any], default_namespace: str = "default") -> ResourceDoc:
    kind = str(data.get("kind") or "")
    meta = data.get("metadata") or {}
    name = str(meta.get("name") or "")
    namespace = str(meta.get("namespace") or default_namespace)
    if kind in WORKLOAD_KINDS:
        cls: type[ResourceDoc] = WorkloadDoc
    elif kind == "Service":
        cls = EndpointDoc
    elif kind == "ConfigMap":
        cls = KeyValueDoc
    elif kind in CONDITION_KINDS:
        cls = ConditionDoc
    else:
        cls = OpaqueDoc
    return cls(kind=kind, namespace=namespace, name=name, raw=data)


@dataclass(frozen=True)
class Scope:
    id: str
    slug: str
    upstream_id: str | None
    created_seq: int


@dataclass(frozen=True)
class DesiredUnit:
    id: str
    slug: str
    scope_id: str
    data: dict[str, Any]
    labels: dict[str, str] = field(default_factory=dict)
    upstream_unit_id: str | None = None
    set_ids: tuple[str, ...] = ()
    revision: int = 0

    def document(self, default_namespace: str = "default") -> ResourceDoc:
        return parse_document(self.data, default_namespace)


@dataclass(frozen=True)
class ObservedResource:
    kind: str
    namespace: str
    name: str
    fields: dict[str, Any]
    revision: str = ""
    # condition type -> (status, reason, message)
    conditions: dict[str, tuple[str, str, str]] = field(default_factory=dict)

    @property
    def key(self) -> str:
        return resource_key(self.kind, self.namespace, self.name)


@dataclass(frozen=True)
class MonitoredScope:
    """Which units the engine watches: a scope, an optional set and a label predicate."""

    scope: str
    set_id: str | None = None
    labels: dict[str, str] = field(default_factory=dict)

    def matches(self, unit: DesiredUnit) -> bool:
        if self.set_id and self.set_id not in unit.set_ids:
            return False
        return all(unit.labels.get(k) == v for k, v in self.labels.items())


@dataclass(frozen=True)
class DriftRecord:
    unit_id: str
    unit_slug: str
    resource: str
    path: str
    expected: str
    actual: str
    expected_value: Any
    actual_value: Any
    severity: Severity
    detected_at: str = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "unit": self.unit_slug,
            "unit_id": self.unit_id,
            "resource": self.resource,
            "field": self.path,
            "expected": self.expected,
            "actual": self.actual,
            "severity": self.severity.value,
            "detected_at": self.detected_at,
        }


@dataclass(frozen=True)
class CorrectionPlan:
    unit_id: str
    unit_slug: str
    patch: dict[str, Any]
    explanation: str
    records: tuple[DriftRecord, ...] = ()
    source: str = "mechanical"  # mechanical|advisor

    def to_dict(self) -> dict[str, Any]:
        return {
            "unit_id": self.unit_id,
            "unit": self.unit_slug,
            "patch": jsonable(self.patch),
            "explanation": self.explanation,
            "fields": [r.path for r in self.records],
            "source": self.source,
        }


@dataclass
class CycleReport:
    trigger: str
    timestamp: str = field(default_factory=utc_now)
    items: list[DriftRecord] = field(default_factory=list)
    summary: str = ""
    plans: list[CorrectionPlan] = field(default_factory=list)
    corrections_applied: int = 0
    failures: list[dict[str, str]] = field(default_factory=list)
    unmonitored: list[dict[str, str]] = field(default_factory=list)
    propagation: list[dict[str, Any]] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def drift_count(self) -> int:
        return len(self.items)

    def fail(self, resource: str, reason: str) -> None:
        self.failures.append({"resource": resource, "reason": reason})

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "trigger": self.trigger,
            "drift_count": self.drift_count,
            "items": [r.to_dict() for r in self.items],
            "summary": self.summary,
            "corrections": [p.to_dict() for p in self.plans],
            "corrections_applied": self.corrections_applied,
            "failures": list(self.failures),
            "unmonitored": list(self.unmonitored),
            "propagation": list(self.propagation),
            "warnings": list(self.warnings),
        }


def scope_to_dict(scope: Scope) -> dict[str, Any]:
    return asdict(scope)
