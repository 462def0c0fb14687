"""Push-upgrade: apply a correction at its origin scope, then walk downstream.

Downstream copies are linked through ``upstream_unit_id``. A field is a local
override in a downstream copy when its value differs from the value its own
upstream copy held before propagation started; such fields are never
overwritten, only recorded.
"""
from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from threading import Event
from typing import TYPE_CHECKING, Any

from .errors import ConflictError, ReconcileError, retry_call
from .models import CorrectionPlan, DesiredUnit, Scope
from .paths import MISSING, Segment, format_path, get_path, patch_leaves, subtract_paths

if TYPE_CHECKING:
    from .registry import Registry


class PropagationState(str, Enum):
    IDLE = "idle"
    APPLYING = "applying"
    PROPAGATING = "propagating"
    DONE = "done"
    FAILED = "failed"


@dataclass
class ScopeOutcome:
    scope: str
    status: str  # origin|patched|partial|skipped|failed
    unit_id: str | None = None
    changed: bool = False
    skipped_paths: list[str] = field(default_factory=list)
    note: str = ""


@dataclass
class PropagationResult:
    unit_id: str
    state: PropagationState = PropagationState.IDLE
    outcomes: list[ScopeOutcome] = field(default_factory=list)
    error: str | None = None

    @property
    def patched_unit_ids(self) -> list[str]:
        return [o.unit_id for o in self.outcomes if o.status in ("patched", "partial") and o.changed and o.unit_id]

    @property
    def notes(self) -> list[str]:
        out = []
        for o in self.outcomes:
            if o.skipped_paths:
                out.append(f"{o.scope}: kept local override on {', '.join(o.skipped_paths)}")
            elif o.status in ("skipped", "failed") and o.note:
                out.append(f"{o.scope}: {o.note}")
        return out

    def to_dict(self) -> dict[str, Any]:
        return {
            "unit_id": self.unit_id,
            "state": self.state.value,
            "error": self.error,
            "scopes": [
                {
                    "scope": o.scope,
                    "status": o.status,
                    "unit_id": o.unit_id,
                    "changed": o.changed,
                    "skipped_paths": o.skipped_paths,
                    "note": o.note,
                }
                for o in self.outcomes
            ],
            "notes": self.notes,
        }


def overridden_paths(copy: DesiredUnit, upstream_before: DesiredUnit, patch: dict[str, Any]) -> list[list[Segment]]:
    out = []
    for segments, _ in patch_leaves(patch):
        local = get_path(copy.data, segments)
        if local is MISSING:
            continue
        if local != get_path(upstream_before.data, segments):
            out.append(segments)
    return out


def update_with_retry(registry: "Registry", unit: DesiredUnit, patch: dict[str, Any], stop: Event | None = None) -> DesiredUnit:
    """Patch against the revision we read. On conflict, re-fetch and retry once."""
    try:
        return retry_call(lambda: registry.update_unit(unit.id, patch, revision=unit.revision), stop=stop)
    except ConflictError:
        fresh = retry_call(lambda: registry.get_unit(unit.id), stop=stop)
        return retry_call(lambda: registry.update_unit(fresh.id, patch, revision=fresh.revision), stop=stop)


def _children(scopes: list[Scope]) -> dict[str | None, list[Scope]]:
    out: dict[str | None, list[Scope]] = {}
    for s in sorted(scopes, key=lambda s: s.created_seq):
        out.setdefault(s.upstream_id, []).append(s)
    return out


def push_downstream(
    registry: "Registry",
    origin_before: DesiredUnit,
    patch: dict[str, Any],
    result: PropagationResult | None = None,
    stop: Event | None = None,
) -> PropagationResult:
    """Breadth-first, sequential walk of every scope downstream of the origin unit's scope."""
    result = result or PropagationResult(unit_id=origin_before.id)
    children = _children(retry_call(registry.list_scopes, stop=stop))
    queue: deque[tuple[Scope, DesiredUnit | None]] = deque(
        (s, origin_before) for s in children.get(origin_before.scope_id, [])
    )
    seen: set[str] = {origin_before.scope_id}

    while queue:
        scope, parent = queue.popleft()
        if scope.id in seen:
            continue
        seen.add(scope.id)

        copy: DesiredUnit | None = None
        if parent is None:
            result.outcomes.append(ScopeOutcome(scope.slug, "skipped", note="no copy in upstream scope"))
        else:
            try:
                linked = _linked_copies(registry, scope, parent, stop)
            except ReconcileError as e:
                # Descendants are still visited; with no copy here they are skipped.
                result.outcomes.append(
                    ScopeOutcome(scope.slug, "failed", note=f"cannot list units: {type(e).__name__}: {e}")
                )
            else:
                if not linked:
                    result.outcomes.append(ScopeOutcome(scope.slug, "skipped", note=f"no copy of '{parent.slug}'"))
                else:
                    copy = linked[0]
                    result.outcomes.append(_patch_copy(registry, scope, copy, parent, patch, stop))

        queue.extend((child, copy) for child in children.get(scope.id, []))
    return result


def _linked_copies(registry: "Registry", scope: Scope, parent: DesiredUnit, stop: Event | None) -> list[DesiredUnit]:
    parent_id = parent.id
    return retry_call(lambda: registry.list_units(scope.id, lambda u: u.upstream_unit_id == parent_id), stop=stop)


def _patch_copy(
    registry: "Registry",
    scope: Scope,
    copy: DesiredUnit,
    parent_before: DesiredUnit,
    patch: dict[str, Any],
    stop: Event | None,
) -> ScopeOutcome:
    skipped = overridden_paths(copy, parent_before, patch)
    outcome = ScopeOutcome(scope.slug, "patched", unit_id=copy.id, skipped_paths=[format_path(s) for s in skipped])
    remaining = subtract_paths(patch, skipped)
    if not remaining:
        outcome.status = "skipped"
        outcome.note = "local override"
        return outcome
    if skipped:
        outcome.status = "partial"
    try:
        after = update_with_retry(registry, copy, remaining, stop)
    except ReconcileError as e:
        outcome.status = "failed"
        outcome.note = f"{type(e).__name__}: {e}"
        return outcome
    outcome.changed = after.revision != copy.revision
    return outcome


class PropagationEngine:
    """Idle -> Applying(origin) -> Propagating -> Done | Failed."""

    def __init__(self, registry: "Registry", apply_live: bool = True, stop: Event | None = None):
        self.registry = registry
        self.apply_live = apply_live
        self.stop = stop
        self.state = PropagationState.IDLE

    def run(self, plan: CorrectionPlan) -> PropagationResult:
        result = PropagationResult(unit_id=plan.unit_id)

        self.state = result.state = PropagationState.APPLYING
        try:
            origin = retry_call(lambda: self.registry.get_unit(plan.unit_id), stop=self.stop)
            after = update_with_retry(self.registry, origin, plan.patch, self.stop)
            if self.apply_live:
                retry_call(lambda: self.registry.apply_unit(plan.unit_id), stop=self.stop)
        except ReconcileError as e:
            # Never propagate past a failed origin apply.
            self.state = result.state = PropagationState.FAILED
            result.error = f"{type(e).__name__}: {e}"
            return result
        try:
            origin_scope = self.registry.resolve_scope(origin.scope_id).slug
        except ReconcileError:
            origin_scope = origin.scope_id
        result.outcomes.append(
            ScopeOutcome(origin_scope, "origin", unit_id=origin.id, changed=after.revision != origin.revision)
        )

        self.state = result.state = PropagationState.PROPAGATING
        try:
            push_downstream(self.registry, origin, plan.patch, result, self.stop)
        except ReconcileError as e:
            # The origin is corrected; only the downstream walk is lost.
            result.outcomes.append(
                ScopeOutcome(origin_scope, "failed", note=f"cannot list downstream scopes: {type(e).__name__}: {e}")
            )
        self.state = result.state = PropagationState.DONE
        return result
