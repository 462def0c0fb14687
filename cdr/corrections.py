from __future__ import annotations

from typing import Any, Iterable

import yaml

from .comparator import is_correctable
from .models import CorrectionPlan, DriftRecord
from .paths import apply_patch, build_patch, materialize, merge_patches, parse_path


def explain(record: DriftRecord) -> str:
    return (
        f"{record.resource}: restore {record.path} to {record.expected} "
        f"(live value {record.actual} diverged from the registry)"
    )


def generate(record: DriftRecord) -> CorrectionPlan:
    """Minimal patch restoring the desired value of one drifted field.

    The patch always carries the expected value; the live value is never adopted.
    """
    if not is_correctable(record):
        raise ValueError(f"{record.severity.value} drift on {record.path} has no corrective value")
    patch = build_patch(parse_path(record.path), record.expected_value)
    return CorrectionPlan(
        unit_id=record.unit_id,
        unit_slug=record.unit_slug,
        patch=patch,
        explanation=explain(record),
        records=(record,),
    )


def merge_plans(plans: Iterable[CorrectionPlan]) -> CorrectionPlan:
    plans = list(plans)
    if not plans:
        raise ValueError("nothing to merge")
    patch: dict[str, Any] = {}
    records: list[DriftRecord] = []
    for p in plans:
        if p.unit_id != plans[0].unit_id:
            raise ValueError("plans target different units")
        patch = merge_patches(patch, p.patch)
        records.extend(p.records)
    return CorrectionPlan(
        unit_id=plans[0].unit_id,
        unit_slug=plans[0].unit_slug,
        patch=patch,
        explanation="; ".join(p.explanation for p in plans),
        records=tuple(records),
        source=plans[0].source,
    )


def generate_all(records: Iterable[DriftRecord]) -> list[CorrectionPlan]:
    """One plan per unit, in order of first appearance. Uncorrectable records are skipped."""
    by_unit: dict[str, list[CorrectionPlan]] = {}
    for r in records:
        if not is_correctable(r):
            continue
        by_unit.setdefault(r.unit_id, []).append(generate(r))
    return [merge_plans(plans) for plans in by_unit.values()]


def apply_plan(data: dict[str, Any], plan: CorrectionPlan) -> dict[str, Any]:
    return apply_patch(data, plan.patch)


def render_yaml(plan: CorrectionPlan) -> str:
    """Human readable patch, as an operator would paste it into the registry."""
    return yaml.safe_dump(materialize(plan.patch), sort_keys=False, default_flow_style=False)
