from __future__ import annotations

from .models import (
    GENERATION_OBSERVED,
    MISSING_DISPLAY,
    DesiredUnit,
    DriftRecord,
    ObservedResource,
    Severity,
    display,
)

# Live conditions that mean "the cluster could not reconcile this resource".
# (condition type, status) -> reasons that qualify; None means any reason.
FAILED_CONDITIONS: dict[tuple[str, str], set[str] | None] = {
    ("Available", "False"): None,
    ("Ready", "False"): {"ReconciliationFailed", "HealthCheckFailed", "DriftDetected", "UpgradeFailed"},
    ("Progressing", "False"): {"ProgressDeadlineExceeded"},
    ("ReplicaFailure", "True"): None,
    ("TestSuccess", "False"): {"TestFailed"},
    (GENERATION_OBSERVED, "False"): None,
}


def compare(
    desired: DesiredUnit,
    actual: ObservedResource,
    default_namespace: str = "default",
    observable: set[str] | None = None,
) -> list[DriftRecord]:
    """Compare one desired unit against its live resource.

    Only fields present in the desired document are drift sources. Values are
    compared after coercion to a canonical type (integers numerically, strings
    exactly). Documents with no comparable fields (config map without data,
    unknown kinds) yield no records; callers report them as unmonitored.
    When `observable` is given, paths outside it are not compared: the backend
    cannot read them, so their absence is not drift.
    """
    doc = desired.document(default_namespace)
    records: list[DriftRecord] = []
    for f in doc.comparable_fields():
        if observable is not None and f.path not in observable:
            continue
        live = actual.fields.get(f.path)
        if live == f.value:
            continue
        records.append(
            DriftRecord(
                unit_id=desired.id,
                unit_slug=desired.slug,
                resource=actual.key,
                path=f.path,
                expected=display(f.value),
                actual=display(live),
                expected_value=f.value,
                actual_value=live,
                severity=f.severity,
            )
        )
    records.extend(condition_records(desired, actual))
    return records


def condition_records(desired: DesiredUnit, actual: ObservedResource) -> list[DriftRecord]:
    out: list[DriftRecord] = []
    for ctype, (status, reason, message) in sorted(actual.conditions.items()):
        reasons = FAILED_CONDITIONS.get((ctype, status), set())
        if reasons is not None and reason not in reasons:
            continue
        out.append(
            DriftRecord(
                unit_id=desired.id,
                unit_slug=desired.slug,
                resource=actual.key,
                path=f"status.conditions.{ctype}",
                expected="True" if status == "False" else "False",
                actual=f"{status} ({reason}: {message})" if reason else status,
                expected_value=None,
                actual_value=status,
                severity=Severity.POSSIBLE,
            )
        )
    return out


def is_correctable(record: DriftRecord) -> bool:
    return record.severity is not Severity.POSSIBLE and record.expected != MISSING_DISPLAY
