from __future__ import annotations

import json
import re
from dataclasses import dataclass, field, replace
from typing import Any

from .advisor import Advisor
from .comparator import is_correctable
from .corrections import generate, generate_all, merge_plans
from .errors import AdvisorError
from .models import CorrectionPlan, DriftRecord, canonical_int, display
from .paths import format_path, parse_path, parse_pointer

PROMPT = """Analyze this Kubernetes configuration drift and suggest fixes.
The registry is the source of truth: every fix must restore the expected value.

Drift Items:
{items}

Return only JSON with this structure:
{{
  "summary": "Clear explanation of the drift and its impact",
  "fixes": [
    {{
      "unit_id": "id",
      "patch_path": "spec.replicas",
      "patch_value": 3,
      "explanation": "Why this fix is needed"
    }}
  ]
}}"""

_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL)


@dataclass
class Analysis:
    summary: str
    plans: list[CorrectionPlan] = field(default_factory=list)
    source: str = "mechanical"  # mechanical|advisor
    note: str | None = None


def mechanical_summary(records: list[DriftRecord], unit_count: int | None = None) -> str:
    units = unit_count if unit_count is not None else len({r.unit_id for r in records})
    return f"{len(records)} drift items detected across {units} units"


def extract_json(text: str) -> dict[str, Any]:
    m = _FENCE_RE.search(text)
    if m:
        text = m.group(1)
    start, end = text.find("{"), text.rfind("}")
    if start < 0 or end <= start:
        raise AdvisorError("advisor output contains no JSON object")
    try:
        data = json.loads(text[start : end + 1])
    except ValueError as e:
        raise AdvisorError(f"advisor output is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise AdvisorError("advisor output is not a JSON object")
    return data


def _normalize_path(raw: str) -> str:
    segments = parse_pointer(raw) if raw.startswith("/") else parse_path(raw)
    return format_path(segments)


class DriftAnalyzer:
    """Optional advisory pass. Without an advisor it is a deterministic summary."""

    def __init__(self, advisor: Advisor | None = None):
        self.advisor = advisor

    def analyze(self, records: list[DriftRecord], unit_count: int | None = None) -> Analysis:
        mechanical = Analysis(summary=mechanical_summary(records, unit_count), plans=generate_all(records))
        if self.advisor is None or not records:
            return mechanical
        try:
            text = self.advisor.complete(PROMPT.format(items=json.dumps([r.to_dict() for r in records], indent=2)))
            data = extract_json(text)
        except Exception as e:  # any advisor failure falls back to the mechanical plans
            reason = str(e) if isinstance(e, AdvisorError) else f"{type(e).__name__}: {e}"
            mechanical.note = f"advisor unavailable: {reason}"
            return mechanical

        summary = data.get("summary")
        if not isinstance(summary, str) or not summary.strip():
            summary = mechanical.summary
        try:
            plans = self._plans_from_fixes(records, data.get("fixes") or [])
        except (AdvisorError, ValueError, TypeError) as e:
            return Analysis(summary=summary, plans=mechanical.plans, source="advisor", note=f"advisor fixes rejected: {e}")
        return Analysis(summary=summary, plans=plans, source="advisor")

    def _plans_from_fixes(self, records: list[DriftRecord], fixes: list[Any]) -> list[CorrectionPlan]:
        """Turn advisor fixes into plans, accepting only fixes that restore a recorded expected value.

        Records the advisor did not cover still get their mechanical plan.
        """
        index = {(r.unit_id, r.path): r for r in records if is_correctable(r)}
        by_unit: dict[str, list[CorrectionPlan]] = {}
        covered: set[tuple[str, str]] = set()
        if not isinstance(fixes, list):
            raise AdvisorError("fixes is not a list")
        for fix in fixes:
            if not isinstance(fix, dict):
                raise AdvisorError("fix is not an object")
            key = (str(fix.get("unit_id", "")), _normalize_path(str(fix.get("patch_path", ""))))
            record = index.get(key)
            if record is None:
                raise AdvisorError(f"fix targets unknown field {key[1]} on unit {key[0]}")
            value = fix.get("patch_value")
            if isinstance(record.expected_value, int):
                value = canonical_int(value)
            if display(value) != record.expected:
                raise AdvisorError(f"fix for {record.path} does not restore {record.expected}")
            plan = generate(record)
            explanation = fix.get("explanation")
            if isinstance(explanation, str) and explanation.strip():
                plan = replace(plan, explanation=explanation.strip())
            by_unit.setdefault(record.unit_id, []).append(replace(plan, source="advisor"))
            covered.add(key)
        for key, record in index.items():
            if key not in covered:
                by_unit.setdefault(record.unit_id, []).append(generate(record))
        return [merge_plans(plans) for plans in by_unit.values()]
