"""
Change-request impact scoring and field-path helpers.

Pure functions only; no store access.

Score = scope factor + schedule factor + budget factor + risk points
        (+ escalation points once the absolute budget threshold is crossed),
clamped to 0..100.

    ≥ 75  Critical
    ≥ 55  Major
    ≥ 30  Moderate
    else  Minor
"""

from __future__ import annotations

import copy
from datetime import date, datetime, timedelta

CHANGE_TYPES = (
    "SCOPE_CHANGE",
    "SCHEDULE_CHANGE",
    "BUDGET_CHANGE",
    "BENEFITS_CHANGE",
    "RESOURCE_CHANGE",
    "RISK_RECLASSIFICATION",
    "TECHNICAL_CHANGE",
    "OTHER",
)
CHANGE_PRIORITIES = ("Low", "Medium", "High", "Urgent")
IMPACT_RISK_LEVELS = ("Low", "Medium", "High", "Critical")

RISK_POINTS = {"Low": 6, "Medium": 13, "High": 21, "Critical": 30}
BUDGET_ESCALATION_POINTS = 25

SEVERITY_BANDS = ((75, "Critical"), (55, "Major"), (30, "Moderate"))
SEVERITY_ORDER = ("Minor", "Moderate", "Major", "Critical")

SIGNIFICANT_SCOPE_TOKENS = ("scope", "major", "enterprise", "regulatory", "critical")

ALLOWED_FIELD_PATHS = frozenset({
    "title",
    "summary",
    "priority",
    "risk_level",
    "start_date",
    "end_date",
    "target_go_live",
    "financials.capex",
    "financials.opex",
    "financials.one_time_costs",
    "financials.run_rate_savings",
    "benefits.cost_save_est",
    "benefits.revenue_uplift_est",
    "benefits.qualitative_benefits",
    "segment_unit",
    "project_theme",
    "strategic_objective",
    "project_classification",
    "project_type",
})


def round2(value: float) -> float:
    return round(float(value) * 100) / 100


def clamp(value: float, low: float, high: float) -> float:
    return min(high, max(low, value))


def to_title_case_risk(value) -> str:
    lowered = (value or "").strip().lower()
    for level in IMPACT_RISK_LEVELS:
        if level.lower() == lowered:
            return level
    return "Low"


def severity_from_score(score: float) -> str:
    for floor, label in SEVERITY_BANDS:
        if score >= floor:
            return label
    return "Minor"


# ── Field paths ──────────────────────────────────────────────────────────────


def is_allowed_field_path(path: str) -> bool:
    return path in ALLOWED_FIELD_PATHS


def get_path_value(source, path: str):
    current = source
    for segment in (s for s in path.split(".") if s):
        if not isinstance(current, dict) or segment not in current:
            return None
        current = current[segment]
    return current


def set_path_value(target: dict, path: str, value) -> None:
    segments = [s for s in path.split(".") if s]
    if not segments:
        return
    cursor = target
    for segment in segments[:-1]:
        if not isinstance(cursor.get(segment), dict):
            cursor[segment] = {}
        cursor = cursor[segment]
    cursor[segments[-1]] = copy.deepcopy(value)


def coerce_new_value(old_value, new_value):
    """Coerce ``new_value`` to the type of ``old_value`` (numbers, booleans, strings)."""
    if isinstance(old_value, bool):
        if isinstance(new_value, bool):
            return new_value
        if isinstance(new_value, str):
            return new_value.strip().lower() == "true"
        return bool(new_value)
    if isinstance(old_value, (int, float)):
        try:
            parsed = float(new_value)
        except (TypeError, ValueError):
            return old_value
        if parsed != parsed or parsed in (float("inf"), float("-inf")):
            return old_value
        return int(parsed) if parsed.is_integer() and isinstance(old_value, int) else parsed
    if isinstance(old_value, str):
        if isinstance(new_value, str):
            return new_value
        return "" if new_value is None else str(new_value)
    return new_value


def build_submission_patch(deltas: list[dict]) -> dict:
    """Nested submission patch from field deltas."""
    patch: dict = {}
    for delta in deltas:
        set_path_value(patch, delta["field_name"], delta["new_value"])
    return patch


# ── Scoring ──────────────────────────────────────────────────────────────────


def baseline_budget(submission: dict) -> float:
    fin = submission.get("financials") or {}
    return max(0.0, float(fin.get("capex") or 0) + float(fin.get("opex") or 0) + float(fin.get("one_time_costs") or 0))


def baseline_benefits(submission: dict) -> float:
    ben = submission.get("benefits") or {}
    return max(0.0, float(ben.get("cost_save_est") or 0) + float(ben.get("revenue_uplift_est") or 0))


def _add_days(value, days: int) -> str | None:
    if not value or not isinstance(value, str):
        return None
    try:
        parsed = date.fromisoformat(value[:10])
    except ValueError:
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00")).date()
        except ValueError:
            return None
    return (parsed + timedelta(days=days)).isoformat()


def compute_impact(submission: dict, change: dict, thresholds: dict) -> dict:
    """Severity score and derived indicators for a proposed change.

    ``change`` carries change_type, impact_scope, impact_schedule_days,
    impact_budget_delta, impact_benefits_delta and impact_risk_level.
    """
    budget = baseline_budget(submission)
    benefits = baseline_benefits(submission)
    budget_delta = float(change.get("impact_budget_delta") or 0)
    benefits_delta = float(change.get("impact_benefits_delta") or 0)
    schedule_days = int(change.get("impact_schedule_days") or 0)

    budget_variance_pct = round2(budget_delta / budget * 100) if budget > 0 else 0
    benefits_variance_pct = round2(benefits_delta / benefits * 100) if benefits > 0 else 0

    if change.get("change_type") == "SCOPE_CHANGE":
        scope_factor = 18
    elif len((change.get("impact_scope") or "").strip()) > 120:
        scope_factor = 12
    else:
        scope_factor = 6
    schedule_factor = clamp(abs(schedule_days) * 0.9, 0, 28)
    budget_factor = clamp(abs(budget_variance_pct) * 1.6, 0, 34)
    risk_points = RISK_POINTS[to_title_case_risk(change.get("impact_risk_level"))]

    escalation = 0
    if abs(budget_delta) >= float(thresholds.get("budget_impact_threshold_abs") or 0) > 0:
        escalation = BUDGET_ESCALATION_POINTS

    score = round2(clamp(scope_factor + schedule_factor + budget_factor + risk_points + escalation, 0, 100))
    severity = severity_from_score(score)
    return {
        "budget_variance_pct": budget_variance_pct,
        "benefits_variance_pct": benefits_variance_pct,
        "score": score,
        "severity": severity,
        "projected_completion_date": _add_days(submission.get("end_date"), schedule_days),
        "health_score_adjustment": round2(clamp(score / 8, 0, 12)),
        "sla_risk_indicator": abs(schedule_days) >= 14 or severity in ("Major", "Critical"),
    }


def is_significant_scope_change(change: dict) -> bool:
    if change.get("change_type") == "SCOPE_CHANGE":
        return True
    text = " ".join(
        str(change.get(key) or "") for key in ("title", "description", "impact_scope")
    ).lower()
    return any(token in text for token in SIGNIFICANT_SCOPE_TOKENS)


def _signed(value: float) -> str:
    sign = "+" if value >= 0 else "-"
    return f"{sign}{abs(value):,.0f}"


def summarize_impact(change: dict) -> str:
    days = int(change.get("impact_schedule_days") or 0)
    return (
        f"Schedule {'+' if days >= 0 else ''}{days}d, "
        f"budget {_signed(float(change.get('impact_budget_delta') or 0))}, "
        f"benefits {_signed(float(change.get('impact_benefits_delta') or 0))}."
    )
