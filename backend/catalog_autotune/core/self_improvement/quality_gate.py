"""
Quality Gate - Threshold checks on pipeline run statistics.

Also builds the self-correction context that is attached to every failed
attempt so the next attempt (and a human reading the batch) knows what
went wrong and where to look.
"""

import math
from dataclasses import asdict, dataclass, field
from typing import Any, Optional


@dataclass
class ConfusionAlert:
    category_slug: str
    affected_count: int = 0
    low_margin_count: int = 0
    contradiction_count: int = 0
    fallback_count: int = 0

    @property
    def pressure(self) -> int:
        return self.contradiction_count + self.low_margin_count


@dataclass
class QualityGateResult:
    passed: bool
    base_passed: bool
    canary_threshold_passed: bool
    failed_metrics: list[str] = field(default_factory=list)
    base_failed_metrics: list[str] = field(default_factory=list)
    metrics: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class SelfCorrectionContext:
    """What failed in an attempt and which fixes are worth trying next."""

    failure_summary: str
    last_confusion_alerts: list[dict[str, Any]] = field(default_factory=list)
    failed_gate_metrics: list[str] = field(default_factory=list)
    candidate_fixes: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


CANDIDATE_FIXES = {
    "auto_accepted_rate": "review_category_thresholds_for_low_auto_acceptance",
    "fallback_category_rate": "tighten_fallback_rescue_rules_for_specific_families",
    "attribute_validation_fail_rate": "tighten_attribute_policy_validation_or_schema_constraints",
    "needs_review_rate": "improve_disambiguation_for_review_heavy_categories",
}


# ==========================================================================
# Helpers
# ==========================================================================

def as_number(value: Any) -> Optional[float]:
    """Finite float or None, for loosely typed stats values."""
    if value is None or isinstance(value, bool):
        return None
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return None
    return parsed if math.isfinite(parsed) else None


def unique(values: list[str]) -> list[str]:
    """Drop duplicates, keeping first-seen order."""
    return list(dict.fromkeys(values))


def parse_confusion_alerts(value: Any) -> list[ConfusionAlert]:
    if not isinstance(value, list):
        return []
    alerts = []
    for entry in value:
        if not isinstance(entry, dict):
            continue
        slug = str(entry.get("category_slug") or "")
        if not slug:
            continue
        alerts.append(ConfusionAlert(
            category_slug=slug,
            affected_count=int(as_number(entry.get("affected_count")) or 0),
            low_margin_count=int(as_number(entry.get("low_margin_count")) or 0),
            contradiction_count=int(as_number(entry.get("contradiction_count")) or 0),
            fallback_count=int(as_number(entry.get("fallback_count")) or 0),
        ))
    return alerts


def top_alerts(alerts: list[ConfusionAlert], limit: int) -> list[ConfusionAlert]:
    return sorted(alerts, key=lambda alert: alert.pressure, reverse=True)[:limit]


# ==========================================================================
# Gate Evaluation
# ==========================================================================

def extract_failed_gate_metrics(stats: dict[str, Any]) -> list[str]:
    """Compare run stats to the targets the pipeline recorded under quality_gate."""
    gate = stats.get("quality_gate") if isinstance(stats.get("quality_gate"), dict) else {}
    failed: list[str] = []

    auto_accepted = as_number(stats.get("auto_accepted_rate"))
    auto_accepted_target = as_number(gate.get("auto_accepted_rate_target"))
    if auto_accepted is not None and auto_accepted_target is not None and auto_accepted < auto_accepted_target:
        failed.append("auto_accepted_rate")

    fallback = as_number(stats.get("fallback_category_rate"))
    fallback_target = as_number(gate.get("fallback_category_rate_target"))
    if fallback is not None and fallback_target is not None and fallback > fallback_target:
        failed.append("fallback_category_rate")

    validation_fails = as_number(stats.get("attribute_validation_fail_count"))
    validation_target = as_number(gate.get("attribute_validation_fail_rate_target"))
    processed = max(1.0, as_number(stats.get("unique_products_processed")) or 0.0)
    if validation_fails is not None and validation_target is not None:
        if validation_fails / processed > validation_target:
            failed.append("attribute_validation_fail_rate")

    needs_review = as_number(stats.get("needs_review_rate"))
    needs_review_target = as_number(gate.get("needs_review_rate_target"))
    if needs_review is not None and needs_review_target is not None and needs_review > needs_review_target:
        failed.append("needs_review_rate")

    if gate.get("pre_qa_passed") is False and not failed:
        failed.append("pre_qa_failed_unknown")

    return unique(failed)


def evaluate_quality_gate(
    stats: dict[str, Any],
    require_canary_threshold: bool = False,
    canary_threshold: float = 0.0,
) -> QualityGateResult:
    """
    Evaluate a run against the quality gate.

    Canary runs additionally need auto_accepted_rate >= canary_threshold;
    base_passed ignores that extra check.
    """
    base_failed = extract_failed_gate_metrics(stats)
    failed = list(base_failed)
    canary_passed = True
    metrics: dict[str, Any] = {
        "auto_accepted_rate": stats.get("auto_accepted_rate"),
        "fallback_category_rate": stats.get("fallback_category_rate"),
        "needs_review_rate": stats.get("needs_review_rate"),
        "quality_gate": stats.get("quality_gate") if isinstance(stats.get("quality_gate"), dict) else {},
    }

    if require_canary_threshold:
        rate = as_number(stats.get("auto_accepted_rate"))
        metrics["canary_auto_accepted_threshold"] = canary_threshold
        metrics["canary_auto_accepted_rate"] = rate
        if rate is None or rate < canary_threshold:
            failed.append("canary_auto_accepted_rate")
            canary_passed = False

    return QualityGateResult(
        passed=not failed,
        base_passed=not base_failed,
        canary_threshold_passed=canary_passed,
        failed_metrics=unique(failed),
        base_failed_metrics=base_failed,
        metrics=metrics,
    )


# ==========================================================================
# Self-Correction Context
# ==========================================================================

def build_candidate_fixes(failed_metrics: list[str], alerts: list[ConfusionAlert]) -> list[str]:
    fixes = [
        CANDIDATE_FIXES.get(metric, f"investigate_gate_metric_{metric}")
        for metric in failed_metrics
    ]
    fixes.extend(f"inspect_confusion_pair_{alert.category_slug}" for alert in top_alerts(alerts, 3))
    return unique(fixes)


def build_self_correction_context(
    error: Optional[BaseException | str],
    stats: Optional[dict[str, Any]] = None,
) -> SelfCorrectionContext:
    """Summarize a failed attempt from its error (if any) and its run stats."""
    stats = stats or {}
    alerts = parse_confusion_alerts(stats.get("top_confusion_alerts"))
    failed_metrics = extract_failed_gate_metrics(stats)

    if error is None:
        summary = "unknown_error"
    else:
        summary = str(error) or type(error).__name__

    return SelfCorrectionContext(
        failure_summary=summary,
        last_confusion_alerts=[asdict(alert) for alert in alerts],
        failed_gate_metrics=failed_metrics,
        candidate_fixes=build_candidate_fixes(failed_metrics, alerts),
    )


def build_candidate_fixes_from_stats(stats: dict[str, Any]) -> list[str]:
    alerts = parse_confusion_alerts(stats.get("top_confusion_alerts"))
    return build_candidate_fixes(extract_failed_gate_metrics(stats), alerts)
