"""
Proposal Generator - Turns failure signals into candidate rule edits.

Signals used:
- QA failures: the most frequent unseen title term of each corrected
  category becomes an include_any addition.
- Failed gate metrics: small threshold nudges on the most confused category
  (or on the fallback category for fallback-rate failures).
- Heavy confusion pressure: structural taxonomy proposals, which are only
  ever applied synthetically.
"""

import re
import unicodedata
import uuid
from collections import Counter, defaultdict
from typing import Any, Iterable, Optional

import structlog

from catalog_autotune.core.config import Settings, get_settings
from catalog_autotune.core.models import (
    STRUCTURAL_PROPOSAL_KINDS,
    LearningProposal,
    ProposalKind,
    ProposalStatus,
    QaFeedback,
)
from catalog_autotune.core.self_improvement.quality_gate import ConfusionAlert, top_alerts
from catalog_autotune.core.self_improvement.rule_patch import (
    LIST_FIELDS,
    NUMERIC_FIELDS,
    RulesRepository,
)
from catalog_autotune.core.self_improvement.store import SelfImprovementStore

logger = structlog.get_logger(__name__)

STOP_WORDS = frozenset({
    "a", "an", "and", "as", "at", "by", "for", "from", "in", "kit", "of",
    "on", "or", "pack", "set", "the", "to", "with",
})

DEFAULT_AUTO_MIN_CONFIDENCE = 0.76
DEFAULT_AUTO_MIN_MARGIN = 0.1
DEFAULT_FALLBACK_MIN_CONFIDENCE = 0.86
STRUCTURAL_PRESSURE_THRESHOLD = 4


def clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


def tokenize(text: str) -> list[str]:
    normalized = unicodedata.normalize("NFKD", text)
    normalized = "".join(char for char in normalized if not unicodedata.combining(char))
    normalized = re.sub(r"[^\w\s./-]", " ", normalized.lower())
    return [token for token in normalized.split() if len(token) > 1 and token not in STOP_WORDS]


def pick_top_token(rows: Iterable[QaFeedback], disallowed: set[str]) -> Optional[str]:
    counts: Counter[str] = Counter()
    for row in rows:
        for token in tokenize(f"{row.product_title or ''} {row.review_notes or ''}"):
            if len(token) < 3 or token.isdigit() or token in disallowed:
                continue
            counts[token] += 1
    if not counts:
        return None
    # Counter.most_common keeps insertion order between equal counts
    return counts.most_common(1)[0][0]


def has_high_severity_schema_violations(proposals: Iterable[LearningProposal]) -> bool:
    """True when any payload is missing its target or carries a value of the wrong type."""
    for proposal in proposals:
        payload = proposal.payload or {}
        target_slug = str(payload.get("target_slug") or "").strip()
        reason = str(payload.get("reason") or "").strip()
        field = payload.get("field")
        value = payload.get("value")

        if not target_slug or not reason or not field:
            return True
        if field in NUMERIC_FIELDS and (isinstance(value, bool) or not isinstance(value, (int, float))):
            return True
        if field in LIST_FIELDS and not isinstance(value, str):
            return True
    return False


class ProposalGenerator:
    """Generates and persists learning proposals for one loop run."""

    def __init__(
        self,
        store: SelfImprovementStore,
        rules: RulesRepository,
        settings: Optional[Settings] = None,
    ):
        self.store = store
        self.rules = rules
        self.settings = settings or get_settings()

    async def generate_for_run(
        self,
        batch_id: Optional[uuid.UUID],
        run_id: Optional[str],
        failed_metrics: list[str],
        alerts: list[ConfusionAlert],
        max_proposals: Optional[int] = None,
        min_confidence: float = 0.0,
        allow_structural: bool = True,
    ) -> list[LearningProposal]:
        rules_by_slug = {
            category.get("slug"): category
            for category in self.rules.read().rules.get("categories", [])
        }
        drafts: list[dict[str, Any]] = []
        drafts.extend(await self._qa_term_proposals(rules_by_slug))
        drafts.extend(self._threshold_proposals(rules_by_slug, set(failed_metrics), alerts))
        drafts.extend(self._structural_proposals(alerts))

        if not allow_structural:
            drafts = [draft for draft in drafts if draft["kind"] not in STRUCTURAL_PROPOSAL_KINDS]
        drafts = [draft for draft in drafts if draft["confidence_score"] >= min_confidence]

        limit = max(1, max_proposals or self.settings.SELF_IMPROVE_MAX_PROPOSALS_PER_LOOP)
        drafts.sort(key=lambda draft: draft["expected_impact_score"], reverse=True)
        drafts = drafts[:limit]

        proposals = [
            LearningProposal(
                batch_id=batch_id,
                run_id=run_id,
                status=ProposalStatus.PROPOSED,
                **draft,
            )
            for draft in drafts
        ]
        if proposals:
            await self.store.insert_proposals(proposals)

        logger.info(
            "learning_proposals_generated",
            batch_id=str(batch_id) if batch_id else None,
            run_id=run_id,
            count=len(proposals),
            min_confidence=min_confidence,
            allow_structural=allow_structural,
        )
        return proposals

    async def _qa_term_proposals(self, rules_by_slug: dict[str, dict]) -> list[dict[str, Any]]:
        rows_by_category: dict[str, list[QaFeedback]] = defaultdict(list)
        for row in await self.store.list_qa_failures(self.settings.STORE_ID):
            corrected = (row.corrected_category_slug or "").strip()
            if corrected:
                rows_by_category[corrected].append(row)

        drafts = []
        for slug, rows in rows_by_category.items():
            rule = rules_by_slug.get(slug)
            if rule is None:
                continue
            disallowed = {
                term.lower()
                for field in LIST_FIELDS
                for term in rule.get(field) or []
            }
            token = pick_top_token(rows, disallowed)
            if token is None:
                continue
            drafts.append({
                "kind": ProposalKind.RULE_TERM_ADD,
                "confidence_score": clamp(0.6 + len(rows) * 0.02, high=0.95),
                "expected_impact_score": clamp(len(rows) / 25),
                "payload": {
                    "target_slug": slug,
                    "field": "include_any",
                    "action": "add",
                    "value": token,
                    "reason": "qa_fail_correction_signal",
                },
                "source": {
                    "strategy": "qa_feedback_term_mining",
                    "corrected_category": slug,
                    "fail_count": len(rows),
                },
            })
        return drafts

    def _threshold_proposals(
        self,
        rules_by_slug: dict[str, dict],
        failed_metrics: set[str],
        alerts: list[ConfusionAlert],
    ) -> list[dict[str, Any]]:
        drafts = []
        ranked = top_alerts(alerts, 1)
        top_rule = rules_by_slug.get(ranked[0].category_slug) if ranked else None

        if "auto_accepted_rate" in failed_metrics and top_rule is not None:
            current = top_rule.get("auto_min_confidence", DEFAULT_AUTO_MIN_CONFIDENCE)
            drafts.append(_threshold_draft(
                target_slug=top_rule["slug"],
                field="auto_min_confidence",
                value=round(clamp(current - 0.01, 0.55, 0.98), 4),
                reason="raise_auto_acceptance",
                confidence=0.72,
                impact=0.5,
            ))

        if "needs_review_rate" in failed_metrics and top_rule is not None:
            current = top_rule.get("auto_min_margin", DEFAULT_AUTO_MIN_MARGIN)
            drafts.append(_threshold_draft(
                target_slug=top_rule["slug"],
                field="auto_min_margin",
                value=round(clamp(current - 0.01, 0.04, 0.4), 4),
                reason="reduce_review_pressure",
                confidence=0.7,
                impact=0.45,
            ))

        fallback_rule = rules_by_slug.get(self.settings.FALLBACK_CATEGORY_SLUG)
        if "fallback_category_rate" in failed_metrics and fallback_rule is not None:
            current = fallback_rule.get("auto_min_confidence", DEFAULT_FALLBACK_MIN_CONFIDENCE)
            drafts.append(_threshold_draft(
                target_slug=fallback_rule["slug"],
                field="auto_min_confidence",
                value=round(clamp(current + 0.01, 0.5, 0.98), 4),
                reason="contain_fallback_expansion",
                confidence=0.74,
                impact=0.52,
            ))
        return drafts

    def _structural_proposals(self, alerts: list[ConfusionAlert]) -> list[dict[str, Any]]:
        drafts = []
        for alert in top_alerts(alerts, 2):
            if alert.pressure < STRUCTURAL_PRESSURE_THRESHOLD:
                continue
            drafts.append({
                "kind": ProposalKind.TAXONOMY_MERGE,
                "confidence_score": clamp(0.45 + alert.pressure * 0.03),
                "expected_impact_score": clamp(alert.pressure / 20),
                "payload": {
                    "target_slug": alert.category_slug,
                    "field": "include_any",
                    "action": "add",
                    "value": "structural_merge_probe",
                    "reason": "high_confusion_structural_signal",
                },
                "source": {
                    "strategy": "confusion_structural_signal",
                    "alert": {
                        "category_slug": alert.category_slug,
                        "low_margin_count": alert.low_margin_count,
                        "contradiction_count": alert.contradiction_count,
                    },
                },
            })
        return drafts


def _threshold_draft(
    target_slug: str,
    field: str,
    value: float,
    reason: str,
    confidence: float,
    impact: float,
) -> dict[str, Any]:
    return {
        "kind": ProposalKind.THRESHOLD_TUNE,
        "confidence_score": confidence,
        "expected_impact_score": impact,
        "payload": {
            "target_slug": target_slug,
            "field": field,
            "action": "set",
            "value": value,
            "reason": reason,
        },
        "source": {"strategy": "gate_metric_adjustment", "reason": reason},
    }
