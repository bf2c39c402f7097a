"""
Proposal Generator Tests
========================
"""

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from catalog_autotune.core.config import Settings
from catalog_autotune.core.models import (
    LearningProposal,
    ProposalKind,
    ProposalStatus,
    QaFeedback,
    QaStatus,
)
from catalog_autotune.core.self_improvement.proposals import (
    ProposalGenerator,
    has_high_severity_schema_violations,
    pick_top_token,
    tokenize,
)
from catalog_autotune.core.self_improvement.quality_gate import ConfusionAlert
from catalog_autotune.core.self_improvement.rule_patch import JsonFileRulesRepository
from catalog_autotune.core.self_improvement.store import SelfImprovementStore


@pytest.fixture
def generator(
    db_session: AsyncSession,
    rules_repository: JsonFileRulesRepository,
    loop_settings: Settings,
) -> ProposalGenerator:
    return ProposalGenerator(SelfImprovementStore(db_session), rules_repository, settings=loop_settings)


def payloads(proposals: list[LearningProposal]) -> list[tuple]:
    return [
        (proposal.kind, proposal.payload["target_slug"], proposal.payload["field"], proposal.payload["value"])
        for proposal in proposals
    ]


class TestTokenize:
    def test_strips_accents_and_stop_words(self):
        assert tokenize("Perceuse à percussion for the Wall") == ["perceuse", "percussion", "wall"]

    def test_pick_top_token_skips_known_terms(self):
        rows = [
            QaFeedback(sku="1", product_title="Drill impact driver", qa_status=QaStatus.FAIL),
            QaFeedback(sku="2", product_title="Impact driver 18", qa_status=QaStatus.FAIL),
        ]
        assert pick_top_token(rows, {"drill"}) == "impact"
        assert pick_top_token(rows, {"drill", "impact", "driver"}) is None


class TestGenerateForRun:
    async def test_qa_failures_become_term_additions(self, db_session: AsyncSession, generator: ProposalGenerator):
        db_session.add_all([
            QaFeedback(
                store_id="default", sku="S-1", product_title="Brushless impact driver",
                qa_status=QaStatus.FAIL, predicted_category_slug="drill-bits", corrected_category_slug="power-drills",
            ),
            QaFeedback(
                store_id="default", sku="S-2", product_title="Compact impact driver",
                qa_status=QaStatus.FAIL, predicted_category_slug="drill-bits", corrected_category_slug="power-drills",
            ),
            QaFeedback(
                store_id="default", sku="S-3", product_title="Titanium set",
                qa_status=QaStatus.FAIL, corrected_category_slug="not-a-rule",
            ),
        ])
        await db_session.commit()

        proposals = await generator.generate_for_run(None, "run-1", [], [])

        assert payloads(proposals) == [(ProposalKind.RULE_TERM_ADD, "power-drills", "include_any", "impact")]
        assert proposals[0].confidence_score == pytest.approx(0.64)
        assert proposals[0].source["fail_count"] == 2
        pending = await SelfImprovementStore(db_session).list_pending_proposals(run_id="run-1")
        assert [proposal.id for proposal in pending] == [proposals[0].id]

    async def test_gate_failures_become_threshold_nudges(self, generator: ProposalGenerator):
        alerts = [ConfusionAlert(category_slug="power-drills", low_margin_count=1, contradiction_count=1)]

        proposals = await generator.generate_for_run(
            None, "run-1",
            ["auto_accepted_rate", "needs_review_rate", "fallback_category_rate"],
            alerts,
        )

        assert payloads(proposals) == [
            (ProposalKind.THRESHOLD_TUNE, "uncategorized", "auto_min_confidence", 0.87),
            (ProposalKind.THRESHOLD_TUNE, "power-drills", "auto_min_confidence", 0.79),
            (ProposalKind.THRESHOLD_TUNE, "power-drills", "auto_min_margin", 0.09),
        ]
        assert all(proposal.status == ProposalStatus.PROPOSED for proposal in proposals)

    async def test_heavy_confusion_yields_structural_proposal(self, generator: ProposalGenerator):
        alerts = [ConfusionAlert(category_slug="drill-bits", low_margin_count=3, contradiction_count=2)]

        proposals = await generator.generate_for_run(None, "run-1", [], alerts)

        assert [proposal.kind for proposal in proposals] == [ProposalKind.TAXONOMY_MERGE]
        assert proposals[0].is_structural
        assert proposals[0].confidence_score == pytest.approx(0.6)

    async def test_filters_structural_and_low_confidence(self, generator: ProposalGenerator):
        alerts = [ConfusionAlert(category_slug="power-drills", low_margin_count=3, contradiction_count=2)]

        proposals = await generator.generate_for_run(
            None, "run-1", ["auto_accepted_rate", "needs_review_rate"], alerts,
            min_confidence=0.71,
            allow_structural=False,
        )

        assert payloads(proposals) == [(ProposalKind.THRESHOLD_TUNE, "power-drills", "auto_min_confidence", 0.79)]

    async def test_max_proposals_keeps_highest_impact(self, generator: ProposalGenerator):
        alerts = [ConfusionAlert(category_slug="power-drills", low_margin_count=1)]

        proposals = await generator.generate_for_run(
            None, "run-1", ["auto_accepted_rate", "fallback_category_rate"], alerts,
            max_proposals=1,
        )

        assert payloads(proposals) == [(ProposalKind.THRESHOLD_TUNE, "uncategorized", "auto_min_confidence", 0.87)]

    async def test_no_signal_no_proposals(self, generator: ProposalGenerator):
        assert await generator.generate_for_run(None, "run-1", [], []) == []


class TestSchemaViolations:
    def make(self, **payload) -> LearningProposal:
        base = {"target_slug": "power-drills", "field": "include_any", "value": "x", "reason": "r"}
        base.update(payload)
        return LearningProposal(kind=ProposalKind.RULE_TERM_ADD, payload=base)

    def test_valid_payloads(self):
        assert not has_high_severity_schema_violations([
            self.make(),
            self.make(field="auto_min_confidence", value=0.7),
        ])

    @pytest.mark.parametrize("payload", [
        {"target_slug": ""},
        {"reason": " "},
        {"field": "auto_min_confidence", "value": "0.7"},
        {"field": "auto_min_margin", "value": True},
        {"value": 3},
    ])
    def test_violations(self, payload):
        assert has_high_severity_schema_violations([self.make(), self.make(**payload)])
