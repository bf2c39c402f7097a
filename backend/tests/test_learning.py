"""
Learning Apply & Rollback Tests
===============================

Applies and rollbacks touch both the rules file and the database; these
tests check the two never drift apart.
"""

import json
from pathlib import Path
from typing import Any

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from catalog_autotune.core.models import (
    AppliedChangeStatus,
    LearningProposal,
    ProposalKind,
    ProposalStatus,
    RollbackEvent,
)
from catalog_autotune.core.self_improvement.harness import HarnessEvalResult
from catalog_autotune.core.self_improvement.learning import (
    HARNESS_DEGRADE_REASON,
    ApplyScope,
    LearningApplier,
    RollbackManager,
    RulesRestoreError,
)
from catalog_autotune.core.self_improvement.rule_patch import JsonFileRulesRepository, RulesSnapshot
from catalog_autotune.core.self_improvement.store import SelfImprovementStore

from conftest import SAMPLE_RULES


# ==========================================================================
# Fixtures
# ==========================================================================

SCOPE = ApplyScope(run_id="run-1")
HARNESS_PASSED = HarnessEvalResult(passed=True, candidate_run_id="run-1")
HARNESS_FAILED = HarnessEvalResult(passed=False, candidate_run_id="run-1", failed_metrics=["l1_delta"])


@pytest.fixture
def store(db_session: AsyncSession) -> SelfImprovementStore:
    return SelfImprovementStore(db_session)


@pytest.fixture
def applier(store: SelfImprovementStore, rules_repository: JsonFileRulesRepository) -> LearningApplier:
    return LearningApplier(store, rules_repository)


@pytest.fixture
def rollbacks(store: SelfImprovementStore, rules_repository: JsonFileRulesRepository) -> RollbackManager:
    return RollbackManager(store, rules_repository)


async def add_proposal(
    store: SelfImprovementStore,
    payload: dict[str, Any],
    kind: ProposalKind = ProposalKind.THRESHOLD_TUNE,
    impact: float = 0.5,
    run_id: str = "run-1",
) -> LearningProposal:
    proposal = LearningProposal(
        run_id=run_id,
        kind=kind,
        status=ProposalStatus.PROPOSED,
        confidence_score=0.8,
        expected_impact_score=impact,
        payload={"reason": "test_signal", **payload},
        source={},
    )
    await store.insert_proposals([proposal])
    return proposal


def read_category(path: Path, slug: str) -> dict[str, Any]:
    rules = json.loads(path.read_text(encoding="utf-8"))
    return next(item for item in rules["categories"] if item["slug"] == slug)


THRESHOLD_PAYLOAD = {"target_slug": "power-drills", "field": "auto_min_confidence", "action": "set", "value": 0.72}
TERM_PAYLOAD = {"target_slug": "power-drills", "field": "include_any", "action": "add", "value": "hammer drill"}


# ==========================================================================
# Apply
# ==========================================================================

class TestApplyProposal:
    async def test_apply_writes_file_and_records_change(
        self, store: SelfImprovementStore, applier: LearningApplier, rules_path: Path,
    ):
        proposal = await add_proposal(store, THRESHOLD_PAYLOAD)

        change = await applier.apply_proposal(proposal, SCOPE)

        assert read_category(rules_path, "power-drills")["auto_min_confidence"] == 0.72
        assert change.status == AppliedChangeStatus.APPLIED
        assert change.change_metadata["old_value"] == 0.8
        assert change.change_metadata["new_value"] == 0.72
        assert change.change_metadata["run_id"] == "run-1"
        assert change.version_before != change.version_after
        assert (await store.get_proposal(proposal.id)).status == ProposalStatus.APPLIED

    async def test_applied_proposal_cannot_be_applied_again(
        self, store: SelfImprovementStore, applier: LearningApplier,
    ):
        proposal = await add_proposal(store, THRESHOLD_PAYLOAD)
        await applier.apply_proposal(proposal, SCOPE)

        with pytest.raises(ValueError, match="not proposed"):
            await applier.apply_proposal(proposal, SCOPE)

    async def test_failed_commit_restores_rules_file(
        self,
        db_session: AsyncSession,
        store: SelfImprovementStore,
        applier: LearningApplier,
        rules_path: Path,
        monkeypatch,
    ):
        proposal = await add_proposal(store, THRESHOLD_PAYLOAD)
        proposal_id = proposal.id
        before = rules_path.read_text(encoding="utf-8")

        async def failing_commit():
            raise RuntimeError("database unavailable")

        monkeypatch.setattr(db_session, "commit", failing_commit)
        with pytest.raises(RuntimeError, match="database unavailable"):
            await applier.apply_proposal(proposal, SCOPE)
        monkeypatch.undo()

        assert rules_path.read_text(encoding="utf-8") == before
        assert (await store.get_proposal(proposal_id)).status == ProposalStatus.PROPOSED
        assert await store.list_recent_applied_changes() == []

    async def test_failed_restore_raises_restore_error(
        self,
        db_session: AsyncSession,
        store: SelfImprovementStore,
        rules_path: Path,
        monkeypatch,
    ):
        class BrokenRestoreRepository(JsonFileRulesRepository):
            def restore(self, snapshot: RulesSnapshot) -> None:
                raise OSError("disk full")

        applier = LearningApplier(store, BrokenRestoreRepository(rules_path))
        proposal = await add_proposal(store, THRESHOLD_PAYLOAD)

        async def failing_commit():
            raise RuntimeError("database unavailable")

        monkeypatch.setattr(db_session, "commit", failing_commit)
        with pytest.raises(RulesRestoreError, match="disk full"):
            await applier.apply_proposal(proposal, SCOPE)


class TestApplyPending:
    async def test_harness_failure_applies_nothing(
        self, store: SelfImprovementStore, applier: LearningApplier,
    ):
        await add_proposal(store, THRESHOLD_PAYLOAD)

        result = await applier.apply_pending(SCOPE, HARNESS_FAILED, max_structural_changes=2)

        assert result.applied == 0
        assert result.considered == 0

    async def test_structural_proposals_are_applied_synthetically(
        self, store: SelfImprovementStore, applier: LearningApplier, rules_path: Path,
    ):
        before = rules_path.read_text(encoding="utf-8")
        first = await add_proposal(store, TERM_PAYLOAD, kind=ProposalKind.TAXONOMY_MERGE, impact=0.9)
        second = await add_proposal(store, TERM_PAYLOAD, kind=ProposalKind.TAXONOMY_SPLIT, impact=0.8)

        result = await applier.apply_pending(SCOPE, HARNESS_PASSED, max_structural_changes=1)

        assert result.considered == 2
        assert result.applied == 1
        assert result.structural_applied == 1
        change = result.applied_changes[0]
        assert change.proposal_id == first.id
        assert change.is_synthetic
        assert change.change_metadata["apply_mode"] == "structural_synthetic"
        assert rules_path.read_text(encoding="utf-8") == before
        assert (await store.get_proposal(second.id)).status == ProposalStatus.PROPOSED

    async def test_structural_cap_zero_keeps_rule_patches(
        self, store: SelfImprovementStore, applier: LearningApplier, rules_path: Path,
    ):
        await add_proposal(store, TERM_PAYLOAD, kind=ProposalKind.TAXONOMY_MERGE, impact=0.9)
        await add_proposal(store, TERM_PAYLOAD, kind=ProposalKind.RULE_TERM_ADD, impact=0.1)

        result = await applier.apply_pending(SCOPE, HARNESS_PASSED, max_structural_changes=0)

        assert result.applied == 1
        assert result.structural_applied == 0
        assert "hammer drill" in read_category(rules_path, "power-drills")["include_any"]

    async def test_other_scopes_are_untouched(
        self, store: SelfImprovementStore, applier: LearningApplier,
    ):
        other = await add_proposal(store, THRESHOLD_PAYLOAD, run_id="run-2")

        result = await applier.apply_pending(SCOPE, HARNESS_PASSED, max_structural_changes=2)

        assert result.applied == 0
        assert (await store.get_proposal(other.id)).status == ProposalStatus.PROPOSED


# ==========================================================================
# Rollback
# ==========================================================================

class TestRollbackChange:
    async def test_scalar_rollback_restores_identical_bytes(
        self,
        db_session: AsyncSession,
        store: SelfImprovementStore,
        applier: LearningApplier,
        rollbacks: RollbackManager,
        rules_path: Path,
    ):
        before = rules_path.read_text(encoding="utf-8")
        proposal = await add_proposal(store, THRESHOLD_PAYLOAD)
        change = await applier.apply_proposal(proposal, SCOPE)

        rolled_back = await rollbacks.rollback_change(change.id, "manual_rollback", {"trigger": "test"})

        assert rules_path.read_text(encoding="utf-8") == before
        assert rolled_back.status == AppliedChangeStatus.ROLLED_BACK
        assert rolled_back.rolled_back_at is not None
        assert (await store.get_proposal(proposal.id)).status == ProposalStatus.ROLLED_BACK
        events = (await db_session.execute(select(RollbackEvent))).scalars().all()
        assert [(event.reason, event.event_metadata) for event in events] == [
            ("manual_rollback", {"trigger": "test"}),
        ]

    async def test_rollback_keeps_hand_formatted_file_byte_identical(
        self,
        applier: LearningApplier,
        rollbacks: RollbackManager,
        rules_path: Path,
    ):
        hand_written = json.dumps(SAMPLE_RULES, indent=4).replace(
            '"auto_min_confidence": 0.8,',
            '"auto_min_confidence": 0.80,',
        )
        rules_path.write_bytes(hand_written.encode("utf-8"))
        proposal = await add_proposal(applier.store, THRESHOLD_PAYLOAD)
        change = await applier.apply_proposal(proposal, SCOPE)
        assert read_category(rules_path, "power-drills")["auto_min_confidence"] == 0.72

        await rollbacks.rollback_change(change.id, "manual_rollback")

        assert rules_path.read_bytes() == hand_written.encode("utf-8")

    async def test_rollback_after_later_edit_reverts_only_its_field(
        self,
        store: SelfImprovementStore,
        applier: LearningApplier,
        rollbacks: RollbackManager,
        rules_path: Path,
    ):
        threshold = await add_proposal(store, THRESHOLD_PAYLOAD)
        change = await applier.apply_proposal(threshold, SCOPE)
        term = await add_proposal(store, TERM_PAYLOAD, kind=ProposalKind.RULE_TERM_ADD)
        await applier.apply_proposal(term, SCOPE)

        await rollbacks.rollback_change(change.id, "manual_rollback")

        category = read_category(rules_path, "power-drills")
        assert category["auto_min_confidence"] == 0.8
        assert category["include_any"] == ["drill", "cordless drill", "hammer drill"]

    async def test_list_rollback_restores_previous_terms(
        self,
        store: SelfImprovementStore,
        applier: LearningApplier,
        rollbacks: RollbackManager,
        rules_path: Path,
    ):
        proposal = await add_proposal(store, TERM_PAYLOAD, kind=ProposalKind.RULE_TERM_ADD)
        change = await applier.apply_proposal(proposal, SCOPE)
        assert read_category(rules_path, "power-drills")["include_any"] == ["drill", "cordless drill", "hammer drill"]

        await rollbacks.rollback_change(change.id, "manual_rollback")

        assert read_category(rules_path, "power-drills")["include_any"] == ["drill", "cordless drill"]

    async def test_second_rollback_is_rejected(
        self,
        store: SelfImprovementStore,
        applier: LearningApplier,
        rollbacks: RollbackManager,
    ):
        proposal = await add_proposal(store, THRESHOLD_PAYLOAD)
        change = await applier.apply_proposal(proposal, SCOPE)
        await rollbacks.rollback_change(change.id, "manual_rollback")

        with pytest.raises(ValueError, match="already rolled back"):
            await rollbacks.rollback_change(change.id, "manual_rollback")

    async def test_synthetic_rollback_leaves_file_alone(
        self,
        store: SelfImprovementStore,
        applier: LearningApplier,
        rollbacks: RollbackManager,
        rules_path: Path,
    ):
        proposal = await add_proposal(store, TERM_PAYLOAD, kind=ProposalKind.TAXONOMY_MOVE)
        change = await applier.record_synthetic_apply(proposal, SCOPE)
        before = rules_path.read_text(encoding="utf-8")

        rolled_back = await rollbacks.rollback_change(change.id, "manual_rollback")

        assert rolled_back.status == AppliedChangeStatus.ROLLED_BACK
        assert rules_path.read_text(encoding="utf-8") == before


class TestRollbackOnHarnessDegrade:
    async def test_latest_in_scope_change_is_rolled_back(
        self,
        db_session: AsyncSession,
        store: SelfImprovementStore,
        applier: LearningApplier,
        rollbacks: RollbackManager,
        rules_path: Path,
    ):
        proposal = await add_proposal(store, THRESHOLD_PAYLOAD)
        change = await applier.apply_proposal(proposal, SCOPE)

        result = await rollbacks.rollback_on_harness_degrade(SCOPE, HARNESS_FAILED, watch_loops=2)

        assert result.rolled_back
        assert result.change.id == change.id
        assert read_category(rules_path, "power-drills")["auto_min_confidence"] == 0.8
        event = (await db_session.execute(select(RollbackEvent))).scalar_one()
        assert event.reason == HARNESS_DEGRADE_REASON
        assert event.event_metadata["failed_metrics"] == ["l1_delta"]

    async def test_passing_harness_or_disabled_does_nothing(
        self,
        store: SelfImprovementStore,
        applier: LearningApplier,
        rollbacks: RollbackManager,
    ):
        proposal = await add_proposal(store, THRESHOLD_PAYLOAD)
        await applier.apply_proposal(proposal, SCOPE)

        assert not (await rollbacks.rollback_on_harness_degrade(SCOPE, HARNESS_PASSED, watch_loops=2)).rolled_back
        assert not (
            await rollbacks.rollback_on_harness_degrade(SCOPE, HARNESS_FAILED, watch_loops=2, enabled=False)
        ).rolled_back

    async def test_out_of_scope_change_is_kept(
        self,
        store: SelfImprovementStore,
        applier: LearningApplier,
        rollbacks: RollbackManager,
    ):
        proposal = await add_proposal(store, THRESHOLD_PAYLOAD)
        await applier.apply_proposal(proposal, SCOPE)

        result = await rollbacks.rollback_on_harness_degrade(ApplyScope(run_id="run-9"), HARNESS_FAILED, watch_loops=2)

        assert not result.rolled_back
