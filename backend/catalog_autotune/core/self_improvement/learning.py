"""
Learning Apply & Rollback - Commits proposals to the rules file and undoes them.

The rules file and the database cannot share one atomic commit, so every
apply and rollback runs as a small saga:

    1. read the rules snapshot
    2. write the edited rules (compare-and-swap on the snapshot version)
    3. write the database rows and commit
    4. on failure after step 2: restore the snapshot bytes, then re-raise

A crash between steps 2 and 3 still leaves the file ahead of the database;
nothing repairs that automatically.
"""

import uuid
from dataclasses import dataclass, field
from typing import Any, Optional

import structlog

from catalog_autotune.core.models import (
    AppliedChange,
    AppliedChangeStatus,
    LearningProposal,
    LearningProposalDiff,
    ProposalStatus,
    RollbackEvent,
    utcnow,
)
from catalog_autotune.core.self_improvement.harness import HarnessEvalResult
from catalog_autotune.core.self_improvement.rule_patch import (
    RulesRepository,
    RulesSnapshot,
    apply_rule_patch,
    render_rules_diff,
    revert_rule_patch,
)
from catalog_autotune.core.self_improvement.store import SelfImprovementStore

logger = structlog.get_logger(__name__)

APPLY_MODE_RULE_PATCH = "rule_patch"
APPLY_MODE_STRUCTURAL_SYNTHETIC = "structural_synthetic"
HARNESS_DEGRADE_REASON = "harness_degrade_detected"


class RulesRestoreError(RuntimeError):
    """The compensating restore of the rules file failed; file and database may disagree."""


@dataclass
class ApplyScope:
    batch_id: Optional[uuid.UUID] = None
    run_id: Optional[str] = None

    def as_metadata(self) -> dict[str, Optional[str]]:
        return {
            "batch_id": str(self.batch_id) if self.batch_id else None,
            "run_id": self.run_id,
        }


@dataclass
class ApplyResult:
    considered: int = 0
    applied: int = 0
    structural_applied: int = 0
    applied_changes: list[AppliedChange] = field(default_factory=list)


@dataclass
class RollbackResult:
    rolled_back: bool = False
    change: Optional[AppliedChange] = None


def _restore_rules(rules: RulesRepository, snapshot: RulesSnapshot, context: dict[str, Any]) -> None:
    try:
        rules.restore(snapshot)
    except Exception as exc:
        logger.error("rules_restore_failed", error=str(exc), **context)
        raise RulesRestoreError(f"Could not restore rules file after failed commit: {exc}") from exc
    logger.warning("rules_restored_after_failed_commit", **context)


class LearningApplier:
    """Applies pending proposals, one saga per proposal."""

    def __init__(self, store: SelfImprovementStore, rules: RulesRepository):
        self.store = store
        self.db = store.db
        self.rules = rules

    async def apply_pending(
        self,
        scope: ApplyScope,
        harness_result: HarnessEvalResult,
        max_structural_changes: int,
    ) -> ApplyResult:
        """Apply every pending proposal of the scope; structural ones up to the cap."""
        result = ApplyResult()
        if not harness_result.passed:
            return result

        proposals = await self.store.list_pending_proposals(
            batch_id=scope.batch_id,
            run_id=scope.run_id,
            limit=100,
        )
        for proposal in proposals:
            result.considered += 1
            if proposal.is_structural:
                if result.structural_applied >= max_structural_changes:
                    continue
                change = await self.record_synthetic_apply(proposal, scope)
                result.structural_applied += 1
            else:
                change = await self.apply_proposal(proposal, scope)
            result.applied += 1
            result.applied_changes.append(change)

        logger.info(
            "learning_proposals_applied",
            batch_id=str(scope.batch_id) if scope.batch_id else None,
            run_id=scope.run_id,
            considered=result.considered,
            applied=result.applied,
            structural_applied=result.structural_applied,
        )
        return result

    async def apply_proposal(self, proposal: LearningProposal, scope: ApplyScope) -> AppliedChange:
        """Patch the rules file and record the applied change in one saga."""
        if proposal.status != ProposalStatus.PROPOSED:
            raise ValueError(f"Proposal {proposal.id} is {proposal.status.value}, not proposed.")

        proposal_id = proposal.id
        snapshot = self.rules.read()
        patch = apply_rule_patch(snapshot.rules, proposal.payload)
        file_written = False

        try:
            version_after = self.rules.compare_and_swap(snapshot.version, patch.rules)
            file_written = True

            self.db.add(LearningProposalDiff(
                proposal_id=proposal.id,
                before_snapshot=snapshot.rules,
                after_snapshot=patch.rules,
                diff_text=render_rules_diff(snapshot.rules, patch.rules),
                before_content=snapshot.content,
            ))
            change = AppliedChange(
                proposal_id=proposal.id,
                kind=proposal.kind,
                status=AppliedChangeStatus.APPLIED,
                version_before=snapshot.version,
                version_after=version_after,
                rollback_token=uuid.uuid4().hex,
                change_metadata={
                    "apply_mode": APPLY_MODE_RULE_PATCH,
                    "synthetic_apply": False,
                    **scope.as_metadata(),
                    "target_slug": proposal.payload.get("target_slug"),
                    "field": proposal.payload.get("field"),
                    "action": proposal.payload.get("action"),
                    "old_value": patch.old_value,
                    "new_value": patch.new_value,
                },
                applied_at=utcnow(),
            )
            self.db.add(change)
            proposal.status = ProposalStatus.APPLIED
            proposal.applied_at = change.applied_at
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            if file_written:
                _restore_rules(self.rules, snapshot, {"proposal_id": str(proposal_id), "operation": "apply"})
            raise

        logger.info(
            "learning_proposal_applied",
            proposal_id=str(proposal_id),
            applied_change_id=str(change.id),
            field=proposal.payload.get("field"),
            target_slug=proposal.payload.get("target_slug"),
        )
        return change

    async def record_synthetic_apply(self, proposal: LearningProposal, scope: ApplyScope) -> AppliedChange:
        """Mark a structural proposal applied without touching the rules file."""
        if proposal.status != ProposalStatus.PROPOSED:
            raise ValueError(f"Proposal {proposal.id} is {proposal.status.value}, not proposed.")

        version = self.rules.read().version
        change = AppliedChange(
            proposal_id=proposal.id,
            kind=proposal.kind,
            status=AppliedChangeStatus.APPLIED,
            version_before=version,
            version_after=f"{version}:{proposal.id}",
            rollback_token=uuid.uuid4().hex,
            change_metadata={
                "apply_mode": APPLY_MODE_STRUCTURAL_SYNTHETIC,
                "synthetic_apply": True,
                "reason": "structural_apply_cap",
                **scope.as_metadata(),
                "target_slug": proposal.payload.get("target_slug"),
                "field": proposal.payload.get("field"),
                "action": proposal.payload.get("action"),
            },
            applied_at=utcnow(),
        )
        self.db.add(change)
        proposal.status = ProposalStatus.APPLIED
        proposal.applied_at = change.applied_at
        try:
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise
        return change


class RollbackManager:
    """Reverts applied changes, manually or when the harness reports degradation."""

    def __init__(self, store: SelfImprovementStore, rules: RulesRepository):
        self.store = store
        self.db = store.db
        self.rules = rules

    async def rollback_change(
        self,
        applied_change_id: uuid.UUID,
        reason: str,
        metadata: Optional[dict[str, Any]] = None,
    ) -> AppliedChange:
        change = await self.store.get_applied_change(applied_change_id)
        if change is None or change.status != AppliedChangeStatus.APPLIED:
            raise ValueError(f"Applied change {applied_change_id} not found or already rolled back.")
        proposal = await self.store.get_proposal(change.proposal_id)
        if proposal is None:
            raise ValueError(f"Proposal {change.proposal_id} for applied change {applied_change_id} not found.")

        snapshot: Optional[RulesSnapshot] = None
        file_written = False
        try:
            if not change.is_synthetic:
                if "old_value" not in change.change_metadata:
                    raise ValueError(f"Applied change {applied_change_id} has no stored old value.")
                diff = await self.store.get_latest_proposal_diff(proposal.id)
                snapshot = self.rules.read()
                if snapshot.version == change.version_after and diff is not None and diff.before_content is not None:
                    # Nothing touched the file since the apply: put the original text back verbatim
                    self.rules.compare_and_swap_content(snapshot.version, diff.before_content)
                else:
                    restored = revert_rule_patch(
                        snapshot.rules,
                        proposal.payload,
                        change.change_metadata["old_value"],
                    )
                    self.rules.compare_and_swap(snapshot.version, restored)
                file_written = True

            now = utcnow()
            change.status = AppliedChangeStatus.ROLLED_BACK
            change.rolled_back_at = now
            proposal.status = ProposalStatus.ROLLED_BACK
            self.db.add(RollbackEvent(
                applied_change_id=change.id,
                reason=reason,
                event_metadata=dict(metadata or {}),
                created_at=now,
            ))
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            if file_written and snapshot is not None:
                _restore_rules(
                    self.rules,
                    snapshot,
                    {"applied_change_id": str(applied_change_id), "operation": "rollback"},
                )
            raise

        logger.info(
            "applied_change_rolled_back",
            applied_change_id=str(applied_change_id),
            reason=reason,
            synthetic=change.is_synthetic,
        )
        return change

    async def rollback_on_harness_degrade(
        self,
        scope: ApplyScope,
        harness_result: HarnessEvalResult,
        watch_loops: int,
        enabled: bool = True,
    ) -> RollbackResult:
        """Roll back the most recent in-scope change when the harness failed."""
        if not enabled or harness_result.passed:
            return RollbackResult()

        recent = await self.store.list_recent_applied_changes(
            limit=max(1, watch_loops * 10),
            status=AppliedChangeStatus.APPLIED,
        )
        candidate = next((change for change in recent if _matches_scope(change, scope)), None)
        if candidate is None:
            return RollbackResult()

        change = await self.rollback_change(
            candidate.id,
            reason=HARNESS_DEGRADE_REASON,
            metadata={
                "failed_metrics": list(harness_result.failed_metrics),
                "baseline_run_id": harness_result.baseline_run_id,
                "candidate_run_id": harness_result.candidate_run_id,
            },
        )
        return RollbackResult(rolled_back=True, change=change)


def _matches_scope(change: AppliedChange, scope: ApplyScope) -> bool:
    metadata = change.change_metadata or {}
    if scope.batch_id is not None and metadata.get("batch_id") == str(scope.batch_id):
        return True
    if scope.run_id is not None and metadata.get("run_id") == scope.run_id:
        return True
    return scope.batch_id is None and scope.run_id is None
