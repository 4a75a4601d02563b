from __future__ import annotations

import unittest
from datetime import datetime, timezone

from tuning.auto_apply import AutoApplyPolicy
from tuning.errors import InsufficientEvidenceError, InvalidTransitionError, NotFoundError, PersistenceError
from tuning.lifecycle import ProposalLifecycle, can_transition
from tuning.store import InMemoryTuningStore
from tuning.types import Configuration, PerformanceEvidence, Proposal, ProposalStatus, ShadowMetrics

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


def make_proposal(proposal_id: str = "ethereum-p1", f1: float = 0.75, chain: str = "ethereum") -> Proposal:
    return Proposal(
        id=proposal_id,
        chain=chain,
        rules=Configuration.from_dict({"SCORE_ALERT": 70, "SURGE15_MIN": 2.5}),
        evidence=PerformanceEvidence(precision=0.8, recall=0.7, f1=f1, alerts_per_hour=2.0, true_positives=70, false_positives=18, false_negatives=30),
        status=ProposalStatus.PROPOSED,
        created_at=NOW,
        updated_at=NOW,
    )


def shadow_metrics(proposal_id: str, precision: float = 0.8, alerts_per_hour: float = 2.0, samples: int = 20) -> ShadowMetrics:
    return ShadowMetrics(
        proposal_id=proposal_id,
        precision_estimate=precision,
        alerts_per_hour=alerts_per_hour,
        sample_size=samples,
        window_started_at=NOW,
        chain="ethereum",
    )


class FailingPromotionStore(InMemoryTuningStore):
    def promote_proposal(self, proposal, rule_set) -> None:
        raise RuntimeError("disk full")


class ReadOnlyAfterPromotionStore(FailingPromotionStore):
    """Promotion fails, then so does the follow-up status write."""

    def __init__(self) -> None:
        super().__init__()
        self.read_only = False

    def promote_proposal(self, proposal, rule_set) -> None:
        self.read_only = True
        super().promote_proposal(proposal, rule_set)

    def update_proposal(self, proposal) -> None:
        if self.read_only:
            raise OSError("database is locked")
        super().update_proposal(proposal)


class ProposalLifecycleTests(unittest.TestCase):
    def setUp(self) -> None:
        self.store = InMemoryTuningStore()
        self.policy = AutoApplyPolicy(threshold=0.15, min_precision=0.5, max_alerts_per_hour=10)
        self.lifecycle = ProposalLifecycle(self.store, self.policy, clock=lambda: NOW)

    def _in_shadow(self, store=None, **kwargs) -> Proposal:
        store = store or self.store
        proposal = make_proposal(**kwargs)
        store.create_proposal(proposal)
        return ProposalLifecycle(store, self.policy, clock=lambda: NOW).start_shadow_testing(proposal.id)

    def test_transition_table(self) -> None:
        S = ProposalStatus
        self.assertTrue(can_transition(S.PROPOSED, S.SHADOW_TESTING))
        self.assertTrue(can_transition(S.SHADOW_TESTING, S.APPROVED))
        self.assertTrue(can_transition(S.APPROVED, S.APPLIED))
        self.assertTrue(can_transition(S.APPROVED, S.FAILED))
        self.assertFalse(can_transition(S.PROPOSED, S.APPLIED))
        self.assertFalse(can_transition(S.APPLIED, S.SHADOW_TESTING))
        self.assertFalse(can_transition(S.REJECTED, S.APPROVED))
        self.assertFalse(can_transition(S.FAILED, S.APPROVED))

    def test_full_promotion_path_swaps_live_rules(self) -> None:
        proposal = self._in_shadow()
        self.assertEqual(proposal.status, ProposalStatus.SHADOW_TESTING)
        self.assertEqual(proposal.shadow_started_at, NOW)

        approved = self.lifecycle.approve(proposal.id, shadow_metrics(proposal.id), baseline_f1=0.5)
        self.assertEqual(approved.status, ProposalStatus.APPROVED)
        self.assertEqual(approved.approved_at, NOW)

        promotion = self.lifecycle.apply(proposal.id)
        self.assertFalse(promotion.already_applied)
        self.assertEqual(promotion.proposal.status, ProposalStatus.APPLIED)
        live = self.store.get_live_rules("ethereum")
        self.assertEqual(live.rules, proposal.rules)
        self.assertEqual(live.proposal_id, proposal.id)
        self.assertEqual(self.store.get_proposal(proposal.id).status, ProposalStatus.APPLIED)

    def test_apply_is_idempotent(self) -> None:
        proposal = self._in_shadow()
        self.lifecycle.approve(proposal.id, shadow_metrics(proposal.id), baseline_f1=0.5)
        first = self.lifecycle.apply(proposal.id)

        second = self.lifecycle.apply(proposal.id)

        self.assertTrue(second.already_applied)
        self.assertEqual(second.proposal.applied_at, first.proposal.applied_at)

    def test_applied_proposal_cannot_reenter_shadow_testing(self) -> None:
        proposal = self._in_shadow()
        self.lifecycle.approve(proposal.id, shadow_metrics(proposal.id), baseline_f1=0.5)
        self.lifecycle.apply(proposal.id)

        with self.assertRaises(InvalidTransitionError):
            self.lifecycle.start_shadow_testing(proposal.id)

    def test_apply_requires_approval(self) -> None:
        proposal = self._in_shadow()
        with self.assertRaises(InvalidTransitionError):
            self.lifecycle.apply(proposal.id)
        self.assertIsNone(self.store.get_live_rules("ethereum"))

    def test_low_shadow_precision_is_never_approved(self) -> None:
        proposal = self._in_shadow()
        weak = shadow_metrics(proposal.id, precision=0.3)

        with self.assertRaises(InsufficientEvidenceError):
            self.lifecycle.approve(proposal.id, weak, baseline_f1=0.5)
        with self.assertRaises(InsufficientEvidenceError):
            self.lifecycle.approve(proposal.id, weak, baseline_f1=0.5, force=True)
        self.assertEqual(self.store.get_proposal(proposal.id).status, ProposalStatus.SHADOW_TESTING)

    def test_noisy_shadow_alert_rate_blocks_approval(self) -> None:
        proposal = self._in_shadow()
        with self.assertRaises(InsufficientEvidenceError):
            self.lifecycle.approve(proposal.id, shadow_metrics(proposal.id, alerts_per_hour=25.0), baseline_f1=0.5)

    def test_missing_metrics_block_approval(self) -> None:
        proposal = self._in_shadow()
        with self.assertRaises(InsufficientEvidenceError):
            self.lifecycle.approve(proposal.id, None, baseline_f1=0.5)
        with self.assertRaises(InsufficientEvidenceError):
            self.lifecycle.approve(proposal.id, shadow_metrics("someone-else"), baseline_f1=0.5)

    def test_small_improvement_needs_force(self) -> None:
        proposal = self._in_shadow(f1=0.55)

        with self.assertRaises(InsufficientEvidenceError):
            self.lifecycle.approve(proposal.id, shadow_metrics(proposal.id), baseline_f1=0.5)

        approved = self.lifecycle.approve(proposal.id, shadow_metrics(proposal.id), baseline_f1=0.5, force=True)
        self.assertEqual(approved.status, ProposalStatus.APPROVED)
        self.assertEqual(approved.reason, "forced approval")

    def test_forced_approval_keeps_operator_note(self) -> None:
        proposal = self._in_shadow(f1=0.55)

        approved = self.lifecycle.approve(
            proposal.id, shadow_metrics(proposal.id), baseline_f1=0.5, force=True, reason=" incident follow-up "
        )

        self.assertEqual(approved.reason, "forced approval: incident follow-up")
        self.assertEqual(self.store.get_proposal(proposal.id).reason, "forced approval: incident follow-up")
        applied = self.lifecycle.apply(proposal.id).proposal
        self.assertEqual(applied.reason, "forced approval: incident follow-up")

    def test_proposed_cannot_skip_shadow_testing(self) -> None:
        proposal = make_proposal()
        self.store.create_proposal(proposal)
        with self.assertRaises(InvalidTransitionError):
            self.lifecycle.approve(proposal.id, shadow_metrics(proposal.id), baseline_f1=0.5, force=True)

    def test_reject_requires_reason(self) -> None:
        proposal = self._in_shadow()
        with self.assertRaises(ValueError):
            self.lifecycle.reject(proposal.id, "   ")

        rejected = self.lifecycle.reject(proposal.id, "too noisy on weekends")

        self.assertEqual(rejected.status, ProposalStatus.REJECTED)
        self.assertEqual(rejected.reason, "too noisy on weekends")
        with self.assertRaises(InvalidTransitionError):
            self.lifecycle.reject(proposal.id, "again")

    def test_unknown_proposal(self) -> None:
        with self.assertRaises(NotFoundError):
            self.lifecycle.get("missing")

    def test_promotion_failure_marks_proposal_failed(self) -> None:
        store = FailingPromotionStore()
        lifecycle = ProposalLifecycle(store, self.policy, clock=lambda: NOW)
        proposal = self._in_shadow(store=store)
        lifecycle.approve(proposal.id, shadow_metrics(proposal.id), baseline_f1=0.5)

        with self.assertRaises(PersistenceError):
            lifecycle.apply(proposal.id)

        failed = store.get_proposal(proposal.id)
        self.assertEqual(failed.status, ProposalStatus.FAILED)
        self.assertIn("disk full", failed.reason)
        self.assertIsNone(store.get_live_rules("ethereum"))

    def test_promotion_failure_survives_failed_status_write(self) -> None:
        store = ReadOnlyAfterPromotionStore()
        lifecycle = ProposalLifecycle(store, self.policy, clock=lambda: NOW)
        proposal = self._in_shadow(store=store)
        lifecycle.approve(proposal.id, shadow_metrics(proposal.id), baseline_f1=0.5)

        with self.assertLogs("tuning.lifecycle", level="ERROR") as logs:
            with self.assertRaises(PersistenceError) as ctx:
                lifecycle.apply(proposal.id)

        self.assertIn("disk full", str(ctx.exception))
        self.assertIsInstance(ctx.exception.__cause__, RuntimeError)
        self.assertTrue(any("PROPOSAL_MARK_FAILED_FAILED" in line and "database is locked" in line for line in logs.output))
        self.assertEqual(store.get_proposal(proposal.id).status, ProposalStatus.APPROVED)
        self.assertIsNone(store.get_live_rules("ethereum"))

    def test_store_errors_surface_as_persistence_errors(self) -> None:
        proposal = make_proposal()
        self.store.create_proposal(proposal)

        def broken_update(_proposal) -> None:
            raise OSError("read-only database")

        self.store.update_proposal = broken_update
        with self.assertRaises(PersistenceError):
            self.lifecycle.start_shadow_testing(proposal.id)


if __name__ == "__main__":
    unittest.main()
