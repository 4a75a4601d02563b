"""Proposal lifecycle state machine."""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Callable

from tuning.auto_apply import AutoApplyPolicy
from tuning.errors import InsufficientEvidenceError, InvalidTransitionError, NotFoundError, PersistenceError
from tuning.store import TuningStore
from tuning.types import LiveRuleSet, Proposal, ProposalStatus, ShadowMetrics, utc_now

logger = logging.getLogger(__name__)

S = ProposalStatus
ALLOWED_TRANSITIONS: dict[ProposalStatus, frozenset[ProposalStatus]] = {
    S.PROPOSED: frozenset({S.SHADOW_TESTING, S.REJECTED}),
    S.SHADOW_TESTING: frozenset({S.APPROVED, S.REJECTED}),
    S.APPROVED: frozenset({S.APPLIED, S.FAILED, S.REJECTED}),
    S.APPLIED: frozenset(),
    S.REJECTED: frozenset(),
    S.FAILED: frozenset(),
}


def can_transition(current: ProposalStatus, requested: ProposalStatus) -> bool:
    return requested in ALLOWED_TRANSITIONS.get(current, frozenset())


@dataclass(frozen=True)
class PromotionResult:
    proposal: Proposal
    already_applied: bool = False


class ProposalLifecycle:
    def __init__(self, store: TuningStore, policy: AutoApplyPolicy, clock: Callable = utc_now) -> None:
        self.store = store
        self.policy = policy
        self._clock = clock

    def get(self, proposal_id: str) -> Proposal:
        proposal = self.store.get_proposal(proposal_id)
        if proposal is None:
            raise NotFoundError("proposal", proposal_id)
        return proposal

    def start_shadow_testing(self, proposal_id: str) -> Proposal:
        proposal = self.get(proposal_id)
        now = self._clock()
        return self._transition(proposal, S.SHADOW_TESTING, shadow_started_at=now)

    def approve(
        self,
        proposal_id: str,
        shadow_metrics: ShadowMetrics | None,
        baseline_f1: float,
        *,
        force: bool = False,
        reason: str | None = None,
    ) -> Proposal:
        proposal = self.get(proposal_id)
        if not can_transition(proposal.status, S.APPROVED):
            raise InvalidTransitionError(proposal.id, proposal.status.value, S.APPROVED.value)
        if shadow_metrics is None or shadow_metrics.proposal_id != proposal.id:
            raise InsufficientEvidenceError(f"proposal {proposal.id} has no shadow metrics")
        if not self.policy.evidence_clears(shadow_metrics.precision_estimate, shadow_metrics.alerts_per_hour):
            raise InsufficientEvidenceError(
                f"shadow quality below bar for {proposal.id}: "
                f"precision={shadow_metrics.precision_estimate:.3f} (min {self.policy.min_precision}) "
                f"alerts_per_hour={shadow_metrics.alerts_per_hour:.2f} (max {self.policy.max_alerts_per_hour})"
            )
        improvement = self.policy.improvement(proposal.evidence.f1, baseline_f1)
        if not force and improvement < self.policy.threshold:
            raise InsufficientEvidenceError(
                f"f1 improvement {improvement * 100:.1f}% below threshold {self.policy.threshold * 100:.1f}% "
                f"for {proposal.id}"
            )
        note = str(reason or "").strip()
        if force and (note or improvement < self.policy.threshold):
            stored = f"forced approval: {note}" if note else "forced approval"
        else:
            stored = note or proposal.reason
        return self._transition(proposal, S.APPROVED, approved_at=self._clock(), reason=stored)

    def apply(self, proposal_id: str, reason: str | None = None) -> PromotionResult:
        proposal = self.get(proposal_id)
        if proposal.status == S.APPLIED:
            logger.info("PROPOSAL_APPLY_NOOP id=%s chain=%s already_applied=1", proposal.id, proposal.chain)
            return PromotionResult(proposal=proposal, already_applied=True)
        if not can_transition(proposal.status, S.APPLIED):
            raise InvalidTransitionError(proposal.id, proposal.status.value, S.APPLIED.value)

        now = self._clock()
        note = str(reason or "").strip()
        applied = replace(proposal, status=S.APPLIED, applied_at=now, updated_at=now, reason=note or proposal.reason)
        rule_set = LiveRuleSet(
            chain=proposal.chain,
            rules=proposal.rules,
            applied_at=now,
            proposal_id=proposal.id,
            performance=proposal.evidence,
        )
        try:
            self.store.promote_proposal(applied, rule_set)
        except Exception as exc:
            logger.error("PROPOSAL_APPLY_FAILED id=%s chain=%s err=%s", proposal.id, proposal.chain, exc)
            try:
                self.mark_failed(proposal.id, f"promotion failed: {exc}")
            except Exception as mark_exc:
                logger.error("PROPOSAL_MARK_FAILED_FAILED id=%s chain=%s err=%s", proposal.id, proposal.chain, mark_exc)
            raise PersistenceError(f"failed to promote {proposal.id}: {exc}") from exc
        logger.info(
            "PROPOSAL_APPLIED id=%s chain=%s rules=%s f1=%.3f",
            proposal.id,
            proposal.chain,
            proposal.rules.describe(),
            proposal.evidence.f1,
        )
        return PromotionResult(proposal=applied)

    def reject(self, proposal_id: str, reason: str) -> Proposal:
        text = str(reason or "").strip()
        if not text:
            raise ValueError("a rejection reason is required")
        proposal = self.get(proposal_id)
        return self._transition(proposal, S.REJECTED, reason=text)

    def mark_failed(self, proposal_id: str, reason: str) -> Proposal:
        proposal = self.get(proposal_id)
        return self._transition(proposal, S.FAILED, reason=str(reason))

    def _transition(self, proposal: Proposal, target: ProposalStatus, **fields) -> Proposal:
        if not can_transition(proposal.status, target):
            raise InvalidTransitionError(proposal.id, proposal.status.value, target.value)
        updated = replace(proposal, status=target, updated_at=self._clock(), **fields)
        try:
            self.store.update_proposal(updated)
        except PersistenceError:
            raise
        except Exception as exc:
            raise PersistenceError(f"failed to persist {proposal.id} -> {target.value}: {exc}") from exc
        logger.info(
            "PROPOSAL_TRANSITION id=%s chain=%s from=%s to=%s",
            proposal.id,
            proposal.chain,
            proposal.status.value,
            target.value,
        )
        return updated
