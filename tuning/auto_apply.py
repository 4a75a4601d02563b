"""Auto-apply decision policy."""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import timedelta

from tuning.types import Proposal, ProposalStatus, ShadowMetrics


@dataclass(frozen=True)
class Decision:
    eligible: bool
    improvement: float
    reason: str

    @property
    def improvement_percent(self) -> float:
        return self.improvement * 100.0


class AutoApplyPolicy:
    """Promotion guard shared by the lifecycle, the scheduler and forced applies.

    ``threshold`` is a fraction (0.15 == 15%).  The shadow quality bar
    (``min_precision`` and ``max_alerts_per_hour``) is applied to every
    promotion, forced or not; only the f1 improvement check can be bypassed.
    """

    def __init__(
        self,
        threshold: float = 0.15,
        min_precision: float = 0.5,
        max_alerts_per_hour: float = 10.0,
        cooling_off: timedelta = timedelta(hours=1),
        enabled: bool = True,
    ) -> None:
        if threshold < 0:
            raise ValueError(f"threshold must be >= 0, got {threshold}")
        self.threshold = float(threshold)
        self.min_precision = float(min_precision)
        self.max_alerts_per_hour = float(max_alerts_per_hour)
        self.cooling_off = cooling_off
        self.enabled = bool(enabled)

    @staticmethod
    def improvement(f1: float, baseline_f1: float) -> float:
        if baseline_f1 <= 0:
            return math.inf if f1 > 0 else 0.0
        return (float(f1) - float(baseline_f1)) / float(baseline_f1)

    def evidence_clears(self, precision: float, alerts_per_hour: float) -> bool:
        return precision >= self.min_precision and alerts_per_hour <= self.max_alerts_per_hour

    def assess_candidate(self, proposal: Proposal, baseline_f1: float) -> Decision:
        """Backtest-time check: is the proposal's f1 far enough above the baseline?"""
        gain = self.improvement(proposal.evidence.f1, baseline_f1)
        if not self.enabled:
            return Decision(False, gain, "auto-apply disabled")
        if proposal.status not in (ProposalStatus.SHADOW_TESTING, ProposalStatus.APPROVED):
            return Decision(False, gain, f"status {proposal.status.value} is not eligible")
        if gain < self.threshold:
            return Decision(
                False,
                gain,
                f"improvement {_pct(gain)} below threshold {_pct(self.threshold)}",
            )
        return Decision(True, gain, f"improvement {_pct(gain)} over baseline f1 {baseline_f1:.3f}")

    def assess_promotion(
        self,
        proposal: Proposal,
        shadow_metrics: ShadowMetrics | None,
        baseline_f1: float,
    ) -> Decision:
        candidate = self.assess_candidate(proposal, baseline_f1)
        if not candidate.eligible:
            return candidate
        if shadow_metrics is None:
            return Decision(False, candidate.improvement, "no shadow metrics yet")
        if shadow_metrics.sample_size <= 0:
            return Decision(False, candidate.improvement, "shadow window has no labeled samples")
        if shadow_metrics.precision_estimate < self.min_precision:
            return Decision(
                False,
                candidate.improvement,
                f"shadow precision {shadow_metrics.precision_estimate:.3f} below {self.min_precision:.2f}",
            )
        if shadow_metrics.alerts_per_hour > self.max_alerts_per_hour:
            return Decision(
                False,
                candidate.improvement,
                f"shadow alerts/h {shadow_metrics.alerts_per_hour:.2f} above {self.max_alerts_per_hour:.2f}",
            )
        return candidate


def _pct(value: float) -> str:
    if math.isinf(value):
        return "inf%"
    return f"{value * 100:.1f}%"
