"""Operations exposed to collaborators (CLI, bots, ops scripts)."""

from __future__ import annotations

import logging
from typing import Any, Sequence

from monitor.tuning_notifier import Notification
from tuning.optimizer import select_pareto_optimal
from tuning.scheduler import TuningScheduler
from tuning.types import ParameterGrid, ProposalStatus

logger = logging.getLogger(__name__)


class TuningController:
    def __init__(self, scheduler: TuningScheduler, top_proposals_per_chain: int = 3) -> None:
        self.scheduler = scheduler
        self.store = scheduler.store
        self.lifecycle = scheduler.lifecycle
        self.validator = scheduler.validator
        self.policy = scheduler.policy
        self.top_proposals_per_chain = max(1, int(top_proposals_per_chain))

    async def initialize(self) -> None:
        await self.scheduler.start()
        logger.info("Tuning controller initialized")

    async def shutdown(self) -> None:
        await self.scheduler.stop()
        await self.scheduler.wait_idle()
        logger.info("Tuning controller shut down")

    async def execute_backtest(
        self,
        chains: Sequence[str] | None = None,
        lookback_hours: float = 48.0,
        bucket_hours: float = 3.0,
        grid: ParameterGrid | None = None,
        pareto: bool = False,
    ) -> dict[str, Any]:
        """Run a fresh backtest now and enter the best candidates of every chain into shadow testing.

        Candidates must clear the shadow quality bar on their backtest evidence
        (precision and alert rate); the top ones per chain are persisted.
        With ``pareto`` the candidates are further restricted to those beating
        the chain baseline by the auto-apply threshold that no other candidate
        dominates on f1, precision and alert rate.  Every call creates new
        proposals.
        """
        settings = self.scheduler.settings
        chains = list(chains or settings.chains)
        grid = grid or settings.grid
        logger.info(
            "BACKTEST_EXECUTE chains=%s lookback_h=%s bucket_h=%s configurations=%s",
            ",".join(chains),
            lookback_hours,
            bucket_hours,
            grid.total_configurations(),
        )
        results = await self.scheduler.run_optimizer(chains, lookback_hours, bucket_hours, grid)
        for result in results:
            if pareto and result.ok:
                result.proposals = select_pareto_optimal(
                    result.proposals,
                    self.scheduler.baseline_for(result.chain, result),
                    min_f1_improvement=self.policy.threshold,
                    max_alerts_per_hour=self.policy.max_alerts_per_hour,
                    min_precision=self.policy.min_precision,
                )
            result.proposals = [
                p
                for p in result.proposals
                if self.policy.evidence_clears(p.evidence.precision, p.evidence.alerts_per_hour)
            ]
        entered = self.scheduler.record_results(results, top_n=self.top_proposals_per_chain, shadow_min_f1=None)
        for result in results:
            result.proposals = [p for p in result.proposals if p.status != ProposalStatus.PROPOSED]
        self.scheduler.last_results = list(results)

        if not self.validator.running:
            self.validator.start_shadow_testing()

        report_path = None
        try:
            report_path = await self.scheduler.generate_report(results)
        except Exception:
            logger.exception("Report generation failed after backtest")

        chain_summaries = []
        for result in results:
            row: dict[str, Any] = {
                "chain": result.chain,
                "configurations_tested": result.total_configurations,
                "data_points": result.data_points,
                "error": result.error,
                "proposals": len(result.proposals),
            }
            if result.proposals:
                best = result.proposals[0]
                baseline = self.scheduler.baseline_for(result.chain, result)
                row["best_proposal"] = {
                    "id": best.id,
                    "rules": best.rules.as_dict(),
                    "evidence": best.evidence.to_dict(),
                    "baseline_f1": baseline,
                    "f1_improvement_percent": self.policy.improvement(best.evidence.f1, baseline) * 100.0,
                }
            chain_summaries.append(row)

        summary = {
            "backtest_period_hours": lookback_hours,
            "bucket_hours": bucket_hours,
            "selection": "pareto" if pareto else "ranked",
            "chains_analyzed": chains,
            "grid": grid.to_dict(),
            "total_configurations_tested": sum(r.total_configurations for r in results),
            "proposals_generated": len(entered),
            "failed_chains": [r.chain for r in results if not r.ok],
            "shadow_window_hours": self.validator.settings.window_hours,
            "chains": chain_summaries,
        }
        logger.info("BACKTEST_EXECUTE_DONE proposals=%s report=%s", len(entered), report_path or "none")
        return {
            "proposals": [p.to_dict() for p in entered],
            "report": report_path,
            "shadow_status": f"running for {self.validator.settings.window_hours:g} hours" if entered else "idle",
            "summary": summary,
        }

    def get_status(self) -> dict[str, Any]:
        active = self.store.list_proposals(status=ProposalStatus.SHADOW_TESTING)
        jobs = self.scheduler.get_status()
        return {
            "backtest": {
                "active_backtests": jobs["active_backtests"],
                "last_results": [r.to_dict() for r in self.scheduler.last_results],
            },
            "shadow_testing": {
                "active_proposals": len(active),
                "metrics": {
                    p.id: m.to_dict()
                    for p in active
                    for m in [self.store.get_shadow_metrics(p.id)]
                    if m is not None
                },
            },
            "scheduler": jobs,
        }

    async def force_apply_proposal(self, proposal_id: str, reason: str) -> dict[str, Any]:
        """Promote now, skipping the improvement threshold but not the shadow quality bar."""
        proposal = self.lifecycle.get(proposal_id)
        baseline = self.scheduler.baseline_for(proposal.chain)
        logger.info("FORCE_APPLY proposal=%s chain=%s status=%s reason=%s", proposal.id, proposal.chain, proposal.status.value, reason)
        if proposal.status == ProposalStatus.SHADOW_TESTING:
            metrics = self.validator.generate_shadow_test_metrics(proposal.id)
            self.lifecycle.approve(proposal.id, metrics, baseline, force=True, reason=reason)
            promotion = self.lifecycle.apply(proposal.id)
        else:
            promotion = self.lifecycle.apply(proposal.id, reason=f"forced apply: {reason}" if reason else None)
        applied = promotion.proposal
        if not promotion.already_applied:
            await self.scheduler.notify(
                Notification(
                    event="proposal_applied",
                    title=f"Alert thresholds force-applied on {applied.chain}",
                    fields={"proposal": applied.id, "rules": applied.rules.describe(), "reason": reason},
                    severity="warning",
                )
            )
        return {
            "proposal_id": applied.id,
            "chain": applied.chain,
            "applied_rules": applied.rules.as_dict(),
            "already_applied": promotion.already_applied,
            "reason": reason,
        }

    def set_auto_apply_enabled(self, enabled: bool) -> dict[str, Any]:
        """Flip automatic application for every instance sharing this database."""
        flag = self.scheduler.set_auto_apply_enabled(enabled)
        return {"auto_apply_enabled": flag}

    def reject_proposal(self, proposal_id: str, reason: str) -> dict[str, Any]:
        proposal = self.lifecycle.reject(proposal_id, reason)
        self.validator.refresh_active()
        return proposal.to_dict()

    def get_job_status(self, job_id: str) -> dict[str, Any]:
        return self.scheduler.get_job_status(job_id)

    def get_tuning_metrics(self, recent_limit: int = 20) -> dict[str, Any]:
        settings = self.scheduler.settings
        live = {r.chain: r for r in self.store.list_live_rules()}
        current_config = {
            chain: (live[chain].rules.as_dict() if chain in live else dict(settings.default_rules))
            for chain in settings.chains
        }
        recent = self.store.list_proposals(limit=recent_limit)
        shadow = {
            p.id: m
            for p in self.store.list_proposals(status=ProposalStatus.SHADOW_TESTING)
            for m in [self.store.get_shadow_metrics(p.id)]
            if m is not None
        }
        improvements = []
        for proposal in recent:
            baseline = self.scheduler.baseline_for(proposal.chain)
            improvements.append(
                {
                    "chain": proposal.chain,
                    "proposal_id": proposal.id,
                    "status": proposal.status.value,
                    "current_f1": baseline,
                    "proposed_f1": proposal.evidence.f1,
                    "improvement_percent": self.policy.improvement(proposal.evidence.f1, baseline) * 100.0,
                }
            )
        return {
            "current_config": current_config,
            "recent_proposals": len(recent),
            "active_shadow_tests": len(shadow),
            "performance_improvements": improvements,
            "shadow_test_metrics": {pid: m.to_dict() for pid, m in shadow.items()},
            "system_status": {
                "shadow_testing": "active" if self.validator.running else "inactive",
                "scheduler": "active" if self.scheduler.running else "inactive",
                "auto_apply": "enabled" if self.scheduler.refresh_auto_apply_flag() else "disabled",
            },
        }
