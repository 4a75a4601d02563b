"""Job scheduler and tuning orchestrator.

Jobs are persisted before they are armed; timers are plain ``asyncio.sleep``
tasks derived from the stored ``scheduled_at`` so a restart re-arms them at
the same deadline.  Backtests are admitted up to a fixed concurrency cap and
deferred (never dropped) above it.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Sequence

from monitor.tuning_notifier import Notification, NotificationSink
from tuning.auto_apply import AutoApplyPolicy
from tuning.errors import CapacityExceeded, InsufficientEvidenceError, NotFoundError, OptimizerFailure, TuningError
from tuning.lifecycle import ProposalLifecycle
from tuning.optimizer import GridSearchOptimizer
from tuning.report import MarkdownReportRenderer
from tuning.shadow import ShadowValidator
from tuning.store import TuningStore
from tuning.triggers import RecurringTrigger
from tuning.types import (
    BacktestResult,
    Configuration,
    JobStatus,
    JobType,
    ParameterGrid,
    Proposal,
    ProposalStatus,
    ScheduledJob,
    ensure_utc,
    utc_now,
)
from utils.log_contracts import TuningEventLog

logger = logging.getLogger(__name__)

OPEN_STATUSES = (JobStatus.PENDING, JobStatus.RUNNING)
AUTO_APPLY_FLAG_KEY = "auto_apply_enabled"


@dataclass
class SchedulerSettings:
    chains: list[str]
    grid: ParameterGrid
    default_rules: dict[str, float] = field(default_factory=dict)
    lookback_hours: float = 48.0
    bucket_hours: float = 3.0
    max_concurrent_backtests: int = 2
    capacity_backoff_seconds: float = 1800.0
    persistence_retry_seconds: float = 60.0
    persistence_retry_attempts: int = 5
    auto_apply_delay_seconds: float = 3600.0
    shadow_promotion_min_f1: float = 0.6
    baseline_f1: float = 0.5
    proposals_per_chain: int = 1
    backtest_trigger: str | None = "daily@02:00"
    report_trigger: str | None = "daily@08:00"
    cleanup_trigger: str | None = "every 6h"
    auto_apply_check_trigger: str | None = "every 1h"


class TuningScheduler:
    def __init__(
        self,
        store: TuningStore,
        optimizer: GridSearchOptimizer,
        lifecycle: ProposalLifecycle,
        validator: ShadowValidator,
        policy: AutoApplyPolicy,
        settings: SchedulerSettings,
        notifier: NotificationSink | None = None,
        reporter: MarkdownReportRenderer | None = None,
        event_log: TuningEventLog | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.optimizer = optimizer
        self.lifecycle = lifecycle
        self.validator = validator
        self.policy = policy
        self.settings = settings
        self.notifier = notifier
        self.reporter = reporter
        self.events = event_log or TuningEventLog(None)
        self._clock = clock

        self._running = False
        self._active_backtests: set[str] = set()
        self._inflight: set[str] = set()
        self._timers: dict[str, asyncio.Task] = {}
        self._deadlines: dict[str, datetime] = {}
        self._executions: set[asyncio.Task] = set()
        self._status_writes: dict[str, asyncio.Task] = {}
        self._trigger_tasks: dict[str, asyncio.Task] = {}
        self._triggers: dict[str, RecurringTrigger] = {}
        self.last_results: list[BacktestResult] = []
        self.last_report_path: str | None = None

    @property
    def running(self) -> bool:
        return self._running

    @property
    def active_backtests(self) -> set[str]:
        return set(self._active_backtests)

    def timer_deadline(self, job_id: str) -> datetime | None:
        return self._deadlines.get(job_id)

    # lifecycle

    async def start(self) -> None:
        if self._running:
            return
        # Reload failure propagates; startup aborts.
        jobs = self.store.list_jobs(statuses=OPEN_STATUSES)
        stored_flag = self.store.get_setting(AUTO_APPLY_FLAG_KEY)
        if stored_flag is not None:
            self.policy.enabled = bool(stored_flag)
        self._running = True
        requeued = 0
        for job in jobs:
            if job.status == JobStatus.RUNNING:
                job.status = JobStatus.PENDING
                job.started_at = None
                self.store.update_job(job)
                requeued += 1
                logger.warning("JOB_ORPHAN_REQUEUED id=%s type=%s", job.id, job.type.value)
                self.events.job(
                    job_id=job.id,
                    job_type=job.type.value,
                    stage="schedule",
                    status=job.status.value,
                    reason="orphan_requeued",
                )
            self._arm(job)

        self._start_triggers()
        self.validator.start_shadow_testing()
        logger.info(
            "SCHEDULER_START reloaded=%s requeued=%s triggers=%s max_backtests=%s",
            len(jobs),
            requeued,
            ",".join(f"{n}={t.spec}" for n, t in self._triggers.items()) or "none",
            self.settings.max_concurrent_backtests,
        )

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        # Abandoned status writes leave the job `running`; start() re-queues it.
        pending = list(self._trigger_tasks.values()) + list(self._timers.values()) + list(self._status_writes.values())
        self._trigger_tasks.clear()
        self._timers.clear()
        self._status_writes.clear()
        self._deadlines.clear()
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        await self.validator.stop_shadow_testing()
        logger.info("SCHEDULER_STOP inflight=%s", len(self._executions))

    async def wait_idle(self) -> None:
        while self._executions or self._status_writes:
            await asyncio.gather(*list(self._executions), *list(self._status_writes.values()), return_exceptions=True)

    # timers

    def _arm(self, job: ScheduledJob) -> None:
        previous = self._timers.pop(job.id, None)
        if previous is not None:
            previous.cancel()
        scheduled_at = ensure_utc(job.scheduled_at)
        delay = max(0.0, (scheduled_at - self._clock()).total_seconds())
        self._deadlines[job.id] = scheduled_at
        self._timers[job.id] = asyncio.get_running_loop().create_task(
            self._fire_after(job.id, delay),
            name=f"timer-{job.id}",
        )

    def _arm_retry(self, job_id: str) -> None:
        delay = float(self.settings.persistence_retry_seconds)
        self._deadlines[job_id] = self._clock() + timedelta(seconds=delay)
        self._timers[job_id] = asyncio.get_running_loop().create_task(
            self._fire_after(job_id, delay),
            name=f"timer-{job_id}",
        )

    async def _fire_after(self, job_id: str, delay: float) -> None:
        await asyncio.sleep(delay)
        self._timers.pop(job_id, None)
        self._deadlines.pop(job_id, None)
        try:
            self._dispatch(job_id)
        except Exception:
            # Job row unreadable; keep a timer so the job is not lost.
            logger.exception("Job dispatch failed id=%s retry_in=%ss", job_id, self.settings.persistence_retry_seconds)
            if self._running:
                self._arm_retry(job_id)

    # admission

    def _admit(self, job: ScheduledJob) -> None:
        if job.type != JobType.BACKTEST:
            return
        if len(self._active_backtests) >= self.settings.max_concurrent_backtests:
            raise CapacityExceeded(
                f"{len(self._active_backtests)} backtests running (max {self.settings.max_concurrent_backtests})"
            )
        self._active_backtests.add(job.id)

    def _dispatch(self, job_id: str) -> None:
        """Admit and launch a due job.  Runs without awaiting so admission is atomic."""
        if not self._running:
            return
        job = self.store.get_job(job_id)
        if job is None or job.status != JobStatus.PENDING or job.id in self._inflight:
            return
        try:
            self._admit(job)
        except CapacityExceeded as exc:
            self._defer(job, str(exc), float(self.settings.capacity_backoff_seconds), "capacity")
            return

        job.status = JobStatus.RUNNING
        job.started_at = self._clock()
        try:
            self.store.update_job(job)
        except Exception as exc:
            self._active_backtests.discard(job.id)
            job.status = JobStatus.PENDING
            job.started_at = None
            self._defer(job, f"status write failed: {exc}", float(self.settings.persistence_retry_seconds), "persistence_retry")
            return
        self._inflight.add(job.id)
        self.events.job(job_id=job.id, job_type=job.type.value, stage="admission", status="running", attempts=job.attempts)
        task = asyncio.get_running_loop().create_task(self._execute(job), name=f"job-{job.id}")
        self._executions.add(task)
        task.add_done_callback(self._executions.discard)

    def _defer(self, job: ScheduledJob, reason: str, delay_seconds: float, reason_code: str) -> None:
        """Push a pending job back by ``delay_seconds``; the timer is re-armed even if the write fails."""
        job.scheduled_at = self._clock() + timedelta(seconds=delay_seconds)
        job.attempts += 1
        try:
            self.store.update_job(job)
        except Exception as exc:
            logger.warning("JOB_DEFER_NOT_PERSISTED id=%s until=%s err=%s", job.id, job.scheduled_at.isoformat(), exc)
        logger.info(
            "JOB_DEFERRED id=%s type=%s attempts=%s until=%s reason=%s",
            job.id,
            job.type.value,
            job.attempts,
            job.scheduled_at.isoformat(),
            reason,
        )
        self.events.job(
            job_id=job.id,
            job_type=job.type.value,
            stage="admission",
            status="pending",
            reason=reason_code,
            attempts=job.attempts,
        )
        self._arm(job)

    async def _execute(self, job: ScheduledJob) -> None:
        try:
            if job.type == JobType.BACKTEST:
                await self._execute_backtest(job)
            else:
                await self._execute_auto_apply(job)
        finally:
            self._inflight.discard(job.id)
            self._active_backtests.discard(job.id)

    def _finish(self, job: ScheduledJob, status: JobStatus, error: str | None = None, reason: str = "") -> None:
        job.status = status
        job.completed_at = self._clock()
        job.error = error
        try:
            self.store.update_job(job)
        except Exception as exc:
            logger.warning(
                "JOB_STATUS_WRITE_FAILED id=%s status=%s retry_in=%ss err=%s",
                job.id,
                status.value,
                self.settings.persistence_retry_seconds,
                exc,
            )
            if self._running:
                self._status_writes[job.id] = asyncio.get_running_loop().create_task(
                    self._retry_status_write(job),
                    name=f"status-{job.id}",
                )
            else:
                logger.error("JOB_STATUS_WRITE_ABANDONED id=%s status=%s reason=stopping", job.id, status.value)
        level = logging.INFO if status == JobStatus.COMPLETED else logging.WARNING
        logger.log(level, "JOB_%s id=%s type=%s err=%s", status.value.upper(), job.id, job.type.value, error or "")
        self.events.job(
            job_id=job.id,
            job_type=job.type.value,
            stage=job.type.value,
            status=status.value,
            reason=reason or (error or ""),
            attempts=job.attempts,
            proposal_id=job.metadata.get("proposal_id", ""),
        )

    async def _retry_status_write(self, job: ScheduledJob) -> None:
        attempts = max(1, int(self.settings.persistence_retry_attempts))
        try:
            for attempt in range(1, attempts + 1):
                await asyncio.sleep(float(self.settings.persistence_retry_seconds))
                try:
                    self.store.update_job(job)
                except Exception as exc:
                    logger.warning("JOB_STATUS_WRITE_RETRY id=%s attempt=%s/%s err=%s", job.id, attempt, attempts, exc)
                    continue
                logger.info("JOB_STATUS_WRITE_RECOVERED id=%s status=%s attempt=%s", job.id, job.status.value, attempt)
                return
            # Row stays `running`; start() re-queues it as an orphan.
            logger.error("JOB_STATUS_WRITE_ABANDONED id=%s status=%s attempts=%s", job.id, job.status.value, attempts)
            self.events.job(
                job_id=job.id,
                job_type=job.type.value,
                stage="schedule",
                status=job.status.value,
                reason="status_write_abandoned",
                attempts=job.attempts,
            )
        finally:
            if self._status_writes.get(job.id) is asyncio.current_task():
                del self._status_writes[job.id]

    async def notify(self, notification: Notification) -> None:
        if self.notifier is None:
            return
        try:
            await self.notifier.notify(notification)
        except Exception as exc:
            logger.warning("Notification failed event=%s: %s", notification.event, exc)

    # backtests

    def _new_job(self, job_type: JobType, scheduled_at: datetime, metadata: dict[str, Any]) -> ScheduledJob:
        return ScheduledJob(
            id=f"{job_type.value}-{uuid.uuid4().hex[:12]}",
            type=job_type,
            status=JobStatus.PENDING,
            scheduled_at=scheduled_at,
            metadata=metadata,
        )

    def schedule_backtest(
        self,
        chains: Sequence[str] | None = None,
        lookback_hours: float | None = None,
        grid: ParameterGrid | None = None,
        at: datetime | None = None,
        bucket_hours: float | None = None,
    ) -> str:
        metadata: dict[str, Any] = {
            "chains": list(chains or self.settings.chains),
            "lookback_hours": float(lookback_hours or self.settings.lookback_hours),
            "bucket_hours": float(bucket_hours or self.settings.bucket_hours),
        }
        if grid is not None:
            metadata["grid"] = grid.to_dict()
        job = self._new_job(JobType.BACKTEST, ensure_utc(at) or self._clock(), metadata)
        self.store.create_job(job)
        logger.info("JOB_SCHEDULED id=%s type=backtest at=%s chains=%s", job.id, job.scheduled_at.isoformat(), ",".join(metadata["chains"]))
        self.events.job(job_id=job.id, job_type=job.type.value, stage="schedule", status="pending")
        if self._running:
            self._arm(job)
        return job.id

    def live_rules_for(self, chain: str) -> Configuration:
        live = self.store.get_live_rules(chain)
        if live is not None:
            return live.rules
        return Configuration.from_dict(self.settings.default_rules)

    def baseline_for(self, chain: str, result: BacktestResult | None = None) -> float:
        if result is not None and result.current_performance is not None:
            return result.current_performance.f1
        live = self.store.get_live_rules(chain)
        if live is not None and live.performance is not None:
            return live.performance.f1
        return float(self.settings.baseline_f1)

    async def run_optimizer(
        self,
        chains: Sequence[str],
        lookback_hours: float,
        bucket_hours: float,
        grid: ParameterGrid,
    ) -> list[BacktestResult]:
        current = {chain: self.live_rules_for(chain) for chain in chains}
        return await self.optimizer.run_backtest(
            lookback_hours,
            list(chains),
            bucket_hours,
            grid,
            current_rules=current,
            now=self._clock(),
        )

    def record_results(
        self,
        results: Sequence[BacktestResult],
        *,
        top_n: int,
        shadow_min_f1: float | None,
    ) -> list[Proposal]:
        """Persist the top proposals of each chain and enter qualifying ones into shadow testing.

        ``shadow_min_f1=None`` enters every persisted proposal.  The result's
        proposal list is updated in place with the stored versions.
        """
        entered: list[Proposal] = []
        for result in results:
            if not result.ok:
                continue
            for i, proposal in enumerate(result.proposals[: max(1, int(top_n))]):
                self.store.create_proposal(proposal)
                stored = proposal
                if shadow_min_f1 is None or proposal.evidence.f1 > shadow_min_f1:
                    stored = self.lifecycle.start_shadow_testing(proposal.id)
                    entered.append(stored)
                result.proposals[i] = stored
                self.events.proposal(proposal_id=stored.id, chain=stored.chain, status=stored.status.value, f1=stored.evidence.f1)
        if entered:
            self.validator.refresh_active()
        return entered

    async def _execute_backtest(self, job: ScheduledJob) -> None:
        meta = job.metadata
        chains = list(meta.get("chains") or self.settings.chains)
        try:
            grid = ParameterGrid.from_dict(meta["grid"]) if meta.get("grid") else self.settings.grid
            results = await self.run_optimizer(
                chains,
                float(meta.get("lookback_hours") or self.settings.lookback_hours),
                float(meta.get("bucket_hours") or self.settings.bucket_hours),
                grid,
            )
            if results and all(not r.ok for r in results):
                raise OptimizerFailure(",".join(chains), "; ".join(r.error or "" for r in results))
            entered = self.record_results(
                results,
                top_n=self.settings.proposals_per_chain,
                shadow_min_f1=self.settings.shadow_promotion_min_f1,
            )
        except Exception as exc:
            reason = "all_chains_failed" if isinstance(exc, OptimizerFailure) else "optimizer_error"
            self._finish(job, JobStatus.FAILED, error=str(exc) or type(exc).__name__, reason=reason)
            await self.notify(
                Notification(
                    event="backtest_failed",
                    title="Threshold backtest failed",
                    fields={"job": job.id, "chains": ",".join(chains), "error": str(exc)},
                    severity="error",
                )
            )
            return

        self.last_results = list(results)
        self._finish(job, JobStatus.COMPLETED)

        try:
            await self.generate_report(results)
        except Exception:
            logger.exception("Report generation failed job=%s", job.id)
        try:
            self.check_auto_apply_candidates(results)
        except Exception:
            logger.exception("Auto-apply candidate check failed job=%s", job.id)

        best = [(r.chain, r.proposals[0]) for r in results if r.ok and r.proposals]
        await self.notify(
            Notification(
                event="backtest_completed",
                title="Threshold backtest completed",
                fields={
                    "job": job.id,
                    "chains": len(results),
                    "failed_chains": sum(1 for r in results if not r.ok),
                    "shadow_started": len(entered),
                    **{f"best_{chain}": f"f1={p.evidence.f1:.3f} {p.rules.describe()}" for chain, p in best},
                },
            )
        )

    # auto-apply

    def refresh_auto_apply_flag(self) -> bool:
        """Pick up a flag switched by another process; a failed read keeps the current value."""
        try:
            stored = self.store.get_setting(AUTO_APPLY_FLAG_KEY)
        except Exception as exc:
            logger.warning("AUTO_APPLY_FLAG_READ_FAILED keeping=%s err=%s", self.policy.enabled, exc)
            return self.policy.enabled
        if stored is not None and bool(stored) != self.policy.enabled:
            self.policy.enabled = bool(stored)
            logger.info("AUTO_APPLY_FLAG_SYNCED enabled=%s", self.policy.enabled)
        return self.policy.enabled

    def set_auto_apply_enabled(self, enabled: bool) -> bool:
        self.store.set_setting(AUTO_APPLY_FLAG_KEY, bool(enabled))
        self.policy.enabled = bool(enabled)
        logger.warning("AUTO_APPLY_FLAG_SET enabled=%s", self.policy.enabled)
        return self.policy.enabled

    def check_auto_apply_candidates(self, results: Sequence[BacktestResult]) -> list[str]:
        scheduled: list[str] = []
        if not self.refresh_auto_apply_flag():
            logger.info("AUTO_APPLY_CHECK_SKIPPED reason=disabled")
            return scheduled
        for result in results:
            if not result.ok:
                continue
            baseline = self.baseline_for(result.chain, result)
            for proposal in result.proposals:
                if proposal.status not in (ProposalStatus.SHADOW_TESTING, ProposalStatus.APPROVED):
                    continue
                evidence = proposal.evidence
                if not self.policy.evidence_clears(evidence.precision, evidence.alerts_per_hour):
                    logger.info(
                        "AUTO_APPLY_SKIP proposal=%s reason=evidence_guard precision=%.3f aph=%.2f",
                        proposal.id,
                        evidence.precision,
                        evidence.alerts_per_hour,
                    )
                    self.events.proposal(
                        proposal_id=proposal.id,
                        chain=proposal.chain,
                        status=proposal.status.value,
                        reason="evidence_guard",
                        f1=evidence.f1,
                    )
                    continue
                decision = self.policy.assess_candidate(proposal, baseline)
                if not decision.eligible:
                    logger.info("AUTO_APPLY_SKIP proposal=%s reason=%s", proposal.id, decision.reason)
                    continue
                job_id = self.schedule_auto_apply(proposal.id, decision.improvement, baseline)
                if job_id:
                    scheduled.append(job_id)
        return scheduled

    def run_auto_apply_sweep(self) -> list[str]:
        """Re-evaluate every proposal in shadow testing against its latest shadow metrics."""
        scheduled: list[str] = []
        if not self.refresh_auto_apply_flag():
            return scheduled
        metrics = self.validator.get_all_active_shadow_test_metrics(now=self._clock())
        for proposal in self.store.list_proposals(status=ProposalStatus.SHADOW_TESTING):
            baseline = self.baseline_for(proposal.chain)
            decision = self.policy.assess_promotion(proposal, metrics.get(proposal.id), baseline)
            if decision.eligible:
                job_id = self.schedule_auto_apply(proposal.id, decision.improvement, baseline)
                if job_id:
                    scheduled.append(job_id)
        logger.info("AUTO_APPLY_SWEEP candidates=%s scheduled=%s", len(metrics), len(scheduled))
        return scheduled

    def schedule_auto_apply(self, proposal_id: str, improvement: float, baseline_f1: float) -> str | None:
        if not self.policy.enabled:
            return None
        # No await between the lookup and create_job.
        for job in self.store.list_jobs(statuses=OPEN_STATUSES, job_type=JobType.AUTO_APPLY):
            if job.metadata.get("proposal_id") == proposal_id:
                logger.debug("AUTO_APPLY_DUPLICATE proposal=%s job=%s", proposal_id, job.id)
                return job.id
        job = self._new_job(
            JobType.AUTO_APPLY,
            self._clock() + timedelta(seconds=float(self.settings.auto_apply_delay_seconds)),
            {
                "proposal_id": proposal_id,
                "improvement": None if math.isinf(improvement) else float(improvement),
                "baseline_f1": float(baseline_f1),
            },
        )
        self.store.create_job(job)
        logger.info(
            "AUTO_APPLY_SCHEDULED proposal=%s job=%s at=%s improvement=%s",
            proposal_id,
            job.id,
            job.scheduled_at.isoformat(),
            "inf" if math.isinf(improvement) else f"{improvement * 100:.1f}%",
        )
        self.events.job(job_id=job.id, job_type=job.type.value, stage="schedule", status="pending", proposal_id=proposal_id)
        if self._running:
            self._arm(job)
        return job.id

    async def _execute_auto_apply(self, job: ScheduledJob) -> None:
        proposal_id = str(job.metadata.get("proposal_id", ""))
        baseline = float(job.metadata.get("baseline_f1", self.settings.baseline_f1))
        reason = ""
        try:
            proposal = self.lifecycle.get(proposal_id)
            if proposal.status == ProposalStatus.APPLIED:
                self._finish(job, JobStatus.COMPLETED, reason="already_applied")
                return
            if not self.refresh_auto_apply_flag():
                reason = "auto_apply_disabled"
                raise TuningError(f"auto-apply is disabled; {proposal_id} left {proposal.status.value}")
            if proposal.status not in (ProposalStatus.SHADOW_TESTING, ProposalStatus.APPROVED):
                reason = "status_changed"
                raise TuningError(f"proposal {proposal_id} is {proposal.status.value}, expected shadow_testing or approved")
            metrics = self.validator.generate_shadow_test_metrics(proposal_id, now=self._clock())
            decision = self.policy.assess_promotion(proposal, metrics, baseline)
            if not decision.eligible:
                reason = "shadow_guard"
                raise InsufficientEvidenceError(f"auto-apply blocked for {proposal_id}: {decision.reason}")
            if proposal.status == ProposalStatus.SHADOW_TESTING:
                self.lifecycle.approve(proposal_id, metrics, baseline)
            reason = "promotion_failed"
            promotion = self.lifecycle.apply(proposal_id)
        except Exception as exc:
            self._finish(job, JobStatus.FAILED, error=str(exc) or type(exc).__name__, reason=reason)
            await self.notify(
                Notification(
                    event="auto_apply_failed",
                    title="Auto-apply failed",
                    fields={"job": job.id, "proposal": proposal_id, "error": str(exc)},
                    severity="error",
                )
            )
            return

        self._finish(job, JobStatus.COMPLETED)
        applied = promotion.proposal
        await self.notify(
            Notification(
                event="proposal_applied",
                title=f"New alert thresholds live on {applied.chain}",
                fields={
                    "proposal": applied.id,
                    "rules": applied.rules.describe(),
                    "f1": applied.evidence.f1,
                    "baseline_f1": baseline,
                    "shadow_precision": metrics.precision_estimate,
                    "shadow_alerts_per_hour": metrics.alerts_per_hour,
                },
            )
        )

    # recurring work

    def _start_triggers(self) -> None:
        actions: dict[str, tuple[str | None, Callable[[], Any]]] = {
            "backtest": (self.settings.backtest_trigger, lambda: self.schedule_backtest()),
            "report": (self.settings.report_trigger, self.generate_report),
            "shadow_cleanup": (self.settings.cleanup_trigger, lambda: self.validator.purge_expired_records(self._clock())),
            "auto_apply_sweep": (self.settings.auto_apply_check_trigger, self.run_auto_apply_sweep),
        }
        loop = asyncio.get_running_loop()
        for name, (spec, action) in actions.items():
            if not spec:
                continue
            trigger = RecurringTrigger.parse(name, spec)
            self._triggers[name] = trigger
            self._trigger_tasks[name] = loop.create_task(self._trigger_loop(trigger, action), name=f"trigger-{name}")

    async def _trigger_loop(self, trigger: RecurringTrigger, action: Callable[[], Any | Awaitable[Any]]) -> None:
        while True:
            await asyncio.sleep(trigger.seconds_until_next(self._clock()))
            logger.info("TRIGGER_FIRED name=%s spec=%s", trigger.name, trigger.spec)
            try:
                outcome = action()
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception:
                logger.exception("Recurring trigger failed name=%s", trigger.name)

    async def generate_report(self, results: Sequence[BacktestResult] | None = None) -> str | None:
        if self.reporter is None:
            return None
        rows = list(results if results is not None else self.last_results)
        shadow = self.validator.get_all_active_shadow_test_metrics(now=self._clock())
        path = await asyncio.to_thread(
            self.reporter.render,
            rows,
            shadow,
            self._clock(),
            self.store.list_live_rules(),
        )
        self.last_report_path = path
        return path

    # status

    def get_status(self) -> dict[str, Any]:
        now = self._clock()
        jobs = self.store.list_jobs(statuses=OPEN_STATUSES)
        return {
            "running": self._running,
            "active_backtests": sorted(self._active_backtests),
            "max_concurrent_backtests": self.settings.max_concurrent_backtests,
            "pending_jobs": [j.to_dict() for j in jobs if j.status == JobStatus.PENDING],
            "running_jobs": [j.to_dict() for j in jobs if j.status == JobStatus.RUNNING],
            "armed_timers": len(self._timers),
            "triggers": {name: t.next_fire(now).isoformat() for name, t in self._triggers.items()},
            "shadow_validation": self.validator.running,
            "auto_apply_enabled": self.refresh_auto_apply_flag(),
            "last_report": self.last_report_path,
        }

    def get_job_status(self, job_id: str) -> dict[str, Any]:
        job = self.store.get_job(job_id)
        if job is None:
            raise NotFoundError("job", job_id)
        return job.to_dict()
