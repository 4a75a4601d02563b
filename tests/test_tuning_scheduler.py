from __future__ import annotations

import asyncio
import unittest
from datetime import datetime, timedelta, timezone

from tuning.auto_apply import AutoApplyPolicy
from tuning.errors import NotFoundError, PersistenceError
from tuning.lifecycle import ProposalLifecycle
from tuning.optimizer import GridSearchOptimizer
from tuning.scheduler import SchedulerSettings, TuningScheduler
from tuning.shadow import ShadowValidator
from tuning.store import InMemoryTuningStore
from tuning.types import (
    Configuration,
    JobStatus,
    JobType,
    BacktestResult,
    ParameterGrid,
    PerformanceEvidence,
    Proposal,
    ProposalStatus,
    ScheduledJob,
    ShadowMetrics,
    SignalEvent,
)

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)
GRID = ParameterGrid.from_dict({"SCORE_ALERT": {"min": 60, "max": 80, "step": 10}})


class FakeClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class RecordingNotifier:
    def __init__(self) -> None:
        self.sent = []

    async def notify(self, notification) -> None:
        self.sent.append(notification)

    @property
    def events(self) -> list[str]:
        return [n.event for n in self.sent]


class BlockingOptimizer:
    def __init__(self) -> None:
        self.release = asyncio.Event()
        self.calls = 0

    async def run_backtest(self, lookback_hours, chains, bucket_hours, grid, current_rules=None, now=None):
        self.calls += 1
        await self.release.wait()
        return []


class FakeHistory:
    def __init__(self, events: list[SignalEvent] | None = None, fail: bool = False) -> None:
        self.events = events or []
        self.fail = fail

    async def fetch_signals(self, chain, start, end):
        if self.fail:
            raise RuntimeError(f"{chain} history offline")
        return [e for e in self.events if e.chain == chain]


def scored_events(chain: str = "ethereum") -> list[SignalEvent]:
    profile = [(85.0, 30, 3), (75.0, 40, 15), (65.0, 20, 117), (50.0, 10, 20)]
    events = []
    n = 0
    for score, positives, negatives in profile:
        for outcome, count in (("positive", positives), ("negative", negatives)):
            for _ in range(count):
                n += 1
                events.append(
                    SignalEvent(
                        token_address=f"0x{n:040x}",
                        chain=chain,
                        observed_at=NOW - timedelta(minutes=5 * n),
                        score=score,
                        outcome=outcome,
                    )
                )
    return events


def shadow_proposal(proposal_id: str = "ethereum-a1", f1: float = 0.75) -> Proposal:
    return Proposal(
        id=proposal_id,
        chain="ethereum",
        rules=Configuration.from_dict({"SCORE_ALERT": 70}),
        evidence=PerformanceEvidence(precision=0.8, recall=0.7, f1=f1, alerts_per_hour=1.8),
        status=ProposalStatus.SHADOW_TESTING,
        created_at=NOW - timedelta(days=1),
        shadow_started_at=NOW - timedelta(days=1),
    )


def frozen_metrics(proposal_id: str, precision: float = 0.8, aph: float = 2.0) -> ShadowMetrics:
    return ShadowMetrics(
        proposal_id=proposal_id,
        precision_estimate=precision,
        alerts_per_hour=aph,
        sample_size=20,
        window_started_at=NOW - timedelta(days=1),
        chain="ethereum",
        computed_at=NOW,
        frozen=True,
    )


class FlakyJobStore(InMemoryTuningStore):
    """Job writes carrying `fail_status` raise until `failures` runs out (None: always)."""

    def __init__(self, fail_status: JobStatus, failures: int | None = 1) -> None:
        super().__init__()
        self.fail_status = fail_status
        self.failures = failures
        self.rejected_writes = 0

    def update_job(self, job: ScheduledJob) -> None:
        if job.status == self.fail_status and (self.failures is None or self.failures > 0):
            if self.failures is not None:
                self.failures -= 1
            self.rejected_writes += 1
            raise PersistenceError("database is locked")
        super().update_job(job)


async def settle(rounds: int = 20) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


class TuningSchedulerTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.clock = FakeClock(NOW)
        self.store = InMemoryTuningStore()
        self.notifier = RecordingNotifier()
        self.policy = AutoApplyPolicy(threshold=0.15, min_precision=0.5, max_alerts_per_hour=10)

    async def asyncTearDown(self) -> None:
        for scheduler in getattr(self, "_schedulers", []):
            await scheduler.stop()

    def build(self, optimizer=None, **overrides) -> TuningScheduler:
        options = dict(
            chains=["ethereum"],
            grid=GRID,
            default_rules={"SCORE_ALERT": 60},
            backtest_trigger=None,
            report_trigger=None,
            cleanup_trigger=None,
            auto_apply_check_trigger=None,
        )
        options.update(overrides)
        scheduler = TuningScheduler(
            store=self.store,
            optimizer=optimizer or GridSearchOptimizer(FakeHistory(scored_events())),
            lifecycle=ProposalLifecycle(self.store, self.policy, clock=self.clock),
            validator=ShadowValidator(self.store, clock=self.clock),
            policy=self.policy,
            settings=SchedulerSettings(**options),
            notifier=self.notifier,
            clock=self.clock,
        )
        self._schedulers = getattr(self, "_schedulers", []) + [scheduler]
        return scheduler

    async def test_backtests_above_capacity_are_deferred_not_dropped(self) -> None:
        optimizer = BlockingOptimizer()
        scheduler = self.build(optimizer, max_concurrent_backtests=2, capacity_backoff_seconds=1800)
        await scheduler.start()

        job_ids = [scheduler.schedule_backtest() for _ in range(3)]
        await settle()

        self.assertEqual(len(scheduler.active_backtests), 2)
        self.assertEqual(optimizer.calls, 2)
        jobs = [self.store.get_job(job_id) for job_id in job_ids]
        running = [j for j in jobs if j.status == JobStatus.RUNNING]
        deferred = [j for j in jobs if j.status == JobStatus.PENDING]
        self.assertEqual(len(running), 2)
        self.assertEqual(len(deferred), 1)
        self.assertEqual(deferred[0].attempts, 1)
        self.assertEqual(deferred[0].scheduled_at, NOW + timedelta(seconds=1800))
        self.assertEqual(scheduler.timer_deadline(deferred[0].id), NOW + timedelta(seconds=1800))

        optimizer.release.set()
        await scheduler.wait_idle()

        self.assertEqual(scheduler.active_backtests, set())
        for job in running:
            self.assertEqual(self.store.get_job(job.id).status, JobStatus.COMPLETED)
        self.assertEqual(self.store.get_job(deferred[0].id).status, JobStatus.PENDING)

    async def test_backtest_job_enters_best_proposal_and_schedules_auto_apply(self) -> None:
        scheduler = self.build(shadow_promotion_min_f1=0.6, auto_apply_delay_seconds=3600)
        await scheduler.start()

        job_id = scheduler.schedule_backtest()
        await settle()
        await scheduler.wait_idle()

        job = self.store.get_job(job_id)
        self.assertEqual(job.status, JobStatus.COMPLETED)
        proposals = self.store.list_proposals()
        self.assertEqual(len(proposals), 1)
        self.assertEqual(proposals[0].status, ProposalStatus.SHADOW_TESTING)
        self.assertEqual(proposals[0].rules["SCORE_ALERT"], 70.0)
        self.assertAlmostEqual(proposals[0].evidence.f1, 0.745, delta=0.01)

        auto_jobs = self.store.list_jobs(job_type=JobType.AUTO_APPLY)
        self.assertEqual(len(auto_jobs), 1)
        self.assertEqual(auto_jobs[0].metadata["proposal_id"], proposals[0].id)
        self.assertEqual(auto_jobs[0].scheduled_at, NOW + timedelta(hours=1))
        self.assertAlmostEqual(auto_jobs[0].metadata["baseline_f1"], 0.554, delta=0.01)
        self.assertIn("backtest_completed", self.notifier.events)
        self.assertEqual(scheduler.last_results[0].chain, "ethereum")

    async def test_backtest_below_shadow_bar_is_persisted_as_proposed(self) -> None:
        scheduler = self.build(shadow_promotion_min_f1=0.9)
        await scheduler.start()

        scheduler.schedule_backtest()
        await settle()
        await scheduler.wait_idle()

        proposals = self.store.list_proposals()
        self.assertEqual([p.status for p in proposals], [ProposalStatus.PROPOSED])
        self.assertEqual(self.store.list_jobs(job_type=JobType.AUTO_APPLY), [])

    async def test_failed_backtest_records_error_and_notifies(self) -> None:
        scheduler = self.build(GridSearchOptimizer(FakeHistory(fail=True)))
        await scheduler.start()

        job_id = scheduler.schedule_backtest()
        await settle()
        await scheduler.wait_idle()

        job = self.store.get_job(job_id)
        self.assertEqual(job.status, JobStatus.FAILED)
        self.assertIn("history offline", job.error)
        self.assertIsNotNone(job.completed_at)
        self.assertEqual(self.notifier.events, ["backtest_failed"])

    async def test_restart_requeues_running_jobs_and_rearms_timers(self) -> None:
        orphan = ScheduledJob(
            id="backtest-orphan",
            type=JobType.BACKTEST,
            status=JobStatus.RUNNING,
            scheduled_at=NOW - timedelta(minutes=10),
            started_at=NOW - timedelta(minutes=9),
            metadata={"chains": ["ethereum"], "lookback_hours": 48, "bucket_hours": 3},
        )
        waiting = ScheduledJob(
            id="auto_apply-waiting",
            type=JobType.AUTO_APPLY,
            status=JobStatus.PENDING,
            scheduled_at=NOW + timedelta(minutes=45),
            metadata={"proposal_id": "ethereum-a1", "baseline_f1": 0.5},
        )
        self.store.create_job(orphan)
        self.store.create_job(waiting)
        scheduler = self.build(BlockingOptimizer())

        await scheduler.start()

        requeued = self.store.get_job(orphan.id)
        self.assertEqual(requeued.status, JobStatus.PENDING)
        self.assertIsNone(requeued.started_at)
        self.assertEqual(scheduler.timer_deadline(waiting.id), waiting.scheduled_at)
        self.assertEqual(scheduler.timer_deadline(orphan.id), orphan.scheduled_at)

        await settle()
        self.assertEqual(self.store.get_job(orphan.id).status, JobStatus.RUNNING)
        self.assertEqual(self.store.get_job(waiting.id).status, JobStatus.PENDING)
        scheduler.optimizer.release.set()
        await scheduler.wait_idle()

    async def test_start_propagates_store_failure(self) -> None:
        def broken_list_jobs(**kwargs):
            raise OSError("database unreachable")

        self.store.list_jobs = broken_list_jobs
        scheduler = self.build()

        with self.assertRaises(OSError):
            await scheduler.start()
        self.assertFalse(scheduler.running)

    async def test_auto_apply_scheduling_is_idempotent(self) -> None:
        scheduler = self.build()
        proposal = shadow_proposal()
        self.store.create_proposal(proposal)

        first = scheduler.schedule_auto_apply(proposal.id, 0.5, 0.5)
        second = scheduler.schedule_auto_apply(proposal.id, 0.5, 0.5)

        self.assertEqual(first, second)
        self.assertEqual(len(self.store.list_jobs(job_type=JobType.AUTO_APPLY)), 1)

    async def test_auto_apply_disabled_schedules_nothing(self) -> None:
        self.policy.enabled = False
        scheduler = self.build()

        self.assertIsNone(scheduler.schedule_auto_apply("ethereum-a1", 0.5, 0.5))
        self.assertEqual(scheduler.run_auto_apply_sweep(), [])
        self.assertEqual(self.store.list_jobs(), [])

    async def test_auto_apply_job_promotes_after_delay(self) -> None:
        scheduler = self.build(auto_apply_delay_seconds=0)
        proposal = shadow_proposal()
        self.store.create_proposal(proposal)
        self.store.save_shadow_metrics(frozen_metrics(proposal.id))
        await scheduler.start()

        job_id = scheduler.schedule_auto_apply(proposal.id, 0.5, 0.5)
        await settle()
        await scheduler.wait_idle()

        self.assertEqual(self.store.get_job(job_id).status, JobStatus.COMPLETED)
        self.assertEqual(self.store.get_proposal(proposal.id).status, ProposalStatus.APPLIED)
        self.assertEqual(self.store.get_live_rules("ethereum").rules, proposal.rules)
        self.assertEqual(self.notifier.events, ["proposal_applied"])

    async def test_auto_apply_job_respects_shadow_guard(self) -> None:
        scheduler = self.build(auto_apply_delay_seconds=0)
        proposal = shadow_proposal()
        self.store.create_proposal(proposal)
        self.store.save_shadow_metrics(frozen_metrics(proposal.id, precision=0.3))
        await scheduler.start()

        job_id = scheduler.schedule_auto_apply(proposal.id, 0.5, 0.5)
        await settle()
        await scheduler.wait_idle()

        job = self.store.get_job(job_id)
        self.assertEqual(job.status, JobStatus.FAILED)
        self.assertIn("shadow precision", job.error)
        self.assertEqual(self.store.get_proposal(proposal.id).status, ProposalStatus.SHADOW_TESTING)
        self.assertIsNone(self.store.get_live_rules("ethereum"))
        self.assertEqual(self.notifier.events, ["auto_apply_failed"])

    async def test_auto_apply_job_for_rejected_proposal_fails(self) -> None:
        scheduler = self.build(auto_apply_delay_seconds=0)
        proposal = shadow_proposal()
        self.store.create_proposal(proposal)
        job_id = scheduler.schedule_auto_apply(proposal.id, 0.5, 0.5)
        scheduler.lifecycle.reject(proposal.id, "operator veto")
        await scheduler.start()

        await settle()
        await scheduler.wait_idle()

        job = self.store.get_job(job_id)
        self.assertEqual(job.status, JobStatus.FAILED)
        self.assertIn("rejected", job.error)

    async def test_auto_apply_job_for_applied_proposal_completes(self) -> None:
        scheduler = self.build(auto_apply_delay_seconds=0)
        proposal = shadow_proposal()
        self.store.create_proposal(proposal)
        self.store.save_shadow_metrics(frozen_metrics(proposal.id))
        job_id = scheduler.schedule_auto_apply(proposal.id, 0.5, 0.5)
        scheduler.lifecycle.approve(proposal.id, frozen_metrics(proposal.id), 0.5)
        scheduler.lifecycle.apply(proposal.id)
        await scheduler.start()

        await settle()
        await scheduler.wait_idle()

        self.assertEqual(self.store.get_job(job_id).status, JobStatus.COMPLETED)
        self.assertEqual(self.notifier.events, [])

    async def test_sweep_schedules_eligible_shadow_proposals_once(self) -> None:
        scheduler = self.build()
        good = shadow_proposal("ethereum-good")
        weak = shadow_proposal("ethereum-weak")
        self.store.create_proposal(good)
        self.store.create_proposal(weak)
        self.store.save_shadow_metrics(frozen_metrics(good.id))
        self.store.save_shadow_metrics(frozen_metrics(weak.id, aph=40.0))

        first = scheduler.run_auto_apply_sweep()
        second = scheduler.run_auto_apply_sweep()

        self.assertEqual(len(first), 1)
        self.assertEqual(first, second)
        job = self.store.get_job(first[0])
        self.assertEqual(job.metadata["proposal_id"], good.id)

    async def test_failed_running_write_rearms_the_job(self) -> None:
        self.store = FlakyJobStore(JobStatus.RUNNING)
        optimizer = BlockingOptimizer()
        scheduler = self.build(optimizer, persistence_retry_seconds=60)
        await scheduler.start()

        job_id = scheduler.schedule_backtest()
        await settle()

        job = self.store.get_job(job_id)
        self.assertEqual(job.status, JobStatus.PENDING)
        self.assertIsNone(job.started_at)
        self.assertEqual(job.attempts, 1)
        self.assertEqual(job.scheduled_at, NOW + timedelta(seconds=60))
        self.assertEqual(scheduler.timer_deadline(job_id), NOW + timedelta(seconds=60))
        self.assertEqual(scheduler.active_backtests, set())
        self.assertEqual(optimizer.calls, 0)

    async def test_failed_running_write_is_retried_until_the_job_runs(self) -> None:
        self.store = FlakyJobStore(JobStatus.RUNNING)
        scheduler = self.build(persistence_retry_seconds=0, shadow_promotion_min_f1=0.9)
        await scheduler.start()

        job_id = scheduler.schedule_backtest()
        await settle()
        await scheduler.wait_idle()

        job = self.store.get_job(job_id)
        self.assertEqual(self.store.rejected_writes, 1)
        self.assertEqual(job.status, JobStatus.COMPLETED)
        self.assertEqual(job.attempts, 1)

    async def test_failed_completion_write_is_retried(self) -> None:
        self.store = FlakyJobStore(JobStatus.COMPLETED)
        scheduler = self.build(persistence_retry_seconds=0, shadow_promotion_min_f1=0.9)
        await scheduler.start()

        job_id = scheduler.schedule_backtest()
        with self.assertLogs("tuning.scheduler", level="INFO") as logs:
            await settle()
            await scheduler.wait_idle()

        self.assertEqual(self.store.rejected_writes, 1)
        self.assertEqual(self.store.get_job(job_id).status, JobStatus.COMPLETED)
        self.assertTrue(any("JOB_STATUS_WRITE_RECOVERED" in line for line in logs.output))

    async def test_unwritable_completion_is_logged_and_left_for_restart(self) -> None:
        self.store = FlakyJobStore(JobStatus.COMPLETED, failures=None)
        scheduler = self.build(persistence_retry_seconds=0, persistence_retry_attempts=2, shadow_promotion_min_f1=0.9)
        await scheduler.start()

        job_id = scheduler.schedule_backtest()
        with self.assertLogs("tuning.scheduler", level="WARNING") as logs:
            await settle()
            await scheduler.wait_idle()

        # First write plus two retries.
        self.assertEqual(self.store.rejected_writes, 3)
        self.assertEqual(self.store.get_job(job_id).status, JobStatus.RUNNING)
        self.assertTrue(any("JOB_STATUS_WRITE_FAILED" in line for line in logs.output))
        self.assertTrue(any("JOB_STATUS_WRITE_ABANDONED" in line for line in logs.output))

    async def test_candidate_check_skips_weak_backtest_evidence(self) -> None:
        scheduler = self.build()
        weak = Proposal(
            id="ethereum-noisy",
            chain="ethereum",
            rules=Configuration.from_dict({"SCORE_ALERT": 60}),
            evidence=PerformanceEvidence(precision=0.4, recall=0.857, f1=0.554, alerts_per_hour=20.0),
            status=ProposalStatus.SHADOW_TESTING,
            created_at=NOW,
            shadow_started_at=NOW,
        )
        result = BacktestResult(
            chain="ethereum",
            total_configurations=3,
            current_performance=PerformanceEvidence(precision=0.3, recall=0.3, f1=0.3, alerts_per_hour=5.0),
            proposals=[weak],
        )

        with self.assertLogs("tuning.scheduler", level="INFO") as logs:
            self.assertEqual(scheduler.check_auto_apply_candidates([result]), [])

        self.assertEqual(self.store.list_jobs(job_type=JobType.AUTO_APPLY), [])
        self.assertTrue(any("reason=evidence_guard" in line for line in logs.output))

        result.proposals.append(shadow_proposal("ethereum-clean"))
        scheduled = scheduler.check_auto_apply_candidates([result])
        self.assertEqual(len(scheduled), 1)
        self.assertEqual(self.store.get_job(scheduled[0]).metadata["proposal_id"], "ethereum-clean")

    async def test_auto_apply_flag_survives_restart(self) -> None:
        first = self.build()
        self.assertFalse(first.set_auto_apply_enabled(False))
        self.assertIs(self.store.get_setting("auto_apply_enabled"), False)

        self.policy = AutoApplyPolicy(threshold=0.15, min_precision=0.5, max_alerts_per_hour=10, enabled=True)
        second = self.build(BlockingOptimizer())
        await second.start()

        self.assertFalse(second.policy.enabled)
        self.assertFalse(second.get_status()["auto_apply_enabled"])
        self.assertIsNone(second.schedule_auto_apply("ethereum-a1", 0.5, 0.5))

    async def test_flag_switched_elsewhere_stops_pending_auto_apply(self) -> None:
        scheduler = self.build(auto_apply_delay_seconds=0)
        proposal = shadow_proposal()
        self.store.create_proposal(proposal)
        self.store.save_shadow_metrics(frozen_metrics(proposal.id))
        job_id = scheduler.schedule_auto_apply(proposal.id, 0.5, 0.5)
        self.store.set_setting("auto_apply_enabled", False)
        await scheduler.start()

        await settle()
        await scheduler.wait_idle()

        job = self.store.get_job(job_id)
        self.assertEqual(job.status, JobStatus.FAILED)
        self.assertIn("disabled", job.error)
        self.assertEqual(self.store.get_proposal(proposal.id).status, ProposalStatus.SHADOW_TESTING)
        self.assertIsNone(self.store.get_live_rules("ethereum"))

    async def test_candidate_check_reads_the_stored_flag(self) -> None:
        scheduler = self.build()
        result = BacktestResult(
            chain="ethereum",
            total_configurations=3,
            current_performance=PerformanceEvidence(precision=0.5, recall=0.5, f1=0.5, alerts_per_hour=2.0),
            proposals=[shadow_proposal()],
        )
        self.store.set_setting("auto_apply_enabled", False)

        self.assertEqual(scheduler.check_auto_apply_candidates([result]), [])
        self.assertFalse(self.policy.enabled)

        self.store.set_setting("auto_apply_enabled", True)
        self.assertEqual(len(scheduler.check_auto_apply_candidates([result])), 1)

    async def test_status_and_job_lookup(self) -> None:
        scheduler = self.build()
        job_id = scheduler.schedule_backtest(at=NOW + timedelta(hours=2))

        status = scheduler.get_status()
        self.assertFalse(status["running"])
        self.assertEqual([j["id"] for j in status["pending_jobs"]], [job_id])
        self.assertEqual(status["max_concurrent_backtests"], 2)
        self.assertEqual(scheduler.get_job_status(job_id)["status"], "pending")
        with self.assertRaises(NotFoundError):
            scheduler.get_job_status("missing")


if __name__ == "__main__":
    unittest.main()
