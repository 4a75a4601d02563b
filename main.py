"""Entry point for the alert threshold tuning engine."""

import argparse
import asyncio
import json
import logging
import os
import signal
from logging.handlers import RotatingFileHandler
from typing import Any

import config
from config import APP_LOG_FILE, LOG_DIR, LOG_LEVEL
from database.db import SqlTuningStore, init_db
from monitor.signal_feed import QueueSignalStream, RadarScanPoller
from monitor.signal_history import SqlSignalHistory
from monitor.tuning_notifier import build_notifier
from tuning.auto_apply import AutoApplyPolicy
from tuning.controller import TuningController
from tuning.lifecycle import ProposalLifecycle
from tuning.optimizer import GridSearchOptimizer
from tuning.report import MarkdownReportRenderer
from tuning.scheduler import SchedulerSettings, TuningScheduler
from tuning.shadow import ShadowSettings, ShadowValidator
from tuning.types import ParameterGrid
from utils.log_contracts import TuningEventLog


def configure_logging() -> None:
    os.makedirs(LOG_DIR, exist_ok=True)
    formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")

    file_handler = RotatingFileHandler(APP_LOG_FILE, maxBytes=1_000_000, backupCount=5, encoding="utf-8")
    file_handler.setFormatter(formatter)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)

    root = logging.getLogger()
    root.setLevel(getattr(logging, LOG_LEVEL.upper(), logging.INFO))
    root.handlers.clear()
    root.addHandler(file_handler)
    root.addHandler(console_handler)

    # Avoid leaking bot token in verbose transport logs.
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("telegram").setLevel(logging.INFO)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)


logger = logging.getLogger(__name__)


def build_controller(stream: QueueSignalStream | None = None) -> TuningController:
    store = SqlTuningStore()
    policy = AutoApplyPolicy(
        threshold=config.AUTO_APPLY_THRESHOLD_PERCENT / 100.0,
        min_precision=config.AUTO_APPLY_MIN_PRECISION,
        max_alerts_per_hour=config.AUTO_APPLY_MAX_ALERTS_PER_HOUR,
        enabled=config.AUTO_APPLY_ENABLED,
    )
    validator = ShadowValidator(
        store,
        stream=stream,
        settings=ShadowSettings(
            window_hours=config.SHADOW_WINDOW_HOURS,
            retention_hours=config.SHADOW_RETENTION_HOURS,
            label_delay_minutes=config.SHADOW_LABEL_DELAY_MINUTES,
            refresh_seconds=config.SHADOW_REFRESH_SECONDS,
            positive_price_change=config.SHADOW_POSITIVE_PRICE_CHANGE,
            positive_score_gain=config.SHADOW_POSITIVE_SCORE_GAIN,
        ),
        observations=SqlSignalHistory(),
    )
    scheduler = TuningScheduler(
        store=store,
        optimizer=GridSearchOptimizer(SqlSignalHistory(), max_proposals_per_chain=config.MAX_PROPOSALS_PER_CHAIN),
        lifecycle=ProposalLifecycle(store, policy),
        validator=validator,
        policy=policy,
        settings=SchedulerSettings(
            chains=list(config.TUNING_CHAINS),
            grid=ParameterGrid.from_dict(config.TUNING_GRID),
            default_rules=dict(config.DEFAULT_ALERT_RULES),
            lookback_hours=config.BACKTEST_LOOKBACK_HOURS,
            bucket_hours=config.BACKTEST_BUCKET_HOURS,
            max_concurrent_backtests=config.MAX_CONCURRENT_BACKTESTS,
            capacity_backoff_seconds=config.CAPACITY_BACKOFF_SECONDS,
            persistence_retry_seconds=config.PERSISTENCE_RETRY_SECONDS,
            persistence_retry_attempts=config.PERSISTENCE_RETRY_ATTEMPTS,
            auto_apply_delay_seconds=config.AUTO_APPLY_DELAY_SECONDS,
            shadow_promotion_min_f1=config.SHADOW_PROMOTION_MIN_F1,
            baseline_f1=config.BASELINE_F1,
            backtest_trigger=config.BACKTEST_TRIGGER or None,
            report_trigger=config.REPORT_TRIGGER or None,
            cleanup_trigger=config.SHADOW_CLEANUP_TRIGGER or None,
            auto_apply_check_trigger=config.AUTO_APPLY_CHECK_TRIGGER or None,
        ),
        notifier=build_notifier(),
        reporter=MarkdownReportRenderer(config.REPORTS_DIR),
        event_log=TuningEventLog(config.TUNING_EVENTS_LOG_FILE),
    )
    return TuningController(scheduler, top_proposals_per_chain=config.CONTROLLER_TOP_PROPOSALS)


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, ensure_ascii=False, default=str))


async def run_service() -> None:
    stream = QueueSignalStream()
    poller = RadarScanPoller(stream, interval_seconds=config.SIGNAL_POLL_SECONDS)
    controller = build_controller(stream)
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:  # pragma: no cover - windows event loop
            signal.signal(sig, lambda *_: loop.call_soon_threadsafe(stop_event.set))

    await controller.initialize()
    poller.start()
    logger.info(
        "Tuning service running chains=%s auto_apply=%s db=%s",
        ",".join(config.TUNING_CHAINS),
        config.AUTO_APPLY_ENABLED,
        config.DATABASE_URL,
    )
    try:
        await stop_event.wait()
    finally:
        logger.info("Shutdown requested; waiting for in-flight jobs")
        await poller.stop()
        await controller.shutdown()


async def run_backtest_once(args: argparse.Namespace) -> None:
    controller = build_controller()
    chains = [c.strip() for c in (args.chains or "").split(",") if c.strip()] or None
    try:
        result = await controller.execute_backtest(
            chains=chains,
            lookback_hours=args.lookback_hours,
            bucket_hours=args.bucket_hours,
            pareto=args.pareto,
        )
    finally:
        await controller.validator.stop_shadow_testing()
    _print_json(result)


async def run_command(args: argparse.Namespace) -> None:
    controller = build_controller()
    if args.command == "status":
        _print_json({"status": controller.get_status(), "metrics": controller.get_tuning_metrics()})
    elif args.command == "apply":
        _print_json(await controller.force_apply_proposal(args.proposal_id, args.reason))
    elif args.command == "reject":
        _print_json(controller.reject_proposal(args.proposal_id, args.reason))
    elif args.command == "job":
        _print_json(controller.get_job_status(args.job_id))
    elif args.command == "auto-apply":
        _print_json(controller.set_auto_apply_enabled(args.state == "on"))


def main() -> None:
    parser = argparse.ArgumentParser(description="Adaptive alert threshold tuning engine.")
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("run", help="Run scheduler, shadow validation and auto-apply until stopped")

    backtest = sub.add_parser("backtest", help="Run one backtest now and print the summary as JSON")
    backtest.add_argument("--chains", default="", help="Comma-separated chains (default: TUNING_CHAINS)")
    backtest.add_argument("--lookback-hours", type=float, default=config.BACKTEST_LOOKBACK_HOURS)
    backtest.add_argument("--bucket-hours", type=float, default=config.BACKTEST_BUCKET_HOURS)
    backtest.add_argument("--pareto", action="store_true", help="Keep only Pareto-optimal candidates over f1, precision and alert rate")

    sub.add_parser("status", help="Print scheduler, shadow and proposal status as JSON")

    apply_cmd = sub.add_parser("apply", help="Force-apply a proposal (shadow quality bar still applies)")
    apply_cmd.add_argument("proposal_id")
    apply_cmd.add_argument("--reason", required=True)

    reject = sub.add_parser("reject", help="Reject a proposal")
    reject.add_argument("proposal_id")
    reject.add_argument("--reason", required=True)

    job = sub.add_parser("job", help="Print one scheduled job as JSON")
    job.add_argument("job_id")

    toggle = sub.add_parser("auto-apply", help="Turn automatic application on or off for every running instance")
    toggle.add_argument("state", choices=("on", "off"))

    args = parser.parse_args()
    configure_logging()
    init_db()

    if args.command == "run":
        asyncio.run(run_service())
    elif args.command == "backtest":
        asyncio.run(run_backtest_once(args))
    else:
        asyncio.run(run_command(args))


if __name__ == "__main__":
    main()
