"""Grid-search backtest optimizer for alert thresholds.

For each chain the lookback window is split into fixed-size buckets, every
configuration of the grid is replayed against the recorded signals bucket by
bucket, and the resulting precision/recall/F1 ranks the candidates.  The
search itself is pure: it reads history and returns results, persistence is
left to the caller.
"""

from __future__ import annotations

import asyncio
import logging
import math
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Mapping, Protocol, Sequence

from tuning.errors import OptimizerFailure
from tuning.types import (
    BacktestResult,
    Configuration,
    ParameterGrid,
    PerformanceEvidence,
    Proposal,
    ProposalStatus,
    SignalEvent,
    ensure_utc,
    utc_now,
)

logger = logging.getLogger(__name__)


class SignalHistory(Protocol):
    async def fetch_signals(self, chain: str, start: datetime, end: datetime) -> list[SignalEvent]: ...


@dataclass(frozen=True)
class _Scored:
    index: int
    rules: Configuration
    evidence: PerformanceEvidence


def bucketize(
    events: Sequence[SignalEvent],
    start: datetime,
    end: datetime,
    bucket_hours: float,
) -> list[list[SignalEvent]]:
    """Split events into consecutive buckets covering [start, end)."""
    span_hours = (end - start).total_seconds() / 3600.0
    count = max(1, int(math.ceil(span_hours / bucket_hours - 1e-9)))
    bucket_seconds = bucket_hours * 3600.0
    buckets: list[list[SignalEvent]] = [[] for _ in range(count)]
    for event in events:
        ts = ensure_utc(event.observed_at)
        if ts is None or ts < start or ts >= end:
            continue
        idx = min(count - 1, int((ts - start).total_seconds() // bucket_seconds))
        buckets[idx].append(event)
    return buckets


def replay(buckets: Sequence[Sequence[SignalEvent]], rules: Configuration, window_hours: float) -> PerformanceEvidence:
    tp = fp = fn = 0
    for bucket in buckets:
        for event in bucket:
            good = event.is_opportunity
            if event.fires(rules):
                if good:
                    tp += 1
                else:
                    fp += 1
            elif good:
                fn += 1
    return PerformanceEvidence.from_counts(tp, fp, fn, window_hours)


def rank_key(item: _Scored) -> tuple[bool, float, float, int]:
    ev = item.evidence
    return (ev.total_alerts == 0, -ev.f1, ev.alerts_per_hour, item.index)


def dominates(a: PerformanceEvidence, b: PerformanceEvidence) -> bool:
    """True when ``a`` is at least as good as ``b`` on f1, precision and alert rate, and better on one."""
    no_worse = a.f1 >= b.f1 and a.precision >= b.precision and a.alerts_per_hour <= b.alerts_per_hour
    better = a.f1 > b.f1 or a.precision > b.precision or a.alerts_per_hour < b.alerts_per_hour
    return no_worse and better


def pareto_frontier(proposals: Sequence[Proposal]) -> list[Proposal]:
    """Proposals no other proposal dominates, in their input order."""
    return [
        p
        for p in proposals
        if not any(dominates(other.evidence, p.evidence) for other in proposals if other is not p)
    ]


def select_pareto_optimal(
    proposals: Sequence[Proposal],
    baseline_f1: float,
    *,
    min_f1_improvement: float,
    max_alerts_per_hour: float,
    min_precision: float,
) -> list[Proposal]:
    """Frontier of the candidates that beat the baseline f1 by `min_f1_improvement` within the quality bar."""
    floor = float(baseline_f1) * (1.0 + float(min_f1_improvement))
    candidates = [
        p
        for p in proposals
        if p.evidence.f1 >= floor
        and p.evidence.alerts_per_hour <= max_alerts_per_hour
        and p.evidence.precision >= min_precision
    ]
    frontier = pareto_frontier(candidates)
    logger.info(
        "PARETO_SELECT candidates=%s qualified=%s frontier=%s f1_floor=%.3f",
        len(proposals),
        len(candidates),
        len(frontier),
        floor,
    )
    return frontier


class GridSearchOptimizer:
    def __init__(self, history: SignalHistory, max_proposals_per_chain: int = 10) -> None:
        self.history = history
        self.max_proposals_per_chain = max(1, int(max_proposals_per_chain))

    async def run_backtest(
        self,
        lookback_hours: float,
        chains: Sequence[str],
        bucket_hours: float,
        grid: ParameterGrid,
        current_rules: Mapping[str, Configuration] | Configuration | None = None,
        now: datetime | None = None,
    ) -> list[BacktestResult]:
        if lookback_hours <= 0:
            raise ValueError(f"lookback_hours must be > 0, got {lookback_hours}")
        if bucket_hours <= 0:
            raise ValueError(f"bucket_hours must be > 0, got {bucket_hours}")
        end = ensure_utc(now) or utc_now()
        start = end - timedelta(hours=float(lookback_hours))
        total = grid.total_configurations()
        logger.info(
            "BACKTEST_START chains=%s lookback_h=%s bucket_h=%s params=%s configurations=%s",
            ",".join(chains),
            lookback_hours,
            bucket_hours,
            ",".join(grid.names),
            total,
        )

        results: list[BacktestResult] = []
        for chain in chains:
            live = current_rules.get(chain) if isinstance(current_rules, Mapping) else current_rules
            try:
                result = await self._run_chain(chain, start, end, float(lookback_hours), float(bucket_hours), grid, live)
            except Exception as exc:
                failure = exc if isinstance(exc, OptimizerFailure) else OptimizerFailure(chain, str(exc) or type(exc).__name__)
                logger.warning("BACKTEST_CHAIN_FAILED chain=%s err=%s", chain, failure)
                result = BacktestResult(
                    chain=chain,
                    total_configurations=total,
                    current_performance=None,
                    error=str(failure),
                )
            results.append(result)

        logger.info(
            "BACKTEST_DONE chains=%s ok=%s failed=%s proposals=%s",
            len(results),
            sum(1 for r in results if r.ok),
            sum(1 for r in results if not r.ok),
            sum(len(r.proposals) for r in results),
        )
        return results

    async def _run_chain(
        self,
        chain: str,
        start: datetime,
        end: datetime,
        window_hours: float,
        bucket_hours: float,
        grid: ParameterGrid,
        live_rules: Configuration | None,
    ) -> BacktestResult:
        events = await self.history.fetch_signals(chain, start, end)
        buckets = bucketize(events, start, end, bucket_hours)
        data_points = sum(len(b) for b in buckets)
        if data_points == 0:
            raise OptimizerFailure(chain, "no historical signals in window")

        ranked = await asyncio.to_thread(self._search, buckets, grid, window_hours)
        current = replay(buckets, live_rules, window_hours) if live_rules is not None else None

        created_at = utc_now()
        proposals: list[Proposal] = []
        for item in ranked:
            ev = item.evidence
            if ev.total_alerts == 0 and ev.total_opportunities == 0:
                continue
            proposals.append(
                Proposal(
                    id=f"{chain}-{uuid.uuid4().hex[:16]}",
                    chain=chain,
                    rules=item.rules,
                    evidence=ev,
                    status=ProposalStatus.PROPOSED,
                    created_at=created_at,
                    updated_at=created_at,
                )
            )
            if len(proposals) >= self.max_proposals_per_chain:
                break

        best = proposals[0].evidence if proposals else None
        logger.info(
            "BACKTEST_CHAIN chain=%s events=%s buckets=%s best_f1=%.3f best_aph=%.2f current_f1=%s",
            chain,
            data_points,
            len(buckets),
            best.f1 if best else 0.0,
            best.alerts_per_hour if best else 0.0,
            f"{current.f1:.3f}" if current else "n/a",
        )
        return BacktestResult(
            chain=chain,
            total_configurations=grid.total_configurations(),
            current_performance=current,
            proposals=proposals,
            bucket_count=len(buckets),
            data_points=data_points,
        )

    @staticmethod
    def _search(buckets: list[list[SignalEvent]], grid: ParameterGrid, window_hours: float) -> list[_Scored]:
        scored = [
            _Scored(index=i, rules=rules, evidence=replay(buckets, rules, window_hours))
            for i, rules in enumerate(grid.configurations())
        ]
        scored.sort(key=rank_key)
        return scored
