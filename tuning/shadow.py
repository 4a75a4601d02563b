"""Shadow validation of proposals against live, non-emitting traffic.

Every live event is evaluated against each proposal in ``shadow_testing``
for the event's chain.  Evaluations are stored as ShadowRecords and labeled
with ground truth once the label delay has passed: the record counts as an
opportunity when a later observation of the same token shows the price or the
score up by more than the configured fraction.  Later observations come from
the live feed seen by this process, then from persisted shadow records and the
scan history, so labels survive a restart.  Nothing here sends alerts.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import AsyncIterator, Callable, Protocol

from tuning.errors import NotFoundError
from tuning.store import TuningStore
from tuning.types import (
    PerformanceEvidence,
    Proposal,
    ProposalStatus,
    ShadowMetrics,
    ShadowRecord,
    SignalEvent,
    ensure_utc,
    utc_now,
)

logger = logging.getLogger(__name__)


class SignalStream(Protocol):
    def subscribe(self) -> AsyncIterator[SignalEvent]: ...


class ObservationSource(Protocol):
    def latest_observation(self, chain: str, token_address: str, observed_after: datetime) -> SignalEvent | None: ...


@dataclass
class ShadowSettings:
    window_hours: float = 24.0
    retention_hours: float = 48.0
    label_delay_minutes: float = 60.0
    refresh_seconds: float = 60.0
    positive_price_change: float = 0.10
    positive_score_gain: float = 0.10


@dataclass(frozen=True)
class _Observation:
    observed_at: datetime
    price: float
    score: float


class ShadowValidator:
    def __init__(
        self,
        store: TuningStore,
        stream: SignalStream | None = None,
        settings: ShadowSettings | None = None,
        clock: Callable[[], datetime] = utc_now,
        observations: ObservationSource | None = None,
    ) -> None:
        self.store = store
        self.stream = stream
        self.observations = observations
        self.settings = settings or ShadowSettings()
        self._clock = clock
        self._latest: dict[tuple[str, str], _Observation] = {}
        self._active: dict[str, Proposal] = {}
        self._tasks: list[asyncio.Task] = []
        self.events_seen = 0

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._tasks)

    @property
    def window(self) -> timedelta:
        return timedelta(hours=float(self.settings.window_hours))

    @property
    def label_delay(self) -> timedelta:
        return timedelta(minutes=float(self.settings.label_delay_minutes))

    def start_shadow_testing(self) -> None:
        if self.running:
            return
        self.refresh_active()
        loop = asyncio.get_running_loop()
        self._tasks = [loop.create_task(self._refresh_loop(), name="shadow-refresh")]
        if self.stream is not None:
            self._tasks.append(loop.create_task(self._consume_loop(), name="shadow-consume"))
        logger.info(
            "SHADOW_START active=%s window_h=%s label_delay_min=%s stream=%s",
            len(self._active),
            self.settings.window_hours,
            self.settings.label_delay_minutes,
            "on" if self.stream is not None else "off",
        )

    async def stop_shadow_testing(self) -> None:
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info("SHADOW_STOP events_seen=%s", self.events_seen)

    def refresh_active(self) -> dict[str, Proposal]:
        rows = self.store.list_proposals(status=ProposalStatus.SHADOW_TESTING)
        self._active = {p.id: p for p in rows}
        return dict(self._active)

    def _window_start(self, proposal: Proposal) -> datetime:
        return ensure_utc(proposal.shadow_started_at or proposal.created_at)

    def process_event(self, event: SignalEvent) -> list[ShadowRecord]:
        observed_at = ensure_utc(event.observed_at)
        self.events_seen += 1
        records: list[ShadowRecord] = []
        for proposal in self._active.values():
            if proposal.chain != event.chain:
                continue
            started = self._window_start(proposal)
            if observed_at < started or observed_at >= started + self.window:
                continue
            records.append(
                ShadowRecord(
                    id=uuid.uuid4().hex,
                    proposal_id=proposal.id,
                    chain=event.chain,
                    token_address=event.token_address,
                    observed_at=observed_at,
                    would_fire=event.fires(proposal.rules),
                    entry_score=float(event.score),
                    entry_price=float(event.price),
                )
            )
        key = (event.chain, event.token_address.lower())
        current = self._latest.get(key)
        if current is None or observed_at >= current.observed_at:
            self._latest[key] = _Observation(observed_at, float(event.price), float(event.score))
        if records:
            self.store.add_shadow_records(records)
        return records

    def _later_observation(self, record: ShadowRecord) -> _Observation | None:
        observed_at = ensure_utc(record.observed_at)
        cached = self._latest.get((record.chain, record.token_address.lower()))
        if cached is not None and cached.observed_at > observed_at:
            # The feed cache is always the newest observation this process has seen.
            return cached
        found: list[_Observation] = []
        stored = self.store.latest_shadow_observation(record.chain, record.token_address, observed_at)
        if stored is not None:
            found.append(_Observation(ensure_utc(stored.observed_at), float(stored.entry_price), float(stored.entry_score)))
        if self.observations is not None:
            event = self.observations.latest_observation(record.chain, record.token_address, observed_at)
            if event is not None and ensure_utc(event.observed_at) > observed_at:
                found.append(_Observation(ensure_utc(event.observed_at), float(event.price), float(event.score)))
        return max(found, key=lambda o: o.observed_at, default=None)

    def _is_opportunity(self, record: ShadowRecord) -> bool:
        later = self._later_observation(record)
        if later is None:
            return False
        if record.entry_price > 0:
            change = (later.price - record.entry_price) / record.entry_price
            if change > self.settings.positive_price_change:
                return True
        if record.entry_score > 0 and later.score > record.entry_score * (1.0 + self.settings.positive_score_gain):
            return True
        return False

    def _label(self, record: ShadowRecord, now: datetime) -> ShadowRecord:
        record.opportunity = self._is_opportunity(record)
        record.labeled_at = now
        self.store.label_shadow_record(record.id, record.opportunity, now)
        return record

    def label_due_records(self, now: datetime | None = None) -> int:
        now = ensure_utc(now) or self._clock()
        due = self.store.list_unlabeled_shadow_records(observed_before=now - self.label_delay)
        for record in due:
            self._label(record, now)
        if due:
            logger.debug("SHADOW_LABEL labeled=%s", len(due))
        return len(due)

    def generate_shadow_test_metrics(self, proposal_id: str, now: datetime | None = None) -> ShadowMetrics:
        proposal = self.store.get_proposal(proposal_id)
        if proposal is None:
            raise NotFoundError("proposal", proposal_id)
        existing = self.store.get_shadow_metrics(proposal_id)
        if existing is not None and existing.frozen:
            return existing

        now = ensure_utc(now) or self._clock()
        started = self._window_start(proposal)
        window_end = started + self.window
        records = self.store.list_shadow_records(proposal_id)
        label_cutoff = now - self.label_delay
        for record in records:
            if record.opportunity is None and ensure_utc(record.observed_at) <= label_cutoff:
                self._label(record, now)

        labeled = [r for r in records if r.opportunity is not None]
        fired = [r for r in records if r.would_fire]
        tp = sum(1 for r in labeled if r.would_fire and r.opportunity)
        fp = sum(1 for r in labeled if r.would_fire and not r.opportunity)
        fn = sum(1 for r in labeled if not r.would_fire and r.opportunity)
        evidence = PerformanceEvidence.from_counts(tp, fp, fn, window_hours=1.0)

        # Rate over at least one hour so the first minutes of a window do not spike.
        elapsed_hours = (min(now, window_end) - started).total_seconds() / 3600.0
        alerts_per_hour = len(fired) / max(1.0, elapsed_hours)

        pending = any(r.opportunity is None for r in records)
        frozen = now >= window_end + self.label_delay or (now >= window_end and not pending)
        metrics = ShadowMetrics(
            proposal_id=proposal.id,
            precision_estimate=evidence.precision,
            alerts_per_hour=alerts_per_hour,
            sample_size=len(labeled),
            window_started_at=started,
            chain=proposal.chain,
            recall_estimate=evidence.recall,
            f1_estimate=evidence.f1,
            would_fire_count=len(fired),
            true_positives=tp,
            false_positives=fp,
            false_negatives=fn,
            computed_at=now,
            frozen=frozen,
        )
        self.store.save_shadow_metrics(metrics)
        if frozen:
            logger.info(
                "SHADOW_WINDOW_CLOSED proposal=%s chain=%s precision=%.3f aph=%.2f samples=%s",
                proposal.id,
                proposal.chain,
                metrics.precision_estimate,
                metrics.alerts_per_hour,
                metrics.sample_size,
            )
        return metrics

    def get_all_active_shadow_test_metrics(self, now: datetime | None = None) -> dict[str, ShadowMetrics]:
        out: dict[str, ShadowMetrics] = {}
        for proposal in self.store.list_proposals(status=ProposalStatus.SHADOW_TESTING):
            try:
                out[proposal.id] = self.generate_shadow_test_metrics(proposal.id, now=now)
            except Exception as exc:
                logger.warning("SHADOW_METRICS_FAILED proposal=%s err=%s", proposal.id, exc)
        return out

    def purge_expired_records(self, now: datetime | None = None) -> int:
        now = ensure_utc(now) or self._clock()
        cutoff = now - timedelta(hours=float(self.settings.retention_hours))
        for key in [k for k, obs in self._latest.items() if obs.observed_at < cutoff]:
            del self._latest[key]
        try:
            purged = self.store.purge_shadow_records(observed_before=cutoff)
        except Exception as exc:
            logger.warning("SHADOW_PURGE_FAILED cutoff=%s err=%s", cutoff.isoformat(), exc)
            return 0
        logger.info("SHADOW_PURGE cutoff=%s purged=%s", cutoff.isoformat(), purged)
        return purged

    def refresh(self, now: datetime | None = None) -> dict[str, ShadowMetrics]:
        now = ensure_utc(now) or self._clock()
        self.refresh_active()
        self.label_due_records(now)
        return self.get_all_active_shadow_test_metrics(now)

    async def _refresh_loop(self) -> None:
        while True:
            await asyncio.sleep(max(1.0, float(self.settings.refresh_seconds)))
            try:
                self.refresh()
            except Exception:
                logger.exception("Shadow refresh failed")

    async def _consume_loop(self) -> None:
        async for event in self.stream.subscribe():
            try:
                self.process_event(event)
            except Exception:
                logger.exception("Shadow evaluation failed token=%s", getattr(event, "token_address", "?"))
