"""Store interface injected into every tuning component, plus an in-process implementation."""

from __future__ import annotations

import copy
import threading
from dataclasses import replace
from datetime import datetime
from typing import Any, Iterable, Protocol

from tuning.types import (
    JobStatus,
    JobType,
    LiveRuleSet,
    Proposal,
    ProposalStatus,
    ScheduledJob,
    ShadowMetrics,
    ShadowRecord,
)


class TuningStore(Protocol):
    def create_proposal(self, proposal: Proposal) -> None: ...

    def get_proposal(self, proposal_id: str) -> Proposal | None: ...

    def update_proposal(self, proposal: Proposal) -> None: ...

    def list_proposals(
        self,
        *,
        status: ProposalStatus | None = None,
        chain: str | None = None,
        limit: int | None = None,
    ) -> list[Proposal]: ...

    def create_job(self, job: ScheduledJob) -> None: ...

    def get_job(self, job_id: str) -> ScheduledJob | None: ...

    def update_job(self, job: ScheduledJob) -> None: ...

    def list_jobs(
        self,
        *,
        statuses: Iterable[JobStatus] | None = None,
        job_type: JobType | None = None,
    ) -> list[ScheduledJob]: ...

    def save_shadow_metrics(self, metrics: ShadowMetrics) -> None: ...

    def get_shadow_metrics(self, proposal_id: str) -> ShadowMetrics | None: ...

    def add_shadow_records(self, records: list[ShadowRecord]) -> None: ...

    def list_shadow_records(self, proposal_id: str) -> list[ShadowRecord]: ...

    def list_unlabeled_shadow_records(self, observed_before: datetime) -> list[ShadowRecord]: ...

    def label_shadow_record(self, record_id: str, opportunity: bool, labeled_at: datetime) -> None: ...

    def purge_shadow_records(self, observed_before: datetime) -> int: ...

    def latest_shadow_observation(self, chain: str, token_address: str, observed_after: datetime) -> ShadowRecord | None:
        """Newest record of the token (any proposal, case-insensitive address) strictly after ``observed_after``."""
        ...

    def get_live_rules(self, chain: str) -> LiveRuleSet | None: ...

    def list_live_rules(self) -> list[LiveRuleSet]: ...

    def swap_live_rules(self, rule_set: LiveRuleSet) -> None: ...

    def get_setting(self, key: str) -> Any | None: ...

    def set_setting(self, key: str, value: Any) -> None: ...

    def promote_proposal(self, proposal: Proposal, rule_set: LiveRuleSet) -> None:
        """Write the applied proposal and its chain's new live rules in one step."""
        ...


class InMemoryTuningStore:
    """Dict-backed store; values are copied on the way in and out."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._proposals: dict[str, Proposal] = {}
        self._jobs: dict[str, ScheduledJob] = {}
        self._shadow_metrics: dict[str, ShadowMetrics] = {}
        self._shadow_records: dict[str, ShadowRecord] = {}
        self._live_rules: dict[str, LiveRuleSet] = {}
        self._settings: dict[str, Any] = {}

    def create_proposal(self, proposal: Proposal) -> None:
        with self._lock:
            if proposal.id in self._proposals:
                raise ValueError(f"proposal already exists: {proposal.id}")
            self._proposals[proposal.id] = proposal

    def get_proposal(self, proposal_id: str) -> Proposal | None:
        with self._lock:
            return self._proposals.get(proposal_id)

    def update_proposal(self, proposal: Proposal) -> None:
        with self._lock:
            current = self._proposals.get(proposal.id)
            if current is None:
                raise KeyError(proposal.id)
            # rules/evidence are immutable once created.
            self._proposals[proposal.id] = replace(proposal, rules=current.rules, evidence=current.evidence)

    def list_proposals(
        self,
        *,
        status: ProposalStatus | None = None,
        chain: str | None = None,
        limit: int | None = None,
    ) -> list[Proposal]:
        with self._lock:
            rows = [
                p
                for p in self._proposals.values()
                if (status is None or p.status == status) and (chain is None or p.chain == chain)
            ]
        rows.sort(key=lambda p: p.created_at, reverse=True)
        return rows[:limit] if limit is not None else rows

    def create_job(self, job: ScheduledJob) -> None:
        with self._lock:
            if job.id in self._jobs:
                raise ValueError(f"job already exists: {job.id}")
            self._jobs[job.id] = copy.deepcopy(job)

    def get_job(self, job_id: str) -> ScheduledJob | None:
        with self._lock:
            job = self._jobs.get(job_id)
            return copy.deepcopy(job) if job is not None else None

    def update_job(self, job: ScheduledJob) -> None:
        with self._lock:
            if job.id not in self._jobs:
                raise KeyError(job.id)
            self._jobs[job.id] = copy.deepcopy(job)

    def list_jobs(
        self,
        *,
        statuses: Iterable[JobStatus] | None = None,
        job_type: JobType | None = None,
    ) -> list[ScheduledJob]:
        wanted = set(statuses) if statuses is not None else None
        with self._lock:
            rows = [
                copy.deepcopy(j)
                for j in self._jobs.values()
                if (wanted is None or j.status in wanted) and (job_type is None or j.type == job_type)
            ]
        rows.sort(key=lambda j: j.scheduled_at)
        return rows

    def save_shadow_metrics(self, metrics: ShadowMetrics) -> None:
        with self._lock:
            self._shadow_metrics[metrics.proposal_id] = metrics

    def get_shadow_metrics(self, proposal_id: str) -> ShadowMetrics | None:
        with self._lock:
            return self._shadow_metrics.get(proposal_id)

    def add_shadow_records(self, records: list[ShadowRecord]) -> None:
        with self._lock:
            for record in records:
                self._shadow_records[record.id] = copy.copy(record)

    def list_shadow_records(self, proposal_id: str) -> list[ShadowRecord]:
        with self._lock:
            rows = [copy.copy(r) for r in self._shadow_records.values() if r.proposal_id == proposal_id]
        rows.sort(key=lambda r: r.observed_at)
        return rows

    def list_unlabeled_shadow_records(self, observed_before: datetime) -> list[ShadowRecord]:
        with self._lock:
            rows = [
                copy.copy(r)
                for r in self._shadow_records.values()
                if r.opportunity is None and r.observed_at <= observed_before
            ]
        rows.sort(key=lambda r: r.observed_at)
        return rows

    def label_shadow_record(self, record_id: str, opportunity: bool, labeled_at: datetime) -> None:
        with self._lock:
            record = self._shadow_records.get(record_id)
            if record is None:
                return
            record.opportunity = bool(opportunity)
            record.labeled_at = labeled_at

    def purge_shadow_records(self, observed_before: datetime) -> int:
        with self._lock:
            stale = [rid for rid, r in self._shadow_records.items() if r.observed_at < observed_before]
            for rid in stale:
                del self._shadow_records[rid]
        return len(stale)

    def latest_shadow_observation(self, chain: str, token_address: str, observed_after: datetime) -> ShadowRecord | None:
        key = str(token_address or "").lower()
        with self._lock:
            rows = [
                r
                for r in self._shadow_records.values()
                if r.chain == chain and r.token_address.lower() == key and r.observed_at > observed_after
            ]
            latest = max(rows, key=lambda r: r.observed_at, default=None)
            return copy.copy(latest) if latest is not None else None

    def get_live_rules(self, chain: str) -> LiveRuleSet | None:
        with self._lock:
            return self._live_rules.get(chain)

    def list_live_rules(self) -> list[LiveRuleSet]:
        with self._lock:
            return sorted(self._live_rules.values(), key=lambda r: r.chain)

    def swap_live_rules(self, rule_set: LiveRuleSet) -> None:
        with self._lock:
            self._live_rules[rule_set.chain] = rule_set

    def get_setting(self, key: str) -> Any | None:
        with self._lock:
            return copy.deepcopy(self._settings.get(key))

    def set_setting(self, key: str, value: Any) -> None:
        with self._lock:
            self._settings[key] = copy.deepcopy(value)

    def promote_proposal(self, proposal: Proposal, rule_set: LiveRuleSet) -> None:
        with self._lock:
            current = self._proposals.get(proposal.id)
            if current is None:
                raise KeyError(proposal.id)
            self._proposals[proposal.id] = replace(proposal, rules=current.rules, evidence=current.evidence)
            self._live_rules[rule_set.chain] = rule_set
