"""Database helpers and the SQL-backed tuning store."""

from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterable, Iterator, Optional

from sqlalchemy import create_engine, func, inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from config import DATABASE_URL
from database.models import (
    Base,
    LiveRulesRow,
    ProposalRow,
    ScheduledJobRow,
    ShadowMetricsRow,
    ShadowRecordRow,
    TuningSettingRow,
)
from tuning.errors import PersistenceError
from tuning.types import (
    Configuration,
    JobStatus,
    JobType,
    LiveRuleSet,
    PerformanceEvidence,
    Proposal,
    ProposalStatus,
    ScheduledJob,
    ShadowMetrics,
    ShadowRecord,
)


def create_engine_for(url: str) -> Engine:
    if url.startswith("sqlite") and (":memory:" in url or url.rstrip("/") == "sqlite:"):
        # One shared connection so every session sees the same in-memory database.
        return create_engine(
            url,
            future=True,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    if url.startswith("sqlite"):
        return create_engine(url, future=True, connect_args={"check_same_thread": False})
    return create_engine(url, future=True, pool_pre_ping=True)


def create_session_factory(bind: Engine) -> sessionmaker:
    return sessionmaker(bind=bind, autoflush=False, autocommit=False, expire_on_commit=False, future=True)


engine = create_engine_for(DATABASE_URL)
SessionLocal = create_session_factory(engine)


def init_db(bind: Engine | None = None) -> None:
    target = bind or engine
    Base.metadata.create_all(bind=target)
    _apply_runtime_migrations(target)


def _apply_runtime_migrations(bind: Engine) -> None:
    inspector = inspect(bind)
    table_names = set(inspector.get_table_names())

    if "tuning_jobs" in table_names:
        job_columns = {col["name"] for col in inspector.get_columns("tuning_jobs")}
        if "attempts" not in job_columns:
            with bind.begin() as conn:
                conn.execute(text("ALTER TABLE tuning_jobs ADD COLUMN attempts INTEGER NOT NULL DEFAULT 0"))

    if "shadow_metrics" in table_names:
        metric_columns = {col["name"] for col in inspector.get_columns("shadow_metrics")}
        for name in ("true_positives", "false_positives", "false_negatives"):
            if name not in metric_columns:
                with bind.begin() as conn:
                    conn.execute(text(f"ALTER TABLE shadow_metrics ADD COLUMN {name} INTEGER NOT NULL DEFAULT 0"))

    if "radar_scans" in table_names:
        scan_columns = {col["name"] for col in inspector.get_columns("radar_scans")}
        if "price_change_1h" not in scan_columns:
            with bind.begin() as conn:
                conn.execute(text("ALTER TABLE radar_scans ADD COLUMN price_change_1h FLOAT"))
        if "extra_metrics" not in scan_columns:
            with bind.begin() as conn:
                conn.execute(text("ALTER TABLE radar_scans ADD COLUMN extra_metrics JSON"))


def get_db() -> Session:
    return SessionLocal()


def to_db_time(value: datetime | None) -> datetime | None:
    """Columns hold naive UTC."""
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def from_db_time(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _proposal_from_row(row: ProposalRow) -> Proposal:
    return Proposal(
        id=row.id,
        chain=row.chain,
        rules=Configuration.from_dict(row.rules or {}),
        evidence=PerformanceEvidence.from_dict(row.evidence or {}),
        status=ProposalStatus(row.status),
        created_at=from_db_time(row.created_at),
        reason=row.reason,
        updated_at=from_db_time(row.updated_at),
        shadow_started_at=from_db_time(row.shadow_started_at),
        approved_at=from_db_time(row.approved_at),
        applied_at=from_db_time(row.applied_at),
    )


def _apply_proposal_state(row: ProposalRow, proposal: Proposal) -> None:
    row.status = proposal.status.value
    row.reason = proposal.reason
    row.updated_at = to_db_time(proposal.updated_at)
    row.shadow_started_at = to_db_time(proposal.shadow_started_at)
    row.approved_at = to_db_time(proposal.approved_at)
    row.applied_at = to_db_time(proposal.applied_at)


def _job_from_row(row: ScheduledJobRow) -> ScheduledJob:
    return ScheduledJob(
        id=row.id,
        type=JobType(row.job_type),
        status=JobStatus(row.status),
        scheduled_at=from_db_time(row.scheduled_at),
        started_at=from_db_time(row.started_at),
        completed_at=from_db_time(row.completed_at),
        error=row.error,
        metadata=dict(row.job_metadata or {}),
        attempts=int(row.attempts or 0),
    )


def _apply_job_state(row: ScheduledJobRow, job: ScheduledJob) -> None:
    row.job_type = job.type.value
    row.status = job.status.value
    row.scheduled_at = to_db_time(job.scheduled_at)
    row.started_at = to_db_time(job.started_at)
    row.completed_at = to_db_time(job.completed_at)
    row.error = job.error
    row.job_metadata = dict(job.metadata or {})
    row.attempts = int(job.attempts)


def _record_from_row(row: ShadowRecordRow) -> ShadowRecord:
    return ShadowRecord(
        id=row.id,
        proposal_id=row.proposal_id,
        chain=row.chain,
        token_address=row.token_address,
        observed_at=from_db_time(row.observed_at),
        would_fire=bool(row.would_fire),
        entry_score=float(row.entry_score or 0.0),
        entry_price=float(row.entry_price or 0.0),
        opportunity=row.opportunity,
        labeled_at=from_db_time(row.labeled_at),
    )


def _live_from_row(row: LiveRulesRow) -> LiveRuleSet:
    return LiveRuleSet(
        chain=row.chain,
        rules=Configuration.from_dict(row.rules or {}),
        applied_at=from_db_time(row.applied_at),
        proposal_id=row.proposal_id,
        performance=PerformanceEvidence.from_dict(row.performance) if row.performance else None,
    )


def _write_live_rules(db: Session, rule_set: LiveRuleSet) -> None:
    row = db.get(LiveRulesRow, rule_set.chain)
    if row is None:
        row = LiveRulesRow(chain=rule_set.chain)
        db.add(row)
    row.rules = rule_set.rules.as_dict()
    row.applied_at = to_db_time(rule_set.applied_at)
    row.proposal_id = rule_set.proposal_id
    row.performance = rule_set.performance.to_dict() if rule_set.performance else None


class SqlTuningStore:
    """TuningStore over SQLAlchemy; one session per operation."""

    def __init__(self, session_factory: sessionmaker | None = None) -> None:
        self._session_factory = session_factory or SessionLocal

    @contextmanager
    def _session(self, op: str) -> Iterator[Session]:
        db = self._session_factory()
        try:
            yield db
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            raise PersistenceError(f"{op} failed: {exc}") from exc
        finally:
            db.close()

    def create_proposal(self, proposal: Proposal) -> None:
        with self._session("create_proposal") as db:
            row = ProposalRow(
                id=proposal.id,
                chain=proposal.chain,
                rules=proposal.rules.as_dict(),
                evidence=proposal.evidence.to_dict(),
                created_at=to_db_time(proposal.created_at),
            )
            _apply_proposal_state(row, proposal)
            db.add(row)

    def get_proposal(self, proposal_id: str) -> Optional[Proposal]:
        with self._session("get_proposal") as db:
            row = db.get(ProposalRow, proposal_id)
            return _proposal_from_row(row) if row else None

    def update_proposal(self, proposal: Proposal) -> None:
        with self._session("update_proposal") as db:
            row = db.get(ProposalRow, proposal.id)
            if row is None:
                raise KeyError(proposal.id)
            _apply_proposal_state(row, proposal)

    def list_proposals(
        self,
        *,
        status: ProposalStatus | None = None,
        chain: str | None = None,
        limit: int | None = None,
    ) -> list[Proposal]:
        with self._session("list_proposals") as db:
            query = db.query(ProposalRow)
            if status is not None:
                query = query.filter(ProposalRow.status == status.value)
            if chain is not None:
                query = query.filter(ProposalRow.chain == chain)
            query = query.order_by(ProposalRow.created_at.desc())
            if limit is not None:
                query = query.limit(limit)
            return [_proposal_from_row(row) for row in query.all()]

    def create_job(self, job: ScheduledJob) -> None:
        with self._session("create_job") as db:
            row = ScheduledJobRow(id=job.id)
            _apply_job_state(row, job)
            db.add(row)

    def get_job(self, job_id: str) -> Optional[ScheduledJob]:
        with self._session("get_job") as db:
            row = db.get(ScheduledJobRow, job_id)
            return _job_from_row(row) if row else None

    def update_job(self, job: ScheduledJob) -> None:
        with self._session("update_job") as db:
            row = db.get(ScheduledJobRow, job.id)
            if row is None:
                raise KeyError(job.id)
            _apply_job_state(row, job)

    def list_jobs(
        self,
        *,
        statuses: Iterable[JobStatus] | None = None,
        job_type: JobType | None = None,
    ) -> list[ScheduledJob]:
        with self._session("list_jobs") as db:
            query = db.query(ScheduledJobRow)
            if statuses is not None:
                query = query.filter(ScheduledJobRow.status.in_([s.value for s in statuses]))
            if job_type is not None:
                query = query.filter(ScheduledJobRow.job_type == job_type.value)
            return [_job_from_row(row) for row in query.order_by(ScheduledJobRow.scheduled_at.asc()).all()]

    def save_shadow_metrics(self, metrics: ShadowMetrics) -> None:
        with self._session("save_shadow_metrics") as db:
            row = db.get(ShadowMetricsRow, metrics.proposal_id)
            if row is None:
                row = ShadowMetricsRow(proposal_id=metrics.proposal_id)
                db.add(row)
            row.chain = metrics.chain
            row.precision_estimate = metrics.precision_estimate
            row.recall_estimate = metrics.recall_estimate
            row.f1_estimate = metrics.f1_estimate
            row.alerts_per_hour = metrics.alerts_per_hour
            row.sample_size = metrics.sample_size
            row.would_fire_count = metrics.would_fire_count
            row.true_positives = metrics.true_positives
            row.false_positives = metrics.false_positives
            row.false_negatives = metrics.false_negatives
            row.window_started_at = to_db_time(metrics.window_started_at)
            row.computed_at = to_db_time(metrics.computed_at)
            row.frozen = metrics.frozen

    def get_shadow_metrics(self, proposal_id: str) -> Optional[ShadowMetrics]:
        with self._session("get_shadow_metrics") as db:
            row = db.get(ShadowMetricsRow, proposal_id)
            if row is None:
                return None
            return ShadowMetrics(
                proposal_id=row.proposal_id,
                precision_estimate=float(row.precision_estimate),
                alerts_per_hour=float(row.alerts_per_hour),
                sample_size=int(row.sample_size),
                window_started_at=from_db_time(row.window_started_at),
                chain=row.chain or "",
                recall_estimate=float(row.recall_estimate),
                f1_estimate=float(row.f1_estimate),
                would_fire_count=int(row.would_fire_count),
                true_positives=int(row.true_positives or 0),
                false_positives=int(row.false_positives or 0),
                false_negatives=int(row.false_negatives or 0),
                computed_at=from_db_time(row.computed_at),
                frozen=bool(row.frozen),
            )

    def add_shadow_records(self, records: list[ShadowRecord]) -> None:
        if not records:
            return
        with self._session("add_shadow_records") as db:
            for record in records:
                db.add(
                    ShadowRecordRow(
                        id=record.id,
                        proposal_id=record.proposal_id,
                        chain=record.chain,
                        token_address=record.token_address,
                        observed_at=to_db_time(record.observed_at),
                        would_fire=bool(record.would_fire),
                        entry_score=float(record.entry_score),
                        entry_price=float(record.entry_price),
                        opportunity=record.opportunity,
                        labeled_at=to_db_time(record.labeled_at),
                    )
                )

    def list_shadow_records(self, proposal_id: str) -> list[ShadowRecord]:
        with self._session("list_shadow_records") as db:
            rows = (
                db.query(ShadowRecordRow)
                .filter(ShadowRecordRow.proposal_id == proposal_id)
                .order_by(ShadowRecordRow.observed_at.asc())
                .all()
            )
            return [_record_from_row(row) for row in rows]

    def list_unlabeled_shadow_records(self, observed_before: datetime) -> list[ShadowRecord]:
        with self._session("list_unlabeled_shadow_records") as db:
            rows = (
                db.query(ShadowRecordRow)
                .filter(
                    ShadowRecordRow.opportunity.is_(None),
                    ShadowRecordRow.observed_at <= to_db_time(observed_before),
                )
                .order_by(ShadowRecordRow.observed_at.asc())
                .all()
            )
            return [_record_from_row(row) for row in rows]

    def label_shadow_record(self, record_id: str, opportunity: bool, labeled_at: datetime) -> None:
        with self._session("label_shadow_record") as db:
            row = db.get(ShadowRecordRow, record_id)
            if row is None:
                return
            row.opportunity = bool(opportunity)
            row.labeled_at = to_db_time(labeled_at)

    def purge_shadow_records(self, observed_before: datetime) -> int:
        with self._session("purge_shadow_records") as db:
            return (
                db.query(ShadowRecordRow)
                .filter(ShadowRecordRow.observed_at < to_db_time(observed_before))
                .delete(synchronize_session=False)
            )

    def latest_shadow_observation(self, chain: str, token_address: str, observed_after: datetime) -> Optional[ShadowRecord]:
        with self._session("latest_shadow_observation") as db:
            row = (
                db.query(ShadowRecordRow)
                .filter(
                    ShadowRecordRow.chain == chain,
                    func.lower(ShadowRecordRow.token_address) == str(token_address or "").lower(),
                    ShadowRecordRow.observed_at > to_db_time(observed_after),
                )
                .order_by(ShadowRecordRow.observed_at.desc())
                .first()
            )
            return _record_from_row(row) if row else None

    def get_live_rules(self, chain: str) -> Optional[LiveRuleSet]:
        with self._session("get_live_rules") as db:
            row = db.get(LiveRulesRow, chain)
            return _live_from_row(row) if row else None

    def list_live_rules(self) -> list[LiveRuleSet]:
        with self._session("list_live_rules") as db:
            return [_live_from_row(row) for row in db.query(LiveRulesRow).order_by(LiveRulesRow.chain.asc()).all()]

    def swap_live_rules(self, rule_set: LiveRuleSet) -> None:
        with self._session("swap_live_rules") as db:
            _write_live_rules(db, rule_set)

    def get_setting(self, key: str) -> Any | None:
        with self._session("get_setting") as db:
            row = db.get(TuningSettingRow, key)
            return row.value if row else None

    def set_setting(self, key: str, value: Any) -> None:
        with self._session("set_setting") as db:
            row = db.get(TuningSettingRow, key)
            if row is None:
                row = TuningSettingRow(key=key)
                db.add(row)
            row.value = value
            row.updated_at = to_db_time(datetime.now(timezone.utc))

    def promote_proposal(self, proposal: Proposal, rule_set: LiveRuleSet) -> None:
        # Same transaction: the proposal never reads `applied` without its rules being live.
        with self._session("promote_proposal") as db:
            row = db.get(ProposalRow, proposal.id)
            if row is None:
                raise KeyError(proposal.id)
            _apply_proposal_state(row, proposal)
            _write_live_rules(db, rule_set)
