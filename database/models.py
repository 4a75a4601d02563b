"""SQLAlchemy models."""

from datetime import datetime

from sqlalchemy import Boolean, Column, DateTime, Float, Integer, JSON, String, Text
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class ProposalRow(Base):
    __tablename__ = "tuning_proposals"

    id = Column(String, primary_key=True)
    chain = Column(String, nullable=False, index=True)
    status = Column(String, nullable=False, index=True)  # proposed/shadow_testing/approved/applied/rejected/failed
    rules = Column(JSON, nullable=False)
    evidence = Column(JSON, nullable=False)
    reason = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)
    updated_at = Column(DateTime, nullable=True)
    shadow_started_at = Column(DateTime, nullable=True)
    approved_at = Column(DateTime, nullable=True)
    applied_at = Column(DateTime, nullable=True)


class ScheduledJobRow(Base):
    __tablename__ = "tuning_jobs"

    id = Column(String, primary_key=True)
    job_type = Column(String, nullable=False, index=True)
    status = Column(String, default="pending", nullable=False, index=True)
    scheduled_at = Column(DateTime, nullable=False)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    error = Column(Text, nullable=True)
    # `metadata` is reserved on declarative classes.
    job_metadata = Column("metadata", JSON, nullable=False, default=dict)
    attempts = Column(Integer, default=0, nullable=False)


class ShadowRecordRow(Base):
    __tablename__ = "shadow_records"

    id = Column(String, primary_key=True)
    proposal_id = Column(String, nullable=False, index=True)
    chain = Column(String, nullable=False)
    token_address = Column(String, nullable=False)
    observed_at = Column(DateTime, nullable=False, index=True)
    would_fire = Column(Boolean, default=False, nullable=False)
    entry_score = Column(Float, default=0.0, nullable=False)
    entry_price = Column(Float, default=0.0, nullable=False)
    opportunity = Column(Boolean, nullable=True)
    labeled_at = Column(DateTime, nullable=True)


class ShadowMetricsRow(Base):
    __tablename__ = "shadow_metrics"

    proposal_id = Column(String, primary_key=True)
    chain = Column(String, nullable=False, default="")
    precision_estimate = Column(Float, default=0.0, nullable=False)
    recall_estimate = Column(Float, default=0.0, nullable=False)
    f1_estimate = Column(Float, default=0.0, nullable=False)
    alerts_per_hour = Column(Float, default=0.0, nullable=False)
    sample_size = Column(Integer, default=0, nullable=False)
    would_fire_count = Column(Integer, default=0, nullable=False)
    true_positives = Column(Integer, default=0, nullable=False)
    false_positives = Column(Integer, default=0, nullable=False)
    false_negatives = Column(Integer, default=0, nullable=False)
    window_started_at = Column(DateTime, nullable=False)
    computed_at = Column(DateTime, nullable=True)
    frozen = Column(Boolean, default=False, nullable=False)


class LiveRulesRow(Base):
    __tablename__ = "live_rules"

    chain = Column(String, primary_key=True)
    rules = Column(JSON, nullable=False)
    applied_at = Column(DateTime, nullable=False)
    proposal_id = Column(String, nullable=True)
    performance = Column(JSON, nullable=True)


class TuningSettingRow(Base):
    """Runtime switches flipped by operators (e.g. the auto-apply flag)."""

    __tablename__ = "tuning_settings"

    key = Column(String, primary_key=True)
    value = Column(JSON, nullable=True)
    updated_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class RadarScan(Base):
    """One scoring pass over one token, written by the monitoring pipeline."""

    __tablename__ = "radar_scans"

    id = Column(Integer, primary_key=True)
    chain = Column(String, nullable=False, index=True)
    token_address = Column(String, nullable=False, index=True)
    scanned_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)
    score = Column(Float, nullable=True)
    surge_15min = Column(Float, nullable=True)
    imbalance_5min = Column(Float, nullable=True)
    liquidity = Column(Float, nullable=True)
    price = Column(Float, nullable=True)
    price_change_1h = Column(Float, nullable=True)
    extra_metrics = Column(JSON, nullable=True)
