"""Value types shared by the optimizer, lifecycle, shadow validator and scheduler."""

from __future__ import annotations

import itertools
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterator, Mapping

from tuning.errors import InvalidGridError

# Grid parameter name -> SignalEvent field it thresholds.
PARAMETER_FIELDS: dict[str, str] = {
    "SCORE_ALERT": "score",
    "SURGE15_MIN": "surge_15min",
    "IMBALANCE5_MIN": "imbalance_5min",
    "MIN_LIQ_ALERT": "liquidity",
}

_VALUE_DECIMALS = 10


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_ts(raw: Any) -> datetime | None:
    if raw is None or raw == "":
        return None
    if isinstance(raw, datetime):
        return ensure_utc(raw)
    if isinstance(raw, (int, float)):
        return datetime.fromtimestamp(float(raw), tz=timezone.utc)
    text = str(raw).strip()
    if not text:
        return None
    return ensure_utc(datetime.fromisoformat(text.replace("Z", "+00:00")))


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


class ProposalStatus(str, Enum):
    PROPOSED = "proposed"
    SHADOW_TESTING = "shadow_testing"
    APPROVED = "approved"
    APPLIED = "applied"
    REJECTED = "rejected"
    FAILED = "failed"


class JobType(str, Enum):
    BACKTEST = "backtest"
    AUTO_APPLY = "auto_apply"


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


@dataclass(frozen=True)
class ParameterRange:
    min: float
    max: float
    step: float

    def __post_init__(self) -> None:
        for name in ("min", "max", "step"):
            value = getattr(self, name)
            if not isinstance(value, (int, float)) or not math.isfinite(float(value)):
                raise InvalidGridError(f"{name} must be a finite number, got {value!r}")
        if self.step <= 0:
            raise InvalidGridError(f"step must be > 0, got {self.step}")
        if self.min > self.max:
            raise InvalidGridError(f"min {self.min} is greater than max {self.max}")

    def count(self) -> int:
        return int(math.floor((self.max - self.min) / self.step + 1 + 1e-9))

    def values(self) -> list[float]:
        return [round(self.min + i * self.step, _VALUE_DECIMALS) for i in range(self.count())]

    def to_dict(self) -> dict[str, float]:
        return {"min": float(self.min), "max": float(self.max), "step": float(self.step)}


class ParameterGrid:
    """Named numeric ranges; enumerates configurations in a stable order."""

    def __init__(self, ranges: Mapping[str, ParameterRange]) -> None:
        if not ranges:
            raise InvalidGridError("grid must contain at least one parameter")
        self._ranges = {str(name): ranges[name] for name in sorted(ranges)}

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "ParameterGrid":
        ranges: dict[str, ParameterRange] = {}
        for name, bounds in (raw or {}).items():
            if isinstance(bounds, ParameterRange):
                ranges[str(name)] = bounds
                continue
            if not isinstance(bounds, Mapping):
                raise InvalidGridError(f"parameter {name} must map to {{min, max, step}}")
            missing = [key for key in ("min", "max", "step") if key not in bounds]
            if missing:
                raise InvalidGridError(f"parameter {name} is missing {', '.join(missing)}")
            try:
                ranges[str(name)] = ParameterRange(
                    min=float(bounds["min"]),
                    max=float(bounds["max"]),
                    step=float(bounds["step"]),
                )
            except (TypeError, ValueError) as exc:
                if isinstance(exc, InvalidGridError):
                    raise InvalidGridError(f"parameter {name}: {exc}") from exc
                raise InvalidGridError(f"parameter {name} has non-numeric bounds") from exc
        return cls(ranges)

    @property
    def names(self) -> list[str]:
        return list(self._ranges)

    def __getitem__(self, name: str) -> ParameterRange:
        return self._ranges[name]

    def __len__(self) -> int:
        return len(self._ranges)

    def total_configurations(self) -> int:
        total = 1
        for rng in self._ranges.values():
            total *= rng.count()
        return total

    def configurations(self) -> Iterator["Configuration"]:
        names = self.names
        axes = [self._ranges[name].values() for name in names]
        for combo in itertools.product(*axes):
            yield Configuration(tuple(zip(names, combo)))

    def to_dict(self) -> dict[str, dict[str, float]]:
        return {name: rng.to_dict() for name, rng in self._ranges.items()}


@dataclass(frozen=True)
class Configuration:
    values: tuple[tuple[str, float], ...]

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "Configuration":
        return cls(tuple(sorted((str(k), float(v)) for k, v in (raw or {}).items())))

    @property
    def names(self) -> list[str]:
        return [name for name, _ in self.values]

    def get(self, name: str, default: float | None = None) -> float | None:
        for key, value in self.values:
            if key == name:
                return value
        return default

    def __getitem__(self, name: str) -> float:
        value = self.get(name)
        if value is None:
            raise KeyError(name)
        return value

    def as_dict(self) -> dict[str, float]:
        return dict(self.values)

    def describe(self) -> str:
        return ",".join(f"{name}={value:g}" for name, value in self.values)


@dataclass(frozen=True)
class SignalEvent:
    token_address: str
    chain: str
    observed_at: datetime
    score: float = 0.0
    surge_15min: float = 0.0
    imbalance_5min: float = 0.0
    liquidity: float = 0.0
    price: float = 0.0
    outcome: str | None = None
    sustained_score: bool = False
    metrics: Mapping[str, float] = field(default_factory=dict)

    def metric(self, parameter: str) -> float | None:
        field_name = PARAMETER_FIELDS.get(parameter, parameter.lower())
        if field_name in self.metrics:
            return float(self.metrics[field_name])
        value = getattr(self, field_name, None)
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return None
        return float(value)

    def fires(self, rules: Configuration) -> bool:
        for name, threshold in rules.values:
            value = self.metric(name)
            if value is None or value < threshold:
                return False
        return True

    @property
    def is_opportunity(self) -> bool:
        return self.outcome == "positive" or bool(self.sustained_score)


@dataclass(frozen=True)
class PerformanceEvidence:
    precision: float
    recall: float
    f1: float
    alerts_per_hour: float
    true_positives: int = 0
    false_positives: int = 0
    false_negatives: int = 0

    @staticmethod
    def f1_score(precision: float, recall: float) -> float:
        denom = precision + recall
        return (2.0 * precision * recall / denom) if denom > 0 else 0.0

    @classmethod
    def from_counts(cls, tp: int, fp: int, fn: int, window_hours: float) -> "PerformanceEvidence":
        alerts = tp + fp
        opportunities = tp + fn
        precision = float(tp) / alerts if alerts > 0 else 0.0
        recall = float(tp) / opportunities if opportunities > 0 else 0.0
        return cls(
            precision=precision,
            recall=recall,
            f1=cls.f1_score(precision, recall),
            alerts_per_hour=float(alerts) / window_hours if window_hours > 0 else 0.0,
            true_positives=tp,
            false_positives=fp,
            false_negatives=fn,
        )

    @property
    def total_alerts(self) -> int:
        return self.true_positives + self.false_positives

    @property
    def total_opportunities(self) -> int:
        return self.true_positives + self.false_negatives

    def to_dict(self) -> dict[str, Any]:
        return {
            "precision": self.precision,
            "recall": self.recall,
            "f1": self.f1,
            "alerts_per_hour": self.alerts_per_hour,
            "true_positives": self.true_positives,
            "false_positives": self.false_positives,
            "false_negatives": self.false_negatives,
            "total_alerts": self.total_alerts,
            "total_opportunities": self.total_opportunities,
        }

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "PerformanceEvidence":
        return cls(
            precision=float(raw.get("precision", 0.0)),
            recall=float(raw.get("recall", 0.0)),
            f1=float(raw.get("f1", 0.0)),
            alerts_per_hour=float(raw.get("alerts_per_hour", 0.0)),
            true_positives=int(raw.get("true_positives", 0)),
            false_positives=int(raw.get("false_positives", 0)),
            false_negatives=int(raw.get("false_negatives", 0)),
        )


@dataclass(frozen=True)
class Proposal:
    id: str
    chain: str
    rules: Configuration
    evidence: PerformanceEvidence
    status: ProposalStatus
    created_at: datetime
    reason: str | None = None
    updated_at: datetime | None = None
    shadow_started_at: datetime | None = None
    approved_at: datetime | None = None
    applied_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "chain": self.chain,
            "rules": self.rules.as_dict(),
            "evidence": self.evidence.to_dict(),
            "status": self.status.value,
            "created_at": _iso(self.created_at),
            "reason": self.reason,
            "updated_at": _iso(self.updated_at),
            "shadow_started_at": _iso(self.shadow_started_at),
            "approved_at": _iso(self.approved_at),
            "applied_at": _iso(self.applied_at),
        }


@dataclass
class BacktestResult:
    chain: str
    total_configurations: int
    current_performance: PerformanceEvidence | None
    proposals: list[Proposal] = field(default_factory=list)
    error: str | None = None
    bucket_count: int = 0
    data_points: int = 0

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict[str, Any]:
        return {
            "chain": self.chain,
            "total_configurations": self.total_configurations,
            "current_performance": self.current_performance.to_dict() if self.current_performance else None,
            "proposals": [p.to_dict() for p in self.proposals],
            "error": self.error,
            "bucket_count": self.bucket_count,
            "data_points": self.data_points,
        }


def proportion_interval(proportion: float, n: int, z: float = 1.96) -> tuple[float, float]:
    """Normal-approximation interval for a proportion, clamped to [0, 1]; (0, 0) without samples."""
    if n <= 0:
        return (0.0, 0.0)
    margin = z * math.sqrt(max(0.0, proportion * (1.0 - proportion)) / n)
    return (max(0.0, proportion - margin), min(1.0, proportion + margin))


@dataclass(frozen=True)
class ShadowMetrics:
    proposal_id: str
    precision_estimate: float
    alerts_per_hour: float
    sample_size: int
    window_started_at: datetime
    chain: str = ""
    recall_estimate: float = 0.0
    f1_estimate: float = 0.0
    would_fire_count: int = 0
    true_positives: int = 0
    false_positives: int = 0
    false_negatives: int = 0
    computed_at: datetime | None = None
    frozen: bool = False

    @property
    def false_positive_rate(self) -> float:
        fired = self.true_positives + self.false_positives
        return self.false_positives / fired if fired else 0.0

    @property
    def false_negative_rate(self) -> float:
        opportunities = self.true_positives + self.false_negatives
        return self.false_negatives / opportunities if opportunities else 0.0

    def confidence_interval(self, z: float = 1.96) -> dict[str, tuple[float, float]]:
        return {
            "precision": proportion_interval(self.precision_estimate, self.true_positives + self.false_positives, z),
            "recall": proportion_interval(self.recall_estimate, self.true_positives + self.false_negatives, z),
        }

    def to_dict(self) -> dict[str, Any]:
        interval = self.confidence_interval()
        return {
            "proposal_id": self.proposal_id,
            "chain": self.chain,
            "precision_estimate": self.precision_estimate,
            "recall_estimate": self.recall_estimate,
            "f1_estimate": self.f1_estimate,
            "alerts_per_hour": self.alerts_per_hour,
            "sample_size": self.sample_size,
            "would_fire_count": self.would_fire_count,
            "true_positives": self.true_positives,
            "false_positives": self.false_positives,
            "false_negatives": self.false_negatives,
            "false_positive_rate": self.false_positive_rate,
            "false_negative_rate": self.false_negative_rate,
            "confidence_interval": {name: {"lower": lo, "upper": hi} for name, (lo, hi) in interval.items()},
            "window_started_at": _iso(self.window_started_at),
            "computed_at": _iso(self.computed_at),
            "frozen": self.frozen,
        }

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "ShadowMetrics":
        return cls(
            proposal_id=str(raw["proposal_id"]),
            precision_estimate=float(raw.get("precision_estimate", 0.0)),
            alerts_per_hour=float(raw.get("alerts_per_hour", 0.0)),
            sample_size=int(raw.get("sample_size", 0)),
            window_started_at=parse_ts(raw.get("window_started_at")) or utc_now(),
            chain=str(raw.get("chain", "")),
            recall_estimate=float(raw.get("recall_estimate", 0.0)),
            f1_estimate=float(raw.get("f1_estimate", 0.0)),
            would_fire_count=int(raw.get("would_fire_count", 0)),
            true_positives=int(raw.get("true_positives", 0)),
            false_positives=int(raw.get("false_positives", 0)),
            false_negatives=int(raw.get("false_negatives", 0)),
            computed_at=parse_ts(raw.get("computed_at")),
            frozen=bool(raw.get("frozen", False)),
        )


@dataclass
class ShadowRecord:
    id: str
    proposal_id: str
    chain: str
    token_address: str
    observed_at: datetime
    would_fire: bool
    entry_score: float = 0.0
    entry_price: float = 0.0
    opportunity: bool | None = None
    labeled_at: datetime | None = None


@dataclass
class ScheduledJob:
    id: str
    type: JobType
    status: JobStatus
    scheduled_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    attempts: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "status": self.status.value,
            "scheduled_at": _iso(self.scheduled_at),
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "error": self.error,
            "metadata": dict(self.metadata),
            "attempts": self.attempts,
        }


@dataclass(frozen=True)
class LiveRuleSet:
    chain: str
    rules: Configuration
    applied_at: datetime
    proposal_id: str | None = None
    performance: PerformanceEvidence | None = None
