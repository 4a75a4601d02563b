"""Stable row contracts for the tuning events log (JSONL)."""

from __future__ import annotations

import hashlib
import logging
import re
from datetime import datetime, timezone
from typing import Any

from utils.state_file import append_jsonl_locked

logger = logging.getLogger(__name__)

LOG_SCHEMA_VERSION = "2026-10-01.v1"

SCHEMA_JOB_EVENT = "tuning_job_event.v1"
SCHEMA_PROPOSAL_EVENT = "tuning_proposal_event.v1"

_STAGE_PREFIX: dict[str, str] = {
    "schedule": "SCHED",
    "admission": "SCHED",
    "backtest": "BACKTEST",
    "shadow": "SHADOW",
    "auto_apply": "APPLY",
    "proposal": "PROPOSAL",
    "notify": "NOTIFY",
    "unknown": "UNKNOWN",
}

_REASON_CODE_OVERRIDES: dict[str, str] = {
    "capacity": "SCHED_CAPACITY_DEFERRED",
    "orphan_requeued": "SCHED_ORPHAN_REQUEUED",
    "persistence_retry": "SCHED_PERSISTENCE_RETRY",
    "status_write_abandoned": "SCHED_STATUS_WRITE_ABANDONED",
    "auto_apply_disabled": "APPLY_DISABLED",
    "evidence_guard": "APPLY_EVIDENCE_GUARD",
    "all_chains_failed": "BACKTEST_ALL_CHAINS_FAILED",
    "optimizer_error": "BACKTEST_OPTIMIZER_ERROR",
    "below_threshold": "APPLY_BELOW_THRESHOLD",
    "shadow_guard": "APPLY_SHADOW_GUARD",
    "status_changed": "APPLY_STATUS_CHANGED",
    "already_applied": "APPLY_ALREADY_APPLIED",
    "promotion_failed": "APPLY_PROMOTION_FAILED",
}

REASON_CODE_TAXONOMY: dict[str, dict[str, str]] = {
    "SCHED_CAPACITY_DEFERRED": {"severity": "INFO", "category": "schedule", "title": "Backtest deferred at capacity"},
    "SCHED_ORPHAN_REQUEUED": {"severity": "WARN", "category": "schedule", "title": "Orphaned job re-queued"},
    "SCHED_PERSISTENCE_RETRY": {"severity": "WARN", "category": "schedule", "title": "Job status write failed, retry armed"},
    "SCHED_STATUS_WRITE_ABANDONED": {"severity": "ERROR", "category": "schedule", "title": "Terminal job status not persisted"},
    "APPLY_DISABLED": {"severity": "INFO", "category": "apply", "title": "Auto-apply switched off"},
    "APPLY_EVIDENCE_GUARD": {"severity": "INFO", "category": "apply", "title": "Backtest evidence below quality bar"},
    "BACKTEST_ALL_CHAINS_FAILED": {"severity": "ERROR", "category": "backtest", "title": "Every chain failed"},
    "BACKTEST_OPTIMIZER_ERROR": {"severity": "ERROR", "category": "backtest", "title": "Optimizer raised"},
    "APPLY_BELOW_THRESHOLD": {"severity": "INFO", "category": "apply", "title": "Improvement below threshold"},
    "APPLY_SHADOW_GUARD": {"severity": "WARN", "category": "apply", "title": "Shadow quality guard failed"},
    "APPLY_STATUS_CHANGED": {"severity": "WARN", "category": "apply", "title": "Proposal left eligible status"},
    "APPLY_ALREADY_APPLIED": {"severity": "INFO", "category": "apply", "title": "Proposal already applied"},
    "APPLY_PROMOTION_FAILED": {"severity": "ERROR", "category": "apply", "title": "Live rule swap failed"},
}


def _normalize_reason_text(value: Any) -> str:
    text = str(value or "").strip().lower()
    text = re.sub(r"[^a-z0-9]+", "_", text)
    return re.sub(r"_+", "_", text).strip("_")


def _sanitize_code_token(value: str) -> str:
    text = re.sub(r"[^A-Z0-9]+", "_", str(value or "").strip().upper())
    text = re.sub(r"_+", "_", text).strip("_")
    return text or "UNKNOWN"


def reason_code_for_event(*, reason: Any, stage: Any = "", status: Any = "") -> str:
    normalized = _normalize_reason_text(reason)
    prefix = _STAGE_PREFIX.get(_normalize_reason_text(stage) or "unknown", "UNKNOWN")
    if not normalized:
        normalized_status = _normalize_reason_text(status)
        return f"{prefix}_{_sanitize_code_token(normalized_status)}" if normalized_status else "UNKNOWN"
    override = _REASON_CODE_OVERRIDES.get(normalized)
    if override:
        return override
    return f"{prefix}_{_sanitize_code_token(normalized)}"


def reason_code_meta(code: str) -> dict[str, str]:
    key = _sanitize_code_token(code)
    if key in REASON_CODE_TAXONOMY:
        return dict(REASON_CODE_TAXONOMY[key])
    return {"severity": "INFO", "category": "unknown", "title": key.replace("_", " ").title()}


def _event_id(payload: dict[str, Any]) -> str:
    seed = "|".join(
        str(payload.get(k, "") or "")
        for k in ("schema_name", "job_id", "proposal_id", "stage", "status", "reason", "ts")
    )
    return "evt_" + hashlib.sha1(seed.encode("utf-8", errors="ignore")).hexdigest()[:20]


def _stamp(event: dict[str, Any], *, schema_name: str) -> dict[str, Any]:
    payload = dict(event or {})
    raw_ts = payload.get("ts")
    if isinstance(raw_ts, (int, float)):
        ts = float(raw_ts)
    elif isinstance(raw_ts, datetime):
        ts = raw_ts.timestamp()
    else:
        ts = datetime.now(timezone.utc).timestamp()
    payload["ts"] = ts
    payload["timestamp"] = datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()
    payload.setdefault("schema_version", LOG_SCHEMA_VERSION)
    payload.setdefault("schema_name", schema_name)
    payload["stage"] = str(payload.get("stage", "unknown") or "unknown")
    payload["status"] = str(payload.get("status", "") or "")
    payload["reason"] = str(payload.get("reason", "") or "")
    payload["reason_code"] = str(
        payload.get("reason_code", "")
        or reason_code_for_event(reason=payload["reason"], stage=payload["stage"], status=payload["status"])
    ).upper()
    meta = reason_code_meta(payload["reason_code"])
    payload["reason_severity"] = meta["severity"]
    payload["reason_category"] = meta["category"]
    payload["event_id"] = _event_id(payload)
    return payload


def job_event(event: dict[str, Any]) -> dict[str, Any]:
    payload = _stamp(event, schema_name=SCHEMA_JOB_EVENT)
    payload["job_id"] = str(payload.get("job_id", "") or "")
    payload["job_type"] = str(payload.get("job_type", "") or "")
    payload["attempts"] = int(payload.get("attempts", 0) or 0)
    return payload


def proposal_event(event: dict[str, Any]) -> dict[str, Any]:
    payload = _stamp({"stage": "proposal", **(event or {})}, schema_name=SCHEMA_PROPOSAL_EVENT)
    payload["proposal_id"] = str(payload.get("proposal_id", "") or "")
    payload["chain"] = str(payload.get("chain", "") or "")
    return payload


class TuningEventLog:
    """Appends contract rows to a JSONL file; disabled when no path is configured."""

    def __init__(self, path: str | None) -> None:
        self.path = str(path or "").strip() or None

    def emit(self, row: dict[str, Any]) -> None:
        if not self.path:
            return
        try:
            append_jsonl_locked(self.path, row)
        except Exception as exc:
            logger.warning("TUNING_EVENT_WRITE_FAILED path=%s err=%s", self.path, exc)

    def job(self, **fields: Any) -> None:
        self.emit(job_event(fields))

    def proposal(self, **fields: Any) -> None:
        self.emit(proposal_event(fields))
