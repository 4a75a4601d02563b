"""Application configuration."""

import json
import os
from pathlib import Path
from typing import Any, Dict, List

from dotenv import load_dotenv


def _load_dotenv_safe(dotenv_path: str | None = None, *, override: bool = False) -> None:
    """Load dotenv using UTF-8-SIG so BOM-prefixed files don't break first key parsing."""
    try:
        load_dotenv(dotenv_path=dotenv_path, override=override, encoding="utf-8-sig")
    except TypeError:
        # Older python-dotenv versions may not expose the `encoding` argument.
        load_dotenv(dotenv_path=dotenv_path, override=override)


# Load base environment first, then optional per-instance override env file.
_load_dotenv_safe()
_TUNING_ENV_FILE = os.getenv("TUNING_ENV_FILE", "").strip()
if _TUNING_ENV_FILE:
    _tuning_env_path = Path(_TUNING_ENV_FILE).expanduser()
    if not _tuning_env_path.is_absolute():
        _tuning_env_path = (Path.cwd() / _tuning_env_path).resolve()
    if not _tuning_env_path.exists():
        raise FileNotFoundError(f"TUNING_ENV_FILE does not exist: {_tuning_env_path}")
    if not _tuning_env_path.is_file():
        raise IsADirectoryError(f"TUNING_ENV_FILE is not a file: {_tuning_env_path}")
    try:
        _load_dotenv_safe(str(_tuning_env_path), override=True)
    except (OSError, UnicodeError, ValueError) as exc:
        raise RuntimeError(f"Failed to load TUNING_ENV_FILE '{_tuning_env_path}': {exc}") from exc


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "y", "on")


def _parse_csv(raw: str) -> List[str]:
    return [item.strip() for item in str(raw or "").split(",") if item.strip()]


def _parse_grid(raw: str) -> Dict[str, Dict[str, float]]:
    text = str(raw or "").strip()
    if not text:
        return {}
    try:
        payload: Any = json.loads(text)
    except ValueError as exc:
        raise RuntimeError(f"TUNING_GRID_JSON is not valid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise RuntimeError("TUNING_GRID_JSON must be an object of {name: {min, max, step}}")
    out: Dict[str, Dict[str, float]] = {}
    for name, bounds in payload.items():
        if not isinstance(bounds, dict):
            raise RuntimeError(f"TUNING_GRID_JSON entry '{name}' must be an object")
        out[str(name)] = {key: float(bounds[key]) for key in ("min", "max", "step") if key in bounds}
    return out


DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///tuning.db")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_DIR = os.getenv("LOG_DIR", "logs")
APP_LOG_FILE = os.getenv("APP_LOG_FILE", os.path.join(LOG_DIR, "tuning.log"))
TUNING_EVENTS_LOG_FILE = os.getenv("TUNING_EVENTS_LOG_FILE", os.path.join(LOG_DIR, "tuning_events.jsonl")).strip()
REPORTS_DIR = os.getenv("REPORTS_DIR", "reports")

TUNING_CHAINS = _parse_csv(os.getenv("TUNING_CHAINS", "ethereum,bsc,polygon")) or ["ethereum"]
BACKTEST_LOOKBACK_HOURS = max(1.0, float(os.getenv("BACKTEST_LOOKBACK_HOURS", "48")))
BACKTEST_BUCKET_HOURS = max(0.25, float(os.getenv("BACKTEST_BUCKET_HOURS", "3")))
MAX_PROPOSALS_PER_CHAIN = max(1, int(os.getenv("MAX_PROPOSALS_PER_CHAIN", "10")))
CONTROLLER_TOP_PROPOSALS = max(1, int(os.getenv("CONTROLLER_TOP_PROPOSALS", "3")))

DEFAULT_GRID = {
    "SCORE_ALERT": {"min": 60.0, "max": 80.0, "step": 5.0},
    "SURGE15_MIN": {"min": 2.0, "max": 4.0, "step": 0.5},
    "IMBALANCE5_MIN": {"min": 0.25, "max": 0.6, "step": 0.05},
    "MIN_LIQ_ALERT": {"min": 12000.0, "max": 50000.0, "step": 5000.0},
}
TUNING_GRID = _parse_grid(os.getenv("TUNING_GRID_JSON", "")) or DEFAULT_GRID

DEFAULT_ALERT_RULES = {
    "SCORE_ALERT": float(os.getenv("DEFAULT_SCORE_ALERT", "70")),
    "SURGE15_MIN": float(os.getenv("DEFAULT_SURGE15_MIN", "2.5")),
    "IMBALANCE5_MIN": float(os.getenv("DEFAULT_IMBALANCE5_MIN", "0.35")),
    "MIN_LIQ_ALERT": float(os.getenv("DEFAULT_MIN_LIQ_ALERT", "25000")),
}

MAX_CONCURRENT_BACKTESTS = max(1, int(os.getenv("MAX_CONCURRENT_BACKTESTS", "2")))
CAPACITY_BACKOFF_SECONDS = max(1.0, float(os.getenv("CAPACITY_BACKOFF_SECONDS", "1800")))
PERSISTENCE_RETRY_SECONDS = max(1.0, float(os.getenv("PERSISTENCE_RETRY_SECONDS", "60")))
PERSISTENCE_RETRY_ATTEMPTS = max(1, int(os.getenv("PERSISTENCE_RETRY_ATTEMPTS", "5")))

AUTO_APPLY_ENABLED = _env_bool("AUTO_APPLY_ENABLED", "true")
AUTO_APPLY_THRESHOLD_PERCENT = max(0.0, float(os.getenv("AUTO_APPLY_THRESHOLD_PERCENT", "15")))
AUTO_APPLY_DELAY_SECONDS = max(0.0, float(os.getenv("AUTO_APPLY_DELAY_SECONDS", "3600")))
AUTO_APPLY_MIN_PRECISION = float(os.getenv("AUTO_APPLY_MIN_PRECISION", "0.5"))
AUTO_APPLY_MAX_ALERTS_PER_HOUR = float(os.getenv("AUTO_APPLY_MAX_ALERTS_PER_HOUR", "10"))
BASELINE_F1 = max(0.0, float(os.getenv("BASELINE_F1", "0.5")))
SHADOW_PROMOTION_MIN_F1 = float(os.getenv("SHADOW_PROMOTION_MIN_F1", "0.6"))

SHADOW_WINDOW_HOURS = max(0.1, float(os.getenv("SHADOW_WINDOW_HOURS", "24")))
SHADOW_RETENTION_HOURS = max(1.0, float(os.getenv("SHADOW_RETENTION_HOURS", "48")))
SHADOW_LABEL_DELAY_MINUTES = max(1.0, float(os.getenv("SHADOW_LABEL_DELAY_MINUTES", "60")))
SHADOW_REFRESH_SECONDS = max(1.0, float(os.getenv("SHADOW_REFRESH_SECONDS", "60")))
SHADOW_POSITIVE_PRICE_CHANGE = float(os.getenv("SHADOW_POSITIVE_PRICE_CHANGE", "0.10"))
SHADOW_POSITIVE_SCORE_GAIN = float(os.getenv("SHADOW_POSITIVE_SCORE_GAIN", "0.10"))

BACKTEST_TRIGGER = os.getenv("BACKTEST_TRIGGER", "daily@02:00")
REPORT_TRIGGER = os.getenv("REPORT_TRIGGER", "daily@08:00")
SHADOW_CLEANUP_TRIGGER = os.getenv("SHADOW_CLEANUP_TRIGGER", "every 6h")
AUTO_APPLY_CHECK_TRIGGER = os.getenv("AUTO_APPLY_CHECK_TRIGGER", "every 1h")

TELEGRAM_BOT_TOKEN = os.getenv("TELEGRAM_BOT_TOKEN", "")
TUNING_TELEGRAM_CHAT_IDS = [int(x) for x in _parse_csv(os.getenv("TUNING_TELEGRAM_CHAT_IDS", "")) if x.lstrip("-").isdigit()]
TUNING_NOTIFY_WEBHOOKS = _parse_csv(os.getenv("TUNING_NOTIFY_WEBHOOKS", ""))
NOTIFY_TIMEOUT_SECONDS = max(1.0, float(os.getenv("NOTIFY_TIMEOUT_SECONDS", "10")))
SIGNAL_POLL_SECONDS = max(0.5, float(os.getenv("SIGNAL_POLL_SECONDS", "15")))
