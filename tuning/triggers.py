"""Recurring trigger specifications.

Two forms are understood:

* ``daily@HH:MM``: once a day at the given UTC wall-clock time.
* ``every <n><unit>``: fixed interval, unit one of ``s``, ``m``, ``h``;
  fires are aligned to multiples of the interval since the epoch.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from tuning.types import ensure_utc

_DAILY_RE = re.compile(r"^daily@(\d{1,2}):(\d{2})$")
_EVERY_RE = re.compile(r"^every\s+(\d+(?:\.\d+)?)\s*([smh])$")
_UNIT_SECONDS = {"s": 1, "m": 60, "h": 3600}
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass(frozen=True)
class RecurringTrigger:
    name: str
    spec: str
    daily_at: tuple[int, int] | None = None
    interval_seconds: float | None = None

    @classmethod
    def parse(cls, name: str, spec: str) -> "RecurringTrigger":
        text = str(spec or "").strip().lower()
        match = _DAILY_RE.match(text)
        if match:
            hour, minute = int(match.group(1)), int(match.group(2))
            if hour > 23 or minute > 59:
                raise ValueError(f"{name}: invalid time of day in {spec!r}")
            return cls(name=name, spec=text, daily_at=(hour, minute))
        match = _EVERY_RE.match(text)
        if match:
            seconds = float(match.group(1)) * _UNIT_SECONDS[match.group(2)]
            if seconds <= 0:
                raise ValueError(f"{name}: interval must be positive in {spec!r}")
            return cls(name=name, spec=text, interval_seconds=seconds)
        raise ValueError(f"{name}: unsupported trigger {spec!r} (use daily@HH:MM or every <n>s|m|h)")

    def next_fire(self, now: datetime) -> datetime:
        """First fire time strictly after ``now``."""
        now = ensure_utc(now)
        if self.daily_at is not None:
            hour, minute = self.daily_at
            candidate = now.replace(hour=hour, minute=minute, second=0, microsecond=0)
            if candidate <= now:
                candidate += timedelta(days=1)
            return candidate
        step = float(self.interval_seconds or 0)
        elapsed = (now - _EPOCH).total_seconds()
        ticks = int(elapsed // step) + 1
        return _EPOCH + timedelta(seconds=ticks * step)

    def seconds_until_next(self, now: datetime) -> float:
        now = ensure_utc(now)
        return max(0.0, (self.next_fire(now) - now).total_seconds())
