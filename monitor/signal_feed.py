"""In-process live signal stream: producers publish, shadow validation subscribes."""

from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator

from sqlalchemy import func

from database.db import SessionLocal
from database.models import RadarScan
from monitor.signal_history import scans_to_events
from tuning.types import SignalEvent

logger = logging.getLogger(__name__)


class QueueSignalStream:
    def __init__(self, maxsize: int = 10000) -> None:
        self.maxsize = max(1, int(maxsize))
        self._subscribers: list[asyncio.Queue] = []
        self.dropped = 0

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def publish(self, event: SignalEvent) -> int:
        """Fan one event out to every subscriber; a full queue drops its oldest item."""
        for queue in self._subscribers:
            if queue.full():
                try:
                    queue.get_nowait()
                    self.dropped += 1
                except asyncio.QueueEmpty:
                    pass
            queue.put_nowait(event)
        return len(self._subscribers)

    async def subscribe(self) -> AsyncIterator[SignalEvent]:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.maxsize)
        self._subscribers.append(queue)
        logger.debug("Signal feed subscriber added total=%s", len(self._subscribers))
        try:
            while True:
                yield await queue.get()
        finally:
            self._subscribers.remove(queue)


class RadarScanPoller:
    """Tails new `radar_scans` rows and publishes them to a stream."""

    def __init__(self, stream: QueueSignalStream, session_factory=None, interval_seconds: float = 15.0) -> None:
        self.stream = stream
        self._session_factory = session_factory or SessionLocal
        self.interval_seconds = max(0.5, float(interval_seconds))
        self.last_id: int | None = None
        self._task: asyncio.Task | None = None

    def _fetch_new(self) -> list[SignalEvent]:
        db = self._session_factory()
        try:
            if self.last_id is None:
                # Start at the tail: history belongs to backtests, not shadow validation.
                self.last_id = int(db.query(func.max(RadarScan.id)).scalar() or 0)
                return []
            rows = (
                db.query(RadarScan)
                .filter(
                    RadarScan.id > self.last_id,
                    RadarScan.score.is_not(None),
                    RadarScan.surge_15min.is_not(None),
                    RadarScan.imbalance_5min.is_not(None),
                    RadarScan.liquidity.is_not(None),
                )
                .order_by(RadarScan.id.asc())
                .all()
            )
            if rows:
                self.last_id = int(rows[-1].id)
            return scans_to_events(rows)
        finally:
            db.close()

    async def poll_once(self) -> int:
        events = await asyncio.to_thread(self._fetch_new)
        for event in events:
            self.stream.publish(event)
        return len(events)

    async def _loop(self) -> None:
        while True:
            try:
                published = await self.poll_once()
                if published:
                    logger.debug("RADAR_POLL published=%s last_id=%s", published, self.last_id)
            except Exception as exc:
                logger.warning("Radar scan poll failed: %s", exc)
            await asyncio.sleep(self.interval_seconds)

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self._loop(), name="radar-poller")

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
