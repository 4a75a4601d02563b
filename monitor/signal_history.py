"""Historical signal source backed by the `radar_scans` table."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from database.db import SessionLocal, from_db_time, to_db_time
from database.models import RadarScan
from tuning.errors import PersistenceError
from tuning.types import SignalEvent

logger = logging.getLogger(__name__)

POSITIVE_PRICE_CHANGE_1H = 0.10
NEGATIVE_PRICE_CHANGE_1H = -0.05
SUSTAINED_SCORE_RATIO = 0.9


def outcome_for(price_change_1h: Any) -> str | None:
    if price_change_1h is None:
        return None
    change = float(price_change_1h)
    if change > POSITIVE_PRICE_CHANGE_1H:
        return "positive"
    if change < NEGATIVE_PRICE_CHANGE_1H:
        return "negative"
    return "neutral"


def scans_to_events(rows: list[RadarScan]) -> list[SignalEvent]:
    """Rows must be ordered by scan time; `sustained_score` compares with the token's previous scan."""
    previous_score: dict[str, float] = {}
    events: list[SignalEvent] = []
    for row in rows:
        key = str(row.token_address or "").lower()
        score = float(row.score)
        prev = previous_score.get(key)
        previous_score[key] = score
        extra = {k: float(v) for k, v in (row.extra_metrics or {}).items() if isinstance(v, (int, float))}
        events.append(
            SignalEvent(
                token_address=row.token_address,
                chain=row.chain,
                observed_at=from_db_time(row.scanned_at),
                score=score,
                surge_15min=float(row.surge_15min),
                imbalance_5min=float(row.imbalance_5min),
                liquidity=float(row.liquidity),
                price=float(row.price or 0.0),
                outcome=outcome_for(row.price_change_1h),
                sustained_score=prev is not None and score >= prev * SUSTAINED_SCORE_RATIO,
                metrics=extra,
            )
        )
    return events


class SqlSignalHistory:
    def __init__(self, session_factory: sessionmaker | None = None) -> None:
        self._session_factory = session_factory or SessionLocal

    def _load(self, chain: str, start: datetime, end: datetime) -> list[SignalEvent]:
        db = self._session_factory()
        try:
            rows = (
                db.query(RadarScan)
                .filter(
                    RadarScan.chain == chain,
                    RadarScan.scanned_at >= to_db_time(start),
                    RadarScan.scanned_at < to_db_time(end),
                    RadarScan.score.is_not(None),
                    RadarScan.surge_15min.is_not(None),
                    RadarScan.imbalance_5min.is_not(None),
                    RadarScan.liquidity.is_not(None),
                )
                .order_by(RadarScan.scanned_at.asc(), RadarScan.id.asc())
                .all()
            )
            return scans_to_events(rows)
        except SQLAlchemyError as exc:
            raise PersistenceError(f"radar_scans read failed chain={chain}: {exc}") from exc
        finally:
            db.close()

    def latest_observation(self, chain: str, token_address: str, observed_after: datetime) -> SignalEvent | None:
        """Newest scored scan of the token after ``observed_after``; feeds shadow labeling."""
        db = self._session_factory()
        try:
            row = (
                db.query(RadarScan)
                .filter(
                    RadarScan.chain == chain,
                    func.lower(RadarScan.token_address) == str(token_address or "").lower(),
                    RadarScan.scanned_at > to_db_time(observed_after),
                    RadarScan.score.is_not(None),
                )
                .order_by(RadarScan.scanned_at.desc(), RadarScan.id.desc())
                .first()
            )
        except SQLAlchemyError as exc:
            raise PersistenceError(f"radar_scans lookup failed chain={chain} token={token_address}: {exc}") from exc
        finally:
            db.close()
        if row is None:
            return None
        return SignalEvent(
            token_address=row.token_address,
            chain=row.chain,
            observed_at=from_db_time(row.scanned_at),
            score=float(row.score),
            surge_15min=float(row.surge_15min or 0.0),
            imbalance_5min=float(row.imbalance_5min or 0.0),
            liquidity=float(row.liquidity or 0.0),
            price=float(row.price or 0.0),
        )

    async def fetch_signals(self, chain: str, start: datetime, end: datetime) -> list[SignalEvent]:
        events = await asyncio.to_thread(self._load, chain, start, end)
        logger.debug("SIGNAL_HISTORY chain=%s rows=%s start=%s end=%s", chain, len(events), start.isoformat(), end.isoformat())
        return events


def record_scan(db_session_factory: sessionmaker | None, event: SignalEvent, price_change_1h: float | None = None) -> None:
    """Persist one scoring pass; used by the monitoring pipeline and fixtures."""
    db = (db_session_factory or SessionLocal)()
    try:
        db.add(
            RadarScan(
                chain=event.chain,
                token_address=event.token_address,
                scanned_at=to_db_time(event.observed_at),
                score=event.score,
                surge_15min=event.surge_15min,
                imbalance_5min=event.imbalance_5min,
                liquidity=event.liquidity,
                price=event.price,
                price_change_1h=price_change_1h,
                extra_metrics=dict(event.metrics) or None,
            )
        )
        db.commit()
    finally:
        db.close()
