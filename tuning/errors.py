"""Error kinds raised by the tuning engine."""

from __future__ import annotations


class TuningError(RuntimeError):
    """Base class for tuning engine failures."""


class NotFoundError(TuningError):
    def __init__(self, kind: str, item_id: str) -> None:
        super().__init__(f"{kind} not found: {item_id}")
        self.kind = kind
        self.item_id = item_id


class InvalidTransitionError(TuningError):
    def __init__(self, proposal_id: str, current: str, requested: str) -> None:
        super().__init__(f"proposal {proposal_id} cannot move from {current} to {requested}")
        self.proposal_id = proposal_id
        self.current = current
        self.requested = requested


class InsufficientEvidenceError(TuningError):
    """Promotion attempted without clearing the quality or improvement guard."""


class OptimizerFailure(TuningError):
    def __init__(self, chain: str, message: str) -> None:
        super().__init__(f"optimizer failed for chain={chain}: {message}")
        self.chain = chain


class CapacityExceeded(TuningError):
    """Backtest admission refused; the job is deferred, never dropped."""


class PersistenceError(TuningError):
    """Store write or read failed."""


class InvalidGridError(TuningError, ValueError):
    """Parameter grid failed validation."""
