"""
Attempt Tracker - Tracks the attempts of one read/write transaction
"""

from typing import Any, Dict, List, Optional
from datetime import datetime, timezone
from enum import Enum


class AttemptState(Enum):
    """Attempt states"""
    ACTIVE = "ACTIVE"
    ABORTED = "ABORTED"
    COMMITTED = "COMMITTED"
    FAILED = "FAILED"


class Attempt:
    """One execution of a transaction body"""

    def __init__(self, index: int):
        self.index = index
        self.state = AttemptState.ACTIVE
        self.transaction_id: Optional[bytes] = None
        self.mutations: List[Any] = []
        self.started_at = datetime.now(timezone.utc)
        self.completed_at: Optional[datetime] = None
        self.commit_timestamp: Optional[datetime] = None
        self.error_message: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.state == AttemptState.ACTIVE

    def buffer(self, mutations: List[Any]) -> None:
        """Buffer mutations to be sent with Commit"""
        if not self.is_active:
            raise ValueError(f"Attempt {self.index} is {self.state.value}; cannot buffer mutations")
        self.mutations.extend(mutations)

    def discard(self, error: Optional[BaseException] = None) -> None:
        """Drop buffered mutations and invalidate the transaction handle"""
        self.mutations = []
        self.transaction_id = None
        self._complete(AttemptState.ABORTED, error)

    def fail(self, error: BaseException) -> None:
        self.mutations = []
        self._complete(AttemptState.FAILED, error)

    def commit(self, commit_timestamp: datetime) -> None:
        self.commit_timestamp = commit_timestamp
        self._complete(AttemptState.COMMITTED)

    def _complete(self, state: AttemptState, error: Optional[BaseException] = None) -> None:
        self.state = state
        self.completed_at = datetime.now(timezone.utc)
        if error is not None:
            self.error_message = str(error)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary"""
        return {
            'index': self.index,
            'state': self.state.value,
            'transaction_id': self.transaction_id.hex() if self.transaction_id else None,
            'mutation_count': len(self.mutations),
            'started_at': self.started_at.isoformat(),
            'completed_at': self.completed_at.isoformat() if self.completed_at else None,
            'commit_timestamp': self.commit_timestamp.isoformat() if self.commit_timestamp else None,
            'error_message': self.error_message
        }


class AttemptTracker:
    """Keeps the attempt history of one logical transaction"""

    def __init__(self):
        self.attempts: List[Attempt] = []

    def new_attempt(self) -> Attempt:
        """
        Start the next attempt

        Raises:
            ValueError: If the previous attempt was not discarded or completed
        """
        if self.attempts and self.attempts[-1].is_active:
            raise ValueError(f"Attempt {self.attempts[-1].index} is still active")

        attempt = Attempt(index=len(self.attempts))
        self.attempts.append(attempt)
        return attempt

    @property
    def current(self) -> Optional[Attempt]:
        return self.attempts[-1] if self.attempts else None

    @property
    def count(self) -> int:
        return len(self.attempts)

    def history(self) -> List[Dict[str, Any]]:
        return [attempt.to_dict() for attempt in self.attempts]
