"""Window store interfaces.

The admission policy depends on this abstraction (not the concrete
implementation) so tests can substitute a store and the in-memory backend
stays swappable.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass


@dataclass(frozen=True)
class Verdict:
    """Result of a single window check.

    Attributes:
        admitted: Whether the event was admitted and recorded.
        limit: Max admitted events per window used for this check.
        remaining: Remaining admissions in the current window (0 when rejected).
        reset_at: Epoch milliseconds when the window next has room.
        retry_after_seconds: Seconds to wait before retrying (0 when admitted,
            at least 1 when rejected).
    """

    admitted: bool
    limit: int
    remaining: int
    reset_at: int
    retry_after_seconds: int


class AbstractWindowStore(ABC):
    """Interface for sliding-window stores."""

    @abstractmethod
    def check(self, key: str, window_ms: int, max_count: int) -> Verdict:
        """Admit or reject one event for the given partition key.

        Args:
            key: Composite partition key.
            window_ms: Sliding window length in milliseconds.
            max_count: Maximum admitted events per window.

        Returns:
            Verdict describing the decision and quota metadata.
        """
        raise NotImplementedError

    @abstractmethod
    def sweep(self) -> int:
        """Evict inactive partitions.

        Returns:
            Number of partitions removed.
        """
        raise NotImplementedError
