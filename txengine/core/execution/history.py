"""
Bounded transaction history.
"""

import json
import logging
from collections import deque
from typing import Deque, Iterator, List, Optional

from .models import TransactionEntry


logger = logging.getLogger(__name__)


class TransactionHistory:
    """Append-only ring of entries in submission order; the oldest is evicted first."""

    def __init__(self, max_size: int = 1000):
        if max_size < 1:
            raise ValueError("max_size must be >= 1")
        self.max_size = max_size
        self._entries: Deque[TransactionEntry] = deque(maxlen=max_size)

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[TransactionEntry]:
        return iter(self._entries)

    def append(self, entry: TransactionEntry) -> Optional[TransactionEntry]:
        """Record ``entry``; returns the evicted entry when the bound was hit."""
        evicted = self._entries[0] if len(self._entries) == self.max_size else None
        self._entries.append(entry)
        if evicted is not None:
            logger.debug(f"History full, evicted {evicted.id}")
        return evicted

    def recent(self, limit: Optional[int] = None) -> List[TransactionEntry]:
        """Most recent ``limit`` entries (oldest first), or all of them."""
        if limit is None:
            return list(self._entries)
        if limit <= 0:
            return []
        return list(self._entries)[-limit:]

    def find(self, tx_id: str) -> Optional[TransactionEntry]:
        return next((e for e in self._entries if e.id == tx_id), None)

    def find_by_hash(self, tx_hash: str) -> Optional[TransactionEntry]:
        target = tx_hash.lower()
        return next(
            (e for e in self._entries if e.hash is not None and e.hash.lower() == target),
            None,
        )

    def clear(self) -> None:
        self._entries.clear()

    def export(self) -> str:
        """Deterministic JSON for every retained entry."""
        return json.dumps([e.to_dict() for e in self._entries], indent=2, default=str)
