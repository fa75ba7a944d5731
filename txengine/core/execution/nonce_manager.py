"""
Nonce management for sequential transactions.

Tracks the next nonce per sender and reconciles it against the chain's
pending-inclusive transaction count, so the engine never hands out a nonce
the chain has already seen nor one it has already handed out.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, Optional

from .errors import ManagerNotInitializedError
from .models import ChainProvider


logger = logging.getLogger(__name__)


@dataclass
class NonceDesync:
    """Reported when the chain nonce runs far ahead of the tracked one."""
    address: str
    tracked_nonce: int
    on_chain_nonce: int
    detected_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def drift(self) -> int:
        return self.on_chain_nonce - self.tracked_nonce


DesyncCallback = Callable[[NonceDesync], Optional[Awaitable[None]]]


class NonceManager:
    """
    Per-sender nonce tracker.

    Features:
    - Never repeats a nonce for a sender, even when the chain keeps
      reporting the same pending count
    - Follows the chain upward when transactions were sent elsewhere
    - Falls back to the tracked value when the provider is unreachable
    - Serialised by a single lock shared by all senders
    """

    def __init__(
        self,
        provider: Optional[ChainProvider] = None,
        drift_threshold: int = 10,
        on_desync: Optional[DesyncCallback] = None,
    ):
        self.provider = provider
        self.drift_threshold = drift_threshold
        self._on_desync = on_desync
        self._tracked: Dict[str, int] = {}  # key: lower-cased address
        self._lock = asyncio.Lock()

    @staticmethod
    def _get_key(address: str) -> str:
        return address.lower()

    async def _fetch_on_chain_nonce(self, address: str) -> int:
        if self.provider is None:
            raise ManagerNotInitializedError("Provider not initialized")
        return int(await self.provider.get_transaction_count(address, "pending"))

    async def get_next_nonce(self, address: str) -> int:
        """
        Reserve and return the next nonce for ``address``.

        Returns max(tracked, on-chain) and advances the tracked value past it.
        If the chain cannot be queried the tracked value is used; with no
        tracked value the provider error propagates.
        """
        key = self._get_key(address)

        async with self._lock:
            try:
                on_chain_nonce = await self._fetch_on_chain_nonce(address)
            except Exception as e:
                if key not in self._tracked:
                    logger.error(f"Failed to get nonce for {address}: {e}")
                    raise
                nonce = self._tracked[key]
                self._tracked[key] = nonce + 1
                logger.warning(
                    f"Nonce query failed for {address} ({e}); using tracked nonce {nonce}"
                )
                return nonce

            tracked = self._tracked.get(key)
            nonce = on_chain_nonce if tracked is None else max(tracked, on_chain_nonce)
            self._tracked[key] = nonce + 1

            logger.debug(f"Allocated nonce {nonce} for {address} (chain={on_chain_nonce})")
            return nonce

    async def sync_with_chain(self, address: str) -> Optional[int]:
        """
        Reconcile the tracked nonce with the chain without allocating one.

        Returns the on-chain pending nonce, or None if the provider failed.
        """
        key = self._get_key(address)
        desync: Optional[NonceDesync] = None

        async with self._lock:
            try:
                on_chain_nonce = await self._fetch_on_chain_nonce(address)
            except Exception as e:
                logger.error(f"Failed to sync nonce for {address}: {e}")
                return None

            tracked = self._tracked.get(key, 0)
            if on_chain_nonce > tracked + self.drift_threshold:
                desync = NonceDesync(
                    address=address,
                    tracked_nonce=tracked,
                    on_chain_nonce=on_chain_nonce,
                )
                logger.warning(
                    f"Nonce desync detected for {address}, resetting tracker "
                    f"(tracked={tracked}, chain={on_chain_nonce})"
                )
                self._tracked[key] = on_chain_nonce
            elif on_chain_nonce > tracked:
                self._tracked[key] = on_chain_nonce

        if desync is not None and self._on_desync is not None:
            result = self._on_desync(desync)
            if asyncio.iscoroutine(result):
                await result

        return on_chain_nonce

    async def record_nonce(self, address: str, nonce: int) -> int:
        """Note that ``nonce`` was used by ``address``; tracked value never moves backwards."""
        key = self._get_key(address)
        async with self._lock:
            next_nonce = max(self._tracked.get(key, 0), nonce + 1)
            self._tracked[key] = next_nonce
            return next_nonce

    def get_tracked(self, address: str) -> Optional[int]:
        """Next nonce the tracker would hand out before consulting the chain."""
        return self._tracked.get(self._get_key(address))

    async def clear_state(self, address: str) -> None:
        async with self._lock:
            self._tracked.pop(self._get_key(address), None)

    async def reset(self) -> None:
        """Forget every sender; used when the active signer changes.

        Waits for an allocation that is mid-flight so its result cannot land
        after the reset.
        """
        async with self._lock:
            self._tracked.clear()
