"""
Transaction manager.

Facade over nonce tracking, the sequential processing queue and the bounded
history. Callers hand over transactions that a wallet has already broadcast;
the manager tracks them until a receipt arrives or retries run out.
"""

from typing import Any, Awaitable, List, Mapping, Optional

import structlog

from txengine.core.recovery.errors import classify
from txengine.services.error_tracking import ErrorTracker, LoggingErrorTracker, should_report

from .errors import ManagerNotInitializedError, QueueFullError
from .history import TransactionHistory
from .models import (
    ChainProvider,
    ManagerConfig,
    TransactionEntry,
    TransactionHandle,
    TransactionStatus,
)
from .nonce_manager import NonceDesync, NonceManager
from .queue import ProcessingQueue
from .state_machine import TransactionStateMachine


logger = structlog.stdlib.get_logger(__name__)

COMPONENT = "transactionManager"


class TransactionManager:
    """
    Tracks submitted transactions for one signer.

    Usage:
        manager = TransactionManager(config=ManagerConfig.from_settings())
        manager.init(provider, signer_address)

        entry = await manager.add_transaction(wallet.send(tx), {"method": "transfer"})
        ...
        await manager.dispose()

    Processing failures never propagate to the caller of add_transaction;
    poll get_transaction / get_pending_transactions or read the history.
    """

    def __init__(
        self,
        config: Optional[ManagerConfig] = None,
        error_tracker: Optional[ErrorTracker] = None,
        queue: Optional[ProcessingQueue] = None,
    ):
        self.config = config or ManagerConfig.from_settings()
        self.error_tracker = error_tracker or LoggingErrorTracker()
        self.provider: Optional[ChainProvider] = None
        self.signer_address: Optional[str] = None

        self.state_machine = TransactionStateMachine()
        self.nonce_manager = NonceManager(
            drift_threshold=self.config.nonce_drift_threshold,
            on_desync=self._report_desync,
        )
        self.history = TransactionHistory(max_size=self.config.max_history_size)
        self.queue = queue or ProcessingQueue(
            config=self.config,
            state_machine=self.state_machine,
            on_settled=self._on_settled,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def init(self, provider: ChainProvider, signer_address: Optional[str]) -> None:
        """Attach the chain provider and the active signer."""
        self.provider = provider
        self.signer_address = signer_address
        self.nonce_manager.provider = provider
        logger.info("transaction_manager_initialized", address=signer_address)

    async def update_provider(self, provider: ChainProvider, signer_address: Optional[str]) -> None:
        """
        Swap provider/signer. A different account resets all nonce tracking;
        the same account is just re-synced with the chain.
        """
        old_address = self.signer_address
        self.provider = provider
        self.signer_address = signer_address
        self.nonce_manager.provider = provider

        if signer_address:
            if old_address is None or signer_address.lower() != old_address.lower():
                await self.nonce_manager.reset()
            await self.nonce_manager.sync_with_chain(signer_address)

        logger.info("transaction_manager_provider_updated", address=signer_address)

    async def dispose(self) -> None:
        """Stop the worker and drop everything still queued."""
        await self.queue.stop()
        self.clear_queue()
        await self.nonce_manager.reset()
        self.provider = None
        self.signer_address = None
        logger.info("transaction_manager_disposed")

    @property
    def is_processing(self) -> bool:
        return self.queue.is_running

    async def wait_idle(self) -> None:
        await self.queue.wait_idle()

    # ------------------------------------------------------------------
    # Nonces
    # ------------------------------------------------------------------

    async def get_next_nonce(self, address: Optional[str] = None) -> int:
        address = address or self._require_signer()
        return await self.nonce_manager.get_next_nonce(address)

    async def sync_nonce(self, address: Optional[str] = None) -> Optional[int]:
        address = address or self.signer_address
        if not address or self.provider is None:
            return None
        return await self.nonce_manager.sync_with_chain(address)

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    async def add_transaction(
        self,
        pending: Awaitable[TransactionHandle],
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> TransactionEntry:
        """
        Await the caller's pending transaction and start tracking it.

        Returns immediately after enqueueing; the entry is usually still
        pending. If ``pending`` raises, no entry is created and the error
        propagates (after being reported unless the user rejected it).
        """
        signer = self._require_signer()
        metadata = dict(metadata or {})

        try:
            handle = await pending
        except Exception as e:
            logger.error(
                "add_transaction_failed",
                error=str(e),
                category=classify(e).value,
                method=metadata.get("method"),
            )
            if should_report(e):
                self.error_tracker.capture_exception(
                    e,
                    tags={"component": COMPONENT, "errorType": classify(e).value},
                    extra={"metadata": metadata},
                )
            raise

        entry = TransactionEntry.from_handle(handle, {**metadata, "from": signer})
        try:
            self.queue.enqueue(entry)
        except QueueFullError as e:
            # The transaction is already on the wire; keep its hash in the report
            logger.error("transaction_not_tracked", error=str(e), hash=entry.hash, nonce=entry.nonce)
            self.error_tracker.capture_exception(
                e,
                tags={"component": COMPONENT, "errorType": classify(e).value},
                extra={"hash": entry.hash, "nonce": entry.nonce, "metadata": metadata},
            )
            raise

        if entry.nonce is not None:
            await self.nonce_manager.record_nonce(signer, entry.nonce)

        evicted = self.history.append(entry)
        if evicted is not None and evicted.is_active:
            logger.warning("active_transaction_evicted_from_history", evicted_id=evicted.id)

        logger.info(
            "transaction_added",
            id=entry.id,
            hash=entry.hash,
            nonce=entry.nonce,
            method=entry.metadata.get("method"),
        )

        self.queue.drain()
        return entry

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_pending_transactions(self) -> List[TransactionEntry]:
        """Pending or submitted entries, in queue order."""
        return [e for e in self.queue if e.is_active]

    def get_history(self, limit: Optional[int] = None) -> List[TransactionEntry]:
        return self.history.recent(limit)

    def get_transaction(self, tx_id: str) -> Optional[TransactionEntry]:
        return self.history.find(tx_id) or self.queue.find(tx_id)

    def get_transaction_by_hash(self, tx_hash: str) -> Optional[TransactionEntry]:
        return self.history.find_by_hash(tx_hash)

    def export_history(self) -> str:
        return self.history.export()

    # ------------------------------------------------------------------
    # Cancellation / housekeeping
    # ------------------------------------------------------------------

    def cancel_transaction(self, tx_id: str) -> bool:
        """
        Stop tracking a queued transaction. Nothing is sent to the chain, so a
        broadcast transaction may still be mined.
        """
        entry = self.queue.find(tx_id)
        if entry is None or not self.state_machine.cancel(entry):
            return False
        self.queue.remove(entry)
        logger.info("transaction_cancelled", id=entry.id, hash=entry.hash)
        return True

    def clear_queue(self) -> int:
        """Cancel every queued entry; returns how many were dropped."""
        removed = self.queue.clear()
        for entry in removed:
            self.state_machine.cancel(entry)
        logger.info("transaction_queue_cleared", removed=len(removed))
        return len(removed)

    def clear_history(self) -> None:
        self.history.clear()
        logger.info("transaction_history_cleared")

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _require_signer(self) -> str:
        if not self.signer_address:
            raise ManagerNotInitializedError("Signer not initialized")
        return self.signer_address

    def _on_settled(self, entry: TransactionEntry, error: Optional[BaseException]) -> None:
        if error is None or entry.status is not TransactionStatus.FAILED or not should_report(error):
            return
        self.error_tracker.capture_exception(
            error,
            tags={
                "component": COMPONENT,
                "errorType": entry.error.category.value if entry.error else classify(error).value,
            },
            extra={
                "id": entry.id,
                "hash": entry.hash,
                "nonce": entry.nonce,
                "retryCount": entry.retry_count,
                "method": entry.metadata.get("method"),
            },
        )

    def _report_desync(self, desync: NonceDesync) -> None:
        logger.warning(
            "nonce_desync",
            address=desync.address,
            tracked_nonce=desync.tracked_nonce,
            on_chain_nonce=desync.on_chain_nonce,
            drift=desync.drift,
        )
