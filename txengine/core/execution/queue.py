"""
Sequential processing queue.

Drains transaction entries strictly one at a time in the order they were
enqueued. Nonce order on-chain depends on this: the queue never skips ahead of
an entry that is being retried.
"""

import asyncio
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Iterator, List, Optional

import structlog

from txengine.core.recovery.errors import (
    RETRYABLE_CATEGORIES,
    ErrorCategory,
    NetworkError,
    TransactionRevertedError,
    TransactionTimeoutError,
    classify,
    extract_error_code,
    get_user_friendly_error,
)
from txengine.core.recovery.strategies import backoff_delay
from txengine.logging_config import transaction_context

from .errors import ExecutionError, QueueFullError
from .models import (
    ManagerConfig,
    Receipt,
    TransactionEntry,
    TransactionError,
    TransactionStatus,
)
from .state_machine import TransactionStateMachine


logger = structlog.stdlib.get_logger(__name__)

# Called once per entry that reaches a terminal state in the worker
SettledCallback = Callable[[TransactionEntry, Optional[BaseException]], Optional[Awaitable[None]]]


def _discard_late_result(task: "asyncio.Future[Any]") -> None:
    # The entry has already moved on; a late receipt or error is only logged
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.debug("late_wait_failed", error=str(exc))
    else:
        logger.debug("late_receipt_ignored")


def _log_worker_exit(task: "asyncio.Task[None]") -> None:
    # Per-entry failures are settled inside the loop
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("queue_worker_crashed", error=str(exc), exc_info=exc)


class ProcessingQueue:
    """
    FIFO of entries awaiting confirmation, drained by a single worker task.

    The worker peeks at the head, waits for its receipt (raced against the
    configured timeout), and only pops the head once it is settled. Retryable
    failures put the head back to pending, sleep for the backoff delay and
    try the same entry again. Removing the in-flight entry releases the
    worker immediately; its receipt wait keeps running and is ignored.
    """

    def __init__(
        self,
        config: Optional[ManagerConfig] = None,
        state_machine: Optional[TransactionStateMachine] = None,
        on_settled: Optional[SettledCallback] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.config = config or ManagerConfig()
        self.state_machine = state_machine or TransactionStateMachine()
        self._on_settled = on_settled
        self._sleep = sleep
        self._entries: Deque[TransactionEntry] = deque()
        self._task: Optional[asyncio.Task] = None
        self._in_flight: Optional[TransactionEntry] = None
        self._released = asyncio.Event()

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[TransactionEntry]:
        return iter(list(self._entries))

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def head(self) -> Optional[TransactionEntry]:
        return self._entries[0] if self._entries else None

    def find(self, tx_id: str) -> Optional[TransactionEntry]:
        return next((e for e in self._entries if e.id == tx_id), None)

    def enqueue(self, entry: TransactionEntry) -> None:
        if len(self._entries) >= self.config.max_queue_size:
            raise QueueFullError(self.config.max_queue_size)
        self._entries.append(entry)

    def remove(self, entry: TransactionEntry) -> bool:
        try:
            self._entries.remove(entry)
        except ValueError:
            return False
        if entry is self._in_flight:
            self._released.set()
        return True

    def clear(self) -> List[TransactionEntry]:
        removed = list(self._entries)
        self._entries.clear()
        if self._in_flight is not None:
            self._released.set()
        return removed

    def drain(self) -> Optional[asyncio.Task]:
        """Start the worker unless it is already running; returns the worker task."""
        if self.is_running:
            return self._task
        if not self._entries:
            return None
        self._task = asyncio.create_task(self._run(), name="txengine-queue-worker")
        self._task.add_done_callback(_log_worker_exit)
        return self._task

    async def wait_idle(self) -> None:
        """Wait until the current worker has emptied the queue."""
        while self.is_running:
            await asyncio.wait({self._task})

    async def stop(self) -> None:
        """Cancel the worker; the in-flight entry keeps its current status."""
        task = self._task
        if task is None or task.done():
            return
        task.cancel()
        await asyncio.wait({task})
        self._task = None

    async def _run(self) -> None:
        logger.debug("queue_worker_started", queued=len(self._entries))
        while self._entries:
            entry = self._entries[0]
            with transaction_context(entry.id, entry.hash, entry.nonce):
                try:
                    await self._process_head(entry)
                except Exception as error:
                    logger.exception("queue_worker_step_failed", error=str(error))
                    await self._abort(entry, error)
        logger.debug("queue_worker_idle")

    def _pop(self, entry: TransactionEntry) -> None:
        if self._entries and self._entries[0] is entry:
            self._entries.popleft()
        else:
            self.remove(entry)

    async def _process_head(self, entry: TransactionEntry) -> None:
        if entry.status not in (TransactionStatus.PENDING, TransactionStatus.SUBMITTED):
            # Settled entries never stay at the head
            self._pop(entry)
            return

        try:
            receipt = await self._attempt(entry)
        except Exception as error:
            if entry.status is TransactionStatus.CANCELLED:
                return
            await self._handle_failure(entry, error)
            return

        if entry.status is TransactionStatus.CANCELLED:
            return

        self.state_machine.confirm(entry, receipt)
        self._pop(entry)
        logger.info(
            "transaction_confirmed",
            block_number=entry.block_number,
            gas_used=entry.gas_used,
            retry_count=entry.retry_count,
        )
        await self._notify_settled(entry, None)

    async def _attempt(self, entry: TransactionEntry) -> Receipt:
        # A head left SUBMITTED by a stopped worker is resumed, not re-submitted
        if entry.status is TransactionStatus.PENDING:
            self.state_machine.submit(entry)
        logger.info("processing_transaction", attempt=entry.retry_count + 1)

        handle = entry.transaction
        if handle is None:
            raise ExecutionError(f"Transaction {entry.id} has no handle to wait on")

        self._in_flight = entry
        self._released.clear()
        wait_task = asyncio.ensure_future(handle.wait())
        released_task = asyncio.ensure_future(self._released.wait())
        try:
            done, _ = await asyncio.wait(
                {wait_task, released_task},
                timeout=self.config.timeout_seconds,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            self._in_flight = None
            released_task.cancel()
            if not wait_task.done():
                wait_task.add_done_callback(_discard_late_result)

        if wait_task not in done:
            if released_task in done:
                raise ExecutionError(f"Transaction {entry.id} is no longer queued")
            raise TransactionTimeoutError(timeout_seconds=self.config.timeout_seconds)

        if wait_task.cancelled():
            # The handle gave up (e.g. its HTTP request was cancelled); the worker itself was not
            raise NetworkError("Receipt wait was cancelled")

        receipt = Receipt.from_raw(wait_task.result())
        if not receipt.succeeded:
            raise TransactionRevertedError(tx_hash=entry.hash, block_number=receipt.block_number)
        return receipt

    async def _handle_failure(self, entry: TransactionEntry, error: Exception) -> None:
        category = classify(error)
        failure = TransactionError(
            message=str(error),
            category=category,
            code=extract_error_code(error),
            display_message=get_user_friendly_error(error).message,
        )

        if isinstance(error, TransactionTimeoutError):
            self.state_machine.time_out(entry, failure)
        else:
            self.state_machine.fail(entry, failure)

        if category in RETRYABLE_CATEGORIES and entry.retry_count < self.config.max_retry_attempts:
            entry.retry_count += 1
            delay = backoff_delay(self.config.base_retry_delay_seconds, entry.retry_count)
            logger.warning(
                "retrying_transaction",
                retry_count=entry.retry_count,
                max_retries=self.config.max_retry_attempts,
                delay_seconds=delay,
                error=str(error),
                category=category.value,
            )
            self.state_machine.retry(entry)
            await self._sleep(delay)
            return

        if entry.status is TransactionStatus.TIMEOUT:
            self.state_machine.transition(entry, TransactionStatus.FAILED)

        self._pop(entry)
        logger.error(
            "transaction_failed_permanently",
            retry_count=entry.retry_count,
            error=str(error),
            category=category.value,
        )
        await self._notify_settled(entry, error)

    async def _abort(self, entry: TransactionEntry, error: Exception) -> None:
        """Settle the head as failed after an unexpected error so the queue keeps moving."""
        self._pop(entry)
        failure = TransactionError(message=str(error), category=ErrorCategory.UNKNOWN)
        if self.state_machine.abort(entry, failure):
            await self._notify_settled(entry, error)

    async def _notify_settled(self, entry: TransactionEntry, error: Optional[BaseException]) -> None:
        if self._on_settled is None:
            return
        try:
            result = self._on_settled(entry, error)
            if asyncio.iscoroutine(result):
                await result
        except Exception as e:
            logger.error("settled_callback_failed", error=str(e))
