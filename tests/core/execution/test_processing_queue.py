"""
Tests for the Processing Queue

Tests for sequential draining, retry/backoff, timeouts and cancellation.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from txengine.core.execution import (
    ManagerConfig,
    ProcessingQueue,
    QueueFullError,
    Receipt,
    TransactionEntry,
    TransactionStateMachine,
    TransactionStatus,
)
from txengine.core.recovery import ErrorCategory, NetworkError, RateLimitError


SUCCESS = Receipt(status=1, block_number=100, gas_used=21000)


class FakeHandle:
    """Transaction handle whose wait() plays back a list of outcomes."""

    def __init__(self, hash, outcomes=None, nonce=None, gate=None, log=None):
        self.hash = hash
        self.nonce = nonce
        self.outcomes = list(outcomes or [SUCCESS])
        self.gate = gate
        self.log = log
        self.calls = 0

    async def wait(self):
        self.calls += 1
        if self.log is not None:
            self.log.append(self.hash)
        if self.gate is not None:
            await self.gate.wait()
        outcome = self.outcomes[min(self.calls, len(self.outcomes)) - 1]
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


class RecordingSleep:
    """Stands in for asyncio.sleep and records requested delays."""

    def __init__(self, on_sleep=None):
        self.delays = []
        self.on_sleep = on_sleep

    async def __call__(self, delay):
        self.delays.append(delay)
        if self.on_sleep is not None:
            self.on_sleep()
        await asyncio.sleep(0)


async def until(predicate, attempts: int = 200):
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition never became true")


def make_queue(sleep=None, on_settled=None, **config) -> ProcessingQueue:
    return ProcessingQueue(
        config=ManagerConfig(**config),
        state_machine=TransactionStateMachine(),
        on_settled=on_settled,
        sleep=sleep or RecordingSleep(),
    )


def make_entry(handle) -> TransactionEntry:
    return TransactionEntry.from_handle(handle, {"method": "transfer"})


async def run(queue: ProcessingQueue, *entries: TransactionEntry) -> None:
    for entry in entries:
        queue.enqueue(entry)
    queue.drain()
    await queue.wait_idle()


# =============================================================================
# Ordering Tests
# =============================================================================

class TestSequentialProcessing:
    """The worker waits on one entry at a time, in enqueue order."""

    @pytest.mark.asyncio
    async def test_confirms_in_fifo_order(self):
        log = []
        entries = [make_entry(FakeHandle(f"0x{i}", log=log)) for i in range(3)]
        queue = make_queue()

        await run(queue, *entries)

        assert log == ["0x0", "0x1", "0x2"]
        assert all(e.status == TransactionStatus.CONFIRMED for e in entries)
        assert entries[0].block_number == 100
        assert entries[0].gas_used == 21000
        assert len(queue) == 0

    @pytest.mark.asyncio
    async def test_retrying_head_blocks_later_entries(self):
        log = []
        first = make_entry(FakeHandle("0xa", outcomes=[NetworkError("down"), SUCCESS], log=log))
        second = make_entry(FakeHandle("0xb", log=log))
        queue = make_queue(max_retry_attempts=3)

        await run(queue, first, second)

        assert log == ["0xa", "0xa", "0xb"]
        assert first.retry_count == 1
        assert second.retry_count == 0

    @pytest.mark.asyncio
    async def test_drain_is_idempotent(self):
        gate = asyncio.Event()
        queue = make_queue()
        queue.enqueue(make_entry(FakeHandle("0xa", gate=gate)))

        task = queue.drain()
        assert queue.drain() is task
        assert queue.is_running is True

        gate.set()
        await queue.wait_idle()
        assert queue.is_running is False

    def test_drain_empty_queue(self):
        assert make_queue().drain() is None

    def test_queue_bound(self):
        queue = make_queue(max_queue_size=2)
        queue.enqueue(make_entry(FakeHandle("0x1")))
        queue.enqueue(make_entry(FakeHandle("0x2")))

        with pytest.raises(QueueFullError) as exc_info:
            queue.enqueue(make_entry(FakeHandle("0x3")))
        assert exc_info.value.max_size == 2
        assert len(queue) == 2


# =============================================================================
# Retry Tests
# =============================================================================

class TestRetry:
    """Tests for bounded retries with exponential backoff."""

    @pytest.mark.asyncio
    async def test_backoff_doubles(self):
        sleep = RecordingSleep()
        handle = FakeHandle("0xa", outcomes=[NetworkError(), NetworkError(), SUCCESS])
        entry = make_entry(handle)
        queue = make_queue(sleep=sleep, max_retry_attempts=2, base_retry_delay_ms=1000)

        await run(queue, entry)

        assert entry.status == TransactionStatus.CONFIRMED
        assert entry.retry_count == 2
        assert entry.error is None
        assert sleep.delays == [1.0, 2.0]
        assert handle.calls == 3

    @pytest.mark.asyncio
    async def test_retries_are_bounded(self):
        on_settled = MagicMock()
        handle = FakeHandle("0xa", outcomes=[RateLimitError()])
        entry = make_entry(handle)
        queue = make_queue(on_settled=on_settled, max_retry_attempts=3)

        await run(queue, entry)

        assert entry.status == TransactionStatus.FAILED
        assert entry.retry_count == 3
        assert handle.calls == 4
        assert entry.error.category == ErrorCategory.SYSTEM
        assert entry.error.code == 429
        on_settled.assert_called_once()
        assert on_settled.call_args.args[0] is entry
        assert isinstance(on_settled.call_args.args[1], RateLimitError)

    @pytest.mark.asyncio
    async def test_zero_retries(self):
        sleep = RecordingSleep()
        handle = FakeHandle("0xa", outcomes=[NetworkError()])
        entry = make_entry(handle)
        queue = make_queue(sleep=sleep, max_retry_attempts=0)

        await run(queue, entry)

        assert entry.status == TransactionStatus.FAILED
        assert handle.calls == 1
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_entry_is_pending_during_backoff(self):
        entry = make_entry(FakeHandle("0xa", outcomes=[NetworkError(), SUCCESS]))
        seen = []
        sleep = RecordingSleep(on_sleep=lambda: seen.append((entry.status, entry.error)))
        queue = make_queue(sleep=sleep)

        await run(queue, entry)

        assert seen == [(TransactionStatus.PENDING, None)]

    @pytest.mark.asyncio
    async def test_reverted_receipt_is_not_retried(self):
        handle = FakeHandle("0xa", outcomes=[Receipt(status=0, block_number=7)])
        entry = make_entry(handle)
        queue = make_queue(max_retry_attempts=3)

        await run(queue, entry)

        assert entry.status == TransactionStatus.FAILED
        assert entry.retry_count == 0
        assert handle.calls == 1
        assert entry.error.category == ErrorCategory.CONTRACT
        assert entry.error.code == "CALL_EXCEPTION"

    @pytest.mark.asyncio
    async def test_contract_error_is_not_retried(self):
        handle = FakeHandle("0xa", outcomes=[Exception("execution reverted: SLIPPAGE")])
        entry = make_entry(handle)
        queue = make_queue(max_retry_attempts=3)

        await run(queue, entry)

        assert entry.status == TransactionStatus.FAILED
        assert handle.calls == 1
        assert entry.error.message == "execution reverted: SLIPPAGE"
        assert entry.error.display_message is not None

    @pytest.mark.asyncio
    async def test_unknown_error_is_not_retried(self):
        handle = FakeHandle("0xa", outcomes=[Exception("something odd")])
        entry = make_entry(handle)
        queue = make_queue(max_retry_attempts=3)

        await run(queue, entry)

        assert entry.status == TransactionStatus.FAILED
        assert entry.error.category == ErrorCategory.UNKNOWN
        assert handle.calls == 1

    @pytest.mark.asyncio
    async def test_failure_does_not_stop_the_queue(self):
        first = make_entry(FakeHandle("0xa", outcomes=[Exception("execution reverted")]))
        second = make_entry(FakeHandle("0xb"))
        queue = make_queue()

        await run(queue, first, second)

        assert first.status == TransactionStatus.FAILED
        assert second.status == TransactionStatus.CONFIRMED


# =============================================================================
# Timeout Tests
# =============================================================================

class TestTimeout:
    """Tests for the receipt-vs-timeout race."""

    @pytest.mark.asyncio
    async def test_timeout_without_retries_fails(self):
        gate = asyncio.Event()
        on_settled = AsyncMock()
        entry = make_entry(FakeHandle("0xa", gate=gate))
        queue = make_queue(on_settled=on_settled, timeout_ms=50, max_retry_attempts=0)

        await run(queue, entry)

        assert entry.status == TransactionStatus.FAILED
        assert entry.error.code == "TIMEOUT"
        assert entry.error.category == ErrorCategory.NETWORK
        on_settled.assert_awaited_once()

        gate.set()
        await asyncio.sleep(0)

    @pytest.mark.asyncio
    async def test_timeout_is_retried(self):
        gate = asyncio.Event()
        sleep = RecordingSleep()
        handle = FakeHandle("0xa", gate=gate)
        entry = make_entry(handle)
        queue = make_queue(sleep=sleep, timeout_ms=30, max_retry_attempts=2, base_retry_delay_ms=10)

        await run(queue, entry)

        assert entry.status == TransactionStatus.FAILED
        assert entry.retry_count == 2
        assert handle.calls == 3
        assert sleep.delays == pytest.approx([0.01, 0.02])

        gate.set()
        await asyncio.sleep(0)

    @pytest.mark.asyncio
    async def test_late_receipt_is_ignored(self):
        gate = asyncio.Event()
        entry = make_entry(FakeHandle("0xa", gate=gate))
        queue = make_queue(timeout_ms=20, max_retry_attempts=0)

        await run(queue, entry)
        gate.set()
        for _ in range(5):
            await asyncio.sleep(0)

        assert entry.status == TransactionStatus.FAILED
        assert entry.confirmed_at is None


# =============================================================================
# Cancellation Tests
# =============================================================================

class TestCancellation:

    @pytest.mark.asyncio
    async def test_cancel_in_flight_entry(self):
        gate = asyncio.Event()
        state_machine = TransactionStateMachine()
        first = make_entry(FakeHandle("0xa", gate=gate))
        second = make_entry(FakeHandle("0xb"))
        queue = ProcessingQueue(ManagerConfig(), state_machine, sleep=RecordingSleep())
        queue.enqueue(first)
        queue.enqueue(second)
        queue.drain()

        await until(lambda: first.status == TransactionStatus.SUBMITTED)
        assert state_machine.cancel(first) is True
        queue.remove(first)
        gate.set()
        await queue.wait_idle()

        assert first.status == TransactionStatus.CANCELLED
        assert first.confirmed_at is None
        assert second.status == TransactionStatus.CONFIRMED

    @pytest.mark.asyncio
    async def test_stop_cancels_worker(self):
        gate = asyncio.Event()
        entry = make_entry(FakeHandle("0xa", gate=gate))
        queue = make_queue()
        queue.enqueue(entry)
        queue.drain()
        await until(lambda: entry.status == TransactionStatus.SUBMITTED)

        await queue.stop()

        assert queue.is_running is False
        assert entry.status == TransactionStatus.SUBMITTED

        gate.set()
        await asyncio.sleep(0)

    @pytest.mark.asyncio
    async def test_callback_errors_are_contained(self):
        on_settled = MagicMock(side_effect=RuntimeError("sink down"))
        first = make_entry(FakeHandle("0xa"))
        second = make_entry(FakeHandle("0xb"))
        queue = make_queue(on_settled=on_settled)

        await run(queue, first, second)

        assert on_settled.call_count == 2
        assert second.status == TransactionStatus.CONFIRMED


# =============================================================================
# Worker Resilience Tests
# =============================================================================

class TestWorkerResilience:
    """Whatever a single entry does, the worker settles it and moves on."""

    @pytest.mark.asyncio
    async def test_cancelled_wait_fails_head_and_continues(self):
        on_settled = AsyncMock()
        first = make_entry(FakeHandle("0xa", outcomes=[asyncio.CancelledError()]))
        second = make_entry(FakeHandle("0xb"))
        queue = make_queue(on_settled=on_settled, max_retry_attempts=0)

        await run(queue, first, second)

        assert first.status == TransactionStatus.FAILED
        assert first.error.category == ErrorCategory.NETWORK
        assert second.status == TransactionStatus.CONFIRMED
        assert len(queue) == 0
        assert on_settled.await_count == 2

    @pytest.mark.asyncio
    async def test_cancelled_wait_is_retried(self):
        sleep = RecordingSleep()
        handle = FakeHandle("0xa", outcomes=[asyncio.CancelledError(), SUCCESS])
        entry = make_entry(handle)
        queue = make_queue(sleep=sleep, max_retry_attempts=2, base_retry_delay_ms=10)

        await run(queue, entry)

        assert entry.status == TransactionStatus.CONFIRMED
        assert entry.retry_count == 1
        assert handle.calls == 2

    @pytest.mark.asyncio
    async def test_unhashable_error_code_does_not_stop_the_queue(self):
        error = Exception("provider hiccup")
        error.code = {"reason": "unexpected payload"}
        first = make_entry(FakeHandle("0xa", outcomes=[error]))
        second = make_entry(FakeHandle("0xb"))
        queue = make_queue(max_retry_attempts=3)

        await run(queue, first, second)

        assert first.status == TransactionStatus.FAILED
        assert first.error.category == ErrorCategory.UNKNOWN
        assert second.status == TransactionStatus.CONFIRMED

    @pytest.mark.asyncio
    async def test_unexpected_worker_error_fails_head(self):
        on_settled = AsyncMock()
        state_machine = TransactionStateMachine()
        first = make_entry(FakeHandle("0xa", outcomes=[Exception("execution reverted")]))
        second = make_entry(FakeHandle("0xb"))
        queue = ProcessingQueue(
            ManagerConfig(), state_machine, on_settled=on_settled, sleep=RecordingSleep()
        )
        state_machine.fail = MagicMock(side_effect=RuntimeError("bookkeeping broke"))

        await run(queue, first, second)

        assert first.status == TransactionStatus.FAILED
        assert first.error.category == ErrorCategory.UNKNOWN
        assert first.error.message == "bookkeeping broke"
        assert second.status == TransactionStatus.CONFIRMED
        assert isinstance(on_settled.await_args_list[0].args[1], RuntimeError)

    @pytest.mark.asyncio
    async def test_removing_in_flight_entry_releases_worker(self):
        gate = asyncio.Event()
        state_machine = TransactionStateMachine()
        first = make_entry(FakeHandle("0xa", gate=gate))
        second = make_entry(FakeHandle("0xb"))
        queue = ProcessingQueue(
            ManagerConfig(timeout_ms=60000), state_machine, sleep=RecordingSleep()
        )
        queue.enqueue(first)
        queue.enqueue(second)
        queue.drain()
        await until(lambda: first.status == TransactionStatus.SUBMITTED)

        state_machine.cancel(first)
        queue.remove(first)
        await until(lambda: second.status == TransactionStatus.CONFIRMED)
        await queue.wait_idle()

        assert first.status == TransactionStatus.CANCELLED
        assert not gate.is_set()
        gate.set()
        await asyncio.sleep(0)
