"""
Transaction Lifecycle State Machine

Validates status changes of a TransactionEntry and stamps the timing and
receipt fields that belong to each transition.
"""

import logging
from datetime import datetime, timezone
from typing import Dict, Optional, Set

from .errors import InvalidTransition
from .models import Receipt, TransactionEntry, TransactionError, TransactionStatus


logger = logging.getLogger(__name__)


class TransactionStateMachine:
    """
    Owns every status change of transaction entries.

    pending -> submitted -> confirmed | failed | timeout
    failed | timeout -> pending (retry granted)
    timeout -> failed (retries exhausted)
    pending | submitted -> cancelled
    """

    TRANSITIONS: Dict[TransactionStatus, Set[TransactionStatus]] = {
        TransactionStatus.PENDING: {
            TransactionStatus.SUBMITTED,
            TransactionStatus.CANCELLED,
        },
        TransactionStatus.SUBMITTED: {
            TransactionStatus.CONFIRMED,
            TransactionStatus.FAILED,
            TransactionStatus.TIMEOUT,
            TransactionStatus.CANCELLED,
        },
        TransactionStatus.FAILED: {
            TransactionStatus.PENDING,   # Retry granted
        },
        TransactionStatus.TIMEOUT: {
            TransactionStatus.PENDING,   # Retry granted
            TransactionStatus.FAILED,    # Retries exhausted
        },
        TransactionStatus.CONFIRMED: set(),
        TransactionStatus.CANCELLED: set(),
    }

    def can_transition(self, entry: TransactionEntry, to_state: TransactionStatus) -> bool:
        return to_state in self.TRANSITIONS.get(entry.status, set())

    def transition(self, entry: TransactionEntry, to_state: TransactionStatus) -> TransactionEntry:
        from_state = entry.status
        if not self.can_transition(entry, to_state):
            raise InvalidTransition(
                from_state=from_state,
                to_state=to_state,
                message=f"Invalid transition for {entry.id} from {from_state.value} to {to_state.value}. "
                        f"Allowed: {sorted(s.value for s in self.TRANSITIONS.get(from_state, set()))}",
            )
        entry.status = to_state
        logger.debug(f"Transaction {entry.id}: {from_state.value} -> {to_state.value}")
        return entry

    def submit(self, entry: TransactionEntry) -> TransactionEntry:
        self.transition(entry, TransactionStatus.SUBMITTED)
        if entry.submitted_at is None:
            entry.submitted_at = datetime.now(timezone.utc)
        return entry

    def confirm(self, entry: TransactionEntry, receipt: Receipt) -> TransactionEntry:
        self.transition(entry, TransactionStatus.CONFIRMED)
        entry.confirmed_at = datetime.now(timezone.utc)
        entry.block_number = receipt.block_number
        entry.gas_used = receipt.gas_used
        entry.error = None
        return entry

    def fail(self, entry: TransactionEntry, error: TransactionError) -> TransactionEntry:
        self.transition(entry, TransactionStatus.FAILED)
        entry.error = error
        return entry

    def time_out(self, entry: TransactionEntry, error: TransactionError) -> TransactionEntry:
        self.transition(entry, TransactionStatus.TIMEOUT)
        entry.error = error
        return entry

    def retry(self, entry: TransactionEntry) -> TransactionEntry:
        self.transition(entry, TransactionStatus.PENDING)
        entry.error = None
        return entry

    def cancel(self, entry: TransactionEntry, reason: Optional[str] = None) -> bool:
        """Mark an active entry cancelled; returns False for anything already settled."""
        if not self.can_transition(entry, TransactionStatus.CANCELLED):
            return False
        self.transition(entry, TransactionStatus.CANCELLED)
        if reason:
            logger.info(f"Transaction {entry.id} cancelled: {reason}")
        return True

    def abort(self, entry: TransactionEntry, error: TransactionError) -> bool:
        """
        Force an unsettled entry to failed after an unexpected processing error.

        Walks the legal path (pending -> submitted -> failed, timeout -> failed);
        returns False when the entry was already confirmed or cancelled.
        """
        if entry.status is TransactionStatus.PENDING:
            self.submit(entry)
        if entry.status in (TransactionStatus.SUBMITTED, TransactionStatus.TIMEOUT):
            self.transition(entry, TransactionStatus.FAILED)
        if entry.status is not TransactionStatus.FAILED:
            return False
        entry.error = error
        return True
