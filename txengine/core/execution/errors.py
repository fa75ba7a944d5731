"""
Exceptions raised by the transaction engine itself (as opposed to failures
observed while waiting on the chain, which live in txengine.core.recovery).
"""

from typing import Optional

from .models import TransactionStatus


class ExecutionError(Exception):
    """Base exception for engine errors."""
    pass


class ManagerNotInitializedError(ExecutionError):
    """Raised when an operation needs a provider or signer that was never set."""
    pass


class QueueFullError(ExecutionError):
    """Raised when the processing queue is at capacity."""

    def __init__(self, max_size: int):
        super().__init__(f"Transaction queue is full ({max_size} entries)")
        self.max_size = max_size


class InvalidTransition(ExecutionError):
    """Raised when an invalid lifecycle transition is attempted."""

    def __init__(
        self,
        from_state: TransactionStatus,
        to_state: TransactionStatus,
        message: Optional[str] = None,
    ):
        self.from_state = from_state
        self.to_state = to_state
        self.message = message or f"Cannot transition from {from_state.value} to {to_state.value}"
        super().__init__(self.message)
