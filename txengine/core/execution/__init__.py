"""
Transaction Submission Layer

Tracks already-broadcast transactions until they settle:
- TransactionManager: facade used by callers (UI hooks, services)
- NonceManager: per-sender nonce tracking reconciled against the chain
- ProcessingQueue: strictly sequential confirmation worker with retries
- TransactionHistory: bounded log of every tracked transaction

Usage:
    from txengine.core.execution import TransactionManager, ManagerConfig

    manager = TransactionManager(ManagerConfig(max_retry_attempts=2))
    manager.init(provider, "0xSender")

    entry = await manager.add_transaction(provider.send_raw_transaction(raw, nonce=7))
    await manager.wait_idle()
    print(entry.status, manager.export_history())
"""

from .models import (
    TransactionStatus,
    TransactionEntry,
    TransactionError,
    TransactionHandle,
    ChainProvider,
    Receipt,
    ManagerConfig,
)

from .errors import (
    ExecutionError,
    ManagerNotInitializedError,
    QueueFullError,
    InvalidTransition,
)

from .nonce_manager import (
    NonceManager,
    NonceDesync,
)

from .state_machine import TransactionStateMachine
from .history import TransactionHistory
from .queue import ProcessingQueue
from .manager import TransactionManager

__all__ = [
    # Models
    "TransactionStatus",
    "TransactionEntry",
    "TransactionError",
    "TransactionHandle",
    "ChainProvider",
    "Receipt",
    "ManagerConfig",
    # Errors
    "ExecutionError",
    "ManagerNotInitializedError",
    "QueueFullError",
    "InvalidTransition",
    # Nonce Manager
    "NonceManager",
    "NonceDesync",
    # Lifecycle
    "TransactionStateMachine",
    "TransactionHistory",
    "ProcessingQueue",
    # Facade
    "TransactionManager",
]
