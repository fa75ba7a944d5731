"""
Transaction engine models and types.
"""

import secrets
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Protocol, runtime_checkable

from txengine.config import Settings, settings
from txengine.core.recovery.errors import ErrorCategory


class TransactionStatus(str, Enum):
    """Transaction lifecycle status."""
    PENDING = "pending"          # Queued, not yet being waited on
    SUBMITTED = "submitted"      # Worker is waiting for the receipt
    CONFIRMED = "confirmed"      # Success receipt observed
    FAILED = "failed"            # Wait rejected or receipt reported failure
    TIMEOUT = "timeout"          # No receipt before the timeout
    CANCELLED = "cancelled"      # Dropped from tracking by the user


ACTIVE_STATUSES = frozenset({TransactionStatus.PENDING, TransactionStatus.SUBMITTED})


@dataclass
class Receipt:
    """Receipt returned once a transaction is included in a block."""
    status: Optional[int]                       # 1 = success, 0 = failure, None = pre-Byzantium
    block_number: Optional[int] = None
    gas_used: Optional[int] = None
    block_hash: Optional[str] = None
    logs: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.status != 0

    @classmethod
    def from_raw(cls, raw: Any) -> "Receipt":
        """Accept a Receipt, a JSON-RPC receipt dict (hex quantities) or a receipt-like object."""
        if isinstance(raw, cls):
            return raw
        if raw is None:
            raise ValueError("Receipt is empty")

        def pick(*names: str) -> Any:
            for name in names:
                if isinstance(raw, Mapping) and name in raw:
                    return raw[name]
                if not isinstance(raw, Mapping) and hasattr(raw, name):
                    return getattr(raw, name)
            return None

        return cls(
            status=_to_int(pick("status")),
            block_number=_to_int(pick("block_number", "blockNumber")),
            gas_used=_to_int(pick("gas_used", "gasUsed")),
            block_hash=pick("block_hash", "blockHash"),
            logs=list(pick("logs") or []),
        )


def _to_int(value: Any) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, str):
        return int(value, 16) if value.startswith("0x") else int(value)
    return int(value)


@runtime_checkable
class TransactionHandle(Protocol):
    """A broadcast, not-yet-mined transaction as returned by a wallet or provider."""

    hash: str
    nonce: Optional[int]

    async def wait(self) -> Receipt:
        ...


@runtime_checkable
class ChainProvider(Protocol):
    """The chain queries the engine needs."""

    async def get_transaction_count(self, address: str, block_identifier: str = "pending") -> int:
        ...


@dataclass
class TransactionError:
    """Last failure observed for an entry."""
    message: str
    category: ErrorCategory
    code: Optional[Any] = None
    display_message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message": self.message,
            "code": self.code,
            "category": self.category.value,
            "displayMessage": self.display_message,
        }


def generate_transaction_id() -> str:
    """Opaque id: creation time in ms plus random suffix."""
    return f"tx_{int(time.time() * 1000)}_{secrets.token_hex(5)}"


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass(eq=False)
class TransactionEntry:
    """One submitted transaction and its lifecycle state."""
    id: str
    transaction: Optional[TransactionHandle] = field(default=None, repr=False)
    hash: Optional[str] = None
    status: TransactionStatus = TransactionStatus.PENDING
    metadata: Mapping[str, Any] = field(default_factory=dict)
    nonce: Optional[int] = None
    retry_count: int = 0

    # Timing
    submitted_at: Optional[datetime] = None
    confirmed_at: Optional[datetime] = None

    # Confirmation details
    block_number: Optional[int] = None
    gas_used: Optional[int] = None

    error: Optional[TransactionError] = None

    def __post_init__(self):
        self.metadata = MappingProxyType(dict(self.metadata))

    def __setattr__(self, name: str, value: Any) -> None:
        # Nonce order on-chain relies on an entry keeping the nonce it was created with
        if name == "nonce" and getattr(self, "nonce", None) is not None and value != self.nonce:
            raise AttributeError(f"nonce of {self.id} is already set to {self.nonce}")
        super().__setattr__(name, value)

    @classmethod
    def from_handle(
        cls,
        handle: TransactionHandle,
        metadata: Optional[Mapping[str, Any]] = None,
        entry_id: Optional[str] = None,
    ) -> "TransactionEntry":
        merged: Dict[str, Any] = {
            "method": "unknown",
            "params": {},
            "description": "",
            "timestamp": int(time.time() * 1000),
        }
        merged.update(metadata or {})
        return cls(
            id=entry_id or generate_transaction_id(),
            transaction=handle,
            hash=getattr(handle, "hash", None),
            metadata=merged,
            nonce=getattr(handle, "nonce", None),
        )

    @property
    def sender(self) -> Optional[str]:
        return self.metadata.get("from")

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        """Plain-data projection; the live handle is left out."""
        return {
            "id": self.id,
            "hash": self.hash,
            "status": self.status.value,
            "metadata": dict(self.metadata),
            "submittedAt": _isoformat(self.submitted_at),
            "confirmedAt": _isoformat(self.confirmed_at),
            "blockNumber": self.block_number,
            "gasUsed": str(self.gas_used) if self.gas_used is not None else None,
            "error": self.error.to_dict() if self.error else None,
            "retryCount": self.retry_count,
            "nonce": self.nonce,
        }


@dataclass
class ManagerConfig:
    """Tunables for a TransactionManager instance."""
    max_retry_attempts: int = 3
    base_retry_delay_ms: int = 1000
    timeout_ms: int = 300_000
    max_history_size: int = 1000
    max_queue_size: int = 50
    nonce_drift_threshold: int = 10

    def __post_init__(self):
        if self.max_retry_attempts < 0:
            raise ValueError("max_retry_attempts must be >= 0")
        if self.base_retry_delay_ms < 0:
            raise ValueError("base_retry_delay_ms must be >= 0")
        if self.timeout_ms <= 0:
            raise ValueError("timeout_ms must be > 0")
        if self.max_history_size < 1 or self.max_queue_size < 1:
            raise ValueError("history and queue bounds must be >= 1")

    @property
    def base_retry_delay_seconds(self) -> float:
        return self.base_retry_delay_ms / 1000

    @property
    def timeout_seconds(self) -> float:
        return self.timeout_ms / 1000

    @classmethod
    def from_settings(cls, source: Optional[Settings] = None) -> "ManagerConfig":
        source = source or settings
        return cls(
            max_retry_attempts=source.max_retry_attempts,
            base_retry_delay_ms=source.retry_delay_ms,
            timeout_ms=source.transaction_timeout_ms,
            max_history_size=source.max_history_size,
            max_queue_size=source.max_queue_size,
            nonce_drift_threshold=source.nonce_drift_threshold,
        )
