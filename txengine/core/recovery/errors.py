"""
Error Classification

Defines the error taxonomy for the transaction engine and maps arbitrary
provider/wallet failures onto it. Errors are classified as recoverable (the
confirmation wait may be retried) or unrecoverable (retrying could double-submit
or is pointless).
"""

import asyncio
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Union

import httpx

from txengine.config import settings


class ErrorCategory(str, Enum):
    """Categories of errors for retry decisions."""

    NETWORK = "network"     # Transient connectivity / timeout
    USER = "user"           # Explicit rejection or cancellation by the user
    CONTRACT = "contract"   # Deterministic on-chain rejection
    SYSTEM = "system"       # Provider-side failure or throttling
    UNKNOWN = "unknown"     # Unclassified, never retried


RETRYABLE_CATEGORIES = frozenset({ErrorCategory.NETWORK, ErrorCategory.SYSTEM})


class RecoveryAction(str, Enum):
    """What a caller should do about a classified error."""

    RETRY = "retry"
    IGNORE = "ignore"
    ABORT = "abort"


@dataclass
class ErrorContext:
    """Additional context about an error."""

    category: ErrorCategory = ErrorCategory.UNKNOWN
    recoverable: bool = False
    code: Optional[Union[int, str]] = None
    title: str = "Error"
    message: str = ""
    action: Optional[str] = None
    tx_hash: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)


class RecoverableError(Exception):
    """
    Base class for errors that can be retried.

    These errors are typically transient:
    - Network issues
    - Rate limits
    - Confirmation timeouts
    """

    category: ErrorCategory = ErrorCategory.NETWORK

    def __init__(
        self,
        message: str,
        category: Optional[ErrorCategory] = None,
        code: Optional[Union[int, str]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.category
        self.code = code


class UnrecoverableError(Exception):
    """
    Base class for errors that must not be retried.

    These errors are deterministic:
    - Transaction reverts
    - Insufficient funds
    - User rejection
    """

    category: ErrorCategory = ErrorCategory.CONTRACT

    def __init__(
        self,
        message: str,
        category: Optional[ErrorCategory] = None,
        code: Optional[Union[int, str]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.category
        self.code = code


class NetworkError(RecoverableError):
    """Network connectivity error."""

    def __init__(self, message: str = "Network error", code: Optional[Union[int, str]] = "NETWORK_ERROR"):
        super().__init__(message, category=ErrorCategory.NETWORK, code=code)


class RateLimitError(RecoverableError):
    """Provider rate limit exceeded."""

    def __init__(self, message: str = "Rate limit exceeded", code: Optional[Union[int, str]] = 429):
        super().__init__(message, category=ErrorCategory.SYSTEM, code=code)


class TransactionTimeoutError(RecoverableError):
    """Receipt did not arrive before the configured timeout."""

    def __init__(self, message: str = "Transaction timeout", timeout_seconds: Optional[float] = None):
        super().__init__(message, category=ErrorCategory.NETWORK, code="TIMEOUT")
        self.timeout_seconds = timeout_seconds


class TransactionRevertedError(UnrecoverableError):
    """Transaction reverted on-chain."""

    def __init__(
        self,
        message: str = "Transaction reverted",
        tx_hash: Optional[str] = None,
        block_number: Optional[int] = None,
    ):
        super().__init__(message, category=ErrorCategory.CONTRACT, code="CALL_EXCEPTION")
        self.tx_hash = tx_hash
        self.block_number = block_number


class InsufficientFundsError(UnrecoverableError):
    """Sender cannot cover value plus gas."""

    def __init__(self, message: str = "Insufficient funds"):
        super().__init__(message, category=ErrorCategory.CONTRACT, code="INSUFFICIENT_FUNDS")


class UserRejectedError(UnrecoverableError):
    """The user declined the request in their wallet."""

    def __init__(self, message: str = "User rejected the request"):
        super().__init__(message, category=ErrorCategory.USER, code=4001)


# Known machine-readable codes. Extend only with codes a provider is known to emit.
ERROR_CODE_CATEGORIES: Dict[Union[int, str], ErrorCategory] = {
    4001: ErrorCategory.USER,
    "ACTION_REJECTED": ErrorCategory.USER,
    "CALL_EXCEPTION": ErrorCategory.CONTRACT,
    "INSUFFICIENT_FUNDS": ErrorCategory.CONTRACT,
    "NETWORK_ERROR": ErrorCategory.NETWORK,
    "TIMEOUT": ErrorCategory.NETWORK,
    429: ErrorCategory.SYSTEM,
}

USER_PATTERNS = (
    "user rejected",
    "user denied",
    "user cancelled",
    "user canceled",
    "action rejected",
    "invalid input",
)

CONTRACT_PATTERNS = (
    "revert",
    "execution reverted",
    "insufficient funds",
    "invalid",
)

NETWORK_PATTERNS = (
    "timeout",
    "timed out",
    "network",
    "connection",
    "econnrefused",
    "econnreset",
    "etimedout",
    "enotfound",
    "fetch",
)

SYSTEM_PATTERNS = (
    "rate limit",
    "too many requests",
    "internal",
    "server error",
)

_REVERT_REASON = re.compile(r"revert(?:ed)?:?\s+(.+)", re.IGNORECASE)

# Checked last: "gas" also shows up in transient messages ("fetching gas price")
WEAK_CONTRACT_PATTERNS = ("gas",)

_CATEGORY_COPY: Dict[ErrorCategory, Dict[str, Optional[str]]] = {
    ErrorCategory.NETWORK: {
        "title": "Network Error",
        "message": "Unable to reach the network. Please check your connection and try again.",
        "action": "Retry",
    },
    ErrorCategory.USER: {
        "title": "Action Cancelled",
        "message": "The transaction was cancelled. No changes were made.",
        "action": None,
    },
    ErrorCategory.CONTRACT: {
        "title": "Transaction Failed",
        "message": "The transaction failed. This may be due to insufficient funds, gas limits, or contract conditions.",
        "action": "Review Transaction",
    },
    ErrorCategory.SYSTEM: {
        "title": "System Error",
        "message": "An unexpected error occurred. Please try again later.",
        "action": "Retry",
    },
    ErrorCategory.UNKNOWN: {
        "title": "Error",
        "message": "An error occurred. Please try again.",
        "action": "Retry",
    },
}


def extract_error_code(error: BaseException) -> Optional[Union[int, str]]:
    """Read a machine-readable code from ``error.code`` or a nested ``error.error.code``."""
    code = getattr(error, "code", None)
    if code is None:
        nested = getattr(error, "error", None)
        if isinstance(nested, dict):
            code = nested.get("code")
        elif nested is not None:
            code = getattr(nested, "code", None)
    if isinstance(error, httpx.HTTPStatusError) and code is None:
        code = error.response.status_code
    return code


def _category_for_code(code: Optional[Union[int, str]]) -> Optional[ErrorCategory]:
    # Providers sometimes put a payload dict or list under "code"
    if not isinstance(code, (int, str)) or isinstance(code, bool):
        return None
    if code in ERROR_CODE_CATEGORIES:
        return ERROR_CODE_CATEGORIES[code]
    if isinstance(code, str) and code.isdigit():
        code = int(code)
        if code in ERROR_CODE_CATEGORIES:
            return ERROR_CODE_CATEGORIES[code]
    if isinstance(code, int) and 500 <= code < 600:
        return ErrorCategory.SYSTEM
    return None


def _category_for_type(error: BaseException) -> Optional[ErrorCategory]:
    if isinstance(error, (RecoverableError, UnrecoverableError)):
        return error.category
    if isinstance(error, (asyncio.TimeoutError, TimeoutError, ConnectionError, httpx.TransportError)):
        return ErrorCategory.NETWORK
    return None


def _category_for_message(message: str) -> ErrorCategory:
    if any(p in message for p in USER_PATTERNS):
        return ErrorCategory.USER
    if any(p in message for p in CONTRACT_PATTERNS):
        return ErrorCategory.CONTRACT
    if any(p in message for p in NETWORK_PATTERNS):
        return ErrorCategory.NETWORK
    if any(p in message for p in SYSTEM_PATTERNS):
        return ErrorCategory.SYSTEM
    if any(p in message for p in WEAK_CONTRACT_PATTERNS):
        return ErrorCategory.CONTRACT
    return ErrorCategory.UNKNOWN


def classify(error: Optional[BaseException]) -> ErrorCategory:
    """
    Map an exception onto the error taxonomy.

    Engine error types and known codes win over message text; message
    patterns are matched non-retryable first so that a revert mentioning a
    timeout is still never retried.
    """
    if error is None:
        return ErrorCategory.UNKNOWN

    by_type = _category_for_type(error)
    if isinstance(error, (RecoverableError, UnrecoverableError)):
        return by_type

    by_code = _category_for_code(extract_error_code(error))
    if by_code is not None:
        return by_code

    if by_type is not None:
        return by_type

    return _category_for_message(str(error).lower())


def is_retryable(error: Optional[BaseException]) -> bool:
    """Whether a failed confirmation wait may be attempted again."""
    return classify(error) in RETRYABLE_CATEGORIES


def classify_error(error: BaseException) -> ErrorContext:
    """Classify an exception and return its error context."""
    category = classify(error)
    copy = _CATEGORY_COPY[category]
    return ErrorContext(
        category=category,
        recoverable=category in RETRYABLE_CATEGORIES,
        code=extract_error_code(error),
        title=copy["title"] or "Error",
        message=str(error),
        action=copy["action"],
        tx_hash=getattr(error, "tx_hash", None),
    )


def get_user_friendly_error(error: BaseException, production: Optional[bool] = None) -> ErrorContext:
    """
    Classify ``error`` and rewrite its message for display.

    In production revert payloads and system internals are replaced with
    generic copy.
    """
    if production is None:
        production = settings.is_production

    context = classify_error(error)
    base_message = _CATEGORY_COPY[context.category]["message"] or ""
    specific = str(error)
    lowered = specific.lower()

    if context.category is ErrorCategory.CONTRACT:
        if "insufficient funds" in lowered:
            specific = "Insufficient funds for gas fees. Please add more ETH to your wallet."
        elif "revert" in lowered:
            if production:
                specific = "Transaction was reverted. Please check the transaction details and try again."
            else:
                match = _REVERT_REASON.search(specific)
                specific = (
                    f"Transaction reverted: {match.group(1).strip()}"
                    if match
                    else "Transaction was reverted. Please check the transaction details."
                )
        elif "gas" in lowered:
            specific = "Gas estimation failed. Please try again or adjust gas settings."

    if production and context.category is ErrorCategory.SYSTEM:
        specific = base_message

    context.details["original_message"] = str(error)
    context.message = specific or base_message
    return context


def get_recovery_action(error: BaseException) -> RecoveryAction:
    category = classify(error)
    if category in RETRYABLE_CATEGORIES:
        return RecoveryAction.RETRY
    if category is ErrorCategory.USER:
        return RecoveryAction.IGNORE
    return RecoveryAction.ABORT


def format_error_for_display(error: BaseException) -> Dict[str, Any]:
    info = get_user_friendly_error(error)
    return {
        "title": info.title,
        "message": info.message,
        "action": info.action,
        "canRetry": get_recovery_action(error) is RecoveryAction.RETRY,
    }
