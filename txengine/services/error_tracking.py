"""
Error tracking sinks.

The engine reports terminal failures and failed submissions to an
``ErrorTracker``. Production deployments plug in their own sink; the
defaults here log through structlog or keep events in memory.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Protocol

import structlog

from txengine.core.recovery.errors import ErrorCategory, classify


logger = structlog.stdlib.get_logger("error_tracking")


class ErrorTracker(Protocol):
    """Anything that accepts ``(error, tags, extra)`` reports."""

    def capture_exception(
        self,
        error: BaseException,
        *,
        tags: Optional[Mapping[str, Any]] = None,
        extra: Optional[Mapping[str, Any]] = None,
    ) -> None:
        ...


def should_report(error: BaseException) -> bool:
    """User rejections are expected behaviour, not incidents."""
    return classify(error) is not ErrorCategory.USER


class LoggingErrorTracker:
    """Writes every report as a structured error log line."""

    def capture_exception(
        self,
        error: BaseException,
        *,
        tags: Optional[Mapping[str, Any]] = None,
        extra: Optional[Mapping[str, Any]] = None,
    ) -> None:
        if not should_report(error):
            return
        logger.error(
            "exception_captured",
            error=str(error),
            error_type=type(error).__name__,
            tags=dict(tags or {}),
            extra=dict(extra or {}),
        )


@dataclass
class CapturedError:
    error: BaseException
    tags: Dict[str, Any] = field(default_factory=dict)
    extra: Dict[str, Any] = field(default_factory=dict)
    captured_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class InMemoryErrorTracker:
    """Keeps the most recent reports for inspection (dashboards, tests)."""

    def __init__(self, max_events: int = 500):
        self.max_events = max_events
        self.events: List[CapturedError] = []

    def capture_exception(
        self,
        error: BaseException,
        *,
        tags: Optional[Mapping[str, Any]] = None,
        extra: Optional[Mapping[str, Any]] = None,
    ) -> None:
        if not should_report(error):
            return
        self.events.append(CapturedError(error=error, tags=dict(tags or {}), extra=dict(extra or {})))
        if len(self.events) > self.max_events:
            del self.events[: len(self.events) - self.max_events]

    def clear(self) -> None:
        self.events.clear()
