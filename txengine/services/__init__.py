"""Service layer helpers"""

from .error_tracking import (
    CapturedError,
    ErrorTracker,
    InMemoryErrorTracker,
    LoggingErrorTracker,
    should_report,
)

__all__ = [
    "CapturedError",
    "ErrorTracker",
    "InMemoryErrorTracker",
    "LoggingErrorTracker",
    "should_report",
]
