"""
Structured logging for the transaction engine.

structlog renders both its own events (queue/manager lifecycle) and plain
stdlib records (nonce tracker, state machine, RPC provider). Production gets
JSON lines; everything else gets the console renderer.
"""

import logging
import sys
from contextlib import contextmanager
from typing import Iterator, Optional

import structlog

from .config import settings


def setup_logging(log_level: Optional[str] = None, json_logs: Optional[bool] = None) -> None:
    """Configure structlog and route the stdlib root logger through it.

    Args:
        log_level: Override log level (default: from settings.log_level)
        json_logs: Force JSON output (default: only in production)
    """
    level = getattr(logging, (log_level or settings.log_level).upper(), logging.INFO)
    if json_logs is None:
        json_logs = settings.is_production

    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]
    if json_logs:
        processors.append(structlog.processors.format_exc_info)
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())

    structlog.configure(
        processors=[*processors, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=processors,
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        )
    )

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    # Receipt polling logs every request at INFO
    for name in ("httpcore", "httpx"):
        logging.getLogger(name).setLevel(logging.WARNING)


@contextmanager
def transaction_context(tx_id: str, tx_hash: Optional[str] = None, nonce: Optional[int] = None) -> Iterator[None]:
    """Tag every log line emitted inside the block with the transaction being processed."""
    with structlog.contextvars.bound_contextvars(tx_id=tx_id, tx_hash=tx_hash, nonce=nonce):
        yield
