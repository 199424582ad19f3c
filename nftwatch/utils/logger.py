"""structlog setup for the crawler and notification workers.

JSON lines in production, colored console in dev mode. API keys and hosted
RPC credentials are redacted before rendering.
"""

from __future__ import annotations

import logging
import re
import sys
from typing import Any

import structlog

# Keys whose values are always secrets (config fields, request headers)
_SECRET_KEYS = re.compile(r"(api[-_]?key|looks[-_]api[-_]key|authorization|rpc_url)", re.I)
_MASK = "***REDACTED***"

# Hosted RPC endpoints (Infura, Alchemy) embed the project key in the URL path
_RPC_KEY_IN_URL = re.compile(r"(https?://[^/\s]+/(?:v\d+/)?)[A-Za-z0-9_-]{16,}")

_NOISY_LOGGERS = ("aiohttp", "asyncio", "sqlalchemy.engine", "web3")


def _mask_secrets(
    logger: structlog.types.WrappedLogger,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """Redact secret keys and RPC keys embedded in URL values."""
    for key, value in event_dict.items():
        if _SECRET_KEYS.search(key):
            event_dict[key] = _MASK
        elif isinstance(value, str):
            event_dict[key] = _RPC_KEY_IN_URL.sub(r"\1" + _MASK, value)
    return event_dict


def setup_logging(log_level: str = "INFO", json_output: bool = True) -> None:
    """Route structlog through stdlib logging with a single stdout handler."""
    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.format_exc_info,
        _mask_secrets,
    ]
    renderer: structlog.types.Processor = (
        structlog.processors.JSONRenderer()
        if json_output
        else structlog.dev.ConsoleRenderer(colors=True)
    )

    structlog.configure(
        processors=[*processors, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        )
    )
    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    for noisy in _NOISY_LOGGERS:
        logging.getLogger(noisy).setLevel(logging.WARNING)


def get_logger(module: str) -> structlog.stdlib.BoundLogger:
    """Logger bound with `module=<module>` context."""
    return structlog.get_logger(module=module)
