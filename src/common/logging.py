"""
Structured logging for the Nyl server, built on structlog.

- One JSON object per line by default (event, logger, level, timestamp)
- Optional human-readable rendering for local debugging
- Credentials are masked before rendering; never log API keys or prompts
"""

import logging
import logging.handlers
import time
from typing import Any, List, Optional

import structlog

from common.config import Config

_SECRET_MARKERS = ("api_key", "apikey", "authorization", "secret", "auth_token")
_MASK = "***"

# Set by setup_logging; read by the renderer on every event
_pretty_print = False


def redact_secrets(_, __, event_dict: dict) -> dict:
    """Mask values whose key looks like a credential."""
    for key in list(event_dict):
        lowered = key.lower()
        if any(marker in lowered for marker in _SECRET_MARKERS) and event_dict[key]:
            event_dict[key] = _MASK
    return event_dict


def pretty_renderer(_, __, event_dict: dict) -> str:
    """
    Render compact JSON, or an indented block when pretty printing is on.

    The block form drops timestamp, level and logger and puts the event name
    on its own line.
    """
    if not _pretty_print:
        return str(structlog.processors.JSONRenderer()(_, __, event_dict))

    fields = {k: v for k, v in event_dict.items() if k not in ("timestamp", "level", "logger")}
    lines = [f"EVENT: {fields.pop('event', 'unknown_event')}"]
    lines.extend(f"  {key}: {value}" for key, value in fields.items())
    lines.append("-" * 50)
    return "\n".join(lines)


def _build_handlers(config: Config) -> List[logging.Handler]:
    formatter = logging.Formatter("%(message)s")

    console = logging.StreamHandler()
    console.setFormatter(formatter)
    handlers: List[logging.Handler] = [console]

    if config.save_to_file:
        rotating = logging.handlers.RotatingFileHandler(
            filename=config.log_file_path,
            maxBytes=config.max_log_file_size,
            backupCount=config.backup_count,
            encoding="utf-8",
        )
        rotating.setFormatter(formatter)
        handlers.append(rotating)

    return handlers


def setup_logging(config: Config) -> None:
    """
    Route structlog through stdlib logging with the configured level and sinks.

    Args:
        config: Application configuration (log level, pretty print, file output)
    """
    global _pretty_print
    _pretty_print = config.enable_pretty_print

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            redact_secrets,
            pretty_renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        handlers=_build_handlers(config),
        format="%(message)s",
        force=True,
    )

    # uvicorn's own access log duplicates request_logging_middleware
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    # httpx logs every upstream request line at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)


class TimedLogger:
    """Logs ``event`` with ``elapsed_ms`` (and whether it raised) when the block exits."""

    def __init__(self, logger: structlog.BoundLogger, event: str, **context: Any):
        self.logger = logger
        self.event = event
        self.context = context
        self._started: Optional[float] = None

    def __enter__(self) -> "TimedLogger":
        self._started = time.perf_counter()
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        if self._started is None:
            return
        self.logger.info(
            self.event,
            elapsed_ms=round((time.perf_counter() - self._started) * 1000, 2),
            failed=exc_type is not None,
            **self.context,
        )


def get_logger(name: str) -> structlog.BoundLogger:
    """Get a structlog logger named after the calling module."""
    return structlog.get_logger(name)
