"""
structlog setup for applications embedding the client.

The library itself only calls ``structlog.get_logger()``; applications that
want the client's events routed somewhere call ``configure_logging()`` once
at startup.
"""

import logging
import sys
from typing import Optional

import structlog

LOG_LEVELS = {
    'none': logging.CRITICAL + 10,
    'normal': logging.INFO,
    'debug': logging.DEBUG,
}


def _resolve_level(level) -> int:
    if isinstance(level, int):
        return level
    name = str(level).lower()
    if name in LOG_LEVELS:
        return LOG_LEVELS[name]
    resolved = logging.getLevelName(name.upper())
    if not isinstance(resolved, int):
        raise ValueError(f"Unknown log level: {level!r}")
    return resolved


def configure_logging(level="normal", echo: bool = True, log_file: Optional[str] = None,
                      json: bool = False) -> None:
    """
    Route client log events through stdlib logging.

    Args:
        level: 'none', 'normal', 'debug' or any stdlib level name/number
        echo: also write events to stderr
        log_file: optional path of a log file to append to
        json: render events as JSON lines instead of key=value text
    """
    numeric_level = _resolve_level(level)

    handlers = []
    if echo:
        handlers.append(logging.StreamHandler(sys.stderr))
    if log_file:
        handlers.append(logging.FileHandler(log_file, encoding='utf-8'))
    if not handlers:
        handlers.append(logging.NullHandler())

    root = logging.getLogger("pgwire_client")
    for handler in list(root.handlers):
        root.removeHandler(handler)
    for handler in handlers:
        handler.setFormatter(logging.Formatter("%(asctime)s %(process)d %(levelname)s %(message)s"))
        root.addHandler(handler)
    root.setLevel(numeric_level)
    root.propagate = False

    renderer = structlog.processors.JSONRenderer() if json else structlog.processors.KeyValueRenderer(
        key_order=['event', 'connection_id'], drop_missing=True)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            renderer,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )
