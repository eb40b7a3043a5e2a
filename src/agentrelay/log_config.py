"""structlog setup.

The child's output owns stdout, so log events go to a per-run
file under the state dir (or stderr when file logging is off).
"""

import logging
import sys
import time
from pathlib import Path

import structlog

from agentrelay.config import Settings


def _level(name: str) -> int:
    level = logging.getLevelNamesMapping().get(name.upper())
    return level if level is not None else logging.INFO


def configure_logging(settings: Settings) -> Path | None:
    """Route structlog output; returns the log file path, if any."""
    level = _level(settings.log_level)
    path: Path | None = None

    if settings.log_to_file:
        settings.log_dir.mkdir(parents=True, exist_ok=True)
        stamp = time.strftime("%Y%m%d-%H%M%S")
        path = settings.log_dir / f"relay-{stamp}.log"
        factory = structlog.WriteLoggerFactory(
            file=path.open("a", encoding="utf-8", buffering=1)
        )
        renderer: structlog.typing.Processor = structlog.processors.JSONRenderer()
    else:
        factory = structlog.WriteLoggerFactory(file=sys.stderr)
        renderer = structlog.dev.ConsoleRenderer(colors=False)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=factory,
    )
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    return path
