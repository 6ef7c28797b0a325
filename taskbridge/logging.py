"""loguru setup for taskbridge.

The library logs through ``logger.bind(component=...)`` and stays silent until
the embedding application calls ``_setup_logging``. Worker threads and the
host thread both log, so the file sink is enqueued.

    handler_ids = _setup_logging(LogConfig(level="DEBUG"))
    try:
        ...
    finally:
        _teardown_logging(handler_ids)
"""

from __future__ import annotations

import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal, TypeAlias

from loguru import logger

logger.disable("taskbridge")

LogLevel: TypeAlias = Literal["DEBUG", "INFO", "WARNING", "ERROR"]

# Bound extras rendered after the call site, in this order
_CONTEXT_KEYS = ("component", "task_id", "mode", "address")

_FORMAT = (
    "{time:HH:mm:ss.SSS} | {level: <8} | {name}:{function}:{line}"
    "{extra[_ctx]} - {message}"
)


def _format_context(record: Any) -> str:
    extra = record.get("extra", {})
    parts = [f"{k}={extra[k]}" for k in _CONTEXT_KEYS if k in extra]
    return f" [{' '.join(parts)}]" if parts else ""


@dataclass(frozen=True, slots=True)
class LogConfig:
    """Where bridge logs go.

    Attributes:
        level: Minimum level for stderr. The file sink always takes DEBUG.
        file: Log file path, or None for no file.
        console: Whether to log to stderr.
    """

    level: LogLevel = "INFO"
    file: str | None = None
    console: bool = True


def _setup_logging(config: LogConfig) -> list[int]:
    """Enable taskbridge logging; returns the handler ids to pass to teardown."""
    logger.enable("taskbridge")
    logger.configure(patcher=lambda r: r["extra"].update(_ctx=_format_context(r)))

    handler_ids: list[int] = []
    if config.console:
        handler_ids.append(
            logger.add(sys.stderr, level=config.level, format=_FORMAT, filter="taskbridge")
        )
    if config.file:
        Path(config.file).parent.mkdir(parents=True, exist_ok=True)
        handler_ids.append(
            logger.add(
                config.file,
                level="DEBUG",
                format=_FORMAT,
                enqueue=True,
                diagnose=False,
                filter="taskbridge",
            )
        )
    return handler_ids


def _teardown_logging(handler_ids: list[int]) -> None:
    for hid in handler_ids:
        logger.remove(hid)
    logger.disable("taskbridge")
