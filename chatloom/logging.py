"""Structured logging for chatloom.

Modules log through ``get_logger(__name__)`` with key/value events. Level and
renderer come from ``Config.logging``. While a send is running its prompt id
and model are bound as context variables, so every event emitted on its
behalf (retries, trimming, fallback decisions) carries them.
"""

import logging
import sys
from contextlib import contextmanager
from typing import Callable, Iterator

import structlog

from chatloom.config import Config, get_config

_system_log_sink: Callable[[str], None] | None = None
_active_config: Config | None = None

SEND_CONTEXT_KEYS = ("prompt_id", "model")


class _SinkWriter:
    """File-like target for PrintLogger that forwards whole lines to a callback."""

    def __init__(self, sink: Callable[[str], None]):
        self._sink = sink
        self._buffer = ""

    def write(self, text: str) -> int:
        self._buffer += text
        while "\n" in self._buffer:
            line, self._buffer = self._buffer.split("\n", 1)
            if line:
                self._sink(line)
        return len(text)

    def flush(self) -> None:
        if self._buffer:
            self._sink(self._buffer)
            self._buffer = ""


def set_system_log_sink(sink: Callable[[str], None] | None) -> None:
    """Route log lines to a callback (e.g. a UI status panel) instead of stderr.

    Takes effect immediately when chatloom already configured logging.
    """
    global _system_log_sink
    _system_log_sink = sink
    if _active_config is not None:
        configure_logging(_active_config)


def configure_logging(config: Config | None = None) -> None:
    """Configure structlog from ``config.logging`` (the global config by default)."""
    global _active_config
    config = config or get_config()
    _active_config = config

    log_level = getattr(logging, config.logging.level.upper(), logging.INFO)

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    if config.logging.format == "console":
        # Sinks feed plain-text panels.
        processors.append(structlog.dev.ConsoleRenderer(colors=_system_log_sink is None))
    else:
        processors.append(structlog.processors.JSONRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(
            file=_SinkWriter(_system_log_sink) if _system_log_sink else sys.stderr
        ),
        cache_logger_on_first_use=False,
    )


def ensure_logging(config: Config | None = None) -> None:
    """Configure logging unless the host application already configured structlog."""
    if _active_config is None and not structlog.is_configured():
        configure_logging(config)


@contextmanager
def bind_send_context(prompt_id: str, model: str) -> Iterator[None]:
    """Bind ``prompt_id`` and ``model`` to every event logged inside the block."""
    structlog.contextvars.bind_contextvars(prompt_id=prompt_id, model=model)
    try:
        yield
    finally:
        structlog.contextvars.unbind_contextvars(*SEND_CONTEXT_KEYS)


def get_logger(name: str | None = None) -> structlog.BoundLogger:
    """Get a logger instance.

    Args:
        name: Optional logger name (usually __name__)

    Returns:
        Configured structlog logger
    """
    if name:
        return structlog.get_logger(name)
    return structlog.get_logger()
