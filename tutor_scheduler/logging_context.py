"""Per-turn session id on log records.

The controller opens a ``session_scope`` around each turn. Records
logged inside it, from any module, carry ``record.session_id`` once they
pass a ``SessionIdFilter``: loggers from ``get_session_logger`` attach
it themselves, and ``load_config`` installs it on the root handlers so
the ``[%(session_id)s]`` field in the log format is always filled.
"""

import logging
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator

NO_SESSION = "-"

_session_id: ContextVar[str] = ContextVar("session_id", default=NO_SESSION)


def get_session_id() -> str:
    return _session_id.get()


@contextmanager
def session_scope(session_id: str) -> Iterator[None]:
    """Tag log records with ``session_id`` until the block exits."""
    token = _session_id.set(session_id)
    try:
        yield
    finally:
        _session_id.reset(token)


class SessionIdFilter(logging.Filter):
    """Fills ``record.session_id`` unless an earlier filter already did."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "session_id"):
            record.session_id = get_session_id()  # type: ignore[attr-defined]
        return True


def install_session_filter(logger: logging.Logger) -> None:
    """Add a ``SessionIdFilter`` to every handler of ``logger`` (once)."""
    for handler in logger.handlers:
        if not any(isinstance(f, SessionIdFilter) for f in handler.filters):
            handler.addFilter(SessionIdFilter())


def get_session_logger(name: str) -> logging.Logger:
    logger = logging.getLogger(name)
    if not any(isinstance(f, SessionIdFilter) for f in logger.filters):
        logger.addFilter(SessionIdFilter())
    return logger
