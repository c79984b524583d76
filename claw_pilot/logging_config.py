"""
Logging setup shared by the CLI and the dashboard.

Components log through ``logging.getLogger("claw_pilot.<module>")``; the
dashboard request log goes through structlog. Each CLI invocation and each
dashboard request runs inside a ``correlation_scope``, and its id is stamped
on stdlib records (``%(correlation_id)s``) and structlog events alike, so a
single ``restart`` can be followed across lifecycle, service manager and
connection logs.
"""
import contextvars
import logging
import uuid
from collections.abc import Iterator
from contextlib import contextmanager

import structlog

LOG_FORMAT = "%(asctime)s [%(name)s] %(levelname)s [%(correlation_id)s] %(message)s"
NO_CORRELATION_ID = "-"

_correlation_id: contextvars.ContextVar[str] = contextvars.ContextVar(
    "claw_pilot_correlation_id", default=NO_CORRELATION_ID
)


def current_correlation_id() -> str:
    return _correlation_id.get()


@contextmanager
def correlation_scope(cid: str | None = None) -> Iterator[str]:
    """Run the enclosed block under ``cid``, or a fresh 12-hex id when omitted."""
    cid = cid or uuid.uuid4().hex[:12]
    token = _correlation_id.set(cid)
    try:
        yield cid
    finally:
        _correlation_id.reset(token)


class CorrelationFilter(logging.Filter):
    """Copies the active correlation id onto every record the handler sees."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = _correlation_id.get()
        return True


def stamp_correlation_id(logger, method_name, event_dict):
    event_dict.setdefault("correlation_id", _correlation_id.get())
    return event_dict


def configure_logging(level: int = logging.INFO, json_output: bool | None = None) -> None:
    """Install the root handler and configure structlog.

    ``json_output`` defaults to JSON unless running at DEBUG.
    """
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    handler.addFilter(CorrelationFilter())
    # force=True: uvicorn may have installed its own handlers already.
    logging.basicConfig(level=level, handlers=[handler], force=True)

    if json_output is None:
        json_output = level > logging.DEBUG
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            stamp_correlation_id,
            structlog.processors.JSONRenderer() if json_output else structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=False,
    )


def get_logger(name: str):
    return structlog.get_logger(name)
