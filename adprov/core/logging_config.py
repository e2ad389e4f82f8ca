"""Root-logger setup for Lambda invocations and the local CLI.

Modules log through ``logging.getLogger(__name__)`` and never touch handlers;
:func:`configure_logging` is the only place that does.  Two environment
variables are consulted when no explicit argument is given:

``LOG_LEVEL``
    One of DEBUG, INFO, WARNING, ERROR, CRITICAL.  Default INFO.
``LOG_FORMAT``
    ``text`` for one human-readable line per record, ``json`` for
    CloudWatch Logs Insights queries.  Default text.

Every record is stamped with the correlation id of the invocation in
progress (``request_id``), taken from :data:`REQUEST_ID_CTX`.
"""

from __future__ import annotations

import json
import logging
import os
import sys
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import Any

__all__ = ["configure_logging", "JsonFormatter", "REQUEST_ID_CTX", "RequestContextFilter"]

#: Correlation id of the lifecycle invocation in progress, ``"-"`` outside one.
REQUEST_ID_CTX: ContextVar[str] = ContextVar("request_id", default="-")

_LEVELS = ("CRITICAL", "DEBUG", "ERROR", "INFO", "WARNING")
_FORMATS = ("json", "text")
_SDK_LOGGERS = ("boto3", "botocore", "urllib3", "httpx", "httpcore", "asyncio")

_LINE_FORMAT = "%(asctime)s %(levelname)-8s [%(request_id)s] %(name)s: %(message)s"
_LINE_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


class RequestContextFilter(logging.Filter):
    """Copy :data:`REQUEST_ID_CTX` onto each record as ``request_id``.

    Attached to handlers so that records from boto3 and httpx get the
    attribute too.
    """

    def filter(self, record: logging.LogRecord) -> bool:  # noqa: A003
        record.request_id = REQUEST_ID_CTX.get("-")
        return True


def _resolve(value: str | None, env_var: str, default: str, allowed: tuple[str, ...]) -> str:
    resolved = value or os.environ.get(env_var, default)
    resolved = resolved.upper() if env_var == "LOG_LEVEL" else resolved.lower()
    if resolved not in allowed:
        raise ValueError(f"Unknown {env_var} {resolved!r}. Must be one of: {', '.join(allowed)}")
    return resolved


def configure_logging(
    level: str | None = None,
    fmt: str | None = None,
    *,
    force: bool = False,
) -> None:
    """Install the adprov handler on the root logger.

    The Lambda runtime already owns a root handler.  Unless *force* is set,
    such a handler is kept: it only gets the level and a
    :class:`RequestContextFilter`.

    Args:
        level: Overrides ``LOG_LEVEL``.
        fmt: Overrides ``LOG_FORMAT``.
        force: Drop existing root handlers first (used by the CLI and tests).

    Raises:
        ValueError: On an unsupported level or format.
    """
    resolved_level = _resolve(level, "LOG_LEVEL", "INFO", _LEVELS)
    resolved_fmt = _resolve(fmt, "LOG_FORMAT", "text", _FORMATS)

    root = logging.getLogger()
    root.setLevel(resolved_level)

    if root.handlers and not force:
        for existing in root.handlers:
            if not any(isinstance(f, RequestContextFilter) for f in existing.filters):
                existing.addFilter(RequestContextFilter())
        return

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(resolved_level)
    handler.addFilter(RequestContextFilter())
    handler.setFormatter(
        JsonFormatter()
        if resolved_fmt == "json"
        else logging.Formatter(fmt=_LINE_FORMAT, datefmt=_LINE_DATE_FORMAT)
    )
    root.handlers.clear()
    root.addHandler(handler)

    sdk_level = logging.DEBUG if resolved_level == "DEBUG" else logging.WARNING
    for name in _SDK_LOGGERS:
        logging.getLogger(name).setLevel(sdk_level)


class JsonFormatter(logging.Formatter):
    """One JSON object per record: ``ts``, ``level``, ``logger``, ``message``
    and ``extra`` (every attribute passed through ``extra=``, plus
    ``request_id``).  ``exc_info`` and ``stack_info`` are added when set.
    """

    # Attributes every LogRecord carries; anything else came from ``extra=``.
    _RECORD_ATTRS: frozenset[str] = frozenset(
        vars(logging.LogRecord("", logging.INFO, "", 0, "", None, None))
    ) | {"message", "asctime"}

    def format(self, record: logging.LogRecord) -> str:  # noqa: A003
        record.message = record.getMessage()
        stamp = datetime.fromtimestamp(record.created, tz=UTC)

        payload: dict[str, Any] = {
            "ts": stamp.isoformat(timespec="milliseconds").replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.message,
            "extra": {
                key: value
                for key, value in vars(record).items()
                if key not in self._RECORD_ATTRS
            },
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        elif record.exc_text:
            payload["exc_info"] = record.exc_text
        if record.stack_info:
            payload["stack_info"] = self.formatStack(record.stack_info)

        return json.dumps(payload, default=str)
