# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""JSON formatter and stderr logging setup.

Provides :class:`JsonFormatter`, a :class:`logging.Formatter` subclass
that serializes log records as single-line JSON objects.  All ``extra``
fields attached to a record are included, so ``method`` and the
access-log fields need no allowlist, and the id of the request being
dispatched is stamped on every record.

stdout carries protocol traffic, so :func:`configure_logging` only ever
attaches handlers that write to stderr.
"""

from __future__ import annotations

import json
import logging
import sys
from collections.abc import Sequence
from typing import TextIO

from kernel_test_handler.rpc._common import _current_request_id

__all__ = ["KNOWN_LOGGERS", "JsonFormatter", "configure_logging"]

# Build the set of attribute names that every LogRecord has by default.
# Anything *not* in this set was injected via ``extra``.
_DEFAULT_RECORD_ATTRS: frozenset[str] = frozenset(logging.LogRecord("", 0, "", 0, "", (), None).__dict__.keys()) | {
    "message",
    "asctime",
}

_RESERVED_KEYS: frozenset[str] = frozenset({"timestamp", "level", "logger", "message", "exception", "stack_info"})

_TEXT_FORMAT = "%(name)-36s %(levelname)-5s %(message)s"

KNOWN_LOGGERS: tuple[tuple[str, str], ...] = (
    ("kernel_test_handler", "Root logger for all handler output"),
    ("kernel_test_handler.access", "One structured record per dispatched request"),
    ("kernel_test_handler.rpc", "Dispatch and serve loop lifecycle"),
    ("kernel_test_handler.handlers", "Verification outcomes per request"),
    ("kernel_test_handler.flags", "Flag spec decoding"),
    ("kernel_test_handler.verifier", "Verification context lifecycle"),
    ("kernel_test_handler.wire.request", "Raw request lines"),
    ("kernel_test_handler.wire.response", "Raw response lines"),
    ("kernel_test_handler.wire.transport", "stdin/stdout lifecycle"),
)
"""Logger names with a one-line description of what each emits."""

_KNOWN_LOGGER_NAMES: frozenset[str] = frozenset(name for name, _ in KNOWN_LOGGERS) | {"kernel_test_handler.wire"}


class JsonFormatter(logging.Formatter):
    """One JSON object per record, for machine-read stderr logs.

    ``timestamp``, ``level``, ``logger`` and ``message`` come first and
    win over ``extra`` keys of the same name.  Every other ``extra`` field
    follows.  Records emitted while a request is being dispatched carry its
    ``request_id`` even when the call site did not pass one, so verifier and
    flag decoding records can be joined with the access log.
    """

    def format(self, record: logging.LogRecord) -> str:
        """Format a log record as a single-line JSON string."""
        obj: dict[str, object] = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key, value in record.__dict__.items():
            if key not in _DEFAULT_RECORD_ATTRS and key not in _RESERVED_KEYS:
                obj[key] = value
        if "request_id" not in obj:
            request_id = _current_request_id.get()
            if request_id is not None:
                obj["request_id"] = request_id
        if record.exc_info and record.exc_info[1]:
            obj["exception"] = self.formatException(record.exc_info)
        if record.stack_info:
            obj["stack_info"] = self.formatStack(record.stack_info)
        return json.dumps(obj, default=str, ensure_ascii=False)


def configure_logging(
    level: str | None,
    *,
    json_format: bool = False,
    loggers: Sequence[str] = (),
    stream: TextIO | None = None,
) -> logging.Handler | None:
    """Attach a stderr handler to the target loggers at *level*.

    Does nothing when *level* is ``None``.  Unknown logger names are
    accepted with a warning on stderr.

    Args:
        level: Level name such as ``"DEBUG"``.
        json_format: Use :class:`JsonFormatter` instead of plain text.
        loggers: Logger names to configure; defaults to the package root.
        stream: Destination stream; defaults to ``sys.stderr``.

    Returns:
        The attached handler, or ``None`` when nothing was configured.

    Raises:
        ValueError: If *level* is not a standard level name.

    """
    if level is None:
        return None
    numeric_level = logging.getLevelNamesMapping().get(level.upper())
    if numeric_level is None:
        raise ValueError(f"Unknown log level: {level!r}")

    handler = logging.StreamHandler(stream if stream is not None else sys.stderr)
    handler.setFormatter(JsonFormatter() if json_format else logging.Formatter(_TEXT_FORMAT))

    for name in loggers or ("kernel_test_handler",):
        if name not in _KNOWN_LOGGER_NAMES:
            sys.stderr.write(f"Warning: unknown logger '{name}'\n")
            sys.stderr.flush()
        logger = logging.getLogger(name)
        logger.setLevel(numeric_level)
        logger.addHandler(handler)
    return handler
