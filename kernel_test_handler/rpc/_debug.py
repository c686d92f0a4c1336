# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Debug logging infrastructure for wire protocol diagnostics.

Provides logger instances under the ``kernel_test_handler.wire.*``
hierarchy.  Enabling
``logging.getLogger("kernel_test_handler.wire").setLevel(logging.DEBUG)``
shows every line read from and written to the harness.

Formatting helpers return ``str`` and never log directly.  Call them inside
``isEnabledFor`` guards so there is no overhead when debug logging is off.

Setting ``KERNEL_TEST_HANDLER_WIRE_TRACE=1`` additionally prints a
structlog trace of every line read and written to stderr, independent of
the ``logging`` setup.
"""

from __future__ import annotations

import logging
import os
import sys

import structlog

wire_request_logger = logging.getLogger("kernel_test_handler.wire.request")
"""Request line decoding."""

wire_response_logger = logging.getLogger("kernel_test_handler.wire.response")
"""Response line encoding."""

wire_transport_logger = logging.getLogger("kernel_test_handler.wire.transport")
"""Transport lifecycle (stdio streams, EOF)."""

_MAX_LINE_LEN = 200
"""Maximum characters of a wire line shown by :func:`fmt_line`."""


def fmt_line(line: str) -> str:
    """Format a wire line for logging, truncated and without its newline.

    Returns:
        ``repr`` of the stripped line, with ``...`` appended when truncated.

    """
    text = line.rstrip("\r\n")
    if len(text) > _MAX_LINE_LEN:
        return repr(text[:_MAX_LINE_LEN]) + "..."
    return repr(text)


# ---------------------------------------------------------------------------
# Wire trace (enable with KERNEL_TEST_HANDLER_WIRE_TRACE=1)
# ---------------------------------------------------------------------------

WIRE_TRACE_ENV = "KERNEL_TEST_HANDLER_WIRE_TRACE"
"""Environment variable that turns on the stderr wire trace."""

_WIRE_TRACE = os.environ.get(WIRE_TRACE_ENV, "").lower() in ("1", "true", "yes")
_trace_log: structlog.typing.FilteringBoundLogger | None = None

_TRACE_KEY_ORDER = ["timestamp", "level", "event", "component", "pid"]


def wire_trace_enabled() -> bool:
    """Whether the stderr wire trace was requested at startup."""
    return _WIRE_TRACE


def get_wire_trace_log() -> structlog.typing.FilteringBoundLogger:
    """Get or create the wire trace logger.

    Writes plain ``key=value`` lines straight to stderr.  Neither the
    ``logging`` setup nor structlog's global configuration is touched, so
    the trace can run alongside ``--debug`` output in the same process.
    """
    global _trace_log
    if _trace_log is None:
        _trace_log = structlog.wrap_logger(
            structlog.PrintLogger(file=sys.stderr),
            processors=[
                structlog.processors.add_log_level,
                structlog.processors.TimeStamper(fmt="iso", utc=True),
                structlog.processors.KeyValueRenderer(key_order=_TRACE_KEY_ORDER, drop_missing=True),
            ],
            wrapper_class=structlog.make_filtering_bound_logger(logging.DEBUG),
        ).bind(component="wire", pid=os.getpid())
    return _trace_log
