# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Line-oriented serve loop over text streams."""

from __future__ import annotations

import io
import logging
import sys
from typing import TYPE_CHECKING, TextIO

from kernel_test_handler.rpc._common import (
    UNKNOWN_REQUEST_ID,
    InvalidRequestError,
    Response,
    _logger,
)
from kernel_test_handler.rpc._debug import fmt_line, get_wire_trace_log, wire_trace_enabled, wire_transport_logger
from kernel_test_handler.rpc._wire import decode_request, encode_response

if TYPE_CHECKING:
    from kernel_test_handler.rpc._server import Dispatcher


def _respond(dispatcher: Dispatcher, line: str) -> Response:
    try:
        request = decode_request(line)
    except InvalidRequestError as exc:
        _logger.warning("Rejecting request line: %s", exc)
        return Response.failed(UNKNOWN_REQUEST_ID, exc.error_type)
    return dispatcher.dispatch(request)


def serve_lines(dispatcher: Dispatcher, reader: TextIO, writer: TextIO) -> int:
    """Serve requests from *reader* until EOF, writing responses to *writer*.

    Blank lines are skipped.  Every other line produces exactly one response
    line, flushed before the next request is read.

    Returns:
        The number of responses written.

    Raises:
        OSError: If reading or writing the streams fails.  Per-request
            faults never raise.

    """
    trace = get_wire_trace_log() if wire_trace_enabled() else None
    served = 0
    while True:
        line = reader.readline()
        if not line:
            break
        if not line.strip():
            continue
        if trace is not None:
            trace.debug("request line read", chars=len(line), line=fmt_line(line))
        response = _respond(dispatcher, line)
        out = encode_response(response)
        writer.write(out + "\n")
        writer.flush()
        served += 1
        if trace is not None:
            trace.debug("response line written", id=response.id, ok=response.ok, line=fmt_line(out))
    if trace is not None:
        trace.debug("input closed", served=served)
    if wire_transport_logger.isEnabledFor(logging.DEBUG):
        wire_transport_logger.debug("serve_lines: EOF after %d responses", served)
    return served


def _use_utf8(stream: TextIO, errors: str) -> None:
    if isinstance(stream, io.TextIOWrapper):
        stream.reconfigure(encoding="utf-8", errors=errors)


def serve_stdio(dispatcher: Dispatcher, stdin: TextIO | None = None, stdout: TextIO | None = None) -> int:
    """Serve requests over stdin/stdout until EOF.

    This is the process entry point for the harness.  Undecodable input
    bytes are replaced rather than raised, so they surface as
    ``InvalidRequest`` responses.  A failure of the transport itself is
    reported on stderr as ``Fatal error: ...``.

    Emits a diagnostic warning to stderr when stdin or stdout is connected
    to a terminal, since the process expects a harness on the other end.

    Returns:
        Process exit status: ``0`` on EOF, ``1`` on a transport fault.

    """
    reader = stdin if stdin is not None else sys.stdin
    writer = stdout if stdout is not None else sys.stdout
    if reader.isatty() or writer.isatty():
        sys.stderr.write(
            "WARNING: This process speaks a line-delimited JSON protocol on stdin/stdout "
            "and is not intended to be run interactively.\n"
        )
    try:
        _use_utf8(reader, "replace")
        _use_utf8(writer, "strict")
        if wire_transport_logger.isEnabledFor(logging.DEBUG):
            wire_transport_logger.debug("serve_stdio: methods=%s", sorted(dispatcher.methods))
        served = serve_lines(dispatcher, reader, writer)
    except Exception as exc:
        _logger.critical("Serve loop aborted: %s", exc, exc_info=True)
        sys.stderr.write(f"Fatal error: {exc}\n")
        sys.stderr.flush()
        return 1
    _logger.info("Input closed after %d responses", served, extra={"responses": served})
    return 0
