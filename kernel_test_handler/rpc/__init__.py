# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Line-delimited JSON request/response protocol.

Wire Protocol
-------------
One JSON object per line in each direction, strictly alternating: the
handler reads a request line, writes exactly one response line, flushes,
and only then reads the next request.  Blank lines are ignored.

**Request**::

    {"id": "<string>", "method": "<string>", "params": {...}}

**Response** (exactly one of ``success`` / ``error``)::

    {"id": "<string>", "success": true}
    {"id": "<string>", "error": {"type": "<string>", "variant": "<string>"}}

Error Types
-----------
- ``InvalidRequest``: the line is not a request; ``id`` is ``"unknown"``
- ``MethodNotFound``: unknown ``method``
- ``InvalidParams``: ``params`` missing or of the wrong shape
- ``InternalError``: unexpected fault inside a handler
- ``ScriptVerify``: verification did not succeed; ``variant`` says why

"""

from __future__ import annotations

from kernel_test_handler.rpc._common import (
    SUCCESS_MARKER,
    UNKNOWN_REQUEST_ID,
    ErrorInfo,
    ErrorType,
    InvalidParamsError,
    InvalidRequestError,
    ProtocolError,
    Request,
    Response,
)
from kernel_test_handler.rpc._server import Dispatcher, MethodHandler, MethodInfo, ParamsDecoder
from kernel_test_handler.rpc._transport import serve_lines, serve_stdio
from kernel_test_handler.rpc._wire import decode_request, encode_response

__all__ = [
    "SUCCESS_MARKER",
    "UNKNOWN_REQUEST_ID",
    "Dispatcher",
    "ErrorInfo",
    "ErrorType",
    "InvalidParamsError",
    "InvalidRequestError",
    "MethodHandler",
    "MethodInfo",
    "ParamsDecoder",
    "ProtocolError",
    "Request",
    "Response",
    "decode_request",
    "encode_response",
    "serve_lines",
    "serve_stdio",
]
