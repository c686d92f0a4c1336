# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Wire protocol read/write helpers.

Each request and response is one JSON object on one line::

    Harness→Handler: {"id": "1", "method": "btck_script_pubkey_verify", "params": {...}}
    Handler→Harness: {"id": "1", "success": true}
    Handler→Harness: {"id": "2", "error": {"type": "ScriptVerify", "variant": "TxInputIndex"}}

"""

from __future__ import annotations

import json
import logging

from kernel_test_handler.rpc._common import InvalidRequestError, Request, Response
from kernel_test_handler.rpc._debug import fmt_line, wire_request_logger, wire_response_logger


def decode_request(line: str) -> Request:
    """Decode one input line into a :class:`Request`.

    Raises:
        InvalidRequestError: If the line is not JSON, not a JSON object, or
            its ``id`` / ``method`` are missing or not strings.

    """
    if wire_request_logger.isEnabledFor(logging.DEBUG):
        wire_request_logger.debug("Read request line: %s", fmt_line(line))
    try:
        obj = json.loads(line)
    except (ValueError, RecursionError) as exc:
        raise InvalidRequestError(f"Malformed JSON: {exc}") from exc
    if not isinstance(obj, dict):
        raise InvalidRequestError(f"Request must be a JSON object, got {type(obj).__name__}")
    request_id = obj.get("id")
    if not isinstance(request_id, str):
        raise InvalidRequestError("Request 'id' must be a string")
    method = obj.get("method")
    if not isinstance(method, str):
        raise InvalidRequestError("Request 'method' must be a string")
    request = Request(id=request_id, method=method, params=obj.get("params"))
    if wire_request_logger.isEnabledFor(logging.DEBUG):
        wire_request_logger.debug(
            "Parsed request: id=%r, method=%s, params=%s",
            request.id,
            request.method,
            "absent" if request.params is None else type(request.params).__name__,
        )
    return request


def encode_response(response: Response) -> str:
    """Encode a response as a single line of JSON (no trailing newline).

    Non-ASCII text is written as UTF-8.  Strings that cannot be encoded as
    UTF-8 (lone surrogates from ``\\ud800``-style escapes in the request)
    fall back to ``\\u`` escapes so the ``id`` still round-trips.
    """
    obj = response.to_dict()
    line = json.dumps(obj, ensure_ascii=False, separators=(",", ":"))
    try:
        line.encode("utf-8")
    except UnicodeEncodeError:
        line = json.dumps(obj, ensure_ascii=True, separators=(",", ":"))
    if wire_response_logger.isEnabledFor(logging.DEBUG):
        wire_response_logger.debug("Write response line: %s", fmt_line(line))
    return line
