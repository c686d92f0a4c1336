# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Request dispatch."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Literal

from kernel_test_handler.rpc._common import (
    ErrorType,
    InvalidParamsError,
    Request,
    Response,
    _access_logger,
    _current_request_id,
    _logger,
)

ParamsDecoder = Callable[[Mapping[str, Any]], Any]
"""Turns a request's ``params`` object into the handler's parameter type."""

MethodHandler = Callable[[str, Any], Response]
"""Produces a response from a request id and decoded parameters."""


@dataclass(frozen=True)
class MethodInfo:
    """A dispatchable operation.

    Attributes:
        name: Method name as it appears on the wire.
        decode_params: Validates and converts ``params``; raises
            :class:`InvalidParamsError` on a shape mismatch.
        handler: Called with the request id and the decoded parameters.
        doc: One-line description.

    """

    name: str
    decode_params: ParamsDecoder
    handler: MethodHandler
    doc: str = ""


# ---------------------------------------------------------------------------
# Dispatcher helpers
# ---------------------------------------------------------------------------


def _log_method_error(method_name: str, request_id: str, exc: BaseException) -> str:
    """Log an unexpected handler error and return the exception class name."""
    error_type = type(exc).__name__
    _logger.error(
        "Error in %s: %s",
        method_name,
        exc,
        exc_info=True,
        extra={"method": method_name, "request_id": request_id, "error_type": error_type},
    )
    return error_type


def _emit_access_log(
    method_name: str,
    request_id: str,
    duration_ms: float,
    response: Response,
) -> None:
    """Emit a structured access log record for a dispatched request."""
    if not _access_logger.isEnabledFor(logging.INFO):
        return
    status: Literal["ok", "error"] = "ok" if response.ok else "error"
    try:
        extra: dict[str, object] = {
            "method": method_name,
            "request_id": request_id,
            "duration_ms": round(duration_ms, 2),
            "status": status,
            "error_type": response.error.type if response.error is not None else "",
            "error_variant": (response.error.variant or "") if response.error is not None else "",
        }
        _access_logger.info("%s %s", method_name, status, extra=extra)
    except Exception:
        _logger.debug("Access log emission failed", exc_info=True)


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------


class Dispatcher:
    """Routes decoded requests to a fixed table of operations.

    :meth:`dispatch` always returns a :class:`Response`; nothing raised by
    a handler reaches the caller.
    """

    __slots__ = ("_methods",)

    def __init__(self, methods: Iterable[MethodInfo]) -> None:
        """Initialize with the supported operations.

        Raises:
            ValueError: If two operations share a name.

        """
        table: dict[str, MethodInfo] = {}
        for info in methods:
            if info.name in table:
                raise ValueError(f"Duplicate method name: {info.name!r}")
            table[info.name] = info
        self._methods: Mapping[str, MethodInfo] = MappingProxyType(table)
        _logger.info(
            "Dispatcher created (methods=%d)",
            len(table),
            extra={"methods": sorted(table)},
        )

    @property
    def methods(self) -> Mapping[str, MethodInfo]:
        """Read-only method table."""
        return self._methods

    def dispatch(self, request: Request) -> Response:
        """Handle one request and return its response."""
        token = _current_request_id.set(request.id)
        start = time.monotonic()
        try:
            response = self._dispatch(request)
        finally:
            _current_request_id.reset(token)
        _emit_access_log(request.method, request.id, (time.monotonic() - start) * 1000, response)
        return response

    def _dispatch(self, request: Request) -> Response:
        info = self._methods.get(request.method)
        if info is None:
            _logger.warning(
                "Unknown method %r; available methods: %s",
                request.method,
                sorted(self._methods),
                extra={"request_id": request.id},
            )
            return Response.failed(request.id, ErrorType.METHOD_NOT_FOUND)

        if request.params is None:
            _logger.warning("Missing params for %s", info.name, extra={"request_id": request.id})
            return Response.failed(request.id, ErrorType.INVALID_PARAMS)
        if not isinstance(request.params, Mapping):
            _logger.warning(
                "Params for %s must be an object, got %s",
                info.name,
                type(request.params).__name__,
                extra={"request_id": request.id},
            )
            return Response.failed(request.id, ErrorType.INVALID_PARAMS)

        try:
            params = info.decode_params(request.params)
        except InvalidParamsError as exc:
            _logger.warning("Invalid params for %s: %s", info.name, exc, extra={"request_id": request.id})
            return Response.failed(request.id, exc.error_type)
        except Exception as exc:
            _log_method_error(info.name, request.id, exc)
            return Response.failed(request.id, ErrorType.INTERNAL_ERROR)

        try:
            return info.handler(request.id, params)
        except Exception as exc:
            _log_method_error(info.name, request.id, exc)
            return Response.failed(request.id, ErrorType.INTERNAL_ERROR)
