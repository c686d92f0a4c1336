# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Constants, errors, and message types for the line protocol."""

from __future__ import annotations

import logging
from contextvars import ContextVar
from dataclasses import dataclass
from enum import StrEnum
from typing import Any, ClassVar, Final

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_logger = logging.getLogger("kernel_test_handler.rpc")
_access_logger = logging.getLogger("kernel_test_handler.access")

UNKNOWN_REQUEST_ID: Final[str] = "unknown"
"""Response ``id`` used when the request line could not be parsed."""

SUCCESS_MARKER: Final[bool] = True
"""Value of ``success`` for a verification that passed."""


class ErrorType(StrEnum):
    """Values of ``error.type`` on the wire."""

    INVALID_REQUEST = "InvalidRequest"
    INVALID_PARAMS = "InvalidParams"
    METHOD_NOT_FOUND = "MethodNotFound"
    INTERNAL_ERROR = "InternalError"
    SCRIPT_VERIFY = "ScriptVerify"


# ---------------------------------------------------------------------------
# Per-request correlation ID
# ---------------------------------------------------------------------------

_current_request_id: ContextVar[str | None] = ContextVar("kernel_test_handler_request_id", default=None)


def _request_extra(**extra: object) -> dict[str, object]:
    """Build a logging ``extra`` dict, adding the current request id when set."""
    request_id = _current_request_id.get()
    if request_id is not None:
        extra["request_id"] = request_id
    return extra


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class ProtocolError(Exception):
    """Base class for faults that map directly to a protocol ``error.type``."""

    error_type: ClassVar[ErrorType] = ErrorType.INTERNAL_ERROR


class InvalidRequestError(ProtocolError):
    """The input line is not a well-formed request."""

    error_type = ErrorType.INVALID_REQUEST


class InvalidParamsError(ProtocolError):
    """The request's ``params`` are missing or have the wrong shape."""

    error_type = ErrorType.INVALID_PARAMS


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Request:
    """A decoded request line.

    Attributes:
        id: Opaque correlation id, echoed verbatim on the response.
        method: Name of the operation to invoke.
        params: The raw ``params`` JSON value, or ``None`` when absent.

    """

    id: str
    method: str
    params: Any = None


@dataclass(frozen=True)
class ErrorInfo:
    """The ``error`` member of a failed response."""

    type: str
    variant: str | None = None

    def to_dict(self) -> dict[str, str]:
        """Return the wire representation, omitting an absent ``variant``."""
        obj = {"type": self.type}
        if self.variant is not None:
            obj["variant"] = self.variant
        return obj


@dataclass(frozen=True)
class Response:
    """One response line.  Exactly one of ``success`` and ``error`` is set."""

    id: str
    success: Any = None
    error: ErrorInfo | None = None

    def __post_init__(self) -> None:
        """Reject responses carrying both or neither of ``success`` and ``error``."""
        if (self.success is None) == (self.error is None):
            raise ValueError("Response must carry exactly one of 'success' or 'error'")

    @classmethod
    def succeeded(cls, request_id: str, value: Any = SUCCESS_MARKER) -> Response:
        """Build a success response."""
        return cls(id=request_id, success=value)

    @classmethod
    def failed(cls, request_id: str, error_type: str, variant: str | None = None) -> Response:
        """Build an error response."""
        return cls(id=request_id, error=ErrorInfo(type=error_type, variant=variant))

    @property
    def ok(self) -> bool:
        """Whether this is a success response."""
        return self.error is None

    def to_dict(self) -> dict[str, Any]:
        """Return the wire representation."""
        if self.error is not None:
            return {"id": self.id, "error": self.error.to_dict()}
        return {"id": self.id, "success": self.success}
