# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Request handlers for the supported protocol methods.

Currently a single operation, script verification, registered under its
canonical name and a legacy alias::

    {"id": "1", "method": "btck_script_pubkey_verify", "params": {
        "script_pubkey_hex": "0014...", "amount": 10000, "tx_hex": "0200...",
        "input_index": 0, "spent_outputs": [...], "flags": ["P2SH", "WITNESS"]}}

"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Final

from kernel_test_handler.flags import FlagDecodeError, decode_flags
from kernel_test_handler.rpc._common import ErrorType, InvalidParamsError, Response, _request_extra
from kernel_test_handler.rpc._server import Dispatcher, MethodInfo
from kernel_test_handler.status import INVALID_VARIANT, VerifyStatus, variant_for_status
from kernel_test_handler.verifier import (
    InputIndexOutOfRange,
    MalformedInputError,
    UnsupportedScriptError,
    VerificationContext,
    VerificationRejected,
    decode_script,
    decode_spent_output,
    decode_transaction,
)

__all__ = [
    "LEGACY_SCRIPT_VERIFY_METHOD",
    "SCRIPT_VERIFY_METHOD",
    "ScriptVerifyHandler",
    "SpentOutputParams",
    "VerifyParams",
    "build_dispatcher",
    "script_verify_methods",
]

_logger = logging.getLogger("kernel_test_handler.handlers")

SCRIPT_VERIFY_METHOD: Final[str] = "btck_script_pubkey_verify"
LEGACY_SCRIPT_VERIFY_METHOD: Final[str] = "script_pubkey.verify"

_INT64_MIN: Final[int] = -(1 << 63)
_INT64_MAX: Final[int] = (1 << 63) - 1
_UINT32_MAX: Final[int] = (1 << 32) - 1


# ---------------------------------------------------------------------------
# Parameter decoding
# ---------------------------------------------------------------------------


def _require_str(obj: Mapping[str, Any], key: str, where: str) -> str:
    value = obj.get(key)
    if not isinstance(value, str):
        raise InvalidParamsError(f"{where}.{key} must be a string")
    return value


def _require_int(obj: Mapping[str, Any], key: str, where: str, low: int, high: int) -> int:
    value = obj.get(key)
    if not isinstance(value, int) or isinstance(value, bool):
        raise InvalidParamsError(f"{where}.{key} must be an integer")
    if not low <= value <= high:
        raise InvalidParamsError(f"{where}.{key}={value} is out of range [{low}, {high}]")
    return value


@dataclass(frozen=True)
class SpentOutputParams:
    """One entry of ``spent_outputs``: the prior output an input consumes."""

    script_pubkey_hex: str
    value: int

    @classmethod
    def from_json(cls, obj: object, position: int) -> SpentOutputParams:
        """Decode one ``spent_outputs`` element.

        The value field is ``value``; older harnesses send ``amount``.

        Raises:
            InvalidParamsError: On a missing or mistyped field.

        """
        where = f"spent_outputs[{position}]"
        if not isinstance(obj, Mapping):
            raise InvalidParamsError(f"{where} must be an object")
        value_key = "value" if "value" in obj else "amount"
        return cls(
            script_pubkey_hex=_require_str(obj, "script_pubkey_hex", where),
            value=_require_int(obj, value_key, where, _INT64_MIN, _INT64_MAX),
        )


@dataclass(frozen=True)
class VerifyParams:
    """Parameters of a script verification request.

    ``flags`` is kept as the raw JSON value; it is decoded by the handler
    so that an unknown flag name is a verification failure rather than a
    params-shape failure.
    """

    script_pubkey_hex: str
    amount: int
    tx_hex: str
    input_index: int
    spent_outputs: tuple[SpentOutputParams, ...] = ()
    flags: Any = None

    @classmethod
    def from_json(cls, params: Mapping[str, Any]) -> VerifyParams:
        """Decode and validate the ``params`` object.

        Raises:
            InvalidParamsError: On a missing or mistyped field.

        """
        raw_spent = params.get("spent_outputs")
        if raw_spent is None:
            spent_outputs: tuple[SpentOutputParams, ...] = ()
        elif isinstance(raw_spent, list):
            spent_outputs = tuple(SpentOutputParams.from_json(item, i) for i, item in enumerate(raw_spent))
        else:
            raise InvalidParamsError("params.spent_outputs must be an array")
        return cls(
            script_pubkey_hex=_require_str(params, "script_pubkey_hex", "params"),
            amount=_require_int(params, "amount", "params", _INT64_MIN, _INT64_MAX),
            tx_hex=_require_str(params, "tx_hex", "params"),
            input_index=_require_int(params, "input_index", "params", 0, _UINT32_MAX),
            spent_outputs=spent_outputs,
            flags=params.get("flags"),
        )


# ---------------------------------------------------------------------------
# Handler
# ---------------------------------------------------------------------------


def _verify_error(request_id: str, variant: str) -> Response:
    return Response.failed(request_id, ErrorType.SCRIPT_VERIFY, variant)


class ScriptVerifyHandler:
    """Runs script verification requests against a shared context.

    The context is created once per process and only read here.  Every
    outcome, including unexpected faults, becomes a :class:`Response`.
    """

    __slots__ = ("_context",)

    def __init__(self, context: VerificationContext) -> None:
        """Initialize with the process-wide verification context."""
        self._context = context

    def __call__(self, request_id: str, params: VerifyParams) -> Response:
        """Verify one input and translate the outcome."""
        try:
            script_pubkey = decode_script(params.script_pubkey_hex)
            tx = decode_transaction(params.tx_hex)
            spent_outputs = [
                decode_spent_output(output.script_pubkey_hex, output.value) for output in params.spent_outputs
            ]
            flags = decode_flags(params.flags)
            self._context.verifier.verify(
                script_pubkey,
                params.amount,
                tx,
                params.input_index,
                spent_outputs,
                flags,
            )
        except InputIndexOutOfRange as exc:
            _logger.debug("Input index rejected: %s", exc, extra=_request_extra())
            return _verify_error(request_id, variant_for_status(VerifyStatus.ERROR_TX_INPUT_INDEX))
        except VerificationRejected as exc:
            _logger.debug(
                "Verification rejected: %s", exc, extra=_request_extra(status=getattr(exc.status, "name", exc.status))
            )
            return _verify_error(request_id, variant_for_status(exc.status))
        except (FlagDecodeError, MalformedInputError) as exc:
            _logger.info("Malformed verification input: %s", exc, extra=_request_extra())
            return _verify_error(request_id, INVALID_VARIANT)
        except UnsupportedScriptError as exc:
            _logger.warning("Verification not supported: %s", exc, extra=_request_extra())
            return _verify_error(request_id, INVALID_VARIANT)
        except Exception as exc:
            _logger.error("Unexpected verification failure: %s", exc, exc_info=True, extra=_request_extra())
            return _verify_error(request_id, INVALID_VARIANT)
        return Response.succeeded(request_id)


# ---------------------------------------------------------------------------
# Method table
# ---------------------------------------------------------------------------


def script_verify_methods(handler: ScriptVerifyHandler) -> list[MethodInfo]:
    """Return the method table entries served by *handler*."""
    doc = "Verify one transaction input against a scriptPubKey under a flag set."
    return [
        MethodInfo(SCRIPT_VERIFY_METHOD, VerifyParams.from_json, handler, doc),
        MethodInfo(LEGACY_SCRIPT_VERIFY_METHOD, VerifyParams.from_json, handler, doc),
    ]


def build_dispatcher(context: VerificationContext) -> Dispatcher:
    """Build the dispatcher serving every supported method over *context*."""
    return Dispatcher(script_verify_methods(ScriptVerifyHandler(context)))
