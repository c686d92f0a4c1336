# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Conformance test handler for script verification over a line-delimited JSON protocol."""

import logging

from kernel_test_handler.flags import (
    FLAG_NAMES,
    FlagDecodeError,
    ScriptVerificationFlags,
    decode_flags,
)
from kernel_test_handler.handlers import (
    LEGACY_SCRIPT_VERIFY_METHOD,
    SCRIPT_VERIFY_METHOD,
    ScriptVerifyHandler,
    VerifyParams,
    build_dispatcher,
)
from kernel_test_handler.rpc import (
    UNKNOWN_REQUEST_ID,
    Dispatcher,
    ErrorType,
    MethodInfo,
    Request,
    Response,
    serve_lines,
    serve_stdio,
)
from kernel_test_handler.status import VerifyStatus, variant_for_status
from kernel_test_handler.verifier import (
    BitcoinlibVerifier,
    InputIndexOutOfRange,
    ScriptVerifier,
    VerificationContext,
    VerificationRejected,
)

__all__ = [
    # Protocol
    "Dispatcher",
    "ErrorType",
    "MethodInfo",
    "Request",
    "Response",
    "UNKNOWN_REQUEST_ID",
    "serve_lines",
    "serve_stdio",
    # Flags
    "FLAG_NAMES",
    "FlagDecodeError",
    "ScriptVerificationFlags",
    "decode_flags",
    # Status
    "VerifyStatus",
    "variant_for_status",
    # Verification
    "BitcoinlibVerifier",
    "InputIndexOutOfRange",
    "ScriptVerifier",
    "VerificationContext",
    "VerificationRejected",
    # Handlers
    "LEGACY_SCRIPT_VERIFY_METHOD",
    "SCRIPT_VERIFY_METHOD",
    "ScriptVerifyHandler",
    "VerifyParams",
    "build_dispatcher",
]

# Attach NullHandler to the package logger so library users don't get
# "No handler found" warnings.
logging.getLogger("kernel_test_handler").addHandler(logging.NullHandler())
