# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Verification status codes and their wire names.

The verifier reports failures with a :class:`VerifyStatus`; the wire
carries a stable ``variant`` string instead so that the two vocabularies
can evolve independently.
"""

from __future__ import annotations

from collections.abc import Mapping
from enum import IntEnum
from types import MappingProxyType
from typing import Final

__all__ = [
    "INVALID_VARIANT",
    "STATUS_VARIANTS",
    "VerifyStatus",
    "variant_for_status",
]


class VerifyStatus(IntEnum):
    """Why a verification call did not succeed.

    Attributes:
        OK: No precondition failed; the script itself evaluated to false.
        ERROR_TX_INPUT_INDEX: Input index is past the transaction's inputs.
        ERROR_INVALID_FLAGS: Flags contain bits outside the known rule-set.
        ERROR_INVALID_FLAGS_COMBINATION: Flags are known but inconsistent
            (e.g. ``WITNESS`` without ``P2SH``).
        ERROR_SPENT_OUTPUTS_REQUIRED: Taproot rules need spent outputs.
        ERROR_SPENT_OUTPUTS_MISMATCH: Spent outputs do not line up with the
            transaction's inputs.
        ERROR_INVALID: Catch-all.

    """

    OK = 0
    ERROR_TX_INPUT_INDEX = 1
    ERROR_INVALID_FLAGS = 2
    ERROR_INVALID_FLAGS_COMBINATION = 3
    ERROR_SPENT_OUTPUTS_REQUIRED = 4
    ERROR_SPENT_OUTPUTS_MISMATCH = 5
    ERROR_INVALID = 6


INVALID_VARIANT: Final[str] = "Invalid"

STATUS_VARIANTS: Final[Mapping[VerifyStatus, str]] = MappingProxyType(
    {
        VerifyStatus.OK: "ScriptRejected",
        VerifyStatus.ERROR_TX_INPUT_INDEX: "TxInputIndex",
        VerifyStatus.ERROR_INVALID_FLAGS: "InvalidFlags",
        VerifyStatus.ERROR_INVALID_FLAGS_COMBINATION: "InvalidFlagsCombination",
        VerifyStatus.ERROR_SPENT_OUTPUTS_REQUIRED: "SpentOutputsRequired",
        VerifyStatus.ERROR_SPENT_OUTPUTS_MISMATCH: "SpentOutputsMismatch",
        VerifyStatus.ERROR_INVALID: INVALID_VARIANT,
    }
)


def variant_for_status(status: VerifyStatus | int) -> str:
    """Return the wire ``variant`` for *status*.

    Raw integers are accepted so that codes from a newer engine still map;
    anything not in :data:`STATUS_VARIANTS` becomes ``"Invalid"``.
    """
    try:
        return STATUS_VARIANTS[VerifyStatus(status)]
    except (TypeError, ValueError, KeyError):
        return INVALID_VARIANT
