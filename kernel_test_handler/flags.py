# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Script verification flag decoding.

The harness has sent the active rule-set in three shapes over its history,
and every shape must keep decoding to the same bits so that old fixtures
stay valid:

    3605                                          # bare uint32 mask
    "btck_ScriptVerificationFlags_WITNESS"        # prefixed single name
    ["P2SH", "VERIFY_WITNESS", "taproot"]         # list of short names

Names are matched case-insensitively after stripping any of
``FLAG_NAME_PREFIXES``.  Each canonical name is also reachable through its
deprecated ``VERIFY_`` alias.

KEY NAMES
---------
ScriptVerificationFlags : IntFlag with libbitcoinkernel bit numbering
FLAG_NAMES : Closed name → flags lookup table (aliases included)
decode_flags : FlagSpec → ScriptVerificationFlags
FlagDecodeError : Raised for an unrecognised or mistyped flag spec

"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from enum import IntFlag
from types import MappingProxyType
from typing import Final

__all__ = [
    "FLAG_NAMES",
    "FLAG_NAME_PREFIXES",
    "FlagDecodeError",
    "ScriptVerificationFlags",
    "decode_flag_name",
    "decode_flags",
]

_logger = logging.getLogger("kernel_test_handler.flags")

_UINT32_LIMIT: Final[int] = 1 << 32


class ScriptVerificationFlags(IntFlag):
    """Verification rules, numbered as in ``btck_ScriptVerificationFlags``."""

    NONE = 0
    P2SH = 1 << 0
    DERSIG = 1 << 2
    NULLDUMMY = 1 << 4
    CHECKLOCKTIMEVERIFY = 1 << 9
    CHECKSEQUENCEVERIFY = 1 << 10
    WITNESS = 1 << 11
    TAPROOT = 1 << 17
    ALL = P2SH | DERSIG | NULLDUMMY | CHECKLOCKTIMEVERIFY | CHECKSEQUENCEVERIFY | WITNESS | TAPROOT
    ALL_PRE_TAPROOT = ALL & ~TAPROOT


class FlagDecodeError(ValueError):
    """Raised when a flag spec cannot be decoded.

    Attributes:
        token: The offending value (a name, or the whole spec when its
            shape is wrong).

    """

    def __init__(self, message: str, token: object) -> None:
        """Initialize with a message and the offending token."""
        self.token = token
        super().__init__(message)


FLAG_NAME_PREFIXES: Final[tuple[str, ...]] = ("btck_ScriptVerificationFlags_",)
"""Prefixes stripped (case-insensitively) before a name is looked up."""

_LEGACY_ALIAS_PREFIX: Final[str] = "VERIFY_"

_CANONICAL_NAMES: Final[dict[str, ScriptVerificationFlags]] = {
    "NONE": ScriptVerificationFlags.NONE,
    "P2SH": ScriptVerificationFlags.P2SH,
    "DERSIG": ScriptVerificationFlags.DERSIG,
    "NULLDUMMY": ScriptVerificationFlags.NULLDUMMY,
    "CHECKLOCKTIMEVERIFY": ScriptVerificationFlags.CHECKLOCKTIMEVERIFY,
    "CHECKSEQUENCEVERIFY": ScriptVerificationFlags.CHECKSEQUENCEVERIFY,
    "WITNESS": ScriptVerificationFlags.WITNESS,
    "TAPROOT": ScriptVerificationFlags.TAPROOT,
    "ALL": ScriptVerificationFlags.ALL,
    "ALL_PRE_TAPROOT": ScriptVerificationFlags.ALL_PRE_TAPROOT,
}

FLAG_NAMES: Final[Mapping[str, ScriptVerificationFlags]] = MappingProxyType(
    {
        **_CANONICAL_NAMES,
        **{f"{_LEGACY_ALIAS_PREFIX}{name}": value for name, value in _CANONICAL_NAMES.items()},
    }
)
"""Upper-case name → flags.  New aliases are added here, not in the decoder."""


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------


def _strip_prefix(name: str) -> str:
    folded = name.casefold()
    for prefix in FLAG_NAME_PREFIXES:
        if folded.startswith(prefix.casefold()):
            return name[len(prefix) :]
    return name


def decode_flag_name(name: str) -> ScriptVerificationFlags:
    """Decode a single flag name.

    Raises:
        FlagDecodeError: If the name (after prefix stripping and
            upper-casing) is not in :data:`FLAG_NAMES`.

    """
    key = _strip_prefix(name.strip()).upper()
    try:
        return FLAG_NAMES[key]
    except KeyError:
        raise FlagDecodeError(f"Unknown flag: {name!r}", name) from None


def _as_mask(spec: object) -> ScriptVerificationFlags | None:
    # bool is an int subclass but never a valid mask on the wire
    if not isinstance(spec, int) or isinstance(spec, bool):
        return None
    if not 0 <= spec < _UINT32_LIMIT:
        raise FlagDecodeError(f"Flag mask {spec} does not fit in uint32", spec)
    return ScriptVerificationFlags(spec)


def _as_name(spec: object) -> ScriptVerificationFlags | None:
    if not isinstance(spec, str):
        return None
    return decode_flag_name(spec)


def _as_sequence(spec: object) -> ScriptVerificationFlags | None:
    if not isinstance(spec, (list, tuple)):
        return None
    combined = ScriptVerificationFlags.NONE
    for element in spec:
        if not isinstance(element, str):
            raise FlagDecodeError(f"Flag list elements must be strings, got {type(element).__name__}", element)
        combined |= decode_flag_name(element)
    return combined


_DECODERS = (_as_mask, _as_name, _as_sequence)


def decode_flags(spec: object) -> ScriptVerificationFlags:
    """Decode a flag spec in any supported wire shape.

    Shapes are tried in a fixed order: integer mask, single name, list of
    names.  ``None`` decodes to :attr:`ScriptVerificationFlags.NONE`.

    Integer masks are passed through bit-for-bit, including bits outside
    :attr:`ScriptVerificationFlags.ALL`; rejecting those is the verifier's
    job.

    Args:
        spec: The decoded JSON value of the ``flags`` parameter.

    Returns:
        The canonical flag set.

    Raises:
        FlagDecodeError: For unknown names, out-of-range masks, non-string
            list elements, or any other JSON type.

    """
    if spec is None:
        return ScriptVerificationFlags.NONE
    for decoder in _DECODERS:
        flags = decoder(spec)
        if flags is not None:
            if _logger.isEnabledFor(logging.DEBUG):
                _logger.debug("Decoded flags %r via %s -> 0x%x", spec, decoder.__name__, int(flags))
            return flags
    raise FlagDecodeError(f"Unsupported flags value of type {type(spec).__name__}", spec)
