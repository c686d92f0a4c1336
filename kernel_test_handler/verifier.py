# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Script verification capability.

Defines the contract the request handler relies on (:class:`ScriptVerifier`)
and the bundled implementation backed by ``python-bitcoinlib``'s script
interpreter (:class:`BitcoinlibVerifier`).

A verifier either returns ``None`` (the input is valid) or raises:

- :class:`InputIndexOutOfRange` when the input index is past the inputs,
- :class:`VerificationRejected` carrying a :class:`VerifyStatus`,
- :class:`UnsupportedScriptError` when the backend cannot judge the spend.

Preconditions are checked in the same order as libbitcoinkernel's
``btck_script_pubkey_verify`` so that both report the same status for the
same request.

Usage::

    with VerificationContext(chain="regtest") as context:
        context.verifier.verify(spk, amount, tx, 0, [], ScriptVerificationFlags.ALL_PRE_TAPROOT)

"""

from __future__ import annotations

import hashlib
import logging
from collections.abc import Sequence
from types import TracebackType
from typing import Final, Protocol, runtime_checkable

import bitcoin
from bitcoin.core import CTransaction, CTxOut, Hash160, ValidationError
from bitcoin.core.key import CPubKey
from bitcoin.core.script import (
    MAX_SCRIPT_ELEMENT_SIZE,
    OP_CHECKMULTISIG,
    OP_CHECKMULTISIGVERIFY,
    OP_CHECKSIG,
    OP_CHECKSIGVERIFY,
    OP_DUP,
    OP_EQUALVERIFY,
    OP_HASH160,
    OP_NOP2,
    OP_NOP3,
    SIGVERSION_WITNESS_V0,
    CScript,
    CScriptInvalidError,
    SignatureHash,
)
from bitcoin.core.scripteval import SCRIPT_VERIFY_FLAGS_BY_NAME, EvalScript, VerifyScript, VerifyScriptError
from bitcoin.core.serialize import SerializationError

from kernel_test_handler.flags import ScriptVerificationFlags
from kernel_test_handler.status import VerifyStatus

__all__ = [
    "CHAINS",
    "BitcoinlibVerifier",
    "InputIndexOutOfRange",
    "MalformedInputError",
    "ScriptVerifier",
    "UnsupportedScriptError",
    "VerificationContext",
    "VerificationRejected",
    "VerifierError",
    "decode_script",
    "decode_spent_output",
    "decode_transaction",
]

_logger = logging.getLogger("kernel_test_handler.verifier")

CHAINS: Final[tuple[str, ...]] = ("mainnet", "testnet", "regtest")
"""Chain parameter sets accepted by :class:`VerificationContext`."""


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class VerifierError(Exception):
    """Base class for verification outcomes other than success."""


class InputIndexOutOfRange(VerifierError):
    """The input index does not name an input of the transaction."""

    def __init__(self, input_index: int, input_count: int) -> None:
        """Initialize with the requested index and the transaction's input count."""
        self.input_index = input_index
        self.input_count = input_count
        super().__init__(f"Input index {input_index} out of range for transaction with {input_count} inputs")


class VerificationRejected(VerifierError):
    """The verifier rejected the input; ``status`` says why."""

    def __init__(self, status: VerifyStatus, detail: str = "") -> None:
        """Initialize with a status and optional human-readable detail."""
        self.status = status
        self.detail = detail
        super().__init__(f"{status.name}: {detail}" if detail else status.name)


class MalformedInputError(VerifierError):
    """A hex-encoded input could not be decoded into a domain object."""

    def __init__(self, field: str, reason: str) -> None:
        """Initialize with the offending field name and the decode failure."""
        self.field = field
        self.reason = reason
        super().__init__(f"Malformed {field}: {reason}")


class UnsupportedScriptError(VerifierError):
    """The backend cannot evaluate this kind of script."""


# ---------------------------------------------------------------------------
# Domain object construction
# ---------------------------------------------------------------------------


def _unhex(value: str, field: str) -> bytes:
    try:
        return bytes.fromhex(value)
    except (ValueError, TypeError) as exc:
        raise MalformedInputError(field, str(exc)) from exc


def decode_script(script_hex: str, field: str = "script_pubkey_hex") -> CScript:
    """Build a script from its hex encoding.

    Raises:
        MalformedInputError: If *script_hex* is not valid hex.

    """
    return CScript(_unhex(script_hex, field))


def decode_transaction(tx_hex: str, field: str = "tx_hex") -> CTransaction:
    """Deserialize a transaction (legacy or segwit encoding) from hex.

    Raises:
        MalformedInputError: If *tx_hex* is not valid hex, is truncated, or
            carries trailing bytes.

    """
    raw = _unhex(tx_hex, field)
    try:
        return CTransaction.deserialize(raw)
    except (SerializationError, ValueError) as exc:
        raise MalformedInputError(field, str(exc) or type(exc).__name__) from exc


def decode_spent_output(script_pubkey_hex: str, value: int, field: str = "spent_outputs") -> CTxOut:
    """Build the previous output consumed by an input."""
    return CTxOut(value, decode_script(script_pubkey_hex, field))


# ---------------------------------------------------------------------------
# Capability contract
# ---------------------------------------------------------------------------


@runtime_checkable
class ScriptVerifier(Protocol):
    """Checks one transaction input against the script it spends."""

    def verify(
        self,
        script_pubkey: CScript,
        amount: int,
        tx: CTransaction,
        input_index: int,
        spent_outputs: Sequence[CTxOut],
        flags: ScriptVerificationFlags,
    ) -> None:
        """Return normally if the input is valid under *flags*.

        Raises:
            InputIndexOutOfRange: If *input_index* is not an input of *tx*.
            VerificationRejected: For every other failure.

        """
        ...


# ---------------------------------------------------------------------------
# python-bitcoinlib backend
# ---------------------------------------------------------------------------

_SIGNATURE_OPCODES: Final[frozenset[int]] = frozenset(
    {OP_CHECKSIG, OP_CHECKSIGVERIFY, OP_CHECKMULTISIG, OP_CHECKMULTISIGVERIFY}
)

# Interpreter flag name for each rule, and the opcodes whose behaviour the
# rule changes.  WITNESS and TAPROOT are handled here, not by the interpreter.
_INTERPRETER_RULES: Final[dict[ScriptVerificationFlags, tuple[str, frozenset[int]]]] = {
    ScriptVerificationFlags.P2SH: ("P2SH", frozenset()),
    ScriptVerificationFlags.DERSIG: ("DERSIG", _SIGNATURE_OPCODES),
    ScriptVerificationFlags.NULLDUMMY: ("NULLDUMMY", frozenset({OP_CHECKMULTISIG, OP_CHECKMULTISIGVERIFY})),
    ScriptVerificationFlags.CHECKLOCKTIMEVERIFY: ("CHECKLOCKTIMEVERIFY", frozenset({OP_NOP2})),
    ScriptVerificationFlags.CHECKSEQUENCEVERIFY: ("CHECKSEQUENCEVERIFY", frozenset({OP_NOP3})),
}

# Flags the interpreter accepts by name but never acts on: its OP_NOP2 stays
# a plain NOP whatever the flags say.
_NAMED_BUT_UNIMPLEMENTED: Final[frozenset[str]] = frozenset({"CHECKLOCKTIMEVERIFY"})

_P2WPKH_PROGRAM_SIZE: Final[int] = 20
_P2WSH_PROGRAM_SIZE: Final[int] = 32
_TAPROOT_PROGRAM_SIZE: Final[int] = 32


def _interpreter_flags(flags: ScriptVerificationFlags) -> tuple[set[object], frozenset[int]]:
    """Map *flags* onto interpreter flags.

    Returns the interpreter flags plus the opcodes governed by active rules
    the interpreter does not know; scripts using those cannot be judged.
    """
    enforced: set[object] = set()
    unenforced: set[int] = set()
    for flag, (name, opcodes) in _INTERPRETER_RULES.items():
        if not flags & flag:
            continue
        interpreter_flag = SCRIPT_VERIFY_FLAGS_BY_NAME.get(name)
        if interpreter_flag is None or name in _NAMED_BUT_UNIMPLEMENTED:
            unenforced.update(opcodes)
        else:
            enforced.add(interpreter_flag)
    return enforced, frozenset(unenforced)


def _witness_program(script: bytes) -> tuple[int, bytes] | None:
    """Return ``(version, program)`` if *script* is a witness program."""
    if not 4 <= len(script) <= 42:
        return None
    if script[0] != 0 and not 0x51 <= script[0] <= 0x60:
        return None
    if script[1] != len(script) - 2:
        return None
    return (script[0] - 0x50 if script[0] else 0), script[2:]


def _p2sh_redeem_script(script_sig: CScript, script_pubkey: CScript) -> bytes | None:
    """Return the redeem script a push-only *script_sig* hands to a P2SH output."""
    if not script_pubkey.is_p2sh() or not script_sig.is_push_only():
        return None
    last: bytes | None = None
    try:
        for _, data, _ in script_sig.raw_iter():
            last = data
    except CScriptInvalidError:
        return None
    return last


def _find_opcode(script: bytes, opcodes: frozenset[int]) -> int | None:
    if not opcodes:
        return None
    try:
        for opcode, _, _ in CScript(script).raw_iter():
            if opcode in opcodes:
                return opcode
    except CScriptInvalidError:
        # Evaluation stops at the truncated push; nothing after it runs.
        pass
    return None


def _is_strict_der(sig: bytes) -> bool:
    """BIP66 encoding check for a signature with its trailing hashtype byte."""
    if not 9 <= len(sig) <= 73 or sig[0] != 0x30 or sig[1] != len(sig) - 3:
        return False
    len_r = sig[3]
    if 5 + len_r >= len(sig):
        return False
    len_s = sig[5 + len_r]
    if len_r + len_s + 7 != len(sig) or sig[2] != 0x02 or sig[4 + len_r] != 0x02:
        return False
    if len_r == 0 or sig[4] & 0x80 or (len_r > 1 and sig[4] == 0 and not sig[5] & 0x80):
        return False
    s = 6 + len_r
    return not (len_s == 0 or sig[s] & 0x80 or (len_s > 1 and sig[s] == 0 and not sig[s + 1] & 0x80))


def _check_preconditions(
    tx: CTransaction,
    input_index: int,
    spent_outputs: Sequence[CTxOut],
    flags: ScriptVerificationFlags,
) -> None:
    """Apply libbitcoinkernel's argument checks, in its order."""
    input_count = len(tx.vin)
    if not 0 <= input_index < input_count:
        raise InputIndexOutOfRange(input_index, input_count)
    if int(flags) & ~int(ScriptVerificationFlags.ALL):
        raise VerificationRejected(
            VerifyStatus.ERROR_INVALID_FLAGS, f"unknown bits 0x{int(flags) & ~int(ScriptVerificationFlags.ALL):x}"
        )
    if flags & ScriptVerificationFlags.WITNESS and not flags & ScriptVerificationFlags.P2SH:
        raise VerificationRejected(VerifyStatus.ERROR_INVALID_FLAGS_COMBINATION, "WITNESS requires P2SH")
    if flags & ScriptVerificationFlags.TAPROOT and not spent_outputs:
        raise VerificationRejected(VerifyStatus.ERROR_SPENT_OUTPUTS_REQUIRED)
    if spent_outputs and len(spent_outputs) != input_count:
        raise VerificationRejected(
            VerifyStatus.ERROR_SPENT_OUTPUTS_MISMATCH,
            f"{len(spent_outputs)} spent outputs for {input_count} inputs",
        )


class _Spend:
    """One input being verified, with everything derived from the request."""

    __slots__ = (
        "amount",
        "flags",
        "input_index",
        "interpreter_flags",
        "program",
        "redeem_script",
        "script_pubkey",
        "script_sig",
        "tx",
        "unenforced",
        "witness",
        "wrapped",
    )

    def __init__(
        self, script_pubkey: CScript, amount: int, tx: CTransaction, input_index: int, flags: ScriptVerificationFlags
    ) -> None:
        self.script_pubkey = script_pubkey
        self.amount = amount
        self.tx = tx
        self.input_index = input_index
        self.flags = flags
        self.script_sig: CScript = tx.vin[input_index].scriptSig
        witnesses = tx.wit.vtxinwit
        self.witness: list[bytes] = (
            list(witnesses[input_index].scriptWitness.stack) if input_index < len(witnesses) else []
        )
        self.interpreter_flags, self.unenforced = _interpreter_flags(flags)

        witness_rules = bool(flags & ScriptVerificationFlags.WITNESS)
        self.redeem_script = (
            _p2sh_redeem_script(self.script_sig, script_pubkey) if flags & ScriptVerificationFlags.P2SH else None
        )
        self.program = _witness_program(bytes(script_pubkey)) if witness_rules else None
        self.wrapped = (
            _witness_program(self.redeem_script)
            if witness_rules and self.program is None and self.redeem_script is not None
            else None
        )

    def refuse_unsupported(self) -> None:
        """Raise :class:`UnsupportedScriptError` for spends this backend cannot judge."""
        if (
            self.program is not None
            and self.program[0] == 1
            and len(self.program[1]) == _TAPROOT_PROGRAM_SIZE
            and self.flags & ScriptVerificationFlags.TAPROOT
        ):
            raise UnsupportedScriptError("Taproot (witness v1) spends are not evaluated by this backend")

        scripts: list[tuple[str, bytes]] = [("scriptPubKey", bytes(self.script_pubkey))]
        if self.redeem_script is not None:
            scripts.append(("redeemScript", self.redeem_script))
        witness_program = self.program or self.wrapped
        if (
            witness_program is not None
            and witness_program[0] == 0
            and len(witness_program[1]) == _P2WSH_PROGRAM_SIZE
            and self.witness
        ):
            witness_script = self.witness[-1]
            opcode = _find_opcode(witness_script, _SIGNATURE_OPCODES)
            if opcode is not None:
                raise UnsupportedScriptError(
                    f"witnessScript signature opcode 0x{opcode:02x} is not evaluated by this backend"
                )
            scripts.append(("witnessScript", witness_script))

        for role, script in scripts:
            opcode = _find_opcode(script, self.unenforced)
            if opcode is not None:
                raise UnsupportedScriptError(
                    f"{role} uses opcode 0x{opcode:02x} under a rule this backend cannot enforce"
                )

    def verify_witness(self) -> None:
        """Apply the segregated witness rules after legacy evaluation passed."""
        if self.program is not None:
            if self.script_sig:
                raise VerifyScriptError("scriptSig is not empty")
            self._verify_program(*self.program)
        elif self.wrapped is not None:
            if bytes(self.script_sig) != bytes(CScript([self.redeem_script])):
                raise VerifyScriptError("scriptSig is not exactly a single push of the redeemScript")
            self._verify_program(*self.wrapped)
        elif self.witness:
            raise VerifyScriptError("Unexpected witness")

    def _verify_program(self, version: int, program: bytes) -> None:
        if version != 0:
            # Unused versions stay spendable for future soft forks.
            return
        if len(program) == _P2WPKH_PROGRAM_SIZE:
            self._verify_keyhash(program)
        elif len(program) == _P2WSH_PROGRAM_SIZE:
            self._verify_scripthash(program)
        else:
            raise VerifyScriptError("wrong length for witness program")

    def _verify_keyhash(self, program: bytes) -> None:
        if len(self.witness) != 2:
            raise VerifyScriptError("witness program mismatch")
        _check_item_sizes(self.witness)
        sig, pubkey = self.witness
        if Hash160(pubkey) != program:
            raise VerifyScriptError("witness pubkey does not match program")
        if not sig:
            raise VerifyScriptError("signature check failed")
        if self.flags & ScriptVerificationFlags.DERSIG and not _is_strict_der(sig):
            raise VerifyScriptError("signature DER encoding is not strictly valid")
        script_code = CScript([OP_DUP, OP_HASH160, program, OP_EQUALVERIFY, OP_CHECKSIG])
        sighash = SignatureHash(
            script_code, self.tx, self.input_index, sig[-1], amount=self.amount, sigversion=SIGVERSION_WITNESS_V0
        )
        if not CPubKey(pubkey).verify(sighash, sig[:-1]):
            raise VerifyScriptError("signature check failed")

    def _verify_scripthash(self, program: bytes) -> None:
        if not self.witness:
            raise VerifyScriptError("witness is empty")
        stack = self.witness[:-1]
        witness_script = self.witness[-1]
        _check_item_sizes(stack)
        if hashlib.sha256(witness_script).digest() != program:
            raise VerifyScriptError("witness program mismatch")
        EvalScript(stack, CScript(witness_script), self.tx, self.input_index, flags=self.interpreter_flags)
        if len(stack) != 1:
            raise VerifyScriptError("witnessScript must leave exactly one stack item")
        if not _cast_to_bool(stack[-1]):
            raise VerifyScriptError("witnessScript returned false")


def _check_item_sizes(items: Sequence[bytes]) -> None:
    for i, item in enumerate(items):
        if len(item) > MAX_SCRIPT_ELEMENT_SIZE:
            raise VerifyScriptError(f"maximum push size exceeded by witness item {i}")


def _cast_to_bool(value: bytes) -> bool:
    for i, byte in enumerate(value):
        if byte:
            # Negative zero is false.
            return not (i == len(value) - 1 and byte == 0x80)
    return False


class BitcoinlibVerifier:
    """:class:`ScriptVerifier` backed by ``bitcoin.core.scripteval``.

    The interpreter evaluates legacy and P2SH scripts.  Segregated witness
    version 0 programs are checked here on top of it: pay-to-witness-pubkey-hash
    with the BIP143 signature hash, pay-to-witness-script-hash by evaluating
    the witness script when it has no signature opcodes.

    Anything the backend cannot judge raises :class:`UnsupportedScriptError`
    instead of being accepted: taproot spends under ``TAPROOT``, witness
    scripts with signature opcodes, and scripts using an opcode governed by an
    active rule the interpreter does not implement (``CHECKLOCKTIMEVERIFY``
    and ``CHECKSEQUENCEVERIFY`` with python-bitcoinlib 0.12).
    """

    __slots__ = ()

    def verify(
        self,
        script_pubkey: CScript,
        amount: int,
        tx: CTransaction,
        input_index: int,
        spent_outputs: Sequence[CTxOut],
        flags: ScriptVerificationFlags,
    ) -> None:
        """Verify input *input_index* of *tx* against *script_pubkey*."""
        _check_preconditions(tx, input_index, spent_outputs, flags)

        spend = _Spend(script_pubkey, amount, tx, input_index, flags)
        spend.refuse_unsupported()

        try:
            VerifyScript(spend.script_sig, script_pubkey, tx, input_index, flags=spend.interpreter_flags)
            if flags & ScriptVerificationFlags.WITNESS:
                spend.verify_witness()
        except ValidationError as exc:
            raise VerificationRejected(VerifyStatus.OK, str(exc)) from exc


# ---------------------------------------------------------------------------
# Long-lived context
# ---------------------------------------------------------------------------


class VerificationContext:
    """Process-wide verification state, built once at startup.

    Selects the chain parameters and owns the verifier handed to the
    request handler.  Nothing here changes per request.
    """

    __slots__ = ("_chain", "_closed", "_verifier")

    def __init__(self, chain: str = "mainnet", verifier: ScriptVerifier | None = None) -> None:
        """Select *chain* parameters and create (or adopt) a verifier.

        Raises:
            ValueError: If *chain* is not one of :data:`CHAINS`.

        """
        if chain not in CHAINS:
            raise ValueError(f"Unknown chain {chain!r}; expected one of {', '.join(CHAINS)}")
        bitcoin.SelectParams(chain)
        self._chain = chain
        self._verifier: ScriptVerifier = verifier if verifier is not None else BitcoinlibVerifier()
        self._closed = False
        _logger.info(
            "Verification context created (chain=%s, verifier=%s)",
            chain,
            type(self._verifier).__name__,
            extra={"chain": chain},
        )

    @property
    def chain(self) -> str:
        """Name of the selected chain parameter set."""
        return self._chain

    @property
    def verifier(self) -> ScriptVerifier:
        """The verifier shared by all requests."""
        if self._closed:
            raise RuntimeError("VerificationContext is closed")
        return self._verifier

    def close(self) -> None:
        """Release the context; further use of :attr:`verifier` fails."""
        if not self._closed:
            self._closed = True
            _logger.debug("Verification context closed (chain=%s)", self._chain)

    def __enter__(self) -> VerificationContext:
        """Return self."""
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        """Close the context."""
        self.close()


