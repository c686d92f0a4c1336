"""Shared test fixtures for kernel-test-handler tests."""

from __future__ import annotations

import hashlib
from collections.abc import Iterator, Sequence
from dataclasses import dataclass, field
from typing import Any

import pytest
from bitcoin.core import COutPoint, CTransaction, CTxIn, CTxInWitness, CTxOut, CTxWitness, Hash160, b2x
from bitcoin.wallet import CKey
from bitcoin.core.script import (
    OP_0,
    OP_CHECKSIG,
    OP_DUP,
    OP_EQUAL,
    OP_EQUALVERIFY,
    OP_HASH160,
    OP_TRUE,
    SIGHASH_ALL,
    SIGVERSION_WITNESS_V0,
    CScript,
    CScriptWitness,
    SignatureHash,
)

from kernel_test_handler.flags import ScriptVerificationFlags
from kernel_test_handler.handlers import SCRIPT_VERIFY_METHOD, build_dispatcher
from kernel_test_handler.rpc import Dispatcher
from kernel_test_handler.verifier import VerificationContext

# ---------------------------------------------------------------------------
# Transactions
# ---------------------------------------------------------------------------

# version 1, one input (prevout 11..11:0, empty scriptSig), one 1000 sat OP_TRUE output, locktime 0
ONE_INPUT_TX_HEX = (
    "01000000"
    + "01"
    + "11" * 32
    + "00000000"
    + "00"
    + "ffffffff"
    + "01"
    + "e803000000000000"
    + "01"
    + "51"
    + "00000000"
)

# same shape with two inputs
TWO_INPUT_TX_HEX = (
    "01000000"
    "02"
    + "11" * 32
    + "00000000"
    + "00"
    + "ffffffff"
    + "22" * 32
    + "01000000"
    + "00"
    + "ffffffff"
    + "01"
    + "e803000000000000"
    + "01"
    + "51"
    + "00000000"
)

OP_TRUE_HEX = "51"
OP_FALSE_HEX = "00"
TAPROOT_SPK_HEX = "5120" + "ab" * 32


def verify_params(**overrides: Any) -> dict[str, Any]:
    """Return valid ``btck_script_pubkey_verify`` params with *overrides* applied."""
    params: dict[str, Any] = {
        "script_pubkey_hex": OP_TRUE_HEX,
        "amount": 1000,
        "tx_hex": ONE_INPUT_TX_HEX,
        "input_index": 0,
    }
    params.update(overrides)
    return params


def verify_request(request_id: str = "1", **overrides: Any) -> dict[str, Any]:
    """Return a full verification request object."""
    return {"id": request_id, "method": SCRIPT_VERIFY_METHOD, "params": verify_params(**overrides)}


# ---------------------------------------------------------------------------
# Signed spends
# ---------------------------------------------------------------------------

_KEY = CKey(hashlib.sha256(b"kernel-test-handler signing key").digest())
SPEND_AMOUNT = 50_000


@dataclass(frozen=True)
class Spend:
    """A previous output and a transaction spending it at input 0."""

    script_pubkey_hex: str
    tx_hex: str
    amount: int = SPEND_AMOUNT


def _spend_tx(
    script_sig: CScript = CScript(), witness: Sequence[bytes] = (), fee: int = 1000
) -> CTransaction:
    txin = CTxIn(COutPoint(b"\x33" * 32, 0), script_sig)
    txout = CTxOut(SPEND_AMOUNT - fee, CScript([OP_TRUE]))
    if not witness:
        return CTransaction([txin], [txout])
    return CTransaction([txin], [txout], witness=CTxWitness([CTxInWitness(CScriptWitness(list(witness)))]))


def _signature(sighash: bytes) -> bytes:
    return _KEY.sign(sighash) + bytes([SIGHASH_ALL])


def p2pkh_spend(*, tamper: bool = False) -> Spend:
    """Pay-to-pubkey-hash output spent with a real signature.

    With *tamper* the fee is changed after signing, so the signature no
    longer commits to the transaction.
    """
    spk = CScript([OP_DUP, OP_HASH160, Hash160(_KEY.pub), OP_EQUALVERIFY, OP_CHECKSIG])
    sig = _signature(SignatureHash(spk, _spend_tx(), 0, SIGHASH_ALL))
    tx = _spend_tx(CScript([sig, _KEY.pub]), fee=1001 if tamper else 1000)
    return Spend(b2x(spk), b2x(tx.serialize()))


def p2wpkh_spend(*, nested: bool = False) -> Spend:
    """Pay-to-witness-pubkey-hash output spent with a BIP143 signature.

    With *nested* the witness program is wrapped in a P2SH output.
    """
    keyhash = Hash160(_KEY.pub)
    program = CScript([OP_0, keyhash])
    script_sig = CScript([program]) if nested else CScript()
    spk = CScript([OP_HASH160, Hash160(program), OP_EQUAL]) if nested else program
    script_code = CScript([OP_DUP, OP_HASH160, keyhash, OP_EQUALVERIFY, OP_CHECKSIG])
    sighash = SignatureHash(
        script_code, _spend_tx(script_sig), 0, SIGHASH_ALL, amount=SPEND_AMOUNT, sigversion=SIGVERSION_WITNESS_V0
    )
    tx = _spend_tx(script_sig, [_signature(sighash), _KEY.pub])
    return Spend(b2x(spk), b2x(tx.serialize()))


def p2wsh_spend(witness_script: bytes, *items: bytes) -> Spend:
    """Pay-to-witness-script-hash output spent with *items* and *witness_script*."""
    spk = CScript([OP_0, hashlib.sha256(witness_script).digest()])
    tx = _spend_tx(witness=[*items, witness_script])
    return Spend(b2x(spk), b2x(tx.serialize()))


def witness_tx_hex(*items: bytes) -> str:
    """Hex of a transaction whose only input carries *items* as its witness."""
    return b2x(_spend_tx(witness=items).serialize())


# ---------------------------------------------------------------------------
# Fake verifier
# ---------------------------------------------------------------------------


@dataclass
class FakeVerifier:
    """Records calls and raises a configured outcome."""

    outcome: BaseException | None = None
    calls: list[dict[str, Any]] = field(default_factory=list)

    def verify(
        self,
        script_pubkey: Any,
        amount: int,
        tx: Any,
        input_index: int,
        spent_outputs: Sequence[Any],
        flags: ScriptVerificationFlags,
    ) -> None:
        """Record the call, then raise ``outcome`` if set."""
        self.calls.append(
            {
                "script_pubkey": bytes(script_pubkey),
                "amount": amount,
                "tx": tx,
                "input_index": input_index,
                "spent_outputs": list(spent_outputs),
                "flags": flags,
            }
        )
        if self.outcome is not None:
            raise self.outcome


@pytest.fixture
def fake_verifier() -> FakeVerifier:
    """A verifier that accepts everything until told otherwise."""
    return FakeVerifier()


@pytest.fixture
def fake_context(fake_verifier: FakeVerifier) -> Iterator[VerificationContext]:
    """Verification context wrapping :func:`fake_verifier`."""
    with VerificationContext(chain="regtest", verifier=fake_verifier) as context:
        yield context


@pytest.fixture
def fake_dispatcher(fake_context: VerificationContext) -> Dispatcher:
    """Dispatcher over the fake verifier."""
    return build_dispatcher(fake_context)


@pytest.fixture
def real_context() -> Iterator[VerificationContext]:
    """Verification context using the bundled python-bitcoinlib verifier."""
    with VerificationContext(chain="regtest") as context:
        yield context


@pytest.fixture
def real_dispatcher(real_context: VerificationContext) -> Dispatcher:
    """Dispatcher over the bundled verifier."""
    return build_dispatcher(real_context)
