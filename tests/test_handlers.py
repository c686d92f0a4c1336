# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Tests for the script verification handler."""

from __future__ import annotations

import logging
from typing import Any

import pytest
from bitcoin.core import CTransaction, CTxOut

from kernel_test_handler.flags import ScriptVerificationFlags
from kernel_test_handler.handlers import (
    LEGACY_SCRIPT_VERIFY_METHOD,
    SCRIPT_VERIFY_METHOD,
    SpentOutputParams,
    VerifyParams,
)
from kernel_test_handler.rpc import Dispatcher, ErrorType, InvalidParamsError, Request, Response
from kernel_test_handler.status import VerifyStatus
from kernel_test_handler.verifier import (
    InputIndexOutOfRange,
    UnsupportedScriptError,
    VerificationRejected,
)
from tests.conftest import (
    ONE_INPUT_TX_HEX,
    OP_FALSE_HEX,
    OP_TRUE_HEX,
    SPEND_AMOUNT,
    TAPROOT_SPK_HEX,
    TWO_INPUT_TX_HEX,
    FakeVerifier,
    Spend,
    p2pkh_spend,
    p2wpkh_spend,
    p2wsh_spend,
    verify_params,
)


def _verify(dispatcher: Dispatcher, request_id: str = "1", **overrides: Any) -> Response:
    return dispatcher.dispatch(Request(id=request_id, method=SCRIPT_VERIFY_METHOD, params=verify_params(**overrides)))


def _variant(response: Response) -> str | None:
    assert response.error is not None, f"expected an error, got {response}"
    assert response.error.type == ErrorType.SCRIPT_VERIFY
    return response.error.variant


# ---------------------------------------------------------------------------
# Params decoding
# ---------------------------------------------------------------------------


class TestVerifyParams:
    """Decoding of the params object."""

    def test_minimal(self) -> None:
        """Optional fields default to empty."""
        params = VerifyParams.from_json(verify_params())
        assert params.input_index == 0
        assert params.amount == 1000
        assert params.spent_outputs == ()
        assert params.flags is None

    def test_flags_kept_raw(self) -> None:
        """Flags are not decoded at this stage."""
        assert VerifyParams.from_json(verify_params(flags=["BOGUS"])).flags == ["BOGUS"]

    def test_spent_outputs(self) -> None:
        """Spent outputs decode in order."""
        params = VerifyParams.from_json(
            verify_params(
                spent_outputs=[
                    {"script_pubkey_hex": "51", "value": 5},
                    {"script_pubkey_hex": "00", "value": 6},
                ]
            )
        )
        assert params.spent_outputs == (SpentOutputParams("51", 5), SpentOutputParams("00", 6))

    def test_spent_output_amount_alias(self) -> None:
        """Older harnesses name the value ``amount``."""
        params = VerifyParams.from_json(verify_params(spent_outputs=[{"script_pubkey_hex": "51", "amount": 7}]))
        assert params.spent_outputs[0].value == 7

    def test_value_wins_over_amount(self) -> None:
        """When both are present ``value`` is used."""
        params = VerifyParams.from_json(
            verify_params(spent_outputs=[{"script_pubkey_hex": "51", "value": 1, "amount": 2}])
        )
        assert params.spent_outputs[0].value == 1

    def test_error_names_position(self) -> None:
        """Errors inside spent_outputs say which element failed."""
        with pytest.raises(InvalidParamsError, match=r"spent_outputs\[1\]"):
            VerifyParams.from_json(
                verify_params(spent_outputs=[{"script_pubkey_hex": "51", "value": 1}, {"script_pubkey_hex": "51"}])
            )


# ---------------------------------------------------------------------------
# Outcome mapping (fake verifier)
# ---------------------------------------------------------------------------


class TestOutcomeMapping:
    """Verifier outcomes become responses."""

    def test_success(self, fake_dispatcher: Dispatcher) -> None:
        """A verifier that returns means success: true."""
        response = _verify(fake_dispatcher, "ok-1")
        assert response.to_dict() == {"id": "ok-1", "success": True}

    def test_input_index(self, fake_dispatcher: Dispatcher, fake_verifier: FakeVerifier) -> None:
        """InputIndexOutOfRange maps to TxInputIndex."""
        fake_verifier.outcome = InputIndexOutOfRange(3, 1)
        assert _variant(_verify(fake_dispatcher)) == "TxInputIndex"

    @pytest.mark.parametrize(
        ("status", "variant"),
        [
            (VerifyStatus.OK, "ScriptRejected"),
            (VerifyStatus.ERROR_TX_INPUT_INDEX, "TxInputIndex"),
            (VerifyStatus.ERROR_INVALID_FLAGS, "InvalidFlags"),
            (VerifyStatus.ERROR_INVALID_FLAGS_COMBINATION, "InvalidFlagsCombination"),
            (VerifyStatus.ERROR_SPENT_OUTPUTS_REQUIRED, "SpentOutputsRequired"),
            (VerifyStatus.ERROR_SPENT_OUTPUTS_MISMATCH, "SpentOutputsMismatch"),
            (VerifyStatus.ERROR_INVALID, "Invalid"),
        ],
    )
    def test_rejected(
        self, fake_dispatcher: Dispatcher, fake_verifier: FakeVerifier, status: VerifyStatus, variant: str
    ) -> None:
        """VerificationRejected maps through its status."""
        fake_verifier.outcome = VerificationRejected(status)
        assert _variant(_verify(fake_dispatcher)) == variant

    def test_unsupported(self, fake_dispatcher: Dispatcher, fake_verifier: FakeVerifier) -> None:
        """Scripts the backend cannot evaluate are Invalid."""
        fake_verifier.outcome = UnsupportedScriptError("nope")
        assert _variant(_verify(fake_dispatcher)) == "Invalid"

    def test_unexpected_fault(
        self, fake_dispatcher: Dispatcher, fake_verifier: FakeVerifier, caplog: pytest.LogCaptureFixture
    ) -> None:
        """An arbitrary exception is Invalid and logged with its traceback."""
        fake_verifier.outcome = ZeroDivisionError("oops")
        with caplog.at_level(logging.ERROR, logger="kernel_test_handler.handlers"):
            response = _verify(fake_dispatcher, "f-1")
        assert _variant(response) == "Invalid"
        records = [r for r in caplog.records if r.name == "kernel_test_handler.handlers"]
        assert records
        assert records[0].exc_info is not None
        assert records[0].__dict__["request_id"] == "f-1"

    @pytest.mark.parametrize(
        "overrides",
        [
            {"tx_hex": "zz"},
            {"tx_hex": "0"},
            {"tx_hex": ONE_INPUT_TX_HEX[:20]},
            {"tx_hex": ONE_INPUT_TX_HEX + "00"},
            {"script_pubkey_hex": "xyz"},
            {"spent_outputs": [{"script_pubkey_hex": "q", "value": 1}]},
            {"flags": "NOT_A_FLAG"},
            {"flags": 1 << 32},
            {"flags": True},
            {"flags": {"P2SH": 1}},
        ],
    )
    def test_malformed_inputs(
        self, fake_dispatcher: Dispatcher, fake_verifier: FakeVerifier, overrides: dict[str, Any]
    ) -> None:
        """Undecodable inputs are Invalid and never reach the verifier."""
        assert _variant(_verify(fake_dispatcher, **overrides)) == "Invalid"
        assert fake_verifier.calls == []


class TestVerifierArguments:
    """What the handler passes to the verifier."""

    def test_domain_objects(self, fake_dispatcher: Dispatcher, fake_verifier: FakeVerifier) -> None:
        """Hex inputs arrive decoded."""
        _verify(
            fake_dispatcher,
            script_pubkey_hex="5151",
            amount=4242,
            flags=["P2SH", "WITNESS"],
            spent_outputs=[{"script_pubkey_hex": "51", "value": 1000}],
        )
        (call,) = fake_verifier.calls
        assert call["script_pubkey"] == b"\x51\x51"
        assert call["amount"] == 4242
        assert isinstance(call["tx"], CTransaction)
        assert len(call["tx"].vin) == 1
        assert call["input_index"] == 0
        assert call["flags"] == ScriptVerificationFlags.P2SH | ScriptVerificationFlags.WITNESS
        (spent,) = call["spent_outputs"]
        assert isinstance(spent, CTxOut)
        assert spent.nValue == 1000
        assert bytes(spent.scriptPubKey) == b"\x51"

    def test_equivalent_flag_encodings(self, fake_dispatcher: Dispatcher, fake_verifier: FakeVerifier) -> None:
        """All flag encodings reach the verifier as the same bits."""
        for flags in (2049, ["P2SH", "WITNESS"], ["btck_ScriptVerificationFlags_WITNESS", "verify_p2sh"]):
            _verify(fake_dispatcher, flags=flags)
        assert len({call["flags"] for call in fake_verifier.calls}) == 1

    def test_absent_flags(self, fake_dispatcher: Dispatcher, fake_verifier: FakeVerifier) -> None:
        """No flags member means no rules."""
        _verify(fake_dispatcher)
        assert fake_verifier.calls[0]["flags"] == ScriptVerificationFlags.NONE

    def test_legacy_method_name(self, fake_dispatcher: Dispatcher, fake_verifier: FakeVerifier) -> None:
        """The legacy alias runs the same handler."""
        response = fake_dispatcher.dispatch(
            Request(id="legacy", method=LEGACY_SCRIPT_VERIFY_METHOD, params=verify_params())
        )
        assert response.ok
        assert len(fake_verifier.calls) == 1


# ---------------------------------------------------------------------------
# End-to-end with the bundled verifier
# ---------------------------------------------------------------------------


class TestBundledVerifier:
    """Real script evaluation through python-bitcoinlib."""

    def test_op_true_passes(self, real_dispatcher: Dispatcher) -> None:
        """OP_TRUE under the pre-taproot rules."""
        response = _verify(real_dispatcher, script_pubkey_hex=OP_TRUE_HEX, flags="ALL_PRE_TAPROOT")
        assert response.ok

    def test_op_true_no_flags(self, real_dispatcher: Dispatcher) -> None:
        """OP_TRUE with no rules at all."""
        assert _verify(real_dispatcher, script_pubkey_hex=OP_TRUE_HEX).ok

    def test_op_false_rejected(self, real_dispatcher: Dispatcher) -> None:
        """A script evaluating to false is ScriptRejected."""
        response = _verify(real_dispatcher, script_pubkey_hex=OP_FALSE_HEX, flags="ALL_PRE_TAPROOT")
        assert _variant(response) == "ScriptRejected"

    def test_input_index_out_of_range(self, real_dispatcher: Dispatcher) -> None:
        """Index past the last input."""
        assert _variant(_verify(real_dispatcher, input_index=1)) == "TxInputIndex"

    def test_second_input(self, real_dispatcher: Dispatcher) -> None:
        """Any valid index can be verified."""
        assert _verify(real_dispatcher, tx_hex=TWO_INPUT_TX_HEX, input_index=1).ok

    def test_unknown_bits(self, real_dispatcher: Dispatcher) -> None:
        """Bits outside ALL are InvalidFlags."""
        assert _variant(_verify(real_dispatcher, flags=1 << 30)) == "InvalidFlags"

    def test_witness_without_p2sh(self, real_dispatcher: Dispatcher) -> None:
        """WITNESS requires P2SH."""
        assert _variant(_verify(real_dispatcher, flags=["WITNESS"])) == "InvalidFlagsCombination"

    def test_taproot_needs_spent_outputs(self, real_dispatcher: Dispatcher) -> None:
        """TAPROOT without spent outputs."""
        assert _variant(_verify(real_dispatcher, flags="ALL")) == "SpentOutputsRequired"

    def test_spent_output_count_mismatch(self, real_dispatcher: Dispatcher) -> None:
        """Spent outputs must line up with the inputs."""
        spent = [{"script_pubkey_hex": OP_TRUE_HEX, "value": 1000}] * 2
        assert _variant(_verify(real_dispatcher, flags="ALL", spent_outputs=spent)) == "SpentOutputsMismatch"

    def test_taproot_rules_on_legacy_script(self, real_dispatcher: Dispatcher) -> None:
        """TAPROOT active with matching spent outputs on a non-taproot script."""
        spent = [{"script_pubkey_hex": OP_TRUE_HEX, "value": 1000}]
        assert _verify(real_dispatcher, flags="ALL", spent_outputs=spent).ok

    def test_taproot_spend_unsupported(self, real_dispatcher: Dispatcher) -> None:
        """Witness v1 spends are reported as Invalid rather than accepted."""
        spent = [{"script_pubkey_hex": TAPROOT_SPK_HEX, "value": 1000}]
        response = _verify(real_dispatcher, script_pubkey_hex=TAPROOT_SPK_HEX, flags="ALL", spent_outputs=spent)
        assert _variant(response) == "Invalid"

    def test_unknown_flag_name(self, real_dispatcher: Dispatcher) -> None:
        """Unknown flag names are Invalid."""
        assert _variant(_verify(real_dispatcher, flags=["P2SH", "NOT_A_FLAG"])) == "Invalid"

    def test_truncated_transaction(self, real_dispatcher: Dispatcher) -> None:
        """A truncated transaction is Invalid."""
        assert _variant(_verify(real_dispatcher, tx_hex=ONE_INPUT_TX_HEX[:-8])) == "Invalid"

    def test_precondition_order(self, real_dispatcher: Dispatcher) -> None:
        """Input index is checked before flags."""
        assert _variant(_verify(real_dispatcher, input_index=5, flags=1 << 30)) == "TxInputIndex"


class TestBundledVerifierSignedSpends:
    """Signed spends end to end, as the conformance harness sends them."""

    @staticmethod
    def _send(dispatcher: Dispatcher, spend: Spend, flags: Any = "ALL_PRE_TAPROOT", **overrides: Any) -> Response:
        params: dict[str, Any] = {
            "script_pubkey_hex": spend.script_pubkey_hex,
            "amount": spend.amount,
            "tx_hex": spend.tx_hex,
        }
        params.update(overrides)
        return _verify(dispatcher, flags=flags, **params)

    def test_p2pkh(self, real_dispatcher: Dispatcher) -> None:
        """A valid legacy signature succeeds."""
        assert self._send(real_dispatcher, p2pkh_spend()).ok

    def test_p2pkh_tampered(self, real_dispatcher: Dispatcher) -> None:
        """A signature over a different transaction is ScriptRejected."""
        assert _variant(self._send(real_dispatcher, p2pkh_spend(tamper=True))) == "ScriptRejected"

    def test_p2wpkh(self, real_dispatcher: Dispatcher) -> None:
        """A valid witness v0 signature succeeds."""
        assert self._send(real_dispatcher, p2wpkh_spend()).ok

    def test_p2wpkh_wrong_amount(self, real_dispatcher: Dispatcher) -> None:
        """The amount is part of what a witness signature covers."""
        response = self._send(real_dispatcher, p2wpkh_spend(), amount=SPEND_AMOUNT - 1)
        assert _variant(response) == "ScriptRejected"

    def test_p2wpkh_empty_witness(self, real_dispatcher: Dispatcher) -> None:
        """A witness program spent with an empty scriptSig and no witness never succeeds."""
        response = self._send(real_dispatcher, p2wpkh_spend(), flags=["P2SH", "WITNESS"], tx_hex=ONE_INPUT_TX_HEX)
        assert _variant(response) == "ScriptRejected"

    def test_p2wsh_signature_script_invalid(self, real_dispatcher: Dispatcher) -> None:
        """Witness scripts the backend cannot judge are Invalid, not accepted."""
        assert _variant(self._send(real_dispatcher, p2wsh_spend(b"\x51\xac", b"\x01"))) == "Invalid"
