"""Unit tests for ABI encoding and decoding helpers."""
from __future__ import annotations

import pytest
from eth_abi import encode

from lending_hub.chains.evm.abi import (
    decode_result,
    decode_revert_reason,
    encode_call,
    function_selector,
    parse_signature,
    split_types,
)
from lending_hub.errors import IntegrityError

WALLET = "0x1111111111111111111111111111111111111111"


class TestSplitTypes:
    def test_flat(self) -> None:
        assert split_types("address,uint256") == ["address", "uint256"]

    def test_tuple_kept_whole(self) -> None:
        assert split_types("(address,uint256),bool") == ["(address,uint256)", "bool"]

    def test_empty(self) -> None:
        assert split_types("") == []


class TestParseSignature:
    def test_name_and_types(self) -> None:
        assert parse_signature("supply(address,uint256,address,uint16)") == (
            "supply",
            ["address", "uint256", "address", "uint16"],
        )

    def test_no_args(self) -> None:
        assert parse_signature("totalSupply()") == ("totalSupply", [])

    @pytest.mark.parametrize("sig", ["noparens", "(uint256)", "broken(uint256"])
    def test_malformed(self, sig: str) -> None:
        with pytest.raises(ValueError):
            parse_signature(sig)


class TestEncodeCall:
    def test_known_selectors(self) -> None:
        assert function_selector("balanceOf(address)") == "0x70a08231"
        assert function_selector("transfer(address,uint256)") == "0xa9059cbb"

    def test_no_arg_call_is_selector_only(self) -> None:
        assert encode_call("totalSupply()") == "0x18160ddd"

    def test_encodes_arguments(self) -> None:
        data = encode_call("balanceOf(address)", (WALLET,))
        assert data == "0x70a08231" + "0" * 24 + "1" * 40

    def test_argument_count_mismatch(self) -> None:
        with pytest.raises(ValueError, match="expects 2 arguments"):
            encode_call("transfer(address,uint256)", (WALLET,))


class TestDecodeResult:
    def test_decodes_values(self) -> None:
        data = "0x" + encode(["uint256", "bool"], [42, True]).hex()
        assert decode_result(("uint256", "bool"), data) == (42, True)

    def test_no_outputs(self) -> None:
        assert decode_result((), "0x") == ()

    def test_empty_data_is_integrity_error(self) -> None:
        with pytest.raises(IntegrityError, match="Empty return data"):
            decode_result(("uint256",), "0x")

    def test_garbage_is_integrity_error(self) -> None:
        with pytest.raises(IntegrityError):
            decode_result(("uint256", "uint256"), "0x01")


class TestDecodeRevertReason:
    def test_error_string(self) -> None:
        data = "0x08c379a0" + encode(["string"], ["ERC20: transfer amount exceeds balance"]).hex()
        assert decode_revert_reason(data) == "ERC20: transfer amount exceeds balance"

    def test_panic(self) -> None:
        data = "0x4e487b71" + encode(["uint256"], [0x11]).hex()
        assert decode_revert_reason(data) == "panic code 0x11"

    def test_custom_error(self) -> None:
        assert decode_revert_reason("0xdeadbeef") == "custom error 0xdeadbeef"

    @pytest.mark.parametrize("data", [None, "", "0x", "0x1234"])
    def test_no_reason(self, data: str | None) -> None:
        assert decode_revert_reason(data) is None
