"""ABI encoding helpers for raw eth_call."""
from __future__ import annotations

from typing import Any, Sequence

from eth_abi import decode, encode
from eth_utils import function_signature_to_4byte_selector, to_checksum_address

from ...errors import IntegrityError


# Solidity revert payload selectors.
ERROR_STRING_SELECTOR = "08c379a0"  # Error(string)
PANIC_SELECTOR = "4e487b71"  # Panic(uint256)


def split_types(type_list: str) -> list[str]:
    """Split a comma-separated ABI type list, respecting tuple parentheses.

    Examples:
        "address,uint256" → ["address", "uint256"]
        "(address,uint256),bool" → ["(address,uint256)", "bool"]
    """
    types: list[str] = []
    depth = 0
    current = ""
    for char in type_list:
        if char == "(":
            depth += 1
        elif char == ")":
            depth -= 1
        if char == "," and depth == 0:
            types.append(current.strip())
            current = ""
            continue
        current += char
    if current.strip():
        types.append(current.strip())
    return types


def parse_signature(signature: str) -> tuple[str, list[str]]:
    """Return (name, input types) for ``name(type,...)``."""
    open_idx = signature.find("(")
    if open_idx <= 0 or not signature.endswith(")"):
        raise ValueError(f"Malformed function signature: {signature!r}")
    name = signature[:open_idx]
    return name, split_types(signature[open_idx + 1 : -1])


def function_selector(signature: str) -> str:
    """4-byte selector as a 0x-prefixed hex string."""
    return "0x" + function_signature_to_4byte_selector(signature).hex()


def encode_call(signature: str, args: Sequence[Any] = ()) -> str:
    """ABI-encode a function call into 0x-prefixed calldata."""
    _, types = parse_signature(signature)
    if len(types) != len(args):
        raise ValueError(
            f"{signature} expects {len(types)} arguments, got {len(args)}"
        )
    encoded = encode(types, list(args)) if types else b""
    return function_selector(signature) + encoded.hex()


def _to_bytes(data: str) -> bytes:
    body = data[2:] if data.startswith("0x") else data
    return bytes.fromhex(body)


def decode_result(output_types: Sequence[str], data: str) -> tuple[Any, ...]:
    """Decode eth_call return data into a tuple of Python values."""
    if not output_types:
        return ()
    raw = _to_bytes(data or "0x")
    if not raw:
        raise IntegrityError(
            f"Empty return data for {','.join(output_types)} "
            "(target may not be a contract)"
        )
    try:
        return tuple(decode(list(output_types), raw))
    except Exception as e:
        raise IntegrityError(f"Undecodable return data: {e}") from e


def decode_revert_reason(data: str | None) -> str | None:
    """Extract a human-readable reason from revert data, if any."""
    if not data or not isinstance(data, str):
        return None
    body = data[2:] if data.startswith("0x") else data
    if len(body) < 8:
        return None

    selector, payload = body[:8].lower(), body[8:]
    try:
        if selector == ERROR_STRING_SELECTOR:
            (reason,) = decode(["string"], bytes.fromhex(payload))
            return reason
        if selector == PANIC_SELECTOR:
            (code,) = decode(["uint256"], bytes.fromhex(payload))
            return f"panic code 0x{code:02x}"
    except Exception:
        return None
    return f"custom error 0x{selector}"


def checksum(address: str) -> str:
    return to_checksum_address(address)
