"""
ABI helpers shared by the ledger contracts, the node and the client SDK
"""

from typing import Any, List, Sequence, Tuple

from eth_abi import decode, encode
from eth_abi.grammar import parse
from eth_utils import to_checksum_address
from web3 import Web3

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"
MAX_UINT256 = 2**256 - 1


def selector(signature: str) -> bytes:
    """4-byte selector of a canonical function/error signature"""
    return bytes(Web3.keccak(text=signature)[:4])


def split_signature(signature: str) -> Tuple[str, List[str]]:
    """Split `transfer(address,uint256)` into its name and argument types"""
    name, _, rest = signature.partition("(")
    if not rest.endswith(")"):
        raise ValueError(f"Malformed signature: {signature}")
    inner = rest[:-1]
    if not inner:
        return name, []
    return name, [component.to_type_str() for component in parse(f"({inner})").components]


def split_types(types: str) -> List[str]:
    """Split a comma separated type list like `address,(address,uint256)[]`"""
    if not types:
        return []
    return [component.to_type_str() for component in parse(f"({types})").components]


def normalize(abi_type: str, value: Any) -> Any:
    """Checksum every address nested inside a decoded ABI value"""
    parsed = parse(abi_type)
    return _normalize_parsed(parsed, value)


def _normalize_parsed(parsed, value):
    if parsed.is_array:
        return [_normalize_parsed(parsed.item_type, item) for item in value]
    components = getattr(parsed, "components", None)
    if components is not None:
        return tuple(_normalize_parsed(c, v) for c, v in zip(components, value))
    if parsed.base == "address":
        return to_checksum_address(value)
    return value


def encode_args(types: Sequence[str], values: Sequence[Any]) -> bytes:
    return encode(list(types), list(values))


def decode_args(types: Sequence[str], data: bytes) -> Tuple[Any, ...]:
    values = decode(list(types), bytes(data))
    return tuple(normalize(t, v) for t, v in zip(types, values))


def encode_call(signature: str, *args: Any) -> bytes:
    """Calldata for `signature` called with `args`"""
    _, types = split_signature(signature)
    return selector(signature) + encode_args(types, args)


def decode_result(returns: str, data: bytes) -> Any:
    """Decode return data; a single return type is unwrapped"""
    types = split_types(returns)
    values = decode_args(types, data)
    if len(types) == 1:
        return values[0]
    return values


def to_bytes32(value: int) -> bytes:
    return value.to_bytes(32, "big")
