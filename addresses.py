"""
Contract address derivation (CREATE and CREATE2)
"""

from typing import Union

import rlp
from eth_utils import to_canonical_address, to_checksum_address
from web3 import Web3


def create_address(sender: str, nonce: int) -> str:
    """CREATE: keccak(rlp([sender, nonce]))[12:]"""
    encoded = rlp.encode([to_canonical_address(sender), nonce])
    return to_checksum_address(Web3.keccak(encoded)[12:])


def compute_create2_address(deployer: str, salt: Union[bytes, int], init_code_hash: bytes) -> str:
    """EIP-1014: keccak(0xff ++ deployer ++ salt ++ keccak(init_code))[12:]

    Pure function of its inputs; nothing has to be deployed to evaluate it.
    """
    if isinstance(salt, int):
        salt = salt.to_bytes(32, "big")
    salt, init_code_hash = bytes(salt), bytes(init_code_hash)
    if len(salt) != 32 or len(init_code_hash) != 32:
        raise ValueError("salt and init code hash must be 32 bytes")
    preimage = b"\xff" + to_canonical_address(deployer) + salt + init_code_hash
    return to_checksum_address(Web3.keccak(preimage)[12:])
