"""
UserOperation creation, hashing and signing utilities for smart accounts
"""

import logging
from dataclasses import dataclass, replace
from typing import Any, Dict, Optional, Tuple

from eth_abi import encode
from eth_account import Account
from eth_account.messages import encode_defunct
from eth_utils import to_bytes
from web3 import Web3

from config import DEFAULT_GAS_LIMITS
from encoding import ZERO_ADDRESS, encode_call

logger = logging.getLogger(__name__)

# ABI tuple type of PackedUserOperation (EntryPoint v0.7)
PACKED_USER_OPERATION_TYPE = "(address,uint256,bytes,bytes,bytes32,uint256,bytes32,bytes,bytes)"

# Function selector for execute(address,uint256,bytes)
EXECUTE_SELECTOR = Web3.keccak(text="execute(address,uint256,bytes)")[:4]

# Largest value EntryPoint accepts in any gas field (uint120)
MAX_GAS_VALUE = 2**120 - 1


def _pack_uint128_pair(high: int, low: int) -> bytes:
    return high.to_bytes(16, "big") + low.to_bytes(16, "big")


def _unpack_uint128_pair(packed: bytes) -> Tuple[int, int]:
    packed = bytes(packed)
    return int.from_bytes(packed[:16], "big"), int.from_bytes(packed[16:], "big")


def _hex(value: bytes) -> str:
    return "0x" + bytes(value).hex()


def _bytes(value: Any) -> bytes:
    if value is None:
        return b""
    if isinstance(value, str):
        return to_bytes(hexstr=value)
    return bytes(value)


def _int(value: Any) -> int:
    if value is None:
        return 0
    if isinstance(value, str):
        return int(value, 16) if value.startswith("0x") else int(value)
    return int(value)


@dataclass(frozen=True)
class PackedUserOperation:
    """ERC-4337 v0.7 user operation in its on-chain (packed) form"""

    sender: str
    nonce: int
    init_code: bytes = b""
    call_data: bytes = b""
    account_gas_limits: bytes = bytes(32)
    pre_verification_gas: int = 0
    gas_fees: bytes = bytes(32)
    paymaster_and_data: bytes = b""
    signature: bytes = b""

    @classmethod
    def build(
        cls,
        sender: str,
        nonce: int,
        call_data: bytes,
        init_code: bytes = b"",
        call_gas_limit: int = DEFAULT_GAS_LIMITS["call"],
        verification_gas_limit: int = DEFAULT_GAS_LIMITS["verification"],
        pre_verification_gas: int = DEFAULT_GAS_LIMITS["pre_verification"],
        max_fee_per_gas: int = 0,
        max_priority_fee_per_gas: int = 0,
    ) -> "PackedUserOperation":
        return cls(
            sender=Web3.to_checksum_address(sender),
            nonce=nonce,
            init_code=bytes(init_code),
            call_data=bytes(call_data),
            account_gas_limits=_pack_uint128_pair(verification_gas_limit, call_gas_limit),
            pre_verification_gas=pre_verification_gas,
            gas_fees=_pack_uint128_pair(max_priority_fee_per_gas, max_fee_per_gas),
        )

    @property
    def verification_gas_limit(self) -> int:
        return _unpack_uint128_pair(self.account_gas_limits)[0]

    @property
    def call_gas_limit(self) -> int:
        return _unpack_uint128_pair(self.account_gas_limits)[1]

    @property
    def max_priority_fee_per_gas(self) -> int:
        return _unpack_uint128_pair(self.gas_fees)[0]

    @property
    def max_fee_per_gas(self) -> int:
        return _unpack_uint128_pair(self.gas_fees)[1]

    @property
    def factory(self) -> Optional[str]:
        if len(self.init_code) < 20:
            return None
        return Web3.to_checksum_address(self.init_code[:20])

    @property
    def factory_data(self) -> bytes:
        return bytes(self.init_code[20:])

    def gas_values_overflow(self) -> bool:
        values = (
            self.pre_verification_gas,
            self.verification_gas_limit,
            self.call_gas_limit,
            self.max_fee_per_gas,
            self.max_priority_fee_per_gas,
        )
        return max(values) > MAX_GAS_VALUE

    def required_prefund(self) -> int:
        """Upper bound of what EntryPoint may charge for this operation"""
        gas = self.verification_gas_limit + self.call_gas_limit + self.pre_verification_gas
        return gas * self.max_fee_per_gas

    def as_tuple(self) -> tuple:
        return (
            self.sender,
            self.nonce,
            bytes(self.init_code),
            bytes(self.call_data),
            bytes(self.account_gas_limits),
            self.pre_verification_gas,
            bytes(self.gas_fees),
            bytes(self.paymaster_and_data),
            bytes(self.signature),
        )

    @classmethod
    def from_tuple(cls, values: tuple) -> "PackedUserOperation":
        sender, nonce, init_code, call_data, gas_limits, pre_verification_gas, gas_fees, paymaster, signature = values
        return cls(
            sender=Web3.to_checksum_address(sender),
            nonce=nonce,
            init_code=bytes(init_code),
            call_data=bytes(call_data),
            account_gas_limits=bytes(gas_limits),
            pre_verification_gas=pre_verification_gas,
            gas_fees=bytes(gas_fees),
            paymaster_and_data=bytes(paymaster),
            signature=bytes(signature),
        )

    def to_rpc(self) -> Dict[str, Any]:
        """Unpacked JSON form used by eth_sendUserOperation (v0.7)"""
        rpc = {
            "sender": self.sender,
            "nonce": hex(self.nonce),
            "callData": _hex(self.call_data),
            "callGasLimit": hex(self.call_gas_limit),
            "verificationGasLimit": hex(self.verification_gas_limit),
            "preVerificationGas": hex(self.pre_verification_gas),
            "maxFeePerGas": hex(self.max_fee_per_gas),
            "maxPriorityFeePerGas": hex(self.max_priority_fee_per_gas),
            "signature": _hex(self.signature),
            "factory": self.factory,
            "factoryData": _hex(self.factory_data) if self.factory else None,
        }
        if self.paymaster_and_data:
            rpc["paymasterAndData"] = _hex(self.paymaster_and_data)
        return rpc

    @classmethod
    def from_rpc(cls, rpc: Dict[str, Any]) -> "PackedUserOperation":
        init_code = b""
        if rpc.get("factory"):
            init_code = _bytes(rpc["factory"]) + _bytes(rpc.get("factoryData"))
        elif rpc.get("initCode"):
            init_code = _bytes(rpc["initCode"])
        op = cls.build(
            sender=rpc["sender"],
            nonce=_int(rpc["nonce"]),
            call_data=_bytes(rpc.get("callData")),
            init_code=init_code,
            call_gas_limit=_int(rpc.get("callGasLimit")),
            verification_gas_limit=_int(rpc.get("verificationGasLimit")),
            pre_verification_gas=_int(rpc.get("preVerificationGas")),
            max_fee_per_gas=_int(rpc.get("maxFeePerGas")),
            max_priority_fee_per_gas=_int(rpc.get("maxPriorityFeePerGas")),
        )
        return replace(
            op,
            paymaster_and_data=_bytes(rpc.get("paymasterAndData")),
            signature=_bytes(rpc.get("signature")),
        )


def user_operation_hash(op: PackedUserOperation, entry_point: str, chain_id: int) -> bytes:
    """keccak(abi.encode(keccak(packed op fields), entryPoint, chainId))"""
    packed = encode(
        ["address", "uint256", "bytes32", "bytes32", "bytes32", "uint256", "bytes32", "bytes32"],
        [
            op.sender,
            op.nonce,
            Web3.keccak(op.init_code),
            Web3.keccak(op.call_data),
            op.account_gas_limits,
            op.pre_verification_gas,
            op.gas_fees,
            Web3.keccak(op.paymaster_and_data),
        ],
    )
    return bytes(Web3.keccak(encode(
        ["bytes32", "address", "uint256"],
        [Web3.keccak(packed), Web3.to_checksum_address(entry_point), chain_id],
    )))


def sign_user_operation(op: PackedUserOperation, private_key: str, entry_point: str, chain_id: int) -> PackedUserOperation:
    """Sign the operation hash as an EIP-191 message with the owner's key"""
    op_hash = user_operation_hash(op, entry_point, chain_id)
    signed = Account.sign_message(encode_defunct(primitive=op_hash), private_key=private_key)
    logger.info(f"Signed UserOperation {_hex(op_hash)} for {op.sender} (nonce {op.nonce})")
    return replace(op, signature=bytes(signed.signature))


def recover_signer(op_hash: bytes, signature: bytes) -> str:
    """Address that produced `signature` over `op_hash`; raises on malformed signatures"""
    return Account.recover_message(encode_defunct(primitive=bytes(op_hash)), signature=bytes(signature))


def encode_execute(target: str, value: int, data: bytes) -> bytes:
    """Calldata for SmartAccount.execute(target, value, data)"""
    encoded_params = encode(
        ["address", "uint256", "bytes"],
        [Web3.to_checksum_address(target), value, bytes(data)],
    )
    return bytes(EXECUTE_SELECTOR) + encoded_params


def build_init_code(factory: str, owner: str, salt: int = 0) -> bytes:
    """initCode deploying the owner's account through the factory on first use"""
    factory_data = encode_call("createAccount(address,uint256)", Web3.to_checksum_address(owner), salt)
    return bytes(Web3.to_bytes(hexstr=Web3.to_checksum_address(factory))) + factory_data


def create_execute_user_operation(
    smart_account: str,
    target: str,
    value: int,
    data: bytes,
    nonce: int,
    init_code: bytes = b"",
    max_fee_per_gas: int = 0,
    max_priority_fee_per_gas: int = 0,
) -> PackedUserOperation:
    """Create a UserOperation that makes the account call `target`"""
    logger.info(f"Created execute UserOperation: {smart_account} -> {target} (value {value}, nonce {nonce})")
    return PackedUserOperation.build(
        sender=smart_account,
        nonce=nonce,
        call_data=encode_execute(target, value, data),
        init_code=init_code,
        max_fee_per_gas=max_fee_per_gas,
        max_priority_fee_per_gas=max_priority_fee_per_gas,
    )


def create_eth_transfer_user_operation(smart_account: str, to_address: str, amount_wei: int, nonce: int,
                                       **kwargs) -> PackedUserOperation:
    """Create ETH transfer UserOperation"""
    return create_execute_user_operation(smart_account, to_address, amount_wei, b"", nonce, **kwargs)


def create_token_transfer_user_operation(smart_account: str, token: str, to_address: str, amount: int, nonce: int,
                                         **kwargs) -> PackedUserOperation:
    """Create ERC-20 transfer UserOperation"""
    transfer_data = encode_call("transfer(address,uint256)", Web3.to_checksum_address(to_address), amount)
    return create_execute_user_operation(smart_account, token, 0, transfer_data, nonce, **kwargs)


def is_zero_address(address: Optional[str]) -> bool:
    return not address or Web3.to_checksum_address(address) == ZERO_ADDRESS
