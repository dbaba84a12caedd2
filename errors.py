"""
Error taxonomy for the ledger contracts and the client SDK

Ledger errors are `Revert` subclasses that carry ABI-encoded revert data,
so a revert reported over JSON-RPC decodes back into the same class.
"""

from enum import Enum
from typing import Any, Dict, Optional, Type

from eth_abi.exceptions import DecodingError

from encoding import decode_args, encode_args, selector, split_signature

_REVERT_TYPES: Dict[bytes, Type["Revert"]] = {}


class Revert(Exception):
    """A call aborted; every state change it made is rolled back"""

    signature: str = ""

    def __init__(self, *values: Any, data: Optional[bytes] = None):
        super().__init__(*values)
        self.values = values
        self._data = data

    def __init_subclass__(cls, **kwargs):
        super().__init_subclass__(**kwargs)
        if cls.signature:
            _REVERT_TYPES[selector(cls.signature)] = cls

    @classmethod
    def types(cls):
        return split_signature(cls.signature)[1]

    @property
    def name(self) -> str:
        if self.signature:
            return split_signature(self.signature)[0]
        return "Revert"

    @property
    def data(self) -> bytes:
        if self._data is not None:
            return self._data
        return selector(self.signature) + encode_args(self.types(), self.values)

    def __str__(self) -> str:
        if not self.signature:
            return f"reverted with data 0x{self.data.hex()}"
        args = ", ".join(str(v) for v in self.values)
        return f"{self.name}({args})"


class ExecutionReverted(Revert):
    """Plain `require`-style revert with a reason string"""

    signature = "Error(string)"

    @property
    def reason(self) -> str:
        return self.values[0]

    def __str__(self) -> str:
        return self.reason


class Panic(Revert):
    """Solidity `Panic(uint256)`; the code names the failed check"""

    signature = "Panic(uint256)"

    ARITHMETIC_OVERFLOW = 0x11

    @property
    def code(self) -> int:
        return self.values[0]

    def __str__(self) -> str:
        return f"Panic(0x{self.code:02x})"


def decode_revert(data: bytes) -> Revert:
    """Rebuild the Revert raised for `data`; unknown errors keep the raw bytes"""
    data = bytes(data)
    error_type = _REVERT_TYPES.get(data[:4])
    if error_type is None:
        return Revert(data=data)
    try:
        values = decode_args(error_type.types(), data[4:])
    except DecodingError:
        return Revert(data=data)
    return error_type(*values)


class TransactionRejected(Exception):
    """A transaction that never executed (bad nonce, unfunded value, malformed payload)"""


# SmartAccount

class NotFromEntryPointOrOwner(Revert):
    signature = "SmartAccount__NotFromEntryPointOrOwner()"


class NotFromEntryPoint(Revert):
    signature = "SmartAccount__NotFromEntryPoint()"


# SmartAccountFactory

class DeploymentFailed(Revert):
    signature = "SmartAccountFactory__DeploymentFailed()"


# EntryPoint

class FailedOp(Revert):
    signature = "FailedOp(uint256,string)"

    def __str__(self) -> str:
        op_index, reason = self.values
        return f"FailedOp({op_index}, {reason})"


# Aggregator

class InvalidInput(Revert):
    signature = "Aggregator__InvalidInput(string)"


# CashToken (OpenZeppelin ERC-20 / Ownable errors)

class ERC20InsufficientBalance(Revert):
    signature = "ERC20InsufficientBalance(address,uint256,uint256)"


class ERC20InsufficientAllowance(Revert):
    signature = "ERC20InsufficientAllowance(address,uint256,uint256)"


class ERC20InvalidSender(Revert):
    signature = "ERC20InvalidSender(address)"


class ERC20InvalidReceiver(Revert):
    signature = "ERC20InvalidReceiver(address)"


class ERC20InvalidApprover(Revert):
    signature = "ERC20InvalidApprover(address)"


class ERC20InvalidSpender(Revert):
    signature = "ERC20InvalidSpender(address)"


class OwnableUnauthorizedAccount(Revert):
    signature = "OwnableUnauthorizedAccount(address)"


# Client SDK

class SDKErrorCode(str, Enum):
    INVALID_CONFIG = "INVALID_CONFIG"
    ENTITY_NOT_FOUND = "ENTITY_NOT_FOUND"
    TRANSACTION_FAILED = "TRANSACTION_FAILED"
    NETWORK_ERROR = "NETWORK_ERROR"
    VALIDATION_ERROR = "VALIDATION_ERROR"


class SDKError(RuntimeError):
    """Raised by the client SDK; `code` tells callers what kind of failure it was"""

    def __init__(
        self,
        message: str,
        *,
        code: SDKErrorCode,
        details: Optional[Dict[str, Any]] = None,
        original_error: Optional[BaseException] = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.details = details or {}
        self.original_error = original_error

    @classmethod
    def config_error(cls, message: str, details: Optional[Dict[str, Any]] = None) -> "SDKError":
        return cls(message, code=SDKErrorCode.INVALID_CONFIG, details=details)

    @classmethod
    def entity_not_found(cls, entity_id: str) -> "SDKError":
        return cls(f"Entity not found: {entity_id}", code=SDKErrorCode.ENTITY_NOT_FOUND,
                   details={"entity_id": entity_id})

    @classmethod
    def transaction_failed(cls, message: str, details: Optional[Dict[str, Any]] = None,
                           original_error: Optional[BaseException] = None) -> "SDKError":
        return cls(message, code=SDKErrorCode.TRANSACTION_FAILED, details=details,
                   original_error=original_error)

    @classmethod
    def network_error(cls, message: str, original_error: Optional[BaseException] = None) -> "SDKError":
        return cls(message, code=SDKErrorCode.NETWORK_ERROR, original_error=original_error)

    @classmethod
    def validation_error(cls, message: str, details: Optional[Dict[str, Any]] = None,
                         original_error: Optional[BaseException] = None) -> "SDKError":
        return cls(message, code=SDKErrorCode.VALIDATION_ERROR, details=details,
                   original_error=original_error)
