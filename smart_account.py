"""
Owner-controlled ERC-4337 smart account
"""

import logging

from eth_keys.exceptions import ValidationError as InvalidSignature

from contract import Contract, Message, external
from errors import NotFromEntryPoint, NotFromEntryPointOrOwner
from user_operations import PACKED_USER_OPERATION_TYPE, PackedUserOperation, recover_signer

logger = logging.getLogger(__name__)

SIG_VALIDATION_SUCCESS = 0
SIG_VALIDATION_FAILED = 1
NONCE_VALIDATION_FAILED = 2


class SmartAccount(Contract):
    """Account whose calls are authorised by one owner key, directly or through the EntryPoint"""

    constructor_types = ("address", "address")

    def constructor(self, msg: Message, entry_point: str, owner: str) -> None:
        self.entry_point = entry_point
        self.owner_address = owner
        self.nonce = 0

    def receive(self, msg: Message) -> None:
        pass

    @external("execute(address,uint256,bytes)", returns="bytes")
    def execute(self, msg: Message, target: str, value: int, data: bytes) -> bytes:
        if msg.sender not in (self.owner_address, self.entry_point):
            raise NotFromEntryPointOrOwner()
        return self.call(msg, target, data, value=value)

    @external(f"validateUserOp({PACKED_USER_OPERATION_TYPE},bytes32,uint256)", returns="uint256")
    def validate_user_op(self, msg: Message, user_op: tuple, user_op_hash: bytes, missing_account_funds: int) -> int:
        if msg.sender != self.entry_point:
            raise NotFromEntryPoint()
        op = PackedUserOperation.from_tuple(user_op)

        if len(op.signature) != 65:
            logger.warning(f"Signature of length {len(op.signature)} on UserOperation for {msg.address}")
            return SIG_VALIDATION_FAILED
        try:
            signer = recover_signer(user_op_hash, op.signature)
        except (ValueError, InvalidSignature) as e:
            logger.warning(f"Unrecoverable signature on UserOperation for {msg.address}: {e}")
            return SIG_VALIDATION_FAILED
        if signer != self.owner_address:
            return SIG_VALIDATION_FAILED
        if op.nonce != self.nonce:
            return NONCE_VALIDATION_FAILED

        self.nonce += 1
        if missing_account_funds:
            prefund = min(missing_account_funds, msg.chain.balance_of(msg.address))
            self.call(msg, self.entry_point, b"", value=prefund)
        return SIG_VALIDATION_SUCCESS

    @external("owner()", returns="address", view=True)
    def owner(self, msg: Message) -> str:
        return self.owner_address

    @external("getEntryPoint()", returns="address", view=True)
    def get_entry_point(self, msg: Message) -> str:
        return self.entry_point

    @external("getNonce()", returns="uint256", view=True)
    def get_nonce(self, msg: Message) -> int:
        return self.nonce
