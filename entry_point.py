"""
Minimal ERC-4337 EntryPoint (v0.7 packed user operations)

Validates every operation of a bundle first, then executes them. A rejected
signature or nonce only drops that operation; conditions the bundler should
have caught off-chain revert the whole bundle with FailedOp.
"""

import logging
from typing import Dict, List, Tuple

from eth_abi.exceptions import DecodingError

from contract import Contract, Event, EventField, Message, external
from encoding import ZERO_ADDRESS, decode_result
from errors import ExecutionReverted, FailedOp, Revert
from user_operations import PACKED_USER_OPERATION_TYPE, PackedUserOperation, user_operation_hash

logger = logging.getLogger(__name__)

UserOperationEvent = Event(
    "UserOperationEvent",
    EventField("userOpHash", "bytes32", indexed=True),
    EventField("sender", "address", indexed=True),
    EventField("paymaster", "address", indexed=True),
    EventField("nonce", "uint256"),
    EventField("success", "bool"),
    EventField("actualGasCost", "uint256"),
    EventField("actualGasUsed", "uint256"),
)

UserOperationRevertReason = Event(
    "UserOperationRevertReason",
    EventField("userOpHash", "bytes32", indexed=True),
    EventField("sender", "address", indexed=True),
    EventField("nonce", "uint256"),
    EventField("revertReason", "bytes"),
)

UserOperationRejected = Event(
    "UserOperationRejected",
    EventField("userOpHash", "bytes32", indexed=True),
    EventField("sender", "address", indexed=True),
    EventField("nonce", "uint256"),
    EventField("validationStatus", "uint256"),
)

AccountDeployed = Event(
    "AccountDeployed",
    EventField("userOpHash", "bytes32", indexed=True),
    EventField("sender", "address", indexed=True),
    EventField("factory", "address"),
    EventField("paymaster", "address"),
)

Deposited = Event(
    "Deposited",
    EventField("account", "address", indexed=True),
    EventField("totalDeposit", "uint256"),
)


class EntryPoint(Contract):
    events = (UserOperationEvent, UserOperationRevertReason, UserOperationRejected, AccountDeployed, Deposited)

    def constructor(self, msg: Message) -> None:
        self.deposits: Dict[str, int] = {}

    def receive(self, msg: Message) -> None:
        self._deposit(msg, msg.sender, msg.value)

    def _deposit(self, msg: Message, account: str, amount: int) -> None:
        self.deposits[account] = self.deposits.get(account, 0) + amount
        self.emit(msg, Deposited, account, self.deposits[account])

    @external(f"getUserOpHash({PACKED_USER_OPERATION_TYPE})", returns="bytes32", view=True)
    def get_user_op_hash(self, msg: Message, user_op: tuple) -> bytes:
        return user_operation_hash(PackedUserOperation.from_tuple(user_op), msg.address, msg.chain.chain_id)

    @external("depositTo(address)", payable=True)
    def deposit_to(self, msg: Message, account: str) -> None:
        self._deposit(msg, account, msg.value)

    @external("balanceOf(address)", returns="uint256", view=True)
    def balance_of(self, msg: Message, account: str) -> int:
        return self.deposits.get(account, 0)

    @external("getNonce(address,uint192)", returns="uint256", view=True)
    def get_nonce(self, msg: Message, sender: str, key: int) -> int:
        """Sequential nonce of the account; only key 0 is tracked"""
        if key or not msg.chain.has_code(sender):
            return 0
        return self.read(msg, sender, "getNonce()", returns="uint256")

    @external(f"handleOps({PACKED_USER_OPERATION_TYPE}[],address)")
    def handle_ops(self, msg: Message, user_ops: List[tuple], beneficiary: str) -> None:
        if beneficiary == ZERO_ADDRESS:
            raise ExecutionReverted("AA90 invalid beneficiary")

        validated: List[Tuple[PackedUserOperation, bytes]] = []
        for index, raw in enumerate(user_ops):
            op = PackedUserOperation.from_tuple(raw)
            op_hash = user_operation_hash(op, msg.address, msg.chain.chain_id)
            snapshot = msg.chain.snapshot()
            status = self._validate(msg, index, op, op_hash)
            if status:
                msg.chain.revert_to(snapshot)
                logger.warning(f"UserOperation {op_hash.hex()} from {op.sender} rejected (status {status})")
                self.emit(msg, UserOperationRejected, op_hash, op.sender, op.nonce, status)
                continue
            validated.append((op, op_hash))

        collected = 0
        for op, op_hash in validated:
            collected += self._execute(msg, op, op_hash)

        if collected:
            try:
                self.call(msg, beneficiary, b"", value=collected)
            except Revert as e:
                raise ExecutionReverted("AA91 failed send to beneficiary") from e

    def _validate(self, msg: Message, index: int, op: PackedUserOperation, op_hash: bytes) -> int:
        if op.gas_values_overflow():
            raise FailedOp(index, "AA94 gas values overflow")
        if op.paymaster_and_data:
            raise FailedOp(index, "AA30 paymaster not supported")
        if op.init_code:
            self._create_sender(msg, index, op, op_hash)
        if not msg.chain.has_code(op.sender):
            raise FailedOp(index, "AA20 account not deployed")

        required = op.required_prefund()
        missing = max(0, required - self.deposits.get(op.sender, 0))
        try:
            status = self.read(
                msg, op.sender, f"validateUserOp({PACKED_USER_OPERATION_TYPE},bytes32,uint256)",
                op.as_tuple(), op_hash, missing, returns="uint256",
            )
        except Revert as e:
            raise FailedOp(index, f"AA23 reverted: {e}") from e
        if status:
            return status

        deposit = self.deposits.get(op.sender, 0)
        if deposit < required:
            raise FailedOp(index, "AA21 didn't pay prefund")
        self.deposits[op.sender] = deposit - required
        return 0

    def _create_sender(self, msg: Message, index: int, op: PackedUserOperation, op_hash: bytes) -> None:
        if msg.chain.has_code(op.sender):
            raise FailedOp(index, "AA10 sender already constructed")
        factory = op.factory
        if factory is None:
            raise FailedOp(index, "AA99 initCode too small")
        try:
            created = decode_result("address", self.call(msg, factory, op.factory_data))
        except (Revert, DecodingError) as e:
            raise FailedOp(index, "AA13 initCode failed or OOG") from e
        if created != op.sender:
            raise FailedOp(index, "AA14 initCode must return sender")
        if not msg.chain.has_code(op.sender):
            raise FailedOp(index, "AA15 initCode must create sender")
        self.emit(msg, AccountDeployed, op_hash, op.sender, factory, ZERO_ADDRESS)

    def _execute(self, msg: Message, op: PackedUserOperation, op_hash: bytes) -> int:
        success = True
        try:
            self.call(msg, op.sender, op.call_data)
        except Revert as e:
            success = False
            logger.warning(f"UserOperation {op_hash.hex()} from {op.sender} reverted: {e}")
            self.emit(msg, UserOperationRevertReason, op_hash, op.sender, op.nonce, e.data)

        cost = op.required_prefund()
        gas_used = op.verification_gas_limit + op.call_gas_limit + op.pre_verification_gas
        self.emit(msg, UserOperationEvent, op_hash, op.sender, ZERO_ADDRESS, op.nonce, success, cost, gas_used)
        return cost
