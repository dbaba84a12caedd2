"""
In-memory, strictly serialized ledger that the account contracts run on

State changes happen one transaction at a time. Every call frame runs inside
a savepoint, so a revert anywhere rolls back exactly the work of that frame.
"""

import copy
import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

import rlp
from eth_abi.exceptions import EncodingError
from eth_utils import to_canonical_address, to_checksum_address
from web3 import Web3

from addresses import compute_create2_address, create_address
from contract import Contract, Event, Message, contract_for_init_code
from errors import ExecutionReverted, Revert, TransactionRejected

logger = logging.getLogger(__name__)

DEFAULT_CHAIN_ID = 31337


@dataclass
class AccountState:
    balance: int = 0
    nonce: int = 0
    code: Optional[Contract] = None


@dataclass
class Log:
    address: str
    topics: List[bytes]
    data: bytes
    log_index: int = 0
    block_number: int = 0
    transaction_hash: bytes = b""


@dataclass
class Receipt:
    transaction_hash: bytes
    block_number: int
    sender: str
    to: Optional[str]
    status: int
    logs: List[Log] = field(default_factory=list)
    return_data: bytes = b""
    contract_address: Optional[str] = None
    error: Optional[Revert] = None

    @property
    def succeeded(self) -> bool:
        return self.status == 1

    def raise_for_status(self) -> "Receipt":
        """Re-raise the revert that failed this transaction"""
        if self.error is not None:
            raise self.error
        return self

    def events(self, event: Event) -> List[Dict[str, Any]]:
        return [event.decode(log) for log in self.logs if event.matches(log)]


Snapshot = Tuple[Dict[str, AccountState], int]


class Chain:
    """A single-writer ledger: accounts, contract code, logs and receipts"""

    def __init__(self, chain_id: int = DEFAULT_CHAIN_ID):
        self.chain_id = chain_id
        self.block_number = 0
        self.receipts: Dict[bytes, Receipt] = {}
        self._accounts: Dict[str, AccountState] = {}
        self._logs: List[Log] = []

    # state access

    def _account(self, address: str) -> AccountState:
        address = to_checksum_address(address)
        if address not in self._accounts:
            self._accounts[address] = AccountState()
        return self._accounts[address]

    def _peek(self, address: str) -> AccountState:
        return self._accounts.get(to_checksum_address(address)) or AccountState()

    def balance_of(self, address: str) -> int:
        return self._peek(address).balance

    def nonce_of(self, address: str) -> int:
        return self._peek(address).nonce

    def code_at(self, address: str) -> Optional[Contract]:
        return self._peek(address).code

    def has_code(self, address: str) -> bool:
        return self.code_at(address) is not None

    def get_code(self, address: str) -> bytes:
        code = self.code_at(address)
        return code.runtime_code() if code is not None else b""

    def fund(self, address: str, amount: int) -> None:
        """Credit native currency out of thin air (development only)"""
        self._account(address).balance += amount

    def set_balance(self, address: str, amount: int) -> None:
        self._account(address).balance = amount

    # atomicity

    def snapshot(self) -> Snapshot:
        return copy.deepcopy(self._accounts), len(self._logs)

    def revert_to(self, snapshot: Snapshot) -> None:
        # Restore in place: frames further up the stack still hold the live
        # contract instances and must observe the rolled back state.
        saved_accounts, log_count = snapshot
        for address in list(self._accounts):
            if address not in saved_accounts:
                del self._accounts[address]
        for address, saved in saved_accounts.items():
            live = self._accounts.get(address)
            if live is None:
                self._accounts[address] = saved
                continue
            live.balance, live.nonce = saved.balance, saved.nonce
            if live.code is None or saved.code is None or type(live.code) is not type(saved.code):
                live.code = saved.code
            else:
                live.code.__dict__.clear()
                live.code.__dict__.update(saved.code.__dict__)
        del self._logs[log_count:]

    @contextmanager
    def _savepoint(self) -> Iterator[None]:
        snapshot = self.snapshot()
        try:
            yield
        except Exception:
            self.revert_to(snapshot)
            raise

    def emit(self, address: str, event: Event, values: Sequence[Any]) -> None:
        topics, data = event.encode(values)
        self._logs.append(Log(address=to_checksum_address(address), topics=topics, data=data))

    # execution

    def _transfer(self, sender: str, to: str, value: int) -> None:
        if not value:
            return
        source = self._account(sender)
        if source.balance < value:
            raise ExecutionReverted("insufficient native balance")
        source.balance -= value
        self._account(to).balance += value

    def call(self, sender: str, to: str, value: int = 0, data: bytes = b"") -> bytes:
        """Message call; a revert undoes the transfer and everything the callee did"""
        sender, to = to_checksum_address(sender), to_checksum_address(to)
        with self._savepoint():
            self._transfer(sender, to, value)
            code = self.code_at(to)
            if code is None:
                return b""
            try:
                return code.dispatch(Message(chain=self, sender=sender, address=to, value=value), bytes(data))
            except EncodingError as e:
                raise ExecutionReverted(f"abi encoding failed in call to {to}: {e}") from e

    def call_static(self, to: str, data: bytes, sender: Optional[str] = None, value: int = 0) -> bytes:
        """Run a call against current state and throw its effects away (eth_call)"""
        snapshot = self.snapshot()
        try:
            return self.call(sender or to, to, value, data)
        finally:
            self.revert_to(snapshot)

    def _deploy(self, sender: str, address: str, init_code: bytes, value: int = 0) -> Optional[str]:
        resolved = contract_for_init_code(init_code)
        if resolved is None:
            raise ExecutionReverted("unrecognized init code")
        if self.has_code(address):
            return None
        contract_type, args = resolved
        with self._savepoint():
            self._transfer(sender, address, value)
            account = self._account(address)
            account.code = contract_type()
            account.nonce = 1
            account.code.constructor(Message(chain=self, sender=sender, address=address, value=value), *args)
        logger.info(f"Deployed {contract_type.__name__} at {address}")
        return address

    def create2(self, deployer: str, salt: bytes, init_code: bytes, value: int = 0) -> Optional[str]:
        """CREATE2 from a contract; None when the target address already holds code"""
        address = compute_create2_address(deployer, salt, Web3.keccak(init_code))
        return self._deploy(to_checksum_address(deployer), address, init_code, value)

    def send_transaction(
        self,
        sender: str,
        to: Optional[str] = None,
        value: int = 0,
        data: bytes = b"",
        nonce: Optional[int] = None,
        transaction_hash: Optional[bytes] = None,
    ) -> Receipt:
        """Apply one top-level transaction and mine it into its own block

        A reverted transaction still consumes the sender's nonce and is
        recorded with status 0.
        """
        sender = to_checksum_address(sender)
        account = self._account(sender)
        if nonce is not None and nonce != account.nonce:
            raise TransactionRejected(f"nonce mismatch for {sender}: expected {account.nonce}, got {nonce}")
        if account.balance < value:
            raise TransactionRejected(f"insufficient funds for value transfer from {sender}")

        nonce = account.nonce
        account.nonce += 1
        self.block_number += 1
        if transaction_hash is None:
            transaction_hash = bytes(Web3.keccak(rlp.encode([to_canonical_address(sender), nonce, self.chain_id])))

        log_count = len(self._logs)
        receipt = Receipt(
            transaction_hash=bytes(transaction_hash),
            block_number=self.block_number,
            sender=sender,
            to=to_checksum_address(to) if to else None,
            status=1,
        )
        try:
            if to:
                receipt.return_data = self.call(sender, to, value, data)
            else:
                address = create_address(sender, nonce)
                receipt.contract_address = self._deploy(sender, address, data, value)
                if receipt.contract_address is None:
                    raise ExecutionReverted(f"address collision at {address}")
        except Revert as e:
            logger.warning(f"Transaction from {sender} reverted: {e}")
            receipt.status = 0
            receipt.error = e
            receipt.return_data = e.data
        except Exception:
            # Not a contract revert: the transaction never happened
            logger.exception(f"Transaction from {sender} aborted")
            account.nonce = nonce
            self.block_number -= 1
            raise

        receipt.logs = self._logs[log_count:]
        for index, log in enumerate(receipt.logs):
            log.log_index = index
            log.block_number = self.block_number
            log.transaction_hash = receipt.transaction_hash
        self.receipts[receipt.transaction_hash] = receipt
        return receipt

    def transact(self, sender: str, to: str, data: bytes = b"", value: int = 0) -> Receipt:
        return self.send_transaction(sender, to, value, data)

    def deploy(self, sender: str, contract_type, *constructor_args: Any) -> str:
        """Deploy `contract_type` from `sender` and return its address"""
        receipt = self.send_transaction(sender, None, data=contract_type.init_code(*constructor_args))
        receipt.raise_for_status()
        return receipt.contract_address
