"""
CashToken: ERC-20 with owner-controlled mint and burn
"""

from typing import Dict

from contract import Contract, Event, EventField, Message, external
from encoding import MAX_UINT256, ZERO_ADDRESS
from errors import (
    ERC20InsufficientAllowance,
    ERC20InsufficientBalance,
    ERC20InvalidApprover,
    ERC20InvalidReceiver,
    ERC20InvalidSender,
    ERC20InvalidSpender,
    OwnableUnauthorizedAccount,
    Panic,
)


Transfer = Event(
    "Transfer",
    EventField("from", "address", indexed=True),
    EventField("to", "address", indexed=True),
    EventField("value", "uint256"),
)

Approval = Event(
    "Approval",
    EventField("owner", "address", indexed=True),
    EventField("spender", "address", indexed=True),
    EventField("value", "uint256"),
)


class CashToken(Contract):
    constructor_types = ("string", "string", "uint8", "uint256")
    events = (Transfer, Approval)

    def constructor(self, msg: Message, name: str, symbol: str, decimals: int, initial_supply: int) -> None:
        self.token_name = name
        self.token_symbol = symbol
        self.token_decimals = decimals
        self.owner_address = msg.sender
        self.total_supply = 0
        self.balances: Dict[str, int] = {}
        self.allowances: Dict[str, Dict[str, int]] = {}
        if initial_supply:
            self._mint(msg, msg.sender, initial_supply)

    # internal ledger moves

    def _update(self, msg: Message, sender: str, receiver: str, value: int) -> None:
        if sender == ZERO_ADDRESS:
            if self.total_supply + value > MAX_UINT256:
                raise Panic(Panic.ARITHMETIC_OVERFLOW)
            self.total_supply += value
        else:
            balance = self.balances.get(sender, 0)
            if balance < value:
                raise ERC20InsufficientBalance(sender, balance, value)
            self.balances[sender] = balance - value
        if receiver == ZERO_ADDRESS:
            self.total_supply -= value
        else:
            self.balances[receiver] = self.balances.get(receiver, 0) + value
        self.emit(msg, Transfer, sender, receiver, value)

    def _transfer(self, msg: Message, sender: str, receiver: str, value: int) -> None:
        if sender == ZERO_ADDRESS:
            raise ERC20InvalidSender(ZERO_ADDRESS)
        if receiver == ZERO_ADDRESS:
            raise ERC20InvalidReceiver(ZERO_ADDRESS)
        self._update(msg, sender, receiver, value)

    def _mint(self, msg: Message, account: str, value: int) -> None:
        if account == ZERO_ADDRESS:
            raise ERC20InvalidReceiver(ZERO_ADDRESS)
        self._update(msg, ZERO_ADDRESS, account, value)

    def _burn(self, msg: Message, account: str, value: int) -> None:
        if account == ZERO_ADDRESS:
            raise ERC20InvalidSender(ZERO_ADDRESS)
        self._update(msg, account, ZERO_ADDRESS, value)

    def _approve(self, msg: Message, owner: str, spender: str, value: int, emit: bool = True) -> None:
        if owner == ZERO_ADDRESS:
            raise ERC20InvalidApprover(ZERO_ADDRESS)
        if spender == ZERO_ADDRESS:
            raise ERC20InvalidSpender(ZERO_ADDRESS)
        self.allowances.setdefault(owner, {})[spender] = value
        if emit:
            self.emit(msg, Approval, owner, spender, value)

    def _spend_allowance(self, msg: Message, owner: str, spender: str, value: int) -> None:
        current = self._allowance(owner, spender)
        if current == MAX_UINT256:
            return
        if current < value:
            raise ERC20InsufficientAllowance(spender, current, value)
        self._approve(msg, owner, spender, current - value, emit=False)

    def _allowance(self, owner: str, spender: str) -> int:
        return self.allowances.get(owner, {}).get(spender, 0)

    def _only_owner(self, msg: Message) -> None:
        if msg.sender != self.owner_address:
            raise OwnableUnauthorizedAccount(msg.sender)

    # ERC-20

    @external("name()", returns="string", view=True)
    def name(self, msg: Message) -> str:
        return self.token_name

    @external("symbol()", returns="string", view=True)
    def symbol(self, msg: Message) -> str:
        return self.token_symbol

    @external("decimals()", returns="uint8", view=True)
    def decimals(self, msg: Message) -> int:
        return self.token_decimals

    @external("totalSupply()", returns="uint256", view=True)
    def get_total_supply(self, msg: Message) -> int:
        return self.total_supply

    @external("balanceOf(address)", returns="uint256", view=True)
    def balance_of(self, msg: Message, account: str) -> int:
        return self.balances.get(account, 0)

    @external("allowance(address,address)", returns="uint256", view=True)
    def allowance(self, msg: Message, owner: str, spender: str) -> int:
        return self._allowance(owner, spender)

    @external("transfer(address,uint256)", returns="bool")
    def transfer(self, msg: Message, to: str, value: int) -> bool:
        self._transfer(msg, msg.sender, to, value)
        return True

    @external("approve(address,uint256)", returns="bool")
    def approve(self, msg: Message, spender: str, value: int) -> bool:
        self._approve(msg, msg.sender, spender, value)
        return True

    @external("transferFrom(address,address,uint256)", returns="bool")
    def transfer_from(self, msg: Message, sender: str, to: str, value: int) -> bool:
        self._spend_allowance(msg, sender, msg.sender, value)
        self._transfer(msg, sender, to, value)
        return True

    # Ownable

    @external("owner()", returns="address", view=True)
    def owner(self, msg: Message) -> str:
        return self.owner_address

    @external("mint(address,uint256)")
    def mint(self, msg: Message, to: str, amount: int) -> None:
        self._only_owner(msg)
        self._mint(msg, to, amount)

    @external("burn(address,uint256)")
    def burn(self, msg: Message, account: str, amount: int) -> None:
        self._only_owner(msg)
        self._burn(msg, account, amount)
