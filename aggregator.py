"""
Aggregator: read-only batch queries of token balances and allowances
"""

from typing import List, Sequence, Tuple

from contract import Contract, Message, external
from encoding import ZERO_ADDRESS
from errors import InvalidInput

BALANCE_DATA = "(address,uint256)[]"
ALLOWANCE_DATA = "(address,address,uint256)[]"
TOKEN_BALANCE_DATA = "(address,address,uint256)[]"


class Aggregator(Contract):
    """Stateless facade; every query validates its inputs before the first token read"""

    @staticmethod
    def _require_token(token: str) -> None:
        if token == ZERO_ADDRESS:
            raise InvalidInput("token is the zero address")

    @staticmethod
    def _require_accounts(accounts: Sequence[str], label: str = "accounts") -> None:
        if not accounts:
            raise InvalidInput(f"{label} is empty")
        if ZERO_ADDRESS in accounts:
            raise InvalidInput(f"{label} contains the zero address")

    def _balance(self, msg: Message, token: str, account: str) -> int:
        return self.read(msg, token, "balanceOf(address)", account, returns="uint256")

    def _allowance(self, msg: Message, token: str, owner: str, spender: str) -> int:
        return self.read(msg, token, "allowance(address,address)", owner, spender, returns="uint256")

    def _all_pairs(self, msg: Message, token: str, accounts: Sequence[str]) -> List[Tuple[str, str, int]]:
        return [
            (owner, spender, self._allowance(msg, token, owner, spender))
            for owner in accounts
            for spender in accounts
            if owner != spender
        ]

    @external("getBalances(address,address[])", returns=BALANCE_DATA, view=True)
    def get_balances(self, msg: Message, token: str, accounts: List[str]) -> List[Tuple[str, int]]:
        self._require_token(token)
        self._require_accounts(accounts)
        return [(account, self._balance(msg, token, account)) for account in accounts]

    @external("getAllowances(address,address[])", returns=ALLOWANCE_DATA, view=True)
    def get_allowances(self, msg: Message, token: str, accounts: List[str]) -> List[Tuple[str, str, int]]:
        """Every ordered (owner, spender) pair with owner != spender, owner-major"""
        self._require_token(token)
        self._require_accounts(accounts)
        return self._all_pairs(msg, token, accounts)

    @external("getSerialAllowances(address,address[])", returns=ALLOWANCE_DATA, view=True)
    def get_serial_allowances(self, msg: Message, token: str, accounts: List[str]) -> List[Tuple[str, str, int]]:
        """Allowances of consecutive pairs: accounts[0] -> accounts[1], accounts[1] -> accounts[2], ..."""
        self._require_token(token)
        self._require_accounts(accounts)
        if len(accounts) < 2:
            raise InvalidInput("at least two accounts are required")
        return [
            (owner, spender, self._allowance(msg, token, owner, spender))
            for owner, spender in zip(accounts, accounts[1:])
        ]

    @external("getSpecificAllowances(address,address[],address[])", returns=ALLOWANCE_DATA, view=True)
    def get_specific_allowances(self, msg: Message, token: str, owners: List[str],
                                spenders: List[str]) -> List[Tuple[str, str, int]]:
        self._require_token(token)
        self._require_accounts(owners, "owners")
        self._require_accounts(spenders, "spenders")
        if len(owners) != len(spenders):
            raise InvalidInput("owners and spenders length mismatch")
        return [
            (owner, spender, self._allowance(msg, token, owner, spender))
            for owner, spender in zip(owners, spenders)
        ]

    @external("getBalancesAndAllowances(address,address[])", returns=f"{BALANCE_DATA},{ALLOWANCE_DATA}", view=True)
    def get_balances_and_allowances(self, msg: Message, token: str, accounts: List[str]):
        self._require_token(token)
        self._require_accounts(accounts)
        balances = [(account, self._balance(msg, token, account)) for account in accounts]
        return balances, self._all_pairs(msg, token, accounts)

    @external("getMultiTokenBalances(address[],address[])", returns=TOKEN_BALANCE_DATA, view=True)
    def get_multi_token_balances(self, msg: Message, tokens: List[str],
                                 accounts: List[str]) -> List[Tuple[str, str, int]]:
        """(token, account, balance) for every token and account, token-major"""
        self._require_accounts(tokens, "tokens")
        self._require_accounts(accounts)
        return [
            (token, account, self._balance(msg, token, account))
            for token in tokens
            for account in accounts
        ]
