"""
Client SDK: cash tracking across entity smart accounts
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Type

import requests
from eth_account import Account
from hexbytes import HexBytes
from web3 import Web3
from web3.exceptions import ContractLogicError, Web3RPCError

from aggregator import Aggregator
from bundler import BundlerClient, BundlerError
from cash_token import CashToken
from config import EntityConfig, SDKConfig, is_private_key
from contract import Contract
from entry_point import EntryPoint
from errors import SDKError, decode_revert
from factory import SmartAccountFactory
from smart_account import SmartAccount
from user_operations import create_token_transfer_user_operation, sign_user_operation

logger = logging.getLogger(__name__)


class StaleNonce(Exception):
    """A submission was refused because its nonce is no longer current"""


def format_units(value: int, decimals: int) -> str:
    return format(Decimal(value).scaleb(-decimals).normalize(), "f")


def describe_revert(data: Optional[str]) -> str:
    """Human readable form of hex revert data"""
    if not data:
        return "execution reverted"
    return str(decode_revert(HexBytes(data)))


@dataclass
class Entity:
    id: str
    private_key: str = field(repr=False)
    address: str
    smart_account: str = ""


@dataclass
class TokenBalance:
    entity_id: str
    address: str
    balance: int
    formatted: str
    decimals: int
    symbol: str


@dataclass
class TokenAllowance:
    owner_id: str
    spender_id: str
    allowance: int
    formatted: str


@dataclass
class TransactionResult:
    hash: str
    status: str
    receipt: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    block_number: Optional[int] = None

    @property
    def success(self) -> bool:
        return self.status in ("confirmed", "submitted")


@dataclass
class SmartAccountInfo:
    address: str
    owner: Optional[str]
    entry_point: Optional[str]
    deployed: bool
    balance: int = 0
    nonce: int = 0


class CashTrackerSDK:
    """Reads and moves CashToken between the smart accounts of configured entities"""

    def __init__(self, config: SDKConfig, web3: Optional[Web3] = None, bundler: Optional[BundlerClient] = None):
        self.config = config.validate_or_raise()
        self.web3 = web3 or Web3(Web3.HTTPProvider(config.rpc_url, request_kwargs={"timeout": config.timeout}))
        self.bundler = bundler or BundlerClient(
            config.bundler_url or config.rpc_url,
            entry_point=config.entry_point or None,
            timeout=config.timeout,
        )
        self.entities: Dict[str, Entity] = {}
        for entity_config in config.entities:
            self._add_entity(entity_config)
        self.active_entity_id: Optional[str] = next(iter(self.entities), None)
        self._chain_id = config.chain_id
        self._token_metadata: Optional[Dict[str, Any]] = None

        logger.info(f"Cash tracker SDK initialized for {config.rpc_url} with {len(self.entities)} entities")

    # contracts

    def _contract(self, address: Optional[str], contract_type: Type[Contract], label: str):
        if not address:
            raise SDKError.config_error(f"No {label} address configured")
        return self.web3.eth.contract(address=Web3.to_checksum_address(address), abi=contract_type.abi())

    @property
    def cash_token(self):
        return self._contract(self.config.cash_token, CashToken, "cash token")

    @property
    def factory(self):
        return self._contract(self.config.smart_account_factory, SmartAccountFactory, "smart account factory")

    @property
    def aggregator(self):
        return self._contract(self.config.aggregator, Aggregator, "aggregator")

    @property
    def entry_point(self):
        return self._contract(self.config.entry_point or self.bundler.resolve_entry_point(), EntryPoint, "EntryPoint")

    def smart_account(self, address: str):
        return self._contract(address, SmartAccount, "smart account")

    @property
    def chain_id(self) -> int:
        if self._chain_id is None:
            self._chain_id = self._with_retries("eth_chainId", lambda: self.web3.eth.chain_id)
        return self._chain_id

    # entities

    def _add_entity(self, entity_config: EntityConfig) -> Entity:
        existing = next((e for e in self.entities.values()
                         if e.private_key.lower() == entity_config.private_key.lower()), None)
        entity_id = existing.id if existing else f"entity{len(self.entities) + 1}"
        entity = Entity(
            id=entity_id,
            private_key=entity_config.private_key,
            address=entity_config.owner_address(),
            smart_account=Web3.to_checksum_address(entity_config.smart_account) if entity_config.smart_account else "",
        )
        self.entities[entity_id] = entity
        return entity

    def get_entity(self, entity_id: str) -> Entity:
        entity = self.entities.get(entity_id)
        if entity is None:
            raise SDKError.entity_not_found(entity_id)
        return entity

    def switch_entity(self, entity_id: str) -> Entity:
        entity = self.get_entity(entity_id)
        self.active_entity_id = entity_id
        logger.info(f"Active entity is now {entity_id} ({entity.smart_account or entity.address})")
        return entity

    @property
    def active_entity(self) -> Optional[Entity]:
        return self.entities.get(self.active_entity_id) if self.active_entity_id else None

    def _account_of(self, entity_id: str) -> str:
        entity = self.get_entity(entity_id)
        if not entity.smart_account:
            raise SDKError.validation_error(f"{entity_id} has no smart account; deploy it first",
                                            {"entity_id": entity_id})
        return entity.smart_account

    # retries and errors

    def _with_retries(self, description: str, operation: Callable[[], Any]) -> Any:
        """Run `operation`, retrying network failures and nonce rejections

        Each attempt builds its request from scratch, so a retried
        transaction always re-reads the sender's current nonce.
        """
        last_error: Optional[SDKError] = None
        for attempt in range(1, self.config.retry_attempts + 1):
            try:
                return operation()
            except ContractLogicError:
                raise
            except (requests.ConnectionError, requests.Timeout) as e:
                last_error = SDKError.network_error(f"{description}: network error: {e}", original_error=e)
            except StaleNonce as e:
                last_error = SDKError.transaction_failed(f"{description}: {e}", original_error=e)
            except Web3RPCError as e:
                if "nonce" not in str(e).lower():
                    raise SDKError.transaction_failed(f"{description}: {e}", original_error=e) from e
                last_error = SDKError.transaction_failed(f"{description}: {e}", original_error=e)
            logger.warning(f"{description} failed (attempt {attempt}/{self.config.retry_attempts}): {last_error}")
        raise last_error

    def _read(self, description: str, function) -> Any:
        try:
            return self._with_retries(description, function.call)
        except ContractLogicError as e:
            reason = describe_revert(e.data if isinstance(e.data, str) else None)
            raise SDKError.transaction_failed(f"{description} reverted: {reason}",
                                              {"reason": reason}, original_error=e) from e

    def _gas_price(self) -> int:
        if self.config.gas_price is not None:
            return self.config.gas_price
        return self.web3.eth.gas_price

    def _send_transaction(self, private_key: str, to: Optional[str], data: bytes, description: str,
                          value: int = 0) -> TransactionResult:
        account = Account.from_key(private_key)

        def attempt():
            transaction = {
                "value": value,
                "data": data,
                "nonce": self.web3.eth.get_transaction_count(account.address),
                "gas": self.config.gas_limit,
                "gasPrice": self._gas_price(),
                "chainId": self.chain_id,
            }
            if to:
                transaction["to"] = Web3.to_checksum_address(to)
            signed = account.sign_transaction(transaction)
            tx_hash = self.web3.eth.send_raw_transaction(signed.raw_transaction)
            return self.web3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.config.timeout)

        receipt = self._with_retries(description, attempt)
        result = TransactionResult(
            hash=Web3.to_hex(receipt["transactionHash"]),
            status="confirmed" if receipt["status"] == 1 else "failed",
            receipt=dict(receipt),
            block_number=receipt["blockNumber"],
        )
        if not result.success:
            result.error = describe_revert(receipt.get("revertReason"))
            logger.error(f"{description} failed in {result.hash}: {result.error}")
        else:
            logger.info(f"{description} confirmed in {result.hash}")
        return result

    # token reads

    def _metadata(self) -> Dict[str, Any]:
        token = self.cash_token
        if self._token_metadata is None or self._token_metadata["address"] != token.address:
            self._token_metadata = {
                "address": token.address,
                "name": self._read("name", token.functions.name()),
                "symbol": self._read("symbol", token.functions.symbol()),
                "decimals": self._read("decimals", token.functions.decimals()),
            }
        return self._token_metadata

    def token_info(self) -> Dict[str, Any]:
        info = dict(self._metadata())
        info["total_supply"] = self._read("totalSupply", self.cash_token.functions.totalSupply())
        return info

    def _balance(self, entity_id: str, address: str, balance: int) -> TokenBalance:
        info = self._metadata()
        return TokenBalance(
            entity_id=entity_id,
            address=address,
            balance=balance,
            formatted=format_units(balance, info["decimals"]),
            decimals=info["decimals"],
            symbol=info["symbol"],
        )

    def _allowance(self, owner_id: str, spender_id: str, allowance: int) -> TokenAllowance:
        return TokenAllowance(
            owner_id=owner_id,
            spender_id=spender_id,
            allowance=allowance,
            formatted=format_units(allowance, self._metadata()["decimals"]),
        )

    def get_balance(self, entity_id: str) -> TokenBalance:
        account = self._account_of(entity_id)
        balance = self._read(f"balanceOf({account})", self.cash_token.functions.balanceOf(account))
        return self._balance(entity_id, account, balance)

    def get_all_balances(self) -> List[TokenBalance]:
        """Balances of every entity with a smart account, in entity order"""
        ids = [entity_id for entity_id, entity in self.entities.items() if entity.smart_account]
        if not ids:
            return []
        if not self.config.aggregator:
            return [self.get_balance(entity_id) for entity_id in ids]

        accounts = [self.entities[entity_id].smart_account for entity_id in ids]
        rows = self._read("getBalances", self.aggregator.functions.getBalances(self.cash_token.address, accounts))
        return [self._balance(entity_id, account, balance) for entity_id, (account, balance) in zip(ids, rows)]

    def get_allowance(self, owner_id: str, spender_id: str) -> TokenAllowance:
        owner, spender = self._account_of(owner_id), self._account_of(spender_id)
        allowance = self._read("allowance", self.cash_token.functions.allowance(owner, spender))
        return self._allowance(owner_id, spender_id, allowance)

    def get_all_allowances(self) -> List[TokenAllowance]:
        """Allowances between every ordered pair of distinct entities"""
        ids = [entity_id for entity_id, entity in self.entities.items() if entity.smart_account]
        if len(ids) < 2:
            return []
        if not self.config.aggregator:
            return [self.get_allowance(owner, spender) for owner in ids for spender in ids if owner != spender]

        by_account = {self.entities[entity_id].smart_account: entity_id for entity_id in ids}
        rows = self._read("getAllowances",
                          self.aggregator.functions.getAllowances(self.cash_token.address, list(by_account)))
        return [self._allowance(by_account[owner], by_account[spender], allowance)
                for owner, spender, allowance in rows]

    def smart_account_info(self, entity_id: str) -> SmartAccountInfo:
        address = self._account_of(entity_id)
        deployed = len(self.web3.eth.get_code(address)) > 0
        info = SmartAccountInfo(
            address=address,
            owner=None,
            entry_point=None,
            deployed=deployed,
            balance=self.web3.eth.get_balance(address),
        )
        if deployed:
            account = self.smart_account(address)
            info.owner = self._read("owner", account.functions.owner())
            info.entry_point = self._read("getEntryPoint", account.functions.getEntryPoint())
            info.nonce = self._read("getNonce", account.functions.getNonce())
        return info

    # writes through the owner's smart account

    def execute(self, entity_id: str, target: str, data: bytes, value: int = 0,
                description: str = "execute") -> TransactionResult:
        """Have the entity's key call `target` through its smart account"""
        entity = self.get_entity(entity_id)
        account = self.smart_account(self._account_of(entity_id))
        call_data = account.encode_abi("execute", args=[Web3.to_checksum_address(target), value, data])
        return self._send_transaction(entity.private_key, account.address, HexBytes(call_data), description)

    def approve_tokens(self, owner_id: str, spender_id: str, amount: int) -> TransactionResult:
        if amount < 0:
            raise SDKError.validation_error("Amount must not be negative", {"amount": amount})
        spender = self._account_of(spender_id)
        data = self.cash_token.encode_abi("approve", args=[spender, amount])
        return self.execute(owner_id, self.cash_token.address, HexBytes(data),
                            description=f"{owner_id} approve {amount} for {spender_id}")

    def transfer(self, from_id: str, to_id: str, amount: int) -> TransactionResult:
        if amount <= 0:
            raise SDKError.validation_error("Amount must be positive", {"amount": amount})
        data = self.cash_token.encode_abi("transfer", args=[self._account_of(to_id), amount])
        return self.execute(from_id, self.cash_token.address, HexBytes(data),
                            description=f"{from_id} transfer {amount} to {to_id}")

    def transfer_from(self, spender_id: str, from_id: str, to_id: str, amount: int) -> TransactionResult:
        """Spender's smart account moves tokens it was approved for"""
        if amount <= 0:
            raise SDKError.validation_error("Amount must be positive", {"amount": amount})
        data = self.cash_token.encode_abi(
            "transferFrom", args=[self._account_of(from_id), self._account_of(to_id), amount],
        )
        return self.execute(spender_id, self.cash_token.address, HexBytes(data),
                            description=f"{spender_id} transferFrom {from_id} to {to_id} ({amount})")

    def transfer_via_user_operation(self, from_id: str, to_id: str, amount: int) -> TransactionResult:
        """Sign a token transfer as a UserOperation and submit it through the bundler"""
        if amount <= 0:
            raise SDKError.validation_error("Amount must be positive", {"amount": amount})
        entity = self.get_entity(from_id)
        sender = self._account_of(from_id)
        recipient = self._account_of(to_id)

        def attempt() -> Dict:
            nonce = entry_point.functions.getNonce(sender, 0).call()
            user_operation = create_token_transfer_user_operation(
                smart_account=sender,
                token=self.cash_token.address,
                to_address=recipient,
                amount=amount,
                nonce=nonce,
                max_fee_per_gas=self.config.max_fee_per_gas or 0,
            )
            signed = sign_user_operation(user_operation, entity.private_key, entry_point.address, self.chain_id)
            result = self.bundler.send_user_operation(signed)
            if not result['success'] and "nonce" in result['error'].lower():
                raise StaleNonce(result['error'])
            return result

        try:
            entry_point = self.entry_point
            result = self._with_retries(f"UserOperation {from_id} -> {to_id}", attempt)
            if not result['success']:
                return TransactionResult(hash="", status="failed", error=result['error'])
            op_hash = result['user_operation_hash']
            receipt = self.bundler.get_user_operation_receipt(op_hash)
        except (BundlerError, requests.RequestException) as e:
            raise SDKError.network_error(f"Bundler request failed: {e}", original_error=e) from e

        if receipt is None:
            return TransactionResult(hash=op_hash, status="submitted")
        status = "confirmed" if receipt["success"] else "failed"
        error = None if receipt["success"] else describe_revert(receipt.get("reason"))
        return TransactionResult(hash=op_hash, status=status, receipt=receipt, error=error,
                                 block_number=int(receipt["receipt"]["blockNumber"], 16))

    # deployment

    def deploy_contract(self, private_key: str, contract_type: Type[Contract], *constructor_args: Any) -> str:
        """Deploy a ledger contract from `private_key` and return its address"""
        result = self._send_transaction(private_key, None, contract_type.init_code(*constructor_args),
                                        description=f"deploy {contract_type.__name__}")
        if not result.success or not result.receipt.get("contractAddress"):
            raise SDKError.transaction_failed(f"Deployment of {contract_type.__name__} failed",
                                              {"hash": result.hash, "error": result.error})
        return result.receipt["contractAddress"]

    def deploy_smart_accounts(self, private_keys: Optional[List[str]] = None, salt: int = 0) -> List[Entity]:
        """Create (or find) the factory account of every key; already deployed accounts are reused"""
        if private_keys is None:
            private_keys = [entity.private_key for entity in self.entities.values()]
        factory = self.factory

        entities = []
        for index, private_key in enumerate(private_keys):
            if not is_private_key(private_key):
                raise SDKError.validation_error(f"Invalid private key at index {index}")
            owner = Account.from_key(private_key).address
            predicted = self._read("getAddress", factory.functions.getAddress(owner, salt))

            if len(self.web3.eth.get_code(predicted)) == 0:
                data = factory.encode_abi("createAccount", args=[owner, salt])
                result = self._send_transaction(private_key, factory.address, HexBytes(data),
                                                description=f"create smart account for {owner}")
                if not result.success or len(self.web3.eth.get_code(predicted)) == 0:
                    raise SDKError.transaction_failed(
                        f"Failed to deploy smart account for private key {index + 1}",
                        {"owner": owner, "error": result.error},
                    )
                logger.info(f"Smart account {predicted} deployed for {owner}")
            else:
                logger.info(f"Smart account {predicted} already deployed for {owner}")

            entity = self._add_entity(EntityConfig(private_key=private_key, address=owner, smart_account=predicted))
            entities.append(entity)

        self.config.entities = [
            EntityConfig(private_key=e.private_key, address=e.address, smart_account=e.smart_account)
            for e in self.entities.values()
        ]
        if self.active_entity_id is None and entities:
            self.active_entity_id = entities[0].id
        return entities
