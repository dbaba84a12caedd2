"""
Configuration for the cash tracker node and client SDK
"""

import json
import logging
import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Dict, List, Mapping, Optional

from eth_account import Account
from web3 import Web3

from errors import SDKError

logger = logging.getLogger(__name__)

# Network constants
DEFAULT_CHAIN_ID = 31337
DEFAULT_RPC_URL = "http://127.0.0.1:8545"
DEFAULT_GAS_PRICE = Web3.to_wei(1, "gwei")

# Default gas limits for UserOperations
DEFAULT_GAS_LIMITS = {
    "call": 300000,
    "verification": 1000000,
    "pre_verification": 60000,
}

# SDK defaults
DEFAULT_GAS_LIMIT = 500000
DEFAULT_RETRY_ATTEMPTS = 3
DEFAULT_TIMEOUT = 30

REDACTED = "[REDACTED]"

# Well-known development keys (Hardhat accounts #0 - #4). Account #0 acts as bundler.
DEV_PRIVATE_KEYS = [
    "0xac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcae784d7bf4f2ff80",
    "0x59c6995e998f97a5a0044966f0945389dc9e86dae88c7a8412f4603b6b78690d",
    "0x5de4111afa1a4b94908f83103eb1f1706367c2e68ca870fc3fb9a804cdab365a",
    "0x7c852118294e51e653712a81e05800f419141751be58f605c371e15141b007a6",
    "0x47e179ec197488593b187f80a00eb0da91f1b9d0b13f8733639f19c30a34926a",
]


def _split_keys(value: str) -> List[str]:
    return [key.strip() for key in value.split(",") if key.strip()]


def _optional_int(value: Optional[str]) -> Optional[int]:
    if value is None or value == "":
        return None
    return int(value)


def is_private_key(value: str) -> bool:
    try:
        Account.from_key(value)
    except (ValueError, TypeError):
        return False
    return True


@dataclass
class NodeConfig:
    """Configuration for the development JSON-RPC node"""

    host: str = "127.0.0.1"
    port: int = 8545
    chain_id: int = DEFAULT_CHAIN_ID
    dev_private_keys: List[str] = field(default_factory=lambda: list(DEV_PRIVATE_KEYS))
    dev_account_balance_eth: int = 10000

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "NodeConfig":
        env = os.environ if environ is None else environ
        config = cls()
        config.host = env.get("NODE_HOST", config.host)
        config.port = int(env.get("NODE_PORT", config.port))
        config.chain_id = int(env.get("CHAIN_ID", config.chain_id))
        if env.get("DEV_PRIVATE_KEYS"):
            config.dev_private_keys = _split_keys(env["DEV_PRIVATE_KEYS"])
        config.dev_account_balance_eth = int(env.get("DEV_ACCOUNT_BALANCE_ETH", config.dev_account_balance_eth))
        return config

    @property
    def bundler_key(self) -> str:
        return self.dev_private_keys[0]


@dataclass
class EntityConfig:
    """An off-chain key and the smart account it owns"""

    private_key: str
    address: str = ""
    smart_account: str = ""

    def owner_address(self) -> str:
        """Address of the key, falling back to the configured one"""
        if self.address:
            return Web3.to_checksum_address(self.address)
        return Account.from_key(self.private_key).address

    def to_dict(self, redact: bool = True) -> Dict[str, str]:
        return {
            "privateKey": REDACTED if redact else self.private_key,
            "address": self.address,
            "smartAccount": self.smart_account,
        }

    @classmethod
    def from_dict(cls, data: Mapping) -> "EntityConfig":
        return cls(
            private_key=data.get("privateKey", ""),
            address=data.get("address", "") or "",
            smart_account=data.get("smartAccount", "") or "",
        )


@dataclass
class ValidationResult:
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors


@dataclass
class SDKConfig:
    """Configuration for the client SDK"""

    rpc_url: str = DEFAULT_RPC_URL
    entry_point: str = ""
    cash_token: str = ""
    chain_id: Optional[int] = None
    bundler_url: Optional[str] = None
    smart_account_factory: Optional[str] = None
    aggregator: Optional[str] = None
    entities: List[EntityConfig] = field(default_factory=list)
    gas_limit: int = DEFAULT_GAS_LIMIT
    gas_price: Optional[int] = None
    max_fee_per_gas: Optional[int] = None
    retry_attempts: int = DEFAULT_RETRY_ATTEMPTS
    timeout: int = DEFAULT_TIMEOUT

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "SDKConfig":
        """Build configuration from environment variables"""
        config = cls()
        config.apply_env_overrides(environ)
        return config

    def apply_env_overrides(self, environ: Optional[Mapping[str, str]] = None) -> "SDKConfig":
        """Overwrite fields with whatever the environment sets"""
        env = os.environ if environ is None else environ
        string_fields = {
            "NETWORK_RPC_URL": "rpc_url",
            "BUNDLER_URL": "bundler_url",
            "ENTRY_POINT": "entry_point",
            "CASH_TOKEN_ADDRESS": "cash_token",
            "SMART_ACCOUNT_FACTORY": "smart_account_factory",
            "AGGREGATOR_ADDRESS": "aggregator",
        }
        for variable, attribute in string_fields.items():
            if env.get(variable):
                setattr(self, attribute, env[variable])

        int_fields = {
            "CHAIN_ID": "chain_id",
            "GAS_LIMIT": "gas_limit",
            "GAS_PRICE": "gas_price",
            "MAX_FEE_PER_GAS": "max_fee_per_gas",
            "RETRY_ATTEMPTS": "retry_attempts",
            "TIMEOUT": "timeout",
        }
        for variable, attribute in int_fields.items():
            try:
                value = _optional_int(env.get(variable))
            except ValueError as e:
                raise SDKError.config_error(f"{variable} must be an integer", {variable: env[variable]}) from e
            if value is not None:
                setattr(self, attribute, value)

        if env.get("ENTITIES_PK"):
            known = {entity.private_key.lower(): entity for entity in self.entities}
            self.entities = [
                known.get(key.lower()) or EntityConfig(private_key=key)
                for key in _split_keys(env["ENTITIES_PK"])
            ]
        return self

    @classmethod
    def from_dict(cls, data: Mapping) -> "SDKConfig":
        """Load the nested JSON layout: network / contracts / entities / options"""
        network = data.get("network") or {}
        contracts = data.get("contracts") or {}
        options = data.get("options") or {}
        if isinstance(network, str):
            network = {"rpcUrl": network}
        return cls(
            rpc_url=network.get("rpcUrl", DEFAULT_RPC_URL),
            entry_point=network.get("entryPoint") or data.get("entryPoint", ""),
            chain_id=network.get("chainId"),
            bundler_url=network.get("bundlerUrl"),
            cash_token=contracts.get("cashToken", ""),
            smart_account_factory=contracts.get("smartAccountFactory"),
            aggregator=contracts.get("aggregator"),
            entities=[EntityConfig.from_dict(entity) for entity in data.get("entities") or []],
            gas_limit=options.get("gasLimit", DEFAULT_GAS_LIMIT),
            gas_price=_optional_int(options.get("gasPrice")),
            max_fee_per_gas=_optional_int(options.get("maxFeePerGas")),
            retry_attempts=options.get("retryAttempts", DEFAULT_RETRY_ATTEMPTS),
            timeout=options.get("timeout", DEFAULT_TIMEOUT),
        )

    def to_dict(self, redact: bool = True) -> Dict:
        return {
            "network": {
                "rpcUrl": self.rpc_url,
                "chainId": self.chain_id,
                "entryPoint": self.entry_point,
                "bundlerUrl": self.bundler_url,
            },
            "contracts": {
                "cashToken": self.cash_token,
                "smartAccountFactory": self.smart_account_factory,
                "aggregator": self.aggregator,
            },
            "entities": [entity.to_dict(redact=redact) for entity in self.entities],
            "options": {
                "gasLimit": self.gas_limit,
                "gasPrice": None if self.gas_price is None else str(self.gas_price),
                "maxFeePerGas": None if self.max_fee_per_gas is None else str(self.max_fee_per_gas),
                "retryAttempts": self.retry_attempts,
                "timeout": self.timeout,
            },
        }

    @classmethod
    def from_file(cls, path, env_overrides: bool = True,
                  environ: Optional[Mapping[str, str]] = None) -> "SDKConfig":
        """Load a JSON configuration file; environment variables win when enabled"""
        config = cls.from_dict(_read_json(path))
        if env_overrides:
            config.apply_env_overrides(environ)
        return config

    @classmethod
    def from_entities_file(cls, path, environ: Optional[Mapping[str, str]] = None) -> "SDKConfig":
        """Load the file written by setup_smart_accounts.py"""
        data = _read_json(path)
        env = os.environ if environ is None else environ
        if "entities" not in data:
            raise SDKError.config_error(f"Entities file has no entities: {path}", {"path": str(path)})

        contracts = data.get("contracts") or {}
        config = cls(
            rpc_url=data.get("network") or DEFAULT_RPC_URL,
            entry_point=data.get("entryPoint", ""),
            chain_id=data.get("chainId"),
            bundler_url=data.get("bundlerUrl"),
            cash_token=contracts.get("cashToken") or env.get("CASH_TOKEN_ADDRESS", ""),
            smart_account_factory=contracts.get("smartAccountFactory"),
            aggregator=contracts.get("aggregator"),
            entities=[EntityConfig.from_dict(entity) for entity in data["entities"]],
        )
        logger.info(f"Loaded {len(config.entities)} entities from {path}")
        return config

    def save(self, path) -> Path:
        """Write configuration as JSON with private keys redacted"""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        try:
            path.write_text(json.dumps(self.to_dict(redact=True), indent=2))
        except OSError as e:
            raise SDKError.config_error(f"Failed to save configuration: {e}", {"path": str(path)}) from e
        return path

    def validate(self) -> ValidationResult:
        result = ValidationResult()

        if not self.rpc_url:
            result.errors.append("Network RPC URL is required")
        if not self.cash_token:
            result.warnings.append("No cash token configured; token operations are unavailable")
        elif not Web3.is_address(self.cash_token):
            result.errors.append(f"Invalid cash token address: {self.cash_token}")
        if not self.entry_point:
            result.warnings.append("No EntryPoint configured; it will be queried from the bundler")
        elif not Web3.is_address(self.entry_point):
            result.errors.append(f"Invalid EntryPoint address: {self.entry_point}")

        for name in ("smart_account_factory", "aggregator"):
            value = getattr(self, name)
            if value and not Web3.is_address(value):
                result.errors.append(f"Invalid {name} address: {value}")

        if not self.entities:
            result.warnings.append("No entities configured")
        for index, entity in enumerate(self.entities, start=1):
            label = f"entity{index}"
            if not entity.private_key or not is_private_key(entity.private_key):
                result.errors.append(f"{label}: invalid private key")
                continue
            if entity.address:
                if not Web3.is_address(entity.address):
                    result.errors.append(f"{label}: invalid address {entity.address}")
                elif Account.from_key(entity.private_key).address != Web3.to_checksum_address(entity.address):
                    result.errors.append(f"{label}: address does not match private key")
            if not entity.smart_account:
                result.warnings.append(f"{label}: no smart account configured")
            elif not Web3.is_address(entity.smart_account):
                result.errors.append(f"{label}: invalid smart account address {entity.smart_account}")

        if self.gas_limit <= 0:
            result.errors.append("Gas limit must be positive")
        if self.retry_attempts < 1:
            result.errors.append("Retry attempts must be at least 1")
        if self.timeout <= 0:
            result.errors.append("Timeout must be positive")
        return result

    def validate_or_raise(self) -> "SDKConfig":
        result = self.validate()
        for warning in result.warnings:
            logger.warning(f"Configuration: {warning}")
        if not result.is_valid:
            raise SDKError.config_error("Configuration validation failed", {"errors": result.errors})
        return self

    def update(self, **changes) -> "SDKConfig":
        """Copy with `changes` applied; the copy must pass validation, self is left untouched"""
        unknown = sorted(set(changes) - {f.name for f in fields(self)})
        if unknown:
            raise SDKError.config_error(f"Unknown configuration fields: {', '.join(unknown)}", {"fields": unknown})
        updated = replace(self, **changes)
        updated.validate_or_raise()
        logger.info(f"Configuration updated: {', '.join(sorted(changes))}")
        return updated


def _read_json(path) -> Dict:
    path = Path(path)
    if not path.exists():
        raise SDKError.config_error(f"Configuration file not found: {path}", {"path": str(path)})
    try:
        return json.loads(path.read_text())
    except json.JSONDecodeError as e:
        raise SDKError.config_error(f"Invalid JSON in {path}: {e}", {"path": str(path)}) from e
