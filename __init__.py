"""
Smart Account Cash Tracker

ERC-4337 style smart accounts with owner / EntryPoint authorization,
deterministic CREATE2 deployment through a factory, a CashToken ledger and a
read-only batch Aggregator, served by an in-memory development node and
driven by a web3 based client SDK.
"""

# Client SDK
from sdk import CashTrackerSDK, Entity, SmartAccountInfo, TokenAllowance, TokenBalance, TransactionResult

# Configuration
from config import EntityConfig, NodeConfig, SDKConfig, ValidationResult

# Contracts
from smart_account import SmartAccount
from factory import SmartAccountFactory, compute_create2_address, predict_account_address
from cash_token import CashToken
from aggregator import Aggregator
from entry_point import EntryPoint

# Individual components for advanced usage
from chain import Chain
from node import DevNode, NodeProvider
from bundler import BundlerClient, convert_user_operation_to_rpc_format
from errors import Revert, SDKError, SDKErrorCode
from user_operations import (
    PackedUserOperation,
    create_eth_transfer_user_operation,
    create_token_transfer_user_operation,
    sign_user_operation,
    user_operation_hash,
)

__version__ = "1.0.0"

__all__ = [
    "CashTrackerSDK",
    "Entity",
    "SmartAccountInfo",
    "TokenAllowance",
    "TokenBalance",
    "TransactionResult",
    "EntityConfig",
    "NodeConfig",
    "SDKConfig",
    "ValidationResult",
    "SmartAccount",
    "SmartAccountFactory",
    "compute_create2_address",
    "predict_account_address",
    "CashToken",
    "Aggregator",
    "EntryPoint",
    "Chain",
    "DevNode",
    "NodeProvider",
    "BundlerClient",
    "convert_user_operation_to_rpc_format",
    "Revert",
    "SDKError",
    "SDKErrorCode",
    "PackedUserOperation",
    "create_eth_transfer_user_operation",
    "create_token_transfer_user_operation",
    "sign_user_operation",
    "user_operation_hash",
]
