"""
Development JSON-RPC node for the cash tracker ledger

Serves the standard Ethereum methods a web3 client needs, plus the ERC-4337
bundler methods, over a single in-memory chain:
1. Funds the development accounts and deploys the EntryPoint on start
2. Executes signed legacy transactions (eth_sendRawTransaction)
3. Bundles user operations through the EntryPoint from the first dev account
"""

import itertools
import logging
import threading
from typing import Any, Callable, Dict, List, Optional

import rlp
from eth_account import Account
from eth_utils import big_endian_to_int, to_checksum_address
from flask import Flask, jsonify, request
from hexbytes import HexBytes
from web3 import Web3
from web3.providers.base import BaseProvider

from chain import Chain, Log, Receipt
from config import DEFAULT_GAS_LIMIT, DEFAULT_GAS_PRICE, NodeConfig
from encoding import encode_call
from entry_point import EntryPoint, UserOperationEvent, UserOperationRejected, UserOperationRevertReason
from errors import Revert, TransactionRejected
from user_operations import PACKED_USER_OPERATION_TYPE, PackedUserOperation, user_operation_hash

logger = logging.getLogger(__name__)

# JSON-RPC error codes
PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603
SERVER_ERROR = -32000
EXECUTION_REVERTED = 3
USER_OPERATION_REJECTED = -32500

HANDLE_OPS_SIGNATURE = f"handleOps({PACKED_USER_OPERATION_TYPE}[],address)"

VALIDATION_FAILURES = {
    1: "AA24 signature error",
    2: "AA25 invalid account nonce",
}

EMPTY_BLOOM = "0x" + "00" * 256


class RPCError(Exception):
    def __init__(self, code: int, message: str, data: Optional[str] = None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.data = data

    def to_dict(self) -> Dict[str, Any]:
        error = {"code": self.code, "message": self.message}
        if self.data is not None:
            error["data"] = self.data
        return error


def _quantity(value: Any) -> int:
    if isinstance(value, str):
        return int(value, 16)
    return int(value)


def _data(value: Optional[str]) -> bytes:
    return bytes(HexBytes(value)) if value else b""


class DevNode:
    """In-memory chain behind a Flask JSON-RPC endpoint"""

    def __init__(self, config: Optional[NodeConfig] = None):
        self.config = config or NodeConfig.from_env()
        self.chain = Chain(chain_id=self.config.chain_id)
        self.user_operations: Dict[bytes, Receipt] = {}
        self._lock = threading.Lock()
        self._methods: Dict[str, Callable[[List], Any]] = {
            "web3_clientVersion": lambda params: "cash-tracker-devnode/1.0.0",
            "net_version": lambda params: str(self.chain.chain_id),
            "eth_chainId": lambda params: hex(self.chain.chain_id),
            "eth_blockNumber": lambda params: hex(self.chain.block_number),
            "eth_gasPrice": lambda params: hex(DEFAULT_GAS_PRICE),
            "eth_accounts": lambda params: list(self.accounts),
            "eth_getBalance": self.eth_get_balance,
            "eth_getCode": self.eth_get_code,
            "eth_getTransactionCount": self.eth_get_transaction_count,
            "eth_call": self.eth_call,
            "eth_estimateGas": self.eth_estimate_gas,
            "eth_sendRawTransaction": self.eth_send_raw_transaction,
            "eth_getTransactionReceipt": self.eth_get_transaction_receipt,
            "eth_sendUserOperation": self.eth_send_user_operation,
            "eth_getUserOperationReceipt": self.eth_get_user_operation_receipt,
            "eth_supportedEntryPoints": lambda params: [self.entry_point],
            "dev_setBalance": self.dev_set_balance,
        }

        self.accounts = [Account.from_key(key).address for key in self.config.dev_private_keys]
        self.bundler = self.accounts[0]
        balance = Web3.to_wei(self.config.dev_account_balance_eth, "ether")
        for address in self.accounts:
            self.chain.fund(address, balance)
        self.entry_point = self.chain.deploy(self.bundler, EntryPoint)
        logger.info(f"Dev node ready: chain {self.chain.chain_id}, EntryPoint {self.entry_point}, "
                    f"{len(self.accounts)} funded accounts")

        self.app = Flask(__name__)
        self._setup_routes()

    def _setup_routes(self) -> None:
        """Set up Flask routes"""
        self.app.route("/", methods=["POST"])(self.handle_rpc_request)
        self.app.route("/health", methods=["GET"])(self.health_check)

    # JSON-RPC plumbing

    def handle_rpc_request(self):
        payload = request.get_json(silent=True)
        if payload is None:
            return jsonify({"jsonrpc": "2.0", "id": None,
                            "error": RPCError(PARSE_ERROR, "Parse error").to_dict()})
        return jsonify(self.handle_rpc(payload))

    def handle_rpc(self, payload: Any) -> Any:
        """Answer one JSON-RPC request or a batch of them"""
        if isinstance(payload, list):
            if not payload:
                return {"jsonrpc": "2.0", "id": None,
                        "error": RPCError(INVALID_REQUEST, "Empty batch").to_dict()}
            return [self._handle_single(item) for item in payload]
        return self._handle_single(payload)

    def _handle_single(self, payload: Any) -> Dict[str, Any]:
        if not isinstance(payload, dict) or not isinstance(payload.get("method"), str):
            return {"jsonrpc": "2.0", "id": None,
                    "error": RPCError(INVALID_REQUEST, "Invalid request").to_dict()}
        request_id = payload.get("id")
        method = payload["method"]
        params = payload.get("params") or []
        try:
            handler = self._methods.get(method)
            if handler is None:
                raise RPCError(METHOD_NOT_FOUND, f"Method not found: {method}")
            with self._lock:
                result = handler(list(params))
        except RPCError as e:
            return {"jsonrpc": "2.0", "id": request_id, "error": e.to_dict()}
        except (IndexError, KeyError, TypeError, ValueError) as e:
            logger.warning(f"Invalid params for {method}: {e}")
            return {"jsonrpc": "2.0", "id": request_id,
                    "error": RPCError(INVALID_PARAMS, f"Invalid params: {e}").to_dict()}
        except Exception as e:
            logger.exception(f"{method} failed")
            return {"jsonrpc": "2.0", "id": request_id,
                    "error": RPCError(INTERNAL_ERROR, f"Internal error: {e}").to_dict()}
        return {"jsonrpc": "2.0", "id": request_id, "result": result}

    def health_check(self):
        """Dead-simple health check endpoint"""
        return "OK", 200

    # state queries

    def eth_get_balance(self, params: List) -> str:
        return hex(self.chain.balance_of(params[0]))

    def eth_get_code(self, params: List) -> str:
        return Web3.to_hex(self.chain.get_code(params[0]))

    def eth_get_transaction_count(self, params: List) -> str:
        return hex(self.chain.nonce_of(params[0]))

    def eth_call(self, params: List) -> str:
        transaction = params[0]
        sender = transaction.get("from")
        try:
            result = self.chain.call_static(
                transaction["to"],
                _data(transaction.get("data") or transaction.get("input")),
                sender=to_checksum_address(sender) if sender else None,
                value=_quantity(transaction.get("value", 0)),
            )
        except Revert as e:
            raise RPCError(EXECUTION_REVERTED, "execution reverted", Web3.to_hex(e.data)) from e
        return Web3.to_hex(result)

    def eth_estimate_gas(self, params: List) -> str:
        """No gas metering; reverts surface, anything else gets the default limit"""
        transaction = params[0]
        if transaction.get("to"):
            self.eth_call([transaction])
        return hex(DEFAULT_GAS_LIMIT)

    # transactions

    def eth_send_raw_transaction(self, params: List) -> str:
        raw = bytes(HexBytes(params[0]))
        if not raw or raw[0] < 0xc0:
            raise RPCError(INVALID_PARAMS, "Only legacy transactions are supported")
        try:
            fields = rlp.decode(raw)
            sender = Account.recover_transaction(raw)
        except Exception as e:
            raise RPCError(INVALID_PARAMS, f"Invalid raw transaction: {e}") from e
        if len(fields) != 9:
            raise RPCError(INVALID_PARAMS, "Invalid raw transaction: expected 9 fields")

        nonce, _gas_price, _gas, to, value, data, v, _r, _s = fields
        v = big_endian_to_int(v)
        if v >= 35 and (v - 35) // 2 != self.chain.chain_id:
            raise RPCError(INVALID_PARAMS, f"Transaction signed for chain {(v - 35) // 2}")

        transaction_hash = bytes(Web3.keccak(raw))
        try:
            receipt = self.chain.send_transaction(
                sender,
                to_checksum_address(to) if to else None,
                value=big_endian_to_int(value),
                data=data,
                nonce=big_endian_to_int(nonce),
                transaction_hash=transaction_hash,
            )
        except TransactionRejected as e:
            raise RPCError(SERVER_ERROR, str(e)) from e
        logger.info(f"Mined transaction {Web3.to_hex(transaction_hash)} from {sender} "
                    f"(block {receipt.block_number}, status {receipt.status})")
        return Web3.to_hex(transaction_hash)

    def eth_get_transaction_receipt(self, params: List) -> Optional[Dict[str, Any]]:
        receipt = self.chain.receipts.get(bytes(HexBytes(params[0])))
        return self._format_receipt(receipt) if receipt else None

    def dev_set_balance(self, params: List) -> bool:
        self.chain.set_balance(params[0], _quantity(params[1]))
        return True

    # bundler

    def eth_send_user_operation(self, params: List) -> str:
        user_operation, entry_point = params[0], params[1]
        if to_checksum_address(entry_point) != self.entry_point:
            raise RPCError(INVALID_PARAMS, f"Unsupported EntryPoint {entry_point}")

        op = PackedUserOperation.from_rpc(user_operation)
        op_hash = user_operation_hash(op, self.entry_point, self.chain.chain_id)
        if op_hash in self.user_operations:
            raise RPCError(USER_OPERATION_REJECTED, "UserOperation already known")

        receipt = self.chain.send_transaction(
            self.bundler, self.entry_point,
            data=encode_call(HANDLE_OPS_SIGNATURE, [op.as_tuple()], self.bundler),
        )
        if not receipt.succeeded:
            logger.error(f"Bundle for UserOperation {Web3.to_hex(op_hash)} failed: {receipt.error}")
            raise RPCError(USER_OPERATION_REJECTED, str(receipt.error), Web3.to_hex(receipt.return_data))
        for rejected in receipt.events(UserOperationRejected):
            if rejected["userOpHash"] == op_hash:
                status = rejected["validationStatus"]
                raise RPCError(USER_OPERATION_REJECTED, VALIDATION_FAILURES.get(status, f"validation status {status}"))

        self.user_operations[op_hash] = receipt
        logger.info(f"Bundled UserOperation {Web3.to_hex(op_hash)} from {op.sender} "
                    f"in {Web3.to_hex(receipt.transaction_hash)}")
        return Web3.to_hex(op_hash)

    def eth_get_user_operation_receipt(self, params: List) -> Optional[Dict[str, Any]]:
        op_hash = bytes(HexBytes(params[0]))
        receipt = self.user_operations.get(op_hash)
        if receipt is None:
            return None

        event = next(e for e in receipt.events(UserOperationEvent) if e["userOpHash"] == op_hash)
        reason = next(
            (e["revertReason"] for e in receipt.events(UserOperationRevertReason) if e["userOpHash"] == op_hash),
            None,
        )
        formatted = self._format_receipt(receipt)
        return {
            "userOpHash": Web3.to_hex(op_hash),
            "entryPoint": self.entry_point,
            "sender": event["sender"],
            "nonce": hex(event["nonce"]),
            "paymaster": event["paymaster"],
            "actualGasCost": hex(event["actualGasCost"]),
            "actualGasUsed": hex(event["actualGasUsed"]),
            "success": event["success"],
            "reason": Web3.to_hex(reason) if reason is not None else None,
            "logs": formatted["logs"],
            "receipt": formatted,
        }

    # formatting

    def _block_hash(self, block_number: int) -> str:
        return Web3.to_hex(Web3.keccak(rlp.encode([self.chain.chain_id, block_number])))

    def _format_log(self, log: Log, block_hash: str) -> Dict[str, Any]:
        return {
            "address": log.address,
            "topics": [Web3.to_hex(topic) for topic in log.topics],
            "data": Web3.to_hex(log.data),
            "blockNumber": hex(log.block_number),
            "blockHash": block_hash,
            "transactionHash": Web3.to_hex(log.transaction_hash),
            "transactionIndex": "0x0",
            "logIndex": hex(log.log_index),
            "removed": False,
        }

    def _format_receipt(self, receipt: Receipt) -> Dict[str, Any]:
        block_hash = self._block_hash(receipt.block_number)
        formatted = {
            "transactionHash": Web3.to_hex(receipt.transaction_hash),
            "transactionIndex": "0x0",
            "blockHash": block_hash,
            "blockNumber": hex(receipt.block_number),
            "from": receipt.sender,
            "to": receipt.to,
            "contractAddress": receipt.contract_address,
            "cumulativeGasUsed": "0x0",
            "gasUsed": "0x0",
            "effectiveGasPrice": hex(DEFAULT_GAS_PRICE),
            "logs": [self._format_log(log, block_hash) for log in receipt.logs],
            "logsBloom": EMPTY_BLOOM,
            "status": hex(receipt.status),
            "type": "0x0",
        }
        if not receipt.succeeded:
            formatted["revertReason"] = Web3.to_hex(receipt.return_data)
        return formatted

    def provider(self) -> "NodeProvider":
        return NodeProvider(self)

    def run(self, host: Optional[str] = None, port: Optional[int] = None) -> None:
        """Run the Flask application"""
        self.app.run(host=host or self.config.host, port=port or self.config.port, threaded=True)


class NodeProvider(BaseProvider):
    """web3 provider answering requests from a DevNode in the same process"""

    def __init__(self, node: DevNode):
        super().__init__()
        self.node = node
        self._request_ids = itertools.count()

    def make_request(self, method, params):
        return self.node.handle_rpc({
            "jsonrpc": "2.0",
            "id": next(self._request_ids),
            "method": method,
            "params": list(params or []),
        })

    def is_connected(self, show_traceback: bool = False) -> bool:
        return True


def main() -> None:
    logging.basicConfig(level=logging.INFO)
    node = DevNode(NodeConfig.from_env())
    node.run()


if __name__ == "__main__":
    main()
