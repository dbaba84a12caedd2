"""
Tests for the development JSON-RPC node
"""

import pytest
from eth_account import Account
from web3 import Web3
from web3.exceptions import ContractLogicError

from aggregator import Aggregator
from cash_token import CashToken
from config import NodeConfig
from encoding import ZERO_ADDRESS, decode_result, encode_call
from errors import InvalidInput, decode_revert
from factory import SmartAccountFactory
from node import (
    EXECUTION_REVERTED,
    INVALID_PARAMS,
    INVALID_REQUEST,
    METHOD_NOT_FOUND,
    PARSE_ERROR,
    SERVER_ERROR,
    USER_OPERATION_REJECTED,
    DevNode,
)
from user_operations import build_init_code, create_token_transfer_user_operation, sign_user_operation

from conftest import OTHER_KEY, OWNER_KEY


def rpc(node, method, *params):
    return node.handle_rpc({"jsonrpc": "2.0", "id": 1, "method": method, "params": list(params)})


def send_signed(node, key, to, data=b"", value=0, nonce=None, chain_id=None):
    account = Account.from_key(key)
    transaction = {
        "value": value,
        "data": data,
        "nonce": node.chain.nonce_of(account.address) if nonce is None else nonce,
        "gas": 500000,
        "gasPrice": Web3.to_wei(1, "gwei"),
        "chainId": chain_id or node.chain.chain_id,
    }
    if to:
        transaction["to"] = to
    signed = account.sign_transaction(transaction)
    return rpc(node, "eth_sendRawTransaction", Web3.to_hex(signed.raw_transaction))


@pytest.fixture
def contracts(node):
    """CashToken and factory deployed by the bundler account; owner's account holds 100 tokens"""
    token = node.chain.deploy(node.bundler, CashToken, "Cash Token", "CASH", 18, 0)
    factory = node.chain.deploy(node.bundler, SmartAccountFactory, node.entry_point)
    owner = Account.from_key(OWNER_KEY).address
    receipt = node.chain.transact(owner, factory, encode_call("createAccount(address,uint256)", owner, 0))
    account = decode_result("address", receipt.return_data)
    node.chain.transact(node.bundler, token, encode_call("mint(address,uint256)", account, 100)).raise_for_status()
    return {"token": token, "factory": factory, "account": account}


def user_operation(node, contracts, amount, nonce=0, key=OWNER_KEY):
    op = create_token_transfer_user_operation(contracts["account"], contracts["token"],
                                              Account.from_key(OTHER_KEY).address, amount, nonce)
    return sign_user_operation(op, key, node.entry_point, node.chain.chain_id).to_rpc()


class TestNodeStartup:
    def test_dev_accounts_are_funded(self, node, w3):
        assert w3.eth.chain_id == 31337
        assert w3.eth.accounts == node.accounts
        assert w3.eth.get_balance(node.accounts[1]) == Web3.to_wei(10000, "ether")

    def test_entry_point_is_deployed_by_bundler(self, node, w3):
        assert node.bundler == node.accounts[0]
        assert len(w3.eth.get_code(node.entry_point)) > 0
        assert rpc(node, "eth_supportedEntryPoints")["result"] == [node.entry_point]

    def test_config_from_env(self):
        config = NodeConfig.from_env({"NODE_PORT": "9000", "CHAIN_ID": "1337", "DEV_ACCOUNT_BALANCE_ETH": "5"})
        node = DevNode(config)

        assert config.port == 9000
        assert node.chain.chain_id == 1337
        assert node.chain.balance_of(node.accounts[0]) == Web3.to_wei(5, "ether")


class TestTransactions:
    def test_value_transfer(self, node, w3):
        receiver = node.accounts[2]
        before = w3.eth.get_balance(receiver)

        response = send_signed(node, OWNER_KEY, receiver, value=12345)
        receipt = w3.eth.wait_for_transaction_receipt(response["result"])

        assert receipt["status"] == 1
        assert w3.eth.get_balance(receiver) - before == 12345
        assert w3.eth.get_transaction_count(node.accounts[1]) == 1
        assert w3.eth.block_number == receipt["blockNumber"]

    def test_contract_deployment(self, node, w3):
        response = send_signed(node, OWNER_KEY, None, data=CashToken.init_code("Cash Token", "CASH", 18, 1000))
        receipt = w3.eth.wait_for_transaction_receipt(response["result"])

        token = w3.eth.contract(address=receipt["contractAddress"], abi=CashToken.abi())
        assert token.functions.symbol().call() == "CASH"
        assert token.functions.balanceOf(node.accounts[1]).call() == 1000

    def test_stale_nonce_is_refused(self, node):
        send_signed(node, OWNER_KEY, node.accounts[2], value=1)
        response = send_signed(node, OWNER_KEY, node.accounts[2], value=1, nonce=0)

        assert response["error"]["code"] == SERVER_ERROR
        assert "nonce" in response["error"]["message"]

    def test_wrong_chain_is_refused(self, node):
        response = send_signed(node, OWNER_KEY, node.accounts[2], value=1, chain_id=1)
        assert response["error"]["code"] == INVALID_PARAMS

    def test_failed_transaction_receipt(self, node, contracts):
        data = encode_call("transfer(address,uint256)", node.accounts[2], 1)
        response = send_signed(node, OTHER_KEY, contracts["token"], data=data)
        receipt = rpc(node, "eth_getTransactionReceipt", response["result"])["result"]

        assert receipt["status"] == "0x0"
        assert decode_revert(Web3.to_bytes(hexstr=receipt["revertReason"])).name == "ERC20InsufficientBalance"

    def test_unknown_receipt(self, node):
        assert rpc(node, "eth_getTransactionReceipt", "0x" + "00" * 32)["result"] is None

    def test_set_balance(self, node, w3):
        rpc(node, "dev_setBalance", node.accounts[3], hex(7))
        assert w3.eth.get_balance(node.accounts[3]) == 7


class TestCalls:
    def test_revert_carries_data(self, node):
        aggregator = node.chain.deploy(node.bundler, Aggregator)
        data = encode_call("getBalances(address,address[])", ZERO_ADDRESS, [node.accounts[1]])
        response = rpc(node, "eth_call", {"to": aggregator, "data": Web3.to_hex(data)}, "latest")

        assert response["error"]["code"] == EXECUTION_REVERTED
        assert isinstance(decode_revert(Web3.to_bytes(hexstr=response["error"]["data"])), InvalidInput)

    def test_web3_raises_contract_logic_error(self, node, w3):
        aggregator = node.chain.deploy(node.bundler, Aggregator)
        contract = w3.eth.contract(address=aggregator, abi=Aggregator.abi())

        with pytest.raises(ContractLogicError):
            contract.functions.getBalances(ZERO_ADDRESS, [node.accounts[1]]).call()

    def test_estimate_gas(self, node, w3):
        assert w3.eth.estimate_gas({"from": node.accounts[1], "to": node.accounts[2], "value": 1}) == 500000


class TestJsonRpc:
    def test_unknown_method(self, node):
        assert rpc(node, "eth_mining")["error"]["code"] == METHOD_NOT_FOUND

    def test_invalid_params(self, node):
        assert rpc(node, "eth_getBalance")["error"]["code"] == INVALID_PARAMS

    def test_invalid_request(self, node):
        assert node.handle_rpc({"id": 3})["error"]["code"] == INVALID_REQUEST
        assert node.handle_rpc([])["error"]["code"] == INVALID_REQUEST

    def test_batch(self, node):
        responses = node.handle_rpc([
            {"jsonrpc": "2.0", "id": 1, "method": "eth_chainId", "params": []},
            {"jsonrpc": "2.0", "id": 2, "method": "net_version", "params": []},
        ])
        assert [r["result"] for r in responses] == ["0x7a69", "31337"]
        assert [r["id"] for r in responses] == [1, 2]

    def test_http_endpoint(self, node):
        client = node.app.test_client()

        response = client.post("/", json={"jsonrpc": "2.0", "id": 9, "method": "eth_blockNumber", "params": []})
        assert response.status_code == 200
        assert response.get_json() == {"jsonrpc": "2.0", "id": 9, "result": "0x1"}

        garbage = client.post("/", data="not json", content_type="application/json")
        assert garbage.get_json()["error"]["code"] == PARSE_ERROR

        assert client.get("/health").data == b"OK"

    def test_web3_over_provider(self, w3):
        assert w3.is_connected()
        assert w3.client_version.startswith("cash-tracker-devnode")


class TestUserOperations:
    def test_send_and_fetch_receipt(self, node, contracts):
        response = rpc(node, "eth_sendUserOperation", user_operation(node, contracts, 25), node.entry_point)
        op_hash = response["result"]

        receipt = rpc(node, "eth_getUserOperationReceipt", op_hash)["result"]
        assert receipt["success"] is True
        assert receipt["sender"] == contracts["account"]
        assert receipt["nonce"] == "0x0"
        assert receipt["reason"] is None
        assert receipt["receipt"]["status"] == "0x1"
        balance = node.chain.call_static(contracts["token"],
                                         encode_call("balanceOf(address)", contracts["account"]))
        assert decode_result("uint256", balance) == 75

    def test_duplicate_is_refused(self, node, contracts):
        op = user_operation(node, contracts, 25)
        rpc(node, "eth_sendUserOperation", op, node.entry_point)

        response = rpc(node, "eth_sendUserOperation", op, node.entry_point)
        assert response["error"]["code"] == USER_OPERATION_REJECTED

    def test_stale_nonce(self, node, contracts):
        rpc(node, "eth_sendUserOperation", user_operation(node, contracts, 25), node.entry_point)

        response = rpc(node, "eth_sendUserOperation", user_operation(node, contracts, 10), node.entry_point)
        assert response["error"] == {"code": USER_OPERATION_REJECTED, "message": "AA25 invalid account nonce"}

    def test_bad_signature(self, node, contracts):
        response = rpc(node, "eth_sendUserOperation", user_operation(node, contracts, 25, key=OTHER_KEY),
                       node.entry_point)
        assert response["error"]["message"] == "AA24 signature error"

    def test_reverted_execution_has_reason(self, node, contracts):
        op_hash = rpc(node, "eth_sendUserOperation", user_operation(node, contracts, 1000), node.entry_point)["result"]

        receipt = rpc(node, "eth_getUserOperationReceipt", op_hash)["result"]
        assert receipt["success"] is False
        assert decode_revert(Web3.to_bytes(hexstr=receipt["reason"])).name == "ERC20InsufficientBalance"

    def test_bundle_failure_carries_data(self, node, contracts):
        owner = Account.from_key(OWNER_KEY).address
        op = create_token_transfer_user_operation(contracts["account"], contracts["token"], owner, 1, 0,
                                                  init_code=build_init_code(contracts["factory"], owner))
        signed = sign_user_operation(op, OWNER_KEY, node.entry_point, node.chain.chain_id)

        response = rpc(node, "eth_sendUserOperation", signed.to_rpc(), node.entry_point)
        assert response["error"]["code"] == USER_OPERATION_REJECTED
        assert "AA10" in response["error"]["message"]
        assert response["error"]["data"].startswith("0x")

    def test_unsupported_entry_point(self, node, contracts):
        response = rpc(node, "eth_sendUserOperation", user_operation(node, contracts, 1), node.accounts[1])
        assert response["error"]["code"] == INVALID_PARAMS

    def test_unknown_user_operation_receipt(self, node):
        assert rpc(node, "eth_getUserOperationReceipt", "0x" + "11" * 32)["result"] is None

    def test_rejected_operation_is_not_recorded(self, node, contracts):
        rpc(node, "eth_sendUserOperation", user_operation(node, contracts, 25, key=OTHER_KEY), node.entry_point)
        assert node.user_operations == {}
