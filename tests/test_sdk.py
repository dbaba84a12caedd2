"""
End-to-end tests of the client SDK against an in-process dev node
"""

import json

import pytest
import requests
from web3 import Web3

from config import EntityConfig, SDKConfig
from encoding import encode_call
from errors import SDKError, SDKErrorCode
from sdk import CashTrackerSDK, describe_revert, format_units
from setup_smart_accounts import setup_smart_accounts
from user_operations import create_token_transfer_user_operation, sign_user_operation

from conftest import DEPLOYER_KEY, FOURTH_KEY, NODE_URL, OWNER_KEY

ONE = 10**18


@pytest.fixture
def deployment(node, w3, bundler_http, sdk_config, tmp_path):
    return setup_smart_accounts(sdk_config, deployer_key=DEPLOYER_KEY, web3=w3, output=tmp_path / "entities.json")


@pytest.fixture
def sdk(deployment, sdk_config, w3):
    return CashTrackerSDK(sdk_config, web3=w3)


@pytest.fixture
def mint(node, deployment):
    def _mint(entity_index, amount):
        account = deployment["entities"][entity_index]["smartAccount"]
        node.chain.transact(node.bundler, deployment["contracts"]["cashToken"],
                            encode_call("mint(address,uint256)", account, amount)).raise_for_status()
    return _mint


class TestSetup:
    def test_deploys_contracts_and_accounts(self, deployment, node, tmp_path):
        assert deployment["entryPoint"] == node.entry_point
        assert deployment["chainId"] == 31337
        assert all(deployment["contracts"].values())
        for entity in deployment["entities"]:
            assert node.chain.has_code(entity["smartAccount"])
        assert json.loads((tmp_path / "entities.json").read_text()) == deployment

    def test_token_supply_goes_to_deployer(self, sdk, node):
        info = sdk.token_info()
        assert (info["name"], info["symbol"], info["decimals"]) == ("Cash Token", "CASH", 18)
        assert info["total_supply"] == 1000

    def test_rerun_reuses_everything(self, deployment, sdk_config, w3, node, tmp_path):
        block = node.chain.block_number
        again = setup_smart_accounts(sdk_config, deployer_key=DEPLOYER_KEY, web3=w3, output=None)

        assert again["contracts"] == deployment["contracts"]
        assert again["entities"] == deployment["entities"]
        assert node.chain.block_number == block

    def test_entities_file_loads_back(self, deployment, tmp_path, w3, bundler_http):
        config = SDKConfig.from_entities_file(tmp_path / "entities.json", environ={})
        config.bundler_url = NODE_URL
        sdk = CashTrackerSDK(config, web3=w3)

        assert [e.smart_account for e in sdk.entities.values()] == \
            [e["smartAccount"] for e in deployment["entities"]]

    def test_requires_entities(self, w3, bundler_http):
        with pytest.raises(SDKError) as excinfo:
            setup_smart_accounts(SDKConfig(rpc_url=NODE_URL), web3=w3, output=None)
        assert excinfo.value.code == SDKErrorCode.INVALID_CONFIG


class TestEntities:
    def test_entity_ids_follow_configuration_order(self, sdk, deployment):
        assert list(sdk.entities) == ["entity1", "entity2", "entity3"]
        assert sdk.active_entity.id == "entity1"

    def test_switch_entity(self, sdk):
        assert sdk.switch_entity("entity2").id == "entity2"
        assert sdk.active_entity.id == "entity2"

    def test_unknown_entity(self, sdk):
        with pytest.raises(SDKError) as excinfo:
            sdk.get_balance("entity9")
        assert excinfo.value.code == SDKErrorCode.ENTITY_NOT_FOUND

    def test_private_key_hidden_from_repr(self, sdk):
        assert OWNER_KEY not in repr(sdk.get_entity("entity1"))

    def test_entity_without_account(self, w3, bundler_http):
        sdk = CashTrackerSDK(SDKConfig(rpc_url=NODE_URL, entities=[EntityConfig(private_key=OWNER_KEY)]), web3=w3)
        with pytest.raises(SDKError) as excinfo:
            sdk.get_balance("entity1")
        assert excinfo.value.code == SDKErrorCode.VALIDATION_ERROR


class TestReads:
    def test_balance(self, sdk, mint):
        mint(0, 3 * ONE)
        balance = sdk.get_balance("entity1")

        assert balance.balance == 3 * ONE
        assert balance.formatted == "3"
        assert balance.symbol == "CASH"

    def test_all_balances_through_aggregator(self, sdk, mint):
        mint(0, 100)
        mint(1, 200)
        mint(2, 300)

        balances = sdk.get_all_balances()
        assert [(b.entity_id, b.balance) for b in balances] == [("entity1", 100), ("entity2", 200), ("entity3", 300)]

    def test_all_balances_without_aggregator(self, sdk, mint):
        mint(1, 5)
        sdk.config.aggregator = None

        balances = sdk.get_all_balances()
        assert [b.balance for b in balances] == [0, 5, 0]

    def test_smart_account_info(self, sdk, node):
        info = sdk.smart_account_info("entity1")

        assert info.deployed
        assert info.owner == sdk.get_entity("entity1").address
        assert info.entry_point == node.entry_point
        assert info.nonce == 0


class TestWrites:
    def test_transfer(self, sdk, mint):
        mint(0, 10 * ONE)
        result = sdk.transfer("entity1", "entity2", 4 * ONE)

        assert result.success
        assert result.status == "confirmed"
        assert sdk.get_balance("entity1").balance == 6 * ONE
        assert sdk.get_balance("entity2").balance == 4 * ONE

    def test_transfer_without_funds_fails(self, sdk):
        result = sdk.transfer("entity1", "entity2", 5)

        assert not result.success
        assert result.status == "failed"
        assert result.error.startswith("ERC20InsufficientBalance")

    def test_transfer_rejects_non_positive_amount(self, sdk):
        with pytest.raises(SDKError) as excinfo:
            sdk.transfer("entity1", "entity2", 0)
        assert excinfo.value.code == SDKErrorCode.VALIDATION_ERROR

    def test_approve_and_transfer_from(self, sdk, mint):
        mint(0, 100)
        assert sdk.approve_tokens("entity1", "entity2", 50).success
        assert sdk.get_allowance("entity1", "entity2").allowance == 50

        result = sdk.transfer_from("entity2", "entity1", "entity3", 20)

        assert result.success
        assert sdk.get_allowance("entity1", "entity2").allowance == 30
        assert sdk.get_balance("entity3").balance == 20

    def test_all_allowances(self, sdk):
        sdk.approve_tokens("entity3", "entity1", 9)
        allowances = {(a.owner_id, a.spender_id): a.allowance for a in sdk.get_all_allowances()}

        assert len(allowances) == 6
        assert allowances[("entity3", "entity1")] == 9
        assert allowances[("entity1", "entity3")] == 0

    def test_transfer_via_user_operation(self, sdk, mint):
        mint(0, 100)

        first = sdk.transfer_via_user_operation("entity1", "entity2", 30)
        second = sdk.transfer_via_user_operation("entity1", "entity2", 10)

        assert first.status == "confirmed"
        assert second.status == "confirmed"
        assert first.hash != second.hash
        assert sdk.get_balance("entity2").balance == 40
        assert sdk.smart_account_info("entity1").nonce == 2

    def test_user_operation_execution_failure(self, sdk):
        result = sdk.transfer_via_user_operation("entity1", "entity2", 30)

        assert result.status == "failed"
        assert result.error.startswith("ERC20InsufficientBalance")
        assert sdk.smart_account_info("entity1").nonce == 1

    def test_deploy_smart_accounts_adds_entity(self, sdk, node):
        [entity] = sdk.deploy_smart_accounts([FOURTH_KEY])

        assert entity.id == "entity4"
        assert node.chain.has_code(entity.smart_account)
        assert sdk.config.entities[-1].smart_account == entity.smart_account

    def test_deploy_smart_accounts_rejects_bad_key(self, sdk):
        with pytest.raises(SDKError) as excinfo:
            sdk.deploy_smart_accounts(["0x1234"])
        assert excinfo.value.code == SDKErrorCode.VALIDATION_ERROR


class TestRetries:
    def test_network_errors_are_retried(self, sdk):
        attempts = []

        def flaky():
            attempts.append(1)
            if len(attempts) == 1:
                raise requests.ConnectionError("connection refused")
            return "ok"

        assert sdk._with_retries("flaky", flaky) == "ok"
        assert len(attempts) == 2

    def test_gives_up_after_configured_attempts(self, sdk):
        def down():
            raise requests.Timeout("timed out")

        with pytest.raises(SDKError) as excinfo:
            sdk._with_retries("down", down)
        assert excinfo.value.code == SDKErrorCode.NETWORK_ERROR
        assert isinstance(excinfo.value.original_error, requests.Timeout)

    def test_stale_transaction_nonce_is_reread(self, sdk, mint, node, monkeypatch):
        mint(0, 10)
        sdk.transfer("entity1", "entity2", 1)
        owner = sdk.get_entity("entity1").address
        nonce_before = node.chain.nonce_of(owner)
        transaction_count = sdk.web3.eth.get_transaction_count
        read_nonces = []

        def stale_once(address, *args):
            nonce = transaction_count(address, *args)
            read_nonces.append(nonce)
            return 0 if len(read_nonces) == 1 else nonce

        monkeypatch.setattr(sdk.web3.eth, "get_transaction_count", stale_once)
        result = sdk.transfer("entity1", "entity2", 2)

        assert result.success
        assert read_nonces == [nonce_before, nonce_before]
        assert node.chain.nonce_of(owner) == nonce_before + 1
        assert sdk.get_balance("entity2").balance == 3

    def test_stale_user_operation_nonce_is_reread(self, sdk, mint, monkeypatch):
        mint(0, 100)
        submit = sdk.bundler.send_user_operation
        recipient = sdk.get_entity("entity2").smart_account
        sent_nonces = []

        def raced(user_op):
            sent_nonces.append(user_op.nonce)
            if len(sent_nonces) == 1:
                # another client spends the same nonce first
                competing = create_token_transfer_user_operation(
                    user_op.sender, sdk.cash_token.address, recipient, 5, user_op.nonce)
                submit(sign_user_operation(competing, OWNER_KEY, sdk.entry_point.address, sdk.chain_id))
            return submit(user_op)

        monkeypatch.setattr(sdk.bundler, "send_user_operation", raced)
        result = sdk.transfer_via_user_operation("entity1", "entity2", 30)

        assert result.status == "confirmed"
        assert sent_nonces == [0, 1]
        assert sdk.get_balance("entity2").balance == 35
        assert sdk.smart_account_info("entity1").nonce == 2


class TestFormatting:
    def test_format_units(self):
        assert format_units(1500000000000000000, 18) == "1.5"
        assert format_units(0, 18) == "0"
        assert format_units(123, 0) == "123"

    def test_describe_revert(self):
        assert describe_revert(None) == "execution reverted"
        data = Web3.to_hex(encode_call("Error(string)", "boom"))
        assert describe_revert(data) == "boom"
