"""
Test configuration and fixtures
"""

from unittest.mock import Mock

import pytest
from eth_account import Account
from web3 import Web3

import bundler
from aggregator import Aggregator
from cash_token import CashToken
from chain import Chain
from config import DEV_PRIVATE_KEYS, EntityConfig, NodeConfig, SDKConfig
from encoding import decode_result, encode_call
from entry_point import EntryPoint
from factory import SmartAccountFactory
from node import DevNode

NODE_URL = "http://devnode.test"

DEPLOYER_KEY, OWNER_KEY, OTHER_KEY, THIRD_KEY, FOURTH_KEY = DEV_PRIVATE_KEYS


@pytest.fixture
def keys():
    return {
        "deployer": DEPLOYER_KEY,
        "owner": OWNER_KEY,
        "other": OTHER_KEY,
        "third": THIRD_KEY,
        "fourth": FOURTH_KEY,
    }


@pytest.fixture
def deployer():
    return Account.from_key(DEPLOYER_KEY).address


@pytest.fixture
def owner():
    return Account.from_key(OWNER_KEY).address


@pytest.fixture
def other():
    return Account.from_key(OTHER_KEY).address


@pytest.fixture
def third():
    return Account.from_key(THIRD_KEY).address


@pytest.fixture
def chain(deployer, owner, other, third):
    """Bare ledger with four funded externally owned accounts"""
    ledger = Chain()
    for address in (deployer, owner, other, third):
        ledger.fund(address, Web3.to_wei(100, "ether"))
    return ledger


@pytest.fixture
def entry_point(chain, deployer):
    return chain.deploy(deployer, EntryPoint)


@pytest.fixture
def factory(chain, deployer, entry_point):
    return chain.deploy(deployer, SmartAccountFactory, entry_point)


@pytest.fixture
def token(chain, deployer):
    return chain.deploy(deployer, CashToken, "Cash Token", "CASH", 18, 0)


@pytest.fixture
def aggregator(chain, deployer):
    return chain.deploy(deployer, Aggregator)


@pytest.fixture
def read(chain):
    """eth_call style read: read(to, signature, *args, returns=...)"""
    def _read(to, signature, *args, returns):
        return decode_result(returns, chain.call_static(to, encode_call(signature, *args)))
    return _read


@pytest.fixture
def transact(chain):
    """Send one transaction: transact(sender, to, signature, *args, value=0)"""
    def _transact(sender, to, signature, *args, value=0):
        return chain.transact(sender, to, encode_call(signature, *args), value=value)
    return _transact


@pytest.fixture
def node():
    return DevNode(NodeConfig())


@pytest.fixture
def w3(node):
    return Web3(node.provider())


@pytest.fixture
def bundler_http(node, monkeypatch):
    """Route the bundler client's HTTP calls into the node's Flask app"""
    client = node.app.test_client()
    calls = []

    def post(url, json=None, headers=None, timeout=None):
        calls.append(json)
        response = client.post("/", json=json, headers=headers)
        return Mock(status_code=response.status_code, json=Mock(return_value=response.get_json()))

    monkeypatch.setattr(bundler.requests, "post", post)
    return calls


@pytest.fixture
def sdk_config(node):
    return SDKConfig(
        rpc_url=NODE_URL,
        bundler_url=NODE_URL,
        entities=[EntityConfig(private_key=key) for key in (OWNER_KEY, OTHER_KEY, THIRD_KEY)],
        retry_attempts=2,
    )
