"""
Deterministic (CREATE2) deployment of smart accounts
"""

import logging

from web3 import Web3

from addresses import compute_create2_address
from contract import Contract, Event, EventField, Message, external
from encoding import encode_args
from errors import DeploymentFailed
from smart_account import SmartAccount

logger = logging.getLogger(__name__)

SmartAccountCreated = Event(
    "SmartAccountCreated",
    EventField("owner", "address", indexed=True),
    EventField("account", "address", indexed=True),
)


def deployment_salt(owner: str, salt: int) -> bytes:
    """keccak(abi.encode(owner, salt)); binds the account address to its owner"""
    return bytes(Web3.keccak(encode_args(["address", "uint256"], [Web3.to_checksum_address(owner), salt])))


def account_init_code(entry_point: str, owner: str) -> bytes:
    return SmartAccount.init_code(Web3.to_checksum_address(entry_point), Web3.to_checksum_address(owner))


def predict_account_address(factory: str, entry_point: str, owner: str, salt: int) -> str:
    """Address `factory` will deploy the account of (owner, salt) to"""
    return compute_create2_address(
        factory,
        deployment_salt(owner, salt),
        Web3.keccak(account_init_code(entry_point, owner)),
    )


class SmartAccountFactory(Contract):
    """Creates one SmartAccount per (owner, salt), all bound to the same EntryPoint"""

    constructor_types = ("address",)
    events = (SmartAccountCreated,)

    def constructor(self, msg: Message, entry_point: str) -> None:
        self.entry_point = entry_point

    @external("getAddress(address,uint256)", returns="address", view=True)
    def get_address(self, msg: Message, owner: str, salt: int) -> str:
        return predict_account_address(msg.address, self.entry_point, owner, salt)

    @external("createAccount(address,uint256)", returns="address")
    def create_account(self, msg: Message, owner: str, salt: int) -> str:
        predicted = predict_account_address(msg.address, self.entry_point, owner, salt)
        if msg.chain.has_code(predicted):
            return predicted

        account = msg.chain.create2(msg.address, deployment_salt(owner, salt), account_init_code(self.entry_point, owner))
        if account is None or account != predicted:
            raise DeploymentFailed()
        self.emit(msg, SmartAccountCreated, owner, account)
        logger.info(f"Created smart account {account} for owner {owner} (salt {salt})")
        return account

    @external("getEntryPoint()", returns="address", view=True)
    def get_entry_point(self, msg: Message) -> str:
        return self.entry_point
