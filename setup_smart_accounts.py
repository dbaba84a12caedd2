"""
Deploy the cash tracker contracts and one smart account per entity key

Reads `.env` (NETWORK_RPC_URL, ENTITIES_PK, ...), deploys whatever contract
is not configured yet and writes config/entities.json for the SDK.
"""

import json
import logging
import os
import sys
from pathlib import Path
from typing import Dict, Optional

from dotenv import load_dotenv
from web3 import Web3

from aggregator import Aggregator
from cash_token import CashToken
from config import SDKConfig
from errors import SDKError
from factory import SmartAccountFactory
from sdk import CashTrackerSDK

logger = logging.getLogger(__name__)

DEFAULT_OUTPUT = Path("config") / "entities.json"

# CashToken("Cash Token", "CASH", 18, 1000)
TOKEN_ARGS = ("Cash Token", "CASH", 18, 1000)


def setup_smart_accounts(config: SDKConfig, deployer_key: Optional[str] = None, web3: Optional[Web3] = None,
                         output: Optional[Path] = DEFAULT_OUTPUT, bundler=None) -> Dict:
    """Deploy missing contracts and entity accounts; returns the entities file content"""
    if not config.entities:
        raise SDKError.config_error("ENTITIES_PK is not set")
    sdk = CashTrackerSDK(config, web3=web3, bundler=bundler)
    deployer_key = deployer_key or config.entities[0].private_key

    if not config.entry_point:
        config.entry_point = Web3.to_checksum_address(sdk.bundler.resolve_entry_point())
    logger.info(f"Using EntryPoint {config.entry_point}")

    if not config.cash_token:
        config.cash_token = sdk.deploy_contract(deployer_key, CashToken, *TOKEN_ARGS)
        logger.info(f"CashToken deployed at {config.cash_token}")
    if not config.smart_account_factory:
        config.smart_account_factory = sdk.deploy_contract(deployer_key, SmartAccountFactory, config.entry_point)
        logger.info(f"SmartAccountFactory deployed at {config.smart_account_factory}")
    if not config.aggregator:
        config.aggregator = sdk.deploy_contract(deployer_key, Aggregator)
        logger.info(f"Aggregator deployed at {config.aggregator}")

    entities = sdk.deploy_smart_accounts()
    logger.info(f"Successfully set up {len(entities)} smart accounts")

    content = {
        "network": config.rpc_url,
        "chainId": sdk.chain_id,
        "entryPoint": config.entry_point,
        "contracts": {
            "cashToken": config.cash_token,
            "smartAccountFactory": config.smart_account_factory,
            "aggregator": config.aggregator,
        },
        "entities": [
            {"privateKey": e.private_key, "address": e.address, "smartAccount": e.smart_account}
            for e in entities
        ],
    }
    if output is not None:
        output = Path(output)
        output.parent.mkdir(parents=True, exist_ok=True)
        output.write_text(json.dumps(content, indent=2))
        logger.info(f"Configuration saved to {output}")
    return content


def main() -> int:
    logging.basicConfig(level=logging.INFO)
    load_dotenv(os.environ.get("ENV_FILE", ".env"))

    try:
        config = SDKConfig.from_env()
        content = setup_smart_accounts(
            config,
            deployer_key=os.environ.get("DEPLOYER_PK"),
            output=Path(os.environ.get("ENTITIES_CONFIG_PATH", DEFAULT_OUTPUT)),
        )
    except SDKError as e:
        logger.error(f"Setup failed [{e.code.value}]: {e}")
        return 1

    for entity in content["entities"]:
        print(f"- {entity['address']}: {entity['smartAccount']}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
