"""
ERC-4337 bundler integration and format conversion utilities for smart accounts
"""

import logging
from typing import Dict, List, Optional

import requests

from user_operations import PackedUserOperation

logger = logging.getLogger(__name__)


def convert_user_operation_to_rpc_format(user_op: PackedUserOperation) -> Dict:
    """Convert a packed UserOperation to the bundler JSON format (EntryPoint v0.7)"""
    rpc_dict = user_op.to_rpc()
    if not user_op.signature:
        rpc_dict["signature"] = "0x"

    # Optional paymaster fields are always present for v0.7 bundlers
    rpc_dict.setdefault("paymaster", None)
    rpc_dict.setdefault("paymasterVerificationGasLimit", None)
    rpc_dict.setdefault("paymasterPostOpGasLimit", None)
    rpc_dict.setdefault("paymasterData", None)
    return rpc_dict


class BundlerError(Exception):
    """JSON-RPC error returned by the bundler"""

    def __init__(self, message: str, code: Optional[int] = None, data: Optional[str] = None):
        super().__init__(message)
        self.code = code
        self.data = data


class BundlerClient:
    """Client for interacting with ERC-4337 bundlers"""

    def __init__(self, bundler_url: str, entry_point: Optional[str] = None, timeout: int = 30):
        self.bundler_url = bundler_url
        self.entry_point = entry_point
        self.timeout = timeout

    def get_supported_entry_points(self) -> List[str]:
        return self._make_bundler_request("eth_supportedEntryPoints", [])

    def resolve_entry_point(self) -> str:
        """Configured EntryPoint, or the first one the bundler supports"""
        if not self.entry_point:
            supported = self.get_supported_entry_points()
            if not supported:
                raise BundlerError("Bundler does not support any EntryPoint")
            self.entry_point = supported[0]
        return self.entry_point

    def send_user_operation(self, user_op: PackedUserOperation) -> Dict:
        """Send a signed UserOperation to the bundler and return result"""
        logger.info("Sending UserOperation to bundler...")

        user_op_dict = convert_user_operation_to_rpc_format(user_op)
        logger.debug(f"Full UserOp to bundler: {user_op_dict}")
        try:
            result = self._make_bundler_request("eth_sendUserOperation", [user_op_dict, self.resolve_entry_point()])
        except BundlerError as e:
            logger.error(f"Bundler rejected UserOperation: {e}")
            return {
                'success': False,
                'error': str(e),
                'status': 'failed'
            }

        logger.info(f"UserOperation sent successfully: {result}")
        return {
            'success': True,
            'user_operation_hash': result,
            'status': 'submitted'
        }

    def get_user_operation_receipt(self, user_operation_hash: str) -> Optional[Dict]:
        """Receipt of an included UserOperation, None while it is pending"""
        return self._make_bundler_request("eth_getUserOperationReceipt", [user_operation_hash])

    def _make_bundler_request(self, method: str, params: List):
        """Make JSON-RPC request to bundler"""
        payload = {
            "jsonrpc": "2.0",
            "method": method,
            "params": params,
            "id": 1
        }

        response = requests.post(
            self.bundler_url,
            json=payload,
            headers={'Content-Type': 'application/json'},
            timeout=self.timeout
        )
        if response.status_code != 200:
            raise BundlerError(f"HTTP error: {response.status_code}")

        result = response.json()
        if 'error' in result:
            error = result['error']
            raise BundlerError(error.get('message', 'Unknown error'), error.get('code'), error.get('data'))
        return result.get('result')
