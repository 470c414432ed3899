"""RPC module for interacting with the chain's JSON-RPC endpoint.

The endpoint is a custodial signing gateway in front of the chain node: it
accepts unsigned transaction instructions together with the signer's public
key, signs with the custodied key and broadcasts, and it passes read
methods straight through to the node.
"""
import logging
import threading
from typing import Any, Optional

import requests

from config import settings_conf
from .transactions import (
    build_native_transfer,
    build_ownership_transfer,
    is_valid_address,
    to_base_units,
)

logger = logging.getLogger(__name__)

class RPCError(Exception):
    """Base exception for RPC errors"""
    def __init__(self, message: str, code: Optional[int] = None, method: Optional[str] = None):
        self.code = code
        self.method = method
        super().__init__(f"RPC Error [{code}] in {method}: {message}" if code else message)

class NodeConnectionError(RPCError):
    """Raised when connection to the endpoint fails"""
    pass

class NodeAuthError(RPCError):
    """Raised when authentication failed"""
    pass

class ChainError(RPCError):
    """Chain-specific error codes and messages

    Common error codes:
    -32002 - Transaction simulation failed
    -32003 - Transaction signature verification failure
    -32004 - Block not available for slot
    -32005 - Node is unhealthy
    -32007 - Slot was skipped or is missing
    -32600 - Invalid request
    -32601 - Method not found
    -32602 - Invalid params
    """
    ERROR_MESSAGES = {
        -32002: "Transaction simulation failed",
        -32003: "Transaction signature verification failure",
        -32004: "Block not available for slot",
        -32005: "Node is unhealthy",
        -32007: "Slot was skipped or is missing",
        -32600: "Invalid request",
        -32601: "Method not found",
        -32602: "Invalid params",
    }

    def __init__(self, message: str, code: int, method: str):
        standard_msg = self.ERROR_MESSAGES.get(code, "Unknown error")
        full_msg = f"{standard_msg} - {message}" if message != standard_msg else message
        super().__init__(full_msg, code, method)

class RPCMethod:
    """Descriptor class for RPC methods"""
    def __init__(self, method_name: str):
        self.method_name = method_name

    def __get__(self, obj, objtype=None):
        if obj is None:
            return self

        def caller(*args) -> Any:
            return obj._call_method(self.method_name, *args)

        return caller

class ChainRPC:
    """JSON-RPC client for the chain endpoint"""

    def __init__(
        self,
        url: Optional[str] = None,
        user: Optional[str] = None,
        password: Optional[str] = None,
        timeout: Optional[int] = None
    ):
        """Initialize RPC client, defaulting to values from settings.conf"""
        self.url = url or settings_conf['rpc_url']
        self.timeout = timeout or settings_conf['rpc_timeout']

        user = settings_conf['rpc_user'] if user is None else user
        password = settings_conf['rpc_password'] if password is None else password
        self._auth = (user, password) if user else None

        # Calls arrive from asyncio.to_thread workers; each thread gets its own session
        self._local = threading.local()
        self._lock = threading.Lock()
        self._request_id = 0

    def _new_session(self) -> requests.Session:
        session = requests.Session()
        if self._auth:
            session.auth = self._auth
        session.headers['content-type'] = 'application/json'
        return session

    @property
    def session(self) -> requests.Session:
        """HTTP session of the calling thread"""
        session = getattr(self._local, 'session', None)
        if session is None:
            session = self._local.session = self._new_session()
        return session

    @session.setter
    def session(self, session: requests.Session):
        self._local.session = session

    def _get_request_id(self) -> int:
        """Get unique request ID"""
        with self._lock:
            self._request_id += 1
            return self._request_id

    def _call_method(self, method: str, *args) -> Any:
        """Make RPC call to the endpoint

        Args:
            method: RPC method name
            *args: Method arguments

        Returns:
            The ``result`` member of the response

        Raises:
            NodeConnectionError: Connection to the endpoint failed
            NodeAuthError: Authentication failed
            ChainError: Endpoint returned a JSON-RPC error
        """
        payload = {
            "jsonrpc": "2.0",
            "method": method,
            "params": list(args),
            "id": self._get_request_id()
        }
        result = None

        try:
            response = self.session.post(self.url, json=payload, timeout=self.timeout)

            if response.status_code == 401:
                raise NodeAuthError("Authentication failed - check rpc_user/rpc_password")

            # Parse before raise_for_status; error bodies carry the JSON-RPC error
            result = response.json()

            if isinstance(result, dict) and result.get('error') is not None:
                error = result['error']
                raise ChainError(
                    error.get('message', 'Unknown error'),
                    error.get('code', -1),
                    method
                )

            response.raise_for_status()

            return result['result']

        except requests.exceptions.Timeout as e:
            raise NodeConnectionError(
                f"Request timed out after {self.timeout} seconds"
            ) from e
        except requests.exceptions.ConnectionError as e:
            raise NodeConnectionError(
                f"Failed to connect to chain endpoint at {self.url}"
            ) from e
        except requests.exceptions.HTTPError as e:
            raise NodeConnectionError(
                f"HTTP error occurred: {str(e)}"
            ) from e
        except requests.exceptions.RequestException as e:
            raise NodeConnectionError(
                f"Request failed: {str(e)}"
            ) from e
        except (KeyError, TypeError, ValueError) as e:
            raise NodeConnectionError(
                f"Invalid response format: {str(e)}"
            ) from e

    # Transaction submission (signed by the gateway for the given signer)
    send_transaction = RPCMethod('sendTransaction')

    # Read methods
    get_signature_statuses = RPCMethod('getSignatureStatuses')
    get_balance = RPCMethod('getBalance')
    get_account_info = RPCMethod('getAccountInfo')
    get_version = RPCMethod('getVersion')
    get_slot = RPCMethod('getSlot')
    get_health = RPCMethod('getHealth')

# Create global instance
client = ChainRPC()

__all__ = [
    # Error types
    'RPCError',
    'NodeConnectionError',
    'NodeAuthError',
    'ChainError',
    # Client
    'ChainRPC',
    'client',
    # Transaction builders
    'build_native_transfer',
    'build_ownership_transfer',
    'is_valid_address',
    'to_base_units',
]
