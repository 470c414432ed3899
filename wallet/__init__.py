"""Wallets and confirmation tracking.

This module provides:
- The ``Wallet`` interface the orchestrator and payment bridge submit through
- ``NodeWallet``, a custodial wallet signed by the RPC gateway
- ``wait_for_confirmation``, polling a signature up to a commitment level
"""
import asyncio
import logging
from typing import Any, Dict, Optional

from chain import RPCError, NodeConnectionError, client as default_client
from config import settings_conf

logger = logging.getLogger(__name__)

# Commitment levels in increasing strength
COMMITMENT_ORDER = {
    'processed': 0,
    'confirmed': 1,
    'finalized': 2
}

class WalletError(Exception):
    """Base exception for wallet operations."""
    pass

class WalletNotConnectedError(WalletError):
    """Raised when a wallet is used without a connected key."""
    def __init__(self, message: str = "Wallet not connected"):
        super().__init__(message)

class InvalidRecipientError(WalletError):
    """Raised when the receiving party has no usable wallet address."""
    pass

class TransactionFailedError(WalletError):
    """Raised when submission, signing or execution of a transaction fails."""
    def __init__(self, message: str, signature: Optional[str] = None):
        self.signature = signature
        super().__init__(message)

class ConfirmationTimeoutError(TransactionFailedError):
    """Raised when a transaction does not reach the commitment level in time."""
    pass

class Wallet:
    """A key able to sign and submit transactions."""

    public_key: Optional[str] = None

    @property
    def connected(self) -> bool:
        return bool(self.public_key)

    async def send_transaction(self, transaction: Dict[str, Any], client=None) -> str:
        """Sign and submit a transaction, returning its signature."""
        raise NotImplementedError

class NodeWallet(Wallet):
    """Custodial wallet: the RPC gateway holds the key and signs for it."""

    def __init__(self, public_key: Optional[str], client=None, commitment: Optional[str] = None):
        """Initialize the wallet.

        Args:
            public_key: Address of the custodied key, None when not connected
            client: ChainRPC client, defaults to the shared client
            commitment: Preflight commitment level, defaults to settings
        """
        self.public_key = public_key
        self.client = client or default_client
        self.commitment = commitment or settings_conf['commitment']

    async def send_transaction(self, transaction: Dict[str, Any], client=None) -> str:
        """Submit a transaction for the gateway to sign with this wallet's key.

        Raises:
            WalletNotConnectedError: If the wallet has no key
            TransactionFailedError: If the gateway rejects or fails the submission
        """
        if not self.connected:
            raise WalletNotConnectedError()

        client = client or self.client
        options = {'signer': self.public_key, 'preflightCommitment': self.commitment}
        try:
            signature = await asyncio.to_thread(client.send_transaction, transaction, options)
        except RPCError as e:
            raise TransactionFailedError(f"Transaction submission failed: {e}") from e

        if not signature:
            raise TransactionFailedError("Gateway returned no signature")

        logger.info(f"Submitted {transaction.get('type')} transaction {signature}")
        return signature

async def get_signature_status(client, signature: str) -> Optional[Dict[str, Any]]:
    """Fetch the status of one signature, searching full history.

    Returns:
        Status dict with ``confirmationStatus`` and ``err``, or None if unknown
    """
    response = await asyncio.to_thread(
        client.get_signature_statuses,
        [signature],
        {'searchTransactionHistory': True}
    )
    values = (response or {}).get('value') or [None]
    return values[0]

def meets_commitment(status: Optional[Dict[str, Any]], commitment: str) -> bool:
    """Whether a signature status has reached a commitment level without error."""
    if not status or status.get('err'):
        return False
    level = status.get('confirmationStatus')
    return level in COMMITMENT_ORDER and COMMITMENT_ORDER[level] >= COMMITMENT_ORDER[commitment]

async def wait_for_confirmation(
    client,
    signature: str,
    commitment: Optional[str] = None,
    timeout: Optional[float] = None,
    poll_interval: Optional[float] = None
) -> Dict[str, Any]:
    """Poll a signature until it reaches the commitment level.

    Args:
        client: ChainRPC client
        signature: Transaction signature
        commitment: processed, confirmed or finalized; defaults to settings
        timeout: Seconds before giving up; defaults to settings
        poll_interval: Seconds between polls; defaults to settings

    Returns:
        The final signature status

    Raises:
        TransactionFailedError: If the transaction executed with an error
        ConfirmationTimeoutError: If the commitment level is not reached in time
    """
    commitment = commitment or settings_conf['commitment']
    timeout = settings_conf['confirmation_timeout'] if timeout is None else timeout
    poll_interval = settings_conf['confirmation_poll_interval'] if poll_interval is None else poll_interval

    if commitment not in COMMITMENT_ORDER:
        raise ValueError(f"Unknown commitment level: {commitment}")

    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout

    while True:
        try:
            status = await get_signature_status(client, signature)
        except NodeConnectionError as e:
            logger.warning(f"Status poll for {signature} failed, retrying: {e}")
            status = None
        except RPCError as e:
            raise TransactionFailedError(f"Could not query transaction {signature}: {e}", signature) from e

        if status and status.get('err'):
            raise TransactionFailedError(f"Transaction {signature} failed: {status['err']}", signature)
        if meets_commitment(status, commitment):
            logger.debug(f"Transaction {signature} reached {commitment}")
            return status

        if loop.time() >= deadline:
            raise ConfirmationTimeoutError(
                f"Transaction {signature} not {commitment} after {timeout} seconds",
                signature
            )
        await asyncio.sleep(poll_interval)

__all__ = [
    'WalletError',
    'WalletNotConnectedError',
    'InvalidRecipientError',
    'TransactionFailedError',
    'ConfirmationTimeoutError',
    'Wallet',
    'NodeWallet',
    'COMMITMENT_ORDER',
    'get_signature_status',
    'meets_commitment',
    'wait_for_confirmation',
]
