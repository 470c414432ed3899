"""Ownership transfer orchestration.

Moves a batch of products from one user to another: one on-chain ownership
transfer and one ownership-record update per product. Items run
independently under a concurrency cap; a failing item is reported in its
own result and never stops the others.
"""
import asyncio
import logging
from typing import Any, Dict, List, Optional

from pydantic import BaseModel

from chain import build_ownership_transfer, is_valid_address, client as default_client
from config import settings_conf
from ledger import (
    ForbiddenError,
    LedgerStore,
    NotCurrentOwnerError,
    OwnershipManager,
    UserNotFoundError,
    get_default_store,
)
from wallet import (
    InvalidRecipientError,
    Wallet,
    WalletNotConnectedError,
    get_signature_status,
    meets_commitment,
    wait_for_confirmation,
)

logger = logging.getLogger(__name__)

class TransferResult(BaseModel):
    """Outcome of one product in a batch."""
    product_id: int
    ok: bool
    message: str
    tx_hash: Optional[str] = None

    def summary(self) -> str:
        return f"Product {self.product_id}: {self.message}"

class TransferOrchestrator:
    """Runs batches of product ownership transfers."""

    def __init__(
        self,
        store: Optional[LedgerStore] = None,
        client=None,
        concurrency: Optional[int] = None,
        commitment: Optional[str] = None
    ):
        """Initialize the orchestrator.

        Args:
            store: Optional ledger store. If not provided, one is built over the database pool.
            client: ChainRPC client, defaults to the shared client
            concurrency: Max items in flight, defaults to settings
            commitment: Commitment level to wait for, defaults to settings
        """
        self.store = store
        self.client = client or default_client
        self.concurrency = concurrency or settings_conf['transfer_concurrency']
        self.commitment = commitment or settings_conf['commitment']

    async def ensure_store(self):
        """Ensure we have a ledger store."""
        if not self.store:
            self.store = await get_default_store()

    async def transfer_batch(
        self,
        from_user_id: int,
        to_user_id: int,
        product_ids: List[int],
        wallet: Wallet,
        idempotency_key: Optional[str] = None
    ) -> List[TransferResult]:
        """Transfer each product from one user to another.

        Args:
            from_user_id: Current owner initiating the batch
            to_user_id: Receiving user
            product_ids: Products to move; results follow this order
            wallet: Sender's connected wallet
            idempotency_key: Optional client token; each item is deduplicated
                on ``"{idempotency_key}:{from_user_id}:{to_user_id}:{product_id}"``

        Returns:
            One TransferResult per entry of product_ids, in the same order

        Raises:
            WalletNotConnectedError: If the wallet is not connected
            InvalidRecipientError: If the recipient is the sender, unknown, or has no wallet
            ForbiddenError: If the wallet is not the sender's registered wallet
        """
        await self.ensure_store()

        if wallet is None or not wallet.connected:
            raise WalletNotConnectedError()
        if to_user_id == from_user_id:
            raise InvalidRecipientError("Cannot transfer products to yourself")

        sender = await self.store.get_user(from_user_id)
        if not sender:
            raise UserNotFoundError(f"User {from_user_id} not found")
        recipient = await self.store.get_user(to_user_id)
        if not recipient:
            raise InvalidRecipientError(f"Recipient {to_user_id} not found")
        if not is_valid_address(recipient['public_key']):
            raise InvalidRecipientError(f"Recipient {to_user_id} has no registered wallet")
        if wallet.public_key != sender['public_key']:
            raise ForbiddenError(f"Connected wallet does not belong to user {from_user_id}")

        # Duplicate ids share one attempt
        unique_ids = list(dict.fromkeys(product_ids))
        semaphore = asyncio.Semaphore(self.concurrency)

        async def run(product_id: int) -> TransferResult:
            async with semaphore:
                return await self._transfer_one(
                    product_id, from_user_id, recipient, wallet, idempotency_key
                )

        outcomes = await asyncio.gather(*(run(pid) for pid in unique_ids))
        by_id = dict(zip(unique_ids, outcomes))
        results = [by_id[pid] for pid in product_ids]

        succeeded = sum(1 for r in results if r.ok)
        logger.info(
            f"Transfer batch from user {from_user_id} to user {to_user_id}: "
            f"{succeeded}/{len(results)} succeeded"
        )
        return results

    async def _transfer_one(
        self,
        product_id: int,
        from_user_id: int,
        recipient: Dict[str, Any],
        wallet: Wallet,
        idempotency_key: Optional[str]
    ) -> TransferResult:
        """Run one item, turning any failure into a failed result."""
        try:
            return await self._attempt(product_id, from_user_id, recipient, wallet, idempotency_key)
        except Exception as e:
            logger.warning(f"Transfer of product {product_id} failed: {e}")
            return TransferResult(product_id=product_id, ok=False, message=str(e) or type(e).__name__)

    async def _attempt(
        self,
        product_id: int,
        from_user_id: int,
        recipient: Dict[str, Any],
        wallet: Wallet,
        idempotency_key: Optional[str]
    ) -> TransferResult:
        op_key = (
            f"{idempotency_key}:{from_user_id}:{recipient['user_id']}:{product_id}"
            if idempotency_key else None
        )
        signature = None

        if op_key:
            operation = await self.store.get_operation(op_key)
            if operation and operation['status'] == 'completed':
                return TransferResult(
                    product_id=product_id, ok=True,
                    message="Already transferred", tx_hash=operation['signature']
                )
            if operation:
                # Submitted earlier but never recorded; wait on it instead of resubmitting
                signature = operation['signature']

        owner = await self.store.get_open_ownership(product_id)

        if signature is None:
            if not owner or owner['owner_id'] != from_user_id:
                return TransferResult(product_id=product_id, ok=False, message="not current owner")

            product = await self.store.get_product(product_id)
            if not product or not product['product_pda'] or not product['tx_hash']:
                return TransferResult(
                    product_id=product_id, ok=False, message="product not registered on chain"
                )

            registration = await get_signature_status(self.client, product['tx_hash'])
            if not meets_commitment(registration, 'confirmed'):
                return TransferResult(
                    product_id=product_id, ok=False,
                    message="product registration not confirmed on chain"
                )

            transaction = build_ownership_transfer(
                product['product_pda'], wallet.public_key, recipient['public_key']
            )
            signature = await wallet.send_transaction(transaction, self.client)
            if op_key:
                await self.store.save_operation(op_key, 'transfer', signature, 'submitted')

        await wait_for_confirmation(self.client, signature, self.commitment)

        if owner and owner['owner_id'] == recipient['user_id'] and owner['tx_hash'] == signature:
            logger.info(f"Ownership of product {product_id} already recorded for {signature}")
        else:
            try:
                await OwnershipManager(self.store).transfer(
                    product_id,
                    to_user_id=recipient['user_id'],
                    to_public_key=recipient['public_key'],
                    tx_hash=signature,
                    from_user_id=from_user_id
                )
            except NotCurrentOwnerError:
                logger.error(
                    f"Product {product_id} changed owner while transfer {signature} was confirming"
                )
                raise

        if op_key:
            await self.store.save_operation(op_key, 'transfer', signature, 'completed')

        return TransferResult(product_id=product_id, ok=True, message="Transferred", tx_hash=signature)

__all__ = ['TransferOrchestrator', 'TransferResult']
