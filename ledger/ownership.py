"""Ownership records: who owns each product, and since when.

Each product has exactly one open record (``end_on`` is null). A transfer
closes that record and opens the next one in the same transaction, and
appends the matching chain event.
"""
import logging
from typing import Any, Dict, List, Optional

from database.exceptions import DuplicateRecordError
from .errors import ConflictError, NotCurrentOwnerError, ProductNotFoundError
from .store import LedgerStore, get_default_store, isoformat

logger = logging.getLogger(__name__)

CHAIN_EVENTS = ('REGISTER', 'TRANSFER', 'PURCHASE')

def format_ownership(record: Dict[str, Any]) -> Dict[str, Any]:
    return {
        'ownership_id': record['ownership_id'],
        'product_id': record['product_id'],
        'owner_id': record['owner_id'],
        'owner_public_key': record['owner_public_key'],
        'start_on': isoformat(record['start_on']),
        'end_on': isoformat(record['end_on']),
        'tx_hash': record['tx_hash']
    }

class OwnershipManager:
    """Reads and moves product ownership."""

    def __init__(self, store: Optional[LedgerStore] = None):
        """Initialize the ownership manager.

        Args:
            store: Optional ledger store. If not provided, one is built over the database pool.
        """
        self.store = store

    async def ensure_store(self):
        """Ensure we have a ledger store."""
        if not self.store:
            self.store = await get_default_store()

    async def get_current_owner(self, product_id: int) -> Dict[str, Any]:
        """Get the open ownership record of a product.

        Raises:
            ProductNotFoundError: If the product has no owner on record
        """
        await self.ensure_store()

        record = await self.store.get_open_ownership(product_id)
        if not record:
            raise ProductNotFoundError(f"Product {product_id} has no owner on record")
        return format_ownership(record)

    async def get_history(self, product_id: int) -> List[Dict[str, Any]]:
        """Get every ownership record of a product, oldest first."""
        await self.ensure_store()

        records = await self.store.get_ownership_history(product_id)
        if not records and not await self.store.get_product(product_id):
            raise ProductNotFoundError(f"Product {product_id} not found")
        return [format_ownership(r) for r in records]

    async def transfer(
        self,
        product_id: int,
        to_user_id: int,
        to_public_key: Optional[str],
        tx_hash: Optional[str],
        from_user_id: Optional[int] = None,
        event: str = 'TRANSFER'
    ) -> Dict[str, Any]:
        """Close the current ownership record and open one for the new owner.

        Args:
            product_id: Product changing hands
            to_user_id: New owner
            to_public_key: New owner's wallet address
            tx_hash: Signature of the on-chain transaction backing the change
            from_user_id: Expected current owner; checked against the open record
            event: Chain event type to log

        Returns:
            The new ownership record

        Raises:
            ProductNotFoundError: If the product has no open record
            NotCurrentOwnerError: If from_user_id does not hold the open record
            ConflictError: If a concurrent write already used this record or tx_hash
        """
        await self.ensure_store()

        if event not in CHAIN_EVENTS:
            raise ValueError(f"Unknown chain event: {event}")

        try:
            async with self.store.transaction() as tx:
                current = await tx.get_open_ownership(product_id, for_update=True)
                if not current:
                    raise ProductNotFoundError(f"Product {product_id} has no owner on record")
                if from_user_id is not None and current['owner_id'] != from_user_id:
                    raise NotCurrentOwnerError(product_id, from_user_id)

                await tx.close_ownership(current['ownership_id'])
                record = await tx.open_ownership(product_id, to_user_id, to_public_key, tx_hash)

                if tx_hash:
                    await tx.insert_chain_event({
                        'tx_hash': tx_hash,
                        'product_id': product_id,
                        'event': event,
                        'from_user_id': current['owner_id'],
                        'from_public_key': current['owner_public_key'],
                        'to_user_id': to_user_id,
                        'to_public_key': to_public_key
                    })

        except DuplicateRecordError as e:
            raise ConflictError(f"Ownership of product {product_id} changed concurrently: {e}")

        logger.info(
            f"Ownership of product {product_id} moved from user {current['owner_id']} "
            f"to user {to_user_id} ({event}, tx {tx_hash})"
        )
        return format_ownership(record)
