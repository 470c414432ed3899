"""Purchase requests.

A buyer proposes to buy a listing, which reserves it. The request then
moves through the lifecycle below; rejection or cancellation releases the
listing, completion moves ownership to the buyer and marks the listing sold.

    proposed -> accepted -> paid -> completed
    proposed -> paid
    proposed | accepted -> rejected
    proposed | accepted | paid -> cancelled
"""
import logging
from typing import Any, Dict, List, Optional

from database.exceptions import DuplicateRecordError
from .errors import (
    ConflictError,
    ForbiddenError,
    InvalidStateError,
    InvalidTransitionError,
    LedgerError,
    ListingNotFoundError,
    RequestNotFoundError,
    UserNotFoundError,
)
from .listings import parse_currency, parse_price
from .ownership import OwnershipManager
from .store import LedgerStore, get_default_store, isoformat

logger = logging.getLogger(__name__)

REQUEST_STATUSES = ('proposed', 'accepted', 'paid', 'completed', 'rejected', 'cancelled')

# A product has at most one request in these statuses
ACTIVE_REQUEST_STATUSES = ('proposed', 'accepted', 'paid')

REQUEST_TRANSITIONS = {
    'proposed': {'accepted', 'paid', 'rejected', 'cancelled'},
    'accepted': {'paid', 'rejected', 'cancelled'},
    'paid': {'completed', 'cancelled'},
    'completed': set(),
    'rejected': set(),
    'cancelled': set()
}

def check_request_transition(current: str, target: str) -> None:
    """Validate a purchase request status change.

    Raises:
        InvalidTransitionError: If the change is not allowed
    """
    if target not in REQUEST_TRANSITIONS.get(current, set()):
        raise InvalidTransitionError('purchase request', current, target)

def format_request(request: Dict[str, Any]) -> Dict[str, Any]:
    return {
        'request_id': request['request_id'],
        'product_id': request['product_id'],
        'listing_id': request['listing_id'],
        'seller_id': request['seller_id'],
        'buyer_id': request['buyer_id'],
        'offered_price': str(request['offered_price']),
        'offered_currency': request['offered_currency'],
        'status': request['status'],
        'payment_tx_hash': request['payment_tx_hash'],
        'transfer_tx_hash': request['transfer_tx_hash'],
        'created_on': isoformat(request['created_on']),
        'updated_on': isoformat(request['updated_on'])
    }

class PurchaseManager:
    """Manages purchase requests and their state transitions."""

    def __init__(self, store: Optional[LedgerStore] = None):
        """Initialize the purchase manager.

        Args:
            store: Optional ledger store. If not provided, one is built over the database pool.
        """
        self.store = store

    async def ensure_store(self):
        """Ensure we have a ledger store."""
        if not self.store:
            self.store = await get_default_store()

    async def _load(self, tx: LedgerStore, request_id: int) -> Dict[str, Any]:
        request = await tx.get_request(request_id, for_update=True)
        if not request:
            raise RequestNotFoundError(f"Purchase request {request_id} not found")
        return request

    async def _release_listing(self, tx: LedgerStore, request: Dict[str, Any]) -> None:
        """Put a reserved listing back on the market."""
        if not request['listing_id']:
            return
        listing = await tx.get_listing(request['listing_id'], for_update=True)
        if listing and listing['status'] == 'reserved':
            await tx.update_listing(listing['listing_id'], {'status': 'available'})

    async def propose_request(
        self,
        listing_id: int,
        buyer_id: int,
        offered_price: Any = None,
        offered_currency: Optional[str] = None
    ) -> Dict[str, Any]:
        """Create a purchase request and reserve the listing.

        Args:
            listing_id: Listing to buy
            buyer_id: Proposing user
            offered_price: Defaults to the listing price
            offered_currency: Defaults to the listing currency

        Returns:
            The created request, status proposed

        Raises:
            ListingNotFoundError: If the listing is missing or sold
            InvalidStateError: If the listing is reserved or its seller no longer owns the product
            ForbiddenError: If the buyer is the seller
            ConflictError: If the product already has an active request
            InvalidPriceError: If the offered price or currency is invalid
        """
        await self.ensure_store()

        try:
            async with self.store.transaction() as tx:
                listing = await tx.get_listing(listing_id, for_update=True)
                if not listing or listing['status'] == 'sold':
                    raise ListingNotFoundError(f"Listing {listing_id} not found or already sold")
                if listing['status'] == 'reserved':
                    raise InvalidStateError(f"Listing {listing_id} is reserved by another buyer")
                if listing['seller_id'] == buyer_id:
                    raise ForbiddenError("Sellers cannot buy their own listing")

                product_id = listing['product_id']
                if await tx.get_active_request(product_id):
                    raise ConflictError(f"Product {product_id} already has an active purchase request")

                owner = await tx.get_open_ownership(product_id)
                if not owner or owner['owner_id'] != listing['seller_id']:
                    raise InvalidStateError(
                        f"Seller of listing {listing_id} no longer owns product {product_id}"
                    )

                price = parse_price(listing['price'] if offered_price is None else offered_price)
                currency = parse_currency(offered_currency or listing['currency'])

                await tx.update_listing(listing_id, {'status': 'reserved'})
                request = await tx.insert_request({
                    'product_id': product_id,
                    'listing_id': listing_id,
                    'seller_id': listing['seller_id'],
                    'buyer_id': buyer_id,
                    'offered_price': price,
                    'offered_currency': currency,
                    'status': 'proposed'
                })

        except DuplicateRecordError:
            raise ConflictError(f"Listing {listing_id} already has an active purchase request")

        logger.info(
            f"Buyer {buyer_id} proposed request {request['request_id']} on listing {listing_id} "
            f"at {price} {currency}"
        )
        return format_request(request)

    async def accept_request(self, request_id: int, seller_id: int) -> Dict[str, Any]:
        """Seller accepts a proposed request.

        Raises:
            RequestNotFoundError: If the request doesn't exist
            ForbiddenError: If the caller is not the seller
            InvalidTransitionError: If the request is not proposed
        """
        await self.ensure_store()

        async with self.store.transaction() as tx:
            request = await self._load(tx, request_id)
            if request['seller_id'] != seller_id:
                raise ForbiddenError(f"User {seller_id} is not the seller of request {request_id}")
            check_request_transition(request['status'], 'accepted')
            request = await tx.update_request(request_id, {'status': 'accepted'})

        logger.info(f"Seller {seller_id} accepted request {request_id}")
        return format_request(request)

    async def reject_request(self, request_id: int, seller_id: int) -> Dict[str, Any]:
        """Seller rejects a request; the listing goes back on the market.

        Raises:
            RequestNotFoundError: If the request doesn't exist
            ForbiddenError: If the caller is not the seller
            InvalidTransitionError: If the request is already paid or closed
        """
        await self.ensure_store()

        async with self.store.transaction() as tx:
            request = await self._load(tx, request_id)
            if request['seller_id'] != seller_id:
                raise ForbiddenError(f"User {seller_id} is not the seller of request {request_id}")
            check_request_transition(request['status'], 'rejected')
            await self._release_listing(tx, request)
            request = await tx.update_request(request_id, {'status': 'rejected'})

        logger.info(f"Seller {seller_id} rejected request {request_id}")
        return format_request(request)

    async def cancel_request(self, request_id: int, caller_id: int) -> Dict[str, Any]:
        """Buyer or seller cancels an open request; the listing goes back on the market.

        A paid request loses its payment hash on cancellation; the refund is
        settled outside the marketplace.

        Raises:
            RequestNotFoundError: If the request doesn't exist
            ForbiddenError: If the caller is neither buyer nor seller
            InvalidTransitionError: If the request is already closed
        """
        await self.ensure_store()

        async with self.store.transaction() as tx:
            request = await self._load(tx, request_id)
            if caller_id not in (request['buyer_id'], request['seller_id']):
                raise ForbiddenError(f"User {caller_id} is not a party to request {request_id}")
            check_request_transition(request['status'], 'cancelled')

            values = {'status': 'cancelled'}
            if request['payment_tx_hash']:
                logger.warning(
                    f"Cancelling paid request {request_id}; payment "
                    f"{request['payment_tx_hash']} needs a manual refund"
                )
                values['payment_tx_hash'] = None

            await self._release_listing(tx, request)
            request = await tx.update_request(request_id, values)

        logger.info(f"User {caller_id} cancelled request {request_id}")
        return format_request(request)

    async def record_payment(
        self,
        request_id: int,
        buyer_id: int,
        payment_tx_hash: str
    ) -> Dict[str, Any]:
        """Mark a request paid with the buyer's payment signature.

        Recording the same signature on an already paid request returns it unchanged.

        Raises:
            RequestNotFoundError: If the request doesn't exist
            ForbiddenError: If the caller is not the buyer, whatever the status
            InvalidStateError: If the request is not proposed or accepted
            ConflictError: If the signature is already recorded on another request
        """
        await self.ensure_store()

        if not payment_tx_hash:
            raise LedgerError("Payment transaction hash is required")

        try:
            async with self.store.transaction() as tx:
                request = await self._load(tx, request_id)
                if request['buyer_id'] != buyer_id:
                    raise ForbiddenError(f"User {buyer_id} is not the buyer of request {request_id}")

                if request['status'] == 'paid' and request['payment_tx_hash'] == payment_tx_hash:
                    return format_request(request)
                if request['status'] not in ('proposed', 'accepted'):
                    raise InvalidStateError(
                        f"Cannot record payment on request {request_id} with status {request['status']}"
                    )

                request = await tx.update_request(request_id, {
                    'status': 'paid',
                    'payment_tx_hash': payment_tx_hash
                })

        except DuplicateRecordError:
            raise ConflictError(f"Payment {payment_tx_hash} is already recorded")

        logger.info(f"Recorded payment {payment_tx_hash} for request {request_id}")
        return format_request(request)

    async def complete_request(
        self,
        request_id: int,
        transfer_tx_hash: Optional[str] = None
    ) -> Dict[str, Any]:
        """Finalize a paid request.

        In one transaction: moves ownership from seller to buyer, marks the
        listing sold and the request completed.

        Args:
            request_id: Paid request to complete
            transfer_tx_hash: Ownership transfer signature, defaults to the payment signature

        Raises:
            RequestNotFoundError: If the request doesn't exist
            InvalidStateError: If the request is not paid
            NotCurrentOwnerError: If the seller no longer owns the product
        """
        await self.ensure_store()

        async with self.store.transaction() as tx:
            request = await self._load(tx, request_id)
            if request['status'] != 'paid':
                raise InvalidStateError(
                    f"Cannot complete request {request_id} with status {request['status']}"
                )

            buyer = await tx.get_user(request['buyer_id'])
            if not buyer:
                raise UserNotFoundError(f"User {request['buyer_id']} not found")

            tx_hash = transfer_tx_hash or request['payment_tx_hash']
            await OwnershipManager(tx).transfer(
                request['product_id'],
                to_user_id=request['buyer_id'],
                to_public_key=buyer['public_key'],
                tx_hash=tx_hash,
                from_user_id=request['seller_id'],
                event='PURCHASE'
            )

            if request['listing_id']:
                await tx.update_listing(request['listing_id'], {'status': 'sold'})

            request = await tx.update_request(request_id, {
                'status': 'completed',
                'transfer_tx_hash': tx_hash
            })

        logger.info(
            f"Completed request {request_id}: product {request['product_id']} "
            f"now owned by user {request['buyer_id']}"
        )
        return format_request(request)

    async def get_request(self, request_id: int) -> Dict[str, Any]:
        """Get a purchase request by ID.

        Raises:
            RequestNotFoundError: If the request doesn't exist
        """
        await self.ensure_store()

        request = await self.store.get_request(request_id)
        if not request:
            raise RequestNotFoundError(f"Purchase request {request_id} not found")
        return format_request(request)

    async def list_for_buyer(self, buyer_id: int) -> List[Dict[str, Any]]:
        """List a buyer's requests, newest first."""
        await self.ensure_store()
        return [format_request(r) for r in await self.store.list_requests(buyer_id=buyer_id)]

    async def list_for_seller(self, seller_id: int) -> List[Dict[str, Any]]:
        """List requests on a seller's listings, newest first."""
        await self.ensure_store()
        return [format_request(r) for r in await self.store.list_requests(seller_id=seller_id)]
