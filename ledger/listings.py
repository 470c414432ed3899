"""Marketplace listings.

A listing is a seller's offer to sell one owned product at a fiat price.
Status moves between available and reserved while a purchase request is
open, and ends at sold. Sold listings are kept for history.
"""
import logging
import math
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

from database.exceptions import DuplicateRecordError
from .errors import (
    ConflictError,
    ForbiddenError,
    InvalidPriceError,
    InvalidStateError,
    InvalidTransitionError,
    LedgerError,
    ListingNotFoundError,
    ProductNotFoundError,
)
from .store import LedgerStore, get_default_store, isoformat

logger = logging.getLogger(__name__)

CURRENCIES = ('SGD', 'USD', 'EUR')

LISTING_STATUSES = ('available', 'reserved', 'sold')

# Statuses that block a second listing for the same product
ACTIVE_LISTING_STATUSES = ('available', 'reserved')

LISTING_TRANSITIONS = {
    'available': {'reserved', 'sold'},
    'reserved': {'available', 'sold'},
    'sold': set()
}

# Seller-mutable fields
MUTABLE_FIELDS = {
    'price',
    'currency',
    'status',
    'notes'
}

def parse_price(price: Any) -> Decimal:
    """Convert a price to a positive Decimal.

    Raises:
        InvalidPriceError: If the price is malformed or not positive
    """
    try:
        value = Decimal(str(price))
    except (InvalidOperation, TypeError, ValueError):
        raise InvalidPriceError(f"Invalid price format: {price!r}")
    if not value.is_finite() or value <= 0:
        raise InvalidPriceError(f"Price must be positive: {price!r}")
    return value

def parse_currency(currency: Any) -> str:
    """Normalize a currency code.

    Raises:
        InvalidPriceError: If the currency is not supported
    """
    code = str(currency or '').strip().upper()
    if code not in CURRENCIES:
        raise InvalidPriceError(
            f"Unsupported currency {currency!r}, expected one of {', '.join(CURRENCIES)}"
        )
    return code

def check_listing_transition(current: str, target: str) -> None:
    """Validate a listing status change.

    Raises:
        InvalidTransitionError: If the change is not allowed
    """
    if target not in LISTING_STATUSES or target not in LISTING_TRANSITIONS[current]:
        raise InvalidTransitionError('listing', current, target)

def format_listing(listing: Dict[str, Any]) -> Dict[str, Any]:
    return {
        'listing_id': listing['listing_id'],
        'product_id': listing['product_id'],
        'seller_id': listing['seller_id'],
        'price': str(listing['price']),
        'currency': listing['currency'],
        'status': listing['status'],
        'notes': listing['notes'],
        'created_on': isoformat(listing['created_on']),
        'updated_on': isoformat(listing['updated_on'])
    }

class ListingManager:
    """Manager class for handling listing operations."""

    def __init__(self, store: Optional[LedgerStore] = None):
        """Initialize the listing manager.

        Args:
            store: Optional ledger store. If not provided, one is built over the database pool.
        """
        self.store = store

    async def ensure_store(self):
        """Ensure we have a ledger store."""
        if not self.store:
            self.store = await get_default_store()

    async def create_listing(
        self,
        seller_id: int,
        product_id: int,
        price: Any,
        currency: str,
        notes: Optional[str] = None
    ) -> Dict[str, Any]:
        """Create a new listing for a product the seller owns.

        Args:
            seller_id: The listing user
            product_id: Product to sell
            price: Positive fiat price
            currency: One of SGD, USD, EUR
            notes: Optional free text shown to buyers

        Returns:
            Dict containing the created listing

        Raises:
            InvalidPriceError: If price or currency is invalid
            ProductNotFoundError: If the product does not exist
            ForbiddenError: If the seller is not the product's current owner
            ConflictError: If the product already has an available or reserved listing
        """
        await self.ensure_store()

        price = parse_price(price)
        currency = parse_currency(currency)

        try:
            async with self.store.transaction() as tx:
                if not await tx.get_product(product_id):
                    raise ProductNotFoundError(f"Product {product_id} not found")

                owner = await tx.get_open_ownership(product_id)
                if not owner or owner['owner_id'] != seller_id:
                    raise ForbiddenError(
                        f"User {seller_id} is not the current owner of product {product_id}"
                    )

                existing = await tx.get_active_listing(product_id)
                if existing:
                    raise ConflictError(
                        f"Product {product_id} already has an active listing "
                        f"({existing['listing_id']}, {existing['status']})"
                    )

                listing = await tx.insert_listing({
                    'product_id': product_id,
                    'seller_id': seller_id,
                    'price': price,
                    'currency': currency,
                    'status': 'available',
                    'notes': notes
                })

        except DuplicateRecordError:
            raise ConflictError(f"Product {product_id} already has an active listing")

        logger.info(
            f"Created listing {listing['listing_id']} for product {product_id} "
            f"at {price} {currency}"
        )
        return format_listing(listing)

    async def get_listing(self, listing_id: int) -> Dict[str, Any]:
        """Get a listing by ID.

        Raises:
            ListingNotFoundError: If listing doesn't exist
        """
        await self.ensure_store()

        listing = await self.store.get_listing(listing_id)
        if not listing:
            raise ListingNotFoundError(f"Listing {listing_id} not found")
        return format_listing(listing)

    async def update_listing(
        self,
        listing_id: int,
        seller_id: int,
        updates: Dict[str, Any]
    ) -> Dict[str, Any]:
        """Update a listing's price, currency, notes or status.

        Args:
            listing_id: The listing to update
            seller_id: Calling user, must be the listing's seller
            updates: Dict containing any of price, currency, status, notes

        Returns:
            Updated listing details

        Raises:
            LedgerError: If updates contain unknown fields
            ListingNotFoundError: If listing doesn't exist
            ForbiddenError: If the caller is not the seller
            InvalidStateError: If the listing is sold
            InvalidTransitionError: If the status change is not allowed
            InvalidPriceError: If price or currency is invalid
        """
        await self.ensure_store()

        invalid_fields = set(updates.keys()) - MUTABLE_FIELDS
        if invalid_fields:
            raise LedgerError(f"Cannot update fields: {sorted(invalid_fields)}")

        values = dict(updates)
        if 'price' in values:
            values['price'] = parse_price(values['price'])
        if 'currency' in values:
            values['currency'] = parse_currency(values['currency'])

        async with self.store.transaction() as tx:
            listing = await tx.get_listing(listing_id, for_update=True)
            if not listing:
                raise ListingNotFoundError(f"Listing {listing_id} not found")
            if listing['seller_id'] != seller_id:
                raise ForbiddenError(f"User {seller_id} is not the seller of listing {listing_id}")
            if listing['status'] == 'sold':
                raise InvalidStateError(f"Listing {listing_id} is sold and can no longer change")

            if values.get('status', listing['status']) == listing['status']:
                values.pop('status', None)
            else:
                check_listing_transition(listing['status'], values['status'])

            if not values:
                return format_listing(listing)

            listing = await tx.update_listing(listing_id, values)

        logger.info(f"Updated listing {listing_id}: {sorted(values)}")
        return format_listing(listing)

    async def delete_listing(self, listing_id: int, seller_id: int) -> None:
        """Delete a listing that has not been sold.

        Raises:
            ListingNotFoundError: If listing doesn't exist
            ForbiddenError: If the caller is not the seller
            InvalidStateError: If the listing is sold or has an open purchase request
        """
        await self.ensure_store()

        async with self.store.transaction() as tx:
            listing = await tx.get_listing(listing_id, for_update=True)
            if not listing:
                raise ListingNotFoundError(f"Listing {listing_id} not found")
            if listing['seller_id'] != seller_id:
                raise ForbiddenError(f"User {seller_id} is not the seller of listing {listing_id}")
            if listing['status'] == 'sold':
                raise InvalidStateError(f"Listing {listing_id} is sold and is kept for history")

            active = await tx.get_active_request(listing['product_id'])
            if active and active['listing_id'] == listing_id:
                raise InvalidStateError(
                    f"Listing {listing_id} has an open purchase request {active['request_id']}"
                )

            await tx.delete_listing(listing_id)

        logger.info(f"Deleted listing {listing_id}")

    async def search_listings(
        self,
        seller_id: Optional[int] = None,
        product_id: Optional[int] = None,
        status: Optional[str] = None,
        currency: Optional[str] = None,
        limit: int = 50,
        offset: int = 0
    ) -> Dict[str, Any]:
        """Search listings, newest first.

        Returns:
            Dict with listings and pagination info
        """
        await self.ensure_store()

        if status is not None and status not in LISTING_STATUSES:
            raise LedgerError(f"Unknown listing status: {status}")
        limit = max(1, min(limit, 100))
        offset = max(0, offset)

        filters = {}
        if seller_id is not None:
            filters['seller_id'] = seller_id
        if product_id is not None:
            filters['product_id'] = product_id
        if status is not None:
            filters['status'] = status
        if currency is not None:
            filters['currency'] = parse_currency(currency)

        rows, total_count = await self.store.search_listings(filters, limit, offset)

        return {
            'listings': [format_listing(r) for r in rows],
            'total_count': total_count,
            'total_pages': math.ceil(total_count / limit) if total_count else 0,
            'current_page': offset // limit + 1,
            'limit': limit,
            'offset': offset
        }
