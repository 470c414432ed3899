"""Listing & request ledger.

This package provides:
- Marketplace listings with a validated status lifecycle
- Purchase requests from proposal to completion
- Ownership records with atomic close-old/open-new transfers
"""
from .errors import (
    LedgerError,
    NotFoundError,
    ListingNotFoundError,
    RequestNotFoundError,
    ProductNotFoundError,
    UserNotFoundError,
    ForbiddenError,
    NotCurrentOwnerError,
    InvalidStateError,
    InvalidTransitionError,
    ConflictError,
    InvalidPriceError,
)
from .store import LedgerStore, PostgresLedgerStore, get_default_store
from .listings import ListingManager, CURRENCIES, LISTING_STATUSES
from .purchases import PurchaseManager, REQUEST_STATUSES
from .ownership import OwnershipManager

__all__ = [
    'LedgerError',
    'NotFoundError',
    'ListingNotFoundError',
    'RequestNotFoundError',
    'ProductNotFoundError',
    'UserNotFoundError',
    'ForbiddenError',
    'NotCurrentOwnerError',
    'InvalidStateError',
    'InvalidTransitionError',
    'ConflictError',
    'InvalidPriceError',
    'LedgerStore',
    'PostgresLedgerStore',
    'get_default_store',
    'ListingManager',
    'PurchaseManager',
    'OwnershipManager',
    'CURRENCIES',
    'LISTING_STATUSES',
    'REQUEST_STATUSES',
]
