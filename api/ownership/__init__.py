"""Ownership lookup API endpoints."""

from fastapi import APIRouter, Depends

from ledger import LedgerStore, OwnershipManager
from ..deps import get_store

router = APIRouter(
    prefix="/ownership",
    tags=["Ownership"]
)

@router.get("/{product_id}")
async def current_owner(product_id: int, store: LedgerStore = Depends(get_store)):
    """Current owner of a product."""
    return await OwnershipManager(store).get_current_owner(product_id)

@router.get("/{product_id}/history")
async def history(product_id: int, store: LedgerStore = Depends(get_store)):
    """Every owner of a product, oldest first."""
    return {
        'product_id': product_id,
        'history': await OwnershipManager(store).get_history(product_id)
    }
