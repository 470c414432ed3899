"""Listings API endpoints."""

from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, Query, Security, status
from pydantic import BaseModel, Field

from auth import get_current_user
from ledger import ListingManager, LedgerStore
from ..deps import get_store

router = APIRouter(
    prefix="/listings",
    tags=["Listings"]
)

class CreateListingRequest(BaseModel):
    """Request model for creating a listing."""
    product_id: int
    price: Decimal = Field(..., gt=0)
    currency: str
    notes: Optional[str] = None

class UpdateListingRequest(BaseModel):
    """Request model for updating a listing."""
    price: Optional[Decimal] = Field(None, gt=0)
    currency: Optional[str] = None
    status: Optional[str] = None
    notes: Optional[str] = None

""" Public Endpoints - No Authentication Required """
@router.get("/")
async def search_listings(
    seller_id: Optional[int] = Query(None),
    product_id: Optional[int] = Query(None),
    status: Optional[str] = Query(None),
    currency: Optional[str] = Query(None),
    per_page: int = Query(50, ge=1, le=100),
    page: int = Query(1, ge=1),
    store: LedgerStore = Depends(get_store)
):
    """Browse listings with pagination metadata."""
    return await ListingManager(store).search_listings(
        seller_id=seller_id,
        product_id=product_id,
        status=status,
        currency=currency,
        limit=per_page,
        offset=(page - 1) * per_page
    )

@router.get("/{listing_id}")
async def get_listing(listing_id: int, store: LedgerStore = Depends(get_store)):
    """Get a listing by ID."""
    return await ListingManager(store).get_listing(listing_id)

""" Protected Endpoints - Authentication Required """
@router.post("/", status_code=status.HTTP_201_CREATED)
async def create_listing(
    body: CreateListingRequest,
    user_id: int = Security(get_current_user),
    store: LedgerStore = Depends(get_store)
):
    """List a product the caller owns."""
    return await ListingManager(store).create_listing(
        seller_id=user_id,
        product_id=body.product_id,
        price=body.price,
        currency=body.currency,
        notes=body.notes
    )

@router.patch("/{listing_id}")
async def update_listing(
    listing_id: int,
    body: UpdateListingRequest,
    user_id: int = Security(get_current_user),
    store: LedgerStore = Depends(get_store)
):
    """Update price, currency, notes or status of the caller's listing."""
    updates = {k: v for k, v in body.model_dump().items() if v is not None}
    return await ListingManager(store).update_listing(listing_id, user_id, updates)

@router.delete("/{listing_id}")
async def delete_listing(
    listing_id: int,
    user_id: int = Security(get_current_user),
    store: LedgerStore = Depends(get_store)
):
    """Delete the caller's unsold listing."""
    await ListingManager(store).delete_listing(listing_id, user_id)
    return {'success': True, 'listing_id': listing_id}
