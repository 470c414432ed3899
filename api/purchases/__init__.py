"""Purchase request API endpoints."""

from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, Security, status
from pydantic import BaseModel, Field

from auth import get_current_user
from ledger import ForbiddenError, LedgerStore, PurchaseManager
from payments import PaymentBridge, PriceOracle
from wallet import NodeWallet
from ..deps import get_chain, get_oracle, get_store

router = APIRouter(
    prefix="/purchases",
    tags=["Purchases"]
)

class ProposeRequest(BaseModel):
    """Request model for proposing a purchase."""
    listing_id: int
    offered_price: Optional[Decimal] = Field(None, gt=0)
    offered_currency: Optional[str] = None

class PaymentRecord(BaseModel):
    """Request model for reporting a payment made outside the API."""
    payment_tx_hash: str = Field(..., min_length=1)

class SettleRequest(BaseModel):
    """Request model for paying through the custodial wallet."""
    wallet_address: Optional[str] = None
    idempotency_key: Optional[str] = None

@router.post("/propose", status_code=status.HTTP_201_CREATED)
async def propose(
    body: ProposeRequest,
    user_id: int = Security(get_current_user),
    store: LedgerStore = Depends(get_store)
):
    """Propose to buy a listing; the listing is reserved."""
    return await PurchaseManager(store).propose_request(
        listing_id=body.listing_id,
        buyer_id=user_id,
        offered_price=body.offered_price,
        offered_currency=body.offered_currency
    )

@router.get("/buyer")
async def list_as_buyer(
    user_id: int = Security(get_current_user),
    store: LedgerStore = Depends(get_store)
):
    """Requests the caller made."""
    return await PurchaseManager(store).list_for_buyer(user_id)

@router.get("/seller")
async def list_as_seller(
    user_id: int = Security(get_current_user),
    store: LedgerStore = Depends(get_store)
):
    """Requests on the caller's listings."""
    return await PurchaseManager(store).list_for_seller(user_id)

@router.get("/{request_id}")
async def get_request(
    request_id: int,
    user_id: int = Security(get_current_user),
    store: LedgerStore = Depends(get_store)
):
    """Get a request the caller is a party to."""
    request = await PurchaseManager(store).get_request(request_id)
    if user_id not in (request['buyer_id'], request['seller_id']):
        raise ForbiddenError(f"User {user_id} is not a party to request {request_id}")
    return request

@router.post("/{request_id}/accept")
async def accept(
    request_id: int,
    user_id: int = Security(get_current_user),
    store: LedgerStore = Depends(get_store)
):
    """Seller accepts a proposed request."""
    return await PurchaseManager(store).accept_request(request_id, user_id)

@router.post("/{request_id}/reject")
async def reject(
    request_id: int,
    user_id: int = Security(get_current_user),
    store: LedgerStore = Depends(get_store)
):
    """Seller rejects a request."""
    return await PurchaseManager(store).reject_request(request_id, user_id)

@router.post("/{request_id}/cancel")
async def cancel(
    request_id: int,
    user_id: int = Security(get_current_user),
    store: LedgerStore = Depends(get_store)
):
    """Buyer or seller cancels a request."""
    return await PurchaseManager(store).cancel_request(request_id, user_id)

@router.post("/{request_id}/pay")
async def record_payment(
    request_id: int,
    body: PaymentRecord,
    user_id: int = Security(get_current_user),
    store: LedgerStore = Depends(get_store),
    client=Depends(get_chain),
    oracle: PriceOracle = Depends(get_oracle)
):
    """Finalize a request with a payment the buyer sent; the hash must confirm on chain first."""
    bridge = PaymentBridge(store=store, client=client, oracle=oracle)
    return await bridge.finalize_purchase(request_id, user_id, body.payment_tx_hash)

@router.post("/{request_id}/settle")
async def settle(
    request_id: int,
    body: SettleRequest,
    user_id: int = Security(get_current_user),
    store: LedgerStore = Depends(get_store),
    client=Depends(get_chain),
    oracle: PriceOracle = Depends(get_oracle)
):
    """Quote, pay the seller from the caller's custodial wallet, and finalize."""
    bridge = PaymentBridge(store=store, client=client, oracle=oracle)
    wallet = NodeWallet(body.wallet_address, client=client)
    return await bridge.settle_request(
        request_id, user_id, wallet, idempotency_key=body.idempotency_key
    )
