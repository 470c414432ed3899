"""Ownership transfer API endpoints."""

from typing import List, Optional

from fastapi import APIRouter, Depends, Security
from pydantic import BaseModel, Field

from auth import get_current_user
from ledger import LedgerStore
from transfers import TransferOrchestrator
from wallet import NodeWallet
from ..deps import get_chain, get_store

router = APIRouter(
    prefix="/transfers",
    tags=["Transfers"]
)

class BatchTransferRequest(BaseModel):
    """Request model for a batch ownership transfer."""
    to_user_id: int
    product_ids: List[int] = Field(..., min_length=1)
    wallet_address: Optional[str] = None
    idempotency_key: Optional[str] = None

@router.post("/batch")
async def transfer_batch(
    body: BatchTransferRequest,
    user_id: int = Security(get_current_user),
    store: LedgerStore = Depends(get_store),
    client=Depends(get_chain)
):
    """Transfer products to another user, one result per product."""
    orchestrator = TransferOrchestrator(store=store, client=client)
    results = await orchestrator.transfer_batch(
        from_user_id=user_id,
        to_user_id=body.to_user_id,
        product_ids=body.product_ids,
        wallet=NodeWallet(body.wallet_address, client=client),
        idempotency_key=body.idempotency_key
    )
    return {
        'success': all(r.ok for r in results),
        'results': [r.model_dump() for r in results],
        'summary': [r.summary() for r in results]
    }
