"""Payment quote API endpoints."""

from decimal import Decimal

from fastapi import APIRouter, Depends, Query

from ledger import CURRENCIES
from payments import PaymentBridge, PriceOracle
from ..deps import get_chain, get_oracle

router = APIRouter(
    prefix="/payments",
    tags=["Payments"]
)

@router.get("/quote")
async def quote(
    amount: Decimal = Query(..., gt=0),
    currency: str = Query(..., pattern=f"^({'|'.join(CURRENCIES)})$"),
    client=Depends(get_chain),
    oracle: PriceOracle = Depends(get_oracle)
):
    """Quote a fiat amount in the native token. A zero amount means no quote is available."""
    bridge = PaymentBridge(client=client, oracle=oracle)
    native_amount = await bridge.quote_native_amount(amount, currency)
    return {
        'fiat_amount': str(amount),
        'fiat_currency': currency,
        'native_token': bridge.native_token,
        'native_amount': str(native_amount),
        'available': native_amount > 0
    }
