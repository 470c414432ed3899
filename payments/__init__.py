"""Payment settlement between buyer and seller wallets.

This module handles:
- Quoting a fiat price in the chain's native token via the price oracle
- Submitting the buyer -> seller native transfer and waiting for confirmation
- Reporting the payment to the ledger to finalize the purchase request

A confirmed payment completes the purchase right away; the seller's
acceptance step is optional.
"""
import asyncio
import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

from chain import build_native_transfer, is_valid_address, to_base_units, client as default_client
from config import settings_conf
from ledger import (
    ForbiddenError,
    InvalidStateError,
    LedgerStore,
    PurchaseManager,
    get_default_store,
)
from wallet import (
    InvalidRecipientError,
    TransactionFailedError,
    Wallet,
    WalletNotConnectedError,
    wait_for_confirmation,
)
from .errors import PaymentError, QuoteUnavailableError
from .oracle import PriceOracle

logger = logging.getLogger(__name__)

class PaymentBridge:
    """Moves purchase requests from proposed to completed through an on-chain payment."""

    def __init__(
        self,
        store: Optional[LedgerStore] = None,
        client=None,
        oracle: Optional[PriceOracle] = None,
        native_token: Optional[str] = None,
        native_decimals: Optional[int] = None,
        commitment: Optional[str] = None
    ):
        """Initialize the payment bridge.

        Args:
            store: Optional ledger store. If not provided, one is built over the database pool.
            client: ChainRPC client, defaults to the shared client
            oracle: Price oracle, defaults to one built from settings
            native_token: Oracle id of the native token, defaults to settings
            native_decimals: Base-unit decimals of the native token, defaults to settings
            commitment: Commitment level to wait for, defaults to settings
        """
        self.store = store
        self.client = client or default_client
        self.oracle = oracle or PriceOracle()
        self.native_token = native_token or settings_conf['native_token']
        self.native_decimals = settings_conf['native_decimals'] if native_decimals is None else native_decimals
        self.commitment = commitment or settings_conf['commitment']

    async def ensure_store(self):
        """Ensure we have a ledger store."""
        if not self.store:
            self.store = await get_default_store()

    async def quote_native_amount(self, fiat_amount: Any, fiat_currency: str) -> Decimal:
        """Convert a fiat amount to the native token.

        Returns:
            The native amount, or Decimal('0') when no rate is available.
            Callers must not submit a payment for a zero quote.
        """
        try:
            rate = await asyncio.to_thread(self.oracle.get_rate, self.native_token, fiat_currency)
        except QuoteUnavailableError as e:
            logger.warning(f"Quote for {fiat_amount} {fiat_currency} unavailable: {e}")
            return Decimal('0')

        if not rate:
            logger.warning(f"No {self.native_token}/{fiat_currency} rate from price oracle")
            return Decimal('0')

        try:
            amount = Decimal(str(fiat_amount))
        except (InvalidOperation, ValueError) as e:
            logger.warning(f"Cannot quote fiat amount {fiat_amount!r} {fiat_currency}: {e}")
            return Decimal('0')
        if not amount.is_finite() or amount <= 0:
            logger.warning(f"Cannot quote fiat amount {fiat_amount!r} {fiat_currency}")
            return Decimal('0')

        return amount / rate

    def _check_payment(self, buyer_wallet: Wallet, seller_wallet_address: Optional[str]) -> None:
        if buyer_wallet is None or not buyer_wallet.connected:
            raise WalletNotConnectedError()
        if not seller_wallet_address:
            raise InvalidRecipientError("Seller has no registered wallet")
        if not is_valid_address(seller_wallet_address):
            raise InvalidRecipientError(f"Invalid seller wallet address: {seller_wallet_address}")
        if seller_wallet_address == buyer_wallet.public_key:
            raise InvalidRecipientError("Buyer and seller wallets are the same")

    async def _send_payment(
        self,
        buyer_wallet: Wallet,
        seller_wallet_address: Optional[str],
        native_amount: Decimal
    ) -> str:
        """Validate and submit the transfer without waiting for confirmation."""
        self._check_payment(buyer_wallet, seller_wallet_address)

        native_amount = Decimal(str(native_amount))
        base_units = to_base_units(native_amount, self.native_decimals) if native_amount > 0 else 0
        if base_units <= 0:
            raise QuoteUnavailableError(f"Cannot pay a native amount of {native_amount}")

        transaction = build_native_transfer(buyer_wallet.public_key, seller_wallet_address, base_units)
        return await buyer_wallet.send_transaction(transaction, self.client)

    async def submit_payment(
        self,
        buyer_wallet: Wallet,
        seller_wallet_address: Optional[str],
        native_amount: Decimal
    ) -> str:
        """Send native tokens from buyer to seller and wait for confirmation.

        All validation happens before a transaction is built.

        Returns:
            The confirmed transaction signature

        Raises:
            WalletNotConnectedError: If the buyer wallet is not connected
            InvalidRecipientError: If the seller address is missing or malformed
            QuoteUnavailableError: If the amount is not positive
            TransactionFailedError: If submission fails or the transaction is not confirmed
        """
        signature = await self._send_payment(buyer_wallet, seller_wallet_address, native_amount)
        await wait_for_confirmation(self.client, signature, self.commitment)

        logger.info(f"Payment {signature} of {native_amount} {self.native_token} confirmed")
        return signature

    async def finalize_purchase(self, request_id: int, buyer_id: int, signature: str) -> Dict[str, Any]:
        """Confirm a reported payment on chain, record it on the request and complete it.

        Nothing is written to the ledger until the signature reaches the
        bridge's commitment level without error. Finalizing an already
        completed request with the same signature returns it unchanged.

        Raises:
            ForbiddenError: If buyer_id is not the request's buyer
            TransactionFailedError: If the transaction failed or was not
                confirmed in time; the request is unchanged
            InvalidStateError: If the request cannot take a payment
            NotCurrentOwnerError: If the seller no longer owns the product;
                the request is left paid
        """
        await self.ensure_store()
        purchases = PurchaseManager(self.store)

        request = await purchases.get_request(request_id)
        if request['buyer_id'] != buyer_id:
            raise ForbiddenError(f"User {buyer_id} is not the buyer of request {request_id}")
        if request['status'] == 'completed' and request['payment_tx_hash'] == signature:
            return request

        await wait_for_confirmation(self.client, signature, self.commitment)
        return await self._complete_paid(purchases, request_id, buyer_id, signature)

    async def _complete_paid(
        self,
        purchases: PurchaseManager,
        request_id: int,
        buyer_id: int,
        signature: str
    ) -> Dict[str, Any]:
        """Record a confirmed payment and complete the request."""
        await purchases.record_payment(request_id, buyer_id, signature)
        try:
            return await purchases.complete_request(request_id)
        except Exception as e:
            logger.error(f"Request {request_id} paid with {signature} but completion failed: {e}")
            raise

    async def settle_request(
        self,
        request_id: int,
        buyer_id: int,
        buyer_wallet: Wallet,
        idempotency_key: Optional[str] = None
    ) -> Dict[str, Any]:
        """Run the whole purchase: quote, pay the seller, finalize.

        Args:
            request_id: Request to pay
            buyer_id: Calling user, must be the request's buyer
            buyer_wallet: Buyer's connected wallet
            idempotency_key: Optional client token, scoped to this buyer and
                request; a payment already submitted under it is re-confirmed
                instead of sent again

        Returns:
            The completed request

        Raises:
            ForbiddenError: If buyer_id is not the request's buyer or the
                wallet is not the buyer's registered wallet
            InvalidStateError: If the request is not proposed or accepted
            WalletNotConnectedError, InvalidRecipientError, QuoteUnavailableError,
            TransactionFailedError: As for submit_payment; the request is unchanged
        """
        await self.ensure_store()
        purchases = PurchaseManager(self.store)

        request = await purchases.get_request(request_id)
        if request['buyer_id'] != buyer_id:
            raise ForbiddenError(f"User {buyer_id} is not the buyer of request {request_id}")

        if buyer_wallet is None or not buyer_wallet.connected:
            raise WalletNotConnectedError()
        buyer = await self.store.get_user(buyer_id)
        if not buyer or buyer_wallet.public_key != buyer['public_key']:
            raise ForbiddenError(f"Wallet {buyer_wallet.public_key} is not registered to user {buyer_id}")

        op_key = f"{idempotency_key}:{buyer_id}:{request_id}" if idempotency_key else None
        operation = await self.store.get_operation(op_key) if op_key else None

        if operation:
            signature = operation['signature']
            request = await self.finalize_purchase(request_id, buyer_id, signature)
            await self.store.save_operation(op_key, 'payment', signature, 'completed')
            return request

        if request['status'] not in ('proposed', 'accepted'):
            raise InvalidStateError(
                f"Cannot pay request {request_id} with status {request['status']}"
            )

        seller = await self.store.get_user(request['seller_id'])
        seller_address = seller['public_key'] if seller else None
        self._check_payment(buyer_wallet, seller_address)

        native_amount = await self.quote_native_amount(
            request['offered_price'], request['offered_currency']
        )
        if native_amount <= 0:
            raise QuoteUnavailableError(
                f"No quote for {request['offered_price']} {request['offered_currency']}"
            )

        signature = await self._send_payment(buyer_wallet, seller_address, native_amount)
        if op_key:
            await self.store.save_operation(op_key, 'payment', signature, 'submitted')

        await wait_for_confirmation(self.client, signature, self.commitment)
        logger.info(
            f"Payment {signature} of {native_amount} {self.native_token} for request "
            f"{request_id} confirmed"
        )

        request = await self._complete_paid(purchases, request_id, buyer_id, signature)
        if op_key:
            await self.store.save_operation(op_key, 'payment', signature, 'completed')
        return request

__all__ = [
    'PaymentBridge',
    'PriceOracle',
    'PaymentError',
    'QuoteUnavailableError',
    'TransactionFailedError',
]
