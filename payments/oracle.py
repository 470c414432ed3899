"""Price oracle client for a CoinGecko-compatible ``simple/price`` API."""
import logging
from decimal import Decimal, InvalidOperation
from typing import Optional

import requests

from config import settings_conf
from .errors import QuoteUnavailableError

logger = logging.getLogger(__name__)

class PriceOracle:
    """Fetches native token rates against fiat currencies."""

    def __init__(self, base_url: Optional[str] = None, timeout: Optional[int] = None, session=None):
        self.base_url = (base_url or settings_conf['price_oracle_url']).rstrip('/')
        self.timeout = timeout or settings_conf['oracle_timeout']
        self.session = session or requests.Session()
        self.session.headers['accept'] = 'application/json'

    def get_rate(self, token: str, fiat_currency: str) -> Optional[Decimal]:
        """Get the price of one ``token`` in ``fiat_currency``.

        Returns:
            The rate, or None when the oracle has no positive rate for the pair

        Raises:
            QuoteUnavailableError: If the oracle cannot be reached or answers garbage
        """
        fiat = fiat_currency.lower()
        try:
            response = self.session.get(
                f"{self.base_url}/simple/price",
                params={'ids': token, 'vs_currencies': fiat},
                timeout=self.timeout
            )
            response.raise_for_status()
            data = response.json()
        except requests.exceptions.RequestException as e:
            raise QuoteUnavailableError(f"Price oracle request failed: {e}") from e
        except ValueError as e:
            raise QuoteUnavailableError(f"Invalid price oracle response: {e}") from e

        entry = data.get(token) if isinstance(data, dict) else None
        if entry is None:
            return None
        if not isinstance(entry, dict):
            raise QuoteUnavailableError(f"Invalid price oracle entry for {token}: {entry!r}")

        rate = entry.get(fiat)
        if rate is None:
            return None

        try:
            rate = Decimal(str(rate))
        except InvalidOperation:
            raise QuoteUnavailableError(f"Invalid rate for {token}/{fiat}: {rate!r}")
        return rate if rate.is_finite() and rate > 0 else None
