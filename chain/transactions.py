"""Transaction instructions understood by the signing gateway.

Instructions are plain JSON objects; the gateway resolves the program,
signs for the ``from`` key and broadcasts.
"""
import re
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict

# Base58, 32-byte keys encode to 32-44 characters
ADDRESS_PATTERN = re.compile(r'^[1-9A-HJ-NP-Za-km-z]{32,44}$')

def is_valid_address(address: Any) -> bool:
    """Check that a value looks like a base58 account address."""
    return isinstance(address, str) and bool(ADDRESS_PATTERN.match(address))

def to_base_units(amount: Decimal, decimals: int) -> int:
    """Convert a native token amount to integer base units, rounding half up."""
    scaled = Decimal(amount) * (Decimal(10) ** decimals)
    return int(scaled.quantize(Decimal('1'), rounding=ROUND_HALF_UP))

def build_native_transfer(from_pubkey: str, to_pubkey: str, base_units: int) -> Dict[str, Any]:
    """Native value transfer of ``base_units`` from one account to another."""
    if base_units <= 0:
        raise ValueError(f"Transfer amount must be positive, got {base_units}")
    return {
        'type': 'transfer',
        'from': from_pubkey,
        'to': to_pubkey,
        'amount': base_units
    }

def build_ownership_transfer(product_pda: str, from_pubkey: str, to_pubkey: str) -> Dict[str, Any]:
    """Ownership transfer of a registered product account."""
    return {
        'type': 'transferOwnership',
        'product': product_pda,
        'from': from_pubkey,
        'to': to_pubkey
    }
