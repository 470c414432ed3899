"""Shared FastAPI dependencies, overridable with ``app.dependency_overrides``."""
from typing import Optional

import chain
from ledger import LedgerStore, get_default_store
from payments import PriceOracle

_oracle: Optional[PriceOracle] = None

async def get_store() -> LedgerStore:
    """Ledger store over the shared database pool."""
    return await get_default_store()

def get_chain():
    """Shared chain RPC client."""
    return chain.client

def get_oracle() -> PriceOracle:
    """Shared price oracle client."""
    global _oracle
    if _oracle is None:
        _oracle = PriceOracle()
    return _oracle
