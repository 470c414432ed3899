"""Shared fixtures: an in-memory ledger store and a scripted chain endpoint."""

import copy
import itertools
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

import pytest

from chain import ChainError
from database.exceptions import DuplicateRecordError
from ledger import LedgerStore
from wallet import NodeWallet

def user_key(user_id: int) -> str:
    """Deterministic base58 wallet address for a test user."""
    return f"User{user_id}".ljust(44, '1')

def product_pda(product_id: int) -> str:
    return f"Pda{product_id}".ljust(44, '1')

def registration_sig(product_id: int) -> str:
    return f"reg-{product_id}"

class InMemoryLedgerStore(LedgerStore):
    """LedgerStore over plain dicts.

    A transaction snapshots every table and restores it if the block raises.
    Unique indexes of the real schema raise DuplicateRecordError.
    """

    TABLES = ('users', 'products', 'listings', 'requests', 'ownership', 'chain_events', 'operations')

    def __init__(self):
        self.users: Dict[int, Dict[str, Any]] = {}
        self.products: Dict[int, Dict[str, Any]] = {}
        self.listings: Dict[int, Dict[str, Any]] = {}
        self.requests: Dict[int, Dict[str, Any]] = {}
        self.ownership: Dict[int, Dict[str, Any]] = {}
        self.chain_events: Dict[str, Dict[str, Any]] = {}
        self.operations: Dict[str, Dict[str, Any]] = {}
        self._counters = {
            'listings': itertools.count(1),
            'requests': itertools.count(1),
            'ownership': itertools.count(1)
        }
        self._in_transaction = False

    def set_next_id(self, table: str, value: int) -> None:
        self._counters[table] = itertools.count(value)

    @staticmethod
    def _now() -> datetime:
        return datetime.now(timezone.utc)

    @asynccontextmanager
    async def transaction(self):
        if self._in_transaction:
            yield self
            return

        snapshot = {name: copy.deepcopy(getattr(self, name)) for name in self.TABLES}
        self._in_transaction = True
        try:
            yield self
        except BaseException:
            for name, rows in snapshot.items():
                setattr(self, name, rows)
            raise
        finally:
            self._in_transaction = False

    # Seeding

    def add_user(self, user_id: int, role: str = 'consumer', public_key: Optional[str] = None) -> None:
        self.users[user_id] = {
            'user_id': user_id,
            'username': f"user{user_id}",
            'role': role,
            'public_key': public_key,
            'created_on': self._now()
        }

    def add_product(self, product_id: int, owner_id: int, registered: bool = True) -> None:
        owner = self.users[owner_id]
        self.products[product_id] = {
            'product_id': product_id,
            'registered_by': owner_id,
            'serial_no': f"SN-{product_id}",
            'model': 'Model X',
            'product_pda': product_pda(product_id) if registered else None,
            'tx_hash': registration_sig(product_id) if registered else None,
            'track': True,
            'registered_on': self._now()
        }
        ownership_id = next(self._counters['ownership'])
        self.ownership[ownership_id] = {
            'ownership_id': ownership_id,
            'product_id': product_id,
            'owner_id': owner_id,
            'owner_public_key': owner['public_key'],
            'start_on': self._now(),
            'end_on': None,
            'tx_hash': registration_sig(product_id) if registered else None
        }

    def open_owner(self, product_id: int) -> Optional[int]:
        for record in self.ownership.values():
            if record['product_id'] == product_id and record['end_on'] is None:
                return record['owner_id']
        return None

    # LedgerStore

    async def get_user(self, user_id: int) -> Optional[Dict[str, Any]]:
        row = self.users.get(user_id)
        return dict(row) if row else None

    async def get_product(self, product_id: int) -> Optional[Dict[str, Any]]:
        row = self.products.get(product_id)
        return dict(row) if row else None

    async def get_listing(self, listing_id: int, for_update: bool = False) -> Optional[Dict[str, Any]]:
        row = self.listings.get(listing_id)
        return dict(row) if row else None

    async def get_active_listing(self, product_id: int) -> Optional[Dict[str, Any]]:
        for row in self.listings.values():
            if row['product_id'] == product_id and row['status'] in ('available', 'reserved'):
                return dict(row)
        return None

    async def search_listings(
        self,
        filters: Dict[str, Any],
        limit: int,
        offset: int
    ) -> Tuple[List[Dict[str, Any]], int]:
        rows = [
            row for row in self.listings.values()
            if all(row[field] == value for field, value in filters.items())
        ]
        rows.sort(key=lambda r: (r['created_on'], r['listing_id']), reverse=True)
        return [dict(r) for r in rows[offset:offset + limit]], len(rows)

    async def insert_listing(self, values: Dict[str, Any]) -> Dict[str, Any]:
        if values.get('status', 'available') != 'sold' and await self.get_active_listing(values['product_id']):
            raise DuplicateRecordError("duplicate active listing", constraint='idx_listing_active_product')
        listing_id = next(self._counters['listings'])
        now = self._now()
        row = {'listing_id': listing_id, 'notes': None, 'created_on': now, 'updated_on': now}
        row.update(values)
        self.listings[listing_id] = row
        return dict(row)

    async def update_listing(self, listing_id: int, values: Dict[str, Any]) -> Dict[str, Any]:
        row = self.listings[listing_id]
        row.update(values)
        row['updated_on'] = self._now()
        return dict(row)

    async def delete_listing(self, listing_id: int) -> None:
        self.listings.pop(listing_id, None)
        for request in self.requests.values():
            if request['listing_id'] == listing_id:
                request['listing_id'] = None

    async def get_request(self, request_id: int, for_update: bool = False) -> Optional[Dict[str, Any]]:
        row = self.requests.get(request_id)
        return dict(row) if row else None

    async def get_active_request(self, product_id: int) -> Optional[Dict[str, Any]]:
        for row in self.requests.values():
            if row['product_id'] == product_id and row['status'] in ('proposed', 'accepted', 'paid'):
                return dict(row)
        return None

    async def list_requests(
        self,
        buyer_id: Optional[int] = None,
        seller_id: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        if buyer_id is not None:
            rows = [r for r in self.requests.values() if r['buyer_id'] == buyer_id]
        else:
            rows = [r for r in self.requests.values() if r['seller_id'] == seller_id]
        rows.sort(key=lambda r: (r['created_on'], r['request_id']), reverse=True)
        return [dict(r) for r in rows]

    async def insert_request(self, values: Dict[str, Any]) -> Dict[str, Any]:
        if await self.get_active_request(values['product_id']):
            raise DuplicateRecordError("duplicate active request", constraint='idx_request_active_product')
        request_id = next(self._counters['requests'])
        now = self._now()
        row = {
            'request_id': request_id,
            'payment_tx_hash': None,
            'transfer_tx_hash': None,
            'created_on': now,
            'updated_on': now
        }
        row.update(values)
        self.requests[request_id] = row
        return dict(row)

    async def update_request(self, request_id: int, values: Dict[str, Any]) -> Dict[str, Any]:
        payment = values.get('payment_tx_hash')
        if payment and any(
            r['payment_tx_hash'] == payment and r['request_id'] != request_id
            for r in self.requests.values()
        ):
            raise DuplicateRecordError("duplicate payment", constraint='idx_request_payment')
        row = self.requests[request_id]
        row.update(values)
        row['updated_on'] = self._now()
        return dict(row)

    async def get_open_ownership(self, product_id: int, for_update: bool = False) -> Optional[Dict[str, Any]]:
        for row in self.ownership.values():
            if row['product_id'] == product_id and row['end_on'] is None:
                return dict(row)
        return None

    async def get_ownership_history(self, product_id: int) -> List[Dict[str, Any]]:
        rows = [r for r in self.ownership.values() if r['product_id'] == product_id]
        rows.sort(key=lambda r: (r['start_on'], r['ownership_id']))
        return [dict(r) for r in rows]

    async def close_ownership(self, ownership_id: int) -> None:
        self.ownership[ownership_id]['end_on'] = self._now()

    async def open_ownership(
        self,
        product_id: int,
        owner_id: int,
        owner_public_key: Optional[str],
        tx_hash: Optional[str]
    ) -> Dict[str, Any]:
        if await self.get_open_ownership(product_id):
            raise DuplicateRecordError("duplicate open ownership", constraint='idx_ownership_open_product')
        ownership_id = next(self._counters['ownership'])
        row = {
            'ownership_id': ownership_id,
            'product_id': product_id,
            'owner_id': owner_id,
            'owner_public_key': owner_public_key,
            'start_on': self._now(),
            'end_on': None,
            'tx_hash': tx_hash
        }
        self.ownership[ownership_id] = row
        return dict(row)

    async def insert_chain_event(self, values: Dict[str, Any]) -> Dict[str, Any]:
        if values['tx_hash'] in self.chain_events:
            raise DuplicateRecordError("duplicate chain event", constraint='chain_events_pkey')
        row = dict(values, created_on=self._now())
        self.chain_events[values['tx_hash']] = row
        return dict(row)

    async def get_operation(self, idempotency_key: str) -> Optional[Dict[str, Any]]:
        row = self.operations.get(idempotency_key)
        return dict(row) if row else None

    async def save_operation(
        self,
        idempotency_key: str,
        kind: str,
        signature: str,
        status: str
    ) -> Dict[str, Any]:
        now = self._now()
        row = self.operations.setdefault(idempotency_key, {
            'idempotency_key': idempotency_key,
            'created_on': now
        })
        row.update({'kind': kind, 'signature': signature, 'status': status, 'updated_on': now})
        return dict(row)

class FakeChain:
    """Scripted stand-in for ChainRPC.

    Every accepted transaction is confirmed immediately unless
    ``confirm_sent`` is False. Registration signatures of seeded products are
    finalized.
    """

    def __init__(self):
        self.sent: List[Tuple[Dict[str, Any], Dict[str, Any]]] = []
        self.statuses: Dict[str, Optional[Dict[str, Any]]] = {}
        self.rejected_products = set()
        self.confirm_sent = True
        self._signatures = itertools.count(1)

    def confirm(self, signature: str, level: str = 'confirmed', err: Any = None) -> None:
        self.statuses[signature] = {'slot': 100, 'confirmations': None, 'confirmationStatus': level, 'err': err}

    def send_transaction(self, transaction: Dict[str, Any], options: Dict[str, Any]) -> str:
        if transaction.get('product') in self.rejected_products:
            raise ChainError("Transaction simulation failed", -32002, 'sendTransaction')
        self.sent.append((transaction, options))
        signature = f"sig-{next(self._signatures)}"
        if self.confirm_sent:
            self.confirm(signature)
        return signature

    def get_signature_statuses(self, signatures: List[str], options: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return {'context': {'slot': 100}, 'value': [self.statuses.get(s) for s in signatures]}

class FakeOracle:
    """Price oracle returning fixed rates."""

    def __init__(self, rates: Optional[Dict[str, Decimal]] = None, error: Optional[Exception] = None):
        self.rates = rates or {}
        self.error = error
        self.calls: List[Tuple[str, str]] = []

    def get_rate(self, token: str, fiat_currency: str) -> Optional[Decimal]:
        self.calls.append((token, fiat_currency))
        if self.error:
            raise self.error
        return self.rates.get(fiat_currency.lower())

@pytest.fixture
def store() -> InMemoryLedgerStore:
    """Store seeded with a supply chain.

    Users: 3 manufacturer, 5 retailer, 9 and 6 consumers, 7 consumer without wallet.
    Products 11, 13, 14 (unregistered), 21, 22 owned by 5; 12 owned by 3; 31 owned by 7.
    """
    s = InMemoryLedgerStore()
    s.add_user(3, role='manufacturer', public_key=user_key(3))
    s.add_user(5, role='retailer', public_key=user_key(5))
    s.add_user(9, role='consumer', public_key=user_key(9))
    s.add_user(6, role='consumer', public_key=user_key(6))
    s.add_user(7, role='consumer', public_key=None)
    for product_id in (11, 13, 21, 22):
        s.add_product(product_id, owner_id=5)
    s.add_product(12, owner_id=3)
    s.add_product(14, owner_id=5, registered=False)
    s.add_product(31, owner_id=7)
    return s

@pytest.fixture
def chain() -> FakeChain:
    fake = FakeChain()
    for product_id in (11, 12, 13, 21, 22, 31):
        fake.confirm(registration_sig(product_id), level='finalized')
    return fake

@pytest.fixture
def oracle() -> FakeOracle:
    return FakeOracle({'sgd': Decimal('120'), 'usd': Decimal('80'), 'eur': Decimal('75')})

@pytest.fixture
def wallet_for(chain):
    """Build a connected custodial wallet for a user id."""
    def build(user_id: int) -> NodeWallet:
        return NodeWallet(user_key(user_id), client=chain)
    return build
