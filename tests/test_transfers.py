"""Tests for batch ownership transfers."""

import asyncio

import pytest

import config
from ledger import ForbiddenError, UserNotFoundError
from transfers import TransferOrchestrator, TransferResult
from wallet import InvalidRecipientError, NodeWallet, WalletNotConnectedError
from .conftest import product_pda, registration_sig, user_key

SENDER_ID = 5
RECIPIENT_ID = 9

@pytest.fixture
def orchestrator(store, chain):
    return TransferOrchestrator(store, chain)

@pytest.fixture
def fast_confirmation(monkeypatch):
    """Give up on unconfirmed signatures quickly."""
    monkeypatch.setitem(config.settings_conf, 'confirmation_timeout', 0.05)
    monkeypatch.setitem(config.settings_conf, 'confirmation_poll_interval', 0.01)

@pytest.mark.asyncio
async def test_partial_batch(store, chain, orchestrator, wallet_for):
    """Product 12 belongs to user 3; the other two still move."""
    results = await orchestrator.transfer_batch(SENDER_ID, RECIPIENT_ID, [11, 12, 13], wallet_for(SENDER_ID))

    assert [r.product_id for r in results] == [11, 12, 13]
    assert [r.ok for r in results] == [True, False, True]
    assert results[0].message == "Transferred"
    assert results[1].message == "not current owner"
    assert results[1].tx_hash is None

    assert store.open_owner(11) == RECIPIENT_ID
    assert store.open_owner(12) == 3
    assert store.open_owner(13) == RECIPIENT_ID
    assert len(chain.sent) == 2

    transaction, options = chain.sent[0]
    assert transaction["type"] == "transferOwnership"
    assert transaction["from"] == user_key(SENDER_ID)
    assert transaction["to"] == user_key(RECIPIENT_ID)
    assert options["signer"] == user_key(SENDER_ID)

    owner = await store.get_open_ownership(11)
    assert owner["tx_hash"] == results[0].tx_hash
    assert store.chain_events[results[0].tx_hash]["event"] == "TRANSFER"

@pytest.mark.asyncio
async def test_result_summary(orchestrator, wallet_for):
    results = await orchestrator.transfer_batch(SENDER_ID, RECIPIENT_ID, [12], wallet_for(SENDER_ID))
    assert results[0].summary() == "Product 12: not current owner"

@pytest.mark.asyncio
async def test_duplicate_ids_share_one_attempt(chain, orchestrator, wallet_for):
    results = await orchestrator.transfer_batch(SENDER_ID, RECIPIENT_ID, [11, 11], wallet_for(SENDER_ID))

    assert len(results) == 2
    assert all(r.ok for r in results)
    assert results[0].tx_hash == results[1].tx_hash
    assert len(chain.sent) == 1

@pytest.mark.asyncio
async def test_rejected_item_is_isolated(store, chain, orchestrator, wallet_for):
    chain.rejected_products.add(product_pda(13))

    results = await orchestrator.transfer_batch(SENDER_ID, RECIPIENT_ID, [11, 13, 21], wallet_for(SENDER_ID))

    assert [r.ok for r in results] == [True, False, True]
    assert "Transaction simulation failed" in results[1].message
    assert store.open_owner(13) == SENDER_ID

@pytest.mark.asyncio
async def test_unregistered_product(store, chain, orchestrator, wallet_for):
    results = await orchestrator.transfer_batch(SENDER_ID, RECIPIENT_ID, [14], wallet_for(SENDER_ID))

    assert results == [TransferResult(product_id=14, ok=False, message="product not registered on chain")]
    assert chain.sent == []
    assert store.open_owner(14) == SENDER_ID

@pytest.mark.asyncio
async def test_unconfirmed_registration(store, chain, orchestrator, wallet_for):
    chain.confirm(registration_sig(22), level='processed')

    results = await orchestrator.transfer_batch(SENDER_ID, RECIPIENT_ID, [22], wallet_for(SENDER_ID))

    assert results[0].ok is False
    assert results[0].message == "product registration not confirmed on chain"
    assert chain.sent == []

@pytest.mark.asyncio
async def test_failed_registration(chain, orchestrator, wallet_for):
    chain.confirm(registration_sig(22), level='finalized', err={'InstructionError': [0, 'Custom']})

    results = await orchestrator.transfer_batch(SENDER_ID, RECIPIENT_ID, [22], wallet_for(SENDER_ID))

    assert results[0].message == "product registration not confirmed on chain"

@pytest.mark.asyncio
@pytest.mark.parametrize("from_user_id,to_user_id,wallet_user,error", [
    (SENDER_ID, SENDER_ID, SENDER_ID, InvalidRecipientError),
    (99, RECIPIENT_ID, SENDER_ID, UserNotFoundError),
    (SENDER_ID, 99, SENDER_ID, InvalidRecipientError),
    (SENDER_ID, 7, SENDER_ID, InvalidRecipientError),
    (SENDER_ID, RECIPIENT_ID, RECIPIENT_ID, ForbiddenError),
])
async def test_batch_rejected_up_front(store, chain, orchestrator, wallet_for,
                                       from_user_id, to_user_id, wallet_user, error):
    with pytest.raises(error):
        await orchestrator.transfer_batch(from_user_id, to_user_id, [11, 13], wallet_for(wallet_user))

    assert chain.sent == []
    assert store.open_owner(11) == SENDER_ID

@pytest.mark.asyncio
async def test_wallet_not_connected(chain, orchestrator):
    with pytest.raises(WalletNotConnectedError):
        await orchestrator.transfer_batch(SENDER_ID, RECIPIENT_ID, [11], NodeWallet(None, client=chain))
    assert chain.sent == []

@pytest.mark.asyncio
async def test_idempotent_batch(store, chain, orchestrator, wallet_for):
    first = await orchestrator.transfer_batch(
        SENDER_ID, RECIPIENT_ID, [11, 13], wallet_for(SENDER_ID), idempotency_key="batch-1"
    )
    again = await orchestrator.transfer_batch(
        SENDER_ID, RECIPIENT_ID, [11, 13], wallet_for(SENDER_ID), idempotency_key="batch-1"
    )

    assert all(r.ok for r in again)
    assert [r.message for r in again] == ["Already transferred", "Already transferred"]
    assert [r.tx_hash for r in again] == [r.tx_hash for r in first]
    assert len(chain.sent) == 2
    assert store.operations[f"batch-1:{SENDER_ID}:{RECIPIENT_ID}:11"]["status"] == "completed"
    assert len(await store.get_ownership_history(11)) == 2

@pytest.mark.asyncio
async def test_resume_submitted_operation(store, chain, orchestrator, wallet_for):
    """A signature submitted by an interrupted run is confirmed, not sent again."""
    await store.save_operation(f"batch-1:{SENDER_ID}:{RECIPIENT_ID}:11", "transfer", "sig-earlier", "submitted")
    chain.confirm("sig-earlier")

    results = await orchestrator.transfer_batch(
        SENDER_ID, RECIPIENT_ID, [11], wallet_for(SENDER_ID), idempotency_key="batch-1"
    )

    assert results[0].ok is True
    assert results[0].tx_hash == "sig-earlier"
    assert chain.sent == []
    owner = await store.get_open_ownership(11)
    assert owner["owner_id"] == RECIPIENT_ID
    assert owner["tx_hash"] == "sig-earlier"
    assert store.operations[f"batch-1:{SENDER_ID}:{RECIPIENT_ID}:11"]["status"] == "completed"

@pytest.mark.asyncio
async def test_key_reused_by_next_owner(store, chain, orchestrator, wallet_for):
    """User 9 reusing user 5's key for a different hop still gets a real transfer."""
    first = await orchestrator.transfer_batch(SENDER_ID, RECIPIENT_ID, [11], wallet_for(SENDER_ID), idempotency_key="k")
    second = await orchestrator.transfer_batch(RECIPIENT_ID, 6, [11], wallet_for(RECIPIENT_ID), idempotency_key="k")

    assert first[0].ok is True
    assert second[0].ok is True
    assert second[0].message == "Transferred"
    assert second[0].tx_hash != first[0].tx_hash
    assert store.open_owner(11) == 6
    assert len(chain.sent) == 2

@pytest.mark.asyncio
async def test_confirmation_timeout(store, chain, orchestrator, wallet_for, fast_confirmation):
    chain.confirm_sent = False

    results = await orchestrator.transfer_batch(
        SENDER_ID, RECIPIENT_ID, [11], wallet_for(SENDER_ID), idempotency_key="batch-1"
    )

    assert results[0].ok is False
    assert "not confirmed" in results[0].message
    assert store.open_owner(11) == SENDER_ID
    assert store.operations[f"batch-1:{SENDER_ID}:{RECIPIENT_ID}:11"]["status"] == "submitted"

@pytest.mark.asyncio
async def test_failed_transaction(store, chain, orchestrator, wallet_for, fast_confirmation):
    chain.confirm_sent = False
    original = chain.send_transaction

    def send_and_fail(transaction, options):
        signature = original(transaction, options)
        chain.confirm(signature, err={'InstructionError': [0, 'Custom']})
        return signature

    chain.send_transaction = send_and_fail

    results = await orchestrator.transfer_batch(SENDER_ID, RECIPIENT_ID, [11], wallet_for(SENDER_ID))

    assert results[0].ok is False
    assert "failed" in results[0].message
    assert store.open_owner(11) == SENDER_ID

class CountingWallet(NodeWallet):
    """Tracks how many submissions are in flight at once."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.in_flight = 0
        self.max_in_flight = 0

    async def send_transaction(self, transaction, client=None):
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(0.05)
            return await super().send_transaction(transaction, client)
        finally:
            self.in_flight -= 1

@pytest.mark.asyncio
async def test_concurrency_is_capped(store, chain):
    orchestrator = TransferOrchestrator(store, chain, concurrency=2)
    wallet = CountingWallet(user_key(SENDER_ID), client=chain)

    results = await orchestrator.transfer_batch(SENDER_ID, RECIPIENT_ID, [11, 13, 21, 22], wallet)

    assert all(r.ok for r in results)
    assert wallet.max_in_flight == 2
    assert len(chain.sent) == 4
