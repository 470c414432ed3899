"""Tests for the chain RPC client, transaction builders and confirmation tracking."""

from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal
from unittest.mock import MagicMock

import pytest
import requests

from chain import (
    ChainError,
    ChainRPC,
    NodeAuthError,
    NodeConnectionError,
    build_native_transfer,
    build_ownership_transfer,
    is_valid_address,
    to_base_units,
)
from wallet import (
    ConfirmationTimeoutError,
    NodeWallet,
    TransactionFailedError,
    WalletNotConnectedError,
    meets_commitment,
    wait_for_confirmation,
)
from .conftest import FakeChain, product_pda, user_key

def rpc_with_response(payload=None, status_code=200, error=None):
    rpc = ChainRPC(url="http://gateway.test", user="", password="", timeout=5)
    rpc.session = MagicMock()
    if error:
        rpc.session.post.side_effect = error
    else:
        response = rpc.session.post.return_value
        response.status_code = status_code
        response.json.return_value = payload
    return rpc

def test_rpc_call():
    rpc = rpc_with_response({"jsonrpc": "2.0", "result": {"solana-core": "1.18.0"}, "id": 1})

    assert rpc.get_version() == {"solana-core": "1.18.0"}
    rpc.session.post.assert_called_once_with(
        "http://gateway.test",
        json={"jsonrpc": "2.0", "method": "getVersion", "params": [], "id": 1},
        timeout=5
    )

def test_rpc_params_and_request_ids():
    rpc = rpc_with_response({"jsonrpc": "2.0", "result": 42, "id": 1})
    rpc.get_balance(user_key(5))
    rpc.get_slot()

    first, second = rpc.session.post.call_args_list
    assert first.kwargs["json"]["params"] == [user_key(5)]
    assert second.kwargs["json"]["id"] == 2

def test_rpc_error_response():
    rpc = rpc_with_response(
        {"jsonrpc": "2.0", "error": {"code": -32002, "message": "insufficient funds"}, "id": 1},
        status_code=500
    )
    with pytest.raises(ChainError) as exc_info:
        rpc.send_transaction({"type": "transfer"}, {})

    assert exc_info.value.code == -32002
    assert exc_info.value.method == "sendTransaction"
    assert "Transaction simulation failed" in str(exc_info.value)

def test_rpc_auth_failure():
    rpc = rpc_with_response(status_code=401)
    with pytest.raises(NodeAuthError):
        rpc.get_health()

@pytest.mark.parametrize("error", [
    requests.exceptions.Timeout("slow"),
    requests.exceptions.ConnectionError("refused"),
])
def test_rpc_connection_failure(error):
    rpc = rpc_with_response(error=error)
    with pytest.raises(NodeConnectionError):
        rpc.get_slot()

def test_rpc_invalid_json():
    rpc = rpc_with_response()
    rpc.session.post.return_value.status_code = 200
    rpc.session.post.return_value.json.side_effect = ValueError("not json")
    with pytest.raises(NodeConnectionError):
        rpc.get_slot()

def test_rpc_http_error_without_body():
    rpc = rpc_with_response({"jsonrpc": "2.0", "id": 1}, status_code=502)
    rpc.session.post.return_value.raise_for_status.side_effect = requests.exceptions.HTTPError("502")
    with pytest.raises(NodeConnectionError):
        rpc.get_slot()

def test_rpc_credentials():
    rpc = ChainRPC(url="http://gateway.test", user="relay", password="secret")
    assert rpc.session.auth == ("relay", "secret")

def test_request_ids_unique_across_threads(monkeypatch):
    ids = []
    sessions = set()

    def new_session(self):
        session = MagicMock()
        sessions.add(id(session))

        def post(url, json, timeout):
            ids.append(json["id"])
            response = MagicMock(status_code=200)
            response.json.return_value = {"jsonrpc": "2.0", "result": 1, "id": json["id"]}
            return response

        session.post.side_effect = post
        return session

    monkeypatch.setattr(ChainRPC, "_new_session", new_session)
    rpc = ChainRPC(url="http://gateway.test", user="", password="", timeout=5)
    with ThreadPoolExecutor(max_workers=8) as pool:
        list(pool.map(lambda _: rpc.get_slot(), range(200)))

    assert sorted(ids) == list(range(1, 201))
    assert 1 <= len(sessions) <= 8

# Transaction builders

def test_to_base_units():
    assert to_base_units(Decimal("1.25"), 9) == 1250000000
    assert to_base_units(Decimal("0.0000000005"), 9) == 1
    assert to_base_units(Decimal("0.0000000004"), 9) == 0
    assert to_base_units(Decimal("3"), 0) == 3

@pytest.mark.parametrize("address,valid", [
    (user_key(5), True),
    ("11111111111111111111111111111111", True),
    ("0OIl" + "1" * 40, False),
    ("short", False),
    ("", False),
    (None, False),
])
def test_is_valid_address(address, valid):
    assert is_valid_address(address) is valid

def test_build_native_transfer():
    assert build_native_transfer(user_key(9), user_key(5), 10) == {
        "type": "transfer", "from": user_key(9), "to": user_key(5), "amount": 10
    }
    with pytest.raises(ValueError):
        build_native_transfer(user_key(9), user_key(5), 0)

def test_build_ownership_transfer():
    transaction = build_ownership_transfer(product_pda(11), user_key(5), user_key(9))
    assert transaction["type"] == "transferOwnership"
    assert transaction["product"] == product_pda(11)

# Wallet and confirmation

@pytest.mark.asyncio
async def test_wallet_not_connected():
    with pytest.raises(WalletNotConnectedError):
        await NodeWallet(None, client=FakeChain()).send_transaction({"type": "transfer"})

@pytest.mark.asyncio
async def test_wallet_empty_signature():
    chain = FakeChain()
    chain.send_transaction = lambda transaction, options: ""
    with pytest.raises(TransactionFailedError):
        await NodeWallet(user_key(5), client=chain).send_transaction({"type": "transfer"})

@pytest.mark.parametrize("status,commitment,expected", [
    ({"confirmationStatus": "confirmed", "err": None}, "confirmed", True),
    ({"confirmationStatus": "finalized", "err": None}, "confirmed", True),
    ({"confirmationStatus": "processed", "err": None}, "confirmed", False),
    ({"confirmationStatus": "finalized", "err": {"InstructionError": []}}, "processed", False),
    (None, "processed", False),
])
def test_meets_commitment(status, commitment, expected):
    assert meets_commitment(status, commitment) is expected

@pytest.mark.asyncio
async def test_wait_for_confirmation():
    chain = FakeChain()
    chain.confirm("sig-a", level="finalized")
    status = await wait_for_confirmation(chain, "sig-a", "confirmed", timeout=1, poll_interval=0.01)
    assert status["confirmationStatus"] == "finalized"

@pytest.mark.asyncio
async def test_wait_for_confirmation_timeout():
    chain = FakeChain()
    chain.confirm("sig-a", level="confirmed")
    with pytest.raises(ConfirmationTimeoutError) as exc_info:
        await wait_for_confirmation(chain, "sig-a", "finalized", timeout=0.05, poll_interval=0.01)
    assert exc_info.value.signature == "sig-a"

@pytest.mark.asyncio
async def test_wait_for_confirmation_failed_transaction():
    chain = FakeChain()
    chain.confirm("sig-a", err={"InstructionError": [0, "Custom"]})
    with pytest.raises(TransactionFailedError) as exc_info:
        await wait_for_confirmation(chain, "sig-a", "confirmed", timeout=1, poll_interval=0.01)
    assert not isinstance(exc_info.value, ConfirmationTimeoutError)

@pytest.mark.asyncio
async def test_wait_for_confirmation_retries_connection_errors():
    chain = FakeChain()
    chain.confirm("sig-a")
    polls = []
    original = chain.get_signature_statuses

    def flaky(signatures, options=None):
        polls.append(signatures)
        if len(polls) < 3:
            raise NodeConnectionError("connection reset")
        return original(signatures, options)

    chain.get_signature_statuses = flaky
    status = await wait_for_confirmation(chain, "sig-a", "confirmed", timeout=1, poll_interval=0.01)

    assert status["confirmationStatus"] == "confirmed"
    assert len(polls) == 3

@pytest.mark.asyncio
async def test_wait_for_confirmation_rpc_error():
    chain = FakeChain()

    def broken(signatures, options=None):
        raise ChainError("Invalid params", -32602, "getSignatureStatuses")

    chain.get_signature_statuses = broken
    with pytest.raises(TransactionFailedError):
        await wait_for_confirmation(chain, "sig-a", "confirmed", timeout=1, poll_interval=0.01)

@pytest.mark.asyncio
async def test_wait_for_unknown_commitment():
    with pytest.raises(ValueError):
        await wait_for_confirmation(FakeChain(), "sig-a", "safe", timeout=1, poll_interval=0.01)
