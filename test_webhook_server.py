"""Tests for the payment callback endpoint."""

import json

import pytest
import pytest_asyncio
from aiohttp import test_utils

import db
from conftest import GATEWAY_KEY, drain_detached
from data_models import Transaction
from payment_gateway import compute_callback_signature
from webhook_server import EVENT_HEADER, PAYMENT_EVENT, SIGNATURE_HEADER, create_app

REF = "ORDER-42-1768478400000-AB12C"
PATH = "/callback/payment"


def store_unpaid():
    trx = Transaction(
        merchant_ref=REF,
        trx_id="TRX1",
        user_id=42,
        game="Mobile Legends",
        item="86 Diamonds",
        player_id="12345678",
        service_code="ML86",
        amount=20140,
        channel="QRIS",
        message_id=321,
    )
    row = trx.model_dump()
    row["status"] = trx.status.value
    db.create_transaction(row)


def signed(payload, event=PAYMENT_EVENT, key=GATEWAY_KEY):
    body = payload if isinstance(payload, bytes) else json.dumps(payload).encode()
    headers = {
        "Content-Type": "application/json",
        SIGNATURE_HEADER: compute_callback_signature(key, body),
        EVENT_HEADER: event,
    }
    return body, headers


@pytest_asyncio.fixture
async def client(gateway, reconciler):
    app = create_app(gateway, reconciler, path=PATH)
    async with test_utils.TestClient(test_utils.TestServer(app)) as client:
        yield client


@pytest.mark.asyncio
async def test_health(client):
    resp = await client.get("/health")
    assert resp.status == 200
    assert await resp.json() == {"ok": True}


@pytest.mark.asyncio
async def test_bad_signature_is_rejected(client, gateway):
    store_unpaid()
    gateway.remote = {"payment_status": "success"}
    body, headers = signed({"merchant_ref": REF}, key="wrong-key")

    resp = await client.post(PATH, data=body, headers=headers)

    assert resp.status == 403
    assert (await resp.json())["success"] is False
    assert gateway.status_calls == []
    assert db.get_transaction(REF)["status"] == "UNPAID"


@pytest.mark.asyncio
async def test_missing_signature_is_rejected(client):
    resp = await client.post(PATH, data=b"{}", headers={EVENT_HEADER: PAYMENT_EVENT})
    assert resp.status == 403


@pytest.mark.asyncio
async def test_unknown_event_is_rejected(client):
    body, headers = signed({"merchant_ref": REF}, event="payout_status")
    resp = await client.post(PATH, data=body, headers=headers)
    assert resp.status == 400


@pytest.mark.parametrize("payload", [b"not json", {"status": "PAID"}, {"merchant_ref": "ORDER/../x"}])
@pytest.mark.asyncio
async def test_unusable_body(client, payload):
    body, headers = signed(payload)
    resp = await client.post(PATH, data=body, headers=headers)
    assert resp.status == 400


@pytest.mark.asyncio
async def test_unknown_transaction_is_acknowledged(client, gateway):
    body, headers = signed({"merchant_ref": "ORDER-1-1-ZZZZZ", "status": "PAID"})

    resp = await client.post(PATH, data=body, headers=headers)

    assert resp.status == 200
    assert await resp.json() == {"success": True, "message": "Trx not found locally"}


@pytest.mark.asyncio
async def test_status_change_updates_and_notifies(client, gateway, messenger):
    store_unpaid()
    gateway.remote = {"payment_status": "success"}
    body, headers = signed({"merchant_ref": REF, "status": "PAID"})

    resp = await client.post(PATH, data=body, headers=headers)
    await drain_detached()

    assert resp.status == 200
    assert (await resp.json())["success"] is True
    assert db.get_transaction(REF)["status"] == "PAID"
    assert any(edit["id"] == 321 for edit in messenger.edits)


@pytest.mark.asyncio
async def test_failed_notification_still_acknowledges(client, gateway, reconciler):
    store_unpaid()
    gateway.remote = {"payment_status": "expired"}

    async def unreachable(trx):
        raise RuntimeError("telegram is down")

    reconciler.notify_status_change = unreachable
    body, headers = signed({"merchant_ref": REF, "status": "EXPIRED"})

    resp = await client.post(PATH, data=body, headers=headers)

    assert resp.status == 200
    assert db.get_transaction(REF)["status"] == "EXPIRED"


@pytest.mark.asyncio
async def test_reconcile_crash_returns_500(client, reconciler):
    async def broken(ref):
        raise RuntimeError("disk I/O error")

    reconciler.handle_callback = broken
    body, headers = signed({"merchant_ref": REF})

    resp = await client.post(PATH, data=body, headers=headers)

    assert resp.status == 500
    assert (await resp.json())["success"] is False
