"""End-to-end tests of the purchase funnel against in-memory fakes."""

import json

import pytest
from aiohttp import test_utils

import db
import messages
from conftest import CHAT_ID, GATEWAY_KEY, drain_detached
from data_models import InvoiceResult, PlayerValidation, TransactionStatus
from order_flow import is_system_error
from payment_gateway import PaymentGatewayError, compute_callback_signature
from providers import ProviderError
from states import OrderState
from webhook_server import EVENT_HEADER, PAYMENT_EVENT, SIGNATURE_HEADER, create_app

USER_ID = 42
ML_ID = "12345678 (1234)"


async def reach_channel_pending(flow, product="ML86", player_id=ML_ID):
    await flow.start(CHAT_ID, USER_ID, "Budi")
    await flow.select_product(CHAT_ID, product)
    await flow.handle_text(CHAT_ID, 900, player_id)
    return await flow.confirm_id(CHAT_ID)


async def reach_ready(flow, channel="QRIS", **kwargs):
    await reach_channel_pending(flow, **kwargs)
    return await flow.select_channel(CHAT_ID, channel)


@pytest.mark.asyncio
async def test_start_shows_fresh_menu(flow, messenger, sessions):
    await flow.ui.send_or_edit(CHAT_ID, "old bubble")
    old_id = sessions.get_last_message_id(CHAT_ID)

    state = await flow.start(CHAT_ID, USER_ID, "Budi")

    assert state is OrderState.IDLE
    assert (CHAT_ID, old_id) in messenger.deleted
    assert messenger.last_text == messages.welcome("Budi")
    assert sessions.is_authenticated(CHAT_ID)


@pytest.mark.asyncio
async def test_topup_and_game_pages(flow, messenger):
    await flow.show_topup(CHAT_ID)
    assert "Mobile Legends" in str(messenger.events[-1]["markup"])

    await flow.select_game(CHAT_ID, "mobile-legends")
    markup = str(messenger.events[-1]["markup"])
    assert markup.index("86 Diamonds") < markup.index("172 Diamonds")

    await flow.select_game(CHAT_ID, "unknown-game")
    assert messenger.last_text == messages.GAME_NOT_FOUND


@pytest.mark.asyncio
async def test_unknown_product_keeps_state(flow, messenger):
    state = await flow.select_product(CHAT_ID, "NOPE")
    assert state is OrderState.IDLE
    assert messenger.last_text == messages.PRODUCT_NOT_FOUND


@pytest.mark.asyncio
async def test_select_product(flow, sessions):
    state = await flow.select_product(CHAT_ID, "ML86")

    assert state is OrderState.ITEM_SELECTED
    session = sessions.get(CHAT_ID)
    assert session.price == 20000
    assert session.service_code == "ML86"
    assert session.game == "mobile-legends"


@pytest.mark.asyncio
async def test_text_in_idle_is_ignored(flow, messenger):
    await flow.start(CHAT_ID, USER_ID)
    sent_before = len(messenger.events)

    state = await flow.handle_text(CHAT_ID, 900, "12345678")

    assert state is OrderState.IDLE
    assert len(messenger.events) == sent_before
    assert (CHAT_ID, 900) not in messenger.deleted


@pytest.mark.asyncio
async def test_chatter_is_deleted_silently(flow, messenger):
    await flow.select_product(CHAT_ID, "ML86")
    sent_before = len(messenger.events)

    state = await flow.handle_text(CHAT_ID, 901, "halo")

    assert state is OrderState.ITEM_SELECTED
    assert (CHAT_ID, 901) in messenger.deleted
    assert len(messenger.events) == sent_before


@pytest.mark.asyncio
async def test_bad_format_stays_on_item(flow, messenger, provider_client):
    await flow.select_product(CHAT_ID, "ML86")

    state = await flow.handle_text(CHAT_ID, 902, "1234")

    assert state is OrderState.ITEM_SELECTED
    assert (CHAT_ID, 902) in messenger.deleted
    assert "Format ID Mobile Legends salah" in messenger.last_text
    assert provider_client.lookups == []


@pytest.mark.asyncio
async def test_valid_id_asks_for_confirmation(flow, messenger, sessions, provider_client):
    await flow.select_product(CHAT_ID, "ML86")

    state = await flow.handle_text(CHAT_ID, 903, ML_ID)

    assert state is OrderState.ID_PENDING_CONFIRM
    assert provider_client.lookups == [("mobile-legends", "12345678", "1234")]
    assert "ProPlayer" in messenger.last_text
    session = sessions.get(CHAT_ID)
    assert (session.game_player_id, session.zone_id, session.nickname) == ("12345678", "1234", "ProPlayer")


@pytest.mark.asyncio
async def test_same_id_twice_is_looked_up_once(flow, provider_client):
    await flow.select_product(CHAT_ID, "ML86")
    await flow.handle_text(CHAT_ID, 903, ML_ID)
    state = await flow.handle_text(CHAT_ID, 904, "12345678 1234")

    assert state is OrderState.ID_PENDING_CONFIRM
    assert len(provider_client.lookups) == 1


@pytest.mark.asyncio
async def test_new_id_resets_confirmation(flow, sessions):
    await reach_channel_pending(flow)
    state = await flow.handle_text(CHAT_ID, 905, "87654321 4321")

    assert state is OrderState.ID_PENDING_CONFIRM
    assert sessions.get(CHAT_ID).id_confirmed is False


@pytest.mark.asyncio
async def test_rejected_id(flow, messenger, provider_client):
    provider_client.player = PlayerValidation(success=False, message="ID tidak ditemukan")
    await flow.select_product(CHAT_ID, "ML86")

    state = await flow.handle_text(CHAT_ID, 906, ML_ID)

    assert state is OrderState.ITEM_SELECTED
    assert messenger.last_text == messages.id_not_found("12345678", "1234")


@pytest.mark.asyncio
async def test_provider_outage_is_reported_as_maintenance(flow, messenger, provider_client):
    provider_client.player = PlayerValidation(success=False, message="Your IP is not whitelisted")
    await flow.select_product(CHAT_ID, "ML86")

    state = await flow.handle_text(CHAT_ID, 907, ML_ID)

    assert state is OrderState.ITEM_SELECTED
    assert messenger.last_text == messages.SYSTEM_MAINTENANCE


@pytest.mark.asyncio
async def test_provider_crash_continues_without_nickname(flow, sessions, provider_client):
    provider_client.player_error = ProviderError("connection refused")
    await flow.select_product(CHAT_ID, "ML86")

    state = await flow.handle_text(CHAT_ID, 908, ML_ID)

    assert state is OrderState.ID_PENDING_CONFIRM
    assert sessions.get(CHAT_ID).nickname is None


@pytest.mark.asyncio
async def test_nickname_lookup_quota(flow, messenger, provider_client):
    await flow.select_product(CHAT_ID, "ML86")
    for n in range(5):
        await flow.handle_text(CHAT_ID, 910 + n, f"1234567{n} 1234")
    assert len(provider_client.lookups) == 5

    state = await flow.handle_text(CHAT_ID, 920, "99999999 1234")

    assert state is OrderState.ID_PENDING_CONFIRM
    assert messenger.last_text == messages.NICKNAME_LIMIT
    assert len(provider_client.lookups) == 5


@pytest.mark.asyncio
async def test_games_without_validator_skip_lookup(flow, provider_client):
    await flow.select_product(CHAT_ID, "HD1M")
    state = await flow.handle_text(CHAT_ID, 930, "123456789")

    assert state is OrderState.ID_PENDING_CONFIRM
    assert provider_client.lookups == []


@pytest.mark.asyncio
async def test_confirm_without_id_means_expired(flow, messenger):
    await flow.select_product(CHAT_ID, "ML86")
    state = await flow.confirm_id(CHAT_ID)

    assert state is OrderState.ITEM_SELECTED
    assert messenger.last_text == messages.SESSION_EXPIRED


@pytest.mark.asyncio
async def test_confirm_is_idempotent(flow):
    assert await reach_channel_pending(flow) is OrderState.CHANNEL_PENDING
    assert await flow.confirm_id(CHAT_ID) is OrderState.CHANNEL_PENDING


@pytest.mark.asyncio
async def test_channel_list_requires_confirmed_order(flow, messenger):
    await flow.start(CHAT_ID, USER_ID)
    await flow.show_channels(CHAT_ID, "pay")
    assert messenger.last_text == messages.SESSION_EXPIRED

    await flow.show_channels(CHAT_ID, "info")
    assert messenger.last_text == messages.PAYMENT_CHANNELS_INFO


@pytest.mark.asyncio
async def test_select_channel_computes_fee(flow, sessions):
    state = await reach_ready(flow, "QRIS")

    assert state is OrderState.READY_TO_PAY
    session = sessions.get(CHAT_ID)
    assert (session.amount, session.fee_amount, session.final_amount) == (20000, 140, 20140)


@pytest.mark.asyncio
async def test_unknown_channel(flow, messenger):
    await reach_channel_pending(flow)
    state = await flow.select_channel(CHAT_ID, "OVO")

    assert state is OrderState.CHANNEL_PENDING
    assert messenger.last_text == messages.CHANNEL_NOT_FOUND


@pytest.mark.asyncio
async def test_channel_minimum_amount(flow, messenger):
    await reach_channel_pending(flow, product="HD1M", player_id="123456789")
    state = await flow.select_channel(CHAT_ID, "BRIVA")

    assert state is OrderState.CHANNEL_PENDING
    assert messenger.last_text == messages.PAYMENT_ERROR


@pytest.mark.asyncio
async def test_qr_checkout(flow, messenger, sessions, payments, gateway):
    await reach_ready(flow, "QRIS")

    state = await flow.process_payment(CHAT_ID, USER_ID)

    assert state is OrderState.IDLE
    assert sessions.get(CHAT_ID).item is None
    photo = messenger.sent[-1]
    assert photo["kind"] == "photo"
    assert photo["photo"].startswith("https://qr.example/qr?text=")

    trx = payments.get_user_history(USER_ID)[0]
    assert trx.amount == 20140
    assert trx.message_id == photo["id"]
    assert trx.nickname == "ProPlayer"
    assert gateway.invoice_requests[0].game == "Mobile Legends"


@pytest.mark.asyncio
async def test_virtual_account_checkout(flow, messenger, payments):
    await reach_ready(flow, "BRIVA")

    await flow.process_payment(CHAT_ID, USER_ID)

    trx = payments.get_user_history(USER_ID)[0]
    assert trx.amount == 24000
    assert "8800123456789" in messenger.last_text
    assert messenger.events[-1]["kind"] == "text"


@pytest.mark.asyncio
async def test_gateway_failure_keeps_order(flow, messenger, gateway, payments):
    gateway.invoice_error = PaymentGatewayError("HTTP 502")
    await reach_ready(flow)

    state = await flow.process_payment(CHAT_ID, USER_ID)

    assert state is OrderState.READY_TO_PAY
    assert messenger.last_text == messages.PAYMENT_ERROR
    assert payments.get_user_history(USER_ID) == []


@pytest.mark.asyncio
async def test_refused_invoice_keeps_order(flow, gateway):
    gateway.invoice_result = InvoiceResult(success=False, message="Amount too low")
    await reach_ready(flow)
    assert await flow.process_payment(CHAT_ID, USER_ID) is OrderState.READY_TO_PAY


@pytest.mark.asyncio
async def test_second_payment_tap_after_invoice_is_ignored(flow, messenger, gateway):
    await reach_ready(flow)
    await flow.process_payment(CHAT_ID, USER_ID)
    events_before = len(messenger.events)

    state = await flow.process_payment(CHAT_ID, USER_ID)

    assert state is OrderState.IDLE
    assert len(gateway.invoice_requests) == 1
    assert len(messenger.events) == events_before


@pytest.mark.asyncio
async def test_locked_chat_drops_payment(flow, gateway):
    await reach_ready(flow)
    flow.lock.acquire(CHAT_ID)

    state = await flow.process_payment(CHAT_ID, USER_ID)

    assert state is OrderState.READY_TO_PAY
    assert gateway.invoice_requests == []


@pytest.mark.asyncio
async def test_payment_before_channel_shows_channels(flow, messenger, gateway):
    await reach_channel_pending(flow)
    state = await flow.process_payment(CHAT_ID, USER_ID)

    assert state is OrderState.CHANNEL_PENDING
    assert messenger.last_text == messages.PAYMENT_METHOD_SELECTION
    assert gateway.invoice_requests == []


@pytest.mark.asyncio
async def test_cancel_paths(flow, messenger):
    await reach_ready(flow)
    assert await flow.handle_text(CHAT_ID, 940, "batal") is OrderState.IDLE
    assert messenger.last_text == messages.ORDER_CANCELLED

    await flow.select_product(CHAT_ID, "ML86")
    assert await flow.handle_text(CHAT_ID, 941, "/whatever") is OrderState.IDLE
    assert messenger.last_text == messages.welcome(None)


@pytest.mark.asyncio
async def test_check_transaction(flow, messenger, gateway):
    await reach_ready(flow)
    await flow.process_payment(CHAT_ID, USER_ID)
    ref = gateway.invoice_requests[0].merchant_ref
    gateway.remote = {"payment_status": "success"}

    await flow.check_transaction(CHAT_ID, ref)
    await drain_detached()

    assert ref in messenger.last_text
    assert db.get_transaction(ref)["status"] == "PAID"

    await flow.check_transaction(CHAT_ID, "bad ref!")
    assert messenger.last_text == messages.TRX_NOT_FOUND
    await flow.check_transaction(CHAT_ID, "ORDER-0-0-XXXXX")
    assert messenger.last_text == messages.TRX_NOT_FOUND


@pytest.mark.asyncio
async def test_reprint(flow, messenger, gateway, payments):
    await reach_ready(flow, "BRIVA")
    await flow.process_payment(CHAT_ID, USER_ID)
    ref = gateway.invoice_requests[0].merchant_ref

    await flow.show_main_menu(CHAT_ID)
    await flow.reprint(CHAT_ID, ref)
    assert "8800123456789" in messenger.last_text

    db.update_transaction(ref, {"status": TransactionStatus.PAID.value})
    await flow.reprint(CHAT_ID, ref)
    assert "Pembayaran telah diterima" in messenger.last_text


@pytest.mark.asyncio
async def test_history(flow, messenger):
    await flow.show_history(CHAT_ID, USER_ID)
    assert messenger.last_text == messages.HISTORY_EMPTY

    await reach_ready(flow)
    await flow.process_payment(CHAT_ID, USER_ID)
    await flow.show_history(CHAT_ID, USER_ID)
    assert "86 Diamonds" in messenger.last_text


@pytest.mark.asyncio
async def test_close_deletes_bubble(flow, messenger, sessions):
    await flow.start(CHAT_ID, USER_ID)
    bubble = sessions.get_last_message_id(CHAT_ID)

    await flow.close(CHAT_ID)

    assert (CHAT_ID, bubble) in messenger.deleted
    assert sessions.get_last_message_id(CHAT_ID) is None


@pytest.mark.parametrize(
    "message,expected",
    [
        ("Server sedang maintenance", True),
        ("Saldo tidak cukup", True),
        ("Invalid Signature", True),
        ("IP 1.2.3.4 not allowed", True),
        ("ID tidak ditemukan", False),
        ("Player zip code invalid", False),
        (None, False),
    ],
)
def test_is_system_error(message, expected):
    assert is_system_error(message) is expected


@pytest.mark.asyncio
async def test_purchase_from_start_to_fulfilment(
    flow, sessions, payments, gateway, reconciler, provider_client, messenger
):
    provider_client.player = PlayerValidation(success=True, nickname="Player1")

    assert await flow.start(CHAT_ID, USER_ID, "Budi") is OrderState.IDLE
    await flow.select_game(CHAT_ID, "mobile-legends")
    assert await flow.select_product(CHAT_ID, "ML86") is OrderState.ITEM_SELECTED
    assert sessions.get(CHAT_ID).item == "86 Diamonds"
    assert await flow.handle_text(CHAT_ID, 900, "812345678 1234") is OrderState.ID_PENDING_CONFIRM
    assert "Player1" in messenger.last_text
    assert await flow.confirm_id(CHAT_ID) is OrderState.CHANNEL_PENDING
    assert await flow.select_channel(CHAT_ID, "QRIS") is OrderState.READY_TO_PAY
    assert sessions.get(CHAT_ID).final_amount == 20140
    assert await flow.process_payment(CHAT_ID, USER_ID) is OrderState.IDLE

    trx = payments.get_user_history(USER_ID)[0]
    assert trx.status is TransactionStatus.UNPAID
    assert sessions.get(CHAT_ID).item is None

    results = []
    handle_callback = reconciler.handle_callback

    async def recording(ref):
        result = await handle_callback(ref)
        results.append(result)
        return result

    reconciler.handle_callback = recording
    gateway.remote = {"payment_status": "success"}
    body = json.dumps({"merchant_ref": trx.merchant_ref, "status": "PAID"}).encode()
    headers = {
        SIGNATURE_HEADER: compute_callback_signature(GATEWAY_KEY, body),
        EVENT_HEADER: PAYMENT_EVENT,
    }

    app = create_app(gateway, reconciler)
    async with test_utils.TestClient(test_utils.TestServer(app)) as client:
        first = await client.post("/callback/payment", data=body, headers=headers)
        await drain_detached()
        second = await client.post("/callback/payment", data=body, headers=headers)
        await drain_detached()

    assert first.status == second.status == 200
    assert [r.status_changed for r in results] == [True, False]
    assert results[0].new_status is TransactionStatus.PAID
    assert db.get_transaction(trx.merchant_ref)["status"] == "PAID"
    assert provider_client.orders == [("ML86", "812345678", "1234", trx.merchant_ref)]
