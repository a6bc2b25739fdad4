"""Tests for the SQLite-backed order sessions and derived states."""

import pytest

import db
from conftest import CHAT_ID
from data_models import OrderSession
from states import OrderState, derive_state


def test_save_creates_and_merges(sessions):
    sessions.save(CHAT_ID, game="mobile-legends", item="86 Diamonds", price=20000)
    session = sessions.save(CHAT_ID, game_player_id="12345678")

    assert session.game == "mobile-legends"
    assert session.price == 20000
    assert session.game_player_id == "12345678"
    assert sessions.get(CHAT_ID).game_player_id == "12345678"


def test_unknown_fields_are_rejected(sessions):
    with pytest.raises(ValueError):
        sessions.save(CHAT_ID, favourite_color="blue")
    with pytest.raises(ValueError):
        sessions.save(CHAT_ID, chat_id=1)


def test_clear_keeps_bubble_and_auth(sessions):
    sessions.authenticate(CHAT_ID, 42)
    sessions.set_last_message_id(CHAT_ID, 777)
    sessions.save(CHAT_ID, game="free-fire", item="70 Diamonds", price=10000, id_confirmed=True)

    sessions.clear(CHAT_ID)

    session = sessions.get(CHAT_ID)
    assert session.item is None
    assert session.id_confirmed is False
    assert session.last_msg_id == 777
    assert session.is_authenticated
    assert session.user_id == 42


def test_order_expires_after_ttl(sessions, clock):
    sessions.set_last_message_id(CHAT_ID, 10)
    sessions.save(CHAT_ID, game="free-fire", item="70 Diamonds", price=10000)
    clock.advance(hours=25)

    session = sessions.get(CHAT_ID)
    assert session.item is None
    assert session.last_msg_id == 10
    assert derive_state(session) is OrderState.IDLE


def test_cleanup_expired_removes_idle_sessions(sessions, clock):
    sessions.save(CHAT_ID, game="free-fire")
    clock.advance(hours=2)
    sessions.save(CHAT_ID + 1, game="free-fire")
    clock.advance(hours=23)

    assert sessions.cleanup_expired(24) == 1
    assert sessions.get(CHAT_ID) is None
    assert sessions.get(CHAT_ID + 1) is not None


def test_authentication_expires(sessions, clock):
    assert not sessions.is_authenticated(CHAT_ID)
    sessions.authenticate(CHAT_ID, 42)
    assert sessions.is_authenticated(CHAT_ID)
    clock.advance(days=8)
    assert not sessions.is_authenticated(CHAT_ID)


def test_unreadable_session_is_discarded(sessions, clock):
    db.upsert_session(CHAT_ID, {"id_confirmed": "not-a-bool"}, clock(), None)
    assert sessions.get(CHAT_ID) is None
    assert db.get_session(CHAT_ID) is None


@pytest.mark.parametrize(
    "fields,expected",
    [
        ({}, OrderState.IDLE),
        ({"item": "86 Diamonds"}, OrderState.ITEM_SELECTED),
        ({"item": "86 Diamonds", "game_player_id": "1"}, OrderState.ID_PENDING_CONFIRM),
        ({"item": "86 Diamonds", "game_player_id": "1", "id_confirmed": True}, OrderState.CHANNEL_PENDING),
        (
            {"item": "86 Diamonds", "game_player_id": "1", "id_confirmed": True, "channel": "QRIS"},
            OrderState.CHANNEL_PENDING,
        ),
        (
            {"item": "86 Diamonds", "game_player_id": "1", "id_confirmed": True, "channel": "QRIS", "final_amount": 0},
            OrderState.READY_TO_PAY,
        ),
    ],
)
def test_derive_state(fields, expected):
    assert derive_state(OrderSession(chat_id=CHAT_ID, **fields)) is expected


def test_derive_state_without_session():
    assert derive_state(None) is OrderState.IDLE
