"""Shared fixtures: a throwaway database and in-memory stand-ins for the
Telegram, payment gateway and game provider APIs."""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Set

import pytest

import db
import scheduler
from catalog import CatalogService
from data_models import InvoiceResult, PlayerValidation
from messaging import EditOutcome, MessagingError
from order_flow import OrderFlow
from payment_gateway import InvoiceRequest, compute_callback_signature
from payment_service import PaymentService
from providers import GameProviderService, ProviderOrder
from rate_limiter import RateLimiter
from reconciler import TransactionReconciler
from session_lock import SessionLock
from session_store import SessionStore
from ui_persistence import UIPersistence

CHAT_ID = 555
ADMIN_ID = 999
GATEWAY_KEY = "callback-secret"

SAMPLE_CATALOG = [
    {
        "code": "mobile-legends",
        "name": "Mobile Legends",
        "category": "MOBA",
        "validation_code": "mobile-legends",
        "products": [
            {"code": "ML172", "name": "172 Diamonds", "price": 40000},
            {"code": "ML86", "name": "86 Diamonds", "price": 20000},
        ],
    },
    {
        "code": "higgs-domino",
        "name": "Higgs Domino",
        "category": "Casual",
        "products": [
            {"code": "HD1M", "name": "1M Koin", "price": 5000},
        ],
    },
]

SAMPLE_CHANNELS = [
    {"code": "QRIS", "name": "QRIS", "method": "QRIS", "fee_type": "percent", "fee_value": 0.7},
    {
        "code": "BRIVA",
        "name": "BRI Virtual Account",
        "method": "Virtual Account",
        "fee_type": "flat",
        "fee_value": 4000,
        "min_amount": 10000,
        "max_amount": 5000000,
        "guide_title": "Cara bayar BRIVA",
        "guide_steps": ["Buka BRImo", "Pilih BRIVA", "Masukkan nomor VA"],
    },
]


async def drain_detached():
    """Wait for fulfilment and admin notices spawned in the background."""
    while scheduler.pending_detached():
        await asyncio.gather(*list(scheduler._detached), return_exceptions=True)


class Clock:
    """Settable clock for code that takes a ``clock`` callable."""

    def __init__(self, now: Optional[datetime] = None):
        self.now = now or datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class Ticker:
    """Monotonic-style float clock for limiters and locks."""

    def __init__(self, start: float = 1000.0):
        self.value = start

    def __call__(self) -> float:
        return self.value

    def advance(self, seconds: float) -> None:
        self.value += seconds


class FakeMessenger:
    """Records every call; individual operations can be told to fail."""

    def __init__(self):
        self.sent: List[Dict[str, Any]] = []
        self.edits: List[Dict[str, Any]] = []
        self.deleted: List[tuple] = []
        self.visible: Set[tuple] = set()
        self.events: List[Dict[str, Any]] = []
        self.fail_edit = False
        self.fail_caption = False
        self.fail_send = False
        self.fail_delete = False
        self._next_id = 100

    def _new_id(self) -> int:
        self._next_id += 1
        return self._next_id

    async def send_message(self, chat_id, text, reply_markup=None, parse_mode="HTML") -> int:
        if self.fail_send:
            raise MessagingError("Forbidden: bot was blocked by the user")
        message_id = self._new_id()
        event = {"kind": "text", "chat_id": chat_id, "text": text, "markup": reply_markup, "id": message_id}
        self.sent.append(event)
        self.events.append(event)
        self.visible.add((chat_id, message_id))
        return message_id

    async def edit_message_text(self, chat_id, message_id, text, reply_markup=None, parse_mode="HTML") -> EditOutcome:
        if self.fail_edit:
            raise MessagingError("Bad Request: message to edit not found")
        event = {"kind": "text", "chat_id": chat_id, "id": message_id, "text": text, "markup": reply_markup}
        self.edits.append(event)
        self.events.append(event)
        return EditOutcome.EDITED

    async def edit_message_caption(self, chat_id, message_id, caption, reply_markup=None, parse_mode="HTML") -> EditOutcome:
        if self.fail_caption:
            raise MessagingError("Bad Request: there is no caption in the message to edit")
        event = {"kind": "caption", "chat_id": chat_id, "id": message_id, "text": caption, "markup": reply_markup}
        self.edits.append(event)
        self.events.append(event)
        return EditOutcome.EDITED

    async def send_photo(self, chat_id, photo, caption=None, reply_markup=None, parse_mode="HTML") -> int:
        if self.fail_send:
            raise MessagingError("Forbidden: bot was blocked by the user")
        message_id = self._new_id()
        event = {
            "kind": "photo", "chat_id": chat_id, "photo": photo, "text": caption, "markup": reply_markup, "id": message_id,
        }
        self.sent.append(event)
        self.events.append(event)
        self.visible.add((chat_id, message_id))
        return message_id

    async def delete_message(self, chat_id, message_id) -> None:
        if self.fail_delete:
            raise MessagingError("Bad Request: message can't be deleted")
        self.deleted.append((chat_id, message_id))
        self.visible.discard((chat_id, message_id))

    async def answer_callback(self, callback_id, text=None, show_alert=False) -> None:
        return None

    @property
    def last_text(self) -> Optional[str]:
        """Text of the most recent send or edit."""
        return self.events[-1]["text"] if self.events else None


class FakeGateway:
    """In-memory payment gateway."""

    def __init__(self):
        self.api_key = GATEWAY_KEY
        self.invoice_result: Optional[InvoiceResult] = None
        self.invoice_error: Optional[Exception] = None
        self.channels: List[Dict[str, Any]] = []
        self.remote: Optional[Dict[str, Any]] = None
        self.remote_error: Optional[Exception] = None
        self.invoice_requests: List[InvoiceRequest] = []
        self.status_calls: List[str] = []
        self.ref_calls: List[str] = []

    async def create_invoice(self, request: InvoiceRequest) -> InvoiceResult:
        self.invoice_requests.append(request)
        if self.invoice_error is not None:
            raise self.invoice_error
        if self.invoice_result is not None:
            return self.invoice_result
        qr = request.channel_code == "QRIS"
        return InvoiceResult(
            success=True,
            merchant_ref=request.merchant_ref,
            trx_id=f"TRX{len(self.invoice_requests)}",
            payment_url="https://pay.example/checkout",
            payment_code=None if qr else "8800123456789",
            qr_string="00020101021226QRDATA" if qr else None,
            expiry_date=datetime(2026, 1, 16, 12, 0, tzinfo=timezone.utc),
            amount=request.amount,
        )

    async def get_payment_channels(self) -> List[Dict[str, Any]]:
        return self.channels

    async def check_transaction(self, merchant_ref: str) -> Optional[Dict[str, Any]]:
        self.ref_calls.append(merchant_ref)
        if self.remote_error is not None:
            raise self.remote_error
        return self.remote

    async def check_transaction_status(self, trx_id: str) -> Optional[Dict[str, Any]]:
        self.status_calls.append(trx_id)
        if self.remote_error is not None:
            raise self.remote_error
        return self.remote

    def verify_callback_signature(self, raw_body: bytes, signature: Optional[str]) -> bool:
        if not signature:
            return False
        return signature == compute_callback_signature(self.api_key, raw_body)


class FakeProviderClient:
    """In-memory game provider API."""

    def __init__(self):
        self.player = PlayerValidation(success=True, nickname="ProPlayer")
        self.player_error: Optional[Exception] = None
        self.order = ProviderOrder(success=True, order_id="VIP-1", status="waiting")
        self.services: List[Dict[str, Any]] = []
        self.lookups: List[tuple] = []
        self.orders: List[tuple] = []

    async def get_player_info(self, validation_code, player_id, zone_id=None) -> PlayerValidation:
        self.lookups.append((validation_code, player_id, zone_id))
        if self.player_error is not None:
            raise self.player_error
        return self.player

    async def order_top_up(self, service_code, player_id, zone_id, merchant_ref) -> ProviderOrder:
        self.orders.append((service_code, player_id, zone_id, merchant_ref))
        return self.order

    async def get_services(self, game_code=None) -> List[Dict[str, Any]]:
        return self.services


@pytest.fixture(autouse=True)
def database(tmp_path):
    """Point the db module at a fresh file for every test."""
    previous = db.DB_URI
    db.configure(str(tmp_path / "storefront-test.db"))
    yield
    db.DB_URI = previous


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def ticker():
    return Ticker()


@pytest.fixture
def messenger():
    return FakeMessenger()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def provider_client():
    return FakeProviderClient()


@pytest.fixture
def provider(provider_client):
    return GameProviderService(provider_client, timeout=1.0)


@pytest.fixture
def sessions(clock):
    return SessionStore(ttl_hours=24, expiry_days=7, clock=clock)


@pytest.fixture
def ui(messenger, sessions):
    return UIPersistence(messenger, sessions)


@pytest.fixture
def catalog():
    service = CatalogService()
    service.import_catalog(SAMPLE_CATALOG)
    return service


@pytest.fixture
def channels():
    for channel in SAMPLE_CHANNELS:
        db.upsert_payment_channel(channel)


@pytest.fixture
def payments(gateway, clock, channels):
    return PaymentService(gateway, timeout=1.0, qr_image_url="https://qr.example/qr", clock=clock)


@pytest.fixture
def reconciler(gateway, provider, messenger, ui, clock):
    return TransactionReconciler(
        gateway, provider=provider, messenger=messenger, ui=ui, admin_id=ADMIN_ID, timeout=1.0, clock=clock,
    )


@pytest.fixture
def nickname_limiter(ticker):
    return RateLimiter(window=120, max_requests=5, name="nickname-check", clock=ticker)


@pytest.fixture
def flow(sessions, ui, catalog, payments, reconciler, ticker, nickname_limiter, provider, clock):
    return OrderFlow(
        sessions,
        ui,
        catalog,
        payments,
        reconciler,
        SessionLock(timeout=30, clock=ticker),
        nickname_limiter,
        provider=provider,
        page_size=10,
        history_limit=5,
        clock=clock,
    )
