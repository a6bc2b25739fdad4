"""Data models and callback data patterns for the top-up storefront.

This module defines Pydantic models for sessions, transactions, catalog and
payment data, as well as callback data patterns for inline keyboard buttons
using aiogram 3.x.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import List, Literal, Optional

from aiogram.filters.callback_data import CallbackData
from pydantic import BaseModel, Field, field_validator

SESSION_SCHEMA_VERSION = 1


def utcnow() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


class TransactionStatus(str, Enum):
    """Enumeration of payment transaction statuses."""

    UNPAID = "UNPAID"
    PAID = "PAID"
    FAILED = "FAILED"
    EXPIRED = "EXPIRED"


class OrderSession(BaseModel):
    """The in-progress order for a single chat.

    Attributes:
        chat_id: Telegram chat the session belongs to.
        game: Catalog code of the selected game.
        item: Display name of the selected product.
        price: Base price in the smallest currency unit.
        service_code: Catalog code of the selected product.
        game_player_id: Player ID, set only after local format validation.
        zone_id: Optional server/zone part of the player ID.
        nickname: Set only after a successful remote validation.
        id_confirmed: True once the user accepted the player ID.
        channel: Selected payment channel code.
        amount: Base amount the fee was computed from.
        final_amount: Amount the user pays, fee included.
        fee_amount: Channel fee.
        last_msg_id: The single bot message rendered in this chat.
        user_id: Telegram user that owns the session.
        is_authenticated: Whether the user passed /start.
        last_activity: Last time the order was touched.
        expires_at: Expiry of the session record itself.
        updated_at: Last write timestamp.
        schema_version: Layout version of this record.
    """

    chat_id: int
    game: Optional[str] = None
    item: Optional[str] = None
    price: Optional[int] = None
    service_code: Optional[str] = None
    game_player_id: Optional[str] = None
    zone_id: Optional[str] = None
    nickname: Optional[str] = None
    id_confirmed: bool = False
    channel: Optional[str] = None
    amount: Optional[int] = None
    final_amount: Optional[int] = None
    fee_amount: Optional[int] = None
    last_msg_id: Optional[int] = None
    user_id: Optional[int] = None
    is_authenticated: bool = False
    last_activity: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    schema_version: int = SESSION_SCHEMA_VERSION

    @property
    def has_order(self) -> bool:
        return bool(self.item)


# Fields that make up the order itself. Clearing a session resets exactly these.
ORDER_FIELDS = (
    "game",
    "item",
    "price",
    "service_code",
    "game_player_id",
    "zone_id",
    "nickname",
    "id_confirmed",
    "channel",
    "amount",
    "final_amount",
    "fee_amount",
)


class Transaction(BaseModel):
    """A single payment attempt, keyed by its merchant reference."""

    merchant_ref: str = Field(..., description="Locally generated unique reference")
    trx_id: Optional[str] = Field(None, description="Gateway assigned id")
    user_id: int
    game: Optional[str] = None
    item: Optional[str] = None
    player_id: Optional[str] = None
    zone_id: Optional[str] = None
    nickname: Optional[str] = None
    game_code: Optional[str] = None
    service_code: Optional[str] = None
    amount: int = Field(..., ge=0)
    channel: Optional[str] = None
    status: TransactionStatus = TransactionStatus.UNPAID
    payment_url: Optional[str] = None
    payment_no: Optional[str] = None
    qr_string: Optional[str] = None
    message_id: Optional[int] = None
    provider_order_id: Optional[str] = None
    expiry_date: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)

    @field_validator("status", mode="before")
    @classmethod
    def normalize_status(cls, v):
        """Accept lower-case status values coming from storage."""
        if isinstance(v, str):
            return v.upper()
        return v


class GameInfo(BaseModel):
    """A game as shown in the top-up menu."""

    code: str
    name: str
    category: str = "Game"
    validation_code: Optional[str] = None
    status: bool = True

    @property
    def is_verified(self) -> bool:
        return bool(self.validation_code)


class GameProduct(BaseModel):
    """A purchasable product (denomination) of a game."""

    code: str
    game_code: str
    name: str
    price: int = Field(..., ge=0)
    description: Optional[str] = None
    status: bool = True


class PaymentChannel(BaseModel):
    """A payment method offered by the gateway."""

    code: str
    name: str
    method: str = "Lainnya"
    fee_type: Literal["flat", "percent"] = "flat"
    fee_value: float = 0
    min_amount: int = 0
    max_amount: Optional[int] = None
    status: bool = True
    guide_title: Optional[str] = None
    guide_steps: List[str] = Field(default_factory=list)
    logo: Optional[str] = None

    @property
    def fee_label(self) -> str:
        if self.fee_type == "percent":
            return f"{self.fee_value:g}%"
        return f"Rp {int(self.fee_value):,}".replace(",", ".")


class FeeQuote(BaseModel):
    """Result of applying a channel fee to a base amount."""

    base_amount: int
    fee_amount: int
    final_amount: int
    channel_code: str
    channel_name: str
    fee_type: Literal["flat", "percent"]


class InvoiceResult(BaseModel):
    """Outcome of asking the gateway for an invoice."""

    success: bool
    merchant_ref: Optional[str] = None
    trx_id: Optional[str] = None
    payment_url: Optional[str] = None
    payment_code: Optional[str] = None
    qr_string: Optional[str] = None
    expiry_date: Optional[datetime] = None
    amount: Optional[int] = None
    message: Optional[str] = None


class PlayerValidation(BaseModel):
    """Answer of the remote player-id validator."""

    success: bool
    nickname: Optional[str] = None
    message: Optional[str] = None


class ReconcileResult(BaseModel):
    """Before/after view of a transaction around a gateway sync."""

    status_changed: bool
    trx: Optional[Transaction] = None
    old_status: Optional[TransactionStatus] = None
    new_status: Optional[TransactionStatus] = None


class MenuCallback(CallbackData, prefix="menu"):
    """Callback data for menu navigation buttons.

    Example callback data strings:
        - menu:main:1
        - menu:topup:2
        - menu:history:1
    """

    view: Literal["main", "topup", "history", "payinfo", "contact", "help"]
    page: int = 1


class GameCallback(CallbackData, prefix="game"):
    """Callback data for game selection and product list paging.

    Example callback data strings:
        - game:mobile-legends:1
    """

    code: str
    page: int = 1


class ProductCallback(CallbackData, prefix="prod"):
    """Callback data for product selection.

    Example callback data strings:
        - prod:ML86
    """

    code: str


class ActionCallback(CallbackData, prefix="act"):
    """Callback data for order and transaction actions.

    Example callback data strings:
        - act:confirm_id:
        - act:process_payment:
        - act:check:ORDER-123-1700000000000-AB12C
    """

    action: Literal[
        "cancel",
        "confirm_id",
        "choose_channel",
        "process_payment",
        "check",
        "reprint",
        "close",
        "noop",
    ]
    ref: Optional[str] = None


class ChannelCallback(CallbackData, prefix="chan"):
    """Callback data for payment channel buttons.

    ``pay`` selects the channel for the current order, ``info`` only shows
    its payment guide.

    Example callback data strings:
        - chan:pay:QRIS
        - chan:info:BRIVA
    """

    mode: Literal["pay", "info"]
    code: str
