"""Payment channels, fees and invoices.

Channels are cached in the local database and refreshed from the gateway
when the cache is empty. Invoices are created through the gateway and
recorded as UNPAID transactions keyed by a locally generated merchant
reference.
"""

import asyncio
import logging
import random
import string
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import quote

import db
from data_models import FeeQuote, OrderSession, PaymentChannel, Transaction, TransactionStatus, utcnow
from payment_gateway import InvoiceRequest, PaymentGatewayError, PaymentGatewayPort, is_qr_channel

logger = logging.getLogger(__name__)

_REF_ALPHABET = string.ascii_uppercase + string.digits


class ChannelNotFoundError(Exception):
    """The requested payment channel is not configured."""


def compute_fee(base_amount: int, fee_type: str, fee_value: float) -> int:
    """Channel fee for ``base_amount``.

    Percent fees are rounded half-up to a whole currency unit.
    """
    if fee_type == "percent":
        fee = Decimal(base_amount) * Decimal(str(fee_value)) / Decimal(100)
        return int(fee.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    return int(fee_value or 0)


def generate_merchant_ref(user_id: Any, now_ms: Optional[int] = None) -> str:
    """``ORDER-<user>-<epoch ms>-<5 chars A-Z0-9>``."""
    user = str(user_id if user_id is not None else "UNKNOWN").replace(" ", "-")
    if now_ms is None:
        now_ms = int(utcnow().timestamp() * 1000)
    suffix = "".join(random.choices(_REF_ALPHABET, k=5))
    return f"ORDER-{user}-{now_ms}-{suffix}"


def channel_from_gateway(raw: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Translate one gateway channel entry into a ``payment_channels`` row."""
    code = raw.get("kode")
    if not code:
        return None

    is_percent = str(raw.get("percent", "")).lower() == "percent"
    try:
        fee_value = float(raw.get("biaya") or 0)
    except (TypeError, ValueError):
        fee_value = 0.0

    def _int(value) -> int:
        try:
            return int(float(value))
        except (TypeError, ValueError):
            return 0

    guide = raw.get("guide") or {}
    steps = []
    if isinstance(guide, dict) and guide.get("payment_guide"):
        steps = [line.strip() for line in str(guide["payment_guide"]).splitlines() if line.strip()]

    status = raw.get("status", True)
    if isinstance(status, str):
        status = status.strip().lower() not in ("0", "nonaktif", "inactive", "off", "false")

    return {
        "code": str(code),
        "name": raw.get("nama") or str(code),
        "method": raw.get("metode") or "Lainnya",
        "fee_type": "percent" if is_percent else "flat",
        "fee_value": fee_value,
        "min_amount": _int(raw.get("minimal")),
        "max_amount": _int(raw.get("maksimal")) or None,
        "status": bool(status),
        "guide_title": guide.get("title") if isinstance(guide, dict) else None,
        "guide_steps": steps,
        "logo": raw.get("logo"),
    }


class PaymentService:
    def __init__(
        self,
        gateway: PaymentGatewayPort,
        timeout: float = 15.0,
        qr_image_url: str = "https://quickchart.io/qr",
        clock: Callable = utcnow,
    ):
        self.gateway = gateway
        self.timeout = timeout
        self.qr_image_url_base = qr_image_url
        self._clock = clock

    async def sync_payment_channels(self) -> int:
        """Refresh the channel cache from the gateway.

        Returns:
            The number of channels written.

        Raises:
            PaymentGatewayError: If the gateway could not be queried.
        """
        try:
            raw_channels = await asyncio.wait_for(self.gateway.get_payment_channels(), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise PaymentGatewayError("Channel list timed out") from e

        written = 0
        for raw in raw_channels:
            row = channel_from_gateway(raw)
            if row and db.upsert_payment_channel(row):
                written += 1
        logger.info(f"Synced {written} payment channels")
        return written

    async def get_payment_channels(self, sync_if_empty: bool = True) -> List[PaymentChannel]:
        rows = db.list_payment_channels(active_only=True)
        if not rows and sync_if_empty:
            logger.info("Payment channel cache empty, syncing from gateway")
            try:
                await self.sync_payment_channels()
            except PaymentGatewayError as e:
                logger.error(f"Payment channel sync failed: {e}")
            rows = db.list_payment_channels(active_only=True)
        return [PaymentChannel(**row) for row in rows]

    def get_channel(self, code: str) -> Optional[PaymentChannel]:
        row = db.get_payment_channel(code)
        if row is None or not row.get("status", True):
            return None
        return PaymentChannel(**row)

    def calculate_final_amount(self, base_amount: int, channel_code: str) -> FeeQuote:
        """Apply the channel's fee to ``base_amount``.

        Raises:
            ChannelNotFoundError: If the channel is unknown or inactive.
        """
        channel = self.get_channel(channel_code)
        if channel is None:
            raise ChannelNotFoundError(f"Payment channel {channel_code} not found")

        fee = compute_fee(base_amount, channel.fee_type, channel.fee_value)
        return FeeQuote(
            base_amount=base_amount,
            fee_amount=fee,
            final_amount=base_amount + fee,
            channel_code=channel.code,
            channel_name=channel.name,
            fee_type=channel.fee_type,
        )

    async def create_invoice(self, user_id: int, session: OrderSession, game_name: Optional[str] = None) -> Transaction:
        """Create a gateway invoice for the session's order and record it as UNPAID.

        Args:
            user_id: Telegram user paying. Also the chat notified later.
            session: A session in the ready-to-pay state.
            game_name: Display name of the game, defaults to the game code.

        Returns:
            The stored transaction.

        Raises:
            PaymentGatewayError: If the gateway failed, timed out or refused.
        """
        merchant_ref = generate_merchant_ref(user_id)
        amount = session.final_amount or session.price or 0
        channel_code = session.channel or "QRIS"

        request = InvoiceRequest(
            merchant_ref=merchant_ref,
            user_id=user_id,
            amount=amount,
            channel_code=channel_code,
            game=game_name or session.game,
            item=session.item,
            player_id=session.game_player_id,
            zone_id=session.zone_id,
        )

        try:
            result = await asyncio.wait_for(self.gateway.create_invoice(request), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise PaymentGatewayError(f"Create invoice {merchant_ref} timed out") from e

        if not result.success:
            raise PaymentGatewayError(result.message or "Gateway refused the invoice")

        trx = Transaction(
            merchant_ref=merchant_ref,
            trx_id=result.trx_id,
            user_id=user_id,
            game=game_name or session.game,
            item=session.item,
            player_id=session.game_player_id,
            zone_id=session.zone_id,
            nickname=session.nickname,
            game_code=session.game,
            service_code=session.service_code,
            amount=amount,
            channel=channel_code,
            status=TransactionStatus.UNPAID,
            payment_url=result.payment_url,
            payment_no=result.payment_code,
            qr_string=result.qr_string,
            expiry_date=result.expiry_date,
            created_at=self._clock(),
        )
        # Timestamps are written by db._dt_to_str so they compare as UTC strings
        row = trx.model_dump()
        row["status"] = trx.status.value
        if not db.create_transaction(row):
            logger.error(f"Invoice {merchant_ref} created at the gateway but could not be stored")
        else:
            logger.info(f"Invoice {merchant_ref} created for user {user_id}: {amount} via {channel_code}")
        return trx

    @staticmethod
    def is_qr_channel(channel_code: Optional[str]) -> bool:
        return is_qr_channel(channel_code)

    def qr_image_url(self, qr_string: str) -> str:
        return f"{self.qr_image_url_base}?text={quote(qr_string, safe='')}&size=300"

    def update_message_id(self, merchant_ref: str, message_id: int) -> None:
        """Remember which message shows the invoice, for later status edits."""
        if not db.update_transaction(merchant_ref, {"message_id": message_id}):
            logger.warning(f"Could not track message {message_id} for {merchant_ref}")

    def get_transaction(self, merchant_ref: str) -> Optional[Transaction]:
        row = db.get_transaction(merchant_ref) or db.get_transaction_by_trx_id(merchant_ref)
        return Transaction(**row) if row else None

    def get_user_history(self, user_id: int, limit: int = 5) -> List[Transaction]:
        return [Transaction(**row) for row in db.list_user_transactions(user_id, limit)]

    def expire_overdue(self) -> int:
        """Mark UNPAID transactions past their expiry date as EXPIRED."""
        expired = db.mark_expired_transactions(self._clock())
        if expired:
            logger.info(f"Marked {expired} overdue transactions as EXPIRED")
        return expired

    def count_by_status(self) -> Dict[str, int]:
        return db.count_transactions_by_status()
