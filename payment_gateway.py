"""Payment gateway HTTP client.

The gateway takes form posts authenticated with a Bearer key; invoice
requests are additionally signed with HMAC-SHA256. Without credentials the
client runs in simulation mode and hands out ``SIMULATION-`` invoices so the
bot can be exercised end to end.
"""

import hashlib
import hmac
import json
import logging
import random
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Protocol

import aiohttp
from pydantic import BaseModel

from data_models import InvoiceResult, utcnow

logger = logging.getLogger(__name__)

SIMULATION_PREFIX = "SIMULATION-"
QR_CHANNEL_KEYWORDS = ("QRIS", "GOPAY", "LINKAJA", "DANA", "OVO", "SHOPEEPAY")

# Naive timestamps from the gateway are Western Indonesia Time.
GATEWAY_TZ = timezone(timedelta(hours=7))


class PaymentGatewayError(Exception):
    """The gateway could not be reached or answered with something unusable."""


class InvoiceRequest(BaseModel):
    merchant_ref: str
    user_id: int
    amount: int
    channel_code: str = "QRIS"
    game: Optional[str] = None
    item: Optional[str] = None
    player_id: Optional[str] = None
    zone_id: Optional[str] = None


class PaymentGatewayPort(Protocol):
    async def create_invoice(self, request: InvoiceRequest) -> InvoiceResult: ...

    async def get_payment_channels(self) -> List[Dict[str, Any]]: ...

    async def check_transaction(self, merchant_ref: str) -> Optional[Dict[str, Any]]: ...

    async def check_transaction_status(self, trx_id: str) -> Optional[Dict[str, Any]]: ...


def is_qr_channel(channel_code: Optional[str]) -> bool:
    code = (channel_code or "").upper()
    return any(keyword in code for keyword in QR_CHANNEL_KEYWORDS)


def parse_gateway_time(value: Any) -> Optional[datetime]:
    """Parse an ISO or ``YYYY-MM-DD HH:MM:SS`` timestamp into an aware datetime."""
    if not value:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
        except ValueError:
            logger.warning(f"Unparseable gateway timestamp: {value!r}")
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=GATEWAY_TZ)
    return parsed.astimezone(timezone.utc)


def compute_callback_signature(api_key: str, raw_body: bytes) -> str:
    return hmac.new(api_key.encode(), raw_body, hashlib.sha256).hexdigest()


class PaymentGatewayClient:
    def __init__(
        self,
        api_id: str,
        api_key: str,
        base_url: str,
        callback_url: Optional[str] = None,
        return_url: Optional[str] = None,
        expiry_hours: int = 24,
        timeout: float = 30.0,
    ):
        self.api_id = (api_id or "").strip()
        self.api_key = (api_key or "").strip()
        self.base_url = base_url.rstrip("/")
        self.callback_url = callback_url
        self.return_url = return_url
        self.expiry_hours = expiry_hours
        self.timeout = timeout

    @property
    def simulated(self) -> bool:
        return not (self.api_id and self.api_key)

    def generate_signature(self, merchant_ref: str, amount: int, method: str) -> str:
        data = f"{self.api_id}{method}{merchant_ref}{amount}"
        return hmac.new(self.api_key.encode(), data.encode(), hashlib.sha256).hexdigest()

    def verify_callback_signature(self, raw_body: bytes, signature: Optional[str]) -> bool:
        """Check ``X-Callback-Signature`` against the raw request body."""
        if not signature or not self.api_key:
            return False
        expected = compute_callback_signature(self.api_key, raw_body)
        return hmac.compare_digest(expected, signature.strip())

    async def _post(self, endpoint: str, form: aiohttp.FormData) -> Dict[str, Any]:
        url = f"{self.base_url}/{endpoint}"
        timeout = aiohttp.ClientTimeout(total=self.timeout)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(
                    url,
                    data=form,
                    headers={"Authorization": f"Bearer {self.api_key}"},
                ) as response:
                    if response.status >= 400:
                        logger.error(f"Gateway {endpoint} answered HTTP {response.status}")
                    text = await response.text()
        except aiohttp.ClientError as e:
            raise PaymentGatewayError(f"{endpoint} request failed: {e}") from e

        if text.strip().startswith("<"):
            raise PaymentGatewayError(f"{endpoint} returned HTML: {text[:100]}")
        try:
            data = json.loads(text)
        except ValueError as e:
            raise PaymentGatewayError(f"{endpoint} returned invalid JSON: {text[:100]}") from e

        logger.debug(f"Gateway {endpoint} response: {str(data)[:500]}")
        if not isinstance(data, dict):
            raise PaymentGatewayError(f"{endpoint} returned unexpected payload: {str(data)[:100]}")
        return data

    def _simulate(self, request: InvoiceRequest) -> InvoiceResult:
        qr = is_qr_channel(request.channel_code)
        logger.warning(f"Gateway credentials missing, simulating invoice {request.merchant_ref}")
        return InvoiceResult(
            success=True,
            merchant_ref=request.merchant_ref,
            trx_id=f"{SIMULATION_PREFIX}{int(time.time() * 1000)}",
            payment_url=f"https://sakurupiah.id/pay/simulation/DEMO-{request.user_id}",
            payment_code=None if qr else f"8800{random.randint(10000000, 99999999)}",
            qr_string="00020101021226590014ID.GO.GOPAY.SIMULATION" if qr else None,
            expiry_date=utcnow() + timedelta(hours=self.expiry_hours),
            amount=request.amount,
        )

    async def create_invoice(self, request: InvoiceRequest) -> InvoiceResult:
        """Ask the gateway for an invoice.

        Returns:
            ``success=False`` with a message when the gateway refused the request.

        Raises:
            PaymentGatewayError: If the gateway could not be reached.
        """
        if self.simulated:
            return self._simulate(request)

        method = request.channel_code or "QRIS"
        amount = str(request.amount)
        user = str(request.user_id).replace(" ", "-")

        form = aiohttp.FormData()
        form.add_field("api_id", self.api_id)
        form.add_field("method", method)
        form.add_field("name", f"Customer {request.user_id}")
        form.add_field("email", f"user{user}@example.com")
        form.add_field("phone", "62899999999")
        form.add_field("amount", amount)
        form.add_field("merchant_fee", "1")
        form.add_field("merchant_ref", request.merchant_ref)
        form.add_field("expired", str(self.expiry_hours))
        form.add_field("signature", self.generate_signature(request.merchant_ref, request.amount, method))
        form.add_field("produk[]", f"{request.game} - {request.item}")
        form.add_field("qty[]", "1")
        form.add_field("harga[]", amount)
        form.add_field("size[]", "Digital")
        zone = f" ({request.zone_id})" if request.zone_id else ""
        form.add_field("note[]", f"User ID: {request.player_id or request.user_id}{zone}")
        if self.callback_url:
            form.add_field("callback_url", self.callback_url)
        if self.return_url:
            form.add_field("return_url", self.return_url)

        logger.info(f"Creating invoice {request.merchant_ref} via {method} for {amount}")
        data = await self._post("create.php", form)

        payload = data.get("data")
        if isinstance(payload, list):
            payload = payload[0] if payload else None
        if str(data.get("status")) != "200" or not isinstance(payload, dict):
            message = data.get("msg") or data.get("message") or "Unknown gateway error"
            logger.warning(f"Gateway refused invoice {request.merchant_ref}: {message}")
            return InvoiceResult(success=False, merchant_ref=request.merchant_ref, message=str(message))

        payment_code = payload.get("payment_no")
        qr_string = payload.get("qr")
        if not payment_code and not qr_string:
            logger.info(f"Invoice {request.merchant_ref} came back without payment code, fetching details")
            try:
                detail = await self.check_transaction(request.merchant_ref)
            except PaymentGatewayError as e:
                logger.warning(f"Detail lookup for {request.merchant_ref} failed: {e}")
                detail = None
            if detail:
                payment_code = detail.get("payment_no") or detail.get("pay_code")
                qr_string = detail.get("qr") or detail.get("qr_string")

        return InvoiceResult(
            success=True,
            merchant_ref=request.merchant_ref,
            trx_id=payload.get("trx_id"),
            payment_url=payload.get("checkout_url"),
            payment_code=str(payment_code) if payment_code else None,
            qr_string=qr_string or None,
            expiry_date=parse_gateway_time(payload.get("expired")) or utcnow() + timedelta(hours=self.expiry_hours),
            amount=request.amount,
        )

    async def get_payment_channels(self) -> List[Dict[str, Any]]:
        if self.simulated:
            return []
        form = aiohttp.FormData()
        form.add_field("api_id", self.api_id)
        form.add_field("method", "list")
        data = await self._post("list-payment.php", form)
        channels = data.get("data")
        return channels if isinstance(channels, list) else []

    async def check_transaction(self, merchant_ref: str) -> Optional[Dict[str, Any]]:
        """Look a transaction up by merchant reference."""
        if self.simulated:
            return None
        form = aiohttp.FormData()
        form.add_field("api_id", self.api_id)
        form.add_field("method", "transaction")
        form.add_field("mechant", "1")
        form.add_field("merchant_ref", merchant_ref)
        data = await self._post("transaction.php", form)

        rows = data.get("data")
        if str(data.get("status")) == "200" and isinstance(rows, list) and rows:
            for row in rows:
                if isinstance(row, dict) and row.get("merchant_ref") == merchant_ref:
                    return row
            return rows[0]
        return None

    async def check_transaction_status(self, trx_id: str) -> Optional[Dict[str, Any]]:
        """Look a transaction's payment status up by gateway id."""
        if trx_id.startswith(SIMULATION_PREFIX):
            return {"status": "200", "payment_status": "pending", "message": "Simulated Transaction"}
        if self.simulated:
            return None
        form = aiohttp.FormData()
        form.add_field("api_id", self.api_id)
        form.add_field("method", "status")
        form.add_field("trx_id", trx_id)
        data = await self._post("status-transaction.php", form)

        rows = data.get("data")
        if str(data.get("status")) == "200" and isinstance(rows, list) and rows:
            return rows[0]
        return data
