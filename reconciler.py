"""Keeps local transactions in step with the payment gateway.

A sync looks the transaction up locally, asks the gateway for its current
state and writes back only what changed. Any status the gateway reports other
than UNPAID replaces the stored one, except that PAID is never overwritten, so
a late payment still lands on a transaction the local sweep already expired.
The move into PAID dispatches fulfilment with the game provider exactly once.
"""

import asyncio
import logging
from typing import Any, Callable, Dict, Optional, Set, Tuple

import db
import messages
from data_models import ReconcileResult, Transaction, TransactionStatus, utcnow
from messaging import MessagingError, MessagingPort
from payment_gateway import SIMULATION_PREFIX, PaymentGatewayPort
from providers import GameProviderService
from scheduler import notify_user, spawn_detached
from ui_persistence import UIPersistence

logger = logging.getLogger(__name__)

_STATUS_MAP = {
    "success": TransactionStatus.PAID,
    "berhasil": TransactionStatus.PAID,
    "paid": TransactionStatus.PAID,
    "expired": TransactionStatus.EXPIRED,
    "kadaluarsa": TransactionStatus.EXPIRED,
    "failed": TransactionStatus.FAILED,
    "gagal": TransactionStatus.FAILED,
}


def map_status(raw: Any) -> TransactionStatus:
    """Translate a gateway status word. Anything unrecognised counts as UNPAID."""
    if not raw:
        return TransactionStatus.UNPAID
    return _STATUS_MAP.get(str(raw).strip().lower(), TransactionStatus.UNPAID)


def calculate_updates(trx: Transaction, response: Dict[str, Any]) -> Dict[str, Any]:
    """Fields of ``trx`` that differ from the gateway's view."""
    updates: Dict[str, Any] = {}

    trx_id = response.get("trx_id")
    if trx_id and trx_id != trx.trx_id:
        updates["trx_id"] = str(trx_id)

    mapped = map_status(response.get("payment_status") or response.get("status"))
    if (
        mapped is not TransactionStatus.UNPAID
        and mapped is not trx.status
        and trx.status is not TransactionStatus.PAID
    ):
        updates["status"] = mapped

    checkout_url = response.get("checkout_url")
    if checkout_url and checkout_url != trx.payment_url:
        updates["payment_url"] = checkout_url

    pay_code = str(response.get("payment_code") or response.get("pay_code") or "")
    if pay_code and pay_code != trx.payment_no:
        updates["payment_no"] = pay_code

    qr_string = response.get("qr_string") or response.get("qr")
    if qr_string and qr_string != trx.qr_string:
        updates["qr_string"] = qr_string

    return updates


class TransactionReconciler:
    def __init__(
        self,
        gateway: PaymentGatewayPort,
        provider: Optional[GameProviderService] = None,
        messenger: Optional[MessagingPort] = None,
        ui: Optional[UIPersistence] = None,
        admin_id: Optional[int] = None,
        timeout: float = 15.0,
        clock: Callable = utcnow,
    ):
        self.gateway = gateway
        self.provider = provider
        self.messenger = messenger
        self.ui = ui
        self.admin_id = admin_id
        self.timeout = timeout
        self._clock = clock
        self._fulfilling: Set[str] = set()

    @staticmethod
    def _lookup(ref: str) -> Optional[Transaction]:
        row = db.get_transaction(ref) or db.get_transaction_by_trx_id(ref)
        return Transaction(**row) if row else None

    async def _fetch_remote(self, trx: Transaction) -> Optional[Dict[str, Any]]:
        if trx.trx_id and not trx.trx_id.startswith(SIMULATION_PREFIX):
            logger.info(f"Syncing {trx.merchant_ref} via gateway id {trx.trx_id}")
            call = self.gateway.check_transaction_status(trx.trx_id)
        else:
            logger.info(f"Syncing {trx.merchant_ref} via merchant ref")
            call = self.gateway.check_transaction(trx.merchant_ref)
        return await asyncio.wait_for(call, timeout=self.timeout)

    async def _reconcile(self, ref: str) -> Tuple[Optional[Transaction], Optional[Transaction]]:
        trx = self._lookup(ref)
        if trx is None:
            return None, None

        try:
            remote = await self._fetch_remote(trx)
        except Exception as e:
            logger.error(f"Gateway sync failed for {trx.merchant_ref}, keeping stored record: {e!r}")
            return trx, trx

        if not remote:
            return trx, trx

        updates = calculate_updates(trx, remote)
        if not updates:
            return trx, trx

        if updates.get("status") is TransactionStatus.PAID:
            updates["paid_at"] = self._clock()

        logger.info(f"Updating {trx.merchant_ref}: {sorted(updates)}")
        stored = {k: (v.value if isinstance(v, TransactionStatus) else v) for k, v in updates.items()}
        if not db.update_transaction(trx.merchant_ref, stored):
            logger.error(f"Could not persist sync result for {trx.merchant_ref}")
            return trx, trx

        fresh = trx.model_copy(update=updates)
        if trx.status is not TransactionStatus.PAID and fresh.status is TransactionStatus.PAID:
            self._on_paid(fresh)
        return trx, fresh

    async def sync(self, ref: str) -> Optional[Transaction]:
        """Refresh a transaction from the gateway.

        Args:
            ref: Merchant reference, or the gateway's transaction id.

        Returns:
            The current transaction, or None when it is unknown locally.
        """
        _, fresh = await self._reconcile(ref)
        return fresh

    async def handle_callback(self, merchant_ref: str) -> ReconcileResult:
        """Sync after a gateway callback and report whether the status moved."""
        old, fresh = await self._reconcile(merchant_ref)
        if fresh is None:
            return ReconcileResult(status_changed=False)
        return ReconcileResult(
            status_changed=old.status is not fresh.status,
            trx=fresh,
            old_status=old.status,
            new_status=fresh.status,
        )

    def _on_paid(self, trx: Transaction) -> None:
        if trx.merchant_ref in self._fulfilling or trx.provider_order_id:
            logger.warning(f"Fulfilment for {trx.merchant_ref} already dispatched, skipping")
            return
        ref = trx.merchant_ref
        self._fulfilling.add(ref)
        task = spawn_detached(self.fulfill(trx), name=f"fulfill-{ref}")
        task.add_done_callback(lambda _: self._fulfilling.discard(ref))
        if self.messenger is not None and self.admin_id:
            spawn_detached(
                notify_user(self.messenger, self.admin_id, messages.admin_paid_notice(trx)),
                name=f"admin-notice-{trx.merchant_ref}",
            )

    async def fulfill(self, trx: Transaction) -> Optional[str]:
        """Place the provider order for a paid transaction.

        Returns:
            The provider's order id, or None when nothing was ordered.
        """
        if self.provider is None or not trx.service_code or not trx.player_id:
            logger.warning(f"Cannot fulfil {trx.merchant_ref}: provider or order data missing")
            return None

        stored = db.get_transaction(trx.merchant_ref)
        if stored and stored.get("provider_order_id"):
            logger.warning(f"{trx.merchant_ref} already fulfilled as {stored['provider_order_id']}, skipping")
            return stored["provider_order_id"]

        order = await self.provider.create_order(trx.service_code, trx.player_id, trx.zone_id, trx.merchant_ref)
        if not order.success or not order.order_id:
            logger.error(f"Provider rejected order for {trx.merchant_ref}: {order.message}")
            if self.messenger is not None and self.admin_id:
                await notify_user(
                    self.messenger,
                    self.admin_id,
                    messages.admin_fulfill_failed(trx, order.message),
                )
            return None

        db.update_transaction(trx.merchant_ref, {"provider_order_id": order.order_id})
        logger.info(f"Fulfilled {trx.merchant_ref} with provider order {order.order_id}")
        return order.order_id

    async def notify_status_change(self, trx: Transaction) -> bool:
        """Tell the user their transaction reached a final status.

        The invoice bubble is updated in place when possible: as a photo
        caption first, then as text. Otherwise the invoice is deleted and the
        notification replaces the chat's bubble.

        Returns:
            True if the user was told, False if there was nothing to say or it failed.
        """
        text = messages.status_notification(trx)
        if text is None or self.messenger is None:
            return False

        chat_id = trx.user_id
        if trx.message_id:
            try:
                await self.messenger.edit_message_caption(chat_id, trx.message_id, text)
                return True
            except MessagingError as e:
                logger.debug(f"Caption edit for {trx.merchant_ref} failed: {e}")
            try:
                await self.messenger.edit_message_text(chat_id, trx.message_id, text)
                return True
            except MessagingError as e:
                logger.warning(f"Text edit for {trx.merchant_ref} failed, sending new message: {e}")

        if self.ui is None:
            if trx.message_id:
                try:
                    await self.messenger.delete_message(chat_id, trx.message_id)
                except MessagingError as e:
                    logger.debug(f"Could not delete invoice of {trx.merchant_ref}: {e}")
            return await notify_user(self.messenger, chat_id, text)

        if trx.message_id != self.ui.sessions.get_last_message_id(chat_id):
            await self.ui.delete_silently(chat_id, trx.message_id)
        try:
            await self.ui.send_or_edit(chat_id, text, force_new=True)
        except MessagingError as e:
            logger.error(f"Cannot notify user {chat_id} about {trx.merchant_ref}: {e}")
            return False
        return True
