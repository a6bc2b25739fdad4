"""Admin-only commands.

Only the user configured as ``ADMIN_ID`` passes :class:`AdminFilter`; for
everyone else these handlers do not match and the update falls through to
the user router.
"""

import logging
from typing import Any, Dict, Union

from aiogram import Router
from aiogram.filters import BaseFilter, Command, CommandObject
from aiogram.types import CallbackQuery, Message

import config
import messages
from payment_service import PaymentService
from reconciler import TransactionReconciler
from sanitizer import clean_merchant_ref

logger = logging.getLogger(__name__)


class AdminFilter(BaseFilter):
    """Filter to check if user is admin."""

    async def __call__(self, event: Union[Message, CallbackQuery]) -> Union[bool, Dict[str, Any]]:
        """Check if the user is the admin."""
        user = event.from_user
        if user is None or not config.ADMIN_ID or user.id != config.ADMIN_ID:
            return False
        return {"admin_id": user.id}


# Create router for admin handlers
admin_router = Router()
admin_router.message.filter(AdminFilter())


@admin_router.message(Command("stats"))
async def cmd_stats(message: Message, payments: PaymentService) -> None:
    """Show transaction counts by status.

    Args:
        message: Incoming message from the admin
        payments: Payment service of this bot
    """
    logger.info(f"Admin {message.from_user.id} requested stats")
    await message.answer(messages.admin_stats(payments.count_by_status()), parse_mode="HTML")


@admin_router.message(Command("sync"))
async def cmd_sync(message: Message, command: CommandObject, reconciler: TransactionReconciler) -> None:
    """Force a gateway sync of one transaction: ``/sync <merchant_ref>``.

    Args:
        message: Incoming message from the admin
        command: Parsed command with its arguments
        reconciler: Transaction reconciler of this bot
    """
    ref = clean_merchant_ref((command.args or "").strip())
    if not ref:
        await message.answer("Gunakan: <code>/sync ORDER-...</code>", parse_mode="HTML")
        return

    logger.info(f"Admin {message.from_user.id} forced sync of {ref}")
    result = await reconciler.handle_callback(ref)
    if result.status_changed and result.trx is not None:
        await reconciler.notify_status_change(result.trx)
    await message.answer(messages.admin_sync_result(result.trx, ref), parse_mode="HTML")
