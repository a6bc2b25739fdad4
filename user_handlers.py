"""User-facing command, text and button handlers for the Telegram bot.

Handlers only translate aiogram updates into :class:`order_flow.OrderFlow`
calls. The flow, the callback router and the rate limiters are injected
through the dispatcher's workflow data (see ``main.build_services``).
"""

import logging

from aiogram import F, Router
from aiogram.exceptions import TelegramAPIError
from aiogram.filters import Command, CommandStart
from aiogram.types import CallbackQuery, Message

import messages
from callback_router import CallbackRouter
from order_flow import OrderFlow
from rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

# Create router for user handlers
user_router = Router()


async def _throttled_message(message: Message, flow: OrderFlow, interaction_limiter: RateLimiter, notice_limiter: RateLimiter) -> bool:
    """Check the interaction cooldown for a message.

    Returns:
        True if the message must be dropped.
    """
    chat_id = message.chat.id
    if interaction_limiter.can_request(chat_id):
        return False

    logger.debug(f"Throttled message from chat {chat_id}")
    await flow.ui.delete_silently(chat_id, message.message_id)
    if notice_limiter.can_request(chat_id):
        await flow.show_rate_limited(chat_id)
    return True


async def _run_safely(chat_id: int, what: str, flow: OrderFlow, coro) -> None:
    """Await a flow operation; any failure is logged and shown as a generic error."""
    try:
        await coro
    except Exception:
        logger.exception(f"Handling {what} failed in chat {chat_id}")
        try:
            await flow.show_error(chat_id)
        except Exception:
            logger.exception(f"Could not render error for chat {chat_id}")


@user_router.message(CommandStart())
async def cmd_start(
    message: Message,
    flow: OrderFlow,
    interaction_limiter: RateLimiter,
    notice_limiter: RateLimiter,
) -> None:
    """Handle /start command - reset the order and show the main menu.

    Args:
        message: Incoming message object
        flow: Order flow of this bot
        interaction_limiter: General per-chat cooldown
        notice_limiter: Cooldown for the "too fast" notice
    """
    user = message.from_user
    chat_id = message.chat.id
    logger.info(f"User {user.id} (@{user.username or 'Unknown'}) started the bot in chat {chat_id}")

    if await _throttled_message(message, flow, interaction_limiter, notice_limiter):
        return

    await flow.ui.delete_silently(chat_id, message.message_id)
    await _run_safely(chat_id, "/start", flow, flow.start(chat_id, user.id, user.first_name))


@user_router.message(Command("help"))
async def cmd_help(message: Message, flow: OrderFlow, interaction_limiter: RateLimiter, notice_limiter: RateLimiter) -> None:
    chat_id = message.chat.id
    if await _throttled_message(message, flow, interaction_limiter, notice_limiter):
        return
    await flow.ui.delete_silently(chat_id, message.message_id)
    await _run_safely(chat_id, "/help", flow, flow.show_help(chat_id))


@user_router.message(Command("history"))
async def cmd_history(message: Message, flow: OrderFlow, interaction_limiter: RateLimiter, notice_limiter: RateLimiter) -> None:
    chat_id = message.chat.id
    if await _throttled_message(message, flow, interaction_limiter, notice_limiter):
        return
    await flow.ui.delete_silently(chat_id, message.message_id)
    await _run_safely(chat_id, "/history", flow, flow.show_history(chat_id, message.from_user.id))


@user_router.message(Command("cancel"))
async def cmd_cancel(message: Message, flow: OrderFlow, interaction_limiter: RateLimiter, notice_limiter: RateLimiter) -> None:
    chat_id = message.chat.id
    if await _throttled_message(message, flow, interaction_limiter, notice_limiter):
        return
    await flow.ui.delete_silently(chat_id, message.message_id)
    logger.info(f"Chat {chat_id} cancelled via /cancel")
    await _run_safely(chat_id, "/cancel", flow, flow.cancel(chat_id))


@user_router.message(F.text)
async def handle_text(message: Message, flow: OrderFlow, interaction_limiter: RateLimiter, notice_limiter: RateLimiter) -> None:
    """Free text: player IDs, exit keywords and everything users type by accident.

    Args:
        message: Incoming text message
        flow: Order flow of this bot
        interaction_limiter: General per-chat cooldown
        notice_limiter: Cooldown for the "too fast" notice
    """
    chat_id = message.chat.id
    if await _throttled_message(message, flow, interaction_limiter, notice_limiter):
        return
    await _run_safely(chat_id, "text", flow, flow.handle_text(chat_id, message.message_id, message.text))


@user_router.callback_query()
async def handle_callback(
    callback_query: CallbackQuery,
    flow: OrderFlow,
    callbacks: CallbackRouter,
    interaction_limiter: RateLimiter,
) -> None:
    """Route every inline button press through :class:`CallbackRouter`.

    Args:
        callback_query: Incoming callback query
        flow: Order flow of this bot
        callbacks: Callback router bound to the flow
        interaction_limiter: General per-chat cooldown
    """
    if callback_query.message is None:
        await callback_query.answer()
        return

    chat_id = callback_query.message.chat.id
    if not interaction_limiter.can_request(chat_id):
        await callback_query.answer(messages.RATE_LIMIT_TOAST)
        return

    response = await callbacks.route(
        chat_id,
        callback_query.data,
        message_id=callback_query.message.message_id,
        user_id=callback_query.from_user.id,
    )
    try:
        await callback_query.answer(response.toast, show_alert=response.show_alert)
    except TelegramAPIError as e:
        # Callback queries expire after a while; a late answer is harmless.
        logger.debug(f"Could not answer callback in chat {chat_id}: {e}")
