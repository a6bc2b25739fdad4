"""Messaging port and its aiogram adapter.

Everything above this module talks to Telegram through :class:`MessagingPort`.
An edit that would not change the message is reported as
:attr:`EditOutcome.UNCHANGED` instead of an error, so callers never have to
look at API error texts.
"""

import asyncio
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Protocol

from aiogram import Bot
from aiogram.exceptions import TelegramAPIError, TelegramBadRequest, TelegramRetryAfter
from aiogram.types import InlineKeyboardMarkup

logger = logging.getLogger(__name__)


class EditOutcome(str, Enum):
    EDITED = "edited"
    UNCHANGED = "unchanged"


class MessagingError(Exception):
    """A messaging call failed for a reason other than an unchanged edit."""


class MessagingPort(Protocol):
    async def send_message(
        self,
        chat_id: int,
        text: str,
        reply_markup: Optional[InlineKeyboardMarkup] = None,
        parse_mode: Optional[str] = "HTML",
    ) -> int: ...

    async def edit_message_text(
        self,
        chat_id: int,
        message_id: int,
        text: str,
        reply_markup: Optional[InlineKeyboardMarkup] = None,
        parse_mode: Optional[str] = "HTML",
    ) -> EditOutcome: ...

    async def edit_message_caption(
        self,
        chat_id: int,
        message_id: int,
        caption: str,
        reply_markup: Optional[InlineKeyboardMarkup] = None,
        parse_mode: Optional[str] = "HTML",
    ) -> EditOutcome: ...

    async def send_photo(
        self,
        chat_id: int,
        photo: str,
        caption: Optional[str] = None,
        reply_markup: Optional[InlineKeyboardMarkup] = None,
        parse_mode: Optional[str] = "HTML",
    ) -> int: ...

    async def delete_message(self, chat_id: int, message_id: int) -> None: ...

    async def answer_callback(
        self,
        callback_id: str,
        text: Optional[str] = None,
        show_alert: bool = False,
    ) -> None: ...


def _is_not_modified(error: TelegramBadRequest) -> bool:
    return "message is not modified" in str(error).lower()


class AiogramMessenger:
    """:class:`MessagingPort` implementation on top of an aiogram ``Bot``."""

    def __init__(self, bot: Bot, retries: int = 3):
        self.bot = bot
        self.retries = retries

    async def _call(self, what: str, chat_id: Any, fn: Callable[[], Awaitable[Any]]) -> Any:
        for attempt in range(self.retries):
            try:
                return await fn()
            except TelegramRetryAfter as e:
                wait_time = e.retry_after
                logger.warning(f"Rate limited on {what} for chat {chat_id}. Waiting {wait_time}s.")
                await asyncio.sleep(wait_time)
        raise MessagingError(f"{what} for chat {chat_id} still rate limited after {self.retries} attempts")

    async def send_message(self, chat_id, text, reply_markup=None, parse_mode="HTML") -> int:
        try:
            message = await self._call(
                "send_message",
                chat_id,
                lambda: self.bot.send_message(
                    chat_id=chat_id,
                    text=text,
                    reply_markup=reply_markup,
                    parse_mode=parse_mode,
                ),
            )
        except TelegramAPIError as e:
            raise MessagingError(f"send_message failed for chat {chat_id}: {e}") from e
        return message.message_id

    async def edit_message_text(self, chat_id, message_id, text, reply_markup=None, parse_mode="HTML") -> EditOutcome:
        try:
            await self._call(
                "edit_message_text",
                chat_id,
                lambda: self.bot.edit_message_text(
                    chat_id=chat_id,
                    message_id=message_id,
                    text=text,
                    reply_markup=reply_markup,
                    parse_mode=parse_mode,
                ),
            )
        except TelegramBadRequest as e:
            if _is_not_modified(e):
                return EditOutcome.UNCHANGED
            raise MessagingError(f"edit_message_text failed for chat {chat_id}: {e}") from e
        except TelegramAPIError as e:
            raise MessagingError(f"edit_message_text failed for chat {chat_id}: {e}") from e
        return EditOutcome.EDITED

    async def edit_message_caption(self, chat_id, message_id, caption, reply_markup=None, parse_mode="HTML") -> EditOutcome:
        try:
            await self._call(
                "edit_message_caption",
                chat_id,
                lambda: self.bot.edit_message_caption(
                    chat_id=chat_id,
                    message_id=message_id,
                    caption=caption,
                    reply_markup=reply_markup,
                    parse_mode=parse_mode,
                ),
            )
        except TelegramBadRequest as e:
            if _is_not_modified(e):
                return EditOutcome.UNCHANGED
            raise MessagingError(f"edit_message_caption failed for chat {chat_id}: {e}") from e
        except TelegramAPIError as e:
            raise MessagingError(f"edit_message_caption failed for chat {chat_id}: {e}") from e
        return EditOutcome.EDITED

    async def send_photo(self, chat_id, photo, caption=None, reply_markup=None, parse_mode="HTML") -> int:
        try:
            message = await self._call(
                "send_photo",
                chat_id,
                lambda: self.bot.send_photo(
                    chat_id=chat_id,
                    photo=photo,
                    caption=caption,
                    reply_markup=reply_markup,
                    parse_mode=parse_mode,
                ),
            )
        except TelegramAPIError as e:
            raise MessagingError(f"send_photo failed for chat {chat_id}: {e}") from e
        return message.message_id

    async def delete_message(self, chat_id, message_id) -> None:
        try:
            await self.bot.delete_message(chat_id=chat_id, message_id=message_id)
        except TelegramAPIError as e:
            raise MessagingError(f"delete_message failed for chat {chat_id}: {e}") from e

    async def answer_callback(self, callback_id, text=None, show_alert=False) -> None:
        try:
            await self.bot.answer_callback_query(callback_query_id=callback_id, text=text, show_alert=show_alert)
        except TelegramAPIError as e:
            # Callback queries expire after a while; a late answer is harmless.
            logger.debug(f"answer_callback failed: {e}")
