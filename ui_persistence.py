"""Single-bubble rendering.

Every bot reply in a chat replaces the previous one: text is edited in place
when possible, otherwise the old message is deleted and a new one is sent.
The id of the visible message is kept in the session as ``last_msg_id``.
"""

import logging
from typing import Literal, Optional, Union

from aiogram.types import InlineKeyboardMarkup
from pydantic import BaseModel

from messaging import MessagingError, MessagingPort
from session_store import SessionStore

logger = logging.getLogger(__name__)


class TextView(BaseModel):
    kind: Literal["text"] = "text"
    text: str
    reply_markup: Optional[InlineKeyboardMarkup] = None
    force_new: bool = False
    parse_mode: Optional[str] = "HTML"


class PhotoView(BaseModel):
    kind: Literal["photo"] = "photo"
    photo: str
    caption: Optional[str] = None
    reply_markup: Optional[InlineKeyboardMarkup] = None
    parse_mode: Optional[str] = "HTML"


View = Union[TextView, PhotoView]


class UIPersistence:
    def __init__(self, messenger: MessagingPort, sessions: SessionStore):
        self.messenger = messenger
        self.sessions = sessions

    async def delete_silently(self, chat_id: int, message_id: Optional[int]) -> None:
        """Delete a message, logging instead of raising on failure."""
        if not message_id:
            return
        try:
            await self.messenger.delete_message(chat_id, message_id)
        except Exception as e:
            logger.debug(f"Could not delete message {message_id} in chat {chat_id}: {e}")

    async def _replace(self, chat_id: int, last_msg_id: Optional[int]) -> None:
        if last_msg_id:
            await self.delete_silently(chat_id, last_msg_id)
            self.sessions.set_last_message_id(chat_id, None)

    async def send_or_edit(
        self,
        chat_id: int,
        text: str,
        reply_markup: Optional[InlineKeyboardMarkup] = None,
        force_new: bool = False,
        parse_mode: Optional[str] = "HTML",
    ) -> int:
        """Show ``text`` as the chat's only bot message.

        Returns:
            The id of the message now visible.

        Raises:
            MessagingError: If even sending a fresh message failed.
        """
        last_msg_id = self.sessions.get_last_message_id(chat_id)

        if last_msg_id and not force_new:
            try:
                await self.messenger.edit_message_text(
                    chat_id, last_msg_id, text, reply_markup=reply_markup, parse_mode=parse_mode
                )
                return last_msg_id
            except MessagingError as e:
                logger.debug(f"Edit of message {last_msg_id} in chat {chat_id} failed, resending: {e}")

        await self._replace(chat_id, last_msg_id)

        message_id = await self.messenger.send_message(
            chat_id, text, reply_markup=reply_markup, parse_mode=parse_mode
        )
        self.sessions.set_last_message_id(chat_id, message_id)
        return message_id

    async def send_photo(
        self,
        chat_id: int,
        photo: str,
        caption: Optional[str] = None,
        reply_markup: Optional[InlineKeyboardMarkup] = None,
        parse_mode: Optional[str] = "HTML",
    ) -> int:
        """Replace the chat's bubble with a photo. Photos are never edited in place."""
        last_msg_id = self.sessions.get_last_message_id(chat_id)
        await self._replace(chat_id, last_msg_id)

        message_id = await self.messenger.send_photo(
            chat_id, photo, caption=caption, reply_markup=reply_markup, parse_mode=parse_mode
        )
        self.sessions.set_last_message_id(chat_id, message_id)
        return message_id

    async def render(self, chat_id: int, view: View) -> int:
        if isinstance(view, PhotoView):
            return await self.send_photo(
                chat_id,
                view.photo,
                caption=view.caption,
                reply_markup=view.reply_markup,
                parse_mode=view.parse_mode,
            )
        return await self.send_or_edit(
            chat_id,
            view.text,
            reply_markup=view.reply_markup,
            force_new=view.force_new,
            parse_mode=view.parse_mode,
        )
