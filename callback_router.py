"""Dispatches inline button presses to the order flow.

Callback payloads follow the ``namespace:action:args`` grammar defined by the
``CallbackData`` classes in :mod:`data_models`. A payload is unpacked once
by :func:`parse_callback`; everything after that works on typed objects.
"""

import logging
from typing import Optional, Union

from pydantic import BaseModel

import messages
from data_models import ActionCallback, ChannelCallback, GameCallback, MenuCallback, ProductCallback
from order_flow import OrderFlow
from states import OrderState

logger = logging.getLogger(__name__)

ParsedCallback = Union[MenuCallback, GameCallback, ProductCallback, ActionCallback, ChannelCallback]

_CALLBACK_TYPES = (MenuCallback, GameCallback, ProductCallback, ActionCallback, ChannelCallback)


class RouterResponse(BaseModel):
    """What to answer the callback query with."""

    toast: Optional[str] = None
    show_alert: bool = False


def parse_callback(data: Optional[str]) -> Optional[ParsedCallback]:
    """Unpack raw callback data into its typed variant.

    Returns:
        The matching callback object, or None for malformed or unknown payloads.
    """
    if not data or not isinstance(data, str):
        return None

    prefix = data.split(":", 1)[0]
    for cls in _CALLBACK_TYPES:
        if cls.__prefix__ != prefix:
            continue
        try:
            return cls.unpack(data)
        except (ValueError, TypeError) as e:
            logger.debug(f"Malformed {prefix} callback {data!r}: {e}")
            return None
    return None


class CallbackRouter:
    def __init__(self, flow: OrderFlow):
        self.flow = flow

    async def route(
        self,
        chat_id: int,
        data: Optional[str],
        message_id: Optional[int] = None,
        user_id: Optional[int] = None,
    ) -> RouterResponse:
        """Handle one button press.

        Errors raised while handling are logged and shown to the user as a
        generic error; they never propagate.
        """
        callback = parse_callback(data)
        try:
            if callback is None:
                await self.flow.unknown_action(chat_id, data)
                return RouterResponse()
            return await self._dispatch(chat_id, callback, user_id)
        except Exception:
            logger.exception(f"Callback {data!r} failed in chat {chat_id}")
            try:
                await self.flow.show_error(chat_id)
            except Exception:
                logger.exception(f"Could not render error for chat {chat_id}")
            return RouterResponse()

    async def _dispatch(self, chat_id: int, callback: ParsedCallback, user_id: Optional[int]) -> RouterResponse:
        flow = self.flow

        if isinstance(callback, MenuCallback):
            if callback.view == "main":
                await flow.show_main_menu(chat_id)
            elif callback.view == "topup":
                await flow.show_topup(chat_id, callback.page)
            elif callback.view == "history":
                await flow.show_history(chat_id, user_id)
            elif callback.view == "payinfo":
                await flow.show_channels(chat_id, "info")
            elif callback.view == "contact":
                await flow.show_contact(chat_id)
            elif callback.view == "help":
                await flow.show_help(chat_id)
            return RouterResponse()

        if isinstance(callback, GameCallback):
            await flow.select_game(chat_id, callback.code, callback.page)
            return RouterResponse()

        if isinstance(callback, ProductCallback):
            await flow.select_product(chat_id, callback.code)
            return RouterResponse()

        if isinstance(callback, ChannelCallback):
            if callback.mode == "pay":
                await flow.select_channel(chat_id, callback.code)
            else:
                await flow.show_channel_guide(chat_id, callback.code)
            return RouterResponse()

        action = callback.action
        if action == "cancel":
            await flow.cancel(chat_id)
            return RouterResponse(toast=messages.TOAST_CANCELLED)
        if action == "confirm_id":
            state = await flow.confirm_id(chat_id)
            if state is OrderState.CHANNEL_PENDING:
                return RouterResponse(toast=messages.TOAST_ID_CONFIRMED)
            return RouterResponse()
        if action == "choose_channel":
            await flow.show_channels(chat_id, "pay")
        elif action == "process_payment":
            await flow.process_payment(chat_id, user_id)
        elif action == "check":
            await flow.check_transaction(chat_id, callback.ref)
        elif action == "reprint":
            await flow.reprint(chat_id, callback.ref)
        elif action == "close":
            await flow.close(chat_id)
        elif action == "noop":
            pass
        else:
            await flow.unknown_action(chat_id, action)
        return RouterResponse()
