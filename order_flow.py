"""The purchase funnel for a single chat.

Every operation reads the chat's session, decides what to do from the state
derived from it, writes the session back and renders exactly one bubble.
Each operation returns the :class:`~states.OrderState` the chat ends up in.
"""

import logging
import re
from typing import Callable, Optional

import keyboards
import messages
from catalog import CatalogService
from data_models import PaymentChannel, Transaction, TransactionStatus, utcnow
from input_classifier import InputClassifier
from payment_gateway import PaymentGatewayError
from payment_service import ChannelNotFoundError, PaymentService
from providers import GameProviderService
from rate_limiter import RateLimiter
from reconciler import TransactionReconciler
from sanitizer import clean_merchant_ref
from session_lock import LOCKED, SessionLock
from session_store import SessionStore
from states import OrderState, derive_state
from ui_persistence import PhotoView, TextView, UIPersistence, View
from validation_schema import FormatValidator, get_schema

logger = logging.getLogger(__name__)

DEFAULT_ID_EXAMPLE = "12345678"

_SYSTEM_ERROR_WORDS = ("maintenance", "limit", "balance", "saldo", "signature")
_IP_RE = re.compile(r"\bIP\b")

# Writing these resets everything chosen after the player ID.
_RESET_AFTER_ID = {
    "id_confirmed": False,
    "channel": None,
    "amount": None,
    "final_amount": None,
    "fee_amount": None,
}


def is_system_error(message: Optional[str]) -> bool:
    """Tell a provider outage apart from a genuinely unknown player ID."""
    if not message:
        return False
    lowered = message.lower()
    return any(word in lowered for word in _SYSTEM_ERROR_WORDS) or bool(_IP_RE.search(message))


class OrderFlow:
    def __init__(
        self,
        sessions: SessionStore,
        ui: UIPersistence,
        catalog: CatalogService,
        payments: PaymentService,
        reconciler: TransactionReconciler,
        lock: SessionLock,
        nickname_limiter: RateLimiter,
        provider: Optional[GameProviderService] = None,
        classifier: Optional[InputClassifier] = None,
        validator: Optional[FormatValidator] = None,
        page_size: int = 10,
        history_limit: int = 5,
        clock: Callable = utcnow,
    ):
        self.sessions = sessions
        self.ui = ui
        self.catalog = catalog
        self.payments = payments
        self.reconciler = reconciler
        self.lock = lock
        self.nickname_limiter = nickname_limiter
        self.provider = provider
        self.classifier = classifier or InputClassifier()
        self.validator = validator or FormatValidator()
        self.page_size = page_size
        self.history_limit = history_limit
        self._clock = clock

    def state(self, chat_id: int) -> OrderState:
        return derive_state(self.sessions.get(chat_id))

    # Menus

    async def show_main_menu(self, chat_id: int, name: Optional[str] = None, force_new: bool = False) -> OrderState:
        await self.ui.send_or_edit(chat_id, messages.welcome(name), keyboards.main_menu(), force_new=force_new)
        return self.state(chat_id)

    async def start(self, chat_id: int, user_id: int, name: Optional[str] = None) -> OrderState:
        """Reset the chat and show the main menu as a fresh message."""
        self.sessions.clear(chat_id)
        self.sessions.authenticate(chat_id, user_id)
        await self.show_main_menu(chat_id, name, force_new=True)
        return OrderState.IDLE

    async def show_help(self, chat_id: int) -> OrderState:
        await self.ui.send_or_edit(chat_id, messages.HELP, keyboards.back_to_main())
        return self.state(chat_id)

    async def show_contact(self, chat_id: int) -> OrderState:
        await self.ui.send_or_edit(chat_id, messages.CONTACT_INFO, keyboards.back_to_main())
        return self.state(chat_id)

    async def show_topup(self, chat_id: int, page: int = 1) -> OrderState:
        games = self.catalog.get_available_games()
        if not games:
            await self.ui.send_or_edit(chat_id, messages.GAMES_EMPTY, keyboards.back_to_main())
            return self.state(chat_id)

        shown, page, total_pages = keyboards.paginate(games, page, self.page_size)
        await self.ui.send_or_edit(
            chat_id,
            messages.topup_menu(page, total_pages, len(games)),
            keyboards.topup_menu(shown, page, total_pages),
        )
        return self.state(chat_id)

    # Catalog

    async def select_game(self, chat_id: int, code: str, page: int = 1) -> OrderState:
        """Show one page of a game's products, cheapest first."""
        game = self.catalog.get_game(code)
        if game is None:
            logger.info(f"Chat {chat_id} asked for unknown game {code!r}")
            await self.ui.send_or_edit(chat_id, messages.GAME_NOT_FOUND, keyboards.back_to_main())
            return self.state(chat_id)

        products = self.catalog.get_game_services(code)
        shown, page, total_pages = keyboards.paginate(products, page, self.page_size)
        await self.ui.send_or_edit(
            chat_id,
            messages.product_list(game, page, total_pages, len(products)),
            keyboards.product_list(game.code, shown, page, total_pages),
        )
        return self.state(chat_id)

    async def select_product(self, chat_id: int, item_code: str, game_code: Optional[str] = None) -> OrderState:
        """Start an order for a product, discarding any previous order details.

        Args:
            chat_id: Chat placing the order.
            item_code: Catalog code of the product.
            game_code: Expected game of the product, when the caller knows it.
        """
        product = self.catalog.find_service_by_code(item_code)
        if product is None or (game_code and product.game_code != game_code):
            logger.info(f"Chat {chat_id} picked unknown product {item_code!r}")
            await self.ui.send_or_edit(chat_id, messages.PRODUCT_NOT_FOUND, keyboards.back_to_main())
            return self.state(chat_id)

        game = self.catalog.get_game(product.game_code)
        if game is None:
            await self.ui.send_or_edit(chat_id, messages.GAME_NOT_FOUND, keyboards.back_to_main())
            return self.state(chat_id)

        self.sessions.save(
            chat_id,
            game=game.code,
            item=product.name,
            price=product.price,
            service_code=product.code,
            game_player_id=None,
            zone_id=None,
            nickname=None,
            **_RESET_AFTER_ID,
        )
        logger.info(f"Chat {chat_id} selected {product.code} ({game.code})")

        schema = get_schema(game.code)
        example = schema.example if schema else DEFAULT_ID_EXAMPLE
        await self.ui.send_or_edit(
            chat_id,
            messages.product_selected(game, product, example),
            keyboards.cancel_only(),
        )
        return OrderState.ITEM_SELECTED

    # Player ID

    async def handle_text(self, chat_id: int, message_id: Optional[int], text: Optional[str]) -> OrderState:
        """React to free text typed into the chat."""
        session = self.sessions.get(chat_id)
        state = derive_state(session)
        intent = self.classifier.classify(text, session.game if session else None)

        if intent.type == "command":
            if intent.action == "cancel":
                logger.info(f"Chat {chat_id} cancelled via {text!r}")
                return await self.cancel(chat_id)
            self.sessions.clear(chat_id)
            return await self.show_main_menu(chat_id)

        if state is OrderState.IDLE:
            return state

        if intent.type == "ignore":
            logger.debug(f"Ignoring input in chat {chat_id}: {intent.reason}")
            await self.ui.delete_silently(chat_id, message_id)
            return state

        await self.ui.delete_silently(chat_id, message_id)

        validation = self.validator.validate(text, session.game)
        if not validation.is_valid or intent.user_id is None:
            error = validation.error or f"Format ID salah. Contoh: {self._example(session.game)}"
            logger.warning(f"Bad player ID format in chat {chat_id} for {session.game}: {text!r}")
            await self.ui.send_or_edit(chat_id, messages.format_error(error), keyboards.cancel_only())
            return state

        user_id, zone_id = intent.user_id, intent.zone_id
        if session.game_player_id == user_id and (session.zone_id or None) == (zone_id or None):
            logger.debug(f"Same player ID resent in chat {chat_id}, keeping current bubble")
            return state

        nickname = None
        game = self.catalog.get_game(session.game)
        validation_code = game.validation_code if game else None

        if validation_code and self.provider is not None:
            if not self.nickname_limiter.can_request(chat_id):
                logger.warning(f"Chat {chat_id} hit the nickname lookup quota")
                await self.ui.send_or_edit(chat_id, messages.NICKNAME_LIMIT, keyboards.cancel_only())
                return state

            try:
                result = await self.provider.validate_player(validation_code, user_id, zone_id)
            except Exception as e:
                logger.error(
                    f"Player lookup crashed for chat {chat_id} ({validation_code} {user_id}/{zone_id}), "
                    f"continuing without nickname: {e!r}"
                )
            else:
                if result.success and result.nickname:
                    nickname = result.nickname
                else:
                    system = is_system_error(result.message)
                    logger.warning(
                        f"Player lookup rejected in chat {chat_id}: game={session.game} "
                        f"player={user_id} zone={zone_id} system={system} message={result.message!r}"
                    )
                    text_out = messages.SYSTEM_MAINTENANCE if system else messages.id_not_found(user_id, zone_id)
                    await self.ui.send_or_edit(chat_id, text_out, keyboards.cancel_only())
                    return state

        self.sessions.save(
            chat_id,
            game_player_id=user_id,
            zone_id=zone_id,
            nickname=nickname,
            **_RESET_AFTER_ID,
        )
        await self.ui.send_or_edit(
            chat_id,
            messages.confirm_player_id(user_id, zone_id, nickname),
            keyboards.confirm_player_id(),
        )
        return OrderState.ID_PENDING_CONFIRM

    @staticmethod
    def _example(game_code: Optional[str]) -> str:
        schema = get_schema(game_code)
        return schema.example if schema else DEFAULT_ID_EXAMPLE

    async def _session_expired(self, chat_id: int) -> OrderState:
        await self.ui.send_or_edit(chat_id, messages.SESSION_EXPIRED, keyboards.back_to_main())
        return self.state(chat_id)

    async def confirm_id(self, chat_id: int) -> OrderState:
        session = self.sessions.get(chat_id)
        state = derive_state(session)
        if state in (OrderState.IDLE, OrderState.ITEM_SELECTED):
            return await self._session_expired(chat_id)

        if state is OrderState.ID_PENDING_CONFIRM:
            session = self.sessions.save(chat_id, id_confirmed=True)
            logger.info(f"Chat {chat_id} confirmed player {session.game_player_id}")

        game = self.catalog.get_game(session.game)
        await self.ui.send_or_edit(
            chat_id,
            messages.order_review(session, game.name if game else session.game, bool(game and game.is_verified)),
            keyboards.order_confirmation(),
        )
        return derive_state(session)

    # Payment channel

    async def show_channels(self, chat_id: int, mode: str = "pay") -> OrderState:
        """List payment channels, either to pick one for the order or to read guides."""
        state = self.state(chat_id)
        if mode == "pay" and state not in (OrderState.CHANNEL_PENDING, OrderState.READY_TO_PAY):
            return await self._session_expired(chat_id)

        channels = await self.payments.get_payment_channels()
        if not channels:
            text = messages.CHANNEL_LOAD_FAILED
        elif mode == "pay":
            text = messages.PAYMENT_METHOD_SELECTION
        else:
            text = messages.PAYMENT_CHANNELS_INFO
        await self.ui.send_or_edit(chat_id, text, keyboards.channel_list(channels, mode))
        return state

    async def select_channel(self, chat_id: int, code: str) -> OrderState:
        session = self.sessions.get(chat_id)
        state = derive_state(session)
        if state not in (OrderState.CHANNEL_PENDING, OrderState.READY_TO_PAY):
            return await self._session_expired(chat_id)

        try:
            quote = self.payments.calculate_final_amount(session.price or 0, code)
        except ChannelNotFoundError:
            logger.warning(f"Chat {chat_id} picked unknown channel {code!r}")
            await self.ui.send_or_edit(chat_id, messages.CHANNEL_NOT_FOUND, keyboards.order_confirmation())
            return state

        channel = self.payments.get_channel(code)
        if channel is not None and not self._amount_allowed(channel, quote.final_amount):
            logger.info(f"Amount {quote.final_amount} outside limits of {code} for chat {chat_id}")
            await self.ui.send_or_edit(chat_id, messages.PAYMENT_ERROR, keyboards.order_confirmation())
            return state

        session = self.sessions.save(
            chat_id,
            channel=quote.channel_code,
            amount=quote.base_amount,
            fee_amount=quote.fee_amount,
            final_amount=quote.final_amount,
        )
        await self.ui.send_or_edit(
            chat_id,
            messages.fee_breakdown(session, quote.channel_name),
            keyboards.order_process(),
        )
        return OrderState.READY_TO_PAY

    @staticmethod
    def _amount_allowed(channel: PaymentChannel, amount: int) -> bool:
        if channel.min_amount and amount < channel.min_amount:
            return False
        if channel.max_amount and amount > channel.max_amount:
            return False
        return True

    async def show_channel_guide(self, chat_id: int, code: str) -> OrderState:
        channel = self.payments.get_channel(code)
        if channel is None:
            await self.ui.send_or_edit(chat_id, messages.CHANNEL_NOT_FOUND, keyboards.back_to_main())
            return self.state(chat_id)

        session = self.sessions.get(chat_id)
        total = session.final_amount if session and session.channel == code else None
        await self.ui.send_or_edit(chat_id, messages.channel_guide(channel, total), keyboards.channel_guide())
        return derive_state(session)

    # Checkout

    async def process_payment(self, chat_id: int, user_id: Optional[int] = None) -> OrderState:
        """Turn a ready order into an invoice. Concurrent taps for a chat are dropped."""
        result = await self.lock.with_lock(chat_id, lambda: self._finalize(chat_id, user_id))
        if result is LOCKED:
            return self.state(chat_id)
        return result

    async def _finalize(self, chat_id: int, user_id: Optional[int]) -> OrderState:
        session = self.sessions.get(chat_id)
        state = derive_state(session)

        if state is OrderState.IDLE:
            logger.info(f"Payment request for chat {chat_id} without an order, ignoring")
            return state
        if state is not OrderState.READY_TO_PAY:
            logger.info(f"Payment request for chat {chat_id} in state {state.value}, re-showing current step")
            if state is OrderState.CHANNEL_PENDING:
                return await self.show_channels(chat_id, "pay")
            return await self._session_expired(chat_id)

        payer = user_id or session.user_id or chat_id
        await self.ui.send_or_edit(chat_id, messages.PAYMENT_PROCESSING)

        game = self.catalog.get_game(session.game)
        try:
            trx = await self.payments.create_invoice(payer, session, game.name if game else None)
        except PaymentGatewayError as e:
            logger.error(f"Invoice creation failed for chat {chat_id}: {e}")
            await self.ui.send_or_edit(chat_id, messages.PAYMENT_ERROR, keyboards.order_process())
            return state

        self.sessions.clear(chat_id)
        await self._show_invoice(chat_id, trx)
        return OrderState.IDLE

    def _invoice_view(self, trx: Transaction) -> View:
        if self.payments.is_qr_channel(trx.channel) and trx.qr_string:
            return PhotoView(
                photo=self.payments.qr_image_url(trx.qr_string),
                caption=messages.payment_caption(trx),
                reply_markup=keyboards.qr_invoice(trx.merchant_ref),
            )
        channel = self.payments.get_channel(trx.channel) if trx.channel else None
        return TextView(
            text=messages.payment_details(trx, channel.name if channel else (trx.channel or "-")),
            reply_markup=keyboards.payment_details(trx),
        )

    async def _show_invoice(self, chat_id: int, trx: Transaction) -> None:
        message_id = await self.ui.render(chat_id, self._invoice_view(trx))
        self.payments.update_message_id(trx.merchant_ref, message_id)

    async def cancel(self, chat_id: int) -> OrderState:
        await self.ui.send_or_edit(chat_id, messages.ORDER_CANCELLED, keyboards.back_to_main())
        self.sessions.clear(chat_id)
        return OrderState.IDLE

    # Transactions

    async def check_transaction(self, chat_id: int, ref: Optional[str]) -> OrderState:
        """Sync a transaction with the gateway and show its status."""
        state = self.state(chat_id)
        clean_ref = clean_merchant_ref(ref)
        if clean_ref is None:
            await self.ui.send_or_edit(chat_id, messages.TRX_NOT_FOUND, keyboards.back_to_main())
            return state

        trx = await self.reconciler.sync(clean_ref)
        if trx is None:
            await self.ui.send_or_edit(chat_id, messages.TRX_NOT_FOUND, keyboards.back_to_main())
            return state

        await self.ui.send_or_edit(
            chat_id,
            messages.transaction_status(trx, self._clock()),
            keyboards.transaction_status(trx),
        )
        return state

    async def show_history(self, chat_id: int, user_id: Optional[int] = None) -> OrderState:
        state = self.state(chat_id)
        transactions = self.payments.get_user_history(user_id or chat_id, self.history_limit)
        if not transactions:
            await self.ui.send_or_edit(chat_id, messages.HISTORY_EMPTY, keyboards.back_to_main())
            return state

        await self.ui.send_or_edit(chat_id, messages.history(transactions), keyboards.history(transactions))
        return state

    async def reprint(self, chat_id: int, ref: Optional[str]) -> OrderState:
        """Show an unpaid invoice again; settled ones get their status instead."""
        state = self.state(chat_id)
        clean_ref = clean_merchant_ref(ref)
        trx = self.payments.get_transaction(clean_ref) if clean_ref else None
        if trx is None:
            await self.ui.send_or_edit(chat_id, messages.TRX_NOT_FOUND, keyboards.back_to_main())
            return state

        if trx.status is not TransactionStatus.UNPAID:
            await self.ui.send_or_edit(
                chat_id,
                messages.transaction_status(trx, self._clock()),
                keyboards.transaction_status(trx),
            )
            return state

        await self._show_invoice(chat_id, trx)
        return state

    async def close(self, chat_id: int) -> OrderState:
        last_msg_id = self.sessions.get_last_message_id(chat_id)
        await self.ui.delete_silently(chat_id, last_msg_id)
        self.sessions.set_last_message_id(chat_id, None)
        return self.state(chat_id)

    # Fallbacks

    async def unknown_action(self, chat_id: int, detail: Optional[str] = None) -> OrderState:
        logger.warning(f"Unknown action in chat {chat_id}: {detail!r}")
        await self.ui.send_or_edit(chat_id, messages.ACTION_UNKNOWN, keyboards.back_to_main())
        return self.state(chat_id)

    async def show_rate_limited(self, chat_id: int) -> OrderState:
        await self.ui.send_or_edit(chat_id, messages.RATE_LIMIT, keyboards.main_menu())
        return self.state(chat_id)

    async def show_error(self, chat_id: int, detail: Optional[str] = None) -> OrderState:
        await self.ui.send_or_edit(chat_id, messages.generic_error(detail), keyboards.back_to_main())
        return self.state(chat_id)
