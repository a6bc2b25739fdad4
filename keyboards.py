"""Inline keyboard builders for every screen of the storefront."""

import math
from typing import Dict, List, Sequence, Tuple, TypeVar

from aiogram.types import InlineKeyboardButton, InlineKeyboardMarkup
from aiogram.utils.keyboard import InlineKeyboardBuilder

from data_models import (
    ActionCallback,
    ChannelCallback,
    GameCallback,
    GameInfo,
    GameProduct,
    MenuCallback,
    PaymentChannel,
    ProductCallback,
    Transaction,
    TransactionStatus,
)
from messages import rupiah

T = TypeVar("T")

BUTTON_BACK_MAIN = "🔙 Kembali ke Menu Utama"
BUTTON_CANCEL = "❌ Batalkan"


def paginate(items: Sequence[T], page: int, page_size: int) -> Tuple[List[T], int, int]:
    """Slice ``items`` for a 1-indexed page, clamping the page into range.

    Returns:
        Tuple of (page items, page actually shown, total pages).
    """
    total_pages = max(1, math.ceil(len(items) / page_size))
    safe_page = max(1, min(page, total_pages))
    start = (safe_page - 1) * page_size
    return list(items[start:start + page_size]), safe_page, total_pages


def main_menu() -> InlineKeyboardMarkup:
    kb = InlineKeyboardBuilder()
    kb.button(text="🎮 Top Up Game", callback_data=MenuCallback(view="topup"))
    kb.button(text="📜 Riwayat", callback_data=MenuCallback(view="history"))
    kb.button(text="❓ Cara Bayar", callback_data=MenuCallback(view="payinfo"))
    kb.button(text="📞 Hubungi Admin", callback_data=MenuCallback(view="contact"))
    kb.adjust(2)
    return kb.as_markup()


def back_to_main() -> InlineKeyboardMarkup:
    kb = InlineKeyboardBuilder()
    kb.button(text=BUTTON_BACK_MAIN, callback_data=MenuCallback(view="main"))
    return kb.as_markup()


def cancel_only() -> InlineKeyboardMarkup:
    kb = InlineKeyboardBuilder()
    kb.button(text=BUTTON_CANCEL, callback_data=ActionCallback(action="cancel"))
    return kb.as_markup()


def _nav_row(kb: InlineKeyboardBuilder, page: int, total_pages: int, make) -> None:
    nav = []
    if page > 1:
        nav.append(InlineKeyboardButton(text="⬅️ Prev", callback_data=make(page - 1).pack()))
    if page < total_pages:
        nav.append(InlineKeyboardButton(text="Next ➡️", callback_data=make(page + 1).pack()))
    if nav:
        kb.row(*nav)


def topup_menu(games: Sequence[GameInfo], page: int, total_pages: int) -> InlineKeyboardMarkup:
    """Games two per row, then paging, then a back button."""
    kb = InlineKeyboardBuilder()
    for game in games:
        label = f"{game.name} ✅" if game.is_verified else game.name
        kb.button(text=label, callback_data=GameCallback(code=game.code))
    kb.adjust(2)

    _nav_row(kb, page, total_pages, lambda p: MenuCallback(view="topup", page=p))
    kb.row(InlineKeyboardButton(text="🔙 Kembali", callback_data=MenuCallback(view="main").pack()))
    return kb.as_markup()


def product_list(
    game_code: str,
    products: Sequence[GameProduct],
    page: int,
    total_pages: int,
) -> InlineKeyboardMarkup:
    kb = InlineKeyboardBuilder()
    for product in products:
        kb.button(text=f"{product.name} - {rupiah(product.price)}", callback_data=ProductCallback(code=product.code))
    kb.adjust(1)

    _nav_row(kb, page, total_pages, lambda p: GameCallback(code=game_code, page=p))
    kb.row(InlineKeyboardButton(text="🔙 Kembali ke Daftar", callback_data=MenuCallback(view="topup").pack()))
    return kb.as_markup()


def confirm_player_id() -> InlineKeyboardMarkup:
    kb = InlineKeyboardBuilder()
    kb.button(text="✅ Benar, Lanjut", callback_data=ActionCallback(action="confirm_id"))
    kb.button(text="❌ Batal", callback_data=ActionCallback(action="cancel"))
    kb.adjust(2)
    return kb.as_markup()


def order_confirmation() -> InlineKeyboardMarkup:
    kb = InlineKeyboardBuilder()
    kb.button(text="💳 Pilih Pembayaran", callback_data=ActionCallback(action="choose_channel"))
    kb.button(text="❌ Batal", callback_data=ActionCallback(action="cancel"))
    kb.adjust(1)
    return kb.as_markup()


def order_process() -> InlineKeyboardMarkup:
    kb = InlineKeyboardBuilder()
    kb.button(text="✅ Lanjut Pembayaran", callback_data=ActionCallback(action="process_payment"))
    kb.button(text="🔁 Ganti Metode", callback_data=ActionCallback(action="choose_channel"))
    kb.button(text="❌ Batal", callback_data=ActionCallback(action="cancel"))
    kb.adjust(1)
    return kb.as_markup()


def group_channels(channels: Sequence[PaymentChannel]) -> Dict[str, List[PaymentChannel]]:
    groups: Dict[str, List[PaymentChannel]] = {}
    for channel in channels:
        groups.setdefault(channel.method or "Lainnya", []).append(channel)
    return groups


def channel_list(channels: Sequence[PaymentChannel], mode: str) -> InlineKeyboardMarkup:
    """Channels grouped by method, two per row.

    Args:
        channels: Active payment channels.
        mode: ``pay`` to select a channel for the order, ``info`` to show its guide.
    """
    kb = InlineKeyboardBuilder()

    if not channels:
        kb.row(InlineKeyboardButton(
            text="⚠️ Belum ada metode tersedia",
            callback_data=ActionCallback(action="noop").pack(),
        ))

    for method_channels in group_channels(channels).values():
        row = []
        for channel in method_channels:
            row.append(InlineKeyboardButton(
                text=f"{channel.name} ({channel.fee_label})",
                callback_data=ChannelCallback(mode=mode, code=channel.code).pack(),
            ))
            if len(row) == 2:
                kb.row(*row)
                row = []
        if row:
            kb.row(*row)

    if mode == "pay":
        kb.row(InlineKeyboardButton(text="❌ Batal", callback_data=ActionCallback(action="cancel").pack()))
    else:
        kb.row(InlineKeyboardButton(text=BUTTON_BACK_MAIN, callback_data=MenuCallback(view="main").pack()))
    return kb.as_markup()


def channel_guide() -> InlineKeyboardMarkup:
    kb = InlineKeyboardBuilder()
    kb.button(text="⬅️ Kembali", callback_data=MenuCallback(view="payinfo"))
    kb.button(text=BUTTON_BACK_MAIN, callback_data=MenuCallback(view="main"))
    kb.adjust(1)
    return kb.as_markup()


def qr_invoice(merchant_ref: str) -> InlineKeyboardMarkup:
    kb = InlineKeyboardBuilder()
    kb.button(text="🔄 Cek Status Transaksi", callback_data=ActionCallback(action="check", ref=merchant_ref))
    kb.button(text="❓ Cara Bayar", callback_data=MenuCallback(view="payinfo"))
    kb.button(text="🔙 Kembali ke Riwayat", callback_data=MenuCallback(view="history"))
    kb.adjust(1)
    return kb.as_markup()


def payment_details(trx: Transaction) -> InlineKeyboardMarkup:
    kb = InlineKeyboardBuilder()
    if trx.payment_url:
        kb.button(text="💸 Bayar Sekarang", url=trx.payment_url)
    kb.button(text="🔄 Cek Status Transaksi", callback_data=ActionCallback(action="check", ref=trx.merchant_ref))
    kb.button(text="🔙 Kembali ke Riwayat", callback_data=MenuCallback(view="history"))
    kb.adjust(1)
    return kb.as_markup()


def transaction_status(trx: Transaction) -> InlineKeyboardMarkup:
    kb = InlineKeyboardBuilder()
    kb.button(text="🔄 Refresh", callback_data=ActionCallback(action="check", ref=trx.merchant_ref))
    if trx.status is TransactionStatus.UNPAID:
        kb.button(text="💸 Tampilkan Tagihan", callback_data=ActionCallback(action="reprint", ref=trx.merchant_ref))
    kb.button(text="🗑️ Tutup", callback_data=ActionCallback(action="close"))
    kb.adjust(1)
    return kb.as_markup()


def history(transactions: Sequence[Transaction]) -> InlineKeyboardMarkup:
    kb = InlineKeyboardBuilder()
    for index, trx in enumerate(transactions, start=1):
        row = [InlineKeyboardButton(
            text=f"🔄 Cek No. {index}",
            callback_data=ActionCallback(action="check", ref=trx.merchant_ref).pack(),
        )]
        if trx.status is TransactionStatus.UNPAID:
            row.append(InlineKeyboardButton(
                text=f"💸 Bayar No. {index}",
                callback_data=ActionCallback(action="reprint", ref=trx.merchant_ref).pack(),
            ))
        kb.row(*row)
    kb.row(InlineKeyboardButton(text=BUTTON_BACK_MAIN, callback_data=MenuCallback(view="main").pack()))
    return kb.as_markup()
