"""User-facing message templates (Telegram HTML).

Anything that comes from the user or from a remote API is passed through
``html.quote`` before it is placed in a template.
"""

from datetime import datetime
from typing import Dict, Iterable, Optional

from aiogram import html

import config
from data_models import GameInfo, GameProduct, OrderSession, PaymentChannel, Transaction, TransactionStatus

DIVIDER = "━━━━━━━━━━━━━━━━━━━━"


def rupiah(amount: Optional[float]) -> str:
    return f"Rp {int(amount or 0):,}".replace(",", ".")


def _fmt_time(value: Optional[datetime]) -> str:
    if value is None:
        return "-"
    return value.astimezone().strftime("%d/%m/%Y %H:%M")


def _q(value) -> str:
    return html.quote(str(value)) if value is not None else ""


# Greetings & help

def welcome(name: Optional[str] = None) -> str:
    return (
        f"👋 Halo <b>{_q(name or 'Kak')}</b>, mitra terpercaya untuk top-up game favorit Anda. "
        "Kami hadir dengan sistem otomatis 24 jam dan jaminan harga terbaik.\n\n"
        "• Proses Cepat &amp; Otomatis\n"
        "• Berbagai Pilihan Pembayaran\n"
        "• CS Support Siaga 24/7\n\n"
        "Silakan tentukan pilihan Anda di bawah ini:"
    )


HELP = (
    f"📚 <b>PUSAT BANTUAN</b>\n{DIVIDER}\n"
    "Halo Bosque, siap membantu kebutuhan top-up Bosque hari ini.\n\n"
    "<b>Panduan Singkat:</b>\n"
    "1️⃣ Pilih Game di menu Top Up\n"
    "2️⃣ Masukkan ID Akun dengan benar\n"
    "3️⃣ Selesaikan pembayaran otomatis\n"
    "4️⃣ Produk masuk dalam hitungan detik!\n\n"
    "<b>Perintah:</b>\n"
    "• /start - Menu utama\n"
    "• /help - Bantuan\n"
    "• /history - Riwayat transaksi\n"
    "• /cancel - Batalkan pesanan\n\n"
    "Ada kendala? Klik tombol Admin di bawah ya Bosque."
)

CONTACT_INFO = (
    f"📞 <b>PUSAT BANTUAN</b>\n{DIVIDER}\n"
    "Ada kendala atau ingin kerja sama? Hubungi kami di:\n\n"
    f"👤 Admin: {_q(config.CONTACT_URL)}\n\n"
    "Jam Kerja: 09:00 - 21:00 WIB"
)

# Throttling

RATE_LIMIT = (
    "☕ <b>Santai Sejenak, Bosque...</b>\n"
    "Permintaan Bosque terlalu cepat. Tunggu beberapa detik ya agar sistem tetap stabil. ⏳"
)
RATE_LIMIT_TOAST = "Sabar ya Bosque, tunggu sebentar... ⏳"

NICKNAME_LIMIT = (
    "⌛ <b>SABAR YA KAK...</b>\n\n"
    "Kakak terlalu cepat mencoba cek ID. Tunggu sekitar 1 menit lagi ya agar sistem tetap lancar. 🙏"
)

# Errors

SESSION_EXPIRED = (
    "⏰ <b>SESI BERAKHIR</b>\n"
    "Sesi Kakak sudah kadaluarsa untuk alasan keamanan. Silakan order ulang ya."
)
ACTION_UNKNOWN = "⚠️ <b>AKSI TIDAK VALID</b>\nSilakan gunakan tombol menu atau ketik /start."
TRX_NOT_FOUND = "❌ <b>DATA TIDAK DITEMUKAN</b>\nMaaf Kak, transaksi tersebut tidak ada dalam sistem kami."
HISTORY_EMPTY = (
    "📭 <b>BELUM ADA TRANSAKSI</b>\n\n"
    "Wah, sepertinya Kakak belum pernah belanja di sini. Yuk, mulai top-up game favoritmu sekarang! 😊"
)
CHANNEL_LOAD_FAILED = "⚠️ <b>GANGGUAN KONEKSI</b>\nGagal memuat daftar pembayaran."
CHANNEL_NOT_FOUND = "⚠️ Channel pembayaran tidak ditemukan."
GAME_NOT_FOUND = (
    "🔍 <b>GAME TIDAK DITEMUKAN</b>\n"
    "Maaf Bosque, game yang Bosque cari belum tersedia di daftar kami saat ini. 😢"
)
PRODUCT_NOT_FOUND = "❌ Produk tidak ditemukan atau sudah tidak tersedia. Silakan pilih produk lain ya."
GAMES_EMPTY = "⚠️ Belum ada game yang tersedia saat ini."
PAYMENT_ERROR = (
    "❌ <b>METODE TIDAK TERSEDIA</b>\n"
    "Maaf Bosque, metode pembayaran ini sedang dalam pemeliharaan. Silakan gunakan metode lain ya. 🙏"
)
SYSTEM_MAINTENANCE = (
    "⚠️ <b>GANGGUAN SISTEM</b>\n\n"
    "Maaf Kak, fitur cek ID sedang gangguan di sistem provider. Silakan coba lagi nanti atau pastikan ID sudah benar."
)
CHECK_FAILED = "❌ <b>GAGAL CEK STATUS</b>\nSilakan coba beberapa saat lagi."


def generic_error(detail: Optional[str] = None) -> str:
    return (
        f"⚠️ <b>PEMBERITAHUAN SISTEM</b>\n{DIVIDER}\n"
        f"{_q(detail or 'Terjadi kesalahan saat memproses permintaan.')}\n\n"
        "Silakan coba beberapa saat lagi atau hubungi Layanan Pelanggan jika kendala berlanjut."
    )


# Order flow

ORDER_CANCELLED = (
    f"✅ <b>PESANAN DIBATALKAN</b>\n{DIVIDER}\n"
    "Sesi pemesanan telah ditutup dengan aman. Terima kasih sudah mencoba layanan kami.\n\n"
    "Jangan ragu untuk memesan kembali kapan saja Bosque! Kami siap melayani 24/7. 😊"
)
UNVERIFIED_WARNING = (
    "⚠️ <b>Penting:</b> Game ini tidak mendukung cek nickname otomatis. "
    "Mohon teliti saat memasukkan ID ya Kak!"
)
TOAST_CANCELLED = "Pesanan dibatalkan."
TOAST_ID_CONFIRMED = "ID Terkonfirmasi!"


def topup_menu(page: int, total_pages: int, count: int) -> str:
    return (
        f"🎮 <b>PILIH GAME</b>\n{DIVIDER}\n"
        f"📦 Total Game: {count}\n"
        f"📄 Halaman: {page} / {max(total_pages, 1)}\n\n"
        "Silakan pilih game yang ingin Kakak top-up:"
    )


def product_list(game: GameInfo, page: int, total_pages: int, count: int) -> str:
    badge = " ✅" if game.is_verified else ""
    return (
        f"🎮 <b>TOP UP {_q(game.name.upper())}</b>{badge}\n{DIVIDER}\n"
        f"📂 Kategori: {_q(game.category)}\n"
        f"📦 Total Produk: {count} Item\n"
        f"📄 Halaman: {page} / {max(total_pages, 1)}\n\n"
        "👇 <b>Pilih Nominal Top Up:</b>"
    )


def product_selected(game: GameInfo, product: GameProduct, example: str) -> str:
    lines = [
        f"✨ <b>PRODUK DIPILIH</b> ✨\n{DIVIDER}",
        f"🎮 {_q(game.category)}: {_q(game.name)}{' ✅' if game.is_verified else ''}",
        f"📦 Produk: {_q(product.name)}",
        f"💰 Harga: {rupiah(product.price)}",
        f"{DIVIDER}\n",
    ]
    if not game.is_verified:
        lines.append(UNVERIFIED_WARNING + "\n")
    if product.description:
        lines.append(f"📋 PETUNJUK:\n<i>{_q(product.description)}</i>\n")
    lines.append("📝 <b>LANGKAH TERAKHIR:</b>")
    lines.append("Silakan ketik User ID (dan Zone ID jika ada) Anda sekarang.\n")
    lines.append(f"💡 Contoh: <code>{_q(example)}</code>")
    return "\n".join(lines)


def format_error(error: str) -> str:
    return f"⚠️ <b>FORMAT ID SALAH</b>\n{DIVIDER}\n{_q(error)}"


def _player_line(user_id: Optional[str], zone_id: Optional[str]) -> str:
    zone = f" ({_q(zone_id)})" if zone_id else ""
    return f"<code>{_q(user_id)}</code>{zone}"


def confirm_player_id(user_id: str, zone_id: Optional[str], nickname: Optional[str]) -> str:
    lines = [
        f"👤 <b>KONFIRMASI ID PLAYER</b>\n{DIVIDER}",
        f"ID Player: <code>{_q(user_id)}</code>",
    ]
    if zone_id:
        lines.append(f"Server ID: <code>{_q(zone_id)}</code>")
    if nickname:
        lines.append(f"Nama Akun: <b>{_q(nickname)}</b>")
    lines.append(f"{DIVIDER}\n")
    lines.append("Apakah data di atas sudah benar?")
    return "\n".join(lines)


def id_not_found(user_id: Optional[str], zone_id: Optional[str]) -> str:
    return (
        f"🔍 <b>ID TIDAK DITEMUKAN</b>\n{DIVIDER}\n"
        f"Maaf Kak, ID {_player_line(user_id, zone_id)} tidak terdeteksi di sistem game.\n\n"
        "📌 Saran:\n"
        "• Cek kembali apakah ID &amp; Server sudah benar.\n"
        "• Pastikan tidak ada spasi tambahan.\n\n"
        "Silakan ketik ulang ID yang benar ya Kak! 😊"
    )


def order_review(session: OrderSession, game_name: str, verified: bool) -> str:
    lines = [
        f"🎮 <b>DETAIL PESANAN</b>{' ✅' if verified else ''}\n{DIVIDER}",
        f"🎮 Game: {_q(game_name)}",
        f"💎 Produk: {_q(session.item)}",
        f"🆔 User ID: <code>{_q(session.game_player_id)}</code>",
    ]
    if session.zone_id:
        lines.append(f"🌐 Server: <code>{_q(session.zone_id)}</code>")
    if session.nickname:
        lines.append(f"👤 Nickname: {_q(session.nickname)}")
    lines.append(f"💰 Harga: {rupiah(session.price)}")
    lines.append(f"{DIVIDER}\n")
    if not verified and not session.nickname:
        lines.append(UNVERIFIED_WARNING + "\n")
    lines.append("Mohon pastikan Data Player sudah benar. Kesalahan input bukan tanggung jawab kami. Lanjut ke pembayaran? 👇")
    return "\n".join(lines)


PAYMENT_METHOD_SELECTION = (
    f"💳 <b>PILIH METODE BAYAR</b>\n{DIVIDER}\n"
    "Tersedia berbagai pilihan metode pembayaran otomatis untuk kenyamanan Kakak:"
)
PAYMENT_CHANNELS_INFO = (
    f"❓ <b>CARA BAYAR</b>\n{DIVIDER}\n"
    "Pilih metode pembayaran untuk melihat biaya dan panduannya:"
)


def fee_breakdown(session: OrderSession, channel_name: str) -> str:
    lines = [
        f"📊 <b>RINCIAN PEMBAYARAN</b>{' ✅' if session.nickname else ''}\n{DIVIDER}",
        f"📦 Produk: {_q(session.item)}",
    ]
    if session.nickname:
        lines.append(f"👤 Nickname: {_q(session.nickname)}")
    lines.extend([
        f"💵 Harga: {rupiah(session.amount)}",
        f"🏦 Metode: {_q(channel_name)}",
        f"➕ Biaya Admin: {rupiah(session.fee_amount)}",
        DIVIDER,
        f"✅ <b>TOTAL BAYAR: {rupiah(session.final_amount)}</b>",
        f"{DIVIDER}\n",
        "<i>Klik tombol di bawah untuk membuat invoice resmi.</i>",
    ])
    return "\n".join(lines)


def channel_guide(channel: PaymentChannel, total: Optional[int] = None) -> str:
    lines = [
        f"💳 <b>{_q(channel.guide_title or channel.name)}</b>\n",
        f"💰 Biaya Admin: {_q(channel.fee_label)}",
    ]
    if channel.min_amount:
        lines.append(f"📉 Minimal: {rupiah(channel.min_amount)}")
    if total is not None:
        lines.append(f"\n🛒 Total Tagihan Anda: {rupiah(total)}")
    lines.append(f"\n{DIVIDER}\n📝 <b>Cara Pembayaran:</b>")
    steps = channel.guide_steps or ["Ikuti petunjuk di layar pembayaran setelah checkout."]
    for index, step in enumerate(steps, start=1):
        lines.append(f"{index}. {_q(step)}")
    return "\n".join(lines)


PAYMENT_PROCESSING = (
    f"⏳ <b>MENGHUBUNGI GATEWAY...</b>\n{DIVIDER}\n"
    "Mohon tunggu sebentar, sedang menyiapkan detail pembayaran Bosque."
)
LOADING_STATUS = "🔄 Mengecek status transaksi..."


STATUS_LABELS: Dict[TransactionStatus, str] = {
    TransactionStatus.UNPAID: "⏳ Menunggu Pembayaran",
    TransactionStatus.PAID: "✅ Berhasil / Lunas",
    TransactionStatus.FAILED: "❌ Gagal / Dibatalkan",
    TransactionStatus.EXPIRED: "⏰ Kadaluarsa",
}


def status_label(status: TransactionStatus) -> str:
    return STATUS_LABELS.get(status, str(status))


def payment_caption(trx: Transaction) -> str:
    """Caption for the QR photo invoice."""
    return (
        f"💸 <b>TAGIHAN PEMBAYARAN</b>\n{DIVIDER}\n"
        f"📦 Item: {_q(trx.item)}\n"
        f"💵 Total: {rupiah(trx.amount)}\n"
        f"⏰ Berlaku s/d: {_fmt_time(trx.expiry_date)}\n"
        f"🆔 Ref: <code>{_q(trx.merchant_ref)}</code>\n"
        f"{DIVIDER}\n\n"
        "Silakan scan QRIS di atas untuk membayar.\n"
        "<i>Konfirmasi otomatis setelah dana kami terima.</i>"
    )


def payment_details(trx: Transaction, channel_name: str) -> str:
    """Invoice text for code/link based channels."""
    lines = [
        f"💸 <b>DETAIL PEMBAYARAN</b>\n{DIVIDER}",
        f"🎮 Game: {_q(trx.game)}",
        f"📦 Produk: {_q(trx.item)}",
        f"🆔 User ID: {_player_line(trx.player_id, trx.zone_id)}",
    ]
    if trx.nickname:
        lines.append(f"👤 Nickname: {_q(trx.nickname)}")
    lines.extend([
        f"🏦 Metode: {_q(channel_name)}",
        f"💰 Total: {rupiah(trx.amount)}",
        f"{DIVIDER}\n",
        f"⏳ Status: {status_label(trx.status)}",
        f"🗓️ Dibuat: {_fmt_time(trx.created_at)}",
        f"⏰ Limit: {_fmt_time(trx.expiry_date)}",
        f"🆔 Ref: <code>{_q(trx.merchant_ref)}</code>",
        f"{DIVIDER}\n",
    ])
    if trx.payment_no and not trx.payment_no.startswith("http"):
        lines.append("🔢 <b>NOMOR BAYAR / VA:</b>")
        lines.append(f"<code>{_q(trx.payment_no)}</code> (Tap untuk salin)\n")
    elif trx.payment_url or trx.payment_no:
        url = trx.payment_url or trx.payment_no
        lines.append("🔗 <b>LINK PEMBAYARAN:</b>")
        lines.append(f'<a href="{_q(url)}">Klik di sini untuk Bayar</a>\n')
    return "\n".join(lines)


def transaction_status(trx: Transaction, checked_at: datetime) -> str:
    lines = [
        f"🧾 <b>STATUS TRANSAKSI</b>\n{DIVIDER}",
        f"🕒 <i>Update: {_fmt_time(checked_at)}</i>\n",
        f"🆔 Ref: <code>{_q(trx.merchant_ref)}</code>",
        f"📦 Produk: {_q(trx.item)}",
        f"💰 Total: {rupiah(trx.amount)}",
        f"📢 Status: {status_label(trx.status)}\n",
    ]
    if trx.status is TransactionStatus.PAID:
        lines.append(f"✅ Pembayaran telah diterima. Order akan segera diproses sistem {_q(config.STORE_NAME)}.")
    elif trx.status is TransactionStatus.UNPAID:
        lines.append("⏳ Silakan segera selesaikan pembayaran Kakak sebelum masa berlaku habis.")
    return "\n".join(lines)


def history(transactions: Iterable[Transaction]) -> str:
    lines = [f"📜 <b>RIWAYAT TRANSAKSI</b>\n{DIVIDER}\n"]
    for index, trx in enumerate(transactions, start=1):
        lines.append(
            f"{index}. <b>{_q(trx.item)}</b> ({_q(trx.game)})\n"
            f"   💰 {rupiah(trx.amount)} • {status_label(trx.status)}\n"
            f"   🆔 <code>{_q(trx.merchant_ref)}</code>\n"
        )
    lines.append(f"{DIVIDER}\n<i>Klik 'Cek' untuk status terbaru atau 'Bayar' untuk melanjutkan order.</i>")
    return "\n".join(lines)


def status_notification(trx: Transaction) -> Optional[str]:
    """Message pushed to the user when a transaction reaches a final status."""
    ref = f"<code>{_q(trx.merchant_ref)}</code>"
    if trx.status is TransactionStatus.PAID:
        return (
            "✅ <b>Pembayaran Berhasil!</b>\n\n"
            f"Terima kasih Kak, pesanan dengan Ref: {ref} sudah kami terima. Saldo/Item akan segera masuk! 🚀"
        )
    if trx.status is TransactionStatus.EXPIRED:
        return f"⚠️ <b>Pembayaran Expired</b>\n\nMaaf Kak, pesanan {ref} sudah kadaluarsa. Silakan order ulang ya. 🙏"
    if trx.status is TransactionStatus.FAILED:
        return f"❌ <b>Pembayaran Gagal</b>\n\nMaaf Kak, transaksi {ref} dinyatakan gagal oleh sistem. Silakan hubungi admin."
    return None


# Admin

def admin_paid_notice(trx: Transaction) -> str:
    return (
        "💰 <b>Pembayaran Masuk</b>\n\n"
        f"🆔 Ref: <code>{_q(trx.merchant_ref)}</code>\n"
        f"👤 User: {trx.user_id}\n"
        f"🎮 {_q(trx.game)} - {_q(trx.item)}\n"
        f"🎯 Player: {_player_line(trx.player_id, trx.zone_id)}\n"
        f"💵 Total: {rupiah(trx.amount)} via {_q(trx.channel)}"
    )


def admin_stats(counts: Dict[str, int]) -> str:
    lines = [f"📊 <b>Statistik Transaksi</b>\n{DIVIDER}"]
    total = 0
    for status in TransactionStatus:
        count = counts.get(status.value, 0)
        total += count
        lines.append(f"{status_label(status)}: <b>{count}</b>")
    lines.append(f"{DIVIDER}\nTotal: <b>{total}</b>")
    return "\n".join(lines)


def admin_sync_result(trx: Optional[Transaction], ref: str) -> str:
    if trx is None:
        return f"❌ Transaksi <code>{_q(ref)}</code> tidak ditemukan."
    return (
        f"🔄 <b>Sinkronisasi selesai</b>\n\n"
        f"🆔 Ref: <code>{_q(trx.merchant_ref)}</code>\n"
        f"📢 Status: {status_label(trx.status)}\n"
        f"🧾 Gateway ID: <code>{_q(trx.trx_id or '-')}</code>\n"
        f"📦 Provider order: <code>{_q(trx.provider_order_id or '-')}</code>"
    )


def admin_fulfill_failed(trx: Transaction, reason: Optional[str]) -> str:
    return (
        "⚠️ <b>Order Provider Gagal</b>\n\n"
        f"🆔 Ref: <code>{_q(trx.merchant_ref)}</code>\n"
        f"📦 {_q(trx.item)} untuk {_player_line(trx.player_id, trx.zone_id)}\n"
        f"📝 {_q(reason or '-')}"
    )
