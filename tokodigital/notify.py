# notify.py
"""
Outbound chat messages to buyers.

Delivery is best effort: a notifier never raises, it logs and reports False.
The order state it talks about is already committed when it is called.
"""
from __future__ import annotations
import logging
from abc import ABC, abstractmethod
from typing import Optional

import httpx

from . import config
from .helpers import escape_html, format_idr
from .infra.timings import timeit

log = logging.getLogger(__name__)

TELEGRAM_API = "https://api.telegram.org"


class Notifier(ABC):
    @abstractmethod
    async def send_message(self, buyer_id: str, text: str,
                           html: bool = True) -> bool: ...


class LogNotifier(Notifier):
    """Used when no bot token is configured (local runs, CLI)."""

    async def send_message(self, buyer_id: str, text: str,
                           html: bool = True) -> bool:
        log.info("message to %s (not sent, no bot token): %s",
                 buyer_id, text.replace("\n", " | "))
        return True


class TelegramNotifier(Notifier):
    def __init__(self, http: httpx.AsyncClient, token: str,
                 timeout: float = 10.0) -> None:
        self.http = http
        self.token = token
        self.timeout = timeout

    async def send_message(self, buyer_id: str, text: str,
                           html: bool = True) -> bool:
        payload = {
            "chat_id": buyer_id,
            "text": text,
            "disable_web_page_preview": True,
        }
        if html:
            payload["parse_mode"] = "HTML"
        try:
            async with timeit("notify.telegram"):
                r = await self.http.post(
                    f"{TELEGRAM_API}/bot{self.token}/sendMessage",
                    json=payload, timeout=self.timeout,
                )
        except httpx.HTTPError as e:
            log.warning("telegram sendMessage to %s failed: %r", buyer_id, e)
            return False
        if r.status_code != 200:
            log.warning("telegram sendMessage to %s: HTTP %s %s",
                        buyer_id, r.status_code, r.text[:200])
            return False
        return True


def new_notifier(http: httpx.AsyncClient,
                 token: Optional[str] = None) -> Notifier:
    token = config.TELEGRAM_BOT_TOKEN if token is None else token
    if not token:
        return LogNotifier()
    return TelegramNotifier(http, token)


# ----------------------------
# Buyer messages
# ----------------------------
def msg_delivered(order_id: str, product_name: str, price_idr: int,
                  payload: str) -> str:
    return (
        "🎉 <b>Pembayaran Berhasil!</b>\n\n"
        f"🛍️ <b>Produk:</b> {escape_html(product_name)}\n"
        f"💰 <b>Total:</b> {format_idr(price_idr)}\n"
        f"🆔 <b>Order ID:</b> <code>{escape_html(order_id)}</code>\n\n"
        "🎁 <b>Data Produk Anda:</b>\n"
        f"<pre><code>{escape_html(payload)}</code></pre>\n\n"
        "✨ <b>Terima kasih telah berbelanja!</b>\n\n"
        "💡 <b>Tips:</b>\n"
        "• Simpan data ini dengan aman\n"
        "• Jangan bagikan ke orang lain\n"
        "• Hubungi admin jika ada masalah"
    )


def msg_no_stock(order_id: str, product_name: str, price_idr: int,
                 admin_contact: str = config.ADMIN_CONTACT) -> str:
    return (
        "✅ <b>Pembayaran Berhasil!</b>\n\n"
        f"🛍️ <b>Produk:</b> {escape_html(product_name)}\n"
        f"💰 <b>Total:</b> {format_idr(price_idr)}\n\n"
        "❌ <b>Stok Kosong:</b>\n"
        "Mohon maaf, stok produk sedang habis.\n"
        "Admin sudah diberi tahu dan akan segera mengirim pesanan Anda.\n\n"
        f"🆔 <b>Order ID:</b> <code>{escape_html(order_id)}</code>\n"
        f"📞 Kontak admin: {escape_html(admin_contact)}"
    )


def msg_order_removed(order_id: str, product_name: str, price_idr: int,
                      reason: str,
                      admin_contact: str = config.ADMIN_CONTACT) -> str:
    return (
        "🗑️ <b>Pesanan Dihapus</b>\n\n"
        f"🛍️ <b>Produk:</b> {escape_html(product_name)}\n"
        f"🆔 <b>Order ID:</b> <code>{escape_html(order_id)}</code>\n"
        f"💰 <b>Total:</b> {format_idr(price_idr)}\n\n"
        f"❌ <b>Alasan:</b> {escape_html(reason)}\n\n"
        "💡 <b>Silakan pesan ulang produk yang sama jika masih "
        "membutuhkan.</b>\n\n"
        f"📞 <b>Kontak Admin:</b> {escape_html(admin_contact)}"
    )
