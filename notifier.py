# notifier.py
"""
Notificaciones salientes (Telegram).

- Todas las notify_* son "fire-and-forget": formatean el mensaje y programan
  el envío como tarea en el event loop. Nunca lanzan ni bloquean al caller.
- Si Telegram no está configurado se usa LoggingNotifier (sólo logs).
"""

from __future__ import annotations

import asyncio
import html
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional, Set

from telegram import Bot
from telegram.error import TelegramError

logger = logging.getLogger(__name__)

TOKEN_BOUGHT_TEMPLATE = (
    "🎯 GEM SNIPED! 💎\n"
    "💰 Amount: {amount} SOL ({percentage}% of balance)\n"
    "🪙 Token: {token}\n"
    "💲 Entry: ${price}\n"
    "🔗 {links}"
)
TOKEN_SOLD_TEMPLATE = (
    "💸 GEM SOLD! 🚀\n"
    "📊 Reason: {reason}\n"
    "💰 P&L: {pnl}% ({pnl_sol} SOL)\n"
    "🪙 Token: {token}\n"
    "💲 Exit: ${price}"
)
BREAKEVEN_TEMPLATE = (
    "🛡️ BREAKEVEN PROTECTION ACTIVE!\n"
    "🪙 Token: {token}\n"
    "📈 Profit: {profit}%\n"
    "🔒 Protected: {new_sl}%"
)
TRAILING_TEMPLATE = (
    "🚀 TRAILING STOP ENGAGED!\n"
    "🪙 Token: {token}\n"
    "📈 Profit: {profit}%\n"
    "📉 Trailing: {distance}%"
)
ERROR_TEMPLATE = "❌ SNIPER ERROR\n{error_message}"
BALANCE_WARNING_TEMPLATE = "⚠️ BALANCE ALERT\n💰 Balance: {balance} SOL\n📉 Issue: {reason}"


def short_token(token: str) -> str:
    if len(token) <= 12:
        return token
    return f"{token[:8]}...{token[-4:]}"


def token_links(token: str) -> str:
    links = [
        f'🔗 <a href="https://gmgn.ai/sol/token/{token}">GMGN</a>',
        f'📊 <a href="https://neo.bullx.io/terminal?chainId=1399811149&address={token}">BullX</a>',
        f'🔍 <a href="https://solscan.io/token/{token}">Solscan</a>',
    ]
    return " | ".join(links)


class Notifier(ABC):
    """Formatea los eventos; las subclases deciden cómo entregar el texto."""

    def notify_token_bought(
        self,
        token: str,
        amount: float,
        price: float,
        percentage: Optional[float] = None,
    ) -> None:
        pct = f"{percentage:.1f}" if percentage is not None else "N/A"
        msg = TOKEN_BOUGHT_TEMPLATE.format(
            amount=f"{amount:.4f}",
            percentage=pct,
            token=f"<code>{short_token(token)}</code>",
            price=f"{price:.8f}",
            links=token_links(token),
        )
        self._deliver(msg)

    def notify_token_sold(
        self,
        token: str,
        reason: str,
        pnl_pct: float,
        pnl_sol: float,
        price: float,
    ) -> None:
        emoji = "💚" if pnl_pct >= 0 else "❌"
        msg = TOKEN_SOLD_TEMPLATE.format(
            reason=html.escape(reason),
            pnl=f"{pnl_pct:.2f}",
            pnl_sol=f"{pnl_sol:.4f}",
            token=f"<code>{short_token(token)}</code>",
            price=f"{price:.8f}",
        )
        self._deliver(f"{emoji} {msg}")

    def notify_breakeven_moved(self, token: str, profit_pct: float, offset_pct: float) -> None:
        self._deliver(
            BREAKEVEN_TEMPLATE.format(
                token=f"<code>{short_token(token)}</code>",
                profit=f"{profit_pct:.2f}",
                new_sl=f"{offset_pct:.2f}",
            )
        )

    def notify_trailing_activated(
        self, token: str, profit_pct: float, distance_pct: float
    ) -> None:
        self._deliver(
            TRAILING_TEMPLATE.format(
                token=f"<code>{short_token(token)}</code>",
                profit=f"{profit_pct:.2f}",
                distance=f"{distance_pct:.2f}",
            )
        )

    def notify_error(self, message: str) -> None:
        self._deliver(ERROR_TEMPLATE.format(error_message=html.escape(message)))

    def notify_balance_warning(
        self,
        balance: float,
        reason: str,
        trading_balance: Optional[float] = None,
        next_buy_amount: Optional[float] = None,
    ) -> None:
        msg = BALANCE_WARNING_TEMPLATE.format(
            balance=f"{balance:.4f}", reason=html.escape(reason)
        )
        if trading_balance is not None:
            msg += f"\n📊 Trading Balance: {trading_balance:.4f} SOL"
        if next_buy_amount is not None:
            msg += f"\n🎯 Next Buy Amount: {next_buy_amount:.4f} SOL"
        self._deliver(msg)

    def notify_balance_status(
        self,
        balance: float,
        trading_balance: float,
        next_buy_amount: float,
        estimated_trades: int,
        buy_mode: str,
        percentage: Optional[float] = None,
        open_positions: Optional[int] = None,
    ) -> None:
        msg = "💰 <b>BALANCE STATUS UPDATE</b>\n\n"
        msg += f"📊 Total Balance: {balance:.4f} SOL\n"
        msg += f"🎯 Trading Balance: {trading_balance:.4f} SOL\n"
        msg += f"💸 Next Buy Amount: {next_buy_amount:.4f} SOL\n"
        msg += f"🔢 Estimated Trades: {estimated_trades}\n"
        msg += f"⚙️ Buy Mode: {buy_mode.upper()}"
        if buy_mode == "percentage" and percentage:
            msg += f" ({percentage:g}%)"
        if open_positions is not None:
            msg += f"\n📂 Open Positions: {open_positions}"
        msg += f"\n\n⏰ {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}"
        self._deliver(msg)

    def notify_text(self, text: str) -> None:
        self._deliver(text)

    # ------------------------------------------------------------------

    @abstractmethod
    def _deliver(self, text: str) -> None:
        ...

    async def drain(self) -> None:
        """Espera a que terminen los envíos pendientes (útil al apagar)."""
        return None


class LoggingNotifier(Notifier):
    """Sin Telegram: los mensajes sólo van al log."""

    def _deliver(self, text: str) -> None:
        logger.info("[Notify] %s", text.replace("\n", " | "))


class TelegramNotifier(Notifier):
    def __init__(self, bot: Bot, chat_ids: List[int], timeout: float = 10.0) -> None:
        self.bot = bot
        self.chat_ids = list(chat_ids)
        self.timeout = timeout
        self._pending: Set[asyncio.Task] = set()

        if not self.chat_ids:
            logger.warning("[Telegram] TELEGRAM_CHAT_IDS vacío, no se enviarán notificaciones.")

    def _deliver(self, text: str) -> None:
        if not self.chat_ids:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("[Telegram] Sin event loop activo, mensaje descartado.")
            return

        task = loop.create_task(self._send_all(text))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _send_all(self, text: str) -> int:
        results = await asyncio.gather(
            *(self._send(chat_id, text) for chat_id in self.chat_ids)
        )
        return sum(1 for ok in results if ok)

    async def _send(self, chat_id: int, text: str) -> bool:
        try:
            await asyncio.wait_for(
                self.bot.send_message(
                    chat_id=chat_id,
                    text=text,
                    parse_mode="HTML",
                    disable_web_page_preview=True,
                ),
                timeout=self.timeout,
            )
            return True
        except (TelegramError, asyncio.TimeoutError) as exc:
            logger.warning("[Telegram] Error enviando a %s: %r", chat_id, exc)
            return False

    async def drain(self) -> None:
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
