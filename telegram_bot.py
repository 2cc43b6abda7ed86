# telegram_bot.py
import html
import logging

from telegram import Update
from telegram.ext import (
    Application,
    CommandHandler,
    ContextTypes,
)

from balance_manager import BalanceFetchError, BalanceManager
from config import BotConfig
from notifier import short_token
from position_manager import PositionStore
from trading_engine import TradingEngine


logger = logging.getLogger(__name__)


class TelegramController:
    def __init__(
        self,
        config: BotConfig,
        engine: TradingEngine,
        balance_manager: BalanceManager,
        store: PositionStore,
    ) -> None:
        self.config = config
        self.engine = engine
        self.balance_manager = balance_manager
        self.store = store

    # --------- handlers ---------

    async def start(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        if not self._is_authorized(update):
            return

        txt = (
            "🚀 <b>Solana Sniper Bot</b>\n\n"
            f"Modo: <code>{self.config.mode}</code>\n"
            f"Activo: <code>{self.engine.is_active()}</code>\n\n"
            "Comandos:\n"
            "• /status – estado del bot\n"
            "• /positions – posiciones abiertas\n"
            "• /balance – balance y tamaño de compra\n"
            "• /emergency – vender todo y pausar\n"
            "• /activate – activar entradas nuevas\n"
            "• /deactivate – pausar entradas\n"
            "• /mode – mostrar modo (SIM/REAL)\n"
        )
        await update.message.reply_text(txt, parse_mode="HTML")

    async def status(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        if not self._is_authorized(update):
            return

        st = self.engine.get_status()
        stats = self.store.stats()
        summary = self.store.summary()
        queue = self.engine.get_queue_info()
        txt = (
            "📊 <b>Status Bot</b>\n\n"
            f"Modo: <code>{self.config.mode}</code>\n"
            f"Activo: <code>{st['active']}</code>\n"
            f"Comprando: <code>{st['is_trading']}</code>\n"
            f"Cola: <code>{queue['size']}/{queue['max_size']}</code>\n"
            f"Posiciones abiertas: <code>{summary['open_positions']}</code>\n"
            f"Compras: <code>{st['trades_executed']}</code> (fallidas {st['trades_failed']})\n"
            f"Cerradas: <code>{stats['closed_positions']}</code>\n"
            f"Win rate: <code>{stats['win_rate']:.1f}%</code>\n"
            f"P&amp;L realizado: <code>{summary['realized_pnl_sol']:+.4f} SOL</code>\n"
            f"P&amp;L abierto: <code>{summary['unrealized_pnl_sol']:+.4f} SOL</code>\n"
        )
        await update.message.reply_text(txt, parse_mode="HTML")

    async def positions(
        self, update: Update, context: ContextTypes.DEFAULT_TYPE
    ) -> None:
        if not self._is_authorized(update):
            return

        rows = self.store.snapshot()
        if not rows:
            await update.message.reply_text("No hay posiciones abiertas.")
            return

        lines = ["🏹 <b>Posiciones abiertas:</b>", ""]
        for p in rows:
            levels = ", ".join(str(i + 1) for i in p["executed_levels"]) or "-"
            lines.append(
                f"• <code>{html.escape(short_token(p['token']))}</code> [{p['status']}]\n"
                f"  Entrada: <code>{p['entry_price']:.10f}</code>\n"
                f"  Último: <code>{p['last_price']:.10f}</code>\n"
                f"  PnL: <code>{p['profit_pct']:+.2f}%</code>\n"
                f"  SL: <code>{p['stop_loss']:.10f}</code>\n"
                f"  Vendido: <code>{p['total_sold_pct']:.1f}%</code> (TP {levels})\n"
                f"  Queda: <code>{p['remaining_amount']:.4f} SOL</code>\n"
            )

        await update.message.reply_text("\n".join(lines), parse_mode="HTML")

    async def balance(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        if not self._is_authorized(update):
            return
        try:
            txt = await self.balance_manager.format_balance_info()
        except BalanceFetchError as exc:
            txt = f"❌ No se pudo leer el balance: {html.escape(str(exc))}"
        await update.message.reply_text(txt, parse_mode="HTML")

    async def emergency(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        if not self._is_authorized(update):
            return
        await update.message.reply_text("🚨 Emergency stop en curso…")
        report = await self.engine.emergency_stop()
        await update.message.reply_text(
            f"🚨 Emergency stop: {report.successful}/{report.total} vendidas, "
            f"{report.failed} fallidas. Entradas pausadas (/activate para reanudar)."
        )

    async def activate(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        if not self._is_authorized(update):
            return
        self.engine.set_active(True)
        await update.message.reply_text("✅ Bot activado (aceptando nuevas entradas).")

    async def deactivate(
        self, update: Update, context: ContextTypes.DEFAULT_TYPE
    ) -> None:
        if not self._is_authorized(update):
            return
        self.engine.set_active(False)
        await update.message.reply_text("⏸ Bot pausado (no entra en nuevos tokens).")

    async def mode(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        if not self._is_authorized(update):
            return
        await update.message.reply_text(
            f"Modo actual: <code>{self.config.mode}</code>", parse_mode="HTML"
        )

    # --------- auth ---------

    def _is_authorized(self, update: Update) -> bool:
        chat = update.effective_chat
        if chat is None:
            return False
        if chat.id in self.config.telegram_chat_ids:
            return True

        # ignorar mensajes de otros chats
        logger.warning("Mensaje de chat no autorizado: %s", chat.id)
        return False


def build_application(config: BotConfig) -> Application:
    return Application.builder().token(config.telegram_bot_token).build()


def install_commands(app: Application, ctrl: TelegramController) -> None:
    app.add_handler(CommandHandler("start", ctrl.start))
    app.add_handler(CommandHandler("status", ctrl.status))
    app.add_handler(CommandHandler("positions", ctrl.positions))
    app.add_handler(CommandHandler("balance", ctrl.balance))
    app.add_handler(CommandHandler("emergency", ctrl.emergency))
    app.add_handler(CommandHandler("activate", ctrl.activate))
    app.add_handler(CommandHandler("deactivate", ctrl.deactivate))
    app.add_handler(CommandHandler("mode", ctrl.mode))
