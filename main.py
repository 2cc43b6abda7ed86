# main.py
import asyncio
import logging
import signal
import threading
from typing import Set

from dotenv import load_dotenv

from balance_manager import BalanceManager, RpcBalanceSource
from config import BotConfig, load_config
from flintr_client import FlintrClient
from health_server import HealthServer, build_health_app
from notifier import LoggingNotifier, TelegramNotifier
from position_manager import PositionStore
from price_monitor import DexScreenerPriceSource, PositionMonitor
from sniperoo_client import PaperExecutor, SniperooClient
from status_reporter import StatusReporter
from telegram_bot import TelegramController, build_application, install_commands
from trading_engine import TradingEngine

logger = logging.getLogger("main")


async def run(config: BotConfig) -> None:
    loop = asyncio.get_running_loop()

    # -------------------------------------------------------------------------
    # Executor + fuente de balance
    # -------------------------------------------------------------------------
    if config.is_simulation:
        executor = PaperExecutor(config.sim_start_balance_sol)
        logger.info("🧪 MODE=simulation: balance virtual %.4f SOL", config.sim_start_balance_sol)
    else:
        executor = SniperooClient(
            config.sniperoo_api_key,
            config.sniperoo_pubkey,
            base_url=config.sniperoo_base_url,
        )

    if not config.is_simulation and config.helius_rpc_url:
        balance_source = RpcBalanceSource(config.helius_rpc_url, config.sniperoo_pubkey)
    else:
        balance_source = executor

    # -------------------------------------------------------------------------
    # Telegram (notificaciones + comandos)
    # -------------------------------------------------------------------------
    app = None
    if config.telegram_bot_token:
        app = build_application(config)
        await app.initialize()
        notifier = TelegramNotifier(app.bot, config.telegram_chat_ids)
    else:
        logger.warning("TELEGRAM_BOT_TOKEN no configurado, notificaciones sólo en log.")
        notifier = LoggingNotifier()

    # -------------------------------------------------------------------------
    # Núcleo
    # -------------------------------------------------------------------------
    price_source = DexScreenerPriceSource(
        notifier, failure_alert_threshold=config.failure_alert_threshold
    )
    balance_manager = BalanceManager(config.buy, balance_source)
    store = PositionStore(
        config.risk,
        executor,
        notifier,
        failure_alert_threshold=config.failure_alert_threshold,
    )
    monitor = PositionMonitor(store, price_source, config.price_check_interval_sec)
    engine = TradingEngine(
        balance_manager,
        executor,
        store,
        price_source,
        notifier,
        monitor=monitor,
        max_queue_size=config.max_queue_size,
    )
    reporter = StatusReporter(
        balance_manager,
        store,
        notifier,
        status_interval=config.status_report_interval_sec,
        balance_interval=config.balance_check_interval_sec,
    )
    health = HealthServer(
        build_health_app(engine, balance_manager, store, mode=config.mode),
        port=config.health_port,
    )

    # -------------------------------------------------------------------------
    # Señales del sistema
    # -------------------------------------------------------------------------
    stop_event = asyncio.Event()
    background: Set[asyncio.Task] = set()
    # señales de Flintr en curso; al apagar se esperan, no se cancelan
    signals: Set[asyncio.Task] = set()

    def spawn(coro) -> None:
        task = loop.create_task(coro)
        background.add(task)
        task.add_done_callback(background.discard)

    def on_emergency() -> None:
        logger.warning("🚨 SIGUSR1 recibido: emergency stop")
        spawn(engine.emergency_stop())

    def on_report() -> None:
        logger.info("📊 SIGUSR2 recibido: reporte de estado")
        spawn(reporter.report_now())

    loop.add_signal_handler(signal.SIGINT, stop_event.set)
    loop.add_signal_handler(signal.SIGTERM, stop_event.set)
    loop.add_signal_handler(signal.SIGUSR1, on_emergency)
    loop.add_signal_handler(signal.SIGUSR2, on_report)

    # -------------------------------------------------------------------------
    # Flintr WebSocket en un thread aparte
    # -------------------------------------------------------------------------
    flintr = None
    if config.flintr_api_key:

        def track_signal(mint: str) -> None:
            task = loop.create_task(engine.handle_new_token(mint))
            signals.add(task)
            task.add_done_callback(signals.discard)

        def on_mint(mint: str) -> None:
            # llamado desde el thread de Flintr
            loop.call_soon_threadsafe(track_signal, mint)

        flintr = FlintrClient(config.flintr_api_key, on_mint=on_mint)

        def flintr_thread() -> None:
            logger.info("🚀 Flintr WebSocket thread iniciado...")
            flintr.run_forever()

        threading.Thread(target=flintr_thread, daemon=True).start()
    else:
        logger.warning("FLINTR_API_KEY no configurado, sin señales de tokens nuevos.")

    # -------------------------------------------------------------------------
    # Arranque
    # -------------------------------------------------------------------------
    health.start()
    reporter.start()
    if app is not None:
        install_commands(app, TelegramController(config, engine, balance_manager, store))
        await app.start()
        await app.updater.start_polling(drop_pending_updates=True)
        logger.info("✅ Telegram bot arrancando (polling)...")

    notifier.notify_text(
        f"🚀 Sniper bot started\nMode: <b>{config.mode.upper()}</b>\n"
        f"Buy mode: {config.buy.buy_mode}"
    )
    spawn(reporter.report_now())

    try:
        await stop_event.wait()
    finally:
        logger.info("⏹️  Apagando...")
        if flintr is not None:
            flintr.stop()
        await reporter.stop()
        await monitor.stop()
        if signals:
            await asyncio.gather(*list(signals), return_exceptions=True)
        await engine.wait_idle()
        for task in list(background):
            task.cancel()
        if app is not None:
            await app.updater.stop()
            await app.stop()
        await notifier.drain()
        if app is not None:
            await app.shutdown()
        await health.stop()
        await price_source.close()
        await executor.close()
        if isinstance(balance_source, RpcBalanceSource):
            await balance_source.close()
        logger.info("👋 Bot detenido.")


def main() -> None:
    # Localmente lee .env; en Railway usas variables de entorno directas
    load_dotenv()

    config = load_config()

    # Logging global
    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    if not config.is_simulation:
        if not config.sniperoo_api_key:
            raise RuntimeError("SNIPEROO_API_KEY no configurado")
        if not config.sniperoo_pubkey:
            raise RuntimeError("SNIPEROO_PUBKEY no configurado")

    try:
        asyncio.run(run(config))
    except KeyboardInterrupt:
        logger.info("⏹️  Bot detenido por el usuario (Ctrl+C).")


if __name__ == "__main__":
    main()
