# status_reporter.py
"""
Reportes periódicos al operador.

- Cada 30 min: estado del balance y de las posiciones.
- Cada 5 min: avisos de balance bajo / crítico.
"""

from __future__ import annotations

import asyncio
import logging
from typing import List

from balance_manager import BalanceFetchError, BalanceManager
from notifier import Notifier
from position_manager import PositionStore

logger = logging.getLogger(__name__)


class StatusReporter:
    def __init__(
        self,
        balance_manager: BalanceManager,
        store: PositionStore,
        notifier: Notifier,
        *,
        status_interval: float = 1800.0,
        balance_interval: float = 300.0,
    ) -> None:
        self.balance_manager = balance_manager
        self.store = store
        self.notifier = notifier
        self.status_interval = status_interval
        self.balance_interval = balance_interval

        self._tasks: List[asyncio.Task] = []

    async def report_now(self) -> bool:
        """Manda el estado actual (también lo usa SIGUSR2 y /status)."""
        try:
            snap = await self.balance_manager.get_balance(force_refresh=True)
        except BalanceFetchError as exc:
            logger.error("❌ [Status] No se pudo obtener el balance: %s", exc)
            self.notifier.notify_error(f"Status report failed: {exc}")
            return False

        self.notifier.notify_balance_status(
            balance=snap.total_balance,
            trading_balance=snap.available_for_trading,
            next_buy_amount=snap.next_buy_amount,
            estimated_trades=snap.estimated_trades,
            buy_mode=snap.sizing_mode.value,
            percentage=self.balance_manager.config.balance_percentage,
            open_positions=len(self.store),
        )

        summary = self.store.summary()
        if summary["open_positions"]:
            self.notifier.notify_text(
                "📂 <b>Open positions</b>\n"
                f"Count: {summary['open_positions']}\n"
                f"Invested: {summary['invested_sol']:.4f} SOL\n"
                f"Unrealized P&L: {summary['unrealized_pnl_sol']:+.4f} SOL\n"
                f"Realized P&L: {summary['realized_pnl_sol']:+.4f} SOL"
            )
        logger.info(
            "📊 [Status] Balance %.4f SOL, %s posiciones abiertas",
            snap.total_balance, summary["open_positions"],
        )
        return True

    # -------------------------------------------------------------------------
    # Bucles
    # -------------------------------------------------------------------------

    def start(self) -> None:
        loop = asyncio.get_running_loop()
        self._tasks = [
            loop.create_task(self._every(self.status_interval, self.report_now, "status")),
            loop.create_task(
                self._every(
                    self.balance_interval,
                    lambda: self.balance_manager.check_balance_warnings(self.notifier),
                    "balance",
                )
            ),
        ]
        logger.info(
            "[Status] Reportes cada %.0fs, avisos de balance cada %.0fs",
            self.status_interval, self.balance_interval,
        )

    async def _every(self, interval: float, job, name: str) -> None:
        while True:
            try:
                await asyncio.sleep(interval)
                await job()
            except asyncio.CancelledError:
                break
            except Exception as exc:
                logger.exception("[Status] Error en bucle %s: %r", name, exc)

    async def stop(self) -> None:
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._tasks)
