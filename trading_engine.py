# trading_engine.py
from __future__ import annotations

import asyncio
import logging
import re
import time
from collections import deque
from typing import Any, Deque, Dict, Optional, Set

from balance_manager import BalanceManager
from models import EmergencyDetail, EmergencyReport, TradeDecision, TradeResult
from notifier import Notifier
from position_manager import PositionStore
from price_monitor import is_valid_price

logger = logging.getLogger(__name__)

# mint de Solana: base58, 32-44 caracteres
TOKEN_ADDRESS_RE = re.compile(r"^[1-9A-HJ-NP-Za-km-z]{32,44}$")

EMERGENCY_REASON = "Emergency Stop"


def is_valid_token_address(token: Optional[str]) -> bool:
    return bool(token) and TOKEN_ADDRESS_RE.match(token.strip()) is not None


class TradingEngine:
    """
    Coordinador de ejecución.

    - Una sola compra en vuelo; las señales que llegan mientras tanto van a
      una cola FIFO acotada (si está llena se descarta la más nueva).
    - Antes de comprar consulta el BalanceManager (tamaño y reserva).
    - Tras una compra confirmada registra la posición en el PositionStore y
      arranca el monitor de precios.
    - emergency_stop() vacía la cola, para la entrada de señales y liquida todo.
    - Una compra que sigue esperando al executor tras un emergency stop
      bloquea la cola hasta que vuelve, aunque se reactive la entrada.
    """

    def __init__(
        self,
        balance_manager: BalanceManager,
        executor,
        store: PositionStore,
        price_source,
        notifier: Notifier,
        monitor=None,
        max_queue_size: int = 5,
    ) -> None:
        self.balance_manager = balance_manager
        self.executor = executor
        self.store = store
        self.price_source = price_source
        self.notifier = notifier
        self.monitor = monitor
        self.max_queue_size = max_queue_size

        # token que tiene el "slot" de compra; None = libre
        self._in_flight: Optional[str] = None
        self._queue: Deque[str] = deque()
        self._active: bool = True
        self._tasks: Set[asyncio.Task] = set()
        # compras esperando al executor; sobreviven a un emergency stop
        self._buying: Dict[str, asyncio.Task] = {}

        self.started_at = time.time()
        self.trades_executed = 0
        self.trades_failed = 0
        self.dropped_signals = 0

    # -------------------------------------------------------------------------
    # Entrada de señales
    # -------------------------------------------------------------------------

    async def handle_new_token(self, token: str) -> Optional[TradeResult]:
        """Llamado por el feed de señales (Flintr) con cada mint nuevo."""
        token = (token or "").strip()
        decision = await self.quick_trade_check(token)
        if not decision.should_trade:
            logger.info("[Engine] Ignorando %s: %s", token[:8], decision.reason)
            return None
        return await self.execute_trade(token)

    async def quick_trade_check(self, token: str) -> TradeDecision:
        """Decide si se compraría el token. No compra ni toca la cola."""
        try:
            if not is_valid_token_address(token):
                return TradeDecision(False, "Invalid token address")
            if not self._active:
                return TradeDecision(False, "Trading paused", token)
            if self.store.has_position(token):
                return TradeDecision(False, "Position already open", token)

            check = await self.balance_manager.can_afford()
            if not check.can_trade:
                return TradeDecision(False, check.reason or "Insufficient balance", token)

            buy_amount = await self.balance_manager.get_optimal_buy_amount()
            if buy_amount <= 0:
                return TradeDecision(False, "Buy amount is zero or negative", token)

            min_amount = self.balance_manager.config.min_sol_amount
            if buy_amount < min_amount:
                return TradeDecision(
                    False,
                    f"Buy amount ({buy_amount:.4f} SOL) below minimum ({min_amount} SOL)",
                    token,
                )

            return TradeDecision(True, "All checks passed", token, buy_amount)
        except Exception as exc:
            logger.warning("[Engine] Pre-check falló para %s: %r", (token or "")[:8], exc)
            return TradeDecision(False, f"Pre-check failed: {exc}", token)

    async def can_trade(self, token: str) -> TradeDecision:
        return await self.quick_trade_check(token)

    # -------------------------------------------------------------------------
    # Ejecución
    # -------------------------------------------------------------------------

    async def execute_trade(self, token: str) -> TradeResult:
        token = (token or "").strip()
        if self._in_flight is not None or self._buying:
            queued = False
            if len(self._queue) < self.max_queue_size:
                self._queue.append(token)
                queued = True
                logger.info("📋 [Engine] %s... a la cola (%s)", token[:8], len(self._queue))
            else:
                self.dropped_signals += 1
                logger.info("[Engine] Cola llena, se descarta %s...", token[:8])
            return TradeResult(
                success=False,
                token_address=token,
                error="Trading in progress",
                queued=queued,
            )

        self._in_flight = token
        self._buying[token] = asyncio.current_task()
        try:
            return await self._submit(token)
        except Exception as exc:
            self.trades_failed += 1
            logger.exception("❌ [Engine] Trade falló para %s: %r", token[:8], exc)
            self.notifier.notify_error(f"Trade execution failed: {exc}")
            return TradeResult(success=False, token_address=token, error=str(exc))
        finally:
            self._buying.pop(token, None)
            # sólo lo suelta quien lo tiene (un emergency stop pudo limpiarlo)
            if self._in_flight == token:
                self._in_flight = None
            self._process_queue()

    async def _submit(self, token: str) -> TradeResult:
        decision = await self.quick_trade_check(token)
        if not decision.should_trade:
            logger.info("[Engine] %s descartado: %s", token[:8], decision.reason)
            return TradeResult(success=False, token_address=token, error=decision.reason)

        buy_amount = decision.buy_amount or 0.0
        logger.info("🎯 [Engine] Ejecutando: %.4f SOL -> %s...", buy_amount, token[:8])

        purchased = await self.executor.buy(token, buy_amount)
        if not purchased:
            self.trades_failed += 1
            return TradeResult(
                success=False,
                token_address=token,
                amount=buy_amount,
                error="Purchase failed",
            )

        self.trades_executed += 1
        snapshot = self.balance_manager.cached_snapshot
        percentage = snapshot.percentage_used if snapshot is not None else None
        self.balance_manager.clear_cache()

        price = await self._entry_price(token)
        self.store.add_position(token, price or 0.0, buy_amount)
        self.notifier.notify_token_bought(token, buy_amount, price or 0.0, percentage)
        logger.info("✅ [Engine] Trade completado: %.4f SOL", buy_amount)

        if not self._active:
            # la compra terminó durante un emergency stop
            logger.warning("🚨 [Engine] %s comprado con el bot parado, liquidando.", token[:8])
            await self.store.liquidate(token, EMERGENCY_REASON)
        elif self.monitor is not None:
            self.monitor.ensure_running()

        return TradeResult(
            success=True,
            token_address=token,
            amount=buy_amount,
            price=price,
        )

    async def _entry_price(self, token: str) -> Optional[float]:
        try:
            price = await self.price_source.get_price(token)
        except Exception as exc:
            logger.warning("[Engine] Sin precio de entrada para %s: %r", token[:8], exc)
            return None
        return price if is_valid_price(price) else None

    def _process_queue(self) -> None:
        if not self._queue or self._in_flight is not None or self._buying or not self._active:
            return
        token = self._queue.popleft()
        logger.info("🚀 [Engine] Procesando de la cola: %s...", token[:8])
        task = asyncio.get_running_loop().create_task(self.execute_trade(token))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    # -------------------------------------------------------------------------
    # Control
    # -------------------------------------------------------------------------

    def set_active(self, active: bool) -> None:
        self._active = active
        logger.info("[Engine] Entrada de señales %s", "ACTIVADA" if active else "PAUSADA")
        if active:
            self._process_queue()

    def is_active(self) -> bool:
        return self._active

    def clear_queue(self) -> int:
        cleared = len(self._queue)
        self._queue.clear()
        logger.info("🧹 [Engine] %s tokens eliminados de la cola", cleared)
        return cleared

    async def emergency_stop(self) -> EmergencyReport:
        logger.warning("🚨 [Engine] EMERGENCY STOP iniciado")
        self._active = False
        self._queue.clear()
        self._in_flight = None

        report = EmergencyReport()
        handled: Set[str] = set()

        for token in self.store.tokens():
            handled.add(token)
            try:
                result = await self.store.liquidate(token, EMERGENCY_REASON)
                report.add(EmergencyDetail(token, result.success, result.error))
            except Exception as exc:
                logger.exception("[Engine] Error liquidando %s: %r", token[:8], exc)
                report.add(EmergencyDetail(token, False, str(exc)))

        # posiciones del servicio que no seguimos (compras previas al arranque)
        try:
            remote = await self.executor.list_open_positions()
        except Exception as exc:
            logger.warning("[Engine] No se pudieron listar posiciones remotas: %r", exc)
            remote = None
        for wp in remote or []:
            if wp.token_address in handled:
                continue
            handled.add(wp.token_address)
            try:
                result = await self.executor.sell_token(wp.token_address, 100.0, EMERGENCY_REASON)
                report.add(EmergencyDetail(wp.token_address, result.success, result.error))
            except Exception as exc:
                logger.exception("[Engine] Error vendiendo %s: %r", wp.token_address[:8], exc)
                report.add(EmergencyDetail(wp.token_address, False, str(exc)))

        for token in handled:
            if not self.store.has_position(token):
                self.price_source.forget(token)

        logger.warning(
            "🚨 [Engine] Emergency stop: %s posiciones, %s vendidas, %s fallidas",
            report.total, report.successful, report.failed,
        )
        self.notifier.notify_error(
            f"🚨 Emergency stop executed: {report.successful}/{report.total} positions sold, "
            f"{report.failed} failed. Trading paused."
        )
        return report

    # -------------------------------------------------------------------------
    # Estado
    # -------------------------------------------------------------------------

    def get_status(self) -> Dict[str, Any]:
        return {
            "is_trading": self._in_flight is not None,
            "in_flight": self._in_flight,
            "queue_size": len(self._queue),
            "ready_to_trade": (
                self._active
                and self._in_flight is None
                and len(self._queue) < self.max_queue_size
            ),
            "active": self._active,
            "open_positions": len(self.store),
            "trades_executed": self.trades_executed,
            "trades_failed": self.trades_failed,
            "dropped_signals": self.dropped_signals,
            "uptime_sec": time.time() - self.started_at,
        }

    def get_queue_info(self) -> Dict[str, Any]:
        return {
            "size": len(self._queue),
            "tokens": [f"{t[:8]}..." for t in self._queue],
            "max_size": self.max_queue_size,
        }

    async def health_check(self) -> Dict[str, Any]:
        results = await asyncio.gather(
            self.balance_manager.can_afford(),
            self.executor.health_check(),
            return_exceptions=True,
        )
        balance_ok = not isinstance(results[0], BaseException) and results[0].can_trade
        api_ok = results[1] is True
        healthy = balance_ok and api_ok and self._in_flight is None
        return {
            "healthy": healthy,
            "status": "Ready for trading" if healthy else "Not ready for trading",
            "details": {
                "is_trading": self._in_flight is not None,
                "queue_size": len(self._queue),
                "balance_ok": balance_ok,
                "api_ok": api_ok,
            },
        }

    async def wait_idle(self) -> None:
        """Espera a la compra en vuelo y a las lanzadas desde la cola."""
        current = asyncio.current_task()
        while True:
            pending = {t for t in self._tasks | set(self._buying.values()) if t is not current}
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)
