# position_manager.py
"""
Gestión de riesgo por posición.

Cada tick de precio pasa por update_position(), que en este orden:

1. Stop loss (si salta, vende todo y termina el tick)
2. Mueve el stop a breakeven (una vez)
3. Activa el trailing (una vez)
4. Sube el stop del trailing
5. Escalera de take profit

Todas las transiciones y liquidaciones de un token van bajo su propio lock,
así un tick y el emergency stop nunca venden la misma posición dos veces.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from contextlib import asynccontextmanager
from dataclasses import replace
from typing import Any, AsyncIterator, Dict, List, Optional

from config import RiskConfig
from models import EventKind, ExitRecord, Position, PositionEvent, SellResult
from notifier import Notifier, short_token

logger = logging.getLogger(__name__)


class PositionStore:
    def __init__(
        self,
        risk: RiskConfig,
        executor,
        notifier: Notifier,
        failure_alert_threshold: int = 3,
    ) -> None:
        self.risk = risk
        self.executor = executor
        self.notifier = notifier
        self.failure_alert_threshold = max(1, failure_alert_threshold)

        self._positions: Dict[str, Position] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        # coroutines usando (o esperando) el lock de cada token
        self._lock_users: Dict[str, int] = {}
        self._failures: Dict[str, int] = {}
        self._closed: List[ExitRecord] = []

    # -------------------------------------------------------------------------
    # Registro
    # -------------------------------------------------------------------------

    def add_position(self, token: str, entry_price: float, entry_amount: float) -> Position:
        if token in self._positions:
            logger.warning("[Positions] %s ya estaba registrada, se reemplaza.", token[:8])

        price = entry_price if _valid(entry_price) else 0.0
        position = Position(
            token_address=token,
            entry_price=price,
            entry_amount=entry_amount,
            remaining_amount=entry_amount,
        )
        if price > 0:
            self._set_entry(position, price)
            logger.info(
                "🛡️ [Positions] %s registrada: entrada %.10f, SL %.10f",
                token[:8], price, position.current_stop_loss,
            )
        else:
            logger.info(
                "🛡️ [Positions] %s registrada sin precio, se fija en el primer tick.",
                token[:8],
            )

        self._positions[token] = position
        self._failures.pop(token, None)
        return position

    def remove_position(self, token: str) -> Optional[Position]:
        position = self._positions.pop(token, None)
        self._failures.pop(token, None)
        if not self._lock_users.get(token):
            self._locks.pop(token, None)
        return position

    def get_position(self, token: str) -> Optional[Position]:
        position = self._positions.get(token)
        if position is None:
            return None
        return replace(position, executed_levels=set(position.executed_levels))

    def has_position(self, token: str) -> bool:
        return token in self._positions

    def tokens(self) -> List[str]:
        return list(self._positions)

    def __len__(self) -> int:
        return len(self._positions)

    @asynccontextmanager
    async def _token_lock(self, token: str) -> AsyncIterator[None]:
        """Lock por token. Se libera del dict cuando nadie lo usa y el token ya no está abierto."""
        lock = self._locks.get(token)
        if lock is None:
            lock = self._locks[token] = asyncio.Lock()
        self._lock_users[token] = self._lock_users.get(token, 0) + 1
        try:
            async with lock:
                yield
        finally:
            users = self._lock_users[token] - 1
            if users:
                self._lock_users[token] = users
            else:
                del self._lock_users[token]
                if token not in self._positions:
                    self._locks.pop(token, None)

    def _set_entry(self, position: Position, price: float) -> None:
        position.entry_price = price
        position.highest_price = price
        position.last_price = price
        position.current_stop_loss = price * (1 - self.risk.initial_stop_loss_pct / 100.0)

    # -------------------------------------------------------------------------
    # Máquina de estados
    # -------------------------------------------------------------------------

    async def update_position(self, token: str, price: float) -> List[PositionEvent]:
        if token not in self._positions:
            return []
        if not _valid(price):
            logger.warning("[Positions] Precio inválido para %s: %r", token[:8], price)
            return []

        async with self._token_lock(token):
            position = self._positions.get(token)
            if position is None:
                # liquidada mientras esperábamos el lock
                return []
            return await self._transition(position, price)

    async def _transition(self, position: Position, price: float) -> List[PositionEvent]:
        token = position.token_address
        events: List[PositionEvent] = []

        if not position.has_entry_price:
            self._set_entry(position, price)
            logger.info("📌 [Positions] Precio de entrada de %s fijado en %.10f", token[:8], price)
            events.append(
                PositionEvent(
                    kind=EventKind.ENTRY_SET,
                    token_address=token,
                    price=price,
                    stop_loss=position.current_stop_loss,
                )
            )
            return events

        if price > position.highest_price:
            position.highest_price = price
        position.last_price = price
        profit = position.profit_pct(price)

        # 1) stop loss
        if price <= position.current_stop_loss:
            events.append(await self._stop_loss(position, price, profit))
            return events

        # 2) breakeven
        risk = self.risk
        if (
            risk.breakeven_enabled
            and not position.is_breakeven_moved
            and profit >= risk.breakeven_trigger_profit_pct
        ):
            floor = position.entry_price * (1 + risk.breakeven_offset_pct / 100.0)
            position.current_stop_loss = max(position.current_stop_loss, floor)
            position.is_breakeven_moved = True
            logger.info(
                "🛡️ [Positions] Breakeven %s: +%.2f%%, SL -> %.10f",
                token[:8], profit, position.current_stop_loss,
            )
            self.notifier.notify_breakeven_moved(token, profit, risk.breakeven_offset_pct)
            events.append(
                PositionEvent(
                    kind=EventKind.BREAKEVEN_MOVED,
                    token_address=token,
                    price=price,
                    profit_pct=profit,
                    stop_loss=position.current_stop_loss,
                )
            )

        # 3) activación del trailing
        if (
            risk.trailing_enabled
            and not position.is_trailing_active
            and profit >= risk.trailing_activation_profit_pct
        ):
            position.is_trailing_active = True
            logger.info("🚀 [Positions] Trailing activado en %s: +%.2f%%", token[:8], profit)
            self.notifier.notify_trailing_activated(token, profit, risk.trailing_distance_pct)
            events.append(
                PositionEvent(
                    kind=EventKind.TRAILING_ACTIVATED,
                    token_address=token,
                    price=price,
                    profit_pct=profit,
                )
            )

        # 4) el trailing sólo sube el stop
        if position.is_trailing_active:
            candidate = position.highest_price * (1 - risk.trailing_distance_pct / 100.0)
            if candidate > position.current_stop_loss:
                position.current_stop_loss = candidate
                logger.debug("[Positions] Trailing %s: SL -> %.10f", token[:8], candidate)
                events.append(
                    PositionEvent(
                        kind=EventKind.TRAILING_UPDATED,
                        token_address=token,
                        price=price,
                        profit_pct=profit,
                        stop_loss=candidate,
                    )
                )

        # 5) take profit
        if risk.take_profit_enabled:
            events.extend(await self._take_profits(position, price, profit))

        return events

    async def _stop_loss(self, position: Position, price: float, profit: float) -> PositionEvent:
        token = position.token_address
        reason = "Trailing Stop Loss" if position.is_trailing_active else "Stop Loss"
        logger.info(
            "🛑 [Positions] %s en %s: precio %.10f <= SL %.10f (%.2f%%)",
            reason, token[:8], price, position.current_stop_loss, profit,
        )

        result = await self.executor.sell_token(token, 100.0, reason)
        if not result.success:
            self._sell_failed(token, reason, result.error)
            return PositionEvent(
                kind=EventKind.STOP_LOSS_FAILED,
                token_address=token,
                price=price,
                profit_pct=profit,
                stop_loss=position.current_stop_loss,
                reason=reason,
                error=result.error,
            )

        pnl_sol = position.remaining_amount * profit / 100.0
        sold_pct = 100.0 - position.total_sold_pct
        self._close(position, reason, pnl_sol)
        self.notifier.notify_token_sold(token, reason, profit, pnl_sol, price)
        return PositionEvent(
            kind=EventKind.STOP_LOSS,
            token_address=token,
            price=price,
            profit_pct=profit,
            sold_pct=sold_pct,
            pnl_sol=pnl_sol,
            stop_loss=position.current_stop_loss,
            reason=reason,
        )

    async def _take_profits(
        self, position: Position, price: float, profit: float
    ) -> List[PositionEvent]:
        token = position.token_address
        events: List[PositionEvent] = []

        for index, level in enumerate(self.risk.take_profit_levels):
            if index in position.executed_levels or profit < level.profit_pct:
                continue

            left_pct = 100.0 - position.total_sold_pct
            if left_pct <= 0:
                break
            sell_pct = min(level.sell_pct, left_pct)
            # el servicio vende un % de lo que queda, no del total inicial
            service_pct = min(100.0, sell_pct / left_pct * 100.0)
            reason = f"Take Profit {index + 1}: {level.label}" if level.label else f"Take Profit {index + 1}"

            logger.info(
                "🎯 [Positions] %s en %s: +%.2f%% >= %.2f%%, vendiendo %.2f%%",
                reason, token[:8], profit, level.profit_pct, sell_pct,
            )
            result: SellResult = await self.executor.sell_token(token, service_pct, reason)

            if not result.success:
                self._sell_failed(token, reason, result.error)
                events.append(
                    PositionEvent(
                        kind=EventKind.TAKE_PROFIT_FAILED,
                        token_address=token,
                        price=price,
                        profit_pct=profit,
                        level_index=index,
                        sold_pct=sell_pct,
                        reason=reason,
                        error=result.error,
                    )
                )
                # este nivel se reintenta en el próximo tick; los demás siguen
                continue

            self._failures.pop(token, None)
            pnl_sol = position.entry_amount * sell_pct / 100.0 * profit / 100.0
            position.executed_levels.add(index)
            position.total_sold_pct = min(100.0, position.total_sold_pct + sell_pct)
            position.remaining_amount = position.entry_amount * (1 - position.total_sold_pct / 100.0)
            position.realized_pnl_sol += pnl_sol

            self.notifier.notify_token_sold(token, reason, profit, pnl_sol, price)
            events.append(
                PositionEvent(
                    kind=EventKind.TAKE_PROFIT,
                    token_address=token,
                    price=price,
                    profit_pct=profit,
                    level_index=index,
                    sold_pct=sell_pct,
                    pnl_sol=pnl_sol,
                    reason=reason,
                )
            )

            if position.total_sold_pct >= self.risk.full_exit_threshold_pct:
                position.remaining_amount = 0.0
                self._record_exit(position, "Take profit ladder complete")
                self.remove_position(token)
                logger.info("🏁 [Positions] %s vendida por completo en la escalera.", token[:8])
                events.append(
                    PositionEvent(
                        kind=EventKind.CLOSED,
                        token_address=token,
                        price=price,
                        profit_pct=profit,
                        sold_pct=100.0,
                        pnl_sol=position.realized_pnl_sol,
                        reason="Take profit ladder complete",
                    )
                )
                break

        return events

    # -------------------------------------------------------------------------
    # Cierre / fallos
    # -------------------------------------------------------------------------

    def _close(self, position: Position, reason: str, pnl_sol: float) -> None:
        position.realized_pnl_sol += pnl_sol
        position.total_sold_pct = 100.0
        position.remaining_amount = 0.0
        self._record_exit(position, reason)
        self.remove_position(position.token_address)

    def _record_exit(self, position: Position, reason: str) -> None:
        self._closed.append(
            ExitRecord(
                token_address=position.token_address,
                reason=reason,
                entry_amount=position.entry_amount,
                realized_pnl_sol=position.realized_pnl_sol,
            )
        )

    def _sell_failed(self, token: str, what: str, error: Optional[str]) -> None:
        count = self._failures.get(token, 0) + 1
        self._failures[token] = count
        logger.error(
            "❌ [Positions] %s falló en %s (intento %s): %s",
            what, token[:8], count, error,
        )
        if count == 1:
            self.notifier.notify_error(f"{what} failed for {short_token(token)}: {error}")
        elif count == self.failure_alert_threshold:
            self.notifier.notify_error(
                f"{what} for {short_token(token)} failed {count} times in a row, "
                "position still open: check the execution service"
            )

    def failure_count(self, token: str) -> int:
        return self._failures.get(token, 0)

    async def liquidate(self, token: str, reason: str) -> SellResult:
        """Vende el 100% de la posición. Si ya no existe, no hace nada."""
        if token not in self._positions:
            return SellResult(success=True)

        async with self._token_lock(token):
            position = self._positions.get(token)
            if position is None:
                return SellResult(success=True)

            result = await self.executor.sell_token(token, 100.0, reason)
            if not result.success:
                self._sell_failed(token, reason, result.error)
                return result

            price = position.last_price
            profit = position.profit_pct(price) if price > 0 else 0.0
            pnl_sol = position.remaining_amount * profit / 100.0
            self._close(position, reason, pnl_sol)
            self.notifier.notify_token_sold(token, reason, profit, pnl_sol, price)
            return result

    # -------------------------------------------------------------------------
    # Vistas
    # -------------------------------------------------------------------------

    def snapshot(self) -> List[Dict[str, Any]]:
        now = time.time()
        rows: List[Dict[str, Any]] = []
        for p in self._positions.values():
            rows.append(
                {
                    "token": p.token_address,
                    "entry_price": p.entry_price,
                    "last_price": p.last_price,
                    "profit_pct": p.profit_pct(p.last_price) if p.last_price > 0 else 0.0,
                    "stop_loss": p.current_stop_loss,
                    "highest_price": p.highest_price,
                    "entry_amount": p.entry_amount,
                    "remaining_amount": p.remaining_amount,
                    "total_sold_pct": p.total_sold_pct,
                    "executed_levels": sorted(p.executed_levels),
                    "status": p.status_label,
                    "age_sec": now - p.entry_time,
                }
            )
        return rows

    def summary(self) -> Dict[str, Any]:
        invested = 0.0
        remaining = 0.0
        unrealized = 0.0
        realized_open = 0.0
        for p in self._positions.values():
            invested += p.entry_amount
            remaining += p.remaining_amount
            realized_open += p.realized_pnl_sol
            if p.has_entry_price and p.last_price > 0:
                unrealized += p.remaining_amount * p.profit_pct(p.last_price) / 100.0
        return {
            "open_positions": len(self._positions),
            "invested_sol": invested,
            "remaining_sol": remaining,
            "unrealized_pnl_sol": unrealized,
            "realized_pnl_sol": realized_open + sum(r.realized_pnl_sol for r in self._closed),
        }

    def stats(self) -> Dict[str, Any]:
        closed = len(self._closed)
        wins = sum(1 for r in self._closed if r.realized_pnl_sol > 0)
        losses = sum(1 for r in self._closed if r.realized_pnl_sol < 0)
        return {
            "closed_positions": closed,
            "wins": wins,
            "losses": losses,
            "win_rate": (wins / closed * 100.0) if closed else 0.0,
            "realized_pnl_sol": sum(r.realized_pnl_sol for r in self._closed),
        }

    def closed_positions(self) -> List[ExitRecord]:
        return list(self._closed)


def _valid(price: Optional[float]) -> bool:
    return price is not None and math.isfinite(price) and price > 0
