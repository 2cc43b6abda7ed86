# balance_manager.py
"""
Balance de la wallet y tamaño de la próxima compra.

- get_balance() cachea el snapshot unos segundos para no saturar el RPC.
- Calcula la compra en modo fixed o percentage (con min/max).
- can_afford() explica por qué no se puede operar.
- get_health() clasifica el balance en healthy / warning / critical.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Dict, List, Optional, Protocol, Tuple

from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Confirmed
from solders.pubkey import Pubkey

from config import BuyConfig
from models import (
    AffordCheck,
    BalanceHealth,
    BalanceSnapshot,
    HealthStatus,
    SizingMode,
)

logger = logging.getLogger(__name__)

LAMPORTS_PER_SOL = 1_000_000_000

# Por debajo de esto la compra probablemente no compensa las fees
MIN_EFFECTIVE_BUY_SOL = 0.005


class BalanceFetchError(RuntimeError):
    pass


class BalanceSource(Protocol):
    async def get_wallet_balance(self) -> Optional[float]:
        ...


class RpcBalanceSource:
    """Balance en SOL leído directamente del RPC (Helius) con getBalance."""

    def __init__(self, rpc_url: str, wallet_pubkey: str) -> None:
        self._client = AsyncClient(rpc_url, commitment=Confirmed)
        self._pubkey = Pubkey.from_string(wallet_pubkey)

    async def get_wallet_balance(self) -> Optional[float]:
        try:
            resp = await self._client.get_balance(self._pubkey)
        except Exception as exc:
            logger.warning("[Balance] Error RPC getBalance: %r", exc)
            return None
        return resp.value / LAMPORTS_PER_SOL

    async def close(self) -> None:
        await self._client.close()


class BalanceManager:
    def __init__(
        self,
        config: BuyConfig,
        source: BalanceSource,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self.source = source
        self._clock = clock

        self._cache: Optional[BalanceSnapshot] = None
        self._cache_ts: float = 0.0

    @property
    def sizing_mode(self) -> SizingMode:
        if self.config.buy_mode == SizingMode.FIXED.value:
            return SizingMode.FIXED
        return SizingMode.PERCENTAGE

    # -------------------------------------------------------------------------
    # Snapshot
    # -------------------------------------------------------------------------

    async def get_balance(self, force_refresh: bool = False) -> BalanceSnapshot:
        now = self._clock()
        if (
            not force_refresh
            and self._cache is not None
            and (now - self._cache_ts) < self.config.cache_ttl_sec
        ):
            # hits de cache en silencio
            return self._cache

        total = await self.source.get_wallet_balance()
        if total is None:
            raise BalanceFetchError("Could not fetch wallet balance")

        snapshot = self.build_snapshot(total)
        self._cache = snapshot
        self._cache_ts = now

        logger.info(
            "💰 [Balance] %.4f SOL | Disponible: %.4f | Próxima compra: %.4f SOL",
            snapshot.total_balance,
            snapshot.available_for_trading,
            snapshot.next_buy_amount,
        )
        return snapshot

    def build_snapshot(self, total_balance: float) -> BalanceSnapshot:
        reserve = self.config.reserve_sol
        available = max(0.0, total_balance - reserve)
        buy_amount, pct_used = self.calculate_buy_amount(available)
        return BalanceSnapshot(
            total_balance=total_balance,
            reserve=reserve,
            available_for_trading=available,
            next_buy_amount=buy_amount,
            sizing_mode=self.sizing_mode,
            percentage_used=pct_used,
        )

    def calculate_buy_amount(self, available: float) -> Tuple[float, Optional[float]]:
        cfg = self.config

        if self.sizing_mode is SizingMode.PERCENTAGE:
            raw = available * cfg.balance_percentage / 100.0
            amount = max(cfg.min_sol_amount, min(raw, cfg.max_sol_amount))
            # nunca más de lo disponible
            amount = min(amount, available)
            return amount, cfg.balance_percentage

        amount = min(cfg.sol_amount, available)
        pct = (amount / available * 100.0) if available > 0 else 0.0
        return amount, pct

    @property
    def cached_snapshot(self) -> Optional[BalanceSnapshot]:
        return self._cache

    def clear_cache(self) -> None:
        self._cache = None
        self._cache_ts = 0.0
        logger.debug("[Balance] Cache limpiada")

    # -------------------------------------------------------------------------
    # Decisiones
    # -------------------------------------------------------------------------

    async def can_afford(self) -> AffordCheck:
        try:
            snap = await self.get_balance()
        except BalanceFetchError as exc:
            logger.warning("[Balance] can_afford sin balance: %s", exc)
            return AffordCheck(can_trade=False, reason="Error checking balance")

        if snap.total_balance < snap.reserve:
            return AffordCheck(
                can_trade=False,
                reason=(
                    f"Insufficient balance: {snap.total_balance:.4f} SOL "
                    f"(need {snap.reserve} SOL reserve)"
                ),
                available_amount=snap.total_balance,
            )

        if snap.next_buy_amount <= 0:
            return AffordCheck(
                can_trade=False,
                reason="Insufficient balance after reserve, top up the wallet",
                available_amount=snap.available_for_trading,
            )

        min_amount = self.config.min_sol_amount
        if snap.next_buy_amount < min_amount:
            return AffordCheck(
                can_trade=False,
                reason=(
                    f"Amount below minimum ({snap.next_buy_amount:.4f} < "
                    f"{min_amount} SOL), lower MIN_SOL_AMOUNT or top up"
                ),
                available_amount=snap.next_buy_amount,
                recommended_amount=min_amount,
            )

        return AffordCheck(can_trade=True, available_amount=snap.next_buy_amount)

    async def get_optimal_buy_amount(self) -> float:
        snap = await self.get_balance()
        return snap.next_buy_amount

    async def get_health(self) -> BalanceHealth:
        snap = await self.get_balance()
        return self.classify(snap)

    @staticmethod
    def classify(snap: BalanceSnapshot) -> BalanceHealth:
        critical = snap.reserve * 2
        warning = snap.reserve * 5
        trades = snap.estimated_trades

        if snap.total_balance <= critical:
            status = HealthStatus.CRITICAL
            message = "Balance critically low - trading will stop soon"
        elif snap.total_balance <= warning or trades < 3:
            status = HealthStatus.WARNING
            message = "Balance getting low or limited trades remaining"
        else:
            status = HealthStatus.HEALTHY
            message = "Balance healthy for continued trading"

        return BalanceHealth(
            status=status,
            message=message,
            balance=snap.total_balance,
            trading_balance=snap.available_for_trading,
            next_buy_amount=snap.next_buy_amount,
            possible_trades=trades,
        )

    # -------------------------------------------------------------------------
    # Reportes
    # -------------------------------------------------------------------------

    async def get_stats(self) -> Dict[str, float]:
        snap = await self.get_balance()
        return {
            "current_balance": snap.total_balance,
            "reserved_amount": snap.reserve,
            "trading_balance": snap.available_for_trading,
            "next_buy_amount": snap.next_buy_amount,
            "buy_mode": snap.sizing_mode.value,
            "balance_percentage": self.config.balance_percentage,
            "estimated_trades": snap.estimated_trades,
        }

    async def simulate_percentages(self, percentages: List[float]) -> List[Dict[str, float]]:
        """Cuántas compras saldrían con distintos % del balance."""
        snap = await self.get_balance()
        out: List[Dict[str, float]] = []
        for pct in percentages:
            raw = snap.available_for_trading * pct / 100.0
            amount = max(
                self.config.min_sol_amount, min(raw, self.config.max_sol_amount)
            )
            trades = int(snap.available_for_trading // amount) if amount > 0 else 0
            out.append(
                {
                    "percentage": pct,
                    "buy_amount": amount,
                    "number_of_trades": trades,
                    "total_usage": trades * amount,
                }
            )
        return out

    async def check_balance_warnings(self, notifier) -> Optional[HealthStatus]:
        try:
            snap = await self.get_balance()
        except BalanceFetchError as exc:
            logger.error("❌ [Balance] No se pudo revisar el balance: %s", exc)
            return None

        health = self.classify(snap)
        if health.status is HealthStatus.CRITICAL:
            notifier.notify_balance_warning(
                snap.total_balance,
                "CRITICAL: balance very low, trading will stop soon",
                trading_balance=snap.available_for_trading,
                next_buy_amount=snap.next_buy_amount,
            )
        elif snap.total_balance <= snap.reserve * 5:
            notifier.notify_balance_warning(
                snap.total_balance,
                "Low balance detected, consider refunding",
                trading_balance=snap.available_for_trading,
            )

        if 0 < snap.next_buy_amount < MIN_EFFECTIVE_BUY_SOL:
            notifier.notify_balance_warning(
                snap.total_balance,
                f"Buy amount very small ({snap.next_buy_amount:.6f} SOL), "
                "adjust percentage or refund the wallet",
            )
        return health.status

    async def format_balance_info(self) -> str:
        snap = await self.get_balance()
        lines = [
            "💰 <b>Balance Information</b>",
            f"📊 Total Balance: {snap.total_balance:.4f} SOL",
            f"🔒 Reserved: {snap.reserve:.4f} SOL",
            f"📈 Trading Balance: {snap.available_for_trading:.4f} SOL",
            f"🎯 Next Buy Amount: {snap.next_buy_amount:.4f} SOL",
        ]
        mode = snap.sizing_mode.value.upper()
        if snap.sizing_mode is SizingMode.PERCENTAGE:
            mode += f" ({self.config.balance_percentage:g}%)"
        lines.append(f"⚙️ Mode: {mode}")
        lines.append(f"🔢 Estimated Trades: {snap.estimated_trades}")
        return "\n".join(lines)
