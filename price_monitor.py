# price_monitor.py
"""
Monitor de precios para las posiciones abiertas.

- DexScreenerPriceSource: https://api.dexscreener.com/latest/dex/tokens/{mint}
  (priceUsd del par con más liquidez, cache de 3s).
- PositionMonitor: timer de periodo fijo que re-precia cada posición y se la
  pasa a PositionStore.update_position(). Sólo corre mientras haya posiciones.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from typing import Dict, Optional, Tuple

import httpx

from notifier import Notifier, short_token
from position_manager import PositionStore

logger = logging.getLogger(__name__)

DEXSCREENER_TOKENS_URL = "https://api.dexscreener.com/latest/dex/tokens"

MAX_SANE_PRICE = 1e10


def is_valid_price(price: Optional[float]) -> bool:
    return (
        price is not None
        and isinstance(price, (int, float))
        and math.isfinite(price)
        and 0 < price <= MAX_SANE_PRICE
    )


def _liq_usd(pair: dict) -> float:
    liq = pair.get("liquidity") or {}
    usd = liq.get("usd")
    try:
        return float(usd) if usd is not None else 0.0
    except (TypeError, ValueError):
        return 0.0


class DexScreenerPriceSource:
    def __init__(
        self,
        notifier: Optional[Notifier] = None,
        *,
        cache_ttl: float = 3.0,
        failure_alert_threshold: int = 3,
        timeout: float = 8.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.notifier = notifier
        self.cache_ttl = cache_ttl
        self.failure_alert_threshold = failure_alert_threshold

        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)
        # token -> (precio, timestamp)
        self._cache: Dict[str, Tuple[float, float]] = {}
        self._failures: Dict[str, int] = {}

    async def get_price(self, token: str) -> Optional[float]:
        cached = self._cache.get(token)
        now = time.monotonic()
        if cached is not None and now - cached[1] < self.cache_ttl:
            return cached[0]

        price = await self._fetch(token)
        if price is None:
            self._on_failure(token)
            return None

        self._failures.pop(token, None)
        self._prune(now)
        self._cache[token] = (price, now)
        return price

    def _prune(self, now: float) -> None:
        expired = [t for t, (_, ts) in self._cache.items() if now - ts >= self.cache_ttl]
        for token in expired:
            del self._cache[token]

    def forget(self, token: str) -> None:
        """Olvida cache y contador de fallos de un token que ya no se sigue."""
        self._cache.pop(token, None)
        self._failures.pop(token, None)

    async def _fetch(self, token: str) -> Optional[float]:
        url = f"{DEXSCREENER_TOKENS_URL}/{token}"
        try:
            resp = await self._client.get(url)
        except httpx.HTTPError as exc:
            logger.debug("[PriceMonitor] DexScreener error de red: %r", exc)
            return None

        if resp.status_code != 200:
            logger.debug("[PriceMonitor] DexScreener status %s para %s", resp.status_code, token)
            return None

        try:
            data = resp.json()
        except ValueError as exc:
            logger.debug("[PriceMonitor] DexScreener JSON inválido: %r", exc)
            return None

        pairs = data.get("pairs") if isinstance(data, dict) else None
        if not pairs:
            return None

        best_pair = max(pairs, key=_liq_usd)
        try:
            price = float(best_pair.get("priceUsd"))
        except (TypeError, ValueError):
            return None

        if not is_valid_price(price):
            logger.warning("[PriceMonitor] Precio descartado para %s: %r", token[:8], price)
            return None
        return price

    def _on_failure(self, token: str) -> None:
        count = self._failures.get(token, 0) + 1
        self._failures[token] = count
        logger.debug("[PriceMonitor] Sin precio para %s (%s seguidos)", token[:8], count)
        if count == self.failure_alert_threshold:
            logger.warning("⚠️ [PriceMonitor] %s fallos seguidos de precio para %s", count, token)
            if self.notifier is not None:
                self.notifier.notify_error(
                    f"Price feed failed {count} times in a row for {short_token(token)}"
                )

    def failure_count(self, token: str) -> int:
        return self._failures.get(token, 0)

    def clear_cache(self) -> None:
        self._cache.clear()

    async def close(self) -> None:
        await self._client.aclose()


class PositionMonitor:
    """
    Re-precia las posiciones cada `interval` segundos (ritmo fijo).

    Si un tick sigue en curso cuando toca el siguiente, ese disparo se salta.
    El bucle termina solo cuando el store queda vacío; ensure_running() lo
    vuelve a arrancar.
    """

    def __init__(self, store: PositionStore, price_source, interval: float = 5.0) -> None:
        self.store = store
        self.price_source = price_source
        self.interval = interval

        self._task: Optional[asyncio.Task] = None
        self._tick_lock = asyncio.Lock()
        self.ticks = 0
        self.skipped_ticks = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def ensure_running(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._loop())
        logger.info("[PriceMonitor] Monitor de posiciones iniciado (cada %.1fs)", self.interval)

    async def run_tick(self) -> bool:
        if self._tick_lock.locked():
            self.skipped_ticks += 1
            logger.debug("[PriceMonitor] Tick anterior en curso, se salta éste.")
            return False

        async with self._tick_lock:
            self.ticks += 1
            for token in self.store.tokens():
                try:
                    price = await self.price_source.get_price(token)
                    if price is None:
                        continue
                    events = await self.store.update_position(token, price)
                    for event in events:
                        logger.debug("[PriceMonitor] %s %s", event.kind.value, token[:8])
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    logger.exception("[PriceMonitor] Error procesando %s: %r", token[:8], exc)
                if not self.store.has_position(token):
                    self.price_source.forget(token)
        return True

    async def _loop(self) -> None:
        loop = asyncio.get_running_loop()
        next_at = loop.time()
        try:
            while len(self.store) > 0:
                await self.run_tick()

                next_at += self.interval
                now = loop.time()
                # ticks que se pasaron de su hueco: se saltan los disparos perdidos
                while next_at <= now:
                    next_at += self.interval
                    self.skipped_ticks += 1
                await asyncio.sleep(next_at - now)
        except asyncio.CancelledError:
            logger.info("[PriceMonitor] Cancelado, saliendo del bucle.")
            raise
        logger.info("[PriceMonitor] Sin posiciones abiertas, monitor detenido.")

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
