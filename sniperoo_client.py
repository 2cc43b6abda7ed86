# sniperoo_client.py
"""
Executor de compras/ventas contra la API de Sniperoo.

- buy(token, amount)            → POST /trading/buy-token
- sell_percentage(id, pct)      → POST /trading/sell-percentage-from-position
- list_open_positions()         → GET  /positions/all (cache 3s)
- get_wallet_balance()          → GET  /user/balance-for-wallet

Cualquier respuesta no-2xx o timeout se trata como fallo recuperable: se
loguea y se devuelve False / SellResult(success=False) / None, nunca excepción.

PaperExecutor implementa la misma interfaz para MODE=simulation.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from typing import Any, Dict, List, Optional, Protocol

import httpx

from models import SellResult, WalletPosition

logger = logging.getLogger(__name__)

SNIPEROO_BASE_URL = "https://api.sniperoo.app"


class TradeExecutor(Protocol):
    async def buy(self, token_address: str, amount_sol: float) -> bool:
        ...

    async def sell_percentage(self, position_id: int, percentage: float) -> SellResult:
        ...

    async def sell_token(self, token_address: str, percentage: float, reason: str) -> SellResult:
        ...

    async def list_open_positions(self) -> Optional[List[WalletPosition]]:
        ...

    async def get_wallet_balance(self) -> Optional[float]:
        ...


class SniperooClient:
    def __init__(
        self,
        api_key: str,
        wallet_pubkey: str,
        *,
        base_url: str = SNIPEROO_BASE_URL,
        timeout: float = 12.0,
        max_retries: int = 2,
        retry_delay: float = 1.0,
        cache_ttl: float = 3.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        if not api_key:
            raise RuntimeError("SNIPEROO_API_KEY vacío")
        if not wallet_pubkey:
            raise RuntimeError("SNIPEROO_PUBKEY vacío")

        self.wallet_pubkey = wallet_pubkey
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.cache_ttl = cache_ttl

        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout,
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
                "User-Agent": "sniper-risk-engine/1.0",
            },
            transport=transport,
        )

        self._positions_cache: Optional[List[WalletPosition]] = None
        self._positions_ts: float = 0.0

    # ------------- HTTP -------------

    async def _request(self, method: str, path: str, **kwargs: Any) -> Optional[httpx.Response]:
        """
        Hace la petición reintentando los 5xx (y errores de red sólo en GET,
        para no duplicar compras). Devuelve None si no hubo respuesta.
        """
        attempt = 0
        while True:
            try:
                resp = await self._client.request(method, path, **kwargs)
            except httpx.HTTPError as exc:
                if method == "GET" and attempt < self.max_retries:
                    attempt += 1
                    logger.info(
                        "🔄 [Sniperoo] %s %s error de red (%r), reintento %s/%s",
                        method, path, exc, attempt, self.max_retries,
                    )
                    await asyncio.sleep(self.retry_delay)
                    continue
                logger.warning("[Sniperoo] %s %s falló: %r", method, path, exc)
                return None

            if resp.status_code >= 500 and attempt < self.max_retries:
                attempt += 1
                logger.info(
                    "🔄 [Sniperoo] %s %s status %s, reintento %s/%s",
                    method, path, resp.status_code, attempt, self.max_retries,
                )
                await asyncio.sleep(self.retry_delay)
                continue
            return resp

    @staticmethod
    def _error_message(resp: httpx.Response) -> str:
        try:
            data = resp.json()
        except ValueError:
            data = None
        msg = data.get("message") if isinstance(data, dict) else None
        return f"API error ({resp.status_code}): {msg or resp.reason_phrase}"

    def _clear_caches(self) -> None:
        self._positions_cache = None
        self._positions_ts = 0.0

    # ------------- Trading -------------

    async def buy(self, token_address: str, amount_sol: float) -> bool:
        started = time.monotonic()
        logger.info("🔫 [Sniperoo] Comprando %.4f SOL -> %s...", amount_sol, token_address[:8])

        resp = await self._request(
            "POST",
            "/trading/buy-token",
            json={
                "walletAddresses": [self.wallet_pubkey],
                "tokenAddress": token_address,
                "isBuying": True,
                "inputAmount": amount_sol,
                "autoSell": {"enabled": False},
            },
        )
        elapsed_ms = (time.monotonic() - started) * 1000
        if resp is None:
            return False

        if resp.status_code in (200, 201):
            logger.info("✅ [Sniperoo] Compra completada en %.0fms", elapsed_ms)
            self._clear_caches()
            return True

        logger.error("❌ [Sniperoo] Compra fallida: %s", self._error_message(resp))
        return False

    async def sell_percentage(self, position_id: int, percentage: float) -> SellResult:
        if not position_id or percentage <= 0 or percentage > 100:
            return SellResult(success=False, error="Invalid sell parameters")

        resp = await self._request(
            "POST",
            "/trading/sell-percentage-from-position",
            json={"positionId": position_id, "percentage": percentage},
        )
        if resp is None:
            return SellResult(success=False, error="No response from execution service")

        if resp.status_code in (200, 201):
            self._clear_caches()
            tx_id = None
            try:
                data = resp.json()
            except ValueError:
                data = {}
            if isinstance(data, dict):
                tx_id = (data.get("sellTransaction") or {}).get("transactionId")
            return SellResult(success=True, transaction_id=tx_id or "unknown")

        return SellResult(success=False, error=self._error_message(resp))

    async def sell_token(self, token_address: str, percentage: float, reason: str) -> SellResult:
        """Busca el positionId del token y vende `percentage` % de lo que queda."""
        logger.info(
            "💸 [Sniperoo] Vendiendo %.2f%% de %s... (%s)",
            percentage, token_address[:8], reason,
        )
        positions = await self.list_open_positions()
        if positions is None:
            return SellResult(success=False, error="Could not list open positions")

        match = next((p for p in positions if p.token_address == token_address), None)
        if match is None:
            return SellResult(success=False, error="Position not found in execution service")

        result = await self.sell_percentage(match.position_id, percentage)
        if result.success:
            logger.info("✅ [Sniperoo] Vendido %.2f%% tx=%s", percentage, result.transaction_id)
        else:
            logger.error("❌ [Sniperoo] Venta fallida: %s", result.error)
        return result

    async def list_open_positions(self) -> Optional[List[WalletPosition]]:
        now = time.monotonic()
        if self._positions_cache is not None and now - self._positions_ts < self.cache_ttl:
            return self._positions_cache

        resp = await self._request("GET", "/positions/all")
        if resp is None or resp.status_code != 200:
            return None

        try:
            data = resp.json()
        except ValueError:
            return None
        if not isinstance(data, list):
            return []

        positions: List[WalletPosition] = []
        for raw in data:
            if not isinstance(raw, dict) or not raw.get("id") or not raw.get("tokenAddress"):
                continue
            positions.append(
                WalletPosition(
                    token_address=raw["tokenAddress"],
                    position_id=raw["id"],
                    balance=_to_float(raw.get("initialTokenAmountUi")),
                    value=_to_float(raw.get("currentValue")),
                )
            )

        self._positions_cache = positions
        self._positions_ts = now
        return positions

    async def get_wallet_balance(self) -> Optional[float]:
        resp = await self._request(
            "GET",
            "/user/balance-for-wallet",
            params={"walletAddress": self.wallet_pubkey},
        )
        if resp is None or resp.status_code != 200:
            return None
        try:
            data = resp.json()
            return float(data["solBalance"])
        except (ValueError, KeyError, TypeError):
            return None

    async def health_check(self) -> bool:
        resp = await self._request("GET", "/user/wallets")
        return resp is not None and resp.status_code == 200

    async def close(self) -> None:
        await self._client.aclose()


def _to_float(value: Any) -> float:
    try:
        return float(value) if value is not None else 0.0
    except (TypeError, ValueError):
        return 0.0


class PaperExecutor:
    """
    Executor simulado (MODE=simulation).

    Las compras descuentan SOL del balance virtual y las ventas devuelven la
    parte proporcional del coste (sin P&L, no hay precio en la orden).
    """

    def __init__(self, start_balance_sol: float) -> None:
        self.balance = start_balance_sol
        self._ids = itertools.count(1)
        # token -> {"id": int, "cost": float}
        self._holdings: Dict[str, Dict[str, float]] = {}

    async def buy(self, token_address: str, amount_sol: float) -> bool:
        if amount_sol <= 0 or amount_sol > self.balance:
            logger.warning("[Paper] Compra rechazada: %.4f SOL (balance %.4f)", amount_sol, self.balance)
            return False
        self.balance -= amount_sol
        holding = self._holdings.setdefault(
            token_address, {"id": next(self._ids), "cost": 0.0}
        )
        holding["cost"] += amount_sol
        logger.info("🧪 [Paper] Compra %.4f SOL -> %s...", amount_sol, token_address[:8])
        return True

    async def sell_percentage(self, position_id: int, percentage: float) -> SellResult:
        if percentage <= 0 or percentage > 100:
            return SellResult(success=False, error="Invalid sell parameters")
        for token, holding in list(self._holdings.items()):
            if holding["id"] != position_id:
                continue
            released = holding["cost"] * percentage / 100.0
            holding["cost"] -= released
            self.balance += released
            if percentage >= 100 or holding["cost"] <= 1e-12:
                del self._holdings[token]
            return SellResult(success=True, transaction_id=f"paper-{position_id}")
        return SellResult(success=False, error="Position not found in execution service")

    async def sell_token(self, token_address: str, percentage: float, reason: str) -> SellResult:
        holding = self._holdings.get(token_address)
        if holding is None:
            return SellResult(success=False, error="Position not found in execution service")
        logger.info("🧪 [Paper] Venta %.2f%% de %s... (%s)", percentage, token_address[:8], reason)
        return await self.sell_percentage(int(holding["id"]), percentage)

    async def list_open_positions(self) -> Optional[List[WalletPosition]]:
        return [
            WalletPosition(token_address=t, position_id=int(h["id"]), value=h["cost"])
            for t, h in self._holdings.items()
        ]

    async def get_wallet_balance(self) -> Optional[float]:
        return self.balance

    async def health_check(self) -> bool:
        return True

    async def close(self) -> None:
        return None
