# health_server.py
"""
Servidor HTTP ligero para healthchecks (Railway) y estado del bot.

/health devuelve 200 SIEMPRE para evitar reinicios; /status da el detalle.
"""

import asyncio
import logging
from datetime import datetime
from typing import Optional

import uvicorn
from fastapi import FastAPI
from fastapi.responses import JSONResponse

from balance_manager import BalanceFetchError, BalanceManager
from position_manager import PositionStore
from trading_engine import TradingEngine

logger = logging.getLogger(__name__)


def build_health_app(
    engine: TradingEngine,
    balance_manager: BalanceManager,
    store: PositionStore,
    mode: str = "simulation",
) -> FastAPI:
    app = FastAPI(
        title="Solana Sniper Bot",
        version="1.0",
        docs_url=None,
        redoc_url=None,
    )
    started_at = datetime.now()

    @app.get("/health")
    async def health_check():
        return JSONResponse(
            status_code=200,
            content={
                "status": "healthy",
                "bot_active": engine.is_active(),
                "uptime_seconds": int((datetime.now() - started_at).total_seconds()),
                "mode": mode,
                "timestamp": datetime.now().isoformat(),
            },
        )

    @app.get("/status")
    async def get_status():
        try:
            balance = await balance_manager.get_stats()
        except BalanceFetchError as exc:
            balance = {"error": str(exc)}

        return JSONResponse(
            {
                "bot": {
                    "mode": mode,
                    "started_at": started_at.isoformat(),
                    **engine.get_status(),
                },
                "queue": engine.get_queue_info(),
                "balance": balance,
                "positions": {
                    "summary": store.summary(),
                    "stats": store.stats(),
                    "open": store.snapshot(),
                },
            }
        )

    return app


class HealthServer:
    def __init__(self, app: FastAPI, port: int = 8080) -> None:
        self.port = port
        self._server = uvicorn.Server(
            uvicorn.Config(
                app,
                host="0.0.0.0",
                port=port,
                log_level="warning",
                access_log=False,
                timeout_keep_alive=60,
            )
        )
        self._task: Optional[asyncio.Task] = None

    def start(self) -> None:
        self._task = asyncio.get_running_loop().create_task(self._server.serve())
        logger.info("✅ Health server iniciado en puerto %s", self.port)
        logger.info("🏥 Healthcheck disponible en: http://0.0.0.0:%s/health", self.port)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._server.should_exit = True
        try:
            await asyncio.wait_for(self._task, timeout=5.0)
        except asyncio.TimeoutError:
            self._task.cancel()
        self._task = None
