# flintr_client.py
import json
import logging
import time
from typing import Any, Callable, Dict, Optional

from websocket import WebSocketApp

logger = logging.getLogger(__name__)

MintCallback = Callable[[str], None]


class FlintrClient:
    """
    Cliente WebSocket para Flintr (señales de tokens nuevos).

    Corre en su propio thread; on_mint recibe el mint y es quien lo pasa al
    event loop del bot.
    """

    def __init__(
        self,
        api_key: str,
        *,
        platform_filter: str = "pump.fun",
        on_mint: Optional[MintCallback] = None,
        reconnect_delay: float = 5.0,
    ) -> None:
        if not api_key:
            raise RuntimeError("FLINTR_API_KEY vacío")

        self.ws_url = f"wss://api-v1.flintr.io/sub?token={api_key}"
        self.platform_filter = platform_filter
        self.on_mint = on_mint
        self.reconnect_delay = reconnect_delay

        self._running = False
        self._ws: Optional[WebSocketApp] = None

    # ----------------- API pública -----------------

    def run_forever(self) -> None:
        """Loop con reconexión automática hasta stop()."""
        self._running = True
        while self._running:
            logger.info("[Flintr] Conectando...")

            self._ws = WebSocketApp(
                self.ws_url,
                on_open=self._on_open,
                on_message=self._on_message,
                on_error=self._on_error,
                on_close=self._on_close,
            )
            self._ws.run_forever(ping_interval=30, ping_timeout=10)

            if not self._running:
                break
            logger.warning(
                "[Flintr] Desconectado. Reintentando en %ss...", self.reconnect_delay
            )
            time.sleep(self.reconnect_delay)

    def stop(self) -> None:
        self._running = False
        if self._ws is not None:
            self._ws.close()

    # ----------------- Callbacks internos -----------------

    def _on_open(self, ws: WebSocketApp) -> None:
        logger.info("[Flintr] ✅ Conectado → escuchando señales…")

    def _on_message(self, ws: WebSocketApp, message: str) -> None:
        try:
            data = json.loads(message)
        except json.JSONDecodeError:
            logger.warning("[Flintr] ⚠️ JSON inválido: %s", message[:200])
            return
        self.handle_event(data)

    def _on_error(self, ws: WebSocketApp, error: Exception) -> None:
        logger.warning("[Flintr] ⚠️ Error WebSocket: %r", error)

    def _on_close(
        self,
        ws: WebSocketApp,
        close_status_code: Optional[int],
        close_msg: Optional[str],
    ) -> None:
        logger.warning("[Flintr] 🔴 Cerrado (code=%s, msg=%s)", close_status_code, close_msg)

    # ----------------- Eventos -----------------

    def handle_event(self, data: Dict[str, Any]) -> Optional[str]:
        """Devuelve el mint si el evento es un MINT de la plataforma filtrada."""
        event = data.get("event") or {}
        event_class = event.get("class")

        if event_class == "ping":
            logger.debug("[Flintr] 🔁 Ping: %s", data.get("time"))
            return None

        if event_class != "token":
            logger.debug("[Flintr] Evento ignorado: %s", event_class)
            return None

        if self.platform_filter and event.get("platform") != self.platform_filter:
            return None
        if event.get("type") != "mint":
            return None

        payload = data.get("data") or {}
        mint = payload.get("mint")
        if not mint:
            return None

        meta = payload.get("metaData") or {}
        logger.info(
            "🟢 [Flintr] MINT %s → %s (%s) mint=%s",
            self.platform_filter, meta.get("symbol") or "", meta.get("name") or "", mint,
        )

        if self.on_mint:
            try:
                self.on_mint(mint)
            except Exception as exc:
                logger.warning("[Flintr] Error en on_mint: %r", exc)
        return mint
