# config.py
import os
from dataclasses import dataclass
from typing import List, Tuple


def _get_env(name: str, default: str | None = None) -> str | None:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return value


def _get_env_float(name: str, default: float) -> float:
    v = _get_env(name)
    if v is None:
        return default
    try:
        return float(v)
    except ValueError:
        return default


def _get_env_int(name: str, default: int) -> int:
    v = _get_env(name)
    if v is None:
        return default
    try:
        return int(v)
    except ValueError:
        return default


def _get_env_bool(name: str, default: bool = False) -> bool:
    v = _get_env(name)
    if v is None:
        return default
    return v.strip().lower() in ("1", "true", "yes", "y", "on")


def _get_env_int_list(name: str) -> List[int]:
    v = _get_env(name)
    if v is None:
        return []
    out: List[int] = []
    for part in v.split(","):
        part = part.strip()
        if not part:
            continue
        try:
            out.append(int(part))
        except ValueError:
            continue
    return out


# -----------------------------------------------------------------------------
# Riesgo / take profit
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class TakeProfitLevel:
    profit_pct: float
    sell_pct: float
    label: str = ""


DEFAULT_TAKE_PROFIT_LEVELS: Tuple[TakeProfitLevel, ...] = (
    TakeProfitLevel(30.0, 15.0, "Quick profit lock"),
    TakeProfitLevel(75.0, 25.0, "Major profit taking"),
    TakeProfitLevel(150.0, 30.0, "Gem profit realization"),
    TakeProfitLevel(300.0, 20.0, "Moon bag reduction"),
    TakeProfitLevel(800.0, 10.0, "Final moon bag"),
)


@dataclass(frozen=True)
class RiskConfig:
    initial_stop_loss_pct: float = 60.0

    breakeven_enabled: bool = True
    breakeven_trigger_profit_pct: float = 25.0
    breakeven_offset_pct: float = 8.0

    trailing_enabled: bool = True
    trailing_activation_profit_pct: float = 40.0
    trailing_distance_pct: float = 25.0

    take_profit_enabled: bool = True
    take_profit_levels: Tuple[TakeProfitLevel, ...] = DEFAULT_TAKE_PROFIT_LEVELS

    # Se considera venta total a partir de este % (tolerancia de redondeo)
    full_exit_threshold_pct: float = 99.9

    def __post_init__(self) -> None:
        if not 0 < self.initial_stop_loss_pct <= 100:
            raise ValueError("initial_stop_loss_pct must be in (0, 100]")
        if self.trailing_enabled and not 0 < self.trailing_distance_pct < 100:
            raise ValueError("trailing_distance_pct must be in (0, 100)")

        levels = tuple(sorted(self.take_profit_levels, key=lambda lvl: lvl.profit_pct))
        total = 0.0
        for lvl in levels:
            if lvl.sell_pct <= 0 or lvl.sell_pct > 100:
                raise ValueError(f"take profit sell_pct out of range: {lvl.sell_pct}")
            total += lvl.sell_pct
        if total > 100.0 + 1e-9:
            raise ValueError(f"take profit ladder sells {total}% (> 100%)")
        # frozen: hay que pasar por object.__setattr__
        object.__setattr__(self, "take_profit_levels", levels)


def parse_take_profit_levels(raw: str) -> Tuple[TakeProfitLevel, ...]:
    """
    Parsea "30:15:Quick profit lock;75:25:Major profit taking" a niveles.

    El label es opcional ("30:15").
    """
    levels: List[TakeProfitLevel] = []
    for chunk in raw.split(";"):
        chunk = chunk.strip()
        if not chunk:
            continue
        parts = chunk.split(":", 2)
        if len(parts) < 2:
            raise ValueError(f"Invalid take profit level: {chunk!r}")
        try:
            profit_pct = float(parts[0])
            sell_pct = float(parts[1])
        except ValueError as exc:
            raise ValueError(f"Invalid take profit level: {chunk!r}") from exc
        label = parts[2].strip() if len(parts) > 2 else ""
        levels.append(TakeProfitLevel(profit_pct, sell_pct, label))
    return tuple(levels)


# -----------------------------------------------------------------------------
# Compras / balance
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class BuyConfig:
    buy_mode: str = "percentage"  # "fixed" | "percentage"
    balance_percentage: float = 8.0
    min_sol_amount: float = 0.005
    max_sol_amount: float = 0.5
    reserve_sol: float = 0.2
    sol_amount: float = 0.05  # modo fixed
    cache_ttl_sec: float = 2.0


@dataclass
class BotConfig:
    mode: str

    sniperoo_api_key: str
    sniperoo_pubkey: str | None
    sniperoo_base_url: str
    helius_rpc_url: str | None
    flintr_api_key: str | None

    telegram_bot_token: str
    telegram_chat_ids: List[int]

    buy: BuyConfig
    risk: RiskConfig

    price_check_interval_sec: float
    status_report_interval_sec: float
    balance_check_interval_sec: float
    max_queue_size: int
    failure_alert_threshold: int

    sim_start_balance_sol: float
    health_port: int

    log_level: str

    @property
    def is_simulation(self) -> bool:
        return self.mode == "simulation"


def load_config() -> BotConfig:
    mode = _get_env("MODE", "simulation").lower()
    if mode not in ("simulation", "real"):
        mode = "simulation"

    buy_mode = (_get_env("BUY_MODE", "percentage") or "percentage").lower()
    if buy_mode not in ("fixed", "percentage"):
        buy_mode = "percentage"

    buy = BuyConfig(
        buy_mode=buy_mode,
        balance_percentage=_get_env_float("BALANCE_PERCENTAGE", 8.0),
        min_sol_amount=_get_env_float("MIN_SOL_AMOUNT", 0.005),
        max_sol_amount=_get_env_float("MAX_SOL_AMOUNT", 0.5),
        reserve_sol=_get_env_float("RESERVE_SOL", 0.2),
        sol_amount=_get_env_float("SOL_AMOUNT", 0.05),
        cache_ttl_sec=_get_env_float("BALANCE_CACHE_SEC", 2.0),
    )

    levels_raw = _get_env("TAKE_PROFIT_LEVELS")
    levels = (
        parse_take_profit_levels(levels_raw)
        if levels_raw
        else DEFAULT_TAKE_PROFIT_LEVELS
    )

    risk = RiskConfig(
        initial_stop_loss_pct=_get_env_float("INITIAL_STOP_LOSS_PERCENT", 60.0),
        breakeven_enabled=_get_env_bool("BREAKEVEN_ENABLED", True),
        breakeven_trigger_profit_pct=_get_env_float("BREAKEVEN_TRIGGER_PERCENT", 25.0),
        breakeven_offset_pct=_get_env_float("BREAKEVEN_OFFSET_PERCENT", 8.0),
        trailing_enabled=_get_env_bool("TRAILING_ENABLED", True),
        trailing_activation_profit_pct=_get_env_float("TRAILING_ACTIVATION_PERCENT", 40.0),
        trailing_distance_pct=_get_env_float("TRAILING_DISTANCE_PERCENT", 25.0),
        take_profit_enabled=_get_env_bool("TAKE_PROFIT_ENABLED", True),
        take_profit_levels=levels,
    )

    return BotConfig(
        mode=mode,
        sniperoo_api_key=_get_env("SNIPEROO_API_KEY", "") or "",
        sniperoo_pubkey=_get_env("SNIPEROO_PUBKEY"),
        sniperoo_base_url=_get_env("SNIPEROO_BASE_URL", "https://api.sniperoo.app"),
        helius_rpc_url=_get_env("HELIUS_RPC_URL"),
        flintr_api_key=_get_env("FLINTR_API_KEY"),

        telegram_bot_token=_get_env("TELEGRAM_BOT_TOKEN", "") or "",
        telegram_chat_ids=_get_env_int_list("TELEGRAM_CHAT_IDS"),

        buy=buy,
        risk=risk,

        price_check_interval_sec=_get_env_float("PRICE_CHECK_INTERVAL_SEC", 5.0),
        status_report_interval_sec=_get_env_float("STATUS_REPORT_INTERVAL_SEC", 1800.0),
        balance_check_interval_sec=_get_env_float("BALANCE_CHECK_INTERVAL_SEC", 300.0),
        max_queue_size=_get_env_int("MAX_QUEUE_SIZE", 5),
        failure_alert_threshold=_get_env_int("FAILURE_ALERT_THRESHOLD", 3),

        sim_start_balance_sol=_get_env_float("SIM_START_BALANCE_SOL", 2.0),
        health_port=_get_env_int("HEALTH_PORT", 8080),

        log_level=_get_env("LOG_LEVEL", "INFO"),
    )
