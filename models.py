# models.py
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Set
import time


class SizingMode(str, Enum):
    FIXED = "fixed"
    PERCENTAGE = "percentage"


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"


class EventKind(str, Enum):
    ENTRY_SET = "ENTRY_SET"
    STOP_LOSS = "STOP_LOSS"
    STOP_LOSS_FAILED = "STOP_LOSS_FAILED"
    BREAKEVEN_MOVED = "BREAKEVEN_MOVED"
    TRAILING_ACTIVATED = "TRAILING_ACTIVATED"
    TRAILING_UPDATED = "TRAILING_UPDATED"
    TAKE_PROFIT = "TAKE_PROFIT"
    TAKE_PROFIT_FAILED = "TAKE_PROFIT_FAILED"
    CLOSED = "CLOSED"


@dataclass
class Position:
    token_address: str
    entry_price: float            # precio de entrada; 0 = pendiente del primer tick
    entry_amount: float           # SOL invertidos
    remaining_amount: float       # SOL que quedan en la posición
    entry_time: float = field(default_factory=lambda: time.time())

    # riesgo
    current_stop_loss: float = 0.0
    highest_price: float = 0.0
    is_breakeven_moved: bool = False
    is_trailing_active: bool = False

    # escalera de take profit
    executed_levels: Set[int] = field(default_factory=set)
    total_sold_pct: float = 0.0

    # último precio visto (para /positions) y P&L realizado
    last_price: float = 0.0
    realized_pnl_sol: float = 0.0

    @property
    def has_entry_price(self) -> bool:
        return self.entry_price > 0

    def profit_pct(self, price: float) -> float:
        if self.entry_price <= 0:
            return 0.0
        return (price - self.entry_price) / self.entry_price * 100.0

    @property
    def status_label(self) -> str:
        if self.is_trailing_active:
            return "Trailing"
        if self.is_breakeven_moved:
            return "Breakeven"
        return "Active"


@dataclass
class PositionEvent:
    """Registro de lo que hizo la máquina de estados en un tick."""

    kind: EventKind
    token_address: str
    price: float
    profit_pct: float = 0.0
    level_index: Optional[int] = None
    sold_pct: float = 0.0
    pnl_sol: float = 0.0
    stop_loss: Optional[float] = None
    reason: str = ""
    error: Optional[str] = None
    timestamp: float = field(default_factory=lambda: time.time())


@dataclass
class ExitRecord:
    token_address: str
    reason: str
    entry_amount: float
    realized_pnl_sol: float
    closed_at: float = field(default_factory=lambda: time.time())


@dataclass
class BalanceSnapshot:
    total_balance: float
    reserve: float
    available_for_trading: float
    next_buy_amount: float
    sizing_mode: SizingMode
    percentage_used: Optional[float] = None
    fetched_at: float = field(default_factory=lambda: time.time())

    @property
    def estimated_trades(self) -> int:
        if self.next_buy_amount <= 0:
            return 0
        return int(self.available_for_trading // self.next_buy_amount)


@dataclass
class AffordCheck:
    can_trade: bool
    reason: Optional[str] = None
    available_amount: Optional[float] = None
    recommended_amount: Optional[float] = None


@dataclass
class BalanceHealth:
    status: HealthStatus
    message: str
    balance: float
    trading_balance: float
    next_buy_amount: float
    possible_trades: int


@dataclass
class TradeDecision:
    should_trade: bool
    reason: str
    token_address: Optional[str] = None
    buy_amount: Optional[float] = None


@dataclass
class TradeResult:
    success: bool
    token_address: str
    amount: float = 0.0
    price: Optional[float] = None
    error: Optional[str] = None
    queued: bool = False


@dataclass
class SellResult:
    success: bool
    transaction_id: Optional[str] = None
    error: Optional[str] = None


@dataclass
class WalletPosition:
    token_address: str
    position_id: int
    balance: float = 0.0
    value: Optional[float] = None


@dataclass
class EmergencyDetail:
    token_address: str
    success: bool
    error: Optional[str] = None


@dataclass
class EmergencyReport:
    total: int = 0
    successful: int = 0
    failed: int = 0
    details: List[EmergencyDetail] = field(default_factory=list)

    def add(self, detail: EmergencyDetail) -> None:
        self.details.append(detail)
        self.total += 1
        if detail.success:
            self.successful += 1
        else:
            self.failed += 1

    def as_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "successful": self.successful,
            "failed": self.failed,
            "details": [
                {"token": d.token_address, "success": d.success, "error": d.error}
                for d in self.details
            ],
        }
