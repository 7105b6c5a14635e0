from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal, Optional

from .port_models import OrderType, Side

DistanceType = Literal["percentage", "absolute"]
Timeframe = Literal["1m", "5m", "15m", "1h", "4h", "1d"]
BasketStatus = Literal["pending", "active", "completed", "cancelled", "error"]

VALID_DISTANCE_TYPES: frozenset[str] = frozenset({"percentage", "absolute"})
VALID_BASKET_STATUSES: frozenset[str] = frozenset(
    {"pending", "active", "completed", "cancelled", "error"}
)
TERMINAL_BASKET_STATUSES: frozenset[str] = frozenset({"completed", "cancelled", "error"})

TIMEFRAME_SECONDS: dict[str, int] = {
    "1m": 60,
    "5m": 5 * 60,
    "15m": 15 * 60,
    "1h": 60 * 60,
    "4h": 4 * 60 * 60,
    "1d": 24 * 60 * 60,
}


@dataclass
class EntryOrderSpec:
    type: OrderType
    quantity: float
    price: Optional[float] = None
    leverage: float = 1.0


@dataclass
class StopLossConfig:
    enabled: bool = False
    trigger_price: float = 0.0
    order_type: OrderType = "market"
    limit_price: Optional[float] = None
    timeframe: Timeframe = "1m"
    candle_close_confirmation: bool = True


@dataclass
class LimitChaserConfig:
    enabled: bool = False
    distance: float = 0.0
    distance_type: DistanceType = "percentage"
    fill_or_cancel: bool = False
    update_interval_seconds: float = 5.0
    max_chases: int = 10
    chase_count: int = 0
    last_price: Optional[float] = None


@dataclass
class TakeProfitLevel:
    id: str
    target_price: float
    quantity_percent: float
    order_type: OrderType = "limit"
    enabled: bool = True
    order_id: Optional[str] = None


@dataclass
class ActiveOrders:
    entry_order_id: Optional[str] = None
    stop_loss_order_id: Optional[str] = None
    limit_chaser_order_id: Optional[str] = None
    take_profit_order_ids: list[str] = field(default_factory=list)

    def outstanding_ids(self) -> list[str]:
        ids = [self.entry_order_id, self.stop_loss_order_id, self.limit_chaser_order_id]
        ids.extend(self.take_profit_order_ids)
        return [order_id for order_id in ids if order_id]


@dataclass
class ExecutionLogEntry:
    timestamp: int
    action: str
    details: str
    order_id: Optional[str] = None
    price: Optional[float] = None


@dataclass
class BasketConfig:
    """User-supplied part of a basket; everything else is engine-owned."""

    symbol: str
    side: Side
    entry_order: EntryOrderSpec
    stop_loss: StopLossConfig = field(default_factory=StopLossConfig)
    limit_chaser: LimitChaserConfig = field(default_factory=LimitChaserConfig)
    take_profits: list[TakeProfitLevel] = field(default_factory=list)
    name: str = ""


@dataclass
class BasketOrder:
    id: str
    name: str
    symbol: str
    side: Side
    entry_order: EntryOrderSpec
    stop_loss: StopLossConfig
    limit_chaser: LimitChaserConfig
    take_profits: list[TakeProfitLevel]
    status: BasketStatus = "pending"
    active_orders: ActiveOrders = field(default_factory=ActiveOrders)
    execution_log: list[ExecutionLogEntry] = field(default_factory=list)
    created_at: int = 0
    updated_at: int = 0
    entry_filled: bool = False
    exited_quantity: float = 0.0

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_BASKET_STATUSES

    @property
    def exit_side(self) -> Side:
        return "sell" if self.side == "buy" else "buy"

    def find_take_profit(self, take_profit_id: str) -> Optional[TakeProfitLevel]:
        for level in self.take_profits:
            if level.id == take_profit_id:
                return level
        return None
