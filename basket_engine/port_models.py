from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, Mapping, Optional

Side = Literal["buy", "sell"]
OrderType = Literal["market", "limit"]
TimeInForce = Literal["GTC", "IOC"]
OrderStatus = Literal["pending", "filled", "cancelled", "rejected"]

VALID_SIDES: frozenset[str] = frozenset({"buy", "sell"})
VALID_ORDER_TYPES: frozenset[str] = frozenset({"market", "limit"})
VALID_TIME_IN_FORCE: frozenset[str] = frozenset({"GTC", "IOC"})
VALID_ORDER_STATUSES: frozenset[str] = frozenset({"pending", "filled", "cancelled", "rejected"})
LIVE_ORDER_STATUSES: frozenset[str] = frozenset({"pending"})


def opposite_side(side: Side) -> Side:
    return "sell" if side == "buy" else "buy"


@dataclass(frozen=True)
class Candle:
    timestamp: int
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0


@dataclass(frozen=True)
class OrderRequest:
    symbol: str
    side: Side
    order_type: OrderType
    quantity: float
    price: Optional[float] = None
    time_in_force: TimeInForce = "GTC"
    leverage: Optional[float] = None
    reduce_only: bool = False


@dataclass(frozen=True)
class OrderPlacementResult:
    success: bool
    order_id: Optional[str] = None
    message: str = ""


@dataclass(frozen=True)
class ExecutionEvent:
    entity_id: str
    action: str
    timestamp: int
    details: Mapping[str, Any] = field(default_factory=dict)
