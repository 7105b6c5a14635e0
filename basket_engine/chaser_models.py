from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from .port_models import Side, TimeInForce


@dataclass(frozen=True)
class ChasePricingResult:
    ok: bool
    reason_code: str
    market_price: Optional[float]
    distance: float
    order_side: Side
    order_price: Optional[float]
    time_in_force: TimeInForce


@dataclass(frozen=True)
class EntryOrderPlan:
    ok: bool
    reason_code: str
    quantity: float
    order_price: Optional[float]
    time_in_force: TimeInForce
    clamped: bool = False


@dataclass(frozen=True)
class RepriceDecision:
    reprice: bool
    reason_code: str
    change_ratio: Optional[float] = None
