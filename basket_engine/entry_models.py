from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal, Optional

from .basket_models import ExecutionLogEntry
from .port_models import Side

PositionType = Literal["percentage", "fixed"]
EntryStatus = Literal["pending", "active", "filled", "cancelled", "expired"]

VALID_POSITION_TYPES: frozenset[str] = frozenset({"percentage", "fixed"})
VALID_ENTRY_STATUSES: frozenset[str] = frozenset({"pending", "active", "filled", "cancelled", "expired"})
TERMINAL_ENTRY_STATUSES: frozenset[str] = frozenset({"filled", "cancelled", "expired"})

PRICE_DISTANCE_MIN = 0.1
PRICE_DISTANCE_MAX = 5.0


@dataclass
class EntryPositionParams:
    enabled: bool = True
    entry_position: float = 0.0
    max_position_size: float = 0.0
    position_type: PositionType = "percentage"
    long_price_limit: float = 0.0
    short_price_limit: float = 0.0
    price_distance: float = 0.5
    fill_or_cancel: bool = False
    expire_after_seconds: Optional[float] = None


@dataclass
class EntryPositionOrder:
    id: str
    symbol: str
    side: Side
    params: EntryPositionParams
    status: EntryStatus = "pending"
    active_order_id: Optional[str] = None
    chase_count: int = 0
    max_chases: int = 10
    last_price: Optional[float] = None
    execution_log: list[ExecutionLogEntry] = field(default_factory=list)
    created_at: int = 0
    updated_at: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_ENTRY_STATUSES


@dataclass(frozen=True)
class EntryStats:
    total: int
    pending: int
    active: int
    filled: int
    cancelled: int
    expired: int
