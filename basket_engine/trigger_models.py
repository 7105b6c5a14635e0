from __future__ import annotations

from dataclasses import dataclass
from typing import Literal, Optional

from .port_models import Candle, Side

TriggerKind = Literal["STOP_LOSS", "TAKE_PROFIT"]


@dataclass(frozen=True)
class TriggerEvaluation:
    entity_id: str
    trigger_kind: TriggerKind
    side: Side
    trigger_price: float
    observed_price: Optional[float]
    satisfied: bool
    reason_code: str


@dataclass(frozen=True)
class CandleCloseDetection:
    new_candle_closed: bool
    newest_candle: Optional[Candle]
    closed_candle: Optional[Candle]
    reason_code: str
