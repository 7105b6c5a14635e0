from __future__ import annotations

import math
from collections import deque
from typing import Any, Optional, Sequence

from .event_logging import StructuredLogEvent, log_structured_event
from .port_models import Candle, Side
from .trigger_models import CandleCloseDetection, TriggerEvaluation, TriggerKind

CANDLE_CACHE_SIZE_DEFAULT = 100


def _normalize(value: Any) -> str:
    text = " ".join(str(value).split())
    return text if text else "-"


def _validate_positive_price(value: Optional[float]) -> bool:
    return value is not None and math.isfinite(value) and value > 0


def is_stop_loss_triggered(side: Side, *, close_price: float, trigger_price: float) -> bool:
    # Long positions stop out on a close at or below the trigger, shorts at or above.
    if side == "buy":
        return close_price <= trigger_price
    return close_price >= trigger_price


def is_take_profit_reached(side: Side, *, price: float, target_price: float) -> bool:
    if side == "buy":
        return price >= target_price
    return price <= target_price


def _evaluate(
    entity_id: str,
    trigger_kind: TriggerKind,
    side: Side,
    *,
    trigger_price: float,
    observed_price: Optional[float],
) -> TriggerEvaluation:
    def _result(satisfied: bool, reason_code: str) -> TriggerEvaluation:
        return TriggerEvaluation(
            entity_id=entity_id,
            trigger_kind=trigger_kind,
            side=side,
            trigger_price=trigger_price,
            observed_price=observed_price,
            satisfied=satisfied,
            reason_code=reason_code,
        )

    if not _validate_positive_price(trigger_price):
        return _result(False, "INVALID_TRIGGER_PRICE")
    if observed_price is None:
        return _result(False, "PRICE_MISSING")
    if not _validate_positive_price(observed_price):
        return _result(False, "INVALID_PRICE")

    if trigger_kind == "STOP_LOSS":
        satisfied = is_stop_loss_triggered(side, close_price=observed_price, trigger_price=trigger_price)
    else:
        satisfied = is_take_profit_reached(side, price=observed_price, target_price=trigger_price)
    return _result(satisfied, "TRIGGER_SATISFIED" if satisfied else "TRIGGER_NOT_REACHED")


def evaluate_stop_loss(
    entity_id: str,
    side: Side,
    *,
    trigger_price: float,
    observed_price: Optional[float],
) -> TriggerEvaluation:
    return _evaluate(
        entity_id,
        "STOP_LOSS",
        side,
        trigger_price=trigger_price,
        observed_price=observed_price,
    )


def evaluate_take_profit(
    entity_id: str,
    side: Side,
    *,
    target_price: float,
    observed_price: Optional[float],
) -> TriggerEvaluation:
    return _evaluate(
        entity_id,
        "TAKE_PROFIT",
        side,
        trigger_price=target_price,
        observed_price=observed_price,
    )


class CandleCache:
    """Newest-first ring of candles seen for one symbol/timeframe key."""

    def __init__(self, max_size: int = CANDLE_CACHE_SIZE_DEFAULT) -> None:
        self._candles: deque[Candle] = deque(maxlen=max(1, int(max_size)))

    def push(self, candle: Candle) -> None:
        self._candles.appendleft(candle)

    @property
    def newest_timestamp(self) -> Optional[int]:
        if not self._candles:
            return None
        return self._candles[0].timestamp

    def snapshot(self) -> list[Candle]:
        return list(self._candles)

    def __len__(self) -> int:
        return len(self._candles)


def detect_closed_candle(
    candles: Sequence[Candle],
    *,
    cached_newest_timestamp: Optional[int],
) -> CandleCloseDetection:
    if len(candles) < 2:
        return CandleCloseDetection(
            new_candle_closed=False,
            newest_candle=candles[0] if candles else None,
            closed_candle=None,
            reason_code="INSUFFICIENT_CANDLES",
        )
    newest, previous = candles[0], candles[1]
    if cached_newest_timestamp is not None and newest.timestamp <= cached_newest_timestamp:
        return CandleCloseDetection(
            new_candle_closed=False,
            newest_candle=newest,
            closed_candle=None,
            reason_code="NO_NEW_CANDLE",
        )
    return CandleCloseDetection(
        new_candle_closed=True,
        newest_candle=newest,
        closed_candle=previous,
        reason_code="NEW_CANDLE_CLOSED",
    )


def evaluate_stop_loss_with_logging(
    entity_id: str,
    side: Side,
    *,
    trigger_price: float,
    observed_price: Optional[float],
    source: str,
    loop_label: str = "loop",
) -> TriggerEvaluation:
    result = evaluate_stop_loss(
        entity_id,
        side,
        trigger_price=trigger_price,
        observed_price=observed_price,
    )
    log_structured_event(
        StructuredLogEvent(
            component="trigger_engine",
            event="evaluate_stop_loss",
            entity_id=entity_id,
            input_data=(
                f"side={side} trigger_price={trigger_price} "
                f"observed_price={observed_price if observed_price is not None else '-'}"
            ),
            decision="compare_price_with_side_aware_trigger",
            result="triggered" if result.satisfied else "not_triggered",
            state_before="monitoring",
            state_after="triggered" if result.satisfied else "monitoring",
            failure_reason="-" if result.satisfied else result.reason_code,
        ),
        loop_label=loop_label,
        source=source,
        reason_code=result.reason_code,
    )
    return result


def detect_closed_candle_with_logging(
    candles: Sequence[Candle],
    *,
    cached_newest_timestamp: Optional[int],
    symbol: str,
    timeframe: str,
    loop_label: str = "loop",
) -> CandleCloseDetection:
    result = detect_closed_candle(candles, cached_newest_timestamp=cached_newest_timestamp)
    log_structured_event(
        StructuredLogEvent(
            component="trigger_engine",
            event="detect_closed_candle",
            input_data=(
                f"symbol={_normalize(symbol)} timeframe={timeframe} candle_count={len(candles)} "
                f"cached_newest_timestamp={cached_newest_timestamp if cached_newest_timestamp is not None else '-'}"
            ),
            decision="compare_newest_timestamp_with_cache",
            result="closed" if result.new_candle_closed else "unchanged",
            failure_reason="-" if result.new_candle_closed else result.reason_code,
        ),
        loop_label=loop_label,
        reason_code=result.reason_code,
        closed_close=result.closed_candle.close if result.closed_candle is not None else "-",
    )
    return result
