from __future__ import annotations

import math
from typing import Optional

from .basket_models import DistanceType
from .chaser_models import ChasePricingResult, EntryOrderPlan, RepriceDecision
from .entry_models import EntryPositionParams
from .event_logging import StructuredLogEvent, log_structured_event
from .port_models import Side, TimeInForce, opposite_side

REPRICE_THRESHOLD_DEFAULT = 0.001


def _is_positive_price(value: Optional[float]) -> bool:
    return value is not None and math.isfinite(value) and value > 0


def resolve_time_in_force(fill_or_cancel: bool) -> TimeInForce:
    return "IOC" if fill_or_cancel else "GTC"


def compute_chase_distance(price: float, distance: float, distance_type: DistanceType) -> float:
    if distance_type == "percentage":
        return price * distance / 100
    return distance


def compute_basket_chase_price(
    basket_side: Side,
    *,
    market_price: Optional[float],
    distance: float,
    distance_type: DistanceType,
    fill_or_cancel: bool,
) -> ChasePricingResult:
    """Price the next exit order of a basket's limit chaser.

    A long basket exits with a sell below the market, a short basket with a
    buy above it.
    """
    order_side = opposite_side(basket_side)
    time_in_force = resolve_time_in_force(fill_or_cancel)
    if market_price is None or not _is_positive_price(market_price):
        return ChasePricingResult(
            ok=False,
            reason_code="PRICE_UNAVAILABLE",
            market_price=market_price,
            distance=0.0,
            order_side=order_side,
            order_price=None,
            time_in_force=time_in_force,
        )
    offset = compute_chase_distance(market_price, distance, distance_type)
    order_price = market_price - offset if basket_side == "buy" else market_price + offset
    if not _is_positive_price(order_price):
        return ChasePricingResult(
            ok=False,
            reason_code="INVALID_CHASE_PRICE",
            market_price=market_price,
            distance=offset,
            order_side=order_side,
            order_price=None,
            time_in_force=time_in_force,
        )
    return ChasePricingResult(
        ok=True,
        reason_code="CHASE_PRICE_READY",
        market_price=market_price,
        distance=offset,
        order_side=order_side,
        order_price=order_price,
        time_in_force=time_in_force,
    )


def compute_entry_quantity(params: EntryPositionParams) -> float:
    if params.position_type == "percentage":
        return params.max_position_size * params.entry_position
    return params.entry_position


def compute_entry_price(side: Side, market_price: float, params: EntryPositionParams) -> tuple[float, bool]:
    offset = market_price * params.price_distance / 100
    if side == "buy":
        price = market_price - offset
        if params.long_price_limit > 0 and price > params.long_price_limit:
            return params.long_price_limit, True
        return price, False
    price = market_price + offset
    if params.short_price_limit > 0 and price < params.short_price_limit:
        return params.short_price_limit, True
    return price, False


def plan_entry_order(
    side: Side,
    *,
    market_price: Optional[float],
    params: EntryPositionParams,
) -> EntryOrderPlan:
    time_in_force = resolve_time_in_force(params.fill_or_cancel)
    quantity = compute_entry_quantity(params)
    if market_price is None or not _is_positive_price(market_price):
        return EntryOrderPlan(
            ok=False,
            reason_code="PRICE_UNAVAILABLE",
            quantity=quantity,
            order_price=None,
            time_in_force=time_in_force,
        )
    if not (math.isfinite(quantity) and quantity > 0):
        return EntryOrderPlan(
            ok=False,
            reason_code="INVALID_QUANTITY",
            quantity=quantity,
            order_price=None,
            time_in_force=time_in_force,
        )
    order_price, clamped = compute_entry_price(side, market_price, params)
    if not _is_positive_price(order_price):
        return EntryOrderPlan(
            ok=False,
            reason_code="INVALID_ENTRY_PRICE",
            quantity=quantity,
            order_price=None,
            time_in_force=time_in_force,
        )
    return EntryOrderPlan(
        ok=True,
        reason_code="PRICE_CLAMPED" if clamped else "ENTRY_PRICE_READY",
        quantity=quantity,
        order_price=order_price,
        time_in_force=time_in_force,
        clamped=clamped,
    )


def should_reprice(
    last_price: Optional[float],
    new_price: float,
    *,
    previous_order_live: bool,
    threshold: float = REPRICE_THRESHOLD_DEFAULT,
) -> RepriceDecision:
    if not previous_order_live:
        return RepriceDecision(reprice=True, reason_code="PREVIOUS_ORDER_NOT_LIVE")
    if last_price is None or not _is_positive_price(last_price):
        return RepriceDecision(reprice=True, reason_code="NO_PREVIOUS_PRICE")
    change_ratio = abs(new_price - last_price) / last_price
    if change_ratio < threshold:
        return RepriceDecision(reprice=False, reason_code="PRICE_CHANGE_BELOW_THRESHOLD", change_ratio=change_ratio)
    return RepriceDecision(reprice=True, reason_code="PRICE_MOVED", change_ratio=change_ratio)


def plan_entry_order_with_logging(
    side: Side,
    *,
    market_price: Optional[float],
    params: EntryPositionParams,
    entry_id: str,
    loop_label: str = "loop",
) -> EntryOrderPlan:
    plan = plan_entry_order(side, market_price=market_price, params=params)
    log_structured_event(
        StructuredLogEvent(
            component="chaser",
            event="plan_entry_order",
            entity_id=entry_id,
            input_data=(
                f"side={side} "
                f"market_price={market_price if market_price is not None else '-'} "
                f"position_type={params.position_type} entry_position={params.entry_position} "
                f"max_position_size={params.max_position_size} price_distance={params.price_distance}"
            ),
            decision="offset_market_price_and_apply_limits",
            result="planned" if plan.ok else "skipped",
            failure_reason="-" if plan.ok else plan.reason_code,
        ),
        loop_label=loop_label,
        reason_code=plan.reason_code,
        order_price=plan.order_price if plan.order_price is not None else "-",
        quantity=plan.quantity,
        tif=plan.time_in_force,
        clamped=plan.clamped,
    )
    return plan


def compute_basket_chase_price_with_logging(
    basket_side: Side,
    *,
    market_price: Optional[float],
    distance: float,
    distance_type: DistanceType,
    fill_or_cancel: bool,
    basket_id: str,
    loop_label: str = "loop",
) -> ChasePricingResult:
    result = compute_basket_chase_price(
        basket_side,
        market_price=market_price,
        distance=distance,
        distance_type=distance_type,
        fill_or_cancel=fill_or_cancel,
    )
    log_structured_event(
        StructuredLogEvent(
            component="chaser",
            event="compute_basket_chase_price",
            entity_id=basket_id,
            input_data=(
                f"side={basket_side} "
                f"market_price={market_price if market_price is not None else '-'} "
                f"distance={distance} distance_type={distance_type}"
            ),
            decision="offset_market_price_toward_exit",
            result="priced" if result.ok else "skipped",
            failure_reason="-" if result.ok else result.reason_code,
        ),
        loop_label=loop_label,
        reason_code=result.reason_code,
        order_side=result.order_side,
        order_price=result.order_price if result.order_price is not None else "-",
        tif=result.time_in_force,
    )
    return result
