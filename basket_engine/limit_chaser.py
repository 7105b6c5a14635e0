from __future__ import annotations

from typing import Callable, Optional

from .basket_models import BasketOrder
from .basket_registry import BasketRegistry
from .chaser import compute_basket_chase_price_with_logging, resolve_time_in_force
from .event_logging import StructuredLogEvent, log_structured_event
from .order_gateway import (
    cancel_order_with_retry_with_logging,
    place_order_with_retry_with_logging,
    query_order_with_retry_with_logging,
)
from .order_gateway_models import RetryPolicy
from .port_models import OrderRequest
from .ports import MarketDataPort, OrderGatewayPort
from .scheduler import EntityGuard

IOC_CHECK_DELAY_SECONDS_DEFAULT = 1.0


def chaser_key(basket_id: str) -> str:
    return f"chaser:{basket_id}"


def ioc_check_key(basket_id: str) -> str:
    return f"ioc:{basket_id}"


def remaining_quantity(basket: BasketOrder) -> float:
    return max(0.0, basket.entry_order.quantity - basket.exited_quantity)


class LimitChaser:
    """Cancel/replace loop that walks a basket's reduce-only exit with the market.

    At most one chaser order rests per basket: the previous order is queried,
    then cancelled, and only then replaced. ``chase_count`` never passes
    ``max_chases``.
    """

    def __init__(
        self,
        registry: BasketRegistry,
        market_data: MarketDataPort,
        gateway: OrderGatewayPort,
        scheduler,
        guard: EntityGuard,
        *,
        on_basket_closed: Callable[[str], None],
        ioc_check_delay_seconds: float = IOC_CHECK_DELAY_SECONDS_DEFAULT,
        cancel_retry_policy: Optional[RetryPolicy] = None,
    ) -> None:
        self._registry = registry
        self._market_data = market_data
        self._gateway = gateway
        self._scheduler = scheduler
        self._guard = guard
        self._on_basket_closed = on_basket_closed
        self._ioc_check_delay_seconds = max(0.0, float(ioc_check_delay_seconds))
        self._cancel_retry_policy = cancel_retry_policy

    def start(self, basket_id: str) -> bool:
        basket = self._registry.get(basket_id)
        if basket is None or basket.status != "active" or not basket.limit_chaser.enabled:
            return False
        if basket.limit_chaser.chase_count >= basket.limit_chaser.max_chases:
            return False
        started = self._scheduler.start_periodic(
            chaser_key(basket_id),
            basket.limit_chaser.update_interval_seconds,
            lambda: self.tick(basket_id),
        )
        if started:
            self._registry.record(
                basket_id,
                "limit_chaser_setup",
                f"Limit chaser monitoring started every {basket.limit_chaser.update_interval_seconds}s",
            )
        return started

    def is_running(self, basket_id: str) -> bool:
        return self._scheduler.is_active(chaser_key(basket_id))

    def stop(self, basket_id: str, *, cancel_resting: bool = False) -> bool:
        stopped = self._scheduler.stop(chaser_key(basket_id))
        self._scheduler.cancel_once(ioc_check_key(basket_id))
        if cancel_resting:
            basket = self._registry.get(basket_id)
            order_id = basket.active_orders.limit_chaser_order_id if basket is not None else None
            if order_id:
                result = cancel_order_with_retry_with_logging(
                    self._gateway,
                    order_id,
                    retry_policy=self._cancel_retry_policy,
                    loop_label=chaser_key(basket_id),
                )
                if result.success:
                    self._registry.mutate(basket_id, _clear_chaser_order)
                    self._registry.record(basket_id, "limit_chaser_cancelled", "Resting chaser order cancelled", order_id=order_id)
                else:
                    self._registry.record(
                        basket_id,
                        "limit_chaser_cancel_failed",
                        f"Cancel failed: {result.reason_code}",
                        order_id=order_id,
                    )
        return stopped

    def tick(self, basket_id: str) -> str:
        with self._guard.hold(basket_id, blocking=False) as acquired:
            if not acquired:
                log_structured_event(
                    StructuredLogEvent(
                        component="limit_chaser",
                        event="tick_skipped",
                        entity_id=basket_id,
                        decision="skip_when_slot_busy",
                        result="skipped",
                        failure_reason="SLOT_BUSY",
                    ),
                )
                return "SLOT_BUSY"
            outcome = self._chase(basket_id, manual_price=None)
        self._close_if_filled(basket_id, outcome)
        return outcome

    def update_limit_chaser(self, basket_id: str, new_price: float) -> bool:
        with self._guard.hold(basket_id):
            outcome = self._chase(basket_id, manual_price=new_price)
        self._close_if_filled(basket_id, outcome)
        return outcome == "CHASE_PLACED"

    def check_ioc_order_status(self, basket_id: str, order_id: str) -> str:
        with self._guard.hold(basket_id):
            outcome = self._check_ioc(basket_id, order_id)
        self._close_if_filled(basket_id, outcome)
        return outcome

    def _check_ioc(self, basket_id: str, order_id: str) -> str:
        basket = self._registry.get(basket_id)
        if basket is None or basket.is_terminal:
            return "BASKET_NOT_ACTIVE"
        if basket.active_orders.limit_chaser_order_id != order_id:
            return "STALE_CHECK"
        query = query_order_with_retry_with_logging(self._gateway, order_id, loop_label=ioc_check_key(basket_id))
        if not query.success:
            return query.reason_code
        if query.order_status == "filled":
            self._complete_filled(basket_id, order_id, source="ioc_check")
            return "CHASER_FILLED"
        if query.order_status in {"cancelled", "rejected"}:
            self._registry.mutate(basket_id, _clear_chaser_order)
            self._registry.record(
                basket_id,
                "ioc_cancelled",
                f"IOC order {order_id} {query.order_status} - continuing to chase",
                order_id=order_id,
            )
            return "IOC_NOT_FILLED"
        return "IOC_PENDING"

    def _stop_loop(self, basket_id: str) -> None:
        self._scheduler.stop(chaser_key(basket_id))
        self._scheduler.cancel_once(ioc_check_key(basket_id))

    def _complete_filled(self, basket_id: str, order_id: str, *, source: str) -> None:
        self._stop_loop(basket_id)
        self._registry.mutate(basket_id, _clear_chaser_order)
        self._registry.record(
            basket_id,
            "limit_chaser_filled",
            f"Chaser order {order_id} filled ({source}) - position closed",
            order_id=order_id,
        )
        self._registry.set_status(basket_id, "completed", details="Closed by limit chaser fill")

    def _close_if_filled(self, basket_id: str, outcome: str) -> None:
        # Runs after the slot is released; closing joins scheduler threads.
        if outcome == "CHASER_FILLED":
            self._on_basket_closed(basket_id)

    def _release_previous(self, basket: BasketOrder) -> str:
        order_id = basket.active_orders.limit_chaser_order_id
        if not order_id:
            return "NO_PREVIOUS_ORDER"
        loop_label = chaser_key(basket.id)
        query = query_order_with_retry_with_logging(self._gateway, order_id, loop_label=loop_label)
        if query.success and query.order_status == "filled":
            self._complete_filled(basket.id, order_id, source="chase_tick")
            return "CHASER_FILLED"
        if query.success and query.order_status in {"cancelled", "rejected"}:
            self._registry.mutate(basket.id, _clear_chaser_order)
            return "PREVIOUS_ORDER_GONE"

        cancel = cancel_order_with_retry_with_logging(
            self._gateway,
            order_id,
            retry_policy=self._cancel_retry_policy,
            loop_label=loop_label,
        )
        if cancel.success:
            self._registry.mutate(basket.id, _clear_chaser_order)
            return "PREVIOUS_ORDER_CANCELLED"

        # The cancel may have lost a race with a fill.
        recheck = query_order_with_retry_with_logging(self._gateway, order_id, loop_label=loop_label)
        if recheck.success and recheck.order_status == "filled":
            self._complete_filled(basket.id, order_id, source="cancel_race")
            return "CHASER_FILLED"
        if recheck.success and recheck.order_status in {"cancelled", "rejected"}:
            self._registry.mutate(basket.id, _clear_chaser_order)
            return "PREVIOUS_ORDER_GONE"
        self._registry.record(
            basket.id,
            "limit_chaser_cancel_failed",
            f"Could not cancel chaser order: {cancel.reason_code}",
            order_id=order_id,
        )
        return "CANCEL_FAILED"

    def _chase(self, basket_id: str, *, manual_price: Optional[float]) -> str:
        basket = self._registry.get(basket_id)
        if basket is None or basket.status != "active":
            self._stop_loop(basket_id)
            return "BASKET_NOT_ACTIVE"
        chaser = basket.limit_chaser
        if not chaser.enabled:
            self._stop_loop(basket_id)
            return "CHASER_DISABLED"
        if chaser.chase_count >= chaser.max_chases:
            if self._release_previous_if_filled(basket):
                return "CHASER_FILLED"
            self._stop_loop(basket_id)
            self._registry.record(
                basket_id,
                "limit_chaser_exhausted",
                f"Limit chaser reached {chaser.chase_count}/{chaser.max_chases} chases; loop stopped",
            )
            return "MAX_CHASES_REACHED"

        time_in_force = resolve_time_in_force(chaser.fill_or_cancel)
        if manual_price is None:
            pricing = compute_basket_chase_price_with_logging(
                basket.side,
                market_price=self._read_price(basket.symbol),
                distance=chaser.distance,
                distance_type=chaser.distance_type,
                fill_or_cancel=chaser.fill_or_cancel,
                basket_id=basket_id,
                loop_label=chaser_key(basket_id),
            )
            if not pricing.ok or pricing.order_price is None:
                return pricing.reason_code
            order_price = pricing.order_price
        else:
            order_price = float(manual_price)

        quantity = remaining_quantity(basket)
        if quantity <= 0:
            self._stop_loop(basket_id)
            self._registry.record(basket_id, "limit_chaser_skipped", "Nothing left to exit")
            return "NOTHING_TO_EXIT"

        released = self._release_previous(basket)
        if released in {"CHASER_FILLED", "CANCEL_FAILED"}:
            return released

        placed = place_order_with_retry_with_logging(
            self._gateway,
            OrderRequest(
                symbol=basket.symbol,
                side=basket.exit_side,
                order_type="limit",
                quantity=quantity,
                price=order_price,
                time_in_force=time_in_force,
                leverage=basket.entry_order.leverage,
                reduce_only=True,
            ),
            loop_label=chaser_key(basket_id),
        )
        if not placed.success or not placed.order_id:
            self._registry.record(
                basket_id,
                "limit_chaser_failed",
                f"Failed to place limit chaser order: {placed.reason_code}",
                price=order_price,
            )
            return placed.reason_code

        order_id = placed.order_id

        def _apply(target: BasketOrder) -> int:
            target.active_orders.limit_chaser_order_id = order_id
            target.limit_chaser.chase_count += 1
            target.limit_chaser.last_price = order_price
            return target.limit_chaser.chase_count

        chase_count = self._registry.mutate(basket_id, _apply)
        self._registry.record(
            basket_id,
            "limit_chaser_updated",
            f"Limit chaser order {chase_count}/{chaser.max_chases}: {order_price} ({time_in_force})",
            order_id=order_id,
            price=order_price,
        )
        if time_in_force == "IOC":
            self._scheduler.schedule_once(
                ioc_check_key(basket_id),
                self._ioc_check_delay_seconds,
                lambda: self.check_ioc_order_status(basket_id, order_id),
            )
        return "CHASE_PLACED"

    def _release_previous_if_filled(self, basket: BasketOrder) -> bool:
        order_id = basket.active_orders.limit_chaser_order_id
        if not order_id:
            return False
        query = query_order_with_retry_with_logging(self._gateway, order_id, loop_label=chaser_key(basket.id))
        if query.success and query.order_status == "filled":
            self._complete_filled(basket.id, order_id, source="exhausted_check")
            return True
        return False

    def _read_price(self, symbol: str) -> Optional[float]:
        try:
            return self._market_data.get_price(symbol)
        except Exception as exc:
            log_structured_event(
                StructuredLogEvent(
                    component="limit_chaser",
                    event="read_price_failed",
                    input_data=f"symbol={symbol}",
                    decision="skip_tick",
                    result="price_missing",
                    failure_reason=type(exc).__name__,
                ),
                error=repr(exc),
            )
            return None


def _clear_chaser_order(basket: BasketOrder) -> None:
    basket.active_orders.limit_chaser_order_id = None
