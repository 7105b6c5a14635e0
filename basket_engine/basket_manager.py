from __future__ import annotations

import threading
from typing import Any, Mapping, Optional

from .basket_models import BasketConfig, BasketOrder
from .basket_registry import BasketRegistry
from .config import EngineSettings
from .event_logging import StructuredLogEvent, log_structured_event
from .limit_chaser import LimitChaser, remaining_quantity
from .order_gateway import (
    cancel_order_with_retry_with_logging,
    place_order_with_retry_with_logging,
    query_order_with_retry_with_logging,
)
from .order_gateway_models import RetryPolicy
from .port_models import OrderRequest
from .ports import MarketDataPort, OrderGatewayPort
from .scheduler import EntityGuard
from .stop_loss_monitor import StopLossMonitor, uses_candle_close
from .take_profit import TakeProfitDispatcher
from .trigger_engine import evaluate_stop_loss_with_logging


def price_watch_key(symbol: str) -> str:
    return f"price:{symbol.upper()}"


class BasketOrderManager:
    """Lifecycle of basket orders: entry, stop-loss, limit chaser, take-profits.

    Explicit commands wait for the basket's slot in the shared ``EntityGuard``;
    periodic ticks skip a basket whose slot is busy.
    """

    def __init__(
        self,
        registry: BasketRegistry,
        market_data: MarketDataPort,
        gateway: OrderGatewayPort,
        scheduler,
        *,
        guard: Optional[EntityGuard] = None,
        settings: Optional[EngineSettings] = None,
    ) -> None:
        self._settings = settings or EngineSettings()
        self._registry = registry
        self._market_data = market_data
        self._gateway = gateway
        self._scheduler = scheduler
        self._guard = guard or EntityGuard()
        self._cancel_retry_policy = RetryPolicy(max_attempts=self._settings.cancel_max_attempts)
        self._price_lock = threading.Lock()
        self._price_watches: set[str] = set()

        self.stop_loss_monitor = StopLossMonitor(
            registry,
            market_data,
            scheduler,
            on_trigger=self._on_candle_trigger,
            candle_cache_size=self._settings.candle_cache_size,
            candle_fetch_limit=self._settings.candle_fetch_limit,
        )
        self.limit_chaser = LimitChaser(
            registry,
            market_data,
            gateway,
            scheduler,
            self._guard,
            on_basket_closed=self._release_basket,
            ioc_check_delay_seconds=self._settings.ioc_check_delay_seconds,
            cancel_retry_policy=self._cancel_retry_policy,
        )
        self.take_profits = TakeProfitDispatcher(registry, gateway, self._guard)

    @property
    def registry(self) -> BasketRegistry:
        return self._registry

    def create_basket(self, config: BasketConfig) -> str:
        return self._registry.create(config)

    def get_basket(self, basket_id: str) -> Optional[BasketOrder]:
        return self._registry.get(basket_id)

    def list_baskets(self) -> list[BasketOrder]:
        return self._registry.list()

    def update_basket(self, basket_id: str, patch: Mapping[str, Any]) -> bool:
        with self._guard.hold(basket_id):
            replaced = self._registry.replace_config(basket_id, patch)
            if replaced is None:
                return False
            before, after = replaced
            self._registry.record(basket_id, "updated", f"Basket updated: {', '.join(sorted(patch))}")
            if after.status == "active":
                self._sync_tasks(before, after)
        self.stop_loss_monitor.release_unused()
        return True

    def _sync_tasks(self, before: BasketOrder, after: BasketOrder) -> None:
        if before.limit_chaser.enabled and not after.limit_chaser.enabled:
            self.limit_chaser.stop(after.id, cancel_resting=True)
        elif after.limit_chaser.enabled and not self.limit_chaser.is_running(after.id):
            self.limit_chaser.start(after.id)
        if uses_candle_close(after):
            self.stop_loss_monitor.watch(after.symbol, after.stop_loss.timeframe)

    def cancel_basket(self, basket_id: str) -> bool:
        with self._guard.hold(basket_id):
            basket = self._registry.get(basket_id)
            if basket is None:
                return False
            if basket.is_terminal:
                log_structured_event(
                    StructuredLogEvent(
                        component="basket_manager",
                        event="cancel_basket",
                        entity_id=basket_id,
                        decision="terminal_cancel_is_noop",
                        result="noop",
                        state_before=basket.status,
                        state_after=basket.status,
                    ),
                )
                return True

            self.limit_chaser.stop(basket_id)
            for order_id in basket.active_orders.outstanding_ids():
                result = cancel_order_with_retry_with_logging(
                    self._gateway,
                    order_id,
                    retry_policy=self._cancel_retry_policy,
                    loop_label=f"cancel:{basket_id}",
                )
                if not result.success:
                    self._registry.record(
                        basket_id,
                        "order_cancel_failed",
                        f"Could not cancel order: {result.reason_code}",
                        order_id=order_id,
                    )
            self._registry.set_status(basket_id, "cancelled", details="Basket cancelled")
            self._registry.record(basket_id, "cancelled", "Basket cancelled by user")
        self._release_basket(basket_id)
        return True

    def execute_basket_entry(self, basket_id: str) -> bool:
        with self._guard.hold(basket_id):
            basket = self._registry.get(basket_id)
            if basket is None or basket.status != "pending":
                return False
            entry = basket.entry_order
            result = place_order_with_retry_with_logging(
                self._gateway,
                OrderRequest(
                    symbol=basket.symbol,
                    side=basket.side,
                    order_type=entry.type,
                    quantity=entry.quantity,
                    price=entry.price,
                    leverage=entry.leverage,
                ),
                loop_label=f"entry:{basket_id}",
            )
            if not result.success or not result.order_id:
                self._registry.record(basket_id, "entry_failed", f"Entry execution failed: {result.reason_code}")
                return False

            order_id = result.order_id

            def _apply(target: BasketOrder) -> None:
                target.active_orders.entry_order_id = order_id

            self._registry.mutate(basket_id, _apply)
            self._registry.set_status(basket_id, "active", details="Entry order placed")
            self._registry.record(basket_id, "entry_executed", f"Entry order placed: {order_id}", order_id=order_id)
            self._start_basket_tasks(basket_id)
            return True

    def _start_basket_tasks(self, basket_id: str) -> None:
        basket = self._registry.get(basket_id)
        if basket is None or basket.status != "active":
            return
        if basket.stop_loss.enabled:
            if basket.stop_loss.candle_close_confirmation:
                self.stop_loss_monitor.watch(basket.symbol, basket.stop_loss.timeframe)
            self._registry.record(
                basket_id,
                "stop_loss_setup",
                f"Stop loss monitoring started at {basket.stop_loss.trigger_price}",
                price=basket.stop_loss.trigger_price,
            )
        if basket.limit_chaser.enabled:
            self.limit_chaser.start(basket_id)
        self._ensure_price_watch(basket.symbol)

    def trigger_stop_loss(self, basket_id: str, market_price: float) -> bool:
        with self._guard.hold(basket_id):
            triggered = self._trigger_stop_loss(basket_id, market_price, source="explicit")
        if triggered:
            self._release_basket(basket_id)
        return triggered

    def _on_candle_trigger(self, basket_id: str, close: float) -> bool:
        with self._guard.hold(basket_id):
            triggered = self._trigger_stop_loss(basket_id, close, source="candle_close")
        if triggered:
            self._release_basket(basket_id)
        return triggered

    def _trigger_stop_loss(self, basket_id: str, market_price: float, *, source: str) -> bool:
        basket = self._registry.get(basket_id)
        if basket is None or basket.status != "active" or not basket.stop_loss.enabled:
            return False

        self.limit_chaser.stop(basket_id, cancel_resting=True)
        quantity = remaining_quantity(basket)
        stop_loss = basket.stop_loss
        order_id: Optional[str] = None
        if quantity > 0:
            result = place_order_with_retry_with_logging(
                self._gateway,
                OrderRequest(
                    symbol=basket.symbol,
                    side=basket.exit_side,
                    order_type=stop_loss.order_type,
                    quantity=quantity,
                    price=stop_loss.limit_price or market_price,
                    leverage=basket.entry_order.leverage,
                    reduce_only=True,
                ),
                loop_label=f"stop_loss:{basket_id}",
            )
            if not result.success or not result.order_id:
                self._registry.record(
                    basket_id,
                    "stop_loss_failed",
                    f"Stop loss order not placed ({source}): {result.reason_code}",
                    price=market_price,
                )
                return False
            order_id = result.order_id

            def _apply(target: BasketOrder) -> None:
                target.active_orders.stop_loss_order_id = order_id

            self._registry.mutate(basket_id, _apply)

        self._registry.record(
            basket_id,
            "stop_loss_triggered",
            f"Stop loss executed at {market_price} ({source})",
            order_id=order_id,
            price=market_price,
        )
        self._cancel_unfilled_entry(basket)
        self._registry.set_status(basket_id, "completed", details="Closed by stop loss")
        return True

    def _cancel_unfilled_entry(self, basket: BasketOrder) -> None:
        order_id = basket.active_orders.entry_order_id
        if basket.entry_filled or not order_id:
            return
        result = cancel_order_with_retry_with_logging(
            self._gateway,
            order_id,
            retry_policy=self._cancel_retry_policy,
            loop_label=f"stop_loss:{basket.id}",
        )
        if result.success:
            self._registry.record(
                basket.id,
                "entry_cancelled_on_stop",
                "Unfilled entry order cancelled by stop loss",
                order_id=order_id,
            )
            return
        self._registry.record(
            basket.id,
            "order_cancel_failed",
            f"Could not cancel entry order: {result.reason_code}",
            order_id=order_id,
        )

    def execute_take_profit(self, basket_id: str, take_profit_id: str) -> bool:
        return self.take_profits.execute_take_profit(basket_id, take_profit_id)

    def evaluate_take_profits(self, basket_id: str, price: float) -> list[str]:
        return self.take_profits.evaluate_take_profits(basket_id, price)

    def update_limit_chaser(self, basket_id: str, new_price: float) -> bool:
        return self.limit_chaser.update_limit_chaser(basket_id, new_price)

    def _ensure_price_watch(self, symbol: str) -> None:
        with self._price_lock:
            if symbol in self._price_watches:
                return
            self._price_watches.add(symbol)
        self._scheduler.start_periodic(
            price_watch_key(symbol),
            self._settings.price_watch_interval_seconds,
            lambda: self.price_watch_tick(symbol),
        )

    def _release_price_watches(self) -> None:
        in_use = {basket.symbol for basket in self._registry.list() if basket.status == "active"}
        with self._price_lock:
            stale = sorted(self._price_watches - in_use)
            self._price_watches.difference_update(stale)
        for symbol in stale:
            self._scheduler.stop(price_watch_key(symbol))

    def _release_basket(self, basket_id: str) -> None:
        self.limit_chaser.stop(basket_id)
        self.stop_loss_monitor.release_unused()
        self._release_price_watches()

    def _read_price(self, symbol: str) -> Optional[float]:
        try:
            return self._market_data.get_price(symbol)
        except Exception as exc:
            log_structured_event(
                StructuredLogEvent(
                    component="basket_manager",
                    event="read_price_failed",
                    input_data=f"symbol={symbol}",
                    decision="skip_price_checks",
                    result="price_missing",
                    failure_reason=type(exc).__name__,
                ),
                error=repr(exc),
            )
            return None

    def _confirm_entry_fill(self, basket: BasketOrder) -> bool:
        order_id = basket.active_orders.entry_order_id
        if basket.entry_filled:
            return True
        if not order_id:
            return False
        query = query_order_with_retry_with_logging(self._gateway, order_id, loop_label=price_watch_key(basket.symbol))
        if not query.success:
            return False
        if query.order_status == "filled":

            def _apply(target: BasketOrder) -> None:
                target.entry_filled = True

            self._registry.mutate(basket.id, _apply)
            self._registry.record(basket.id, "entry_filled", f"Entry order {order_id} filled", order_id=order_id)
            return True
        if query.order_status in {"cancelled", "rejected"}:
            self.limit_chaser.stop(basket.id, cancel_resting=True)
            self._registry.record(
                basket.id,
                f"entry_{query.order_status}",
                f"Entry order {order_id} {query.order_status}",
                order_id=order_id,
            )
            self._registry.set_status(basket.id, "error", details=f"Entry order {query.order_status}")
        return False

    def price_watch_tick(self, symbol: str) -> None:
        price = self._read_price(symbol)
        closed: list[str] = []
        for basket in self._registry.list():
            if basket.symbol != symbol or basket.status != "active":
                continue
            with self._guard.hold(basket.id, blocking=False) as acquired:
                if not acquired:
                    continue
                if self._watch_basket(basket.id, symbol, price):
                    closed.append(basket.id)
        for basket_id in closed:
            self._release_basket(basket_id)
        self._release_price_watches()

    def _watch_basket(self, basket_id: str, symbol: str, price: Optional[float]) -> bool:
        """Run one price-watch pass for a basket; True when it went terminal."""
        current = self._registry.get(basket_id)
        if current is None or current.status != "active":
            return False
        filled = self._confirm_entry_fill(current)
        if not filled:
            refreshed = self._registry.get(basket_id)
            if refreshed is None or refreshed.is_terminal:
                return True
        if price is None:
            return False
        stop_loss = current.stop_loss
        if stop_loss.enabled and not stop_loss.candle_close_confirmation:
            evaluation = evaluate_stop_loss_with_logging(
                current.id,
                current.side,
                trigger_price=stop_loss.trigger_price,
                observed_price=price,
                source="price_watch",
                loop_label=price_watch_key(symbol),
            )
            if evaluation.satisfied and self._trigger_stop_loss(current.id, price, source="price_watch"):
                return True
        if filled:
            self.take_profits.evaluate_take_profits(current.id, price)
        return False

    def start_market_monitoring(self) -> int:
        resumed = 0
        for basket in self._registry.list():
            if basket.status != "active":
                continue
            self._start_basket_tasks(basket.id)
            resumed += 1
        log_structured_event(
            StructuredLogEvent(
                component="basket_manager",
                event="start_market_monitoring",
                input_data=f"basket_count={len(self._registry.ids())}",
                decision="resume_active_baskets",
                result=f"resumed={resumed}",
                state_before="idle",
                state_after="monitoring",
            ),
        )
        return resumed

    def stop_market_monitoring(self) -> None:
        self.stop_loss_monitor.stop_all()
        for basket_id in self._registry.ids():
            self.limit_chaser.stop(basket_id)
        with self._price_lock:
            symbols = sorted(self._price_watches)
            self._price_watches.clear()
        for symbol in symbols:
            self._scheduler.stop(price_watch_key(symbol))
        log_structured_event(
            StructuredLogEvent(
                component="basket_manager",
                event="stop_market_monitoring",
                input_data=f"price_watch_count={len(symbols)}",
                decision="stop_all_basket_tasks",
                result="stopped",
                state_before="monitoring",
                state_after="idle",
            ),
        )

    def shutdown(self) -> None:
        self.stop_market_monitoring()
