from __future__ import annotations

from typing import Optional

from .basket_models import BasketOrder
from .basket_registry import BasketRegistry
from .order_gateway import place_order_with_retry_with_logging
from .port_models import OrderRequest
from .ports import OrderGatewayPort
from .scheduler import EntityGuard
from .trigger_engine import evaluate_take_profit


def take_profit_key(basket_id: str) -> str:
    return f"take_profit:{basket_id}"


class TakeProfitDispatcher:
    """Partial reduce-only exits, each level dispatched at most once."""

    def __init__(self, registry: BasketRegistry, gateway: OrderGatewayPort, guard: EntityGuard) -> None:
        self._registry = registry
        self._gateway = gateway
        self._guard = guard

    def execute_take_profit(self, basket_id: str, take_profit_id: str) -> bool:
        with self._guard.hold(basket_id):
            return self._dispatch(basket_id, take_profit_id)

    def evaluate_take_profits(self, basket_id: str, price: Optional[float], *, blocking: bool = True) -> list[str]:
        with self._guard.hold(basket_id, blocking=blocking) as acquired:
            if not acquired:
                return []
            basket = self._registry.get(basket_id)
            if basket is None or basket.status != "active" or not basket.entry_filled:
                return []
            dispatched: list[str] = []
            for level in basket.take_profits:
                if not level.enabled:
                    continue
                evaluation = evaluate_take_profit(
                    basket_id,
                    basket.side,
                    target_price=level.target_price,
                    observed_price=price,
                )
                if evaluation.satisfied and self._dispatch(basket_id, level.id):
                    dispatched.append(level.id)
            return dispatched

    def _dispatch(self, basket_id: str, take_profit_id: str) -> bool:
        basket = self._registry.get(basket_id)
        if basket is None or basket.status != "active":
            return False
        level = basket.find_take_profit(take_profit_id)
        if level is None or not level.enabled:
            return False

        quantity = basket.entry_order.quantity * level.quantity_percent / 100
        result = place_order_with_retry_with_logging(
            self._gateway,
            OrderRequest(
                symbol=basket.symbol,
                side=basket.exit_side,
                order_type=level.order_type,
                quantity=quantity,
                price=level.target_price,
                leverage=basket.entry_order.leverage,
                reduce_only=True,
            ),
            loop_label=take_profit_key(basket_id),
        )
        if not result.success or not result.order_id:
            self._registry.record(
                basket_id,
                "take_profit_failed",
                f"Take profit {take_profit_id} not placed: {result.reason_code}",
                price=level.target_price,
            )
            return False

        order_id = result.order_id

        def _apply(target: BasketOrder) -> None:
            target.active_orders.take_profit_order_ids.append(order_id)
            target_level = target.find_take_profit(take_profit_id)
            if target_level is not None:
                target_level.enabled = False
                target_level.order_id = order_id
            target.exited_quantity += quantity

        self._registry.mutate(basket_id, _apply)
        self._registry.record(
            basket_id,
            "take_profit_executed",
            f"Take profit {take_profit_id} executed at {level.target_price} for {quantity}",
            order_id=order_id,
            price=level.target_price,
        )
        return True
