"""Boundaries the engine talks through.

Adapters live in ``market_data``, ``persistence``, ``events`` and
``sim_exchange``; anything structurally matching these protocols can be
injected instead.
"""
from __future__ import annotations

from typing import Any, Mapping, Optional, Protocol, Sequence

from .port_models import Candle, ExecutionEvent, OrderPlacementResult, OrderRequest, OrderStatus


class MarketDataPort(Protocol):
    def get_price(self, symbol: str) -> Optional[float]:
        ...

    def get_candles(self, symbol: str, timeframe: str, limit: int) -> Sequence[Candle]:
        """Return at most ``limit`` candles, newest first."""
        ...


class OrderGatewayPort(Protocol):
    def place_order(self, request: OrderRequest) -> OrderPlacementResult:
        ...

    def cancel_order(self, order_id: str) -> bool:
        ...

    def get_order_status(self, order_id: str) -> OrderStatus:
        ...


class PersistencePort(Protocol):
    def save_snapshot(self, state: Mapping[str, Any]) -> None:
        ...

    def load_snapshot(self) -> Optional[Mapping[str, Any]]:
        ...


class EventSink(Protocol):
    def __call__(self, event: ExecutionEvent) -> None:
        ...
