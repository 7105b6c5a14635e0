from __future__ import annotations

import threading
from collections import deque
from typing import Iterable, Mapping, Optional, Sequence

from .port_models import Candle, OrderPlacementResult, OrderRequest, OrderStatus


def _normalize_symbol(symbol: str) -> str:
    return (symbol or "").strip().upper()


class SimulatedMarketData:
    """Scripted prices and candles.

    Queued prices are served one per ``get_price`` call; the last one sticks
    once the queue is down to a single value.
    """

    def __init__(self, prices: Optional[Mapping[str, Iterable[float]]] = None) -> None:
        self._lock = threading.Lock()
        self._prices: dict[str, deque[float]] = {}
        self._candles: dict[tuple[str, str], list[Candle]] = {}
        self.price_requests: list[str] = []
        self.candle_requests: list[tuple[str, str, int]] = []
        for symbol, series in (prices or {}).items():
            self.queue_prices(symbol, series)

    def queue_prices(self, symbol: str, prices: Iterable[float]) -> None:
        with self._lock:
            queue = self._prices.setdefault(_normalize_symbol(symbol), deque())
            queue.extend(float(price) for price in prices)

    def set_price(self, symbol: str, price: Optional[float]) -> None:
        with self._lock:
            key = _normalize_symbol(symbol)
            if price is None:
                self._prices.pop(key, None)
                return
            self._prices[key] = deque([float(price)])

    def set_candles(self, symbol: str, timeframe: str, candles: Sequence[Candle]) -> None:
        """Install candles for a key; ``candles`` are given newest first."""
        with self._lock:
            self._candles[(_normalize_symbol(symbol), timeframe)] = list(candles)

    def get_price(self, symbol: str) -> Optional[float]:
        key = _normalize_symbol(symbol)
        with self._lock:
            self.price_requests.append(key)
            queue = self._prices.get(key)
            if not queue:
                return None
            if len(queue) > 1:
                return queue.popleft()
            return queue[0]

    def get_candles(self, symbol: str, timeframe: str, limit: int) -> Sequence[Candle]:
        key = (_normalize_symbol(symbol), timeframe)
        with self._lock:
            self.candle_requests.append((key[0], timeframe, int(limit)))
            return list(self._candles.get(key, []))[: max(0, int(limit))]


class SimulatedOrderGateway:
    """In-memory exchange that records every call in order.

    New orders rest as ``pending`` unless a status was queued for them with
    ``queue_placement_status``. Failures can be injected per operation.
    """

    def __init__(self, *, id_prefix: str = "sim") -> None:
        self._lock = threading.Lock()
        self._id_prefix = id_prefix
        self._sequence = 0
        self._statuses: dict[str, OrderStatus] = {}
        self._placement_statuses: deque[OrderStatus] = deque()
        self.requests: dict[str, OrderRequest] = {}
        self.calls: list[tuple[str, str]] = []
        self.placed: list[OrderRequest] = []
        self.cancelled: list[str] = []
        self.reject_next_places = 0
        self.raise_next_places = 0
        self.reject_next_cancels = 0
        self.raise_on_status = False

    def queue_placement_status(self, status: OrderStatus) -> None:
        with self._lock:
            self._placement_statuses.append(status)

    def set_status(self, order_id: str, status: OrderStatus) -> None:
        with self._lock:
            self._statuses[order_id] = status

    def place_order(self, request: OrderRequest) -> OrderPlacementResult:
        with self._lock:
            if self.raise_next_places > 0:
                self.raise_next_places -= 1
                raise ConnectionError("simulated gateway outage")
            if self.reject_next_places > 0:
                self.reject_next_places -= 1
                self.calls.append(("reject", request.symbol))
                return OrderPlacementResult(success=False, message="simulated rejection")
            self._sequence += 1
            order_id = f"{self._id_prefix}-{self._sequence}"
            status: OrderStatus = self._placement_statuses.popleft() if self._placement_statuses else "pending"
            self._statuses[order_id] = status
            self.requests[order_id] = request
            self.placed.append(request)
            self.calls.append(("place", order_id))
            return OrderPlacementResult(success=True, order_id=order_id, message="accepted")

    def cancel_order(self, order_id: str) -> bool:
        with self._lock:
            self.calls.append(("cancel", order_id))
            if self.reject_next_cancels > 0:
                self.reject_next_cancels -= 1
                return False
            if self._statuses.get(order_id) != "pending":
                return False
            self._statuses[order_id] = "cancelled"
            self.cancelled.append(order_id)
            return True

    def get_order_status(self, order_id: str) -> OrderStatus:
        with self._lock:
            if self.raise_on_status:
                raise ConnectionError("simulated status outage")
            return self._statuses.get(order_id, "rejected")

    def place_call_order(self) -> list[str]:
        with self._lock:
            return [kind for kind, _ in self.calls if kind in {"place", "cancel"}]
