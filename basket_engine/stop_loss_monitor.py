from __future__ import annotations

import threading
from typing import Callable, Sequence

from .basket_models import TIMEFRAME_SECONDS, BasketOrder
from .basket_registry import BasketRegistry
from .event_logging import StructuredLogEvent, log_structured_event
from .port_models import Candle
from .ports import MarketDataPort
from .trigger_engine import (
    CANDLE_CACHE_SIZE_DEFAULT,
    CandleCache,
    detect_closed_candle_with_logging,
    evaluate_stop_loss_with_logging,
)

CANDLE_FETCH_LIMIT_DEFAULT = 2


def candle_key(symbol: str, timeframe: str) -> str:
    return f"candle:{symbol.upper()}:{timeframe}"


def uses_candle_close(basket: BasketOrder) -> bool:
    return (
        basket.status == "active"
        and basket.stop_loss.enabled
        and basket.stop_loss.candle_close_confirmation
    )


class StopLossMonitor:
    """Candle-close stop-loss watcher, one periodic task per symbol/timeframe.

    A key is checked once per timeframe duration. Only a candle that has
    closed is compared against the trigger, so an intrabar wick through the
    trigger never fires on its own.
    """

    def __init__(
        self,
        registry: BasketRegistry,
        market_data: MarketDataPort,
        scheduler,
        *,
        on_trigger: Callable[[str, float], bool],
        candle_cache_size: int = CANDLE_CACHE_SIZE_DEFAULT,
        candle_fetch_limit: int = CANDLE_FETCH_LIMIT_DEFAULT,
    ) -> None:
        self._registry = registry
        self._market_data = market_data
        self._scheduler = scheduler
        self._on_trigger = on_trigger
        self._candle_cache_size = candle_cache_size
        self._candle_fetch_limit = max(2, int(candle_fetch_limit))
        self._lock = threading.Lock()
        self._caches: dict[str, CandleCache] = {}
        self._watched: set[str] = set()

    def watch(self, symbol: str, timeframe: str) -> bool:
        key = candle_key(symbol, timeframe)
        with self._lock:
            if key in self._watched:
                return False
            self._watched.add(key)
        self._scheduler.start_periodic(
            key,
            TIMEFRAME_SECONDS[timeframe],
            lambda: self.check_candle_close(symbol, timeframe),
        )
        return True

    def unwatch(self, symbol: str, timeframe: str) -> bool:
        key = candle_key(symbol, timeframe)
        with self._lock:
            if key not in self._watched:
                return False
            self._watched.discard(key)
            self._caches.pop(key, None)
        self._scheduler.stop(key)
        return True

    def watched_keys(self) -> list[str]:
        with self._lock:
            return sorted(self._watched)

    def release_unused(self) -> list[str]:
        in_use = {
            candle_key(basket.symbol, basket.stop_loss.timeframe)
            for basket in self._registry.list()
            if uses_candle_close(basket)
        }
        with self._lock:
            stale = sorted(self._watched - in_use)
        released: list[str] = []
        for key in stale:
            _, symbol, timeframe = key.split(":", 2)
            if self.unwatch(symbol, timeframe):
                released.append(key)
        return released

    def stop_all(self) -> None:
        with self._lock:
            keys = sorted(self._watched)
            self._watched.clear()
            self._caches.clear()
        for key in keys:
            self._scheduler.stop(key)

    def cached_candles(self, symbol: str, timeframe: str) -> list[Candle]:
        with self._lock:
            cache = self._caches.get(candle_key(symbol, timeframe))
            return cache.snapshot() if cache is not None else []

    def _fetch(self, symbol: str, timeframe: str) -> Sequence[Candle]:
        try:
            return self._market_data.get_candles(symbol, timeframe, self._candle_fetch_limit)
        except Exception as exc:
            log_structured_event(
                StructuredLogEvent(
                    component="stop_loss_monitor",
                    event="fetch_candles_failed",
                    input_data=f"symbol={symbol} timeframe={timeframe}",
                    decision="skip_tick",
                    result="no_candles",
                    failure_reason=type(exc).__name__,
                ),
                error=repr(exc),
            )
            return []

    def check_candle_close(self, symbol: str, timeframe: str) -> list[str]:
        key = candle_key(symbol, timeframe)
        candles = self._fetch(symbol, timeframe)
        with self._lock:
            cache = self._caches.setdefault(key, CandleCache(self._candle_cache_size))
            cached_newest = cache.newest_timestamp
        detection = detect_closed_candle_with_logging(
            candles,
            cached_newest_timestamp=cached_newest,
            symbol=symbol,
            timeframe=timeframe,
            loop_label=key,
        )
        if not detection.new_candle_closed or detection.newest_candle is None or detection.closed_candle is None:
            return []
        with self._lock:
            cache.push(detection.newest_candle)

        close = detection.closed_candle.close
        triggered: list[str] = []
        for basket in self._registry.list():
            if not uses_candle_close(basket):
                continue
            if basket.symbol != symbol.upper() or basket.stop_loss.timeframe != timeframe:
                continue
            evaluation = evaluate_stop_loss_with_logging(
                basket.id,
                basket.side,
                trigger_price=basket.stop_loss.trigger_price,
                observed_price=close,
                source="candle_close",
                loop_label=key,
            )
            if evaluation.satisfied and self._on_trigger(basket.id, close):
                triggered.append(basket.id)
        return triggered
