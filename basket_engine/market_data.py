from __future__ import annotations

import math
import threading
import time
from typing import Any, Callable, Mapping, Optional, Sequence

import requests

from .basket_models import TIMEFRAME_SECONDS
from .event_logging import StructuredLogEvent, log_structured_event
from .port_models import Candle

HYPERLIQUID_BASE_URL_DEFAULT = "https://api.hyperliquid.xyz"
PRICE_CACHE_SECONDS_DEFAULT = 10.0
REQUEST_TIMEOUT_SECONDS_DEFAULT = 10

_QUOTE_SUFFIXES = ("/USD", "-USD", "USDT", "USD")


def normalize_coin(symbol: str) -> str:
    coin = (symbol or "").strip().upper()
    for suffix in _QUOTE_SUFFIXES:
        if coin.endswith(suffix) and len(coin) > len(suffix):
            return coin[: -len(suffix)]
    return coin


def _parse_positive_float(value: Any) -> Optional[float]:
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(parsed) or parsed <= 0:
        return None
    return parsed


def parse_candle(raw: Mapping[str, Any]) -> Optional[Candle]:
    try:
        timestamp = int(raw["t"])
        open_price = float(raw["o"])
        high = float(raw["h"])
        low = float(raw["l"])
        close = float(raw["c"])
        volume = float(raw.get("v", 0.0))
    except (KeyError, TypeError, ValueError):
        return None
    if not all(math.isfinite(value) for value in (open_price, high, low, close)):
        return None
    return Candle(timestamp=timestamp, open=open_price, high=high, low=low, close=close, volume=volume)


class HyperliquidMarketData:
    """Market data over the public Hyperliquid ``info`` endpoint.

    Mid prices for every coin come from one ``allMids`` call and are cached
    for ``price_cache_seconds``; on a failed refresh the stale cache is still
    served. Candles come from ``candleSnapshot`` and are returned newest first.
    """

    def __init__(
        self,
        *,
        base_url: str = HYPERLIQUID_BASE_URL_DEFAULT,
        price_cache_seconds: float = PRICE_CACHE_SECONDS_DEFAULT,
        request_timeout_seconds: int = REQUEST_TIMEOUT_SECONDS_DEFAULT,
        request_post: Callable[..., requests.Response] = requests.post,
        now_provider: Callable[[], float] = time.time,
    ) -> None:
        self._url = f"{base_url.rstrip('/')}/info"
        self._price_cache_seconds = max(0.0, float(price_cache_seconds))
        self._timeout = max(1, int(request_timeout_seconds))
        self._request_post = request_post
        self._now = now_provider
        self._lock = threading.Lock()
        self._mids: dict[str, float] = {}
        self._mids_updated_at: Optional[float] = None

    def _post(self, body: Mapping[str, Any]) -> tuple[Optional[Any], str]:
        try:
            response = self._request_post(self._url, json=dict(body), timeout=self._timeout)
        except requests.RequestException:
            return None, "request_exception"
        if int(getattr(response, "status_code", 0)) != 200:
            return None, f"http_status_{getattr(response, 'status_code', 'unknown')}"
        try:
            return response.json(), "-"
        except ValueError:
            return None, "json_decode_failed"

    def _refresh_mids(self) -> str:
        payload, failure_reason = self._post({"type": "allMids"})
        if payload is None:
            return failure_reason
        if not isinstance(payload, Mapping):
            return "payload_not_mapping"
        mids: dict[str, float] = {}
        for coin, raw_price in payload.items():
            price = _parse_positive_float(raw_price)
            if price is not None:
                mids[str(coin).upper()] = price
        with self._lock:
            self._mids = mids
            self._mids_updated_at = self._now()
        return "-"

    def _cache_fresh(self) -> bool:
        with self._lock:
            if self._mids_updated_at is None or not self._mids:
                return False
            return self._now() - self._mids_updated_at < self._price_cache_seconds

    def get_price(self, symbol: str) -> Optional[float]:
        coin = normalize_coin(symbol)
        cache_hit = self._cache_fresh()
        failure_reason = "-"
        if not cache_hit:
            failure_reason = self._refresh_mids()
        with self._lock:
            price = self._mids.get(coin)
        if price is None and failure_reason == "-":
            failure_reason = "coin_not_listed"

        log_structured_event(
            StructuredLogEvent(
                component="market_data",
                event="get_price",
                input_data=f"symbol={symbol} coin={coin}",
                decision="serve_cache" if cache_hit else "refresh_all_mids",
                result="price_ready" if price is not None else "price_missing",
                failure_reason=failure_reason,
            ),
            price=price if price is not None else "-",
        )
        return price

    def get_candles(self, symbol: str, timeframe: str, limit: int) -> Sequence[Candle]:
        coin = normalize_coin(symbol)
        interval_seconds = TIMEFRAME_SECONDS.get(timeframe)
        count = max(1, int(limit))
        candles: list[Candle] = []
        failure_reason = "-"
        if interval_seconds is None:
            failure_reason = "unsupported_timeframe"
        else:
            end_ms = int(self._now() * 1000)
            start_ms = end_ms - interval_seconds * 1000 * (count + 1)
            payload, failure_reason = self._post(
                {
                    "type": "candleSnapshot",
                    "req": {
                        "coin": coin,
                        "interval": timeframe,
                        "startTime": start_ms,
                        "endTime": end_ms,
                    },
                }
            )
            if payload is not None and not isinstance(payload, list):
                failure_reason = "result_not_list"
            elif isinstance(payload, list):
                for raw in payload:
                    if isinstance(raw, Mapping):
                        candle = parse_candle(raw)
                        if candle is not None:
                            candles.append(candle)
                candles.sort(key=lambda candle: candle.timestamp, reverse=True)
                candles = candles[:count]

        log_structured_event(
            StructuredLogEvent(
                component="market_data",
                event="get_candles",
                input_data=f"symbol={symbol} coin={coin} timeframe={timeframe} limit={count}",
                decision="fetch_candle_snapshot",
                result=f"candles={len(candles)}",
                failure_reason=failure_reason,
            ),
            newest_timestamp=candles[0].timestamp if candles else "-",
        )
        return candles
