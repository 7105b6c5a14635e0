from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass
from typing import Mapping, Optional

from .event_logging import LOG_FIELD_EMPTY, StructuredLogEvent, log_structured_event

STATE_DIR_DEFAULT = os.path.join(tempfile.gettempdir(), "basket-engine-state")
MARKET_DATA_BASE_URL_DEFAULT = "https://api.hyperliquid.xyz"

IOC_CHECK_DELAY_SECONDS_DEFAULT = 1.0
ENTRY_CHASE_INTERVAL_SECONDS_DEFAULT = 5.0
ENTRY_MAX_CHASES_DEFAULT = 10
ENTRY_REPRICE_THRESHOLD_DEFAULT = 0.001
CANDLE_CACHE_SIZE_DEFAULT = 100
CANDLE_FETCH_LIMIT_DEFAULT = 2
PRICE_WATCH_INTERVAL_SECONDS_DEFAULT = 2.0
PRICE_CACHE_SECONDS_DEFAULT = 10.0
HTTP_TIMEOUT_SECONDS_DEFAULT = 10
CANCEL_MAX_ATTEMPTS_DEFAULT = 3
LOG_ROTATE_MAX_BYTES_DEFAULT = 5 * 1024 * 1024
LOG_ROTATE_BACKUP_COUNT_DEFAULT = 3

STATE_DIR_ENV = "BASKET_ENGINE_STATE_DIR"
MARKET_DATA_BASE_URL_ENV = "BASKET_ENGINE_MARKET_DATA_URL"
IOC_CHECK_DELAY_SECONDS_ENV = "BASKET_ENGINE_IOC_CHECK_DELAY_SECONDS"
ENTRY_CHASE_INTERVAL_SECONDS_ENV = "BASKET_ENGINE_ENTRY_CHASE_INTERVAL_SECONDS"
ENTRY_MAX_CHASES_ENV = "BASKET_ENGINE_ENTRY_MAX_CHASES"
ENTRY_REPRICE_THRESHOLD_ENV = "BASKET_ENGINE_ENTRY_REPRICE_THRESHOLD"
CANDLE_CACHE_SIZE_ENV = "BASKET_ENGINE_CANDLE_CACHE_SIZE"
CANDLE_FETCH_LIMIT_ENV = "BASKET_ENGINE_CANDLE_FETCH_LIMIT"
PRICE_WATCH_INTERVAL_SECONDS_ENV = "BASKET_ENGINE_PRICE_WATCH_INTERVAL_SECONDS"
PRICE_CACHE_SECONDS_ENV = "BASKET_ENGINE_PRICE_CACHE_SECONDS"
HTTP_TIMEOUT_SECONDS_ENV = "BASKET_ENGINE_HTTP_TIMEOUT_SECONDS"
CANCEL_MAX_ATTEMPTS_ENV = "BASKET_ENGINE_CANCEL_MAX_ATTEMPTS"
LOG_ROTATE_MAX_BYTES_ENV = "BASKET_ENGINE_LOG_MAX_BYTES"
LOG_ROTATE_BACKUP_COUNT_ENV = "BASKET_ENGINE_LOG_BACKUP_COUNT"


@dataclass(frozen=True)
class EngineSettings:
    state_dir: str = STATE_DIR_DEFAULT
    market_data_base_url: str = MARKET_DATA_BASE_URL_DEFAULT
    ioc_check_delay_seconds: float = IOC_CHECK_DELAY_SECONDS_DEFAULT
    entry_chase_interval_seconds: float = ENTRY_CHASE_INTERVAL_SECONDS_DEFAULT
    entry_max_chases: int = ENTRY_MAX_CHASES_DEFAULT
    entry_reprice_threshold: float = ENTRY_REPRICE_THRESHOLD_DEFAULT
    candle_cache_size: int = CANDLE_CACHE_SIZE_DEFAULT
    candle_fetch_limit: int = CANDLE_FETCH_LIMIT_DEFAULT
    price_watch_interval_seconds: float = PRICE_WATCH_INTERVAL_SECONDS_DEFAULT
    price_cache_seconds: float = PRICE_CACHE_SECONDS_DEFAULT
    http_timeout_seconds: int = HTTP_TIMEOUT_SECONDS_DEFAULT
    cancel_max_attempts: int = CANCEL_MAX_ATTEMPTS_DEFAULT
    log_rotate_max_bytes: int = LOG_ROTATE_MAX_BYTES_DEFAULT
    log_rotate_backup_count: int = LOG_ROTATE_BACKUP_COUNT_DEFAULT


def _log_config_event(
    event: str,
    input_data: str,
    decision: str,
    result: str,
    *,
    state_before: str = LOG_FIELD_EMPTY,
    state_after: str = LOG_FIELD_EMPTY,
    failure_reason: str = LOG_FIELD_EMPTY,
    **context: object,
) -> None:
    log_structured_event(
        StructuredLogEvent(
            component="config",
            event=event,
            input_data=input_data,
            decision=decision,
            result=result,
            state_before=state_before,
            state_after=state_after,
            failure_reason=failure_reason,
        ),
        **context,
    )


def _log_default_used(key: str, default: object) -> None:
    _log_config_event(
        "setting_default_used",
        input_data=f"{key}=<missing>",
        decision="use_default",
        result=f"value={default}",
        state_before="loading",
        state_after="loading",
        key=key,
        value=default,
    )


def _log_fallback(key: str, raw: object, default: object, failure_reason: str, **bounds: object) -> None:
    _log_config_event(
        "setting_parse_failed" if failure_reason.startswith("invalid") else f"setting_{failure_reason}",
        input_data=f"{key}={raw}",
        decision="fallback_to_default",
        result=f"value={default}",
        state_before="loading",
        state_after="loading",
        failure_reason=failure_reason,
        key=key,
        raw=raw,
        fallback=default,
        **bounds,
    )


def _log_loaded(key: str, raw: object, value: object) -> None:
    _log_config_event(
        "setting_loaded",
        input_data=f"{key}={raw}",
        decision="accept_input",
        result=f"value={value}",
        state_before="loading",
        state_after="loading",
        key=key,
        value=value,
    )


def _read_str(env: Mapping[str, str], key: str, default: str) -> str:
    raw = env.get(key)
    if raw is None or not raw.strip():
        _log_default_used(key, default)
        return default
    value = raw.strip()
    _log_loaded(key, raw, value)
    return value


def _read_int(
    env: Mapping[str, str],
    key: str,
    default: int,
    *,
    minimum: Optional[int] = None,
) -> int:
    raw = env.get(key)
    if raw is None:
        _log_default_used(key, default)
        return default
    try:
        value = int(raw)
    except ValueError:
        _log_fallback(key, raw, default, "invalid_int")
        return default
    if minimum is not None and value < minimum:
        _log_fallback(key, value, default, "below_minimum", minimum=minimum)
        return default
    _log_loaded(key, raw, value)
    return value


def _read_float(
    env: Mapping[str, str],
    key: str,
    default: float,
    *,
    minimum: Optional[float] = None,
    maximum: Optional[float] = None,
) -> float:
    raw = env.get(key)
    if raw is None:
        _log_default_used(key, default)
        return default
    try:
        value = float(raw)
    except ValueError:
        _log_fallback(key, raw, default, "invalid_float")
        return default
    if minimum is not None and value < minimum:
        _log_fallback(key, value, default, "below_minimum", minimum=minimum)
        return default
    if maximum is not None and value > maximum:
        _log_fallback(key, value, default, "above_maximum", maximum=maximum)
        return default
    _log_loaded(key, raw, value)
    return value


def load_engine_settings(env: Optional[Mapping[str, str]] = None) -> EngineSettings:
    source = env if env is not None else os.environ
    _log_config_event(
        "settings_load_started",
        input_data=f"env_source={'custom' if env is not None else 'os.environ'}",
        decision="begin_settings_load",
        result="started",
        state_before="idle",
        state_after="loading",
    )

    settings = EngineSettings(
        state_dir=_read_str(source, STATE_DIR_ENV, STATE_DIR_DEFAULT),
        market_data_base_url=_read_str(source, MARKET_DATA_BASE_URL_ENV, MARKET_DATA_BASE_URL_DEFAULT),
        ioc_check_delay_seconds=_read_float(
            source,
            IOC_CHECK_DELAY_SECONDS_ENV,
            IOC_CHECK_DELAY_SECONDS_DEFAULT,
            minimum=0.0,
            maximum=60.0,
        ),
        entry_chase_interval_seconds=_read_float(
            source,
            ENTRY_CHASE_INTERVAL_SECONDS_ENV,
            ENTRY_CHASE_INTERVAL_SECONDS_DEFAULT,
            minimum=0.1,
        ),
        entry_max_chases=_read_int(
            source,
            ENTRY_MAX_CHASES_ENV,
            ENTRY_MAX_CHASES_DEFAULT,
            minimum=0,
        ),
        entry_reprice_threshold=_read_float(
            source,
            ENTRY_REPRICE_THRESHOLD_ENV,
            ENTRY_REPRICE_THRESHOLD_DEFAULT,
            minimum=0.0,
            maximum=0.5,
        ),
        candle_cache_size=_read_int(
            source,
            CANDLE_CACHE_SIZE_ENV,
            CANDLE_CACHE_SIZE_DEFAULT,
            minimum=2,
        ),
        candle_fetch_limit=_read_int(
            source,
            CANDLE_FETCH_LIMIT_ENV,
            CANDLE_FETCH_LIMIT_DEFAULT,
            minimum=2,
        ),
        price_watch_interval_seconds=_read_float(
            source,
            PRICE_WATCH_INTERVAL_SECONDS_ENV,
            PRICE_WATCH_INTERVAL_SECONDS_DEFAULT,
            minimum=0.1,
        ),
        price_cache_seconds=_read_float(
            source,
            PRICE_CACHE_SECONDS_ENV,
            PRICE_CACHE_SECONDS_DEFAULT,
            minimum=0.0,
        ),
        http_timeout_seconds=_read_int(
            source,
            HTTP_TIMEOUT_SECONDS_ENV,
            HTTP_TIMEOUT_SECONDS_DEFAULT,
            minimum=1,
        ),
        cancel_max_attempts=_read_int(
            source,
            CANCEL_MAX_ATTEMPTS_ENV,
            CANCEL_MAX_ATTEMPTS_DEFAULT,
            minimum=1,
        ),
        log_rotate_max_bytes=_read_int(
            source,
            LOG_ROTATE_MAX_BYTES_ENV,
            LOG_ROTATE_MAX_BYTES_DEFAULT,
            minimum=1024,
        ),
        log_rotate_backup_count=_read_int(
            source,
            LOG_ROTATE_BACKUP_COUNT_ENV,
            LOG_ROTATE_BACKUP_COUNT_DEFAULT,
            minimum=0,
        ),
    )
    _log_config_event(
        "settings_load_completed",
        input_data="all_settings_processed",
        decision="finalize_settings",
        result="settings_ready",
        state_before="loading",
        state_after="loaded",
        state_dir=settings.state_dir,
        ioc_check_delay_seconds=settings.ioc_check_delay_seconds,
        entry_chase_interval_seconds=settings.entry_chase_interval_seconds,
        entry_max_chases=settings.entry_max_chases,
        entry_reprice_threshold=settings.entry_reprice_threshold,
        candle_cache_size=settings.candle_cache_size,
        price_watch_interval_seconds=settings.price_watch_interval_seconds,
        cancel_max_attempts=settings.cancel_max_attempts,
    )
    return settings
