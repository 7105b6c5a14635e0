from __future__ import annotations

import json
import os
import threading
import time
from dataclasses import asdict
from pathlib import Path
from typing import Any, Mapping, Optional

from .basket_models import (
    ActiveOrders,
    BasketOrder,
    EntryOrderSpec,
    ExecutionLogEntry,
    LimitChaserConfig,
    StopLossConfig,
    TakeProfitLevel,
)
from .entry_models import EntryPositionOrder, EntryPositionParams
from .event_logging import StructuredLogEvent, log_structured_event

SNAPSHOT_VERSION = 1


def _log_persistence_event(
    event: str,
    path: Path,
    *,
    result: str,
    failure_reason: str = "-",
    **context: object,
) -> None:
    log_structured_event(
        StructuredLogEvent(
            component="persistence",
            event=event,
            input_data=f"path={path}",
            decision="read_write_json_snapshot",
            result=result,
            failure_reason=failure_reason,
        ),
        **context,
    )


class JsonFilePersistence:
    """Whole-snapshot JSON file, replaced atomically on every save."""

    def __init__(self, path: os.PathLike[str] | str) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()

    def save_snapshot(self, state: Mapping[str, Any]) -> None:
        payload = dict(state)
        payload.setdefault("version", SNAPSHOT_VERSION)
        payload["saved_at"] = int(time.time())
        tmp_path = self.path.with_name(f"{self.path.name}.tmp")
        with self._lock:
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                with tmp_path.open("w", encoding="utf-8") as handle:
                    json.dump(payload, handle, ensure_ascii=True, separators=(",", ":"))
                os.replace(tmp_path, self.path)
            except (OSError, TypeError, ValueError) as exc:
                _log_persistence_event(
                    "snapshot_save_failed",
                    self.path,
                    result="not_saved",
                    failure_reason=type(exc).__name__,
                    error=repr(exc),
                )
                return
        _log_persistence_event("snapshot_saved", self.path, result="saved")

    def load_snapshot(self) -> Optional[Mapping[str, Any]]:
        with self._lock:
            if not self.path.exists():
                _log_persistence_event("snapshot_load_skipped", self.path, result="missing", failure_reason="file_missing")
                return None
            try:
                with self.path.open("r", encoding="utf-8") as handle:
                    payload = json.load(handle)
            except (OSError, ValueError) as exc:
                _log_persistence_event(
                    "snapshot_load_failed",
                    self.path,
                    result="ignored",
                    failure_reason=type(exc).__name__,
                    error=repr(exc),
                )
                return None
        if not isinstance(payload, dict):
            _log_persistence_event("snapshot_load_failed", self.path, result="ignored", failure_reason="invalid_payload_type")
            return None
        _log_persistence_event("snapshot_loaded", self.path, result="loaded")
        return payload


class MemoryPersistence:
    """Keeps the last snapshot in memory; used for dry runs."""

    def __init__(self) -> None:
        self.snapshot: Optional[dict[str, Any]] = None
        self.save_count = 0

    def save_snapshot(self, state: Mapping[str, Any]) -> None:
        self.snapshot = json.loads(json.dumps(dict(state)))
        self.save_count += 1

    def load_snapshot(self) -> Optional[Mapping[str, Any]]:
        return self.snapshot


def _optional_float(value: Any) -> Optional[float]:
    return None if value is None else float(value)


def _optional_str(value: Any) -> Optional[str]:
    return None if value is None else str(value)


def _log_entry_from_dict(raw: Mapping[str, Any]) -> ExecutionLogEntry:
    return ExecutionLogEntry(
        timestamp=int(raw["timestamp"]),
        action=str(raw["action"]),
        details=str(raw.get("details", "")),
        order_id=_optional_str(raw.get("order_id")),
        price=_optional_float(raw.get("price")),
    )


def basket_to_dict(basket: BasketOrder) -> dict[str, Any]:
    return asdict(basket)


def basket_from_dict(raw: Mapping[str, Any]) -> BasketOrder:
    entry = raw["entry_order"]
    stop_loss = raw.get("stop_loss") or {}
    chaser = raw.get("limit_chaser") or {}
    active = raw.get("active_orders") or {}
    return BasketOrder(
        id=str(raw["id"]),
        name=str(raw.get("name", "")),
        symbol=str(raw["symbol"]),
        side=raw["side"],
        entry_order=EntryOrderSpec(
            type=entry["type"],
            quantity=float(entry["quantity"]),
            price=_optional_float(entry.get("price")),
            leverage=float(entry.get("leverage", 1.0)),
        ),
        stop_loss=StopLossConfig(
            enabled=bool(stop_loss.get("enabled", False)),
            trigger_price=float(stop_loss.get("trigger_price", 0.0)),
            order_type=stop_loss.get("order_type", "market"),
            limit_price=_optional_float(stop_loss.get("limit_price")),
            timeframe=stop_loss.get("timeframe", "1m"),
            candle_close_confirmation=bool(stop_loss.get("candle_close_confirmation", True)),
        ),
        limit_chaser=LimitChaserConfig(
            enabled=bool(chaser.get("enabled", False)),
            distance=float(chaser.get("distance", 0.0)),
            distance_type=chaser.get("distance_type", "percentage"),
            fill_or_cancel=bool(chaser.get("fill_or_cancel", False)),
            update_interval_seconds=float(chaser.get("update_interval_seconds", 5.0)),
            max_chases=int(chaser.get("max_chases", 10)),
            chase_count=int(chaser.get("chase_count", 0)),
            last_price=_optional_float(chaser.get("last_price")),
        ),
        take_profits=[
            TakeProfitLevel(
                id=str(level["id"]),
                target_price=float(level["target_price"]),
                quantity_percent=float(level["quantity_percent"]),
                order_type=level.get("order_type", "limit"),
                enabled=bool(level.get("enabled", True)),
                order_id=_optional_str(level.get("order_id")),
            )
            for level in raw.get("take_profits") or []
        ],
        status=raw.get("status", "pending"),
        active_orders=ActiveOrders(
            entry_order_id=_optional_str(active.get("entry_order_id")),
            stop_loss_order_id=_optional_str(active.get("stop_loss_order_id")),
            limit_chaser_order_id=_optional_str(active.get("limit_chaser_order_id")),
            take_profit_order_ids=[str(order_id) for order_id in active.get("take_profit_order_ids") or []],
        ),
        execution_log=[_log_entry_from_dict(item) for item in raw.get("execution_log") or []],
        created_at=int(raw.get("created_at", 0)),
        updated_at=int(raw.get("updated_at", 0)),
        entry_filled=bool(raw.get("entry_filled", False)),
        exited_quantity=float(raw.get("exited_quantity", 0.0)),
    )


def entry_to_dict(entry: EntryPositionOrder) -> dict[str, Any]:
    return asdict(entry)


def entry_from_dict(raw: Mapping[str, Any]) -> EntryPositionOrder:
    params = raw.get("params") or {}
    expire_after = params.get("expire_after_seconds")
    return EntryPositionOrder(
        id=str(raw["id"]),
        symbol=str(raw["symbol"]),
        side=raw["side"],
        params=EntryPositionParams(
            enabled=bool(params.get("enabled", True)),
            entry_position=float(params.get("entry_position", 0.0)),
            max_position_size=float(params.get("max_position_size", 0.0)),
            position_type=params.get("position_type", "percentage"),
            long_price_limit=float(params.get("long_price_limit", 0.0)),
            short_price_limit=float(params.get("short_price_limit", 0.0)),
            price_distance=float(params.get("price_distance", 0.5)),
            fill_or_cancel=bool(params.get("fill_or_cancel", False)),
            expire_after_seconds=_optional_float(expire_after),
        ),
        status=raw.get("status", "pending"),
        active_order_id=_optional_str(raw.get("active_order_id")),
        chase_count=int(raw.get("chase_count", 0)),
        max_chases=int(raw.get("max_chases", 10)),
        last_price=_optional_float(raw.get("last_price")),
        execution_log=[_log_entry_from_dict(item) for item in raw.get("execution_log") or []],
        created_at=int(raw.get("created_at", 0)),
        updated_at=int(raw.get("updated_at", 0)),
    )
