from __future__ import annotations

import copy
import math
import threading
import time
import uuid
from dataclasses import fields, replace
from typing import Any, Callable, Mapping, Optional, TypeVar

from .chaser import plan_entry_order_with_logging, should_reprice
from .config import EngineSettings
from .entry_models import (
    PRICE_DISTANCE_MAX,
    PRICE_DISTANCE_MIN,
    VALID_POSITION_TYPES,
    EntryPositionOrder,
    EntryPositionParams,
    EntryStats,
)
from .basket_models import ExecutionLogEntry
from .event_logging import StructuredLogEvent, log_structured_event
from .order_gateway import (
    cancel_order_with_retry_with_logging,
    place_order_with_retry_with_logging,
    query_order_with_retry_with_logging,
)
from .order_gateway_models import RetryPolicy
from .persistence import entry_from_dict, entry_to_dict
from .port_models import VALID_SIDES, ExecutionEvent, OrderRequest, Side
from .ports import EventSink, MarketDataPort, OrderGatewayPort, PersistencePort
from .scheduler import EntityGuard
from .state_machine import apply_status_with_logging

T = TypeVar("T")


def entry_chase_key(entry_id: str) -> str:
    return f"entry:{entry_id}"


def entry_expiry_key(entry_id: str) -> str:
    return f"expire:{entry_id}"


def _finite(value: Any) -> bool:
    try:
        return math.isfinite(float(value))
    except (TypeError, ValueError):
        return False


def validate_entry_params(params: EntryPositionParams) -> None:
    if params.position_type not in VALID_POSITION_TYPES:
        raise ValueError(f"position_type must be one of {sorted(VALID_POSITION_TYPES)}")
    if not _finite(params.entry_position) or not _finite(params.max_position_size):
        raise ValueError("entry_position and max_position_size must be numbers")
    if params.position_type == "percentage":
        if not 0 < params.entry_position <= 1:
            raise ValueError("entry_position must be in (0, 1] for percentage sizing")
        if params.max_position_size <= 0:
            raise ValueError("max_position_size must be positive for percentage sizing")
    elif params.entry_position <= 0:
        raise ValueError("entry_position must be positive for fixed sizing")
    if not _finite(params.price_distance) or not PRICE_DISTANCE_MIN <= params.price_distance <= PRICE_DISTANCE_MAX:
        raise ValueError(f"price_distance must be between {PRICE_DISTANCE_MIN} and {PRICE_DISTANCE_MAX}")
    if params.long_price_limit < 0 or params.short_price_limit < 0:
        raise ValueError("price limits must not be negative")
    if params.long_price_limit > 0 and params.short_price_limit > 0:
        if params.long_price_limit >= params.short_price_limit:
            raise ValueError("long_price_limit must be below short_price_limit")
    if params.expire_after_seconds is not None and not (
        _finite(params.expire_after_seconds) and params.expire_after_seconds > 0
    ):
        raise ValueError("expire_after_seconds must be positive")


def merge_entry_params(params: EntryPositionParams, patch: Mapping[str, Any]) -> EntryPositionParams:
    allowed = {f.name for f in fields(EntryPositionParams)}
    unknown = set(patch) - allowed
    if unknown:
        raise ValueError(f"params has unknown fields: {sorted(unknown)}")
    return replace(params, **dict(patch))


class EntryPositionManager:
    """Single-leg opening orders with optional Fill-or-Cancel price chasing.

    ``fill_or_cancel=False`` places one static GTC order. With
    ``fill_or_cancel=True`` an IOC order is re-placed every chase interval
    until it fills, the entry is cancelled or expires, or ``max_chases`` is
    reached; at the ceiling the entry stays ``active`` and chasing stops.
    """

    def __init__(
        self,
        market_data: MarketDataPort,
        gateway: OrderGatewayPort,
        scheduler,
        *,
        guard: Optional[EntityGuard] = None,
        settings: Optional[EngineSettings] = None,
        persistence: Optional[PersistencePort] = None,
        event_sink: Optional[EventSink] = None,
        clock: Callable[[], float] = time.time,
        id_factory: Optional[Callable[[], str]] = None,
    ) -> None:
        self._market_data = market_data
        self._gateway = gateway
        self._scheduler = scheduler
        self._guard = guard or EntityGuard()
        self._settings = settings or EngineSettings()
        self._persistence = persistence
        self._event_sink = event_sink
        self._clock = clock
        self._id_factory = id_factory or (lambda: f"entry_{uuid.uuid4().hex[:12]}")
        self._cancel_retry_policy = RetryPolicy(max_attempts=self._settings.cancel_max_attempts)
        self._lock = threading.RLock()
        self._entries: dict[str, EntryPositionOrder] = {}

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    # Registry

    def create_entry(self, symbol: str, side: Side, params: EntryPositionParams) -> str:
        if not (symbol or "").strip():
            raise ValueError("symbol is required")
        if side not in VALID_SIDES:
            raise ValueError(f"side must be one of {sorted(VALID_SIDES)}")
        if params.enabled:
            validate_entry_params(params)
        now = self._now_ms()
        with self._lock:
            entry_id = self._id_factory()
            if entry_id in self._entries:
                raise ValueError(f"entry id {entry_id} already exists")
            self._entries[entry_id] = EntryPositionOrder(
                id=entry_id,
                symbol=symbol.strip().upper(),
                side=side,
                params=copy.deepcopy(params),
                max_chases=self._settings.entry_max_chases,
                created_at=now,
                updated_at=now,
            )
        self._record(entry_id, "entry_position_created", f"Entry position created for {symbol.strip().upper()}")
        if params.enabled:
            self.execute_entry(entry_id)
        return entry_id

    def get_entry(self, entry_id: str) -> Optional[EntryPositionOrder]:
        with self._lock:
            entry = self._entries.get(entry_id)
            return copy.deepcopy(entry) if entry is not None else None

    def list_entries(self) -> list[EntryPositionOrder]:
        with self._lock:
            entries = sorted(self._entries.values(), key=lambda entry: (entry.created_at, entry.id))
            return [copy.deepcopy(entry) for entry in entries]

    def entry_stats(self) -> EntryStats:
        with self._lock:
            statuses = [entry.status for entry in self._entries.values()]
        return EntryStats(
            total=len(statuses),
            pending=statuses.count("pending"),
            active=statuses.count("active"),
            filled=statuses.count("filled"),
            cancelled=statuses.count("cancelled"),
            expired=statuses.count("expired"),
        )

    def _mutate(self, entry_id: str, mutator: Callable[[EntryPositionOrder], T]) -> Optional[T]:
        with self._lock:
            entry = self._entries.get(entry_id)
            if entry is None:
                return None
            result = mutator(entry)
            entry.updated_at = self._now_ms()
            self._persist_locked()
            return result

    def _set_status(self, entry_id: str, target_status: str) -> bool:
        with self._lock:
            entry = self._entries.get(entry_id)
            if entry is None:
                return False
            result = apply_status_with_logging("ENTRY", entry.status, target_status, entity_id=entry_id)
            if result.accepted and result.changed:
                entry.status = result.current_status  # type: ignore[assignment]
                entry.updated_at = self._now_ms()
                self._persist_locked()
            return result.accepted

    def _record(
        self,
        entry_id: str,
        action: str,
        details: str,
        *,
        price: Optional[float] = None,
        order_id: Optional[str] = None,
    ) -> None:
        timestamp = self._now_ms()
        with self._lock:
            entry = self._entries.get(entry_id)
            if entry is None:
                return
            entry.execution_log.append(
                ExecutionLogEntry(timestamp=timestamp, action=action, details=details, order_id=order_id, price=price)
            )
            entry.updated_at = timestamp
            status = entry.status
            self._persist_locked()
        log_structured_event(
            StructuredLogEvent(
                component="entry_position",
                event="record_execution",
                entity_id=entry_id,
                input_data=f"action={action}",
                decision="append_log_and_notify",
                result="recorded",
                state_before=status,
                state_after=status,
            ),
            order_id=order_id or "-",
            price=price if price is not None else "-",
            details=details,
        )
        if self._event_sink is not None:
            payload: dict[str, Any] = {"details": details, "status": status}
            if order_id is not None:
                payload["order_id"] = order_id
            if price is not None:
                payload["price"] = price
            self._event_sink(ExecutionEvent(entity_id=entry_id, action=action, timestamp=timestamp, details=payload))

    def _persist_locked(self) -> None:
        if self._persistence is None:
            return
        try:
            self._persistence.save_snapshot({"entries": [entry_to_dict(entry) for entry in self._entries.values()]})
        except Exception as exc:
            log_structured_event(
                StructuredLogEvent(
                    component="entry_position",
                    event="persist_failed",
                    input_data=f"entry_count={len(self._entries)}",
                    decision="keep_in_memory_state",
                    result="not_persisted",
                    failure_reason=type(exc).__name__,
                ),
                error=repr(exc),
            )

    def load(self) -> int:
        if self._persistence is None:
            return 0
        snapshot = self._persistence.load_snapshot()
        if not snapshot:
            return 0
        loaded: dict[str, EntryPositionOrder] = {}
        for raw in snapshot.get("entries") or []:
            try:
                entry = entry_from_dict(raw)
            except (KeyError, TypeError, ValueError) as exc:
                log_structured_event(
                    StructuredLogEvent(
                        component="entry_position",
                        event="snapshot_record_skipped",
                        entity_id=raw.get("id", "-") if isinstance(raw, Mapping) else "-",
                        decision="skip_invalid_record",
                        result="skipped",
                        failure_reason=type(exc).__name__,
                    ),
                )
                continue
            loaded[entry.id] = entry
        with self._lock:
            self._entries.update(loaded)
        return len(loaded)

    # Commands

    def execute_entry(self, entry_id: str) -> bool:
        with self._guard.hold(entry_id):
            entry = self.get_entry(entry_id)
            if entry is None or entry.status != "pending" or not entry.params.enabled:
                return False
            if not self._place_initial(entry):
                return False
            self._set_status(entry_id, "active")
            self._start_loops(entry_id)
            return True

    def _place_initial(self, entry: EntryPositionOrder) -> bool:
        plan = plan_entry_order_with_logging(
            entry.side,
            market_price=self._read_price(entry.symbol),
            params=entry.params,
            entry_id=entry.id,
            loop_label=entry_chase_key(entry.id),
        )
        if not plan.ok or plan.order_price is None:
            self._record(entry.id, "execution_failed", f"Entry order not planned: {plan.reason_code}")
            return False
        order_id = self._submit(entry, plan.order_price, plan.quantity, plan.time_in_force)
        if order_id is None:
            return False

        def _apply(target: EntryPositionOrder) -> None:
            target.active_order_id = order_id
            target.last_price = plan.order_price

        self._mutate(entry.id, _apply)
        self._record(
            entry.id,
            "entry_order_placed",
            f"Entry order placed at {plan.order_price} ({plan.time_in_force})",
            price=plan.order_price,
            order_id=order_id,
        )
        return True

    def _submit(self, entry: EntryPositionOrder, price: float, quantity: float, time_in_force: str) -> Optional[str]:
        result = place_order_with_retry_with_logging(
            self._gateway,
            OrderRequest(
                symbol=entry.symbol,
                side=entry.side,
                order_type="limit",
                quantity=quantity,
                price=price,
                time_in_force="IOC" if time_in_force == "IOC" else "GTC",
            ),
            loop_label=entry_chase_key(entry.id),
        )
        if not result.success or not result.order_id:
            self._record(entry.id, "execution_failed", f"Failed to place entry order: {result.reason_code}", price=price)
            return None
        return result.order_id

    def _start_loops(self, entry_id: str) -> None:
        entry = self.get_entry(entry_id)
        if entry is None or entry.status != "active":
            return
        if entry.params.fill_or_cancel and entry.chase_count < entry.max_chases:
            started = self._scheduler.start_periodic(
                entry_chase_key(entry_id),
                self._settings.entry_chase_interval_seconds,
                lambda: self.chase_tick(entry_id),
            )
            if started:
                self._record(entry_id, "price_chasing_started", "Fill or Cancel price chasing activated")
        expire_after = entry.params.expire_after_seconds
        if expire_after is not None:
            remaining = max(0.0, expire_after - (self._now_ms() - entry.created_at) / 1000)
            self._scheduler.schedule_once(entry_expiry_key(entry_id), remaining, lambda: self.expire_entry(entry_id))

    def _stop_loops(self, entry_id: str) -> None:
        if self._scheduler.stop(entry_chase_key(entry_id)):
            self._record(entry_id, "price_chasing_stopped", "Price chasing monitoring stopped")
        self._scheduler.cancel_once(entry_expiry_key(entry_id))

    def _cancel_resting(self, entry: EntryPositionOrder) -> bool:
        order_id = entry.active_order_id
        if not order_id:
            return True
        result = cancel_order_with_retry_with_logging(
            self._gateway,
            order_id,
            retry_policy=self._cancel_retry_policy,
            loop_label=entry_chase_key(entry.id),
        )
        if not result.success:
            self._record(entry.id, "order_cancel_failed", f"Could not cancel order: {result.reason_code}", order_id=order_id)
        return result.success

    def cancel_entry(self, entry_id: str) -> bool:
        with self._guard.hold(entry_id):
            entry = self.get_entry(entry_id)
            if entry is None:
                return False
            if entry.is_terminal:
                return True
            self._stop_loops(entry_id)
            self._cancel_resting(entry)
            self._set_status(entry_id, "cancelled")
            self._record(entry_id, "entry_order_cancelled", "Entry order cancelled", order_id=entry.active_order_id)
            return True

    def expire_entry(self, entry_id: str) -> bool:
        with self._guard.hold(entry_id):
            return self._expire(entry_id)

    def _expire(self, entry_id: str) -> bool:
        entry = self.get_entry(entry_id)
        if entry is None or entry.status != "active":
            return False
        self._stop_loops(entry_id)
        self._cancel_resting(entry)
        self._set_status(entry_id, "expired")
        self._record(entry_id, "entry_expired", f"Entry expired after {entry.params.expire_after_seconds}s")
        return True

    def update_entry(self, entry_id: str, patch: Mapping[str, Any]) -> bool:
        with self._guard.hold(entry_id):
            entry = self.get_entry(entry_id)
            if entry is None or entry.is_terminal:
                return False
            params = merge_entry_params(entry.params, patch)
            if params.enabled:
                validate_entry_params(params)

            def _apply(target: EntryPositionOrder) -> None:
                target.params = params

            self._mutate(entry_id, _apply)
            self._record(entry_id, "parameters_updated", f"Entry parameters updated: {', '.join(sorted(patch))}")
            if entry.status != "active":
                return True
            if not params.enabled:
                self._stop_loops(entry_id)
                self._cancel_resting(entry)
                self._set_status(entry_id, "cancelled")
                self._record(entry_id, "entry_order_cancelled", "Entry disabled by update")
                return True

            self._stop_loops(entry_id)
            if self._cancel_resting(entry):
                self._mutate(entry_id, _clear_active_order)
            refreshed = self.get_entry(entry_id)
            if refreshed is not None and refreshed.active_order_id is None:
                self._place_initial(refreshed)
            self._start_loops(entry_id)
            return True

    def refresh_entry(self, entry_id: str) -> Optional[str]:
        """Query the resting order once and record a fill; returns its status."""
        with self._guard.hold(entry_id):
            entry = self.get_entry(entry_id)
            if entry is None or entry.status != "active" or not entry.active_order_id:
                return None
            query = query_order_with_retry_with_logging(
                self._gateway,
                entry.active_order_id,
                loop_label=entry_chase_key(entry_id),
            )
            if not query.success:
                return None
            if query.order_status == "filled":
                self._mark_filled(entry_id, entry.active_order_id)
            return query.order_status

    def _mark_filled(self, entry_id: str, order_id: str) -> None:
        self._stop_loops(entry_id)
        self._set_status(entry_id, "filled")
        self._record(entry_id, "entry_filled", f"Entry order {order_id} filled", order_id=order_id)

    def chase_tick(self, entry_id: str) -> str:
        with self._guard.hold(entry_id, blocking=False) as acquired:
            if not acquired:
                return "SLOT_BUSY"
            return self._chase(entry_id)

    def _chase(self, entry_id: str) -> str:
        entry = self.get_entry(entry_id)
        if entry is None or entry.status != "active" or not entry.params.fill_or_cancel:
            self._stop_loops(entry_id)
            return "ENTRY_NOT_CHASING"
        expire_after = entry.params.expire_after_seconds
        if expire_after is not None and self._now_ms() - entry.created_at >= expire_after * 1000:
            self._expire(entry_id)
            return "ENTRY_EXPIRED"

        previous_live = False
        if entry.active_order_id:
            query = query_order_with_retry_with_logging(
                self._gateway,
                entry.active_order_id,
                loop_label=entry_chase_key(entry_id),
            )
            if query.success and query.order_status == "filled":
                self._mark_filled(entry_id, entry.active_order_id)
                return "ENTRY_FILLED"
            if query.success and query.order_status in {"cancelled", "rejected"}:
                self._mutate(entry_id, _clear_active_order)
                entry.active_order_id = None
            else:
                previous_live = True

        if entry.chase_count >= entry.max_chases:
            self._scheduler.stop(entry_chase_key(entry_id))
            self._record(entry_id, "max_chases_reached", f"Maximum chases ({entry.max_chases}) reached")
            return "MAX_CHASES_REACHED"

        plan = plan_entry_order_with_logging(
            entry.side,
            market_price=self._read_price(entry.symbol),
            params=entry.params,
            entry_id=entry_id,
            loop_label=entry_chase_key(entry_id),
        )
        if not plan.ok or plan.order_price is None:
            return plan.reason_code
        decision = should_reprice(
            entry.last_price,
            plan.order_price,
            previous_order_live=previous_live,
            threshold=self._settings.entry_reprice_threshold,
        )
        if not decision.reprice:
            return decision.reason_code

        if previous_live and entry.active_order_id:
            if not self._cancel_resting(entry):
                recheck = query_order_with_retry_with_logging(
                    self._gateway,
                    entry.active_order_id,
                    loop_label=entry_chase_key(entry_id),
                )
                if recheck.success and recheck.order_status == "filled":
                    self._mark_filled(entry_id, entry.active_order_id)
                    return "ENTRY_FILLED"
                return "CANCEL_FAILED"
            self._mutate(entry_id, _clear_active_order)

        order_id = self._submit(entry, plan.order_price, plan.quantity, plan.time_in_force)
        if order_id is None:
            return "CHASE_FAILED"
        order_price = plan.order_price

        def _apply(target: EntryPositionOrder) -> int:
            target.active_order_id = order_id
            target.last_price = order_price
            target.chase_count += 1
            return target.chase_count

        chase_count = self._mutate(entry_id, _apply)
        self._record(
            entry_id,
            "price_chased",
            f"Price chased {chase_count}/{entry.max_chases}: {order_price}",
            price=order_price,
            order_id=order_id,
        )
        return "PRICE_CHASED"

    def _read_price(self, symbol: str) -> Optional[float]:
        try:
            return self._market_data.get_price(symbol)
        except Exception as exc:
            log_structured_event(
                StructuredLogEvent(
                    component="entry_position",
                    event="read_price_failed",
                    input_data=f"symbol={symbol}",
                    decision="skip_tick",
                    result="price_missing",
                    failure_reason=type(exc).__name__,
                ),
                error=repr(exc),
            )
            return None

    # Monitoring

    def start_monitoring(self) -> int:
        resumed = 0
        for entry in self.list_entries():
            if entry.status == "active":
                self._start_loops(entry.id)
                resumed += 1
        return resumed

    def stop_monitoring(self) -> None:
        with self._lock:
            entry_ids = list(self._entries)
        for entry_id in entry_ids:
            self._scheduler.stop(entry_chase_key(entry_id))
            self._scheduler.cancel_once(entry_expiry_key(entry_id))


def _clear_active_order(entry: EntryPositionOrder) -> None:
    entry.active_order_id = None
