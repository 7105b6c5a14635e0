from __future__ import annotations

import copy
import math
import threading
import time
import uuid
from dataclasses import fields, replace
from typing import Any, Callable, Mapping, Optional, TypeVar

from .basket_models import (
    TIMEFRAME_SECONDS,
    VALID_DISTANCE_TYPES,
    BasketConfig,
    BasketOrder,
    EntryOrderSpec,
    ExecutionLogEntry,
    LimitChaserConfig,
    StopLossConfig,
    TakeProfitLevel,
)
from .event_logging import StructuredLogEvent, log_structured_event
from .persistence import basket_from_dict, basket_to_dict
from .port_models import VALID_ORDER_TYPES, VALID_SIDES, ExecutionEvent
from .ports import EventSink, PersistencePort
from .state_machine import apply_status_with_logging
from .state_machine_models import StatusTransitionResult

T = TypeVar("T")

UPDATABLE_FIELDS: frozenset[str] = frozenset({"name", "entry_order", "stop_loss", "limit_chaser", "take_profits"})
ENGINE_OWNED_CHASER_FIELDS: frozenset[str] = frozenset({"chase_count", "last_price"})
ENGINE_OWNED_TAKE_PROFIT_FIELDS: frozenset[str] = frozenset({"order_id"})


def _positive(value: Any) -> bool:
    try:
        converted = float(value)
    except (TypeError, ValueError):
        return False
    return math.isfinite(converted) and converted > 0


def validate_basket_config(config: BasketConfig) -> None:
    """Raise ``ValueError`` describing the first invalid field."""
    if not (config.symbol or "").strip():
        raise ValueError("symbol is required")
    if config.side not in VALID_SIDES:
        raise ValueError(f"side must be one of {sorted(VALID_SIDES)}")

    entry = config.entry_order
    if entry.type not in VALID_ORDER_TYPES:
        raise ValueError(f"entry_order.type must be one of {sorted(VALID_ORDER_TYPES)}")
    if not _positive(entry.quantity):
        raise ValueError("entry_order.quantity must be positive")
    if entry.type == "limit" and not _positive(entry.price):
        raise ValueError("entry_order.price is required for limit entry")
    if entry.price is not None and not _positive(entry.price):
        raise ValueError("entry_order.price must be positive")
    if not _positive(entry.leverage):
        raise ValueError("entry_order.leverage must be positive")

    stop_loss = config.stop_loss
    if stop_loss.enabled:
        if not _positive(stop_loss.trigger_price):
            raise ValueError("stop_loss.trigger_price must be positive")
        if stop_loss.order_type not in VALID_ORDER_TYPES:
            raise ValueError(f"stop_loss.order_type must be one of {sorted(VALID_ORDER_TYPES)}")
        if stop_loss.timeframe not in TIMEFRAME_SECONDS:
            raise ValueError(f"stop_loss.timeframe must be one of {sorted(TIMEFRAME_SECONDS)}")
        if stop_loss.limit_price is not None and not _positive(stop_loss.limit_price):
            raise ValueError("stop_loss.limit_price must be positive")

    chaser = config.limit_chaser
    if chaser.enabled:
        if not _positive(chaser.distance):
            raise ValueError("limit_chaser.distance must be positive")
        if chaser.distance_type not in VALID_DISTANCE_TYPES:
            raise ValueError(f"limit_chaser.distance_type must be one of {sorted(VALID_DISTANCE_TYPES)}")
        if chaser.distance_type == "percentage" and float(chaser.distance) >= 100:
            raise ValueError("limit_chaser.distance must be below 100 percent")
        if not _positive(chaser.update_interval_seconds):
            raise ValueError("limit_chaser.update_interval_seconds must be positive")
        if int(chaser.max_chases) < 0:
            raise ValueError("limit_chaser.max_chases must not be negative")

    seen_ids: set[str] = set()
    for level in config.take_profits:
        if not (level.id or "").strip():
            raise ValueError("take_profits[].id is required")
        if level.id in seen_ids:
            raise ValueError(f"take_profits id {level.id} is duplicated")
        seen_ids.add(level.id)
        if not _positive(level.target_price):
            raise ValueError(f"take_profits[{level.id}].target_price must be positive")
        if not _positive(level.quantity_percent) or float(level.quantity_percent) > 100:
            raise ValueError(f"take_profits[{level.id}].quantity_percent must be in (0, 100]")
        if level.order_type not in VALID_ORDER_TYPES:
            raise ValueError(f"take_profits[{level.id}].order_type must be one of {sorted(VALID_ORDER_TYPES)}")


def _merge_dataclass(current: T, patch: Any, label: str, *, locked: frozenset[str] = frozenset()) -> T:
    if isinstance(patch, type(current)):
        values = {f.name: getattr(patch, f.name) for f in fields(patch) if f.name not in locked}
        return replace(current, **values)
    if not isinstance(patch, Mapping):
        raise ValueError(f"{label} patch must be a mapping")
    allowed = {f.name for f in fields(current)}
    unknown = set(patch) - allowed
    if unknown:
        raise ValueError(f"{label} has unknown fields: {sorted(unknown)}")
    blocked = set(patch) & locked
    if blocked:
        raise ValueError(f"{label} fields are engine-owned: {sorted(blocked)}")
    return replace(current, **dict(patch))


def _coerce_take_profit(raw: Any) -> TakeProfitLevel:
    if isinstance(raw, TakeProfitLevel):
        return replace(raw, order_id=None)
    if not isinstance(raw, Mapping):
        raise ValueError("take_profits entries must be mappings")
    allowed = {f.name for f in fields(TakeProfitLevel)}
    unknown = set(raw) - allowed
    if unknown:
        raise ValueError(f"take_profits entry has unknown fields: {sorted(unknown)}")
    blocked = set(raw) & ENGINE_OWNED_TAKE_PROFIT_FIELDS
    if blocked:
        raise ValueError(f"take_profits entry fields are engine-owned: {sorted(blocked)}")
    try:
        return TakeProfitLevel(**dict(raw))
    except TypeError as exc:
        raise ValueError(f"take_profits entry is incomplete: {exc}") from exc


def config_of(basket: BasketOrder) -> BasketConfig:
    return BasketConfig(
        symbol=basket.symbol,
        side=basket.side,
        entry_order=basket.entry_order,
        stop_loss=basket.stop_loss,
        limit_chaser=basket.limit_chaser,
        take_profits=basket.take_profits,
        name=basket.name,
    )


def merge_basket_patch(basket: BasketOrder, patch: Mapping[str, Any]) -> BasketOrder:
    """Return a patched copy of ``basket``; raises ``ValueError`` on bad input."""
    unknown = set(patch) - UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"fields cannot be updated: {sorted(unknown)}")

    updated = copy.deepcopy(basket)
    if "name" in patch:
        updated.name = str(patch["name"] or "")
    if "entry_order" in patch:
        updated.entry_order = _merge_dataclass(updated.entry_order, patch["entry_order"], "entry_order")
    if "stop_loss" in patch:
        updated.stop_loss = _merge_dataclass(updated.stop_loss, patch["stop_loss"], "stop_loss")
    if "limit_chaser" in patch:
        updated.limit_chaser = _merge_dataclass(
            updated.limit_chaser,
            patch["limit_chaser"],
            "limit_chaser",
            locked=ENGINE_OWNED_CHASER_FIELDS,
        )
        try:
            max_chases = int(updated.limit_chaser.max_chases)
        except (TypeError, ValueError) as exc:
            raise ValueError("limit_chaser.max_chases must be an integer") from exc
        if max_chases < updated.limit_chaser.chase_count:
            raise ValueError(
                f"limit_chaser.max_chases must not be below chase_count {updated.limit_chaser.chase_count}"
            )
    if "take_profits" in patch:
        raw_levels = patch["take_profits"]
        if not isinstance(raw_levels, (list, tuple)):
            raise ValueError("take_profits must be a list")
        dispatched = {level.id: level.order_id for level in basket.take_profits if level.order_id}
        levels = [_coerce_take_profit(raw) for raw in raw_levels]
        for level in levels:
            # A dispatched level stays spent whatever the patch says.
            if level.id in dispatched:
                level.enabled = False
                level.order_id = dispatched[level.id]
        updated.take_profits = levels

    validate_basket_config(config_of(updated))
    return updated


class BasketRegistry:
    """In-memory basket table; every mutation persists the full snapshot.

    Callers receive deep copies. In-place changes go through ``mutate`` so
    the lock, timestamps and persistence stay in one place.
    """

    def __init__(
        self,
        *,
        persistence: Optional[PersistencePort] = None,
        event_sink: Optional[EventSink] = None,
        clock: Callable[[], float] = time.time,
        id_factory: Optional[Callable[[], str]] = None,
    ) -> None:
        self._lock = threading.RLock()
        self._baskets: dict[str, BasketOrder] = {}
        self._persistence = persistence
        self._event_sink = event_sink
        self._clock = clock
        self._id_factory = id_factory or (lambda: f"basket_{uuid.uuid4().hex[:12]}")

    def now_ms(self) -> int:
        return int(self._clock() * 1000)

    def create(self, config: BasketConfig) -> str:
        validate_basket_config(config)
        now = self.now_ms()
        with self._lock:
            basket_id = self._id_factory()
            if basket_id in self._baskets:
                raise ValueError(f"basket id {basket_id} already exists")
            basket = BasketOrder(
                id=basket_id,
                name=config.name or f"{config.symbol.upper()} {config.side}",
                symbol=config.symbol.strip().upper(),
                side=config.side,
                entry_order=copy.deepcopy(config.entry_order),
                stop_loss=copy.deepcopy(config.stop_loss),
                limit_chaser=replace(copy.deepcopy(config.limit_chaser), chase_count=0, last_price=None),
                take_profits=[replace(level, order_id=None) for level in config.take_profits],
                created_at=now,
                updated_at=now,
            )
            self._baskets[basket_id] = basket
        self.record(basket_id, "created", f"Basket created for {basket.symbol} {basket.side}")
        return basket_id

    def get(self, basket_id: str) -> Optional[BasketOrder]:
        with self._lock:
            basket = self._baskets.get(basket_id)
            return copy.deepcopy(basket) if basket is not None else None

    def list(self) -> list[BasketOrder]:
        with self._lock:
            baskets = sorted(self._baskets.values(), key=lambda basket: (basket.created_at, basket.id))
            return [copy.deepcopy(basket) for basket in baskets]

    def ids(self) -> list[str]:
        with self._lock:
            return list(self._baskets)

    def replace_config(self, basket_id: str, patch: Mapping[str, Any]) -> Optional[tuple[BasketOrder, BasketOrder]]:
        """Apply a user patch; returns ``(before, after)`` or ``None`` when not updatable."""
        with self._lock:
            current = self._baskets.get(basket_id)
            if current is None or current.is_terminal:
                return None
            updated = merge_basket_patch(current, patch)
            updated.updated_at = self.now_ms()
            before = copy.deepcopy(current)
            self._baskets[basket_id] = updated
            self._persist_locked()
            return before, copy.deepcopy(updated)

    def mutate(self, basket_id: str, mutator: Callable[[BasketOrder], T]) -> Optional[T]:
        with self._lock:
            basket = self._baskets.get(basket_id)
            if basket is None:
                return None
            result = mutator(basket)
            basket.updated_at = self.now_ms()
            self._persist_locked()
            return result

    def set_status(self, basket_id: str, target_status: str, *, details: str = "") -> Optional[StatusTransitionResult]:
        with self._lock:
            basket = self._baskets.get(basket_id)
            if basket is None:
                return None
            result = apply_status_with_logging("BASKET", basket.status, target_status, entity_id=basket_id)
            if result.accepted and result.changed:
                basket.status = result.current_status  # type: ignore[assignment]
                basket.updated_at = self.now_ms()
        if result.accepted and result.changed:
            self.record(
                basket_id,
                f"status_{result.current_status}",
                details or f"Status {result.previous_status} -> {result.current_status}",
            )
        return result

    def record(
        self,
        basket_id: str,
        action: str,
        details: str,
        *,
        order_id: Optional[str] = None,
        price: Optional[float] = None,
    ) -> None:
        timestamp = self.now_ms()
        with self._lock:
            basket = self._baskets.get(basket_id)
            if basket is None:
                return
            basket.execution_log.append(
                ExecutionLogEntry(timestamp=timestamp, action=action, details=details, order_id=order_id, price=price)
            )
            basket.updated_at = timestamp
            status = basket.status
            self._persist_locked()

        log_structured_event(
            StructuredLogEvent(
                component="basket_registry",
                event="record_execution",
                entity_id=basket_id,
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
        self._emit(basket_id, action, timestamp, details=details, order_id=order_id, price=price, status=status)

    def _emit(self, basket_id: str, action: str, timestamp: int, **details: Any) -> None:
        if self._event_sink is None:
            return
        payload = {key: value for key, value in details.items() if value is not None}
        self._event_sink(ExecutionEvent(entity_id=basket_id, action=action, timestamp=timestamp, details=payload))

    def _persist_locked(self) -> None:
        if self._persistence is None:
            return
        snapshot = {"baskets": [basket_to_dict(basket) for basket in self._baskets.values()]}
        try:
            self._persistence.save_snapshot(snapshot)
        except Exception as exc:
            # Durability degrades; state stays authoritative in memory.
            log_structured_event(
                StructuredLogEvent(
                    component="basket_registry",
                    event="persist_failed",
                    input_data=f"basket_count={len(self._baskets)}",
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
        loaded: dict[str, BasketOrder] = {}
        skipped = 0
        for raw in snapshot.get("baskets") or []:
            try:
                basket = basket_from_dict(raw)
            except (KeyError, TypeError, ValueError) as exc:
                skipped += 1
                log_structured_event(
                    StructuredLogEvent(
                        component="basket_registry",
                        event="snapshot_record_skipped",
                        entity_id=raw.get("id", "-") if isinstance(raw, Mapping) else "-",
                        decision="skip_invalid_record",
                        result="skipped",
                        failure_reason=type(exc).__name__,
                    ),
                    error=repr(exc),
                )
                continue
            loaded[basket.id] = basket
        with self._lock:
            self._baskets.update(loaded)
        log_structured_event(
            StructuredLogEvent(
                component="basket_registry",
                event="snapshot_loaded",
                input_data=f"record_count={len(loaded) + skipped}",
                decision="hydrate_registry",
                result=f"loaded={len(loaded)}",
                state_before="empty",
                state_after="hydrated",
                failure_reason="-" if skipped == 0 else f"skipped={skipped}",
            ),
        )
        return len(loaded)
