from __future__ import annotations

import os
from typing import Optional

from .basket_manager import BasketOrderManager
from .basket_registry import BasketRegistry
from .config import EngineSettings, load_engine_settings
from .entry_position import EntryPositionManager
from .event_logging import StructuredLogEvent, log_structured_event
from .events import EventBus, WebhookEventSink
from .logging_utils import configure_log_rotation
from .market_data import HyperliquidMarketData
from .persistence import JsonFilePersistence
from .ports import MarketDataPort, OrderGatewayPort, PersistencePort
from .scheduler import EntityGuard, TaskScheduler

BASKET_SNAPSHOT_FILE = "baskets.json"
ENTRY_SNAPSHOT_FILE = "entries.json"


class ConditionalOrderEngine:
    """Wires ports, scheduler and event bus into the two order managers."""

    def __init__(
        self,
        *,
        gateway: OrderGatewayPort,
        market_data: MarketDataPort,
        settings: Optional[EngineSettings] = None,
        scheduler=None,
        basket_persistence: Optional[PersistencePort] = None,
        entry_persistence: Optional[PersistencePort] = None,
        event_bus: Optional[EventBus] = None,
    ) -> None:
        self.settings = settings or EngineSettings()
        self.scheduler = scheduler if scheduler is not None else TaskScheduler()
        self.events = event_bus or EventBus()
        self.guard = EntityGuard()
        self.registry = BasketRegistry(persistence=basket_persistence, event_sink=self.events)
        self.baskets = BasketOrderManager(
            self.registry,
            market_data,
            gateway,
            self.scheduler,
            guard=self.guard,
            settings=self.settings,
        )
        self.entries = EntryPositionManager(
            market_data,
            gateway,
            self.scheduler,
            guard=self.guard,
            settings=self.settings,
            persistence=entry_persistence,
            event_sink=self.events,
        )
        self._started = False

    @property
    def started(self) -> bool:
        return self._started

    def start(self) -> dict[str, int]:
        if self._started:
            return {"baskets_loaded": 0, "entries_loaded": 0, "baskets_resumed": 0, "entries_resumed": 0}
        summary = {
            "baskets_loaded": self.registry.load(),
            "entries_loaded": self.entries.load(),
        }
        summary["baskets_resumed"] = self.baskets.start_market_monitoring()
        summary["entries_resumed"] = self.entries.start_monitoring()
        self._started = True
        log_structured_event(
            StructuredLogEvent(
                component="engine",
                event="start",
                input_data=f"state_dir={self.settings.state_dir}",
                decision="load_snapshots_and_resume",
                result="started",
                state_before="stopped",
                state_after="running",
            ),
            **summary,
        )
        return summary

    def shutdown(self) -> None:
        self.baskets.shutdown()
        self.entries.stop_monitoring()
        self.scheduler.stop_all()
        was_started = self._started
        self._started = False
        log_structured_event(
            StructuredLogEvent(
                component="engine",
                event="shutdown",
                input_data=f"state_dir={self.settings.state_dir}",
                decision="stop_all_tasks",
                result="stopped",
                state_before="running" if was_started else "stopped",
                state_after="stopped",
            ),
        )


def build_engine(
    gateway: OrderGatewayPort,
    *,
    settings: Optional[EngineSettings] = None,
    market_data: Optional[MarketDataPort] = None,
    webhook_url: Optional[str] = None,
) -> ConditionalOrderEngine:
    """Default production wiring: env settings, Hyperliquid prices, JSON snapshots."""
    settings = settings or load_engine_settings()
    configure_log_rotation(
        max_bytes=settings.log_rotate_max_bytes,
        backup_count=settings.log_rotate_backup_count,
    )
    if market_data is None:
        market_data = HyperliquidMarketData(
            base_url=settings.market_data_base_url,
            price_cache_seconds=settings.price_cache_seconds,
            request_timeout_seconds=settings.http_timeout_seconds,
        )
    events = EventBus()
    if webhook_url:
        events.subscribe(WebhookEventSink(webhook_url, timeout_seconds=settings.http_timeout_seconds))
    return ConditionalOrderEngine(
        gateway=gateway,
        market_data=market_data,
        settings=settings,
        basket_persistence=JsonFilePersistence(os.path.join(settings.state_dir, BASKET_SNAPSHOT_FILE)),
        entry_persistence=JsonFilePersistence(os.path.join(settings.state_dir, ENTRY_SNAPSHOT_FILE)),
        event_bus=events,
    )
