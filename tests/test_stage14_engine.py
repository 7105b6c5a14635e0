from __future__ import annotations

import tempfile
import unittest
from pathlib import Path

from basket_engine import (
    BasketConfig,
    ConditionalOrderEngine,
    EngineSettings,
    EntryOrderSpec,
    EntryPositionParams,
    ExecutionEvent,
    ManualScheduler,
    MemoryPersistence,
    SimulatedMarketData,
    SimulatedOrderGateway,
    StopLossConfig,
    build_engine,
)


def _basket() -> BasketConfig:
    return BasketConfig(
        symbol="BTC",
        side="buy",
        entry_order=EntryOrderSpec(type="market", quantity=1.0),
        stop_loss=StopLossConfig(enabled=True, trigger_price=90_000.0, timeframe="1m"),
    )


def _entry_params() -> EntryPositionParams:
    return EntryPositionParams(
        entry_position=0.5,
        max_position_size=1000.0,
        price_distance=1.5,
        fill_or_cancel=True,
    )


class ConditionalOrderEngineTests(unittest.TestCase):
    def setUp(self) -> None:
        self.market = SimulatedMarketData({"BTC": [95_000.0]})
        self.gateway = SimulatedOrderGateway()
        self.basket_store = MemoryPersistence()
        self.entry_store = MemoryPersistence()

    def _engine(self, scheduler: ManualScheduler) -> ConditionalOrderEngine:
        return ConditionalOrderEngine(
            gateway=self.gateway,
            market_data=self.market,
            settings=EngineSettings(),
            scheduler=scheduler,
            basket_persistence=self.basket_store,
            entry_persistence=self.entry_store,
        )

    def test_both_managers_publish_to_one_event_bus(self) -> None:
        engine = self._engine(ManualScheduler())
        received: list[ExecutionEvent] = []
        engine.events.subscribe(received.append)

        basket_id = engine.baskets.create_basket(_basket())
        engine.baskets.execute_basket_entry(basket_id)
        entry_id = engine.entries.create_entry("BTC", "buy", _entry_params())

        entities = {event.entity_id for event in received}
        self.assertEqual(entities, {basket_id, entry_id})
        self.assertIs(engine.baskets.registry, engine.registry)
        self.assertEqual(self.gateway.place_call_order(), ["place", "place"])

    def test_start_reloads_and_resumes_active_work(self) -> None:
        first = self._engine(ManualScheduler())
        basket_id = first.baskets.create_basket(_basket())
        first.baskets.execute_basket_entry(basket_id)
        entry_id = first.entries.create_entry("BTC", "buy", _entry_params())
        first.baskets.create_basket(_basket())

        scheduler = ManualScheduler()
        restored = self._engine(scheduler)
        summary = restored.start()
        self.assertEqual(
            summary,
            {"baskets_loaded": 2, "entries_loaded": 1, "baskets_resumed": 1, "entries_resumed": 1},
        )
        self.assertTrue(restored.started)
        self.assertEqual(
            scheduler.active_keys(),
            sorted(["candle:BTC:1m", "price:BTC", f"entry:{entry_id}"]),
        )
        self.assertEqual(restored.baskets.get_basket(basket_id).status, "active")
        self.assertEqual(restored.start()["baskets_loaded"], 0)

        restored.shutdown()
        self.assertFalse(restored.started)
        self.assertEqual(scheduler.active_keys(), [])

    def test_shared_guard_serializes_commands(self) -> None:
        engine = self._engine(ManualScheduler())
        basket_id = engine.baskets.create_basket(_basket())
        with engine.guard.hold(basket_id):
            self.assertTrue(engine.baskets.execute_basket_entry(basket_id))

    def test_finished_entities_leave_no_guard_slots(self) -> None:
        engine = self._engine(ManualScheduler())
        for _ in range(5):
            basket_id = engine.baskets.create_basket(_basket())
            engine.baskets.execute_basket_entry(basket_id)
            engine.baskets.cancel_basket(basket_id)
            entry_id = engine.entries.create_entry("BTC", "buy", _entry_params())
            engine.entries.cancel_entry(entry_id)
        self.assertEqual(engine.guard.slot_count, 0)


class BuildEngineTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)
        self.settings = EngineSettings(state_dir=self._tmp.name)

    def test_snapshots_land_in_state_dir(self) -> None:
        engine = build_engine(
            SimulatedOrderGateway(),
            settings=self.settings,
            market_data=SimulatedMarketData({"BTC": [95_000.0]}),
        )
        self.addCleanup(engine.shutdown)
        engine.baskets.create_basket(_basket())
        engine.entries.create_entry("BTC", "buy", EntryPositionParams(enabled=False))

        self.assertTrue((Path(self._tmp.name) / "baskets.json").exists())
        self.assertTrue((Path(self._tmp.name) / "entries.json").exists())
        self.assertEqual(engine.events.subscriber_count, 0)

        reopened = build_engine(
            SimulatedOrderGateway(),
            settings=self.settings,
            market_data=SimulatedMarketData(),
        )
        self.addCleanup(reopened.shutdown)
        summary = reopened.start()
        self.assertEqual((summary["baskets_loaded"], summary["entries_loaded"]), (1, 1))

    def test_webhook_url_subscribes_sink(self) -> None:
        engine = build_engine(
            SimulatedOrderGateway(),
            settings=self.settings,
            market_data=SimulatedMarketData(),
            webhook_url="https://hooks.example/events",
        )
        self.assertEqual(engine.events.subscriber_count, 1)


if __name__ == "__main__":
    unittest.main()
