from __future__ import annotations

import itertools
import unittest

from basket_engine import (
    EngineSettings,
    EntryPositionManager,
    EntryPositionParams,
    ExecutionEvent,
    ManualScheduler,
    MemoryPersistence,
    SimulatedMarketData,
    SimulatedOrderGateway,
)


def _params(**overrides) -> EntryPositionParams:
    values = dict(
        enabled=True,
        entry_position=0.5,
        max_position_size=1000.0,
        position_type="percentage",
        price_distance=1.5,
        fill_or_cancel=True,
    )
    values.update(overrides)
    return EntryPositionParams(**values)


class EntryPositionTestCase(unittest.TestCase):
    settings = EngineSettings()

    def setUp(self) -> None:
        self.now = 1_700_000_000.0
        self.market = SimulatedMarketData({"BTC": [95_000.0]})
        self.gateway = SimulatedOrderGateway()
        self.scheduler = ManualScheduler()
        self.persistence = MemoryPersistence()
        self.events: list[ExecutionEvent] = []
        self.manager = self._manager(self.scheduler)

    def _manager(self, scheduler: ManualScheduler) -> EntryPositionManager:
        ids = itertools.count(1)
        return EntryPositionManager(
            self.market,
            self.gateway,
            scheduler,
            settings=self.settings,
            persistence=self.persistence,
            event_sink=self.events.append,
            clock=lambda: self.now,
            id_factory=lambda: f"entry_{next(ids)}",
        )

    def _actions(self, entry_id: str) -> list[str]:
        return [entry.action for entry in self.manager.get_entry(entry_id).execution_log]


class EntryCreationTests(EntryPositionTestCase):
    def test_long_ioc_entry_is_placed_and_chased(self) -> None:
        entry_id = self.manager.create_entry("btc", "buy", _params())
        entry = self.manager.get_entry(entry_id)

        self.assertEqual(entry_id, "entry_1")
        self.assertEqual(entry.symbol, "BTC")
        self.assertEqual(entry.status, "active")
        self.assertEqual(entry.active_order_id, "sim-1")
        self.assertEqual(entry.chase_count, 0)
        self.assertEqual(entry.max_chases, 10)
        request = self.gateway.requests["sim-1"]
        self.assertEqual((request.side, request.order_type, request.time_in_force), ("buy", "limit", "IOC"))
        self.assertAlmostEqual(request.price, 93_575.0, places=6)
        self.assertAlmostEqual(request.quantity, 500.0, places=9)
        self.assertFalse(request.reduce_only)
        self.assertEqual(self.scheduler.intervals["entry:entry_1"], 5.0)
        self.assertEqual(
            self._actions(entry_id),
            ["entry_position_created", "entry_order_placed", "price_chasing_started"],
        )

    def test_static_gtc_entry_has_no_chase_loop(self) -> None:
        entry_id = self.manager.create_entry("BTC", "sell", _params(fill_or_cancel=False))
        request = self.gateway.requests["sim-1"]
        self.assertEqual(request.time_in_force, "GTC")
        self.assertAlmostEqual(request.price, 96_425.0, places=6)
        self.assertEqual(self.scheduler.tasks, {})

        self.assertEqual(self.manager.refresh_entry(entry_id), "pending")
        self.gateway.set_status("sim-1", "filled")
        self.assertEqual(self.manager.refresh_entry(entry_id), "filled")
        entry = self.manager.get_entry(entry_id)
        self.assertEqual(entry.status, "filled")
        self.assertEqual(self._actions(entry_id)[-1], "entry_filled")
        self.assertIsNone(self.manager.refresh_entry(entry_id))

    def test_disabled_entry_stays_pending_without_validation(self) -> None:
        entry_id = self.manager.create_entry("BTC", "buy", _params(enabled=False, price_distance=50.0))
        self.assertEqual(self.manager.get_entry(entry_id).status, "pending")
        self.assertEqual(self.gateway.calls, [])
        self.assertFalse(self.manager.execute_entry(entry_id))

    def test_invalid_params_store_nothing(self) -> None:
        cases = {
            "distance": _params(price_distance=6.0),
            "fraction": _params(entry_position=1.5),
            "max size": _params(max_position_size=0.0),
            "fixed": _params(position_type="fixed", entry_position=0.0),
            "limits": _params(long_price_limit=97_000.0, short_price_limit=96_000.0),
            "expiry": _params(expire_after_seconds=0),
            "position type": _params(position_type="notional"),
        }
        for label, params in cases.items():
            with self.subTest(label=label):
                with self.assertRaises(ValueError):
                    self.manager.create_entry("BTC", "buy", params)
        with self.assertRaises(ValueError):
            self.manager.create_entry("BTC", "long", _params())
        self.assertEqual(self.manager.list_entries(), [])
        self.assertEqual(self.events, [])

    def test_missing_price_records_failure(self) -> None:
        self.market.set_price("BTC", None)
        entry_id = self.manager.create_entry("BTC", "buy", _params())
        entry = self.manager.get_entry(entry_id)
        self.assertEqual(entry.status, "pending")
        self.assertEqual(self._actions(entry_id)[-1], "execution_failed")
        self.assertEqual(self.gateway.calls, [])


class EntryChaseTests(EntryPositionTestCase):
    def test_chase_sequence(self) -> None:
        entry_id = self.manager.create_entry("BTC", "buy", _params())

        self.market.set_price("BTC", 95_050.0)
        self.assertEqual(self.manager.chase_tick(entry_id), "PRICE_CHANGE_BELOW_THRESHOLD")
        self.assertEqual(len(self.gateway.placed), 1)

        self.market.set_price("BTC", 96_000.0)
        self.assertEqual(self.manager.chase_tick(entry_id), "PRICE_CHASED")
        entry = self.manager.get_entry(entry_id)
        self.assertEqual(entry.chase_count, 1)
        self.assertEqual(entry.active_order_id, "sim-2")
        self.assertAlmostEqual(entry.last_price, 94_560.0, places=6)
        self.assertEqual(self.gateway.cancelled, ["sim-1"])
        self.assertEqual(entry.execution_log[-1].details, "Price chased 1/10: 94560.0")

        self.gateway.set_status("sim-2", "cancelled")
        self.assertEqual(self.manager.chase_tick(entry_id), "PRICE_CHASED")
        self.assertEqual(self.gateway.place_call_order(), ["place", "cancel", "place", "place"])

        self.gateway.set_status("sim-3", "filled")
        self.assertEqual(self.manager.chase_tick(entry_id), "ENTRY_FILLED")
        entry = self.manager.get_entry(entry_id)
        self.assertEqual(entry.status, "filled")
        self.assertEqual(entry.chase_count, 2)
        self.assertIn("entry:entry_1", self.scheduler.stopped)
        self.assertIn("price_chasing_stopped", self._actions(entry_id))
        self.assertEqual(self.manager.chase_tick(entry_id), "ENTRY_NOT_CHASING")

    def test_scheduler_tick_drives_chase(self) -> None:
        entry_id = self.manager.create_entry("BTC", "buy", _params())
        self.gateway.set_status("sim-1", "filled")
        self.assertTrue(self.scheduler.tick("entry:entry_1"))
        self.assertEqual(self.manager.get_entry(entry_id).status, "filled")
        self.assertNotIn("entry:entry_1", self.scheduler.tasks)

    def test_cancel_failure_keeps_resting_order(self) -> None:
        entry_id = self.manager.create_entry("BTC", "buy", _params())
        self.market.set_price("BTC", 96_000.0)
        self.gateway.reject_next_cancels = 3
        self.assertEqual(self.manager.chase_tick(entry_id), "CANCEL_FAILED")
        entry = self.manager.get_entry(entry_id)
        self.assertEqual(entry.active_order_id, "sim-1")
        self.assertEqual(entry.chase_count, 0)
        self.assertIn("order_cancel_failed", self._actions(entry_id))

    def test_cancel_failure_on_filled_order_is_a_fill(self) -> None:
        entry_id = self.manager.create_entry("BTC", "buy", _params())
        self.market.set_price("BTC", 96_000.0)
        self.gateway.reject_next_cancels = 3
        real_status = self.gateway.get_order_status
        answers = iter(["pending", "filled"])
        self.gateway.get_order_status = lambda order_id: next(answers, real_status(order_id))
        self.assertEqual(self.manager.chase_tick(entry_id), "ENTRY_FILLED")
        self.assertEqual(self.manager.get_entry(entry_id).status, "filled")


class EntryMaxChaseTests(EntryPositionTestCase):
    settings = EngineSettings(entry_max_chases=2)

    def test_ceiling_stops_chasing_but_entry_stays_active(self) -> None:
        entry_id = self.manager.create_entry("BTC", "buy", _params())
        self.gateway.set_status("sim-1", "cancelled")
        self.assertEqual(self.manager.chase_tick(entry_id), "PRICE_CHASED")
        self.gateway.set_status("sim-2", "cancelled")
        self.assertEqual(self.manager.chase_tick(entry_id), "PRICE_CHASED")
        placed_before = len(self.gateway.placed)

        self.assertEqual(self.manager.chase_tick(entry_id), "MAX_CHASES_REACHED")
        entry = self.manager.get_entry(entry_id)
        self.assertEqual(entry.status, "active")
        self.assertEqual(entry.chase_count, 2)
        self.assertEqual(len(self.gateway.placed), placed_before)
        self.assertNotIn("entry:entry_1", self.scheduler.tasks)
        self.assertEqual(self._actions(entry_id)[-1], "max_chases_reached")
        self.assertTrue(self.manager.cancel_entry(entry_id))
        self.assertEqual(self.gateway.cancelled, ["sim-3"])


class EntryCommandTests(EntryPositionTestCase):
    def test_cancel_is_idempotent(self) -> None:
        entry_id = self.manager.create_entry("BTC", "buy", _params())
        self.assertTrue(self.manager.cancel_entry(entry_id))
        entry = self.manager.get_entry(entry_id)
        self.assertEqual(entry.status, "cancelled")
        self.assertEqual(self.gateway.cancelled, ["sim-1"])
        self.assertIn("entry:entry_1", self.scheduler.stopped)
        self.assertEqual(self._actions(entry_id)[-1], "entry_order_cancelled")

        calls_before = list(self.gateway.calls)
        self.assertTrue(self.manager.cancel_entry(entry_id))
        self.assertEqual(self.gateway.calls, calls_before)
        self.assertFalse(self.manager.cancel_entry("entry_missing"))

    def test_update_replaces_resting_order(self) -> None:
        entry_id = self.manager.create_entry("BTC", "buy", _params())
        self.assertTrue(self.manager.update_entry(entry_id, {"price_distance": 2.0}))
        entry = self.manager.get_entry(entry_id)
        self.assertEqual(entry.params.price_distance, 2.0)
        self.assertEqual(entry.active_order_id, "sim-2")
        self.assertEqual(entry.chase_count, 0)
        self.assertAlmostEqual(self.gateway.requests["sim-2"].price, 93_100.0, places=6)
        self.assertEqual(self.gateway.cancelled, ["sim-1"])
        self.assertIn("entry:entry_1", self.scheduler.tasks)
        self.assertIn("parameters_updated", self._actions(entry_id))

    def test_update_rejects_invalid_and_unknown_fields(self) -> None:
        entry_id = self.manager.create_entry("BTC", "buy", _params())
        with self.assertRaises(ValueError):
            self.manager.update_entry(entry_id, {"price_distance": 9.0})
        with self.assertRaises(ValueError):
            self.manager.update_entry(entry_id, {"chase_count": 0})
        entry = self.manager.get_entry(entry_id)
        self.assertEqual(entry.params.price_distance, 1.5)
        self.assertEqual(len(self.gateway.placed), 1)

    def test_disabling_active_entry_cancels_it(self) -> None:
        entry_id = self.manager.create_entry("BTC", "buy", _params())
        self.assertTrue(self.manager.update_entry(entry_id, {"enabled": False}))
        self.assertEqual(self.manager.get_entry(entry_id).status, "cancelled")
        self.assertEqual(self.gateway.cancelled, ["sim-1"])
        self.assertFalse(self.manager.update_entry(entry_id, {"price_distance": 1.0}))

    def test_expiry_timer(self) -> None:
        entry_id = self.manager.create_entry("BTC", "buy", _params(expire_after_seconds=30))
        self.assertEqual(self.scheduler.timer_delays["expire:entry_1"], 30.0)
        self.assertTrue(self.scheduler.fire_timer("expire:entry_1"))
        entry = self.manager.get_entry(entry_id)
        self.assertEqual(entry.status, "expired")
        self.assertEqual(self.gateway.cancelled, ["sim-1"])
        self.assertNotIn("entry:entry_1", self.scheduler.tasks)
        self.assertEqual(self._actions(entry_id)[-1], "entry_expired")
        self.assertFalse(self.manager.expire_entry(entry_id))

    def test_chase_tick_expires_overdue_entry(self) -> None:
        entry_id = self.manager.create_entry("BTC", "buy", _params(expire_after_seconds=30))
        self.now += 31
        self.assertEqual(self.manager.chase_tick(entry_id), "ENTRY_EXPIRED")
        self.assertEqual(self.manager.get_entry(entry_id).status, "expired")
        self.assertNotIn("expire:entry_1", self.scheduler.timers)

    def test_stats_and_events(self) -> None:
        first = self.manager.create_entry("BTC", "buy", _params())
        self.manager.create_entry("BTC", "sell", _params(enabled=False))
        self.manager.cancel_entry(first)
        stats = self.manager.entry_stats()
        self.assertEqual((stats.total, stats.active, stats.pending, stats.cancelled), (2, 0, 1, 1))

        placed = [event for event in self.events if event.action == "entry_order_placed"]
        self.assertEqual(len(placed), 1)
        self.assertEqual(placed[0].entity_id, first)
        self.assertEqual(placed[0].details["order_id"], "sim-1")
        self.assertEqual(placed[0].details["status"], "pending")
        self.assertEqual(placed[0].timestamp, 1_700_000_000_000)

    def test_get_returns_copies(self) -> None:
        entry_id = self.manager.create_entry("BTC", "buy", _params())
        copy_one = self.manager.get_entry(entry_id)
        copy_one.params.price_distance = 4.0
        self.assertEqual(self.manager.get_entry(entry_id).params.price_distance, 1.5)


class EntryRecoveryTests(EntryPositionTestCase):
    def test_reload_and_resume_active_entries(self) -> None:
        active_id = self.manager.create_entry("BTC", "buy", _params(expire_after_seconds=60))
        self.manager.create_entry("BTC", "sell", _params(enabled=False))
        self.assertEqual(len(self.persistence.snapshot["entries"]), 2)

        scheduler = ManualScheduler()
        restored = self._manager(scheduler)
        self.assertEqual(restored.load(), 2)
        entry = restored.get_entry(active_id)
        self.assertEqual(entry.status, "active")
        self.assertEqual(entry.active_order_id, "sim-1")
        self.assertEqual(entry.params.expire_after_seconds, 60)

        self.now += 20
        self.assertEqual(restored.start_monitoring(), 1)
        self.assertIn("entry:entry_1", scheduler.tasks)
        self.assertEqual(scheduler.timer_delays["expire:entry_1"], 40.0)

        restored.stop_monitoring()
        self.assertEqual(scheduler.tasks, {})
        self.assertEqual(scheduler.timers, {})


if __name__ == "__main__":
    unittest.main()
