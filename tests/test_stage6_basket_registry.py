from __future__ import annotations

import itertools
import unittest

from basket_engine import (
    BasketConfig,
    BasketOrderManager,
    BasketRegistry,
    EngineSettings,
    EntryOrderSpec,
    ExecutionEvent,
    LimitChaserConfig,
    ManualScheduler,
    MemoryPersistence,
    SimulatedMarketData,
    SimulatedOrderGateway,
    StopLossConfig,
    TakeProfitLevel,
    merge_basket_patch,
    validate_basket_config,
)


def _config(**overrides) -> BasketConfig:
    values = dict(
        symbol="btc",
        side="buy",
        entry_order=EntryOrderSpec(type="limit", quantity=1.0, price=100.0, leverage=5.0),
        stop_loss=StopLossConfig(enabled=True, trigger_price=95.0, timeframe="1m"),
        limit_chaser=LimitChaserConfig(enabled=False),
        take_profits=[TakeProfitLevel(id="tp1", target_price=110.0, quantity_percent=50.0)],
    )
    values.update(overrides)
    return BasketConfig(**values)


class BasketValidationTests(unittest.TestCase):
    def test_valid_config_passes(self) -> None:
        validate_basket_config(_config())

    def test_invalid_configs_raise(self) -> None:
        cases = {
            "symbol": _config(symbol="  "),
            "side": _config(side="long"),
            "quantity": _config(entry_order=EntryOrderSpec(type="market", quantity=0)),
            "limit price": _config(entry_order=EntryOrderSpec(type="limit", quantity=1)),
            "leverage": _config(entry_order=EntryOrderSpec(type="market", quantity=1, leverage=0)),
            "trigger": _config(stop_loss=StopLossConfig(enabled=True, trigger_price=0)),
            "timeframe": _config(stop_loss=StopLossConfig(enabled=True, trigger_price=95, timeframe="2m")),
            "distance": _config(limit_chaser=LimitChaserConfig(enabled=True, distance=100, distance_type="percentage")),
            "max chases": _config(limit_chaser=LimitChaserConfig(enabled=True, distance=1, max_chases=-1)),
            "tp percent": _config(take_profits=[TakeProfitLevel(id="tp1", target_price=110, quantity_percent=150)]),
            "tp duplicate": _config(
                take_profits=[
                    TakeProfitLevel(id="tp1", target_price=110, quantity_percent=50),
                    TakeProfitLevel(id="tp1", target_price=120, quantity_percent=50),
                ]
            ),
        }
        for label, config in cases.items():
            with self.subTest(label=label):
                with self.assertRaises(ValueError):
                    validate_basket_config(config)

    def test_disabled_sections_are_not_validated(self) -> None:
        validate_basket_config(
            _config(
                stop_loss=StopLossConfig(enabled=False, trigger_price=0),
                limit_chaser=LimitChaserConfig(enabled=False, distance=0),
            )
        )


class BasketRegistryTests(unittest.TestCase):
    def setUp(self) -> None:
        self.events: list[ExecutionEvent] = []
        self.persistence = MemoryPersistence()
        ids = itertools.count(1)
        self.registry = BasketRegistry(
            persistence=self.persistence,
            event_sink=self.events.append,
            clock=lambda: 1_700_000_000.0,
            id_factory=lambda: f"basket_{next(ids)}",
        )

    def test_create_normalizes_and_records(self) -> None:
        basket_id = self.registry.create(_config())
        basket = self.registry.get(basket_id)
        self.assertEqual(basket_id, "basket_1")
        self.assertEqual(basket.symbol, "BTC")
        self.assertEqual(basket.name, "BTC buy")
        self.assertEqual(basket.status, "pending")
        self.assertEqual(basket.created_at, 1_700_000_000_000)
        self.assertEqual([entry.action for entry in basket.execution_log], ["created"])
        self.assertEqual(self.events[0].action, "created")
        self.assertEqual(self.events[0].details["status"], "pending")
        self.assertEqual(len(self.persistence.snapshot["baskets"]), 1)

    def test_invalid_create_stores_nothing(self) -> None:
        with self.assertRaises(ValueError):
            self.registry.create(_config(entry_order=EntryOrderSpec(type="limit", quantity=1)))
        self.assertEqual(self.registry.list(), [])
        self.assertEqual(self.events, [])

    def test_get_returns_copies(self) -> None:
        basket_id = self.registry.create(_config())
        copy_one = self.registry.get(basket_id)
        copy_one.take_profits[0].enabled = False
        self.assertTrue(self.registry.get(basket_id).take_profits[0].enabled)

    def test_patch_rejects_engine_owned_and_unknown_fields(self) -> None:
        basket_id = self.registry.create(_config())
        basket = self.registry.get(basket_id)
        with self.assertRaises(ValueError):
            merge_basket_patch(basket, {"limit_chaser": {"chase_count": 3}})
        with self.assertRaises(ValueError):
            merge_basket_patch(basket, {"status": "active"})
        with self.assertRaises(ValueError):
            merge_basket_patch(basket, {"stop_loss": {"trigger": 1}})

    def test_patch_keeps_max_chases_at_or_above_chase_count(self) -> None:
        basket_id = self.registry.create(_config(limit_chaser=LimitChaserConfig(enabled=True, distance=1.0, max_chases=5)))

        def _chased(target) -> None:
            target.limit_chaser.chase_count = 3

        self.registry.mutate(basket_id, _chased)
        basket = self.registry.get(basket_id)
        with self.assertRaises(ValueError):
            merge_basket_patch(basket, {"limit_chaser": {"max_chases": 2}})
        self.assertEqual(merge_basket_patch(basket, {"limit_chaser": {"max_chases": 3}}).limit_chaser.max_chases, 3)
        self.assertEqual(merge_basket_patch(basket, {"name": "swing"}).limit_chaser.max_chases, 5)

    def test_replace_config_merges_sections(self) -> None:
        basket_id = self.registry.create(_config())
        before, after = self.registry.replace_config(
            basket_id,
            {"stop_loss": {"trigger_price": 90.0}, "take_profits": [{"id": "tp9", "target_price": 130, "quantity_percent": 100}]},
        )
        self.assertEqual(before.stop_loss.trigger_price, 95.0)
        self.assertEqual(after.stop_loss.trigger_price, 90.0)
        self.assertTrue(after.stop_loss.enabled)
        self.assertEqual([level.id for level in after.take_profits], ["tp9"])

    def test_replace_config_on_terminal_basket_is_refused(self) -> None:
        basket_id = self.registry.create(_config())
        self.registry.set_status(basket_id, "cancelled")
        self.assertIsNone(self.registry.replace_config(basket_id, {"name": "renamed"}))
        self.assertIsNone(self.registry.replace_config("missing", {"name": "renamed"}))

    def test_status_change_is_logged_once(self) -> None:
        basket_id = self.registry.create(_config())
        self.registry.set_status(basket_id, "active")
        self.registry.set_status(basket_id, "active")
        rejected = self.registry.set_status(basket_id, "pending")
        actions = [entry.action for entry in self.registry.get(basket_id).execution_log]
        self.assertEqual(actions, ["created", "status_active"])
        self.assertFalse(rejected.accepted)

    def test_load_skips_invalid_records(self) -> None:
        self.registry.create(_config())
        snapshot = dict(self.persistence.snapshot)
        snapshot["baskets"] = list(snapshot["baskets"]) + [{"id": "broken"}]
        self.persistence.snapshot = snapshot
        restored = BasketRegistry(persistence=self.persistence)
        self.assertEqual(restored.load(), 1)
        self.assertEqual(restored.ids(), ["basket_1"])


class BasketCommandTests(unittest.TestCase):
    def setUp(self) -> None:
        self.market = SimulatedMarketData({"BTC": [100.0]})
        self.gateway = SimulatedOrderGateway()
        self.scheduler = ManualScheduler()
        self.registry = BasketRegistry(persistence=MemoryPersistence())
        self.manager = BasketOrderManager(
            self.registry,
            self.market,
            self.gateway,
            self.scheduler,
            settings=EngineSettings(),
        )

    def test_execute_entry_places_order_and_activates(self) -> None:
        basket_id = self.manager.create_basket(_config())
        self.assertTrue(self.manager.execute_basket_entry(basket_id))
        basket = self.manager.get_basket(basket_id)
        self.assertEqual(basket.status, "active")
        self.assertEqual(basket.active_orders.entry_order_id, "sim-1")
        request = self.gateway.requests["sim-1"]
        self.assertEqual((request.side, request.order_type, request.price, request.leverage), ("buy", "limit", 100.0, 5.0))
        self.assertFalse(request.reduce_only)
        self.assertIn("candle:BTC:1m", self.scheduler.tasks)
        self.assertEqual(self.scheduler.intervals["candle:BTC:1m"], 60.0)
        self.assertIn("price:BTC", self.scheduler.tasks)
        actions = [entry.action for entry in basket.execution_log]
        self.assertEqual(actions, ["created", "status_active", "entry_executed", "stop_loss_setup"])
        self.assertFalse(self.manager.execute_basket_entry(basket_id))

    def test_failed_entry_leaves_basket_pending(self) -> None:
        basket_id = self.manager.create_basket(_config())
        self.gateway.reject_next_places = 1
        self.assertFalse(self.manager.execute_basket_entry(basket_id))
        basket = self.manager.get_basket(basket_id)
        self.assertEqual(basket.status, "pending")
        self.assertEqual(basket.execution_log[-1].action, "entry_failed")
        self.assertEqual(self.scheduler.tasks, {})

    def test_cancel_cancels_outstanding_orders_and_is_idempotent(self) -> None:
        basket_id = self.manager.create_basket(_config())
        self.manager.execute_basket_entry(basket_id)
        self.assertTrue(self.manager.cancel_basket(basket_id))
        basket = self.manager.get_basket(basket_id)
        self.assertEqual(basket.status, "cancelled")
        self.assertEqual(self.gateway.cancelled, ["sim-1"])
        self.assertIn("candle:BTC:1m", self.scheduler.stopped)
        self.assertIn("price:BTC", self.scheduler.stopped)

        calls_before = list(self.gateway.calls)
        log_before = len(basket.execution_log)
        self.assertTrue(self.manager.cancel_basket(basket_id))
        self.assertEqual(self.gateway.calls, calls_before)
        self.assertEqual(len(self.manager.get_basket(basket_id).execution_log), log_before)

    def test_cancel_pending_and_unknown(self) -> None:
        basket_id = self.manager.create_basket(_config())
        self.assertTrue(self.manager.cancel_basket(basket_id))
        self.assertEqual(self.manager.get_basket(basket_id).status, "cancelled")
        self.assertEqual(self.gateway.calls, [])
        self.assertFalse(self.manager.cancel_basket("basket_missing"))

    def test_cancel_failure_is_recorded_but_basket_still_cancelled(self) -> None:
        basket_id = self.manager.create_basket(_config())
        self.manager.execute_basket_entry(basket_id)
        self.gateway.reject_next_cancels = 3
        self.assertTrue(self.manager.cancel_basket(basket_id))
        basket = self.manager.get_basket(basket_id)
        self.assertEqual(basket.status, "cancelled")
        self.assertIn("order_cancel_failed", [entry.action for entry in basket.execution_log])

    def test_update_cannot_drop_max_chases_below_chases_made(self) -> None:
        basket_id = self.manager.create_basket(
            _config(
                entry_order=EntryOrderSpec(type="market", quantity=1.0),
                limit_chaser=LimitChaserConfig(enabled=True, distance=1.0, max_chases=5),
            )
        )
        self.manager.execute_basket_entry(basket_id)
        self.market.queue_prices("BTC", [100.0, 101.0, 102.0])
        for _ in range(3):
            self.assertEqual(self.manager.limit_chaser.tick(basket_id), "CHASE_PLACED")

        with self.assertRaises(ValueError):
            self.manager.update_basket(basket_id, {"limit_chaser": {"max_chases": 1}})
        chaser = self.manager.get_basket(basket_id).limit_chaser
        self.assertEqual((chaser.chase_count, chaser.max_chases), (3, 5))

        self.assertTrue(self.manager.update_basket(basket_id, {"limit_chaser": {"max_chases": 3}}))
        self.assertEqual(self.manager.limit_chaser.tick(basket_id), "MAX_CHASES_REACHED")
        self.assertLessEqual(self.manager.get_basket(basket_id).limit_chaser.chase_count, 3)

    def test_update_validates_and_refuses_terminal(self) -> None:
        basket_id = self.manager.create_basket(_config())
        with self.assertRaises(ValueError):
            self.manager.update_basket(basket_id, {"stop_loss": {"trigger_price": -1}})
        self.assertEqual(self.manager.get_basket(basket_id).stop_loss.trigger_price, 95.0)
        self.assertTrue(self.manager.update_basket(basket_id, {"name": "swing"}))
        self.assertEqual(self.manager.get_basket(basket_id).name, "swing")
        self.manager.cancel_basket(basket_id)
        self.assertFalse(self.manager.update_basket(basket_id, {"name": "late"}))


if __name__ == "__main__":
    unittest.main()
