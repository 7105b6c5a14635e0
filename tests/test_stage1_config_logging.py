from __future__ import annotations

import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from basket_engine import (
    BasketConfig,
    BasketRegistry,
    EngineSettings,
    EntryOrderSpec,
    StructuredLogEvent,
    configure_log_rotation,
    format_log_event,
    load_engine_settings,
    log_structured_event,
    write_engine_log_line,
)
from basket_engine.logging_utils import LOG_ROTATE_BACKUP_COUNT_DEFAULT, LOG_ROTATE_MAX_BYTES_DEFAULT


class EngineSettingsTests(unittest.TestCase):
    def test_defaults_when_environment_is_empty(self) -> None:
        settings = load_engine_settings({})
        self.assertEqual(settings, EngineSettings())
        self.assertEqual(settings.ioc_check_delay_seconds, 1.0)
        self.assertEqual(settings.entry_chase_interval_seconds, 5.0)
        self.assertEqual(settings.entry_max_chases, 10)
        self.assertAlmostEqual(settings.entry_reprice_threshold, 0.001)
        self.assertEqual(settings.candle_cache_size, 100)
        self.assertEqual(settings.candle_fetch_limit, 2)
        self.assertEqual(settings.cancel_max_attempts, 3)

    def test_environment_overrides(self) -> None:
        settings = load_engine_settings(
            {
                "BASKET_ENGINE_STATE_DIR": "/var/lib/basket",
                "BASKET_ENGINE_ENTRY_MAX_CHASES": "4",
                "BASKET_ENGINE_IOC_CHECK_DELAY_SECONDS": "2.5",
                "BASKET_ENGINE_PRICE_WATCH_INTERVAL_SECONDS": "0.5",
            }
        )
        self.assertEqual(settings.state_dir, "/var/lib/basket")
        self.assertEqual(settings.entry_max_chases, 4)
        self.assertEqual(settings.ioc_check_delay_seconds, 2.5)
        self.assertEqual(settings.price_watch_interval_seconds, 0.5)

    def test_invalid_or_out_of_range_values_fall_back_to_defaults(self) -> None:
        settings = load_engine_settings(
            {
                "BASKET_ENGINE_ENTRY_MAX_CHASES": "many",
                "BASKET_ENGINE_ENTRY_REPRICE_THRESHOLD": "0.9",
                "BASKET_ENGINE_CANDLE_FETCH_LIMIT": "1",
            }
        )
        self.assertEqual(settings.entry_max_chases, 10)
        self.assertAlmostEqual(settings.entry_reprice_threshold, 0.001)
        self.assertEqual(settings.candle_fetch_limit, 2)

    def test_fallback_is_logged_with_key(self) -> None:
        with patch("basket_engine.event_logging.write_engine_log_line") as mocked:
            load_engine_settings({"BASKET_ENGINE_ENTRY_MAX_CHASES": "many"})
        lines = [call.args[0] for call in mocked.call_args_list]
        failed = [line for line in lines if "event=setting_parse_failed" in line]
        self.assertEqual(len(failed), 1)
        self.assertIn("component=config", failed[0])
        self.assertIn("key=BASKET_ENGINE_ENTRY_MAX_CHASES", failed[0])
        self.assertIn("failure_reason=invalid_int", failed[0])
        self.assertTrue(any("event=settings_load_completed" in line for line in lines))


class StructuredLoggingTests(unittest.TestCase):
    def test_structured_event_fields_and_sorted_context(self) -> None:
        with patch("basket_engine.event_logging.write_engine_log_line") as mocked:
            log_structured_event(
                StructuredLogEvent(
                    component="limit_chaser",
                    event="tick",
                    entity_id="b1",
                    input_data="side=buy",
                    decision="reprice",
                    result="placed",
                    state_before="resting",
                    state_after="replaced",
                ),
                zeta="last",
                alpha="first value",
            )
        line = mocked.call_args.args[0]
        self.assertTrue(line.startswith("component=limit_chaser event=tick entity_id=b1 input=side=buy"))
        self.assertIn("state_transition=resting->replaced", line)
        self.assertIn("failure_reason=-", line)
        self.assertLess(line.index("alpha=first value"), line.index("zeta=last"))

    def test_empty_fields_collapse_to_dash(self) -> None:
        line = format_log_event(StructuredLogEvent(component="engine", event="noop"))
        self.assertEqual(
            line,
            "component=engine event=noop entity_id=- input=- decision=- result=- "
            "state_transition=- failure_reason=-",
        )

    def test_context_cannot_shadow_core_fields(self) -> None:
        line = format_log_event(
            StructuredLogEvent(component="basket_registry", event="record_execution", entity_id="basket_1"),
            entity_id="basket_2",
            result="late",
        )
        self.assertEqual(line.count(" entity_id="), 1)
        self.assertIn("entity_id=basket_1", line)
        self.assertIn("context_entity_id=basket_2", line)
        self.assertIn("context_result=late", line)

    def test_record_execution_names_the_basket(self) -> None:
        registry = BasketRegistry()
        with patch("basket_engine.event_logging.write_engine_log_line") as mocked:
            basket_id = registry.create(
                BasketConfig(symbol="BTC", side="buy", entry_order=EntryOrderSpec(type="market", quantity=1.0))
            )
        line = mocked.call_args.args[0]
        self.assertIn("event=record_execution", line)
        self.assertIn(f"entity_id={basket_id}", line)
        self.assertIn("input=action=created", line)


class LogRotationTests(unittest.TestCase):
    def tearDown(self) -> None:
        configure_log_rotation(
            max_bytes=LOG_ROTATE_MAX_BYTES_DEFAULT,
            backup_count=LOG_ROTATE_BACKUP_COUNT_DEFAULT,
        )

    def test_log_file_rotates_past_max_bytes(self) -> None:
        with tempfile.TemporaryDirectory() as tmp_dir:
            log_path = Path(tmp_dir) / "engine.log"
            configure_log_rotation(max_bytes=1024, backup_count=2)
            with patch("basket_engine.logging_utils.ENGINE_LOG_PATH", log_path):
                for index in range(60):
                    write_engine_log_line(f"component=test event=line index={index} " + "x" * 40)
            self.assertTrue(log_path.exists())
            self.assertTrue(log_path.with_name("engine.log.1").exists())
            self.assertFalse(log_path.with_name("engine.log.3").exists())
            self.assertLessEqual(log_path.stat().st_size, 1024)

    def test_write_never_raises_on_unwritable_path(self) -> None:
        with tempfile.TemporaryDirectory() as tmp_dir:
            blocker = Path(tmp_dir) / "blocker"
            blocker.write_text("not a directory", encoding="utf-8")
            with patch("basket_engine.logging_utils.ENGINE_LOG_PATH", blocker / "engine.log"):
                write_engine_log_line("component=test event=unwritable")


if __name__ == "__main__":
    unittest.main()
