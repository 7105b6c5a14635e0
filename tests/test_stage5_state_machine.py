from __future__ import annotations

import unittest
from unittest.mock import patch

from basket_engine import apply_basket_status, apply_entry_status, apply_status_with_logging


class BasketStatusTests(unittest.TestCase):
    def test_allowed_transitions(self) -> None:
        for current, target in [
            ("pending", "active"),
            ("pending", "cancelled"),
            ("pending", "error"),
            ("active", "completed"),
            ("active", "cancelled"),
            ("active", "error"),
        ]:
            with self.subTest(current=current, target=target):
                result = apply_basket_status(current, target)
                self.assertTrue(result.accepted)
                self.assertTrue(result.changed)
                self.assertEqual(result.current_status, target)

    def test_terminal_states_are_immutable(self) -> None:
        for terminal in ("completed", "cancelled", "error"):
            for target in ("pending", "active", "completed", "cancelled"):
                if terminal == target:
                    continue
                with self.subTest(terminal=terminal, target=target):
                    result = apply_basket_status(terminal, target)
                    self.assertFalse(result.accepted)
                    self.assertEqual(result.reason_code, "INVALID_TRANSITION")
                    self.assertEqual(result.current_status, terminal)

    def test_active_to_active_is_noop(self) -> None:
        result = apply_basket_status("active", "active")
        self.assertTrue(result.accepted)
        self.assertFalse(result.changed)
        self.assertEqual(result.reason_code, "NO_STATUS_CHANGE")

    def test_unknown_status(self) -> None:
        self.assertEqual(apply_basket_status("active", "paused").reason_code, "INVALID_STATUS")


class EntryStatusTests(unittest.TestCase):
    def test_entry_lifecycle(self) -> None:
        self.assertTrue(apply_entry_status("pending", "active").accepted)
        self.assertTrue(apply_entry_status("active", "filled").accepted)
        self.assertTrue(apply_entry_status("active", "expired").accepted)
        self.assertTrue(apply_entry_status("pending", "cancelled").accepted)
        self.assertFalse(apply_entry_status("pending", "filled").accepted)
        self.assertFalse(apply_entry_status("filled", "cancelled").accepted)
        self.assertFalse(apply_entry_status("expired", "active").accepted)

    def test_basket_only_status_is_invalid_for_entries(self) -> None:
        self.assertEqual(apply_entry_status("active", "completed").reason_code, "INVALID_STATUS")


class StateMachineLoggingTests(unittest.TestCase):
    def test_rejected_transition_is_logged(self) -> None:
        with patch("basket_engine.event_logging.write_engine_log_line") as mocked:
            apply_status_with_logging("BASKET", "completed", "active", entity_id="basket_1")
        line = mocked.call_args.args[0]
        self.assertIn("component=state_machine", line)
        self.assertIn("result=rejected", line)
        self.assertIn("failure_reason=INVALID_TRANSITION", line)
        self.assertIn("entity_id=basket_1", line)
        self.assertIn("state_transition=completed->completed", line)


if __name__ == "__main__":
    unittest.main()
