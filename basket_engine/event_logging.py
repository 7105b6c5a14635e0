from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from .logging_utils import write_engine_log_line

LOG_FIELD_EMPTY = "-"


def _normalize(value: Any) -> str:
    if value is None:
        return LOG_FIELD_EMPTY
    text = " ".join(str(value).split())
    return text if text else LOG_FIELD_EMPTY


def _state_transition(state_before: Any, state_after: Any) -> str:
    before = _normalize(state_before)
    after = _normalize(state_after)
    if before == LOG_FIELD_EMPTY and after == LOG_FIELD_EMPTY:
        return LOG_FIELD_EMPTY
    return f"{before}->{after}"


@dataclass(frozen=True)
class StructuredLogEvent:
    """One engine log line.

    ``entity_id`` names the basket or entry the line is about, so a single
    grep follows one entity across every component.
    """

    component: str
    event: str
    entity_id: str = LOG_FIELD_EMPTY
    input_data: str = LOG_FIELD_EMPTY
    decision: str = LOG_FIELD_EMPTY
    result: str = LOG_FIELD_EMPTY
    state_before: str = LOG_FIELD_EMPTY
    state_after: str = LOG_FIELD_EMPTY
    failure_reason: str = LOG_FIELD_EMPTY

    def fields(self) -> list[tuple[str, str]]:
        return [
            ("component", _normalize(self.component)),
            ("event", _normalize(self.event)),
            ("entity_id", _normalize(self.entity_id)),
            ("input", _normalize(self.input_data)),
            ("decision", _normalize(self.decision)),
            ("result", _normalize(self.result)),
            ("state_transition", _state_transition(self.state_before, self.state_after)),
            ("failure_reason", _normalize(self.failure_reason)),
        ]


def format_log_event(event: StructuredLogEvent, **context: Any) -> str:
    core = event.fields()
    reserved = {key for key, _ in core}
    parts = [f"{key}={value}" for key, value in core]
    for key, value in sorted(context.items()):
        # Context never shadows a core field.
        name = f"context_{key}" if key in reserved else key
        parts.append(f"{name}={_normalize(value)}")
    return " ".join(parts)


def log_structured_event(event: StructuredLogEvent, **context: Any) -> None:
    write_engine_log_line(format_log_event(event, **context))
