from __future__ import annotations

from typing import Any

from .basket_models import VALID_BASKET_STATUSES
from .entry_models import VALID_ENTRY_STATUSES
from .event_logging import StructuredLogEvent, log_structured_event
from .state_machine_models import EntityKind, StatusTransitionResult

_BASKET_TRANSITIONS: frozenset[tuple[str, str]] = frozenset(
    {
        ("pending", "active"),
        ("pending", "cancelled"),
        ("pending", "error"),
        ("active", "active"),
        ("active", "completed"),
        ("active", "cancelled"),
        ("active", "error"),
    }
)

_ENTRY_TRANSITIONS: frozenset[tuple[str, str]] = frozenset(
    {
        ("pending", "active"),
        ("pending", "cancelled"),
        ("active", "active"),
        ("active", "filled"),
        ("active", "cancelled"),
        ("active", "expired"),
    }
)


def _normalize(value: Any) -> str:
    text = " ".join(str(value).split())
    return text if text else "-"


def _transition(
    kind: EntityKind,
    current_status: str,
    target_status: str,
    *,
    valid_statuses: frozenset[str],
    transitions: frozenset[tuple[str, str]],
) -> StatusTransitionResult:
    if current_status not in valid_statuses or target_status not in valid_statuses:
        return StatusTransitionResult(
            kind=kind,
            previous_status=current_status,
            current_status=current_status,
            accepted=False,
            changed=False,
            reason_code="INVALID_STATUS",
        )
    if (current_status, target_status) not in transitions:
        return StatusTransitionResult(
            kind=kind,
            previous_status=current_status,
            current_status=current_status,
            accepted=False,
            changed=False,
            reason_code="INVALID_TRANSITION",
        )
    changed = current_status != target_status
    return StatusTransitionResult(
        kind=kind,
        previous_status=current_status,
        current_status=target_status,
        accepted=True,
        changed=changed,
        reason_code="TRANSITION_APPLIED" if changed else "NO_STATUS_CHANGE",
    )


def apply_basket_status(current_status: str, target_status: str) -> StatusTransitionResult:
    return _transition(
        "BASKET",
        current_status,
        target_status,
        valid_statuses=VALID_BASKET_STATUSES,
        transitions=_BASKET_TRANSITIONS,
    )


def apply_entry_status(current_status: str, target_status: str) -> StatusTransitionResult:
    return _transition(
        "ENTRY",
        current_status,
        target_status,
        valid_statuses=VALID_ENTRY_STATUSES,
        transitions=_ENTRY_TRANSITIONS,
    )


def apply_status_with_logging(
    kind: EntityKind,
    current_status: str,
    target_status: str,
    *,
    entity_id: str,
) -> StatusTransitionResult:
    if kind == "BASKET":
        result = apply_basket_status(current_status, target_status)
    else:
        result = apply_entry_status(current_status, target_status)
    log_structured_event(
        StructuredLogEvent(
            component="state_machine",
            event="apply_status",
            entity_id=entity_id,
            input_data=f"kind={kind} status={_normalize(current_status)} target={_normalize(target_status)}",
            decision="check_transition_table",
            result="accepted" if result.accepted else "rejected",
            state_before=result.previous_status,
            state_after=result.current_status,
            failure_reason="-" if result.accepted else result.reason_code,
        ),
        reason_code=result.reason_code,
        changed=result.changed,
    )
    return result
