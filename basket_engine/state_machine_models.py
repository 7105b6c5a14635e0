from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

EntityKind = Literal["BASKET", "ENTRY"]


@dataclass(frozen=True)
class StatusTransitionResult:
    kind: EntityKind
    previous_status: str
    current_status: str
    accepted: bool
    changed: bool
    reason_code: str
