from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal, Optional, Sequence

from .port_models import OrderRequest, OrderStatus

OrderOperation = Literal["CREATE", "CANCEL", "QUERY"]

DEFAULT_RETRYABLE_REASON_CODES: tuple[str, ...] = (
    "GATEWAY_EXCEPTION",
    "CANCEL_REJECTED",
)


@dataclass(frozen=True)
class GatewayCallResult:
    ok: bool
    reason_code: str
    order_id: Optional[str] = None
    order_status: Optional[OrderStatus] = None
    message: Optional[str] = None


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 1
    retryable_reason_codes: Sequence[str] = field(default_factory=lambda: DEFAULT_RETRYABLE_REASON_CODES)


@dataclass(frozen=True)
class OrderPreparationResult:
    ok: bool
    reason_code: str
    failure_reason: str
    request: Optional[OrderRequest]


@dataclass(frozen=True)
class GatewayRetryResult:
    operation: OrderOperation
    success: bool
    attempts: int
    reason_code: str
    last_result: GatewayCallResult
    history: Sequence[GatewayCallResult]

    @property
    def order_id(self) -> Optional[str]:
        return self.last_result.order_id

    @property
    def order_status(self) -> Optional[OrderStatus]:
        return self.last_result.order_status
