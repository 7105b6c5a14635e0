from __future__ import annotations

import math
from dataclasses import replace
from typing import Any, Callable, Optional

from .event_logging import StructuredLogEvent, log_structured_event
from .order_gateway_models import (
    GatewayCallResult,
    GatewayRetryResult,
    OrderOperation,
    OrderPreparationResult,
    RetryPolicy,
)
from .port_models import (
    VALID_ORDER_STATUSES,
    VALID_ORDER_TYPES,
    VALID_SIDES,
    VALID_TIME_IN_FORCE,
    OrderRequest,
)
from .ports import OrderGatewayPort


def _normalize(value: Any) -> str:
    text = " ".join(str(value).split())
    return text if text else "-"


def _normalize_symbol(symbol: str) -> str:
    return (symbol or "").strip().upper()


def _is_positive_finite(value: Optional[float]) -> bool:
    if value is None:
        return False
    try:
        converted = float(value)
    except (TypeError, ValueError):
        return False
    return math.isfinite(converted) and converted > 0


def _rejected(reason_code: str, failure_reason: str) -> OrderPreparationResult:
    return OrderPreparationResult(
        ok=False,
        reason_code=reason_code,
        failure_reason=failure_reason,
        request=None,
    )


def prepare_order(request: OrderRequest) -> OrderPreparationResult:
    symbol = _normalize_symbol(request.symbol)
    if not symbol:
        return _rejected("INVALID_SYMBOL", "symbol is empty")
    if request.side not in VALID_SIDES:
        return _rejected("INVALID_SIDE", f"side must be one of {sorted(VALID_SIDES)}")
    if request.order_type not in VALID_ORDER_TYPES:
        return _rejected("INVALID_ORDER_TYPE", f"order_type must be one of {sorted(VALID_ORDER_TYPES)}")
    if request.time_in_force not in VALID_TIME_IN_FORCE:
        return _rejected("INVALID_TIME_IN_FORCE", f"time_in_force must be one of {sorted(VALID_TIME_IN_FORCE)}")
    if not _is_positive_finite(request.quantity):
        return _rejected("INVALID_QUANTITY", "quantity must be positive finite number")

    price = request.price
    if request.order_type == "limit":
        if price is None:
            return _rejected("LIMIT_PRICE_REQUIRED", "price is required for limit order")
        if not _is_positive_finite(price):
            return _rejected("INVALID_PRICE", "price must be positive finite number")
    elif price is not None and not _is_positive_finite(price):
        return _rejected("INVALID_PRICE", "reference price must be positive finite number")

    if request.leverage is not None and not _is_positive_finite(request.leverage):
        return _rejected("INVALID_LEVERAGE", "leverage must be positive")

    prepared = replace(
        request,
        symbol=symbol,
        quantity=float(request.quantity),
        price=float(price) if price is not None else None,
    )
    return OrderPreparationResult(
        ok=True,
        reason_code="ORDER_PREPARED",
        failure_reason="-",
        request=prepared,
    )


def _call_place(gateway: OrderGatewayPort, request: OrderRequest) -> GatewayCallResult:
    try:
        result = gateway.place_order(request)
    except Exception as exc:
        return GatewayCallResult(ok=False, reason_code="GATEWAY_EXCEPTION", message=repr(exc))
    if not result.success:
        return GatewayCallResult(ok=False, reason_code="ORDER_REJECTED", message=result.message)
    if not result.order_id:
        return GatewayCallResult(ok=False, reason_code="ORDER_ID_MISSING", message=result.message)
    return GatewayCallResult(ok=True, reason_code="OK", order_id=str(result.order_id), message=result.message)


def _call_cancel(gateway: OrderGatewayPort, order_id: str) -> GatewayCallResult:
    try:
        cancelled = gateway.cancel_order(order_id)
    except Exception as exc:
        return GatewayCallResult(ok=False, reason_code="GATEWAY_EXCEPTION", order_id=order_id, message=repr(exc))
    if not cancelled:
        return GatewayCallResult(ok=False, reason_code="CANCEL_REJECTED", order_id=order_id)
    return GatewayCallResult(ok=True, reason_code="OK", order_id=order_id)


def _call_query(gateway: OrderGatewayPort, order_id: str) -> GatewayCallResult:
    try:
        status = gateway.get_order_status(order_id)
    except Exception as exc:
        return GatewayCallResult(ok=False, reason_code="GATEWAY_EXCEPTION", order_id=order_id, message=repr(exc))
    if status not in VALID_ORDER_STATUSES:
        return GatewayCallResult(
            ok=False,
            reason_code="INVALID_ORDER_STATUS",
            order_id=order_id,
            message=_normalize(status),
        )
    return GatewayCallResult(ok=True, reason_code="OK", order_id=order_id, order_status=status)


def _failed_retry_result(
    operation: OrderOperation,
    reason_code: str,
    failure_reason: str,
) -> GatewayRetryResult:
    final = GatewayCallResult(
        ok=False,
        reason_code=reason_code,
        message=failure_reason,
    )
    return GatewayRetryResult(
        operation=operation,
        success=False,
        attempts=0,
        reason_code=reason_code,
        last_result=final,
        history=[],
    )


def execute_gateway_with_retry(
    operation: OrderOperation,
    *,
    call: Callable[[], GatewayCallResult],
    retry_policy: Optional[RetryPolicy] = None,
) -> GatewayRetryResult:
    policy = retry_policy if retry_policy is not None else RetryPolicy()
    max_attempts = max(1, int(policy.max_attempts))
    retryable = set(policy.retryable_reason_codes)
    history: list[GatewayCallResult] = []

    for attempt_index in range(max_attempts):
        result = call()
        history.append(result)
        if result.ok:
            return GatewayRetryResult(
                operation=operation,
                success=True,
                attempts=attempt_index + 1,
                reason_code="SUCCESS",
                last_result=result,
                history=history,
            )
        if result.reason_code not in retryable:
            return GatewayRetryResult(
                operation=operation,
                success=False,
                attempts=attempt_index + 1,
                reason_code=result.reason_code,
                last_result=result,
                history=history,
            )

    last_result = history[-1]
    return GatewayRetryResult(
        operation=operation,
        success=False,
        attempts=max_attempts,
        reason_code=last_result.reason_code,
        last_result=last_result,
        history=history,
    )


def place_order_with_retry(
    gateway: OrderGatewayPort,
    request: OrderRequest,
    *,
    retry_policy: Optional[RetryPolicy] = None,
) -> GatewayRetryResult:
    prepared = prepare_order(request)
    if not prepared.ok or prepared.request is None:
        return _failed_retry_result("CREATE", prepared.reason_code, prepared.failure_reason)
    prepared_request = prepared.request
    return execute_gateway_with_retry(
        "CREATE",
        call=lambda: _call_place(gateway, prepared_request),
        retry_policy=retry_policy,
    )


def cancel_order_with_retry(
    gateway: OrderGatewayPort,
    order_id: Optional[str],
    *,
    retry_policy: Optional[RetryPolicy] = None,
) -> GatewayRetryResult:
    if not (order_id or "").strip():
        return _failed_retry_result("CANCEL", "ORDER_IDENTIFIER_REQUIRED", "order_id is required")
    normalized_id = str(order_id).strip()
    return execute_gateway_with_retry(
        "CANCEL",
        call=lambda: _call_cancel(gateway, normalized_id),
        retry_policy=retry_policy,
    )


def query_order_with_retry(
    gateway: OrderGatewayPort,
    order_id: Optional[str],
    *,
    retry_policy: Optional[RetryPolicy] = None,
) -> GatewayRetryResult:
    if not (order_id or "").strip():
        return _failed_retry_result("QUERY", "ORDER_IDENTIFIER_REQUIRED", "order_id is required")
    normalized_id = str(order_id).strip()
    return execute_gateway_with_retry(
        "QUERY",
        call=lambda: _call_query(gateway, normalized_id),
        retry_policy=retry_policy,
    )


def place_order_with_retry_with_logging(
    gateway: OrderGatewayPort,
    request: OrderRequest,
    *,
    retry_policy: Optional[RetryPolicy] = None,
    loop_label: str = "loop",
) -> GatewayRetryResult:
    result = place_order_with_retry(gateway, request, retry_policy=retry_policy)
    log_structured_event(
        StructuredLogEvent(
            component="order_gateway",
            event="place_order_with_retry",
            input_data=(
                f"symbol={_normalize(request.symbol)} side={request.side} type={request.order_type} "
                f"quantity={request.quantity} price={request.price if request.price is not None else '-'} "
                f"tif={request.time_in_force} reduce_only={request.reduce_only}"
            ),
            decision="prepare_request_and_execute_retry_policy",
            result="success" if result.success else "failed",
            state_before="order_create_pending",
            state_after="order_create_done",
            failure_reason=result.reason_code if not result.success else "-",
        ),
        loop_label=loop_label,
        attempts=result.attempts,
        reason_code=result.reason_code,
        order_id=result.order_id or "-",
        gateway_message=result.last_result.message or "-",
    )
    return result


def cancel_order_with_retry_with_logging(
    gateway: OrderGatewayPort,
    order_id: Optional[str],
    *,
    retry_policy: Optional[RetryPolicy] = None,
    loop_label: str = "loop",
) -> GatewayRetryResult:
    result = cancel_order_with_retry(gateway, order_id, retry_policy=retry_policy)
    log_structured_event(
        StructuredLogEvent(
            component="order_gateway",
            event="cancel_order_with_retry",
            input_data=f"order_id={_normalize(order_id)}",
            decision="execute_cancel_with_retry_policy",
            result="success" if result.success else "failed",
            state_before="order_cancel_pending",
            state_after="order_cancel_done",
            failure_reason=result.reason_code if not result.success else "-",
        ),
        loop_label=loop_label,
        attempts=result.attempts,
        reason_code=result.reason_code,
    )
    return result


def query_order_with_retry_with_logging(
    gateway: OrderGatewayPort,
    order_id: Optional[str],
    *,
    retry_policy: Optional[RetryPolicy] = None,
    loop_label: str = "loop",
) -> GatewayRetryResult:
    result = query_order_with_retry(gateway, order_id, retry_policy=retry_policy)
    log_structured_event(
        StructuredLogEvent(
            component="order_gateway",
            event="query_order_with_retry",
            input_data=f"order_id={_normalize(order_id)}",
            decision="execute_query_with_retry_policy",
            result=result.order_status or "failed",
            state_before="order_query_pending",
            state_after="order_query_done",
            failure_reason=result.reason_code if not result.success else "-",
        ),
        loop_label=loop_label,
        attempts=result.attempts,
        reason_code=result.reason_code,
    )
    return result
