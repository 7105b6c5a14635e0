from .basket_manager import BasketOrderManager, price_watch_key
from .basket_models import (
    TERMINAL_BASKET_STATUSES,
    TIMEFRAME_SECONDS,
    VALID_BASKET_STATUSES,
    ActiveOrders,
    BasketConfig,
    BasketOrder,
    EntryOrderSpec,
    ExecutionLogEntry,
    LimitChaserConfig,
    StopLossConfig,
    TakeProfitLevel,
)
from .basket_registry import BasketRegistry, config_of, merge_basket_patch, validate_basket_config
from .chaser import (
    compute_basket_chase_price,
    compute_basket_chase_price_with_logging,
    compute_chase_distance,
    compute_entry_price,
    compute_entry_quantity,
    plan_entry_order,
    plan_entry_order_with_logging,
    resolve_time_in_force,
    should_reprice,
)
from .chaser_models import ChasePricingResult, EntryOrderPlan, RepriceDecision
from .config import EngineSettings, load_engine_settings
from .engine import ConditionalOrderEngine, build_engine
from .entry_models import (
    TERMINAL_ENTRY_STATUSES,
    VALID_ENTRY_STATUSES,
    EntryPositionOrder,
    EntryPositionParams,
    EntryStats,
)
from .entry_position import (
    EntryPositionManager,
    entry_chase_key,
    entry_expiry_key,
    merge_entry_params,
    validate_entry_params,
)
from .event_logging import StructuredLogEvent, format_log_event, log_structured_event
from .events import EventBus, WebhookEventSink, event_to_payload
from .limit_chaser import LimitChaser, chaser_key, ioc_check_key, remaining_quantity
from .logging_utils import configure_log_rotation, write_engine_log_line
from .market_data import HyperliquidMarketData, normalize_coin, parse_candle
from .order_gateway import (
    cancel_order_with_retry,
    cancel_order_with_retry_with_logging,
    execute_gateway_with_retry,
    place_order_with_retry,
    place_order_with_retry_with_logging,
    prepare_order,
    query_order_with_retry,
    query_order_with_retry_with_logging,
)
from .order_gateway_models import GatewayCallResult, GatewayRetryResult, OrderPreparationResult, RetryPolicy
from .persistence import (
    JsonFilePersistence,
    MemoryPersistence,
    basket_from_dict,
    basket_to_dict,
    entry_from_dict,
    entry_to_dict,
)
from .port_models import (
    Candle,
    ExecutionEvent,
    OrderPlacementResult,
    OrderRequest,
    opposite_side,
)
from .ports import EventSink, MarketDataPort, OrderGatewayPort, PersistencePort
from .scheduler import EntityGuard, ManualScheduler, TaskScheduler
from .sim_exchange import SimulatedMarketData, SimulatedOrderGateway
from .state_machine import apply_basket_status, apply_entry_status, apply_status_with_logging
from .state_machine_models import StatusTransitionResult
from .stop_loss_monitor import StopLossMonitor, candle_key, uses_candle_close
from .take_profit import TakeProfitDispatcher, take_profit_key
from .trigger_engine import (
    CandleCache,
    detect_closed_candle,
    detect_closed_candle_with_logging,
    evaluate_stop_loss,
    evaluate_stop_loss_with_logging,
    evaluate_take_profit,
    is_stop_loss_triggered,
    is_take_profit_reached,
)
from .trigger_models import CandleCloseDetection, TriggerEvaluation

__all__ = [
    "ActiveOrders",
    "BasketConfig",
    "BasketOrder",
    "BasketOrderManager",
    "BasketRegistry",
    "Candle",
    "CandleCache",
    "CandleCloseDetection",
    "ChasePricingResult",
    "ConditionalOrderEngine",
    "EngineSettings",
    "EntityGuard",
    "EntryOrderPlan",
    "EntryOrderSpec",
    "EntryPositionManager",
    "EntryPositionOrder",
    "EntryPositionParams",
    "EntryStats",
    "EventBus",
    "EventSink",
    "ExecutionEvent",
    "ExecutionLogEntry",
    "GatewayCallResult",
    "GatewayRetryResult",
    "HyperliquidMarketData",
    "JsonFilePersistence",
    "LimitChaser",
    "LimitChaserConfig",
    "ManualScheduler",
    "MarketDataPort",
    "MemoryPersistence",
    "OrderGatewayPort",
    "OrderPlacementResult",
    "OrderPreparationResult",
    "OrderRequest",
    "PersistencePort",
    "RepriceDecision",
    "RetryPolicy",
    "SimulatedMarketData",
    "SimulatedOrderGateway",
    "StatusTransitionResult",
    "StopLossConfig",
    "StopLossMonitor",
    "StructuredLogEvent",
    "TERMINAL_BASKET_STATUSES",
    "TERMINAL_ENTRY_STATUSES",
    "TIMEFRAME_SECONDS",
    "TakeProfitDispatcher",
    "TakeProfitLevel",
    "TaskScheduler",
    "TriggerEvaluation",
    "VALID_BASKET_STATUSES",
    "VALID_ENTRY_STATUSES",
    "WebhookEventSink",
    "apply_basket_status",
    "apply_entry_status",
    "apply_status_with_logging",
    "basket_from_dict",
    "basket_to_dict",
    "build_engine",
    "cancel_order_with_retry",
    "cancel_order_with_retry_with_logging",
    "candle_key",
    "chaser_key",
    "compute_basket_chase_price",
    "compute_basket_chase_price_with_logging",
    "compute_chase_distance",
    "compute_entry_price",
    "compute_entry_quantity",
    "config_of",
    "configure_log_rotation",
    "detect_closed_candle",
    "detect_closed_candle_with_logging",
    "entry_chase_key",
    "entry_expiry_key",
    "entry_from_dict",
    "entry_to_dict",
    "evaluate_stop_loss",
    "evaluate_stop_loss_with_logging",
    "evaluate_take_profit",
    "event_to_payload",
    "execute_gateway_with_retry",
    "format_log_event",
    "ioc_check_key",
    "is_stop_loss_triggered",
    "is_take_profit_reached",
    "load_engine_settings",
    "log_structured_event",
    "merge_basket_patch",
    "merge_entry_params",
    "normalize_coin",
    "opposite_side",
    "parse_candle",
    "place_order_with_retry",
    "place_order_with_retry_with_logging",
    "plan_entry_order",
    "plan_entry_order_with_logging",
    "prepare_order",
    "price_watch_key",
    "query_order_with_retry",
    "query_order_with_retry_with_logging",
    "remaining_quantity",
    "resolve_time_in_force",
    "should_reprice",
    "take_profit_key",
    "uses_candle_close",
    "validate_basket_config",
    "validate_entry_params",
    "write_engine_log_line",
]
