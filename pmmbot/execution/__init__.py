"""
Order execution: resting-order map, lifecycle gateway, fill handling and polling.
"""

from pmmbot.execution.execution_gateway import (
    CancelAllResult,
    CancelResult,
    ExecutionGateway,
    ExecutionGatewayConfig,
    ModifyOutcome,
    ModifyResult,
    PlaceResult,
    ReconcileResult,
)
from pmmbot.execution.fill_processor import FillOutcome, FillProcessor, FillResult
from pmmbot.execution.order_manager import OrderManager
from pmmbot.execution.order_poller import OrderPollerConfig, OrderUpdatePoller, PollResult

__all__ = [
    "CancelAllResult",
    "CancelResult",
    "ExecutionGateway",
    "ExecutionGatewayConfig",
    "ModifyOutcome",
    "ModifyResult",
    "PlaceResult",
    "ReconcileResult",
    "FillOutcome",
    "FillProcessor",
    "FillResult",
    "OrderManager",
    "OrderPollerConfig",
    "OrderUpdatePoller",
    "PollResult",
]
