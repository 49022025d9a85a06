"""
风控层模块

Deribit Delta 期权执行服务

包含:
- ProgressiveLimitExecutor: 渐进式限价执行器
- PositionAdjuster: 移仓 / 平仓
- PositionPoller: 仓位轮询
"""

from .progressive_limit_executor import (
    ProgressiveLimitExecutor,
    ExecutionOutcome,
    TokenProvider,
    calculate_progressive_price,
)

from .position_adjuster import (
    PositionAdjuster,
    CloseResult,
    AdjustmentResult,
    BatchResult,
)

from .position_poller import (
    PositionPoller,
    PollSummary,
    should_adjust,
)

__all__ = [
    'ProgressiveLimitExecutor',
    'ExecutionOutcome',
    'TokenProvider',
    'calculate_progressive_price',
    'PositionAdjuster',
    'CloseResult',
    'AdjustmentResult',
    'BatchResult',
    'PositionPoller',
    'PollSummary',
    'should_adjust',
]
