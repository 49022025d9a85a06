"""
执行层模块

Deribit Delta 期权执行服务

包含:
- ExchangeClient: 交易所接口（DeribitClient / FakeExchange）
- DeltaOptionSelector: 按目标 delta 选择合约
- OrderManager: 下单编排
- PriceUtils: 价格 / 数量对齐（tick size、最小交易单位）
"""

from .models import (
    Instrument,
    Quote,
    OrderState,
    Position,
    TickSizeStep,
    parse_instrument_name,
)
from .exchange import ExchangeClient
from .deribit_client import DeribitClient
from .fake_exchange import FakeExchange, StaticTokenProvider
from .option_selector import DeltaOptionSelector, OptionCandidate
from .order_manager import OrderManager, OrderParams, OrderResult
from .price_utils import (
    get_tick_size,
    correct_price,
    correct_amount,
    correct_order_parameters,
    calculate_smart_price,
    correct_smart_price,
    calculate_spread_ratio,
    calculate_mid_price,
    format_spread_ratio,
)

__all__ = [
    'Instrument',
    'Quote',
    'OrderState',
    'Position',
    'TickSizeStep',
    'parse_instrument_name',
    'ExchangeClient',
    'DeribitClient',
    'FakeExchange',
    'StaticTokenProvider',
    'DeltaOptionSelector',
    'OptionCandidate',
    'OrderManager',
    'OrderParams',
    'OrderResult',
    # Price Utils
    'get_tick_size',
    'correct_price',
    'correct_amount',
    'correct_order_parameters',
    'calculate_smart_price',
    'correct_smart_price',
    'calculate_spread_ratio',
    'calculate_mid_price',
    'format_spread_ratio',
]
