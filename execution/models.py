"""
交易所数据模型 - Deribit API 返回结构的显式类型

Deribit Delta 期权执行服务

所有模型均提供 from_api() 从原始 JSON 构造，必填字段缺失时抛出 KeyError，
由客户端统一转换为 TransportError。
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional, Tuple

OrderDirection = Literal["buy", "sell"]
OrderType = Literal["limit", "market"]

# 订单状态
ORDER_STATE_TEXT = {
    'open': '未成交',
    'filled': '已成交',
    'rejected': '已拒绝',
    'cancelled': '已取消',
    'untriggered': '未触发',
    'triggered': '已触发',
    'unknown': '未知状态',
}


def get_order_state_text(order_state: str) -> str:
    """订单状态中文描述"""
    return ORDER_STATE_TEXT.get(order_state, order_state)


def parse_instrument_name(instrument_name: str) -> Tuple[str, str]:
    """
    从合约名解析 (currency, underlying)

    BTC-31OCT25-3400-P        -> ("BTC", "BTC")
    BTC_USDC-24OCT25-100000-P -> ("USDC", "BTC")

    Raises:
        ValueError: 合约名格式不正确
    """
    parts = instrument_name.split('-')
    if len(parts) < 4 or not parts[0]:
        raise ValueError(f"Invalid option instrument name: {instrument_name}")

    prefix = parts[0].upper()
    if '_' in prefix:
        underlying, currency = prefix.split('_', 1)
        return currency, underlying
    return prefix, prefix


def _as_float(value: Any, default: float = 0.0) -> float:
    if value is None:
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


@dataclass(frozen=True)
class TickSizeStep:
    """分级 tick size: 价格 >= above_price 时使用 tick_size"""
    above_price: float
    tick_size: float


@dataclass(frozen=True)
class Instrument:
    """期权合约元数据"""
    instrument_name: str
    kind: str = "option"
    option_type: Optional[Literal["call", "put"]] = None
    strike: Optional[float] = None
    expiration_timestamp: Optional[int] = None  # 毫秒
    tick_size: float = 0.0001
    tick_size_steps: Tuple[TickSizeStep, ...] = ()
    min_trade_amount: float = 0.1
    contract_size: float = 1.0
    base_currency: str = ""
    quote_currency: str = ""
    settlement_currency: str = ""
    counter_currency: Optional[str] = None
    is_active: bool = True

    @property
    def underlying(self) -> str:
        """标的资产，如 BTC-31OCT25-3400-P / BTC_USDC-... 均返回 BTC"""
        return self.instrument_name.split('-')[0].split('_')[0]

    @property
    def is_call(self) -> bool:
        return self.option_type == "call"

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> 'Instrument':
        steps = tuple(
            TickSizeStep(above_price=float(s["above_price"]), tick_size=float(s["tick_size"]))
            for s in data.get("tick_size_steps") or []
        )
        strike = data.get("strike")
        return cls(
            instrument_name=data["instrument_name"],
            kind=data.get("kind", "option"),
            option_type=data.get("option_type"),
            strike=float(strike) if strike is not None else None,
            expiration_timestamp=data.get("expiration_timestamp"),
            tick_size=float(data["tick_size"]),
            tick_size_steps=steps,
            min_trade_amount=float(data["min_trade_amount"]),
            contract_size=_as_float(data.get("contract_size"), 1.0),
            base_currency=data.get("base_currency", ""),
            quote_currency=data.get("quote_currency", ""),
            settlement_currency=data.get("settlement_currency", ""),
            counter_currency=data.get("counter_currency"),
            is_active=bool(data.get("is_active", True)),
        )


@dataclass(frozen=True)
class Quote:
    """某一时刻的盘口与 greeks"""
    instrument_name: str
    best_bid_price: float = 0.0
    best_ask_price: float = 0.0
    best_bid_amount: float = 0.0
    best_ask_amount: float = 0.0
    mark_price: float = 0.0
    index_price: float = 0.0
    underlying_price: Optional[float] = None
    delta: Optional[float] = None
    mark_iv: Optional[float] = None
    timestamp: Optional[int] = None

    @property
    def mid_price(self) -> float:
        return (self.best_bid_price + self.best_ask_price) / 2

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> 'Quote':
        greeks = data.get("greeks") or {}
        delta = greeks.get("delta")
        underlying = data.get("underlying_price")
        mark_iv = data.get("mark_iv")
        return cls(
            instrument_name=data["instrument_name"],
            best_bid_price=_as_float(data.get("best_bid_price")),
            best_ask_price=_as_float(data.get("best_ask_price")),
            best_bid_amount=_as_float(data.get("best_bid_amount")),
            best_ask_amount=_as_float(data.get("best_ask_amount")),
            mark_price=_as_float(data.get("mark_price")),
            index_price=_as_float(data.get("index_price")),
            underlying_price=float(underlying) if underlying is not None else None,
            delta=float(delta) if delta is not None else None,
            mark_iv=float(mark_iv) if mark_iv is not None else None,
            timestamp=data.get("timestamp"),
        )


@dataclass
class OrderState:
    """订单状态快照"""
    order_id: str
    instrument_name: str
    direction: OrderDirection
    amount: float
    filled_amount: float = 0.0
    price: Optional[float] = None
    average_price: float = 0.0
    order_state: str = "open"
    order_type: str = "limit"
    label: str = ""
    creation_timestamp: Optional[int] = None
    last_update_timestamp: Optional[int] = None

    @property
    def is_open(self) -> bool:
        return self.order_state == "open"

    @property
    def is_filled(self) -> bool:
        return self.order_state == "filled"

    @property
    def state_text(self) -> str:
        return get_order_state_text(self.order_state)

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> 'OrderState':
        # buy/sell 返回 {"order": {...}, "trades": [...]}
        if "order" in data and isinstance(data["order"], dict):
            data = data["order"]
        price = data.get("price")
        return cls(
            order_id=str(data["order_id"]),
            instrument_name=data["instrument_name"],
            direction=data["direction"],
            amount=float(data["amount"]),
            filled_amount=_as_float(data.get("filled_amount")),
            # 市价单的 price 为 "market_price"
            price=price if isinstance(price, (int, float)) else None,
            average_price=_as_float(data.get("average_price")),
            order_state=data.get("order_state", "open"),
            order_type=data.get("order_type", "limit"),
            label=data.get("label") or "",
            creation_timestamp=data.get("creation_timestamp"),
            last_update_timestamp=data.get("last_update_timestamp"),
        )


@dataclass
class Position:
    """持仓"""
    instrument_name: str
    size: float
    direction: Literal["buy", "sell", "zero"]
    average_price: float = 0.0
    mark_price: float = 0.0
    index_price: float = 0.0
    unrealized_pnl: float = 0.0
    realized_pnl: float = 0.0
    total_profit_loss: float = 0.0
    maintenance_margin: float = 0.0
    initial_margin: float = 0.0
    delta: Optional[float] = None
    kind: str = "option"

    @property
    def unit_delta(self) -> Optional[float]:
        """单位持仓 delta"""
        if self.delta is None or self.size == 0:
            return None
        return self.delta / self.size

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> 'Position':
        delta = data.get("delta")
        return cls(
            instrument_name=data["instrument_name"],
            size=float(data["size"]),
            direction=data.get("direction", "zero"),
            average_price=_as_float(data.get("average_price")),
            mark_price=_as_float(data.get("mark_price")),
            index_price=_as_float(data.get("index_price")),
            unrealized_pnl=_as_float(data.get("floating_profit_loss", data.get("unrealized_pnl"))),
            realized_pnl=_as_float(data.get("realized_profit_loss", data.get("realized_pnl"))),
            total_profit_loss=_as_float(data.get("total_profit_loss")),
            maintenance_margin=_as_float(data.get("maintenance_margin")),
            initial_margin=_as_float(data.get("initial_margin")),
            delta=float(delta) if delta is not None else None,
            kind=data.get("kind", "option"),
        )


@dataclass
class PriceMovement:
    """渐进式策略中的一次改价"""
    step: int
    timestamp: float
    old_price: float
    new_price: float
    bid_price: float
    ask_price: float


@dataclass
class ExecutionStats:
    """执行统计"""
    order_id: str
    instrument_name: str
    direction: OrderDirection
    requested_quantity: float
    executed_quantity: float
    average_price: float
    initial_price: float
    final_price: Optional[float] = None
    total_steps: int = 0
    execution_time_ms: float = 0.0
    price_movements: List[PriceMovement] = field(default_factory=list)


@dataclass
class PositionSnapshot:
    """成交后该合约的订单/持仓汇总"""
    related_orders: List[OrderState] = field(default_factory=list)
    positions: List[Position] = field(default_factory=list)
    total_unrealized_pnl: float = 0.0
    total_realized_pnl: float = 0.0
    total_maintenance_margin: float = 0.0
    total_initial_margin: float = 0.0
    net_delta: float = 0.0
    currency: str = ""
    account_name: str = ""
    timestamp: float = 0.0
    warnings: List[str] = field(default_factory=list)
