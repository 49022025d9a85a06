"""
价格工具模块 - Deribit Tick Size / 最小下单量对齐与价差计算

Deribit Delta 期权执行服务

Deribit Tick Size 规则:
- 合约声明基础 tick_size
- tick_size_steps 给出分级规则: 价格 >= above_price 时使用对应 tick_size
- 取不超过价格的最大阈值对应的 tick

限价单价格必须是 tick 的整数倍，数量必须是 min_trade_amount 的整数倍，
否则会被交易所拒绝。tick 常为 0.0005 之类的非二进制小数，计算全部使用 Decimal。
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP, ROUND_UP
from typing import Literal, NamedTuple, Optional

from .models import Instrument

# 价差门限默认值
DEFAULT_SPREAD_RATIO_THRESHOLD = 0.15
DEFAULT_SPREAD_TICK_THRESHOLD = 2
DEFAULT_SMART_PRICE_RATIO = 0.2


class CorrectedPrice(NamedTuple):
    price: float
    tick_size: float


class CorrectedAmount(NamedTuple):
    amount: float
    min_unit: float


class CorrectedOrder(NamedTuple):
    price: float
    amount: float
    tick_size: float
    min_unit: float


# ============================================================================
# 数量 / 价格对齐
# ============================================================================

def _quantize_to_step(value: float, step: float, rounding: str) -> float:
    d_value = Decimal(str(value))
    d_step = Decimal(str(step))
    aligned = (d_value / d_step).quantize(Decimal('1'), rounding=rounding) * d_step
    return float(aligned)


def get_tick_size(price: float, instrument: Instrument) -> float:
    """
    获取给定价格适用的 tick size

    Args:
        price: 原始价格
        instrument: 合约元数据

    Returns:
        不超过价格的最大阈值所对应的 tick；没有匹配阈值时返回基础 tick
    """
    tick_size = instrument.tick_size
    best_threshold: Optional[float] = None

    for step in instrument.tick_size_steps:
        if step.above_price <= price and (best_threshold is None or step.above_price > best_threshold):
            best_threshold = step.above_price
            tick_size = step.tick_size

    return tick_size


def correct_price(price: float, instrument: Instrument) -> CorrectedPrice:
    """
    将价格四舍五入到有效 tick

    Examples:
        >>> inst = Instrument("BTC-X", tick_size=0.0001)
        >>> correct_price(0.01234, inst)
        CorrectedPrice(price=0.0123, tick_size=0.0001)
    """
    tick_size = get_tick_size(price, instrument)
    if price <= 0:
        return CorrectedPrice(0.0, tick_size)
    return CorrectedPrice(_quantize_to_step(price, tick_size, ROUND_HALF_UP), tick_size)


def correct_amount(
    amount: float,
    instrument: Instrument,
    rounding: Literal["half_up", "up"] = "half_up"
) -> CorrectedAmount:
    """
    将数量对齐到最小交易单位

    Args:
        amount: 原始数量
        instrument: 合约元数据
        rounding: "half_up" 四舍五入；"up" 向上取整（平仓/减仓使用，保证不欠平）
    """
    min_unit = instrument.min_trade_amount
    if amount <= 0:
        return CorrectedAmount(0.0, min_unit)
    mode = ROUND_UP if rounding == "up" else ROUND_HALF_UP
    return CorrectedAmount(_quantize_to_step(amount, min_unit, mode), min_unit)


def correct_order_parameters(
    price: float,
    amount: float,
    instrument: Instrument,
    amount_rounding: Literal["half_up", "up"] = "half_up"
) -> CorrectedOrder:
    """同时修正价格和数量"""
    corrected_price = correct_price(price, instrument)
    corrected_amount = correct_amount(amount, instrument, amount_rounding)
    return CorrectedOrder(
        price=corrected_price.price,
        amount=corrected_amount.amount,
        tick_size=corrected_price.tick_size,
        min_unit=corrected_amount.min_unit,
    )


def calculate_smart_price(
    bid: float,
    ask: float,
    direction: Literal["buy", "sell"],
    ratio: float = DEFAULT_SMART_PRICE_RATIO
) -> float:
    """
    计算智能挂单价: 从被动侧向对手侧偏移 spread * ratio

    买入: bid + spread * ratio
    卖出: ask - spread * ratio
    """
    spread = ask - bid
    if direction == "buy":
        return bid + spread * ratio
    return ask - spread * ratio


def correct_smart_price(
    bid: float,
    ask: float,
    direction: Literal["buy", "sell"],
    instrument: Instrument,
    ratio: float = DEFAULT_SMART_PRICE_RATIO
) -> float:
    """计算智能挂单价并对齐 tick"""
    return correct_price(calculate_smart_price(bid, ask, direction, ratio), instrument).price


# ============================================================================
# 价差计算
# ============================================================================

def _valid_book(bid: Optional[float], ask: Optional[float]) -> bool:
    return bool(bid) and bool(ask) and bid > 0 and ask > 0 and bid <= ask


def calculate_spread_ratio(bid: Optional[float], ask: Optional[float]) -> float:
    """
    标准化价差 (ask - bid) / (ask + bid)

    任一侧缺失、非正或买价高于卖价时返回 1.0
    """
    if not _valid_book(bid, ask):
        return 1.0
    return (ask - bid) / (ask + bid)


def calculate_spread(bid: Optional[float], ask: Optional[float]) -> float:
    """绝对价差"""
    if not bid or not ask or bid <= 0 or ask <= 0:
        return 0.0
    return max(0.0, ask - bid)


def calculate_mid_price(bid: Optional[float], ask: Optional[float]) -> float:
    if not bid or not ask or bid <= 0 or ask <= 0:
        return 0.0
    return (bid + ask) / 2


def calculate_spread_tick_multiple(bid: Optional[float], ask: Optional[float], tick_size: float) -> float:
    """价差相当于多少个 tick；报价无效时返回 inf"""
    if not _valid_book(bid, ask) or tick_size <= 0:
        return math.inf
    return (ask - bid) / tick_size


def is_spread_too_wide(
    bid: Optional[float],
    ask: Optional[float],
    threshold: float = DEFAULT_SPREAD_RATIO_THRESHOLD
) -> bool:
    return calculate_spread_ratio(bid, ask) > threshold


def is_spread_too_wide_by_ticks(
    bid: Optional[float],
    ask: Optional[float],
    tick_size: float,
    threshold: int = DEFAULT_SPREAD_TICK_THRESHOLD
) -> bool:
    return calculate_spread_tick_multiple(bid, ask, tick_size) > threshold


def is_spread_reasonable(
    bid: Optional[float],
    ask: Optional[float],
    tick_size: float,
    ratio_threshold: float = DEFAULT_SPREAD_RATIO_THRESHOLD,
    tick_threshold: int = DEFAULT_SPREAD_TICK_THRESHOLD
) -> bool:
    """比率或 tick 倍数任一满足即认为价差合理（低价期权一个 tick 的比率就可能很大）"""
    ratio_ok = not is_spread_too_wide(bid, ask, ratio_threshold)
    tick_ok = not is_spread_too_wide_by_ticks(bid, ask, tick_size, tick_threshold)
    return ratio_ok or tick_ok


def describe_spread_quality(bid: Optional[float], ask: Optional[float]) -> str:
    ratio = calculate_spread_ratio(bid, ask)
    if ratio <= 0.01:
        return "excellent (<=1%)"
    if ratio <= 0.05:
        return "good (<=5%)"
    if ratio <= 0.15:
        return "fair (<=15%)"
    if ratio <= 0.30:
        return "poor (<=30%)"
    return "very poor (>30%)"


def format_spread_ratio(ratio: float, decimals: int = 2) -> str:
    return f"{ratio * 100:.{decimals}f}%"


@dataclass
class SpreadInfo:
    """盘口价差汇总"""
    bid: float
    ask: float
    spread: float
    spread_ratio: float
    mid_price: float
    quality: str
    tick_size: Optional[float] = None
    tick_multiple: Optional[float] = None
    reasonable_by_ratio: Optional[bool] = None
    reasonable_by_ticks: Optional[bool] = None
    reasonable: Optional[bool] = None

    @property
    def formatted_ratio(self) -> str:
        return format_spread_ratio(self.spread_ratio)


def get_spread_info(
    bid: float,
    ask: float,
    tick_size: Optional[float] = None,
    ratio_threshold: float = DEFAULT_SPREAD_RATIO_THRESHOLD,
    tick_threshold: int = DEFAULT_SPREAD_TICK_THRESHOLD
) -> SpreadInfo:
    info = SpreadInfo(
        bid=bid,
        ask=ask,
        spread=calculate_spread(bid, ask),
        spread_ratio=calculate_spread_ratio(bid, ask),
        mid_price=calculate_mid_price(bid, ask),
        quality=describe_spread_quality(bid, ask),
    )

    if tick_size is not None and tick_size > 0:
        info.tick_size = tick_size
        info.tick_multiple = calculate_spread_tick_multiple(bid, ask, tick_size)
        info.reasonable_by_ratio = not is_spread_too_wide(bid, ask, ratio_threshold)
        info.reasonable_by_ticks = not is_spread_too_wide_by_ticks(bid, ask, tick_size, tick_threshold)
        info.reasonable = info.reasonable_by_ratio or info.reasonable_by_ticks

    return info
