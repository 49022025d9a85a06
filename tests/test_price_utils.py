"""
价格工具测试

Deribit Delta 期权执行服务

测试用例:
- 分级 tick size 选择
- 价格 / 数量对齐（Decimal 精度、幂等）
- 价差比率与智能挂单价
"""

import pytest

from execution.models import Instrument, TickSizeStep
from execution.price_utils import (
    calculate_mid_price,
    calculate_smart_price,
    calculate_spread_ratio,
    correct_amount,
    correct_order_parameters,
    correct_price,
    correct_smart_price,
    format_spread_ratio,
    get_spread_info,
    get_tick_size,
    is_spread_reasonable,
)


@pytest.fixture
def tiered_instrument():
    """带分级 tick 的合约"""
    return Instrument(
        instrument_name="BTC-27DEC30-60000-C",
        tick_size=0.0001,
        tick_size_steps=(
            TickSizeStep(above_price=100, tick_size=0.0005),
            TickSizeStep(above_price=1000, tick_size=0.001),
        ),
        min_trade_amount=0.1,
    )


@pytest.fixture
def instrument():
    return Instrument(instrument_name="BTC-27DEC30-60000-C", tick_size=0.0001, min_trade_amount=0.1)


class TestTickSize:
    """分级 tick size"""

    def test_below_all_thresholds_uses_base_tick(self, tiered_instrument):
        assert get_tick_size(50, tiered_instrument) == 0.0001

    def test_middle_tier(self, tiered_instrument):
        assert get_tick_size(500, tiered_instrument) == 0.0005

    def test_highest_tier(self, tiered_instrument):
        assert get_tick_size(1500, tiered_instrument) == 0.001

    def test_threshold_is_inclusive(self, tiered_instrument):
        assert get_tick_size(100, tiered_instrument) == 0.0005
        assert get_tick_size(1000, tiered_instrument) == 0.001

    def test_unordered_steps(self):
        inst = Instrument(
            instrument_name="BTC-X-1-C",
            tick_size=0.0001,
            tick_size_steps=(
                TickSizeStep(above_price=1000, tick_size=0.001),
                TickSizeStep(above_price=100, tick_size=0.0005),
            ),
        )
        assert get_tick_size(1500, inst) == 0.001
        assert get_tick_size(500, inst) == 0.0005


class TestCorrectPrice:
    """价格对齐"""

    def test_rounds_half_up_to_tick(self, instrument):
        assert correct_price(0.01234, instrument).price == 0.0123
        assert correct_price(0.01235, instrument).price == 0.0124

    def test_returns_applied_tick(self, tiered_instrument):
        corrected = correct_price(150.1234, tiered_instrument)
        assert corrected.tick_size == 0.0005
        assert corrected.price == 150.1235

    def test_non_binary_tick_has_no_float_residue(self, tiered_instrument):
        # 0.0005 的整数倍不能有浮点尾数
        corrected = correct_price(123.4567, tiered_instrument)
        assert corrected.price == 123.4565
        assert str(corrected.price) == "123.4565"

    @pytest.mark.parametrize("price", [0.01234, 0.0529, 0.5, 123.4567, 1500.0004])
    def test_idempotent(self, tiered_instrument, price):
        once = correct_price(price, tiered_instrument).price
        assert correct_price(once, tiered_instrument).price == once

    def test_non_positive_price(self, instrument):
        assert correct_price(0, instrument).price == 0.0
        assert correct_price(-1, instrument).price == 0.0


class TestCorrectAmount:
    """数量对齐"""

    def test_half_up(self, instrument):
        assert correct_amount(0.25, instrument).amount == 0.3
        assert correct_amount(0.24, instrument).amount == 0.2

    def test_round_up(self, instrument):
        assert correct_amount(0.21, instrument, rounding="up").amount == 0.3
        assert correct_amount(0.2, instrument, rounding="up").amount == 0.2

    @pytest.mark.parametrize("rounding", ["half_up", "up"])
    @pytest.mark.parametrize("min_unit", [0.1, 0.01, 1.0])
    @pytest.mark.parametrize("amount", [0.07, 0.15, 0.333, 1.005, 2.7, 12.3456])
    def test_amount_idempotent(self, rounding, min_unit, amount):
        inst = Instrument(instrument_name="BTC-27DEC30-60000-C", tick_size=0.0001, min_trade_amount=min_unit)
        once = correct_amount(amount, inst, rounding=rounding).amount
        assert correct_amount(once, inst, rounding=rounding).amount == once

    def test_below_half_unit_rounds_to_zero(self, instrument):
        assert correct_amount(0.04, instrument).amount == 0.0

    def test_non_positive(self, instrument):
        corrected = correct_amount(-5, instrument)
        assert corrected.amount == 0.0
        assert corrected.min_unit == 0.1

    def test_correct_order_parameters(self, tiered_instrument):
        corrected = correct_order_parameters(150.1234, 1.26, tiered_instrument)
        assert corrected.price == 150.1235
        assert corrected.amount == 1.3
        assert corrected.tick_size == 0.0005
        assert corrected.min_unit == 0.1


class TestSpread:
    """价差计算"""

    def test_spread_ratio(self):
        assert calculate_spread_ratio(0.009, 0.011) == pytest.approx(0.1)

    @pytest.mark.parametrize("bid,ask", [(0, 0.01), (0.01, 0), (None, 0.01), (0.02, 0.01), (-1, 0.01)])
    def test_invalid_book_is_maximally_wide(self, bid, ask):
        assert calculate_spread_ratio(bid, ask) == 1.0

    def test_mid_price(self):
        assert calculate_mid_price(0.01, 0.02) == pytest.approx(0.015)
        assert calculate_mid_price(0, 0.02) == 0.0

    def test_smart_price(self):
        assert calculate_smart_price(0.01, 0.02, "buy", 0.2) == pytest.approx(0.012)
        assert calculate_smart_price(0.01, 0.02, "sell", 0.2) == pytest.approx(0.018)

    def test_correct_smart_price(self, instrument):
        assert correct_smart_price(0.0100, 0.0104, "buy", instrument, 0.2) == 0.0101
        assert correct_smart_price(0.0100, 0.0104, "sell", instrument, 0.2) == 0.0103

    def test_one_tick_spread_is_reasonable_for_cheap_options(self):
        # 比率 20% 但只有一个 tick
        assert calculate_spread_ratio(0.0002, 0.0003) > 0.15
        assert is_spread_reasonable(0.0002, 0.0003, tick_size=0.0001)

    def test_spread_info(self):
        info = get_spread_info(0.009, 0.011, tick_size=0.0001)
        assert info.formatted_ratio == "10.00%"
        assert info.reasonable_by_ratio is True
        assert info.reasonable_by_ticks is False
        assert info.reasonable is True

    def test_format_spread_ratio(self):
        assert format_spread_ratio(0.15) == "15.00%"
