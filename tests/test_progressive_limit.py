"""
渐进式限价执行器测试

Deribit Delta 期权执行服务

测试用例:
- 逐步改价后成交
- 步数用完后穿越价差（最多 max_step 次改价 + 1 次穿越）
- 订单已成交时提前结束
- 交叉盘口 / 单边盘口时跳过该步
- 最终状态读取失败
"""

from unittest.mock import AsyncMock

import pytest

from core.config import ExecutionConfig
from core.errors import TransportError
from execution.fake_exchange import FakeExchange, StaticTokenProvider
from execution.models import Instrument, Quote
from risk.progressive_limit_executor import ProgressiveLimitExecutor, calculate_progressive_price

INSTRUMENT_NAME = "BTC-27DEC30-60000-C"


@pytest.fixture
def instrument():
    return Instrument(
        instrument_name=INSTRUMENT_NAME,
        option_type="call",
        tick_size=0.0001,
        min_trade_amount=0.1,
        settlement_currency="BTC",
    )


@pytest.fixture
def exchange(instrument):
    ex = FakeExchange()
    ex.add_instrument(instrument, Quote(instrument_name=INSTRUMENT_NAME, best_bid_price=0.0100, best_ask_price=0.0120))
    return ex


@pytest.fixture
def tokens():
    return StaticTokenProvider()


@pytest.fixture
def executor(exchange, tokens):
    return ProgressiveLimitExecutor(exchange, tokens, ExecutionConfig(step_timeout_ms=0, max_step=3))


async def place(exchange, direction="buy", price=0.0104, amount=1.0):
    return await exchange.place_order("token", INSTRUMENT_NAME, direction, amount, "limit", price)


class TestProgressivePrice:
    """线性插值"""

    def test_buy_moves_towards_ask(self):
        assert calculate_progressive_price("buy", 1.0, 0.5, 2.0, 1, 4) == pytest.approx(1.25)
        assert calculate_progressive_price("buy", 1.0, 0.5, 2.0, 4, 4) == pytest.approx(2.0)

    def test_sell_moves_towards_bid(self):
        assert calculate_progressive_price("sell", 2.0, 1.0, 3.0, 2, 4) == pytest.approx(1.5)


class TestProgressiveLimitExecutor:
    """执行状态机"""

    @pytest.mark.asyncio
    async def test_fills_on_last_step(self, exchange, executor, instrument):
        order = await place(exchange)

        outcome = await executor.execute(order.order_id, instrument, "buy", 1.0, 0.0104, "acc1")

        assert outcome.success
        assert outcome.phase == "DONE"
        assert outcome.is_filled
        assert outcome.executed_quantity == 1.0
        assert outcome.average_price == 0.0120
        assert [e.price for e in exchange.edit_calls] == [0.0109, 0.0115, 0.0120]
        assert outcome.stats.total_steps == 3
        assert len(outcome.stats.price_movements) == 3

    @pytest.mark.asyncio
    async def test_crosses_spread_after_max_steps(self, exchange, executor, instrument):
        exchange.auto_match = False
        order = await place(exchange)

        outcome = await executor.execute(order.order_id, instrument, "buy", 1.0, 0.0104, "acc1")

        assert outcome.success
        assert outcome.phase == "DONE"
        assert outcome.final_order_state == "open"
        assert outcome.executed_quantity == 0.0
        # 3 次逐步改价 + 1 次穿越
        assert outcome.edit_count == 4
        assert len(exchange.edit_calls) == 4
        assert exchange.edit_calls[-1].price == 0.0120
        assert all(e.amount == 1.0 for e in exchange.edit_calls)

    @pytest.mark.asyncio
    async def test_zero_max_step_crosses_immediately(self, exchange, executor, instrument):
        exchange.auto_match = False
        order = await place(exchange)

        outcome = await executor.execute(order.order_id, instrument, "buy", 1.0, 0.0104, "acc1", max_step=0)

        assert outcome.phase == "DONE"
        assert outcome.edit_count == 1
        assert [e.price for e in exchange.edit_calls] == [0.0120]

    @pytest.mark.asyncio
    async def test_explicit_max_step_overrides_config(self, exchange, executor, instrument):
        exchange.auto_match = False
        order = await place(exchange)

        outcome = await executor.execute(order.order_id, instrument, "buy", 1.0, 0.0104, "acc1", max_step=1)

        # 1 次逐步改价 + 1 次穿越
        assert outcome.edit_count == 2
        assert exchange.edit_calls[-1].price == 0.0120

    @pytest.mark.asyncio
    async def test_sell_crosses_to_bid(self, exchange, executor, instrument):
        exchange.auto_match = False
        order = await place(exchange, direction="sell", price=0.0116)

        await executor.execute(order.order_id, instrument, "sell", 1.0, 0.0116, "acc1")

        prices = [e.price for e in exchange.edit_calls]
        assert prices == sorted(prices, reverse=True)
        assert prices[-1] == 0.0100

    @pytest.mark.asyncio
    async def test_stops_when_order_already_filled(self, exchange, executor, instrument):
        order = await place(exchange)
        exchange.set_order_state(order.order_id, "filled", filled_amount=1.0)

        outcome = await executor.execute(order.order_id, instrument, "buy", 1.0, 0.0104, "acc1")

        assert outcome.phase == "DONE"
        assert outcome.is_filled
        assert outcome.edit_count == 0
        assert exchange.edit_calls == []

    @pytest.mark.asyncio
    async def test_stops_when_order_cancelled(self, exchange, executor, instrument):
        order = await place(exchange)
        exchange.set_order_state(order.order_id, "cancelled")

        outcome = await executor.execute(order.order_id, instrument, "buy", 1.0, 0.0104, "acc1")

        assert outcome.success
        assert outcome.final_order_state == "cancelled"
        assert exchange.edit_calls == []

    @pytest.mark.asyncio
    async def test_crossed_book_skips_steps(self, exchange, executor, instrument):
        order = await place(exchange)
        exchange.set_quote(INSTRUMENT_NAME, 0.0130, 0.0120)

        outcome = await executor.execute(order.order_id, instrument, "buy", 1.0, 0.0104, "acc1")

        assert outcome.success
        assert outcome.phase == "DONE"
        assert outcome.final_order_state == "open"
        assert exchange.edit_calls == []

    @pytest.mark.asyncio
    async def test_one_sided_book_skips_steps(self, exchange, executor, instrument):
        order = await place(exchange)
        exchange.set_quote(INSTRUMENT_NAME, 0.0, 0.0120)

        outcome = await executor.execute(order.order_id, instrument, "buy", 1.0, 0.0104, "acc1")

        assert outcome.edit_count == 0

    @pytest.mark.asyncio
    async def test_refreshes_token_every_step(self, exchange, tokens, executor, instrument):
        exchange.auto_match = False
        order = await place(exchange)

        await executor.execute(order.order_id, instrument, "buy", 1.0, 0.0104, "acc1")

        # 3 步 + 穿越 + 最终读取
        assert tokens.calls >= 5

    @pytest.mark.asyncio
    async def test_final_state_unavailable(self, exchange, executor, instrument):
        order = await place(exchange)
        exchange.get_order_state = AsyncMock(side_effect=TransportError("connection reset"))

        outcome = await executor.execute(order.order_id, instrument, "buy", 1.0, 0.0104, "acc1")

        assert not outcome.success
        assert outcome.phase == "FAILED"
        assert "final order state" in outcome.message

    @pytest.mark.asyncio
    async def test_snapshot_includes_position(self, exchange, executor, instrument):
        order = await place(exchange)

        outcome = await executor.execute(order.order_id, instrument, "buy", 1.0, 0.0104, "acc1")

        assert outcome.snapshot.account_name == "acc1"
        assert outcome.snapshot.currency == "BTC"
        assert [p.instrument_name for p in outcome.snapshot.positions] == [INSTRUMENT_NAME]
        assert outcome.snapshot.related_orders == []
