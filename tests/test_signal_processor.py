"""
信号处理器测试

Deribit Delta 期权执行服务
"""

import time
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from pydantic import ValidationError

from core.config import AccountConfig, ExecutionConfig, SelectionConfig
from core.errors import TransportError
from core.signal_processor import SignalProcessor, TradeSignal
from core.state import ExposureStore, RecordType
from execution.fake_exchange import DAY_MS, FakeExchange, StaticTokenProvider
from execution.option_selector import DeltaOptionSelector
from execution.order_manager import OrderManager
from risk.position_adjuster import PositionAdjuster
from risk.progressive_limit_executor import ProgressiveLimitExecutor

NOW_MS = int(time.time() * 1000)


def find_instrument(exchange, option_type, strike, days=8):
    expiry = int(NOW_MS + days * DAY_MS)
    return next(
        i.instrument_name for i in exchange.instruments.values()
        if i.option_type == option_type and i.strike == strike and i.expiration_timestamp == expiry
    )


@pytest.fixture
def exchange():
    return FakeExchange.build_sample_market("BTC", now_ms=NOW_MS)


@pytest_asyncio.fixture
async def store():
    s = ExposureStore(":memory:")
    await s.initialize()
    yield s
    await s.close()


@pytest.fixture
def processor(exchange, store):
    config = ExecutionConfig(step_timeout_ms=0, max_step=3)
    tokens = StaticTokenProvider()
    executor = ProgressiveLimitExecutor(exchange, tokens, config)
    selector = DeltaOptionSelector(exchange, SelectionConfig())
    order_manager = OrderManager(exchange, tokens, executor, store, config)
    adjuster = PositionAdjuster(exchange, tokens, selector, order_manager, executor, store, config)
    accounts = [AccountConfig(name="acc1"), AccountConfig(name="off", enabled=False)]
    return SignalProcessor(accounts, selector, order_manager, adjuster, SelectionConfig())


def make_signal(**kwargs):
    payload = dict(account_name="acc1", side="buy", symbol="BTCUSDT", size=1.0, delta1=0.3, delta2=0.2, n=7, tv_id=42)
    payload.update(kwargs)
    return TradeSignal(**payload)


class TestTradeSignal:
    """信号模型"""

    def test_normalizes_fields(self):
        signal = make_signal(side="BUY")
        assert signal.side == "buy"
        assert signal.tv_id == "42"
        assert signal.is_opening

    @pytest.mark.parametrize("symbol,expected", [
        ("BTCUSDT", ("BTC", None)),
        ("ETHUSD", ("ETH", None)),
        ("BTC", ("BTC", None)),
        ("SOL_USDC", ("USDC", "SOL")),
    ])
    def test_resolve_currency(self, symbol, expected):
        assert make_signal(symbol=symbol).resolve_currency() == expected

    @pytest.mark.parametrize("field,value", [("delta1", 1.5), ("size", 0), ("ratio", 0), ("side", "hold")])
    def test_rejects_invalid_values(self, field, value):
        with pytest.raises(ValidationError):
            make_signal(**{field: value})


class TestOpenSignal:
    """开仓信号"""

    @pytest.mark.asyncio
    async def test_selects_and_places(self, processor, exchange, store):
        result = await processor.process(make_signal())

        assert result.success, result.message
        assert result.instrument_name == find_instrument(exchange, "call", 65000)
        assert result.order_result.executed_quantity == 1.0

        [record] = await store.get_records(tv_id="42")
        assert record.record_type == RecordType.POSITION
        assert record.instrument_name == result.instrument_name

    @pytest.mark.asyncio
    async def test_sell_side_selects_put(self, processor, exchange):
        result = await processor.process(make_signal(side="sell", delta1=-0.3, delta2=-0.2))

        assert result.instrument_name == find_instrument(exchange, "put", 55000)
        assert exchange.place_calls[0].direction == "sell"

    @pytest.mark.asyncio
    async def test_missing_n_uses_default_days(self, processor, exchange):
        result = await processor.process(make_signal(n=None))
        assert result.instrument_name == find_instrument(exchange, "call", 65000)

    @pytest.mark.asyncio
    async def test_explicit_instrument(self, processor, exchange, store):
        name = find_instrument(exchange, "call", 58000)

        result = await processor.process(make_signal(delta1=None, delta2=None, n=None, instrument_name=name))

        assert result.success
        assert result.instrument_name == name
        assert await store.get_records() == []

    @pytest.mark.asyncio
    async def test_no_instrument_found(self, processor, exchange):
        result = await processor.process(make_signal(n=90))

        assert not result.success
        assert result.error_code == "not_found"
        assert result.instrument_name is None
        assert exchange.place_calls == []

    @pytest.mark.asyncio
    async def test_selection_transport_error(self, processor, exchange, store):
        exchange.get_delta_snapshot = AsyncMock(side_effect=TransportError("network down"))

        result = await processor.process(make_signal())

        assert not result.success
        assert result.error_code == "transport_error"
        assert "network down" in result.message
        assert "BTC call" in result.message
        assert exchange.place_calls == []
        assert await store.get_records() == []

    @pytest.mark.asyncio
    async def test_requires_delta_or_instrument(self, processor):
        result = await processor.process(make_signal(delta1=None))
        assert result.error_code == "invalid_signal"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("account", ["ghost", "off"])
    async def test_invalid_account(self, processor, exchange, account):
        result = await processor.process(make_signal(account_name=account))

        assert not result.success
        assert result.error_code == "account_invalid"
        assert exchange.quote_calls == []


class TestCloseSignal:
    """平仓信号"""

    @pytest.mark.asyncio
    async def test_closes_by_tv_id(self, processor, exchange, store):
        opened = await processor.process(make_signal())

        result = await processor.process(make_signal(action="close", side="sell"))

        assert result.success, result.message
        assert result.batch_result.instruments == [opened.instrument_name]
        assert opened.instrument_name not in exchange.positions
        assert await store.get_records() == []

    @pytest.mark.asyncio
    async def test_close_requires_tv_id(self, processor):
        result = await processor.process(make_signal(action="close", tv_id=None))
        assert result.error_code == "invalid_signal"

    @pytest.mark.asyncio
    async def test_close_unknown_signal(self, processor):
        result = await processor.process(make_signal(action="close", tv_id="missing"))

        assert not result.success
        assert result.error_code == "close_failed"
