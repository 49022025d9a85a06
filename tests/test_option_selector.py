"""
期权选择器测试

Deribit Delta 期权执行服务

样例市场: 3 个到期日（8 / 15 / 29 天）× 8 个行权价，call delta 0.9 → 0.1
"""

from unittest.mock import AsyncMock

import pytest

from core.config import SelectionConfig
from core.errors import TransportError
from execution.fake_exchange import DAY_MS, FakeExchange
from execution.option_selector import DeltaOptionSelector

NOW_MS = 1_760_000_000_000


@pytest.fixture
def exchange():
    return FakeExchange.build_sample_market("BTC", now_ms=NOW_MS)


@pytest.fixture
def selector(exchange):
    return DeltaOptionSelector(exchange, SelectionConfig())


class TestSelectByDelta:
    """按 delta 选择"""

    @pytest.mark.asyncio
    async def test_selects_nearest_call(self, selector):
        best = await selector.select_by_delta("BTC", 7, 0.3, True, now_ms=NOW_MS)

        assert best is not None
        assert best.instrument.option_type == "call"
        assert best.instrument.strike == 65000
        assert best.delta == pytest.approx(0.3286)
        assert best.delta_distance == pytest.approx(0.0286, abs=1e-4)
        assert 0 < best.spread_ratio < 1

    @pytest.mark.asyncio
    async def test_prefers_nearest_expiry_on_tie(self, selector):
        # 8 天与 15 天两组报价完全一致，距离与价差都相同时取先出现的近月
        best = await selector.select_by_delta("BTC", 7, 0.3, True, now_ms=NOW_MS)
        assert best.instrument.expiration_timestamp == int(NOW_MS + 8 * DAY_MS)

    @pytest.mark.asyncio
    async def test_selects_put_by_negative_delta(self, selector):
        best = await selector.select_by_delta("BTC", 7, -0.3, False, now_ms=NOW_MS)

        assert best.instrument.option_type == "put"
        assert best.instrument.strike == 55000
        assert best.delta == pytest.approx(-0.3286)

    @pytest.mark.asyncio
    async def test_respects_min_expire_days(self, selector):
        best = await selector.select_by_delta("BTC", 10, 0.3, True, now_ms=NOW_MS)
        assert best.instrument.expiration_timestamp == int(NOW_MS + 15 * DAY_MS)

    @pytest.mark.asyncio
    async def test_deterministic(self, selector):
        first = await selector.select_by_delta("BTC", 7, 0.5, True, now_ms=NOW_MS)
        second = await selector.select_by_delta("BTC", 7, 0.5, True, now_ms=NOW_MS)
        assert first.instrument_name == second.instrument_name

    @pytest.mark.asyncio
    async def test_quote_fan_out_bounded(self, exchange, selector):
        await selector.select_by_delta("BTC", 1, 0.3, True, now_ms=NOW_MS)
        # 最近两个到期日 × 每组两个候选
        assert len(exchange.quote_calls) <= 4

    @pytest.mark.asyncio
    async def test_snapshot_reuses_instrument_list(self, exchange, selector):
        exchange.get_instruments = AsyncMock(wraps=exchange.get_instruments)
        exchange.get_delta_snapshot = AsyncMock(wraps=exchange.get_delta_snapshot)

        await selector.select_by_delta("BTC", 7, 0.3, True, now_ms=NOW_MS)

        exchange.get_instruments.assert_awaited_once()
        instruments = exchange.get_delta_snapshot.await_args.kwargs["instruments"]
        # 只传最近两个到期日的 call
        assert len(instruments) == 16
        assert all(i.option_type == "call" for i in instruments)

    @pytest.mark.asyncio
    async def test_liquidity_breaks_distance_tie(self, exchange, selector):
        best = await selector.select_by_delta("BTC", 7, 0.3, True, now_ms=NOW_MS)
        # 近月同一合约价差变宽后，同距离的次近月胜出
        quote = exchange.quotes[best.instrument_name]
        exchange.set_quote(best.instrument_name, quote.best_bid_price * 0.5, quote.best_ask_price)

        again = await selector.select_by_delta("BTC", 7, 0.3, True, now_ms=NOW_MS)
        assert again.instrument_name != best.instrument_name
        assert again.instrument.strike == best.instrument.strike
        assert again.instrument.expiration_timestamp == int(NOW_MS + 15 * DAY_MS)


class TestNotFound:
    """找不到合约"""

    @pytest.mark.asyncio
    async def test_no_expiry_far_enough(self, exchange, selector):
        assert await selector.select_by_delta("BTC", 60, 0.3, True, now_ms=NOW_MS) is None
        assert exchange.quote_calls == []

    @pytest.mark.asyncio
    async def test_unknown_currency(self, selector):
        assert await selector.select_by_delta("ETH", 7, 0.3, True, now_ms=NOW_MS) is None

    @pytest.mark.asyncio
    async def test_all_candidates_one_sided(self, exchange, selector):
        for name, quote in list(exchange.quotes.items()):
            exchange.set_quote(name, 0.0, quote.best_ask_price)

        assert await selector.select_by_delta("BTC", 7, 0.3, True, now_ms=NOW_MS) is None

    @pytest.mark.asyncio
    async def test_ticker_failure_skips_candidate(self, exchange, selector):
        original = exchange.get_ticker
        failed = []

        async def flaky_ticker(name):
            if not failed:
                failed.append(name)
                raise TransportError("timeout")
            return await original(name)

        exchange.get_ticker = flaky_ticker
        best = await selector.select_by_delta("BTC", 7, 0.3, True, now_ms=NOW_MS)
        assert best is not None
        assert best.instrument_name != failed[0]
