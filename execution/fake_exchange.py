"""
内存交易所 - 测试与 mock 模式使用

Deribit Delta 期权执行服务

FakeExchange 实现 ExchangeClient 的全部接口:
- 合约与盘口由调用方设置，或用 build_sample_market() 生成
- 限价单按当前盘口撮合: 买价 >= 卖一 或 卖价 <= 买一 即全部成交
- 记录调用次数，便于断言请求扇出
"""

from __future__ import annotations

import itertools
import math
import logging
import time
from dataclasses import replace
from typing import Dict, Iterable, List, Optional

from core.errors import NotFoundError, TransportError
from .exchange import ExchangeClient
from .models import (
    Instrument,
    OrderDirection,
    OrderState,
    OrderType,
    Position,
    Quote,
    TickSizeStep,
    parse_instrument_name,
)

logger = logging.getLogger(__name__)

DAY_MS = 24 * 60 * 60 * 1000
MONTHS = ["JAN", "FEB", "MAR", "APR", "MAY", "JUN", "JUL", "AUG", "SEP", "OCT", "NOV", "DEC"]


class StaticTokenProvider:
    """固定 token，mock 模式与测试使用"""

    def __init__(self, token: str = "mock-access-token"):
        self.token = token
        self.calls = 0

    async def ensure_valid_token(self, account_name: str) -> str:
        self.calls += 1
        return self.token


class FakeExchange(ExchangeClient):
    """内存撮合交易所"""

    def __init__(
        self,
        instruments: Optional[Iterable[Instrument]] = None,
        quotes: Optional[Iterable[Quote]] = None,
        auto_match: bool = True,
    ):
        self.instruments: Dict[str, Instrument] = {i.instrument_name: i for i in instruments or []}
        self.quotes: Dict[str, Quote] = {q.instrument_name: q for q in quotes or []}
        self.auto_match = auto_match

        self.orders: Dict[str, OrderState] = {}
        self.positions: Dict[str, Position] = {}
        self._order_ids = itertools.count(1)

        # 调用统计
        self.quote_calls: List[str] = []
        self.place_calls: List[OrderState] = []
        self.edit_calls: List[OrderState] = []

    # ========================================================================
    # 场景设置
    # ========================================================================

    def add_instrument(self, instrument: Instrument, quote: Optional[Quote] = None) -> None:
        self.instruments[instrument.instrument_name] = instrument
        if quote is not None:
            self.quotes[instrument.instrument_name] = quote

    def set_quote(self, instrument_name: str, bid: float, ask: float, **fields) -> None:
        current = self.quotes.get(instrument_name) or Quote(instrument_name=instrument_name)
        self.quotes[instrument_name] = replace(current, best_bid_price=bid, best_ask_price=ask, **fields)

    def set_position(self, instrument_name: str, size: float, delta: Optional[float] = None, **fields) -> Position:
        position = Position(
            instrument_name=instrument_name,
            size=size,
            direction="buy" if size > 0 else ("sell" if size < 0 else "zero"),
            delta=delta,
            **fields,
        )
        self.positions[instrument_name] = position
        return position

    def set_order_state(self, order_id: str, order_state: str, filled_amount: Optional[float] = None) -> None:
        order = self.orders[order_id]
        order.order_state = order_state
        if filled_amount is not None:
            order.filled_amount = filled_amount

    @classmethod
    def build_sample_market(
        cls,
        currency: str = "BTC",
        now_ms: Optional[float] = None,
        expiry_days: Iterable[int] = (8, 15, 29),
        strikes_per_expiry: int = 8,
        spot: float = 60000.0,
    ) -> 'FakeExchange':
        """
        生成样例市场: 每个到期日 strikes_per_expiry 个 call 和 put

        call delta 随行权价从 0.9 线性下降到 0.1，put delta = call delta - 1
        买卖价对齐到 0.0005 的 tick 网格
        """
        now_ms = now_ms if now_ms is not None else time.time() * 1000
        exchange = cls()

        for days in expiry_days:
            expiry_ms = int(now_ms + days * DAY_MS)
            expiry = time.gmtime(expiry_ms / 1000)
            code = f"{expiry.tm_mday}{MONTHS[expiry.tm_mon - 1]}{expiry.tm_year % 100:02d}"

            for idx in range(strikes_per_expiry):
                strike = spot * (0.8 + 0.4 * idx / max(strikes_per_expiry - 1, 1))
                strike = round(strike / 1000) * 1000
                call_delta = 0.9 - 0.8 * idx / max(strikes_per_expiry - 1, 1)

                for option_type, delta in (("call", call_delta), ("put", call_delta - 1)):
                    name = f"{currency}-{code}-{int(strike)}-{option_type[0].upper()}"
                    mark = round(0.02 + abs(delta) * 0.1, 4)
                    exchange.add_instrument(
                        Instrument(
                            instrument_name=name,
                            option_type=option_type,
                            strike=float(strike),
                            expiration_timestamp=expiry_ms,
                            tick_size=0.0001,
                            tick_size_steps=(TickSizeStep(above_price=0.005, tick_size=0.0005),),
                            min_trade_amount=0.1,
                            base_currency=currency,
                            quote_currency=currency,
                            settlement_currency=currency,
                        ),
                        Quote(
                            instrument_name=name,
                            best_bid_price=round(math.floor(mark * 0.97 / 0.0005) * 0.0005, 4),
                            best_ask_price=round(math.ceil(mark * 1.03 / 0.0005) * 0.0005, 4),
                            best_bid_amount=10.0,
                            best_ask_amount=10.0,
                            mark_price=mark,
                            index_price=spot,
                            underlying_price=spot,
                            delta=round(delta, 4),
                        ),
                    )

        return exchange

    # ========================================================================
    # 行情查询
    # ========================================================================

    async def get_instruments(self, currency: str, kind: str = "option") -> List[Instrument]:
        return [
            i for i in self.instruments.values()
            if i.kind == kind and parse_instrument_name(i.instrument_name)[0] == currency.upper()
        ]

    async def get_instrument(self, instrument_name: str) -> Instrument:
        instrument = self.instruments.get(instrument_name)
        if instrument is None:
            raise NotFoundError(f"Instrument not found: {instrument_name}", code=13020)
        return instrument

    async def get_ticker(self, instrument_name: str) -> Quote:
        self.quote_calls.append(instrument_name)
        quote = self.quotes.get(instrument_name)
        if quote is None:
            raise NotFoundError(f"Ticker not found: {instrument_name}", code=13020)
        return quote

    async def get_delta_snapshot(
        self,
        currency: str,
        kind: str = "option",
        instruments: Optional[List[Instrument]] = None,
    ) -> Dict[str, float]:
        if instruments is None:
            instruments = await self.get_instruments(currency, kind)
        names = {i.instrument_name for i in instruments}
        return {
            name: quote.delta
            for name, quote in self.quotes.items()
            if name in names and quote.delta is not None
        }

    # ========================================================================
    # 订单
    # ========================================================================

    def _match(self, order: OrderState) -> None:
        """按当前盘口撮合"""
        if not self.auto_match or not order.is_open or order.price is None:
            return

        quote = self.quotes.get(order.instrument_name)
        if quote is None:
            return

        if order.direction == "buy" and 0 < quote.best_ask_price <= order.price:
            fill_price = quote.best_ask_price
        elif order.direction == "sell" and quote.best_bid_price > 0 and order.price <= quote.best_bid_price:
            fill_price = quote.best_bid_price
        else:
            return

        self._fill(order, fill_price)

    def _fill(self, order: OrderState, fill_price: float) -> None:
        order.filled_amount = order.amount
        order.average_price = fill_price
        order.order_state = "filled"

        signed = order.amount if order.direction == "buy" else -order.amount
        current = self.positions.get(order.instrument_name)
        size = (current.size if current else 0.0) + signed
        quote = self.quotes.get(order.instrument_name)
        unit_delta = quote.delta if quote and quote.delta is not None else None

        if size == 0:
            self.positions.pop(order.instrument_name, None)
        else:
            self.set_position(
                order.instrument_name,
                size,
                delta=unit_delta * size if unit_delta is not None else None,
                average_price=fill_price,
                mark_price=quote.mark_price if quote else 0.0,
            )

    async def place_order(
        self,
        access_token: str,
        instrument_name: str,
        direction: OrderDirection,
        amount: float,
        order_type: OrderType = "limit",
        price: Optional[float] = None,
        label: Optional[str] = None,
    ) -> OrderState:
        if instrument_name not in self.instruments:
            raise NotFoundError(f"Instrument not found: {instrument_name}", code=13020)
        if amount <= 0:
            raise TransportError(f"Invalid amount: {amount}", code=10002)

        order = OrderState(
            order_id=f"fake-{next(self._order_ids)}",
            instrument_name=instrument_name,
            direction=direction,
            amount=amount,
            price=price,
            order_type=order_type,
            label=label or "",
            creation_timestamp=int(time.time() * 1000),
        )
        self.orders[order.order_id] = order
        self.place_calls.append(replace(order))

        if order_type == "market":
            quote = self.quotes.get(instrument_name)
            fill_price = (quote.best_ask_price if direction == "buy" else quote.best_bid_price) if quote else 0.0
            self._fill(order, fill_price)
        else:
            self._match(order)

        logger.debug(f"[FAKE] placed {order.order_id} {direction} {amount} {instrument_name} @ {price}")
        return replace(order)

    async def edit_order(
        self,
        access_token: str,
        order_id: str,
        amount: float,
        price: float,
    ) -> OrderState:
        order = self.orders.get(order_id)
        if order is None:
            raise NotFoundError(f"Order not found: {order_id}", code=10004)
        if not order.is_open:
            raise TransportError(f"Order {order_id} is {order.order_state}", code=11044)

        order.amount = amount
        order.price = price
        order.last_update_timestamp = int(time.time() * 1000)
        self.edit_calls.append(replace(order))
        self._match(order)
        return replace(order)

    async def get_order_state(self, access_token: str, order_id: str) -> OrderState:
        order = self.orders.get(order_id)
        if order is None:
            raise NotFoundError(f"Order not found: {order_id}", code=10004)
        return replace(order)

    async def get_open_orders(
        self,
        access_token: str,
        currency: Optional[str] = None,
        kind: str = "option",
    ) -> List[OrderState]:
        return [
            replace(o) for o in self.orders.values()
            if o.is_open and (currency is None or parse_instrument_name(o.instrument_name)[0] == currency.upper())
        ]

    async def get_positions(
        self,
        access_token: str,
        currency: Optional[str] = None,
        kind: str = "option",
    ) -> List[Position]:
        return [
            replace(p) for p in self.positions.values()
            if p.size != 0 and (currency is None or parse_instrument_name(p.instrument_name)[0] == currency.upper())
        ]
