"""
Deribit API 客户端 - aiohttp 异步实现

Deribit Delta 期权执行服务

特性:
- 公共接口: GET {base}/public/<method>
- 私有接口: JSON-RPC 2.0 POST {base}，Bearer token 认证
- JSON-RPC 错误码映射为 NotFoundError / AuthenticationError / ExchangeApiError
- 网络错误、超时、数据格式错误统一为 TransportError
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import math
import time
from typing import Any, Dict, List, Optional

import aiohttp

from core.config import DeribitConfig
from core.errors import TransportError, error_from_rpc
from .exchange import ExchangeClient
from .models import Instrument, OrderDirection, OrderState, OrderType, Position, Quote

logger = logging.getLogger(__name__)

MS_PER_YEAR = 365 * 24 * 60 * 60 * 1000


def black_scholes_delta(
    spot: float,
    strike: float,
    years: float,
    iv_pct: float,
    is_call: bool
) -> Optional[float]:
    """
    Black-Scholes delta (r = 0)

    Args:
        spot: 标的价格
        strike: 行权价
        years: 剩余期限（年）
        iv_pct: 隐含波动率（百分数，Deribit mark_iv 口径）
        is_call: 是否看涨
    """
    if spot <= 0 or strike <= 0 or years <= 0 or iv_pct <= 0:
        return None
    sigma = iv_pct / 100
    d1 = (math.log(spot / strike) + 0.5 * sigma * sigma * years) / (sigma * math.sqrt(years))
    n_d1 = 0.5 * (1 + math.erf(d1 / math.sqrt(2)))
    return n_d1 if is_call else n_d1 - 1


class DeribitClient(ExchangeClient):
    """
    Deribit 真实交易所客户端

    会话惰性创建，调用 close() 释放。
    """

    def __init__(self, config: DeribitConfig, mode: str = "test"):
        self.config = config
        self.base_url = config.resolve_base_url(mode)
        self._session: Optional[aiohttp.ClientSession] = None
        self._ids = itertools.count(1)

        logger.info(f"DeribitClient initialized: base_url={self.base_url}")

    async def _get_session(self) -> aiohttp.ClientSession:
        """获取 HTTP 会话"""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.config.timeout),
                headers={
                    "Content-Type": "application/json",
                    "User-Agent": self.config.user_agent,
                },
            )
        return self._session

    async def close(self) -> None:
        """关闭会话"""
        if self._session and not self._session.closed:
            await self._session.close()

    # ========================================================================
    # 请求封装
    # ========================================================================

    async def _handle_response(self, response: aiohttp.ClientResponse, method: str) -> Any:
        try:
            payload = await response.json(content_type=None)
        except (aiohttp.ContentTypeError, ValueError) as e:
            body = await response.text()
            raise TransportError(
                f"Invalid response from {method}: HTTP {response.status}",
                context={"method": method, "body": body[:500]},
                original_error=e,
            )

        if isinstance(payload, dict) and payload.get("error"):
            raise error_from_rpc(payload["error"], method)

        if response.status >= 400:
            raise TransportError(
                f"HTTP {response.status} on {method}",
                code=response.status,
                context={"method": method},
            )

        if not isinstance(payload, dict) or "result" not in payload:
            raise TransportError(f"Missing result in response of {method}", context={"method": method})

        return payload["result"]

    async def public_request(self, method: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """调用公共接口"""
        session = await self._get_session()
        query = {
            k: (str(v).lower() if isinstance(v, bool) else str(v))
            for k, v in (params or {}).items()
            if v is not None
        }
        url = f"{self.base_url}/{method}"

        try:
            async with session.get(url, params=query) as response:
                return await self._handle_response(response, method)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransportError(f"Connection error on {method}: {e}", context={"method": method}, original_error=e)

    async def private_request(
        self,
        access_token: str,
        method: str,
        params: Optional[Dict[str, Any]] = None
    ) -> Any:
        """调用私有 JSON-RPC 接口"""
        session = await self._get_session()
        body = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": method,
            "params": {k: v for k, v in (params or {}).items() if v is not None},
        }
        headers = {"Authorization": f"Bearer {access_token}"}

        try:
            async with session.post(self.base_url, json=body, headers=headers) as response:
                return await self._handle_response(response, method)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransportError(f"Connection error on {method}: {e}", context={"method": method}, original_error=e)

    def _parse(self, factory, data: Any, method: str):
        try:
            return factory(data)
        except (KeyError, TypeError, ValueError) as e:
            raise TransportError(f"Malformed payload from {method}: {e}", context={"method": method}, original_error=e)

    # ========================================================================
    # 行情查询
    # ========================================================================

    async def get_instruments(self, currency: str, kind: str = "option") -> List[Instrument]:
        method = "public/get_instruments"
        result = await self.public_request(method, {"currency": currency, "kind": kind, "expired": False})
        return [self._parse(Instrument.from_api, item, method) for item in result or []]

    async def get_instrument(self, instrument_name: str) -> Instrument:
        method = "public/get_instrument"
        result = await self.public_request(method, {"instrument_name": instrument_name})
        return self._parse(Instrument.from_api, result, method)

    async def get_ticker(self, instrument_name: str) -> Quote:
        method = "public/ticker"
        result = await self.public_request(method, {"instrument_name": instrument_name})
        return self._parse(Quote.from_api, result, method)

    async def get_delta_snapshot(
        self,
        currency: str,
        kind: str = "option",
        instruments: Optional[List[Instrument]] = None,
    ) -> Dict[str, float]:
        """
        用 book summary 的 mark_iv / underlying_price 估算合约 delta

        Args:
            currency: 结算币种
            kind: 合约类型
            instruments: 已获取的合约列表；为空时调用 public/get_instruments

        Returns:
            instrument_name -> delta；缺少必要数据的合约不出现在结果中
        """
        if instruments is None:
            instruments = await self.get_instruments(currency, kind)
        by_name = {i.instrument_name: i for i in instruments}
        summaries = await self.public_request(
            "public/get_book_summary_by_currency", {"currency": currency, "kind": kind}
        )

        now_ms = time.time() * 1000
        deltas: Dict[str, float] = {}

        for summary in summaries or []:
            instrument = by_name.get(summary.get("instrument_name"))
            if instrument is None or instrument.strike is None or instrument.expiration_timestamp is None:
                continue

            years = (instrument.expiration_timestamp - now_ms) / MS_PER_YEAR
            delta = black_scholes_delta(
                spot=float(summary.get("underlying_price") or 0),
                strike=instrument.strike,
                years=years,
                iv_pct=float(summary.get("mark_iv") or 0),
                is_call=instrument.is_call,
            )
            if delta is not None:
                deltas[instrument.instrument_name] = delta

        logger.debug(f"Delta snapshot for {currency}: {len(deltas)}/{len(by_name)} instruments")
        return deltas

    # ========================================================================
    # 订单
    # ========================================================================

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
        method = f"private/{direction}"
        params: Dict[str, Any] = {
            "instrument_name": instrument_name,
            "amount": amount,
            "type": order_type,
            "label": label,
        }
        if order_type == "limit":
            params["price"] = price

        logger.info(
            f"Placing {direction} {order_type} order: {instrument_name} "
            f"amount={amount} price={price}"
        )
        result = await self.private_request(access_token, method, params)
        return self._parse(OrderState.from_api, result, method)

    async def edit_order(
        self,
        access_token: str,
        order_id: str,
        amount: float,
        price: float,
    ) -> OrderState:
        method = "private/edit"
        result = await self.private_request(
            access_token, method, {"order_id": order_id, "amount": amount, "price": price}
        )
        return self._parse(OrderState.from_api, result, method)

    async def get_order_state(self, access_token: str, order_id: str) -> OrderState:
        method = "private/get_order_state"
        result = await self.private_request(access_token, method, {"order_id": order_id})
        return self._parse(OrderState.from_api, result, method)

    async def get_open_orders(
        self,
        access_token: str,
        currency: Optional[str] = None,
        kind: str = "option",
    ) -> List[OrderState]:
        if currency:
            method = "private/get_open_orders_by_currency"
            params = {"currency": currency, "kind": kind}
        else:
            method = "private/get_open_orders"
            params = {"kind": kind}
        result = await self.private_request(access_token, method, params)
        return [self._parse(OrderState.from_api, item, method) for item in result or []]

    async def get_positions(
        self,
        access_token: str,
        currency: Optional[str] = None,
        kind: str = "option",
    ) -> List[Position]:
        method = "private/get_positions"
        result = await self.private_request(
            access_token, method, {"currency": currency or "any", "kind": kind}
        )
        positions = [self._parse(Position.from_api, item, method) for item in result or []]
        return [p for p in positions if p.size != 0]
