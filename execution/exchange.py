"""
交易所接口定义

Deribit Delta 期权执行服务

ExchangeClient 同时承担行情查询与订单两类端口，两个实现:
- DeribitClient: 真实 Deribit API
- FakeExchange: 内存撮合，用于测试与 mock 模式

由组合根按运行模式注入，业务代码不感知具体实现。
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from .models import Instrument, OrderDirection, OrderState, OrderType, Position, Quote


class ExchangeClient(ABC):
    """交易所客户端基类"""

    # ------------------------------------------------------------------
    # 行情查询
    # ------------------------------------------------------------------

    @abstractmethod
    async def get_instruments(self, currency: str, kind: str = "option") -> List[Instrument]:
        """获取未到期合约列表"""

    @abstractmethod
    async def get_instrument(self, instrument_name: str) -> Instrument:
        """获取单个合约；不存在时抛出 NotFoundError"""

    @abstractmethod
    async def get_ticker(self, instrument_name: str) -> Quote:
        """获取最新盘口与 greeks"""

    @abstractmethod
    async def get_delta_snapshot(
        self,
        currency: str,
        kind: str = "option",
        instruments: Optional[List[Instrument]] = None,
    ) -> Dict[str, float]:
        """
        一次请求获取合约 delta，用于选约时的初步排序

        传入 instruments 时只返回这些合约，且不再重新拉取合约列表
        """

    # ------------------------------------------------------------------
    # 订单（需要 access token）
    # ------------------------------------------------------------------

    @abstractmethod
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
        """下单"""

    @abstractmethod
    async def edit_order(
        self,
        access_token: str,
        order_id: str,
        amount: float,
        price: float,
    ) -> OrderState:
        """修改挂单价格/数量"""

    @abstractmethod
    async def get_order_state(self, access_token: str, order_id: str) -> OrderState:
        """查询订单状态"""

    @abstractmethod
    async def get_open_orders(
        self,
        access_token: str,
        currency: Optional[str] = None,
        kind: str = "option",
    ) -> List[OrderState]:
        """查询未成交订单"""

    @abstractmethod
    async def get_positions(
        self,
        access_token: str,
        currency: Optional[str] = None,
        kind: str = "option",
    ) -> List[Position]:
        """查询持仓（仅返回 size != 0）"""

    async def close(self) -> None:
        """释放资源"""
