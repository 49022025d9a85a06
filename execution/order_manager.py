"""
订单管理器模块 - 根据盘口价差选择下单方式

Deribit Delta 期权执行服务

下单流程:
1. 获取合约元数据与盘口，以 (买一 + 卖一) / 2 作为入场价
2. 按数量类型换算下单数量（cash / fixed / contracts）
3. 对齐价格 tick 与最小交易单位
4. 价差比率 >= 门限: 直接以入场价挂限价单
   价差比率 <  门限: 以智能价挂单后交给渐进式限价执行器
5. 开仓订单带 delta 参数时写入敞口记录

所有错误都在本层转换为 OrderResult(success=False)，不向调用方抛出。
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Dict, Literal, Optional

from core.config import ExecutionConfig
from core.errors import DeribitServiceError, InvalidQuantityError, TransportError
from core.state import ExposureRecord, ExposureRecordInput, ExposureStore, RecordType
from .exchange import ExchangeClient
from .models import Instrument, OrderDirection, OrderState, Quote
from .price_utils import (
    calculate_mid_price,
    calculate_spread_ratio,
    correct_order_parameters,
    correct_smart_price,
    format_spread_ratio,
)

if TYPE_CHECKING:
    from risk.progressive_limit_executor import (
        ExecutionOutcome,
        ProgressiveLimitExecutor,
        TokenProvider,
    )

logger = logging.getLogger(__name__)

QuantityType = Literal["fixed", "cash", "contracts"]
OPENING_ACTIONS = ("open", "open_long", "open_short")


def _clamp_delta(value: float) -> float:
    return max(-1.0, min(1.0, value))


@dataclass
class OrderParams:
    """
    下单参数

    delta1 → 敞口记录的 move_position_delta
    delta2 → 敞口记录的 target_delta
    n      → 最小到期天数
    """
    direction: OrderDirection
    quantity: float
    qty_type: QuantityType = "fixed"
    action: str = "open"
    delta1: Optional[float] = None
    delta2: Optional[float] = None
    n: Optional[int] = None
    tv_id: Optional[str] = None
    notional_currency: str = "USDC"
    label: Optional[str] = None

    @property
    def is_opening(self) -> bool:
        return self.action in OPENING_ACTIONS

    @property
    def has_delta(self) -> bool:
        return self.delta1 is not None or self.delta2 is not None


@dataclass
class OrderResult:
    """下单结果"""
    success: bool
    message: str
    instrument_name: str
    order_id: Optional[str] = None
    order_state: Optional[str] = None
    requested_quantity: float = 0.0
    executed_quantity: float = 0.0
    price: Optional[float] = None
    executed_price: Optional[float] = None
    spread_ratio: Optional[float] = None
    strategy: Optional[Literal["direct", "progressive"]] = None
    error_code: Optional[Any] = None
    outcome: Optional['ExecutionOutcome'] = None
    record: Optional[ExposureRecord] = None


class OrderManager:
    """
    订单管理器

    职责:
    1. 入场价与下单数量计算
    2. 按价差选择直接挂单或渐进式执行
    3. 记录开仓订单的目标 delta
    """

    def __init__(
        self,
        exchange: ExchangeClient,
        token_provider: 'TokenProvider',
        executor: 'ProgressiveLimitExecutor',
        store: Optional[ExposureStore] = None,
        config: Optional[ExecutionConfig] = None
    ):
        self.exchange = exchange
        self.tokens = token_provider
        self.executor = executor
        self.store = store
        self.config = config or ExecutionConfig()

        # 统计
        self.total_orders: int = 0
        self.filled_orders: int = 0
        self.failed_orders: int = 0
        self.progressive_orders: int = 0

        logger.info(
            f"OrderManager initialized: "
            f"spread_threshold={self.config.spread_ratio_threshold}, "
            f"smart_price_ratio={self.config.smart_price_ratio}"
        )

    # ========================================================================
    # 数量换算
    # ========================================================================

    @staticmethod
    def calculate_order_quantity(
        params: OrderParams,
        instrument: Instrument,
        entry_price: float,
        index_price: float
    ) -> float:
        """
        按数量类型换算为合约数量

        cash: 名义金额；结算币种与名义币种相同时直接使用，
              否则 名义金额 ÷ (期权价格 × 指数价格) = 合约数
        fixed / contracts: 已经是合约数
        """
        if params.qty_type != "cash":
            return params.quantity

        settlement = (instrument.settlement_currency or "").upper()
        if settlement == params.notional_currency.upper():
            logger.debug(f"💰 Cash mode: {params.quantity} {settlement} used directly")
            return params.quantity

        if entry_price <= 0 or index_price <= 0:
            raise InvalidQuantityError(
                f"Cannot convert cash {params.quantity} for {instrument.instrument_name}: "
                f"entry_price={entry_price}, index_price={index_price}",
                context={"instrument_name": instrument.instrument_name},
            )

        quantity = params.quantity / (entry_price * index_price)
        logger.debug(
            f"💰 Cash mode: {params.quantity} → {quantity} contracts "
            f"(price {entry_price} × index {index_price})"
        )
        return quantity

    # ========================================================================
    # 下单
    # ========================================================================

    async def place_option_order(
        self,
        account_name: str,
        instrument_name: str,
        params: OrderParams
    ) -> OrderResult:
        """
        下期权订单

        Args:
            account_name: 账户名称
            instrument_name: 合约名称
            params: 下单参数

        Returns:
            OrderResult
        """
        self.total_orders += 1
        logger.info(
            f"📋 Placing {params.action} {params.direction} order: {account_name} {instrument_name} "
            f"quantity={params.quantity} ({params.qty_type})"
        )

        try:
            token = await self.tokens.ensure_valid_token(account_name)
            instrument = await self.exchange.get_instrument(instrument_name)
            quote = await self.exchange.get_ticker(instrument_name)

            entry_price = calculate_mid_price(quote.best_bid_price, quote.best_ask_price) or quote.mark_price
            if entry_price <= 0:
                raise TransportError(
                    f"No usable quote for {instrument_name}: "
                    f"bid={quote.best_bid_price}, ask={quote.best_ask_price}, mark={quote.mark_price}",
                    context={"instrument_name": instrument_name},
                )

            quantity = self.calculate_order_quantity(params, instrument, entry_price, quote.index_price)
            if quantity <= 0:
                raise InvalidQuantityError(
                    f"Invalid order quantity for {instrument_name}: {quantity}",
                    context={"instrument_name": instrument_name, "quantity": quantity},
                )

            corrected = correct_order_parameters(entry_price, quantity, instrument)
            if corrected.amount <= 0:
                raise InvalidQuantityError(
                    f"Order quantity for {instrument_name} rounds to zero: {quantity} "
                    f"(min unit {corrected.min_unit})",
                    context={"instrument_name": instrument_name, "quantity": quantity},
                )

            logger.info(
                f"🔧 Parameter correction: price {entry_price} → {corrected.price}, "
                f"amount {quantity} → {corrected.amount}"
            )

            spread_ratio = calculate_spread_ratio(quote.best_bid_price, quote.best_ask_price)
            logger.info(f"盘口价差: {format_spread_ratio(spread_ratio)} ({instrument_name})")

            if spread_ratio >= self.config.spread_ratio_threshold:
                result = await self._place_direct(
                    token, account_name, instrument, params, corrected.amount, corrected.price, spread_ratio
                )
            else:
                result = await self._place_progressive(
                    token, account_name, instrument, quote, params, corrected.amount, spread_ratio
                )

        except DeribitServiceError as e:
            self.failed_orders += 1
            logger.error(f"❌ Order failed for {instrument_name}: {e}")
            return OrderResult(
                success=False,
                message=f"Failed to place order for {instrument_name}: {e.message}",
                instrument_name=instrument_name,
                requested_quantity=params.quantity,
                error_code=e.code,
            )

        if result.order_state == "filled":
            self.filled_orders += 1
        return result

    async def _place_direct(
        self,
        token: str,
        account_name: str,
        instrument: Instrument,
        params: OrderParams,
        amount: float,
        price: float,
        spread_ratio: float,
    ) -> OrderResult:
        """价差过大: 直接以入场价挂限价单，不追单"""
        logger.info(
            f"⚠️ Spread too wide for stepping ({format_spread_ratio(spread_ratio)} >= "
            f"{format_spread_ratio(self.config.spread_ratio_threshold)}), placing plain limit order"
        )
        order = await self.exchange.place_order(
            token, instrument.instrument_name, params.direction, amount,
            order_type="limit", price=price, label=params.label
        )
        logger.info(
            f"✅ Order placed: {order.order_id} {order.direction} {amount} {instrument.instrument_name} "
            f"@ {price} ({order.state_text})"
        )

        record = None
        if params.is_opening and params.has_delta:
            record_type = RecordType.POSITION if order.is_filled else RecordType.ORDER
            record = await self._record_exposure(account_name, instrument.instrument_name, params, record_type, order)

        return OrderResult(
            success=True,
            message=f"Successfully placed {params.direction} order for {amount} contracts "
                    f"(spread {format_spread_ratio(spread_ratio)})",
            instrument_name=instrument.instrument_name,
            order_id=order.order_id,
            order_state=order.order_state,
            requested_quantity=amount,
            executed_quantity=order.filled_amount,
            price=price,
            executed_price=order.average_price or price,
            spread_ratio=spread_ratio,
            strategy="direct",
            record=record,
        )

    async def _place_progressive(
        self,
        token: str,
        account_name: str,
        instrument: Instrument,
        quote: Quote,
        params: OrderParams,
        amount: float,
        spread_ratio: float,
    ) -> OrderResult:
        """价差较小: 智能价挂单 + 渐进式执行"""
        price = correct_smart_price(
            quote.best_bid_price, quote.best_ask_price, params.direction, instrument,
            self.config.smart_price_ratio
        )
        order = await self.exchange.place_order(
            token, instrument.instrument_name, params.direction, amount,
            order_type="limit", price=price, label=params.label
        )
        self.progressive_orders += 1
        logger.info(f"📋 Initial order placed: {order.order_id} @ {price}, starting progressive strategy")

        outcome = await self.executor.execute(
            order_id=order.order_id,
            instrument=instrument,
            direction=params.direction,
            quantity=amount,
            initial_price=price,
            account_name=account_name,
        )

        if not outcome.success:
            self.failed_orders += 1
            return OrderResult(
                success=False,
                message=outcome.message,
                instrument_name=instrument.instrument_name,
                order_id=order.order_id,
                requested_quantity=amount,
                price=price,
                spread_ratio=spread_ratio,
                strategy="progressive",
                error_code="execution_failed",
                outcome=outcome,
            )

        record = None
        if params.is_opening and params.has_delta:
            if outcome.executed_quantity > 0:
                record = await self._record_exposure(
                    account_name, instrument.instrument_name, params, RecordType.POSITION, None
                )
            else:
                final = OrderState(
                    order_id=order.order_id,
                    instrument_name=instrument.instrument_name,
                    direction=params.direction,
                    amount=amount,
                    order_state=outcome.final_order_state or "open",
                )
                if final.is_open:
                    record = await self._record_exposure(
                        account_name, instrument.instrument_name, params, RecordType.ORDER, final
                    )

        return OrderResult(
            success=True,
            message=outcome.message,
            instrument_name=instrument.instrument_name,
            order_id=order.order_id,
            order_state=outcome.final_order_state,
            requested_quantity=amount,
            executed_quantity=outcome.executed_quantity,
            price=price,
            executed_price=outcome.average_price or price,
            spread_ratio=spread_ratio,
            strategy="progressive",
            outcome=outcome,
            record=record,
        )

    # ========================================================================
    # 敞口记录
    # ========================================================================

    async def _record_exposure(
        self,
        account_name: str,
        instrument_name: str,
        params: OrderParams,
        record_type: RecordType,
        order: Optional[OrderState],
    ) -> Optional[ExposureRecord]:
        """写入敞口记录；失败只记录日志，不影响下单结果"""
        if self.store is None:
            return None

        record = ExposureRecordInput(
            account_id=account_name,
            instrument_name=instrument_name,
            target_delta=_clamp_delta(params.delta2 or 0.0),
            move_position_delta=_clamp_delta(params.delta1 or 0.0),
            min_expire_days=params.n if params.n and params.n > 0 else None,
            tv_id=params.tv_id,
            record_type=record_type,
            order_id=order.order_id if record_type == RecordType.ORDER and order else None,
        )

        try:
            saved = await self.store.upsert_record(record)
        except (DeribitServiceError, sqlite3.Error) as e:
            logger.error(f"❌ Failed to record exposure for {account_name}/{instrument_name}: {e}")
            return None

        logger.info(
            f"📝 Exposure recorded as {record_type.value}: #{saved.id} {instrument_name} "
            f"target={saved.target_delta} move={saved.move_position_delta} tv_id={saved.tv_id}"
        )
        return saved

    def get_stats(self) -> Dict[str, Any]:
        """获取统计信息"""
        return {
            "total_orders": self.total_orders,
            "filled_orders": self.filled_orders,
            "failed_orders": self.failed_orders,
            "progressive_orders": self.progressive_orders,
            "fill_rate": self.filled_orders / self.total_orders if self.total_orders > 0 else 0,
        }
