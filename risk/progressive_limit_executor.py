"""
渐进式限价执行器 - 限价单逐步向对手价移动

Deribit Delta 期权执行服务

在窄价差市场中先以智能价挂单，再按固定间隔逐步改价:
Step k: 价格 = 初始价 + (对手价 - 初始价) * k / max_step
全部步数用完仍未成交时，最后一次改价直接穿越价差（买单挂卖一 / 卖单挂买一）。

状态流转:
    PLACED → STEPPING(1) → ... → STEPPING(max_step) → CROSSED → DONE
                  │                       │
                  └── 订单已非 open ───────┴──────────────────────→ DONE

单步内的任何异常只记录日志，不中断整个策略。
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import List, Literal, Optional, Protocol

from core.config import ExecutionConfig
from core.errors import DeribitServiceError, TransportError
from execution.exchange import ExchangeClient
from execution.models import (
    ExecutionStats,
    Instrument,
    OrderDirection,
    OrderState,
    PositionSnapshot,
    PriceMovement,
    Quote,
    parse_instrument_name,
)
from execution.price_utils import correct_price

logger = logging.getLogger(__name__)

ExecutionPhase = Literal["PLACED", "STEPPING", "CROSSED", "DONE", "FAILED"]


class TokenProvider(Protocol):
    """提供有效 access token 的协作者（AuthService / StaticTokenProvider）"""

    async def ensure_valid_token(self, account_name: str) -> str:
        ...


@dataclass
class ExecutionOutcome:
    """渐进式执行结果"""
    success: bool
    phase: ExecutionPhase
    message: str
    order_id: str
    instrument_name: str
    final_order_state: Optional[str] = None
    executed_quantity: float = 0.0
    average_price: float = 0.0
    edit_count: int = 0
    stats: Optional[ExecutionStats] = None
    snapshot: Optional[PositionSnapshot] = None

    @property
    def is_filled(self) -> bool:
        return self.final_order_state == "filled"


@dataclass
class _RunState:
    """执行过程中的可变状态"""
    order_id: str
    phase: ExecutionPhase = "PLACED"
    step: int = 0
    edit_count: int = 0
    current_price: Optional[float] = None
    movements: List[PriceMovement] = field(default_factory=list)
    start_time: float = field(default_factory=time.perf_counter)


def calculate_progressive_price(
    direction: OrderDirection,
    initial_price: float,
    bid: float,
    ask: float,
    step: int,
    max_step: int
) -> float:
    """
    线性插值计算第 step 步的价格

    买单从初始价向 ask 移动，卖单从初始价向 bid 移动。
    """
    ratio = step / max_step
    if direction == "buy":
        return initial_price + (ask - initial_price) * ratio
    return initial_price - (initial_price - bid) * ratio


class ProgressiveLimitExecutor:
    """
    渐进式限价执行器

    核心设计原则:
    1. 改价而不是撤单重发（保留订单与队列位置）
    2. 每一步之前刷新 token（策略可能比 token 有效期更长）
    3. 步数有上限，最终一定到达 DONE
    """

    def __init__(
        self,
        exchange: ExchangeClient,
        token_provider: TokenProvider,
        config: Optional[ExecutionConfig] = None
    ):
        self.exchange = exchange
        self.tokens = token_provider
        self.config = config or ExecutionConfig()

        logger.info(
            f"ProgressiveLimitExecutor initialized: "
            f"step_timeout={self.config.step_timeout_ms}ms, max_step={self.config.max_step}"
        )

    async def execute(
        self,
        order_id: str,
        instrument: Instrument,
        direction: OrderDirection,
        quantity: float,
        initial_price: float,
        account_name: str,
        step_timeout_ms: Optional[int] = None,
        max_step: Optional[int] = None,
    ) -> ExecutionOutcome:
        """
        对一个已挂出的限价单执行渐进式改价

        Args:
            order_id: 已挂出的订单ID
            instrument: 合约元数据（用于 tick 对齐）
            direction: 买卖方向
            quantity: 下单数量（改价时数量不变）
            initial_price: 挂单初始价格
            account_name: 账户名称（刷新 token 用）
            step_timeout_ms: 每步等待时间，默认取配置
            max_step: 最大步数，默认取配置

        Returns:
            ExecutionOutcome
        """
        timeout_ms = self.config.step_timeout_ms if step_timeout_ms is None else step_timeout_ms
        max_step = self.config.max_step if max_step is None else max_step
        instrument_name = instrument.instrument_name
        state = _RunState(order_id=order_id, current_price=initial_price)

        logger.info(
            f"🎯 Progressive limit started: {order_id} {direction} {quantity} {instrument_name} "
            f"@ {initial_price} | timeout={timeout_ms}ms max_step={max_step}"
        )

        # 逐步改价
        while state.step < max_step:
            await asyncio.sleep(timeout_ms / 1000)
            state.step += 1
            state.phase = "STEPPING"

            try:
                done = await self._run_step(state, instrument, direction, initial_price, account_name, max_step)
            except DeribitServiceError as e:
                logger.error(f"❌ Step {state.step}/{max_step} failed for {order_id}: {e}")
                continue

            if done:
                state.phase = "DONE"
                break

        # 步数用完（或 max_step=0）仍未成交，穿越价差
        if state.phase != "DONE":
            try:
                await self._cross_spread(state, instrument, direction, account_name)
            except DeribitServiceError as e:
                logger.error(f"❌ Final crossing edit failed for {order_id}: {e}")
            state.phase = "DONE"

        logger.info(f"🏁 Progressive limit completed: {order_id} after {state.step} steps, {state.edit_count} edits")

        return await self._build_outcome(state, instrument, direction, quantity, initial_price, account_name)

    # ========================================================================
    # 单步逻辑
    # ========================================================================

    async def _run_step(
        self,
        state: _RunState,
        instrument: Instrument,
        direction: OrderDirection,
        initial_price: float,
        account_name: str,
        max_step: int,
    ) -> bool:
        """执行一步；订单已不再 open 时返回 True"""
        token = await self.tokens.ensure_valid_token(account_name)

        order = await self.exchange.get_order_state(token, state.order_id)
        if not order.is_open:
            logger.info(f"✅ Order {state.order_id} is no longer open (state: {order.order_state}), stopping")
            return True

        quote = await self._get_valid_quote(instrument.instrument_name)
        raw_price = calculate_progressive_price(
            direction, initial_price, quote.best_bid_price, quote.best_ask_price, state.step, max_step
        )
        corrected = correct_price(raw_price, instrument)

        logger.info(
            f"📈 Step {state.step}/{max_step}: {state.current_price} → {corrected.price} "
            f"(raw {raw_price:.6f}, bid {quote.best_bid_price}, ask {quote.best_ask_price}, "
            f"tick {corrected.tick_size}) | filled {order.filled_amount}/{order.amount}"
        )
        await self._edit_price(state, token, order, corrected.price, quote)
        return False

    async def _cross_spread(
        self,
        state: _RunState,
        instrument: Instrument,
        direction: OrderDirection,
        account_name: str,
    ) -> None:
        """最后一步: 直接挂对手价"""
        token = await self.tokens.ensure_valid_token(account_name)
        order = await self.exchange.get_order_state(token, state.order_id)
        if not order.is_open:
            logger.info(f"✅ Order {state.order_id} closed before crossing (state: {order.order_state})")
            return

        try:
            quote = await self._get_valid_quote(instrument.instrument_name)
        except TransportError as e:
            logger.warning(f"⚠️ Skipping final crossing for {state.order_id}: {e.message}")
            return

        raw_price = quote.best_ask_price if direction == "buy" else quote.best_bid_price
        corrected = correct_price(raw_price, instrument)

        logger.info(f"💥 Crossing spread: {state.order_id} {raw_price} → {corrected.price} (tick {corrected.tick_size})")
        await self._edit_price(state, token, order, corrected.price, quote)
        state.phase = "CROSSED"

    async def _get_valid_quote(self, instrument_name: str) -> Quote:
        """获取盘口；单边或交叉盘口视为通讯错误"""
        quote = await self.exchange.get_ticker(instrument_name)
        bid, ask = quote.best_bid_price, quote.best_ask_price

        if bid <= 0 or ask <= 0:
            raise TransportError(
                f"One-sided book for {instrument_name}: bid={bid}, ask={ask}",
                context={"instrument_name": instrument_name, "bid": bid, "ask": ask},
            )
        if bid > ask:
            raise TransportError(
                f"Crossed book for {instrument_name}: bid={bid} > ask={ask}",
                context={"instrument_name": instrument_name, "bid": bid, "ask": ask},
            )
        return quote

    async def _edit_price(
        self,
        state: _RunState,
        token: str,
        order: OrderState,
        new_price: float,
        quote: Quote,
    ) -> None:
        """只改价格，数量保持为订单原始数量"""
        await self.exchange.edit_order(token, state.order_id, order.amount, new_price)
        state.edit_count += 1
        state.movements.append(PriceMovement(
            step=state.step,
            timestamp=time.time(),
            old_price=state.current_price if state.current_price is not None else 0.0,
            new_price=new_price,
            bid_price=quote.best_bid_price,
            ask_price=quote.best_ask_price,
        ))
        state.current_price = new_price

    # ========================================================================
    # 结果汇总
    # ========================================================================

    async def _build_outcome(
        self,
        state: _RunState,
        instrument: Instrument,
        direction: OrderDirection,
        quantity: float,
        initial_price: float,
        account_name: str,
    ) -> ExecutionOutcome:
        """读取最终订单状态并汇总持仓快照"""
        instrument_name = instrument.instrument_name

        try:
            token = await self.tokens.ensure_valid_token(account_name)
            final_order = await self.exchange.get_order_state(token, state.order_id)
        except DeribitServiceError as e:
            logger.error(f"❌ Failed to read final state of {state.order_id}: {e}")
            return ExecutionOutcome(
                success=False,
                phase="FAILED",
                message=f"Strategy completed but failed to read final order state of {instrument_name}: {e.message}",
                order_id=state.order_id,
                instrument_name=instrument_name,
                edit_count=state.edit_count,
            )

        executed = final_order.filled_amount
        average_price = final_order.average_price
        stats = ExecutionStats(
            order_id=state.order_id,
            instrument_name=instrument_name,
            direction=direction,
            requested_quantity=quantity,
            executed_quantity=executed,
            average_price=average_price,
            initial_price=initial_price,
            final_price=average_price if average_price > 0 else state.current_price,
            total_steps=state.step,
            execution_time_ms=(time.perf_counter() - state.start_time) * 1000,
            price_movements=state.movements,
        )
        snapshot = await self._get_position_snapshot(token, instrument_name, account_name)

        if final_order.is_filled:
            message = f"Order fully executed: {executed} contracts at average price {average_price}"
        elif executed > 0:
            message = f"Order partially executed: {executed}/{quantity} contracts at average price {average_price}"
        else:
            message = f"Order not executed, final state: {final_order.order_state}"

        logger.info(
            f"📊 EXECUTION COMPLETE: {instrument_name} | {message} | "
            f"Steps={state.step} Edits={state.edit_count} Duration={stats.execution_time_ms:.0f}ms"
        )

        return ExecutionOutcome(
            success=True,
            phase="DONE",
            message=message,
            order_id=state.order_id,
            instrument_name=instrument_name,
            final_order_state=final_order.order_state,
            executed_quantity=executed,
            average_price=average_price,
            edit_count=state.edit_count,
            stats=stats,
            snapshot=snapshot,
        )

    async def _get_position_snapshot(
        self,
        token: str,
        instrument_name: str,
        account_name: str,
    ) -> PositionSnapshot:
        """该合约相关的挂单与持仓汇总；查询失败记录为 warning"""
        try:
            currency = parse_instrument_name(instrument_name)[0]
        except ValueError:
            currency = instrument_name.split('-')[0]

        snapshot = PositionSnapshot(currency=currency, account_name=account_name, timestamp=time.time())

        try:
            orders = await self.exchange.get_open_orders(token, kind="option")
            snapshot.related_orders = [o for o in orders if o.instrument_name == instrument_name]
        except DeribitServiceError as e:
            logger.warning(f"⚠️ Failed to fetch open orders for snapshot: {e}")
            snapshot.warnings.append(f"open orders unavailable: {e.message}")

        try:
            positions = await self.exchange.get_positions(token, kind="option")
            snapshot.positions = [p for p in positions if p.instrument_name == instrument_name]
        except DeribitServiceError as e:
            logger.warning(f"⚠️ Failed to fetch positions for snapshot: {e}")
            snapshot.warnings.append(f"positions unavailable: {e.message}")

        for position in snapshot.positions:
            snapshot.total_unrealized_pnl += position.unrealized_pnl
            snapshot.total_realized_pnl += position.realized_pnl
            snapshot.total_maintenance_margin += position.maintenance_margin
            snapshot.total_initial_margin += position.initial_margin
            snapshot.net_delta += position.delta or 0.0

        return snapshot
