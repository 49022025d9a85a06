"""
仓位调整 / 平仓模块

Deribit Delta 期权执行服务

调整 (移仓):
1. 从当前合约名解析 currency / underlying
2. 以记录的 move_position_delta 与最小到期天数重新选择合约
3. 新合约价差过大时放弃
4. 全平当前仓位，再以相同方向、相同数量开新仓位

平仓:
1. 当前合约价差过大时放弃（不在坏盘口强行平仓）
2. 平仓数量 = |size| × ratio，向上对齐最小交易单位
3. 反向下单，非市价单时交给渐进式执行器
4. ratio = 1 时删除敞口记录
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from core.config import ExecutionConfig, SelectionConfig
from core.errors import DeribitServiceError, NotFoundError, SpreadTooWideError
from core.state import ExposureRecord, ExposureStore, RecordType
from execution.exchange import ExchangeClient
from execution.models import OrderDirection, OrderState, Position, parse_instrument_name
from execution.option_selector import DeltaOptionSelector
from execution.order_manager import OrderManager, OrderParams, OrderResult
from execution.price_utils import (
    calculate_spread_ratio,
    correct_amount,
    correct_smart_price,
    format_spread_ratio,
)
from .progressive_limit_executor import ExecutionOutcome, ProgressiveLimitExecutor, TokenProvider

logger = logging.getLogger(__name__)


@dataclass
class CloseResult:
    """单个仓位平仓结果"""
    success: bool
    message: str
    instrument_name: str
    order: Optional[OrderState] = None
    outcome: Optional[ExecutionOutcome] = None
    close_direction: Optional[OrderDirection] = None
    original_size: float = 0.0
    close_quantity: float = 0.0
    remaining_size: float = 0.0
    close_ratio: float = 1.0
    record_deleted: bool = False
    error_code: Optional[object] = None


@dataclass
class AdjustmentResult:
    """移仓结果"""
    success: bool
    message: str
    old_instrument: str
    new_instrument: Optional[str] = None
    old_size: float = 0.0
    old_delta: Optional[float] = None
    new_direction: Optional[OrderDirection] = None
    new_quantity: float = 0.0
    target_delta: Optional[float] = None
    close_result: Optional[CloseResult] = None
    order_result: Optional[OrderResult] = None
    error_code: Optional[object] = None


@dataclass
class BatchResult:
    """按信号ID批量操作结果"""
    success: bool
    message: str
    signal_id: str
    total: int = 0
    succeeded: int = 0
    instruments: List[str] = field(default_factory=list)
    results: List[object] = field(default_factory=list)


class PositionAdjuster:
    """
    仓位调整器

    依赖全部由构造函数注入:
    - exchange / token_provider: 交易所与认证
    - selector: 按 delta 选择替换合约
    - order_manager: 开新仓
    - executor: 平仓时的渐进式执行
    - store: 敞口记录
    """

    def __init__(
        self,
        exchange: ExchangeClient,
        token_provider: TokenProvider,
        selector: DeltaOptionSelector,
        order_manager: OrderManager,
        executor: ProgressiveLimitExecutor,
        store: ExposureStore,
        config: Optional[ExecutionConfig] = None,
        selection_config: Optional[SelectionConfig] = None
    ):
        self.exchange = exchange
        self.tokens = token_provider
        self.selector = selector
        self.order_manager = order_manager
        self.executor = executor
        self.store = store
        self.config = config or ExecutionConfig()
        self.selection_config = selection_config or SelectionConfig()

        logger.info(f"PositionAdjuster initialized: spread_threshold={self.config.spread_ratio_threshold}")

    # ========================================================================
    # 平仓
    # ========================================================================

    async def close_position(
        self,
        account_name: str,
        position: Position,
        record: Optional[ExposureRecord] = None,
        ratio: float = 1.0,
        market_order: bool = False
    ) -> CloseResult:
        """
        平掉一个仓位的 ratio 比例

        Args:
            account_name: 账户名称
            position: 当前仓位
            record: 对应的敞口记录（全平时删除）
            ratio: 平仓比例 (0, 1]
            market_order: True 时直接市价平仓

        Returns:
            CloseResult
        """
        instrument_name = position.instrument_name
        total_size = abs(position.size)

        if ratio <= 0 or ratio > 1:
            return CloseResult(
                success=False,
                message=f"Invalid close ratio for {instrument_name}: {ratio}. Must be in (0, 1]",
                instrument_name=instrument_name,
                original_size=position.size,
                close_ratio=ratio,
                error_code="invalid_ratio",
            )

        logger.info(f"🔄 Closing {instrument_name}: size={position.size} ratio={ratio} market={market_order}")

        try:
            quote = await self.exchange.get_ticker(instrument_name)
            spread_ratio = calculate_spread_ratio(quote.best_bid_price, quote.best_ask_price)
            if spread_ratio > self.config.spread_ratio_threshold:
                raise SpreadTooWideError(
                    instrument_name, spread_ratio, self.config.spread_ratio_threshold,
                    message=(
                        f"平仓价差过大 Price spread too wide for {instrument_name}: "
                        f"{format_spread_ratio(spread_ratio)} exceeds threshold "
                        f"{format_spread_ratio(self.config.spread_ratio_threshold)} "
                        f"(bid {quote.best_bid_price}, ask {quote.best_ask_price})"
                    ),
                )

            instrument = await self.exchange.get_instrument(instrument_name)
            close_quantity = min(correct_amount(total_size * ratio, instrument, rounding="up").amount, total_size)
            close_direction: OrderDirection = "sell" if position.size > 0 else "buy"

            logger.info(
                f"📉 Closing position: {close_direction} {close_quantity} of {instrument_name} "
                f"({ratio:.1%} of {total_size})"
            )

            token = await self.tokens.ensure_valid_token(account_name)
            outcome = None

            if market_order:
                order = await self.exchange.place_order(
                    token, instrument_name, close_direction, close_quantity, order_type="market"
                )
            else:
                price = correct_smart_price(
                    quote.best_bid_price, quote.best_ask_price, close_direction, instrument,
                    self.config.smart_price_ratio
                )
                order = await self.exchange.place_order(
                    token, instrument_name, close_direction, close_quantity, order_type="limit", price=price
                )
                outcome = await self.executor.execute(
                    order_id=order.order_id,
                    instrument=instrument,
                    direction=close_direction,
                    quantity=close_quantity,
                    initial_price=price,
                    account_name=account_name,
                )
                if not outcome.success:
                    logger.warning(f"⚠️ Progressive close ended without final state: {outcome.message}")

        except DeribitServiceError as e:
            logger.error(f"❌ Close failed for {instrument_name}: {e}")
            return CloseResult(
                success=False,
                message=f"Close failed for {instrument_name}: {e.message}",
                instrument_name=instrument_name,
                original_size=position.size,
                close_ratio=ratio,
                error_code=e.code,
            )

        record_deleted = False
        if ratio == 1 and record is not None:
            record_deleted = await self.store.delete_record(record.id)
            logger.info(f"🗑️ Exposure record #{record.id} deleted: {record_deleted}")
        elif record is not None:
            logger.info(f"📝 Partial close ({ratio:.1%}), keeping exposure record #{record.id}")

        logger.info(f"✅ Position close order {order.order_id} for {instrument_name} completed")
        return CloseResult(
            success=True,
            message=f"Closed {close_quantity}/{total_size} of {instrument_name}"
                    + (f": {outcome.message}" if outcome else ""),
            instrument_name=instrument_name,
            order=order,
            outcome=outcome,
            close_direction=close_direction,
            original_size=position.size,
            close_quantity=close_quantity,
            remaining_size=max(total_size - close_quantity, 0.0),
            close_ratio=ratio,
            record_deleted=record_deleted,
        )

    # ========================================================================
    # 移仓
    # ========================================================================

    async def adjust_position(
        self,
        account_name: str,
        position: Position,
        record: ExposureRecord
    ) -> AdjustmentResult:
        """
        按敞口记录移仓到新的 delta 合约

        Args:
            account_name: 账户名称
            position: 当前仓位
            record: 该仓位的敞口记录（move_position_delta 决定新合约）

        Returns:
            AdjustmentResult
        """
        instrument_name = position.instrument_name
        min_expire_days = record.min_expire_days or self.selection_config.default_min_expire_days
        is_call = record.move_position_delta > 0
        target = record.move_position_delta

        logger.info(
            f"🔄 Adjusting {account_name} {instrument_name}: size={position.size} delta={position.delta} "
            f"→ move_delta={record.move_position_delta} min_expire_days={min_expire_days}"
        )

        def failure(message: str, code: object, **kwargs) -> AdjustmentResult:
            logger.warning(f"⚠️ Adjustment of {instrument_name} failed: {message}")
            return AdjustmentResult(
                success=False,
                message=message,
                old_instrument=instrument_name,
                old_size=position.size,
                old_delta=position.delta,
                target_delta=record.move_position_delta,
                error_code=code,
                **kwargs,
            )

        try:
            currency, underlying = parse_instrument_name(instrument_name)
            await self.exchange.get_instrument(instrument_name)
        except ValueError as e:
            return failure(f"Invalid instrument name {instrument_name}: {e}", "invalid_instrument")
        except DeribitServiceError as e:
            return failure(f"Failed to validate instrument {instrument_name}: {e.message}", e.code)

        try:
            candidate = await self.selector.select_by_delta(
                currency,
                min_expire_days,
                target,
                is_call,
                underlying=underlying if underlying != currency else None,
            )
        except DeribitServiceError as e:
            return failure(
                f"Replacement selection failed for {currency} {'call' if is_call else 'put'} "
                f"near delta {target} with >= {min_expire_days} days to expiry: {e.message}",
                e.code,
            )
        if candidate is None:
            error = NotFoundError(
                f"No {currency} {'call' if is_call else 'put'} found near delta {target} "
                f"with >= {min_expire_days} days to expiry"
            )
            return failure(error.message, error.code)

        if candidate.spread_ratio > self.config.spread_ratio_threshold:
            error = SpreadTooWideError(
                candidate.instrument_name, candidate.spread_ratio, self.config.spread_ratio_threshold,
                message=(
                    f"换仓价差过大 Price spread too wide for {candidate.instrument_name}: "
                    f"{format_spread_ratio(candidate.spread_ratio)} exceeds threshold "
                    f"{format_spread_ratio(self.config.spread_ratio_threshold)} "
                    f"(delta distance {candidate.delta_distance:.4f})"
                ),
            )
            return failure(error.message, error.code, new_instrument=candidate.instrument_name)

        # 平仓成交后才删除旧记录
        close_result = await self.close_position(account_name, position, None, ratio=1.0, market_order=False)
        if not close_result.success:
            return failure(
                f"Failed to close {instrument_name}: {close_result.message}",
                close_result.error_code,
                new_instrument=candidate.instrument_name,
                close_result=close_result,
            )

        outcome = close_result.outcome
        if outcome is not None and not outcome.is_filled:
            return failure(
                f"Close of {instrument_name} not filled ({outcome.executed_quantity}/{close_result.close_quantity}, "
                f"state {outcome.final_order_state}), not opening {candidate.instrument_name}",
                "close_incomplete",
                new_instrument=candidate.instrument_name,
                close_result=close_result,
            )

        close_result.record_deleted = await self.store.delete_record(record.id)
        logger.info(f"🗑️ Exposure record #{record.id} deleted: {close_result.record_deleted}")

        new_direction: OrderDirection = "buy" if position.size > 0 else "sell"
        new_quantity = abs(position.size)
        params = OrderParams(
            direction=new_direction,
            quantity=new_quantity,
            qty_type="fixed",
            action="open_long" if new_direction == "buy" else "open_short",
            delta1=record.move_position_delta,
            delta2=record.target_delta,
            n=record.min_expire_days,
            tv_id=record.tv_id,
        )
        order_result = await self.order_manager.place_option_order(account_name, candidate.instrument_name, params)
        if not order_result.success:
            logger.error(f"❌ Old position {instrument_name} closed but new position failed: {order_result.message}")
            return failure(
                f"Failed to open new position {candidate.instrument_name}: {order_result.message}",
                order_result.error_code,
                new_instrument=candidate.instrument_name,
                close_result=close_result,
                order_result=order_result,
            )

        logger.info(f"✅ Adjusted {instrument_name} → {candidate.instrument_name} ({new_direction} {new_quantity})")
        return AdjustmentResult(
            success=True,
            message=f"Adjusted {instrument_name} → {candidate.instrument_name}: {order_result.message}",
            old_instrument=instrument_name,
            new_instrument=candidate.instrument_name,
            old_size=position.size,
            old_delta=position.delta,
            new_direction=new_direction,
            new_quantity=new_quantity,
            target_delta=record.move_position_delta,
            close_result=close_result,
            order_result=order_result,
        )

    # ========================================================================
    # 按信号ID批量操作
    # ========================================================================

    async def _load_signal_targets(
        self,
        account_name: str,
        signal_id: str
    ) -> Dict[str, tuple]:
        """返回 instrument_name -> (record, position)，同一合约优先使用 POSITION 记录"""
        records = await self.store.get_records(account_id=account_name, tv_id=signal_id)
        if not records:
            return {}

        token = await self.tokens.ensure_valid_token(account_name)
        positions = {p.instrument_name: p for p in await self.exchange.get_positions(token, kind="option")}

        targets: Dict[str, tuple] = {}
        for record in records:
            existing = targets.get(record.instrument_name)
            if existing and existing[0].record_type == RecordType.POSITION:
                continue
            targets[record.instrument_name] = (record, positions.get(record.instrument_name))
        return targets

    async def close_by_signal_id(
        self,
        account_name: str,
        signal_id: str,
        ratio: float = 1.0,
        market_order: bool = False
    ) -> BatchResult:
        """按信号ID平掉所有相关仓位"""
        if ratio <= 0 or ratio > 1:
            return BatchResult(False, f"Invalid close ratio: {ratio}. Must be in (0, 1]", signal_id)

        try:
            targets = await self._load_signal_targets(account_name, signal_id)
        except DeribitServiceError as e:
            return BatchResult(False, f"Position close failed for tv_id {signal_id}: {e.message}", signal_id)

        if not targets:
            return BatchResult(False, f"No delta records found for tv_id: {signal_id}", signal_id)

        results: List[CloseResult] = []
        for instrument_name, (record, position) in targets.items():
            if position is None or position.size == 0:
                logger.warning(f"⚠️ No active position found for instrument: {instrument_name}")
                results.append(CloseResult(
                    success=False,
                    message=f"No active position found for instrument: {instrument_name}",
                    instrument_name=instrument_name,
                ))
                continue
            results.append(await self.close_position(account_name, position, record, ratio, market_order))

        succeeded = [r for r in results if r.success]
        if succeeded and ratio == 1:
            try:
                deleted = await self.store.delete_records(account_id=account_name, tv_id=signal_id)
                logger.info(f"🗑️ Deleted {deleted} exposure records for tv_id: {signal_id}")
            except sqlite3.Error as e:
                logger.error(f"❌ Failed to delete exposure records for tv_id {signal_id}: {e}")

        return BatchResult(
            success=bool(succeeded),
            message=f"Position close completed: {len(succeeded)}/{len(results)} successful",
            signal_id=signal_id,
            total=len(results),
            succeeded=len(succeeded),
            instruments=[r.instrument_name for r in succeeded],
            results=results,
        )

    async def adjust_by_signal_id(self, account_name: str, signal_id: str) -> BatchResult:
        """按信号ID移仓所有相关仓位"""
        try:
            targets = await self._load_signal_targets(account_name, signal_id)
        except DeribitServiceError as e:
            return BatchResult(False, f"Position adjustment failed for tv_id {signal_id}: {e.message}", signal_id)

        if not targets:
            return BatchResult(False, f"No delta records found for tv_id: {signal_id}", signal_id)

        results: List[AdjustmentResult] = []
        for instrument_name, (record, position) in targets.items():
            if position is None or position.size == 0:
                logger.warning(f"⚠️ No active position found for instrument: {instrument_name}")
                results.append(AdjustmentResult(
                    success=False,
                    message=f"No active position found for instrument: {instrument_name}",
                    old_instrument=instrument_name,
                ))
                continue
            results.append(await self.adjust_position(account_name, position, record))

        succeeded = [r for r in results if r.success]
        message = f"Position adjustment completed: {len(succeeded)}/{len(results)} successful"
        failures = [r.message for r in results if not r.success]
        if failures:
            message += f". Failures ({len(failures)}): " + "; ".join(failures)

        return BatchResult(
            success=bool(succeeded),
            message=message,
            signal_id=signal_id,
            total=len(results),
            succeeded=len(succeeded),
            instruments=[r.new_instrument for r in succeeded if r.new_instrument],
            results=results,
        )
