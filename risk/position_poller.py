"""
仓位轮询器 - 定时检查各账户仓位并触发移仓

Deribit Delta 期权执行服务

每轮对每个启用账户依次执行:
1. 对账挂单记录: 已成交 → POSITION，已取消/拒绝/不存在 → 删除
2. 遍历期权仓位，单位 delta = position.delta / position.size
3. 最新敞口记录设置了 min_expire_days 且 |target_delta| < |单位 delta| 时移仓

单个仓位或账户失败只记录日志，不影响其他仓位 / 账户。
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from dataclasses import dataclass, field
from typing import List, Optional

from core.config import AccountConfig, PollingConfig
from core.errors import DeribitServiceError, NotFoundError
from core.state import ExposureStore, RecordType
from execution.exchange import ExchangeClient
from execution.models import Position
from .position_adjuster import AdjustmentResult, PositionAdjuster
from .progressive_limit_executor import TokenProvider

logger = logging.getLogger(__name__)


@dataclass
class PollSummary:
    """单轮轮询统计"""
    accounts: int = 0
    failed_accounts: int = 0
    positions: int = 0
    orders_promoted: int = 0
    orders_removed: int = 0
    adjustments: List[AdjustmentResult] = field(default_factory=list)


def should_adjust(position: Position, target_delta: float, min_expire_days: Optional[int]) -> bool:
    """|target_delta| < |单位 delta| 且设置了最小到期天数时需要移仓"""
    if min_expire_days is None or position.size == 0:
        return False
    unit_delta = position.unit_delta or 0.0
    return abs(target_delta) < abs(unit_delta)


class PositionPoller:
    """仓位轮询器"""

    def __init__(
        self,
        exchange: ExchangeClient,
        token_provider: TokenProvider,
        store: ExposureStore,
        adjuster: PositionAdjuster,
        accounts: List[AccountConfig],
        config: Optional[PollingConfig] = None
    ):
        self.exchange = exchange
        self.tokens = token_provider
        self.store = store
        self.adjuster = adjuster
        self.accounts = accounts
        self.config = config or PollingConfig()

        self._task: Optional[asyncio.Task] = None
        self._running: bool = False
        self.poll_count: int = 0

        logger.info(
            f"PositionPoller initialized: interval={self.config.interval_seconds}s, "
            f"accounts={[a.name for a in accounts if a.enabled]}"
        )

    async def start(self) -> None:
        """启动轮询"""
        self._running = True
        self._task = asyncio.create_task(self._run())
        logger.info("PositionPoller started")

    async def stop(self) -> None:
        """停止"""
        if not self._running:
            return
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("PositionPoller stopped")

    async def _run(self) -> None:
        while self._running:
            await self.poll_once()
            await asyncio.sleep(self.config.interval_seconds)

    # ========================================================================
    # 轮询逻辑
    # ========================================================================

    async def poll_once(self) -> PollSummary:
        """对全部启用账户执行一轮轮询"""
        self.poll_count += 1
        summary = PollSummary()

        for account in self.accounts:
            if not account.enabled:
                continue
            summary.accounts += 1
            try:
                await self._poll_account(account.name, summary)
            except (DeribitServiceError, sqlite3.Error) as e:
                summary.failed_accounts += 1
                logger.error(f"❌ Polling failed for account {account.name}: {e}")

        logger.info(
            f"📊 Poll #{self.poll_count}: accounts={summary.accounts} positions={summary.positions} "
            f"promoted={summary.orders_promoted} removed={summary.orders_removed} "
            f"adjustments={len(summary.adjustments)} failed_accounts={summary.failed_accounts}"
        )
        return summary

    async def _poll_account(self, account_name: str, summary: PollSummary) -> None:
        token = await self.tokens.ensure_valid_token(account_name)

        if self.config.reconcile_orders:
            await self.reconcile_orders(account_name, token, summary)

        positions = await self.exchange.get_positions(token, kind="option")
        for position in positions:
            if position.size == 0:
                continue
            summary.positions += 1
            try:
                result = await self._analyze_position(account_name, position)
            except DeribitServiceError as e:
                logger.error(f"❌ Failed to analyze {account_name}/{position.instrument_name}: {e}")
                continue
            if result is not None:
                summary.adjustments.append(result)

    async def reconcile_orders(self, account_name: str, token: str, summary: Optional[PollSummary] = None) -> PollSummary:
        """对账 ORDER 记录"""
        summary = summary if summary is not None else PollSummary()
        records = await self.store.get_records(account_id=account_name, record_type=RecordType.ORDER)

        for record in records:
            if not record.order_id:
                continue
            try:
                order = await self.exchange.get_order_state(token, record.order_id)
            except NotFoundError:
                await self.store.delete_record(record.id)
                summary.orders_removed += 1
                logger.info(f"🗑️ Order {record.order_id} not found, record #{record.id} removed")
                continue
            except DeribitServiceError as e:
                logger.warning(f"⚠️ Failed to check order {record.order_id}: {e}")
                continue

            if order.is_filled:
                await self.store.promote_order_to_position(record.order_id)
                summary.orders_promoted += 1
            elif order.order_state in ("cancelled", "rejected"):
                await self.store.delete_record(record.id)
                summary.orders_removed += 1
                logger.info(f"🗑️ Order {record.order_id} {order.state_text}, record #{record.id} removed")

        return summary

    async def _analyze_position(self, account_name: str, position: Position) -> Optional[AdjustmentResult]:
        record = await self.store.get_account_instrument_record(account_name, position.instrument_name)
        if record is None:
            return None

        if not should_adjust(position, record.target_delta, record.min_expire_days):
            return None

        logger.info(
            f"📊 Delta analysis {account_name} {position.instrument_name}: "
            f"size={position.size} delta={position.delta} unit_delta={position.unit_delta:.4f} | "
            f"|target {record.target_delta}| < |unit delta| → adjusting to move delta {record.move_position_delta}"
        )
        result = await self.adjuster.adjust_position(account_name, position, record)
        if result.success:
            logger.info(f"✅ Adjustment succeeded: {result.message}")
        else:
            logger.warning(f"⚠️ Adjustment failed: {result.message}")
        return result
