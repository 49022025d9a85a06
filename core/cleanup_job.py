"""
敞口记录清理任务

Deribit Delta 期权执行服务

启动时立即执行一次，之后每 interval_hours 执行:
- 删除合约到期超过宽限期的记录
- 删除过旧的 ORDER 记录
上一轮尚未结束时跳过本轮调度。
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from .config import CleanupConfig
from .state import ExposureStore

logger = logging.getLogger(__name__)


@dataclass
class CleanupReport:
    """单轮清理结果"""
    expired_option_records: int = 0
    stale_order_records: int = 0
    skipped: bool = False

    @property
    def total(self) -> int:
        return self.expired_option_records + self.stale_order_records


class ExposureCleanupJob:
    """敞口记录定时清理"""

    def __init__(self, store: ExposureStore, config: Optional[CleanupConfig] = None):
        self.store = store
        self.config = config or CleanupConfig()

        self._task: Optional[asyncio.Task] = None
        self._running: bool = False
        self._in_progress: bool = False

    async def run_once(self, now: Optional[datetime] = None) -> CleanupReport:
        """执行一轮清理；上一轮仍在执行时跳过"""
        if self._in_progress:
            logger.info("⏳ Exposure cleanup still running, skipping this schedule")
            return CleanupReport(skipped=True)

        self._in_progress = True
        report = CleanupReport()
        try:
            report.expired_option_records = await self.store.cleanup_expired_option_records(
                self.config.grace_period_days, now=now
            )
            report.stale_order_records = await self.store.cleanup_expired_orders(self.config.order_max_age_days)

            next_run = datetime.now(timezone.utc) + timedelta(hours=self.config.interval_hours)
            logger.info(
                f"🗓️ Exposure cleanup completed: {report.expired_option_records} expired option records, "
                f"{report.stale_order_records} stale orders removed. Next run: {next_run.isoformat()}"
            )
        except sqlite3.Error as e:
            logger.error(f"❌ Exposure cleanup failed: {e}")
        finally:
            self._in_progress = False

        return report

    async def start(self) -> None:
        """启动定时任务"""
        if self._running:
            logger.info("ℹ️ Exposure cleanup job already running")
            return
        self._running = True
        self._task = asyncio.create_task(self._run())
        logger.info(f"🗓️ Exposure cleanup job started: every {self.config.interval_hours}h")

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
        logger.info("🛑 Exposure cleanup job stopped")

    async def _run(self) -> None:
        while self._running:
            await self.run_once()
            await asyncio.sleep(self.config.interval_hours * 3600)
