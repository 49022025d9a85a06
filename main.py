#!/usr/bin/env python3
"""
Deribit Delta 期权执行服务 - 主程序入口

组件:
- ExposureStore: 敞口记录（SQLite）
- DeribitClient / FakeExchange: 交易所（mock 模式使用内存撮合）
- ProgressiveLimitExecutor + OrderManager: 下单与渐进式执行
- PositionAdjuster + PositionPoller: 移仓 / 平仓与定时轮询
- ExposureCleanupJob: 过期记录清理

使用方法:
    python main.py                          # 使用默认配置
    python main.py --config path.yaml       # 使用指定配置
    python main.py --mode mock              # 内存交易所
    python main.py --once                   # 只执行一轮轮询与清理
    python main.py --signal '{"account_name": ...}'  # 处理单个交易信号后退出
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import sys
from typing import List, Optional

from pydantic import ValidationError

from core.auth import AuthService
from core.cleanup_job import ExposureCleanupJob
from core.config import AccountConfig, ServiceConfig, load_config
from core.logging_config import setup_logging
from core.signal_processor import SignalProcessor, TradeSignal
from core.state import ExposureStore
from execution.deribit_client import DeribitClient
from execution.exchange import ExchangeClient
from execution.fake_exchange import FakeExchange, StaticTokenProvider
from execution.option_selector import DeltaOptionSelector
from execution.order_manager import OrderManager
from risk.position_adjuster import PositionAdjuster
from risk.position_poller import PositionPoller
from risk.progressive_limit_executor import ProgressiveLimitExecutor, TokenProvider

logger = logging.getLogger(__name__)


class OptionsService:
    """
    服务主类

    所有组件在 initialize() 中按依赖顺序创建并通过构造函数注入，
    不使用全局单例。
    """

    def __init__(self, config: ServiceConfig):
        self.config = config

        self.store: Optional[ExposureStore] = None
        self.exchange: Optional[ExchangeClient] = None
        self.auth: Optional[AuthService] = None
        self.tokens: Optional[TokenProvider] = None

        self.executor: Optional[ProgressiveLimitExecutor] = None
        self.selector: Optional[DeltaOptionSelector] = None
        self.order_manager: Optional[OrderManager] = None
        self.adjuster: Optional[PositionAdjuster] = None
        self.signal_processor: Optional[SignalProcessor] = None

        self.poller: Optional[PositionPoller] = None
        self.cleanup_job: Optional[ExposureCleanupJob] = None

        self._stopped: bool = False
        self._shutdown_event: Optional[asyncio.Event] = None

    @property
    def accounts(self) -> List[AccountConfig]:
        if self.config.system.mode == "mock" and not self.config.accounts:
            return [AccountConfig(name="mock", description="In-memory account")]
        return self.config.accounts

    async def initialize(self) -> None:
        """初始化所有组件"""
        mode = self.config.system.mode
        logger.info("=" * 60)
        logger.info(f"Deribit Delta Options Service - Initializing ({mode} mode)")
        logger.info("=" * 60)

        self._shutdown_event = asyncio.Event()

        # 1. 存储
        self.store = ExposureStore(self.config.storage.db_path)
        await self.store.initialize()

        # 2. 交易所与认证
        if mode == "mock":
            self.exchange = FakeExchange.build_sample_market("BTC")
            self.tokens = StaticTokenProvider()
        else:
            self.exchange = DeribitClient(self.config.deribit, mode)
            self.auth = AuthService(
                self.accounts,
                self.config.deribit,
                mode,
                refresh_margin_seconds=self.config.execution.token_refresh_margin_seconds,
            )
            self.tokens = self.auth

        # 3. 执行层
        self.executor = ProgressiveLimitExecutor(self.exchange, self.tokens, self.config.execution)
        self.selector = DeltaOptionSelector(self.exchange, self.config.selection)
        self.order_manager = OrderManager(
            self.exchange, self.tokens, self.executor, self.store, self.config.execution
        )

        # 4. 仓位管理
        self.adjuster = PositionAdjuster(
            self.exchange,
            self.tokens,
            self.selector,
            self.order_manager,
            self.executor,
            self.store,
            self.config.execution,
            self.config.selection,
        )
        self.signal_processor = SignalProcessor(
            self.accounts, self.selector, self.order_manager, self.adjuster, self.config.selection
        )

        # 5. 定时任务
        self.poller = PositionPoller(
            self.exchange, self.tokens, self.store, self.adjuster, self.accounts, self.config.polling
        )
        self.cleanup_job = ExposureCleanupJob(self.store, self.config.cleanup)

        logger.info("All components initialized successfully")

    async def run_once(self) -> None:
        """执行一轮轮询与清理"""
        await self.poller.poll_once()
        await self.cleanup_job.run_once()

    async def process_signal(self, payload: str) -> bool:
        """处理单个 JSON 交易信号"""
        try:
            trade_signal = TradeSignal.model_validate(json.loads(payload))
        except (json.JSONDecodeError, ValidationError) as e:
            logger.error(f"❌ Invalid trade signal: {e}")
            return False

        result = await self.signal_processor.process(trade_signal)
        if result.success:
            logger.info(f"✅ Signal processed: {result.message}")
        else:
            logger.error(f"❌ Signal failed: {result.message}")
        return result.success

    async def start(self) -> None:
        """启动后台任务并等待关闭请求"""
        if self.config.polling.enabled:
            await self.poller.start()
        if self.config.cleanup.enabled:
            await self.cleanup_job.start()

        logger.info("=" * 60)
        logger.info("Service RUNNING")
        logger.info("=" * 60)

        await self._shutdown_event.wait()

    async def stop(self) -> None:
        """停止服务"""
        if self._stopped:
            return
        self._stopped = True

        logger.info("Stopping service...")

        if self.poller:
            await self.poller.stop()
        if self.cleanup_job:
            await self.cleanup_job.stop()
        if self.exchange:
            await self.exchange.close()
        if self.auth:
            await self.auth.close()
        if self.store:
            await self.store.close()

        logger.info("Service stopped")

    def request_shutdown(self) -> None:
        """请求关闭"""
        if self._shutdown_event is not None:
            self._shutdown_event.set()


async def main(config: ServiceConfig, once: bool = False, signal_payload: Optional[str] = None) -> int:
    """主函数"""
    service = OptionsService(config)

    if sys.platform != "win32":
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, service.request_shutdown)

    try:
        await service.initialize()
        if signal_payload is not None:
            return 0 if await service.process_signal(signal_payload) else 1
        if once:
            await service.run_once()
            return 0
        await service.start()
        return 0
    finally:
        await service.stop()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Deribit Delta Options Service")
    parser.add_argument(
        "--config",
        type=str,
        default="config/settings.yaml",
        help="Configuration file path"
    )
    parser.add_argument(
        "--mode",
        type=str,
        choices=["live", "test", "mock"],
        help="Run mode (overrides config)"
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single poll and cleanup cycle, then exit"
    )
    parser.add_argument(
        "--signal",
        type=str,
        help="Process one JSON trade signal, then exit"
    )
    args = parser.parse_args()

    try:
        config = load_config(args.config)
    except FileNotFoundError:
        if args.mode != "mock":
            raise
        config = ServiceConfig()
    if args.mode:
        config.system.mode = args.mode

    setup_logging(
        log_dir=config.system.log_dir,
        log_level=getattr(logging, config.system.log_level),
    )

    try:
        config.validate_for_mode()
    except ValueError as e:
        logger.error(f"Invalid configuration: {e}")
        sys.exit(1)

    try:
        sys.exit(asyncio.run(main(config, once=args.once, signal_payload=args.signal)))
    except KeyboardInterrupt:
        logger.info("Received Ctrl+C, exiting...")
