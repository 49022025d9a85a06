"""
日志配置模块 - 支持按日期生成日志文件

Deribit Delta 期权执行服务

特性:
- 控制台输出 + 文件日志
- 按日期自动分割日志文件
- 执行相关日志单独落盘
"""

from __future__ import annotations

import logging
import sys
from datetime import datetime
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path

# 需要额外写入 trades 日志的执行类 logger
TRADE_LOGGERS = [
    'execution.order_manager',
    'risk.progressive_limit_executor',
    'risk.position_adjuster',
]


def _rotating_handler(path: Path, level: int, fmt: logging.Formatter, backup_count: int) -> TimedRotatingFileHandler:
    handler = TimedRotatingFileHandler(
        filename=str(path),
        when='midnight',
        interval=1,
        backupCount=backup_count,
        encoding='utf-8'
    )
    handler.setLevel(level)
    handler.setFormatter(fmt)
    handler.suffix = "%Y-%m-%d"
    return handler


def setup_logging(
    log_dir: str = "logs",
    log_level: int = logging.INFO,
    console_level: int = logging.INFO,
    file_level: int = logging.DEBUG
) -> None:
    """
    配置日志系统

    Args:
        log_dir: 日志目录
        log_level: 根日志级别
        console_level: 控制台日志级别
        file_level: 文件日志级别
    """
    log_path = Path(log_dir)
    log_path.mkdir(parents=True, exist_ok=True)

    console_format = '%(asctime)s | %(levelname)-8s | %(name)-20s | %(message)s'
    file_format = '%(asctime)s | %(levelname)-8s | %(name)-25s | %(funcName)-20s | %(message)s'
    date_format = '%Y-%m-%d %H:%M:%S'
    file_formatter = logging.Formatter(file_format, date_format)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    # 清除已有的 handlers（避免重复）
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(console_level)
    console_handler.setFormatter(logging.Formatter(console_format, date_format))
    root_logger.addHandler(console_handler)

    today = datetime.now().strftime('%Y-%m-%d')

    log_file = log_path / f"service_{today}.log"
    root_logger.addHandler(_rotating_handler(log_file, file_level, file_formatter, 30))

    # 交易日志 - 保留 90 天
    trade_log_file = log_path / f"trades_{today}.log"
    trade_handler = _rotating_handler(trade_log_file, logging.INFO, file_formatter, 90)
    for logger_name in TRADE_LOGGERS:
        trade_logger = logging.getLogger(logger_name)
        trade_logger.handlers.clear()
        trade_logger.addHandler(trade_handler)

    error_log_file = log_path / f"errors_{today}.log"
    root_logger.addHandler(_rotating_handler(error_log_file, logging.ERROR, file_formatter, 30))

    # 降低第三方库的日志级别
    logging.getLogger('asyncio').setLevel(logging.WARNING)
    logging.getLogger('aiosqlite').setLevel(logging.WARNING)
    logging.getLogger('aiohttp').setLevel(logging.WARNING)

    logging.info(f"Logging initialized: {log_file}")
    logging.info(f"Trade log: {trade_log_file}")
    logging.info(f"Error log: {error_log_file}")
