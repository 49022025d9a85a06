"""
核心模块 - 配置、日志、认证、错误、敞口记录存储

Deribit Delta 期权执行服务
"""

from .config import (
    ServiceConfig,
    SystemConfig,
    StorageConfig,
    DeribitConfig,
    AccountConfig,
    ExecutionConfig,
    SelectionConfig,
    PollingConfig,
    CleanupConfig,
    load_config,
)

from .errors import (
    DeribitServiceError,
    NotFoundError,
    SpreadTooWideError,
    InvalidQuantityError,
    TransportError,
    AuthenticationError,
    ExchangeApiError,
    StoreConstraintError,
    error_from_rpc,
)

from .state import (
    RecordType,
    ExposureRecord,
    ExposureRecordInput,
    AccountSummary,
    InstrumentSummary,
    ExposureStore,
    parse_instrument_expiry,
)

from .auth import AuthService, AuthToken
from .cleanup_job import ExposureCleanupJob, CleanupReport
from .signal_processor import SignalProcessor, SignalResult, TradeSignal

__all__ = [
    # Config
    'ServiceConfig',
    'SystemConfig',
    'StorageConfig',
    'DeribitConfig',
    'AccountConfig',
    'ExecutionConfig',
    'SelectionConfig',
    'PollingConfig',
    'CleanupConfig',
    'load_config',

    # Errors
    'DeribitServiceError',
    'NotFoundError',
    'SpreadTooWideError',
    'InvalidQuantityError',
    'TransportError',
    'AuthenticationError',
    'ExchangeApiError',
    'StoreConstraintError',
    'error_from_rpc',

    # State
    'RecordType',
    'ExposureRecord',
    'ExposureRecordInput',
    'AccountSummary',
    'InstrumentSummary',
    'ExposureStore',
    'parse_instrument_expiry',

    # Auth
    'AuthService',
    'AuthToken',

    # Jobs / Signals
    'ExposureCleanupJob',
    'CleanupReport',
    'SignalProcessor',
    'SignalResult',
    'TradeSignal',
]
