"""
交易信号处理模块

Deribit Delta 期权执行服务

将上游（如 TradingView webhook）信号转换为:
- 开仓: 直接对指定合约下单，或按 delta1 / n 选择合约后下单（n 缺省取配置的最小到期天数）
- 平仓: 按 tv_id 批量平仓
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Dict, List, Literal, Optional, Tuple

from pydantic import BaseModel, Field, field_validator

from .config import AccountConfig, SelectionConfig
from .errors import DeribitServiceError

if TYPE_CHECKING:
    from execution.option_selector import DeltaOptionSelector
    from execution.order_manager import OrderManager, OrderResult
    from risk.position_adjuster import BatchResult, PositionAdjuster

logger = logging.getLogger(__name__)

_QUOTE_SUFFIX = re.compile(r"(USDT|USD)$")


class TradeSignal(BaseModel):
    """上游交易信号"""
    account_name: str
    side: Literal["buy", "sell"]
    action: Literal["open", "open_long", "open_short", "close"] = "open"
    symbol: str
    size: float = Field(gt=0)
    qty_type: Literal["fixed", "cash", "contracts"] = "contracts"

    # delta 选择参数
    delta1: Optional[float] = Field(default=None, ge=-1.0, le=1.0)
    delta2: Optional[float] = Field(default=None, ge=-1.0, le=1.0)
    n: Optional[int] = Field(default=None, gt=0)
    instrument_name: Optional[str] = None

    tv_id: Optional[str] = None
    ratio: float = Field(default=1.0, gt=0.0, le=1.0)
    market_order: bool = False

    @field_validator('side', mode='before')
    @classmethod
    def normalize_side(cls, v: Any) -> Any:
        return v.lower() if isinstance(v, str) else v

    @field_validator('tv_id', mode='before')
    @classmethod
    def tv_id_to_str(cls, v: Any) -> Any:
        return str(v) if v is not None else None

    @property
    def is_opening(self) -> bool:
        return self.action != "close"

    def resolve_currency(self) -> Tuple[str, Optional[str]]:
        """
        从交易对符号解析 (currency, underlying)

        BTCUSDT  -> ("BTC", None)
        SOL_USDC -> ("USDC", "SOL")
        """
        symbol = self.symbol.upper()
        if symbol.endswith("_USDC"):
            return "USDC", symbol[:-len("_USDC")]
        return _QUOTE_SUFFIX.sub("", symbol), None


@dataclass
class SignalResult:
    """信号处理结果"""
    success: bool
    message: str
    instrument_name: Optional[str] = None
    order_result: Optional['OrderResult'] = None
    batch_result: Optional['BatchResult'] = None
    error_code: Optional[Any] = None


class SignalProcessor:
    """信号处理器"""

    def __init__(
        self,
        accounts: List[AccountConfig],
        selector: 'DeltaOptionSelector',
        order_manager: 'OrderManager',
        adjuster: 'PositionAdjuster',
        selection_config: Optional[SelectionConfig] = None
    ):
        self.accounts: Dict[str, AccountConfig] = {a.name: a for a in accounts}
        self.selector = selector
        self.order_manager = order_manager
        self.adjuster = adjuster
        self.selection_config = selection_config or SelectionConfig()

    def _check_account(self, account_name: str) -> Optional[str]:
        account = self.accounts.get(account_name)
        if account is None:
            return f"Account not found: {account_name}"
        if not account.enabled:
            return f"Account is disabled: {account_name}"
        return None

    async def process(self, signal: TradeSignal) -> SignalResult:
        """
        处理交易信号

        Args:
            signal: 交易信号

        Returns:
            SignalResult
        """
        logger.info(
            f"📡 Signal received: {signal.account_name} {signal.action} {signal.side} {signal.size} "
            f"{signal.symbol} ({signal.qty_type}) delta1={signal.delta1} n={signal.n} tv_id={signal.tv_id}"
        )

        error = self._check_account(signal.account_name)
        if error:
            logger.warning(f"⚠️ {error}")
            return SignalResult(success=False, message=error, error_code="account_invalid")

        if signal.is_opening:
            return await self._open(signal)
        return await self._close(signal)

    async def _open(self, signal: TradeSignal) -> SignalResult:
        # 避免运行期循环导入
        from execution.order_manager import OrderParams

        instrument_name = signal.instrument_name
        if signal.delta1 is not None and not instrument_name:
            currency, underlying = signal.resolve_currency()
            is_call = signal.side == "buy"
            min_days = signal.n if signal.n is not None else self.selection_config.default_min_expire_days
            try:
                candidate = await self.selector.select_by_delta(
                    currency, min_days, signal.delta1, is_call, underlying=underlying
                )
            except DeribitServiceError as e:
                message = (
                    f"Contract selection failed for {currency} {'call' if is_call else 'put'} "
                    f"delta={signal.delta1} with >= {min_days} days to expiry: {e.message}"
                )
                logger.error(f"❌ {message}")
                return SignalResult(success=False, message=message, error_code=e.code)
            if candidate is None:
                message = (
                    f"No suitable {currency} {'call' if is_call else 'put'} found for "
                    f"delta={signal.delta1} with >= {min_days} days to expiry"
                )
                logger.warning(f"⚠️ {message}")
                return SignalResult(success=False, message=message, error_code="not_found")
            instrument_name = candidate.instrument_name

        if not instrument_name:
            return SignalResult(
                success=False,
                message="Opening signal requires delta1 or an explicit instrument_name",
                error_code="invalid_signal",
            )

        params = OrderParams(
            direction=signal.side,
            quantity=signal.size,
            qty_type=signal.qty_type,
            action=signal.action,
            delta1=signal.delta1,
            delta2=signal.delta2,
            n=signal.n,
            tv_id=signal.tv_id,
        )
        result = await self.order_manager.place_option_order(signal.account_name, instrument_name, params)
        return SignalResult(
            success=result.success,
            message=result.message,
            instrument_name=instrument_name,
            order_result=result,
            error_code=result.error_code,
        )

    async def _close(self, signal: TradeSignal) -> SignalResult:
        if not signal.tv_id:
            return SignalResult(success=False, message="Close signal requires tv_id", error_code="invalid_signal")

        batch = await self.adjuster.close_by_signal_id(
            signal.account_name, signal.tv_id, signal.ratio, signal.market_order
        )
        return SignalResult(
            success=batch.success,
            message=batch.message,
            batch_result=batch,
            error_code=None if batch.success else "close_failed",
        )
