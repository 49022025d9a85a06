"""
异常定义模块

Deribit Delta 期权执行服务

所有业务异常继承 DeribitServiceError，携带机器可读的 code 与上下文，
在各公开操作的边界处被捕获并转换为结构化结果。
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

# Deribit JSON-RPC 错误码分类
NOT_FOUND_CODES = {10004, 13020}
AUTH_ERROR_CODES = {13004, 13009, 13010, 13011, 13012, 13021}


class DeribitServiceError(Exception):
    """服务异常基类"""

    default_code = "service_error"

    def __init__(
        self,
        message: str,
        code: Optional[Union[int, str]] = None,
        context: Optional[Dict[str, Any]] = None,
        original_error: Optional[Exception] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code if code is not None else self.default_code
        self.context = context or {}
        self.original_error = original_error
        self.timestamp = datetime.now(timezone.utc)

    def to_dict(self) -> Dict[str, Any]:
        """转换为字典，便于日志和返回"""
        return {
            "error_type": self.__class__.__name__,
            "code": self.code,
            "message": self.message,
            "context": self.context,
            "original_error": str(self.original_error) if self.original_error else None,
            "timestamp": self.timestamp.isoformat(),
        }

    def __str__(self) -> str:
        parts = [f"{self.__class__.__name__}: {self.message}"]
        if self.code != self.default_code:
            parts.append(f"[code={self.code}]")
        if self.original_error:
            parts.append(f"(caused by: {self.original_error})")
        return " ".join(parts)


class NotFoundError(DeribitServiceError):
    """合约或订单不存在"""
    default_code = "not_found"


class SpreadTooWideError(DeribitServiceError):
    """盘口价差过大"""
    default_code = "spread_too_wide"

    def __init__(
        self,
        instrument_name: str,
        spread_ratio: float,
        threshold: float,
        message: Optional[str] = None,
    ) -> None:
        super().__init__(
            message or (
                f"Spread too wide for {instrument_name}: "
                f"ratio={spread_ratio:.4f} > threshold={threshold:.4f}"
            ),
            context={
                "instrument_name": instrument_name,
                "spread_ratio": spread_ratio,
                "threshold": threshold,
            },
        )
        self.instrument_name = instrument_name
        self.spread_ratio = spread_ratio
        self.threshold = threshold


class InvalidQuantityError(DeribitServiceError):
    """下单数量非法"""
    default_code = "invalid_quantity"


class TransportError(DeribitServiceError):
    """网络 / 交易所通讯错误"""
    default_code = "transport_error"


class AuthenticationError(TransportError):
    """认证失败"""
    default_code = "auth_error"


class ExchangeApiError(TransportError):
    """交易所返回的其他 JSON-RPC 错误"""
    default_code = "exchange_error"


class StoreConstraintError(DeribitServiceError):
    """存储唯一性 / CHECK 约束冲突"""
    default_code = "store_constraint"


def error_from_rpc(error: Dict[str, Any], method: str) -> DeribitServiceError:
    """将 JSON-RPC error 对象映射为异常类型"""
    code = error.get("code")
    message = f"Deribit API error on {method}: {error.get('message', 'unknown')} (code: {code})"
    context = {"method": method, "data": error.get("data")}

    if code in NOT_FOUND_CODES:
        return NotFoundError(message, code=code, context=context)
    if code in AUTH_ERROR_CODES:
        return AuthenticationError(message, code=code, context=context)
    return ExchangeApiError(message, code=code, context=context)
