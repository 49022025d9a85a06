"""
配置管理模块 - 使用 Pydantic 进行配置验证和管理

Deribit Delta 期权执行服务
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import List, Literal, Optional

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator


def _expand_env(value: str) -> str:
    """展开 ${ENV_VAR} 形式的环境变量"""
    if value.startswith("${") and value.endswith("}"):
        return os.environ.get(value[2:-1], "")
    return value


class SystemConfig(BaseModel):
    """系统配置"""
    mode: Literal["live", "test", "mock"] = "test"
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    log_dir: str = "logs"


class StorageConfig(BaseModel):
    """存储配置"""
    db_path: str = "data/delta_records.db"


class DeribitConfig(BaseModel):
    """Deribit 连接配置"""
    base_url: str = "https://www.deribit.com/api/v2"
    test_base_url: str = "https://test.deribit.com/api/v2"
    timeout: int = Field(default=15, ge=1, le=120)
    user_agent: str = "Deribit-Options-Service/1.0"

    def resolve_base_url(self, mode: str) -> str:
        """根据运行模式选择 API 地址"""
        url = self.base_url if mode == "live" else self.test_base_url
        return url if url.endswith("/api/v2") else f"{url.rstrip('/')}/api/v2"


class AccountConfig(BaseModel):
    """交易账户配置"""
    name: str
    description: str = ""
    client_id: str = ""
    client_secret: str = ""
    enabled: bool = True
    grant_type: Literal["client_credentials", "client_signature", "refresh_token"] = "client_credentials"
    scope: str = ""

    @field_validator('client_id', 'client_secret')
    @classmethod
    def expand_env_vars(cls, v: str) -> str:
        """展开环境变量"""
        return _expand_env(v)


class ExecutionConfig(BaseModel):
    """订单执行配置"""
    # 价差门限: spread_ratio 超过该值时直接挂限价单，不做渐进式追单
    spread_ratio_threshold: float = Field(default=0.15, gt=0.0, le=1.0)

    # 智能定价: 以被动侧为基准向对手侧偏移 spread * ratio
    smart_price_ratio: float = Field(default=0.2, ge=0.0, le=1.0)

    # 渐进式限价策略
    step_timeout_ms: int = Field(default=8000, ge=0, le=60000)
    max_step: int = Field(default=3, ge=1, le=10)

    token_refresh_margin_seconds: int = Field(default=5, ge=0, le=300)


class SelectionConfig(BaseModel):
    """期权选择配置"""
    default_min_expire_days: int = Field(default=7, ge=1, le=365)
    expiry_groups: int = Field(default=2, ge=1, le=5)
    candidates_per_group: int = Field(default=2, ge=1, le=5)


class PollingConfig(BaseModel):
    """仓位轮询配置"""
    enabled: bool = True
    interval_seconds: int = Field(default=60, ge=5, le=3600)
    reconcile_orders: bool = True


class CleanupConfig(BaseModel):
    """记录清理任务配置"""
    enabled: bool = True
    grace_period_days: int = Field(default=7, ge=0, le=365)
    order_max_age_days: int = Field(default=7, ge=1, le=365)
    interval_hours: int = Field(default=24, ge=1, le=168)


class ServiceConfig(BaseModel):
    """主配置类 - 聚合所有配置"""
    system: SystemConfig = Field(default_factory=SystemConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    deribit: DeribitConfig = Field(default_factory=DeribitConfig)
    accounts: List[AccountConfig] = []
    execution: ExecutionConfig = Field(default_factory=ExecutionConfig)
    selection: SelectionConfig = Field(default_factory=SelectionConfig)
    polling: PollingConfig = Field(default_factory=PollingConfig)
    cleanup: CleanupConfig = Field(default_factory=CleanupConfig)

    @model_validator(mode='after')
    def validate_unique_accounts(self) -> 'ServiceConfig':
        names = [a.name for a in self.accounts]
        if len(names) != len(set(names)):
            raise ValueError("account names must be unique")
        return self

    @classmethod
    def from_yaml(cls, path: str | Path) -> 'ServiceConfig':
        """从YAML文件加载配置"""
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")

        with open(path, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f) or {}

        return cls(**data)

    def to_yaml(self, path: str | Path) -> None:
        """保存配置到YAML文件"""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)

        with open(path, 'w', encoding='utf-8') as f:
            yaml.dump(self.model_dump(), f, default_flow_style=False, allow_unicode=True)

    def get_account(self, name: str) -> Optional[AccountConfig]:
        """按名称查找账户"""
        for account in self.accounts:
            if account.name == name:
                return account
        return None

    @property
    def enabled_accounts(self) -> List[AccountConfig]:
        return [a for a in self.accounts if a.enabled]

    def validate_for_mode(self) -> None:
        """根据运行模式验证配置"""
        if self.system.mode == "mock":
            return

        enabled = self.enabled_accounts
        if not enabled:
            raise ValueError(f"At least one enabled account is required in {self.system.mode} mode")

        for account in enabled:
            if not account.client_id or not account.client_secret:
                raise ValueError(f"Credentials missing for account: {account.name}")


def load_config(config_path: Optional[str] = None) -> ServiceConfig:
    """
    加载配置的便捷函数

    优先级:
    1. 指定路径
    2. 环境变量 DERIBIT_CONFIG_PATH
    3. 默认路径 config/settings.yaml
    """
    if config_path is None:
        config_path = os.environ.get('DERIBIT_CONFIG_PATH', 'config/settings.yaml')

    return ServiceConfig.from_yaml(config_path)
