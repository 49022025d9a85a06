"""
Deribit 认证模块 - access token 缓存与刷新

Deribit Delta 期权执行服务

使用 aiohttp 调用 public/auth:
- client_credentials 首次登录
- refresh_token 续期，失败时回退为重新登录
- 每个账户一个 token，到期前 margin 秒内视为失效
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Dict, List, Optional

import aiohttp

from .config import AccountConfig, DeribitConfig
from .errors import AuthenticationError, TransportError

logger = logging.getLogger(__name__)


@dataclass
class AuthToken:
    """访问令牌"""
    access_token: str
    refresh_token: Optional[str]
    expires_at: float  # epoch 秒
    scope: str = ""
    token_type: str = "bearer"

    def is_valid(self, margin_seconds: float = 5.0) -> bool:
        return time.time() < self.expires_at - margin_seconds


class AuthService:
    """
    认证服务

    对外只暴露 ensure_valid_token(account_name)，长时间运行的执行策略
    在每一步前调用以保证 token 有效。
    """

    def __init__(
        self,
        accounts: List[AccountConfig],
        deribit_config: DeribitConfig,
        mode: str = "test",
        refresh_margin_seconds: int = 5,
    ):
        self.accounts = {a.name: a for a in accounts}
        self.config = deribit_config
        self.base_url = deribit_config.resolve_base_url(mode)
        self.refresh_margin_seconds = refresh_margin_seconds

        self._tokens: Dict[str, AuthToken] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._session: Optional[aiohttp.ClientSession] = None

        logger.info(f"AuthService initialized: {len(self.accounts)} accounts")

    async def _get_session(self) -> aiohttp.ClientSession:
        """获取 HTTP 会话"""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.config.timeout),
                headers={"User-Agent": self.config.user_agent},
            )
        return self._session

    async def close(self) -> None:
        """关闭会话"""
        if self._session and not self._session.closed:
            await self._session.close()

    def _get_account(self, account_name: str) -> AccountConfig:
        account = self.accounts.get(account_name)
        if account is None:
            raise AuthenticationError(f"Account not found: {account_name}", code="account_not_found")
        if not account.enabled:
            raise AuthenticationError(f"Account is disabled: {account_name}", code="account_disabled")
        return account

    async def _auth_request(self, params: Dict[str, str]) -> AuthToken:
        session = await self._get_session()
        url = f"{self.base_url}/public/auth"

        try:
            async with session.get(url, params=params) as response:
                payload = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise TransportError(f"Auth request failed: {e}", original_error=e)

        if payload.get("error"):
            error = payload["error"]
            raise AuthenticationError(
                f"Authentication rejected: {error.get('message')} (code: {error.get('code')})",
                code=error.get("code"),
            )

        result = payload.get("result") or {}
        if not result.get("access_token"):
            raise AuthenticationError("Invalid response: No access token received")

        return AuthToken(
            access_token=result["access_token"],
            refresh_token=result.get("refresh_token"),
            expires_at=time.time() + float(result.get("expires_in", 0)),
            scope=result.get("scope", ""),
            token_type=result.get("token_type", "bearer"),
        )

    async def authenticate(self, account_name: str) -> AuthToken:
        """使用 client credentials 登录"""
        account = self._get_account(account_name)
        params = {
            "grant_type": account.grant_type,
            "client_id": account.client_id,
            "client_secret": account.client_secret,
        }
        if account.scope:
            params["scope"] = account.scope

        token = await self._auth_request(params)
        self._tokens[account_name] = token
        logger.info(f"✅ Authenticated account: {account_name}")
        return token

    async def refresh(self, account_name: str) -> AuthToken:
        """使用 refresh token 续期"""
        cached = self._tokens.get(account_name)
        if cached is None or not cached.refresh_token:
            raise AuthenticationError(f"No refresh token available for {account_name}")

        try:
            token = await self._auth_request({
                "grant_type": "refresh_token",
                "refresh_token": cached.refresh_token,
            })
        except TransportError:
            self._tokens.pop(account_name, None)
            raise

        self._tokens[account_name] = token
        logger.debug(f"Token refreshed for account: {account_name}")
        return token

    async def ensure_valid_token(self, account_name: str) -> str:
        """
        获取有效 access token

        Args:
            account_name: 账户名称

        Returns:
            access token 字符串
        """
        lock = self._locks.setdefault(account_name, asyncio.Lock())
        async with lock:
            token = self._tokens.get(account_name)
            if token is not None and token.is_valid(self.refresh_margin_seconds):
                return token.access_token

            if token is not None and token.refresh_token:
                try:
                    return (await self.refresh(account_name)).access_token
                except TransportError as e:
                    logger.warning(f"⚠️ Token refresh failed for {account_name}, re-authenticating: {e}")

            return (await self.authenticate(account_name)).access_token