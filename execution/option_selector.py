"""
期权选择器模块 - 按目标 Delta 选择合约

Deribit Delta 期权执行服务

选择流程:
1. 拉取币种下全部期权，按 call/put 与标的过滤
2. 过滤掉到期天数不足 min_expire_days 的合约
3. 按到期时间分组，只取最近的两个到期日
4. 每组按 |delta - target| 排序保留前两名（最多 4 个候选才请求 ticker）
5. 丢弃价差比率不在 (0, 1) 内的候选，取 delta 距离最小者，价差比率小者优先
"""

from __future__ import annotations

import logging
import time
from collections import defaultdict
from dataclasses import dataclass
from typing import Dict, List, Optional

from core.config import SelectionConfig
from core.errors import DeribitServiceError, NotFoundError
from .exchange import ExchangeClient
from .models import Instrument, Quote
from .price_utils import calculate_spread_ratio

logger = logging.getLogger(__name__)

DAY_MS = 24 * 60 * 60 * 1000


@dataclass
class OptionCandidate:
    """期权候选"""
    instrument: Instrument
    quote: Quote
    delta_distance: float
    spread_ratio: float

    @property
    def instrument_name(self) -> str:
        return self.instrument.instrument_name

    @property
    def delta(self) -> Optional[float]:
        return self.quote.delta


class DeltaOptionSelector:
    """
    Delta 期权选择器

    职责:
    1. 根据目标 delta 与最小到期天数筛选合约
    2. 控制 ticker 请求扇出（最近两个到期日 × 每组两个候选）
    3. 在距离相近的候选中按流动性择优
    """

    def __init__(
        self,
        exchange: ExchangeClient,
        config: Optional[SelectionConfig] = None
    ):
        self.exchange = exchange
        self.config = config or SelectionConfig()

        logger.info(
            f"DeltaOptionSelector initialized: "
            f"expiry_groups={self.config.expiry_groups}, "
            f"candidates_per_group={self.config.candidates_per_group}"
        )

    async def select_by_delta(
        self,
        currency: str,
        min_expire_days: int,
        target_delta: float,
        is_call: bool,
        underlying: Optional[str] = None,
        now_ms: Optional[float] = None,
    ) -> Optional[OptionCandidate]:
        """
        按目标 delta 选择最佳期权

        Args:
            currency: 结算币种 (BTC / ETH / USDC)
            min_expire_days: 最小到期天数
            target_delta: 目标 delta
            is_call: True 选 call，False 选 put
            underlying: 多标的结算币种（如 USDC）下限定标的前缀
            now_ms: 当前时间（毫秒），默认系统时间

        Returns:
            最佳候选；没有符合条件的合约时返回 None
        """
        option_type = "call" if is_call else "put"
        logger.info(
            f"🔍 Selecting {currency} {option_type} by delta: target={target_delta}, "
            f"min_expire_days={min_expire_days}, underlying={underlying or '-'}"
        )

        try:
            groups = await self._get_expiry_groups(currency, min_expire_days, is_call, underlying, now_ms)
            if not groups:
                logger.warning(
                    f"⚠️ No {currency} {option_type} instruments expiring in >= {min_expire_days} days"
                )
                return None

            candidates = await self._get_candidates(currency, groups, target_delta)
        except NotFoundError as e:
            logger.warning(f"⚠️ Selection aborted, not found: {e.message}")
            return None

        best = self._select_best_candidate(candidates)
        if best is None:
            logger.warning(
                f"⚠️ No {currency} {option_type} candidate with valid quotes near delta {target_delta} "
                f"({len(candidates)} candidates discarded)"
            )
            return None

        logger.info(
            f"✅ Selected option: {best.instrument_name} delta={best.delta} "
            f"distance={best.delta_distance:.4f} spread_ratio={best.spread_ratio:.4f}"
        )
        return best

    async def _get_expiry_groups(
        self,
        currency: str,
        min_expire_days: int,
        is_call: bool,
        underlying: Optional[str],
        now_ms: Optional[float],
    ) -> List[List[Instrument]]:
        """按到期时间分组，返回最近的若干组"""
        instruments = await self.exchange.get_instruments(currency, "option")
        option_type = "call" if is_call else "put"
        prefix = underlying.upper() if underlying else None

        now_ms = now_ms if now_ms is not None else time.time() * 1000
        min_expiry_ms = now_ms + min_expire_days * DAY_MS

        groups: Dict[int, List[Instrument]] = defaultdict(list)
        for instrument in instruments:
            if instrument.option_type != option_type or instrument.expiration_timestamp is None:
                continue
            if prefix and not instrument.instrument_name.upper().startswith(prefix):
                continue
            if instrument.expiration_timestamp < min_expiry_ms:
                continue
            groups[instrument.expiration_timestamp].append(instrument)

        nearest = sorted(groups)[:self.config.expiry_groups]
        logger.debug(f"📅 {len(groups)} expiries eligible, using {len(nearest)}")
        return [groups[expiry] for expiry in nearest]

    async def _get_candidates(
        self,
        currency: str,
        groups: List[List[Instrument]],
        target_delta: float,
    ) -> List[OptionCandidate]:
        """每个到期组按 delta 距离取前几名，并获取其 ticker"""
        snapshot = await self.exchange.get_delta_snapshot(
            currency, "option", instruments=[i for group in groups for i in group]
        )
        candidates: List[OptionCandidate] = []

        for group in groups:
            ranked = sorted(
                (i for i in group if i.instrument_name in snapshot),
                key=lambda i: (abs(snapshot[i.instrument_name] - target_delta), i.instrument_name)
            )

            for instrument in ranked[:self.config.candidates_per_group]:
                try:
                    quote = await self.exchange.get_ticker(instrument.instrument_name)
                except DeribitServiceError as e:
                    logger.warning(f"⚠️ Failed to get ticker for {instrument.instrument_name}: {e}")
                    continue

                delta = quote.delta if quote.delta is not None else snapshot[instrument.instrument_name]
                candidate = OptionCandidate(
                    instrument=instrument,
                    quote=quote,
                    delta_distance=abs(delta - target_delta),
                    spread_ratio=calculate_spread_ratio(quote.best_bid_price, quote.best_ask_price),
                )
                logger.debug(
                    f"   - {instrument.instrument_name} delta={delta:.3f} "
                    f"distance={candidate.delta_distance:.3f} spread_ratio={candidate.spread_ratio:.4f}"
                )
                candidates.append(candidate)

        return candidates

    def _select_best_candidate(
        self,
        candidates: List[OptionCandidate]
    ) -> Optional[OptionCandidate]:
        """选择最佳候选"""
        valid = [c for c in candidates if 0 < c.spread_ratio < 1]
        for c in candidates:
            if c not in valid:
                logger.debug(f"Skipping {c.instrument_name}: spread_ratio={c.spread_ratio:.4f}")

        if not valid:
            return None

        return min(valid, key=lambda c: (c.delta_distance, c.spread_ratio))
