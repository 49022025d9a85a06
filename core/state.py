"""
状态管理模块 - 使用 aiosqlite 持久化 Delta 敞口记录

Deribit Delta 期权执行服务

特性:
- 异步数据库操作
- 每个 (账户, 合约) 最多一条 POSITION 记录（部分唯一索引）
- 非空 order_id 全局唯一
- delta 取值范围与最小到期天数由 CHECK 约束兜底
- updated_at 由触发器自动维护
"""

from __future__ import annotations

import asyncio
import logging
import re
import sqlite3
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

import aiosqlite

from .errors import StoreConstraintError

logger = logging.getLogger(__name__)


# ============================================================================
# 数据模型
# ============================================================================

class RecordType(str, Enum):
    """记录类型"""
    POSITION = "position"
    ORDER = "order"


@dataclass
class ExposureRecord:
    """Delta 敞口记录"""
    id: int
    account_id: str
    instrument_name: str
    target_delta: float
    move_position_delta: float
    record_type: RecordType
    order_id: Optional[str] = None
    min_expire_days: Optional[int] = None
    tv_id: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: aiosqlite.Row) -> 'ExposureRecord':
        data = dict(row)
        data['record_type'] = RecordType(data['record_type'])
        return cls(**data)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['record_type'] = self.record_type.value
        return data


@dataclass
class ExposureRecordInput:
    """创建 / upsert 记录的输入"""
    account_id: str
    instrument_name: str
    target_delta: float
    record_type: RecordType
    move_position_delta: float = 0.0
    order_id: Optional[str] = None
    min_expire_days: Optional[int] = None
    tv_id: Optional[str] = None


@dataclass
class AccountSummary:
    account_id: str
    total_delta: float
    position_delta: float
    order_delta: float
    record_count: int
    position_count: int
    order_count: int


@dataclass
class InstrumentSummary:
    instrument_name: str
    total_delta: float
    position_delta: float
    order_delta: float
    record_count: int
    accounts: List[str]


# ============================================================================
# 合约到期日解析
# ============================================================================

_MONTH_INDEX = {
    "JAN": 1, "FEB": 2, "MAR": 3, "APR": 4, "MAY": 5, "JUN": 6,
    "JUL": 7, "AUG": 8, "SEP": 9, "OCT": 10, "NOV": 11, "DEC": 12,
}
_EXPIRY_PATTERN = re.compile(r"^(\d{1,2})([A-Z]{3})(\d{2})$")


def parse_instrument_expiry(instrument_name: str) -> Optional[datetime]:
    """
    从合约名解析到期时间（Deribit 期权 08:00 UTC 到期）

    Examples:
        >>> parse_instrument_expiry("BTC-31OCT25-3400-P")
        datetime.datetime(2025, 10, 31, 8, 0, tzinfo=datetime.timezone.utc)
        >>> parse_instrument_expiry("BTC_USDC-24OCT25-100000-P").day
        24
        >>> parse_instrument_expiry("BTC-PERPETUAL") is None
        True
    """
    if not instrument_name:
        return None

    parts = instrument_name.upper().split('-')
    if len(parts) < 2:
        return None

    match = _EXPIRY_PATTERN.match(parts[1])
    if not match:
        return None

    day = int(match.group(1))
    month = _MONTH_INDEX.get(match.group(2))
    year = 2000 + int(match.group(3))

    if day < 1 or day > 31 or month is None:
        return None

    try:
        return datetime(year, month, day, 8, 0, tzinfo=timezone.utc)
    except ValueError:
        return None


# ============================================================================
# 敞口存储
# ============================================================================

_UPDATABLE_FIELDS = {
    'account_id', 'instrument_name', 'order_id', 'target_delta',
    'move_position_delta', 'min_expire_days', 'tv_id', 'record_type',
}
_FILTER_FIELDS = ('account_id', 'instrument_name', 'order_id', 'tv_id', 'record_type')


class ExposureStore:
    """
    Delta 敞口存储

    职责:
    1. 记录每个账户在每个合约上的目标 delta
    2. 以唯一约束保证 (账户, 合约) 只有一条持仓记录
    3. 为仓位调整 / 平仓流程提供查询
    """

    def __init__(self, db_path: str = "data/delta_records.db"):
        self.db_path = db_path
        self._db: Optional[aiosqlite.Connection] = None
        self._write_lock = asyncio.Lock()

    async def initialize(self) -> None:
        """初始化数据库"""
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        self._db = await aiosqlite.connect(self.db_path)
        self._db.row_factory = aiosqlite.Row

        await self._create_tables()

        logger.info(f"ExposureStore initialized: {self.db_path}")

    async def _create_tables(self) -> None:
        """创建数据库表"""
        await self._db.executescript("""
            CREATE TABLE IF NOT EXISTS delta_records (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                account_id TEXT NOT NULL,
                instrument_name TEXT NOT NULL,
                order_id TEXT,
                target_delta REAL NOT NULL CHECK (target_delta >= -1 AND target_delta <= 1),
                move_position_delta REAL NOT NULL DEFAULT 0
                    CHECK (move_position_delta >= -1 AND move_position_delta <= 1),
                min_expire_days INTEGER CHECK (min_expire_days IS NULL OR min_expire_days > 0),
                tv_id TEXT,
                record_type TEXT NOT NULL CHECK (record_type IN ('position', 'order')),
                created_at TEXT DEFAULT CURRENT_TIMESTAMP,
                updated_at TEXT DEFAULT CURRENT_TIMESTAMP
            );

            CREATE INDEX IF NOT EXISTS idx_delta_account ON delta_records(account_id);
            CREATE INDEX IF NOT EXISTS idx_delta_instrument ON delta_records(instrument_name);
            CREATE INDEX IF NOT EXISTS idx_delta_order ON delta_records(order_id);
            CREATE INDEX IF NOT EXISTS idx_delta_tv_id ON delta_records(tv_id);
            CREATE INDEX IF NOT EXISTS idx_delta_record_type ON delta_records(record_type);
            CREATE INDEX IF NOT EXISTS idx_delta_account_instrument
                ON delta_records(account_id, instrument_name);

            -- 每个账户每个合约最多一条持仓记录
            CREATE UNIQUE INDEX IF NOT EXISTS uq_delta_position
                ON delta_records(account_id, instrument_name) WHERE record_type = 'position';

            -- 非空订单ID唯一
            CREATE UNIQUE INDEX IF NOT EXISTS uq_delta_order_id
                ON delta_records(order_id) WHERE order_id IS NOT NULL;

            CREATE TRIGGER IF NOT EXISTS trg_delta_records_updated_at
            AFTER UPDATE ON delta_records
            FOR EACH ROW WHEN NEW.updated_at = OLD.updated_at
            BEGIN
                UPDATE delta_records SET updated_at = CURRENT_TIMESTAMP WHERE id = NEW.id;
            END;
        """)
        await self._db.commit()

    async def close(self) -> None:
        """关闭数据库连接"""
        if self._db:
            await self._db.close()
            self._db = None

    # ========================================================================
    # 内部工具
    # ========================================================================

    @staticmethod
    def _where(filters: Dict[str, Any]) -> Tuple[str, List[Any]]:
        clauses, params = [], []
        for key in _FILTER_FIELDS:
            value = filters.get(key)
            if value is None:
                continue
            clauses.append(f"{key} = ?")
            params.append(value.value if isinstance(value, RecordType) else value)
        return (" WHERE " + " AND ".join(clauses)) if clauses else "", params

    async def _fetch_one(self, sql: str, params: Iterable[Any] = ()) -> Optional[ExposureRecord]:
        async with self._db.execute(sql, tuple(params)) as cursor:
            row = await cursor.fetchone()
        return ExposureRecord.from_row(row) if row else None

    async def _insert(self, record: ExposureRecordInput) -> int:
        try:
            cursor = await self._db.execute("""
                INSERT INTO delta_records (
                    account_id, instrument_name, order_id, target_delta,
                    move_position_delta, min_expire_days, tv_id, record_type
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                record.account_id, record.instrument_name, record.order_id,
                record.target_delta, record.move_position_delta,
                record.min_expire_days, record.tv_id, RecordType(record.record_type).value
            ))
        except sqlite3.IntegrityError as e:
            raise StoreConstraintError(
                f"Constraint violated for {record.account_id}/{record.instrument_name}: {e}",
                context={"account_id": record.account_id, "instrument_name": record.instrument_name,
                         "order_id": record.order_id},
                original_error=e,
            )
        return cursor.lastrowid

    async def _update(self, record_id: int, fields: Dict[str, Any]) -> None:
        unknown = set(fields) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown fields: {sorted(unknown)}")
        if not fields:
            raise ValueError("No fields to update")

        values = [v.value if isinstance(v, RecordType) else v for v in fields.values()]
        assignments = ", ".join(f"{key} = ?" for key in fields)
        try:
            await self._db.execute(
                f"UPDATE delta_records SET {assignments} WHERE id = ?",
                (*values, record_id)
            )
        except sqlite3.IntegrityError as e:
            raise StoreConstraintError(f"Constraint violated updating record {record_id}: {e}", original_error=e)

    async def _find_existing(self, record: ExposureRecordInput) -> Optional[ExposureRecord]:
        if RecordType(record.record_type) == RecordType.POSITION:
            return await self._fetch_one(
                "SELECT * FROM delta_records WHERE account_id = ? AND instrument_name = ? "
                "AND record_type = 'position'",
                (record.account_id, record.instrument_name)
            )
        if record.order_id is not None:
            return await self._fetch_one(
                "SELECT * FROM delta_records WHERE order_id = ?", (record.order_id,)
            )
        return None

    async def _upsert(self, record: ExposureRecordInput) -> int:
        existing = await self._find_existing(record)
        if existing is None:
            try:
                return await self._insert(record)
            except StoreConstraintError:
                # 并发插入导致冲突时转为更新
                existing = await self._find_existing(record)
                if existing is None:
                    raise

        await self._update(existing.id, {
            'target_delta': record.target_delta,
            'move_position_delta': record.move_position_delta,
            'min_expire_days': record.min_expire_days,
            'tv_id': record.tv_id,
            'order_id': record.order_id,
        })
        return existing.id

    # ========================================================================
    # 增删改查
    # ========================================================================

    async def create_record(self, record: ExposureRecordInput) -> ExposureRecord:
        """
        创建记录

        Raises:
            StoreConstraintError: 违反唯一性或取值约束
        """
        async with self._write_lock:
            try:
                record_id = await self._insert(record)
            except StoreConstraintError:
                await self._db.rollback()
                raise
            await self._db.commit()

        logger.info(
            f"Exposure record created: #{record_id} {record.account_id}/{record.instrument_name} "
            f"type={RecordType(record.record_type).value} target={record.target_delta}"
        )
        return await self.get_record_by_id(record_id)

    async def get_record_by_id(self, record_id: int) -> Optional[ExposureRecord]:
        return await self._fetch_one("SELECT * FROM delta_records WHERE id = ?", (record_id,))

    async def get_records(
        self,
        account_id: Optional[str] = None,
        instrument_name: Optional[str] = None,
        order_id: Optional[str] = None,
        tv_id: Optional[str] = None,
        record_type: Optional[RecordType] = None,
    ) -> List[ExposureRecord]:
        """按条件查询，最新的在前"""
        where, params = self._where({
            'account_id': account_id, 'instrument_name': instrument_name,
            'order_id': order_id, 'tv_id': tv_id, 'record_type': record_type,
        })
        async with self._db.execute(
            f"SELECT * FROM delta_records{where} ORDER BY created_at DESC, id DESC", params
        ) as cursor:
            rows = await cursor.fetchall()
        return [ExposureRecord.from_row(row) for row in rows]

    async def get_account_instrument_record(
        self,
        account_id: str,
        instrument_name: str
    ) -> Optional[ExposureRecord]:
        """获取 (账户, 合约) 最新的一条记录"""
        return await self._fetch_one(
            "SELECT * FROM delta_records WHERE account_id = ? AND instrument_name = ? "
            "ORDER BY created_at DESC, id DESC LIMIT 1",
            (account_id, instrument_name)
        )

    async def update_record(self, record_id: int, **fields: Any) -> Optional[ExposureRecord]:
        """
        部分字段更新

        Raises:
            ValueError: 未提供字段或字段名非法
            StoreConstraintError: 违反约束
        """
        async with self._write_lock:
            try:
                await self._update(record_id, fields)
            except StoreConstraintError:
                await self._db.rollback()
                raise
            await self._db.commit()
        return await self.get_record_by_id(record_id)

    async def delete_record(self, record_id: int) -> bool:
        async with self._write_lock:
            cursor = await self._db.execute("DELETE FROM delta_records WHERE id = ?", (record_id,))
            await self._db.commit()
        return cursor.rowcount > 0

    async def delete_records(
        self,
        account_id: Optional[str] = None,
        instrument_name: Optional[str] = None,
        order_id: Optional[str] = None,
        tv_id: Optional[str] = None,
        record_type: Optional[RecordType] = None,
    ) -> int:
        """按条件批量删除，至少需要一个条件"""
        where, params = self._where({
            'account_id': account_id, 'instrument_name': instrument_name,
            'order_id': order_id, 'tv_id': tv_id, 'record_type': record_type,
        })
        if not where:
            raise ValueError("delete_records requires at least one filter")

        async with self._write_lock:
            cursor = await self._db.execute(f"DELETE FROM delta_records{where}", params)
            await self._db.commit()

        logger.info(f"Deleted {cursor.rowcount} exposure records{where} {params}")
        return cursor.rowcount

    async def upsert_record(self, record: ExposureRecordInput) -> ExposureRecord:
        """
        POSITION: (账户, 合约) 已存在则更新，否则创建
        ORDER: 相同 order_id 已存在则更新，否则创建
        """
        async with self._write_lock:
            try:
                record_id = await self._upsert(record)
            except StoreConstraintError:
                await self._db.rollback()
                raise
            await self._db.commit()
        return await self.get_record_by_id(record_id)

    async def batch_upsert(self, records: List[ExposureRecordInput]) -> List[ExposureRecord]:
        """批量 upsert，全部成功或全部回滚"""
        async with self._write_lock:
            ids: List[int] = []
            try:
                for record in records:
                    ids.append(await self._upsert(record))
            except StoreConstraintError:
                await self._db.rollback()
                logger.error(f"Batch upsert rolled back after {len(ids)}/{len(records)} records")
                raise
            await self._db.commit()

        return [await self.get_record_by_id(record_id) for record_id in ids]

    async def promote_order_to_position(self, order_id: str) -> Optional[ExposureRecord]:
        """
        挂单成交后将 ORDER 记录转为 POSITION

        若同一 (账户, 合约) 已有持仓记录，则把挂单的 delta 参数合并进去并删除挂单记录。
        """
        async with self._write_lock:
            order = await self._fetch_one(
                "SELECT * FROM delta_records WHERE order_id = ? AND record_type = 'order'", (order_id,)
            )
            if order is None:
                return None

            position = await self._fetch_one(
                "SELECT * FROM delta_records WHERE account_id = ? AND instrument_name = ? "
                "AND record_type = 'position'",
                (order.account_id, order.instrument_name)
            )
            try:
                if position is None:
                    await self._update(order.id, {'record_type': RecordType.POSITION, 'order_id': None})
                    result_id = order.id
                else:
                    await self._update(position.id, {
                        'target_delta': order.target_delta,
                        'move_position_delta': order.move_position_delta,
                        'min_expire_days': order.min_expire_days,
                        'tv_id': order.tv_id,
                    })
                    await self._db.execute("DELETE FROM delta_records WHERE id = ?", (order.id,))
                    result_id = position.id
            except StoreConstraintError:
                await self._db.rollback()
                raise
            await self._db.commit()

        logger.info(f"Order record {order_id} promoted to position #{result_id}")
        return await self.get_record_by_id(result_id)

    # ========================================================================
    # 汇总
    # ========================================================================

    async def get_account_summary(self, account_id: Optional[str] = None) -> List[AccountSummary]:
        where, params = self._where({'account_id': account_id})
        async with self._db.execute(f"""
            SELECT
                account_id,
                COALESCE(SUM(target_delta), 0) AS total_delta,
                COALESCE(SUM(CASE WHEN record_type = 'position' THEN target_delta END), 0) AS position_delta,
                COALESCE(SUM(CASE WHEN record_type = 'order' THEN target_delta END), 0) AS order_delta,
                COUNT(*) AS record_count,
                SUM(CASE WHEN record_type = 'position' THEN 1 ELSE 0 END) AS position_count,
                SUM(CASE WHEN record_type = 'order' THEN 1 ELSE 0 END) AS order_count
            FROM delta_records{where}
            GROUP BY account_id
            ORDER BY account_id
        """, params) as cursor:
            rows = await cursor.fetchall()
        return [AccountSummary(**dict(row)) for row in rows]

    async def get_instrument_summary(self, instrument_name: Optional[str] = None) -> List[InstrumentSummary]:
        where, params = self._where({'instrument_name': instrument_name})
        async with self._db.execute(f"""
            SELECT
                instrument_name,
                COALESCE(SUM(target_delta), 0) AS total_delta,
                COALESCE(SUM(CASE WHEN record_type = 'position' THEN target_delta END), 0) AS position_delta,
                COALESCE(SUM(CASE WHEN record_type = 'order' THEN target_delta END), 0) AS order_delta,
                COUNT(*) AS record_count,
                GROUP_CONCAT(DISTINCT account_id) AS accounts
            FROM delta_records{where}
            GROUP BY instrument_name
            ORDER BY instrument_name
        """, params) as cursor:
            rows = await cursor.fetchall()

        summaries = []
        for row in rows:
            data = dict(row)
            data['accounts'] = sorted(data['accounts'].split(',')) if data['accounts'] else []
            summaries.append(InstrumentSummary(**data))
        return summaries

    async def get_stats(self) -> Dict[str, int]:
        async with self._db.execute("""
            SELECT
                COUNT(*) AS total_records,
                SUM(CASE WHEN record_type = 'position' THEN 1 ELSE 0 END) AS position_records,
                SUM(CASE WHEN record_type = 'order' THEN 1 ELSE 0 END) AS order_records,
                COUNT(DISTINCT account_id) AS unique_accounts,
                COUNT(DISTINCT instrument_name) AS unique_instruments
            FROM delta_records
        """) as cursor:
            row = await cursor.fetchone()
        return {key: int(value or 0) for key, value in dict(row).items()}

    # ========================================================================
    # 清理与导出
    # ========================================================================

    async def cleanup_expired_orders(self, days_old: int = 7) -> int:
        """删除创建超过 days_old 天的 ORDER 记录"""
        async with self._write_lock:
            cursor = await self._db.execute(
                "DELETE FROM delta_records WHERE record_type = 'order' "
                "AND created_at < datetime('now', ?)",
                (f"-{int(days_old)} days",)
            )
            await self._db.commit()

        if cursor.rowcount:
            logger.info(f"🧹 Removed {cursor.rowcount} order records older than {days_old} days")
        return cursor.rowcount

    async def cleanup_expired_option_records(
        self,
        grace_period_days: int = 7,
        now: Optional[datetime] = None
    ) -> int:
        """删除合约已到期超过宽限期的记录"""
        now = now or datetime.now(timezone.utc)
        cutoff = now - timedelta(days=grace_period_days)

        async with self._db.execute("SELECT id, instrument_name FROM delta_records") as cursor:
            rows = await cursor.fetchall()

        expired_ids = []
        for row in rows:
            expiry = parse_instrument_expiry(row['instrument_name'])
            if expiry is not None and expiry < cutoff:
                expired_ids.append(row['id'])

        if not expired_ids:
            return 0

        async with self._write_lock:
            await self._db.executemany(
                "DELETE FROM delta_records WHERE id = ?", [(record_id,) for record_id in expired_ids]
            )
            await self._db.commit()

        logger.info(f"🧹 Removed {len(expired_ids)} records for options expired before {cutoff.isoformat()}")
        return len(expired_ids)

    async def export_data(self) -> Dict[str, Any]:
        """导出全部记录"""
        records = await self.get_records()
        return {
            'exported_at': datetime.now(timezone.utc).isoformat(),
            'stats': await self.get_stats(),
            'records': [r.to_dict() for r in records],
        }

    async def get_database_info(self) -> Dict[str, Any]:
        async with self._db.execute(
            "SELECT type, name FROM sqlite_master WHERE tbl_name = 'delta_records' ORDER BY type, name"
        ) as cursor:
            objects = [dict(row) for row in await cursor.fetchall()]

        path = Path(self.db_path)
        return {
            'db_path': self.db_path,
            'size_bytes': path.stat().st_size if path.exists() else 0,
            'indexes': [o['name'] for o in objects if o['type'] == 'index'],
            'triggers': [o['name'] for o in objects if o['type'] == 'trigger'],
            'stats': await self.get_stats(),
        }
