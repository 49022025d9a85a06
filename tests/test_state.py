"""
敞口记录存储测试

Deribit Delta 期权执行服务

测试用例:
- (账户, 合约) 持仓记录唯一、订单ID唯一、取值范围约束
- upsert / 批量 upsert 原子性
- 挂单记录转持仓
- 到期解析与清理
"""

from datetime import datetime, timezone

import pytest
import pytest_asyncio

from core.errors import StoreConstraintError
from core.state import (
    ExposureRecordInput,
    ExposureStore,
    RecordType,
    parse_instrument_expiry,
)


@pytest_asyncio.fixture
async def store():
    """内存数据库"""
    s = ExposureStore(":memory:")
    await s.initialize()
    yield s
    await s.close()


def position_input(instrument="BTC-27DEC30-60000-C", account="acc1", target=0.3, **kwargs):
    return ExposureRecordInput(
        account_id=account,
        instrument_name=instrument,
        target_delta=target,
        record_type=RecordType.POSITION,
        **kwargs,
    )


def order_input(order_id, instrument="BTC-27DEC30-60000-C", account="acc1", target=0.3, **kwargs):
    return ExposureRecordInput(
        account_id=account,
        instrument_name=instrument,
        target_delta=target,
        record_type=RecordType.ORDER,
        order_id=order_id,
        **kwargs,
    )


class TestConstraints:
    """存储约束"""

    @pytest.mark.asyncio
    async def test_single_position_per_account_instrument(self, store):
        await store.create_record(position_input())
        with pytest.raises(StoreConstraintError):
            await store.create_record(position_input(target=0.5))

        records = await store.get_records(account_id="acc1")
        assert len(records) == 1
        assert records[0].target_delta == 0.3

    @pytest.mark.asyncio
    async def test_same_instrument_different_accounts(self, store):
        await store.create_record(position_input(account="acc1"))
        await store.create_record(position_input(account="acc2"))
        assert len(await store.get_records()) == 2

    @pytest.mark.asyncio
    async def test_multiple_orders_allowed(self, store):
        await store.create_record(position_input())
        await store.create_record(order_input("o-1"))
        await store.create_record(order_input("o-2"))
        orders = await store.get_records(record_type=RecordType.ORDER)
        assert {r.order_id for r in orders} == {"o-1", "o-2"}

    @pytest.mark.asyncio
    async def test_order_id_unique(self, store):
        await store.create_record(order_input("o-1"))
        with pytest.raises(StoreConstraintError):
            await store.create_record(order_input("o-1", instrument="BTC-27DEC30-70000-C"))

    @pytest.mark.asyncio
    @pytest.mark.parametrize("fields", [
        {"target": 1.5},
        {"target": -1.01},
        {"move_position_delta": 2.0},
        {"min_expire_days": 0},
    ])
    async def test_value_ranges(self, store, fields):
        with pytest.raises(StoreConstraintError):
            await store.create_record(position_input(**fields))
        assert await store.get_records() == []


class TestCrud:
    """增删改查"""

    @pytest.mark.asyncio
    async def test_create_and_get(self, store):
        created = await store.create_record(position_input(move_position_delta=0.45, min_expire_days=7, tv_id="tv-1"))
        assert created.id > 0
        assert created.record_type == RecordType.POSITION
        assert created.move_position_delta == 0.45
        assert created.min_expire_days == 7
        assert created.created_at is not None

        fetched = await store.get_record_by_id(created.id)
        assert fetched == created

    @pytest.mark.asyncio
    async def test_records_newest_first(self, store):
        first = await store.create_record(order_input("o-1"))
        second = await store.create_record(order_input("o-2"))
        records = await store.get_records(account_id="acc1")
        assert [r.id for r in records] == [second.id, first.id]

        latest = await store.get_account_instrument_record("acc1", "BTC-27DEC30-60000-C")
        assert latest.id == second.id

    @pytest.mark.asyncio
    async def test_update_record(self, store):
        created = await store.create_record(position_input())
        updated = await store.update_record(created.id, target_delta=-0.2, tv_id="tv-9")
        assert updated.target_delta == -0.2
        assert updated.tv_id == "tv-9"

    @pytest.mark.asyncio
    async def test_update_record_rejects_bad_fields(self, store):
        created = await store.create_record(position_input())
        with pytest.raises(ValueError):
            await store.update_record(created.id)
        with pytest.raises(ValueError):
            await store.update_record(created.id, created_at="2020-01-01")

    @pytest.mark.asyncio
    async def test_delete(self, store):
        created = await store.create_record(position_input())
        assert await store.delete_record(created.id) is True
        assert await store.delete_record(created.id) is False

    @pytest.mark.asyncio
    async def test_delete_records_by_signal(self, store):
        await store.create_record(position_input(tv_id="tv-1"))
        await store.create_record(order_input("o-1", tv_id="tv-1"))
        await store.create_record(position_input(instrument="BTC-27DEC30-70000-C", tv_id="tv-2"))

        assert await store.delete_records(account_id="acc1", tv_id="tv-1") == 2
        remaining = await store.get_records()
        assert [r.tv_id for r in remaining] == ["tv-2"]

    @pytest.mark.asyncio
    async def test_delete_records_requires_filter(self, store):
        with pytest.raises(ValueError):
            await store.delete_records()


class TestUpsert:
    """upsert"""

    @pytest.mark.asyncio
    async def test_upsert_position_updates_existing(self, store):
        first = await store.upsert_record(position_input(target=0.3))
        second = await store.upsert_record(position_input(target=0.6, tv_id="tv-2"))
        assert second.id == first.id
        assert second.target_delta == 0.6
        assert second.tv_id == "tv-2"
        assert len(await store.get_records()) == 1

    @pytest.mark.asyncio
    async def test_upsert_order_keyed_by_order_id(self, store):
        first = await store.upsert_record(order_input("o-1", target=0.3))
        second = await store.upsert_record(order_input("o-1", target=0.4))
        third = await store.upsert_record(order_input("o-2", target=0.5))
        assert second.id == first.id
        assert third.id != first.id
        assert len(await store.get_records()) == 2

    @pytest.mark.asyncio
    async def test_batch_upsert_is_atomic(self, store):
        with pytest.raises(StoreConstraintError):
            await store.batch_upsert([
                position_input(instrument="BTC-27DEC30-60000-C"),
                position_input(instrument="BTC-27DEC30-70000-C", target=2.0),
            ])
        assert await store.get_records() == []

    @pytest.mark.asyncio
    async def test_batch_upsert(self, store):
        saved = await store.batch_upsert([
            position_input(instrument="BTC-27DEC30-60000-C"),
            order_input("o-1", instrument="BTC-27DEC30-70000-C"),
        ])
        assert [r.record_type for r in saved] == [RecordType.POSITION, RecordType.ORDER]


class TestPromote:
    """挂单成交转持仓"""

    @pytest.mark.asyncio
    async def test_promote_order(self, store):
        await store.create_record(order_input("o-1", target=0.25, tv_id="tv-1"))
        promoted = await store.promote_order_to_position("o-1")
        assert promoted.record_type == RecordType.POSITION
        assert promoted.order_id is None
        assert promoted.target_delta == 0.25

    @pytest.mark.asyncio
    async def test_promote_merges_into_existing_position(self, store):
        position = await store.create_record(position_input(target=0.3))
        await store.create_record(order_input("o-1", target=0.5, tv_id="tv-2"))

        promoted = await store.promote_order_to_position("o-1")
        assert promoted.id == position.id
        assert promoted.target_delta == 0.5
        assert promoted.tv_id == "tv-2"
        assert len(await store.get_records()) == 1

    @pytest.mark.asyncio
    async def test_promote_unknown_order(self, store):
        assert await store.promote_order_to_position("missing") is None


class TestSummaries:
    """汇总统计"""

    @pytest.mark.asyncio
    async def test_account_summary(self, store):
        await store.create_record(position_input(target=0.3))
        await store.create_record(order_input("o-1", target=0.2))
        await store.create_record(position_input(account="acc2", target=-0.4))

        summaries = {s.account_id: s for s in await store.get_account_summary()}
        assert summaries["acc1"].total_delta == pytest.approx(0.5)
        assert summaries["acc1"].position_count == 1
        assert summaries["acc1"].order_count == 1
        assert summaries["acc2"].position_delta == pytest.approx(-0.4)

    @pytest.mark.asyncio
    async def test_instrument_summary(self, store):
        await store.create_record(position_input(account="acc1", target=0.3))
        await store.create_record(position_input(account="acc2", target=0.1))

        [summary] = await store.get_instrument_summary("BTC-27DEC30-60000-C")
        assert summary.record_count == 2
        assert sorted(summary.accounts) == ["acc1", "acc2"]

    @pytest.mark.asyncio
    async def test_export_and_info(self, store):
        await store.create_record(position_input())
        exported = await store.export_data()
        assert len(exported["records"]) == 1
        assert exported["records"][0]["record_type"] == "position"

        info = await store.get_database_info()
        assert "uq_delta_position" in info["indexes"]
        assert "trg_delta_records_updated_at" in info["triggers"]


class TestExpiry:
    """到期解析与清理"""

    def test_parse_expiry(self):
        assert parse_instrument_expiry("BTC-31OCT25-3400-P") == datetime(2025, 10, 31, 8, 0, tzinfo=timezone.utc)
        assert parse_instrument_expiry("BTC_USDC-1JAN26-100000-C") == datetime(2026, 1, 1, 8, 0, tzinfo=timezone.utc)

    @pytest.mark.parametrize("name", ["BTC-PERPETUAL", "BTC-31FEB25-3400-P", "BTC-00JAN25-1-C", "", "BTC-XX"])
    def test_parse_invalid_expiry(self, name):
        assert parse_instrument_expiry(name) is None

    @pytest.mark.asyncio
    async def test_cleanup_expired_option_records(self, store):
        await store.create_record(position_input(instrument="BTC-1JAN25-60000-C"))
        await store.create_record(position_input(instrument="BTC-20JAN25-60000-C"))
        await store.create_record(position_input(instrument="BTC-PERPETUAL"))

        now = datetime(2025, 1, 25, tzinfo=timezone.utc)
        assert await store.cleanup_expired_option_records(grace_period_days=7, now=now) == 1
        names = {r.instrument_name for r in await store.get_records()}
        assert names == {"BTC-20JAN25-60000-C", "BTC-PERPETUAL"}

    @pytest.mark.asyncio
    async def test_cleanup_expired_orders(self, store):
        old = await store.create_record(order_input("o-old"))
        await store.create_record(order_input("o-new"))
        await store.create_record(position_input(instrument="BTC-27DEC30-70000-C"))
        await store._db.execute(
            "UPDATE delta_records SET created_at = datetime('now', '-10 days') WHERE id = ?", (old.id,)
        )
        await store._db.commit()

        assert await store.cleanup_expired_orders(days_old=7) == 1
        assert {r.order_id for r in await store.get_records(record_type=RecordType.ORDER)} == {"o-new"}


class TestPersistence:
    """文件数据库"""

    @pytest.mark.asyncio
    async def test_records_survive_reopen(self, tmp_path):
        db_path = str(tmp_path / "nested" / "delta_records.db")

        first = ExposureStore(db_path)
        await first.initialize()
        await first.create_record(position_input(tv_id="tv-1"))
        await first.close()

        second = ExposureStore(db_path)
        await second.initialize()
        try:
            [record] = await second.get_records(tv_id="tv-1")
            assert record.instrument_name == "BTC-27DEC30-60000-C"
            assert record.record_type == RecordType.POSITION
        finally:
            await second.close()
