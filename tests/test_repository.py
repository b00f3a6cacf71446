"""Tests for the generic Repository against a file-backed SQLite database.

Covers:
- insert / insert_many (standard and bulk paths)
- delete by identity and by predicate
- update with ignored fields
- filtered, projected, counted and paged reads
- raw SQL, DataFrame reads and error translation
"""

from __future__ import annotations

import asyncio
import math

import asyncpg
import pandas as pd
import pytest
from pydantic import BaseModel
from sqlalchemy import inspect as sa_inspect
from sqlalchemy import select

from conftest import make_user, seed_users
from vanguard_db.core.exceptions import (
    InvalidFieldSelector,
    OperationCancelled,
    StoreFailure,
    WriteFailed,
)
from vanguard_db.db.config import DbKind
from vanguard_db.db.models import UserEntity
from vanguard_db.schemas.common import PageRequest
from vanguard_db.schemas.user import UserDto


class NameRow(BaseModel):
    id: int
    name: str


# ---------------------------------------------------------------------------
# Create
# ---------------------------------------------------------------------------


class TestInsert:
    @pytest.mark.asyncio
    async def test_insert_returns_entity_with_generated_fields(self, repo):
        user = await repo.insert(make_user("alice", email="alice@example.com"))
        assert user.id is not None
        assert user.is_active is True
        assert user.created_at is not None

        stored = await repo.first(UserEntity, UserEntity.id == user.id)
        assert stored.name == "alice"
        assert stored.email == "alice@example.com"

    @pytest.mark.asyncio
    async def test_insert_generates_distinct_ids(self, repo):
        a = await repo.insert(make_user("a"))
        b = await repo.insert(make_user("b"))
        assert a.id != b.id

    @pytest.mark.asyncio
    async def test_insert_affecting_no_rows_raises_write_failed(self, repo):
        await repo.execute_raw(
            "CREATE TRIGGER skip_ignored BEFORE INSERT ON users "
            "WHEN NEW.name = 'ignored' BEGIN SELECT RAISE(IGNORE); END"
        )
        with pytest.raises(WriteFailed) as info:
            await repo.insert(make_user("ignored"))
        assert info.value.entity_type == "UserEntity"
        assert info.value.code == "Default"
        assert await repo.count(UserEntity) == 0

    @pytest.mark.asyncio
    async def test_constraint_violation_raises_store_failure(self, repo):
        with pytest.raises(StoreFailure) as info:
            await repo.execute_raw("INSERT INTO users (name, is_active) VALUES (NULL, 1)")
        assert info.value.operation == "execute_raw"
        assert info.value.original is info.value.__cause__


class TestInsertMany:
    @pytest.mark.asyncio
    async def test_empty_input_returns_false(self, repo):
        assert await repo.insert_many([]) is False
        assert await repo.insert_many([], fast=True) is False

    @pytest.mark.asyncio
    async def test_standard_path_writes_all_rows(self, repo):
        assert await repo.insert_many([make_user(f"u{i}") for i in range(10)]) is True
        assert await repo.count(UserEntity) == 10

    @pytest.mark.asyncio
    async def test_fast_path_batches_rows(self, repo):
        repo.bulk_batch_size = 7
        users = [make_user(f"bulk-{i}", is_active=i % 2 == 0) for i in range(30)]
        assert await repo.insert_many(users, fast=True) is True
        assert await repo.count(UserEntity) == 30
        assert await repo.count(UserEntity, UserEntity.is_active.is_(True)) == 15

    @pytest.mark.asyncio
    async def test_column_defaults_apply(self, repo):
        await repo.insert_many([make_user("x"), make_user("y", is_active=False)])
        rows = await repo.query(UserEntity)
        by_name = {u.name: u for u in rows}
        assert by_name["x"].is_active is True
        assert by_name["y"].is_active is False
        assert by_name["x"].created_at is not None


# ---------------------------------------------------------------------------
# Delete
# ---------------------------------------------------------------------------


class TestDelete:
    @pytest.mark.asyncio
    async def test_delete_one(self, repo):
        user = await repo.insert(make_user("doomed"))
        assert await repo.delete_one(user) is True
        assert await repo.exists(UserEntity, UserEntity.id == user.id) is False
        assert await repo.delete_one(user) is False

    @pytest.mark.asyncio
    async def test_delete_one_without_key_returns_false(self, repo):
        assert await repo.delete_one(make_user("transient")) is False

    @pytest.mark.asyncio
    async def test_delete_where(self, repo):
        await seed_users(repo, 5, prefix="tmp")
        await seed_users(repo, 3, prefix="keep")
        assert await repo.delete_where(UserEntity, lambda u: u.name.like("tmp-%")) is True
        assert await repo.count(UserEntity) == 3
        assert await repo.delete_where(UserEntity, UserEntity.name == "nobody") is False


# ---------------------------------------------------------------------------
# Update
# ---------------------------------------------------------------------------


class TestUpdate:
    @pytest.mark.asyncio
    async def test_update_writes_changed_fields(self, repo):
        user = await repo.insert(make_user("before", email="a@example.com"))
        user.name = "after"
        user.email = "b@example.com"
        assert await repo.update(user) is True

        stored = await repo.first(UserEntity, UserEntity.id == user.id)
        assert stored.name == "after"
        assert stored.email == "b@example.com"

    @pytest.mark.asyncio
    async def test_ignored_fields_keep_stored_values(self, repo):
        user = await repo.insert(make_user("before", email="keep@example.com", remark="r"))
        user.name = "after"
        user.email = None
        user.remark = None
        assert await repo.update(user, ignore=[UserEntity.email, "remark"]) is True

        stored = await repo.first(UserEntity, UserEntity.id == user.id)
        assert stored.name == "after"
        assert stored.email == "keep@example.com"
        assert stored.remark == "r"

    @pytest.mark.asyncio
    async def test_closure_selector(self, repo):
        user = await repo.insert(make_user("n", email="e@example.com"))
        user.email = "changed@example.com"
        await repo.update(user, ignore=[lambda u: u.email])
        stored = await repo.first(UserEntity, UserEntity.id == user.id)
        assert stored.email == "e@example.com"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("selector", ["no_such_field", lambda u: u.missing, 42])
    async def test_invalid_selector_raises(self, repo, selector):
        user = await repo.insert(make_user("n"))
        with pytest.raises(InvalidFieldSelector):
            await repo.update(user, ignore=[selector])

    @pytest.mark.asyncio
    async def test_update_missing_row_returns_false(self, repo):
        user = await repo.insert(make_user("gone"))
        await repo.delete_one(user)
        user.name = "still gone"
        assert await repo.update(user) is False


# ---------------------------------------------------------------------------
# Read
# ---------------------------------------------------------------------------


class TestQuery:
    @pytest.mark.asyncio
    async def test_query_all_and_filtered(self, repo):
        await seed_users(repo, 4, prefix="a")
        await seed_users(repo, 2, prefix="b")
        assert len(await repo.query(UserEntity)) == 6
        only_b = await repo.query(UserEntity, lambda u: u.name.like("b-%"))
        assert sorted(u.name for u in only_b) == ["b-000", "b-001"]

    @pytest.mark.asyncio
    async def test_projection_leaves_other_columns_unloaded(self, repo):
        await repo.insert(make_user("p", email="p@example.com", remark="long text"))
        (user,) = await repo.query(UserEntity, projection=[UserEntity.name, "email"])
        assert user.name == "p"
        assert user.email == "p@example.com"
        unloaded = sa_inspect(user).unloaded
        assert "remark" in unloaded
        assert "id" not in unloaded

    @pytest.mark.asyncio
    async def test_first_and_exists(self, repo):
        assert await repo.first(UserEntity, UserEntity.name == "x") is None
        assert await repo.exists(UserEntity, UserEntity.name == "x") is False
        await repo.insert(make_user("x"))
        assert (await repo.first(UserEntity, lambda u: u.name == "x")).name == "x"
        assert await repo.exists(UserEntity, lambda u: u.name == "x") is True

    @pytest.mark.asyncio
    async def test_query_all_as_projects_and_orders(self, repo):
        await seed_users(repo, 3)
        dtos = await repo.query_all_as(UserDto, UserEntity, order_by=UserEntity.name, descending=True)
        assert all(isinstance(d, UserDto) for d in dtos)
        assert [d.name for d in dtos] == ["user-002", "user-001", "user-000"]


class TestQueryPaged:
    @pytest.mark.asyncio
    async def test_first_page_and_totals(self, repo):
        await seed_users(repo, 25)
        page = await repo.query_paged(UserEntity, PageRequest(page_number=1, page_size=20))
        assert len(page.items) == 20
        assert page.total_count == 25
        assert page.total_pages == 2
        assert page.has_next is True
        assert page.has_previous is False

    @pytest.mark.asyncio
    async def test_pages_partition_filtered_set(self, repo):
        await seed_users(repo, 23, prefix="in")
        await seed_users(repo, 4, prefix="out")
        predicate = UserEntity.name.like("in-%")
        size = 5
        total = await repo.count(UserEntity, predicate)
        seen = []
        for number in range(1, math.ceil(total / size) + 1):
            page = await repo.query_paged(UserEntity, PageRequest(page_number=number, page_size=size), predicate)
            assert page.total_count == total
            seen.extend(u.id for u in page.items)
        assert len(seen) == total == 23
        assert len(set(seen)) == 23
        assert seen == sorted(seen)

    @pytest.mark.asyncio
    async def test_page_past_end_is_empty_with_totals(self, repo):
        await seed_users(repo, 3)
        page = await repo.query_paged(UserEntity, PageRequest(page_number=5, page_size=2))
        assert page.items == []
        assert page.total_count == 3
        assert page.total_pages == 2

    @pytest.mark.asyncio
    async def test_ordering_applies_before_window(self, repo):
        await seed_users(repo, 6)
        page = await repo.query_paged(
            UserEntity,
            PageRequest(page_number=1, page_size=2),
            order_by=lambda u: u.name,
            descending=True,
        )
        assert [u.name for u in page.items] == ["user-005", "user-004"]

    @pytest.mark.asyncio
    async def test_ties_on_ordering_key_broken_by_primary_key(self, repo):
        await repo.insert_many([make_user(f"name-{i % 3}") for i in range(20)])
        seen = []
        for number in range(1, 4):
            page = await repo.query_paged(
                UserEntity,
                PageRequest(page_number=number, page_size=7),
                order_by=UserEntity.name,
                descending=True,
            )
            seen.extend((u.name, u.id) for u in page.items)
        assert len({uid for _, uid in seen}) == 20
        assert seen == sorted(seen, reverse=True)

    @pytest.mark.asyncio
    async def test_primary_key_ordering_not_repeated(self, repo):
        await seed_users(repo, 4)
        page = await repo.query_paged(
            UserEntity, PageRequest(page_size=4), order_by=lambda u: u.id, descending=True
        )
        ids = [u.id for u in page.items]
        assert ids == sorted(ids, reverse=True)
        assert len(repo._order_clauses(UserEntity, UserEntity.id, True)) == 1

    @pytest.mark.asyncio
    async def test_paged_as_matches_entity_page(self, repo):
        await seed_users(repo, 12)
        request = PageRequest(page_number=2, page_size=5)
        entities = await repo.query_paged(UserEntity, request, order_by=UserEntity.id)
        dtos = await repo.query_paged_as(UserDto, UserEntity, request, order_by=UserEntity.id)
        assert [d.id for d in dtos.items] == [e.id for e in entities.items]
        assert dtos.total_count == entities.total_count == 12
        assert dtos.page_number == 2


# ---------------------------------------------------------------------------
# Raw SQL and statements
# ---------------------------------------------------------------------------


class TestRawSql:
    @pytest.mark.asyncio
    async def test_query_raw_into_entity_model_and_dict(self, repo):
        await seed_users(repo, 3)
        sql = "SELECT * FROM users WHERE name <> :skip ORDER BY id"
        entities = await repo.query_raw(UserEntity, sql, {"skip": "user-001"})
        assert [u.name for u in entities] == ["user-000", "user-002"]

        rows = await repo.query_raw(NameRow, "SELECT id, name FROM users ORDER BY id LIMIT 1")
        assert isinstance(rows[0], NameRow)
        assert rows[0].name == "user-000"

        dicts = await repo.query_raw(dict, "SELECT name FROM users WHERE name = :n", {"n": "user-002"})
        assert dicts == [{"name": "user-002"}]

    @pytest.mark.asyncio
    async def test_parameters_are_bound_not_interpolated(self, repo):
        await seed_users(repo, 2)
        hostile = "x' OR '1'='1"
        rows = await repo.query_raw(dict, "SELECT id FROM users WHERE name = :n", {"n": hostile})
        assert rows == []

    @pytest.mark.asyncio
    async def test_execute_raw_returns_rowcount(self, repo):
        await seed_users(repo, 4)
        affected = await repo.execute_raw("UPDATE users SET remark = :r WHERE name LIKE 'user-00%'", {"r": "seen"})
        assert affected == 4

    @pytest.mark.asyncio
    async def test_query_frame(self, repo):
        await seed_users(repo, 3)
        frame = await repo.query_frame("SELECT name, is_active FROM users ORDER BY id")
        assert isinstance(frame, pd.DataFrame)
        assert list(frame.columns) == ["name", "is_active"]
        assert frame["name"].tolist() == ["user-000", "user-001", "user-002"]

    @pytest.mark.asyncio
    async def test_queryable_with_scalars(self, repo):
        await seed_users(repo, 3)
        stmt = repo.queryable(UserEntity).where(UserEntity.name != "user-000").order_by(UserEntity.id)
        users = await repo.scalars(stmt)
        assert [u.name for u in users] == ["user-001", "user-002"]
        name = await repo.scalar_one_or_none(select(UserEntity.name).where(UserEntity.name == "user-002"))
        assert name == "user-002"


# ---------------------------------------------------------------------------
# Timeouts
# ---------------------------------------------------------------------------


class TestTimeout:
    @pytest.mark.asyncio
    async def test_elapsed_timeout_raises_operation_cancelled(self, repo, monkeypatch):
        async def slow(work):
            await asyncio.sleep(1)

        monkeypatch.setattr(repo, "_in_session", slow)
        with pytest.raises(OperationCancelled) as info:
            await repo.count(UserEntity, timeout=0.01)
        assert info.value.operation == "count"
        assert info.value.entity_type == "UserEntity"

    @pytest.mark.asyncio
    async def test_default_timeout_applies(self, repo, monkeypatch):
        async def slow(work):
            await asyncio.sleep(1)

        monkeypatch.setattr(repo, "_in_session", slow)
        monkeypatch.setattr(repo, "default_timeout", 0.01)
        with pytest.raises(OperationCancelled):
            await repo.exists(UserEntity, UserEntity.id == 1)

    @pytest.mark.asyncio
    async def test_fast_call_within_timeout(self, repo):
        await repo.insert(make_user("quick"))
        assert await repo.count(UserEntity, timeout=10) == 1


# ---------------------------------------------------------------------------
# PostgreSQL COPY path (driver faked)
# ---------------------------------------------------------------------------


class FakeCopyConnection:
    """Stands in for the AsyncConnection / raw asyncpg connection pair."""

    def __init__(self, error=None):
        self.calls = []
        self.error = error
        self.driver_connection = self

    async def exec_driver_sql(self, sql):
        self.calls.append(("sql", sql))

    async def get_raw_connection(self):
        return self

    async def copy_records_to_table(self, table_name, *, records, columns, schema_name=None):
        self.calls.append(("copy", table_name, len(records), tuple(columns)))
        if self.error is not None:
            raise self.error
        return f"COPY {len(records)}"


class FakeCopySession:
    def __init__(self, connection):
        self._connection = connection

    async def connection(self):
        return self._connection


class TestCopyRecords:
    @pytest.fixture()
    def copy_repo(self, repo, monkeypatch):
        monkeypatch.setattr(repo.client, "kind", DbKind.POSTGRESQL)
        return repo

    @pytest.mark.asyncio
    async def test_transaction_started_before_copy(self, copy_repo, monkeypatch):
        connection = FakeCopyConnection()
        monkeypatch.setattr(copy_repo, "_in_session", lambda work: work(FakeCopySession(connection)))

        assert await copy_repo.insert_many([make_user(f"c{i}") for i in range(3)], fast=True) is True
        assert connection.calls == [
            ("sql", "SELECT 1"),
            ("copy", "users", 3, ("name", "is_active")),
        ]

    @pytest.mark.asyncio
    async def test_driver_error_becomes_store_failure(self, copy_repo, monkeypatch):
        error = asyncpg.UniqueViolationError("duplicate key value violates unique constraint")
        connection = FakeCopyConnection(error=error)
        monkeypatch.setattr(copy_repo, "_in_session", lambda work: work(FakeCopySession(connection)))

        with pytest.raises(StoreFailure) as info:
            await copy_repo.insert_many([make_user("dup")], fast=True)
        assert info.value.operation == "insert_many"
        assert info.value.entity_type == "UserEntity"
        assert info.value.code == "Default"
        assert info.value.original is error
        assert info.value.__cause__ is error
