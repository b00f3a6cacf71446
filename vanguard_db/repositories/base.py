from __future__ import annotations

import asyncio
import logging
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    Iterable,
    List,
    Mapping,
    Optional,
    Sequence,
    Tuple,
    Type,
    TypeVar,
    Union,
)

import asyncpg
import pandas as pd
from pydantic import BaseModel
from sqlalchemy import Column, Executable, Select, delete, func, insert, literal, select, text, update
from sqlalchemy import inspect as sa_inspect
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Mapper as OrmMapper
from sqlalchemy.orm import QueryableAttribute, load_only
from sqlalchemy.sql import ClauseElement

from vanguard_db.core.exceptions import (
    InvalidFieldSelector,
    OperationCancelled,
    StoreFailure,
    WriteFailed,
)
from vanguard_db.core.logging import repository_call
from vanguard_db.core.mapping import Mapper
from vanguard_db.db.config import DbKind
from vanguard_db.db.session import DatabaseClient
from vanguard_db.schemas.common import PagedResult, PageRequest
from .unit_of_work import UnitOfWork

logger = logging.getLogger(__name__)

T = TypeVar("T")
TDto = TypeVar("TDto")
R = TypeVar("R")

# A SQLAlchemy boolean expression, or a closure receiving the entity class and returning one.
Predicate = Union[ClauseElement, Callable[[type], Any]]
# A mapped attribute / column expression, or a closure returning one.
OrderBy = Union[ClauseElement, QueryableAttribute, Callable[[type], Any]]
# Attribute, attribute name, or closure returning an attribute.
FieldSelector = Union[str, QueryableAttribute, Callable[[type], Any]]
Statement = Union[str, Executable]
Params = Optional[Mapping[str, Any]]


def _is_expression(value: Any) -> bool:
    return isinstance(value, ClauseElement) or hasattr(value, "__clause_element__")


def _resolve_expression(value: Any, entity_type: type) -> Any:
    """Call a closure-style predicate/ordering with the entity class."""
    if _is_expression(value) or not callable(value):
        return value
    return value(entity_type)


def _mapper_of(entity_type: type) -> OrmMapper:
    info = sa_inspect(entity_type, raiseerr=False)
    if not isinstance(info, OrmMapper):
        raise TypeError(f"{entity_type!r} is not a mapped entity class")
    return info


def _same_column(expression: Any, column: Column) -> bool:
    if hasattr(expression, "__clause_element__"):
        expression = expression.__clause_element__()
    return getattr(expression, "table", None) is column.table and getattr(expression, "key", None) == column.key


def _column_props(mapper: OrmMapper) -> List[Tuple[str, Column]]:
    """(attribute key, table column) for every plain column of the entity's own table."""
    table = mapper.local_table
    props: List[Tuple[str, Column]] = []
    for prop in mapper.column_attrs:
        column = prop.columns[0]
        if isinstance(column, Column) and column.table is table:
            props.append((prop.key, column))
    return props


def _as_statement(statement: Statement) -> Executable:
    return text(statement) if isinstance(statement, str) else statement


class Repository:
    """
    Generic data-access handle bound to one database code's client.

    Every operation runs in the unit of work active for this client in the
    current task, or otherwise in its own short-lived session committed on
    success. Store errors are raised as StoreFailure with the database code,
    entity type and operation attached; task cancellation is never caught.

    Predicates, orderings and field selectors are SQLAlchemy expressions
    (``UserEntity.name == "a"``, ``UserEntity.id``) or closures receiving the
    entity class (``lambda u: u.name == "a"``).
    """

    def __init__(
        self,
        client: DatabaseClient,
        mapper: Mapper,
        *,
        bulk_batch_size: int = 5000,
        default_timeout: Optional[float] = None,
    ) -> None:
        self.client = client
        self.mapper = mapper
        self.bulk_batch_size = bulk_batch_size
        self.default_timeout = default_timeout

    def __repr__(self) -> str:
        return f"Repository(code={self.code!r}, kind={self.client.kind.value})"

    @property
    def code(self) -> str:
        """Database code this repository is bound to."""
        return self.client.code

    def unit_of_work(self) -> UnitOfWork:
        """New unit of work over this repository's client (use with ``async with``)."""
        return UnitOfWork(self.client)

    # ------------------------------------------------------------------
    # Execution plumbing
    # ------------------------------------------------------------------

    async def _in_session(self, work: Callable[[AsyncSession], Awaitable[R]]) -> R:
        async with self.client.session_scope() as session:
            return await work(session)

    async def _run(
        self,
        operation: str,
        entity_name: Optional[str],
        work: Callable[[AsyncSession], Awaitable[R]],
        timeout: Optional[float],
    ) -> R:
        timeout = self.default_timeout if timeout is None else timeout
        with repository_call(self.code, operation):
            try:
                logger.debug("%s %s", operation, entity_name or "statement")
                if timeout is None:
                    return await self._in_session(work)
                try:
                    return await asyncio.wait_for(self._in_session(work), timeout)
                except asyncio.TimeoutError as exc:
                    raise OperationCancelled(
                        f"{operation} on {entity_name or 'statement'} [{self.code}] "
                        f"did not finish within {timeout}s",
                        code=self.code,
                        entity_type=entity_name,
                        operation=operation,
                    ) from exc
            except SQLAlchemyError as exc:
                logger.warning("%s on %s failed: %s", operation, entity_name or "statement", exc)
                raise StoreFailure(
                    exc, code=self.code, entity_type=entity_name, operation=operation
                ) from exc

    def _order_clauses(
        self, entity_type: type, order_by: Optional[OrderBy], descending: bool
    ) -> List[Any]:
        keys = list(_mapper_of(entity_type).primary_key)
        if order_by is None:
            columns = keys
        else:
            ordering = _resolve_expression(order_by, entity_type)
            # Primary key breaks ties so LIMIT/OFFSET windows are deterministic.
            columns = [ordering] + [k for k in keys if not _same_column(ordering, k)]
        return [c.desc() if descending else c.asc() for c in columns]

    def _filtered(self, entity_type: Type[T], predicate: Optional[Predicate]) -> Select:
        stmt = select(entity_type)
        if predicate is not None:
            stmt = stmt.where(_resolve_expression(predicate, entity_type))
        return stmt

    def _selector_key(self, mapper: OrmMapper, selector: FieldSelector) -> str:
        """Resolve a field selector to the attribute key of a plain mapped column."""
        entity_name = mapper.class_.__name__
        candidate: Any = selector
        if not isinstance(candidate, (str, QueryableAttribute)) and callable(candidate):
            try:
                candidate = candidate(mapper.class_)
            except AttributeError:
                raise InvalidFieldSelector(selector, entity_type=entity_name) from None
        if isinstance(candidate, QueryableAttribute):
            if not issubclass(mapper.class_, candidate.class_):
                raise InvalidFieldSelector(selector, entity_type=entity_name)
            candidate = candidate.key
        if isinstance(candidate, str):
            if candidate in {key for key, _ in _column_props(mapper)}:
                return candidate
        raise InvalidFieldSelector(selector, entity_type=entity_name)

    @staticmethod
    def _identity_criteria(mapper: OrmMapper, entity: Any) -> Optional[List[Any]]:
        criteria = []
        for column in mapper.primary_key:
            value = getattr(entity, mapper.get_property_by_column(column).key)
            if value is None:
                return None
            criteria.append(column == value)
        return criteria

    # ------------------------------------------------------------------
    # Query pipeline
    # ------------------------------------------------------------------

    def queryable(self, entity_type: Type[T]) -> Select:
        """Return a composable ``select()`` over ``entity_type`` for use with scalars()/execute()."""
        return select(entity_type)

    async def execute(self, statement: Executable, params: Params = None, *, timeout: Optional[float] = None):
        """Execute a SQLAlchemy statement and return the buffered result."""
        return await self._run(
            "execute", None, lambda s: s.execute(statement, dict(params or {})), timeout
        )

    async def scalars(self, statement: Executable, params: Params = None, *, timeout: Optional[float] = None) -> List[Any]:
        """Execute and return the first column of every row."""
        async def work(session: AsyncSession) -> List[Any]:
            result = await session.scalars(statement, dict(params or {}))
            return list(result.all())

        return await self._run("scalars", None, work, timeout)

    async def scalar_one_or_none(self, statement: Executable, params: Params = None, *, timeout: Optional[float] = None):
        """Execute and return a single scalar or None."""
        async def work(session: AsyncSession) -> Any:
            result = await session.execute(statement, dict(params or {}))
            return result.scalar_one_or_none()

        return await self._run("scalar_one_or_none", None, work, timeout)

    # ------------------------------------------------------------------
    # Raw SQL
    # ------------------------------------------------------------------

    async def query_raw(
        self,
        result_type: Type[T],
        statement: Statement,
        params: Params = None,
        *,
        timeout: Optional[float] = None,
    ) -> List[T]:
        """
        Run a raw statement and map each row to ``result_type``.

        Parameters are bound by name (``:name`` placeholders), never interpolated.
        ``result_type`` may be a mapped entity, a pydantic model, ``dict``, or any
        class accepting the row's columns as keyword arguments.
        """
        stmt = _as_statement(statement)
        bound = dict(params or {})
        is_entity = isinstance(sa_inspect(result_type, raiseerr=False), OrmMapper)

        async def work(session: AsyncSession) -> List[T]:
            if is_entity:
                result = await session.scalars(select(result_type).from_statement(stmt), bound)
                return list(result.all())
            rows = (await session.execute(stmt, bound)).mappings().all()
            if result_type is dict:
                return [dict(row) for row in rows]  # type: ignore[misc]
            if issubclass(result_type, BaseModel):
                return [result_type.model_validate(dict(row)) for row in rows]
            return [result_type(**row) for row in rows]

        return await self._run("query_raw", result_type.__name__, work, timeout)

    async def query_frame(
        self, statement: Statement, params: Params = None, *, timeout: Optional[float] = None
    ) -> pd.DataFrame:
        """Run a raw statement and return the rows as a DataFrame (for shapes no entity matches)."""
        stmt = _as_statement(statement)

        async def work(session: AsyncSession) -> pd.DataFrame:
            result = await session.execute(stmt, dict(params or {}))
            columns = list(result.keys())
            return pd.DataFrame([tuple(row) for row in result.all()], columns=columns)

        return await self._run("query_frame", None, work, timeout)

    async def execute_raw(
        self, statement: Statement, params: Params = None, *, timeout: Optional[float] = None
    ) -> int:
        """Run a raw non-query statement and return the affected-row count."""
        stmt = _as_statement(statement)

        async def work(session: AsyncSession) -> int:
            result = await session.execute(stmt, dict(params or {}))
            return result.rowcount

        return await self._run("execute_raw", None, work, timeout)

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    async def insert(self, entity: T, *, timeout: Optional[float] = None) -> T:
        """
        Insert one entity and return it with store-generated fields filled in.

        Raises:
            WriteFailed: the statement affected no row.
        """
        mapper = _mapper_of(type(entity))
        table = mapper.local_table
        props = _column_props(mapper)
        values = {
            column.key: getattr(entity, key)
            for key, column in props
            if getattr(entity, key) is not None
        }
        entity_name = mapper.class_.__name__
        dialect = self.client.engine.dialect

        def _write_failed() -> WriteFailed:
            return WriteFailed(
                f"Insert of {entity_name} [{self.code}] affected no rows",
                code=self.code,
                entity_type=entity_name,
                operation="insert",
            )

        async def work(session: AsyncSession) -> T:
            stmt = insert(table).values(values)
            if dialect.insert_returning:
                row = (await session.execute(stmt.returning(*table.columns))).first()
                if row is None:
                    raise _write_failed()
                for key, column in props:
                    setattr(entity, key, row._mapping[column])
                return entity

            result = await session.execute(stmt)
            if result.rowcount == 0:
                raise _write_failed()
            generated = result.inserted_primary_key or ()
            for column, value in zip(mapper.primary_key, generated):
                if value is not None:
                    setattr(entity, mapper.get_property_by_column(column).key, value)
            return entity

        return await self._run("insert", entity_name, work, timeout)

    async def insert_many(
        self, entities: Iterable[T], fast: bool = False, *, timeout: Optional[float] = None
    ) -> bool:
        """
        Insert many entities of one type.

        ``fast=False`` issues a standard multi-row insert. ``fast=True`` uses the
        bulk-loading path: binary COPY on PostgreSQL, batched executemany of
        ``bulk_batch_size`` rows elsewhere. Returns False for an empty input or
        when nothing was written, True when at least one row was written.
        Generated keys are not written back to the entities.
        """
        items = list(entities)
        if not items:
            return False

        mapper = _mapper_of(type(items[0]))
        table = mapper.local_table
        props = _column_props(mapper)

        rows: List[Dict[str, Any]] = []
        for item in items:
            row = {}
            for key, column in props:
                value = getattr(item, key)
                if value is None and column.default is not None and column.default.is_scalar:
                    value = column.default.arg
                row[column.key] = value
            rows.append(row)
        # Columns that are None in every row are left to the store's defaults.
        columns = [column for _, column in props if any(r[column.key] is not None for r in rows)]
        rows = [{c.key: r[c.key] for c in columns} for r in rows]
        entity_name = mapper.class_.__name__

        async def standard(session: AsyncSession) -> bool:
            result = await session.execute(insert(table), rows)
            return result.rowcount != 0

        async def copy_records(session: AsyncSession) -> bool:
            conn = await session.connection()
            # The asyncpg adapter opens its transaction on the first statement;
            # COPY on the raw connection must run inside it.
            await conn.exec_driver_sql("SELECT 1")
            raw = await conn.get_raw_connection()
            try:
                status = await raw.driver_connection.copy_records_to_table(
                    table.name,
                    records=[tuple(r[c.key] for c in columns) for r in rows],
                    columns=[c.name for c in columns],
                    schema_name=table.schema,
                )
            except (asyncpg.PostgresError, asyncpg.InterfaceError) as exc:
                logger.warning("insert_many on %s failed: %s", entity_name, exc)
                raise StoreFailure(
                    exc, code=self.code, entity_type=entity_name, operation="insert_many"
                ) from exc
            return int(str(status).split()[-1]) > 0

        async def batched(session: AsyncSession) -> bool:
            counts = []
            for start in range(0, len(rows), self.bulk_batch_size):
                result = await session.execute(insert(table), rows[start:start + self.bulk_batch_size])
                counts.append(result.rowcount)
            # Drivers that cannot count executemany rows report -1.
            return any(c < 0 for c in counts) or sum(counts) > 0

        if not fast:
            work = standard
        elif self.client.kind is DbKind.POSTGRESQL:
            work = copy_records
        else:
            work = batched
        return await self._run("insert_many", entity_name, work, timeout)

    # ------------------------------------------------------------------
    # Delete
    # ------------------------------------------------------------------

    async def delete_one(self, entity: Any, *, timeout: Optional[float] = None) -> bool:
        """Physically delete one entity by primary key; True iff a row was removed."""
        mapper = _mapper_of(type(entity))
        criteria = self._identity_criteria(mapper, entity)
        if criteria is None:
            return False

        async def work(session: AsyncSession) -> bool:
            result = await session.execute(delete(mapper.local_table).where(*criteria))
            return result.rowcount > 0

        return await self._run("delete_one", mapper.class_.__name__, work, timeout)

    async def delete_where(
        self, entity_type: Type[T], predicate: Predicate, *, timeout: Optional[float] = None
    ) -> bool:
        """Physically delete every row matching ``predicate``; True iff any row was removed."""
        clause = _resolve_expression(predicate, entity_type)

        async def work(session: AsyncSession) -> bool:
            stmt = (
                delete(entity_type)
                .where(clause)
                .execution_options(synchronize_session=False)
            )
            result = await session.execute(stmt)
            return result.rowcount > 0

        return await self._run("delete_where", entity_type.__name__, work, timeout)

    # ------------------------------------------------------------------
    # Update
    # ------------------------------------------------------------------

    async def update(
        self,
        entity: Any,
        ignore: Sequence[FieldSelector] = (),
        *,
        timeout: Optional[float] = None,
    ) -> bool:
        """
        Update every mapped column of ``entity`` except the ``ignore`` selectors.

        Raises:
            InvalidFieldSelector: a selector is not a plain mapped column.
        """
        mapper = _mapper_of(type(entity))
        ignored = {self._selector_key(mapper, selector) for selector in ignore}
        values = {
            column.key: getattr(entity, key)
            for key, column in _column_props(mapper)
            if key not in ignored and not column.primary_key
        }
        criteria = self._identity_criteria(mapper, entity)
        if criteria is None or not values:
            return False

        async def work(session: AsyncSession) -> bool:
            stmt = update(mapper.local_table).where(*criteria).values(values)
            result = await session.execute(stmt)
            return result.rowcount > 0

        return await self._run("update", mapper.class_.__name__, work, timeout)

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    async def query(
        self,
        entity_type: Type[T],
        predicate: Optional[Predicate] = None,
        projection: Optional[Sequence[FieldSelector]] = None,
        *,
        timeout: Optional[float] = None,
    ) -> List[T]:
        """
        List entities matching ``predicate`` (all when None).

        ``projection`` restricts the loaded columns to the selected fields
        (primary key always included); other attributes stay unloaded.
        """
        stmt = self._filtered(entity_type, predicate)
        if projection:
            mapper = _mapper_of(entity_type)
            attrs = [getattr(entity_type, self._selector_key(mapper, s)) for s in projection]
            stmt = stmt.options(load_only(*attrs))

        async def work(session: AsyncSession) -> List[T]:
            return list((await session.scalars(stmt)).all())

        return await self._run("query", entity_type.__name__, work, timeout)

    async def count(
        self, entity_type: type, predicate: Optional[Predicate] = None, *, timeout: Optional[float] = None
    ) -> int:
        """Count rows matching ``predicate``."""
        stmt = select(func.count()).select_from(entity_type)
        if predicate is not None:
            stmt = stmt.where(_resolve_expression(predicate, entity_type))

        async def work(session: AsyncSession) -> int:
            return int((await session.execute(stmt)).scalar_one())

        return await self._run("count", entity_type.__name__, work, timeout)

    async def query_paged(
        self,
        entity_type: Type[T],
        page: PageRequest,
        predicate: Optional[Predicate] = None,
        order_by: Optional[OrderBy] = None,
        descending: bool = False,
        *,
        timeout: Optional[float] = None,
    ) -> PagedResult[T]:
        """
        Filter, order, then window to ``page``.

        ``total_count`` covers the filtered set before paging. Without
        ``order_by`` rows are ordered by primary key so pages stay stable. A
        page past the end yields no items with the totals still populated.
        """
        base = self._filtered(entity_type, predicate)
        count_stmt = select(func.count()).select_from(base.subquery())
        page_stmt = (
            base.order_by(*self._order_clauses(entity_type, order_by, descending))
            .offset(page.offset)
            .limit(page.page_size)
        )

        async def work(session: AsyncSession) -> PagedResult[T]:
            total = int((await session.execute(count_stmt)).scalar_one())
            items = list((await session.scalars(page_stmt)).all())
            return PagedResult.of(page, items, total)

        return await self._run("query_paged", entity_type.__name__, work, timeout)

    async def query_paged_as(
        self,
        dto_type: Type[TDto],
        entity_type: type,
        page: PageRequest,
        predicate: Optional[Predicate] = None,
        order_by: Optional[OrderBy] = None,
        descending: bool = False,
        *,
        timeout: Optional[float] = None,
    ) -> PagedResult[TDto]:
        """query_paged over ``entity_type``, then project each item to ``dto_type``."""
        entity_page = await self.query_paged(
            entity_type, page, predicate, order_by, descending, timeout=timeout
        )
        return PagedResult.of(
            page, self.mapper.map_many(entity_page.items, dto_type), entity_page.total_count
        )

    async def query_all_as(
        self,
        dto_type: Type[TDto],
        entity_type: type,
        predicate: Optional[Predicate] = None,
        order_by: Optional[OrderBy] = None,
        descending: bool = False,
        *,
        timeout: Optional[float] = None,
    ) -> List[TDto]:
        """All matching entities, ordered when ``order_by`` is given, projected to ``dto_type``."""
        stmt = self._filtered(entity_type, predicate)
        if order_by is not None:
            stmt = stmt.order_by(*self._order_clauses(entity_type, order_by, descending))

        async def work(session: AsyncSession) -> List[Any]:
            return list((await session.scalars(stmt)).all())

        entities = await self._run("query_all_as", entity_type.__name__, work, timeout)
        return self.mapper.map_many(entities, dto_type)

    async def first(
        self, entity_type: Type[T], predicate: Predicate, *, timeout: Optional[float] = None
    ) -> Optional[T]:
        """First entity matching ``predicate`` in store order, or None."""
        stmt = self._filtered(entity_type, predicate).limit(1)

        async def work(session: AsyncSession) -> Optional[T]:
            return (await session.scalars(stmt)).first()

        return await self._run("first", entity_type.__name__, work, timeout)

    async def exists(
        self, entity_type: type, predicate: Predicate, *, timeout: Optional[float] = None
    ) -> bool:
        """True when at least one row matches; no entity columns are fetched."""
        stmt = (
            select(literal(1))
            .select_from(entity_type)
            .where(_resolve_expression(predicate, entity_type))
            .limit(1)
        )

        async def work(session: AsyncSession) -> bool:
            return (await session.execute(stmt)).scalar() is not None

        return await self._run("exists", entity_type.__name__, work, timeout)
