from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from contextvars import ContextVar, Token
from typing import AsyncGenerator, Optional

from sqlalchemy import MetaData, event
from sqlalchemy.exc import ArgumentError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from vanguard_db.core.exceptions import ConfigurationError
from .config import ConnectionDescriptor, DbKind

logger = logging.getLogger(__name__)


class DatabaseClient:
    """
    Live handle for one database code: async engine, session factory and dialect.

    The client also tracks the session of the unit of work active in the
    current task, so repository calls issued inside a unit-of-work scope join
    its transaction instead of opening their own.
    """

    def __init__(
        self,
        code: str,
        kind: DbKind,
        engine: AsyncEngine,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        self.code = code
        self.kind = kind
        self.engine = engine
        self.session_factory = session_factory
        self._active_session: ContextVar[Optional[AsyncSession]] = ContextVar(
            f"vanguard_db_session_{code}", default=None
        )

    def __repr__(self) -> str:
        return f"DatabaseClient(code={self.code!r}, kind={self.kind.value})"

    @property
    def dialect_name(self) -> str:
        return self.engine.dialect.name

    def active_session(self) -> Optional[AsyncSession]:
        """Session of the unit of work open in the current context, if any."""
        return self._active_session.get()

    def bind_session(self, session: AsyncSession) -> Token:
        return self._active_session.set(session)

    def unbind_session(self, token: Token) -> None:
        self._active_session.reset(token)

    @asynccontextmanager
    async def session_scope(self) -> AsyncGenerator[AsyncSession, None]:
        """
        Yield the session to run one repository operation on.

        Inside a unit of work this is the unit of work's session and nothing is
        committed here. Otherwise a short-lived session is opened, committed on
        success, rolled back on error and always closed.

        Entities never stay attached to a unit-of-work session: the store only
        sees the statements repositories issue, never a flush of in-memory
        changes at commit.
        """
        active = self._active_session.get()
        if active is not None:
            try:
                yield active
            finally:
                active.expunge_all()
            return

        session = self.session_factory()
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()

    async def dispose(self) -> None:
        """Close every pooled connection of this client."""
        await self.engine.dispose()


def _install_sqlite_hooks(engine: AsyncEngine) -> None:
    """
    Configure SQLite connections for transactional use.

    pysqlite/aiosqlite emit their own BEGIN lazily, which breaks SAVEPOINT
    handling; transaction control is handed to SQLAlchemy instead.
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_conn, _record) -> None:
        dbapi_conn.isolation_level = None
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn) -> None:
        conn.exec_driver_sql("BEGIN")


# PUBLIC_INTERFACE
def build_client(
    descriptor: ConnectionDescriptor,
    *,
    echo: bool = False,
    pool_size: int = 10,
    max_overflow: int = 20,
    pool_recycle: int = 3600,
) -> DatabaseClient:
    """
    Construct the backing client for one registry entry.

    Parameters:
      descriptor: ConnectionDescriptor - the registry entry (code, connection string, dbType)
      echo: bool - log every SQL statement
      pool_size / max_overflow / pool_recycle: pool sizing for server databases
    Returns:
      DatabaseClient bound to the descriptor's code.
    Raises:
      UnsupportedDialectError: dbType is not a known dialect.
      ConfigurationError: the connection string cannot be turned into an engine.
    """
    kind = descriptor.kind
    url = descriptor.async_url

    try:
        if kind is DbKind.SQLITE:
            engine = create_async_engine(url, echo=echo)
            _install_sqlite_hooks(engine)
        else:
            engine = create_async_engine(
                url,
                echo=echo,
                pool_size=pool_size,
                max_overflow=max_overflow,
                pool_pre_ping=True,
                pool_recycle=pool_recycle,
            )
    except (ArgumentError, ImportError) as exc:
        raise ConfigurationError(
            f"Cannot create engine for {descriptor.code!r} ({kind.value}): {exc}",
            code=descriptor.code,
            operation="build_client",
        ) from exc

    session_factory = async_sessionmaker(
        bind=engine, expire_on_commit=False, autoflush=False, autocommit=False
    )
    logger.info(
        "Built %s client for database code %s (driver=%s)",
        kind.value,
        descriptor.code,
        engine.dialect.driver,
    )
    return DatabaseClient(descriptor.code or "", kind, engine, session_factory)


# PUBLIC_INTERFACE
async def create_tables(client: DatabaseClient, metadata: Optional[MetaData] = None) -> None:
    """
    Create all mapped tables on the client's database (idempotent).

    Intended for local development and tests; this is not a migration tool.
    """
    if metadata is None:
        from .base import Base

        metadata = Base.metadata
    async with client.engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
    logger.info("Tables created/verified for database code %s", client.code)
