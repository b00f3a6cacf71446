"""
Unit of work: an explicit transaction scope over one database client.

The first begin() opens a physical transaction; begin() while active opens a
save-point. commit()/rollback() resolve the innermost save-point first and the
physical transaction last. Leaving the ``async with`` block while still active
rolls the whole scope back.

While a unit of work is active, every repository call made in the same task on
the same database code runs inside its transaction. A unit of work opened
while another one is active on the same code joins it through a save-point.

A unit of work is owned by a single task; sharing one across concurrent tasks
is not supported.
"""
from __future__ import annotations

import logging
from contextvars import Token
from enum import Enum
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, AsyncSessionTransaction

from vanguard_db.core.exceptions import NoActiveTransaction, StoreFailure
from vanguard_db.db.session import DatabaseClient

logger = logging.getLogger(__name__)


class UnitOfWorkState(str, Enum):
    """Lifecycle of a unit of work."""

    IDLE = "idle"
    ACTIVE = "active"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"


class UnitOfWork:
    """Transaction/save-point scope borrowing a repository's client."""

    def __init__(self, client: DatabaseClient) -> None:
        self.client = client
        self._state = UnitOfWorkState.IDLE
        self._session: Optional[AsyncSession] = None
        self._owns_session = False
        self._token: Optional[Token] = None
        self._transaction: Optional[AsyncSessionTransaction] = None
        self._savepoints: List[AsyncSessionTransaction] = []

    def __repr__(self) -> str:
        return f"UnitOfWork(code={self.client.code!r}, state={self._state.value}, depth={self.depth})"

    @property
    def state(self) -> UnitOfWorkState:
        return self._state

    @property
    def is_active(self) -> bool:
        return self._state is UnitOfWorkState.ACTIVE

    @property
    def depth(self) -> int:
        """Number of open save-points above the base transaction."""
        return len(self._savepoints)

    @property
    def session(self) -> Optional[AsyncSession]:
        return self._session

    def _store_failure(self, exc: SQLAlchemyError, operation: str) -> StoreFailure:
        return StoreFailure(exc, code=self.client.code, operation=operation)

    # PUBLIC_INTERFACE
    async def begin(self) -> None:
        """Open the transaction, or a save-point when already active."""
        try:
            if self._state is UnitOfWorkState.ACTIVE:
                self._savepoints.append(await self._session.begin_nested())
                logger.debug("Save-point opened on %s (depth=%d)", self.client.code, self.depth)
                return

            enclosing = self.client.active_session()
            if enclosing is not None:
                self._session = enclosing
                self._owns_session = False
                self._transaction = await enclosing.begin_nested()
                logger.debug("Joined enclosing unit of work on %s", self.client.code)
            else:
                self._session = self.client.session_factory()
                self._owns_session = True
                self._transaction = await self._session.begin()
                self._token = self.client.bind_session(self._session)
                logger.debug("Transaction opened on %s", self.client.code)
        except SQLAlchemyError as exc:
            if self._state is not UnitOfWorkState.ACTIVE:
                await self._release()
            raise self._store_failure(exc, "begin") from exc
        self._state = UnitOfWorkState.ACTIVE

    # PUBLIC_INTERFACE
    async def commit(self) -> None:
        """Release the innermost save-point, or commit the transaction at depth 0."""
        if self._state is not UnitOfWorkState.ACTIVE:
            raise NoActiveTransaction(
                "commit() called without an active transaction",
                code=self.client.code,
                operation="commit",
            )
        if self._savepoints:
            savepoint = self._savepoints.pop()
            try:
                await savepoint.commit()
            except SQLAlchemyError as exc:
                raise self._store_failure(exc, "commit") from exc
            logger.debug("Save-point released on %s (depth=%d)", self.client.code, self.depth)
            return

        try:
            await self._transaction.commit()
        except SQLAlchemyError as exc:
            await self._release()
            self._state = UnitOfWorkState.ROLLED_BACK
            raise self._store_failure(exc, "commit") from exc
        await self._release()
        self._state = UnitOfWorkState.COMMITTED
        logger.debug("Transaction committed on %s", self.client.code)

    # PUBLIC_INTERFACE
    async def rollback(self) -> None:
        """Roll back to the innermost save-point, or roll back the transaction at depth 0."""
        if self._state is not UnitOfWorkState.ACTIVE:
            raise NoActiveTransaction(
                "rollback() called without an active transaction",
                code=self.client.code,
                operation="rollback",
            )
        if self._savepoints:
            savepoint = self._savepoints.pop()
            try:
                await savepoint.rollback()
            except SQLAlchemyError as exc:
                raise self._store_failure(exc, "rollback") from exc
            logger.debug("Rolled back to save-point on %s (depth=%d)", self.client.code, self.depth)
            return

        await self._rollback_all()

    async def _rollback_all(self) -> None:
        try:
            await self._transaction.rollback()
        except SQLAlchemyError as exc:
            raise self._store_failure(exc, "rollback") from exc
        finally:
            await self._release()
            self._state = UnitOfWorkState.ROLLED_BACK
        logger.debug("Transaction rolled back on %s", self.client.code)

    async def _release(self) -> None:
        """Drop the transaction handles; close the session if this unit of work opened it."""
        session, owns, token = self._session, self._owns_session, self._token
        self._session = None
        self._owns_session = False
        self._token = None
        self._transaction = None
        self._savepoints.clear()
        if token is not None:
            self.client.unbind_session(token)
        if session is not None and owns:
            await session.close()

    # PUBLIC_INTERFACE
    async def dispose(self) -> None:
        """Roll back if still active and release the transactional resources."""
        if self._state is UnitOfWorkState.ACTIVE:
            logger.debug("Unit of work on %s disposed while active; rolling back", self.client.code)
            await self._rollback_all()

    async def __aenter__(self) -> "UnitOfWork":
        await self.begin()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.dispose()
