from __future__ import annotations

from typing import Optional

from vanguard_db.repositories import Repository, RepositoryProvider, UnitOfWork


class DBServiceBase:
    """
    Base class for services. Holds the repository provider for use across
    database codes.

    Services should keep business logic and orchestration, delegating data access
    to repositories.
    """

    def __init__(self, provider: RepositoryProvider) -> None:
        self.provider = provider

    def repository(self, code: Optional[str] = None) -> Repository:
        """Repository for ``code`` (the default database when None)."""
        return self.provider(code)

    def unit_of_work(self, code: Optional[str] = None) -> UnitOfWork:
        """New unit of work on ``code``; use with ``async with``."""
        return self.repository(code).unit_of_work()
