"""Shared fixtures for the data-access tests.

Every test gets its own file-backed SQLite database under ``tmp_path`` so
transactions, save-points and separate sessions behave like a real store.
"""

from __future__ import annotations

from pathlib import Path

import pytest
import pytest_asyncio

from vanguard_db.core.mapping import Mapper
from vanguard_db.db.config import ConnectionRegistry
from vanguard_db.db.models import UserEntity
from vanguard_db.db.session import create_tables
from vanguard_db.repositories import Repository, RepositoryFactory
from vanguard_db.schemas.mappings import build_mapper


def sqlite_entry(path: Path) -> dict:
    return {"connectionString": f"Data Source={path}", "dbType": "Sqlite"}


# ---------------------------------------------------------------------------
# Registry / factory
# ---------------------------------------------------------------------------


@pytest.fixture()
def registry(tmp_path: Path) -> ConnectionRegistry:
    """Two SQLite databases plus one entry with an unknown dialect."""
    return ConnectionRegistry(
        {
            "Default": sqlite_entry(tmp_path / "default.db"),
            "Reporting": sqlite_entry(tmp_path / "reporting.db"),
            "Legacy": {"connectionString": "Server=.;Database=x", "dbType": "Db2"},
        }
    )


@pytest.fixture()
def mapper() -> Mapper:
    return build_mapper()


@pytest_asyncio.fixture
async def factory(registry: ConnectionRegistry, mapper: Mapper):
    factory = RepositoryFactory(registry, mapper)
    yield factory
    await factory.dispose()


@pytest_asyncio.fixture
async def repo(factory: RepositoryFactory) -> Repository:
    """Repository on the default database with the mapped tables created."""
    repository = factory.get_repository()
    await create_tables(repository.client)
    return repository


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def make_user(name: str, **kwargs) -> UserEntity:
    return UserEntity(name=name, **kwargs)


async def seed_users(repo: Repository, count: int, prefix: str = "user") -> None:
    await repo.insert_many([make_user(f"{prefix}-{i:03d}") for i in range(count)])
