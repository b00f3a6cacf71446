from __future__ import annotations

import functools
import logging
import threading
from typing import Callable, Dict, List, Optional

from vanguard_db.core.mapping import Mapper
from vanguard_db.db.config import ConnectionDescriptor, ConnectionRegistry
from vanguard_db.db.session import DatabaseClient, build_client
from .base import Repository

logger = logging.getLogger(__name__)

ClientBuilder = Callable[[ConnectionDescriptor], DatabaseClient]


class RepositoryFactory:
    """
    Get-or-create cache of one Repository (and one client) per database code.

    The first request for a code builds its client and repository under a
    lock; concurrent first requests all receive the same instance. Later
    requests are plain dictionary reads. Entries live until dispose().
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        mapper: Mapper,
        client_builder: ClientBuilder = build_client,
        *,
        default_code: str = "Default",
        bulk_batch_size: int = 5000,
        default_timeout: Optional[float] = None,
    ) -> None:
        self.registry = registry
        self.mapper = mapper
        self.default_code = default_code
        self._client_builder = client_builder
        self._bulk_batch_size = bulk_batch_size
        self._default_timeout = default_timeout
        self._repositories: Dict[str, Repository] = {}
        self._lock = threading.Lock()

    # PUBLIC_INTERFACE
    @classmethod
    def from_settings(cls, settings, mapper: Mapper, registry: Optional[ConnectionRegistry] = None) -> "RepositoryFactory":
        """Build a factory whose clients use the engine options from AppSettings."""
        builder = functools.partial(
            build_client,
            echo=settings.SQL_ECHO,
            pool_size=settings.POOL_SIZE,
            max_overflow=settings.MAX_OVERFLOW,
            pool_recycle=settings.POOL_RECYCLE,
        )
        return cls(
            registry if registry is not None else ConnectionRegistry.from_settings(settings),
            mapper,
            builder,
            default_code=settings.DEFAULT_DB_CODE,
            bulk_batch_size=settings.BULK_BATCH_SIZE,
            default_timeout=settings.QUERY_TIMEOUT,
        )

    @property
    def cached_codes(self) -> List[str]:
        return list(self._repositories)

    # PUBLIC_INTERFACE
    def get_repository(self, code: Optional[str] = None) -> Repository:
        """
        Return the repository bound to ``code`` (the default code when None).

        Raises:
            ConfigurationError: ``code`` is not in the registry.
            UnsupportedDialectError: the entry's dbType is not a known dialect.
        """
        code = self.default_code if code is None else code
        repository = self._repositories.get(code)
        if repository is not None:
            return repository

        with self._lock:
            repository = self._repositories.get(code)
            if repository is None:
                descriptor = self.registry.resolve(code)
                client = self._client_builder(descriptor)
                repository = Repository(
                    client,
                    self.mapper,
                    bulk_batch_size=self._bulk_batch_size,
                    default_timeout=self._default_timeout,
                )
                self._repositories[code] = repository
                logger.info("Repository created for database code %s", code)
        return repository

    # PUBLIC_INTERFACE
    async def dispose(self) -> None:
        """Dispose every cached client and empty the cache (application shutdown)."""
        with self._lock:
            repositories = list(self._repositories.values())
            self._repositories.clear()
        for repository in repositories:
            await repository.client.dispose()
        logger.info("Disposed %d database client(s)", len(repositories))
