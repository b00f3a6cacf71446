from __future__ import annotations

from typing import Callable, Optional

from .base import Repository
from .factory import RepositoryFactory

# The only data-access dependency business code takes: database code -> Repository.
RepositoryProvider = Callable[..., Repository]


# PUBLIC_INTERFACE
def make_repository_provider(factory: RepositoryFactory) -> RepositoryProvider:
    """
    Wrap a factory into a RepositoryProvider callable.

    The returned callable takes an optional database code and falls back to the
    factory's default code ("Default" unless configured otherwise).
    """

    def provide(code: Optional[str] = None) -> Repository:
        return factory.get_repository(code)

    return provide
