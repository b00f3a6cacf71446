"""
Repository layer for data access.

A RepositoryFactory keeps one Repository per database code; business code only
depends on the RepositoryProvider callable built from it. Units of work scope
several repository calls on one database code into a single transaction.
"""

from .base import FieldSelector, OrderBy, Predicate, Repository  # noqa: F401
from .factory import ClientBuilder, RepositoryFactory  # noqa: F401
from .provider import RepositoryProvider, make_repository_provider  # noqa: F401
from .unit_of_work import UnitOfWork, UnitOfWorkState  # noqa: F401
