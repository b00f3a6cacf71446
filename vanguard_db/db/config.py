from __future__ import annotations

import json
import re
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Iterator, Mapping, Optional, Union
from urllib.parse import quote_plus

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError

from vanguard_db.core.exceptions import ConfigurationError, UnsupportedDialectError


_URL_SCHEME_RE = re.compile(r"^(?P<backend>[A-Za-z]+)(?:\+(?P<driver>\w+))?://")


class DbKind(str, Enum):
    """Backing-store dialects a database code can be bound to."""

    SQLSERVER = "SqlServer"
    MYSQL = "MySql"
    SQLITE = "Sqlite"
    POSTGRESQL = "PostgreSQL"
    ORACLE = "Oracle"

    @property
    def backend(self) -> str:
        """SQLAlchemy backend name used in URL schemes."""
        return _BACKENDS[self]

    @property
    def async_driver(self) -> str:
        """Async DBAPI driver paired with the backend."""
        return _ASYNC_DRIVERS[self]

    @classmethod
    def parse(cls, value: str, *, code: Optional[str] = None) -> "DbKind":
        """
        Resolve a configured dbType (case-insensitive, aliases allowed).

        Raises:
            UnsupportedDialectError: when the name matches no known dialect.
        """
        kind = _ALIASES.get((value or "").strip().lower())
        if kind is None:
            raise UnsupportedDialectError(value, code=code)
        return kind


_BACKENDS = {
    DbKind.SQLSERVER: "mssql",
    DbKind.MYSQL: "mysql",
    DbKind.SQLITE: "sqlite",
    DbKind.POSTGRESQL: "postgresql",
    DbKind.ORACLE: "oracle",
}

_ASYNC_DRIVERS = {
    DbKind.SQLSERVER: "aioodbc",
    DbKind.MYSQL: "aiomysql",
    DbKind.SQLITE: "aiosqlite",
    DbKind.POSTGRESQL: "asyncpg",
    DbKind.ORACLE: "oracledb",
}

_ALIASES = {
    "sqlserver": DbKind.SQLSERVER,
    "mssql": DbKind.SQLSERVER,
    "mysql": DbKind.MYSQL,
    "sqlite": DbKind.SQLITE,
    "postgresql": DbKind.POSTGRESQL,
    "postgres": DbKind.POSTGRESQL,
    "oracle": DbKind.ORACLE,
}


def _parse_key_values(raw: str) -> Dict[str, str]:
    """Parse an ADO-style ``Key=Value;Key=Value`` string into lowercase keys."""
    pairs: Dict[str, str] = {}
    for part in raw.split(";"):
        if "=" not in part:
            continue
        key, _, value = part.partition("=")
        pairs[key.strip().lower()] = value.strip()
    return pairs


class ConnectionDescriptor(BaseModel):
    """
    One configured database: connection string plus dialect name.

    Accepts both the camelCase keys used in configuration files
    (``connectionString``, ``dbType``) and the snake_case field names.
    """

    model_config = ConfigDict(frozen=True)

    code: Optional[str] = Field(default=None, description="Database code this entry is registered under")
    connection_string: str = Field(
        ...,
        min_length=1,
        repr=False,
        validation_alias=AliasChoices("connectionString", "ConnectionString", "connection_string"),
        description="SQLAlchemy URL, or a dialect-native connection string",
    )
    db_type: str = Field(
        default=DbKind.SQLSERVER.value,
        validation_alias=AliasChoices("dbType", "DbType", "db_type"),
        description="Dialect name (SqlServer, MySql, Sqlite, PostgreSQL/Postgres, Oracle)",
    )

    @property
    def kind(self) -> DbKind:
        """Resolved dialect; raises UnsupportedDialectError for unknown names."""
        return DbKind.parse(self.db_type, code=self.code)

    @property
    def async_url(self) -> str:
        """
        Convert the configured connection string into an async SQLAlchemy URL.

        URLs keep their credentials, host and query and only have the driver
        replaced by the dialect's async driver. Sqlite also accepts
        ``Data Source=<path>`` or a bare path; SqlServer also accepts an ODBC
        ``key=value;`` string.
        """
        kind = self.kind
        raw = self.connection_string.strip()
        match = _URL_SCHEME_RE.match(raw)
        if match:
            backend = match.group("backend").lower()
            if backend == "postgres":
                backend = "postgresql"
            if backend != kind.backend:
                raise ConfigurationError(
                    f"Connection string scheme {backend!r} does not match dbType {self.db_type!r}",
                    code=self.code,
                    operation="resolve_dialect",
                )
            return _URL_SCHEME_RE.sub(f"{kind.backend}+{kind.async_driver}://", raw, count=1)

        if kind is DbKind.SQLITE:
            path = _parse_key_values(raw).get("data source", raw) if "=" in raw else raw
            return f"sqlite+aiosqlite:///{path}"
        if kind is DbKind.SQLSERVER:
            return f"mssql+aioodbc:///?odbc_connect={quote_plus(raw)}"

        raise ConfigurationError(
            f"Connection string for {self.code!r} must be a URL for dbType {self.db_type!r}",
            code=self.code,
            operation="resolve_dialect",
        )


class ConnectionRegistry(Mapping[str, ConnectionDescriptor]):
    """
    Read-only mapping of database code -> ConnectionDescriptor.

    Loaded once at startup; lookups of an unknown code raise ConfigurationError.
    """

    def __init__(self, entries: Mapping[str, Union[ConnectionDescriptor, Mapping[str, Any]]]) -> None:
        loaded: Dict[str, ConnectionDescriptor] = {}
        for code, entry in entries.items():
            try:
                if isinstance(entry, ConnectionDescriptor):
                    descriptor = entry.model_copy(update={"code": code})
                else:
                    descriptor = ConnectionDescriptor.model_validate({**entry, "code": code})
            except (ValidationError, TypeError) as exc:
                raise ConfigurationError(
                    f"Malformed connection entry for {code!r}: {exc}",
                    code=code,
                    operation="load_registry",
                ) from exc
            loaded[code] = descriptor
        self._entries = MappingProxyType(loaded)

    def __getitem__(self, code: str) -> ConnectionDescriptor:
        return self._entries[code]

    def __iter__(self) -> Iterator[str]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def resolve(self, code: str) -> ConnectionDescriptor:
        """Return the descriptor for ``code`` or raise ConfigurationError."""
        try:
            return self._entries[code]
        except KeyError:
            raise ConfigurationError(
                f"Database code {code!r} is not configured",
                code=code,
                operation="resolve",
            ) from None

    # PUBLIC_INTERFACE
    @classmethod
    def from_json_file(cls, path: Union[str, Path], section: str = "ConnectionStrings") -> "ConnectionRegistry":
        """
        Load entries from an appsettings-style JSON file.

        The file may either be the code mapping itself or contain it under
        ``section``.
        """
        try:
            data = json.loads(Path(path).read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            raise ConfigurationError(
                f"Cannot read connection file {path}: {exc}", operation="load_registry"
            ) from exc
        if isinstance(data, dict) and isinstance(data.get(section), dict):
            data = data[section]
        if not isinstance(data, dict):
            raise ConfigurationError(
                f"Connection file {path} does not contain a code mapping", operation="load_registry"
            )
        return cls(data)

    # PUBLIC_INTERFACE
    @classmethod
    def from_settings(cls, settings) -> "ConnectionRegistry":
        """
        Build the registry from AppSettings.

        Entries from CONNECTION_STRINGS_FILE are loaded first; CONNECTION_STRINGS
        entries override them code by code.
        """
        entries: Dict[str, ConnectionDescriptor] = {}
        if settings.CONNECTION_STRINGS_FILE:
            entries.update(cls.from_json_file(settings.CONNECTION_STRINGS_FILE))
        entries.update(settings.CONNECTION_STRINGS)
        return cls(entries)
