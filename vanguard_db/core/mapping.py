"""
Entity <-> DTO projection.

Mappings are registered explicitly per (source type, target type) pair. A pair
registered without a function gets a default projection: pydantic targets are
validated from the source's attributes, ORM entity targets are built from the
source's values for the entity's mapped columns.
"""
from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Type, TypeVar

from pydantic import BaseModel
from sqlalchemy import inspect as sa_inspect
from sqlalchemy.orm import Mapper as OrmMapper

from .exceptions import ConfigurationError, MappingNotRegistered

logger = logging.getLogger(__name__)

TTarget = TypeVar("TTarget")
Projection = Callable[[Any], Any]


def _entity_columns(entity_type: type) -> Optional[List[str]]:
    info = sa_inspect(entity_type, raiseerr=False)
    if isinstance(info, OrmMapper):
        return [attr.key for attr in info.column_attrs]
    return None


def _default_projection(target: type) -> Projection:
    if isinstance(target, type) and issubclass(target, BaseModel):
        return lambda obj: target.model_validate(obj, from_attributes=True)

    columns = _entity_columns(target)
    if columns is not None:
        def _to_entity(obj: Any) -> Any:
            if isinstance(obj, BaseModel):
                values = obj.model_dump(include=set(columns), exclude_unset=True)
            else:
                values = {key: getattr(obj, key) for key in columns if hasattr(obj, key)}
            return target(**values)

        return _to_entity

    raise ConfigurationError(
        f"No default projection to {getattr(target, '__name__', target)}; register a function",
        operation="register_mapping",
    )


class Mapper:
    """Registry of projections addressed by (source type, target type)."""

    def __init__(self) -> None:
        self._projections: Dict[Tuple[type, type], Projection] = {}

    def register(self, source: type, target: type, fn: Optional[Projection] = None) -> "Mapper":
        """Register a projection from ``source`` to ``target``; returns self for chaining."""
        self._projections[(source, target)] = fn if fn is not None else _default_projection(target)
        logger.debug("Registered mapping %s -> %s", source.__name__, target.__name__)
        return self

    def register_pair(self, first: type, second: type) -> "Mapper":
        """Register default projections in both directions."""
        return self.register(first, second).register(second, first)

    def can_map(self, source: type, target: type) -> bool:
        try:
            self._resolve(source, target)
        except MappingNotRegistered:
            return False
        return True

    def _resolve(self, source: type, target: type) -> Projection:
        # Subclasses of a registered source reuse its projection.
        for base in source.__mro__:
            fn = self._projections.get((base, target))
            if fn is not None:
                return fn
        raise MappingNotRegistered(source, target)

    def map(self, obj: Any, target: Type[TTarget]) -> TTarget:
        """Project one object to ``target``."""
        return self._resolve(type(obj), target)(obj)

    def map_many(self, objs: Iterable[Any], target: Type[TTarget]) -> List[TTarget]:
        """Project each object to ``target``, preserving order."""
        resolved: Dict[type, Projection] = {}
        result: List[TTarget] = []
        for obj in objs:
            source = type(obj)
            fn = resolved.get(source)
            if fn is None:
                fn = resolved[source] = self._resolve(source, target)
            result.append(fn(obj))
        return result
