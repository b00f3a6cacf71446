"""
Explicit entity <-> DTO mapping registrations.

Every projection the application uses is listed here; nothing is discovered at
runtime.
"""
from __future__ import annotations

from vanguard_db.core.mapping import Mapper
from vanguard_db.db.models import UserEntity
from .user import UserCreate, UserDto


def register_user_mappings(mapper: Mapper) -> Mapper:
    mapper.register(UserEntity, UserDto)
    mapper.register(UserCreate, UserEntity)
    mapper.register(UserDto, UserEntity)
    return mapper


# PUBLIC_INTERFACE
def build_mapper() -> Mapper:
    """Return a Mapper holding every application mapping."""
    return register_user_mappings(Mapper())
