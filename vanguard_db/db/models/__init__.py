"""
ORM models for entities served through the repository layer.

Importing this package ensures model classes are registered with the Base
metadata for table creation and runtime usage.
"""

from .user import UserEntity  # noqa: F401

__all__ = ["UserEntity"]
