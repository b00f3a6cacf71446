"""
Public Pydantic schemas used by the repository layer, services and routes.

Includes the paging value types shared by every repository as well as the
DTOs of the sample user module and the standard API responses.
"""

from .common import (  # noqa: F401
    ErrorInfo,
    ErrorResponse,
    KeywordPageRequest,
    MessageResponse,
    PagedResult,
    PageRequest,
)
from .user import UserCreate, UserDto, UserRename  # noqa: F401
