from __future__ import annotations

import logging
import re
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request, status

from vanguard_db.repositories import RepositoryProvider
from vanguard_db.services.users import UserService

logger = logging.getLogger(__name__)

# Database codes are short identifiers: letters, digits, hyphens, underscores.
_DB_CODE_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


# PUBLIC_INTERFACE
def get_repository_provider(request: Request) -> RepositoryProvider:
    """Return the RepositoryProvider built at application creation."""
    return request.app.state.repository_provider


# PUBLIC_INTERFACE
async def get_db_code(x_db_code: Optional[str] = Header(default=None, alias="X-Db-Code")) -> Optional[str]:
    """
    Extract the target database code from the X-Db-Code header.

    Returns None (the default database) when the header is absent.

    Raises:
        HTTPException: 400 Bad Request if the header is not a valid code.
    """
    if x_db_code is None:
        return None
    if not _DB_CODE_RE.match(x_db_code):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="X-Db-Code header must be 1-64 letters, digits, '-' or '_'.",
        )
    return x_db_code


# PUBLIC_INTERFACE
def get_user_service(provider: RepositoryProvider = Depends(get_repository_provider)) -> UserService:
    """Build a UserService bound to the application's provider."""
    return UserService(provider)
