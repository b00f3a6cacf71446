from __future__ import annotations

import logging
from typing import Optional

from vanguard_db.db.models import UserEntity
from vanguard_db.schemas.common import KeywordPageRequest, PagedResult
from vanguard_db.schemas.user import UserCreate, UserDto
from vanguard_db.services.base import DBServiceBase

logger = logging.getLogger(__name__)


class UserService(DBServiceBase):
    """
    Domain service for users.

    Every method takes an optional database code so the same service can serve
    any configured database holding a users table.
    """

    # PUBLIC_INTERFACE
    async def list_users(
        self, request: KeywordPageRequest[str], code: Optional[str] = None
    ) -> PagedResult[UserDto]:
        """
        Page through users, newest first, optionally filtered by a name keyword.

        Parameters:
            request: page number/size plus an optional keyword matched against the name
            code: database code (default database when None)
        Returns:
            PagedResult of UserDto
        """
        predicate = None
        if request.keyword:
            pattern = f"%{request.keyword}%"
            predicate = UserEntity.name.like(pattern)
        return await self.repository(code).query_paged_as(
            UserDto,
            UserEntity,
            request,
            predicate=predicate,
            order_by=UserEntity.id,
            descending=True,
        )

    # PUBLIC_INTERFACE
    async def get_user(self, user_id: int, code: Optional[str] = None) -> Optional[UserDto]:
        entity = await self.repository(code).first(UserEntity, UserEntity.id == user_id)
        if entity is None:
            return None
        return self.repository(code).mapper.map(entity, UserDto)

    # PUBLIC_INTERFACE
    async def create_user(self, payload: UserCreate, code: Optional[str] = None) -> UserDto:
        """Insert a user and return it with its generated id."""
        repo = self.repository(code)
        created = await repo.insert(repo.mapper.map(payload, UserEntity))
        logger.info("Created user id=%s", created.id)
        return repo.mapper.map(created, UserDto)

    # PUBLIC_INTERFACE
    async def delete_user(self, user_id: int, code: Optional[str] = None) -> bool:
        return await self.repository(code).delete_where(UserEntity, UserEntity.id == user_id)

    # PUBLIC_INTERFACE
    async def rename_user(self, user_id: int, name: str, code: Optional[str] = None) -> bool:
        """
        Change a user's name, leaving every other column as stored.

        Runs inside a unit of work so the read and the update see the same row.
        """
        async with self.unit_of_work(code) as uow:
            repo = self.repository(code)
            entity = await repo.first(UserEntity, UserEntity.id == user_id)
            if entity is None:
                return False
            entity.name = name
            updated = await repo.update(
                entity, ignore=[UserEntity.email, UserEntity.remark, UserEntity.is_active, UserEntity.created_at]
            )
            await uow.commit()
        return updated
