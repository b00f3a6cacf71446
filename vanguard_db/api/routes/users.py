from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Path, Query, status

from vanguard_db.core.deps import get_db_code, get_user_service
from vanguard_db.schemas.common import KeywordPageRequest, PagedResult
from vanguard_db.schemas.user import UserCreate, UserDto, UserRename
from vanguard_db.services.users import UserService

router = APIRouter(prefix="/users", tags=["Users"])


# PUBLIC_INTERFACE
@router.get(
    "",
    response_model=PagedResult[UserDto],
    summary="List users",
    description="Page through users of the selected database (X-Db-Code header, default database otherwise).",
)
async def list_users(
    page_number: int = Query(1, ge=1, alias="pageNumber"),
    page_size: int = Query(20, ge=1, le=1000, alias="pageSize"),
    keyword: Optional[str] = Query(None, description="Substring matched against the user name"),
    code: Optional[str] = Depends(get_db_code),
    service: UserService = Depends(get_user_service),
) -> PagedResult[UserDto]:
    request = KeywordPageRequest[str](page_number=page_number, page_size=page_size, keyword=keyword)
    return await service.list_users(request, code)


# PUBLIC_INTERFACE
@router.post(
    "",
    response_model=UserDto,
    status_code=status.HTTP_201_CREATED,
    summary="Create user",
)
async def create_user(
    payload: UserCreate,
    code: Optional[str] = Depends(get_db_code),
    service: UserService = Depends(get_user_service),
) -> UserDto:
    return await service.create_user(payload, code)


# PUBLIC_INTERFACE
@router.get(
    "/{user_id}",
    response_model=UserDto,
    summary="Get user",
)
async def get_user(
    user_id: int = Path(..., ge=1),
    code: Optional[str] = Depends(get_db_code),
    service: UserService = Depends(get_user_service),
) -> UserDto:
    user = await service.get_user(user_id, code)
    if user is None:
        raise HTTPException(status_code=404, detail="User not found")
    return user


# PUBLIC_INTERFACE
@router.delete(
    "/{user_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete user",
)
async def delete_user(
    user_id: int = Path(..., ge=1),
    code: Optional[str] = Depends(get_db_code),
    service: UserService = Depends(get_user_service),
) -> None:
    if not await service.delete_user(user_id, code):
        raise HTTPException(status_code=404, detail="User not found")


# PUBLIC_INTERFACE
@router.patch(
    "/{user_id}/name",
    response_model=UserDto,
    summary="Rename user",
    description="Change the user's name inside a unit of work; other columns are left as stored.",
)
async def rename_user(
    payload: UserRename,
    user_id: int = Path(..., ge=1),
    code: Optional[str] = Depends(get_db_code),
    service: UserService = Depends(get_user_service),
) -> UserDto:
    if not await service.rename_user(user_id, payload.name, code):
        raise HTTPException(status_code=404, detail="User not found")
    user = await service.get_user(user_id, code)
    if user is None:
        raise HTTPException(status_code=404, detail="User not found")
    return user
