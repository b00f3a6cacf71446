from __future__ import annotations

import math
from datetime import datetime
from typing import Any, Generic, List, Optional, TypeVar

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, computed_field, model_validator

T = TypeVar("T")
K = TypeVar("K")


class PageRequest(BaseModel):
    """Pagination parameters (1-based page number)."""
    model_config = ConfigDict(frozen=True)

    page_number: int = Field(
        1,
        ge=1,
        validation_alias=AliasChoices("page_number", "pageNumber"),
        description="1-based page number",
    )
    page_size: int = Field(
        20,
        ge=1,
        validation_alias=AliasChoices("page_size", "pageSize"),
        description="Max number of records per page",
    )

    @property
    def offset(self) -> int:
        """Number of records skipped before this page."""
        return (self.page_number - 1) * self.page_size


class KeywordPageRequest(PageRequest, Generic[K]):
    """Pagination parameters with an optional search keyword."""
    keyword: Optional[K] = Field(default=None, description="Optional search keyword")


class PagedResult(BaseModel, Generic[T]):
    """One page of a query plus the total count of the filtered set."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    items: List[T] = Field(default_factory=list, description="Records on this page")
    total_count: int = Field(..., ge=0, description="Number of records matching the filter")
    page_number: int = Field(..., ge=1)
    page_size: int = Field(..., ge=1)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def total_pages(self) -> int:
        """ceil(total_count / page_size)."""
        return math.ceil(self.total_count / self.page_size)

    @property
    def has_next(self) -> bool:
        return self.page_number < self.total_pages

    @property
    def has_previous(self) -> bool:
        return self.page_number > 1

    @model_validator(mode="after")
    def _items_fit_page(self) -> "PagedResult[T]":
        if len(self.items) > self.page_size:
            raise ValueError(
                f"Page holds {len(self.items)} items but page_size is {self.page_size}"
            )
        return self

    # PUBLIC_INTERFACE
    @classmethod
    def of(cls, page: PageRequest, items: List[Any], total_count: int) -> "PagedResult[Any]":
        """Build a result for ``page`` from the fetched window and the filtered total."""
        return cls(
            items=list(items),
            total_count=total_count,
            page_number=page.page_number,
            page_size=page.page_size,
        )


class MessageResponse(BaseModel):
    """Standard message response."""
    message: str = Field(..., description="Human readable message")
    details: Optional[dict] = Field(default=None, description="Optional extra data")


class ErrorInfo(BaseModel):
    """Structured error description."""
    type: str = Field(..., description="Machine-readable error type code")
    message: str = Field(..., description="Human-readable error message")
    details: Optional[Any] = Field(default=None, description="Optional error details (e.g., validation issues)")


# PUBLIC_INTERFACE
class ErrorResponse(BaseModel):
    """Standardized API error envelope returned by exception handlers."""
    status: int = Field(..., description="HTTP status code")
    error: ErrorInfo = Field(..., description="Error details")
    correlation_id: Optional[str] = Field(default=None, description="Request correlation ID")
    db_code: Optional[str] = Field(default=None, description="Database code (if available)")
    path: Optional[str] = Field(default=None, description="Request path")
    method: Optional[str] = Field(default=None, description="HTTP method")
    timestamp: datetime = Field(..., description="Error timestamp (UTC)")
