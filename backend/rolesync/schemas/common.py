"""Shared API envelope schemas."""

from typing import Generic, TypeVar

from pydantic import BaseModel

T = TypeVar("T")


class StreamCursor(BaseModel):
    """Resume point for append-only reads such as the audit stream."""

    next_after_id: int | None = None
    count: int = 0


class ApiResponse(BaseModel, Generic[T]):
    """JSON envelope for every route; `cursor` is only set on stream reads."""

    data: T
    cursor: StreamCursor | None = None
