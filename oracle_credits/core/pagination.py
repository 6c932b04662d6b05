"""Offset pagination for transaction listings."""

from typing import Any, Generic, TypeVar

from pydantic import BaseModel

T = TypeVar("T")

MAX_PAGE_SIZE = 200


class Page(BaseModel, Generic[T]):
    items: list[T]
    limit: int
    offset: int
    total: int | None = None
    next_offset: int | None = None  # None on the last page


def paginate(limit: int, offset: int, max_limit: int = MAX_PAGE_SIZE) -> tuple[int, int]:
    """Clamp limit/offset; return (limit, offset)."""
    return max(1, min(limit, max_limit)), max(0, offset)


def page_of(items: list[Any], limit: int, offset: int, total: int | None = None) -> Page:
    """Wrap one slice of a listing. Without a total, a full slice means there may be more."""
    if total is not None:
        more = offset + len(items) < total
    else:
        more = len(items) == limit
    return Page(items=items, limit=limit, offset=offset, total=total, next_offset=offset + len(items) if more else None)
