"""Page requests and the summary returned with a page of rows."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class Pagination:
    """A requested page; a page size of zero or less means no limit."""

    page: int = 1
    page_size: int = 0


@dataclass(frozen=True)
class PaginationInfo:
    """What was returned: the page asked for, the total count and the offset used."""

    page: int
    page_size: int
    total: int
    offset: int


def offset_and_limit(pagination: Pagination | None) -> tuple[int, int]:
    """Return (offset, limit) for a page; (0, 0) means everything."""
    if pagination is None or pagination.page_size <= 0:
        return 0, 0
    page = max(pagination.page, 1)
    return (page - 1) * pagination.page_size, pagination.page_size


def pagination_info(pagination: Pagination, total: int, offset: int) -> PaginationInfo:
    """Summarise a page of results."""
    if total < 0:
        raise ValueError(f"total must not be negative, got {total}")
    if offset < 0:
        raise ValueError(f"offset must not be negative, got {offset}")
    return PaginationInfo(
        page=pagination.page,
        page_size=pagination.page_size,
        total=total,
        offset=offset,
    )