"""Offset pagination helpers shared by the analytics reports."""
import math
from dataclasses import dataclass
from typing import List, Sequence, TypeVar

from schemas import PaginationInfo

T = TypeVar("T")


@dataclass(frozen=True)
class PageWindow:
    """Resolved offset pagination parameters."""
    page: int
    limit: int

    @property
    def skip(self) -> int:
        return (self.page - 1) * self.limit

    def slice(self, items: Sequence[T]) -> List[T]:
        """Return the items on this page."""
        return list(items[self.skip:self.skip + self.limit])


def calculate_pagination(total: int, page: int, limit: int) -> PaginationInfo:
    """
    Build pagination metadata for an offset-paginated list.

    The reported page is clamped to the last page; an empty list still has
    one (empty) page.
    """
    total_pages = max(1, math.ceil(total / limit))
    current_page = min(page, total_pages)
    return PaginationInfo(
        total=total,
        page=current_page,
        limit=limit,
        total_pages=total_pages,
        has_next=current_page < total_pages,
        has_previous=current_page > 1,
    )
