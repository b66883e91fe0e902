"""Paging helpers shared by subscription and billing event listings."""
from __future__ import annotations

import math
from typing import Optional, Sequence, Tuple, TypeVar

from .exceptions import PAGE_OUT_OF_RANGE, BillingError
from .models import PageResult

DEFAULT_PER_PAGE = 25
MAX_PER_PAGE = 100

ItemT = TypeVar("ItemT")


def normalize_paging(page: Optional[int], per_page: Optional[int]) -> Tuple[int, int]:
    """Apply defaults and clamp ``per_page`` to ``[1, MAX_PER_PAGE]``."""

    resolved_per_page = DEFAULT_PER_PAGE if not per_page else max(1, min(int(per_page), MAX_PER_PAGE))
    resolved_page = max(1, int(page or 1))
    return resolved_page, resolved_per_page


def total_pages_for(total: int, per_page: int) -> int:
    return math.ceil(total / per_page) if total > 0 else 0


def check_page_in_range(*, total: int, page: int, per_page: int) -> int:
    """Return the page count, raising when ``page`` lies past the last page.

    The first page of an empty listing is valid.
    """

    total_pages = total_pages_for(total, per_page)
    if page > max(total_pages, 1):
        raise BillingError(PAGE_OUT_OF_RANGE)
    return total_pages


def offset_for(page: int, per_page: int) -> int:
    return (page - 1) * per_page


def build_page(items: Sequence[ItemT], *, total: int, page: int, per_page: int) -> PageResult[ItemT]:
    return PageResult(
        items=list(items),
        total=total,
        total_pages=total_pages_for(total, per_page),
        page=page,
        per_page=per_page,
    )


__all__ = [
    "DEFAULT_PER_PAGE",
    "MAX_PER_PAGE",
    "build_page",
    "check_page_in_range",
    "normalize_paging",
    "offset_for",
    "total_pages_for",
]
