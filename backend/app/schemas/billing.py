"""API schemas for billing manager endpoints."""
from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, ConfigDict

from ..billing import PageResult
from ..billingmanager import BillingDetail, EventSummary, SubscriptionStatusView


class PageMeta(BaseModel):
    resources_per_page: int
    total_resources: int
    total_pages: int
    page: int

    @classmethod
    def from_page(cls, page: PageResult) -> "PageMeta":
        return cls(**page.meta())


class BillingEventListResponse(BaseModel):
    data: List[EventSummary]
    meta: Optional[PageMeta] = None

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_page(cls, page: PageResult[EventSummary], *, include_meta: bool) -> "BillingEventListResponse":
        return cls(
            data=list(page.items),
            meta=PageMeta.from_page(page) if include_meta else None,
        )


class SubscriptionStatusResponse(BaseModel):
    data: SubscriptionStatusView


class BillingDetailResponse(BaseModel):
    data: BillingDetail


__all__ = [
    "BillingDetailResponse",
    "BillingEventListResponse",
    "PageMeta",
    "SubscriptionStatusResponse",
]
