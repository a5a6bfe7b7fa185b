from __future__ import annotations

import math
from dataclasses import dataclass

from leadflow.core.config import get_settings
from leadflow.crm.schemas import PaginationMeta


@dataclass(frozen=True, slots=True)
class PageRequest:
    page: int
    limit: int

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit


def normalize_page(page: int | None, limit: int | None) -> PageRequest:
    """Clamp page to >= 1 and limit to [1, crm_max_page_size], defaulting to crm_default_page_size."""
    settings = get_settings()
    resolved_page = max(1, page or 1)
    resolved_limit = settings.crm_default_page_size if limit is None else limit
    resolved_limit = min(max(1, resolved_limit), settings.crm_max_page_size)
    return PageRequest(page=resolved_page, limit=resolved_limit)


def build_pagination_meta(page: int, limit: int, total: int) -> PaginationMeta:
    total_pages = math.ceil(total / limit) if limit > 0 else 0
    return PaginationMeta(
        page=page,
        limit=limit,
        total=total,
        total_pages=total_pages,
        has_next=page < total_pages,
        has_prev=page > 1,
    )
