"""
Cursor-based pagination for console list views.
"""
from .models import (
    FilterSet,
    Page,
    PageState,
    normalize_filters,
    filters_equal,
    filters_key,
)
from .manager import PaginationCursorManager, PageFetcher

__all__ = [
    # Models
    "FilterSet",
    "Page",
    "PageState",
    "normalize_filters",
    "filters_equal",
    "filters_key",
    # Manager
    "PaginationCursorManager",
    "PageFetcher",
]
