"""
Data models for cursor-paginated list views.
"""
import copy
import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

FilterSet = Dict[str, Any]


@dataclass
class Page:
    """One page as returned by the backend, in server order."""
    items: List[Any]
    next_cursor: Optional[Any] = None
    has_more: bool = False
    total: Optional[int] = None


@dataclass
class PageState:
    """
    Accumulated items of a list view for one filter set.

    The cursor is only meaningful for the exact filters that produced it.
    Managers never mutate a PageState; they return a new one.
    """
    items: List[Any] = field(default_factory=list)
    cursor: Optional[Any] = None
    has_more: bool = False
    filters: FilterSet = field(default_factory=dict)
    total: Optional[int] = None

    @property
    def can_load_more(self) -> bool:
        return self.has_more and self.cursor is not None

    def __len__(self) -> int:
        return len(self.items)


def normalize_filters(filters: Optional[Mapping[str, Any]]) -> FilterSet:
    """
    Canonical form of a filter set.

    Unset values (None or "") are dropped so "no status filter" compares
    equal however the view spells it. Values are deep-copied so later
    mutation by the caller cannot change a stored filter set.
    """
    return {
        k: copy.deepcopy(v)
        for k, v in sorted((filters or {}).items())
        if v is not None and v != ""
    }


def filters_equal(a: Optional[Mapping[str, Any]], b: Optional[Mapping[str, Any]]) -> bool:
    """Deep equality of two filter sets."""
    return normalize_filters(a) == normalize_filters(b)


def filters_key(filters: Optional[Mapping[str, Any]]) -> str:
    """Stable string form of a filter set, for use in query keys."""
    return json.dumps(normalize_filters(filters), sort_keys=True, default=str)
