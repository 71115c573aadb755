from __future__ import annotations

from dataclasses import dataclass, field
from typing import Generic, List, Optional, Tuple, TypeVar

from kitchguard.config import Settings

T = TypeVar("T")


@dataclass(frozen=True)
class Page(Generic[T]):
    items: List[T] = field(default_factory=list)
    total: int = 0
    limit: int = 0
    offset: int = 0


def page_bounds(settings: Settings, limit: Optional[int], offset: Optional[int]) -> Tuple[int, int]:
    """Clamp caller paging to ``1..max_page_size`` and a non-negative offset."""
    if limit is None or limit <= 0:
        limit = settings.default_page_size
    return min(limit, settings.max_page_size), max(offset or 0, 0)
