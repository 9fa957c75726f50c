"""
Search over the item store.

The engine decides whether a search is needed at all: with no active
dimension (blank query, no category, collection or tags) it returns the full
item list in the store's default order instead of running a search.
"""

import logging
from typing import Optional

from .item_store import ItemStore
from .types import Item, SearchFilters

logger = logging.getLogger(__name__)


def has_active_criteria(query: str, filters: Optional[SearchFilters]) -> bool:
    """True if the query or any filter dimension constrains the result."""
    if query and query.strip():
        return True
    return bool(filters and filters.is_active())


class SearchEngine:
    """Read-only façade over ItemStore.search_items."""

    def __init__(self, store: ItemStore):
        self._store = store

    def run(self, query: str = "", filters: Optional[SearchFilters] = None) -> list[Item]:
        """
        Search items, or list them all when nothing constrains the search.

        Args:
            query: Free text, stripped before use
            filters: Structured constraints

        Returns:
            Items, newest first
        """
        query = (query or "").strip()
        if not has_active_criteria(query, filters):
            return self._store.list_items()
        results = self._store.search_items(query, filters)
        logger.debug("Search %r %s -> %d items", query, filters, len(results))
        return results
