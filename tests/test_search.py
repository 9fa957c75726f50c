"""Tests for the search engine's list-vs-search decision."""

from unittest.mock import MagicMock

import pytest

from omnilens.search import SearchEngine, has_active_criteria
from omnilens.types import SearchFilters


class TestActiveCriteria:
    @pytest.mark.parametrize("query, filters", [
        ("", None),
        ("   ", None),
        ("", SearchFilters()),
        ("", SearchFilters(tags=["", "  "])),
    ])
    def test_inactive(self, query, filters):
        assert has_active_criteria(query, filters) is False

    @pytest.mark.parametrize("query, filters", [
        ("coffee", None),
        ("", SearchFilters(category="Receipts")),
        ("", SearchFilters(collection_id="c1")),
        ("", SearchFilters(unassigned=True)),
        ("", SearchFilters(tags=["ux"])),
    ])
    def test_active(self, query, filters):
        assert has_active_criteria(query, filters) is True


class TestSearchEngine:
    def test_blank_search_lists_all(self):
        store = MagicMock()
        store.list_items.return_value = ["a", "b"]

        result = SearchEngine(store).run("  ", SearchFilters())

        assert result == ["a", "b"]
        store.search_items.assert_not_called()

    def test_query_is_stripped(self):
        store = MagicMock()
        store.search_items.return_value = ["a"]
        filters = SearchFilters(tags=["ux"])

        assert SearchEngine(store).run("  coffee ", filters) == ["a"]
        store.search_items.assert_called_once_with("coffee", filters)
        store.list_items.assert_not_called()

    def test_filter_only_search(self):
        store = MagicMock()
        filters = SearchFilters(unassigned=True)
        SearchEngine(store).run("", filters)
        store.search_items.assert_called_once_with("", filters)

    def test_against_real_store(self, store):
        a = store.create_item("/c/a.jpg", title="Whiteboard", tags=["ux"])
        store.create_item("/c/b.jpg", title="Receipt")
        engine = SearchEngine(store)

        assert engine.run("") == store.list_items()
        assert [i.id for i in engine.run("", SearchFilters(tags=["UX"]))] == [a.id]
