"""Tests for the SQLite item and collection store."""

import sqlite3
import threading

import pytest

from omnilens.errors import NotFoundError, ValidationError
from omnilens.item_store import ItemStore
from omnilens.types import (
    DEFAULT_CATEGORY,
    STATUS_PROCESSING,
    STATUS_QUEUED,
    STATUS_READY,
    SearchFilters,
)


class TestItems:
    """Create, read, update and delete items."""

    def test_create_defaults(self, store):
        item = store.create_item("/captures/a.jpg")
        assert item.status == STATUS_PROCESSING
        assert item.title == ""
        assert item.notes == ""
        assert item.ocr_text == ""
        assert item.category == DEFAULT_CATEGORY
        assert item.tags == []
        assert item.collection_id is None
        assert item.created_at == item.updated_at

        assert store.get_item(item.id) == item

    def test_ids_are_unique(self, store):
        ids = {store.create_item(f"/captures/{i}.jpg").id for i in range(20)}
        assert len(ids) == 20

    def test_create_rejects_unknown_status(self, store):
        with pytest.raises(ValueError):
            store.create_item("/captures/a.jpg", status="archived")

    def test_create_rejects_missing_collection(self, store):
        with pytest.raises(NotFoundError):
            store.create_item("/captures/a.jpg", collection_id="nope")
        assert store.count_items() == 0

    def test_update_merges_and_advances_updated_at(self, store):
        item = store.create_item("/captures/a.jpg", notes="keep me", tags=["old"])

        updated = store.update_item(
            item.id, title="Receipt", tags=["finance"], status=STATUS_READY,
        )

        assert updated.title == "Receipt"
        assert updated.tags == ["finance"]
        assert updated.status == STATUS_READY
        assert updated.notes == "keep me"  # untouched field survives
        assert updated.created_at == item.created_at
        assert updated.updated_at > item.updated_at
        assert store.get_item(item.id) == updated

    def test_consecutive_updates_strictly_increase(self, store):
        item = store.create_item("/captures/a.jpg")
        stamps = [item.updated_at]
        for i in range(5):
            stamps.append(store.update_item(item.id, notes=str(i)).updated_at)
        assert stamps == sorted(set(stamps))

    def test_update_missing_item(self, store):
        with pytest.raises(NotFoundError):
            store.update_item("nope", title="x")

    def test_update_rejects_identity_fields(self, store):
        item = store.create_item("/captures/a.jpg")
        with pytest.raises(ValueError):
            store.update_item(item.id, id="other")
        with pytest.raises(ValueError):
            store.update_item(item.id, created_at=0)

    def test_update_normalizes_none_text(self, store):
        item = store.create_item("/captures/a.jpg", notes="x")
        updated = store.update_item(item.id, notes=None, category=None)
        assert updated.notes == ""
        assert updated.category == DEFAULT_CATEGORY

    def test_delete(self, store):
        item = store.create_item("/captures/a.jpg")
        assert store.delete_item(item.id) is True
        assert store.delete_item(item.id) is False
        assert store.get_item(item.id) is None
        with pytest.raises(NotFoundError):
            store.require_item(item.id)

    def test_list_newest_first(self, store):
        first = store.create_item("/captures/1.jpg")
        second = store.create_item("/captures/2.jpg")
        third = store.create_item("/captures/3.jpg")
        assert [i.id for i in store.list_items()] == [third.id, second.id, first.id]

    def test_list_by_status_and_counts(self, store):
        a = store.create_item("/captures/a.jpg", status=STATUS_QUEUED)
        store.create_item("/captures/b.jpg", status=STATUS_READY)
        store.create_item("/captures/c.jpg")

        assert [i.id for i in store.list_items_by_status(STATUS_QUEUED)] == [a.id]
        counts = store.status_counts()
        assert counts[STATUS_QUEUED] == 1
        assert counts[STATUS_READY] == 1
        assert counts[STATUS_PROCESSING] == 1
        assert counts["failed"] == 0
        assert store.count_items() == 3

    def test_unicode_round_trip(self, store):
        item = store.create_item(
            "/captures/ü.jpg", title="Café menu", tags=["französisch", "日本"],
        )
        assert store.get_item(item.id).tags == ["französisch", "日本"]

    def test_persists_across_reopen(self, db_path):
        s = ItemStore(db_path)
        item = s.create_item("/captures/a.jpg", title="Kept")
        s.close()

        reopened = ItemStore(db_path)
        assert reopened.get_item(item.id).title == "Kept"
        reopened.close()

    def test_concurrent_updates_same_item(self, store):
        """Concurrent patches to one item never lose each other's fields."""
        item = store.create_item("/captures/a.jpg")
        barrier = threading.Barrier(2)

        def patch(field, value):
            barrier.wait()
            for _ in range(20):
                store.update_item(item.id, **{field: value})

        t1 = threading.Thread(target=patch, args=("title", "T"))
        t2 = threading.Thread(target=patch, args=("notes", "N"))
        t1.start()
        t2.start()
        t1.join()
        t2.join()

        final = store.get_item(item.id)
        assert final.title == "T"
        assert final.notes == "N"


class TestCollections:
    """Collections and item membership."""

    def test_create_and_list_oldest_first(self, store):
        a = store.create_collection("Receipts", "Paper trail")
        b = store.create_collection("Notes")
        assert [c.id for c in store.list_collections()] == [a.id, b.id]
        assert store.get_collection(a.id).description == "Paper trail"

    def test_create_rejects_empty_name(self, store):
        with pytest.raises(ValidationError):
            store.create_collection("   ")

    def test_ensure_default_is_idempotent(self, store):
        first = store.ensure_default_collection("My Library")
        second = store.ensure_default_collection("My Library")
        assert first.id == second.id
        assert [c.name for c in store.list_collections()] == ["My Library"]

    def test_ensure_default_concurrently(self, store, db_path):
        """Two connections racing to create the default end up with one row."""
        other = ItemStore(db_path)
        barrier = threading.Barrier(2)
        ids = []

        def ensure(s):
            barrier.wait()
            ids.append(s.ensure_default_collection("My Library").id)

        threads = [threading.Thread(target=ensure, args=(s,)) for s in (store, other)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(set(ids)) == 1
        assert len(store.list_collections()) == 1
        other.close()

    def test_update_collection(self, store):
        c = store.create_collection("Recipts")
        updated = store.update_collection(c.id, name="Receipts")
        assert updated.name == "Receipts"
        assert updated.updated_at > c.updated_at
        assert store.find_collection_by_name("Receipts").id == c.id

        cleared = store.update_collection(c.id, description="All receipts")
        assert cleared.name == "Receipts"
        assert cleared.description == "All receipts"

    def test_update_missing_collection(self, store):
        with pytest.raises(NotFoundError):
            store.update_collection("nope", name="x")

    def test_delete_collection_unassigns_only_its_items(self, store):
        x = store.create_collection("X")
        y = store.create_collection("Y")
        in_x = [store.create_item(f"/captures/x{i}.jpg", collection_id=x.id) for i in range(3)]
        in_y = store.create_item("/captures/y.jpg", collection_id=y.id)
        loose = store.create_item("/captures/loose.jpg")

        assert store.delete_collection(x.id) == 3

        assert store.get_collection(x.id) is None
        for item in in_x:
            after = store.get_item(item.id)
            assert after.collection_id is None
            assert after.updated_at > item.updated_at
        assert store.get_item(in_y.id).collection_id == y.id
        assert store.get_item(loose.id).collection_id is None
        assert store.count_items() == 5

    def test_delete_missing_collection(self, store):
        with pytest.raises(NotFoundError):
            store.delete_collection("nope")

    def test_legacy_dangling_collection_reference(self, store, db_path):
        """Rows pointing at a deleted collection still load."""
        conn = sqlite3.connect(str(db_path))
        conn.execute("""
            INSERT INTO items (id, image_uri, created_at, updated_at, title, notes,
                               ocr_text, category, tags, identified_objects,
                               collection_id, status)
            VALUES ('legacy', '/c/l.jpg', 1, 1, NULL, NULL, NULL, NULL, NULL, NULL,
                    'gone', 'ready')
        """)
        conn.commit()
        conn.close()

        item = store.get_item("legacy")
        assert item.title == ""
        assert item.tags == []
        assert item.category == DEFAULT_CATEGORY
        assert item.collection_id == "gone"


class TestSearchItems:
    """Free-text and filtered search in the store."""

    @pytest.fixture
    def library(self, store):
        receipts = store.create_collection("Receipts")
        items = {
            "coffee": store.create_item(
                "/c/coffee.jpg", title="Coffee receipt", ocr_text="2x LATTE 9.50",
                category="Receipts", tags=["finance"], collection_id=receipts.id,
            ),
            "board": store.create_item(
                "/c/board.jpg", title="Sprint board", notes="UX review notes",
                category="Notes", tags=["meeting", "UX"],
            ),
            "card": store.create_item(
                "/c/card.jpg", title="Business card", ocr_text="Jane Roe, UX lead",
                category="Contacts", tags=["business-card"],
            ),
        }
        return receipts, items

    def test_text_matches_title_notes_and_ocr(self, store, library):
        _, items = library
        assert [i.id for i in store.search_items("latte")] == [items["coffee"].id]
        assert [i.id for i in store.search_items("REVIEW")] == [items["board"].id]
        assert {i.id for i in store.search_items("ux")} == {items["board"].id, items["card"].id}

    def test_tags_match_category_or_tags(self, store, library):
        _, items = library
        by_tag = store.search_items("", SearchFilters(tags=["ux"]))
        assert [i.id for i in by_tag] == [items["board"].id]

        by_category = store.search_items("", SearchFilters(tags=["receipt"]))
        assert [i.id for i in by_category] == [items["coffee"].id]

    def test_every_requested_tag_must_match(self, store, library):
        _, items = library
        both = store.search_items("", SearchFilters(tags=["meeting", "ux"]))
        assert [i.id for i in both] == [items["board"].id]
        assert store.search_items("", SearchFilters(tags=["meeting", "finance"])) == []

    def test_category_is_exact(self, store, library):
        _, items = library
        assert [i.id for i in store.search_items("", SearchFilters(category="Notes"))] == [
            items["board"].id
        ]
        assert store.search_items("", SearchFilters(category="notes")) == []

    def test_collection_and_unassigned(self, store, library):
        receipts, items = library
        in_receipts = store.search_items("", SearchFilters(collection_id=receipts.id))
        assert [i.id for i in in_receipts] == [items["coffee"].id]

        loose = store.search_items("", SearchFilters(unassigned=True))
        assert {i.id for i in loose} == {items["board"].id, items["card"].id}

    def test_no_filters_lists_everything(self, store, library):
        assert store.search_items("") == store.list_items()

    def test_combined_filters(self, store, library):
        _, items = library
        result = store.search_items("ux", SearchFilters(category="Contacts"))
        assert [i.id for i in result] == [items["card"].id]

    def test_casefold_non_ascii(self, store):
        item = store.create_item("/c/s.jpg", title="STRASSE", tags=["Größe"])
        assert [i.id for i in store.search_items("straße")] == [item.id]
        assert [i.id for i in store.search_items("", SearchFilters(tags=["GRÖSSE"]))] == [item.id]
