import pytest

from relaybot.document_store import (
    SERVER_TIMESTAMP,
    ArrayUnion,
    DocumentNotFoundError,
    Increment,
    apply_update,
)


class TestApplyUpdate:
    def test_dotted_paths_and_sentinels(self):
        doc = {"resources": {"completed": 1}, "tags": ["a"]}
        updated = apply_update(doc, {
            "resources.completed": Increment(2),
            "resources.lastCheck": SERVER_TIMESTAMP,
            "tags": ArrayUnion("a", "b"),
            "new.nested.value": 5,
        }, now="2024-01-01T00:00:00+00:00")

        assert updated["resources"] == {"completed": 3, "lastCheck": "2024-01-01T00:00:00+00:00"}
        assert updated["tags"] == ["a", "b"]
        assert updated["new"] == {"nested": {"value": 5}}
        # input untouched
        assert doc == {"resources": {"completed": 1}, "tags": ["a"]}


class TestDocumentStore:
    def test_set_and_get(self, store):
        store.set("things", "one", {"name": "first", "createdAt": SERVER_TIMESTAMP})

        doc = store.get("things", "one")
        assert doc["name"] == "first"
        assert isinstance(doc["createdAt"], str)
        assert store.get("things", "missing") is None

    def test_get_returns_a_copy(self, store):
        store.set("things", "one", {"nested": {"n": 1}})
        doc = store.get("things", "one")
        doc["nested"]["n"] = 99

        assert store.get("things", "one")["nested"]["n"] == 1

    def test_set_merge_keeps_existing_fields(self, store):
        store.set("things", "one", {"a": 1, "nested": {"x": 1}})
        store.set("things", "one", {"b": 2, "nested": {"y": 2}}, merge=True)
        assert store.get("things", "one") == {"a": 1, "b": 2, "nested": {"x": 1, "y": 2}}

        store.set("things", "one", {"c": 3})
        assert store.get("things", "one") == {"c": 3}

    def test_update_with_callable_and_guard(self, store):
        store.set("things", "one", {"count": 1, "status": "open"})

        assert store.update("things", "one", lambda doc: {"count": doc["count"] + 1})
        assert store.get("things", "one")["count"] == 2

        assert not store.update(
            "things", "one", {"count": 100}, only_if=lambda doc: doc["status"] == "closed"
        )
        assert store.get("things", "one")["count"] == 2

    def test_update_missing_document_raises(self, store):
        with pytest.raises(DocumentNotFoundError):
            store.update("things", "ghost", {"a": 1})

    def test_query_and_delete(self, store):
        store.set("workers", "w1", {"status": "idle"})
        store.set("workers", "w2", {"status": "running"})
        store.set("workers", "w3", {"status": "stopped"})
        store.set("other", "x", {"status": "idle"})

        assert {d["status"] for d in store.query("workers", status=["idle", "running"])} == {"idle", "running"}
        assert len(store.query("workers", status="stopped")) == 1
        assert len(store.query("workers")) == 3

        assert store.delete("workers", "w3")
        assert not store.delete("workers", "w3")
        assert len(store.query("workers")) == 2
