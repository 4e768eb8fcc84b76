#!/usr/bin/env python3
"""
Project store tests: create/list/get/update/delete and the degradation
policy when the remote collection is unreachable.
"""
import os
import sys
from datetime import datetime, timedelta

# Add the app directory to the path
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

# Set testing environment before importing app
os.environ['TESTING'] = 'True'
os.environ['SECRET_KEY'] = 'test-secret-key'
os.environ['DATABASE_URL'] = 'sqlite:///:memory:'

import pytest

from app import app
from services import (
    ProjectStore, WriteQueue, ValidationError, PersistenceError, NotFoundError, utcnow
)


class FakeCollection:
    """In-memory projects collection that can be switched offline."""

    def __init__(self):
        self.documents = {}
        self.calls = []
        self.offline = False
        self._counter = 0

    def _call(self, op):
        self.calls.append(op)
        if self.offline:
            raise PersistenceError("store unreachable")

    def add(self, fields):
        self._call("add")
        self._counter += 1
        doc_id = f"doc{self._counter}"
        stamp = datetime(2024, 6, 1, 9, 0) + timedelta(minutes=self._counter)
        self.documents[doc_id] = {"data": dict(fields), "created_at": stamp, "updated_at": stamp}
        return doc_id

    def stream(self):
        self._call("stream")
        return [
            {"id": doc_id, "data": dict(doc["data"]),
             "created_at": doc["created_at"], "updated_at": doc["updated_at"]}
            for doc_id, doc in self.documents.items()
        ]

    def get(self, doc_id):
        self._call("get")
        doc = self.documents.get(doc_id)
        if doc is None:
            return None
        return {"id": doc_id, "data": dict(doc["data"]),
                "created_at": doc["created_at"], "updated_at": doc["updated_at"]}

    def update(self, doc_id, fields):
        self._call("update")
        if doc_id not in self.documents:
            raise NotFoundError(f"No project document {doc_id}")
        self.documents[doc_id]["data"].update(fields)

    def delete(self, doc_id):
        self._call("delete")
        self.documents.pop(doc_id, None)


def make_store(retry_limit=3):
    collection = FakeCollection()
    queue = WriteQueue(collection, retry_limit=retry_limit, local_prefix="local_")
    return collection, ProjectStore(collection, queue, local_prefix="local_")


def test_create_project_assigns_store_id():
    collection, store = make_store()
    with app.app_context():
        project = store.create_project("Picnic", 9, 11)

    assert project.id == "doc1"
    assert project.name == "Picnic"
    assert project.roles == []
    assert project.volunteer_data == {}
    assert collection.documents["doc1"]["data"] == {
        "name": "Picnic", "startTime": 9, "endTime": 11, "roles": [], "volunteerData": {},
    }


def test_create_project_rejects_bad_window_without_side_effects():
    collection, store = make_store()
    with app.app_context():
        for start, end in ((11, 11), (12, 9)):
            with pytest.raises(ValidationError):
                store.create_project("Picnic", start, end)
        with pytest.raises(ValidationError):
            store.create_project("Picnic", 9, 24)

        assert collection.calls == []
        assert store.list_projects() == []


def test_create_project_rejects_blank_name():
    collection, store = make_store()
    with app.app_context():
        with pytest.raises(ValidationError, match="cannot be empty"):
            store.create_project("   ", 9, 17)
    assert collection.documents == {}


def test_create_project_falls_back_to_local_id_when_offline():
    collection, store = make_store()
    collection.offline = True
    with app.app_context():
        first = store.create_project("Bake sale", 8, 12)
        second = store.create_project("Car wash", 10, 14)

        assert first.id.startswith("local_")
        assert second.id.startswith("local_")
        assert first.id != second.id
        assert collection.documents == {}

        # Back online: local-only projects stay listed next to remote ones
        collection.offline = False
        store.create_project("Picnic", 9, 11)
        names = {p.name for p in store.list_projects()}
    assert names == {"Bake sale", "Car wash", "Picnic"}


def test_list_projects_newest_first():
    collection, store = make_store()
    with app.app_context():
        store.create_project("First", 9, 10)
        store.create_project("Second", 9, 10)
        store.create_project("Third", 9, 10)
        listed = [p.name for p in store.list_projects()]
    assert listed == ["Third", "Second", "First"]


def test_list_projects_degrades_to_empty_when_offline():
    collection, store = make_store()
    with app.app_context():
        store.create_project("Picnic", 9, 11)
        collection.offline = True

        assert store.list_projects() == []
        with pytest.raises(PersistenceError):
            store.list_projects(strict=True)


def test_list_projects_fills_missing_timestamps_with_now():
    collection, store = make_store()
    collection.documents["legacy"] = {
        "data": {"name": "Legacy", "startTime": 9, "endTime": 10, "roles": []},
        "created_at": None,
        "updated_at": None,
    }
    before = utcnow() - timedelta(seconds=1)
    with app.app_context():
        (project,) = store.list_projects()
    assert project.created_at >= before
    assert project.updated_at >= before
    assert project.volunteer_data is None


def test_get_project_missing_raises_not_found():
    collection, store = make_store()
    with app.app_context():
        with pytest.raises(NotFoundError):
            store.get_project("nope")
        with pytest.raises(NotFoundError):
            store.get_project("local_123")


def test_get_project_serves_local_copy_when_offline():
    collection, store = make_store()
    with app.app_context():
        project = store.create_project("Picnic", 9, 11)
        collection.offline = True
        assert store.get_project(project.id) is project

        # Nothing cached: the failure propagates from the direct lookup
        _, fresh_store = make_store()
        fresh_store.collection.offline = True
        with pytest.raises(PersistenceError):
            fresh_store.get_project(project.id)


def test_update_project_keeps_local_result_when_offline():
    collection, store = make_store()
    with app.app_context():
        project = store.create_project("Picnic", 9, 11)
        collection.offline = True

        updated = store.update_project(project.id, roles=["Cook"])
        assert updated.roles == ["Cook"]
        assert updated.updated_at >= project.created_at
        assert store.write_queue.has_pending(project.id)
        assert collection.documents[project.id]["data"]["roles"] == []

        # The cached copy wins over the stale remote document while the write is pending
        collection.offline = False
        assert store.get_project(project.id).roles == ["Cook"]
        assert store.list_projects()[0].roles == ["Cook"]

        assert store.write_queue.flush() == 1
    assert collection.documents[project.id]["data"]["roles"] == ["Cook"]
    assert len(store.write_queue) == 0


def test_update_unknown_project_returns_none():
    collection, store = make_store()
    with app.app_context():
        assert store.update_project("ghost", roles=["Cook"]) is None
    assert "update" not in collection.calls


def test_update_project_rejects_unknown_fields():
    collection, store = make_store()
    with app.app_context():
        project = store.create_project("Picnic", 9, 11)
        with pytest.raises(ValueError):
            store.update_project(project.id, colour="red")


def test_delete_local_project_never_calls_remote():
    collection, store = make_store()
    with app.app_context():
        collection.offline = True
        project = store.create_project("Bake sale", 8, 12)
        collection.offline = False

        assert store.delete_project(project.id) is True
    assert "delete" not in collection.calls


def test_delete_reports_success_when_offline():
    collection, store = make_store()
    with app.app_context():
        project = store.create_project("Picnic", 9, 11)
        collection.offline = True
        assert store.delete_project(project.id) is True

    # The remote copy survives; the inconsistency is only logged
    assert collection.calls[-1] == "delete"
    assert project.id in collection.documents


def test_write_queue_coalesces_and_drops_after_retry_limit():
    collection, store = make_store(retry_limit=2)
    with app.app_context():
        project = store.create_project("Picnic", 9, 11)
        collection.offline = True

        store.update_project(project.id, roles=["Cook"])
        store.update_project(project.id, name="Summer picnic")
        assert len(store.write_queue) == 1

        # attempt 1 happened on the second update, attempt 2 exhausts the limit
        assert store.write_queue.flush() == 0
        assert len(store.write_queue) == 0

        collection.offline = False
        assert store.write_queue.flush() == 0
    assert collection.documents[project.id]["data"]["name"] == "Picnic"


def test_write_for_deleted_document_is_dropped():
    collection, store = make_store()
    with app.app_context():
        project = store.create_project("Picnic", 9, 11)
        del collection.documents[project.id]

        assert store.update_volunteer_data(project.id, {"09:00": {}}) is True
        assert len(store.write_queue) == 0


def test_save_volunteer_data_surfaces_failure():
    collection, store = make_store()
    grid = {"09:00": {"Cook": "Alice"}, "10:00": {"Cook": False}}
    with app.app_context():
        project = store.create_project("Picnic", 9, 11)
        collection.offline = True
        with pytest.raises(PersistenceError):
            store.save_volunteer_data(project.id, grid)
        # the explicit save stays queued for the background retry
        assert store.write_queue.has_pending(project.id)

        collection.offline = False
        assert store.save_volunteer_data(project.id, grid) is True
    assert collection.documents[project.id]["data"]["volunteerData"] == grid


def test_get_volunteer_data_degrades_to_empty():
    collection, store = make_store()
    with app.app_context():
        assert store.get_volunteer_data("missing") == {}
        project = store.create_project("Picnic", 9, 11)
        store.update_volunteer_data(project.id, {"09:00": {"Cook": "Alice"}})
        assert store.get_volunteer_data(project.id) == {"09:00": {"Cook": "Alice"}}

        _, fresh_store = make_store()
        fresh_store.collection.offline = True
        assert fresh_store.get_volunteer_data(project.id) == {}


if __name__ == "__main__":
    sys.exit(pytest.main([__file__, "-v"]))
