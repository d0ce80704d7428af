"""Tests for applying actions to the task store."""

from unittest.mock import Mock

import pytest

from taskvoiced.actions import TaskAction
from taskvoiced.errors import PersistenceError
from taskvoiced.reconciler import Reconciler
from taskvoiced.task_store import TaskStore


@pytest.fixture
def store():
    task_store = TaskStore(":memory:")
    yield task_store
    task_store.close()


@pytest.fixture
def reconciler(store):
    return Reconciler(store)


def all_tasks(store):
    return store.list_active_or_recently_completed()


def test_add_inserts_open_task(reconciler, store):
    record = reconciler.apply_add("call mom")
    assert record.text == "Call mom"
    assert not record.completed
    assert len(all_tasks(store)) == 1


def test_complete_marks_existing_task(reconciler, store):
    existing = store.insert("Buy groceries")
    record = reconciler.apply_complete("groceries")
    assert record.id == existing.id
    assert record.completed
    assert len(all_tasks(store)) == 1


def test_complete_without_match_creates_completed_task(reconciler, store):
    record = reconciler.apply_complete("groceries")
    tasks = all_tasks(store)
    assert len(tasks) == 1
    assert tasks[0].text == "Groceries"
    assert tasks[0].completed
    assert tasks[0].completed_at is not None
    assert record.id == tasks[0].id


def test_complete_match_is_case_sensitive(reconciler, store):
    store.insert("Buy Groceries")
    reconciler.apply_complete("groceries")
    # No case-sensitive match, so a new completed record is created
    tasks = all_tasks(store)
    assert len(tasks) == 2
    assert [t.completed for t in tasks] == [False, True]


def test_remove_prefers_open_task(reconciler, store):
    done = store.insert("Buy milk")
    store.set_completed(done.id, True)
    open_task = store.insert("buy milk today")

    removed = reconciler.apply_remove("milk")

    assert removed.id == open_task.id
    assert [t.id for t in all_tasks(store)] == [done.id]


def test_remove_without_match_is_noop(reconciler, store):
    store.insert("Buy milk")
    assert reconciler.apply_remove("bread") is None
    assert len(all_tasks(store)) == 1


def test_apply_all_isolates_failures():
    store = Mock(spec=TaskStore)
    store.insert.side_effect = [PersistenceError("disk full"), Mock(id=2, text="Bread")]
    reconciler = Reconciler(store)

    results = reconciler.apply_all([TaskAction.add("milk"), TaskAction.add("bread")])

    assert [r.ok for r in results] == [False, True]
    assert results[0].error == "disk full"
    assert results[1].record.text == "Bread"
