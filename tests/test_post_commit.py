"""Tests for the post-commit task list (app/services/post_commit.py)"""
from unittest.mock import Mock

from app.services.post_commit import PostCommitTasks


def test_runs_in_order():
    calls = []
    tasks = PostCommitTasks()
    tasks.add("first", lambda: calls.append("first"))
    tasks.add("second", lambda: calls.append("second"))

    tasks.run()

    assert calls == ["first", "second"]


def test_exception_is_isolated():
    later = Mock(return_value=True)
    tasks = PostCommitTasks()
    tasks.add("broken", Mock(side_effect=RuntimeError("smtp down")))
    tasks.add("later", later)

    results = tasks.run()

    later.assert_called_once()
    assert results == [("broken", False), ("later", True)]


def test_false_return_reported_as_failure():
    tasks = PostCommitTasks()
    tasks.add("email", lambda: False)
    tasks.add("none", lambda: None)

    assert tasks.run() == [("email", False), ("none", True)]


def test_run_drains_queue():
    fn = Mock()
    tasks = PostCommitTasks()
    tasks.add("once", fn)
    assert len(tasks) == 1
    assert tasks.names == ["once"]

    tasks.run()
    tasks.run()

    fn.assert_called_once()
    assert len(tasks) == 0
