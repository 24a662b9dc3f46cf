"""Tests for WorkflowContext."""

import threading

import pytest

from provisioner.orchestration.context import WorkflowContext


class TestWorkflowContext:
    def test_resolve_memoizes(self):
        context = WorkflowContext("contoso")
        calls = []

        def create():
            calls.append(1)
            return "project-1"

        assert context.resolve("project_id", create) == "project-1"
        assert context.resolve("project_id", create) == "project-1"
        assert calls == [1]

    def test_failed_resolve_is_not_stored(self):
        context = WorkflowContext("contoso")

        def broken():
            raise RuntimeError("unavailable")

        with pytest.raises(RuntimeError):
            context.resolve("project_id", broken)
        assert not context.has("project_id")
        assert context.resolve("project_id", lambda: "project-2") == "project-2"

    def test_parameters_and_snapshot(self):
        context = WorkflowContext("contoso", parameters={"source_id": "alpha"})
        context.set("refs", ["main"])

        assert context.param("source_id") == "alpha"
        assert context.param("missing", "fallback") == "fallback"
        snapshot = context.snapshot()
        snapshot["refs"] = []
        assert context.get("refs") == ["main"]

    def test_concurrent_resolve_creates_once(self):
        context = WorkflowContext("contoso")
        calls = []
        barrier = threading.Barrier(4)

        def create():
            calls.append(threading.current_thread().name)
            return "id"

        def worker():
            barrier.wait()
            context.resolve("wiki_id", create)

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(calls) == 1

    def test_slow_factory_does_not_block_other_keys(self):
        context = WorkflowContext("contoso")
        context.set("project_id", "project-1")
        started = threading.Event()
        release = threading.Event()

        def slow_wiki():
            started.set()
            release.wait(5)
            return "wiki-1"

        worker = threading.Thread(target=context.resolve, args=("wiki_id", slow_wiki))
        worker.start()
        try:
            assert started.wait(2)
            assert context.resolve("project_id", lambda: "other") == "project-1"
            assert context.resolve("repository_id", lambda: "repo-1") == "repo-1"
            assert "wiki_id" not in context.snapshot()
        finally:
            release.set()
            worker.join(2)

        assert context.get("wiki_id") == "wiki-1"
