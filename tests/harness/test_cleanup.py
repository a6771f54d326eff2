#!/usr/bin/env python3
"""
test_cleanup.py - Unit Tests for the cleanup guard

Uses in-memory stand-ins for node processes and the router so ordering
can be observed exactly:
- nodes are cleaned in registration order, then the router, once
- teardown runs on normal exit, on exceptions, and only once
- only kernel/ kv/ sqlite/ vfs/ are removed from a node home
- unresponsive nodes are killed after the exit timeout
- errors during teardown are logged, not raised
"""

import asyncio
import logging
import os
import pytest
import sys
from pathlib import Path

# Add project root to path
_project_root = Path(__file__).parent.parent.parent
sys.path.insert(0, str(_project_root))

from uqdev.harness.cleanup import STATE_DIRS, CleanupContext, remove_state_dirs
from uqdev.harness.launcher import NodeInfo, ShutdownStrategy


class FakeProcess:
    """Minimal asyncio.subprocess.Process stand-in."""

    def __init__(self, pid: int):
        self.pid = pid
        self.returncode = None
        self.killed = False

    async def wait(self):
        while self.returncode is None:
            await asyncio.sleep(0.01)
        return self.returncode

    def kill(self):
        self.killed = True
        self.returncode = -9


class RecordingShutdown(ShutdownStrategy):
    """Records interrupt requests; responsive nodes exit on request."""

    def __init__(self, events, unresponsive=()):
        self.events = events
        self.unresponsive = set(unresponsive)

    def request(self, node):
        self.events.append(f"interrupt {node.name}")
        if node.name not in self.unresponsive:
            node.process.returncode = 0


class FakeRouter:
    def __init__(self, events):
        self.events = events
        self.shutdown_calls = 0

    async def shutdown(self):
        self.shutdown_calls += 1
        self.events.append("router shutdown")


@pytest.fixture
def make_node(tmp_path):
    pipes = []

    def _make(name: str, pid: int = 1000) -> NodeInfo:
        home = tmp_path / name
        for d in STATE_DIRS:
            (home / d).mkdir(parents=True)
            (home / d / "data").write_text("state")
        (home / ".keys").write_text("keep me")
        (home / "pkg").mkdir()

        read_fd, write_fd = os.pipe()
        pipes.append(write_fd)
        return NodeInfo(process=FakeProcess(pid), master_fd=read_fd, port=8080,
                        home=home, name=name)

    yield _make

    for fd in pipes:
        os.close(fd)


def assert_cleaned(home: Path):
    for d in STATE_DIRS:
        assert not (home / d).exists(), f"{d}/ survived cleanup"
    assert (home / ".keys").read_text() == "keep me"
    assert (home / "pkg").is_dir()


class TestRemoveStateDirs:
    """Test removal of mutable node state."""

    def test_removes_only_state_dirs(self, tmp_path):
        for d in STATE_DIRS:
            (tmp_path / d / "nested").mkdir(parents=True)
        (tmp_path / "keep.txt").write_text("x")
        (tmp_path / "other").mkdir()

        remove_state_dirs(tmp_path)

        assert sorted(p.name for p in tmp_path.iterdir()) == ["keep.txt", "other"]

    def test_missing_home_is_fine(self, tmp_path):
        remove_state_dirs(tmp_path / "never_created")

    def test_partial_state(self, tmp_path):
        (tmp_path / "kv").mkdir()
        remove_state_dirs(tmp_path)
        assert not (tmp_path / "kv").exists()

    def test_errors_are_logged(self, tmp_path, monkeypatch, caplog):
        (tmp_path / "kernel").mkdir()

        def boom(path):
            raise PermissionError("denied")

        monkeypatch.setattr("uqdev.harness.cleanup.shutil.rmtree", boom)
        with caplog.at_level(logging.ERROR, logger="cleanup"):
            remove_state_dirs(tmp_path)

        assert "Failed to remove" in caplog.text


class TestCleanupContext:
    """Test teardown ordering and guarantees."""

    def test_nodes_in_order_then_router_once(self, make_node):
        events = []
        a, b = make_node("a.uq", 1), make_node("b.uq", 2)
        router = FakeRouter(events)

        async def scenario():
            async with CleanupContext(router=router,
                                      shutdown_strategy=RecordingShutdown(events)) as cleanup:
                cleanup.register(a)
                cleanup.register(b)

        asyncio.run(scenario())

        assert events == ["interrupt a.uq", "interrupt b.uq", "router shutdown"]
        assert router.shutdown_calls == 1
        assert_cleaned(a.home)
        assert_cleaned(b.home)

    def test_teardown_runs_on_exception(self, make_node):
        events = []
        node = make_node("a.uq")
        router = FakeRouter(events)

        async def scenario():
            async with CleanupContext(shutdown_strategy=RecordingShutdown(events)) as cleanup:
                cleanup.attach_router(router)
                cleanup.register(node)
                raise RuntimeError("test body failed")

        with pytest.raises(RuntimeError, match="test body failed"):
            asyncio.run(scenario())

        assert events == ["interrupt a.uq", "router shutdown"]
        assert_cleaned(node.home)

    def test_teardown_runs_on_cancellation(self, make_node):
        events = []
        node = make_node("a.uq")

        async def body():
            async with CleanupContext(router=FakeRouter(events),
                                      shutdown_strategy=RecordingShutdown(events)) as cleanup:
                cleanup.register(node)
                await asyncio.sleep(3600)

        async def scenario():
            task = asyncio.create_task(body())
            await asyncio.sleep(0.05)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        asyncio.run(scenario())

        assert events == ["interrupt a.uq", "router shutdown"]
        assert_cleaned(node.home)

    def test_cancellation_during_teardown_releases_every_node(self, make_node):
        events = []
        a, b = make_node("a.uq", 1), make_node("b.uq", 2)
        router = FakeRouter(events)

        class SlowExit(RecordingShutdown):
            def request(self, node):
                self.events.append(f"interrupt {node.name}")
                asyncio.get_running_loop().call_later(
                    0.5, setattr, node.process, "returncode", 0)

        async def body():
            async with CleanupContext(router=router,
                                      shutdown_strategy=SlowExit(events)) as cleanup:
                cleanup.register(a)
                cleanup.register(b)

        async def scenario():
            task = asyncio.create_task(body())
            await asyncio.sleep(0.2)
            assert events == ["interrupt a.uq"]
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        asyncio.run(scenario())

        assert events == ["interrupt a.uq", "interrupt b.uq", "router shutdown"]
        assert router.shutdown_calls == 1
        assert not b.is_running
        assert_cleaned(a.home)
        assert_cleaned(b.home)

    def test_teardown_is_idempotent(self, make_node):
        events = []
        router = FakeRouter(events)
        cleanup = CleanupContext(router=router, shutdown_strategy=RecordingShutdown(events))
        cleanup.register(make_node("a.uq"))

        async def scenario():
            await cleanup.teardown()
            await cleanup.teardown()

        asyncio.run(scenario())

        assert router.shutdown_calls == 1
        assert events.count("interrupt a.uq") == 1

    def test_registration_closed_after_teardown(self, make_node):
        cleanup = CleanupContext()
        asyncio.run(cleanup.teardown())

        assert cleanup.closed
        with pytest.raises(RuntimeError, match="cleanup already started"):
            cleanup.register(make_node("late.uq"))
        with pytest.raises(RuntimeError):
            cleanup.attach_router(FakeRouter([]))

    def test_unresponsive_node_is_killed(self, make_node):
        events = []
        stuck = make_node("stuck.uq")
        cleanup = CleanupContext(
            shutdown_strategy=RecordingShutdown(events, unresponsive={"stuck.uq"}),
            node_exit_timeout=0.1,
        )
        cleanup.register(stuck)

        asyncio.run(cleanup.teardown())

        assert stuck.process.killed
        assert not stuck.is_running
        assert_cleaned(stuck.home)

    def test_exited_node_not_interrupted(self, make_node):
        events = []
        node = make_node("gone.uq")
        node.process.returncode = 1
        cleanup = CleanupContext(shutdown_strategy=RecordingShutdown(events))
        cleanup.register(node)

        asyncio.run(cleanup.teardown())

        assert events == []
        assert_cleaned(node.home)

    def test_failed_interrupt_still_cleans_up(self, make_node, caplog):
        class BrokenPty(ShutdownStrategy):
            def request(self, node):
                raise OSError("pty gone")

        node = make_node("a.uq")
        cleanup = CleanupContext(shutdown_strategy=BrokenPty(), node_exit_timeout=0.1)
        cleanup.register(node)

        with caplog.at_level(logging.WARNING, logger="cleanup"):
            asyncio.run(cleanup.teardown())

        assert "graceful shutdown request failed" in caplog.text
        assert node.process.killed
        assert_cleaned(node.home)

    def test_router_errors_are_logged(self, make_node, caplog):
        class BrokenRouter:
            async def shutdown(self):
                raise RuntimeError("router wedged")

        cleanup = CleanupContext(router=BrokenRouter())

        with caplog.at_level(logging.ERROR, logger="cleanup"):
            asyncio.run(cleanup.teardown())

        assert "router wedged" in caplog.text

    def test_one_node_failure_doesnt_stop_the_rest(self, make_node, caplog):
        events = []
        a, b = make_node("a.uq"), make_node("b.uq")

        def explode():
            raise RuntimeError("close failed")

        a.close = explode
        cleanup = CleanupContext(router=FakeRouter(events),
                                 shutdown_strategy=RecordingShutdown(events))
        cleanup.register(a)
        cleanup.register(b)

        with caplog.at_level(logging.ERROR, logger="cleanup"):
            asyncio.run(cleanup.teardown())

        assert "Cleanup of a.uq failed" in caplog.text
        assert events[-1] == "router shutdown"
        assert_cleaned(b.home)
