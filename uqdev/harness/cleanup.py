"""
cleanup.py - Cleanup Guard

Owns every process a test run spawns and releases them on every exit path:

    async with CleanupContext() as cleanup:
        cleanup.attach_router(await routers.start(test.network_router))
        cleanup.register(await launch_node(...))
        ...
    # teardown has run here, whatever happened inside the block

Teardown, per node in registration order:
1. request graceful shutdown (Ctrl-C on the pty)
2. wait for the process to exit (killed after node_exit_timeout)
3. remove kernel/ kv/ sqlite/ vfs/ under the node home, nothing else

Then the router is signalled to shut down, exactly once.

Teardown runs once. Errors inside it are logged, never raised, so they
can't hide the verdict or the exception that ended the run. A cancellation
arriving mid-teardown is held until every node and the router are released.
"""

import asyncio
import logging
import shutil
from pathlib import Path
from typing import List, Optional, Tuple

from uqdev.harness.launcher import NodeInfo, ShutdownStrategy, request_graceful_shutdown
from uqdev.network.router import RouterHandle

logger = logging.getLogger('cleanup')

STATE_DIRS = ("kernel", "kv", "sqlite", "vfs")


def remove_state_dirs(home: Path):
    """Delete the node's mutable state under `home`, keeping everything else."""
    home = Path(home)
    if not home.exists():
        return

    for name in STATE_DIRS:
        path = home / name
        try:
            if path.is_symlink() or path.is_file():
                path.unlink()
            elif path.is_dir():
                shutil.rmtree(path)
        except OSError as e:
            logger.error(f"Failed to remove {path}: {e}")


class CleanupContext:
    """
    Scope guard for the nodes and router of one test run.

    The context is the single owner of the node collection. Once teardown
    starts, registration is closed.
    """

    def __init__(self, router: Optional[RouterHandle] = None,
                 shutdown_strategy: Optional[ShutdownStrategy] = None,
                 node_exit_timeout: float = 20.0):
        self._nodes: List[NodeInfo] = []
        self.router = router
        self.shutdown_strategy = shutdown_strategy
        self.node_exit_timeout = node_exit_timeout
        self._closed = False

    @property
    def nodes(self) -> Tuple[NodeInfo, ...]:
        return tuple(self._nodes)

    @property
    def closed(self) -> bool:
        return self._closed

    def register(self, node: NodeInfo):
        if self._closed:
            raise RuntimeError(f"Cannot register {node.name}: cleanup already started")
        self._nodes.append(node)

    def attach_router(self, router: RouterHandle):
        if self._closed:
            raise RuntimeError("Cannot attach router: cleanup already started")
        self.router = router

    async def __aenter__(self) -> 'CleanupContext':
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        await self.teardown()
        return False

    async def teardown(self):
        """Release all nodes, then the router. Later calls do nothing."""
        if self._closed:
            return
        self._closed = True

        # Cancelling the caller must not abandon nodes half way: the release
        # runs in its own task and a cancellation is re-raised once it's done.
        release = asyncio.ensure_future(self._release())
        cancelled = False
        while not release.done():
            try:
                await asyncio.shield(release)
            except asyncio.CancelledError:
                cancelled = True
        if cancelled:
            logger.warning("Cancelled during cleanup; finished releasing nodes first")
            raise asyncio.CancelledError()

    async def _release(self):
        for node in self._nodes:
            try:
                await self._cleanup_node(node)
            except Exception as e:
                logger.error(f"Cleanup of {node.name} failed: {type(e).__name__}: {e}")

        if self.router is not None:
            try:
                await self.router.shutdown()
            except Exception as e:
                logger.error(f"Router shutdown failed: {type(e).__name__}: {e}")

    async def _cleanup_node(self, node: NodeInfo):
        logger.info(f"Cleaning up {node.home}...")

        if node.is_running:
            try:
                request_graceful_shutdown(node, self.shutdown_strategy)
            except OSError as e:
                logger.warning(f"{node.name}: graceful shutdown request failed: {e}")

            try:
                await asyncio.wait_for(node.process.wait(), timeout=self.node_exit_timeout)
            except asyncio.TimeoutError:
                logger.warning(
                    f"{node.name} didn't exit within {self.node_exit_timeout}s, killing..."
                )
                try:
                    node.process.kill()
                except ProcessLookupError:
                    pass
                await node.process.wait()

        node.close()
        remove_state_dirs(node.home)
        logger.info(f"Done cleaning up {node.home}.")
