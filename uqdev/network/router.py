"""
router.py - Network Router Manager

Launches the network router process that links the fake nodes of a test:

    <router> --port <port> --defects <policy>

The defect policy is only a launch parameter; the manager doesn't care what
it means. The returned RouterHandle exposes a one-shot cancellation channel:
request_shutdown() signals it, a watcher task then terminates the process
(SIGTERM, then SIGKILL after the grace period).

Router binary: $UQDEV_NETWORK_ROUTER, else `network_router` on PATH.
"""

import asyncio
import logging
import os
import shutil
from pathlib import Path
from typing import List, Optional

from uqdev.config import NetworkRouter, NetworkRouterDefects
from uqdev.errors import LaunchError

logger = logging.getLogger('router')

ROUTER_BINARY = "network_router"


def defect_args(defects: NetworkRouterDefects) -> List[str]:
    return ['--defects', NetworkRouterDefects(defects).value]


def find_router_binary() -> Optional[Path]:
    override = os.environ.get('UQDEV_NETWORK_ROUTER')
    if override:
        return Path(override).expanduser()
    found = shutil.which(ROUTER_BINARY)
    return Path(found) if found else None


class RouterHandle:
    """
    A running router process plus its cancellation channel.

    Must be created inside a running event loop (it starts a watcher task).
    """

    def __init__(self, process: asyncio.subprocess.Process, port: int,
                 defects: NetworkRouterDefects, grace_secs: float = 5.0):
        self.process = process
        self.port = port
        self.defects = defects
        self.grace_secs = grace_secs
        self.shutdown_signals = 0
        self._kill = asyncio.Event()
        self._watcher = asyncio.create_task(self._watch())

    @property
    def is_running(self) -> bool:
        return self.process.returncode is None

    def request_shutdown(self):
        """Signal the cancellation channel. Only the first call counts."""
        if self._kill.is_set():
            return
        self.shutdown_signals += 1
        self._kill.set()

    async def shutdown(self):
        """Signal shutdown and wait until the router process is gone."""
        self.request_shutdown()
        await self._watcher

    async def _watch(self):
        await self._kill.wait()

        if self.process.returncode is not None:
            logger.info(f"Router on port {self.port} already exited ({self.process.returncode})")
            return

        logger.info(f"Stopping router on port {self.port}...")
        try:
            self.process.terminate()
        except ProcessLookupError:
            pass

        try:
            await asyncio.wait_for(self.process.wait(), timeout=self.grace_secs)
        except asyncio.TimeoutError:
            logger.warning(f"Router didn't exit within {self.grace_secs}s, killing...")
            try:
                self.process.kill()
            except ProcessLookupError:
                pass
            await self.process.wait()

        logger.info(f"✓ Router stopped (exit code {self.process.returncode})")


class NetworkRouterManager:
    """
    Starts router processes for tests.

    Args:
        binary: Router executable (default: find_router_binary())
        grace_secs: Time the router gets to exit before being killed
        startup_check_secs: A router that exits within this window failed
        verbose: Let the router write to the harness's stdout/stderr
    """

    def __init__(self, binary: Optional[Path] = None, grace_secs: float = 5.0,
                 startup_check_secs: float = 0.5, verbose: bool = False):
        self.binary = Path(binary) if binary is not None else None
        self.grace_secs = grace_secs
        self.startup_check_secs = startup_check_secs
        self.verbose = verbose

    async def start(self, router: NetworkRouter) -> RouterHandle:
        """
        Launch the router for one test.

        Raises:
            LaunchError: If no binary is found or the process dies on startup
        """
        binary = self.binary or find_router_binary()
        if binary is None or not binary.is_file():
            raise LaunchError(
                f"Network router binary not found (set UQDEV_NETWORK_ROUTER or put "
                f"{ROUTER_BINARY} on PATH); got {binary}"
            )

        cmd = [str(binary), '--port', str(router.port)] + defect_args(router.defects)
        logger.info(f"Starting router: {' '.join(cmd)}")

        output = None if self.verbose else asyncio.subprocess.DEVNULL
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=output,
                stderr=output,
            )
        except OSError as e:
            raise LaunchError(f"Failed to start network router: {e}") from e

        # A router that can't bind its port exits right away.
        try:
            await asyncio.wait_for(process.wait(), timeout=self.startup_check_secs)
        except asyncio.TimeoutError:
            pass
        except BaseException:
            # Nobody owns the process yet; don't leave it behind.
            await self._reap(process)
            raise
        else:
            raise LaunchError(
                f"Network router exited on startup with code {process.returncode}"
            )

        logger.info(f"✓ Router up on port {router.port} (pid {process.pid})")
        return RouterHandle(process, router.port, router.defects, grace_secs=self.grace_secs)

    @staticmethod
    async def _reap(process: asyncio.subprocess.Process):
        if process.returncode is not None:
            return
        logger.warning(f"Startup interrupted, killing router (pid {process.pid})")
        try:
            process.kill()
        except ProcessLookupError:
            pass
        await asyncio.shield(process.wait())
