"""
fleet.py - Node Fleet Manager

Brings up every node of a test:
1. launch each node (in config order) and register it with the cleanup
   context straight away, before anything else can fail
2. poll all nodes' HTTP endpoints concurrently until each answers
3. install setup packages on every node, test packages on the master node
"""

import asyncio
import logging
from pathlib import Path
from typing import Awaitable, List, Optional

import requests

from uqdev import start_package
from uqdev.config import Test
from uqdev.errors import FleetError
from uqdev.harness.cleanup import CleanupContext
from uqdev.harness.launcher import NodeInfo, launch_node

logger = logging.getLogger('fleet')


def probe(url: str, timeout: float = 1.0) -> bool:
    """True if anything answers HTTP at `url`."""
    try:
        requests.get(url, timeout=timeout)
    except requests.RequestException:
        return False
    return True


async def _gather_fail_fast(awaitables: List[Awaitable]):
    """Run concurrently; on the first error cancel the rest and re-raise it."""
    tasks = [asyncio.ensure_future(a) for a in awaitables]
    if not tasks:
        return
    try:
        await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
    finally:
        for task in tasks:
            if not task.done():
                task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)
    for task in tasks:
        if not task.cancelled() and task.exception() is not None:
            raise task.exception()


class NodeFleetManager:
    """
    Launches and readies the nodes of one test.

    Args:
        runtime_path: Node runtime executable
        poll_interval: Seconds between readiness probes
    """

    def __init__(self, runtime_path: Path, poll_interval: float = 0.25):
        self.runtime_path = Path(runtime_path)
        self.poll_interval = poll_interval

    async def start(self, test: Test, cleanup: CleanupContext) -> List[NodeInfo]:
        """
        Launch all nodes of `test` and wait until they're ready.

        Every launched node is registered with `cleanup` as soon as it
        exists, so a failure later on still tears it down.

        Raises:
            LaunchError: If a node can't be spawned
            FleetError: If a node dies or never answers during startup
        """
        print(f"[Fleet] Starting {len(test.nodes)} node(s)...")
        infos = []
        for node in test.nodes:
            info = await launch_node(node, self.runtime_path, router_port=test.network_router.port)
            cleanup.register(info)
            infos.append(info)

        await _gather_fail_fast([
            self.wait_until_ready(info, test.node_startup_timeout_secs) for info in infos
        ])
        print(f"[Fleet] ✓ All {len(infos)} node(s) ready")
        return infos

    async def wait_until_ready(self, info: NodeInfo, timeout: float):
        """
        Poll `info` until it answers HTTP.

        Raises:
            FleetError: STARTUP_TIMEOUT after `timeout` seconds, or
                PROCESS_EXITED if the process dies first
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        while True:
            if not info.is_running:
                raise FleetError(
                    FleetError.PROCESS_EXITED, info.name,
                    f"exit code {info.process.returncode}; last output: "
                    f"{list(info.output)[-5:]}"
                )

            if await asyncio.to_thread(probe, info.url):
                logger.info(f"✓ {info.name} ready at {info.url}")
                return

            if loop.time() >= deadline:
                raise FleetError(
                    FleetError.STARTUP_TIMEOUT, info.name,
                    f"no answer on {info.url} within {timeout}s"
                )
            await asyncio.sleep(self.poll_interval)

    async def load_packages(self, test: Test, infos: List[NodeInfo],
                            timeout: Optional[float] = 30.0):
        """
        Install built packages: setup packages everywhere, test packages on
        the master node.

        Raises:
            FleetError: PACKAGE_INSTALL if any install fails
        """
        if not infos:
            return
        master = infos[0]

        installs = [(path, info) for info in infos for path in test.setup_package_paths]
        installs += [(path, master) for path in test.test_package_paths]

        for path, info in installs:
            logger.info(f"Installing {path} on {info.name}...")
            try:
                await asyncio.to_thread(start_package.execute, path, info.url, None, timeout)
            except Exception as e:
                raise FleetError(
                    FleetError.PACKAGE_INSTALL, info.name, f"{path}: {type(e).__name__}: {e}"
                ) from e
