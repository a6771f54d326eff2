"""
coordinator.py - Test Run Coordinator

Runs the tests of a Config one after another. Per test:

    IDLE -> BUILDING_PACKAGES -> ROUTER_UP -> FLEET_UP -> AWAITING_VERDICT
         -> PASSED | FAILED | TIMED_OUT -> CLEANING_UP -> DONE

Any error on the way jumps straight to FAILED (or TIMED_OUT) and then
CLEANING_UP; the cleanup context guarantees teardown on every path,
including cancellation and KeyboardInterrupt, which are re-raised after it.

The verdict comes back as the HTTP reply to the injected Run request:
Pass passes, Fail{test, file, line, column} fails with that provenance,
no reply within timeout_secs times out.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional

import requests

from uqdev import inject_message
from uqdev.build import compile_package
from uqdev.config import Config, Test
from uqdev.errors import HarnessError, TestFailure, VerdictError, VerdictKind
from uqdev.harness.cleanup import CleanupContext
from uqdev.harness.fleet import NodeFleetManager
from uqdev.harness.launcher import ShutdownStrategy
from uqdev.network.router import NetworkRouterManager
from uqdev.protocol import (
    DecodeError,
    Fail,
    Pass,
    RunRequest,
    TesterError,
    TesterResponse,
)
from uqdev.runtime import resolve_runtime

logger = logging.getLogger('coordinator')

TESTER_PROCESS = "tester:tester:uqbar"

# Extra seconds the HTTP call may outlive the verdict timeout, so the worker
# thread always finishes on its own.
HTTP_GRACE_SECS = 5.0


class RunState(str, Enum):
    IDLE = "Idle"
    BUILDING_PACKAGES = "BuildingPackages"
    ROUTER_UP = "RouterUp"
    FLEET_UP = "FleetUp"
    AWAITING_VERDICT = "AwaitingVerdict"
    PASSED = "Passed"
    FAILED = "Failed"
    TIMED_OUT = "TimedOut"
    CLEANING_UP = "CleaningUp"
    DONE = "Done"


class Verdict(str, Enum):
    PASSED = "pass"
    FAILED = "fail"
    TIMED_OUT = "timeout"
    SKIPPED = "skipped"


_TERMINAL_STATE = {
    Verdict.PASSED: RunState.PASSED,
    Verdict.FAILED: RunState.FAILED,
    Verdict.TIMED_OUT: RunState.TIMED_OUT,
}


@dataclass
class TestResult:
    """Outcome of one test."""
    __test__ = False

    index: int
    verdict: Verdict
    duration_sec: float = 0.0
    failure: Optional[Fail] = None
    error_message: Optional[str] = None
    states: List[RunState] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return self.verdict == Verdict.PASSED

    def describe(self) -> str:
        if self.verdict == Verdict.PASSED:
            return "pass"
        if self.failure is not None:
            return str(self.failure)
        if self.error_message:
            return f"{self.verdict.value}: {self.error_message}"
        return self.verdict.value


@dataclass
class RunSummary:
    results: List[TestResult]

    @property
    def success(self) -> bool:
        return all(r.passed for r in self.results)

    @property
    def exit_code(self) -> int:
        return 0 if self.success else 1


def interpret_verdict(ipc: Optional[str]):
    """
    Turn the tester's reply into a verdict.

    Returns normally on Pass.

    Raises:
        TestFailure: On Fail (response or TesterError::Fail)
        VerdictError: REJECT_FOREIGN / UNEXPECTED_RESPONSE for anything else
    """
    if ipc is None:
        raise VerdictError(VerdictKind.UNEXPECTED_RESPONSE, "reply carried no ipc")

    try:
        response = TesterResponse.decode(ipc)
    except DecodeError:
        try:
            error = TesterError.decode(ipc)
        except DecodeError:
            raise VerdictError(VerdictKind.UNEXPECTED_RESPONSE, f"undecodable reply: {ipc[:200]!r}")
        if error.kind == TesterError.FAIL:
            raise TestFailure(error.test, message=error.message)
        raise VerdictError(VerdictKind(error.kind))

    if isinstance(response, Pass):
        return
    if isinstance(response, Fail):
        raise TestFailure(response.test, response.file, response.line, response.column)
    raise VerdictError(VerdictKind.UNEXPECTED_RESPONSE, f"{type(response).__name__} in reply to Run")


class TestRunCoordinator:
    """
    Top-level state machine for a Config.

    Args:
        config: Parsed run-tests configuration
        runtime_path: Node runtime binary; resolved from config.runtime if None
        router_manager: Starts routers (default: NetworkRouterManager())
        shutdown_strategy: How nodes are asked to stop (default: Ctrl-C on pty)
        build_package: Package build step, (path, verbose) -> pkg dir
        poll_interval: Seconds between node readiness probes
    """
    __test__ = False

    def __init__(self, config: Config, runtime_path: Optional[Path] = None,
                 router_manager: Optional[NetworkRouterManager] = None,
                 shutdown_strategy: Optional[ShutdownStrategy] = None,
                 build_package: Callable = compile_package,
                 poll_interval: float = 0.25,
                 node_exit_timeout: float = 20.0):
        self.config = config
        self.runtime_path = Path(runtime_path) if runtime_path is not None else None
        self.router_manager = router_manager or NetworkRouterManager()
        self.shutdown_strategy = shutdown_strategy
        self.build_package = build_package
        self.poll_interval = poll_interval
        self.node_exit_timeout = node_exit_timeout
        self.state = RunState.IDLE
        self.history: List[RunState] = []

    def _transition(self, state: RunState):
        logger.debug(f"{self.state.value} -> {state.value}")
        self.state = state
        self.history.append(state)

    async def run(self) -> RunSummary:
        """Run every test of the config and report the results."""
        total = len(self.config.tests)

        if self.runtime_path is None:
            try:
                self.runtime_path = await asyncio.to_thread(
                    resolve_runtime, self.config.runtime, self.config.runtime_build_verbose
                )
            except HarnessError as e:
                print(f"\n✗ Runtime unavailable: {e}")
                return RunSummary([
                    TestResult(index=i, verdict=Verdict.FAILED, error_message=str(e))
                    for i in range(total)
                ])

        results = []
        stop = False
        for index, test in enumerate(self.config.tests):
            if stop:
                results.append(TestResult(index=index, verdict=Verdict.SKIPPED,
                                          error_message="skipped after earlier failure (fail_fast)"))
                print(f"[Coordinator] Test {index + 1}/{total}: skipped")
                continue

            print("\n" + "=" * 60)
            print(f"Test {index + 1}/{total}")
            print("=" * 60)

            result = await self.run_test(test, index)
            results.append(result)
            print(f"[Coordinator] Test {index + 1}/{total}: {result.describe()} "
                  f"({result.duration_sec:.1f}s)")

            if self.config.fail_fast and not result.passed:
                stop = True

        return RunSummary(results)

    async def run_test(self, test: Test, index: int = 0) -> TestResult:
        """
        Run one test through the full state machine.

        Never raises for test-level failures; cancellation and
        KeyboardInterrupt propagate once cleanup is done.
        """
        self.history = []
        self._transition(RunState.IDLE)
        start = time.monotonic()

        verdict = Verdict.FAILED
        failure = None
        error_message = None

        async with CleanupContext(shutdown_strategy=self.shutdown_strategy,
                                  node_exit_timeout=self.node_exit_timeout) as cleanup:
            try:
                self._transition(RunState.BUILDING_PACKAGES)
                await self._build_packages(test)

                self._transition(RunState.ROUTER_UP)
                cleanup.attach_router(await self.router_manager.start(test.network_router))

                self._transition(RunState.FLEET_UP)
                fleet = NodeFleetManager(self.runtime_path, poll_interval=self.poll_interval)
                nodes = await fleet.start(test, cleanup)
                await fleet.load_packages(test, nodes)

                self._transition(RunState.AWAITING_VERDICT)
                await self._await_verdict(test)
                verdict = Verdict.PASSED

            except TestFailure as e:
                if e.file is not None:
                    failure = Fail(test=e.test, file=e.file, line=e.line, column=e.column)
                error_message = e.describe()
            except VerdictError as e:
                if e.kind == VerdictKind.TIMED_OUT:
                    verdict = Verdict.TIMED_OUT
                error_message = str(e)
            except HarnessError as e:
                error_message = str(e)
            except Exception as e:
                logger.exception("Unexpected error during test run")
                error_message = f"{type(e).__name__}: {e}"

            self._transition(_TERMINAL_STATE[verdict])
            self._transition(RunState.CLEANING_UP)

        self._transition(RunState.DONE)
        return TestResult(
            index=index,
            verdict=verdict,
            duration_sec=time.monotonic() - start,
            failure=failure,
            error_message=error_message,
            states=list(self.history),
        )

    async def _build_packages(self, test: Test):
        for path in list(test.setup_package_paths) + list(test.test_package_paths):
            await asyncio.to_thread(self.build_package, path, test.package_build_verbose)

    async def _await_verdict(self, test: Test):
        """
        Send Run to the master node's tester and wait for its reply.

        Raises:
            TestFailure, VerdictError
        """
        master = test.master_node
        request = RunRequest(
            input_node_names=[node.name for node in test.nodes],
            test_timeout=test.timeout_secs,
        )
        body = inject_message.make_message(TESTER_PROCESS, request.to_json())
        url = f"http://localhost:{master.port}"

        logger.info(f"Running tests on {master.name} (timeout {test.timeout_secs}s)...")
        try:
            reply = await asyncio.wait_for(
                asyncio.to_thread(
                    inject_message.send_request, url, body, test.timeout_secs + HTTP_GRACE_SECS
                ),
                timeout=test.timeout_secs,
            )
        except asyncio.TimeoutError:
            raise VerdictError(VerdictKind.TIMED_OUT, f"no verdict within {test.timeout_secs}s")
        except requests.Timeout:
            raise VerdictError(VerdictKind.TIMED_OUT, f"no verdict within {test.timeout_secs}s")
        except requests.RequestException as e:
            raise VerdictError(VerdictKind.UNEXPECTED_RESPONSE, f"Run request failed: {e}")

        try:
            parsed = inject_message.parse_response(reply)
        except inject_message.InjectMessageError as e:
            raise VerdictError(VerdictKind.UNEXPECTED_RESPONSE, str(e))

        interpret_verdict(parsed.ipc)


async def run_config(config: Config, **kwargs) -> RunSummary:
    """Convenience wrapper: build a coordinator for `config` and run it."""
    return await TestRunCoordinator(config, **kwargs).run()
