"""
uqdev.harness - Test run orchestration

Launches node processes on pseudo-terminals, brings up the network router
and the node fleet, drives a test to its verdict and tears everything down.
"""

from .cleanup import CleanupContext, remove_state_dirs
from .coordinator import (
    RunState,
    RunSummary,
    TestResult,
    TestRunCoordinator,
    Verdict,
    interpret_verdict,
    run_config,
)
from .fleet import NodeFleetManager
from .launcher import (
    NodeInfo,
    PtyInterrupt,
    ShutdownStrategy,
    SignalInterrupt,
    launch_node,
    request_graceful_shutdown,
)

__all__ = [
    'CleanupContext',
    'remove_state_dirs',
    'RunState',
    'RunSummary',
    'TestResult',
    'TestRunCoordinator',
    'Verdict',
    'interpret_verdict',
    'run_config',
    'NodeFleetManager',
    'NodeInfo',
    'PtyInterrupt',
    'ShutdownStrategy',
    'SignalInterrupt',
    'launch_node',
    'request_graceful_shutdown',
]
