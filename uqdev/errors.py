"""
errors.py - Test run error taxonomy

Every failure a test run can hit is one of these. The coordinator catches
them and turns them into a terminal TestResult; none of them skip cleanup.
"""

from enum import Enum
from typing import Optional


class HarnessError(Exception):
    """Base class for all test-run failures."""
    pass


class BuildError(HarnessError):
    """Raised when a package (or the runtime) fails to compile."""

    def __init__(self, path, message: str):
        self.path = path
        self.message = message
        super().__init__(f"Build failed for {path}: {message}")


class LaunchError(HarnessError):
    """Raised when a process, its terminal or its port cannot be set up."""
    pass


class FleetError(HarnessError):
    """
    Raised when the node fleet cannot be brought up.

    Attributes:
        reason: STARTUP_TIMEOUT, PROCESS_EXITED or PACKAGE_INSTALL
        node: Name of the offending node
    """

    STARTUP_TIMEOUT = "StartupTimeout"
    PROCESS_EXITED = "ProcessExited"
    PACKAGE_INSTALL = "PackageInstall"

    def __init__(self, reason: str, node: str, detail: str = ""):
        self.reason = reason
        self.node = node
        message = f"{reason}: node {node}"
        if detail:
            message += f" ({detail})"
        super().__init__(message)


class VerdictKind(str, Enum):
    """Ways the verdict wait can go wrong without an explicit Fail."""
    TIMED_OUT = "TimedOut"
    REJECT_FOREIGN = "RejectForeign"
    UNEXPECTED_RESPONSE = "UnexpectedResponse"


class VerdictError(HarnessError):
    """Raised when no usable verdict came back from the master node."""

    def __init__(self, kind: VerdictKind, message: str = ""):
        self.kind = VerdictKind(kind)
        self.message = message
        text = self.kind.value
        if message:
            text += f": {message}"
        super().__init__(text)


class TestFailure(HarnessError):
    """
    Explicit assertion failure reported by the node under test.

    Carries the provenance the test package sent with its Fail response.
    """

    __test__ = False

    def __init__(self, test: str, file: Optional[str] = None,
                 line: Optional[int] = None, column: Optional[int] = None,
                 message: str = ""):
        self.test = test
        self.file = file
        self.line = line
        self.column = column
        self.message = message
        super().__init__(self.describe())

    def describe(self) -> str:
        text = f"FAIL {self.test}"
        if self.file is not None:
            text += f" {self.file}:{self.line}:{self.column}"
        if self.message:
            text += f" {self.message}"
        return text
