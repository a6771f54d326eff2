"""
conftest.py - Shared fixtures

Fake runtime/router executables are small /bin/sh wrappers that exec the
current interpreter on the scripts in tests/fixtures/, so the harness
spawns them exactly like real binaries.
"""

import socket
import sys
from pathlib import Path

import pytest

# Add project root to path
_project_root = Path(__file__).parent.parent
if str(_project_root) not in sys.path:
    sys.path.insert(0, str(_project_root))

FIXTURES = Path(__file__).parent / "fixtures"


def make_executable(path: Path, script: Path) -> Path:
    path.write_text(f'#!/bin/sh\nexec "{sys.executable}" "{script}" "$@"\n')
    path.chmod(0o755)
    return path


def free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("localhost", 0))
        return sock.getsockname()[1]


@pytest.fixture
def fake_runtime(tmp_path) -> Path:
    """Executable that behaves like a node runtime (see fixtures/fake_node.py)."""
    return make_executable(tmp_path / "uqbar", FIXTURES / "fake_node.py")


@pytest.fixture
def fake_router(tmp_path, monkeypatch) -> Path:
    """Executable that behaves like the network router; logs to router.log."""
    monkeypatch.setenv("FAKE_ROUTER_LOG", str(tmp_path / "router.log"))
    return make_executable(tmp_path / "network_router", FIXTURES / "fake_router.py")


@pytest.fixture
def make_script(tmp_path):
    """Write a Python snippet and return an executable wrapper for it."""
    counter = [0]

    def _make(source: str) -> Path:
        counter[0] += 1
        script = tmp_path / f"script_{counter[0]}.py"
        script.write_text(source)
        return make_executable(tmp_path / f"script_{counter[0]}", script)

    return _make
