"""
launcher.py - Node Process Launcher

Spawns one node runtime process attached to a fresh pseudo-terminal:
- stdin/stdout/stderr are the pty slave
- the child runs in its own session with the pty as controlling terminal,
  so writing Ctrl-C (0x03) to the master delivers SIGINT to it
- the master side is drained into a bounded output buffer

Command line:
    <runtime> <home> --port <port> [--rpc <rpc>] [--fake-node-name <name>]
              [--password <pw>] [--network-router-port <router port>]

Graceful shutdown goes through request_graceful_shutdown(), backed by a
ShutdownStrategy so platforms without ptys can use a signal instead.
"""

import asyncio
import fcntl
import logging
import os
import pty
import signal
import socket
import termios
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Deque, List, Optional

from uqdev.config import Node
from uqdev.errors import LaunchError

logger = logging.getLogger('launcher')

INTERRUPT = b"\x03"
OUTPUT_LINES = 500


@dataclass(eq=False)
class NodeInfo:
    """
    A live node process.

    Owns the child process and the pty master descriptor. Created by
    launch_node(), released only by the cleanup context.
    """
    process: asyncio.subprocess.Process
    master_fd: int
    port: int
    home: Path
    name: str
    verbose: bool = False
    output: Deque[str] = field(default_factory=lambda: deque(maxlen=OUTPUT_LINES))
    _partial: bytearray = field(default_factory=bytearray, repr=False)
    _capturing: bool = field(default=False, repr=False)
    _closed: bool = field(default=False, repr=False)

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def is_running(self) -> bool:
        return self.process.returncode is None

    @property
    def url(self) -> str:
        return f"http://localhost:{self.port}"

    def start_capture(self):
        """Drain the pty master on the running event loop."""
        if self._capturing or self._closed:
            return
        asyncio.get_running_loop().add_reader(self.master_fd, self._on_readable)
        self._capturing = True

    def stop_capture(self):
        if not self._capturing:
            return
        try:
            asyncio.get_running_loop().remove_reader(self.master_fd)
        except RuntimeError:
            # No running loop (interpreter shutdown); the fd is closed next.
            pass
        self._capturing = False
        if self._partial:
            self._emit(bytes(self._partial))
            self._partial.clear()

    def _on_readable(self):
        try:
            data = os.read(self.master_fd, 4096)
        except OSError:
            # EIO once the slave side has no more holders
            data = b""

        if not data:
            self.stop_capture()
            return

        self._partial.extend(data)
        *lines, rest = bytes(self._partial).split(b"\n")
        self._partial = bytearray(rest)
        for line in lines:
            self._emit(line)

    def _emit(self, raw: bytes):
        line = raw.decode('utf-8', errors='replace').rstrip('\r')
        self.output.append(line)
        if self.verbose:
            logger.info(f"{self.name} | {line}")
        else:
            logger.debug(f"{self.name} | {line}")

    def close(self):
        """Stop capturing and release the pty master. Safe to call twice."""
        if self._closed:
            return
        self.stop_capture()
        try:
            os.close(self.master_fd)
        except OSError as e:
            logger.warning(f"{self.name}: closing pty master failed: {e}")
        self._closed = True


class ShutdownStrategy(ABC):
    """How to ask a node to stop gracefully."""

    @abstractmethod
    def request(self, node: NodeInfo):
        pass


class PtyInterrupt(ShutdownStrategy):
    """Type Ctrl-C into the node's terminal."""

    def request(self, node: NodeInfo):
        os.write(node.master_fd, INTERRUPT)


class SignalInterrupt(ShutdownStrategy):
    """Send SIGINT to the node's process group (it leads its own session)."""

    def request(self, node: NodeInfo):
        os.killpg(node.pid, signal.SIGINT)


DEFAULT_SHUTDOWN = PtyInterrupt()


def request_graceful_shutdown(node: NodeInfo, strategy: Optional[ShutdownStrategy] = None):
    """
    Ask `node` to shut down. Does not wait for it to exit.

    Raises:
        OSError: If the request can't be delivered
    """
    (strategy or DEFAULT_SHUTDOWN).request(node)


def port_in_use(port: int, host: str = '') -> bool:
    """True if something is already listening on `port`."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((host, port))
        except OSError:
            return True
    return False


def build_node_args(node: Node, router_port: Optional[int] = None) -> List[str]:
    args = [str(node.home), '--port', str(node.port)]
    if node.rpc:
        args.extend(['--rpc', node.rpc])
    if node.fake_node_name:
        args.extend(['--fake-node-name', node.fake_node_name])
        if router_port is not None:
            args.extend(['--network-router-port', str(router_port)])
    if node.password:
        args.extend(['--password', node.password])
    return args


def _attach_controlling_terminal():
    # Runs in the child between fork and exec; fd 0 is the pty slave.
    os.setsid()
    fcntl.ioctl(0, termios.TIOCSCTTY, 0)


async def launch_node(node: Node, runtime_path: Path,
                      router_port: Optional[int] = None) -> NodeInfo:
    """
    Spawn the node process on a new pseudo-terminal.

    Args:
        node: Node launch parameters
        runtime_path: Node runtime executable
        router_port: Network router port (passed to fake nodes)

    Returns:
        NodeInfo owning the child and the pty master

    Raises:
        LaunchError: If the binary is missing, the port is taken, or the
            home directory / pty / process can't be created
    """
    runtime_path = Path(runtime_path)
    if not runtime_path.is_file() or not os.access(runtime_path, os.X_OK):
        raise LaunchError(f"Runtime binary not found or not executable: {runtime_path}")

    if port_in_use(node.port):
        raise LaunchError(f"Port {node.port} for node {node.name} is already in use")

    try:
        Path(node.home).mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise LaunchError(f"Cannot create home directory {node.home}: {e}") from e

    try:
        master_fd, slave_fd = pty.openpty()
    except OSError as e:
        raise LaunchError(f"Cannot allocate pseudo-terminal for {node.name}: {e}") from e

    cmd = [str(runtime_path)] + build_node_args(node, router_port)
    logger.info(f"Starting {node.name}: {' '.join(cmd)}")

    try:
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=slave_fd,
            stdout=slave_fd,
            stderr=slave_fd,
            preexec_fn=_attach_controlling_terminal,
        )
    except (OSError, ValueError) as e:
        os.close(master_fd)
        raise LaunchError(f"Failed to start {node.name}: {e}") from e
    finally:
        os.close(slave_fd)

    os.set_blocking(master_fd, False)
    info = NodeInfo(
        process=process,
        master_fd=master_fd,
        port=node.port,
        home=Path(node.home),
        name=node.name,
        verbose=node.runtime_verbose,
    )
    info.start_capture()
    logger.info(f"✓ {node.name} started (pid {process.pid}, port {node.port})")
    return info
