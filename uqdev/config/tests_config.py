"""
tests_config.py - Test Run Configuration Parser

Parses run-tests configuration from TOML (default, tests.toml) or YAML files.

Design philosophy:
- Keep it simple: explicit field checks, no schema framework
- Fail fast: raise clear exceptions naming the offending field
- Immutable once loaded: frozen dataclasses, tuples for sequences

Example TOML:
    runtime = { FetchVersion = "0.4.0" }      # or { RepoPath = "~/uqbar" }
    runtime_build_verbose = false
    fail_fast = false

    [[tests]]
    setup_package_paths = []
    test_package_paths = ["my_test"]
    package_build_verbose = false
    timeout_secs = 10

    [tests.network_router]
    port = 9001
    defects = "none"

    [[tests.nodes]]
    port = 8080
    home = "home/first"
    fake_node_name = "first.uq"
    runtime_verbose = false

Relative paths are resolved against the directory holding the config file.
"""

import tomllib
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Union

import yaml


class NetworkRouterDefects(str, Enum):
    """Defect policy passed to the router. Only NONE exists for now."""
    NONE = "none"

    @classmethod
    def parse(cls, value: Any) -> 'NetworkRouterDefects':
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            raise ValueError(f"network_router.defects must be a string, got {type(value).__name__}")
        try:
            return cls(value.lower())
        except ValueError:
            allowed = ", ".join(d.value for d in cls)
            raise ValueError(f"network_router.defects must be one of: {allowed}; got '{value}'")


@dataclass(frozen=True)
class FetchVersion:
    """Use a released runtime binary of this version."""
    version: str


@dataclass(frozen=True)
class RepoPath:
    """Build the runtime from a local repository checkout."""
    path: Path


Runtime = Union[FetchVersion, RepoPath]


@dataclass(frozen=True)
class NetworkRouter:
    port: int
    defects: NetworkRouterDefects = NetworkRouterDefects.NONE

    def __post_init__(self):
        _check_port(self.port, "network_router.port")


@dataclass(frozen=True)
class Node:
    """
    Launch parameters of one node.

    Attributes:
        port: HTTP port the node listens on
        home: Node home directory (mutable state root)
        fake_node_name: Name to boot a fake (router-attached) node under
        password: Password to boot with, if any
        rpc: RPC endpoint override
        runtime_verbose: Echo the node's terminal output
    """
    port: int
    home: Path
    fake_node_name: Optional[str] = None
    password: Optional[str] = None
    rpc: Optional[str] = None
    runtime_verbose: bool = False

    def __post_init__(self):
        _check_port(self.port, "node.port")

    @property
    def name(self) -> str:
        """Display name: the fake node name when set, else the home directory."""
        return self.fake_node_name or str(self.home)


@dataclass(frozen=True)
class Test:
    """
    One test scenario, the unit of the pass/fail/timeout verdict.

    The first node is the master node: it receives the test packages and
    the Run request.
    """
    __test__ = False

    setup_package_paths: Tuple[Path, ...]
    test_package_paths: Tuple[Path, ...]
    package_build_verbose: bool
    timeout_secs: int
    network_router: NetworkRouter
    nodes: Tuple[Node, ...]
    node_startup_timeout_secs: float = 30.0

    def __post_init__(self):
        # 0 is allowed and times out at once.
        if self.timeout_secs < 0:
            raise ValueError(f"timeout_secs must not be negative, got {self.timeout_secs}")

        if self.node_startup_timeout_secs <= 0:
            raise ValueError(
                f"node_startup_timeout_secs must be positive, got {self.node_startup_timeout_secs}"
            )

        if not self.nodes:
            raise ValueError("No nodes defined in test")

        ports = [n.port for n in self.nodes] + [self.network_router.port]
        if len(set(ports)) != len(ports):
            raise ValueError(f"Ports must be unique within a test, got {ports}")

    @property
    def master_node(self) -> Node:
        return self.nodes[0]


@dataclass(frozen=True)
class Config:
    """Top-level run-tests configuration."""
    runtime: Runtime
    runtime_build_verbose: bool = False
    tests: Tuple[Test, ...] = field(default_factory=tuple)
    fail_fast: bool = False

    def __post_init__(self):
        if not self.tests:
            raise ValueError("No tests defined in config")


def _check_port(port: int, name: str):
    if not isinstance(port, int) or isinstance(port, bool) or not (1 <= port <= 65535):
        raise ValueError(f"{name} must be an integer in [1, 65535], got {port!r}")


def _resolve(path: Any, base_dir: Path) -> Path:
    resolved = Path(path).expanduser()
    if not resolved.is_absolute():
        resolved = base_dir / resolved
    return resolved


def _require(data: Dict[str, Any], key: str, where: str) -> Any:
    if key not in data:
        raise ValueError(f"Missing required field: {where}{key}")
    return data[key]


def _parse_bool(value: Any, name: str) -> bool:
    if not isinstance(value, bool):
        raise ValueError(f"{name} must be a bool, got {value!r}")
    return value


def _parse_runtime(value: Any, base_dir: Path) -> Runtime:
    """
    Parse the externally-tagged runtime table.

    Accepts {FetchVersion = "x.y.z"} or {RepoPath = "path"}.
    """
    if not isinstance(value, dict) or len(value) != 1:
        raise ValueError("runtime must be a table with exactly one of: FetchVersion, RepoPath")

    (tag, arg), = value.items()
    if tag == "FetchVersion":
        if not isinstance(arg, str) or not arg:
            raise ValueError("runtime.FetchVersion must be a non-empty version string")
        return FetchVersion(arg)
    elif tag == "RepoPath":
        return RepoPath(_resolve(arg, base_dir))
    else:
        raise ValueError(f"Unknown runtime kind '{tag}' (expected FetchVersion or RepoPath)")


def _parse_node(data: Any, where: str, base_dir: Path) -> Node:
    if not isinstance(data, dict):
        raise ValueError(f"{where} must be a table, got {type(data).__name__}")

    return Node(
        port=_require(data, 'port', where + '.'),
        home=_resolve(_require(data, 'home', where + '.'), base_dir),
        fake_node_name=data.get('fake_node_name'),
        password=data.get('password'),
        rpc=data.get('rpc'),
        runtime_verbose=_parse_bool(data.get('runtime_verbose', False), where + '.runtime_verbose'),
    )


def _parse_test(data: Any, index: int, base_dir: Path) -> Test:
    where = f"tests[{index}]"
    if not isinstance(data, dict):
        raise ValueError(f"{where} must be a table, got {type(data).__name__}")

    router = _require(data, 'network_router', where + '.')
    if not isinstance(router, dict):
        raise ValueError(f"{where}.network_router must be a table")

    nodes = _require(data, 'nodes', where + '.')
    if not isinstance(nodes, list):
        raise ValueError(f"{where}.nodes must be a list")

    timeout_secs = _require(data, 'timeout_secs', where + '.')
    if not isinstance(timeout_secs, int) or isinstance(timeout_secs, bool):
        raise ValueError(f"{where}.timeout_secs must be an integer, got {timeout_secs!r}")

    paths = {}
    for key in ('setup_package_paths', 'test_package_paths'):
        value = data.get(key, [])
        if not isinstance(value, list):
            raise ValueError(f"{where}.{key} must be a list")
        paths[key] = tuple(_resolve(p, base_dir) for p in value)

    return Test(
        setup_package_paths=paths['setup_package_paths'],
        test_package_paths=paths['test_package_paths'],
        package_build_verbose=_parse_bool(
            data.get('package_build_verbose', False), where + '.package_build_verbose'
        ),
        timeout_secs=timeout_secs,
        network_router=NetworkRouter(
            port=_require(router, 'port', where + '.network_router.'),
            defects=NetworkRouterDefects.parse(router.get('defects', 'none')),
        ),
        nodes=tuple(
            _parse_node(n, f"{where}.nodes[{i}]", base_dir) for i, n in enumerate(nodes)
        ),
        node_startup_timeout_secs=float(data.get('node_startup_timeout_secs', 30.0)),
    )


def config_from_dict(data: Any, base_dir: Optional[Path] = None) -> Config:
    """
    Build a Config from an already-parsed document.

    Args:
        data: Parsed TOML/YAML document
        base_dir: Directory relative paths are resolved against (default: cwd)

    Raises:
        ValueError: If required fields are missing or invalid
    """
    base_dir = Path(base_dir) if base_dir is not None else Path.cwd()

    if not isinstance(data, dict):
        raise ValueError(f"Config must be a table/dict, got {type(data).__name__}")

    tests = _require(data, 'tests', '')
    if not isinstance(tests, list):
        raise ValueError("'tests' must be a list")

    return Config(
        runtime=_parse_runtime(_require(data, 'runtime', ''), base_dir),
        runtime_build_verbose=_parse_bool(
            data.get('runtime_build_verbose', False), 'runtime_build_verbose'
        ),
        tests=tuple(_parse_test(t, i, base_dir) for i, t in enumerate(tests)),
        fail_fast=_parse_bool(data.get('fail_fast', False), 'fail_fast'),
    )


def load_config(config_path: Union[str, Path]) -> Config:
    """
    Load a run-tests configuration file.

    The format is picked by suffix: .yaml/.yml is YAML, anything else TOML.

    Args:
        config_path: Path to the configuration file

    Returns:
        Parsed Config

    Raises:
        FileNotFoundError: If the file doesn't exist
        ValueError: If the document is malformed or fields are invalid
    """
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    if path.suffix.lower() in ('.yaml', '.yml'):
        with open(path, 'r') as f:
            try:
                data = yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise ValueError(f"Invalid YAML syntax in {config_path}: {e}")
    else:
        with open(path, 'rb') as f:
            try:
                data = tomllib.load(f)
            except tomllib.TOMLDecodeError as e:
                raise ValueError(f"Invalid TOML syntax in {config_path}: {e}")

    return config_from_dict(data, base_dir=path.resolve().parent)
