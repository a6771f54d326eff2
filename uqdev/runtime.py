"""
runtime.py - Node runtime binary resolution

Turns the configured Runtime into a path to an executable node binary:
- RepoPath: `cargo build --release` in the checkout, use target/release/uqbar
- FetchVersion: use the cached binary under $UQDEV_HOME/runtime/<version>/,
  downloading the release archive on first use

Environment:
    UQDEV_HOME         Cache root (default ~/.uqdev)
    UQDEV_RUNTIME_URL  Release archive URL template with {version} and
                       {platform} placeholders
"""

import logging
import os
import platform
import stat
import zipfile
from pathlib import Path

import requests

from uqdev.build import run_cargo
from uqdev.config import FetchVersion, RepoPath, Runtime
from uqdev.errors import BuildError

logger = logging.getLogger('runtime')

BINARY_NAME = "uqbar"
DEFAULT_RUNTIME_URL = (
    "https://github.com/uqbar-dao/uqbar/releases/download/v{version}/uqbar-{platform}.zip"
)


def uqdev_home() -> Path:
    return Path(os.environ.get('UQDEV_HOME', Path.home() / '.uqdev')).expanduser()


def platform_tag() -> str:
    """e.g. 'linux-x86_64', 'darwin-arm64'."""
    return f"{platform.system().lower()}-{platform.machine().lower()}"


def _make_executable(path: Path):
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)


def build_runtime(repo: Path, verbose: bool) -> Path:
    """Build the runtime from a local checkout and return the binary path."""
    if not repo.is_dir():
        raise BuildError(repo, "runtime repository not found")

    print(f"[runtime] Building runtime in {repo}...")
    run_cargo(['build', '--release'], repo, verbose)

    binary = repo / "target" / "release" / BINARY_NAME
    if not binary.exists():
        raise BuildError(repo, f"runtime binary not found after build: {binary}")
    return binary


def fetch_runtime(version: str, timeout: float = 120.0) -> Path:
    """Return the cached binary for `version`, downloading it if needed."""
    version = version.lstrip('v')
    cache_dir = uqdev_home() / "runtime" / version
    binary = cache_dir / BINARY_NAME
    if binary.exists():
        logger.debug(f"Using cached runtime {binary}")
        return binary

    url = os.environ.get('UQDEV_RUNTIME_URL', DEFAULT_RUNTIME_URL).format(
        version=version, platform=platform_tag()
    )
    print(f"[runtime] Fetching runtime {version} from {url}...")

    cache_dir.mkdir(parents=True, exist_ok=True)
    archive = cache_dir / "runtime.zip"
    try:
        with requests.get(url, stream=True, timeout=timeout) as response:
            response.raise_for_status()
            with open(archive, 'wb') as f:
                for chunk in response.iter_content(chunk_size=1 << 16):
                    f.write(chunk)
    except requests.RequestException as e:
        raise BuildError(url, f"runtime download failed: {e}")

    try:
        with zipfile.ZipFile(archive) as zf:
            zf.extractall(cache_dir)
    except zipfile.BadZipFile as e:
        raise BuildError(url, f"runtime archive is corrupt: {e}")
    finally:
        archive.unlink(missing_ok=True)

    if not binary.exists():
        raise BuildError(url, f"archive did not contain {BINARY_NAME}")

    _make_executable(binary)
    return binary


def resolve_runtime(runtime: Runtime, verbose: bool = False) -> Path:
    """
    Resolve the configured runtime to an executable path.

    Raises:
        BuildError: If the runtime can't be built or fetched
    """
    if isinstance(runtime, RepoPath):
        return build_runtime(Path(runtime.path), verbose)
    elif isinstance(runtime, FetchVersion):
        return fetch_runtime(runtime.version)
    raise TypeError(f"Unknown runtime kind: {runtime!r}")
