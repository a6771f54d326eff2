"""
build.py - Package compilation

A package directory holds one sub-crate per process plus a pkg/ directory
(manifest.json, metadata.json, ...). Building compiles every sub-crate to
wasm32-wasi and copies the .wasm artifacts into pkg/.

Package layout:
    my_package/
        pkg/metadata.json
        my_process/Cargo.toml
        my_process/src/lib.rs
"""

import logging
import shutil
import subprocess
import tomllib
from pathlib import Path
from typing import List

from uqdev.errors import BuildError

logger = logging.getLogger('build')

WASM_TARGET = "wasm32-wasi"


def _crate_name(crate_dir: Path) -> str:
    with open(crate_dir / "Cargo.toml", 'rb') as f:
        manifest = tomllib.load(f)
    name = manifest.get('package', {}).get('name', crate_dir.name)
    return name.replace('-', '_')


def _process_crates(package_dir: Path) -> List[Path]:
    return sorted(
        p for p in package_dir.iterdir()
        if p.is_dir() and (p / "Cargo.toml").exists()
    )


def run_cargo(args: List[str], cwd: Path, verbose: bool):
    """
    Run a cargo command, raising BuildError with its output on failure.

    Output is streamed to the terminal when verbose, captured otherwise.
    """
    cmd = ['cargo'] + args
    logger.debug(f"{cwd}: {' '.join(cmd)}")
    try:
        result = subprocess.run(
            cmd,
            cwd=str(cwd),
            capture_output=not verbose,
            text=True,
        )
    except FileNotFoundError:
        raise BuildError(cwd, "cargo not found on PATH")

    if result.returncode != 0:
        output = (result.stderr or result.stdout or "").strip() if not verbose else ""
        raise BuildError(cwd, f"cargo exited with code {result.returncode}\n{output}".rstrip())


def compile_package(package_dir, verbose: bool = False) -> Path:
    """
    Compile every process of a package into its pkg/ directory.

    Args:
        package_dir: Package root
        verbose: Show cargo output

    Returns:
        Path of the package's pkg/ directory

    Raises:
        BuildError: If the package is missing, malformed, or fails to compile
    """
    package_dir = Path(package_dir)
    if not package_dir.is_dir():
        raise BuildError(package_dir, "package directory not found")

    pkg_dir = package_dir / "pkg"
    crates = _process_crates(package_dir)
    if not crates and not pkg_dir.is_dir():
        raise BuildError(package_dir, "no process crates and no pkg/ directory")

    pkg_dir.mkdir(exist_ok=True)

    for crate_dir in crates:
        print(f"[build] Compiling {crate_dir.name}...")
        run_cargo(['build', '--release', '--target', WASM_TARGET], crate_dir, verbose)

        wasm_name = f"{_crate_name(crate_dir)}.wasm"
        artifact = crate_dir / "target" / WASM_TARGET / "release" / wasm_name
        if not artifact.exists():
            raise BuildError(crate_dir, f"expected artifact not found: {artifact}")

        shutil.copy2(artifact, pkg_dir / wasm_name)
        logger.debug(f"Copied {artifact} -> {pkg_dir / wasm_name}")

    print(f"[build] ✓ Built {package_dir}")
    return pkg_dir
