"""
start_package.py - Load a built package into a running node

Zips the package's pkg/ directory into target/<package>:<publisher>.zip and
injects two app store requests into the node:
    NewPackage {package, mirror}   with the zip attached as payload
    Install    {package_name, publisher_node}
"""

import json
import logging
import os
import zipfile
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from uqdev import inject_message

logger = logging.getLogger('start_package')

APP_STORE_PROCESS = "main:app_store:uqbar"


def new_package(node: Optional[str], package_name: str, publisher_node: str,
                bytes_path: str) -> Dict[str, Any]:
    message = {
        "NewPackage": {
            "package": {"package_name": package_name, "publisher_node": publisher_node},
            "mirror": True,
        }
    }
    return inject_message.make_message(
        APP_STORE_PROCESS, json.dumps(message), node=node, bytes_path=bytes_path
    )


def install_package(node: Optional[str], package_name: str,
                    publisher_node: str) -> Dict[str, Any]:
    message = {
        "Install": {
            "package_name": package_name,
            "publisher_node": publisher_node,
        }
    }
    return inject_message.make_message(APP_STORE_PROCESS, json.dumps(message), node=node)


def zip_directory(directory: Path, zip_path: Path):
    """Store `directory` uncompressed in `zip_path`, paths relative to it."""
    with zipfile.ZipFile(zip_path, 'w', compression=zipfile.ZIP_STORED) as zf:
        for root, dirs, files in os.walk(directory):
            dirs.sort()
            root_path = Path(root)
            rel_root = root_path.relative_to(directory)
            if rel_root != Path('.'):
                info = zipfile.ZipInfo(f"{rel_root.as_posix()}/")
                info.external_attr = (0o40755 << 16) | 0x10
                zf.writestr(info, b"")
            for name in sorted(files):
                path = root_path / name
                info = zipfile.ZipInfo.from_file(path, (rel_root / name).as_posix())
                info.external_attr = 0o100755 << 16
                with open(path, 'rb') as f:
                    zf.writestr(info, f.read(), compress_type=zipfile.ZIP_STORED)


def read_metadata(pkg_dir: Path) -> Tuple[str, str]:
    """Return (package_name, publisher) from pkg/metadata.json."""
    metadata_path = pkg_dir / "metadata.json"
    with open(metadata_path, 'r') as f:
        metadata = json.load(f)

    package_name = metadata.get('package')
    publisher = metadata.get('publisher')
    if not isinstance(package_name, str) or not isinstance(publisher, str):
        raise ValueError(f"{metadata_path} must name 'package' and 'publisher'")
    return package_name, publisher


def execute(project_dir, url: str, node: Optional[str] = None,
            timeout: Optional[float] = 30.0) -> str:
    """
    Zip, upload and install a built package on the node at `url`.

    Returns:
        "<package>:<publisher>"

    Raises:
        FileNotFoundError: If pkg/ or its metadata is missing
        ValueError: If metadata is malformed
        InjectMessageError: If the node rejects either request
    """
    pkg_dir = (Path(project_dir) / "pkg").resolve(strict=True)
    package_name, publisher = read_metadata(pkg_dir)
    pkg_publisher = f"{package_name}:{publisher}"

    target_dir = pkg_dir.parent / "target"
    target_dir.mkdir(parents=True, exist_ok=True)
    zip_path = target_dir / f"{pkg_publisher}.zip"
    zip_directory(pkg_dir, zip_path)
    logger.debug(f"Zipped {pkg_dir} -> {zip_path}")

    request = new_package(node, package_name, publisher, str(zip_path))
    inject_message.parse_response(inject_message.send_request(url, request, timeout=timeout))

    request = install_package(node, package_name, publisher)
    inject_message.parse_response(inject_message.send_request(url, request, timeout=timeout))

    print(f"[start_package] ✓ Installed {pkg_publisher} on {url}")
    return pkg_publisher
