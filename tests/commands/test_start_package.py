#!/usr/bin/env python3
"""
test_start_package.py - Unit Tests for loading packages into a node
"""

import base64
import json
import pytest
import sys
import zipfile
from pathlib import Path
from unittest.mock import Mock, patch

# Add project root to path
_project_root = Path(__file__).parent.parent.parent
sys.path.insert(0, str(_project_root))

from uqdev import start_package
from uqdev.inject_message import InjectMessageError


def make_package(root: Path, package="chess", publisher="first.uq") -> Path:
    pkg = root / "pkg"
    (pkg / "ui").mkdir(parents=True)
    (pkg / "metadata.json").write_text(json.dumps({"package": package, "publisher": publisher}))
    (pkg / "manifest.json").write_text("[]")
    (pkg / "chess.wasm").write_bytes(b"\x00asm")
    (pkg / "ui" / "index.html").write_text("<html/>")
    return root


def ok_reply():
    response = Mock()
    response.status_code = 200
    response.json.return_value = {"ipc": '{"Ok":null}', "payload": None}
    return response


class TestZipDirectory:

    def test_contents_and_modes(self, tmp_path):
        make_package(tmp_path)
        zip_path = tmp_path / "out.zip"

        start_package.zip_directory(tmp_path / "pkg", zip_path)

        with zipfile.ZipFile(zip_path) as zf:
            names = zf.namelist()
            assert sorted(names) == sorted([
                "chess.wasm", "manifest.json", "metadata.json", "ui/", "ui/index.html",
            ])
            info = zf.getinfo("chess.wasm")
            assert info.compress_type == zipfile.ZIP_STORED
            assert (info.external_attr >> 16) & 0o777 == 0o755
            assert zf.read("ui/index.html") == b"<html/>"


class TestReadMetadata:

    def test_valid(self, tmp_path):
        make_package(tmp_path)
        assert start_package.read_metadata(tmp_path / "pkg") == ("chess", "first.uq")

    def test_missing_publisher(self, tmp_path):
        (tmp_path / "metadata.json").write_text('{"package": "chess"}')
        with pytest.raises(ValueError, match="publisher"):
            start_package.read_metadata(tmp_path)


class TestExecute:

    def test_new_package_then_install(self, tmp_path, capsys):
        make_package(tmp_path)

        with patch("uqdev.inject_message.send_request", return_value=ok_reply()) as send:
            result = start_package.execute(tmp_path, "http://localhost:8080", timeout=7)

        assert result == "chess:first.uq"
        assert (tmp_path / "target" / "chess:first.uq.zip").exists()
        assert send.call_count == 2

        (url, first), kwargs = send.call_args_list[0].args, send.call_args_list[0].kwargs
        assert url == "http://localhost:8080"
        assert kwargs["timeout"] == 7
        assert first["process"] == start_package.APP_STORE_PROCESS
        assert json.loads(first["ipc"]) == {"NewPackage": {
            "package": {"package_name": "chess", "publisher_node": "first.uq"},
            "mirror": True,
        }}
        assert base64.b64decode(first["data"])[:2] == b"PK"

        second = send.call_args_list[1].args[1]
        assert json.loads(second["ipc"]) == {
            "Install": {"package_name": "chess", "publisher_node": "first.uq"}
        }
        assert second["data"] is None
        assert "Installed chess:first.uq" in capsys.readouterr().out

    def test_missing_pkg_dir(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            start_package.execute(tmp_path, "http://localhost:8080")

    def test_rejected_install(self, tmp_path):
        make_package(tmp_path)
        rejected = Mock(status_code=500, text="install failed")

        with patch("uqdev.inject_message.send_request", side_effect=[ok_reply(), rejected]):
            with pytest.raises(InjectMessageError, match="HTTP 500"):
                start_package.execute(tmp_path, "http://localhost:8080")
