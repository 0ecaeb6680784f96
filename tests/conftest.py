from __future__ import annotations

import os
import stat
import sys
import tempfile
import time
from pathlib import Path

import pytest


def _ensure_project_root_on_path() -> None:
    root = Path(__file__).resolve().parent.parent
    if str(root) not in sys.path:
        sys.path.insert(0, str(root))


_ensure_project_root_on_path()
os.environ.setdefault("PACKAGE_CONSOLE_LOG_DIR", tempfile.mkdtemp(prefix="package-console-logs-"))

from PyQt6.QtCore import QCoreApplication  # noqa: E402

from options import Options  # noqa: E402


@pytest.fixture(scope="session", autouse=True)
def qapp():
    app = QCoreApplication.instance() or QCoreApplication([])
    yield app


@pytest.fixture(autouse=True)
def isolated_options(tmp_path_factory, monkeypatch):
    """Point every configurable path at a temporary directory."""

    base = tmp_path_factory.mktemp("console")
    Options.reset_to_defaults()
    monkeypatch.setattr(Options, "config_file_path", base / "config.json")
    Options.cache_dir = str(base / "cache")
    Options.install_root = str(base / "compat")
    Options.kernel_branches_dir = str(base / "branches")
    Options.cleanup_window = 2.0
    yield base
    Options.reset_to_defaults()


@pytest.fixture
def wait_until(qapp):
    """Spin the Qt event loop until ``predicate()`` holds or the timeout expires."""

    def _wait(predicate, timeout=5.0, interval=0.01):
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            qapp.processEvents()
            if predicate():
                return True
            time.sleep(interval)
        qapp.processEvents()
        return predicate()

    return _wait


@pytest.fixture
def make_script(tmp_path):
    """Write an executable shell script and return its absolute path."""

    bin_dir = tmp_path / "bin"
    bin_dir.mkdir(exist_ok=True)

    def _make(name, body):
        path = bin_dir / name
        path.write_text("#!/bin/sh\n" + body + "\n", encoding="utf-8")
        path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return str(path)

    return _make


@pytest.fixture
def fake_elevation(make_script):
    """An elevation tool that just runs its arguments, configured as the default."""

    tool = make_script("fake-elevate", 'exec "$@"')
    Options.elevation_tool = tool
    return tool


@pytest.fixture
def os_release(tmp_path):
    def _write(distro_id, id_like="", name=None):
        path = tmp_path / f"os-release-{distro_id}"
        lines = [f'ID={distro_id}', f'NAME="{name or distro_id.capitalize()}"',
                 f'PRETTY_NAME="{name or distro_id.capitalize()} Linux"']
        if id_like:
            lines.append(f'ID_LIKE="{id_like}"')
        path.write_text(os.linesep.join(lines) + os.linesep, encoding="utf-8")
        return str(path)

    return _write
